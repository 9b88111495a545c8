#!/usr/bin/env python3
"""
Re-encrypt all stored secrets under the current ENCRYPTION_KEY.

Usage:
    ENCRYPTION_KEY=<new> ENCRYPTION_PREVIOUS_KEYS=<old> python scripts/rotate_encryption_key.py

Once it completes, the previous key can be removed from the environment.
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from broker.config import settings
from broker.db.session import create_engine, create_session_factory
from broker.logging_config import setup_logging
from broker.security.rotation import rotate_all
from broker.security.vault import CredentialVault

logger = logging.getLogger(__name__)


async def main() -> int:
    setup_logging(write_files=False)
    if not settings.encryption_key:
        logger.error("ENCRYPTION_KEY must be set")
        return 1
    if not settings.previous_keys:
        logger.warning("ENCRYPTION_PREVIOUS_KEYS is empty; values will be re-encrypted under the same key")

    engine = create_engine(settings.database_url)
    try:
        counts = await rotate_all(create_session_factory(engine), CredentialVault.from_settings(settings))
    finally:
        await engine.dispose()

    for table, count in counts.items():
        print(f"{table}: {count} rows re-encrypted")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
