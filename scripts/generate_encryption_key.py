#!/usr/bin/env python3
"""
Print a new credential vault key.

Put the output in ENCRYPTION_KEY. When replacing an existing key, move the old
one into ENCRYPTION_PREVIOUS_KEYS and run rotate_encryption_key.py.
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from broker.security.vault import CredentialVault


def main():
    print(CredentialVault.generate_key())


if __name__ == "__main__":
    main()
