"""Response normalization.

Providers disagree on field names; downstream code only ever sees the canonical
ones (``sku``, ``quantity``, ``title`` ...).
"""

from dataclasses import dataclass, field
from typing import Any, Optional

# Checked in order when a record has no explicit quantity mapping
QUANTITY_ALIASES = ("quantity", "stock", "inventory_count", "qty", "available", "on_hand")
SKU_ALIASES = ("sku", "reference_id", "item_sku", "seller_sku")

_MISSING = object()


def get_path(data: Any, path: Optional[str], default: Any = None) -> Any:
    """Read a dotted path (``a.b.0.c``) from nested dicts/lists."""
    if not path:
        return data
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def _first(record: dict, names: tuple[str, ...]) -> Any:
    for name in names:
        value = record.get(name)
        if value is not None:
            return value
    return None


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def normalize_record(record: Any, field_map: Optional[dict[str, str]] = None) -> Any:
    """Map one provider record onto canonical field names."""
    if not isinstance(record, dict):
        return record

    out = dict(record)
    for canonical, path in (field_map or {}).items():
        out[canonical] = get_path(record, path)

    if out.get("quantity") is None:
        quantity = _first(record, QUANTITY_ALIASES)
        if quantity is not None:
            out["quantity"] = quantity
    if "quantity" in out:
        out["quantity"] = _to_int(out["quantity"])

    if out.get("sku") is None:
        sku = _first(record, SKU_ALIASES)
        if sku is not None:
            out["sku"] = str(sku)

    return out


@dataclass
class NormalizedResponse:
    """Provider response after result extraction and field mapping."""

    provider: str
    operation: str
    status_code: int
    data: Any
    request_id: str
    raw: Any = field(default=None, repr=False)

    @property
    def items(self) -> list:
        if self.data is None:
            return []
        if isinstance(self.data, list):
            return self.data
        return [self.data]


def normalize_response(
    payload: Any,
    result_path: Optional[str] = None,
    field_map: Optional[dict[str, str]] = None,
) -> Any:
    """Extract the result node and normalize each record in it."""
    result = get_path(payload, result_path) if result_path else payload
    if isinstance(result, list):
        return [normalize_record(item, field_map) for item in result]
    return normalize_record(result, field_map)
