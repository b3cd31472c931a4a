"""
Helper utilities
"""
from datetime import datetime
from typing import Any, List, Optional

from dateutil import parser as date_parser


def to_key(value: Any) -> str:
    """Normalise a cell or payload value into a trimmed string key."""
    if value is None:
        return ""
    return str(value).strip()


def to_float(value: Any, default: float = 0.0) -> float:
    """Coerce to float; missing or non-numeric input becomes the default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        result = float(str(value).replace("$", "").replace(",", "").strip())
    except (TypeError, ValueError):
        return default
    if result != result:  # NaN
        return default
    return result


def safe_get(obj: Any, path: str, default: Any = None) -> Any:
    """Read a dotted path from nested dicts, returning default for missing/None."""
    current = obj
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return default if current is None else current


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a ShipStation timestamp ("2024-01-15T10:22:33.1230000")."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return date_parser.isoparse(str(value).strip())
    except (ValueError, OverflowError):
        try:
            return date_parser.parse(str(value))
        except (ValueError, OverflowError):
            return None


def chunk_list(lst: List, chunk_size: int) -> List[List]:
    """Split list into chunks"""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]
