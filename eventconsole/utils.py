import base64
import math
import re
import unicodedata
from datetime import datetime

_DIGIT_RUN = re.compile(r"(\d+)")


def normalize_key(value) -> str:
    """
    Coerces a raw value into a trimmed string key.

    Args:
        value: Any raw value pulled from the store or a query string.

    Returns:
        str: Empty string for None or NaN, otherwise the stripped text.
    """
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


def fold_label(value) -> str:
    """
    Folds full-width characters and case so labels compare loosely.

    Args:
        value: Raw label text.

    Returns:
        str: NFKC-normalized, case-folded, stripped text.
    """
    return unicodedata.normalize("NFKC", normalize_key(value)).casefold()


def natural_sort_key(text) -> tuple:
    """
    Builds a numeric-aware sort key, so "班2" sorts before "班10".

    Args:
        text: Text to sort by.

    Returns:
        tuple: Alternating (kind, value) pairs suitable for sorted().
    """
    parts = []
    for chunk in _DIGIT_RUN.split(fold_label(text)):
        if not chunk:
            continue
        if chunk.isdigit():
            parts.append((0, int(chunk), ""))
        else:
            parts.append((1, 0, chunk))
    return tuple(parts)


def to_millis(value) -> int:
    """
    Converts a timestamp-ish value into epoch milliseconds.

    Numbers above 1e12 are already milliseconds, numbers above 1e10 are
    treated as seconds. Strings are parsed as ISO datetimes first and as
    numbers second.

    Args:
        value: Number, string, or datetime.

    Returns:
        int: Epoch milliseconds, or 0 when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return 0
        if value > 1e12:
            return int(value)
        if value > 1e10:
            return int(value * 1000)
        return int(value)
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return 0
        try:
            return int(datetime.fromisoformat(trimmed).timestamp() * 1000)
        except ValueError:
            pass
        try:
            number = float(trimmed)
        except ValueError:
            return 0
        return int(number) if math.isfinite(number) else 0
    return 0


def base64url_from_bytes(raw: bytes) -> str:
    """Encodes bytes as URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
