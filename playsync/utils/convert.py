import re
from typing import Any, Optional

_SCORE_JUNK_RE = re.compile(r"[^0-9,.\-]")


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def to_int(value: Any, default: Optional[int] = None, strict: bool = False) -> Optional[int]:
    """Conversion of XML attribute values to integer.

    With ``strict`` a non-numeric value raises ``ValueError`` instead of
    falling back to ``default``; blank values always fall back.
    """

    text = _clean(value)
    if text is None:
        return default

    try:
        return int(float(text))
    except (TypeError, ValueError):
        if strict:
            raise ValueError(f"not an integer: {text!r}")
        return default


def to_positive_int(value: Any, strict: bool = False) -> Optional[int]:
    """BGG uses 0 for "unknown" in most numeric fields."""

    number = to_int(value, strict=strict)
    if number is None or number <= 0:
        return None
    return number


def to_float(value: Any, default: Optional[float] = None, strict: bool = False) -> Optional[float]:
    """Conversion of XML attribute values to float."""

    text = _clean(value)
    if text is None:
        return default

    try:
        return float(text)
    except (TypeError, ValueError):
        if strict:
            raise ValueError(f"not a number: {text!r}")
        return default


def to_score(value: Any) -> Optional[float]:
    """Scores are free text on BGG ("1,5", "42 pts"); keep the numeric part."""

    text = _clean(value)
    if text is None:
        return None
    digits = _SCORE_JUNK_RE.sub("", text).replace(",", ".")
    try:
        return float(digits)
    except ValueError:
        return None


def to_bool(value: Any) -> Optional[bool]:
    """Normalize boolean-ish values coming from BGG (0/1, yes/no)."""

    text = _clean(value)
    if text is None:
        return None

    text = text.lower()
    if text in ("1", "true", "yes"):
        return True
    if text in ("0", "false", "no"):
        return False
    return None


def to_text(value: Any) -> Optional[str]:
    return _clean(value)
