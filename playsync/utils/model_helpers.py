from typing import Any, Dict, Iterable


def apply_model_fields(model: Any, data: Dict[str, Any], skip: Iterable[str] = ("id",)) -> bool:
    """Copy matching fields from a parsed dict onto a SQLAlchemy model.

    Returns True when at least one attribute actually changed.
    """

    skipped = set(skip)
    changed = False
    for key, value in data.items():
        if key in skipped or not hasattr(model, key):
            continue
        if getattr(model, key) != value:
            setattr(model, key, value)
            changed = True
    return changed
