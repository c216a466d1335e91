from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, timezone

from app.brgy.errors import ValidationError

# Injected wherever "now" matters so tests can pin time.
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns are timezone=False)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_date(s: str | None, *, field: str = "date") -> date | None:
    """Parse YYYY-MM-DD; blank means None."""
    if not s:
        return None
    s = str(s).strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError as e:
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format.", field=field) from e


def clean_text(value: object) -> str | None:
    """Trim free text; blank means None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None
