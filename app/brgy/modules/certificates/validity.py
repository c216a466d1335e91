"""
Display status of an issued certificate. Pure functions: nothing here reads
the clock or writes to the database.

Priority: invalidated beats everything, then the date window. A certificate
is honoured through the whole of its valid_until day.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Protocol

from app.brgy.modules.certificates.types import DocumentStatus


class HasValidity(Protocol):
    is_valid: bool
    valid_from: date
    valid_until: date


def _as_date(now: datetime | date) -> date:
    return now.date() if isinstance(now, datetime) else now


def document_status(doc: HasValidity, now: datetime | date) -> DocumentStatus:
    """
    Invalidation wins, then expiry. The whole valid_until day is still valid,
    unlike a timestamp check against valid_until at midnight, which would
    expire the certificate at the start of its last day.
    """
    if not doc.is_valid:
        return DocumentStatus.INVALID
    if _as_date(now) > doc.valid_until:
        return DocumentStatus.EXPIRED
    return DocumentStatus.VALID


def days_until_expiry(doc: HasValidity, now: datetime | date) -> int:
    """Signed day count; negative once expired."""
    return (doc.valid_until - _as_date(now)).days


def is_expiring_soon(doc: HasValidity, now: datetime | date, window_days: int) -> bool:
    if document_status(doc, now) is not DocumentStatus.VALID:
        return False
    return 0 <= days_until_expiry(doc, now) <= window_days


@dataclass(frozen=True)
class StatusReport:
    status: DocumentStatus
    days_until_expiry: int
    expiring_soon: bool

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "days_until_expiry": self.days_until_expiry,
            "expiring_soon": self.expiring_soon,
        }


def evaluate(doc: HasValidity, now: datetime | date, *, window_days: int = 30) -> StatusReport:
    return StatusReport(
        status=document_status(doc, now),
        days_until_expiry=days_until_expiry(doc, now),
        expiring_soon=is_expiring_soon(doc, now, window_days),
    )
