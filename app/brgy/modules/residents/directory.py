from __future__ import annotations

from typing import Protocol

from sqlalchemy.orm import Session

from app.brgy.modules.residents.models import Resident


class ResidentDirectory(Protocol):
    def exists(self, resident_id: int) -> bool: ...

    def display_name(self, resident_id: int) -> str | None: ...


class SqlResidentDirectory:
    """Read-only lookup over the residents table."""

    def __init__(self, s: Session):
        self.s = s

    def _get(self, resident_id: int) -> Resident | None:
        r = self.s.get(Resident, resident_id)
        if r is None or r.is_deleted:
            return None
        return r

    def exists(self, resident_id: int) -> bool:
        return self._get(resident_id) is not None

    def display_name(self, resident_id: int) -> str | None:
        r = self._get(resident_id)
        return r.full_name if r else None
