from __future__ import annotations

from typing import Protocol

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.brgy.modules.certificates.models import CertificateRequest
from app.brgy.modules.certificates.state_machine import Transition


class RequestStore(Protocol):
    def add(self, req: CertificateRequest) -> CertificateRequest: ...

    def get(self, request_id: int) -> CertificateRequest | None: ...

    def apply_transition(self, request_id: int, transition: Transition) -> bool:
        """Write transition.writes only if the stored status is still in transition.guard."""
        ...


class SqlRequestStore:
    def __init__(self, s: Session):
        self.s = s

    def add(self, req: CertificateRequest) -> CertificateRequest:
        self.s.add(req)
        self.s.flush()
        return req

    def get(self, request_id: int) -> CertificateRequest | None:
        req = self.s.get(CertificateRequest, request_id)
        if req is None or req.is_deleted:
            return None
        return req

    def apply_transition(self, request_id: int, transition: Transition) -> bool:
        stmt = (
            update(CertificateRequest)
            .where(
                CertificateRequest.id == request_id,
                CertificateRequest.status.in_([st.value for st in transition.guard]),
                CertificateRequest.is_deleted.is_(False),
            )
            .values(**transition.writes)
            .execution_options(synchronize_session=False)
        )
        result = self.s.execute(stmt)
        if result.rowcount != 1:
            return False
        req = self.s.get(CertificateRequest, request_id)
        if req is not None:
            self.s.refresh(req)
        return True

    def touch_if_status(self, request_id: int, statuses, *, now) -> bool:
        """
        Conditional no-op write used to re-check a status guard inside the
        caller's transaction (and take the row lock on databases that have one).
        """
        stmt = (
            update(CertificateRequest)
            .where(
                CertificateRequest.id == request_id,
                CertificateRequest.status.in_([st.value for st in statuses]),
                CertificateRequest.is_deleted.is_(False),
            )
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.s.execute(stmt).rowcount == 1
