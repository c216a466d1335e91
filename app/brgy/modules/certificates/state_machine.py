"""
Approval state machine for certificate requests.

    pending --approve--> approved --release--> released
    pending|approved --reject--> rejected

The machine is stateless: it takes the current persisted status and returns a
Transition describing the guard and the column writes. Applying it (as one
conditional UPDATE) is the store's job, so the guard is re-checked at write time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.brgy.errors import StateConflict, ValidationError
from app.brgy.modules.certificates.types import RequestStatus
from app.brgy.utils import clean_text

APPROVE = "approve"
REJECT = "reject"
RELEASE = "release"


@dataclass(frozen=True)
class Edge:
    sources: frozenset[RequestStatus]
    target: RequestStatus
    timestamp_column: str
    actor_column: str


EDGES: dict[str, Edge] = {
    APPROVE: Edge(
        sources=frozenset({RequestStatus.PENDING}),
        target=RequestStatus.APPROVED,
        timestamp_column="approved_at",
        actor_column="approved_by_user_id",
    ),
    REJECT: Edge(
        sources=frozenset({RequestStatus.PENDING, RequestStatus.APPROVED}),
        target=RequestStatus.REJECTED,
        timestamp_column="rejected_at",
        actor_column="rejected_by_user_id",
    ),
    RELEASE: Edge(
        sources=frozenset({RequestStatus.APPROVED}),
        target=RequestStatus.RELEASED,
        timestamp_column="released_at",
        actor_column="released_by_user_id",
    ),
}


@dataclass(frozen=True)
class Transition:
    action: str
    from_status: RequestStatus
    guard: frozenset[RequestStatus]
    to_status: RequestStatus
    writes: dict[str, Any] = field(default_factory=dict)


class ApprovalStateMachine:
    def allowed_actions(self, status: RequestStatus | str) -> list[str]:
        current = RequestStatus(status)
        return [action for action, edge in EDGES.items() if current in edge.sources]

    def can(self, status: RequestStatus | str, action: str) -> bool:
        return action in self.allowed_actions(status)

    def plan(
        self,
        current: RequestStatus | str,
        action: str,
        *,
        now: datetime,
        remarks: str | None = None,
        actor_id: int | None = None,
    ) -> Transition:
        edge = EDGES.get(action)
        if edge is None:
            raise ValidationError(f"Unknown action {action!r}.", field="action")

        remarks = clean_text(remarks)
        # Input checks come first: an empty rejection reason is invalid whatever the status.
        if action == REJECT and not remarks:
            raise ValidationError("Remarks are required when rejecting a request.", field="remarks")

        current = RequestStatus(current)
        if current not in edge.sources:
            raise StateConflict(
                f"Cannot {action} a request that is {current.value}.",
                action=action,
                status=current.value,
            )

        writes: dict[str, Any] = {
            "status": edge.target.value,
            edge.timestamp_column: now,
            edge.actor_column: actor_id,
            "updated_at": now,
        }
        if action != RELEASE or remarks:
            writes["remarks"] = remarks

        return Transition(
            action=action,
            from_status=current,
            guard=edge.sources,
            to_status=edge.target,
            writes=writes,
        )

    def approve(self, current: RequestStatus | str, *, now: datetime, remarks: str | None = None, actor_id: int | None = None) -> Transition:
        return self.plan(current, APPROVE, now=now, remarks=remarks, actor_id=actor_id)

    def reject(self, current: RequestStatus | str, *, now: datetime, remarks: str | None, actor_id: int | None = None) -> Transition:
        return self.plan(current, REJECT, now=now, remarks=remarks, actor_id=actor_id)

    def release(self, current: RequestStatus | str, *, now: datetime, remarks: str | None = None, actor_id: int | None = None) -> Transition:
        return self.plan(current, RELEASE, now=now, remarks=remarks, actor_id=actor_id)
