"""
Certificate issuance service layer.
Handles the request lifecycle, issuance, post-issuance operations and the
read-side queries behind the certificate screens.

Functions flush but never commit: the caller owns the transaction, so a
failure anywhere leaves the previous state untouched.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.brgy.audit import record_event
from app.brgy.errors import AllocationConflict, NotFound, StateConflict, ValidationError
from app.brgy.modules.residents.directory import ResidentDirectory, SqlResidentDirectory
from app.brgy.modules.residents.models import Resident
from app.brgy.utils import clean_text, utcnow

from .models import CertificateRequest, IssuedCertificate
from .qr import build_qr_payload, decode_qr_payload
from .rendering import CertificateRenderer, artifact_key
from .sequence import DEFAULT_MAX_RETRIES, SequenceAllocator, format_document_number
from .state_machine import APPROVE, REJECT, RELEASE, ApprovalStateMachine
from .store import RequestStore, SqlRequestStore
from .types import DocumentStatus, DocumentType, RequestStatus, parse_document_type
from .validity import StatusReport, evaluate

if TYPE_CHECKING:
    from app.brgy.models import User
    from app.brgy.storage import Storage

logger = logging.getLogger(__name__)

# A certificate may be issued once its request is approved; release is tracked separately.
ISSUABLE_STATUSES = frozenset({RequestStatus.APPROVED, RequestStatus.RELEASED})

PURPOSE_MAX_LENGTH = 500
REQUIREMENTS_MAX_LENGTH = 1000
REMARKS_MAX_LENGTH = 500
DEFAULT_PER_PAGE = 15
MAX_PER_PAGE = 100

_machine = ApprovalStateMachine()


@dataclass
class Page:
    items: list[Any]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        return max(1, math.ceil(self.total / self.per_page)) if self.per_page else 1


@dataclass
class Verification:
    certificate: IssuedCertificate
    report: StatusReport
    payload_matches: bool | None = None


def _actor_id(user: User | None) -> int | None:
    return user.id if user else None


def _check_length(value: str | None, limit: int, field_name: str) -> None:
    if value and len(value) > limit:
        raise ValidationError(f"{field_name} must be at most {limit} characters.", field=field_name)


def _coerce_id(value: Any, field_name: str) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field_name} is required.", field=field_name)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer.", field=field_name) from None


def default_validity_window(today: date, days: int) -> tuple[date, date]:
    """Window used when the issuer does not pick one: today plus `days`."""
    return today, today + timedelta(days=max(1, days))


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


def get_request(s: Session, request_id: int, *, store: RequestStore | None = None) -> CertificateRequest:
    store = store or SqlRequestStore(s)
    req = store.get(request_id)
    if req is None:
        raise NotFound("CertificateRequest", request_id)
    return req


def create_request(
    s: Session,
    *,
    resident_id: Any,
    document_type: Any,
    purpose: str | None,
    additional_requirements: str | None = None,
    user: User | None = None,
    now: datetime | None = None,
    residents: ResidentDirectory | None = None,
    store: RequestStore | None = None,
) -> CertificateRequest:
    """Create a pending request for an official document."""
    now = now or utcnow()
    rid = _coerce_id(resident_id, "resident_id")
    dtype = parse_document_type(document_type)
    purpose = clean_text(purpose)
    if not purpose:
        raise ValidationError("Purpose is required.", field="purpose")
    _check_length(purpose, PURPOSE_MAX_LENGTH, "purpose")
    additional_requirements = clean_text(additional_requirements)
    _check_length(additional_requirements, REQUIREMENTS_MAX_LENGTH, "additional_requirements")

    residents = residents or SqlResidentDirectory(s)
    if not residents.exists(rid):
        raise ValidationError(f"Resident {rid} does not exist.", field="resident_id")

    store = store or SqlRequestStore(s)
    req = store.add(
        CertificateRequest(
            resident_id=rid,
            requested_by_user_id=_actor_id(user),
            document_type=dtype.value,
            purpose=purpose,
            additional_requirements=additional_requirements,
            status=RequestStatus.PENDING.value,
            requested_at=now,
            updated_at=now,
        )
    )

    record_event(
        s,
        actor=user,
        action="certificate_request.create",
        entity_type="CertificateRequest",
        entity_id=str(req.id),
        metadata={"resident_id": rid, "document_type": dtype.value},
    )
    return req


def update_request(
    s: Session,
    request_id: int,
    payload: dict,
    *,
    user: User | None = None,
    now: datetime | None = None,
) -> CertificateRequest:
    """Edit purpose / additional requirements while the request is still pending."""
    now = now or utcnow()
    req = get_request(s, request_id)

    values: dict[str, Any] = {}
    if "purpose" in payload:
        purpose = clean_text(payload.get("purpose"))
        if not purpose:
            raise ValidationError("Purpose is required.", field="purpose")
        _check_length(purpose, PURPOSE_MAX_LENGTH, "purpose")
        values["purpose"] = purpose
    if "additional_requirements" in payload:
        extra = clean_text(payload.get("additional_requirements"))
        _check_length(extra, REQUIREMENTS_MAX_LENGTH, "additional_requirements")
        values["additional_requirements"] = extra
    if not values:
        return req

    changes = {k: {"from": getattr(req, k), "to": v} for k, v in values.items() if getattr(req, k) != v}
    values["updated_at"] = now
    result = s.execute(
        update(CertificateRequest)
        .where(CertificateRequest.id == req.id, CertificateRequest.status == RequestStatus.PENDING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateConflict("Only pending requests can be edited.", status=req.status)
    s.refresh(req)

    if changes:
        record_event(
            s,
            actor=user,
            action="certificate_request.edit",
            entity_type="CertificateRequest",
            entity_id=str(req.id),
            metadata={"changes": changes},
        )
    return req


def _transition(
    s: Session,
    request_id: int,
    action: str,
    *,
    remarks: str | None,
    user: User | None,
    now: datetime | None,
    store: RequestStore | None = None,
) -> CertificateRequest:
    now = now or utcnow()
    store = store or SqlRequestStore(s)
    req = get_request(s, request_id, store=store)
    remarks = clean_text(remarks)
    _check_length(remarks, REMARKS_MAX_LENGTH, "remarks")

    transition = _machine.plan(req.status, action, now=now, remarks=remarks, actor_id=_actor_id(user))
    if not store.apply_transition(req.id, transition):
        # Someone else moved the request between our read and our write.
        current = s.execute(select(CertificateRequest.status).where(CertificateRequest.id == req.id)).scalar_one_or_none()
        raise StateConflict(
            f"Cannot {action} this request; it is now {current or 'gone'}.",
            action=action,
            status=current,
        )

    record_event(
        s,
        actor=user,
        action=f"certificate_request.{action}",
        entity_type="CertificateRequest",
        entity_id=str(req.id),
        reason=remarks,
        metadata={"from": transition.from_status.value, "to": transition.to_status.value},
    )
    return get_request(s, req.id, store=store)


def approve_request(s: Session, request_id: int, *, remarks: str | None = None, user: User | None = None, now: datetime | None = None) -> CertificateRequest:
    return _transition(s, request_id, APPROVE, remarks=remarks, user=user, now=now)


def reject_request(s: Session, request_id: int, *, remarks: str | None, user: User | None = None, now: datetime | None = None) -> CertificateRequest:
    return _transition(s, request_id, REJECT, remarks=remarks, user=user, now=now)


def release_request(s: Session, request_id: int, *, remarks: str | None = None, user: User | None = None, now: datetime | None = None) -> CertificateRequest:
    return _transition(s, request_id, RELEASE, remarks=remarks, user=user, now=now)


def allowed_actions(s: Session, req: CertificateRequest) -> list[str]:
    actions = _machine.allowed_actions(req.status)
    if req.request_status in ISSUABLE_STATUSES and document_for_request(s, req.id) is None:
        actions.append("issue")
    return actions


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


def _validate_issue_inputs(valid_from: Any, valid_until: Any, signer_name: Any, signer_title: Any) -> tuple[date, date, str, str]:
    if not isinstance(valid_from, date):
        raise ValidationError("valid_from is required.", field="valid_from")
    if not isinstance(valid_until, date):
        raise ValidationError("valid_until is required.", field="valid_until")
    if isinstance(valid_from, datetime):
        valid_from = valid_from.date()
    if isinstance(valid_until, datetime):
        valid_until = valid_until.date()
    if valid_until <= valid_from:
        raise ValidationError("valid_until must be after valid_from.", field="valid_until")
    name = clean_text(signer_name)
    title = clean_text(signer_title)
    if not name:
        raise ValidationError("signer_name is required.", field="signer_name")
    if not title:
        raise ValidationError("signer_title is required.", field="signer_title")
    _check_length(name, 255, "signer_name")
    _check_length(title, 255, "signer_title")
    return valid_from, valid_until, name, title


def issue_document(
    s: Session,
    request_id: int,
    *,
    valid_from: date,
    valid_until: date,
    signer_name: str,
    signer_title: str,
    user: User | None = None,
    now: datetime | None = None,
    residents: ResidentDirectory | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> IssuedCertificate:
    """
    Materialize the certificate for an approved (or released) request.

    Consumes exactly one sequence number from the (type, valid_from.year)
    partition. Allocation and the certificate insert share the caller's
    transaction. A number that turns out to be taken already moves the
    counter past the partition's highest issued sequence and the insert is
    retried, at most max_retries times.
    """
    now = now or utcnow()
    valid_from, valid_until, signer_name, signer_title = _validate_issue_inputs(
        valid_from, valid_until, signer_name, signer_title
    )

    store = SqlRequestStore(s)
    req = get_request(s, request_id, store=store)
    if req.request_status not in ISSUABLE_STATUSES:
        raise StateConflict(
            f"Only approved or released requests can be issued (request is {req.status}).",
            action="issue",
            status=req.status,
        )
    existing = s.execute(
        select(IssuedCertificate.id).where(IssuedCertificate.certificate_request_id == req.id)
    ).scalar_one_or_none()
    if existing is not None:
        raise StateConflict("A certificate has already been issued for this request.", action="issue", document_id=existing)

    residents = residents or SqlResidentDirectory(s)
    resident_name = residents.display_name(req.resident_id) or "Unknown"

    # Re-check the status guard as a write, inside this transaction.
    if not store.touch_if_status(req.id, ISSUABLE_STATUSES, now=now):
        raise StateConflict("This request can no longer be issued.", action="issue")

    dtype = req.type
    year = valid_from.year
    allocator = SequenceAllocator(s, max_retries=max_retries)
    doc = None
    for attempt in range(1, allocator.max_retries + 1):
        sequence = allocator.next(dtype, year)
        number = format_document_number(dtype, year, sequence)
        candidate = IssuedCertificate(
            certificate_request_id=req.id,
            resident_id=req.resident_id,
            issued_by_user_id=_actor_id(user),
            document_type=dtype.value,
            document_number=number,
            sequence=sequence,
            purpose=req.purpose,
            valid_from=valid_from,
            valid_until=valid_until,
            is_valid=True,
            signer_name=signer_name,
            signer_title=signer_title,
            signed_at=now,
            qr_payload=build_qr_payload(
                document_number=number,
                resident_name=resident_name,
                document_type=dtype,
                valid_until=valid_until,
                issued_at=now,
            ),
            created_at=now,
        )
        try:
            # A collision rolls back this savepoint only.
            with s.begin_nested():
                s.add(candidate)
                s.flush()
        except IntegrityError as e:
            already = s.execute(
                select(IssuedCertificate.id).where(IssuedCertificate.certificate_request_id == req.id)
            ).scalar_one_or_none()
            if already is not None:
                raise StateConflict("A certificate has already been issued for this request.", action="issue", document_id=already) from e
            logger.warning(
                "Document number %s already taken; moving the %s/%s counter forward (attempt %s/%s)",
                number,
                dtype.value,
                year,
                attempt,
                allocator.max_retries,
            )
            allocator.catch_up(dtype, year)
            continue
        doc = candidate
        break

    if doc is None:
        logger.error("Gave up allocating a %s/%s document number after %s attempts", dtype.value, year, allocator.max_retries)
        raise AllocationConflict(document_type=dtype.value, year=year, attempts=allocator.max_retries)

    record_event(
        s,
        actor=user,
        action="certificate.issue",
        entity_type="IssuedCertificate",
        entity_id=str(doc.id),
        metadata={
            "request_id": req.id,
            "document_number": doc.document_number,
            "valid_from": valid_from.isoformat(),
            "valid_until": valid_until.isoformat(),
        },
    )
    logger.info("Issued %s for request %s", doc.document_number, req.id)
    return doc


# ---------------------------------------------------------------------------
# Post-issuance
# ---------------------------------------------------------------------------


def get_document(s: Session, document_id: int) -> IssuedCertificate:
    doc = s.get(IssuedCertificate, document_id)
    if doc is None:
        raise NotFound("IssuedCertificate", document_id)
    return doc


def document_for_request(s: Session, request_id: int) -> IssuedCertificate | None:
    return s.execute(
        select(IssuedCertificate).where(IssuedCertificate.certificate_request_id == request_id)
    ).scalar_one_or_none()


def invalidate_document(
    s: Session,
    document_id: int,
    *,
    reason: str | None = None,
    user: User | None = None,
    now: datetime | None = None,
) -> IssuedCertificate:
    """
    Flip is_valid to False. Idempotent: a second call changes nothing and
    records nothing. There is no way back.
    """
    now = now or utcnow()
    doc = get_document(s, document_id)
    reason = clean_text(reason)
    _check_length(reason, 512, "reason")

    result = s.execute(
        update(IssuedCertificate)
        .where(IssuedCertificate.id == doc.id, IssuedCertificate.is_valid.is_(True))
        .values(
            is_valid=False,
            invalidated_at=now,
            invalidated_by_user_id=_actor_id(user),
            invalidation_reason=reason,
        )
        .execution_options(synchronize_session=False)
    )
    s.refresh(doc)
    if result.rowcount == 1:
        record_event(
            s,
            actor=user,
            action="certificate.invalidate",
            entity_type="IssuedCertificate",
            entity_id=str(doc.id),
            reason=reason,
            metadata={"document_number": doc.document_number},
        )
        logger.info("Invalidated %s", doc.document_number)
    return doc


def sign_document(
    s: Session,
    document_id: int,
    *,
    signer_name: str | None,
    signer_title: str | None,
    user: User | None = None,
    now: datetime | None = None,
) -> IssuedCertificate:
    """Refresh the signature block. Number and validity window are untouched."""
    now = now or utcnow()
    doc = get_document(s, document_id)
    name = clean_text(signer_name)
    title = clean_text(signer_title)
    if not name:
        raise ValidationError("signer_name is required.", field="signer_name")
    if not title:
        raise ValidationError("signer_title is required.", field="signer_title")
    if not doc.is_valid:
        raise StateConflict("Invalidated certificates cannot be re-signed.", action="sign")

    previous = {"signer_name": doc.signer_name, "signer_title": doc.signer_title}
    doc.signer_name = name
    doc.signer_title = title
    doc.signed_at = now
    s.flush()

    record_event(
        s,
        actor=user,
        action="certificate.sign",
        entity_type="IssuedCertificate",
        entity_id=str(doc.id),
        metadata={"document_number": doc.document_number, "previous": previous},
    )
    return doc


def store_artifact(
    s: Session,
    doc: IssuedCertificate,
    *,
    renderer: CertificateRenderer,
    storage: Storage,
    residents: ResidentDirectory | None = None,
) -> str:
    """Render the certificate and put it in storage. Returns the storage key."""
    residents = residents or SqlResidentDirectory(s)
    resident_name = residents.display_name(doc.resident_id) or "Unknown"
    data = renderer.render(doc, resident_name=resident_name)
    key = artifact_key(doc, renderer)
    storage.put_bytes(key, data, content_type=renderer.content_type)
    doc.pdf_storage_key = key
    s.flush()
    return key


def regenerate_document(
    s: Session,
    document_id: int,
    *,
    renderer: CertificateRenderer,
    storage: Storage,
    user: User | None = None,
    now: datetime | None = None,
    residents: ResidentDirectory | None = None,
) -> IssuedCertificate:
    """
    Re-render the artifact from the stored fields. Never allocates a number
    and never touches document_number, valid_from or valid_until.
    """
    now = now or utcnow()
    doc = get_document(s, document_id)
    key = store_artifact(s, doc, renderer=renderer, storage=storage, residents=residents)
    doc.last_regenerated_at = now
    s.flush()

    record_event(
        s,
        actor=user,
        action="certificate.regenerate",
        entity_type="IssuedCertificate",
        entity_id=str(doc.id),
        metadata={"document_number": doc.document_number, "storage_key": key},
    )
    logger.info("Regenerated artifact for %s -> %s", doc.document_number, key)
    return doc


def get_document_status(s: Session, document_id: int, *, now: datetime, window_days: int = 30) -> StatusReport:
    return evaluate(get_document(s, document_id), now, window_days=window_days)


def verify_document(
    s: Session,
    *,
    now: datetime,
    document_number: str | None = None,
    qr_payload: str | None = None,
    window_days: int = 30,
) -> Verification:
    """Public check of a certificate by number or by the scanned QR payload."""
    payload = clean_text(qr_payload)
    number = clean_text(document_number)
    decoded: dict[str, Any] = {}
    if payload:
        decoded = decode_qr_payload(payload)
        number = number or str(decoded["document_number"])
    if not number:
        raise ValidationError("document_number or qr_payload is required.", field="document_number")

    doc = s.execute(select(IssuedCertificate).where(IssuedCertificate.document_number == number)).scalar_one_or_none()
    if doc is None:
        raise NotFound("IssuedCertificate", number, message=f"Certificate {number} not found.")
    return Verification(
        certificate=doc,
        report=evaluate(doc, now, window_days=window_days),
        payload_matches=(doc.qr_payload == payload) if payload else None,
    )


# ---------------------------------------------------------------------------
# Listings and statistics
# ---------------------------------------------------------------------------


def _paginate(s: Session, stmt, *, page: int, per_page: int) -> Page:
    page = max(1, int(page or 1))
    per_page = min(MAX_PER_PAGE, max(1, int(per_page or DEFAULT_PER_PAGE)))
    total = s.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    items = list(s.execute(stmt.limit(per_page).offset((page - 1) * per_page)).scalars().all())
    return Page(items=items, total=total, page=page, per_page=per_page)


def _resident_search(term: str):
    like = f"%{term}%"
    return or_(Resident.first_name.ilike(like), Resident.last_name.ilike(like))


def list_requests(
    s: Session,
    *,
    status: RequestStatus | None = None,
    document_type: DocumentType | None = None,
    resident_id: int | None = None,
    search: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = 1,
    per_page: int = DEFAULT_PER_PAGE,
) -> Page:
    stmt = select(CertificateRequest).where(CertificateRequest.is_deleted.is_(False))
    if status is not None:
        stmt = stmt.where(CertificateRequest.status == status.value)
    if document_type is not None:
        stmt = stmt.where(CertificateRequest.document_type == document_type.value)
    if resident_id is not None:
        stmt = stmt.where(CertificateRequest.resident_id == resident_id)
    term = clean_text(search)
    if term:
        stmt = stmt.join(Resident, Resident.id == CertificateRequest.resident_id).where(_resident_search(term))
    if date_from is not None:
        stmt = stmt.where(CertificateRequest.requested_at >= datetime.combine(date_from, datetime.min.time()))
    if date_to is not None:
        stmt = stmt.where(CertificateRequest.requested_at < datetime.combine(date_to + timedelta(days=1), datetime.min.time()))
    stmt = stmt.order_by(CertificateRequest.requested_at.desc(), CertificateRequest.id.desc())
    return _paginate(s, stmt, page=page, per_page=per_page)


def _status_clause(status: DocumentStatus, today: date):
    # Same priority as validity.document_status, expressed in SQL.
    if status is DocumentStatus.INVALID:
        return IssuedCertificate.is_valid.is_(False)
    if status is DocumentStatus.EXPIRED:
        return and_(IssuedCertificate.is_valid.is_(True), IssuedCertificate.valid_until < today)
    return and_(IssuedCertificate.is_valid.is_(True), IssuedCertificate.valid_until >= today)


def list_documents(
    s: Session,
    *,
    now: datetime,
    status: DocumentStatus | None = None,
    document_type: DocumentType | None = None,
    resident_id: int | None = None,
    search: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int = 1,
    per_page: int = DEFAULT_PER_PAGE,
) -> Page:
    stmt = select(IssuedCertificate)
    if status is not None:
        stmt = stmt.where(_status_clause(status, now.date()))
    if document_type is not None:
        stmt = stmt.where(IssuedCertificate.document_type == document_type.value)
    if resident_id is not None:
        stmt = stmt.where(IssuedCertificate.resident_id == resident_id)
    term = clean_text(search)
    if term:
        stmt = stmt.join(Resident, Resident.id == IssuedCertificate.resident_id).where(
            or_(IssuedCertificate.document_number.ilike(f"%{term}%"), _resident_search(term))
        )
    if date_from is not None:
        stmt = stmt.where(IssuedCertificate.created_at >= datetime.combine(date_from, datetime.min.time()))
    if date_to is not None:
        stmt = stmt.where(IssuedCertificate.created_at < datetime.combine(date_to + timedelta(days=1), datetime.min.time()))
    stmt = stmt.order_by(IssuedCertificate.created_at.desc(), IssuedCertificate.id.desc())
    return _paginate(s, stmt, page=page, per_page=per_page)


def request_statistics(s: Session) -> dict[str, Any]:
    live = CertificateRequest.is_deleted.is_(False)
    by_status = dict.fromkeys((st.value for st in RequestStatus), 0)
    for status, count in s.execute(
        select(CertificateRequest.status, func.count()).where(live).group_by(CertificateRequest.status)
    ).all():
        by_status[status] = count
    by_type = dict.fromkeys((t.value for t in DocumentType), 0)
    for dtype, count in s.execute(
        select(CertificateRequest.document_type, func.count()).where(live).group_by(CertificateRequest.document_type)
    ).all():
        by_type[dtype] = count
    return {"total": sum(by_status.values()), "by_status": by_status, "by_type": by_type}


def document_statistics(s: Session, *, now: datetime, window_days: int = 30) -> dict[str, Any]:
    today = now.date()

    def _count(*criteria) -> int:
        return s.execute(select(func.count()).select_from(IssuedCertificate).where(*criteria)).scalar_one()

    by_type = dict.fromkeys((t.value for t in DocumentType), 0)
    for dtype, count in s.execute(
        select(IssuedCertificate.document_type, func.count()).group_by(IssuedCertificate.document_type)
    ).all():
        by_type[dtype] = count

    return {
        "total": sum(by_type.values()),
        "valid": _count(_status_clause(DocumentStatus.VALID, today)),
        "expired": _count(_status_clause(DocumentStatus.EXPIRED, today)),
        "invalid": _count(_status_clause(DocumentStatus.INVALID, today)),
        "expiring_soon": _count(
            _status_clause(DocumentStatus.VALID, today),
            IssuedCertificate.valid_until <= today + timedelta(days=window_days),
        ),
        "by_type": by_type,
    }
