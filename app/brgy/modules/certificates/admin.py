from __future__ import annotations

from datetime import datetime
from typing import Any

from flask import Blueprint, current_app, g, jsonify, request, send_file

from app.brgy.db import db_session
from app.brgy.errors import NotFound, ValidationError
from app.brgy.models import User
from app.brgy.notifications import notify
from app.brgy.rbac import require_permission
from app.brgy.storage import StorageError, storage_from_config
from app.brgy.utils import Clock, parse_date
from app.brgy.modules.certificates import service
from app.brgy.modules.certificates.models import CertificateRequest, IssuedCertificate
from app.brgy.modules.certificates.rendering import PDF_CONTENT_TYPE, renderer_from_config
from app.brgy.modules.certificates.types import parse_document_status, parse_document_type, parse_request_status
from app.brgy.modules.certificates.validity import evaluate

bp = Blueprint("certificates", __name__)


def _current_user() -> User | None:
    return getattr(g, "current_user", None)


def _now() -> datetime:
    clock: Clock = current_app.extensions["brgy_clock"]
    return clock()


def _window_days() -> int:
    return int(current_app.config.get("CERTIFICATE_EXPIRING_SOON_DAYS") or 30)


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return request.form.to_dict()
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _int_arg(name: str, default: int | None = None) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer.", field=name) from None


def _storage():
    return current_app.extensions.get("brgy_storage") or storage_from_config(current_app.config)


def _renderer():
    return current_app.extensions.get("brgy_renderer") or renderer_from_config(current_app.config)


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _resident_name(obj: CertificateRequest | IssuedCertificate) -> str | None:
    return obj.resident.full_name if obj.resident is not None else None


def _request_dict(s, req: CertificateRequest) -> dict[str, Any]:
    doc = service.document_for_request(s, req.id)
    return {
        "id": req.id,
        "resident_id": req.resident_id,
        "resident_name": _resident_name(req),
        "document_type": req.document_type,
        "document_type_label": req.type.label,
        "purpose": req.purpose,
        "additional_requirements": req.additional_requirements,
        "status": req.status,
        "remarks": req.remarks,
        "requested_at": _iso(req.requested_at),
        "approved_at": _iso(req.approved_at),
        "released_at": _iso(req.released_at),
        "rejected_at": _iso(req.rejected_at),
        "updated_at": _iso(req.updated_at),
        "issued_certificate_id": doc.id if doc else None,
        "allowed_actions": service.allowed_actions(s, req),
    }


def _document_dict(doc: IssuedCertificate, now: datetime) -> dict[str, Any]:
    report = evaluate(doc, now, window_days=_window_days())
    return {
        "id": doc.id,
        "certificate_request_id": doc.certificate_request_id,
        "resident_id": doc.resident_id,
        "resident_name": _resident_name(doc),
        "document_type": doc.document_type,
        "document_type_label": doc.type.label,
        "document_number": doc.document_number,
        "purpose": doc.purpose,
        "valid_from": _iso(doc.valid_from),
        "valid_until": _iso(doc.valid_until),
        "is_valid": doc.is_valid,
        "invalidated_at": _iso(doc.invalidated_at),
        "invalidation_reason": doc.invalidation_reason,
        "signer_name": doc.signer_name,
        "signer_title": doc.signer_title,
        "signed_at": _iso(doc.signed_at),
        "qr_payload": doc.qr_payload,
        "has_pdf": bool(doc.pdf_storage_key),
        "last_regenerated_at": _iso(doc.last_regenerated_at),
        "issued_at": _iso(doc.issued_at),
        **report.to_dict(),
    }


def _page_dict(page: service.Page, items: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "ok": True,
        "items": items,
        "page": page.page,
        "per_page": page.per_page,
        "total": page.total,
        "pages": page.pages,
    }


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@bp.get("/certificate-requests")
@require_permission("certificates.view")
def list_requests():
    s = db_session()
    status = request.args.get("status")
    dtype = request.args.get("document_type")
    page = service.list_requests(
        s,
        status=parse_request_status(status) if status else None,
        document_type=parse_document_type(dtype) if dtype else None,
        resident_id=_int_arg("resident_id"),
        search=request.args.get("search"),
        date_from=parse_date(request.args.get("date_from"), field="date_from"),
        date_to=parse_date(request.args.get("date_to"), field="date_to"),
        page=_int_arg("page", 1),
        per_page=_int_arg("per_page", service.DEFAULT_PER_PAGE),
    )
    return jsonify(_page_dict(page, [_request_dict(s, r) for r in page.items]))


@bp.post("/certificate-requests")
@require_permission("certificates.request")
def create_request():
    s = db_session()
    data = _payload()
    req = service.create_request(
        s,
        resident_id=data.get("resident_id"),
        document_type=data.get("document_type"),
        purpose=data.get("purpose"),
        additional_requirements=data.get("additional_requirements"),
        user=_current_user(),
        now=_now(),
    )
    s.commit()
    notify(
        current_app.extensions.get("notification_sink"),
        "certificate_request.created",
        "New certificate request",
        f"{req.type.label} requested for resident #{req.resident_id}.",
        request_id=req.id,
    )
    return jsonify({"ok": True, "request": _request_dict(s, req)}), 201


@bp.get("/certificate-requests/statistics")
@require_permission("certificates.view")
def request_statistics():
    return jsonify({"ok": True, **service.request_statistics(db_session())})


@bp.get("/certificate-requests/<int:request_id>")
@require_permission("certificates.view")
def get_request(request_id: int):
    s = db_session()
    return jsonify({"ok": True, "request": _request_dict(s, service.get_request(s, request_id))})


@bp.put("/certificate-requests/<int:request_id>")
@require_permission("certificates.request")
def update_request(request_id: int):
    s = db_session()
    req = service.update_request(s, request_id, _payload(), user=_current_user(), now=_now())
    s.commit()
    return jsonify({"ok": True, "request": _request_dict(s, req)})


def _run_transition(fn, request_id: int, event: str, title: str):
    s = db_session()
    data = _payload()
    req = fn(s, request_id, remarks=data.get("remarks"), user=_current_user(), now=_now())
    s.commit()
    notify(
        current_app.extensions.get("notification_sink"),
        event,
        title,
        f"Request #{req.id} ({req.type.label}) is now {req.status}.",
        request_id=req.id,
        resident_id=req.resident_id,
    )
    return jsonify({"ok": True, "request": _request_dict(s, req)})


@bp.post("/certificate-requests/<int:request_id>/approve")
@require_permission("certificates.approve")
def approve_request(request_id: int):
    return _run_transition(service.approve_request, request_id, "certificate_request.approved", "Certificate request approved")


@bp.post("/certificate-requests/<int:request_id>/reject")
@require_permission("certificates.approve")
def reject_request(request_id: int):
    return _run_transition(service.reject_request, request_id, "certificate_request.rejected", "Certificate request rejected")


@bp.post("/certificate-requests/<int:request_id>/release")
@require_permission("certificates.issue")
def release_request(request_id: int):
    return _run_transition(service.release_request, request_id, "certificate_request.released", "Certificate released")


@bp.post("/certificate-requests/<int:request_id>/issue")
@require_permission("certificates.issue")
def issue_document(request_id: int):
    s = db_session()
    cfg = current_app.config
    data = _payload()
    now = _now()

    default_from, default_until = service.default_validity_window(now.date(), int(cfg.get("CERTIFICATE_VALIDITY_DAYS") or 30))
    valid_from = parse_date(data.get("valid_from"), field="valid_from") if data.get("valid_from") else default_from
    valid_until = parse_date(data.get("valid_until"), field="valid_until") if data.get("valid_until") else default_until

    doc = service.issue_document(
        s,
        request_id,
        valid_from=valid_from,
        valid_until=valid_until,
        signer_name=data.get("signer_name") or cfg.get("CERTIFICATE_SIGNER_NAME"),
        signer_title=data.get("signer_title") or cfg.get("CERTIFICATE_SIGNER_TITLE"),
        user=_current_user(),
        now=now,
        max_retries=int(cfg.get("SEQUENCE_MAX_RETRIES") or service.DEFAULT_MAX_RETRIES),
    )
    s.commit()

    # The number is committed; the artifact can be produced again later.
    try:
        service.store_artifact(s, doc, renderer=_renderer(), storage=_storage())
        s.commit()
    except Exception:
        s.rollback()
        current_app.logger.warning(
            "PDF render/store failed for %s (request_id=%s); run scripts/regenerate_pdfs.py",
            doc.document_number,
            getattr(g, "request_id", None),
            exc_info=True,
        )

    notify(
        current_app.extensions.get("notification_sink"),
        "certificate.issued",
        "Certificate issued",
        f"{doc.type.label} {doc.document_number} has been issued.",
        document_id=doc.id,
        resident_id=doc.resident_id,
    )
    return jsonify({"ok": True, "certificate": _document_dict(doc, now)}), 201


# ---------------------------------------------------------------------------
# Issued certificates
# ---------------------------------------------------------------------------


@bp.get("/issued-certificates")
@require_permission("certificates.view")
def list_documents():
    s = db_session()
    now = _now()
    status = request.args.get("status")
    dtype = request.args.get("document_type")
    page = service.list_documents(
        s,
        now=now,
        status=parse_document_status(status) if status else None,
        document_type=parse_document_type(dtype) if dtype else None,
        resident_id=_int_arg("resident_id"),
        search=request.args.get("search"),
        date_from=parse_date(request.args.get("date_from"), field="date_from"),
        date_to=parse_date(request.args.get("date_to"), field="date_to"),
        page=_int_arg("page", 1),
        per_page=_int_arg("per_page", service.DEFAULT_PER_PAGE),
    )
    return jsonify(_page_dict(page, [_document_dict(d, now) for d in page.items]))


@bp.get("/issued-certificates/statistics")
@require_permission("certificates.view")
def document_statistics():
    stats = service.document_statistics(db_session(), now=_now(), window_days=_window_days())
    return jsonify({"ok": True, **stats})


@bp.post("/issued-certificates/verify")
def verify_document():
    # Public: whoever holds the paper can check it.
    s = db_session()
    data = _payload()
    now = _now()
    result = service.verify_document(
        s,
        now=now,
        document_number=data.get("document_number"),
        qr_payload=data.get("qr_payload"),
        window_days=_window_days(),
    )
    doc = result.certificate
    return jsonify(
        {
            "ok": True,
            "document_number": doc.document_number,
            "document_type": doc.document_type,
            "resident_name": _resident_name(doc),
            "valid_from": _iso(doc.valid_from),
            "valid_until": _iso(doc.valid_until),
            "payload_matches": result.payload_matches,
            **result.report.to_dict(),
        }
    )


@bp.get("/issued-certificates/<int:document_id>")
@require_permission("certificates.view")
def get_document(document_id: int):
    s = db_session()
    return jsonify({"ok": True, "certificate": _document_dict(service.get_document(s, document_id), _now())})


@bp.get("/issued-certificates/<int:document_id>/status")
@require_permission("certificates.view")
def document_status(document_id: int):
    report = service.get_document_status(db_session(), document_id, now=_now(), window_days=_window_days())
    return jsonify({"ok": True, "id": document_id, **report.to_dict()})


@bp.post("/issued-certificates/<int:document_id>/invalidate")
@require_permission("certificates.invalidate")
def invalidate_document(document_id: int):
    s = db_session()
    data = _payload()
    doc = service.invalidate_document(s, document_id, reason=data.get("reason"), user=_current_user(), now=_now())
    s.commit()
    notify(
        current_app.extensions.get("notification_sink"),
        "certificate.invalidated",
        "Certificate invalidated",
        f"{doc.document_number} is no longer valid.",
        document_id=doc.id,
    )
    return jsonify({"ok": True, "certificate": _document_dict(doc, _now())})


@bp.post("/issued-certificates/<int:document_id>/sign")
@require_permission("certificates.issue")
def sign_document(document_id: int):
    s = db_session()
    cfg = current_app.config
    data = _payload()
    doc = service.sign_document(
        s,
        document_id,
        signer_name=data.get("signer_name") or cfg.get("CERTIFICATE_SIGNER_NAME"),
        signer_title=data.get("signer_title") or cfg.get("CERTIFICATE_SIGNER_TITLE"),
        user=_current_user(),
        now=_now(),
    )
    s.commit()
    return jsonify({"ok": True, "certificate": _document_dict(doc, _now())})


@bp.post("/issued-certificates/<int:document_id>/regenerate-pdf")
@require_permission("certificates.issue")
def regenerate_pdf(document_id: int):
    s = db_session()
    doc = service.regenerate_document(
        s,
        document_id,
        renderer=_renderer(),
        storage=_storage(),
        user=_current_user(),
        now=_now(),
    )
    s.commit()
    return jsonify({"ok": True, "certificate": _document_dict(doc, _now())})


@bp.get("/issued-certificates/<int:document_id>/download")
@require_permission("certificates.view")
def download_pdf(document_id: int):
    s = db_session()
    doc = service.get_document(s, document_id)
    if not doc.pdf_storage_key:
        raise NotFound("IssuedCertificate", document_id, message=f"No PDF has been generated for {doc.document_number}.")
    try:
        fobj = _storage().open(doc.pdf_storage_key)
    except StorageError as e:
        current_app.logger.warning("Stored PDF missing for %s: %s", doc.document_number, e)
        raise NotFound("IssuedCertificate", document_id, message=f"Stored PDF for {doc.document_number} is missing.") from e
    return send_file(fobj, mimetype=PDF_CONTENT_TYPE, as_attachment=True, download_name=f"{doc.document_number}.pdf")
