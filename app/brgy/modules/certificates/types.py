from __future__ import annotations

import enum

from app.brgy.errors import ValidationError


class DocumentType(str, enum.Enum):
    CLEARANCE = "clearance"
    INDIGENCY = "indigency"
    RESIDENCY = "residency"
    BUSINESS_PERMIT_ENDORSEMENT = "business_permit_endorsement"

    @property
    def code(self) -> str:
        return TYPE_CODES[self]

    @property
    def label(self) -> str:
        return TYPE_LABELS[self]


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    RELEASED = "released"
    REJECTED = "rejected"


class DocumentStatus(str, enum.Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


# Fixed 3-letter codes used in document numbers: 2024-CLE-0001.
TYPE_CODES: dict[DocumentType, str] = {
    DocumentType.CLEARANCE: "CLE",
    DocumentType.INDIGENCY: "IND",
    DocumentType.RESIDENCY: "RES",
    DocumentType.BUSINESS_PERMIT_ENDORSEMENT: "BUS",
}

TYPE_LABELS: dict[DocumentType, str] = {
    DocumentType.CLEARANCE: "Barangay Clearance",
    DocumentType.INDIGENCY: "Certificate of Indigency",
    DocumentType.RESIDENCY: "Certificate of Residency",
    DocumentType.BUSINESS_PERMIT_ENDORSEMENT: "Business Permit Endorsement",
}

_missing = (set(DocumentType) - set(TYPE_CODES)) | (set(DocumentType) - set(TYPE_LABELS))
if _missing:
    raise RuntimeError(f"Document types without code/label: {sorted(t.value for t in _missing)}")

# Older clients send the long form.
_TYPE_ALIASES = {"barangay_clearance": DocumentType.CLEARANCE}


def parse_document_type(value: object, *, field: str = "document_type") -> DocumentType:
    raw = (str(value) if value is not None else "").strip().lower()
    if not raw:
        raise ValidationError("Document type is required.", field=field)
    if raw in _TYPE_ALIASES:
        return _TYPE_ALIASES[raw]
    try:
        return DocumentType(raw)
    except ValueError:
        allowed = ", ".join(t.value for t in DocumentType)
        raise ValidationError(f"Unknown document type {raw!r}. Must be one of: {allowed}", field=field) from None


def parse_request_status(value: object, *, field: str = "status") -> RequestStatus:
    try:
        return RequestStatus(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in RequestStatus)
        raise ValidationError(f"Unknown request status {value!r}. Must be one of: {allowed}", field=field) from None


def parse_document_status(value: object, *, field: str = "status") -> DocumentStatus:
    try:
        return DocumentStatus(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in DocumentStatus)
        raise ValidationError(f"Unknown document status {value!r}. Must be one of: {allowed}", field=field) from None
