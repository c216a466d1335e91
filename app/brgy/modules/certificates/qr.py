from __future__ import annotations

import base64
import binascii
import json
from datetime import date, datetime
from typing import Any

from app.brgy.errors import ValidationError
from app.brgy.modules.certificates.types import DocumentType


def build_qr_payload(
    *,
    document_number: str,
    resident_name: str,
    document_type: DocumentType,
    valid_until: date,
    issued_at: datetime,
) -> str:
    """
    Opaque summary handed to the QR image renderer: base64 of compact JSON.
    """
    data = {
        "document_number": document_number,
        "resident_name": resident_name,
        "document_type": DocumentType(document_type).value,
        "valid_until": valid_until.isoformat(),
        "issued_at": issued_at.strftime("%Y-%m-%d %H:%M:%S"),
    }
    raw = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_qr_payload(payload: str) -> dict[str, Any]:
    try:
        data = json.loads(base64.b64decode((payload or "").strip(), validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError("QR payload is not a certificate summary.", field="qr_payload") from e
    if not isinstance(data, dict) or not data.get("document_number"):
        raise ValidationError("QR payload is not a certificate summary.", field="qr_payload")
    return data
