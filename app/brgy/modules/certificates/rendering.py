from __future__ import annotations

import io
from dataclasses import dataclass

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas

from app.brgy.modules.certificates.models import IssuedCertificate

PDF_CONTENT_TYPE = "application/pdf"


class CertificateRenderer:
    """Turns an issued certificate into a downloadable artifact."""

    content_type = PDF_CONTENT_TYPE
    extension = "pdf"

    def render(self, doc: IssuedCertificate, *, resident_name: str) -> bytes:
        raise NotImplementedError


@dataclass(frozen=True)
class ReportLabRenderer(CertificateRenderer):
    """Plain one-page certificate. Layout lives with the print templates, not here."""

    barangay_name: str = "Barangay"

    def render(self, doc: IssuedCertificate, *, resident_name: str) -> bytes:
        buf = io.BytesIO()
        c = canvas.Canvas(buf, pagesize=A4)
        c.setTitle(f"{doc.type.label} {doc.document_number}")
        width, height = A4

        y = height - 3 * cm
        c.setFont("Helvetica-Bold", 16)
        c.drawCentredString(width / 2, y, self.barangay_name.upper())
        y -= 1.2 * cm
        c.setFont("Helvetica-Bold", 14)
        c.drawCentredString(width / 2, y, doc.type.label.upper())

        y -= 2 * cm
        c.setFont("Helvetica", 11)
        for label, value in (
            ("Document No.", doc.document_number),
            ("Issued to", resident_name),
            ("Purpose", doc.purpose),
            ("Valid from", doc.valid_from.isoformat()),
            ("Valid until", doc.valid_until.isoformat()),
        ):
            c.drawString(2.5 * cm, y, f"{label}:")
            c.drawString(6.5 * cm, y, str(value)[:90])
            y -= 0.8 * cm

        y -= 2 * cm
        c.setFont("Helvetica-Bold", 12)
        c.drawCentredString(width * 0.7, y, doc.signer_name)
        c.setFont("Helvetica", 10)
        c.drawCentredString(width * 0.7, y - 0.5 * cm, doc.signer_title)

        c.setFont("Helvetica", 7)
        c.drawString(2 * cm, 2 * cm, f"Verification: {doc.qr_payload}"[:160])

        c.showPage()
        c.save()
        return buf.getvalue()


def renderer_from_config(config: dict) -> CertificateRenderer:
    return ReportLabRenderer(barangay_name=(config.get("BARANGAY_NAME") or "Barangay").strip())


def artifact_key(doc: IssuedCertificate, renderer: CertificateRenderer) -> str:
    year = doc.valid_from.year
    return f"certificates/{year}/{doc.document_type}/{doc.document_number}.{renderer.extension}"
