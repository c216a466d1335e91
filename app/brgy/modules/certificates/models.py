from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.brgy.models import Base
from app.brgy.modules.certificates.types import DocumentType, RequestStatus
from app.brgy.utils import utcnow

if TYPE_CHECKING:
    from app.brgy.modules.residents.models import Resident


class CertificateRequest(Base):
    __tablename__ = "certificate_requests"
    __table_args__ = (
        Index("idx_certificate_requests_resident_status", "resident_id", "status"),
        Index("idx_certificate_requests_type_status", "document_type", "status"),
        Index("idx_certificate_requests_requested_at", "requested_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    resident_id: Mapped[int] = mapped_column(ForeignKey("residents.id", ondelete="RESTRICT"), nullable=False)
    requested_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    document_type: Mapped[str] = mapped_column(String(64), nullable=False)
    purpose: Mapped[str] = mapped_column(Text, nullable=False)
    additional_requirements: Mapped[str | None] = mapped_column(Text, nullable=True)

    # pending -> approved -> released; pending|approved -> rejected
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RequestStatus.PENDING.value)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Each set once, by the matching transition only.
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    approved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    released_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Soft removal is owned by the records screens, never by the workflow.
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    resident: Mapped["Resident"] = relationship("Resident", foreign_keys=[resident_id], lazy="selectin")
    issued_certificate: Mapped["IssuedCertificate | None"] = relationship(
        "IssuedCertificate",
        back_populates="certificate_request",
        uselist=False,
        lazy="selectin",
    )

    @property
    def type(self) -> DocumentType:
        return DocumentType(self.document_type)

    @property
    def request_status(self) -> RequestStatus:
        return RequestStatus(self.status)


class IssuedCertificate(Base):
    __tablename__ = "issued_certificates"
    __table_args__ = (
        Index("idx_issued_certificates_resident_type", "resident_id", "document_type"),
        Index("idx_issued_certificates_validity", "valid_from", "valid_until"),
        Index("idx_issued_certificates_is_valid", "is_valid"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # UNIQUE: a request yields at most one document, enforced by the database.
    certificate_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("certificate_requests.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    resident_id: Mapped[int] = mapped_column(ForeignKey("residents.id", ondelete="RESTRICT"), nullable=False)
    issued_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    document_type: Mapped[str] = mapped_column(String(64), nullable=False)
    document_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # e.g. "2024-CLE-0001"
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    purpose: Mapped[str] = mapped_column(Text, nullable=False)

    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[date] = mapped_column(Date, nullable=False)
    # Only ever flips true -> false.
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    invalidated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    invalidated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    invalidation_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    signer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    signer_title: Mapped[str] = mapped_column(String(255), nullable=False)
    signed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    qr_payload: Mapped[str] = mapped_column(Text, nullable=False)
    pdf_storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    last_regenerated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    certificate_request: Mapped["CertificateRequest | None"] = relationship(
        "CertificateRequest",
        back_populates="issued_certificate",
        lazy="selectin",
    )
    resident: Mapped["Resident"] = relationship("Resident", foreign_keys=[resident_id], lazy="selectin")

    @property
    def type(self) -> DocumentType:
        return DocumentType(self.document_type)

    @property
    def issued_at(self) -> datetime:
        return self.created_at


class SequenceCounter(Base):
    """
    One row per (document_type, year) partition. last_value is the last
    sequence handed out; it only moves forward, by compare-and-swap.
    """

    __tablename__ = "certificate_sequences"

    document_type: Mapped[str] = mapped_column(String(64), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
