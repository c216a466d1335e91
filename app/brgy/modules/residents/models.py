from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.brgy.models import Base
from app.brgy.utils import utcnow


class Resident(Base):
    """
    Resident registry row. Owned by the resident records screens; the
    certificate workflow only reads it.
    """

    __tablename__ = "residents"
    __table_args__ = (
        Index("idx_residents_last_first", "last_name", "first_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    middle_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    suffix: Mapped[str | None] = mapped_column(String(16), nullable=True)  # "Jr.", "III"

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    @property
    def full_name(self) -> str:
        parts = [self.first_name]
        if self.middle_name:
            parts.append(f"{self.middle_name[0]}.")
        parts.append(self.last_name)
        name = " ".join(p.strip() for p in parts if p and p.strip())
        if self.suffix:
            name = f"{name} {self.suffix.strip()}"
        return name
