"""
Per-(document_type, year) sequence allocation.

Counting existing certificates and adding one hands the same number to two
concurrent issuers. Instead each partition owns a counter row that only moves
by compare-and-swap:

    UPDATE certificate_sequences SET last_value = :v + 1
     WHERE document_type = :t AND year = :y AND last_value = :v

A zero row count means another issuer won the race; we re-read and retry a
bounded number of times, then raise AllocationConflict. The allocator never
commits: it runs inside the issuer's transaction so the number and the
certificate row land (or roll back) together.

A new counter row starts at the highest sequence already issued in its
partition, so certificates imported or issued before the counter existed are
never handed out twice. catch_up() does the same for an existing row that has
fallen behind.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.brgy.errors import AllocationConflict
from app.brgy.modules.certificates.models import IssuedCertificate, SequenceCounter
from app.brgy.modules.certificates.types import DocumentType
from app.brgy.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5


def format_document_number(document_type: DocumentType, year: int, sequence: int) -> str:
    return f"{year}-{document_type.code}-{sequence:04d}"


class SequenceAllocator:
    def __init__(self, s: Session, *, max_retries: int = DEFAULT_MAX_RETRIES):
        self.s = s
        self.max_retries = max(1, int(max_retries))

    def _highest_issued(self, document_type: DocumentType, year: int) -> int:
        prefix = f"{year}-{document_type.code}-"
        return self.s.execute(
            select(func.coalesce(func.max(IssuedCertificate.sequence), 0)).where(
                IssuedCertificate.document_type == document_type.value,
                IssuedCertificate.document_number.like(f"{prefix}%"),
            )
        ).scalar_one()

    def _ensure_counter(self, document_type: DocumentType, year: int) -> None:
        values = {
            "document_type": document_type.value,
            "year": year,
            "last_value": self._highest_issued(document_type, year),
            "updated_at": utcnow(),
        }
        dialect = self.s.get_bind().dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as sqlite_insert

            self.s.execute(sqlite_insert(SequenceCounter).values(**values).on_conflict_do_nothing())
            return
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as pg_insert

            self.s.execute(pg_insert(SequenceCounter).values(**values).on_conflict_do_nothing())
            return

        exists = self.s.execute(
            select(SequenceCounter.last_value).where(
                SequenceCounter.document_type == document_type.value,
                SequenceCounter.year == year,
            )
        ).first()
        if exists is not None:
            return
        try:
            with self.s.begin_nested():
                self.s.add(SequenceCounter(**values))
        except IntegrityError:
            # Another issuer created the row first.
            pass

    def _read(self, document_type: DocumentType, year: int) -> int:
        return self.s.execute(
            select(SequenceCounter.last_value).where(
                SequenceCounter.document_type == document_type.value,
                SequenceCounter.year == year,
            )
        ).scalar_one()

    def _compare_and_swap(self, document_type: DocumentType, year: int, expected: int) -> bool:
        result = self.s.execute(
            update(SequenceCounter)
            .where(
                SequenceCounter.document_type == document_type.value,
                SequenceCounter.year == year,
                SequenceCounter.last_value == expected,
            )
            .values(last_value=expected + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def next(self, document_type: DocumentType, year: int) -> int:
        """Claim the next sequence for the partition. Starts at 1, never reused."""
        document_type = DocumentType(document_type)
        self._ensure_counter(document_type, year)

        for attempt in range(1, self.max_retries + 1):
            current = self._read(document_type, year)
            if self._compare_and_swap(document_type, year, current):
                return current + 1
            logger.warning(
                "Sequence CAS lost for %s/%s at last_value=%s (attempt %s/%s)",
                document_type.value,
                year,
                current,
                attempt,
                self.max_retries,
            )

        raise AllocationConflict(document_type=document_type.value, year=year, attempts=self.max_retries)

    def catch_up(self, document_type: DocumentType, year: int) -> int:
        """Move the counter forward past every number already issued in the partition."""
        document_type = DocumentType(document_type)
        highest = self._highest_issued(document_type, year)
        self.s.execute(
            update(SequenceCounter)
            .where(
                SequenceCounter.document_type == document_type.value,
                SequenceCounter.year == year,
                SequenceCounter.last_value < highest,
            )
            .values(last_value=highest, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return highest

    def peek(self, document_type: DocumentType, year: int) -> int:
        """Last sequence handed out for the partition (0 if none)."""
        row = self.s.execute(
            select(SequenceCounter.last_value).where(
                SequenceCounter.document_type == DocumentType(document_type).value,
                SequenceCounter.year == year,
            )
        ).first()
        return row[0] if row else 0
