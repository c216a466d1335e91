import threading
from datetime import date, datetime

import pytest

from app.brgy import create_app
from app.brgy.db import session_scope
from app.brgy.errors import AllocationConflict, StateConflict
from app.brgy.models import Base
from app.brgy.modules.certificates import service
from app.brgy.modules.certificates.models import IssuedCertificate, SequenceCounter
from app.brgy.modules.certificates.sequence import SequenceAllocator
from app.brgy.modules.certificates.types import DocumentType
from app.brgy.modules.residents.models import Resident

NOW = datetime(2024, 1, 1, 9, 0, 0)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        s.add(Resident(id=1, first_name="Maria", last_name="Santos"))
    return app


def test_partition_starts_at_one_and_increments(app):
    with session_scope(app) as s:
        alloc = SequenceAllocator(s)
        assert alloc.peek(DocumentType.CLEARANCE, 2024) == 0
        assert alloc.next(DocumentType.CLEARANCE, 2024) == 1
        assert alloc.next(DocumentType.CLEARANCE, 2024) == 2
        assert alloc.peek(DocumentType.CLEARANCE, 2024) == 2


def test_partitions_are_independent(app):
    with session_scope(app) as s:
        alloc = SequenceAllocator(s)
        assert alloc.next(DocumentType.CLEARANCE, 2024) == 1
        assert alloc.next(DocumentType.INDIGENCY, 2024) == 1
        assert alloc.next(DocumentType.CLEARANCE, 2025) == 1
        assert alloc.next(DocumentType.CLEARANCE, 2024) == 2

    with session_scope(app) as s:
        rows = {(r.document_type, r.year): r.last_value for r in s.query(SequenceCounter).all()}
    assert rows == {("clearance", 2024): 2, ("indigency", 2024): 1, ("clearance", 2025): 1}


def test_counter_survives_across_transactions(app):
    with session_scope(app) as s:
        SequenceAllocator(s).next(DocumentType.RESIDENCY, 2024)
    with session_scope(app) as s:
        assert SequenceAllocator(s).next(DocumentType.RESIDENCY, 2024) == 2


def test_lost_compare_and_swap_retries_then_raises(app, monkeypatch):
    calls = []

    def _always_lose(self, document_type, year, expected):
        calls.append(expected)
        return False

    monkeypatch.setattr(SequenceAllocator, "_compare_and_swap", _always_lose)
    with session_scope(app) as s:
        with pytest.raises(AllocationConflict) as exc:
            SequenceAllocator(s, max_retries=3).next(DocumentType.CLEARANCE, 2024)
    assert len(calls) == 3
    assert exc.value.details["attempts"] == 3
    assert exc.value.status_code == 503


def test_lost_race_then_win_returns_fresh_value(app, monkeypatch):
    original = SequenceAllocator._compare_and_swap
    state = {"lost": False}

    def _lose_once(self, document_type, year, expected):
        if not state["lost"]:
            state["lost"] = True
            # Simulate another issuer claiming the number in between.
            assert original(self, document_type, year, expected)
            return False
        return original(self, document_type, year, expected)

    monkeypatch.setattr(SequenceAllocator, "_compare_and_swap", _lose_once)
    with session_scope(app) as s:
        assert SequenceAllocator(s).next(DocumentType.INDIGENCY, 2024) == 2


def _approved_requests(app, n, document_type="clearance"):
    ids = []
    with session_scope(app) as s:
        for i in range(n):
            req = service.create_request(
                s, resident_id=1, document_type=document_type, purpose=f"purpose {i}", now=NOW
            )
            service.approve_request(s, req.id, now=NOW)
            ids.append(req.id)
    return ids


def test_concurrent_issuance_hands_out_distinct_numbers(app):
    n = 8
    ids = _approved_requests(app, n)
    numbers: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()
    start = threading.Barrier(n)

    def _issue(request_id: int) -> None:
        try:
            start.wait()
            with session_scope(app) as s:
                doc = service.issue_document(
                    s,
                    request_id,
                    valid_from=date(2024, 1, 1),
                    valid_until=date(2024, 7, 1),
                    signer_name="Hon. Pedro Reyes",
                    signer_title="Punong Barangay",
                    now=NOW,
                )
                number = doc.document_number
            with lock:
                numbers.append(number)
        except BaseException as e:  # surfaced below
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=_issue, args=(rid,)) for rid in ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=120)

    assert errors == []
    assert sorted(numbers) == [f"2024-CLE-{i:04d}" for i in range(1, n + 1)]

    with session_scope(app) as s:
        assert s.query(IssuedCertificate).count() == n
        assert SequenceAllocator(s).peek(DocumentType.CLEARANCE, 2024) == n


def test_concurrent_issuance_of_one_request_yields_one_certificate(app):
    n = 4
    request_id, later_id = _approved_requests(app, 2)
    outcomes: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()
    start = threading.Barrier(n)

    def _issue() -> None:
        try:
            start.wait()
            with session_scope(app) as s:
                number = service.issue_document(
                    s,
                    request_id,
                    valid_from=date(2024, 1, 1),
                    valid_until=date(2024, 7, 1),
                    signer_name="Hon. Pedro Reyes",
                    signer_title="Punong Barangay",
                    now=NOW,
                ).document_number
            with lock:
                outcomes.append(number)
        except StateConflict:
            with lock:
                outcomes.append("conflict")
        except BaseException as e:  # surfaced below
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=_issue) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=120)

    assert errors == []
    assert sorted(outcomes) == ["2024-CLE-0001"] + ["conflict"] * (n - 1)

    with session_scope(app) as s:
        later = service.issue_document(
            s,
            later_id,
            valid_from=date(2024, 1, 1),
            valid_until=date(2024, 7, 1),
            signer_name="Hon. Pedro Reyes",
            signer_title="Punong Barangay",
            now=NOW,
        )
        assert later.document_number == "2024-CLE-0002"


def test_new_counter_starts_after_existing_certificates(app):
    (request_id,) = _approved_requests(app, 1)
    with session_scope(app) as s:
        service.issue_document(
            s,
            request_id,
            valid_from=date(2024, 1, 1),
            valid_until=date(2024, 7, 1),
            signer_name="Hon. Pedro Reyes",
            signer_title="Punong Barangay",
            now=NOW,
        )
    with session_scope(app) as s:
        s.query(SequenceCounter).delete()

    with session_scope(app) as s:
        alloc = SequenceAllocator(s)
        assert alloc.next(DocumentType.CLEARANCE, 2024) == 2
        assert alloc.next(DocumentType.INDIGENCY, 2024) == 1


def test_catch_up_only_moves_forward(app):
    (request_id,) = _approved_requests(app, 1)
    with session_scope(app) as s:
        service.issue_document(
            s,
            request_id,
            valid_from=date(2024, 1, 1),
            valid_until=date(2024, 7, 1),
            signer_name="Hon. Pedro Reyes",
            signer_title="Punong Barangay",
            now=NOW,
        )
        alloc = SequenceAllocator(s)
        for _ in range(3):
            alloc.next(DocumentType.CLEARANCE, 2024)
        assert alloc.peek(DocumentType.CLEARANCE, 2024) == 4
        assert alloc.catch_up(DocumentType.CLEARANCE, 2024) == 1
        assert alloc.peek(DocumentType.CLEARANCE, 2024) == 4
