"""Unit tests for the snapshot-based Record Store."""

import threading
from decimal import Decimal

import pytest
from mcp_recon.models import LoanRecord
from mcp_recon.record_store import RecordStore, Snapshot


def make_record(loan_id, difference="0", borrower="Borrower", status="Pending",
                servicer="100000", fnma=None):
    servicer_amt = Decimal(servicer)
    diff = Decimal(difference)
    return LoanRecord(
        loan_id=loan_id,
        borrower_name=borrower,
        servicer_loan_amount=servicer_amt,
        fnma_loan_amount=Decimal(fnma) if fnma is not None else servicer_amt - diff,
        difference_amount=diff,
        reconciled_status=status,
    )


@pytest.fixture
def records():
    return [
        make_record("LN-1", "0", status="Reconciled"),
        make_record("LN-2", "250.00"),
        make_record("LN-3", "-75.50"),
        make_record("LN-4", "0"),
    ]


@pytest.fixture
def store(records):
    s = RecordStore()
    s.build(records)
    return s


class TestBuild:
    def test_empty_store(self):
        s = RecordStore()
        assert s.count() == 0
        assert s.last_build_time() is None
        assert not s.is_loaded
        assert s.get_by_key("LN-1") is None

    def test_count_and_order(self, store, records):
        assert store.count() == 4
        assert [r.loan_id for r in store.snapshot().records] == [r.loan_id for r in records]

    def test_build_time_set(self, store):
        assert store.is_loaded
        assert store.last_build_time() is not None
        assert store.last_build_time().tzinfo is not None

    def test_mismatches_precomputed(self, store):
        mismatches = store.mismatches()
        assert [r.loan_id for r in mismatches] == ["LN-2", "LN-3"]
        # same object on every call, not recomputed
        assert store.mismatches() is mismatches

    def test_empty_batch(self):
        s = RecordStore()
        snap = s.build([])
        assert s.count() == 0
        assert snap.mismatches == ()
        assert s.is_loaded


class TestLookup:
    def test_hit(self, store):
        record = store.get_by_key("LN-3")
        assert record is not None
        assert record.difference_amount == Decimal("-75.50")

    def test_miss_returns_none(self, store):
        assert store.get_by_key("LN-999") is None

    def test_lookup_is_exact(self, store):
        assert store.get_by_key("ln-3") is None


class TestDuplicateKeys:
    def test_last_write_wins(self):
        s = RecordStore()
        s.build([
            make_record("LN-1", "10", borrower="First"),
            make_record("LN-1", "20", borrower="Second"),
        ])
        assert s.get_by_key("LN-1").borrower_name == "Second"

    def test_all_rows_kept_in_sequence(self):
        s = RecordStore()
        snap = s.build([make_record("LN-1"), make_record("LN-1"), make_record("LN-2")])
        assert s.count() == 3
        assert len(snap.by_key) == 2
        assert snap.duplicate_keys == 1


class TestRebuild:
    def test_rebuild_replaces_snapshot(self, store):
        old = store.snapshot()
        store.build([make_record("LN-100", "5")])
        assert store.count() == 1
        assert store.get_by_key("LN-1") is None
        assert store.get_by_key("LN-100") is not None
        # readers holding the old snapshot still see the old batch
        assert len(old.records) == 4
        assert "LN-1" in old.by_key

    def test_reload_publishes_new_batch(self, store):
        store.reload(lambda: [make_record("LN-9", "1"), make_record("LN-10", "0")])
        assert store.count() == 2
        assert [r.loan_id for r in store.mismatches()] == ["LN-9"]

    def test_failed_reload_keeps_previous_snapshot(self, store):
        before = store.snapshot()

        def broken_loader():
            raise RuntimeError("source unreadable")

        with pytest.raises(RuntimeError):
            store.reload(broken_loader)
        assert store.snapshot() is before
        assert store.count() == 4

    def test_readers_never_see_mixed_snapshots(self):
        s = RecordStore()
        batch_a = [make_record(f"A-{i}", "1") for i in range(200)]
        batch_b = [make_record(f"B-{i}", "0") for i in range(50)]
        s.build(batch_a)

        errors = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                snap = s.snapshot()
                prefix = snap.records[0].loan_id[0]
                if len(snap.by_key) != len(snap.records):
                    errors.append("index size mismatch")
                if any(not key.startswith(prefix) for key in snap.by_key):
                    errors.append("keys from another batch")
                expected = len(snap.records) if prefix == "A" else 0
                if len(snap.mismatches) != expected:
                    errors.append("mismatch set from another batch")

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for i in range(50):
            s.build(batch_b if i % 2 == 0 else batch_a)
        stop.set()
        for t in threads:
            t.join()

        assert errors == []


class TestSnapshot:
    def test_from_records(self, records):
        snap = Snapshot.from_records(records)
        assert len(snap) == 4
        assert set(snap.by_key) == {"LN-1", "LN-2", "LN-3", "LN-4"}
        assert all(r.has_mismatch for r in snap.mismatches)
