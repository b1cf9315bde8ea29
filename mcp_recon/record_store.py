"""
Record Store: snapshot-consistent, indexed, in-memory loan dataset.

A ``Snapshot`` bundles the full record sequence, the loan-id lookup map and
the precomputed mismatch subset, all built from one input batch. The store
publishes snapshots by swapping a single reference, so a reader that grabs
``store.snapshot()`` keeps a consistent view even while a reload runs.

Usage:
    store = RecordStore()
    store.build(records)
    record = store.get_by_key("LN-001234")
    snap = store.snapshot()          # hold for the duration of one query
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from loguru import logger

from .models import LoanRecord


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Snapshot:
    """One published, never-mutated view of the dataset."""

    records: tuple[LoanRecord, ...] = ()
    by_key: dict[str, LoanRecord] = field(default_factory=dict)
    mismatches: tuple[LoanRecord, ...] = ()
    built_at: Optional[datetime] = None
    duplicate_keys: int = 0

    def __len__(self) -> int:
        return len(self.records)

    @classmethod
    def from_records(cls, records: Iterable[LoanRecord]) -> "Snapshot":
        """Build every index from the same batch. Duplicate keys: last write wins."""
        ordered = tuple(records)
        by_key: dict[str, LoanRecord] = {}
        duplicates = 0
        for record in ordered:
            if record.loan_id in by_key:
                duplicates += 1
            by_key[record.loan_id] = record

        return cls(
            records=ordered,
            by_key=by_key,
            mismatches=tuple(r for r in ordered if r.has_mismatch),
            built_at=datetime.now(timezone.utc),
            duplicate_keys=duplicates,
        )


_EMPTY = Snapshot()


# ---------------------------------------------------------------------------
# RecordStore
# ---------------------------------------------------------------------------

class RecordStore:
    """
    Owns the active ``Snapshot``.

    Index construction happens outside any lock against a snapshot nobody can
    see yet; only the reference swap is locked. Rebuilds are serialized
    against each other by a separate build lock.
    """

    def __init__(self) -> None:
        self._snapshot: Snapshot = _EMPTY
        self._swap_lock = threading.Lock()
        self._build_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(self, records: Iterable[LoanRecord]) -> Snapshot:
        """Replace the active snapshot with one built from ``records``."""
        with self._build_lock:
            new_snapshot = Snapshot.from_records(records)
            if new_snapshot.duplicate_keys:
                logger.warning(
                    f"RecordStore: {new_snapshot.duplicate_keys} duplicate loan ids "
                    f"(last occurrence kept in the lookup index)"
                )
            with self._swap_lock:
                self._snapshot = new_snapshot

        logger.info(
            f"Built indexes: {len(new_snapshot.records)} total, "
            f"{len(new_snapshot.mismatches)} mismatches"
        )
        return new_snapshot

    def reload(self, load_fn: Callable[[], Iterable[LoanRecord]]) -> Snapshot:
        """
        Load a fresh batch and publish it.

        If ``load_fn`` raises, the currently published snapshot is left in
        place and the error propagates.
        """
        records = list(load_fn())
        return self.build(records)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def snapshot(self) -> Snapshot:
        with self._swap_lock:
            return self._snapshot

    def get_by_key(self, key: str) -> Optional[LoanRecord]:
        return self.snapshot().by_key.get(key)

    def mismatches(self) -> tuple[LoanRecord, ...]:
        return self.snapshot().mismatches

    def count(self) -> int:
        return len(self.snapshot().records)

    def last_build_time(self) -> Optional[datetime]:
        return self.snapshot().built_at

    @property
    def is_loaded(self) -> bool:
        return self.snapshot().built_at is not None

    def __repr__(self) -> str:
        snap = self.snapshot()
        status = f"{len(snap.records)} records" if snap.built_at is not None else "not loaded"
        return f"RecordStore({status})"
