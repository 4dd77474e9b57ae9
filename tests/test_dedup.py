"""
Tests for the Deduplicator: age boundary, missing references, batches.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from biowatch.intel.dedup import DedupDecision, Deduplicator
from biowatch.intel.models import (
    CanonicalThreat,
    Classification,
    ImpactLevel,
    ThreatSource,
    ThreatTier,
)
from biowatch.intel.store import ThreatStore

NOW = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    s = ThreatStore(str(tmp_path / "dedup.db"))
    yield s
    s.close()


@pytest.fixture
def dedup(store):
    return Deduplicator(store, clock=lambda: NOW)


def _threat(reference="X", title="Clinic breach"):
    return CanonicalThreat(
        title=title,
        description="",
        category="Malware",
        source=ThreatSource.OTX,
        date_observed=NOW,
        impact_level=ImpactLevel.MEDIUM,
        external_reference=reference,
    )


def _store_existing(store, reference="X", age_days=0):
    return store.save_classified_threat(
        _threat(reference),
        Classification(tier=ThreatTier.MEDIUM, confidence=60),
        now=NOW - timedelta(days=age_days),
    )


class TestDedupDecision:
    def test_no_existing_record_is_new(self, dedup):
        result = dedup.classify(_threat())
        assert result.decision == DedupDecision.NEW
        assert result.existing_id is None

    def test_recent_record_is_skipped(self, store, dedup):
        existing_id = _store_existing(store, age_days=10)
        result = dedup.classify(_threat())
        assert result.decision == DedupDecision.SKIP
        assert result.existing_id == existing_id

    def test_stale_record_is_updated(self, store, dedup):
        existing_id = _store_existing(store, age_days=31)
        candidate = _threat()
        result = dedup.classify(candidate)
        assert result.decision == DedupDecision.UPDATE
        assert result.existing_id == existing_id
        assert candidate.threat_id == existing_id

    def test_boundary_is_thirty_whole_days(self, store, dedup):
        _store_existing(store, "A", age_days=29)
        _store_existing(store, "B", age_days=30)
        assert dedup.classify(_threat("A")).decision == DedupDecision.SKIP
        assert dedup.classify(_threat("B")).decision == DedupDecision.UPDATE

    def test_missing_reference_is_skipped(self, dedup):
        result = dedup.classify(_threat(reference=None))
        assert result.decision == DedupDecision.SKIP

    def test_unreadable_created_at_counts_as_stale(self, store, dedup):
        existing_id = _store_existing(store)
        with store._conn:
            store._conn.execute(
                "UPDATE threats SET created_at = 'yesterday-ish' WHERE id = ?",
                (existing_id,),
            )
        assert dedup.classify(_threat()).decision == DedupDecision.UPDATE

    def test_custom_max_age(self, store):
        _store_existing(store, age_days=8)
        weekly = Deduplicator(store, max_age_days=7, clock=lambda: NOW)
        assert weekly.classify(_threat()).decision == DedupDecision.UPDATE


class TestPartition:
    def test_groups_preserve_order(self, store, dedup):
        _store_existing(store, "old", age_days=45)
        _store_existing(store, "fresh", age_days=1)
        candidates = [
            _threat("new-1"),
            _threat("fresh"),
            _threat("old"),
            _threat(None),
            _threat("new-2"),
        ]
        groups = dedup.partition(candidates)
        assert [t.external_reference for t in groups.new] == ["new-1", "new-2"]
        assert [t.external_reference for t in groups.update] == ["old"]
        assert [t.external_reference for t in groups.skipped] == ["fresh", None]
        assert [t.external_reference for t in groups.to_classify] == ["new-1", "old", "new-2"]

    def test_repeated_reference_in_batch_skipped(self, dedup):
        groups = dedup.partition([_threat("dup", "first"), _threat("dup", "second")])
        assert [t.title for t in groups.new] == ["first"]
        assert [t.title for t in groups.skipped] == ["second"]

    def test_lookup_error_only_fails_that_candidate(self, store, dedup):
        original = store.find_by_external_reference

        def lookup(reference):
            if reference == "locked":
                raise sqlite3.OperationalError("database is locked")
            return original(reference)

        store.find_by_external_reference = lookup
        groups = dedup.partition([_threat("locked"), _threat("free")])
        assert [t.external_reference for t in groups.failed] == ["locked"]
        assert [t.external_reference for t in groups.to_classify] == ["free"]
