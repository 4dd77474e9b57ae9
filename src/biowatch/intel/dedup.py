# Intel Module - Threat Deduplicator
#
# Decides, per normalized candidate, whether it is new, an already-stored
# duplicate to skip, or a stale duplicate to refresh.  The dedup key is the
# provider URL in ``external_reference``; freshness is measured from the
# stored row's ``created_at``.
#
#   no reference              -> SKIP
#   no stored match           -> NEW
#   match < max_age_days old  -> SKIP
#   match >= max_age_days old -> UPDATE (candidate.threat_id = existing id)

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from .models import CanonicalThreat, utcnow
from .store import ThreatStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_DAYS = 30


class DedupDecision(str, Enum):
    NEW = "new"
    SKIP = "skip"
    UPDATE = "update"


@dataclass
class DedupResult:
    decision: DedupDecision
    existing_id: Optional[int] = None


@dataclass
class DedupPartition:
    """Candidates grouped by decision, order preserved within each group."""

    new: List[CanonicalThreat] = field(default_factory=list)
    update: List[CanonicalThreat] = field(default_factory=list)
    skipped: List[CanonicalThreat] = field(default_factory=list)
    to_classify: List[CanonicalThreat] = field(default_factory=list)
    failed: List[CanonicalThreat] = field(default_factory=list)


def _age_days(created_at: Optional[str], now: datetime) -> Optional[int]:
    """Whole days since ``created_at``; None when the stamp can't be read."""
    if not created_at:
        return None
    try:
        created = datetime.fromisoformat(str(created_at).replace("Z", "+00:00"))
    except ValueError:
        return None
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (now - created).days


class Deduplicator:
    """Store-backed duplicate check for canonical threats.

    Usage::

        dedup = Deduplicator(store)
        result = dedup.classify(threat)
        if result.decision is DedupDecision.SKIP:
            ...
    """

    def __init__(
        self,
        store: ThreatStore,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self.max_age_days = max_age_days
        self._clock = clock

    def classify(self, candidate: CanonicalThreat) -> DedupResult:
        """Decide what to do with ``candidate``.

        On UPDATE the stored id is also written to ``candidate.threat_id`` so
        persistence refreshes that row instead of inserting a new one.
        """
        reference = candidate.external_reference
        if not reference:
            logger.debug("Skipping %r: no external reference", candidate.title)
            return DedupResult(DedupDecision.SKIP)

        existing = self._store.find_by_external_reference(reference)
        if existing is None:
            return DedupResult(DedupDecision.NEW)

        existing_id = existing["id"]
        age = _age_days(existing.get("created_at"), self._clock())
        if age is not None and age < self.max_age_days:
            logger.debug(
                "Skipping %s: stored %d day(s) ago (id=%d)", reference, age, existing_id
            )
            return DedupResult(DedupDecision.SKIP, existing_id)

        logger.info(
            "Refreshing %s: stored record id=%d is %s day(s) old",
            reference, existing_id, "?" if age is None else age,
        )
        candidate.threat_id = existing_id
        return DedupResult(DedupDecision.UPDATE, existing_id)

    def partition(self, candidates: List[CanonicalThreat]) -> DedupPartition:
        """Classify every candidate and group them by decision.

        A reference repeated within the batch is skipped after its first
        occurrence. A candidate whose store lookup fails lands in ``failed``
        and the rest of the batch is still checked.
        """
        groups = DedupPartition()
        seen = set()
        for candidate in candidates:
            reference = candidate.external_reference
            if reference and reference in seen:
                groups.skipped.append(candidate)
                continue
            try:
                decision = self.classify(candidate).decision
            except sqlite3.Error as exc:
                logger.warning("Dedup lookup failed for %s: %s", reference, exc)
                groups.failed.append(candidate)
                continue
            if decision is DedupDecision.NEW:
                groups.new.append(candidate)
            elif decision is DedupDecision.UPDATE:
                groups.update.append(candidate)
            else:
                groups.skipped.append(candidate)
                continue
            seen.add(reference)
            groups.to_classify.append(candidate)
        return groups
