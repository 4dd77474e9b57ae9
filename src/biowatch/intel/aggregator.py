# Intel Module - ThreatAggregator Coordinator
#
# Coordinates all registered feed fetchers:
#   - Schedules periodic sync cycles (APScheduler interval trigger)
#   - Runs sources sequentially, skipping those disabled in the store
#   - Per source: fetch -> normalize -> cap -> dedup -> classify -> gate
#     -> persist threat + classification as one unit
#   - Paces classifier calls with a fixed delay
#   - Records per-source sync status and emits ingestion events
#   - Isolates failures: an item failure never aborts its source, a
#     source failure never aborts the cycle

import logging
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..core.audit_log import EventSeverity, EventType, log_ingestion_event
from .classifier import ThreatClassifier
from .dedup import Deduplicator
from .fetcher import FeedFetcher
from .models import Classification, ThreatSource, ThreatTier
from .normalizer import normalize
from .store import ThreatStore

if TYPE_CHECKING:
    from ..config import IngestionSettings

logger = logging.getLogger(__name__)

SCHEDULER_JOB_ID = "threat_ingestion_sync"


class SyncState(str, Enum):
    """Per-source state during and after a cycle."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


def passes_confidence_gate(
    classification: Classification, min_confidence: float = 20.0
) -> bool:
    """Storage gate: confident enough, or High tier regardless of confidence."""
    return (
        classification.confidence >= min_confidence
        or classification.tier == ThreatTier.HIGH
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SourceResult:
    """Outcome of syncing a single source."""

    def __init__(self, source: ThreatSource):
        self.source = source
        self.skipped = False
        self.fetched = 0
        self.relevant = 0
        self.capped = 0
        self.new = 0
        self.updated = 0
        self.duplicates = 0
        self.gated = 0
        self.stored = 0
        self.failed = 0
        self.fallbacks = 0
        self.error: Optional[str] = None
        self.duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "skipped": self.skipped,
            "success": self.success,
            "fetched": self.fetched,
            "relevant": self.relevant,
            "capped": self.capped,
            "new": self.new,
            "updated": self.updated,
            "duplicates": self.duplicates,
            "gated": self.gated,
            "stored": self.stored,
            "failed": self.failed,
            "fallbacks": self.fallbacks,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 1),
        }


class SyncReport:
    """Summary of a full sync cycle."""

    def __init__(self):
        self.started = _now_iso()
        self.finished: Optional[str] = None
        self.results: List[SourceResult] = []
        self.classifier_calls = 0

    def result_for(self, source: ThreatSource) -> Optional[SourceResult]:
        for result in self.results:
            if result.source == source:
                return result
        return None

    @property
    def total_stored(self) -> int:
        return sum(r.stored for r in self.results)

    @property
    def sources_succeeded(self) -> int:
        return sum(1 for r in self.results if not r.skipped and r.success)

    @property
    def sources_failed(self) -> int:
        return sum(1 for r in self.results if not r.skipped and not r.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "finished": self.finished,
            "sources_succeeded": self.sources_succeeded,
            "sources_failed": self.sources_failed,
            "total_stored": self.total_stored,
            "classifier_calls": self.classifier_calls,
            "results": [r.to_dict() for r in self.results],
        }


class ThreatAggregator:
    """Coordinator that schedules and runs threat ingestion cycles.

    Usage::

        agg = ThreatAggregator(store, classifier, settings)
        for fetcher in build_fetchers(settings):
            agg.register(fetcher)
        agg.start()           # periodic cycles in the background
        agg.sync_now()        # immediate cycle on the caller's thread
        agg.stop()
    """

    def __init__(
        self,
        store: ThreatStore,
        classifier: ThreatClassifier,
        settings: "IngestionSettings",
        deduplicator: Optional[Deduplicator] = None,
    ):
        self._store = store
        self._classifier = classifier
        self._settings = settings
        self._dedup = deduplicator or Deduplicator(store)

        self._fetchers: List[FeedFetcher] = []
        self._states: Dict[ThreatSource, SyncState] = {}
        self._scheduler: Optional[BackgroundScheduler] = None
        self._lock = threading.RLock()
        self._stopped = threading.Event()
        self._last_report: Optional[SyncReport] = None

        self._store.seed_sources(self._settings.source_enabled)

    # ------------------------------------------------------------------
    # Fetcher registration
    # ------------------------------------------------------------------

    def register(self, fetcher: FeedFetcher) -> None:
        """Register a feed fetcher; sources sync in registration order."""
        with self._lock:
            self._fetchers.append(fetcher)
            self._states.setdefault(fetcher.source, SyncState.IDLE)

    @property
    def fetcher_count(self) -> int:
        with self._lock:
            return len(self._fetchers)

    @property
    def store(self) -> ThreatStore:
        return self._store

    def source_states(self) -> Dict[str, str]:
        with self._lock:
            return {s.value: state.value for s, state in self._states.items()}

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start periodic cycles; a no-op when already running."""
        with self._lock:
            if self._scheduler is not None:
                return

            self._stopped.clear()
            scheduler = BackgroundScheduler(daemon=True)
            job_kwargs: Dict[str, Any] = {}
            if self._settings.run_on_startup:
                job_kwargs["next_run_time"] = datetime.now(timezone.utc)
            scheduler.add_job(
                self._scheduled_sync,
                trigger=IntervalTrigger(minutes=self._settings.interval_minutes),
                id=SCHEDULER_JOB_ID,
                name="Periodic threat ingestion",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
                **job_kwargs,
            )
            scheduler.start()
            self._scheduler = scheduler

        logger.info(
            "ThreatAggregator scheduler started: every %d min (run on startup: %s)",
            self._settings.interval_minutes,
            self._settings.run_on_startup,
        )
        log_ingestion_event(
            EventType.SCHEDULER_STARTED,
            "Threat ingestion scheduler started",
            details={
                "interval_minutes": self._settings.interval_minutes,
                "run_on_startup": self._settings.run_on_startup,
            },
        )

    def stop(self) -> None:
        """Stop scheduling and refuse sync_now() until the next start().

        A cycle already in progress runs to completion.
        """
        with self._lock:
            self._stopped.set()
            scheduler, self._scheduler = self._scheduler, None

        if scheduler is not None:
            scheduler.shutdown(wait=False)
            logger.info("ThreatAggregator scheduler stopped")
            log_ingestion_event(
                EventType.SCHEDULER_STOPPED, "Threat ingestion scheduler stopped"
            )

    @property
    def is_running(self) -> bool:
        scheduler = self._scheduler
        return scheduler is not None and scheduler.running

    def trigger_sync(self) -> str:
        """Queue a one-off cycle on the running scheduler; returns the job id.

        Raises:
            RuntimeError: the scheduler is not running.
        """
        with self._lock:
            if not self.is_running:
                raise RuntimeError("Threat ingestion scheduler is not running")
            job = self._scheduler.add_job(
                self._scheduled_sync,
                trigger=DateTrigger(run_date=datetime.now(timezone.utc)),
                name="Manual threat ingestion",
            )
        logger.info("Manual sync queued as job %s", job.id)
        return job.id

    def _scheduled_sync(self) -> None:
        """Scheduler entry point; never lets an exception reach APScheduler."""
        try:
            self.sync_now()
        except Exception as exc:
            logger.exception("Scheduled sync cycle crashed: %s", exc)
            log_ingestion_event(
                EventType.SYNC_FAILED,
                f"Sync cycle crashed: {exc}",
                severity=EventSeverity.ERROR,
            )

    # ------------------------------------------------------------------
    # Sync cycle
    # ------------------------------------------------------------------

    def sync_now(self) -> Optional[SyncReport]:
        """Run one full cycle over the enabled sources on this thread.

        Returns None (and does nothing) after stop() until start() is
        called again.
        """
        if self._stopped.is_set():
            logger.warning("Sync refused: ingestion has been stopped")
            return None

        with self._lock:
            fetchers = list(self._fetchers)
            for source in self._states:
                self._states[source] = SyncState.IDLE

        report = SyncReport()
        log_ingestion_event(
            EventType.SYNC_STARTED,
            f"Sync cycle started for {len(fetchers)} source(s)",
            details={"sources": [f.source.value for f in fetchers]},
        )

        for fetcher in fetchers:
            report.results.append(self._sync_source(fetcher, report))

        report.finished = _now_iso()
        self._last_report = report

        logger.info(
            "Sync cycle complete: %d stored, %d/%d sources ok",
            report.total_stored,
            report.sources_succeeded,
            report.sources_succeeded + report.sources_failed,
        )
        log_ingestion_event(
            EventType.SYNC_COMPLETED,
            f"Sync cycle complete: {report.total_stored} threat(s) stored",
            details=report.to_dict(),
        )
        return report

    def _sync_source(self, fetcher: FeedFetcher, report: SyncReport) -> SourceResult:
        source = fetcher.source
        result = SourceResult(source)

        if not self._store.is_source_enabled(source):
            result.skipped = True
            logger.info("Skipping %s: disabled", source.value)
            log_ingestion_event(
                EventType.SYNC_SKIPPED,
                f"{source.value} sync skipped (disabled)",
                details={"source": source.value},
            )
            return result

        self._set_state(source, SyncState.RUNNING)
        start = time.monotonic()

        try:
            payload = fetcher.fetch()
            result.fetched = len(payload.get(fetcher.envelope_key) or [])
            threats = normalize(source, payload)
            result.relevant = len(threats)

            limit = self._settings.max_items_per_source
            if len(threats) > limit:
                result.capped = len(threats) - limit
                threats = threats[:limit]

            groups = self._dedup.partition(threats)
            result.new = len(groups.new)
            result.updated = len(groups.update)
            result.duplicates = len(groups.skipped)
            for threat in groups.failed:
                self._record_item_failure(threat, result, "duplicate check failed")

            for threat in groups.to_classify:
                self._process_item(threat, result, report)
        except Exception as exc:
            result.error = str(exc)
            logger.warning("Source %s failed: %s", source.value, exc)

        result.duration_ms = (time.monotonic() - start) * 1000
        self._finish_source(result)
        return result

    def _process_item(self, threat, result: SourceResult, report: SyncReport) -> None:
        """Classify, gate and persist one threat; failures are counted."""
        try:
            if report.classifier_calls > 0:
                time.sleep(self._settings.classification_delay_seconds)
            report.classifier_calls += 1
            classification = self._classifier.classify(threat)

            if classification.is_fallback:
                result.fallbacks += 1
                log_ingestion_event(
                    EventType.CLASSIFICATION_FALLBACK,
                    f"Default classification used for {threat.title!r}",
                    severity=EventSeverity.WARNING,
                    details={
                        "source": threat.source.value,
                        "reference": threat.external_reference,
                        "reasoning": classification.reasoning,
                    },
                )

            if not passes_confidence_gate(classification, self._settings.min_confidence):
                result.gated += 1
                logger.info(
                    "Gated %r: %s tier at %.0f%% confidence",
                    threat.title, classification.tier.value, classification.confidence,
                )
                log_ingestion_event(
                    EventType.THREAT_GATED,
                    f"Not stored (low confidence): {threat.title}",
                    details={
                        "source": threat.source.value,
                        "reference": threat.external_reference,
                        "tier": classification.tier.value,
                        "confidence": classification.confidence,
                    },
                )
                return

            threat_id = self._store.save_classified_threat(threat, classification)
            result.stored += 1
            log_ingestion_event(
                EventType.THREAT_STORED,
                f"Stored {threat.title}",
                details={
                    "threat_id": threat_id,
                    "source": threat.source.value,
                    "reference": threat.external_reference,
                    "tier": classification.tier.value,
                    "confidence": classification.confidence,
                },
            )
        except Exception as exc:
            logger.exception("Failed to process %r: %s", threat.title, exc)
            self._record_item_failure(threat, result, str(exc))

    def _record_item_failure(self, threat, result: SourceResult, reason: str) -> None:
        result.failed += 1
        log_ingestion_event(
            EventType.THREAT_FAILED,
            f"Failed to process {threat.title}: {reason}",
            severity=EventSeverity.ERROR,
            details={"source": threat.source.value, "reference": threat.external_reference},
        )

    def _finish_source(self, result: SourceResult) -> None:
        source = result.source
        try:
            self._store.update_sync_status(
                source, result.success, result.error, result.stored
            )
        except Exception as exc:
            logger.error("Failed to record sync status for %s: %s", source.value, exc)

        if result.success:
            self._set_state(source, SyncState.SUCCESS)
            logger.info(
                "%s synced: %d fetched, %d new, %d updated, %d stored, %d gated, %d failed",
                source.value, result.fetched, result.new, result.updated,
                result.stored, result.gated, result.failed,
            )
        else:
            self._set_state(source, SyncState.FAILED)
            log_ingestion_event(
                EventType.SYNC_FAILED,
                f"{source.value} sync failed: {result.error}",
                severity=EventSeverity.ERROR,
                details=result.to_dict(),
            )

    def _set_state(self, source: ThreatSource, state: SyncState) -> None:
        with self._lock:
            self._states[source] = state

    # ------------------------------------------------------------------
    # Source administration & status
    # ------------------------------------------------------------------

    def set_source_enabled(self, source: ThreatSource, enabled: bool) -> bool:
        """Enable or disable a source for future cycles."""
        changed = self._store.set_source_enabled(source, enabled)
        if changed:
            log_ingestion_event(
                EventType.SOURCE_TOGGLED,
                f"{source.value} {'enabled' if enabled else 'disabled'}",
                details={"source": source.value, "enabled": enabled},
            )
        return changed

    def get_last_report(self) -> Optional[Dict[str, Any]]:
        """Return the most recent sync report as a dict."""
        if self._last_report is None:
            return None
        return self._last_report.to_dict()

    def status(self) -> Dict[str, Any]:
        """Scheduler state plus the per-source SourceSyncStatus table."""
        states = self.source_states()
        sources = []
        for status in self._store.list_source_statuses():
            entry = status.to_dict()
            entry["state"] = states.get(status.source.value, SyncState.IDLE.value)
            sources.append(entry)

        next_run = None
        scheduler = self._scheduler
        if scheduler is not None:
            job = scheduler.get_job(SCHEDULER_JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run = job.next_run_time.isoformat()

        return {
            "running": self.is_running,
            "stopped": self._stopped.is_set(),
            "interval_minutes": self._settings.interval_minutes,
            "next_run_time": next_run,
            "sources": sources,
            "classifier": self._classifier.get_stats(),
            "last_report": self.get_last_report(),
        }
