# API - Threat Ingestion Admin Routes
#
# Thin pass-throughs into ThreatAggregator:
#   POST /api/admin/threat-ingestion/start
#   POST /api/admin/threat-ingestion/stop
#   POST /api/admin/threat-ingestion/sync
#   GET  /api/admin/threat-ingestion/status
#   POST /api/admin/threat-ingestion/sources/{source}/enable|disable

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from ..intel.models import ThreatSource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/threat-ingestion", tags=["threat-ingestion"])


# ── Pydantic Response Models ─────────────────────────────────────────


class SourceStatusModel(BaseModel):
    source: str
    enabled: bool = True
    state: str = "idle"
    last_sync_at: Optional[str] = None
    last_sync_status: Optional[str] = None
    last_sync_error: Optional[str] = None
    threats_stored_count: int = 0


class IngestionStatusResponse(BaseModel):
    running: bool = False
    stopped: bool = False
    interval_minutes: int = 60
    next_run_time: Optional[str] = None
    sources: List[SourceStatusModel] = Field(default_factory=list)
    classifier: Dict[str, Any] = Field(default_factory=dict)
    last_report: Optional[Dict[str, Any]] = None


class SchedulerActionResponse(BaseModel):
    running: bool
    message: str


class SyncResponse(BaseModel):
    queued: bool = False
    job_id: Optional[str] = None
    report: Optional[Dict[str, Any]] = None


class SourceToggleResponse(BaseModel):
    source: str
    enabled: bool


# ── Aggregator Access ────────────────────────────────────────────────

_ingestion_aggregator = None


def get_ingestion_aggregator():
    return _ingestion_aggregator


def set_ingestion_aggregator(aggregator):
    global _ingestion_aggregator
    _ingestion_aggregator = aggregator


def _require_aggregator():
    aggregator = get_ingestion_aggregator()
    if aggregator is None:
        raise HTTPException(status_code=503, detail="Threat ingestion not initialized")
    return aggregator


def _parse_source(source: str) -> ThreatSource:
    try:
        return ThreatSource(source.upper())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown source: {source}")


# ── Routes ───────────────────────────────────────────────────────────


@router.post("/start", response_model=SchedulerActionResponse)
async def start_ingestion():
    """Start the periodic ingestion scheduler."""
    aggregator = _require_aggregator()
    aggregator.start()
    return SchedulerActionResponse(running=aggregator.is_running, message="Scheduler started")


@router.post("/stop", response_model=SchedulerActionResponse)
async def stop_ingestion():
    """Stop the scheduler; an in-flight cycle finishes."""
    aggregator = _require_aggregator()
    aggregator.stop()
    return SchedulerActionResponse(running=aggregator.is_running, message="Scheduler stopped")


@router.post("/sync", response_model=SyncResponse)
def sync_ingestion():
    """Run a full cycle now.

    Queued on the scheduler when it is running; otherwise run inline and
    the report returned.
    """
    aggregator = _require_aggregator()
    if aggregator.is_running:
        return SyncResponse(queued=True, job_id=aggregator.trigger_sync())

    report = aggregator.sync_now()
    if report is None:
        raise HTTPException(
            status_code=409, detail="Threat ingestion is stopped; start it first"
        )
    return SyncResponse(report=report.to_dict())


@router.get("/status", response_model=IngestionStatusResponse)
async def ingestion_status():
    """Scheduler state plus per-source sync status."""
    aggregator = _require_aggregator()
    return IngestionStatusResponse(**aggregator.status())


@router.post("/sources/{source}/enable", response_model=SourceToggleResponse)
async def enable_source(source: str):
    return _toggle_source(source, True)


@router.post("/sources/{source}/disable", response_model=SourceToggleResponse)
async def disable_source(source: str):
    return _toggle_source(source, False)


def _toggle_source(source: str, enabled: bool) -> SourceToggleResponse:
    aggregator = _require_aggregator()
    parsed = _parse_source(source)
    if not aggregator.set_source_enabled(parsed, enabled):
        raise HTTPException(status_code=404, detail=f"Source not configured: {source}")
    return SourceToggleResponse(source=parsed.value, enabled=enabled)
