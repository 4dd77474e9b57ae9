# Core Module - Shared Utilities
#
# Core module provides shared functionality across BioWatch modules:
# - SQLite connection helper
# - Structured ingestion event log

from .audit_log import (
    EventSeverity,
    EventType,
    IngestionEventLogger,
    get_event_logger,
    log_ingestion_event,
    set_event_logger,
)
from .db import connect

__all__ = [
    # Database
    "connect",
    # Event Logging
    "IngestionEventLogger",
    "EventType",
    "EventSeverity",
    "get_event_logger",
    "set_event_logger",
    "log_ingestion_event",
]
