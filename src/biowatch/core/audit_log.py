# Core Module - Ingestion Event Log
#
# Structured, append-only event log for the ingestion pipeline.
# Every sync cycle, classifier fallback and storage decision is emitted
# as one JSON line so operators can reconstruct what a cycle did
# without reading the module loggers.

import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog

EVENT_LOGGER_NAME = "biowatch.events"
DEFAULT_LOG_DIR = "./logs"


class EventType(str, Enum):
    """Types of ingestion events that can be logged."""

    # Scheduler lifecycle
    SCHEDULER_STARTED = "scheduler.started"
    SCHEDULER_STOPPED = "scheduler.stopped"

    # Sync cycle
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"
    SYNC_SKIPPED = "sync.skipped"

    # Per-item decisions
    THREAT_STORED = "threat.stored"
    THREAT_GATED = "threat.gated"
    THREAT_FAILED = "threat.failed"
    CLASSIFICATION_FALLBACK = "classification.fallback"

    # Source administration
    SOURCE_TOGGLED = "source.toggled"


class EventSeverity(str, Enum):
    """Severity levels for ingestion events."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class IngestionEventLogger:
    """
    Append-only structured logger for ingestion events.

    Features:
    - JSON lines rendered by structlog
    - Automatic timestamp and event ID
    - One file per day under ``log_dir``
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize the event logger.

        Args:
            log_dir: Directory for event logs (default: ./logs)
        """
        self.log_dir = Path(log_dir or DEFAULT_LOG_DIR)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )

        self._handler = self._setup_file_handler()
        self.logger = structlog.get_logger(EVENT_LOGGER_NAME)

    def _setup_file_handler(self) -> logging.Handler:
        """Attach a daily file handler to the event logger."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        log_file = self.log_dir / f"ingestion_{today}.log"

        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.INFO)
        # structlog renders the JSON; the handler writes it verbatim
        file_handler.setFormatter(logging.Formatter("%(message)s"))

        event_logger = logging.getLogger(EVENT_LOGGER_NAME)
        event_logger.addHandler(file_handler)
        event_logger.setLevel(logging.INFO)
        return file_handler

    @property
    def log_file(self) -> Path:
        return Path(self._handler.baseFilename)

    def log_event(
        self,
        event_type: EventType,
        message: str,
        severity: EventSeverity = EventSeverity.INFO,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Log an ingestion event.

        Args:
            event_type: Type of event (from EventType enum)
            message: Human-readable event description
            severity: Severity level (from EventSeverity enum)
            details: Additional event details (source, counts, errors)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())
        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "details": details or {},
        }

        if severity == EventSeverity.ERROR:
            self.logger.error("ingestion_event", **event_data)
        elif severity == EventSeverity.WARNING:
            self.logger.warning("ingestion_event", **event_data)
        else:
            self.logger.info("ingestion_event", **event_data)

        return event_id

    def close(self) -> None:
        """Detach and close the file handler."""
        logging.getLogger(EVENT_LOGGER_NAME).removeHandler(self._handler)
        self._handler.close()


# Global logger instance
_event_logger: Optional[IngestionEventLogger] = None


def get_event_logger() -> IngestionEventLogger:
    """Get global event logger (singleton pattern)."""
    global _event_logger
    if _event_logger is None:
        _event_logger = IngestionEventLogger()
    return _event_logger


def set_event_logger(event_logger: Optional[IngestionEventLogger]) -> None:
    """Replace the global event logger (configured log dir, tests)."""
    global _event_logger
    _event_logger = event_logger


def log_ingestion_event(
    event_type: EventType,
    message: str,
    **kwargs,
) -> str:
    """
    Convenience function for logging ingestion events.

    Usage:
        log_ingestion_event(
            EventType.SYNC_COMPLETED,
            "NVD: 12 fetched, 3 stored",
            details={"source": "NVD", "stored": 3},
        )
    """
    return get_event_logger().log_event(event_type, message, **kwargs)
