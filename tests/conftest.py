"""
Shared pytest fixtures for the BioWatch test suite.

Autouse fixtures below isolate tests from live application data:
  - Ingestion event log -> temp directory (no events in ./logs)
"""

import pytest


@pytest.fixture(autouse=True)
def _isolate_event_log(tmp_path):
    """Point the global IngestionEventLogger at a temp directory.

    Without this, any test that (directly or indirectly) calls
    ``log_ingestion_event(...)`` would create ``./logs/`` in the
    working directory.
    """
    import biowatch.core.audit_log as audit_mod

    old_logger = audit_mod._event_logger
    event_logger = audit_mod.IngestionEventLogger(log_dir=tmp_path / "logs")
    audit_mod.set_event_logger(event_logger)

    yield event_logger

    event_logger.close()
    audit_mod.set_event_logger(old_logger)
