# API - FastAPI Application
#
# Hosts the threat-ingestion admin routes and owns the aggregator's
# lifecycle: built and (optionally) started on startup, stopped on
# shutdown.

import logging
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from .. import __version__
from ..config import build_aggregator, load_settings
from ..core import IngestionEventLogger, set_event_logger
from .ingestion_routes import (
    get_ingestion_aggregator,
    router as ingestion_router,
    set_ingestion_aggregator,
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="BioWatch API",
    description="Threat intelligence ingestion for the bio-economy",
    version=__version__,
)

app.include_router(ingestion_router)


@app.get("/api/health")
async def health():
    aggregator = get_ingestion_aggregator()
    return {
        "status": "ok",
        "version": __version__,
        "ingestion_running": bool(aggregator and aggregator.is_running),
    }


# Startup/shutdown events
@app.on_event("startup")
async def startup_event():
    """Build the ingestion aggregator and start its scheduler if enabled."""
    settings = load_settings()
    set_event_logger(IngestionEventLogger(Path(settings.log_dir)))

    aggregator = build_aggregator(settings)
    set_ingestion_aggregator(aggregator)
    app.state.ingestion_aggregator = aggregator

    if settings.enabled:
        aggregator.start()
    else:
        logger.info("Threat ingestion disabled (BIOWATCH_INGESTION_ENABLED=false)")


@app.on_event("shutdown")
async def shutdown_event():
    aggregator = get_ingestion_aggregator()
    if aggregator is not None:
        aggregator.stop()
        aggregator.store.close()
        set_ingestion_aggregator(None)


def start_api_server(host: str = "127.0.0.1", port: int = 8000):
    """
    Start FastAPI server.

    Args:
        host: Host to bind to (default: localhost only)
        port: Port to listen on
    """
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    start_api_server()
