# API - Admin Surface
#
# FastAPI application exposing the threat-ingestion admin routes.

from .main import app, start_api_server
from .ingestion_routes import (
    router,
    get_ingestion_aggregator,
    set_ingestion_aggregator,
)

__all__ = [
    "app",
    "start_api_server",
    "router",
    "get_ingestion_aggregator",
    "set_ingestion_aggregator",
]
