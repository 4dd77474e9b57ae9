# Intel Module - Threat Ingestion Pipeline
#
# Feed adapters, normalization, deduplication, classification, storage
# and the aggregator that schedules and sequences them.

from .models import (
    ThreatSource,
    ImpactLevel,
    ThreatTier,
    ThreatStatus,
    SyncOutcome,
    CanonicalThreat,
    Classification,
    SourceSyncStatus,
)
from .fetcher import (
    FeedFetcher,
    FeedError,
    AuthError,
    NotFoundError,
    TransientError,
    RateLimitError,
    FeedUnavailableError,
    RateLimiter,
)
from .otx_fetcher import OTXFetcher
from .nvd_fetcher import NVDFetcher
from .cisa_fetcher import CISAFetcher
from .normalizer import normalize, is_relevant
from .dedup import Deduplicator, DedupDecision, DedupResult
from .classifier import ThreatClassifier, ClassificationParseError
from .store import ThreatStore
from .aggregator import (
    ThreatAggregator,
    SyncReport,
    SourceResult,
    SyncState,
    passes_confidence_gate,
)

__all__ = [
    # Data models
    "ThreatSource",
    "ImpactLevel",
    "ThreatTier",
    "ThreatStatus",
    "SyncOutcome",
    "CanonicalThreat",
    "Classification",
    "SourceSyncStatus",
    # Fetchers
    "FeedFetcher",
    "FeedError",
    "AuthError",
    "NotFoundError",
    "TransientError",
    "RateLimitError",
    "FeedUnavailableError",
    "RateLimiter",
    "OTXFetcher",
    "NVDFetcher",
    "CISAFetcher",
    # Normalizer
    "normalize",
    "is_relevant",
    # Dedup
    "Deduplicator",
    "DedupDecision",
    "DedupResult",
    # Classifier
    "ThreatClassifier",
    "ClassificationParseError",
    # Storage
    "ThreatStore",
    # Aggregator
    "ThreatAggregator",
    "SyncReport",
    "SourceResult",
    "SyncState",
    "passes_confidence_gate",
]
