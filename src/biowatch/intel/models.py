# Intel Module - Threat Ingestion Data Models
#
# Defines the provider-agnostic data models flowing through the pipeline:
#   CanonicalThreat   - one normalized feed item (normalizer -> store)
#   Classification    - the oracle's severity verdict for one threat
#   SourceSyncStatus  - per-provider sync bookkeeping (api_sources table)
#
# Feed payloads themselves stay plain dicts (RawPayload) until the
# normalizer maps them onto CanonicalThreat.

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Provider wire envelope, exactly as decoded from the feed's JSON body.
RawPayload = Dict[str, Any]


class ThreatSource(str, Enum):
    """Closed set of feed providers.

    Values double as the ``api_type`` key of the sync-status table.
    """

    OTX = "OTX"
    NVD = "NVD"
    CISA = "CISA"


class ImpactLevel(str, Enum):
    """Provider-derived impact of a canonical threat."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @classmethod
    def from_cvss(cls, score: float) -> "ImpactLevel":
        """Map a CVSS base score (0.0-10.0) to an impact level."""
        if score >= 9.0:
            return cls.CRITICAL
        if score >= 7.0:
            return cls.HIGH
        if score >= 4.0:
            return cls.MEDIUM
        return cls.LOW


class ThreatTier(str, Enum):
    """Classifier severity bucket stored with each classification."""

    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @classmethod
    def parse(cls, value: Any) -> "ThreatTier":
        """Case-insensitive parse; the rubric's ``Critical`` folds into High."""
        text = str(value or "").strip().lower()
        if text == "critical":
            return cls.HIGH
        for tier in cls:
            if tier.value.lower() == text:
                return tier
        raise ValueError(f"Unknown threat tier: {value!r}")


class ThreatStatus(str, Enum):
    """Lifecycle tag on a stored threat."""

    PENDING_AI = "Pending_AI"
    PENDING_REVIEW = "Pending_Review"


class SyncOutcome(str, Enum):
    """Last-sync result recorded per source."""

    SUCCESS = "Success"
    FAILED = "Failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Data Models
# ---------------------------------------------------------------------------


@dataclass
class CanonicalThreat:
    """Provider-agnostic representation of one ingested feed item.

    ``external_reference`` is the dedup key: a stable per-provider URL that
    identifies the same provider-side item across sync cycles.
    """

    title: str
    description: str
    category: str
    source: ThreatSource
    date_observed: datetime
    impact_level: ImpactLevel
    external_reference: Optional[str] = None
    status: ThreatStatus = ThreatStatus.PENDING_AI
    origin_user: Optional[int] = None  # None for system-originated items
    threat_id: Optional[int] = None  # set when refreshing a stored row

    def fingerprint(self) -> Dict[str, Any]:
        """Canonical fields without timestamps or storage identity."""
        return {
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "source": self.source.value,
            "impact_level": self.impact_level.value,
            "external_reference": self.external_reference,
            "status": self.status.value,
            "origin_user": self.origin_user,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.fingerprint()
        d["date_observed"] = self.date_observed.isoformat()
        d["threat_id"] = self.threat_id
        return d


@dataclass
class Classification:
    """Oracle verdict for one threat.

    ``tier`` and ``confidence`` are required so a partial classification
    can never be constructed, let alone persisted.
    """

    tier: ThreatTier
    confidence: float  # 0 - 100
    reasoning: str = ""
    recommended_actions: str = ""
    next_steps: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    bio_sector_relevance: float = 50.0  # 0 - 100
    raw_response: str = ""
    is_fallback: bool = False
    threat_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["tier"] = self.tier.value
        return d


@dataclass
class SourceSyncStatus:
    """Sync bookkeeping for one provider (one api_sources row)."""

    source: ThreatSource
    enabled: bool = True
    last_sync_at: Optional[str] = None  # ISO 8601
    last_sync_status: Optional[SyncOutcome] = None
    last_sync_error: Optional[str] = None
    threats_stored_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "enabled": self.enabled,
            "last_sync_at": self.last_sync_at,
            "last_sync_status": (
                self.last_sync_status.value if self.last_sync_status else None
            ),
            "last_sync_error": self.last_sync_error,
            "threats_stored_count": self.threats_stored_count,
        }
