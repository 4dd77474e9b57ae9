# BioWatch - Ingestion Configuration
#
# Settings are read from environment variables (optionally seeded from a
# .env file via python-dotenv).  Invalid numbers never abort start-up:
# they fall back to the default with a warning.

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv

from .intel.aggregator import ThreatAggregator
from .intel.cisa_fetcher import CISAFetcher
from .intel.classifier import DEFAULT_MODEL, ThreatClassifier
from .intel.fetcher import FeedFetcher
from .intel.models import ThreatSource
from .intel.nvd_fetcher import NVDFetcher
from .intel.otx_fetcher import OTXFetcher
from .intel.store import ThreatStore

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class IngestionSettings:
    """Runtime settings for the ingestion pipeline."""

    db_path: str = "./data/biowatch.db"
    log_dir: str = "./logs"
    enabled: bool = True
    run_on_startup: bool = True
    interval_minutes: int = 60
    max_items_per_source: int = 25
    classification_delay_seconds: float = 4.0
    min_confidence: float = 20.0
    source_enabled: Dict[ThreatSource, bool] = field(
        default_factory=lambda: {s: True for s in ThreatSource}
    )
    otx_api_key: Optional[str] = None
    nvd_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    gemini_model: str = DEFAULT_MODEL

    def to_dict(self) -> Dict[str, object]:
        """Settings without secrets, for status output."""
        return {
            "db_path": self.db_path,
            "log_dir": self.log_dir,
            "enabled": self.enabled,
            "run_on_startup": self.run_on_startup,
            "interval_minutes": self.interval_minutes,
            "max_items_per_source": self.max_items_per_source,
            "classification_delay_seconds": self.classification_delay_seconds,
            "min_confidence": self.min_confidence,
            "source_enabled": {s.value: v for s, v in self.source_enabled.items()},
            "otx_api_key_set": bool(self.otx_api_key),
            "nvd_api_key_set": bool(self.nvd_api_key),
            "gemini_api_key_set": bool(self.gemini_api_key),
            "gemini_model": self.gemini_model,
        }


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    logger.warning("Invalid boolean for %s=%r, using default %s", name, raw, default)
    return default


def _get_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using default %d", name, raw, default)
        return default
    if value < minimum:
        logger.warning(
            "%s=%d is below minimum %d, using default %d", name, value, minimum, default
        )
        return default
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> IngestionSettings:
    """Build settings from ``env`` (defaults to the process environment).

    A ``.env`` file in the working directory is loaded first when reading the
    real environment; existing variables take precedence over it.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    return IngestionSettings(
        db_path=env.get("BIOWATCH_DB_PATH") or "./data/biowatch.db",
        log_dir=env.get("BIOWATCH_LOG_DIR") or "./logs",
        enabled=_get_bool(env, "BIOWATCH_INGESTION_ENABLED", True),
        run_on_startup=_get_bool(env, "BIOWATCH_RUN_ON_STARTUP", True),
        interval_minutes=_get_int(env, "BIOWATCH_INTERVAL_MINUTES", 60, minimum=1),
        max_items_per_source=_get_int(env, "BIOWATCH_MAX_ITEMS_PER_SOURCE", 25, minimum=1),
        classification_delay_seconds=_get_int(
            env, "BIOWATCH_CLASSIFICATION_DELAY_SECONDS", 4
        ),
        min_confidence=_get_int(env, "BIOWATCH_MIN_CONFIDENCE", 20),
        source_enabled={
            s: _get_bool(env, f"BIOWATCH_{s.value}_ENABLED", True) for s in ThreatSource
        },
        otx_api_key=env.get("OTX_API_KEY") or None,
        nvd_api_key=env.get("NVD_API_KEY") or None,
        gemini_api_key=env.get("GEMINI_API_KEY") or None,
        gemini_model=env.get("GEMINI_MODEL") or DEFAULT_MODEL,
    )


def build_fetchers(settings: IngestionSettings) -> List[FeedFetcher]:
    """Construct and configure the three feed adapters in sync order."""
    otx = OTXFetcher()
    otx.configure(api_key=settings.otx_api_key)

    nvd = NVDFetcher()
    nvd.configure(api_key=settings.nvd_api_key)

    cisa = CISAFetcher()
    cisa.configure()

    return [otx, nvd, cisa]


def build_classifier(settings: IngestionSettings) -> ThreatClassifier:
    return ThreatClassifier(api_key=settings.gemini_api_key, model=settings.gemini_model)


def build_aggregator(settings: IngestionSettings) -> ThreatAggregator:
    """Wire store, classifier and the three adapters into an aggregator."""
    store = ThreatStore(settings.db_path)
    aggregator = ThreatAggregator(store, build_classifier(settings), settings)
    for fetcher in build_fetchers(settings):
        aggregator.register(fetcher)
    return aggregator
