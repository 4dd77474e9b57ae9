# Intel Module - AlienVault OTX Feed Fetcher
#
# Concrete FeedFetcher for AlienVault Open Threat Exchange (OTX).
# Pulls the subscribed pulse list (threat reports) and returns the raw
# ``{"results": [...]}`` envelope for the normalizer.
#
# Supports:
#   - API key authentication via X-OTX-API-KEY
#   - Pagination (OTX uses a full next-page URL)
#   - Incremental pulls via modified_since

import logging
from typing import Any, Dict, List, Optional

from .fetcher import FeedFetcher, RequestShape
from .models import RawPayload, ThreatSource

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://otx.alienvault.com"
PULSES_PATH = "/api/v1/pulses/subscribed"
USER_PATH = "/api/v1/user/me"

DEFAULT_MAX_PAGES = 1
DEFAULT_PAGE_SIZE = 50


class OTXFetcher(FeedFetcher):
    """AlienVault OTX pulse feed adapter.

    Usage::

        fetcher = OTXFetcher()
        fetcher.configure(api_key="your-otx-api-key")
        payload = fetcher.fetch()   # {"results": [pulse, ...]}
    """

    source = ThreatSource.OTX
    envelope_key = "results"

    def __init__(self):
        super().__init__("alienvault-otx")
        self._base_url: str = DEFAULT_BASE_URL
        self._max_pages: int = DEFAULT_MAX_PAGES
        self._page_size: int = DEFAULT_PAGE_SIZE
        self._modified_since: Optional[str] = None

    # ------------------------------------------------------------------
    # FeedFetcher interface
    # ------------------------------------------------------------------

    def configure(self, **kwargs) -> None:
        """Configure the OTX fetcher.

        Keyword Args:
            api_key: OTX API key (subscribed pulses require one).
            base_url: Override the default OTX API base URL.
            max_pages: Maximum number of pages to follow (default 1).
            page_size: Pulses per page (default 50).
            modified_since: ISO 8601 timestamp for incremental pulls.
            min_interval: Minimum seconds between calls (default 0).
        """
        self._configure_common(kwargs, min_interval=0.0)
        self._base_url = kwargs.get("base_url", DEFAULT_BASE_URL).rstrip("/")
        self._max_pages = kwargs.get("max_pages", DEFAULT_MAX_PAGES)
        self._page_size = kwargs.get("page_size", DEFAULT_PAGE_SIZE)
        self._modified_since = kwargs.get("modified_since")

    def probe_shapes(self) -> List[RequestShape]:
        return [
            RequestShape(
                name="Subscribed pulses (minimal)",
                url=f"{self._base_url}{PULSES_PATH}",
                params={"limit": "1"},
                use_api_key=True,
            ),
            RequestShape(
                name="User profile",
                url=f"{self._base_url}{USER_PATH}",
                use_api_key=True,
            ),
        ]

    def _auth_headers(self) -> Dict[str, str]:
        return {"X-OTX-API-KEY": self._api_key or ""}

    # ------------------------------------------------------------------
    # Pulse fetching with pagination
    # ------------------------------------------------------------------

    def _fetch_payload(self) -> RawPayload:
        """Fetch subscribed pulses, following ``next`` links."""
        params: Dict[str, str] = {"limit": str(self._page_size)}
        if self._modified_since:
            params["modified_since"] = self._modified_since

        pulses: List[Dict[str, Any]] = []
        url: Optional[str] = f"{self._base_url}{PULSES_PATH}"
        page = 0

        while url and page < self._max_pages:
            # next links already carry the query string
            data = self._request(url, params=params if page == 0 else None)
            pulses.extend(data.get("results") or [])
            url = data.get("next") or None
            page += 1

        logger.info("OTX returned %d pulses across %d page(s)", len(pulses), page)
        return {"results": pulses}
