# Intel Module - NVD (National Vulnerability Database) Feed Fetcher
#
# Concrete FeedFetcher for NIST NVD CVE API v2.0.
#
# NVD API v2.0:
#   - Base URL: https://services.nvd.nist.gov/rest/json/cves/2.0
#   - No API key required, but limited to 5 requests/30s without one
#   - With API key (apiKey header): 50 requests/30s
#   - Pagination via startIndex + resultsPerPage
#   - pubStartDate/pubEndDate range filter (max 120 days)
#
# The endpoint intermittently answers 404 for valid requests, so a 404 is
# retried once and, if it persists, marks the adapter unavailable until a
# connectivity probe succeeds.
#
# The unauthenticated path is tried first and the keyed path only on
# failure: the two have historically behaved differently on NVD.

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from .fetcher import FeedError, FeedFetcher, RequestShape
from .models import RawPayload, ThreatSource

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"

# 5 req/30s without API key, 50 req/30s with key
DELAY_NO_KEY_SEC = 6.0
DELAY_WITH_KEY_SEC = 0.7

DEFAULT_RESULTS_PER_PAGE = 100
MAX_RESULTS_PER_PAGE = 2000
MAX_PUB_RANGE_DAYS = 120

NVD_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.000+00:00"


class NVDFetcher(FeedFetcher):
    """NIST National Vulnerability Database (NVD) CVE feed adapter.

    Usage::

        fetcher = NVDFetcher()
        fetcher.configure(api_key="your-nvd-api-key")  # optional
        payload = fetcher.fetch()   # {"vulnerabilities": [...], ...}
    """

    source = ThreatSource.NVD
    envelope_key = "vulnerabilities"

    def __init__(self):
        super().__init__("nvd")
        self._base_url: str = DEFAULT_BASE_URL
        self._results_per_page: int = DEFAULT_RESULTS_PER_PAGE
        self._keyword_search: Optional[str] = None
        self._days_back: Optional[int] = None
        self._rate_limiter.min_interval = DELAY_NO_KEY_SEC

    # ------------------------------------------------------------------
    # FeedFetcher interface
    # ------------------------------------------------------------------

    def configure(self, **kwargs) -> None:
        """Configure the NVD fetcher.

        Keyword Args:
            api_key: NVD API key (optional, raises the quota).
            base_url: Override the default NVD API base URL.
            results_per_page: Results per request (default 100, max 2000).
            keyword_search: Filter CVEs by keyword (e.g., "medical").
            days_back: Restrict to CVEs published in the last N days.
            min_interval: Override the quota-derived call interval.
        """
        api_key = kwargs.get("api_key")
        default_interval = DELAY_WITH_KEY_SEC if api_key else DELAY_NO_KEY_SEC
        self._configure_common(kwargs, min_interval=default_interval)
        self._base_url = kwargs.get("base_url", DEFAULT_BASE_URL).rstrip("/")
        self._results_per_page = min(
            kwargs.get("results_per_page", DEFAULT_RESULTS_PER_PAGE),
            MAX_RESULTS_PER_PAGE,
        )
        self._keyword_search = kwargs.get("keyword_search") or None
        days_back = kwargs.get("days_back")
        self._days_back = (
            min(int(days_back), MAX_PUB_RANGE_DAYS) if days_back else None
        )

    def probe_shapes(self) -> List[RequestShape]:
        return [
            RequestShape(
                name="Standard without API key",
                url=self._base_url,
                params={"resultsPerPage": "5"},
            ),
            RequestShape(
                name="Standard with API key",
                url=self._base_url,
                params={"resultsPerPage": "5"},
                use_api_key=True,
            ),
            RequestShape(
                name="Minimal without API key",
                url=self._base_url,
                params={"resultsPerPage": "1"},
            ),
            RequestShape(
                name="With trailing slash",
                url=self._base_url + "/",
                params={"resultsPerPage": "5"},
            ),
        ]

    def _auth_headers(self) -> Dict[str, str]:
        return {"apiKey": self._api_key or ""}

    # ------------------------------------------------------------------
    # CVE fetching
    # ------------------------------------------------------------------

    def _fetch_payload(self) -> RawPayload:
        """Fetch one page of CVEs, unauthenticated first."""
        params = self._build_query_params()

        try:
            data = self._request(
                self._base_url, params=params, use_api_key=False, max_retries=0
            )
            logger.info("NVD fetch succeeded without API key")
            return data
        except FeedError as exc:
            logger.warning(
                "NVD request without API key failed (%s), trying %s",
                exc,
                "with API key" if self._api_key else "again",
            )

        data = self._request(self._base_url, params=params, use_api_key=True)
        logger.info(
            "NVD fetch succeeded on fallback path (%s)",
            "with API key" if self._api_key else "without API key",
        )
        return data

    def _build_query_params(self) -> Dict[str, str]:
        """Build NVD API query parameters."""
        params: Dict[str, str] = {
            "resultsPerPage": str(self._results_per_page),
            "startIndex": "0",
        }

        if self._keyword_search:
            params["keywordSearch"] = self._keyword_search

        if self._days_back:
            end = datetime.now(timezone.utc)
            start = end - timedelta(days=self._days_back)
            params["pubStartDate"] = start.strftime(NVD_DATE_FORMAT)
            params["pubEndDate"] = end.strftime(NVD_DATE_FORMAT)

        return params
