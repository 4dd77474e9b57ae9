# Intel Module - Abstract Feed Fetcher
#
# Defines the FeedFetcher abstract base class that every concrete feed
# integration (AlienVault OTX, NIST NVD, CISA KEV) implements, plus the
# behaviour they all share:
#
#   - Rate limiting: a per-adapter minimum interval between calls. The
#     caller is blocked (slept) until the interval has elapsed, never failed.
#   - Availability tracking: an adapter that saw its endpoint disappear is
#     marked unavailable and must pass a connectivity probe (several
#     known-good request shapes) before the next substantive fetch.
#   - Retry: one retry after a fixed delay, only for transient classes
#     (404 mis-routes, empty/undecodable bodies, transport errors).
#     401/403 and 429 are surfaced immediately as categorized errors.
#
# All mutable state (availability flag, last-request timestamp, stats)
# lives on the adapter instance.

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from .models import RawPayload, ThreatSource

logger = logging.getLogger(__name__)

USER_AGENT = "BioWatch/0.1"
REQUEST_TIMEOUT_SEC = 30
RETRY_DELAY_SEC = 10.0
DEFAULT_MAX_RETRIES = 1


# ---------------------------------------------------------------------------
# Categorized errors
# ---------------------------------------------------------------------------


class FeedError(Exception):
    """Base class for categorized feed failures."""

    def __init__(
        self,
        message: str,
        source: Optional[ThreatSource] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.source = source
        self.status_code = status_code


class AuthError(FeedError):
    """401/403 from the provider. Never retried."""


class NotFoundError(FeedError):
    """404 that persisted through its retry."""


class TransientError(FeedError):
    """Network, deserialization or server-side failure."""


class RateLimitError(TransientError):
    """429 from the provider. Not retried within the cycle."""


class FeedUnavailableError(TransientError):
    """The adapter is marked unavailable and its probe failed."""


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class RateLimiter:
    """Minimum-interval gate between successive calls of one adapter."""

    def __init__(self, min_interval: float = 0.0, name: str = ""):
        self.min_interval = max(0.0, float(min_interval))
        self.name = name
        self._last_request: Optional[float] = None

    def wait(self) -> float:
        """Block until ``min_interval`` has passed since the previous call.

        Returns:
            Seconds slept (0.0 when no wait was needed).
        """
        slept = 0.0
        if self.min_interval > 0 and self._last_request is not None:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.min_interval:
                slept = self.min_interval - elapsed
                logger.warning(
                    "Rate limit: waiting %.1fs before next %s request",
                    slept, self.name or "feed",
                )
                time.sleep(slept)
        self._last_request = time.monotonic()
        return slept

    @property
    def last_request(self) -> Optional[float]:
        return self._last_request


@dataclass
class RequestShape:
    """One known-good request used by the connectivity probe."""

    name: str
    url: str
    params: Optional[Dict[str, str]] = None
    use_api_key: bool = False


# ---------------------------------------------------------------------------
# Abstract adapter
# ---------------------------------------------------------------------------


class FeedFetcher(ABC):
    """Abstract base class for threat feed adapters.

    Each concrete adapter returns the provider's raw JSON envelope from
    ``fetch()``; mapping onto ``CanonicalThreat`` is the normalizer's job.

    Lifecycle:
        1. ``configure()`` - set API keys, base URLs, intervals
        2. ``fetch()`` - pull the current feed payload
        3. ``health_check()`` - verify the feed is reachable
    """

    source: ThreatSource
    envelope_key: str = ""

    def __init__(self, name: str):
        self.name = name
        self._api_key: Optional[str] = None
        self._timeout: float = REQUEST_TIMEOUT_SEC
        self._retry_delay: float = RETRY_DELAY_SEC
        self._rate_limiter = RateLimiter(0.0, name=name)
        self._available: bool = True
        self._last_fetch: Optional[str] = None
        self._fetch_count: int = 0
        self._error_count: int = 0
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    @abstractmethod
    def configure(self, **kwargs) -> None:
        """Configure the adapter (API keys, endpoints, etc.).

        Keyword Args:
            api_key: API key for the feed (if any)
            base_url: Override default base URL
            min_interval: Minimum seconds between calls
            retry_delay: Seconds to wait before the single retry
            timeout: Per-request timeout in seconds
        """

    @abstractmethod
    def probe_shapes(self) -> List[RequestShape]:
        """Known-good requests tried in order by ``probe()``."""

    @abstractmethod
    def _fetch_payload(self) -> RawPayload:
        """Perform the substantive fetch and return the raw envelope."""

    def _auth_headers(self) -> Dict[str, str]:
        """Provider-specific credential headers (empty by default)."""
        return {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    @property
    def is_available(self) -> bool:
        return self._available

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key)

    def fetch(self) -> RawPayload:
        """Fetch the provider's current payload.

        Runs the connectivity probe first when the adapter is marked
        unavailable.

        Raises:
            FeedError: categorized failure (auth, not found, transient).
        """
        try:
            if not self._available:
                logger.warning(
                    "%s marked unavailable - attempting connectivity probe first",
                    self.name,
                )
                if not self.probe():
                    raise FeedUnavailableError(
                        f"{self.name} is unavailable: all probe requests failed",
                        source=self.source,
                    )
            payload = self._fetch_payload()
            items = payload.get(self.envelope_key) or []
            self.record_fetch(len(items))
            return payload
        except FeedError as exc:
            self.record_error(str(exc))
            raise

    def health_check(self) -> bool:
        """Return True if the feed source is reachable and healthy."""
        return self.probe()

    def probe(self) -> bool:
        """Try each known-good request shape until one succeeds.

        404s, transport errors and undecodable bodies move on to the next
        shape; auth failures, rate limiting and other HTTP errors end the
        probe immediately.  Updates the availability flag either way.
        """
        logger.info("Testing %s connectivity with minimal requests", self.name)
        for shape in self.probe_shapes():
            if shape.use_api_key and not self._api_key:
                continue
            try:
                self._request(
                    shape.url,
                    params=shape.params,
                    use_api_key=shape.use_api_key,
                    max_retries=0,
                )
            except (AuthError, RateLimitError) as exc:
                logger.error("%s probe failed (%s): %s", self.name, shape.name, exc)
                break
            except NotFoundError:
                logger.warning(
                    "%s probe returned 404 for %s - trying next shape",
                    self.name, shape.name,
                )
                continue
            except TransientError as exc:
                if exc.status_code is not None:
                    logger.error(
                        "%s probe failed (%s): %s", self.name, shape.name, exc
                    )
                    break
                logger.warning(
                    "%s probe error for %s (%s) - trying next shape",
                    self.name, shape.name, exc,
                )
                continue
            logger.info("%s connectivity probe passed: %s", self.name, shape.name)
            self._available = True
            return True

        logger.error("%s connectivity probe failed for every request shape", self.name)
        self._available = False
        return False

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _configure_common(self, kwargs: Dict[str, Any], min_interval: float) -> None:
        """Apply the keyword arguments shared by every adapter."""
        self._api_key = kwargs.get("api_key") or None
        self._timeout = kwargs.get("timeout", REQUEST_TIMEOUT_SEC)
        self._retry_delay = kwargs.get("retry_delay", RETRY_DELAY_SEC)
        self._rate_limiter = RateLimiter(
            kwargs.get("min_interval", min_interval), name=self.name
        )

    def _build_headers(self, use_api_key: bool = True) -> Dict[str, str]:
        """Build HTTP headers, including credentials when requested."""
        headers: Dict[str, str] = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if use_api_key and self._api_key:
            headers.update(self._auth_headers())
        return headers

    def _send(
        self,
        url: str,
        params: Optional[Dict[str, str]],
        use_api_key: bool,
    ) -> httpx.Response:
        """Issue one GET after honouring the rate limit."""
        self._rate_limiter.wait()
        logger.debug("%s request: %s params=%s", self.name, url, params)
        return httpx.request(
            "GET",
            url,
            headers=self._build_headers(use_api_key),
            params=params,
            timeout=self._timeout,
        )

    def _request(
        self,
        url: str,
        params: Optional[Dict[str, str]] = None,
        use_api_key: bool = True,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> RawPayload:
        """Execute a GET with the transient-only retry policy.

        Returns:
            The decoded JSON object.

        Raises:
            AuthError: 401/403, immediately.
            RateLimitError: 429, immediately.
            NotFoundError: 404 persisting after retries (marks unavailable).
            TransientError: transport/decode failures after retries, or
                any other non-2xx status immediately.
        """
        last_error: Optional[FeedError] = None

        for attempt in range(max_retries + 1):
            if attempt > 0:
                logger.warning(
                    "Retrying %s request (attempt %d/%d) after %.0fs delay",
                    self.name, attempt + 1, max_retries + 1, self._retry_delay,
                )
                time.sleep(self._retry_delay)

            try:
                resp = self._send(url, params, use_api_key)
            except httpx.TransportError as exc:
                last_error = TransientError(
                    f"{self.name} request failed: {exc}", source=self.source
                )
                logger.warning("%s request exception: %s", self.name, exc)
                continue

            status = resp.status_code
            if status in (401, 403):
                raise AuthError(
                    f"{self.name} authentication failed (HTTP {status}). "
                    f"Check API key.",
                    source=self.source,
                    status_code=status,
                )
            if status == 429:
                raise RateLimitError(
                    f"{self.name} rate limit exceeded (HTTP 429)",
                    source=self.source,
                    status_code=status,
                )
            if status == 404:
                last_error = NotFoundError(
                    f"{self.name} endpoint not found (HTTP 404): {url}",
                    source=self.source,
                    status_code=status,
                )
                logger.warning("%s returned 404 for %s", self.name, url)
                continue
            if status >= 400:
                raise TransientError(
                    f"{self.name} returned HTTP {status}: {_snippet(resp)}",
                    source=self.source,
                    status_code=status,
                )

            try:
                data = _decode_json(resp)
            except ValueError as exc:
                last_error = TransientError(
                    f"{self.name} response could not be deserialized: {exc}",
                    source=self.source,
                )
                logger.error("%s deserialization error: %s", self.name, exc)
                continue

            self._available = True
            return data

        if isinstance(last_error, NotFoundError):
            self._available = False
        if last_error is None:
            last_error = TransientError(
                f"{self.name} request failed: max retries exceeded",
                source=self.source,
            )
        raise last_error

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def record_fetch(self, count: int) -> None:
        """Record a successful fetch for stats tracking."""
        self._last_fetch = datetime.now(timezone.utc).isoformat()
        self._fetch_count += count

    def record_error(self, error: str = "") -> None:
        """Record a fetch error for stats tracking."""
        self._error_count += 1
        self._last_error = error or None

    def get_stats(self) -> Dict[str, object]:
        """Return adapter statistics."""
        return {
            "name": self.name,
            "source": self.source.value,
            "available": self._available,
            "has_api_key": self.has_api_key,
            "min_interval_sec": self._rate_limiter.min_interval,
            "last_fetch": self._last_fetch,
            "total_fetched": self._fetch_count,
            "total_errors": self._error_count,
            "last_error": self._last_error,
        }


def _decode_json(resp: httpx.Response) -> RawPayload:
    """Decode a JSON object body; empty or non-object bodies are errors."""
    if not (resp.text or "").strip():
        raise ValueError("Response body is empty")
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _snippet(resp: httpx.Response, limit: int = 200) -> str:
    text = (resp.text or "").strip()
    if not text:
        return "(empty response body)"
    return text if len(text) <= limit else text[:limit] + "..."
