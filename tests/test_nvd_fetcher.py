"""
Tests for the NVD (National Vulnerability Database) Feed Fetcher.

All HTTP calls are mocked; no external network access required.
Covers: configuration, quota-derived rate limiting, query parameters,
unauthenticated-first credential fallback, probe shapes.
"""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from biowatch.intel.fetcher import AuthError, NotFoundError
from biowatch.intel.nvd_fetcher import (
    DEFAULT_BASE_URL,
    DELAY_NO_KEY_SEC,
    DELAY_WITH_KEY_SEC,
    MAX_PUB_RANGE_DAYS,
    NVDFetcher,
)


# ===================================================================
# Fixtures & helpers
# ===================================================================

@pytest.fixture
def fetcher():
    f = NVDFetcher()
    f.configure()
    return f


@pytest.fixture
def fetcher_with_key():
    f = NVDFetcher()
    f.configure(api_key="test-nvd-key")
    return f


def _mock_response(status_code=200, json_data=None, text=None):
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    if text is None:
        text = json.dumps(json_data) if json_data is not None else ""
    resp.text = text
    resp.json.side_effect = lambda: json.loads(text)
    return resp


def _nvd_response(*cve_ids):
    vulns = [{"cve": {"id": cid, "descriptions": []}} for cid in cve_ids]
    return {
        "vulnerabilities": vulns,
        "totalResults": len(vulns),
        "resultsPerPage": 100,
        "startIndex": 0,
    }


class FakeClock:
    def __init__(self, start=5000.0):
        self.now = start
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


# ===================================================================
# Configuration
# ===================================================================

class TestNVDConfiguration:
    def test_default_name(self):
        assert NVDFetcher().name == "nvd"

    def test_strict_interval_before_configure(self):
        assert NVDFetcher().get_stats()["min_interval_sec"] == DELAY_NO_KEY_SEC

    def test_no_key_uses_strict_interval(self, fetcher):
        assert fetcher.get_stats()["min_interval_sec"] == DELAY_NO_KEY_SEC == 6.0
        assert not fetcher.has_api_key

    def test_key_uses_relaxed_interval(self, fetcher_with_key):
        assert fetcher_with_key.get_stats()["min_interval_sec"] == DELAY_WITH_KEY_SEC
        assert fetcher_with_key.has_api_key

    def test_results_per_page_capped(self):
        f = NVDFetcher()
        f.configure(results_per_page=10_000)
        assert f._build_query_params()["resultsPerPage"] == "2000"

    def test_base_url_trailing_slash_stripped(self):
        f = NVDFetcher()
        f.configure(base_url="https://nvd.example/api/")
        assert f._base_url == "https://nvd.example/api"


# ===================================================================
# Query parameters
# ===================================================================

class TestQueryParams:
    def test_defaults(self, fetcher):
        params = fetcher._build_query_params()
        assert params == {"resultsPerPage": "100", "startIndex": "0"}

    def test_keyword_search(self):
        f = NVDFetcher()
        f.configure(keyword_search="medical")
        assert f._build_query_params()["keywordSearch"] == "medical"

    def test_days_back_adds_publication_range(self):
        f = NVDFetcher()
        f.configure(days_back=7)
        params = f._build_query_params()
        assert params["pubStartDate"].endswith(".000+00:00")
        assert params["pubStartDate"] < params["pubEndDate"]

    def test_days_back_capped_at_api_maximum(self):
        f = NVDFetcher()
        f.configure(days_back=365)
        assert f._days_back == MAX_PUB_RANGE_DAYS


# ===================================================================
# Rate limiting
# ===================================================================

class TestNVDRateLimiting:
    @patch("biowatch.intel.fetcher.httpx.request")
    def test_unauthenticated_calls_six_seconds_apart(self, mock_request, fetcher):
        clock = FakeClock()
        sent_at = []

        def _send(*args, **kwargs):
            sent_at.append(clock.now)
            return _mock_response(200, _nvd_response("CVE-2024-0001"))

        mock_request.side_effect = _send
        with patch("biowatch.intel.fetcher.time.monotonic", clock.monotonic), \
             patch("biowatch.intel.fetcher.time.sleep", clock.sleep):
            fetcher.fetch()
            fetcher.fetch()

        assert len(sent_at) == 2
        assert sent_at[1] - sent_at[0] >= 6.0

    @patch("biowatch.intel.fetcher.httpx.request")
    def test_keyed_calls_use_short_interval(self, mock_request, fetcher_with_key):
        clock = FakeClock()
        sent_at = []

        def _send(*args, **kwargs):
            sent_at.append(clock.now)
            return _mock_response(200, _nvd_response())

        mock_request.side_effect = _send
        with patch("biowatch.intel.fetcher.time.monotonic", clock.monotonic), \
             patch("biowatch.intel.fetcher.time.sleep", clock.sleep):
            fetcher_with_key.fetch()
            fetcher_with_key.fetch()

        assert sent_at[1] - sent_at[0] == pytest.approx(DELAY_WITH_KEY_SEC)


# ===================================================================
# Credential fallback
# ===================================================================

class TestCredentialFallback:
    @patch("biowatch.intel.fetcher.time.sleep")
    @patch("biowatch.intel.fetcher.httpx.request")
    def test_unauthenticated_first(self, mock_request, mock_sleep, fetcher_with_key):
        mock_request.return_value = _mock_response(200, _nvd_response("CVE-2024-0001"))
        payload = fetcher_with_key.fetch()
        assert len(payload["vulnerabilities"]) == 1
        assert mock_request.call_count == 1
        args, kwargs = mock_request.call_args
        assert args == ("GET", DEFAULT_BASE_URL)
        assert "apiKey" not in kwargs["headers"]

    @patch("biowatch.intel.fetcher.time.sleep")
    @patch("biowatch.intel.fetcher.httpx.request")
    def test_falls_back_to_api_key(self, mock_request, mock_sleep, fetcher_with_key):
        mock_request.side_effect = [
            _mock_response(404, text="not found"),
            _mock_response(200, _nvd_response("CVE-2024-0002")),
        ]
        payload = fetcher_with_key.fetch()
        assert payload["vulnerabilities"][0]["cve"]["id"] == "CVE-2024-0002"
        first, second = mock_request.call_args_list
        assert "apiKey" not in first.kwargs["headers"]
        assert second.kwargs["headers"]["apiKey"] == "test-nvd-key"
        assert fetcher_with_key.is_available

    @patch("biowatch.intel.fetcher.time.sleep")
    @patch("biowatch.intel.fetcher.httpx.request")
    def test_fallback_without_key_repeats_unauthenticated(
        self, mock_request, mock_sleep, fetcher
    ):
        mock_request.side_effect = [
            _mock_response(200, text=""),
            _mock_response(200, _nvd_response()),
        ]
        fetcher.fetch()
        assert mock_request.call_count == 2
        for c in mock_request.call_args_list:
            assert "apiKey" not in c.kwargs["headers"]

    @patch("biowatch.intel.fetcher.time.sleep")
    @patch("biowatch.intel.fetcher.httpx.request")
    def test_fallback_retries_once_then_fails(self, mock_request, mock_sleep, fetcher_with_key):
        mock_request.return_value = _mock_response(404, text="not found")
        with pytest.raises(NotFoundError):
            fetcher_with_key.fetch()
        # unauthenticated (no retry) + keyed + one retry
        assert mock_request.call_count == 3
        retry_sleeps = [c for c in mock_sleep.call_args_list if c.args == (10.0,)]
        assert len(retry_sleeps) == 1
        assert not fetcher_with_key.is_available

    @patch("biowatch.intel.fetcher.time.sleep")
    @patch("biowatch.intel.fetcher.httpx.request")
    def test_keyed_auth_failure_surfaces(self, mock_request, mock_sleep, fetcher_with_key):
        mock_request.side_effect = [
            _mock_response(404, text="not found"),
            _mock_response(403, text="bad key"),
        ]
        with pytest.raises(AuthError):
            fetcher_with_key.fetch()
        assert mock_request.call_count == 2


# ===================================================================
# Probe shapes
# ===================================================================

class TestNVDProbe:
    def test_four_shapes(self, fetcher):
        names = [s.name for s in fetcher.probe_shapes()]
        assert len(names) == 4
        assert fetcher.probe_shapes()[3].url.endswith("/")

    @patch("biowatch.intel.fetcher.time.sleep")
    @patch("biowatch.intel.fetcher.httpx.request")
    def test_keyed_shape_skipped_without_key(self, mock_request, mock_sleep, fetcher):
        mock_request.side_effect = [
            _mock_response(404, text="gone"),   # standard without key
            _mock_response(200, _nvd_response()),  # minimal without key
        ]
        assert fetcher.probe() is True
        params = [c.kwargs["params"] for c in mock_request.call_args_list]
        assert params == [{"resultsPerPage": "5"}, {"resultsPerPage": "1"}]

    @patch("biowatch.intel.fetcher.time.sleep")
    @patch("biowatch.intel.fetcher.httpx.request")
    def test_keyed_shape_used_with_key(self, mock_request, mock_sleep, fetcher_with_key):
        mock_request.side_effect = [
            _mock_response(404, text="gone"),
            _mock_response(200, _nvd_response()),
        ]
        assert fetcher_with_key.probe() is True
        second = mock_request.call_args_list[1]
        assert second.kwargs["headers"]["apiKey"] == "test-nvd-key"
