"""
Tests for the CISA Known Exploited Vulnerabilities Feed Fetcher.

All HTTP calls are mocked; no external network access required.
"""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from biowatch.intel.cisa_fetcher import DEFAULT_FEED_URL, MIRROR_FEED_URL, CISAFetcher
from biowatch.intel.models import ThreatSource


def _mock_response(status_code=200, json_data=None, text=None):
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    if text is None:
        text = json.dumps(json_data) if json_data is not None else ""
    resp.text = text
    resp.json.side_effect = lambda: json.loads(text)
    return resp


KEV_CATALOG = {
    "title": "CISA Catalog of Known Exploited Vulnerabilities",
    "catalogVersion": "2024.05.01",
    "count": 1,
    "vulnerabilities": [
        {
            "cveID": "CVE-2024-1111",
            "vendorProject": "Acme",
            "product": "InfusionPump",
            "dateAdded": "2024-05-01",
            "knownRansomwareCampaignUse": "Known",
        }
    ],
}


class TestCISAFetcher:
    def test_defaults(self):
        f = CISAFetcher()
        f.configure()
        assert f.name == "cisa-kev"
        assert f.source == ThreatSource.CISA
        assert not f.has_api_key
        assert [s.url for s in f.probe_shapes()] == [DEFAULT_FEED_URL, MIRROR_FEED_URL]

    @patch("biowatch.intel.fetcher.httpx.request")
    def test_fetch_returns_catalog(self, mock_request):
        f = CISAFetcher()
        f.configure()
        mock_request.return_value = _mock_response(200, KEV_CATALOG)
        payload = f.fetch()
        assert payload["vulnerabilities"][0]["cveID"] == "CVE-2024-1111"
        assert "X-OTX-API-KEY" not in mock_request.call_args.kwargs["headers"]

    @patch("biowatch.intel.fetcher.httpx.request")
    def test_feed_url_override(self, mock_request):
        f = CISAFetcher()
        f.configure(feed_url="https://mirror.example/kev.json")
        mock_request.return_value = _mock_response(200, KEV_CATALOG)
        f.fetch()
        assert mock_request.call_args.args[1] == "https://mirror.example/kev.json"

    @patch("biowatch.intel.fetcher.time.sleep")
    @patch("biowatch.intel.fetcher.httpx.request")
    def test_custom_retry_delay(self, mock_request, mock_sleep):
        f = CISAFetcher()
        f.configure(retry_delay=0.5)
        mock_request.side_effect = [
            _mock_response(404, text="gone"),
            _mock_response(200, KEV_CATALOG),
        ]
        f.fetch()
        mock_sleep.assert_called_once_with(0.5)
