"""
Tests for the feed normalizer and relevance filter.

Covers: OTX/NVD/CISA field mapping, CVSS -> impact mapping, relevance
filter, drop rules, determinism, date parsing.
"""

from datetime import datetime, timezone

import pytest

from biowatch.intel.models import CanonicalThreat, ImpactLevel, ThreatSource
from biowatch.intel.normalizer import (
    extract_base_score,
    is_relevant,
    normalize,
    normalize_cisa,
    normalize_cisa_item,
    normalize_nvd,
    normalize_nvd_item,
    normalize_otx,
    normalize_otx_pulse,
)


# ===================================================================
# Helpers
# ===================================================================

def _nvd_item(cve_id="CVE-2024-0001", score=7.5, description="Flaw in hospital PACS server",
              metric_key="cvssMetricV31", published="2024-02-01T10:15:00.000"):
    metrics = {}
    if score is not None:
        metrics[metric_key] = [{"cvssData": {"baseScore": score}}]
    return {
        "cve": {
            "id": cve_id,
            "published": published,
            "descriptions": [
                {"lang": "es", "value": "Defecto"},
                {"lang": "en", "value": description},
            ],
            "metrics": metrics,
        }
    }


def _threat(title, description="", category="Malware"):
    return CanonicalThreat(
        title=title,
        description=description,
        category=category,
        source=ThreatSource.OTX,
        date_observed=datetime(2024, 1, 1, tzinfo=timezone.utc),
        impact_level=ImpactLevel.MEDIUM,
    )


# ===================================================================
# Relevance filter
# ===================================================================

class TestRelevanceFilter:
    def test_domain_keyword_passes(self):
        assert is_relevant(_threat("hospital ransomware"))

    def test_unrelated_dropped(self):
        assert not is_relevant(_threat("router firmware exploit"))

    def test_case_insensitive(self):
        assert is_relevant(_threat("SCADA intrusion"))

    def test_keyword_in_description(self):
        assert is_relevant(_threat("New campaign", description="Aimed at clinical trials"))

    def test_medical_device_product(self):
        assert is_relevant(_threat("CVE-2024-1111", description="Affected product: Acme InfusionPump"))


# ===================================================================
# OTX
# ===================================================================

class TestOTXNormalization:
    def test_field_mapping(self):
        threat = normalize_otx_pulse({
            "id": "abc123",
            "name": "Hospital ransomware",
            "description": "LockBit affiliate",
            "created": "2024-03-01T12:00:00",
            "tags": ["ransomware", "healthcare"],
        })
        assert threat.title == "Hospital ransomware"
        assert threat.category == "Malware"
        assert threat.impact_level == ImpactLevel.MEDIUM
        assert threat.source == ThreatSource.OTX
        assert threat.external_reference == "https://otx.alienvault.com/pulse/abc123"
        assert threat.description == "LockBit affiliate\nTags: ransomware, healthcare"
        assert threat.date_observed == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert threat.origin_user is None

    def test_missing_name_dropped(self):
        assert normalize_otx_pulse({"id": "x", "description": "hospital"}) is None

    def test_missing_id_has_no_reference(self):
        threat = normalize_otx_pulse({"name": "Clinic phishing"})
        assert threat.external_reference is None

    def test_envelope_filters_irrelevant(self):
        payload = {"results": [
            {"id": "1", "name": "hospital ransomware"},
            {"id": "2", "name": "router firmware exploit"},
            {"id": "3"},
            "garbage",
        ]}
        threats = normalize_otx(payload)
        assert [t.title for t in threats] == ["hospital ransomware"]


# ===================================================================
# NVD
# ===================================================================

class TestNVDNormalization:
    @pytest.mark.parametrize("score, expected", [
        (9.5, ImpactLevel.CRITICAL),
        (7.2, ImpactLevel.HIGH),
        (4.5, ImpactLevel.MEDIUM),
        (2.0, ImpactLevel.LOW),
    ])
    def test_cvss_mapping(self, score, expected):
        assert normalize_nvd_item(_nvd_item(score=score)).impact_level == expected

    def test_cvss_boundaries(self):
        assert ImpactLevel.from_cvss(9.0) == ImpactLevel.CRITICAL
        assert ImpactLevel.from_cvss(7.0) == ImpactLevel.HIGH
        assert ImpactLevel.from_cvss(4.0) == ImpactLevel.MEDIUM
        assert ImpactLevel.from_cvss(3.9) == ImpactLevel.LOW

    def test_missing_score_defaults_high(self):
        assert normalize_nvd_item(_nvd_item(score=None)).impact_level == ImpactLevel.HIGH

    def test_v2_fallback(self):
        item = _nvd_item(score=5.0, metric_key="cvssMetricV2")
        assert extract_base_score(item["cve"]) == 5.0

    def test_field_mapping(self):
        threat = normalize_nvd_item(_nvd_item(cve_id="CVE-2024-4242"))
        assert threat.title == "CVE-2024-4242"
        assert threat.category == "Vulnerability"
        assert threat.description == "Flaw in hospital PACS server"
        assert threat.external_reference == "https://nvd.nist.gov/vuln/detail/CVE-2024-4242"
        assert threat.date_observed.date().isoformat() == "2024-02-01"

    def test_missing_id_dropped(self):
        assert normalize_nvd_item({"cve": {"descriptions": []}}) is None
        assert normalize_nvd_item({}) is None

    def test_envelope_filters_irrelevant(self):
        payload = {"vulnerabilities": [
            _nvd_item("CVE-1", description="Patient monitor overflow"),
            _nvd_item("CVE-2", description="router firmware exploit"),
        ]}
        assert [t.title for t in normalize_nvd(payload)] == ["CVE-1"]


# ===================================================================
# CISA KEV
# ===================================================================

class TestCISANormalization:
    def test_known_ransomware_is_critical(self):
        threat = normalize_cisa_item({
            "cveID": "CVE-2024-1111",
            "vendorProject": "Acme",
            "product": "InfusionPump",
            "knownRansomwareCampaignUse": "Known",
        })
        assert threat.impact_level == ImpactLevel.CRITICAL
        assert threat.title == "CVE-2024-1111"
        assert threat.category == "Exploited Vulnerability"
        assert "Affected product: Acme InfusionPump" in threat.description
        assert threat.external_reference == "https://nvd.nist.gov/vuln/detail/CVE-2024-1111"
        assert is_relevant(threat)

    def test_unknown_ransomware_is_high(self):
        threat = normalize_cisa_item({"cveID": "CVE-1", "knownRansomwareCampaignUse": "Unknown"})
        assert threat.impact_level == ImpactLevel.HIGH

    def test_missing_ransomware_field_is_high(self):
        assert normalize_cisa_item({"cveID": "CVE-1"}).impact_level == ImpactLevel.HIGH

    def test_vulnerability_name_preferred_as_title(self):
        threat = normalize_cisa_item({
            "cveID": "CVE-1",
            "vulnerabilityName": "Acme Lab Server RCE",
            "dateAdded": "2024-05-01",
        })
        assert threat.title == "Acme Lab Server RCE"
        assert threat.date_observed == datetime(2024, 5, 1, tzinfo=timezone.utc)

    def test_name_without_cve_has_no_reference(self):
        threat = normalize_cisa_item({"vulnerabilityName": "Medical gateway flaw"})
        assert threat.external_reference is None

    def test_empty_item_dropped(self):
        assert normalize_cisa_item({"vendorProject": "Acme"}) is None

    def test_envelope(self):
        payload = {"vulnerabilities": [
            {"cveID": "CVE-A", "vendorProject": "Acme", "product": "Ventilator"},
            {"cveID": "CVE-B", "vendorProject": "Net", "product": "Router"},
        ]}
        assert [t.title for t in normalize_cisa(payload)] == ["CVE-A"]


# ===================================================================
# Determinism & dispatch
# ===================================================================

class TestDeterminism:
    def test_same_input_same_fields(self):
        payload = {"vulnerabilities": [_nvd_item("CVE-9", score=9.8)]}
        first = [t.fingerprint() for t in normalize(ThreatSource.NVD, payload)]
        second = [t.fingerprint() for t in normalize(ThreatSource.NVD, payload)]
        assert first == second
        assert first[0]["impact_level"] == "Critical"

    def test_unparseable_date_defaults_to_now(self):
        before = datetime.now(timezone.utc)
        threat = normalize_otx_pulse({"name": "clinic", "created": "not a date"})
        assert threat.date_observed >= before

    def test_dispatch_covers_every_source(self):
        for source in ThreatSource:
            assert normalize(source, {}) == []


# ===================================================================
# Malformed nested fields
# ===================================================================

class TestMalformedItems:
    def test_bad_metric_entry_keeps_item(self):
        item = _nvd_item("CVE-1")
        item["cve"]["metrics"] = {"cvssMetricV31": [None]}
        assert normalize_nvd_item(item).impact_level == ImpactLevel.HIGH

    def test_metrics_as_list_ignored(self):
        assert extract_base_score({"metrics": [{"cvssData": {"baseScore": 9.0}}]}) is None

    def test_v30_used_before_v2(self):
        cve = {"metrics": {
            "cvssMetricV30": [{"cvssData": {"baseScore": 9.1}}],
            "cvssMetricV2": [{"cvssData": {"baseScore": 5.0}}],
        }}
        assert extract_base_score(cve) == 9.1

    def test_non_list_tags_ignored(self):
        threat = normalize_otx_pulse({"id": "1", "name": "Hospital ransomware", "tags": 5})
        assert threat.description == ""

    def test_unreadable_item_dropped_siblings_kept(self):
        payload = {"vulnerabilities": [
            {"cve": {"id": "CVE-BAD", "descriptions": 5}},
            _nvd_item("CVE-GOOD", description="Patient monitor overflow"),
        ]}
        assert [t.title for t in normalize_nvd(payload)] == ["CVE-GOOD"]

    def test_non_list_envelope_is_empty(self):
        assert normalize_otx({"results": "oops"}) == []
        assert normalize_cisa({"vulnerabilities": {"cveID": "CVE-1"}}) == []
