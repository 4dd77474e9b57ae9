# Intel Module - Feed Normalizer
#
# Maps each provider's raw envelope onto CanonicalThreat records and
# applies the bio-economy relevance filter.  Pure functions: no I/O, no
# shared state, same input -> same canonical fields.
#
#   OTX  pulses          -> category "Malware", impact Medium
#   NVD  CVEs            -> category "Vulnerability", impact from CVSS
#   CISA KEV entries     -> category "Exploited Vulnerability",
#                           impact Critical if used by ransomware else High
#
# Items missing their identifying name, or malformed in any nested field,
# are dropped without failing the rest of the envelope.

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .models import (
    CanonicalThreat,
    ImpactLevel,
    RawPayload,
    ThreatSource,
    utcnow,
)

logger = logging.getLogger(__name__)

OTX_PULSE_URL = "https://otx.alienvault.com/pulse/{}"
NVD_DETAIL_URL = "https://nvd.nist.gov/vuln/detail/{}"

# Substring-matched against lowercase title + description + category.
BIO_ECONOMY_KEYWORDS = (
    "medical",
    "healthcare",
    "hospital",
    "lab",
    "laboratory",
    "pharmaceutical",
    "pharma",
    "scada",
    "ics",
    "biotech",
    "biotechnology",
    "clinical",
    "patient",
    "diagnostic",
    "therapeutic",
    "biomedical",
    "health",
    "care",
    "device",
    # medical-device product families
    "infusion",
    "pacemaker",
    "ventilator",
    "insulin",
    "dicom",
    "hl7",
)


def is_relevant(threat: CanonicalThreat) -> bool:
    """Return True if the threat mentions at least one domain keyword."""
    search_text = (
        f"{threat.title} {threat.description} {threat.category}".lower()
    )
    return any(keyword in search_text for keyword in BIO_ECONOMY_KEYWORDS)


def _parse_date(value: Any) -> datetime:
    """Parse a feed timestamp into an aware UTC datetime (now on failure)."""
    if isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                parsed = datetime.combine(
                    date.fromisoformat(text[:10]), datetime.min.time()
                )
            except ValueError:
                return utcnow()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return utcnow()


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _map_items(
    mapper: Callable[[Any], Optional[CanonicalThreat]],
    items: Any,
    source: ThreatSource,
) -> List[CanonicalThreat]:
    """Apply ``mapper`` to each raw item, dropping the ones it can't read."""
    if not isinstance(items, list):
        return []
    threats = []
    for item in items:
        try:
            threat = mapper(item)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("%s: dropping malformed item: %s", source.value, exc)
            continue
        if threat is not None:
            threats.append(threat)
    return threats


def _filter_relevant(threats: List[CanonicalThreat], source: ThreatSource) -> List[CanonicalThreat]:
    relevant = [t for t in threats if is_relevant(t)]
    logger.debug(
        "%s: %d mapped, %d relevant", source.value, len(threats), len(relevant)
    )
    return relevant


# ---------------------------------------------------------------------------
# OTX
# ---------------------------------------------------------------------------


def normalize_otx_pulse(pulse: Any) -> Optional[CanonicalThreat]:
    """Map one OTX pulse; None when the pulse has no name."""
    if not isinstance(pulse, dict):
        return None
    name = _text(pulse.get("name"))
    if not name:
        return None

    description = _text(pulse.get("description"))
    raw_tags = pulse.get("tags")
    if not isinstance(raw_tags, list):
        raw_tags = []
    tags = [t for t in raw_tags if isinstance(t, str) and t]
    if tags:
        tag_line = "Tags: " + ", ".join(tags)
        description = f"{description}\n{tag_line}" if description else tag_line

    pulse_id = pulse.get("id")
    return CanonicalThreat(
        title=name,
        description=description,
        category="Malware",
        source=ThreatSource.OTX,
        date_observed=_parse_date(pulse.get("created")),
        impact_level=ImpactLevel.MEDIUM,
        external_reference=OTX_PULSE_URL.format(pulse_id) if pulse_id else None,
    )


def normalize_otx(payload: RawPayload) -> List[CanonicalThreat]:
    """Normalize an OTX ``{"results": [...]}`` envelope."""
    threats = _map_items(normalize_otx_pulse, payload.get("results"), ThreatSource.OTX)
    return _filter_relevant(threats, ThreatSource.OTX)


# ---------------------------------------------------------------------------
# NVD
# ---------------------------------------------------------------------------


def extract_base_score(cve: Dict[str, Any]) -> Optional[float]:
    """CVSS base score from v3.1 metrics, then v3.0, then v2."""
    metrics = cve.get("metrics")
    if not isinstance(metrics, dict):
        return None
    for key in ("cvssMetricV31", "cvssMetricV30", "cvssMetricV2"):
        metric_list = metrics.get(key)
        if not isinstance(metric_list, list) or not metric_list:
            continue
        first = metric_list[0]
        cvss = first.get("cvssData") if isinstance(first, dict) else None
        if not isinstance(cvss, dict):
            continue
        score = cvss.get("baseScore")
        if isinstance(score, (int, float)) and not isinstance(score, bool):
            return float(score)
    return None


def _nvd_description(cve: Dict[str, Any]) -> str:
    descriptions = [d for d in cve.get("descriptions") or [] if isinstance(d, dict)]
    for desc in descriptions:
        if desc.get("lang") == "en":
            return _text(desc.get("value"))
    return _text(descriptions[0].get("value")) if descriptions else ""


def normalize_nvd_item(item: Any) -> Optional[CanonicalThreat]:
    """Map one NVD ``vulnerabilities[]`` entry; None without a CVE id."""
    if not isinstance(item, dict):
        return None
    cve = item.get("cve")
    if not isinstance(cve, dict):
        return None
    cve_id = _text(cve.get("id"))
    if not cve_id:
        return None

    score = extract_base_score(cve)
    impact = ImpactLevel.from_cvss(score) if score is not None else ImpactLevel.HIGH

    return CanonicalThreat(
        title=cve_id,
        description=_nvd_description(cve),
        category="Vulnerability",
        source=ThreatSource.NVD,
        date_observed=_parse_date(cve.get("published")),
        impact_level=impact,
        external_reference=NVD_DETAIL_URL.format(cve_id),
    )


def normalize_nvd(payload: RawPayload) -> List[CanonicalThreat]:
    """Normalize an NVD ``{"vulnerabilities": [...]}`` envelope."""
    threats = _map_items(
        normalize_nvd_item, payload.get("vulnerabilities"), ThreatSource.NVD
    )
    return _filter_relevant(threats, ThreatSource.NVD)


# ---------------------------------------------------------------------------
# CISA KEV
# ---------------------------------------------------------------------------


def normalize_cisa_item(item: Any) -> Optional[CanonicalThreat]:
    """Map one KEV entry; None when both cveID and vulnerabilityName are empty."""
    if not isinstance(item, dict):
        return None
    cve_id = _text(item.get("cveID"))
    vuln_name = _text(item.get("vulnerabilityName"))
    if not cve_id and not vuln_name:
        return None

    vendor = _text(item.get("vendorProject"))
    product = _text(item.get("product"))
    parts = [_text(item.get("shortDescription"))]
    if vendor or product:
        parts.append(f"Affected product: {vendor} {product}".strip())
    description = "\n".join(p for p in parts if p)

    ransomware = _text(item.get("knownRansomwareCampaignUse")) or "Unknown"
    impact = (
        ImpactLevel.CRITICAL if ransomware.lower() == "known" else ImpactLevel.HIGH
    )

    return CanonicalThreat(
        title=vuln_name or cve_id,
        description=description,
        category="Exploited Vulnerability",
        source=ThreatSource.CISA,
        date_observed=_parse_date(item.get("dateAdded")),
        impact_level=impact,
        external_reference=NVD_DETAIL_URL.format(cve_id) if cve_id else None,
    )


def normalize_cisa(payload: RawPayload) -> List[CanonicalThreat]:
    """Normalize a CISA KEV ``{"vulnerabilities": [...]}`` envelope."""
    threats = _map_items(
        normalize_cisa_item, payload.get("vulnerabilities"), ThreatSource.CISA
    )
    return _filter_relevant(threats, ThreatSource.CISA)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

NORMALIZERS: Dict[ThreatSource, Callable[[RawPayload], List[CanonicalThreat]]] = {
    ThreatSource.OTX: normalize_otx,
    ThreatSource.NVD: normalize_nvd,
    ThreatSource.CISA: normalize_cisa,
}


def normalize(source: ThreatSource, payload: RawPayload) -> List[CanonicalThreat]:
    """Normalize and relevance-filter a payload from ``source``."""
    return NORMALIZERS[source](payload)
