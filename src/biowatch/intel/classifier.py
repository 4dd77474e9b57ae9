# Intel Module - Gemini Threat Classifier
#
# Builds a rubric prompt from a CanonicalThreat, sends it to the Gemini
# generateContent endpoint and parses the JSON verdict into a
# Classification.
#
# Design:
#   - Pure HTTP via httpx (no SDK dependency)
#   - Graceful degradation: classify() never raises.  An unconfigured key,
#     transport error, non-2xx status, empty body or unparseable output all
#     produce the same deterministic Medium/50 fallback, so a threat is
#     never dropped because the oracle failed.

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .models import CanonicalThreat, Classification, ThreatTier

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-1.5-pro"
DEFAULT_TIMEOUT_SEC = 60.0
PLACEHOLDER_API_KEY = "your_gemini_api_key_here"

GENERATION_CONFIG: Dict[str, Any] = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 4096,
    "responseMimeType": "application/json",
}

FALLBACK_ACTIONS = "Review threat manually and assign appropriate tier."
FALLBACK_RELEVANCE = 50.0


class ClassificationParseError(ValueError):
    """The oracle's text could not be turned into a Classification."""


_PROMPT_TEMPLATE = """\
You are a cybersecurity threat intelligence analyst specializing in \
biological, healthcare and life-science sector security.

Analyze the following threat and classify it using the severity rubric below.

THREAT DETAILS:
Title: {title}
Description: {description}
Category: {category}
Source: {source}
Impact Level: {impact_level}
Date Observed: {date_observed}

SEVERITY RUBRIC:

Critical:
- Active exploitation causing harm within hours: patient-safety systems, \
infusion pumps or ventilators compromised, ransomware spreading through a \
hospital or lab network right now
- Example: ransomware encrypting a hospital's EHR and lab systems today

High:
- Exploitation likely within days; critical infrastructure (hospitals, labs, \
biomanufacturing) exposed or patient/research data actively at risk
- Example: a known-exploited vulnerability in a widely deployed medical device

Medium:
- Needs attention within weeks; significant operational disruption or \
potential data exposure, phishing aimed at the bio-sector
- Example: an unpatched lab information system reachable only internally

Low:
- Informational or routine; general advisories, non-critical vulnerabilities, \
low-impact incidents handled in the normal patch cycle
- Example: a hardening advisory for office software used by a research group

BIO-SECTOR CONSIDERATIONS:
- Medical device vulnerabilities
- Biomanufacturing and lab equipment security
- Research data and intellectual property
- Agriculture technology and supply chain threats

NEXT STEPS REQUIREMENTS:
- Provide 3-6 specific, actionable steps to take immediately
- Each step is a discrete task that can be checked off
- Name the responsible party for each step (SOC, IT, Security Team, \
Management, Legal)
- Order steps by execution sequence

Respond ONLY with valid JSON in this exact format:
{{
    "tier": "Critical" | "High" | "Medium" | "Low",
    "confidence": 0-100,
    "reasoning": "Detailed explanation of classification",
    "recommendedActions": "Brief summary of response strategy",
    "nextSteps": [
        "1. Action description - Responsible Party",
        "2. Action description - Responsible Party",
        "3. Action description - Responsible Party"
    ],
    "keywords": ["keyword1", "keyword2"],
    "bioSectorRelevance": 0-100
}}"""


def build_prompt(threat: CanonicalThreat) -> str:
    """Render the classification prompt for one threat."""
    return _PROMPT_TEMPLATE.format(
        title=threat.title,
        description=threat.description,
        category=threat.category,
        source=threat.source.value,
        impact_level=threat.impact_level.value,
        date_observed=threat.date_observed.strftime("%Y-%m-%d"),
    )


def _clamp(value: Any, field_name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ClassificationParseError(f"{field_name} is not a number: {value!r}")
    return max(0.0, min(100.0, number))


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


def parse_response(text: str) -> Classification:
    """Parse the oracle's text into a Classification.

    Tolerates prose or markdown fences around the JSON object by decoding
    only the span from the first ``{`` to the last ``}``.

    Raises:
        ClassificationParseError: no object, bad JSON, missing or invalid
            ``tier``/``confidence``.
    """
    text = text or ""
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise ClassificationParseError("No JSON object in oracle response")

    snippet = text[start:end + 1]
    try:
        data = json.loads(snippet)
    except json.JSONDecodeError as exc:
        raise ClassificationParseError(f"Invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ClassificationParseError("Oracle JSON is not an object")

    if "tier" not in data or "confidence" not in data:
        raise ClassificationParseError("Missing required tier/confidence")
    try:
        tier = ThreatTier.parse(data["tier"])
    except ValueError as exc:
        raise ClassificationParseError(str(exc)) from exc

    relevance = data.get("bioSectorRelevance")
    return Classification(
        tier=tier,
        confidence=_clamp(data["confidence"], "confidence"),
        reasoning=str(data.get("reasoning") or ""),
        recommended_actions=str(data.get("recommendedActions") or ""),
        next_steps=_string_list(data.get("nextSteps")),
        keywords=_string_list(data.get("keywords")),
        bio_sector_relevance=(
            FALLBACK_RELEVANCE
            if relevance is None
            else _clamp(relevance, "bioSectorRelevance")
        ),
        raw_response=snippet,
    )


def default_classification(cause: str, raw_response: str = "") -> Classification:
    """Deterministic Medium/50 verdict used whenever the oracle fails."""
    return Classification(
        tier=ThreatTier.MEDIUM,
        confidence=50.0,
        reasoning=f"AI classification unavailable ({cause}). Manual review required.",
        recommended_actions=FALLBACK_ACTIONS,
        next_steps=[
            "1. Review threat details manually - Security Team",
            "2. Assign appropriate tier classification - Security Analyst",
            "3. Investigate AI classification failure - IT Admin",
        ],
        keywords=[],
        bio_sector_relevance=FALLBACK_RELEVANCE,
        raw_response=raw_response or f"Default classification - {cause}",
        is_fallback=True,
    )


class ThreatClassifier:
    """Gemini-backed severity classifier.

    Usage::

        classifier = ThreatClassifier(api_key=os.environ["GEMINI_API_KEY"])
        verdict = classifier.classify(threat)
        if verdict.is_fallback:
            ...
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SEC,
    ):
        self._api_key = api_key
        self.model = model or DEFAULT_MODEL
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._call_count = 0
        self._fallback_count = 0

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key) and self._api_key != PLACEHOLDER_API_KEY

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/models/{self.model}:generateContent"

    def classify(self, threat: CanonicalThreat) -> Classification:
        """Classify one threat; returns the fallback on any failure."""
        if not self.is_configured:
            logger.warning("Gemini API key not configured, using default classification")
            return self._fallback("API key not configured")

        self._call_count += 1
        body = {
            "contents": [{"parts": [{"text": build_prompt(threat)}]}],
            "generationConfig": GENERATION_CONFIG,
        }
        try:
            resp = httpx.post(
                self.endpoint,
                params={"key": self._api_key},
                json=body,
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            logger.error("Gemini request failed for %r: %s", threat.title, exc)
            return self._fallback(f"request failed: {exc}")

        if resp.status_code >= 300:
            logger.error(
                "Gemini API error: HTTP %d - %s", resp.status_code, resp.text[:200]
            )
            return self._fallback(f"HTTP {resp.status_code}")
        if not (resp.text or "").strip():
            return self._fallback("empty response body")

        try:
            text = _extract_text(resp.json())
            return parse_response(text)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.error("Error parsing Gemini response for %r: %s", threat.title, exc)
            return self._fallback(f"unparseable response: {exc}", resp.text)

    def _fallback(self, cause: str, raw_response: str = "") -> Classification:
        self._fallback_count += 1
        return default_classification(cause, raw_response)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "configured": self.is_configured,
            "calls": self._call_count,
            "fallbacks": self._fallback_count,
        }


def _extract_text(envelope: Any) -> str:
    """Pull ``candidates[0].content.parts[0].text`` out of the envelope."""
    text = envelope["candidates"][0]["content"]["parts"][0]["text"]
    if not isinstance(text, str):
        raise ValueError("Envelope text is not a string")
    return text
