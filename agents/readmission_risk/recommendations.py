"""
Readmission Risk Service - Care Recommendations

Plain-language care recommendations for a readmission risk tier, phrased by
Google Gemini and backed by a fixed fallback table.

================================================================================
FAILURE MODEL
================================================================================

The generative model is an optional nicety, never a dependency of the request
path:

    risk tier ──► GeminiRecommender.generate() ──► parsed recommendations
                         │                              (source: ai-generated)
                         │ RecommendationError
                         │ (no API key, network error, timeout, non-200,
                         │  no JSON, wrong shape)
                         ▼
                  FALLBACK_RECOMMENDATIONS[tier] ──► (source: fallback)

There is exactly one attempt per request; no retry loop.

================================================================================
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from readmission_risk.config import settings
from readmission_risk.schemas import PatientContext, Recommendation

# Configure module logger
logger = logging.getLogger(__name__)


SOURCE_AI = "ai-generated"
SOURCE_FALLBACK = "fallback"


class RecommendationError(Exception):
    """The generator could not produce usable recommendations."""


# =============================================================================
# FALLBACK TABLE
# =============================================================================

FALLBACK_RECOMMENDATIONS: Dict[str, List[Dict[str, str]]] = {
    "high": [
        {
            "text": "See your doctor within 2 weeks. Bring a list of any questions or concerns you have.",
            "category": "Follow-up Care",
        },
        {
            "text": "Work with a care coordinator to help manage your care after leaving the hospital.",
            "category": "Support",
        },
        {
            "text": "Review your medication schedule with your caregiver or family member.",
            "category": "Medication",
        },
        {
            "text": "Check your blood pressure, heart rate, and weight daily for the next week.",
            "category": "Monitoring",
        },
    ],
    "medium": [
        {
            "text": "Schedule a follow-up appointment within the next month.",
            "category": "Follow-up Care",
        },
        {
            "text": "Take all medications as prescribed and keep track of any side effects.",
            "category": "Medication",
        },
        {
            "text": "Know the warning signs that require medical attention and when to call your doctor.",
            "category": "Home Care",
        },
        {
            "text": "Consider a video check-in with your healthcare provider in two weeks.",
            "category": "Follow-up Care",
        },
    ],
    "default": [
        {
            "text": "Schedule your next regular check-up as recommended by your doctor.",
            "category": "Follow-up Care",
        },
        {
            "text": "Continue your normal healthy habits including regular exercise and a balanced diet.",
            "category": "Lifestyle",
        },
        {
            "text": "Take all medications as prescribed and report any concerns to your doctor.",
            "category": "Medication",
        },
    ],
}

# The scorer reports "Moderate"; the fallback table calls it "medium"
TIER_ALIASES = {"moderate": "medium"}


def normalize_tier(risk_category: Optional[str]) -> str:
    tier = (risk_category or "").strip().lower()
    return TIER_ALIASES.get(tier, tier)


def get_fallback_recommendations(risk_category: Optional[str]) -> List[Recommendation]:
    """Fixed recommendations keyed only by tier (high, medium, anything else)."""
    tier = normalize_tier(risk_category)
    rows = FALLBACK_RECOMMENDATIONS.get(tier, FALLBACK_RECOMMENDATIONS["default"])
    return [Recommendation(**row) for row in rows]


# =============================================================================
# PROMPT AND PARSING
# =============================================================================

def build_prompt(
    risk_category: str,
    risk_value: Any = None,
    context: Optional[PatientContext] = None,
) -> str:
    """Build the personalised recommendation prompt."""
    # Falsy values (None, 0, "") read as unspecified
    value = risk_value if risk_value else "unspecified"
    prompt = (
        f"Create personalized care recommendations for a patient with "
        f"{risk_category} risk ({value} value)."
    )

    if context is not None:
        prompt += " Based on these patient details:"
        if context.age:
            prompt += f" Age: {context.age}."
        if context.gender:
            prompt += f" Gender: {context.gender}."
        if context.diagnosis:
            prompt += f" Primary condition: {context.diagnosis}."
        if context.comorbidities:
            prompt += f" Other health conditions: {', '.join(context.comorbidities)}."
        if context.medications:
            prompt += f" Current medications: {', '.join(context.medications)}."
        prompt += " Analyze these factors to provide 3-4 personalized recommendations."

    prompt += """ For each recommendation:
    1. Use simple, everyday language - avoid medical jargon
    2. Be specific and actionable
    3. Keep each recommendation brief (1-2 sentences)
    4. Consider the patient's specific health profile

    Format the response as a JSON object with a 'recommendations' array. Each recommendation should have a 'text' field with the easy-to-understand recommendation and a 'category' field (like "Follow-up Care", "Medication", "Lifestyle", "Monitoring")."""

    return prompt


_JSON_PATTERNS = (
    re.compile(r"```json\s*\n(.*?)\n\s*```", re.DOTALL),
    re.compile(r"```\s*\n(.*?)\n\s*```", re.DOTALL),
    re.compile(r"\{.*\}", re.DOTALL),
)


def extract_recommendations(response_text: str) -> List[Recommendation]:
    """
    Pull the recommendations array out of free model text.

    The model may wrap its JSON in a fenced code block or surround it with
    prose. The first pattern that matches wins; with no match the whole text
    is parsed.

    Raises:
        RecommendationError: no parseable JSON or wrong shape
    """
    json_str = response_text
    for pattern in _JSON_PATTERNS:
        match = pattern.search(response_text)
        if match:
            json_str = match.group(1) if match.groups() else match.group(0)
            break

    try:
        payload = json.loads(json_str)
    except (TypeError, ValueError) as e:
        raise RecommendationError(f"Model response is not valid JSON: {e}") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("recommendations"), list):
        raise RecommendationError("Model response has no 'recommendations' array")

    try:
        recommendations = [Recommendation.model_validate(item) for item in payload["recommendations"]]
    except ValidationError as e:
        raise RecommendationError(f"Malformed recommendation entry: {e}") from e

    if not recommendations:
        raise RecommendationError("Model returned an empty recommendations array")
    return recommendations


# =============================================================================
# GEMINI CLIENT
# =============================================================================

class GeminiRecommender:
    """
    Recommendation generator backed by the Gemini generateContent REST API.

    Args:
        api_key: Gemini API key (default from settings)
        model: Gemini model name (default from settings)
        transport: Optional httpx transport, used by tests to stub the API
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = settings.gemini_api_key if api_key is None else api_key
        self.model = model or settings.gemini_model
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _build_url(self) -> str:
        return f"{settings.gemini_api_url}/{self.model}:generateContent"

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }

    def _build_payload(self, prompt: str) -> Dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": settings.gemini_temperature,
                "maxOutputTokens": settings.gemini_max_output_tokens,
                "topP": settings.gemini_top_p,
                "topK": settings.gemini_top_k,
            },
        }

    @staticmethod
    def _response_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            raise RecommendationError("Gemini returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        if not text:
            raise RecommendationError("Gemini returned an empty candidate")
        return text

    async def generate(
        self,
        risk_category: str,
        risk_value: Any = None,
        context: Optional[PatientContext] = None,
    ) -> List[Recommendation]:
        """
        Ask Gemini for recommendations.

        Raises:
            RecommendationError: on any failure; callers fall back
        """
        if not self.is_configured:
            raise RecommendationError("Gemini API key is not configured")

        prompt = build_prompt(risk_category, risk_value, context)
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(settings.gemini_timeout_seconds),
            ) as client:
                response = await client.post(
                    self._build_url(),
                    json=self._build_payload(prompt),
                    headers=self._build_headers(),
                )
        except httpx.TimeoutException as e:
            raise RecommendationError(f"Gemini request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise RecommendationError(f"Gemini connection error: {e}") from e

        if response.status_code != 200:
            raise RecommendationError(f"Gemini API error: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise RecommendationError(f"Gemini returned a non-JSON body: {e}") from e

        try:
            text = self._response_text(data)
        except (AttributeError, TypeError) as e:
            raise RecommendationError(f"Unexpected Gemini response shape: {e}") from e

        return extract_recommendations(text)


async def get_recommendations(
    generator: GeminiRecommender,
    risk_category: Optional[str],
    risk_value: Any = None,
    context: Optional[PatientContext] = None,
) -> Tuple[List[Recommendation], str]:
    """
    Generate recommendations, substituting the fallback table on any failure.

    Returns:
        (recommendations, source) where source is "ai-generated" or "fallback"
    """
    if not risk_category:
        logger.warning("No risk category supplied, using fallback recommendations")
        return get_fallback_recommendations(risk_category), SOURCE_FALLBACK

    try:
        recommendations = await generator.generate(risk_category, risk_value, context)
    except RecommendationError as e:
        logger.error(f"Error generating recommendations via Gemini: {e}")
        return get_fallback_recommendations(risk_category), SOURCE_FALLBACK
    except Exception as e:
        logger.error(f"Unexpected recommendation failure: {e}", exc_info=True)
        return get_fallback_recommendations(risk_category), SOURCE_FALLBACK

    logger.info(
        f"Generated {len(recommendations)} recommendations for "
        f"{risk_category} risk patient via Gemini"
    )
    return recommendations, SOURCE_AI
