"""
Similarity oracle: the external AI capability the pipeline consumes.

The pipeline never talks to Gemini directly; it receives a SimilarityOracle
through its constructor. Every method either returns a score or raises an
OracleError subclass. Callers are expected to recover locally.
"""

import asyncio
import io
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp
import google.generativeai as genai
from PIL import Image

from civic_issues.core.config import Settings
from civic_issues.core.errors import (
    OracleError,
    OracleResponseError,
    OracleTimeout,
    OracleUnavailable,
)
from civic_issues.models.issue_model import AIAnalysis, DamageDepth, IssueCategory, SentimentScores
from civic_issues.utils.helpers import clamp_unit

logger = logging.getLogger(__name__)

DEPTH_RELEVANT_CATEGORIES = (
    IssueCategory.pothole,
    IssueCategory.road_damage,
    IssueCategory.sidewalk,
    IssueCategory.drainage,
)

_NUMBER_RE = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")
_JSON_RE = re.compile(r"\{[\s\S]*\}")


def parse_score(raw: Optional[str]) -> float:
    """Extract the first number from a model reply and clamp it to [0, 1]."""
    if not raw:
        raise OracleResponseError("Empty response from oracle")
    match = _NUMBER_RE.search(raw)
    if not match:
        raise OracleResponseError(f"No numeric score in oracle response: {raw[:60]!r}")
    return clamp_unit(float(match.group(0)))


def parse_json_object(raw: Optional[str]) -> Dict[str, Any]:
    """Robust JSON extraction: models often wrap the object in prose or fences."""
    if not raw:
        raise OracleResponseError("Empty response from oracle")
    match = _JSON_RE.search(raw)
    if not match:
        raise OracleResponseError(f"No JSON object in oracle response: {raw[:60]!r}")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise OracleResponseError(f"Malformed JSON from oracle: {e}") from e
    if not isinstance(data, dict):
        raise OracleResponseError("Oracle JSON payload is not an object")
    return data


def _unit_or_default(value: Any, default: float) -> float:
    try:
        return clamp_unit(float(value))
    except (TypeError, ValueError):
        return default


def parse_sentiment(raw: Optional[str]) -> SentimentScores:
    data = parse_json_object(raw)
    if "urgency" not in data:
        raise OracleResponseError("Sentiment response has no urgency score")
    try:
        urgency = clamp_unit(float(data["urgency"]))
    except (TypeError, ValueError) as e:
        raise OracleResponseError(f"Unparseable urgency score: {data['urgency']!r}") from e
    return SentimentScores(
        overall=str(data.get("sentiment") or "neutral"),
        urgency=urgency,
        safety=_unit_or_default(data.get("safety"), 0.5),
        impact=_unit_or_default(data.get("impact"), 0.5),
    )


def parse_image_analysis(raw: Optional[str]) -> AIAnalysis:
    data = parse_json_object(raw)
    severity = str(data.get("severity") or "medium").strip().lower()
    if severity not in ("low", "medium", "high"):
        severity = "medium"
    suggested = str(data.get("suggestedCategory") or "other").strip().lower()
    if suggested not in IssueCategory._value2member_map_:
        suggested = IssueCategory.other.value
    return AIAnalysis(
        description=data.get("description") or "AI analysis completed",
        severity=severity,
        suggestedCategory=suggested,
        confidence=_unit_or_default(data.get("confidence"), 0.5),
    )


def parse_damage_depth(raw: Optional[str]) -> DamageDepth:
    data = parse_json_object(raw)
    depth = data.get("estimatedDepth")
    try:
        depth = float(depth) if depth is not None else None
    except (TypeError, ValueError):
        depth = None
    return DamageDepth(
        estimatedDepth=depth,
        confidence=_unit_or_default(data.get("confidence"), 0.0),
        unit="cm",
        damageAssessment=data.get("damageAssessment"),
    )


class SimilarityOracle(ABC):
    """Capability contract for text/image similarity and urgency scoring."""

    provider = "none"

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def text_similarity(self, text1: str, text2: str) -> float:
        ...

    @abstractmethod
    async def image_similarity(self, image_url1: str, image_url2: str) -> float:
        ...

    @abstractmethod
    async def sentiment_urgency(self, text: str) -> SentimentScores:
        ...

    @abstractmethod
    async def analyze_image(self, image_url: str) -> AIAnalysis:
        ...

    @abstractmethod
    async def describe_image(self, image_url: str) -> str:
        ...

    @abstractmethod
    async def estimate_damage_depth(self, image_url: str, category: str) -> DamageDepth:
        ...

    def status(self) -> Dict[str, Any]:
        available = self.available
        return {
            "available": available,
            "provider": self.provider,
            "features": {
                "imageAnalysis": available,
                "descriptionGeneration": available,
                "duplicateDetection": available,
                "sentimentAnalysis": available,
                "damageDepthEstimation": available,
                "priorityFallback": True,
            },
        }


class UnavailableOracle(SimilarityOracle):
    """Stand-in used when no credentials are configured; every call fails fast."""

    provider = "none"

    @property
    def available(self) -> bool:
        return False

    def _fail(self):
        raise OracleUnavailable("AI oracle is not configured")

    async def text_similarity(self, text1: str, text2: str) -> float:
        self._fail()

    async def image_similarity(self, image_url1: str, image_url2: str) -> float:
        self._fail()

    async def sentiment_urgency(self, text: str) -> SentimentScores:
        self._fail()

    async def analyze_image(self, image_url: str) -> AIAnalysis:
        self._fail()

    async def describe_image(self, image_url: str) -> str:
        self._fail()

    async def estimate_damage_depth(self, image_url: str, category: str) -> DamageDepth:
        self._fail()


TEXT_SIMILARITY_PROMPT = """Compare the following two civic issue descriptions and rate their similarity on a scale from 0 to 1, where 1 means they are describing the exact same issue and 0 means they are completely unrelated.

Description 1: {text1}

Description 2: {text2}

Provide ONLY a number between 0 and 1 representing the similarity score."""

IMAGE_SIMILARITY_PROMPT = """Compare these two images and rate their similarity on a scale from 0 to 1, where 1 means they show the exact same civic issue (same location, same problem) and 0 means they are completely unrelated.

Focus on whether they show the same infrastructure problem in the same location, not just visual similarity.

Provide ONLY a number between 0 and 1 representing the similarity score."""

SENTIMENT_PROMPT = """Analyze this civic issue description and provide a JSON response with the following fields:

1. sentiment: The overall sentiment (negative, somewhat_negative, neutral, somewhat_positive, positive)
2. urgency: A score from 0-1 indicating how urgent this issue is (1 = extremely urgent)
3. safety: A score from 0-1 indicating the safety risk (1 = severe safety hazard)
4. impact: A score from 0-1 indicating community impact (1 = affects many people)

Description: {text}

Respond with ONLY a valid JSON object containing these fields."""

IMAGE_ANALYSIS_PROMPT = """Analyze this civic infrastructure image and provide:
1. A detailed description of what you see
2. Identify any infrastructure issues (potholes, broken lights, drainage problems, etc.)
3. Assess the severity level (low, medium, high)
4. Suggest the most appropriate category from: {categories}
5. Provide a confidence score (0-1) for your analysis

Respond in JSON format with keys: description, issues, severity, suggestedCategory, confidence"""

IMAGE_DESCRIPTION_PROMPT = (
    "Provide a clear, concise description of this civic infrastructure image. "
    "Focus on what infrastructure elements are visible and any issues that need attention."
)

DAMAGE_DEPTH_PROMPT = """Analyze this image of a {category} and estimate:

1. The approximate depth of the damage in centimeters
2. Your confidence in this estimate (0-1)
3. A brief assessment of the damage severity

Respond with ONLY a valid JSON object with fields: estimatedDepth (number), confidence (number), damageAssessment (string)"""


class GeminiSimilarityOracle(SimilarityOracle):
    """SimilarityOracle backed by a hosted Gemini model."""

    provider = "Google Gemini"
    FALLBACK_MODELS = ["gemini-2.5-flash", "gemini-2.0-flash", "gemini-1.5-flash-8b"]

    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-2.5-flash",
        text_timeout: float = 10.0,
        image_timeout: float = 30.0,
        fetch_timeout: float = 15.0,
    ):
        if not api_key:
            raise OracleUnavailable("GEMINI_API_KEY is not set")
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.text_timeout = text_timeout
        self.image_timeout = image_timeout
        self.fetch_timeout = fetch_timeout
        self._model = None

    def _get_model(self):
        if self._model is not None:
            return self._model
        try:
            self._model = genai.GenerativeModel(self.model_name)
            return self._model
        except Exception as e:
            logger.warning(f"{self.model_name} not available; attempting fallbacks: {e}")
        for alt in self.FALLBACK_MODELS:
            if alt == self.model_name:
                continue
            try:
                logger.info(f"Trying fallback model: {alt}")
                self._model = genai.GenerativeModel(alt)
                return self._model
            except Exception as e2:
                logger.warning(f"Fallback model {alt} failed: {e2}")
        raise OracleUnavailable("No Gemini model could be initialized")

    async def _generate(self, parts: List[Any], timeout: float, max_output_tokens: int,
                        temperature: float = 0.1) -> str:
        model = self._get_model()

        def _call() -> str:
            response = model.generate_content(
                parts,
                generation_config={"temperature": temperature, "max_output_tokens": max_output_tokens},
            )
            return response.text

        try:
            return await asyncio.wait_for(asyncio.to_thread(_call), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise OracleTimeout(f"Gemini call timed out after {timeout}s") from e
        except OracleError:
            raise
        except Exception as e:
            raise OracleError(f"Gemini request failed: {e}") from e

    async def _fetch_image(self, session: aiohttp.ClientSession, url: str) -> Image.Image:
        try:
            async with session.get(url) as resp:
                resp.raise_for_status()
                content = await resp.read()
        except asyncio.TimeoutError as e:
            raise OracleTimeout(f"Image fetch timed out: {url}") from e
        except aiohttp.ClientError as e:
            raise OracleError(f"Image fetch failed for {url}: {e}") from e
        try:
            image = Image.open(io.BytesIO(content))
            image.load()
            return image
        except Exception as e:
            raise OracleResponseError(f"Unreadable image at {url}: {e}") from e

    async def _fetch_images(self, *urls: str) -> List[Image.Image]:
        timeout = aiohttp.ClientTimeout(total=self.fetch_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            return list(await asyncio.gather(*(self._fetch_image(session, u) for u in urls)))

    async def text_similarity(self, text1: str, text2: str) -> float:
        prompt = TEXT_SIMILARITY_PROMPT.format(text1=text1, text2=text2)
        raw = await self._generate([prompt], timeout=self.text_timeout, max_output_tokens=10)
        return parse_score(raw)

    async def image_similarity(self, image_url1: str, image_url2: str) -> float:
        if not image_url1 or not image_url2:
            raise OracleError("Both image URLs are required")
        images = await self._fetch_images(image_url1, image_url2)
        raw = await self._generate([IMAGE_SIMILARITY_PROMPT, *images],
                                   timeout=self.image_timeout, max_output_tokens=10)
        return parse_score(raw)

    async def sentiment_urgency(self, text: str) -> SentimentScores:
        raw = await self._generate([SENTIMENT_PROMPT.format(text=text)],
                                   timeout=self.text_timeout, max_output_tokens=150)
        return parse_sentiment(raw)

    async def analyze_image(self, image_url: str) -> AIAnalysis:
        (image,) = await self._fetch_images(image_url)
        prompt = IMAGE_ANALYSIS_PROMPT.format(categories=", ".join(c.value for c in IssueCategory))
        raw = await self._generate([prompt, image], timeout=self.image_timeout,
                                   max_output_tokens=500, temperature=0.3)
        return parse_image_analysis(raw)

    async def describe_image(self, image_url: str) -> str:
        (image,) = await self._fetch_images(image_url)
        raw = await self._generate([IMAGE_DESCRIPTION_PROMPT, image], timeout=self.image_timeout,
                                   max_output_tokens=200, temperature=0.3)
        if not raw or not raw.strip():
            raise OracleResponseError("Empty image description")
        return raw.strip()

    async def estimate_damage_depth(self, image_url: str, category: str) -> DamageDepth:
        if category not in DEPTH_RELEVANT_CATEGORIES:
            return DamageDepth()
        (image,) = await self._fetch_images(image_url)
        raw = await self._generate([DAMAGE_DEPTH_PROMPT.format(category=category), image],
                                   timeout=self.image_timeout, max_output_tokens=150, temperature=0.2)
        return parse_damage_depth(raw)


def build_similarity_oracle(settings: Settings) -> SimilarityOracle:
    """Gemini when credentials exist, otherwise an oracle that always fails fast."""
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set; AI features disabled, deterministic fallbacks only.")
        return UnavailableOracle()
    try:
        return GeminiSimilarityOracle(
            api_key=settings.gemini_api_key,
            model_name=settings.gemini_model,
            text_timeout=settings.oracle_text_timeout,
            image_timeout=settings.oracle_image_timeout,
            fetch_timeout=settings.oracle_image_fetch_timeout,
        )
    except Exception as e:
        logger.warning(f"Failed to configure Gemini API: {e}. Disabling AI features.")
        return UnavailableOracle()
