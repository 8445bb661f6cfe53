import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional, Tuple, Union

from civic_issues.core.errors import OracleError
from civic_issues.models.issue_model import IssueCategory, Priority, SentimentScores
from civic_issues.services.similarity_oracle import SimilarityOracle

logger = logging.getLogger(__name__)

# (minimum urgency, priority), checked top-down
URGENCY_BANDS: Tuple[Tuple[float, Priority], ...] = (
    (0.8, Priority.urgent),
    (0.6, Priority.high),
    (0.4, Priority.medium),
)

URGENT_KEYWORDS = ("emergency", "dangerous", "unsafe", "hazard", "urgent", "critical")
SEVERITY_KEYWORDS = ("major", "severe", "broken", "damaged", "flooding")
MITIGATING_KEYWORDS = ("minor", "small", "slight", "cosmetic")

# Severity adjectives escalate these straight to high
ESCALATION_CATEGORIES: FrozenSet[IssueCategory] = frozenset({
    IssueCategory.water_leak,
    IssueCategory.traffic_signal,
    IssueCategory.drainage,
})

# These start at medium and move one band up or down with the wording
ROAD_CATEGORIES: FrozenSet[IssueCategory] = frozenset({
    IssueCategory.pothole,
    IssueCategory.road_damage,
    IssueCategory.street_light,
})

CATEGORY_DEFAULT_PRIORITY: Dict[IssueCategory, Priority] = {
    IssueCategory.water_leak: Priority.high,
    IssueCategory.traffic_signal: Priority.high,
    IssueCategory.drainage: Priority.medium,
    IssueCategory.pothole: Priority.medium,
    IssueCategory.road_damage: Priority.medium,
    IssueCategory.street_light: Priority.medium,
    IssueCategory.sidewalk: Priority.low,
    IssueCategory.graffiti: Priority.low,
    IssueCategory.garbage: Priority.low,
    IssueCategory.park_maintenance: Priority.low,
    IssueCategory.noise_complaint: Priority.low,
    IssueCategory.other: Priority.medium,
}


def _mentions(text: str, words: Iterable[str]) -> bool:
    # Plain substring match: "hazard" also hits "biohazard" and "hazardous"
    return any(word in text for word in words)


def _as_category(category: Union[str, IssueCategory]) -> IssueCategory:
    try:
        return IssueCategory(category)
    except ValueError:
        return IssueCategory.other


def priority_from_urgency(urgency: float) -> Priority:
    for floor, priority in URGENCY_BANDS:
        if urgency >= floor:
            return priority
    return Priority.low


def fallback_priority(category: Union[str, IssueCategory], description: str,
                      analysis_description: Optional[str] = None) -> Priority:
    """Keyword and category heuristic. Pure: no oracle, no network."""
    cat = _as_category(category)
    text = f"{description or ''} {analysis_description or ''}".lower()

    if _mentions(text, URGENT_KEYWORDS):
        return Priority.urgent

    severe = _mentions(text, SEVERITY_KEYWORDS)
    if cat in ESCALATION_CATEGORIES and severe:
        return Priority.high

    if cat in ROAD_CATEGORIES:
        if severe:
            return Priority.high
        if _mentions(text, MITIGATING_KEYWORDS):
            return Priority.low
        return Priority.medium

    return CATEGORY_DEFAULT_PRIORITY[cat]


@dataclass(frozen=True)
class PriorityEstimate:
    priority: Priority
    source: str  # 'sentiment' | 'oracle' | 'fallback'
    urgency: Optional[float] = None
    sentiment: Optional[SentimentScores] = None


class PriorityEstimator:
    """Urgency-driven priority with a deterministic keyword fallback."""

    def __init__(self, oracle: SimilarityOracle, timeout: float = 10.0):
        self.oracle = oracle
        self.timeout = timeout

    async def estimate_detailed(self, category: Union[str, IssueCategory], description: str,
                                sentiment: Optional[SentimentScores] = None,
                                analysis_description: Optional[str] = None) -> PriorityEstimate:
        if sentiment is not None:
            return PriorityEstimate(priority_from_urgency(sentiment.urgency), "sentiment",
                                    sentiment.urgency, sentiment)

        if self.oracle.available:
            try:
                scores = await asyncio.wait_for(self.oracle.sentiment_urgency(description),
                                                timeout=self.timeout)
                return PriorityEstimate(priority_from_urgency(scores.urgency), "oracle",
                                        scores.urgency, scores)
            except asyncio.TimeoutError:
                logger.warning(f"⏰ Urgency analysis exceeded {self.timeout}s; using keyword fallback")
            except OracleError as e:
                logger.warning(f"Urgency analysis failed, falling back to keyword-based: {e}")
            except Exception as e:
                logger.warning(f"Urgency analysis raised unexpectedly, falling back to keyword-based: {e}",
                               exc_info=True)

        priority = fallback_priority(category, description, analysis_description)
        return PriorityEstimate(priority, "fallback")

    async def estimate(self, category: Union[str, IssueCategory], description: str,
                       sentiment: Optional[SentimentScores] = None,
                       analysis_description: Optional[str] = None) -> Priority:
        result = await self.estimate_detailed(category, description, sentiment, analysis_description)
        logger.info(f"Priority for {category}: {result.priority.value} (source={result.source})")
        return result.priority
