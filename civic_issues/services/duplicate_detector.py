import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from civic_issues.core.errors import OracleError
from civic_issues.models.issue_model import CandidateSummary, DuplicateDetection, PotentialDuplicate
from civic_issues.services.similarity_oracle import SimilarityOracle
from civic_issues.utils.geo import distance_between, location_similarity
from civic_issues.utils.helpers import clamp_unit

logger = logging.getLogger(__name__)

TEXT_WEIGHT = 0.4
IMAGE_WEIGHT = 0.4
LOCATION_WEIGHT = 0.2

DUPLICATE_THRESHOLD = 0.85
SIMILAR_THRESHOLD = 0.6

# Score used for a comparison the oracle could not answer
ORACLE_FALLBACK_SCORE = 0.0


class SimilarityTier(str, Enum):
    duplicate = "duplicate"
    similar = "similar"
    unrelated = "unrelated"


def comparison_text(title: Optional[str], description: Optional[str]) -> str:
    """Text handed to the oracle for one side of a comparison."""
    return f"{title or ''} {description or ''}".strip()


def fuse_similarity(text: float, image: float, location: float) -> float:
    overall = TEXT_WEIGHT * text + IMAGE_WEIGHT * image + LOCATION_WEIGHT * location
    # Rounding keeps float noise from flipping a tier at the exact threshold
    return round(clamp_unit(overall), 6)


def classify_similarity(overall: float) -> SimilarityTier:
    if overall >= DUPLICATE_THRESHOLD:
        return SimilarityTier.duplicate
    if overall >= SIMILAR_THRESHOLD:
        return SimilarityTier.similar
    return SimilarityTier.unrelated


@dataclass
class DuplicateCandidate:
    """One comparison between the new report and an existing open issue."""
    candidate_id: str
    text_similarity: float
    image_similarity: float
    location_similarity: float
    overall_similarity: float
    distance_meters: float
    title: str = ""
    status: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def tier(self) -> SimilarityTier:
        return classify_similarity(self.overall_similarity)

    @property
    def is_duplicate(self) -> bool:
        return self.tier == SimilarityTier.duplicate


@dataclass
class DuplicateResult:
    has_duplicates: bool = False
    confidence: float = 0.0
    candidates: List[DuplicateCandidate] = field(default_factory=list)

    def to_detection(self) -> DuplicateDetection:
        return DuplicateDetection(
            hasDuplicates=self.has_duplicates,
            confidence=self.confidence,
            potentialDuplicates=[
                PotentialDuplicate(
                    issueId=c.candidate_id,
                    similarity=c.overall_similarity,
                    isDuplicate=c.is_duplicate,
                )
                for c in self.candidates
            ],
        )


class DuplicateDetector:
    """
    Scores a new report against nearby open issues and keeps the ones that
    look like the same problem.

    Each candidate gets a text, image and location similarity; the three are
    fused 0.4/0.4/0.2. Oracle failures degrade to ORACLE_FALLBACK_SCORE for
    that single signal and never abort the batch.
    """

    def __init__(self, oracle: SimilarityOracle, max_concurrency: int = 5):
        self.oracle = oracle
        self.max_concurrency = max(1, max_concurrency)

    async def _guarded(self, label: str, call: Callable[[], Awaitable[float]],
                       semaphore: asyncio.Semaphore) -> float:
        async with semaphore:
            try:
                return clamp_unit(await call())
            except OracleError as e:
                logger.warning(f"⚠️ {label} unavailable, using fallback {ORACLE_FALLBACK_SCORE}: {e}")
            except Exception as e:
                logger.warning(f"⚠️ {label} failed unexpectedly, using fallback {ORACLE_FALLBACK_SCORE}: {e}",
                               exc_info=True)
        return ORACLE_FALLBACK_SCORE

    async def score_candidate(self, text: str, coordinates: Sequence[float],
                              candidate: CandidateSummary, semaphore: asyncio.Semaphore,
                              image_url: Optional[str] = None) -> DuplicateCandidate:
        text_task = self._guarded(
            f"Text similarity vs {candidate.id}",
            lambda: self.oracle.text_similarity(text, comparison_text(candidate.title, candidate.description)),
            semaphore,
        )
        if image_url and candidate.imageUrl:
            image_task = self._guarded(
                f"Image similarity vs {candidate.id}",
                lambda: self.oracle.image_similarity(image_url, candidate.imageUrl),
                semaphore,
            )
            text_score, image_score = await asyncio.gather(text_task, image_task)
        else:
            text_score, image_score = await text_task, 0.0

        distance = distance_between(coordinates, candidate.coordinates)
        loc_score = location_similarity(distance)
        return DuplicateCandidate(
            candidate_id=candidate.id,
            text_similarity=text_score,
            image_similarity=image_score,
            location_similarity=loc_score,
            overall_similarity=fuse_similarity(text_score, image_score, loc_score),
            distance_meters=round(distance, 2),
            title=candidate.title,
            status=candidate.status,
            created_at=candidate.createdAt,
        )

    async def detect(self, text: str, coordinates: Sequence[float],
                     candidates: Sequence[CandidateSummary],
                     image_url: Optional[str] = None) -> DuplicateResult:
        """``text`` is the new report's comparison_text(title, description)."""
        if not candidates:
            return DuplicateResult()

        semaphore = asyncio.Semaphore(self.max_concurrency)
        scored = await asyncio.gather(*(
            self.score_candidate(text, coordinates, c, semaphore, image_url=image_url)
            for c in candidates
        ))

        kept = [c for c in scored if c.tier != SimilarityTier.unrelated]
        kept.sort(key=lambda c: c.overall_similarity, reverse=True)

        result = DuplicateResult(
            has_duplicates=any(c.is_duplicate for c in kept),
            confidence=max((c.overall_similarity for c in kept), default=0.0),
            candidates=kept,
        )
        logger.info(
            f"🔍 Duplicate check: {len(candidates)} candidates, {len(kept)} flagged, "
            f"hasDuplicates={result.has_duplicates}, confidence={result.confidence:.2f}"
        )
        return result
