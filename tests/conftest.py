"""
Shared fixtures and test doubles.

StubOracle answers deterministically and records every call; FailingOracle
raises on every call so the fallback paths can be exercised without a
network. FixedClock makes lifecycle timestamps predictable.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytest

from civic_issues.core.config import Settings
from civic_issues.core.errors import OracleError
from civic_issues.models.issue_model import (
    AIAnalysis,
    DamageDepth,
    Issue,
    IssueDraft,
    IssueImage,
    Location,
    SentimentScores,
)
from civic_issues.services.issue_lifecycle import IssueLifecycle
from civic_issues.services.issue_pipeline import IssueIntelligencePipeline
from civic_issues.services.issue_store import InMemoryIssueStore
from civic_issues.services.similarity_oracle import SimilarityOracle

MAIN_ST = (-73.9851, 40.7589)


class StubOracle(SimilarityOracle):
    provider = "stub"

    def __init__(self, text: float = 0.0, image: float = 0.0, urgency: float = 0.5,
                 text_by_match: Optional[Dict[str, float]] = None,
                 analysis: Optional[AIAnalysis] = None,
                 depth: Optional[DamageDepth] = None,
                 delay: float = 0.0, available: bool = True):
        self.text = text
        self.image = image
        self.urgency = urgency
        self.text_by_match = text_by_match or {}
        self.analysis = analysis
        self.depth = depth
        self.delay = delay
        self._available = available
        self.calls: List[Tuple[str, ...]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def available(self) -> bool:
        return self._available

    async def _track(self):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

    async def text_similarity(self, text1: str, text2: str) -> float:
        self.calls.append(("text", text1, text2))
        await self._track()
        for needle, score in self.text_by_match.items():
            if needle in text2:
                return score
        return self.text

    async def image_similarity(self, image_url1: str, image_url2: str) -> float:
        self.calls.append(("image", image_url1, image_url2))
        await self._track()
        return self.image

    async def sentiment_urgency(self, text: str) -> SentimentScores:
        self.calls.append(("sentiment", text))
        await self._track()
        return SentimentScores(overall="negative", urgency=self.urgency, safety=0.5, impact=0.5)

    async def analyze_image(self, image_url: str) -> AIAnalysis:
        self.calls.append(("analyze", image_url))
        if self.analysis is None:
            raise OracleError("no analysis configured")
        return self.analysis.model_copy()

    async def describe_image(self, image_url: str) -> str:
        self.calls.append(("describe", image_url))
        return f"Photo of {image_url.rsplit('/', 1)[-1]}"

    async def estimate_damage_depth(self, image_url: str, category: str) -> DamageDepth:
        self.calls.append(("depth", image_url, category))
        return self.depth or DamageDepth()

    def count(self, kind: str) -> int:
        return sum(1 for c in self.calls if c[0] == kind)


class FailingOracle(StubOracle):
    """Claims to be available but every call raises ``exc``."""

    def __init__(self, exc: Exception = None):
        super().__init__()
        self.exc = exc or OracleError("boom")

    async def text_similarity(self, text1, text2):
        self.calls.append(("text", text1, text2))
        raise self.exc

    async def image_similarity(self, image_url1, image_url2):
        self.calls.append(("image", image_url1, image_url2))
        raise self.exc

    async def sentiment_urgency(self, text):
        self.calls.append(("sentiment", text))
        raise self.exc

    async def analyze_image(self, image_url):
        raise self.exc

    async def describe_image(self, image_url):
        raise self.exc

    async def estimate_damage_depth(self, image_url, category):
        raise self.exc


class FixedClock:
    def __init__(self, start: datetime = datetime(2025, 3, 1, 8, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_draft(title: str = "Large pothole", description: str = "Large pothole on Main St",
               category: str = "pothole", coordinates=MAIN_ST, image_url: Optional[str] = None,
               **kwargs) -> IssueDraft:
    images = [IssueImage(url=image_url)] if image_url else []
    return IssueDraft(
        title=title,
        description=description,
        category=category,
        location=Location(coordinates=list(coordinates)),
        images=images,
        **kwargs,
    )


def make_issue(reported_by: str = "reporter-1", clock: Optional[FixedClock] = None, **kwargs) -> Issue:
    fields = dict(
        title="Large pothole",
        description="Large pothole on Main St",
        category="pothole",
        location=Location(coordinates=list(MAIN_ST)),
        reportedBy=reported_by,
    )
    fields.update(kwargs)
    if clock is not None:
        fields.setdefault("createdAt", clock())
        fields.setdefault("updatedAt", clock())
    return Issue(**fields)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def lifecycle(clock) -> IssueLifecycle:
    return IssueLifecycle(clock=clock)


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.oracle_max_concurrency = 5
    s.priority_timeout = 0.5
    s.duplicate_search_radius_m = 100.0
    s.duplicate_max_candidates = 10
    return s


@pytest.fixture
def store() -> InMemoryIssueStore:
    return InMemoryIssueStore()


@pytest.fixture
def stub_oracle() -> StubOracle:
    return StubOracle()


@pytest.fixture
def pipeline(store, stub_oracle, settings, lifecycle) -> IssueIntelligencePipeline:
    return IssueIntelligencePipeline(store, stub_oracle, settings, lifecycle=lifecycle)
