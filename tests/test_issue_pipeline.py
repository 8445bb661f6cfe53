"""
End-to-end behaviour of the pipeline against the in-memory store.
"""

import asyncio

import pytest

from civic_issues.core.errors import AccessDenied, InvalidCoordinates, InvalidUpdate, IssueNotFound, SelfVoteError
from civic_issues.models.issue_model import (
    AdminNote,
    AIAnalysis,
    DamageDepth,
    DuplicateDetection,
    IssueImage,
    IssueStatus,
    IssueUpdate,
    Location,
    Priority,
)
from civic_issues.services.issue_pipeline import IssueIntelligencePipeline
from civic_issues.services.issue_store import InMemoryIssueStore, IssueQuery
from civic_issues.services.similarity_oracle import UnavailableOracle

from conftest import MAIN_ST, FailingOracle, StubOracle, make_draft, make_issue

FIVE_METERS_NORTH = [MAIN_ST[0], MAIN_ST[1] + 0.00004497]


class SlowReadStore(InMemoryIssueStore):
    """Holds the next read open for ``read_delay`` seconds after taking its snapshot."""

    def __init__(self):
        super().__init__()
        self.read_delay = 0.0

    async def get(self, issue_id):
        issue = await super().get(issue_id)
        delay, self.read_delay = self.read_delay, 0.0
        if delay:
            await asyncio.sleep(delay)
        return issue


async def seed(store, **kwargs):
    issue = make_issue(**kwargs)
    await store.insert(issue)
    return issue


class TestCreateIssue:
    @pytest.mark.asyncio
    async def test_invalid_coordinates_abort(self, pipeline, store):
        with pytest.raises(InvalidCoordinates):
            await pipeline.create_issue(make_draft(coordinates=(200.0, 10.0)), "reporter-1")
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_no_nearby_issues(self, pipeline, store, stub_oracle):
        """Scenario A."""
        issue = await pipeline.create_issue(make_draft(), "reporter-1")

        assert issue.status == IssueStatus.pending
        assert len(issue.statusHistory) == 1
        assert issue.statusHistory[0].changedBy == "reporter-1"
        assert issue.metadata.duplicateDetection is None
        assert issue.priority == Priority.medium
        assert stub_oracle.count("text") == 0
        assert stub_oracle.count("sentiment") == 1

        stored = await store.get(issue.id)
        assert stored.title == "Large pothole"
        assert stored.createdAt == issue.createdAt

    @pytest.mark.asyncio
    async def test_confirmed_duplicate_skips_priority(self, pipeline, store, stub_oracle):
        """Scenario B."""
        existing = await seed(store, location=Location(coordinates=FIVE_METERS_NORTH),
                              images=[IssueImage(url="https://img/existing.jpg")])
        stub_oracle.text = 0.9
        stub_oracle.image = 0.9

        issue = await pipeline.create_issue(make_draft(image_url="https://img/new.jpg"), "reporter-2")

        detection = issue.metadata.duplicateDetection
        assert detection.hasDuplicates is True
        assert detection.potentialDuplicates[0].issueId == existing.id
        assert detection.confidence == pytest.approx(0.91, abs=0.002)
        assert stub_oracle.count("sentiment") == 0
        assert issue.priority == Priority.medium
        assert issue.status == IssueStatus.pending

    @pytest.mark.asyncio
    async def test_similar_issue_is_flagged_and_still_prioritized(self, pipeline, store, stub_oracle):
        await seed(store, location=Location(coordinates=list(MAIN_ST)))
        stub_oracle.text = 1.0
        stub_oracle.urgency = 0.9

        issue = await pipeline.create_issue(make_draft(), "reporter-2")

        detection = issue.metadata.duplicateDetection
        assert detection.hasDuplicates is False
        assert detection.potentialDuplicates[0].isDuplicate is False
        assert issue.priority == Priority.urgent

    @pytest.mark.asyncio
    async def test_closed_and_other_category_issues_are_not_candidates(self, pipeline, store, stub_oracle):
        await seed(store, status="resolved")
        await seed(store, status="rejected")
        await seed(store, category="drainage")
        stub_oracle.text = 1.0

        issue = await pipeline.create_issue(make_draft(), "reporter-2")

        assert stub_oracle.count("text") == 0
        assert issue.metadata.duplicateDetection is None

    @pytest.mark.asyncio
    async def test_oracle_failures_never_fail_creation(self, store, settings, lifecycle):
        await seed(store, images=[IssueImage(url="https://img/existing.jpg")])
        pipeline = IssueIntelligencePipeline(store, FailingOracle(), settings, lifecycle=lifecycle)

        issue = await pipeline.create_issue(
            make_draft(description="Dangerous pothole, tires blown", image_url="https://img/new.jpg"),
            "reporter-2",
        )

        assert issue.priority == Priority.urgent
        assert issue.images[0].aiDescription == "AI description unavailable"
        assert issue.aiAnalysis is None
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_unconfigured_oracle_uses_fallbacks(self, store, settings, lifecycle):
        pipeline = IssueIntelligencePipeline(store, UnavailableOracle(), settings, lifecycle=lifecycle)
        issue = await pipeline.create_issue(make_draft(description="Minor pothole"), "reporter-1")
        assert issue.priority == Priority.low
        assert issue.images == []

    @pytest.mark.asyncio
    async def test_explicit_priority_is_kept(self, pipeline, stub_oracle):
        stub_oracle.urgency = 0.1
        issue = await pipeline.create_issue(make_draft(priority="urgent"), "reporter-1")
        assert issue.priority == Priority.urgent
        assert stub_oracle.count("sentiment") == 0

    @pytest.mark.asyncio
    async def test_image_analysis_enriches_issue(self, pipeline, stub_oracle):
        stub_oracle.analysis = AIAnalysis(description="Deep pothole in the right lane",
                                          severity="high", suggestedCategory="pothole", confidence=0.8)
        stub_oracle.depth = DamageDepth(estimatedDepth=12.0, confidence=0.7,
                                        damageAssessment="Deep enough to damage tires")
        stub_oracle.urgency = 0.65

        issue = await pipeline.create_issue(
            make_draft(category="other", image_url="https://img/hole.jpg"), "reporter-1",
        )

        assert issue.category == "pothole"
        assert issue.images[0].aiDescription == "Photo of hole.jpg"
        assert issue.aiAnalysis.damageDepth.estimatedDepth == 12.0
        assert issue.aiAnalysis.sentiment.urgency == pytest.approx(0.65)
        assert issue.priority == Priority.high

    @pytest.mark.asyncio
    async def test_deferred_duplicate_check(self, pipeline, store, stub_oracle):
        existing = await seed(store, location=Location(coordinates=list(MAIN_ST)))
        stub_oracle.text = 1.0

        issue = await pipeline.create_issue(make_draft(), "reporter-2", defer_duplicate_check=True)
        assert issue.metadata.duplicateDetection is None

        await pipeline.drain()
        assert pipeline.pending_tasks == 0

        stored = await store.get(issue.id)
        ids = [d.issueId for d in stored.metadata.duplicateDetection.potentialDuplicates]
        assert ids == [existing.id]


class TestClassifyAndEstimate:
    @pytest.mark.asyncio
    async def test_classify_duplicate_has_no_side_effects(self, pipeline, store, stub_oracle):
        await seed(store)
        stub_oracle.text = 1.0
        before = len(store)
        result = await pipeline.classify_duplicate(make_draft())
        assert len(result.candidates) == 1
        assert len(store) == before

    @pytest.mark.asyncio
    async def test_estimate_priority(self, pipeline, stub_oracle):
        stub_oracle.urgency = 0.3
        assert await pipeline.estimate_priority("pothole", "Pothole") == Priority.low


class TestStatusAndUpdates:
    @pytest.mark.asyncio
    async def test_lifecycle_persisted(self, pipeline, store, clock):
        """Scenario D through the store."""
        issue = await pipeline.create_issue(make_draft(), "reporter-1")

        clock.advance(hours=1)
        issue = await pipeline.apply_status_change(issue, "in_progress", actor_id="admin-1")
        clock.advance(hours=4)
        issue = await pipeline.apply_status_change(issue, "resolved", actor_id="admin-1")
        same = await pipeline.apply_status_change(issue, "resolved", actor_id="admin-1")

        stored = await store.get(issue.id)
        assert [e.status for e in stored.statusHistory] == ["pending", "in_progress", "resolved"]
        assert stored.resolvedAt == clock()
        assert stored.actualResolutionTime == 5
        assert len(same.statusHistory) == 3

    @pytest.mark.asyncio
    async def test_update_issue(self, pipeline, store):
        issue = await pipeline.create_issue(make_draft(), "reporter-1")
        updated = await pipeline.update_issue(
            issue.id, "admin-1",
            IssueUpdate(status="rejected", statusNotes="Private property", isPublic=False),
        )
        assert updated.status == IssueStatus.rejected
        stored = await store.get(issue.id)
        assert stored.isPublic is False
        assert stored.statusHistory[-1].reason == "Private property"

    @pytest.mark.asyncio
    async def test_update_validation(self, pipeline):
        issue = await pipeline.create_issue(make_draft(), "reporter-1")
        with pytest.raises(InvalidUpdate):
            await pipeline.update_issue(issue.id, "admin-1", IssueUpdate(estimatedResolutionTime=0))

    @pytest.mark.asyncio
    async def test_missing_issue(self, pipeline):
        with pytest.raises(IssueNotFound):
            await pipeline.update_issue("nope", "admin-1", IssueUpdate(priority="low"))
        with pytest.raises(IssueNotFound):
            await pipeline.get_issue("nope")
        with pytest.raises(IssueNotFound):
            await pipeline.delete_issue("nope")

    @pytest.mark.asyncio
    async def test_update_does_not_clobber_concurrent_writes(self, stub_oracle, settings, lifecycle):
        store = SlowReadStore()
        pipeline = IssueIntelligencePipeline(store, stub_oracle, settings, lifecycle=lifecycle)
        issue = await pipeline.create_issue(make_draft(), "reporter-1")

        store.read_delay = 0.05
        update = asyncio.create_task(pipeline.update_issue(issue.id, "admin-1", IssueUpdate(priority="high")))
        await asyncio.sleep(0)  # admin read snapshot taken, write pending
        tally = await pipeline.apply_vote(issue.id, "voter-1", "up")
        await store.set_duplicate_detection(issue.id, DuplicateDetection(hasDuplicates=True, confidence=0.9))
        updated = await update

        assert tally.upvotes == 1
        stored = await store.get(issue.id)
        assert stored.priority == Priority.high
        assert stored.votes.upvoters() == ["voter-1"]
        assert stored.metadata.duplicateDetection.hasDuplicates is True
        assert updated.votes.upvoters() == ["voter-1"]

    @pytest.mark.asyncio
    async def test_concurrent_status_changes_keep_history(self, stub_oracle, settings, lifecycle):
        store = SlowReadStore()
        pipeline = IssueIntelligencePipeline(store, stub_oracle, settings, lifecycle=lifecycle)
        issue = await pipeline.create_issue(make_draft(), "reporter-1")

        store.read_delay = 0.05
        update = asyncio.create_task(
            pipeline.update_issue(issue.id, "admin-1", IssueUpdate(adminNote="Crew booked"))
        )
        await asyncio.sleep(0)
        await pipeline.apply_status_change(issue, "in_progress", actor_id="admin-2")
        await update

        stored = await store.get(issue.id)
        assert [e.status for e in stored.statusHistory] == ["pending", "in_progress"]
        assert stored.status == IssueStatus.in_progress
        assert [n.note for n in stored.adminNotes] == ["Crew booked"]


class TestVoting:
    @pytest.mark.asyncio
    async def test_reporter_cannot_vote(self, pipeline):
        issue = await pipeline.create_issue(make_draft(), "reporter-1")
        with pytest.raises(SelfVoteError):
            await pipeline.apply_vote(issue.id, "reporter-1", "up")

    @pytest.mark.asyncio
    async def test_votes_are_idempotent_per_user(self, pipeline, store):
        issue = await pipeline.create_issue(make_draft(), "reporter-1")
        await pipeline.apply_vote(issue.id, "u1", "up")
        await pipeline.apply_vote(issue.id, "u1", "up")
        await pipeline.apply_vote(issue.id, "u2", "up")
        tally = await pipeline.apply_vote(issue.id, "u2", "down")

        assert (tally.upvotes, tally.downvotes, tally.totalVotes) == (1, 1, 2)
        stored = await store.get(issue.id)
        assert stored.votes.upvoters() == ["u1"]
        assert stored.votes.downvoters() == ["u2"]

    @pytest.mark.asyncio
    async def test_vote_on_missing_issue(self, pipeline):
        with pytest.raises(IssueNotFound):
            await pipeline.apply_vote("nope", "u1", "up")


class TestDeleteAndStats:
    @pytest.mark.asyncio
    async def test_delete(self, pipeline):
        issue = await pipeline.create_issue(make_draft(), "reporter-1")
        await pipeline.delete_issue(issue.id)
        with pytest.raises(IssueNotFound):
            await pipeline.get_issue(issue.id)

    @pytest.mark.asyncio
    async def test_stats(self, pipeline, stub_oracle):
        stub_oracle.urgency = 0.95
        first = await pipeline.create_issue(make_draft(), "reporter-1")
        await pipeline.create_issue(make_draft(category="graffiti", coordinates=(-73.9, 40.7)), "reporter-1")
        await pipeline.apply_status_change(first, "resolved", actor_id="admin-1")

        stats = await pipeline.stats()
        assert stats["overall"]["totalIssues"] == 2
        assert stats["overall"]["resolvedIssues"] == 1
        assert stats["overall"]["pendingIssues"] == 1
        assert stats["overall"]["urgentIssues"] == 2
        assert {c["category"] for c in stats["byCategory"]} == {"pothole", "graffiti"}
        assert stats["monthly"] == [{"year": 2025, "month": 3, "count": 2}]


async def seed_private(store):
    return await seed(
        store,
        isPublic=False,
        adminNotes=[
            AdminNote(note="Internal: repeat reporter", addedBy="admin-1"),
            AdminNote(note="Crew scheduled for Monday", addedBy="admin-1", isPublic=True),
        ],
        metadata={"ipAddress": "203.0.113.7", "userAgent": "Mobile"},
    )


class TestVisibility:
    @pytest.mark.asyncio
    async def test_private_issue_hidden_from_other_citizens(self, pipeline, store):
        private_issue = await seed_private(store)
        with pytest.raises(AccessDenied):
            await pipeline.view_issue(private_issue.id, "neighbour-9")

    @pytest.mark.asyncio
    async def test_reporter_sees_redacted_issue(self, pipeline, store):
        private_issue = await seed_private(store)
        issue = await pipeline.view_issue(private_issue.id, "reporter-1")
        assert [n.note for n in issue.adminNotes] == ["Crew scheduled for Monday"]
        assert issue.metadata.ipAddress is None
        assert issue.metadata.userAgent is None

    @pytest.mark.asyncio
    async def test_admin_sees_everything(self, pipeline, store):
        private_issue = await seed_private(store)
        issue = await pipeline.view_issue(private_issue.id, "admin-1", is_admin=True)
        assert len(issue.adminNotes) == 2
        assert issue.metadata.ipAddress == "203.0.113.7"


class TestListing:
    @pytest.mark.asyncio
    async def test_citizen_sees_public_issues(self, pipeline, store):
        public = await seed(store)
        own_private = await seed(store, isPublic=False, reported_by="reporter-2")
        await seed(store, isPublic=False, reported_by="reporter-3")

        result = await pipeline.list_issues(IssueQuery(), "reporter-2")
        assert [i.id for i in result["issues"]] == [public.id]

        result = await pipeline.list_issues(IssueQuery(reportedBy="reporter-2"), "reporter-2")
        assert [i.id for i in result["issues"]] == [own_private.id]

        result = await pipeline.list_issues(IssueQuery(reportedBy="reporter-3"), "reporter-2")
        assert result["issues"] == []

    @pytest.mark.asyncio
    async def test_admin_sees_all_and_pagination(self, pipeline, store):
        for n in range(5):
            await seed(store, isPublic=n % 2 == 0)

        result = await pipeline.list_issues(IssueQuery(), "admin-1", is_admin=True, page=2, limit=2)
        assert len(result["issues"]) == 2
        assert result["pagination"] == {
            "currentPage": 2,
            "totalPages": 3,
            "totalCount": 5,
            "limit": 2,
            "hasNextPage": True,
            "hasPrevPage": True,
        }

    @pytest.mark.asyncio
    async def test_page_size_is_capped(self, pipeline, store):
        await seed(store)
        result = await pipeline.list_issues(IssueQuery(), "reporter-1", limit=5000)
        assert result["pagination"]["limit"] == 100
        result = await pipeline.list_issues(IssueQuery(), "admin-1", is_admin=True, limit=0)
        assert result["pagination"]["limit"] == 1

    @pytest.mark.asyncio
    async def test_invalid_search_point_matches_nothing(self, pipeline, store):
        await seed(store)
        result = await pipeline.list_issues(IssueQuery(near=(200.0, 10.0)), "reporter-1")
        assert result["issues"] == []
        assert result["pagination"]["totalCount"] == 0

    @pytest.mark.asyncio
    async def test_listed_issues_are_redacted_for_citizens(self, pipeline, store):
        await seed(store, adminNotes=[AdminNote(note="Internal", addedBy="admin-1")])
        result = await pipeline.list_issues(IssueQuery(), "reporter-9")
        assert result["issues"][0].adminNotes == []
