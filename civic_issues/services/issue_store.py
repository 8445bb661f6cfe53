"""
Issue persistence.

IssueStore is what the pipeline depends on; MongoIssueStore is the Motor
implementation. Status changes, admin updates and votes are applied as
single-document atomic updates, never whole-document replaces, so concurrent
requests against one issue never interleave halfway through a write.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from civic_issues.models.issue_model import (
    CLOSED_STATUSES,
    CandidateSummary,
    DuplicateDetection,
    Issue,
    IssueStatus,
    Priority,
    VoteDirection,
    Votes,
)
from civic_issues.services.issue_lifecycle import AdminUpdateResult, StatusChange
from civic_issues.services.vote_ledger import VoteLedger
from civic_issues.utils.geo import haversine_distance

logger = logging.getLogger(__name__)

CANDIDATE_PROJECTION = {
    "_id": 1,
    "title": 1,
    "description": 1,
    "location": 1,
    "images": {"$slice": 1},
    "createdAt": 1,
    "status": 1,
}

EARTH_RADIUS_EQUATORIAL_M = 6378137

SORTABLE_FIELDS = ("createdAt", "updatedAt", "title", "status", "priority", "category")


@dataclass
class IssueQuery:
    status: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    reportedBy: Optional[str] = None
    assignedTo: Optional[str] = None
    search: Optional[str] = None
    near: Optional[Tuple[float, float]] = None  # (longitude, latitude)
    radius_m: float = 5000.0
    public_only: bool = False
    sort_by: str = "createdAt"
    descending: bool = True

    def __post_init__(self):
        if self.sort_by not in SORTABLE_FIELDS:
            self.sort_by = "createdAt"


def empty_overall_stats() -> Dict[str, int]:
    return {
        "totalIssues": 0,
        "pendingIssues": 0,
        "inProgressIssues": 0,
        "resolvedIssues": 0,
        "urgentIssues": 0,
        "highPriorityIssues": 0,
    }


def candidate_from_document(doc: Dict[str, Any]) -> CandidateSummary:
    images = doc.get("images") or []
    return CandidateSummary(
        id=str(doc["_id"]),
        title=doc.get("title") or "",
        description=doc.get("description") or "",
        coordinates=doc["location"]["coordinates"],
        imageUrl=images[0].get("url") if images else None,
        createdAt=doc.get("createdAt"),
        status=doc.get("status", "pending"),
    )


def build_status_update(change: StatusChange) -> Dict[str, Any]:
    entry = change.entry
    fields: Dict[str, Any] = {"status": entry.status, "updatedAt": entry.changedAt}
    if change.resolved_at is not None:
        fields["resolvedAt"] = change.resolved_at
        fields["actualResolutionTime"] = change.actual_resolution_time
    return {"$set": fields, "$push": {"statusHistory": entry.model_dump()}}


def build_admin_update(result: AdminUpdateResult) -> Dict[str, Any]:
    """Single update document for an administrative change; touches only what changed."""
    fields: Dict[str, Any] = dict(result.fields)
    push: Dict[str, Any] = {}
    if result.status_change is not None:
        status_update = build_status_update(result.status_change)
        fields.update(status_update["$set"])
        push.update(status_update["$push"])
    if result.admin_note is not None:
        push["adminNotes"] = result.admin_note.model_dump()
    if result.updated_at is not None:
        fields["updatedAt"] = result.updated_at

    update: Dict[str, Any] = {"$set": fields}
    if push:
        update["$push"] = push
    return update


def build_list_filter(query: IssueQuery) -> Dict[str, Any]:
    filters: Dict[str, Any] = {}
    for name in ("status", "category", "priority", "reportedBy", "assignedTo"):
        value = getattr(query, name)
        if value:
            filters[name] = value
    if query.public_only:
        filters["isPublic"] = True
    if query.search:
        pattern = {"$regex": re.escape(query.search), "$options": "i"}
        filters["$or"] = [{"title": pattern}, {"description": pattern}]
    if query.near is not None:
        # $geoWithin rather than $near: results are sorted by sort_by and counted
        filters["location"] = {
            "$geoWithin": {"$centerSphere": [list(query.near), query.radius_m / EARTH_RADIUS_EQUATORIAL_M]}
        }
    return filters


def build_vote_pipeline(user_id: str, direction: Union[str, VoteDirection],
                        voted_at: datetime) -> List[Dict[str, Any]]:
    """
    Update pipeline applying one vote in a single document write.

    Mirrors VoteLedger.cast: the user is filtered out of both lists, then the
    new record is appended to the chosen list. ``$pull`` and ``$push`` cannot
    target the same path in one update, hence the pipeline form.
    """
    direction = VoteDirection(direction)
    user = {"$literal": user_id}

    def without_user(path: str) -> Dict[str, Any]:
        return {
            "$filter": {
                "input": {"$ifNull": [f"${path}", []]},
                "as": "v",
                "cond": {"$ne": ["$$v.user", user]},
            }
        }

    upvotes: Dict[str, Any] = without_user("votes.upvotes")
    downvotes: Dict[str, Any] = without_user("votes.downvotes")
    record = [{"user": user, "votedAt": {"$literal": voted_at}}]
    if direction == VoteDirection.up:
        upvotes = {"$concatArrays": [upvotes, record]}
    elif direction == VoteDirection.down:
        downvotes = {"$concatArrays": [downvotes, record]}

    return [{"$set": {"votes.upvotes": upvotes, "votes.downvotes": downvotes, "updatedAt": voted_at}}]


class IssueStore(ABC):
    @abstractmethod
    async def find_open_candidates(self, category: str, longitude: float, latitude: float,
                                   radius_m: float, limit: int,
                                   exclude_id: Optional[str] = None) -> List[CandidateSummary]:
        """Open issues (not resolved/rejected) of ``category`` within ``radius_m`` of the point."""

    @abstractmethod
    async def insert(self, issue: Issue) -> Issue:
        ...

    @abstractmethod
    async def get(self, issue_id: str) -> Optional[Issue]:
        ...

    @abstractmethod
    async def list_issues(self, query: IssueQuery, skip: int, limit: int) -> Tuple[List[Issue], int]:
        """One page of matching issues plus the total match count."""

    @abstractmethod
    async def apply_admin_update(self, issue_id: str, result: AdminUpdateResult) -> Optional[Issue]:
        """Write only the changed fields, history entry and note; None if the issue is gone."""

    @abstractmethod
    async def update_status(self, issue_id: str, change: StatusChange) -> Optional[Issue]:
        ...

    @abstractmethod
    async def set_duplicate_detection(self, issue_id: str, detection: DuplicateDetection) -> bool:
        ...

    @abstractmethod
    async def apply_vote(self, issue_id: str, user_id: str, direction: Union[str, VoteDirection],
                         voted_at: datetime) -> Optional[Votes]:
        """Atomically cast a vote; returns the resulting votes or None if the issue is gone."""

    @abstractmethod
    async def delete(self, issue_id: str) -> bool:
        ...

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        ...


class InMemoryIssueStore(IssueStore):
    """
    Process-local store for development without MongoDB.

    Writes go through one asyncio.Lock, which gives the same per-document
    atomicity the Mongo store gets from single-document updates.
    """

    def __init__(self, ledger: Optional[VoteLedger] = None):
        self._issues: Dict[str, Issue] = {}
        self._lock = asyncio.Lock()
        self.ledger = ledger or VoteLedger()

    def __len__(self) -> int:
        return len(self._issues)

    async def find_open_candidates(self, category: str, longitude: float, latitude: float,
                                   radius_m: float, limit: int,
                                   exclude_id: Optional[str] = None) -> List[CandidateSummary]:
        nearby = []
        for issue in self._issues.values():
            if issue.category != category or issue.status in CLOSED_STATUSES or issue.id == exclude_id:
                continue
            distance = haversine_distance(longitude, latitude, issue.location.longitude, issue.location.latitude)
            if distance <= radius_m:
                nearby.append((distance, issue))
        nearby.sort(key=lambda pair: pair[0])
        return [
            CandidateSummary(
                id=issue.id,
                title=issue.title,
                description=issue.description,
                coordinates=list(issue.location.coordinates),
                imageUrl=issue.first_image_url(),
                createdAt=issue.createdAt,
                status=issue.status,
            )
            for _, issue in nearby[:limit]
        ]

    async def insert(self, issue: Issue) -> Issue:
        async with self._lock:
            if issue.id in self._issues:
                raise ValueError(f"Issue {issue.id} already exists")
            self._issues[issue.id] = issue.model_copy(deep=True)
        return issue

    async def get(self, issue_id: str) -> Optional[Issue]:
        issue = self._issues.get(issue_id)
        return issue.model_copy(deep=True) if issue else None

    def _matches(self, issue: Issue, query: IssueQuery) -> bool:
        for name in ("status", "category", "priority", "reportedBy", "assignedTo"):
            value = getattr(query, name)
            if value and getattr(issue, name) != value:
                return False
        if query.public_only and not issue.isPublic:
            return False
        if query.search:
            needle = query.search.lower()
            if needle not in issue.title.lower() and needle not in issue.description.lower():
                return False
        if query.near is not None:
            distance = haversine_distance(query.near[0], query.near[1],
                                          issue.location.longitude, issue.location.latitude)
            if distance > query.radius_m:
                return False
        return True

    async def list_issues(self, query: IssueQuery, skip: int, limit: int) -> Tuple[List[Issue], int]:
        matches = [i for i in self._issues.values() if self._matches(i, query)]
        matches.sort(key=lambda i: getattr(i, query.sort_by), reverse=query.descending)
        page = matches[skip:skip + limit]
        return [i.model_copy(deep=True) for i in page], len(matches)

    @staticmethod
    def _apply_change(stored: Issue, change: StatusChange) -> None:
        stored.status = change.entry.status
        stored.statusHistory.append(change.entry.model_copy())
        stored.updatedAt = change.entry.changedAt
        if change.resolved_at is not None:
            stored.resolvedAt = change.resolved_at
            stored.actualResolutionTime = change.actual_resolution_time

    async def apply_admin_update(self, issue_id: str, result: AdminUpdateResult) -> Optional[Issue]:
        async with self._lock:
            stored = self._issues.get(issue_id)
            if stored is None:
                return None
            if result.status_change is not None:
                self._apply_change(stored, result.status_change)
            for name, value in result.fields.items():
                setattr(stored, name, value)
            if result.admin_note is not None:
                stored.adminNotes.append(result.admin_note.model_copy())
            if result.updated_at is not None:
                stored.updatedAt = result.updated_at
            return stored.model_copy(deep=True)

    async def update_status(self, issue_id: str, change: StatusChange) -> Optional[Issue]:
        async with self._lock:
            stored = self._issues.get(issue_id)
            if stored is None:
                return None
            self._apply_change(stored, change)
            return stored.model_copy(deep=True)

    async def set_duplicate_detection(self, issue_id: str, detection: DuplicateDetection) -> bool:
        async with self._lock:
            stored = self._issues.get(issue_id)
            if stored is None:
                return False
            stored.metadata.duplicateDetection = detection.model_copy(deep=True)
            return True

    async def apply_vote(self, issue_id: str, user_id: str, direction: Union[str, VoteDirection],
                         voted_at: datetime) -> Optional[Votes]:
        async with self._lock:
            stored = self._issues.get(issue_id)
            if stored is None:
                return None
            self.ledger.cast(stored.votes, user_id, direction, voted_at=voted_at)
            stored.updatedAt = voted_at
            return stored.votes.model_copy(deep=True)

    async def delete(self, issue_id: str) -> bool:
        async with self._lock:
            return self._issues.pop(issue_id, None) is not None

    async def stats(self) -> Dict[str, Any]:
        issues = list(self._issues.values())
        overall = empty_overall_stats()
        overall["totalIssues"] = len(issues)
        overall["pendingIssues"] = sum(1 for i in issues if i.status == IssueStatus.pending)
        overall["inProgressIssues"] = sum(1 for i in issues if i.status == IssueStatus.in_progress)
        overall["resolvedIssues"] = sum(1 for i in issues if i.status == IssueStatus.resolved)
        overall["urgentIssues"] = sum(1 for i in issues if i.priority == Priority.urgent)
        overall["highPriorityIssues"] = sum(1 for i in issues if i.priority == Priority.high)

        categories = Counter(i.category for i in issues)
        months = Counter((i.createdAt.year, i.createdAt.month) for i in issues)
        return {
            "overall": overall,
            "byCategory": [{"category": c, "count": n} for c, n in categories.most_common()],
            "monthly": [
                {"year": y, "month": m, "count": months[(y, m)]}
                for y, m in sorted(months, reverse=True)[:12]
            ],
        }


class MongoIssueStore(IssueStore):
    def __init__(self, db, collection_name: str = "issues"):
        self.collection = db[collection_name]

    async def find_open_candidates(self, category: str, longitude: float, latitude: float,
                                   radius_m: float, limit: int,
                                   exclude_id: Optional[str] = None) -> List[CandidateSummary]:
        query: Dict[str, Any] = {
            "category": category,
            "status": {"$nin": [s.value for s in CLOSED_STATUSES]},
            "location": {
                "$near": {
                    "$geometry": {"type": "Point", "coordinates": [longitude, latitude]},
                    "$maxDistance": radius_m,
                }
            },
        }
        if exclude_id:
            query["_id"] = {"$ne": exclude_id}

        cursor = self.collection.find(query, CANDIDATE_PROJECTION).limit(limit)
        docs = await cursor.to_list(length=limit)
        logger.debug(f"Found {len(docs)} open {category} issues within {radius_m}m")
        return [candidate_from_document(d) for d in docs]

    async def insert(self, issue: Issue) -> Issue:
        await self.collection.insert_one(issue.to_document())
        logger.info(f"✅ Stored issue {issue.id}")
        return issue

    async def get(self, issue_id: str) -> Optional[Issue]:
        doc = await self.collection.find_one({"_id": issue_id})
        return Issue(**doc) if doc else None

    async def list_issues(self, query: IssueQuery, skip: int, limit: int) -> Tuple[List[Issue], int]:
        filters = build_list_filter(query)
        cursor = (
            self.collection.find(filters)
            .sort(query.sort_by, DESCENDING if query.descending else ASCENDING)
            .skip(skip)
            .limit(limit)
        )
        docs, total = await asyncio.gather(
            cursor.to_list(length=limit),
            self.collection.count_documents(filters),
        )
        return [Issue(**d) for d in docs], total

    async def apply_admin_update(self, issue_id: str, result: AdminUpdateResult) -> Optional[Issue]:
        doc = await self.collection.find_one_and_update(
            {"_id": issue_id},
            build_admin_update(result),
            return_document=ReturnDocument.AFTER,
        )
        return Issue(**doc) if doc else None

    async def update_status(self, issue_id: str, change: StatusChange) -> Optional[Issue]:
        doc = await self.collection.find_one_and_update(
            {"_id": issue_id},
            build_status_update(change),
            return_document=ReturnDocument.AFTER,
        )
        return Issue(**doc) if doc else None

    async def set_duplicate_detection(self, issue_id: str, detection: DuplicateDetection) -> bool:
        result = await self.collection.update_one(
            {"_id": issue_id},
            {"$set": {"metadata.duplicateDetection": detection.model_dump()}},
        )
        return result.matched_count > 0

    async def apply_vote(self, issue_id: str, user_id: str, direction: Union[str, VoteDirection],
                         voted_at: datetime) -> Optional[Votes]:
        doc = await self.collection.find_one_and_update(
            {"_id": issue_id},
            build_vote_pipeline(user_id, direction, voted_at),
            projection={"votes": 1},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None
        return Votes(**(doc.get("votes") or {}))

    async def delete(self, issue_id: str) -> bool:
        result = await self.collection.delete_one({"_id": issue_id})
        return result.deleted_count > 0

    async def stats(self) -> Dict[str, Any]:
        overall = await self.collection.aggregate([
            {
                "$group": {
                    "_id": None,
                    "totalIssues": {"$sum": 1},
                    "pendingIssues": {"$sum": {"$cond": [{"$eq": ["$status", "pending"]}, 1, 0]}},
                    "inProgressIssues": {"$sum": {"$cond": [{"$eq": ["$status", "in_progress"]}, 1, 0]}},
                    "resolvedIssues": {"$sum": {"$cond": [{"$eq": ["$status", "resolved"]}, 1, 0]}},
                    "urgentIssues": {"$sum": {"$cond": [{"$eq": ["$priority", "urgent"]}, 1, 0]}},
                    "highPriorityIssues": {"$sum": {"$cond": [{"$eq": ["$priority", "high"]}, 1, 0]}},
                }
            },
            {"$project": {"_id": 0}},
        ]).to_list(length=1)

        by_category = await self.collection.aggregate([
            {"$group": {"_id": "$category", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
            {"$project": {"_id": 0, "category": "$_id", "count": 1}},
        ]).to_list(length=None)

        monthly = await self.collection.aggregate([
            {"$group": {
                "_id": {"year": {"$year": "$createdAt"}, "month": {"$month": "$createdAt"}},
                "count": {"$sum": 1},
            }},
            {"$sort": {"_id.year": -1, "_id.month": -1}},
            {"$limit": 12},
            {"$project": {"_id": 0, "year": "$_id.year", "month": "$_id.month", "count": 1}},
        ]).to_list(length=12)

        return {
            "overall": overall[0] if overall else empty_overall_stats(),
            "byCategory": by_category,
            "monthly": monthly,
        }
