"""
Issue status lifecycle.

Any status may move to any other status; administrators are not restricted
to forward transitions. What the lifecycle guarantees is the audit trail:

- every genuine status change appends one StatusHistoryEntry, and setting the
  current status again appends nothing;
- entries are only ever appended, so the last entry always carries the
  current status;
- entering ``resolved`` stamps resolvedAt and derives actualResolutionTime
  (whole hours since createdAt). Re-resolving recomputes both.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from civic_issues.core.errors import InvalidUpdate
from civic_issues.models.issue_model import (
    AdminNote,
    Issue,
    IssueStatus,
    IssueUpdate,
    StatusHistoryEntry,
)
from civic_issues.utils.helpers import hours_between, utcnow

logger = logging.getLogger(__name__)

MAX_RESOLUTION_HOURS = 8760
MAX_NOTE_LENGTH = 1000


@dataclass
class StatusChange:
    previous_status: str
    entry: StatusHistoryEntry
    resolved_at: Optional[datetime] = None
    actual_resolution_time: Optional[int] = None

    @property
    def status(self) -> str:
        return self.entry.status


@dataclass
class AdminUpdateResult:
    status_change: Optional[StatusChange] = None
    changed_fields: List[str] = field(default_factory=list)
    # Plain field values to $set; status and notes travel separately
    fields: Dict[str, Any] = field(default_factory=dict)
    admin_note: Optional[AdminNote] = None
    updated_at: Optional[datetime] = None

    @property
    def changed(self) -> bool:
        return bool(self.changed_fields)


class IssueLifecycle:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    @staticmethod
    def resolve_actor(issue: Issue, actor_id: Optional[str] = None) -> str:
        """Explicit actor, else the assigned handler, else the reporter."""
        return actor_id or issue.assignedTo or issue.reportedBy

    def initialize(self, issue: Issue, reason: Optional[str] = "Issue reported") -> StatusHistoryEntry:
        """Put a freshly built issue into ``pending`` with its first audit entry."""
        if issue.statusHistory:
            raise ValueError(f"Issue {issue.id} already has a status history")
        now = self.clock()
        issue.status = IssueStatus.pending
        entry = StatusHistoryEntry(
            status=IssueStatus.pending,
            changedBy=issue.reportedBy,
            changedAt=now,
            reason=reason,
        )
        issue.statusHistory.append(entry)
        issue.updatedAt = now
        return entry

    def apply_status_change(self, issue: Issue, new_status: Union[str, IssueStatus],
                            actor_id: Optional[str] = None,
                            reason: Optional[str] = None) -> Optional[StatusChange]:
        """
        Move ``issue`` to ``new_status`` in place.

        Returns the StatusChange that was recorded, or None when the issue
        already had that status.
        """
        target = IssueStatus(new_status)
        if issue.status == target:
            logger.debug(f"Issue {issue.id} already {target.value}; no transition recorded")
            return None

        now = self.clock()
        previous = issue.status
        entry = StatusHistoryEntry(
            status=target,
            changedBy=self.resolve_actor(issue, actor_id),
            changedAt=now,
            reason=reason or None,
        )
        issue.status = target
        issue.statusHistory.append(entry)
        issue.updatedAt = now

        change = StatusChange(previous_status=previous, entry=entry)
        if target == IssueStatus.resolved:
            issue.resolvedAt = now
            issue.actualResolutionTime = hours_between(issue.createdAt, now)
            change.resolved_at = issue.resolvedAt
            change.actual_resolution_time = issue.actualResolutionTime

        logger.info(f"🔄 Issue {issue.id}: {previous} → {target.value} by {entry.changedBy}")
        return change

    def apply_admin_update(self, issue: Issue, actor_id: str, update: IssueUpdate) -> AdminUpdateResult:
        """Status, priority, assignment and note changes made by an administrator."""
        if update.estimatedResolutionTime is not None and not (
            1 <= update.estimatedResolutionTime <= MAX_RESOLUTION_HOURS
        ):
            raise InvalidUpdate(f"estimatedResolutionTime must be between 1 and {MAX_RESOLUTION_HOURS} hours")
        note = (update.adminNote or "").strip()
        if len(note) > MAX_NOTE_LENGTH:
            raise InvalidUpdate(f"Admin note cannot exceed {MAX_NOTE_LENGTH} characters")

        result = AdminUpdateResult()

        if update.status is not None:
            result.status_change = self.apply_status_change(issue, update.status, actor_id, update.statusNotes)
            if result.status_change:
                result.changed_fields.append("status")

        if update.priority is not None and update.priority != issue.priority:
            issue.priority = update.priority
            result.fields["priority"] = issue.priority
            result.changed_fields.append("priority")

        if update.assignedTo and update.assignedTo != issue.assignedTo:
            issue.assignedTo = update.assignedTo
            result.fields["assignedTo"] = issue.assignedTo
            result.changed_fields.append("assignedTo")

        if update.isPublic is not None and update.isPublic != issue.isPublic:
            issue.isPublic = update.isPublic
            result.fields["isPublic"] = issue.isPublic
            result.changed_fields.append("isPublic")

        if update.estimatedResolutionTime is not None:
            issue.estimatedResolutionTime = update.estimatedResolutionTime
            result.fields["estimatedResolutionTime"] = issue.estimatedResolutionTime
            result.changed_fields.append("estimatedResolutionTime")

        if note:
            result.admin_note = AdminNote(note=note, addedBy=actor_id, addedAt=self.clock(),
                                          isPublic=update.noteIsPublic)
            issue.adminNotes.append(result.admin_note)
            result.changed_fields.append("adminNotes")

        if result.changed:
            issue.updatedAt = result.updated_at = self.clock()
        return result
