import logging
from datetime import datetime
from typing import Callable, Optional, Union

from civic_issues.models.issue_model import VoteDirection, VoteRecord, Votes, VoteTally
from civic_issues.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class VoteLedger:
    """
    One vote per user per issue.

    Casting always removes the user from both lists first, then records the
    new direction (if any). Switching sides, repeating a vote and retracting
    all go through the same path, so a user can never appear twice.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def cast(self, votes: Votes, user_id: str, direction: Union[str, VoteDirection],
             voted_at: Optional[datetime] = None) -> Votes:
        direction = VoteDirection(direction)
        votes.upvotes = [v for v in votes.upvotes if v.user != user_id]
        votes.downvotes = [v for v in votes.downvotes if v.user != user_id]

        if direction != VoteDirection.remove:
            record = VoteRecord(user=user_id, votedAt=voted_at or self.clock())
            if direction == VoteDirection.up:
                votes.upvotes = votes.upvotes + [record]
            else:
                votes.downvotes = votes.downvotes + [record]

        logger.debug(f"Vote {direction.value} by {user_id}: +{len(votes.upvotes)} / -{len(votes.downvotes)}")
        return votes

    @staticmethod
    def tally(votes: Votes) -> VoteTally:
        up, down = len(votes.upvotes), len(votes.downvotes)
        return VoteTally(upvotes=up, downvotes=down, totalVotes=up + down)

    @staticmethod
    def current_vote(votes: Votes, user_id: str) -> VoteDirection:
        if user_id in votes.upvoters():
            return VoteDirection.up
        if user_id in votes.downvoters():
            return VoteDirection.down
        return VoteDirection.remove
