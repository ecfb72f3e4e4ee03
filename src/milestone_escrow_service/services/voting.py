"""Reviewer vote recording and majority-quorum tallying."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.services.models import JobStatus, Verdict, Vote, now_iso
from milestone_escrow_service.services.state_machine import milestone_at, require_status

if TYPE_CHECKING:
    from milestone_escrow_service.services.models import Job, Milestone


@dataclass(frozen=True)
class Tally:
    """Snapshot of a milestone's vote count against its majority threshold."""

    reviewers: int
    approvals: int
    rejections: int
    threshold: int
    decided: bool
    approved: bool
    all_voted: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class QuorumVotingEngine:
    """
    Records reviewer verdicts and decides whether a milestone is approved.

    Early-decision policy: the threshold is computed against the number of
    assigned reviewers, not the number of votes cast, so a milestone is
    decided as soon as one side holds a majority the remaining reviewers
    can no longer overturn. Release may therefore happen before every
    reviewer has voted.
    """

    @staticmethod
    def tally(milestone: Milestone) -> Tally:
        """Compute the current tally from the milestone's votes."""
        assigned = set(milestone.reviewers)
        total = len(assigned)
        threshold = math.ceil(total / 2)

        counted = [vote for vote in milestone.votes if vote.reviewer_id in assigned]
        approvals = sum(1 for vote in counted if vote.verdict == Verdict.APPROVE)
        rejections = sum(1 for vote in counted if vote.verdict == Verdict.REJECT)

        if total == 0:
            return Tally(
                reviewers=0,
                approvals=approvals,
                rejections=rejections,
                threshold=0,
                decided=False,
                approved=False,
                all_voted=False,
            )

        approved = approvals >= threshold
        rejected = rejections >= total - threshold + 1
        return Tally(
            reviewers=total,
            approvals=approvals,
            rejections=rejections,
            threshold=threshold,
            decided=approved or rejected,
            approved=approved,
            all_voted=len(counted) == total,
        )

    def cast_vote(
        self,
        job: Job,
        index: int,
        reviewer_id: str,
        verdict: Verdict,
        feedback: str,
    ) -> Tally:
        """
        Record reviewer_id's verdict, replacing any earlier vote in place.

        Returns the tally after the vote.
        """
        require_status(job, JobStatus.IN_PROGRESS, "vote")
        milestone = milestone_at(job, index)

        if reviewer_id not in milestone.reviewers:
            raise ServiceError(
                "FORBIDDEN",
                "Only assigned reviewers can vote on this milestone",
                403,
                {},
            )
        if milestone.is_completed:
            raise ServiceError(
                "ALREADY_RELEASED",
                "Funds for this milestone were already released; votes are closed",
                409,
                {"job_id": job.job_id, "milestone_index": index},
            )

        vote = Vote(
            reviewer_id=reviewer_id,
            verdict=verdict,
            feedback=feedback,
            timestamp=now_iso(),
        )
        for position, existing in enumerate(milestone.votes):
            if existing.reviewer_id == reviewer_id:
                milestone.votes[position] = vote
                break
        else:
            milestone.votes.append(vote)

        return self.tally(milestone)
