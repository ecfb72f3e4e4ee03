"""Job aggregate: a Job with its embedded, index-addressed Milestones and Votes."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class JobStatus(StrEnum):
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Role(StrEnum):
    CLIENT = "client"
    FREELANCER = "freelancer"
    REVIEWER = "reviewer"
    ADMIN = "admin"


class Verdict(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"


class Caller(BaseModel):
    """Already-authenticated caller identity with its resolved role."""

    model_config = ConfigDict(frozen=True)
    user_id: str
    role: Role


class Vote(BaseModel):
    model_config = ConfigDict(extra="forbid")
    reviewer_id: str
    verdict: Verdict
    feedback: str = ""
    timestamp: str


class Milestone(BaseModel):
    """
    A payable unit of work owned by exactly one Job.

    Never persisted on its own; always saved as part of the parent Job.
    """

    model_config = ConfigDict(extra="forbid")
    title: str
    description: str
    amount: int
    due_date: str | None = None
    is_completed: bool = False
    completed_date: str | None = None
    evidence_urls: list[str] = Field(default_factory=list)
    reviewers: list[str] = Field(default_factory=list)
    votes: list[Vote] = Field(default_factory=list)
    settlement_tx_id: str | None = None

    @property
    def stage(self) -> str:
        """Derived workflow stage of this milestone."""
        if self.is_completed:
            return "released"
        if self.votes:
            return "voting"
        if self.reviewers:
            return "reviewers_assigned"
        if self.evidence_urls:
            return "submitted"
        return "draft"


class Job(BaseModel):
    model_config = ConfigDict(extra="forbid")
    job_id: str
    client_id: str
    freelancer_id: str | None = None
    title: str
    description: str
    status: JobStatus = JobStatus.DRAFT
    milestones: list[Milestone] = Field(default_factory=list)
    total_amount: int = 0
    total_paid: int = 0
    skills: list[str] = Field(default_factory=list)
    created_at: str
    updated_at: str
    version: int = 0

    def all_milestones_completed(self) -> bool:
        # An empty job has nothing left to pay and is considered complete.
        return all(milestone.is_completed for milestone in self.milestones)
