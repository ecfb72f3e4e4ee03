"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_jobs: int
    jobs_by_status: dict[str, int]


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class TallyResponse(BaseModel):
    """Response model for GET /jobs/{job_id}/milestones/{index}/tally."""

    model_config = ConfigDict(extra="forbid")
    reviewers: int
    approvals: int
    rejections: int
    threshold: int
    decided: bool
    approved: bool
    all_voted: bool


class VoteResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    reviewer_id: str
    verdict: Literal["approve", "reject"]
    feedback: str
    timestamp: str


class MilestoneResponse(BaseModel):
    """A milestone as embedded in a job response."""

    model_config = ConfigDict(extra="forbid")
    index: int
    title: str
    description: str
    amount: int
    due_date: str | None
    stage: str
    is_completed: bool
    completed_date: str | None
    evidence_urls: list[str]
    reviewers: list[str]
    votes: list[VoteResponse]
    tally: TallyResponse
    settlement_tx_id: str | None


class JobResponse(BaseModel):
    """Full job detail response model."""

    model_config = ConfigDict(extra="forbid")
    job_id: str
    client_id: str
    freelancer_id: str | None
    title: str
    description: str
    status: str
    milestones: list[MilestoneResponse]
    total_amount: int
    total_paid: int
    skills: list[str]
    created_at: str
    updated_at: str
    version: int


class JobSummary(BaseModel):
    """Summary job model for list views."""

    model_config = ConfigDict(extra="forbid")
    job_id: str
    client_id: str
    freelancer_id: str | None
    title: str
    status: str
    milestone_count: int
    total_amount: int
    total_paid: int
    skills: list[str]
    created_at: str


class JobListResponse(BaseModel):
    """Response model for GET /jobs."""

    model_config = ConfigDict(extra="forbid")
    jobs: list[JobSummary]
