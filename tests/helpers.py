"""Shared test helpers for building jobs and mocking collaborators."""

from __future__ import annotations

import base64
import json
from typing import Any
from unittest.mock import AsyncMock

from milestone_escrow_service.services.models import (
    Caller,
    Job,
    JobStatus,
    Milestone,
    Role,
    Verdict,
    Vote,
    now_iso,
)

CLIENT_ID = "u-client"
FREELANCER_ID = "u-freelancer"
REVIEWER_IDS = ("u-reviewer-1", "u-reviewer-2", "u-reviewer-3")
OTHER_CLIENT_ID = "u-other-client"

USERS: dict[str, str] = {
    CLIENT_ID: Role.CLIENT.value,
    OTHER_CLIENT_ID: Role.CLIENT.value,
    FREELANCER_ID: Role.FREELANCER.value,
    "u-freelancer-2": Role.FREELANCER.value,
    REVIEWER_IDS[0]: Role.REVIEWER.value,
    REVIEWER_IDS[1]: Role.REVIEWER.value,
    REVIEWER_IDS[2]: Role.REVIEWER.value,
}


def client_caller(user_id: str = CLIENT_ID) -> Caller:
    return Caller(user_id=user_id, role=Role.CLIENT)


def freelancer_caller(user_id: str = FREELANCER_ID) -> Caller:
    return Caller(user_id=user_id, role=Role.FREELANCER)


def reviewer_caller(user_id: str = REVIEWER_IDS[0]) -> Caller:
    return Caller(user_id=user_id, role=Role.REVIEWER)


def make_milestone(amount: int = 100, title: str = "Milestone", **fields: Any) -> Milestone:
    """Build a milestone with sensible defaults."""
    return Milestone(title=title, description=f"{title} description", amount=amount, **fields)


def make_job(
    *amounts: int,
    status: JobStatus = JobStatus.DRAFT,
    freelancer_id: str | None = None,
    job_id: str = "job-1",
) -> Job:
    """Build a job with one milestone per amount and consistent totals."""
    timestamp = now_iso()
    milestones = [make_milestone(amount, title=f"M{index}") for index, amount in enumerate(amounts)]
    return Job(
        job_id=job_id,
        client_id=CLIENT_ID,
        freelancer_id=freelancer_id,
        title="Build a website",
        description="Landing page and blog",
        status=status,
        milestones=milestones,
        total_amount=sum(amounts),
        skills=["python"],
        created_at=timestamp,
        updated_at=timestamp,
    )


def make_active_job(*amounts: int, job_id: str = "job-1") -> Job:
    """Build an in-progress job with the default freelancer attached."""
    return make_job(
        *amounts, status=JobStatus.IN_PROGRESS, freelancer_id=FREELANCER_ID, job_id=job_id
    )


def submit_and_assign(
    job: Job, index: int = 0, reviewers: tuple[str, ...] = REVIEWER_IDS
) -> Milestone:
    """Put evidence and reviewers on a milestone directly, bypassing guards."""
    milestone = job.milestones[index]
    milestone.evidence_urls = ["https://example.com/evidence"]
    milestone.reviewers = list(reviewers)
    return milestone


def add_votes(milestone: Milestone, *verdicts: Verdict) -> None:
    """Record verdicts from the first len(verdicts) assigned reviewers."""
    for reviewer_id, verdict in zip(milestone.reviewers, verdicts, strict=False):
        milestone.votes.append(
            Vote(reviewer_id=reviewer_id, verdict=verdict, feedback="", timestamp=now_iso())
        )


def make_identity_mock(users: dict[str, str] | None = None) -> AsyncMock:
    """Identity client mock backed by a user_id -> role mapping."""
    directory = dict(USERS if users is None else users)

    async def get_user(user_id: str) -> dict[str, Any] | None:
        role = directory.get(user_id)
        if role is None:
            return None
        return {"user_id": user_id, "role": role, "wallet_address": f"wallet-{user_id}"}

    async def resolve_role(user_id: str) -> Role | None:
        role = directory.get(user_id)
        return Role(role) if role is not None else None

    async def list_user_ids(role: Role) -> list[str]:
        return [user_id for user_id, user_role in directory.items() if user_role == role.value]

    identity = AsyncMock()
    identity.get_user = AsyncMock(side_effect=get_user)
    identity.resolve_role = AsyncMock(side_effect=resolve_role)
    identity.list_user_ids = AsyncMock(side_effect=list_user_ids)
    identity.close = AsyncMock()
    return identity


def make_ledger_mock(tx_id: str = "tx-1") -> AsyncMock:
    ledger = AsyncMock()
    ledger.release_funds = AsyncMock(return_value=tx_id)
    ledger.submit_work = AsyncMock(return_value={"status": "recorded"})
    ledger.assign_reviewers = AsyncMock(return_value={"status": "recorded"})
    ledger.cast_vote = AsyncMock(return_value={"status": "recorded"})
    ledger.close = AsyncMock()
    return ledger


def make_notifier_mock() -> AsyncMock:
    notifier = AsyncMock()
    notifier.notify = AsyncMock(return_value=None)
    notifier.close = AsyncMock()
    return notifier


def notified(notifier: AsyncMock) -> list[tuple[str, str]]:
    """Return (recipient_id, event_type) for every notify call, in order."""
    return [
        (call.kwargs["recipient_id"], call.kwargs["event_type"].value)
        for call in notifier.notify.await_args_list
    ]


def decode_jws_payload(token: str) -> dict[str, Any]:
    """Decode the payload segment of a JWS compact token without verifying it."""
    payload_segment = token.split(".")[1]
    padded = payload_segment + "=" * (-len(payload_segment) % 4)
    result: dict[str, Any] = json.loads(base64.urlsafe_b64decode(padded))
    return result


def decode_jws_header(token: str) -> dict[str, Any]:
    header_segment = token.split(".")[0]
    padded = header_segment + "=" * (-len(header_segment) % 4)
    result: dict[str, Any] = json.loads(base64.urlsafe_b64decode(padded))
    return result


def config_yaml(db_path: str = "data/milestone-escrow.db", log_directory: str = "data/logs") -> str:
    """Render a complete service configuration."""
    return f"""\
service:
  name: "milestone-escrow"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_directory}"
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  users_path: "/users"
  timeout_seconds: 10
ledger:
  base_url: "http://localhost:8002"
  submit_work_path: "/escrows/{{job_ref}}/milestones/{{milestone_index}}/work"
  assign_reviewers_path: "/escrows/{{job_ref}}/milestones/{{milestone_index}}/reviewers"
  cast_vote_path: "/escrows/{{job_ref}}/milestones/{{milestone_index}}/votes"
  release_funds_path: "/escrows/{{job_ref}}/milestones/{{milestone_index}}/release"
  timeout_seconds: 10
  release_timeout_seconds: 30
notifier:
  base_url: "http://localhost:8005"
  notifications_path: "/notifications"
  timeout_seconds: 5
platform:
  agent_id: "a-platform"
  private_key_path: null
workflow:
  max_conflict_retries: 3
  reviewer_reward_amount: 5
request:
  max_body_size: 1048576
"""
