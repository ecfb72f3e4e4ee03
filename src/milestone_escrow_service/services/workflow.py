"""Job workflow - the externally callable API over the milestone escrow core."""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError

from milestone_escrow_service.clients.notifier_client import NotificationType
from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.logging import get_logger
from milestone_escrow_service.services.job_locks import JobLockRegistry
from milestone_escrow_service.services.job_store import VersionConflictError
from milestone_escrow_service.services.models import (
    Job,
    JobStatus,
    Milestone,
    Role,
    Verdict,
    now_iso,
)
from milestone_escrow_service.services.release_gate import ReleaseGate
from milestone_escrow_service.services.state_machine import MilestoneStateMachine, milestone_at
from milestone_escrow_service.services.voting import QuorumVotingEngine

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from milestone_escrow_service.clients.identity_client import IdentityClient
    from milestone_escrow_service.clients.ledger_client import LedgerClient
    from milestone_escrow_service.clients.notifier_client import NotifierClient
    from milestone_escrow_service.services.job_store import JobStore
    from milestone_escrow_service.services.models import Caller
    from milestone_escrow_service.services.voting import Tally

T = TypeVar("T")


def evidence_hash(urls: list[str]) -> str:
    """Stable digest of an evidence URL list, recorded on the ledger."""
    return hashlib.sha256("\n".join(urls).encode()).hexdigest()


class JobWorkflow:
    """
    Runs every job and milestone operation for already-authenticated callers.

    Every mutating operation holds the job's lock for the whole call, loads
    the job, applies the change to a private copy and saves it with the
    version observed at load time. A VersionConflictError (another process
    wrote the same job) restarts the operation, up to max_conflict_retries
    extra attempts.

    Ledger mirror calls and notifications run after the save and outside
    the lock; their failures are logged and never fail the operation.
    """

    def __init__(
        self,
        store: JobStore,
        identity_client: IdentityClient,
        ledger_client: LedgerClient,
        notifier_client: NotifierClient,
        max_conflict_retries: int,
        reviewer_reward_amount: int,
        release_timeout_seconds: float,
    ) -> None:
        self._store = store
        self._identity_client = identity_client
        self._ledger_client = ledger_client
        self._notifier_client = notifier_client
        self._max_conflict_retries = max_conflict_retries
        self._reviewer_reward_amount = reviewer_reward_amount
        self._release_timeout_seconds = release_timeout_seconds
        self._locks = JobLockRegistry()
        self._state_machine = MilestoneStateMachine()
        self._voting = QuorumVotingEngine()
        self._release_gate = ReleaseGate(ledger_client=ledger_client, voting=self._voting)
        self._logger = get_logger(__name__)

    def set_identity_client(self, identity_client: IdentityClient) -> None:
        self._identity_client = identity_client

    def set_ledger_client(self, ledger_client: LedgerClient) -> None:
        self._ledger_client = ledger_client
        self._release_gate = ReleaseGate(ledger_client=ledger_client, voting=self._voting)

    def set_notifier_client(self, notifier_client: NotifierClient) -> None:
        self._notifier_client = notifier_client

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    @staticmethod
    def _require_role(caller: Caller, role: Role, action: str) -> None:
        if caller.role != role:
            raise ServiceError(
                "FORBIDDEN",
                f"Only users with the {role.value} role can {action}",
                403,
                {"role": caller.role.value},
            )

    @staticmethod
    def _require_client_of(job: Job, caller: Caller) -> None:
        if caller.user_id != job.client_id:
            raise ServiceError("FORBIDDEN", "Only the job's client can do this", 403, {})

    def _load(self, job_id: str) -> Job:
        job = self._store.get_job(job_id)
        if job is None:
            raise ServiceError(
                "NOT_FOUND", f"Job with ID {job_id} not found", 404, {"job_id": job_id}
            )
        return job

    def _conflict_exhausted(
        self, job_id: str, details: dict[str, Any] | None = None
    ) -> ServiceError:
        self._logger.warning(
            "Version conflict retries exhausted",
            extra={"job_id": job_id, "max_conflict_retries": self._max_conflict_retries},
        )
        return ServiceError(
            "VERSION_CONFLICT",
            "The job was modified concurrently; please retry",
            409,
            {"job_id": job_id, **(details or {})},
        )

    async def _mutate(self, job_id: str, apply: Callable[[Job], T]) -> tuple[Job, T]:
        """Serialized load -> apply on a copy -> versioned save, retried on conflict."""
        async with self._locks.hold(job_id):
            for attempt in range(self._max_conflict_retries + 1):
                current = self._load(job_id)
                working = current.model_copy(deep=True)
                result = apply(working)
                try:
                    saved = self._store.save_job(working, expected_version=current.version)
                except VersionConflictError:
                    self._logger.info(
                        "Version conflict, retrying",
                        extra={"job_id": job_id, "attempt": attempt + 1},
                    )
                    continue
                return saved, result
        raise self._conflict_exhausted(job_id)

    async def _best_effort(self, description: str, call: Awaitable[object], **context: Any) -> None:
        """Await a mirror or notification call; log and drop any failure."""
        try:
            await call
        except Exception:
            self._logger.warning(
                "Best-effort call failed",
                exc_info=True,
                extra={"call": description, **context},
            )

    async def _notify(
        self,
        recipient_id: str,
        event_type: NotificationType,
        job: Job,
        milestone_index: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        milestone_title = (
            job.milestones[milestone_index].title if milestone_index is not None else None
        )
        await self._best_effort(
            "Notification",
            self._notifier_client.notify(
                recipient_id=recipient_id,
                event_type=event_type,
                job_id=job.job_id,
                job_title=job.title,
                milestone_index=milestone_index,
                milestone_title=milestone_title,
                details=details,
            ),
            recipient_id=recipient_id,
            event_type=event_type.value,
            job_id=job.job_id,
        )

    async def _wallet_address(self, user_id: str) -> str:
        user = await self._identity_client.get_user(user_id)
        if user is not None and isinstance(user.get("wallet_address"), str):
            return str(user["wallet_address"])
        return user_id

    async def _mirror_vote(self, job_id: str, index: int, approve: bool, reviewer_id: str) -> None:
        address = await self._wallet_address(reviewer_id)
        await self._ledger_client.cast_vote(job_id, index, approve, address)

    def _job_to_response(self, job: Job) -> dict[str, Any]:
        """Convert a Job to its full API projection."""
        milestones = []
        for index, milestone in enumerate(job.milestones):
            milestones.append(
                {
                    "index": index,
                    "title": milestone.title,
                    "description": milestone.description,
                    "amount": milestone.amount,
                    "due_date": milestone.due_date,
                    "stage": milestone.stage,
                    "is_completed": milestone.is_completed,
                    "completed_date": milestone.completed_date,
                    "evidence_urls": list(milestone.evidence_urls),
                    "reviewers": list(milestone.reviewers),
                    "votes": [vote.model_dump(mode="json") for vote in milestone.votes],
                    "tally": self._voting.tally(milestone).to_dict(),
                    "settlement_tx_id": milestone.settlement_tx_id,
                }
            )
        return {
            "job_id": job.job_id,
            "client_id": job.client_id,
            "freelancer_id": job.freelancer_id,
            "title": job.title,
            "description": job.description,
            "status": job.status.value,
            "milestones": milestones,
            "total_amount": job.total_amount,
            "total_paid": job.total_paid,
            "skills": list(job.skills),
            "created_at": job.created_at,
            "updated_at": job.updated_at,
            "version": job.version,
        }

    @staticmethod
    def _job_to_summary(job: Job) -> dict[str, Any]:
        """Convert a Job to a summary dict for list views."""
        return {
            "job_id": job.job_id,
            "client_id": job.client_id,
            "freelancer_id": job.freelancer_id,
            "title": job.title,
            "status": job.status.value,
            "milestone_count": len(job.milestones),
            "total_amount": job.total_amount,
            "total_paid": job.total_paid,
            "skills": list(job.skills),
            "created_at": job.created_at,
        }

    @staticmethod
    def _build_milestone(data: dict[str, Any]) -> Milestone:
        try:
            return Milestone(
                title=data.get("title", ""),
                description=data.get("description", ""),
                amount=data.get("amount", 0),
                due_date=data.get("due_date"),
            )
        except ValidationError as exc:
            raise ServiceError(
                "INVALID",
                "Milestone fields are malformed",
                400,
                {"errors": [str(error["msg"]) for error in exc.errors()]},
            ) from exc

    @staticmethod
    def _parse_status(value: str) -> JobStatus:
        try:
            return JobStatus(value)
        except ValueError as exc:
            raise ServiceError(
                "INVALID",
                f"Unknown job status '{value}'",
                400,
                {"allowed": [status.value for status in JobStatus]},
            ) from exc

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(
        self,
        caller: Caller,
        title: str,
        description: str,
        skills: list[str],
        milestones: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Create a draft job owned by the calling client."""
        self._require_role(caller, Role.CLIENT, "create jobs")
        if not title.strip():
            raise ServiceError("INVALID", "Title must be a non-empty string", 400, {})

        created_at = now_iso()
        job = Job(
            job_id=f"job-{uuid.uuid4()}",
            client_id=caller.user_id,
            title=title,
            description=description,
            skills=list(dict.fromkeys(skills)),
            created_at=created_at,
            updated_at=created_at,
        )
        for data in milestones:
            self._state_machine.add_milestone(job, self._build_milestone(data))

        stored = self._store.insert_job(job)
        self._logger.info(
            "Job created",
            extra={
                "job_id": stored.job_id,
                "client_id": stored.client_id,
                "milestones": len(stored.milestones),
                "total_amount": stored.total_amount,
            },
        )

        try:
            freelancer_ids = await self._identity_client.list_user_ids(Role.FREELANCER)
        except Exception:
            self._logger.warning(
                "Could not list freelancers for job announcement",
                exc_info=True,
                extra={"job_id": stored.job_id},
            )
            freelancer_ids = []
        for freelancer_id in freelancer_ids:
            await self._notify(freelancer_id, NotificationType.JOB_CREATED, stored)

        return self._job_to_response(stored)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return self._job_to_response(self._load(job_id))

    async def list_jobs(
        self,
        status: str | None = None,
        skills: list[str] | None = None,
        client_id: str | None = None,
        freelancer_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """List jobs, newest first."""
        if status is not None:
            status = self._parse_status(status).value
        jobs = self._store.list_jobs(
            status=status,
            client_id=client_id,
            freelancer_id=freelancer_id,
            skills=skills,
        )
        return [self._job_to_summary(job) for job in jobs]

    async def update_job(
        self,
        caller: Caller,
        job_id: str,
        title: str | None = None,
        description: str | None = None,
        skills: list[str] | None = None,
    ) -> dict[str, Any]:
        self._require_role(caller, Role.CLIENT, "update jobs")

        def apply(job: Job) -> None:
            self._require_client_of(job, caller)
            self._state_machine.update_details(job, title, description, skills)

        saved, _ = await self._mutate(job_id, apply)
        return self._job_to_response(saved)

    async def activate(
        self,
        caller: Caller,
        job_id: str,
        freelancer_id: str,
        start: bool = True,
    ) -> dict[str, Any]:
        """
        Attach a freelancer to a draft job.

        With start=True (the default) the job also moves to in_progress.
        """
        self._require_role(caller, Role.CLIENT, "assign freelancers")
        freelancer_role = await self._identity_client.resolve_role(freelancer_id)

        def apply(job: Job) -> None:
            self._require_client_of(job, caller)
            self._state_machine.activate(job, freelancer_id, freelancer_role)
            if start:
                self._state_machine.change_status(job, JobStatus.IN_PROGRESS)

        saved, _ = await self._mutate(job_id, apply)
        self._logger.info(
            "Freelancer assigned",
            extra={"job_id": job_id, "freelancer_id": freelancer_id, "status": saved.status.value},
        )
        await self._notify(freelancer_id, NotificationType.JOB_ASSIGNED, saved)
        return self._job_to_response(saved)

    async def change_status(self, caller: Caller, job_id: str, status: str) -> dict[str, Any]:
        self._require_role(caller, Role.CLIENT, "change job status")
        target = self._parse_status(status)

        def apply(job: Job) -> None:
            self._require_client_of(job, caller)
            self._state_machine.change_status(job, target)

        saved, _ = await self._mutate(job_id, apply)
        self._logger.info("Job status changed", extra={"job_id": job_id, "status": target.value})
        return self._job_to_response(saved)

    async def remove(self, caller: Caller, job_id: str) -> None:
        """Delete a draft job."""
        self._require_role(caller, Role.CLIENT, "delete jobs")
        async with self._locks.hold(job_id):
            for attempt in range(self._max_conflict_retries + 1):
                job = self._load(job_id)
                self._require_client_of(job, caller)
                self._state_machine.ensure_removable(job)
                try:
                    self._store.delete_job(job_id, expected_version=job.version)
                except VersionConflictError:
                    self._logger.info(
                        "Version conflict, retrying",
                        extra={"job_id": job_id, "attempt": attempt + 1},
                    )
                    continue
                self._logger.info("Job removed", extra={"job_id": job_id})
                return
        raise self._conflict_exhausted(job_id)

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    async def add_milestone(
        self, caller: Caller, job_id: str, milestone: dict[str, Any]
    ) -> dict[str, Any]:
        self._require_role(caller, Role.CLIENT, "add milestones")
        new_milestone = self._build_milestone(milestone)

        def apply(job: Job) -> None:
            self._require_client_of(job, caller)
            self._state_machine.add_milestone(job, new_milestone.model_copy(deep=True))

        saved, _ = await self._mutate(job_id, apply)
        return self._job_to_response(saved)

    async def update_milestone(
        self, caller: Caller, job_id: str, index: int, patch: dict[str, Any]
    ) -> dict[str, Any]:
        self._require_role(caller, Role.CLIENT, "update milestones")

        def apply(job: Job) -> None:
            self._require_client_of(job, caller)
            self._state_machine.update_milestone(job, index, patch)

        saved, _ = await self._mutate(job_id, apply)
        return self._job_to_response(saved)

    async def submit_evidence(
        self, caller: Caller, job_id: str, index: int, urls: list[str]
    ) -> dict[str, Any]:
        """Record the freelancer's evidence for a milestone."""
        self._require_role(caller, Role.FREELANCER, "submit work")

        def apply(job: Job) -> None:
            self._state_machine.submit_evidence(job, index, caller.user_id, urls)

        saved, _ = await self._mutate(job_id, apply)
        self._logger.info(
            "Milestone submitted",
            extra={"job_id": job_id, "milestone_index": index, "evidence_count": len(urls)},
        )

        await self._best_effort(
            "Ledger submit_work mirror",
            self._ledger_client.submit_work(job_id, index, evidence_hash(list(urls))),
            job_id=job_id,
            milestone_index=index,
        )
        await self._notify(
            saved.client_id, NotificationType.MILESTONE_SUBMITTED, saved, milestone_index=index
        )
        return self._job_to_response(saved)

    async def assign_reviewers(
        self, caller: Caller, job_id: str, index: int, reviewer_ids: list[str]
    ) -> dict[str, Any]:
        """Assign the one-shot reviewer set of a submitted milestone."""
        self._require_role(caller, Role.CLIENT, "assign reviewers")
        # Ownership and state are settled before reaching the identity provider;
        # apply() repeats the guards under the job lock.
        self._state_machine.check_reviewer_assignment(
            self._load(job_id), index, caller.user_id, reviewer_ids
        )

        unique_ids = list(dict.fromkeys(reviewer_ids))
        users = await asyncio.gather(
            *(self._identity_client.get_user(reviewer_id) for reviewer_id in unique_ids)
        )
        reviewer_roles: dict[str, Role | None] = {}
        addresses: dict[str, str] = {}
        for reviewer_id, user in zip(unique_ids, users, strict=True):
            role: Role | None = None
            if user is not None:
                try:
                    role = Role(str(user.get("role", "")))
                except ValueError:
                    role = None
                wallet = user.get("wallet_address")
                addresses[reviewer_id] = str(wallet) if isinstance(wallet, str) else reviewer_id
            reviewer_roles[reviewer_id] = role

        def apply(job: Job) -> None:
            self._state_machine.assign_reviewers(
                job, index, caller.user_id, reviewer_ids, reviewer_roles
            )

        saved, _ = await self._mutate(job_id, apply)
        self._logger.info(
            "Reviewers assigned",
            extra={"job_id": job_id, "milestone_index": index, "reviewers": reviewer_ids},
        )

        await self._best_effort(
            "Ledger assign_reviewers mirror",
            self._ledger_client.assign_reviewers(
                job_id,
                index,
                [addresses.get(reviewer_id, reviewer_id) for reviewer_id in reviewer_ids],
            ),
            job_id=job_id,
            milestone_index=index,
        )
        for reviewer_id in reviewer_ids:
            await self._notify(
                reviewer_id, NotificationType.REVIEWER_ASSIGNED, saved, milestone_index=index
            )
        return self._job_to_response(saved)

    async def cast_vote(
        self,
        caller: Caller,
        job_id: str,
        index: int,
        verdict: str,
        feedback: str = "",
    ) -> dict[str, Any]:
        """Record or replace the calling reviewer's verdict."""
        self._require_role(caller, Role.REVIEWER, "vote on milestones")
        try:
            parsed_verdict = Verdict(verdict)
        except ValueError as exc:
            raise ServiceError(
                "INVALID", "Verdict must be 'approve' or 'reject'", 400, {}
            ) from exc

        def apply(job: Job) -> Tally:
            return self._voting.cast_vote(job, index, caller.user_id, parsed_verdict, feedback)

        saved, tally = await self._mutate(job_id, apply)
        self._logger.info(
            "Vote recorded",
            extra={
                "job_id": job_id,
                "milestone_index": index,
                "reviewer_id": caller.user_id,
                "verdict": parsed_verdict.value,
                "approvals": tally.approvals,
                "threshold": tally.threshold,
                "decided": tally.decided,
            },
        )

        await self._best_effort(
            "Ledger cast_vote mirror",
            self._mirror_vote(job_id, index, parsed_verdict == Verdict.APPROVE, caller.user_id),
            job_id=job_id,
            milestone_index=index,
        )

        # Informational only; release recomputes the tally itself.
        if tally.all_voted:
            event_type = (
                NotificationType.MILESTONE_APPROVED
                if tally.approved
                else NotificationType.MILESTONE_REJECTED
            )
            recipients = [saved.freelancer_id, saved.client_id]
            for recipient_id in recipients:
                if recipient_id is not None:
                    await self._notify(recipient_id, event_type, saved, milestone_index=index)

        return self._job_to_response(saved)

    async def tally(self, job_id: str, index: int) -> dict[str, Any]:
        job = self._load(job_id)
        return self._voting.tally(milestone_at(job, index)).to_dict()

    async def release(
        self,
        caller: Caller,
        job_id: str,
        index: int,
        timeout_seconds: float | None = None,
    ) -> dict[str, Any]:
        """
        Release a milestone's funds to the freelancer, exactly once.

        The ledger is called at most once per request. If persisting the
        settlement then conflicts with another writer, only the recording
        is retried, reusing the transaction id already obtained.
        """
        self._require_role(caller, Role.CLIENT, "release funds")
        timeout = timeout_seconds if timeout_seconds is not None else self._release_timeout_seconds

        tx_id: str | None = None
        saved: Job | None = None
        async with self._locks.hold(job_id):
            for attempt in range(self._max_conflict_retries + 1):
                current = self._load(job_id)
                working = current.model_copy(deep=True)

                if tx_id is None:
                    tx_id = await self._release_gate.release(
                        working, index, caller.user_id, timeout
                    )
                else:
                    milestone = milestone_at(working, index)
                    if milestone.is_completed:
                        if milestone.settlement_tx_id == tx_id:
                            saved = current
                            break
                        raise ServiceError(
                            "ALREADY_RELEASED",
                            "Funds for this milestone were already released",
                            409,
                            {"job_id": job_id, "milestone_index": index},
                        )
                    self._release_gate.apply(working, index, tx_id)

                try:
                    saved = self._store.save_job(working, expected_version=current.version)
                except VersionConflictError:
                    self._logger.info(
                        "Version conflict while recording settlement, retrying",
                        extra={"job_id": job_id, "attempt": attempt + 1, "tx_id": tx_id},
                    )
                    continue
                break

        if saved is None:
            self._logger.error(
                "Settlement confirmed by ledger but not recorded",
                extra={"job_id": job_id, "milestone_index": index, "tx_id": tx_id},
            )
            raise self._conflict_exhausted(job_id, {"settlement_tx_id": tx_id})

        milestone = saved.milestones[index]
        self._logger.info(
            "Milestone released",
            extra={
                "job_id": job_id,
                "milestone_index": index,
                "amount": milestone.amount,
                "tx_id": tx_id,
                "job_status": saved.status.value,
            },
        )

        if saved.freelancer_id is not None:
            await self._notify(
                saved.freelancer_id,
                NotificationType.PAYMENT_RELEASED,
                saved,
                milestone_index=index,
                details={"amount": milestone.amount, "tx_id": tx_id},
            )
        for reviewer_id in milestone.reviewers:
            await self._notify(
                reviewer_id,
                NotificationType.REVIEWER_REWARDED,
                saved,
                milestone_index=index,
                details={"amount": self._reviewer_reward_amount, "tx_id": tx_id},
            )
        return self._job_to_response(saved)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Job counts for the health endpoint."""
        by_status = {status.value: 0 for status in JobStatus}
        by_status.update(self._store.count_jobs_by_status())
        return {"total_jobs": self._store.count_jobs(), "jobs_by_status": by_status}

    def close(self) -> None:
        self._store.close()
