"""The single authority allowed to move a milestone's funds."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.logging import get_logger
from milestone_escrow_service.services.models import JobStatus, now_iso
from milestone_escrow_service.services.state_machine import milestone_at, require_status

if TYPE_CHECKING:
    from milestone_escrow_service.clients.ledger_client import LedgerClient
    from milestone_escrow_service.services.models import Job, Milestone
    from milestone_escrow_service.services.voting import QuorumVotingEngine


def settlement_key(job_id: str, index: int) -> str:
    """Idempotency key identifying one milestone's settlement on the ledger."""
    return f"{job_id}:{index}"


class ReleaseGate:
    """
    Guards, settles and records the release of a milestone's funds.

    The gate works on a job copy handed in by the workflow. It never
    persists anything itself: if the ledger call fails or times out the
    copy is discarded and the stored job is untouched.
    """

    def __init__(self, ledger_client: LedgerClient, voting: QuorumVotingEngine) -> None:
        self._ledger_client = ledger_client
        self._voting = voting
        self._logger = get_logger(__name__)

    def check(self, job: Job, index: int, client_id: str) -> Milestone:
        """
        Verify that the milestone may be released now.

        Error precedence:
        1. FORBIDDEN - caller is not the job's client
        2. ALREADY_RELEASED - milestone already completed, even when that
           release completed the whole job
        3. INVALID_STATE - job not in progress
        4. NOT_FOUND - bad milestone index
        5. QUORUM_NOT_MET - reviewers assigned and tally not approved
        """
        if client_id != job.client_id:
            raise ServiceError(
                "FORBIDDEN",
                "Only the client can release funds for this job",
                403,
                {},
            )
        if 0 <= index < len(job.milestones) and job.milestones[index].is_completed:
            raise ServiceError(
                "ALREADY_RELEASED",
                "Funds for this milestone were already released",
                409,
                {
                    "job_id": job.job_id,
                    "milestone_index": index,
                    "settlement_tx_id": job.milestones[index].settlement_tx_id,
                },
            )
        require_status(job, JobStatus.IN_PROGRESS, "release funds")
        milestone = milestone_at(job, index)

        # Without reviewers the client self-certifies the work.
        if milestone.reviewers:
            tally = self._voting.tally(milestone)
            if not tally.approved:
                raise ServiceError(
                    "QUORUM_NOT_MET",
                    "Not enough reviewers have approved this milestone",
                    409,
                    tally.to_dict(),
                )
        return milestone

    async def settle(self, job: Job, index: int, timeout_seconds: float) -> str:
        """
        Ask the ledger to pay the milestone amount to the freelancer.

        Raises ServiceError("LEDGER_UNAVAILABLE", ..., 502) on failure or timeout.
        """
        milestone = milestone_at(job, index)
        if job.freelancer_id is None:
            msg = f"Job {job.job_id} is in progress without a freelancer"
            raise RuntimeError(msg)

        try:
            tx_id = await asyncio.wait_for(
                self._ledger_client.release_funds(
                    job_ref=job.job_id,
                    milestone_index=index,
                    amount=milestone.amount,
                    recipient_id=job.freelancer_id,
                    idempotency_key=settlement_key(job.job_id, index),
                ),
                timeout=timeout_seconds,
            )
        except ServiceError:
            raise
        except TimeoutError as exc:
            self._logger.warning(
                "Ledger release timed out",
                extra={
                    "job_id": job.job_id,
                    "milestone_index": index,
                    "timeout_seconds": timeout_seconds,
                },
            )
            raise ServiceError(
                "LEDGER_UNAVAILABLE",
                "Settlement ledger did not confirm the release in time",
                502,
                {"timeout_seconds": timeout_seconds},
            ) from exc
        except Exception as exc:
            raise ServiceError(
                "LEDGER_UNAVAILABLE",
                "Settlement ledger release failed",
                502,
                {},
            ) from exc

        if not isinstance(tx_id, str) or not tx_id:
            raise ServiceError(
                "LEDGER_UNAVAILABLE",
                "Settlement ledger returned no transaction id",
                502,
                {},
            )
        return tx_id

    @staticmethod
    def apply(job: Job, index: int, tx_id: str) -> None:
        """Record a confirmed settlement on the job copy."""
        milestone = milestone_at(job, index)
        milestone.is_completed = True
        milestone.completed_date = now_iso()
        milestone.settlement_tx_id = tx_id
        job.total_paid += milestone.amount
        if job.all_milestones_completed():
            job.status = JobStatus.COMPLETED

    async def release(self, job: Job, index: int, client_id: str, timeout_seconds: float) -> str:
        """Check, settle and apply in one step. Returns the settlement transaction id."""
        self.check(job, index, client_id)
        tx_id = await self.settle(job, index, timeout_seconds)
        self.apply(job, index, tx_id)
        return tx_id
