"""Async HTTP client for the external settlement ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from milestone_escrow_service.clients.platform_signer import PlatformSigner


class LedgerClient:
    """
    Client for the settlement ledger's milestone escrow record.

    Four operations, all sent as platform-signed JWS tokens:
    1. submit_work, assign_reviewers, cast_vote - best-effort mirrors of
       workflow state onto the ledger's audit record.
    2. release_funds - the only load-bearing call: moves the milestone
       amount to the freelancer and returns the ledger transaction id.
       It carries an idempotency key so a retried release for the same
       milestone is settled at most once by the ledger.
    """

    def __init__(
        self,
        base_url: str,
        submit_work_path: str,
        assign_reviewers_path: str,
        cast_vote_path: str,
        release_funds_path: str,
        timeout_seconds: int,
        platform_signer: PlatformSigner,
    ) -> None:
        self._base_url = base_url
        self._submit_work_path = submit_work_path
        self._assign_reviewers_path = assign_reviewers_path
        self._cast_vote_path = cast_vote_path
        self._release_funds_path = release_funds_path
        self._platform_signer = platform_signer
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def _post_signed(
        self,
        path_template: str,
        job_ref: str,
        milestone_index: int,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Sign payload, POST it, and return the JSON body of a 2xx response.

        Raises:
            ServiceError: LEDGER_UNAVAILABLE (502) on connection/timeout/unexpected status
        """
        logger = get_logger(__name__)
        action = str(payload["action"])
        signed_token = self._platform_signer.sign(payload)
        path = path_template.format(job_ref=job_ref, milestone_index=milestone_index)

        try:
            response = await self._client.post(
                path,
                json={"token": signed_token},
                headers=headers,
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Ledger connection failed",
                extra={
                    "action": action,
                    "error": str(exc),
                    "job_ref": job_ref,
                    "base_url": self._base_url,
                },
            )
            raise ServiceError(
                error="LEDGER_UNAVAILABLE",
                message=f"Cannot connect to settlement ledger for {action}",
                status_code=502,
                details={},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Ledger HTTP error",
                extra={
                    "action": action,
                    "error": str(exc),
                    "job_ref": job_ref,
                    "base_url": self._base_url,
                },
            )
            raise ServiceError(
                error="LEDGER_UNAVAILABLE",
                message=f"Settlement ledger {action} request failed",
                status_code=502,
                details={},
            ) from exc

        if response.status_code in (200, 201):
            body = response.json()
            if isinstance(body, dict):
                return body
            raise ServiceError(
                error="LEDGER_UNAVAILABLE",
                message=f"Settlement ledger returned malformed {action} response",
                status_code=502,
                details={},
            )

        logger.warning(
            "Ledger unexpected status",
            extra={
                "action": action,
                "status_code": response.status_code,
                "job_ref": job_ref,
                "base_url": self._base_url,
            },
        )
        raise ServiceError(
            error="LEDGER_UNAVAILABLE",
            message=f"Settlement ledger returned unexpected status {response.status_code}",
            status_code=502,
            details={"action": action},
        )

    async def submit_work(
        self, job_ref: str, milestone_index: int, evidence_hash: str
    ) -> dict[str, Any]:
        """Record the hash of submitted evidence for a milestone."""
        return await self._post_signed(
            self._submit_work_path,
            job_ref,
            milestone_index,
            {
                "action": "submit_work",
                "job_ref": job_ref,
                "milestone_index": milestone_index,
                "evidence_hash": evidence_hash,
            },
        )

    async def assign_reviewers(
        self, job_ref: str, milestone_index: int, reviewer_addresses: list[str]
    ) -> dict[str, Any]:
        """Register the reviewer addresses allowed to vote on a milestone."""
        return await self._post_signed(
            self._assign_reviewers_path,
            job_ref,
            milestone_index,
            {
                "action": "assign_reviewers",
                "job_ref": job_ref,
                "milestone_index": milestone_index,
                "reviewer_addresses": reviewer_addresses,
            },
        )

    async def cast_vote(
        self, job_ref: str, milestone_index: int, approve: bool, reviewer_address: str
    ) -> dict[str, Any]:
        """Mirror a reviewer's vote onto the ledger record."""
        return await self._post_signed(
            self._cast_vote_path,
            job_ref,
            milestone_index,
            {
                "action": "cast_vote",
                "job_ref": job_ref,
                "milestone_index": milestone_index,
                "approve": approve,
                "reviewer_address": reviewer_address,
            },
        )

    async def release_funds(
        self,
        job_ref: str,
        milestone_index: int,
        amount: int,
        recipient_id: str,
        idempotency_key: str,
    ) -> str:
        """
        Release a milestone's escrowed amount to the recipient.

        Returns:
            The ledger transaction id of the transfer

        Raises:
            ServiceError: LEDGER_UNAVAILABLE (502) on failure or a response without tx_id
        """
        body = await self._post_signed(
            self._release_funds_path,
            job_ref,
            milestone_index,
            {
                "action": "release_funds",
                "job_ref": job_ref,
                "milestone_index": milestone_index,
                "amount": amount,
                "recipient_id": recipient_id,
                "idempotency_key": idempotency_key,
            },
            headers={"Idempotency-Key": idempotency_key},
        )
        tx_id = body.get("tx_id")
        if not isinstance(tx_id, str) or not tx_id:
            raise ServiceError(
                error="LEDGER_UNAVAILABLE",
                message="Settlement ledger response is missing tx_id",
                status_code=502,
                details={},
            )
        return tx_id

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
