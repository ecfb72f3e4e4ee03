"""Async HTTP client for the notification delivery service."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

import httpx

from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.logging import get_logger


class NotificationType(StrEnum):
    JOB_CREATED = "job_created"
    JOB_ASSIGNED = "job_assigned"
    MILESTONE_SUBMITTED = "milestone_submitted"
    REVIEWER_ASSIGNED = "reviewer_assigned"
    MILESTONE_APPROVED = "milestone_approved"
    MILESTONE_REJECTED = "milestone_rejected"
    PAYMENT_RELEASED = "payment_released"
    REVIEWER_REWARDED = "reviewer_rewarded"


def render_notification(
    event_type: NotificationType,
    job_title: str,
    milestone_title: str | None,
    details: dict[str, Any],
) -> tuple[str, str]:
    """Return the (title, message) shown to the recipient for an event."""
    if event_type == NotificationType.JOB_CREATED:
        return "New Job Posted", f'A new job "{job_title}" has been posted'
    if event_type == NotificationType.JOB_ASSIGNED:
        return "Job Accepted", f'You have been assigned to the job "{job_title}"'
    if event_type == NotificationType.MILESTONE_SUBMITTED:
        return (
            "Milestone Submitted",
            f'A milestone "{milestone_title}" has been submitted for job "{job_title}"',
        )
    if event_type == NotificationType.REVIEWER_ASSIGNED:
        return (
            "Review Requested",
            f'Your review is requested for milestone "{milestone_title}" in job "{job_title}"',
        )
    if event_type == NotificationType.MILESTONE_APPROVED:
        return (
            "Milestone Approved",
            f'The milestone "{milestone_title}" in job "{job_title}" has been approved',
        )
    if event_type == NotificationType.MILESTONE_REJECTED:
        return (
            "Milestone Rejected",
            f'The milestone "{milestone_title}" in job "{job_title}" has been rejected',
        )
    if event_type == NotificationType.PAYMENT_RELEASED:
        return (
            "Payment Released",
            f'Payment for milestone "{milestone_title}" in job "{job_title}" has been released',
        )
    return (
        "Reviewer Reward",
        f"You have received a reward of {details.get('amount')} tokens for your review",
    )


class NotifierClient:
    """
    Client for delivering typed events to individual recipients.

    Delivery is fire-and-forget from the workflow's point of view; the
    workflow logs and drops any error raised here.
    """

    def __init__(
        self,
        base_url: str,
        notifications_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._notifications_path = notifications_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def notify(
        self,
        recipient_id: str,
        event_type: NotificationType,
        job_id: str,
        job_title: str,
        milestone_index: int | None = None,
        milestone_title: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Deliver one event to one recipient.

        Raises:
            ServiceError: NOTIFIER_UNAVAILABLE (502) on connection/timeout/unexpected status
        """
        extra_details = details if details is not None else {}
        title, message = render_notification(event_type, job_title, milestone_title, extra_details)
        payload = {
            "recipient_id": recipient_id,
            "type": event_type.value,
            "title": title,
            "message": message,
            "job_id": job_id,
            "job_title": job_title,
            "milestone_index": milestone_index,
            "milestone_title": milestone_title,
            "details": extra_details,
        }

        try:
            response = await self._client.post(self._notifications_path, json=payload)
        except httpx.HTTPError as exc:
            get_logger(__name__).warning(
                "Notifier connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="NOTIFIER_UNAVAILABLE",
                message="Cannot reach notification service",
                status_code=502,
                details={},
            ) from exc

        if response.status_code not in (200, 201, 202):
            raise ServiceError(
                error="NOTIFIER_UNAVAILABLE",
                message=f"Notification service returned unexpected status {response.status_code}",
                status_code=502,
                details={},
            )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
