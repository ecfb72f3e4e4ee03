"""Async HTTP client for the Identity provider."""

from __future__ import annotations

from typing import Any

import httpx

from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.logging import get_logger
from milestone_escrow_service.services.models import Role


class IdentityClient:
    """
    Client for user and role lookups.

    Role checks are read-only queries; the workflow never caches their
    results across calls.
    """

    def __init__(
        self,
        base_url: str,
        users_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._users_path = users_path.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    def _unavailable(self, exc: Exception, message: str) -> ServiceError:
        get_logger(__name__).warning(
            "Identity provider request failed",
            extra={"error": str(exc), "base_url": self._base_url},
        )
        return ServiceError(
            error="IDENTITY_SERVICE_UNAVAILABLE",
            message=message,
            status_code=502,
            details={},
        )

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        """
        Fetch a user record.

        Returns:
            dict with at least user_id and role, or None if the user does not exist

        Raises:
            ServiceError: IDENTITY_SERVICE_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        try:
            response = await self._client.get(f"{self._users_path}/{user_id}")
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise self._unavailable(exc, "Cannot connect to Identity provider") from exc
        except httpx.HTTPError as exc:
            raise self._unavailable(exc, "Identity provider request failed") from exc

        if response.status_code == 404:
            return None

        if response.status_code != 200:
            get_logger(__name__).warning(
                "Identity provider unexpected status",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Identity provider returned unexpected status",
                status_code=502,
                details={},
            )

        result: dict[str, Any] = response.json()
        return result

    async def resolve_role(self, user_id: str) -> Role | None:
        """Return the user's role, or None if the user does not exist or has an unknown role."""
        user = await self.get_user(user_id)
        if user is None:
            return None
        try:
            return Role(str(user.get("role", "")))
        except ValueError:
            return None

    async def list_user_ids(self, role: Role) -> list[str]:
        """List the ids of every user holding the given role."""
        try:
            response = await self._client.get(self._users_path, params={"role": role.value})
        except httpx.HTTPError as exc:
            raise self._unavailable(exc, "Identity provider request failed") from exc

        if response.status_code != 200:
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Identity provider returned unexpected status",
                status_code=502,
                details={},
            )

        body = response.json()
        users = body.get("users", []) if isinstance(body, dict) else []
        return [
            str(user["user_id"]) for user in users if isinstance(user, dict) and "user_id" in user
        ]

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
