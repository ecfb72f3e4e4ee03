"""Process-wide runtime state shared by the lifespan and the routers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from milestone_escrow_service.clients.identity_client import IdentityClient
    from milestone_escrow_service.clients.ledger_client import LedgerClient
    from milestone_escrow_service.clients.notifier_client import NotifierClient
    from milestone_escrow_service.clients.platform_signer import PlatformSigner
    from milestone_escrow_service.services.workflow import JobWorkflow


@dataclass
class AppState:
    """Workflow, outbound clients and start time of the running service."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    workflow: JobWorkflow | None = None
    identity_client: IdentityClient | None = None
    ledger_client: LedgerClient | None = None
    notifier_client: NotifierClient | None = None
    platform_signer: PlatformSigner | None = None

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")

    def require_workflow(self) -> JobWorkflow:
        if self.workflow is None:
            msg = "JobWorkflow not initialized"
            raise RuntimeError(msg)
        return self.workflow

    async def aclose(self) -> None:
        """Close the job store and every outbound HTTP client that was opened."""
        if self.workflow is not None:
            self.workflow.close()
        for client in (self.identity_client, self.ledger_client, self.notifier_client):
            if client is not None:
                await client.close()


@dataclass
class _StateHolder:
    current: AppState | None = None


_holder = _StateHolder()


def get_app_state() -> AppState:
    """Return the running service's state; fails before startup."""
    if _holder.current is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return _holder.current


def init_app_state() -> AppState:
    _holder.current = AppState()
    return _holder.current


def reset_app_state() -> None:
    """Forget the current state (tests)."""
    _holder.current = None
