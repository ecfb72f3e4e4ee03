"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from milestone_escrow_service.clients.identity_client import IdentityClient
from milestone_escrow_service.clients.ledger_client import LedgerClient
from milestone_escrow_service.clients.notifier_client import NotifierClient
from milestone_escrow_service.clients.platform_signer import PlatformSigner, ensure_private_key
from milestone_escrow_service.config import get_settings
from milestone_escrow_service.core.state import init_app_state
from milestone_escrow_service.logging import get_logger, setup_logging
from milestone_escrow_service.services.job_store import JobStore
from milestone_escrow_service.services.workflow import JobWorkflow

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    db_path = settings.database.path
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    # Fall back to a key next to the database when none is configured
    private_key_path = settings.platform.private_key_path
    if not private_key_path:
        private_key_path = str(Path(db_path).parent / "platform.pem")
    ensure_private_key(private_key_path)

    platform_signer = PlatformSigner(
        platform_agent_id=settings.platform.agent_id,
        private_key_path=private_key_path,
    )
    state.platform_signer = platform_signer

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        users_path=settings.identity.users_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client

    ledger_client = LedgerClient(
        base_url=settings.ledger.base_url,
        submit_work_path=settings.ledger.submit_work_path,
        assign_reviewers_path=settings.ledger.assign_reviewers_path,
        cast_vote_path=settings.ledger.cast_vote_path,
        release_funds_path=settings.ledger.release_funds_path,
        timeout_seconds=settings.ledger.timeout_seconds,
        platform_signer=platform_signer,
    )
    state.ledger_client = ledger_client

    notifier_client = NotifierClient(
        base_url=settings.notifier.base_url,
        notifications_path=settings.notifier.notifications_path,
        timeout_seconds=settings.notifier.timeout_seconds,
    )
    state.notifier_client = notifier_client

    workflow = JobWorkflow(
        store=JobStore(db_path=db_path),
        identity_client=identity_client,
        ledger_client=ledger_client,
        notifier_client=notifier_client,
        max_conflict_retries=settings.workflow.max_conflict_retries,
        reviewer_reward_amount=settings.workflow.reviewer_reward_amount,
        release_timeout_seconds=settings.ledger.release_timeout_seconds,
    )
    state.workflow = workflow

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": db_path,
            "identity_base_url": settings.identity.base_url,
            "ledger_base_url": settings.ledger.base_url,
            "notifier_base_url": settings.notifier.base_url,
            "platform_agent_id": settings.platform.agent_id,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})
    await state.aclose()
