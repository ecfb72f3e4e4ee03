"""Router test fixtures with mocked Identity, Ledger and Notifier services."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from milestone_escrow_service.app import create_app
from milestone_escrow_service.config import clear_settings_cache
from milestone_escrow_service.core.lifespan import lifespan
from milestone_escrow_service.core.state import get_app_state, reset_app_state
from tests.helpers import (
    CLIENT_ID,
    FREELANCER_ID,
    REVIEWER_IDS,
    config_yaml,
    make_identity_mock,
    make_ledger_mock,
    make_notifier_mock,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


# ---------------------------------------------------------------------------
# Caller headers
# ---------------------------------------------------------------------------
def caller_headers(user_id: str, role: str) -> dict[str, str]:
    """Identity headers as set by the authenticating proxy."""
    return {"X-Caller-Id": user_id, "X-Caller-Role": role}


CLIENT_HEADERS = caller_headers(CLIENT_ID, "client")
FREELANCER_HEADERS = caller_headers(FREELANCER_ID, "freelancer")


def reviewer_headers(index: int = 0) -> dict[str, str]:
    return caller_headers(REVIEWER_IDS[index], "reviewer")


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------
async def create_job(
    client: AsyncClient,
    amounts: tuple[int, ...] = (100,),
    title: str = "Build a website",
) -> dict[str, Any]:
    """Create a draft job through the API and return its body."""
    response = await client.post(
        "/jobs",
        json={
            "title": title,
            "description": "Landing page and blog",
            "skills": ["python"],
            "milestones": [
                {"title": f"M{index}", "amount": amount} for index, amount in enumerate(amounts)
            ],
        },
        headers=CLIENT_HEADERS,
    )
    assert response.status_code == 201, response.text
    return response.json()


async def create_started_job(
    client: AsyncClient, amounts: tuple[int, ...] = (100,)
) -> dict[str, Any]:
    """Create a job and move it to in_progress with the default freelancer."""
    job = await create_job(client, amounts)
    response = await client.post(
        f"/jobs/{job['job_id']}/freelancer",
        json={"freelancer_id": FREELANCER_ID},
        headers=CLIENT_HEADERS,
    )
    assert response.status_code == 200, response.text
    return response.json()


async def put_under_review(
    client: AsyncClient, job_id: str, index: int = 0, reviewers: int = 3
) -> None:
    """Submit evidence and assign reviewers for a milestone."""
    response = await client.post(
        f"/jobs/{job_id}/milestones/{index}/evidence",
        json={"evidence_urls": ["https://example.com/pr/1"]},
        headers=FREELANCER_HEADERS,
    )
    assert response.status_code == 200, response.text
    response = await client.post(
        f"/jobs/{job_id}/milestones/{index}/reviewers",
        json={"reviewer_ids": list(REVIEWER_IDS[:reviewers])},
        headers=CLIENT_HEADERS,
    )
    assert response.status_code == 200, response.text


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        config_yaml(db_path=str(tmp_path / "test.db"), log_directory=str(tmp_path / "logs"))
    )

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        # Replace external service clients with mocks
        state = get_app_state()
        mock_identity = make_identity_mock()
        mock_ledger = make_ledger_mock()
        mock_notifier = make_notifier_mock()
        state.identity_client = mock_identity
        state.ledger_client = mock_ledger
        state.notifier_client = mock_notifier

        # Propagate mocks to the workflow
        if state.workflow is not None:
            state.workflow.set_identity_client(mock_identity)
            state.workflow.set_ledger_client(mock_ledger)
            state.workflow.set_notifier_client(mock_notifier)

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
def ledger(app: Any) -> Any:
    """The mocked ledger client wired into the running app."""
    return get_app_state().ledger_client


@pytest.fixture
def notifier(app: Any) -> Any:
    """The mocked notifier client wired into the running app."""
    return get_app_state().notifier_client
