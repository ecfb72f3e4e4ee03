"""Unit tests for ReleaseGate guards, settlement and recording."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from freezegun import freeze_time

from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.services.models import JobStatus, Verdict
from milestone_escrow_service.services.release_gate import ReleaseGate, settlement_key
from milestone_escrow_service.services.voting import QuorumVotingEngine
from tests.helpers import (
    CLIENT_ID,
    FREELANCER_ID,
    add_votes,
    make_active_job,
    make_ledger_mock,
    submit_and_assign,
)


def _gate(ledger: AsyncMock | None = None) -> tuple[ReleaseGate, AsyncMock]:
    ledger_mock = ledger if ledger is not None else make_ledger_mock("tx-abc")
    return ReleaseGate(ledger_client=ledger_mock, voting=QuorumVotingEngine()), ledger_mock


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_check_non_client_is_forbidden() -> None:
    gate, _ = _gate()

    with pytest.raises(ServiceError) as exc_info:
        gate.check(make_active_job(100), 0, "u-other-client")

    assert exc_info.value.error == "FORBIDDEN"


@pytest.mark.unit
def test_check_requires_in_progress() -> None:
    gate, _ = _gate()
    job = make_active_job(100)
    job.status = JobStatus.DRAFT

    with pytest.raises(ServiceError) as exc_info:
        gate.check(job, 0, CLIENT_ID)

    assert exc_info.value.error == "INVALID_STATE"


@pytest.mark.unit
def test_check_bad_index() -> None:
    gate, _ = _gate()

    with pytest.raises(ServiceError) as exc_info:
        gate.check(make_active_job(100), 1, CLIENT_ID)

    assert exc_info.value.error == "NOT_FOUND"


@pytest.mark.unit
def test_check_completed_milestone_reports_already_released() -> None:
    gate, _ = _gate()
    job = make_active_job(100, 50)
    job.milestones[0].is_completed = True
    job.milestones[0].settlement_tx_id = "tx-old"

    with pytest.raises(ServiceError) as exc_info:
        gate.check(job, 0, CLIENT_ID)

    assert exc_info.value.error == "ALREADY_RELEASED"
    assert exc_info.value.details["settlement_tx_id"] == "tx-old"


@pytest.mark.unit
def test_check_completed_job_still_reports_already_released() -> None:
    gate, _ = _gate()
    job = make_active_job(100)
    job.milestones[0].is_completed = True
    job.status = JobStatus.COMPLETED

    with pytest.raises(ServiceError) as exc_info:
        gate.check(job, 0, CLIENT_ID)

    assert exc_info.value.error == "ALREADY_RELEASED"


@pytest.mark.unit
def test_check_rejected_quorum() -> None:
    gate, _ = _gate()
    job = make_active_job(100)
    add_votes(submit_and_assign(job), Verdict.REJECT, Verdict.REJECT)

    with pytest.raises(ServiceError) as exc_info:
        gate.check(job, 0, CLIENT_ID)

    assert exc_info.value.error == "QUORUM_NOT_MET"
    assert exc_info.value.status_code == 409
    assert exc_info.value.details["rejections"] == 2


@pytest.mark.unit
def test_check_pending_quorum() -> None:
    gate, _ = _gate()
    job = make_active_job(100)
    add_votes(submit_and_assign(job), Verdict.APPROVE)

    with pytest.raises(ServiceError) as exc_info:
        gate.check(job, 0, CLIENT_ID)

    assert exc_info.value.error == "QUORUM_NOT_MET"


@pytest.mark.unit
def test_check_early_majority_passes() -> None:
    gate, _ = _gate()
    job = make_active_job(100)
    add_votes(submit_and_assign(job), Verdict.APPROVE, Verdict.APPROVE)

    milestone = gate.check(job, 0, CLIENT_ID)

    assert milestone is job.milestones[0]


@pytest.mark.unit
def test_check_without_reviewers_self_certifies() -> None:
    gate, _ = _gate()

    gate.check(make_active_job(100), 0, CLIENT_ID)


# ---------------------------------------------------------------------------
# settle / apply / release
# ---------------------------------------------------------------------------


@pytest.mark.unit
async def test_settle_calls_ledger_with_idempotency_key() -> None:
    gate, ledger = _gate()
    job = make_active_job(100, 40)

    tx_id = await gate.settle(job, 1, timeout_seconds=5)

    assert tx_id == "tx-abc"
    ledger.release_funds.assert_awaited_once_with(
        job_ref="job-1",
        milestone_index=1,
        amount=40,
        recipient_id=FREELANCER_ID,
        idempotency_key=settlement_key("job-1", 1),
    )
    assert settlement_key("job-1", 1) == "job-1:1"


@pytest.mark.unit
async def test_settle_ledger_error_propagates_unchanged() -> None:
    expected = ServiceError("LEDGER_UNAVAILABLE", "down", 502, {})
    ledger = make_ledger_mock()
    ledger.release_funds = AsyncMock(side_effect=expected)
    gate, _ = _gate(ledger)

    with pytest.raises(ServiceError) as exc_info:
        await gate.settle(make_active_job(100), 0, timeout_seconds=5)

    assert exc_info.value is expected


@pytest.mark.unit
async def test_settle_unexpected_error_becomes_ledger_unavailable() -> None:
    ledger = make_ledger_mock()
    ledger.release_funds = AsyncMock(side_effect=ConnectionError("reset"))
    gate, _ = _gate(ledger)

    with pytest.raises(ServiceError) as exc_info:
        await gate.settle(make_active_job(100), 0, timeout_seconds=5)

    assert exc_info.value.error == "LEDGER_UNAVAILABLE"
    assert exc_info.value.status_code == 502


@pytest.mark.unit
async def test_settle_timeout_becomes_ledger_unavailable() -> None:
    async def slow_release(**_kwargs: object) -> str:
        await asyncio.sleep(1)
        return "tx-late"

    ledger = make_ledger_mock()
    ledger.release_funds = AsyncMock(side_effect=slow_release)
    gate, _ = _gate(ledger)

    with pytest.raises(ServiceError) as exc_info:
        await gate.settle(make_active_job(100), 0, timeout_seconds=0.01)

    assert exc_info.value.error == "LEDGER_UNAVAILABLE"
    assert exc_info.value.details["timeout_seconds"] == 0.01


@pytest.mark.unit
async def test_settle_empty_tx_id_is_rejected() -> None:
    gate, _ = _gate(make_ledger_mock(""))

    with pytest.raises(ServiceError) as exc_info:
        await gate.settle(make_active_job(100), 0, timeout_seconds=5)

    assert exc_info.value.error == "LEDGER_UNAVAILABLE"


@pytest.mark.unit
def test_apply_marks_milestone_and_keeps_paid_invariant() -> None:
    job = make_active_job(100, 40)

    ReleaseGate.apply(job, 0, "tx-1")

    milestone = job.milestones[0]
    assert milestone.is_completed is True
    assert milestone.completed_date is not None
    assert milestone.settlement_tx_id == "tx-1"
    assert job.total_paid == 100
    assert job.total_paid == sum(m.amount for m in job.milestones if m.is_completed)
    assert job.status == JobStatus.IN_PROGRESS


@pytest.mark.unit
@freeze_time("2026-03-01 12:30:00")
def test_apply_stamps_completion_date() -> None:
    job = make_active_job(100)

    ReleaseGate.apply(job, 0, "tx-1")

    assert job.milestones[0].completed_date == "2026-03-01T12:30:00.000000Z"


@pytest.mark.unit
def test_apply_last_milestone_completes_job() -> None:
    job = make_active_job(100, 40)
    ReleaseGate.apply(job, 0, "tx-1")

    ReleaseGate.apply(job, 1, "tx-2")

    assert job.status == JobStatus.COMPLETED
    assert job.total_paid == job.total_amount == 140


@pytest.mark.unit
async def test_release_returns_tx_and_records_settlement() -> None:
    gate, ledger = _gate()
    job = make_active_job(100, 40)

    tx_id = await gate.release(job, 0, CLIENT_ID, timeout_seconds=5)

    assert tx_id == "tx-abc"
    assert job.milestones[0].settlement_tx_id == "tx-abc"
    assert job.total_paid == 100
    assert job.status == JobStatus.IN_PROGRESS
    ledger.release_funds.assert_awaited_once()


@pytest.mark.unit
async def test_release_failure_leaves_job_untouched() -> None:
    ledger = make_ledger_mock()
    ledger.release_funds = AsyncMock(
        side_effect=ServiceError("LEDGER_UNAVAILABLE", "down", 502, {})
    )
    gate, _ = _gate(ledger)
    job = make_active_job(100)
    before = job.model_dump()

    with pytest.raises(ServiceError):
        await gate.release(job, 0, CLIENT_ID, timeout_seconds=5)

    assert job.model_dump() == before


@pytest.mark.unit
async def test_release_guard_failure_never_calls_ledger() -> None:
    gate, ledger = _gate()
    job = make_active_job(100)
    add_votes(submit_and_assign(job), Verdict.REJECT, Verdict.REJECT)

    with pytest.raises(ServiceError) as exc_info:
        await gate.release(job, 0, CLIENT_ID, timeout_seconds=5)

    assert exc_info.value.error == "QUORUM_NOT_MET"
    assert exc_info.value.details["decided"] is True
    ledger.release_funds.assert_not_awaited()
