"""Milestone workflow endpoints: evidence, reviewers, votes and release."""

from __future__ import annotations

import math
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.routers.validation import (
    extract_caller,
    extract_string,
    extract_string_list,
    get_workflow,
    read_json_body,
)

router = APIRouter()


@router.post("/jobs/{job_id}/milestones", status_code=201)
async def add_milestone(job_id: str, request: Request) -> JSONResponse:
    """Append a milestone to a draft job."""
    caller = extract_caller(request)
    data = await read_json_body(request)

    result = await get_workflow().add_milestone(caller, job_id, data)
    return JSONResponse(status_code=201, content=result)


@router.patch("/jobs/{job_id}/milestones/{index}")
async def update_milestone(job_id: str, index: int, request: Request) -> JSONResponse:
    caller = extract_caller(request)
    data = await read_json_body(request)

    result = await get_workflow().update_milestone(caller, job_id, index, data)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Evidence and review
# ---------------------------------------------------------------------------


@router.post("/jobs/{job_id}/milestones/{index}/evidence")
async def submit_evidence(job_id: str, index: int, request: Request) -> JSONResponse:
    """Submit evidence URLs for a milestone."""
    caller = extract_caller(request)
    data = await read_json_body(request)
    urls = extract_string_list(data, "evidence_urls")

    result = await get_workflow().submit_evidence(caller, job_id, index, urls or [])
    return JSONResponse(status_code=200, content=result)


@router.post("/jobs/{job_id}/milestones/{index}/reviewers")
async def assign_reviewers(job_id: str, index: int, request: Request) -> JSONResponse:
    """Assign the reviewer set of a submitted milestone."""
    caller = extract_caller(request)
    data = await read_json_body(request)
    reviewer_ids = extract_string_list(data, "reviewer_ids")

    result = await get_workflow().assign_reviewers(caller, job_id, index, reviewer_ids or [])
    return JSONResponse(status_code=200, content=result)


@router.post("/jobs/{job_id}/milestones/{index}/votes")
async def cast_vote(job_id: str, index: int, request: Request) -> JSONResponse:
    """Record or replace the calling reviewer's verdict."""
    caller = extract_caller(request)
    data = await read_json_body(request)
    verdict = extract_string(data, "verdict")
    feedback = extract_string(data, "feedback", required=False)

    result = await get_workflow().cast_vote(
        caller, job_id, index, verdict or "", feedback=feedback or ""
    )
    return JSONResponse(status_code=200, content=result)


@router.get("/jobs/{job_id}/milestones/{index}/tally")
async def get_tally(job_id: str, index: int) -> dict[str, Any]:
    return await get_workflow().tally(job_id, index)


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


@router.post("/jobs/{job_id}/milestones/{index}/release")
async def release(job_id: str, index: int, request: Request) -> JSONResponse:
    """Release the milestone's funds to the freelancer."""
    caller = extract_caller(request)

    timeout_seconds: float | None = None
    timeout_raw = request.query_params.get("timeout_seconds")
    if timeout_raw is not None:
        try:
            timeout_seconds = float(timeout_raw)
        except ValueError as exc:
            raise ServiceError("INVALID", "timeout_seconds must be a number", 400, {}) from exc
        if not math.isfinite(timeout_seconds) or timeout_seconds <= 0:
            raise ServiceError(
                "INVALID", "timeout_seconds must be a positive finite number", 400, {}
            )

    result = await get_workflow().release(caller, job_id, index, timeout_seconds=timeout_seconds)
    return JSONResponse(status_code=200, content=result)
