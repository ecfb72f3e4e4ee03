"""Job lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.routers.validation import (
    extract_caller,
    extract_object_list,
    extract_string,
    extract_string_list,
    get_workflow,
    read_json_body,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /jobs - create job (MUST be before GET /jobs/{job_id})
# ---------------------------------------------------------------------------


@router.post("/jobs", status_code=201)
async def create_job(request: Request) -> JSONResponse:
    """Create a draft job, optionally with its initial milestones."""
    caller = extract_caller(request)
    data = await read_json_body(request)

    title = extract_string(data, "title")
    description = extract_string(data, "description", required=False)
    skills = extract_string_list(data, "skills", required=False)
    milestones = extract_object_list(data, "milestones")

    result = await get_workflow().create_job(
        caller,
        title=title or "",
        description=description or "",
        skills=skills or [],
        milestones=milestones,
    )
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /jobs - list jobs
# ---------------------------------------------------------------------------


@router.get("/jobs")
async def list_jobs(request: Request) -> dict[str, Any]:
    """List jobs with optional filters; skills is comma separated."""
    status = request.query_params.get("status")
    client_id = request.query_params.get("client_id")
    freelancer_id = request.query_params.get("freelancer_id")
    skills_raw = request.query_params.get("skills")

    skills: list[str] | None = None
    if skills_raw is not None:
        skills = [skill.strip() for skill in skills_raw.split(",") if skill.strip()]

    jobs = await get_workflow().list_jobs(
        status=status,
        skills=skills,
        client_id=client_id,
        freelancer_id=freelancer_id,
    )
    return {"jobs": jobs}


# ---------------------------------------------------------------------------
# Single job
# ---------------------------------------------------------------------------


@router.get("/jobs/{job_id}")
async def get_job(job_id: str) -> dict[str, Any]:
    return await get_workflow().get_job(job_id)


@router.patch("/jobs/{job_id}")
async def update_job(job_id: str, request: Request) -> JSONResponse:
    """Update a job's title, description or skills."""
    caller = extract_caller(request)
    data = await read_json_body(request)

    result = await get_workflow().update_job(
        caller,
        job_id,
        title=extract_string(data, "title", required=False),
        description=extract_string(data, "description", required=False),
        skills=extract_string_list(data, "skills", required=False),
    )
    return JSONResponse(status_code=200, content=result)


@router.delete("/jobs/{job_id}", status_code=204)
async def delete_job(job_id: str, request: Request) -> Response:
    """Delete a draft job."""
    caller = extract_caller(request)
    await get_workflow().remove(caller, job_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Freelancer and status
# ---------------------------------------------------------------------------


@router.post("/jobs/{job_id}/freelancer")
async def assign_freelancer(job_id: str, request: Request) -> JSONResponse:
    """Attach a freelancer; the job starts unless "start" is false."""
    caller = extract_caller(request)
    data = await read_json_body(request)

    freelancer_id = extract_string(data, "freelancer_id")
    start = data.get("start", True)
    if not isinstance(start, bool):
        raise ServiceError("INVALID", "Field 'start' must be a boolean", 400, {})

    result = await get_workflow().activate(caller, job_id, freelancer_id or "", start=start)
    return JSONResponse(status_code=200, content=result)


@router.post("/jobs/{job_id}/status")
async def change_status(job_id: str, request: Request) -> JSONResponse:
    caller = extract_caller(request)
    data = await read_json_body(request)
    status = extract_string(data, "status")

    result = await get_workflow().change_status(caller, job_id, status or "")
    return JSONResponse(status_code=200, content=result)
