"""Shared request validation helpers for job and milestone routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.core.state import get_app_state
from milestone_escrow_service.services.models import Caller, Role

if TYPE_CHECKING:
    from fastapi import Request

    from milestone_escrow_service.services.workflow import JobWorkflow

CALLER_ID_HEADER = "X-Caller-Id"
CALLER_ROLE_HEADER = "X-Caller-Role"


def get_workflow() -> JobWorkflow:
    return get_app_state().require_workflow()


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


async def read_json_body(request: Request) -> dict[str, Any]:
    body = await request.body()
    return {} if body == b"" else parse_json_body(body)


def extract_caller(request: Request) -> Caller:
    """
    Build the caller identity from the headers set by the authenticating proxy.

    Authentication happens upstream; this only checks the headers are present
    and carry a known role.
    """
    user_id = request.headers.get(CALLER_ID_HEADER)
    role = request.headers.get(CALLER_ROLE_HEADER)
    if not user_id or not role:
        raise ServiceError(
            "FORBIDDEN",
            f"Missing {CALLER_ID_HEADER} or {CALLER_ROLE_HEADER} header",
            403,
            {},
        )
    try:
        parsed_role = Role(role)
    except ValueError as exc:
        raise ServiceError(
            "FORBIDDEN",
            f"Unknown caller role '{role}'",
            403,
            {},
        ) from exc
    return Caller(user_id=user_id, role=parsed_role)


def extract_string(data: dict[str, Any], field_name: str, *, required: bool = True) -> str | None:
    """Extract a string field; missing optional fields return None."""
    if field_name not in data or data[field_name] is None:
        if required:
            raise ServiceError("INVALID", f"Missing required field: {field_name}", 400, {})
        return None

    value = data[field_name]
    if not isinstance(value, str):
        raise ServiceError("INVALID", f"Field '{field_name}' must be a string", 400, {})
    return value


def extract_string_list(
    data: dict[str, Any], field_name: str, *, required: bool = True
) -> list[str] | None:
    """Extract a list of strings; missing optional fields return None."""
    if field_name not in data or data[field_name] is None:
        if required:
            raise ServiceError("INVALID", f"Missing required field: {field_name}", 400, {})
        return None

    value = data[field_name]
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise ServiceError(
            "INVALID", f"Field '{field_name}' must be a list of strings", 400, {}
        )
    return value


def extract_object_list(data: dict[str, Any], field_name: str) -> list[dict[str, Any]]:
    """Extract an optional list of JSON objects, defaulting to empty."""
    value = data.get(field_name)
    if value is None:
        return []
    if not isinstance(value, list) or any(not isinstance(item, dict) for item in value):
        raise ServiceError(
            "INVALID", f"Field '{field_name}' must be a list of objects", 400, {}
        )
    return value
