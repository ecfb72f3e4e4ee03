from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from milestone_escrow_service.clients.identity_client import IdentityClient
from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.services.models import Role


def _make_client(
    mock_response: httpx.Response | None = None,
    side_effect: Exception | None = None,
) -> tuple[IdentityClient, AsyncMock]:
    client = IdentityClient(
        base_url="http://mock-identity:8001",
        users_path="/users/",
        timeout_seconds=5,
    )
    mock_http = AsyncMock(spec=httpx.AsyncClient)
    if side_effect is not None:
        mock_http.get = AsyncMock(side_effect=side_effect)
    else:
        mock_http.get = AsyncMock(return_value=mock_response)
    client._client = mock_http
    return client, mock_http


def _mock_response(status_code: int, json_body: Any) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        json=json_body,
        request=httpx.Request("GET", "http://mock-identity:8001/users"),
    )


@pytest.mark.unit
async def test_get_user_returns_record() -> None:
    client, mock_http = _make_client(
        _mock_response(200, {"user_id": "u-1", "role": "reviewer"})
    )

    user = await client.get_user("u-1")

    assert user == {"user_id": "u-1", "role": "reviewer"}
    mock_http.get.assert_awaited_once_with("/users/u-1")


@pytest.mark.unit
async def test_get_user_404_returns_none() -> None:
    client, _ = _make_client(_mock_response(404, {"error": "NOT_FOUND"}))

    assert await client.get_user("u-missing") is None
    assert await client.resolve_role("u-missing") is None


@pytest.mark.unit
@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ({"user_id": "u-1", "role": "freelancer"}, Role.FREELANCER),
        ({"user_id": "u-1", "role": "wizard"}, None),
        ({"user_id": "u-1"}, None),
    ],
)
async def test_resolve_role(body, expected) -> None:
    client, _ = _make_client(_mock_response(200, body))

    assert await client.resolve_role("u-1") == expected


@pytest.mark.unit
async def test_unexpected_status_is_unavailable() -> None:
    client, _ = _make_client(_mock_response(503, {}))

    with pytest.raises(ServiceError) as exc_info:
        await client.get_user("u-1")

    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"
    assert exc_info.value.status_code == 502


@pytest.mark.unit
@pytest.mark.parametrize(
    "error",
    [httpx.ConnectError("refused"), httpx.ConnectTimeout("slow"), httpx.ReadError("reset")],
)
async def test_transport_errors_are_unavailable(error) -> None:
    client, _ = _make_client(side_effect=error)

    with pytest.raises(ServiceError) as exc_info:
        await client.get_user("u-1")

    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"


@pytest.mark.unit
async def test_list_user_ids_by_role() -> None:
    client, mock_http = _make_client(
        _mock_response(
            200,
            {"users": [{"user_id": "u-1", "role": "freelancer"}, {"name": "no id"}]},
        )
    )

    user_ids = await client.list_user_ids(Role.FREELANCER)

    assert user_ids == ["u-1"]
    mock_http.get.assert_awaited_once_with("/users", params={"role": "freelancer"})
