"""ASGI middleware guarding JSON request bodies."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from fastapi.responses import JSONResponse
from starlette.datastructures import Headers

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send


_JOB = r"/jobs/[^/]+"
_MILESTONE = _JOB + r"/milestones/[^/]+"

# Endpoints that read a JSON object from the request body, keyed by method.
_JSON_ROUTES: dict[str, re.Pattern[str]] = {
    "POST": re.compile(
        rf"^(?:/jobs|{_JOB}/(?:freelancer|status|milestones)"
        rf"|{_MILESTONE}/(?:evidence|reviewers|votes))$"
    ),
    "PATCH": re.compile(rf"^(?:{_JOB}|{_MILESTONE})$"),
}


def expects_json_body(method: str, path: str) -> bool:
    pattern = _JSON_ROUTES.get(method)
    return pattern is not None and pattern.match(path) is not None


async def _reject(
    scope: Scope, receive: Receive, send: Send, status_code: int, error: str, message: str
) -> None:
    response = JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": {}},
    )
    await response(scope, receive, send)


class RequestValidationMiddleware:
    """
    Enforce Content-Type and body size on the JSON endpoints.

    A declared Content-Length above the limit is refused before anything is
    read; otherwise the body is buffered up to the limit and replayed to the
    application. Bodyless endpoints (release, delete, reads) pass through
    untouched, as do unknown paths so the router can answer 404/405.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not expects_json_body(scope["method"], scope["path"]):
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        if not headers.get("content-type", "").lower().startswith("application/json"):
            await _reject(
                scope,
                receive,
                send,
                415,
                "UNSUPPORTED_MEDIA_TYPE",
                "Content-Type must be application/json",
            )
            return

        declared = headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_body_size:
            await self._too_large(scope, receive, send)
            return

        body = await self._read_body(receive)
        if body is None:
            await self._too_large(scope, receive, send)
            return

        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if replayed:
                return {"type": "http.disconnect"}
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}

        await self.app(scope, replay, send)

    async def _read_body(self, receive: Receive) -> bytes | None:
        """Buffer the request body, or return None once it exceeds the limit."""
        chunks: list[bytes] = []
        size = 0
        more_body = True
        while more_body:
            message: dict[str, Any] = dict(await receive())
            chunk: bytes = message.get("body", b"")
            size += len(chunk)
            if size > self.max_body_size:
                return None
            chunks.append(chunk)
            more_body = bool(message.get("more_body", False))
        return b"".join(chunks)

    @staticmethod
    async def _too_large(scope: Scope, receive: Receive, send: Send) -> None:
        await _reject(
            scope,
            receive,
            send,
            413,
            "PAYLOAD_TOO_LARGE",
            "Request body exceeds maximum allowed size",
        )
