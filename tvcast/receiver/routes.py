"""
Cast receiver HTTP routes.

Provides the command endpoints phones push casts to:
- GET  /cast/info: device description
- POST /cast/play: generic {url, title, ...}
- POST /cast/bilibili: app content {aid, cid, ...}
- POST /cast/control: {action, ...params}
- GET  /cast/status: current receiving state

Bodies are parsed by hand; an unparsable or incomplete body is a plain 400
and never reaches the service.
"""

from __future__ import annotations

import json
import logging
import math
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import PlainTextResponse

if TYPE_CHECKING:
    from tvcast.receiver.service import CastReceiverService

logger = logging.getLogger(__name__)


def _bad_request() -> PlainTextResponse:
    return PlainTextResponse("Bad Request", status_code=400)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name}")


async def _json_object(request: Request) -> dict[str, Any] | None:
    """
    Parse the request body as a JSON object, or None.

    Non-finite numbers (``NaN``, ``Infinity`` or an overflowing literal such
    as ``1e400``) make the whole body invalid.
    """
    body = await request.body()
    try:
        data = json.loads(body, parse_constant=_reject_constant)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    if any(isinstance(v, float) and not math.isfinite(v) for v in data.values()):
        return None
    return data


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def register_cast_routes(app: FastAPI, service: CastReceiverService) -> None:
    """
    Register the cast receiver routes with the FastAPI app.

    Args:
        app: FastAPI application instance
        service: The receiver the routes report to
    """
    router = APIRouter(prefix="/cast", tags=["cast"])

    @router.get("/info")
    async def cast_info() -> dict[str, Any]:
        """Device description for the phone's picker."""
        return service.info()

    @router.post("/play")
    async def cast_play(request: Request) -> PlainTextResponse:
        """Play a generic video URL."""
        data = await _json_object(request)
        if data is None:
            return _bad_request()

        url, title = data.get("url"), data.get("title")
        if not isinstance(url, str) or not isinstance(title, str):
            return _bad_request()

        await service.handle_video_url(url, title, data)
        return PlainTextResponse("OK")

    @router.post("/bilibili")
    async def cast_bilibili(request: Request) -> PlainTextResponse:
        """Play app content by aid/cid."""
        data = await _json_object(request)
        if data is None:
            return _bad_request()

        aid, cid = data.get("aid"), data.get("cid")
        if not _is_int(aid) or not _is_int(cid):
            return _bad_request()

        await service.handle_content_id(aid, cid, data)
        return PlainTextResponse("OK")

    @router.post("/control")
    async def cast_control(request: Request) -> PlainTextResponse:
        """Transport command; unknown actions are accepted and ignored."""
        data = await _json_object(request)
        if data is None:
            return _bad_request()

        action = data.get("action")
        if not isinstance(action, str):
            return _bad_request()

        await service.handle_control(action, data)
        return PlainTextResponse("OK")

    @router.get("/status")
    async def cast_status() -> dict[str, Any]:
        """Current receiving state."""
        return service.status()

    app.include_router(router)
