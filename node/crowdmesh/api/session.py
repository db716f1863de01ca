"""Session endpoints: host an event, discover hosts, join, leave, close.

This is the thin FastAPI adapter over EventProcessor's role actions.
Event codes are passed through unmodified; the host compares them exactly.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from crowdmesh.api.body import error_response, optional_str, read_json
from crowdmesh.core.join import JoinPhase
from crowdmesh.core.processor import ROLE_HOST, ROLE_JOIN
from crowdmesh.transport.base import TransportError

router = APIRouter(prefix="/api/v1/session")


def _event_code(body: dict) -> str | None:
    code = body.get("event_code")
    if isinstance(code, str) and code != "":
        return code
    return None


@router.get("")
async def session() -> dict:
    from crowdmesh.main import get_processor

    return get_processor().session_snapshot()


@router.post("/host")
async def host(request: Request):
    """Start hosting an event. Body: ``{"event_code", "name"?, "event_name"?}``."""
    from crowdmesh.main import get_processor

    body = await read_json(request)
    if isinstance(body, JSONResponse):
        return body
    code = _event_code(body)
    if code is None:
        return error_response(422, "event_code is required")

    processor = get_processor()
    try:
        peer_id = await processor.host_event(
            code,
            name=optional_str(body, "name"),
            event_name=optional_str(body, "event_name"),
        )
    except TransportError as exc:
        return error_response(503, f"cannot advertise: {exc}")
    return {"ok": True, "role": ROLE_HOST, "peer_id": peer_id}


@router.post("/discover")
async def discover(request: Request):
    """Enter the join role and start discovering hosts. Body: ``{"name"?}``."""
    from crowdmesh.main import get_processor

    body = await read_json(request, allow_empty=True)
    if isinstance(body, JSONResponse):
        return body

    processor = get_processor()
    try:
        peer_id = await processor.start_discovery(name=optional_str(body, "name"))
    except TransportError as exc:
        return error_response(503, f"cannot discover: {exc}")
    return {"ok": True, "role": ROLE_JOIN, "peer_id": peer_id}


@router.get("/hosts")
async def hosts():
    from crowdmesh.main import get_processor

    processor = get_processor()
    if processor.role != ROLE_JOIN:
        return error_response(409, "not discovering")
    return {
        "hosts": [
            {"peer_id": peer_id, "name": name}
            for peer_id, name in sorted(processor.discovered_hosts().items())
        ],
    }


@router.post("/join")
async def join(request: Request):
    """Request to join a discovered host. Body: ``{"host_id", "event_code"}``."""
    from crowdmesh.main import get_processor

    body = await read_json(request)
    if isinstance(body, JSONResponse):
        return body
    host_id = optional_str(body, "host_id")
    code = _event_code(body)
    if host_id is None or code is None:
        return error_response(422, "host_id and event_code are required")

    processor = get_processor()
    session = processor.join_session
    if processor.role != ROLE_JOIN or session is None:
        return error_response(409, "not discovering")
    if session.phase is not JoinPhase.IDLE:
        return error_response(409, f"already {session.phase.value}")

    if not await processor.join_host(host_id, code):
        return error_response(502, "connection request failed")
    return {"ok": True, "phase": session.phase.value, "host_id": host_id}


@router.post("/leave")
async def leave():
    from crowdmesh.main import get_processor

    if not await get_processor().leave_room():
        return error_response(409, "not connected to a host")
    return {"ok": True}


@router.post("/close")
async def close():
    from crowdmesh.main import get_processor

    if not await get_processor().close_room():
        return error_response(409, "not hosting an open event")
    return {"ok": True}


@router.post("/end")
async def end():
    """Leave whatever role the node is in and go back to idle."""
    from crowdmesh.main import get_processor

    await get_processor().end_session()
    return {"ok": True}
