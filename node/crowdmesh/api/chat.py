"""Room chat endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from crowdmesh.api.body import error_response, read_json

router = APIRouter(prefix="/api/v1")


@router.get("/chat")
async def chat_history(limit: int | None = None) -> dict:
    from crowdmesh.main import get_processor

    messages = get_processor().chat_messages(limit)
    return {"messages": [m.to_dict() for m in messages]}


@router.post("/chat")
async def send_chat(request: Request):
    """Send a chat line to everyone in the room. Body: ``{"text"}``."""
    from crowdmesh.main import get_processor

    body = await read_json(request)
    if isinstance(body, JSONResponse):
        return body
    text = body.get("text")
    if not isinstance(text, str) or not text.strip():
        return error_response(422, "text is required")

    processor = get_processor()
    if not processor.in_room:
        return error_response(409, "not in a room")
    msg = await processor.send_chat(text)
    if msg is None:
        return error_response(422, "text looks like a protocol message")
    return {"ok": True, "message": msg.to_dict()}
