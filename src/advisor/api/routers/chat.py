from __future__ import annotations

import logging
from typing import Any, Dict, Iterator

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import StreamingResponse

from ...domain.errors import AdvisorError, ConfigError, TransportError
from ...domain.models import ChatProxyRequest
from ...services.bot_client import BotApiClient, ChatStream, build_chat_payload
from ...services.bot_registry import BotRegistry
from ...services.generation import get_task_runner
from ..errors import to_http_exception


LOG = logging.getLogger("advisor.upstream")

router = APIRouter(tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_bot_client() -> BotApiClient:
    return BotApiClient()


def _relay(stream: ChatStream) -> Iterator[bytes]:
    # Upstream bytes go out verbatim; the client decodes frames itself.
    try:
        for chunk in stream:
            yield chunk
    except TransportError as exc:
        LOG.warning("relay_interrupted", extra={"err": str(exc)})
    finally:
        stream.close()


@router.post("/chat")
def chat_proxy(req: ChatProxyRequest):
    try:
        client = get_bot_client()
    except ConfigError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    try:
        bot = BotRegistry().resolve(bot_id=req.bot_id, alias=req.bot_alias)
    except ConfigError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    extra = [m.model_dump() for m in req.additional_messages] if req.additional_messages else None
    payload: Dict[str, Any] = build_chat_payload(
        bot.bot_id,
        user_id=req.user_id,
        message=req.message,
        additional_messages=extra,
        stream=req.stream is not False,
    )
    if not payload.get("additional_messages"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="message or additional_messages required")

    if req.stream is not False:
        try:
            stream = client.open_chat_stream(payload)
        except AdvisorError as exc:
            raise to_http_exception(exc)
        return StreamingResponse(_relay(stream), media_type="text/event-stream", headers=SSE_HEADERS)

    try:
        outcome = get_task_runner(client).run(payload)
    except AdvisorError as exc:
        raise to_http_exception(exc)
    return {"message": outcome.answer}
