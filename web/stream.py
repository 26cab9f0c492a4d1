"""
web/stream.py -- Server-sent event routes.

Routes:
  GET  /event?event=<name>                      -- subscribe, text/event-stream
  POST /send?event=&data=&id=&retry=            -- publish (admin only)

The broadcaster lives on app.state.broadcaster and is started in lifespan.

Each yielded chunk becomes its own ASGI http.response.body message, so every
message reaches the client as soon as it is formatted; there is no buffered
writer to flush.

Disconnect handling: Starlette cancels the streaming task when the client
goes away, which raises CancelledError inside event_stream(); its finally
block moves the subscriber to DRAINING and unsubscribes it. The periodic
keep-alive also gives the loop a chance to notice a dead connection.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from core.config import get_settings
from sse.broadcaster import Broadcaster, EventNotRegistered, Message, SubscriberState
from sse.framing import KEEPALIVE, format_message

logger = logging.getLogger("webauth.sse")

router = APIRouter()


async def event_stream(
    broadcaster: Broadcaster,
    event: str,
    subscriber_id: str,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive: float,
) -> AsyncIterator[str]:
    """Yield framed messages for one subscriber until it is removed or the client leaves."""
    sub = broadcaster.subscribe(subscriber_id, event)
    try:
        while True:
            if sub.closed and sub.queue.empty():
                break
            try:
                msg = await asyncio.wait_for(sub.queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                if await is_disconnected():
                    break
                yield KEEPALIVE
                continue
            if msg is None:
                break
            yield format_message(msg)
    finally:
        if not sub.closed:
            sub.state = SubscriberState.DRAINING
        broadcaster.unsubscribe(event, sub)
        logger.info("Subscriber %s done on %r", subscriber_id, event)


@router.get("/event")
async def event_subscribe(request: Request, event: str = "") -> Response:
    broadcaster: Broadcaster = request.app.state.broadcaster
    if not broadcaster.event_exists(event):
        return PlainTextResponse("Not Found", status_code=404)

    settings = get_settings()
    headers = {"Cache-Control": "no-cache", "Connection": "keep-alive"}
    if settings.sse_allow_origin:
        headers["Access-Control-Allow-Origin"] = settings.sse_allow_origin
    stream = event_stream(
        broadcaster,
        event,
        request.state.request_id,
        request.is_disconnected,
        settings.sse_keepalive_seconds,
    )
    return StreamingResponse(stream, media_type="text/event-stream", headers=headers)


@router.post("/send")
async def event_send(
    request: Request,
    event: str = "",
    data: str = "",
    id: str = "",
    retry: str = "",
) -> Response:
    """Publish one message. Parameters come from the query string."""
    if not request.state.user.is_admin:
        return PlainTextResponse("Forbidden", status_code=403)

    try:
        msg = Message(event=event, data=data, id=id, retry=int(retry) if retry else 0)
    except ValueError as exc:
        logger.info("Rejected message: %s", exc)
        return PlainTextResponse("Unprocessable Entity", status_code=422)

    broadcaster: Broadcaster = request.app.state.broadcaster
    try:
        await broadcaster.publish(msg)
    except EventNotRegistered:
        logger.info("Rejected message for unregistered event %r", event)
        return PlainTextResponse("Unprocessable Entity", status_code=422)
    return Response(status_code=204)
