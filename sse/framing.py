"""
sse/framing.py -- text/event-stream wire format.

One message is a block of "field: value" lines followed by a blank line:

    event: event1
    data: first line
    data: second line
    id: 42
    retry: 5000
    <blank>

Empty fields are omitted; an empty event name means the browser's default
"message" event. Lines starting with ":" are comments and are ignored by
EventSource, which makes them usable as keep-alives.
"""

from __future__ import annotations

from sse.broadcaster import Message

KEEPALIVE = ": keep-alive\n\n"


def format_message(msg: Message) -> str:
    lines: list[str] = []
    if msg.event:
        lines.append(f"event: {msg.event}")
    if msg.data:
        data = msg.data.replace("\r\n", "\n").replace("\r", "\n")
        lines.extend(f"data: {line}" for line in data.split("\n"))
    if msg.id:
        lines.append(f"id: {msg.id}")
    if msg.retry > 0:
        lines.append(f"retry: {msg.retry}")
    return "\n".join(lines) + "\n\n"
