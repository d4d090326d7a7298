from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..chat.events import (
    AIErrored,
    MessageCreated,
    RoomClosed,
    RoomEvent,
    StreamChunk,
    StreamEnded,
    StreamStarted,
)
from ..chat.models import message_to_dict


def _ts() -> str:
    return datetime.now(timezone.utc).isoformat()


def event_to_dict(event: RoomEvent) -> dict:
    match event:
        case StreamStarted(stream_id=sid, chat_id=chat_id, sender=sender):
            return {"type": "ai_stream_start", "message_id": sid, "chat_id": chat_id, "sender": sender}
        case StreamChunk(stream_id=sid, chat_id=chat_id, text=text):
            return {"type": "ai_stream_chunk", "message_id": sid, "chat_id": chat_id, "text": text}
        case StreamEnded(stream_id=sid, chat_id=chat_id):
            return {"type": "ai_stream_end", "message_id": sid, "chat_id": chat_id}
        case MessageCreated(message=msg):
            return {"type": "new_message", "chat_id": msg.chat_id, "message": message_to_dict(msg)}
        case AIErrored(chat_id=chat_id, message=msg):
            return {"type": "ai_error", "chat_id": chat_id, "message": msg, "created_at": _ts()}
        case RoomClosed(message=msg):
            return {"type": "room_closed", "message": msg}
        case _:
            return {"type": "unknown"}


def ack_ok(request_id: Any, **fields: Any) -> dict:
    return {"type": "ack", "request_id": request_id, "status": "ok", **fields}


def ack_error(request_id: Any, message: str) -> dict:
    return {"type": "ack", "request_id": request_id, "status": "error", "message": message}
