from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
from typing import TypeAlias


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class UserMessage:
    text: str
    sender_id: str | None = None
    sender_name: str = ""
    chat_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)


@dataclass
class AssistantMessage:
    text: str
    model: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    chat_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)


@dataclass
class PromptMarker:
    """The shared artifact as it was submitted on the final turn."""
    text: str
    chat_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)


@dataclass
class SystemNotice:
    text: str
    chat_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)


Message: TypeAlias = UserMessage | AssistantMessage | PromptMarker | SystemNotice

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_PROMPT = "prompt"
ROLE_SYSTEM = "system"


def message_role(msg: Message) -> str:
    match msg:
        case UserMessage():
            return ROLE_USER
        case AssistantMessage():
            return ROLE_ASSISTANT
        case PromptMarker():
            return ROLE_PROMPT
        case SystemNotice():
            return ROLE_SYSTEM
    raise TypeError(f"Not a message: {msg!r}")


def message_from_row(row: dict) -> Message:
    """Build the variant matching a stored message row's role."""
    common = {"id": row["id"], "chat_id": row.get("chat_id"), "created_at": row["created_at"]}
    match row["role"]:
        case "user":
            return UserMessage(
                text=row["text"],
                sender_id=row.get("sender_id"),
                sender_name=row.get("sender_name") or "",
                **common,
            )
        case "assistant":
            return AssistantMessage(
                text=row["text"],
                model=row.get("model"),
                input_tokens=row.get("input_tokens"),
                output_tokens=row.get("output_tokens"),
                **common,
            )
        case "prompt":
            return PromptMarker(text=row["text"], **common)
        case "system":
            return SystemNotice(text=row["text"], **common)
        case other:
            raise ValueError(f"Unknown message role: {other}")


def message_to_dict(msg: Message) -> dict:
    data = {
        "id": msg.id,
        "chat_id": msg.chat_id,
        "role": message_role(msg),
        "text": msg.text,
        "created_at": msg.created_at,
    }
    match msg:
        case UserMessage(sender_id=sender_id, sender_name=sender_name):
            data["sender_id"] = sender_id
            data["sender"] = sender_name
        case AssistantMessage(model=model, input_tokens=inp, output_tokens=out):
            data["model"] = model
            data["input_tokens"] = inp
            data["output_tokens"] = out
    return data
