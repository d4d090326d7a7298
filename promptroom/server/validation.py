from __future__ import annotations

import re
from typing import Any

# Maximum lengths per field kind; anything unlisted falls back to "general".
CHARACTER_LIMITS: dict[str, int] = {
    "userName": 50,
    "roomCode": 10,
    "messageText": 2000,
    "chatId": 100,
    "roomDBId": 100,
    "general": 1000,
}

# Inbound frame fields mapped to the limit they are checked against.
FIELD_TYPES: dict[str, str] = {
    "user_name": "userName",
    "host_name": "userName",
    "room_code": "roomCode",
    "text": "messageText",
    "updated_prompt": "messageText",
    "chat_id": "chatId",
    "room_id": "roomDBId",
}

_NAME_RE = re.compile(r"^[\w][\w .'\-]*$")
_MAX_IMAGES = 4

MAX_WS_MESSAGE_SIZE = 1 * 1024 * 1024  # 1 MB

CHAT_MSG_TYPES = frozenset({
    "create_room", "join_room", "submit_message", "request_chat_messages",
})
TURN_MSG_TYPES = frozenset({
    "create_room", "join_room", "submit_contribution",
})

REQUIRED_FIELDS: dict[str, list[str]] = {
    "join_room": ["room_code"],
    "submit_message": ["chat_id", "text"],
    "request_chat_messages": ["chat_id"],
    "submit_contribution": ["updated_prompt"],
}


def validate_input(value: Any, kind: str = "general") -> str | None:
    """Check one scalar field against its length limit. Returns an error or None."""
    if value is None:
        return None
    limit = CHARACTER_LIMITS.get(kind, CHARACTER_LIMITS["general"])
    if len(str(value)) > limit:
        return f"Input exceeds maximum character limit of {limit} characters"
    return None


def validate_object(data: Any, field_types: dict[str, str] | None = None) -> str | None:
    """Check every scalar field of an object; nested lists and objects are skipped."""
    if not isinstance(data, dict):
        return "Invalid input: Expected an object"
    field_types = field_types or {}
    for field, value in data.items():
        if isinstance(value, (list, dict)):
            continue
        reason = validate_input(value, field_types.get(field, "general"))
        if reason:
            return f"Field '{field}' is invalid: {reason}"
    return None


def validate_name(name: Any) -> str | None:
    if not isinstance(name, str) or not name.strip():
        return "Name is required"
    name = name.strip()
    reason = validate_input(name, "userName")
    if reason:
        return f"Name is invalid: {reason}"
    if not _NAME_RE.match(name):
        return "Name may only contain letters, numbers, spaces and . ' - _"
    return None


def validate_room_code(code: Any) -> str | None:
    if not isinstance(code, str) or not code.strip():
        return "Room code is required"
    reason = validate_input(code.strip(), "roomCode")
    if reason:
        return f"Room code is invalid: {reason}"
    if not code.strip().isalnum():
        return "Room code is invalid"
    return None


def validate_images(images: Any) -> str | None:
    if images is None:
        return None
    if not isinstance(images, list):
        return "'images' must be an array"
    if len(images) > _MAX_IMAGES:
        return f"At most {_MAX_IMAGES} images per message"
    for i, image in enumerate(images):
        if not isinstance(image, dict):
            return f"Invalid images[{i}]: expected an object"
        if not isinstance(image.get("data"), str) or not image["data"]:
            return f"Invalid images[{i}]: 'data' must be a base64 string"
        media_type = image.get("media_type", "image/png")
        if not isinstance(media_type, str) or not media_type.startswith("image/"):
            return f"Invalid images[{i}]: unsupported media type"
    return None


def validate_ws_message(msg: Any, valid_types: frozenset[str]) -> str | None:
    """Validate a WebSocket frame's shape and field lengths. Returns error string or None."""
    if not isinstance(msg, dict):
        return "Message must be a JSON object"
    msg_type = msg.get("type")
    if not isinstance(msg_type, str):
        return "Missing or invalid 'type' field"
    if msg_type not in valid_types:
        return f"Unknown message type: {msg_type}"
    for field in REQUIRED_FIELDS.get(msg_type, []):
        if field not in msg or msg[field] is None:
            return f"Missing required field '{field}' for {msg_type}"
    return validate_object(msg, FIELD_TYPES)
