from __future__ import annotations


class RoomError(Exception):
    """Base class for errors reported back to the requesting client."""

    default_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(RoomError):
    default_message = "Invalid input"


class RoomNotFound(RoomError):
    default_message = "Room not found or is closed."


class NameTaken(RoomError):
    default_message = "Name is already taken in this room."


class RoomFull(RoomError):
    default_message = "Room is full."


class ChatNotFound(RoomError):
    default_message = "Chat not found."


class ChatLimitReached(RoomError):
    default_message = "This chat has reached its message limit."


class NotInRoom(RoomError):
    default_message = "Join a room first."
