from __future__ import annotations

from dataclasses import dataclass

from .models import Message


@dataclass
class RoomEvent:
    """Base class for events pushed to every socket in a room."""


@dataclass
class StreamStarted(RoomEvent):
    stream_id: str
    chat_id: str | None
    sender: str


@dataclass
class StreamChunk(RoomEvent):
    stream_id: str
    chat_id: str | None
    text: str


@dataclass
class StreamEnded(RoomEvent):
    stream_id: str
    chat_id: str | None


@dataclass
class MessageCreated(RoomEvent):
    """A message has been persisted and should be appended client-side."""
    message: Message


@dataclass
class AIErrored(RoomEvent):
    chat_id: str | None
    message: str


@dataclass
class RoomClosed(RoomEvent):
    message: str
