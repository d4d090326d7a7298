from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum

from .models import Message, PromptMarker, message_to_dict

HOST_NAME = "Host"


class TurnOutcome(Enum):
    REJECTED = "rejected"
    ADVANCED = "advanced"
    FINAL = "final"


@dataclass
class Participant:
    connection_id: str
    name: str


@dataclass
class TurnRoom:
    """Round-robin editing of one shared prompt.

    States: awaiting the participant at ``current_index``, or streaming
    (``is_loading``) after the last participant submitted.
    """
    id: str
    host_id: str
    participants: list[Participant] = field(default_factory=list)
    current_index: int = 0
    prompt_in_progress: str = ""
    messages: list[Message] = field(default_factory=list)
    is_loading: bool = False

    def has(self, connection_id: str) -> bool:
        return any(p.connection_id == connection_id for p in self.participants)

    def add_participant(self, connection_id: str) -> Participant:
        for p in self.participants:
            if p.connection_id == connection_id:
                return p
        if connection_id == self.host_id:
            name = HOST_NAME
        else:
            name = f"Guest-{len(self.participants)}"
        participant = Participant(connection_id=connection_id, name=name)
        self.participants.append(participant)
        return participant

    def current(self) -> Participant | None:
        if not self.participants:
            return None
        return self.participants[self.current_index]

    def contribute(self, connection_id: str, text: str) -> TurnOutcome:
        current = self.current()
        if self.is_loading or current is None or current.connection_id != connection_id:
            return TurnOutcome.REJECTED
        self.prompt_in_progress = text
        if self.current_index + 1 >= len(self.participants):
            self.messages.append(PromptMarker(text=text))
            self.is_loading = True
            return TurnOutcome.FINAL
        self.current_index = (self.current_index + 1) % len(self.participants)
        return TurnOutcome.ADVANCED

    def finish_round(self, reply: Message | None) -> None:
        if reply is not None:
            self.messages.append(reply)
        self.prompt_in_progress = ""
        self.current_index = 0
        self.is_loading = False

    def remove_participant(self, connection_id: str) -> bool:
        """Drop a participant and keep the pointer on the same logical next actor.

        Removed before the pointer: shift back by one. Removed at the pointer:
        the index stays and now names the next participant, wrapping to 0.
        """
        for removed, p in enumerate(self.participants):
            if p.connection_id == connection_id:
                break
        else:
            return False
        del self.participants[removed]
        if not self.participants:
            self.current_index = 0
        elif removed < self.current_index:
            self.current_index -= 1
        else:
            self.current_index %= len(self.participants)
        return True

    def to_state(self) -> dict:
        return {
            "room_id": self.id,
            "users": [{"id": p.connection_id, "name": p.name} for p in self.participants],
            "current_user_index": self.current_index,
            "prompt_in_progress": self.prompt_in_progress,
            "messages": [message_to_dict(m) for m in self.messages],
            "is_loading": self.is_loading,
        }


class RoomDirectory:
    """In-memory turn rooms for one server instance."""

    def __init__(self) -> None:
        self._rooms: dict[str, TurnRoom] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def create(self, host_connection_id: str) -> TurnRoom:
        room_id = uuid.uuid4().hex[:8].upper()
        while room_id in self._rooms:
            room_id = uuid.uuid4().hex[:8].upper()
        room = TurnRoom(id=room_id, host_id=host_connection_id)
        self._rooms[room_id] = room
        return room

    def get(self, room_id: str) -> TurnRoom | None:
        return self._rooms.get(room_id.strip().upper())

    def remove(self, room_id: str) -> TurnRoom | None:
        return self._rooms.pop(room_id, None)

    def rooms_for(self, connection_id: str) -> list[TurnRoom]:
        return [
            room for room in self._rooms.values()
            if room.host_id == connection_id or room.has(connection_id)
        ]
