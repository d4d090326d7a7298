from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TypeVar

from fastapi import WebSocket

from ..chat.errors import NameTaken, RoomFull, RoomNotFound, ValidationError
from ..chat.turns import TurnRoom
from ..responders import prompts
from .runner import RoomRunner
from .settings import SettingsStore
from .store import RoomStore
from .validation import validate_name, validate_room_code

log = logging.getLogger("promptroom")
_T = TypeVar("_T")


class RoomLifecycle:
    """Binds sockets to users and rooms: create, join, rejoin and disconnect."""

    def __init__(self, store: RoomStore, settings: SettingsStore, runner: RoomRunner) -> None:
        self.store = store
        self.settings = settings
        self.runner = runner
        self._join_locks: dict[str, asyncio.Lock] = {}

    async def _store_call(self, fn: Callable[..., _T], *args: object, **kwargs: object) -> _T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    # --- chat mode ---

    async def create_room(self, host_name: str) -> dict:
        error = validate_name(host_name)
        if error:
            raise ValidationError(error)
        created = await self._store_call(self.store.create_room_with_host, host_name.strip())
        room = created["room"]
        log.info("room created id=%s code=%s host=%s", room["id"], room["code"], host_name)
        return {
            "room_id": room["id"],
            "room_code": room["code"],
            "user_id": created["user"]["id"],
        }

    async def join_room(self, room_code: str, user_name: str, connection_id: str, ws: WebSocket) -> dict:
        error = validate_room_code(room_code) or validate_name(user_name)
        if error:
            raise ValidationError(error)
        user_name = user_name.strip()
        room = await self._store_call(self.store.get_room_by_code, room_code)
        if room is None or not room["is_active"]:
            raise RoomNotFound()
        room_id = room["id"]

        lock = self._join_locks.setdefault(room_id, asyncio.Lock())
        async with lock:
            # Re-read under the lock; the host may have left while we waited.
            room = await self._store_call(self.store.get_room, room_id)
            if room is None or not room["is_active"]:
                raise RoomNotFound()
            user = await self._bind_user(room_id, user_name, connection_id)

        await self._leave_other_rooms(connection_id, room_id, ws)
        self.runner.subscribe(room_id, ws)
        await self.runner.broadcast_state(room_id)
        chats = await self._store_call(self.store.get_chats, room_id)
        own = next((c for c in chats if c["owner_user_id"] == user["id"]), None)
        group = next((c for c in chats if c["type"] == "group"), None)
        return {
            "room_id": room_id,
            "room_code": room["code"],
            "user": {"id": user["id"], "name": user["name"], "is_host": user["is_host"]},
            "chat_id": own["id"] if own else None,
            "group_chat_id": group["id"] if group else None,
        }

    async def _bind_user(self, room_id: str, user_name: str, connection_id: str) -> dict:
        bound = await self._store_call(self.store.users_for_connection, connection_id)
        for user in bound:
            if user["room_id"] == room_id:
                log.info("join repeated on bound connection room=%s user=%s", room_id, user["name"])
                return user

        existing = await self._store_call(self.store.find_user_by_name, room_id, user_name)
        if existing is not None:
            if existing["is_online"] and existing["connection_id"] != connection_id:
                raise NameTaken()
            await self._store_call(self.store.set_user_online, existing["id"], connection_id)
            log.info("user rejoined room=%s user=%s", room_id, existing["name"])
            return {**existing, "is_online": True, "connection_id": connection_id}

        online = await self._store_call(self.store.count_online_users, room_id)
        if online >= int(self.settings.get("limits.max_users")):
            raise RoomFull()
        created = await self._store_call(self.store.create_user_with_chat, room_id, user_name, connection_id)
        log.info("user joined room=%s user=%s", room_id, user_name)
        return created["user"]

    async def _leave_other_rooms(self, connection_id: str, room_id: str, ws: WebSocket) -> None:
        bound = await self._store_call(self.store.users_for_connection, connection_id)
        for user in bound:
            if user["room_id"] == room_id:
                continue
            await self._store_call(self.store.set_user_online, user["id"], None)
            self.runner.unsubscribe(user["room_id"], ws)
            await self._after_user_left(user)

    async def user_for(self, room_id: str, connection_id: str) -> dict | None:
        bound = await self._store_call(self.store.users_for_connection, connection_id)
        return next((u for u in bound if u["room_id"] == room_id), None)

    async def disconnect(self, connection_id: str, ws: WebSocket) -> list[str]:
        """Mark the connection's users offline. Returns the affected room ids."""
        try:
            users = await self._store_call(self.store.disconnect_connection, connection_id)
        except Exception:
            log.exception("disconnect failed connection=%s", connection_id)
            return []
        rooms: list[str] = []
        for user in users:
            self.runner.unsubscribe(user["room_id"], ws)
            await self._after_user_left(user)
            rooms.append(user["room_id"])
        return rooms

    async def _after_user_left(self, user: dict) -> None:
        room_id = user["room_id"]
        if user["is_host"] and self.settings.get("rooms.close_on_host_leave"):
            log.info("host left; closing room %s", room_id)
            await self.close_room(room_id)
            return
        await self.runner.broadcast_state(room_id)

    async def close_room(self, room_id: str, message: str = prompts.ROOM_CLOSED_MESSAGE) -> None:
        """Deactivate the room, take its members offline and drop its sockets."""
        await self._store_call(self.store.close_room, room_id)
        self._join_locks.pop(room_id, None)
        await self.runner.close_room(room_id, message)

    # --- legacy turn mode ---

    async def create_turn_room(self, connection_id: str, ws: WebSocket) -> TurnRoom:
        room = self.runner.directory.create(connection_id)
        room.add_participant(connection_id)
        self.runner.subscribe(room.id, ws)
        log.info("turn room created id=%s", room.id)
        await self.runner.broadcast_turn_state(room)
        return room

    async def join_turn_room(self, room_code: str, connection_id: str, ws: WebSocket) -> TurnRoom:
        error = validate_room_code(room_code)
        if error:
            raise ValidationError(error)
        room = self.runner.directory.get(room_code)
        if room is None:
            raise RoomNotFound()
        participant = room.add_participant(connection_id)
        self.runner.subscribe(room.id, ws)
        log.info("turn room join id=%s name=%s", room.id, participant.name)
        await self.runner.broadcast_turn_state(room)
        return room

    async def disconnect_turns(self, connection_id: str, ws: WebSocket) -> None:
        for room in self.runner.directory.rooms_for(connection_id):
            self.runner.unsubscribe(room.id, ws)
            if room.host_id == connection_id:
                log.info("host left; closing turn room %s", room.id)
                self.runner.directory.remove(room.id)
                await self.runner.close_room(room.id)
                continue
            if room.remove_participant(connection_id):
                await self.runner.broadcast_turn_state(room)
