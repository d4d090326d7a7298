from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable, Coroutine
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Any, TypeVar

from fastapi import WebSocket

from ..chat.errors import ChatLimitReached, ChatNotFound, RoomNotFound
from ..chat.events import (
    AIErrored,
    MessageCreated,
    RoomClosed,
    RoomEvent,
    StreamChunk,
    StreamEnded,
    StreamStarted,
)
from ..chat.models import AssistantMessage, Message, SystemNotice, UserMessage, message_from_row, message_to_dict
from ..chat.resolver import ChatResolver
from ..chat.turns import RoomDirectory, TurnOutcome, TurnRoom
from ..responders import prompts
from ..responders.base import BaseResponder, ResponderResult, estimate_tokens
from .protocol import event_to_dict
from .settings import SettingsStore
from .store import RoomStore

log = logging.getLogger("promptroom")
_SERVICE_NAME = "promptroom"
_T = TypeVar("_T")

try:
    _SERVICE_VERSION = pkg_version(_SERVICE_NAME)
except PackageNotFoundError:
    _SERVICE_VERSION = "dev"

AI_STARTED = "started"
AI_BUSY = "busy"
AI_SKIPPED = "skipped"


class RoomRunner:
    """Owns the live side of every room: sockets, AI markers and tasks.

    A room holds at most one processing marker. It is checked and set in the
    same event-loop step, before the first await on the AI path, and always
    released in a ``finally`` followed by a state broadcast.
    """

    def __init__(
        self,
        store: RoomStore,
        settings: SettingsStore,
        resolver: ChatResolver,
        responder: BaseResponder | None = None,
        directory: RoomDirectory | None = None,
        send_timeout: float | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.resolver = resolver
        self.responder = responder
        self.directory = directory or RoomDirectory()
        self.send_timeout = send_timeout
        self._subscribers: dict[str, set[WebSocket]] = {}
        # room_id -> chat_id the AI is answering in
        self._processing: dict[str, str] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._background_tasks: dict[str, set[asyncio.Task]] = {}

    # --- subscribers ---

    def subscribe(self, room_id: str, ws: WebSocket) -> None:
        self._subscribers.setdefault(room_id, set()).add(ws)

    def unsubscribe(self, room_id: str, ws: WebSocket) -> None:
        subs = self._subscribers.get(room_id)
        if subs:
            subs.discard(ws)
            if not subs:
                self._subscribers.pop(room_id, None)

    def subscriber_count(self, room_id: str) -> int:
        return len(self._subscribers.get(room_id, ()))

    # --- markers ---

    def is_processing(self, room_id: str) -> bool:
        return room_id in self._processing

    def processing_chat(self, room_id: str) -> str | None:
        return self._processing.get(room_id)

    def try_acquire(self, room_id: str, chat_id: str) -> bool:
        if room_id in self._processing:
            return False
        self._processing[room_id] = chat_id
        return True

    def release(self, room_id: str) -> None:
        self._processing.pop(room_id, None)

    # --- plumbing ---

    def _log_metric(self, name: str, **fields: object) -> None:
        payload = {
            "metric": name,
            "ts": time.time(),
            "service": _SERVICE_NAME,
            "version": _SERVICE_VERSION,
            **fields,
        }
        log.info("metric %s", json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))

    async def _store_call(self, fn: Callable[..., _T], *args: object, **kwargs: object) -> _T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    def _send_timeout(self) -> float:
        if self.send_timeout is not None:
            return self.send_timeout
        return float(self.settings.get("timeouts.send"))

    async def broadcast(self, room_id: str, data: dict) -> int:
        subs = self._subscribers.get(room_id)
        if not subs:
            log.debug("broadcast dropped (no subscribers): %s", room_id)
            return 0
        snapshot = list(subs)
        timeout = self._send_timeout()

        async def _send(ws: WebSocket) -> None:
            await asyncio.wait_for(ws.send_json(data), timeout=timeout)

        results = await asyncio.gather(*[_send(ws) for ws in snapshot], return_exceptions=True)
        dead: list[WebSocket] = []
        sent = 0
        for ws, result in zip(snapshot, results):
            if isinstance(result, Exception):
                log.warning("broadcast failed room=%s type=%s error=%s", room_id, data.get("type"), result)
                self._log_metric("ws_send_failure", room_id=room_id, event_type=data.get("type"))
                dead.append(ws)
            else:
                sent += 1
        for ws in dead:
            subs.discard(ws)
        if not subs:
            self._subscribers.pop(room_id, None)
        if sent == 0 and snapshot:
            log.warning("broadcast delivered to 0 subscribers room=%s type=%s", room_id, data.get("type"))
        return sent

    async def emit(self, room_id: str, event: RoomEvent) -> int:
        return await self.broadcast(room_id, event_to_dict(event))

    # --- state ---

    async def room_state(self, room_id: str) -> dict:
        """Full room snapshot from one store read, plus the live AI marker."""
        try:
            snapshot = await self._store_call(self.store.get_room_snapshot, room_id)
        except Exception:
            log.exception("state read failed room=%s", room_id)
            snapshot = None
        room = snapshot["room"] if snapshot else {"id": room_id}
        users = snapshot["users"] if snapshot else []
        chats = snapshot["chats"] if snapshot else []
        return {
            "type": "update_game_state",
            "room": {
                "id": room["id"],
                "code": room.get("code"),
                "is_active": room.get("is_active", False),
                "host_user_id": room.get("host_user_id"),
            },
            "users": [
                {"id": u["id"], "name": u["name"], "is_online": u["is_online"], "is_host": u["is_host"]}
                for u in users
            ],
            "chats": [
                {
                    "id": c["id"], "name": c["name"], "type": c["type"],
                    "owner_user_id": c["owner_user_id"], "message_count": c["message_count"],
                    "token_count": c["token_count"], "has_summary": c["summary"] is not None,
                }
                for c in chats
            ],
            "ai": {
                "is_processing": self.is_processing(room_id),
                "chat_id": self.processing_chat(room_id),
            },
        }

    async def broadcast_state(self, room_id: str) -> int:
        return await self.broadcast(room_id, await self.room_state(room_id))

    async def close_room(self, room_id: str, message: str = prompts.ROOM_CLOSED_MESSAGE) -> None:
        """Tell every socket the room is gone and drop them. In-flight AI work still finishes."""
        await self.emit(room_id, RoomClosed(message=message))
        self._subscribers.pop(room_id, None)

    # --- tasks ---

    def _spawn_background(self, room_id: str, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        tasks = self._background_tasks.setdefault(room_id, set())
        tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            tasks.discard(t)
            if not tasks:
                self._background_tasks.pop(room_id, None)
            if not t.cancelled() and t.exception() is not None:
                log.error("background task %s failed", t.get_name(), exc_info=t.exception())

        task.add_done_callback(_done)
        return task

    def _start_reply(self, room_id: str, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Run the room's single reply task; its entry is dropped once it finishes."""
        task = asyncio.create_task(coro, name=name)
        self._tasks[room_id] = task

        def _done(t: asyncio.Task) -> None:
            if self._tasks.get(room_id) is t:
                self._tasks.pop(room_id, None)

        task.add_done_callback(_done)
        return task

    async def wait_idle(self, room_id: str) -> None:
        """Wait for the room's reply task and background work to finish."""
        while True:
            pending = [t for t in self._background_tasks.get(room_id, ()) if not t.done()]
            task = self._tasks.get(room_id)
            if task is not None and not task.done():
                pending.append(task)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for group in self._background_tasks.values():
            tasks.extend(t for t in group if not t.done())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _check_summary(self, room_id: str, row: dict) -> None:
        """Start the one-time summary when this insert is the one that reached the threshold."""
        if not self.resolver.summary_due(row.get("message_count")):
            return
        chat_id = row["chat_id"]
        self._spawn_background(room_id, self.resolver.summarize(chat_id), name=f"summary-{chat_id}")

    # --- chat mode ---

    async def submit_message(
        self,
        room_id: str,
        user: dict,
        chat_id: str,
        text: str,
        *,
        ai_selected: bool = False,
        pill_chat_ids: list[str] | None = None,
        images: list[dict] | None = None,
    ) -> dict:
        """Store a user message, then start the AI reply if one is due and the room is free."""
        chat = await self.get_chat_for(room_id, user, chat_id)
        if chat["message_count"] >= int(self.settings.get("limits.chat_messages")):
            raise ChatLimitReached("This chat has reached its message limit.")
        if chat["token_count"] >= int(self.settings.get("limits.chat_tokens")):
            raise ChatLimitReached("This chat has reached its token limit.")

        row = await self._store_call(self.store.add_message, chat_id, "user", text, sender_id=user["id"])
        message = message_from_row(row)
        await self.emit(room_id, MessageCreated(message=message))
        self._check_summary(room_id, row)

        ai_status = AI_SKIPPED
        if self.resolver.needs_response(chat, text, ai_selected):
            if self.try_acquire(room_id, chat_id):
                ai_status = AI_STARTED
                self._start_reply(
                    room_id,
                    self._reply(room_id, chat, message, ai_selected, pill_chat_ids, images),
                    name=f"reply-{room_id}",
                )
            else:
                ai_status = AI_BUSY
                log.info("room %s busy on chat %s; stored message without reply", room_id, self.processing_chat(room_id))
        await self.broadcast_state(room_id)
        return {"message": message_to_dict(message), "ai": ai_status}

    async def get_chat_for(self, room_id: str, user: dict, chat_id: str) -> dict:
        room = await self._store_call(self.store.get_room, room_id)
        if room is None or not room["is_active"]:
            raise RoomNotFound()
        chat = await self._store_call(self.store.get_chat, chat_id)
        if chat is None or chat["room_id"] != room_id:
            raise ChatNotFound()
        if chat["type"] == "individual" and chat["owner_user_id"] != user["id"]:
            raise ChatNotFound()
        return chat

    async def chat_messages(self, room_id: str, user: dict, chat_id: str) -> list[dict]:
        await self.get_chat_for(room_id, user, chat_id)
        rows = await self._store_call(self.store.get_messages, chat_id)
        return [message_to_dict(message_from_row(row)) for row in rows]

    async def _reply(
        self,
        room_id: str,
        chat: dict,
        message: UserMessage,
        ai_selected: bool,
        pill_chat_ids: list[str] | None,
        images: list[dict] | None,
    ) -> None:
        try:
            resolved = await self.resolver.resolve(
                chat, message,
                ai_selected=ai_selected, pill_chat_ids=pill_chat_ids, images=images,
            )
            if resolved.canned_reply is not None:
                await self._persist_reply(room_id, chat["id"], resolved.canned_reply)
            elif resolved.respond:
                await self.respond(room_id, chat["id"], resolved.messages)
        except Exception:
            log.exception("reply failed room=%s chat=%s", room_id, chat["id"])
            await self.emit(room_id, AIErrored(chat_id=chat["id"], message=prompts.AI_ERROR_MESSAGE))
        finally:
            self.release(room_id)
            await self.broadcast_state(room_id)

    async def respond(self, room_id: str, chat_id: str, messages: list[dict]) -> AssistantMessage | None:
        """Call the responder, account tokens and persist the reply.

        Responder failures are reported as an ``ai_error`` event and return None.
        """
        result = await self._call_responder(room_id, chat_id, messages)
        if result is None or not result.success:
            await self.emit(room_id, AIErrored(chat_id=chat_id, message=prompts.AI_ERROR_MESSAGE))
            return None
        input_tokens = estimate_tokens(messages)
        output_tokens = result.output_tokens if result.output_tokens is not None else estimate_tokens(result.text)
        total = await self._store_call(self.store.add_tokens, chat_id, input_tokens + output_tokens)
        self._log_metric(
            "chat_tokens", room_id=room_id, chat_id=chat_id,
            input_tokens=input_tokens, output_tokens=output_tokens, total=total,
        )
        return await self._persist_reply(
            room_id, chat_id, result.text,
            model=result.model, input_tokens=input_tokens, output_tokens=output_tokens,
        )

    async def _persist_reply(
        self,
        room_id: str,
        chat_id: str,
        text: str,
        model: str | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
    ) -> AssistantMessage:
        row = await self._store_call(
            self.store.add_message, chat_id, "assistant", text,
            input_tokens=input_tokens, output_tokens=output_tokens, model=model,
        )
        reply = message_from_row(row)
        await self.emit(room_id, MessageCreated(message=reply))
        self._check_summary(room_id, row)
        return reply

    async def _call_responder(self, room_id: str, chat_id: str | None, messages: list[dict]) -> ResponderResult | None:
        if self.responder is None:
            log.error("no responder configured")
            return None
        started = time.monotonic()
        result: ResponderResult | None = None
        try:
            if self.settings.get("responder.stream"):
                result = await self._stream_responder(room_id, chat_id, messages)
            else:
                result = await self.responder.complete(messages)
        except Exception:
            log.exception("responder raised room=%s chat=%s", room_id, chat_id)
            result = None
        self._log_metric(
            "responder_latency", room_id=room_id, chat_id=chat_id,
            latency_ms=round((time.monotonic() - started) * 1000, 1),
            success=bool(result and result.success),
        )
        return result

    async def _stream_responder(self, room_id: str, chat_id: str | None, messages: list[dict]) -> ResponderResult | None:
        stream_id = uuid.uuid4().hex
        await self.emit(room_id, StreamStarted(stream_id=stream_id, chat_id=chat_id, sender=self.settings.get("ai.name").lower()))
        result: ResponderResult | None = None
        try:
            async for item in self.responder.stream(messages):
                if isinstance(item, ResponderResult):
                    result = item
                elif item:
                    await self.emit(room_id, StreamChunk(stream_id=stream_id, chat_id=chat_id, text=item))
        finally:
            await self.emit(room_id, StreamEnded(stream_id=stream_id, chat_id=chat_id))
        return result

    # --- legacy turn mode ---

    async def broadcast_turn_state(self, room: TurnRoom) -> int:
        return await self.broadcast(room.id, {"type": "update_game_state", **room.to_state()})

    async def submit_contribution(self, room_id: str, connection_id: str, text: str) -> TurnOutcome:
        room = self.directory.get(room_id)
        if room is None:
            return TurnOutcome.REJECTED
        outcome = room.contribute(connection_id, text)
        if outcome is TurnOutcome.REJECTED:
            return outcome
        if outcome is TurnOutcome.FINAL:
            self._start_reply(room.id, self._finish_turn_round(room.id, text), name=f"turns-{room.id}")
        else:
            await self.broadcast_turn_state(room)
        return outcome

    async def _finish_turn_round(self, room_id: str, prompt_text: str) -> None:
        reply: Message | None = None
        try:
            room = self.directory.get(room_id)
            if room is not None:
                await self.broadcast_turn_state(room)
            result = await self._call_responder(room_id, None, [{"role": "user", "content": prompt_text}])
            if result is not None and result.success:
                reply = AssistantMessage(
                    text=result.text, model=result.model,
                    input_tokens=result.input_tokens, output_tokens=result.output_tokens,
                )
            else:
                reply = SystemNotice(text=prompts.AI_ERROR_MESSAGE)
        except Exception:
            log.exception("turn round failed room=%s", room_id)
            reply = SystemNotice(text=prompts.AI_ERROR_MESSAGE)
        finally:
            # The room may have closed while the responder was running.
            room = self.directory.get(room_id)
            if room is not None:
                room.finish_round(reply)
                await self.broadcast_turn_state(room)
