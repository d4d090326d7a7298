from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, JSONResponse

from ..chat.errors import NotInRoom, RoomError, ValidationError
from ..chat.resolver import ChatResolver
from ..chat.turns import RoomDirectory
from ..responders.auxiliary import AuxiliaryModel
from ..responders.base import BaseResponder
from ..responders.search import WebSearch
from .lifecycle import RoomLifecycle
from .protocol import ack_error, ack_ok
from .runner import RoomRunner
from .settings import DEFAULTS, SettingsStore, check_value
from .store import RoomStore
from .validation import (
    CHAT_MSG_TYPES,
    MAX_WS_MESSAGE_SIZE,
    TURN_MSG_TYPES,
    validate_images,
    validate_ws_message,
)

log = logging.getLogger("promptroom")

# Rate limiting: max messages per window
_RATE_LIMIT_WINDOW = 10.0  # seconds
_RATE_LIMIT_MAX = 100  # messages per window


async def _iter_frames(ws: WebSocket, valid_types: frozenset[str]) -> AsyncGenerator[dict, None]:
    """Yield well-formed frames; malformed ones are answered here and skipped."""
    rate_timestamps: list[float] = []
    while True:
        raw = await ws.receive_text()
        if len(raw) > MAX_WS_MESSAGE_SIZE:
            await ws.send_json({"type": "error", "message": f"Message too large (max {MAX_WS_MESSAGE_SIZE} bytes)"})
            continue

        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            await ws.send_json({"type": "error", "message": "Invalid JSON"})
            continue

        validation_error = validate_ws_message(msg, valid_types)
        if validation_error:
            if isinstance(msg, dict) and "request_id" in msg:
                await ws.send_json(ack_error(msg["request_id"], validation_error))
            else:
                await ws.send_json({"type": "error", "message": validation_error})
            continue

        now = time.monotonic()
        rate_timestamps = [t for t in rate_timestamps if now - t < _RATE_LIMIT_WINDOW]
        rate_timestamps.append(now)
        if len(rate_timestamps) > _RATE_LIMIT_MAX:
            await ws.send_json(ack_error(msg.get("request_id"), "Rate limit exceeded, slow down"))
            continue

        yield msg


def _string_list(value: object, field: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"'{field}' must be an array of strings")
    return value


def create_app(
    room_store: RoomStore | None = None,
    settings_store: SettingsStore | None = None,
    responder: BaseResponder | None = None,
    auxiliary: AuxiliaryModel | None = None,
    search: WebSearch | None = None,
    send_timeout: float | None = None,
) -> FastAPI:
    store = room_store or RoomStore()
    settings = settings_store or SettingsStore(store.db_path)
    resolver = ChatResolver(store, settings, responder=responder, auxiliary=auxiliary, search=search)
    runner = RoomRunner(
        store=store,
        settings=settings,
        resolver=resolver,
        responder=responder,
        directory=RoomDirectory(),
        send_timeout=send_timeout,
    )
    lifecycle = RoomLifecycle(store, settings, runner)

    async def _store_call(fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Clear presence left over from a previous process; drain AI work on shutdown."""
        reset = await _store_call(store.reset_presence)
        if reset:
            log.info("marked %d stale users offline", reset)
        yield
        await runner.shutdown()

    app = FastAPI(title="Promptroom", lifespan=lifespan)
    app.state.runner = runner
    app.state.lifecycle = lifecycle

    @app.get("/health")
    async def health_check():
        rooms = await _store_call(store.list_rooms, True)
        return {
            "status": "healthy",
            "rooms": len(rooms),
            "turn_rooms": len(runner.directory),
            "processing": sum(1 for r in rooms if runner.is_processing(r["id"])),
            "responder": responder is not None,
            "search": bool(search and search.configured),
        }

    # --- Room REST API ---

    @app.get("/api/rooms/{code}")
    async def get_room(code: str):
        room = await _store_call(store.get_room_by_code, code)
        if room is None:
            return JSONResponse(status_code=404, content={"detail": "Room not found"})
        state = await runner.room_state(room["id"])
        state.pop("type", None)
        return state

    @app.get("/api/rooms/{code}/chats/{chat_id}/messages")
    async def get_chat_messages(code: str, chat_id: str):
        room = await _store_call(store.get_room_by_code, code)
        if room is None:
            return JSONResponse(status_code=404, content={"detail": "Room not found"})
        chat = await _store_call(store.get_chat, chat_id)
        if chat is None or chat["room_id"] != room["id"]:
            return JSONResponse(status_code=404, content={"detail": "Chat not found"})
        return {"chat_id": chat_id, "messages": await _store_call(store.get_messages, chat_id)}

    @app.delete("/api/rooms/{code}")
    async def delete_room(code: str):
        room = await _store_call(store.get_room_by_code, code)
        if room is None:
            return JSONResponse(status_code=404, content={"detail": "Room not found"})
        if room["is_active"]:
            await lifecycle.close_room(room["id"], "This room has been deleted.")
        await _store_call(store.delete_room, room["id"])
        return {"ok": True}

    # --- Settings REST API ---

    @app.get("/api/settings")
    def get_settings():
        return settings.get_all()

    @app.put("/api/settings")
    def update_settings(body: dict):
        invalid = [k for k in body if k not in DEFAULTS]
        if invalid:
            return JSONResponse(status_code=400, content={"detail": f"Unknown settings keys: {invalid}"})
        errors = [e for e in (check_value(k, v) for k, v in body.items()) if e]
        if errors:
            return JSONResponse(status_code=400, content={"detail": "; ".join(errors)})
        settings.set_many(body)
        return settings.get_all()

    @app.get("/api/settings/{key:path}")
    def get_setting(key: str):
        if key not in DEFAULTS:
            return JSONResponse(status_code=404, content={"detail": f"Unknown settings key: {key}"})
        return {"key": key, "value": settings.get(key)}

    @app.put("/api/settings/{key:path}")
    def update_setting(key: str, body: dict):
        if key not in DEFAULTS:
            return JSONResponse(status_code=400, content={"detail": f"Unknown settings key: {key}"})
        if "value" not in body:
            return JSONResponse(status_code=400, content={"detail": "Missing 'value' in request body"})
        error = check_value(key, body["value"])
        if error:
            return JSONResponse(status_code=400, content={"detail": error})
        settings.set(key, body["value"])
        return {"key": key, "value": body["value"]}

    @app.delete("/api/settings/{key:path}")
    def delete_setting(key: str):
        settings.delete(key)
        return {"ok": True}

    # --- Chat rooms ---

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None:
        await ws.accept()
        connection_id = uuid.uuid4().hex
        log.info("ws connected %s", connection_id)
        room_id: str | None = None
        await ws.send_json({"type": "connected", "connection_id": connection_id, "ai_name": settings.get("ai.name")})

        async def _current_user() -> dict:
            if room_id is None:
                raise NotInRoom()
            user = await lifecycle.user_for(room_id, connection_id)
            if user is None:
                raise NotInRoom()
            return user

        try:
            async for msg in _iter_frames(ws, CHAT_MSG_TYPES):
                request_id = msg.get("request_id")
                msg_type = msg["type"]
                try:
                    if msg_type == "create_room":
                        result = await lifecycle.create_room(msg.get("host_name", ""))
                        await ws.send_json(ack_ok(request_id, **result))

                    elif msg_type == "join_room":
                        result = await lifecycle.join_room(
                            msg["room_code"], msg.get("user_name", ""), connection_id, ws,
                        )
                        room_id = result["room_id"]
                        await ws.send_json(ack_ok(request_id, **result))

                    elif msg_type == "submit_message":
                        user = await _current_user()
                        text = msg["text"]
                        images = msg.get("images")
                        if not isinstance(text, str):
                            raise ValidationError("'text' must be a string")
                        error = validate_images(images)
                        if error:
                            raise ValidationError(error)
                        if not text.strip() and not images:
                            raise ValidationError("Message text is required")
                        result = await runner.submit_message(
                            room_id, user, msg["chat_id"], text,
                            ai_selected=bool(msg.get("ai_selected")),
                            pill_chat_ids=_string_list(msg.get("referenced_chat_ids"), "referenced_chat_ids"),
                            images=images,
                        )
                        await ws.send_json(ack_ok(request_id, **result))

                    elif msg_type == "request_chat_messages":
                        user = await _current_user()
                        messages = await runner.chat_messages(room_id, user, msg["chat_id"])
                        await ws.send_json(ack_ok(request_id, chat_id=msg["chat_id"], messages=messages))

                except RoomError as exc:
                    await ws.send_json(ack_error(request_id, exc.message))
                except WebSocketDisconnect:
                    raise
                except Exception:
                    log.exception("ws handler failed type=%s", msg_type)
                    await ws.send_json(ack_error(request_id, "Internal error"))

        except WebSocketDisconnect:
            log.info("ws disconnected %s", connection_id)
        finally:
            await lifecycle.disconnect(connection_id, ws)

    # --- Turn rooms ---

    @app.websocket("/ws/turns")
    async def turns_endpoint(ws: WebSocket) -> None:
        await ws.accept()
        connection_id = uuid.uuid4().hex
        log.info("turns ws connected %s", connection_id)
        turn_room_id: str | None = None
        await ws.send_json({"type": "connected", "connection_id": connection_id})

        try:
            async for msg in _iter_frames(ws, TURN_MSG_TYPES):
                request_id = msg.get("request_id")
                msg_type = msg["type"]
                try:
                    if msg_type == "create_room":
                        room = await lifecycle.create_turn_room(connection_id, ws)
                        turn_room_id = room.id
                        await ws.send_json(ack_ok(request_id, room_id=room.id, room_code=room.id))

                    elif msg_type == "join_room":
                        room = await lifecycle.join_turn_room(msg["room_code"], connection_id, ws)
                        turn_room_id = room.id
                        await ws.send_json(ack_ok(request_id, room_id=room.id, room_code=room.id))

                    elif msg_type == "submit_contribution":
                        # Out-of-turn submissions are dropped without telling the sender.
                        target = msg.get("room_code") or turn_room_id
                        if target and isinstance(msg["updated_prompt"], str):
                            await runner.submit_contribution(target, connection_id, msg["updated_prompt"])
                        if request_id is not None:
                            await ws.send_json(ack_ok(request_id))

                except RoomError as exc:
                    await ws.send_json(ack_error(request_id, exc.message))
                except WebSocketDisconnect:
                    raise
                except Exception:
                    log.exception("turns handler failed type=%s", msg_type)
                    await ws.send_json(ack_error(request_id, "Internal error"))

        except WebSocketDisconnect:
            log.info("turns ws disconnected %s", connection_id)
        finally:
            await lifecycle.disconnect_turns(connection_id, ws)

    # Serve static files if STATIC_DIR is set (production mode)
    static_dir = os.environ.get("STATIC_DIR")
    if static_dir and os.path.isdir(static_dir):
        log.info("Serving static files from: %s", static_dir)

        @app.get("/")
        async def serve_index():
            return FileResponse(os.path.join(static_dir, "index.html"))

        @app.get("/{path:path}")
        async def serve_static(path: str):
            file_path = os.path.join(static_dir, path)
            if os.path.exists(file_path) and os.path.isfile(file_path):
                return FileResponse(file_path)
            # Fallback to index.html for SPA routing
            return FileResponse(os.path.join(static_dir, "index.html"))

    return app
