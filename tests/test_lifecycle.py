import pytest

from promptroom.chat.errors import NameTaken, RoomFull, RoomNotFound, ValidationError
from promptroom.responders import prompts


async def _room_with_host(lifecycle, make_ws):
    created = await lifecycle.create_room("Alice")
    host_ws = make_ws()
    joined = await lifecycle.join_room(created["room_code"], "Alice", "conn-a", host_ws)
    return created, joined, host_ws


# === Chat mode ===


@pytest.mark.asyncio
async def test_create_room_leaves_host_offline(lifecycle, store):
    created = await lifecycle.create_room("  Alice ")
    assert len(created["room_code"]) == 6
    host = store.get_user(created["user_id"])
    assert host["name"] == "Alice"
    assert host["is_host"] is True
    assert host["is_online"] is False


@pytest.mark.asyncio
async def test_create_room_rejects_bad_name(lifecycle):
    with pytest.raises(ValidationError):
        await lifecycle.create_room("   ")


@pytest.mark.asyncio
async def test_host_joins_as_existing_user(lifecycle, store, make_ws):
    created, joined, _ = await _room_with_host(lifecycle, make_ws)
    assert joined["user"] == {"id": created["user_id"], "name": "Alice", "is_host": True}
    assert joined["room_id"] == created["room_id"]
    assert store.get_chat(joined["chat_id"])["name"] == "Alice's Chat"
    assert store.get_chat(joined["group_chat_id"])["type"] == "group"
    assert store.get_user(created["user_id"])["is_online"] is True


@pytest.mark.asyncio
async def test_join_broadcasts_state(lifecycle, make_ws):
    created, _, host_ws = await _room_with_host(lifecycle, make_ws)
    await lifecycle.join_room(created["room_code"].lower(), "Bob", "conn-b", make_ws())
    users = host_ws.of_type("update_game_state")[-1]["users"]
    assert [(u["name"], u["is_online"]) for u in users] == [("Alice", True), ("Bob", True)]


@pytest.mark.asyncio
async def test_rejoin_returns_same_chat(lifecycle, store, make_ws):
    created, _, _ = await _room_with_host(lifecycle, make_ws)
    bob_ws = make_ws()
    first = await lifecycle.join_room(created["room_code"], "Bob", "conn-b", bob_ws)
    await lifecycle.disconnect("conn-b", bob_ws)
    assert store.get_user(first["user"]["id"])["is_online"] is False

    second = await lifecycle.join_room(created["room_code"], "bob", "conn-b2", make_ws())
    assert second["user"]["id"] == first["user"]["id"]
    assert second["chat_id"] == first["chat_id"]
    assert len(store.get_chats(created["room_id"])) == 3


@pytest.mark.asyncio
async def test_repeated_join_on_same_connection_is_idempotent(lifecycle, store, make_ws):
    created, _, _ = await _room_with_host(lifecycle, make_ws)
    ws = make_ws()
    first = await lifecycle.join_room(created["room_code"], "Bob", "conn-b", ws)
    again = await lifecycle.join_room(created["room_code"], "Bob", "conn-b", ws)
    assert again["user"]["id"] == first["user"]["id"]
    assert len(store.get_users(created["room_id"])) == 2


@pytest.mark.asyncio
async def test_name_taken_by_online_user(lifecycle, make_ws):
    created, _, _ = await _room_with_host(lifecycle, make_ws)
    await lifecycle.join_room(created["room_code"], "Bob", "conn-b", make_ws())
    with pytest.raises(NameTaken):
        await lifecycle.join_room(created["room_code"], "BOB", "conn-x", make_ws())


@pytest.mark.asyncio
async def test_room_full(lifecycle, settings, make_ws):
    settings.set("limits.max_users", 2)
    created, _, _ = await _room_with_host(lifecycle, make_ws)
    await lifecycle.join_room(created["room_code"], "Bob", "conn-b", make_ws())
    with pytest.raises(RoomFull):
        await lifecycle.join_room(created["room_code"], "Carol", "conn-c", make_ws())


@pytest.mark.asyncio
async def test_join_unknown_room(lifecycle, make_ws):
    with pytest.raises(RoomNotFound):
        await lifecycle.join_room("ZZZZZZ", "Bob", "conn-b", make_ws())
    with pytest.raises(ValidationError):
        await lifecycle.join_room("bad-code!", "Bob", "conn-b", make_ws())


@pytest.mark.asyncio
async def test_host_disconnect_closes_room(lifecycle, store, make_ws):
    created, _, host_ws = await _room_with_host(lifecycle, make_ws)
    bob_ws = make_ws()
    await lifecycle.join_room(created["room_code"], "Bob", "conn-b", bob_ws)

    assert await lifecycle.disconnect("conn-a", host_ws) == [created["room_id"]]
    assert bob_ws.of_type("room_closed")[0]["message"] == prompts.ROOM_CLOSED_MESSAGE
    assert store.get_room(created["room_id"])["is_active"] is False

    with pytest.raises(RoomNotFound) as exc_info:
        await lifecycle.join_room(created["room_code"], "Carol", "conn-c", make_ws())
    assert exc_info.value.message == "Room not found or is closed."


@pytest.mark.asyncio
async def test_closed_room_evicts_guests(lifecycle, store, make_ws, responder):
    created, _, host_ws = await _room_with_host(lifecycle, make_ws)
    bob_ws = make_ws()
    joined = await lifecycle.join_room(created["room_code"], "Bob", "conn-b", bob_ws)
    await lifecycle.disconnect("conn-a", host_ws)

    room_id = created["room_id"]
    assert await lifecycle.user_for(room_id, "conn-b") is None
    assert store.get_user(joined["user"]["id"])["is_online"] is False
    assert room_id not in lifecycle._join_locks
    with pytest.raises(RoomNotFound):
        await lifecycle.runner.submit_message(room_id, joined["user"], joined["chat_id"], "still here?")
    assert store.get_chat(joined["chat_id"])["message_count"] == 0
    assert responder.calls == []
    # Bob's socket closing later has nothing left to release.
    assert await lifecycle.disconnect("conn-b", bob_ws) == []


@pytest.mark.asyncio
async def test_host_disconnect_keeps_room_when_configured(lifecycle, settings, store, make_ws):
    settings.set("rooms.close_on_host_leave", False)
    created, _, host_ws = await _room_with_host(lifecycle, make_ws)
    await lifecycle.disconnect("conn-a", host_ws)
    assert store.get_room(created["room_id"])["is_active"] is True
    rejoined = await lifecycle.join_room(created["room_code"], "Alice", "conn-a2", make_ws())
    assert rejoined["user"]["is_host"] is True


@pytest.mark.asyncio
async def test_guest_disconnect_marks_offline(lifecycle, store, make_ws):
    created, _, host_ws = await _room_with_host(lifecycle, make_ws)
    bob_ws = make_ws()
    joined = await lifecycle.join_room(created["room_code"], "Bob", "conn-b", bob_ws)
    await lifecycle.disconnect("conn-b", bob_ws)

    assert store.get_user(joined["user"]["id"])["is_online"] is False
    assert store.get_room(created["room_id"])["is_active"] is True
    users = host_ws.of_type("update_game_state")[-1]["users"]
    assert {u["name"]: u["is_online"] for u in users} == {"Alice": True, "Bob": False}
    assert lifecycle.runner.subscriber_count(created["room_id"]) == 1


@pytest.mark.asyncio
async def test_joining_another_room_leaves_the_first(lifecycle, store, make_ws):
    first, _, _ = await _room_with_host(lifecycle, make_ws)
    second = await lifecycle.create_room("Dana")
    ws = make_ws()
    bob = await lifecycle.join_room(first["room_code"], "Bob", "conn-b", ws)
    await lifecycle.join_room(second["room_code"], "Bob", "conn-b", ws)

    assert store.get_user(bob["user"]["id"])["is_online"] is False
    assert await lifecycle.user_for(first["room_id"], "conn-b") is None
    assert (await lifecycle.user_for(second["room_id"], "conn-b"))["name"] == "Bob"


@pytest.mark.asyncio
async def test_disconnect_unknown_connection(lifecycle, make_ws):
    assert await lifecycle.disconnect("ghost", make_ws()) == []


# === Turn mode ===


@pytest.mark.asyncio
async def test_turn_room_create_and_join(lifecycle, make_ws):
    host_ws, guest_ws = make_ws(), make_ws()
    room = await lifecycle.create_turn_room("c0", host_ws)
    joined = await lifecycle.join_turn_room(room.id.lower(), "c1", guest_ws)
    assert joined is room
    state = host_ws.of_type("update_game_state")[-1]
    assert [u["name"] for u in state["users"]] == ["Host", "Guest-1"]

    with pytest.raises(RoomNotFound):
        await lifecycle.join_turn_room("NOPE1234", "c2", make_ws())


@pytest.mark.asyncio
async def test_turn_guest_disconnect_reindexes(lifecycle, make_ws):
    host_ws, guest_ws = make_ws(), make_ws()
    room = await lifecycle.create_turn_room("c0", host_ws)
    await lifecycle.join_turn_room(room.id, "c1", guest_ws)
    await lifecycle.runner.submit_contribution(room.id, "c0", "Once")
    assert room.current().connection_id == "c1"

    await lifecycle.disconnect_turns("c1", guest_ws)
    assert [p.connection_id for p in room.participants] == ["c0"]
    assert room.current_index == 0
    assert host_ws.of_type("update_game_state")[-1]["current_user_index"] == 0


@pytest.mark.asyncio
async def test_turn_host_disconnect_closes_room(lifecycle, make_ws):
    host_ws, guest_ws = make_ws(), make_ws()
    room = await lifecycle.create_turn_room("c0", host_ws)
    await lifecycle.join_turn_room(room.id, "c1", guest_ws)
    await lifecycle.disconnect_turns("c0", host_ws)
    assert lifecycle.runner.directory.get(room.id) is None
    assert guest_ws.of_type("room_closed")
