from types import SimpleNamespace

import pytest

from promptroom.chat.models import message_from_row
from promptroom.chat.resolver import ChatResolver
from promptroom.responders import prompts
from promptroom.responders.search import SearchResult


def _seed(store):
    created = store.create_room_with_host("Alice")
    group, alice_chat = created["chats"]
    bob = store.create_user_with_chat(created["room"]["id"], "Bob", "conn-b")
    return SimpleNamespace(
        room=created["room"], alice=created["user"], bob=bob["user"],
        group=group, alice_chat=alice_chat, bob_chat=bob["chat"],
    )


def _post(store, chat_id, user, text):
    row = store.add_message(chat_id, "user", text, sender_id=user["id"])
    return store.get_chat(chat_id), message_from_row(row)


def _contents(turn):
    return [m["content"] for m in turn.messages]


# === Gate ===


@pytest.mark.asyncio
async def test_group_message_without_mention_is_not_answered(store, resolver, auxiliary):
    room = _seed(store)
    chat, msg = _post(store, room.group["id"], room.alice, "hello everyone")
    turn = await resolver.resolve(chat, msg)
    assert turn.respond is False
    assert turn.canned_reply is None
    assert auxiliary.prompts == []


@pytest.mark.asyncio
async def test_group_message_with_ai_selected_is_answered(store, resolver):
    room = _seed(store)
    chat, msg = _post(store, room.group["id"], room.alice, "what do you think")
    turn = await resolver.resolve(chat, msg, ai_selected=True)
    assert turn.respond is True


@pytest.mark.asyncio
async def test_group_user_content_names_sender(store, resolver):
    room = _seed(store)
    chat, msg = _post(store, room.group["id"], room.alice, "@Claude hi there")
    turn = await resolver.resolve(chat, msg)
    assert turn.respond is True
    assert _contents(turn)[0] == prompts.memory_instruction("Claude", "Group Chat")
    assert _contents(turn)[-1] == "Alice: @Claude hi there"


# === Short circuits ===


@pytest.mark.asyncio
async def test_acknowledgment_gets_canned_reply(store, resolver, auxiliary):
    room = _seed(store)
    auxiliary.intent = "ACKNOWLEDGMENT"
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "thanks!")
    turn = await resolver.resolve(chat, msg)
    assert turn.respond is False
    assert turn.canned_reply == prompts.ACKNOWLEDGMENT_REPLY


@pytest.mark.asyncio
async def test_greeting_gets_canned_reply(store, resolver, auxiliary):
    room = _seed(store)
    auxiliary.intent = "greeting"
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "hi")
    turn = await resolver.resolve(chat, msg)
    assert turn.canned_reply == prompts.GREETING_REPLY


@pytest.mark.asyncio
async def test_redundant_question_gets_canned_reply(store, resolver, auxiliary):
    room = _seed(store)
    store.add_message(room.bob_chat["id"], "user", "what is sqlite", sender_id=room.bob["id"])
    store.add_message(room.bob_chat["id"], "assistant", "SQLite is an embedded database.")
    auxiliary.redundant = '{"redundant": true}'
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "what is sqlite again")
    turn = await resolver.resolve(chat, msg)
    assert turn.canned_reply == prompts.REDUNDANT_REPLY


@pytest.mark.asyncio
async def test_redundancy_check_skipped_when_referencing_a_chat(store, resolver, auxiliary):
    room = _seed(store)
    store.add_message(room.bob_chat["id"], "assistant", "Earlier answer.")
    store.add_message(room.group["id"], "user", "plan the trip", sender_id=room.alice["id"])
    auxiliary.redundant = '{"redundant": true}'
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "recap @Group Chat")
    turn = await resolver.resolve(chat, msg)
    assert turn.respond is True
    assert not any("already fully" in p for p in auxiliary.prompts)


# === Inline references ===


@pytest.mark.asyncio
async def test_inline_reference_is_spliced_with_relevant_lines(store, resolver, auxiliary):
    room = _seed(store)
    store.add_message(room.group["id"], "user", "plan the trip", sender_id=room.alice["id"])
    store.add_message(room.group["id"], "user", "lunch at noon", sender_id=room.bob["id"])
    auxiliary.relevance = '{"relevant": [0]}'
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "What did we say in @Group Chat?")
    turn = await resolver.resolve(chat, msg)
    user_content = _contents(turn)[-1]
    assert user_content.startswith("What did we say in [Context from Group Chat]\n")
    assert "Alice: plan the trip" in user_content
    assert "lunch at noon" not in user_content
    assert user_content.endswith("[End of context from Group Chat]?")


@pytest.mark.asyncio
async def test_inline_reference_to_missing_or_empty_chat(store, resolver):
    room = _seed(store)
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "check @Zed's Chat and @Alice's Chat")
    turn = await resolver.resolve(chat, msg)
    assert _contents(turn)[-1] == (
        "check [No messages found for @Zed's Chat] and [No messages found for @Alice's Chat]"
    )


@pytest.mark.asyncio
async def test_group_mention_with_reference_keeps_instruction(store, resolver):
    room = _seed(store)
    store.add_message(room.bob_chat["id"], "user", "book the flights", sender_id=room.bob["id"])
    chat, msg = _post(store, room.group["id"], room.alice, "@Claude summarize @Bob's Chat")
    turn = await resolver.resolve(chat, msg)
    assert turn.respond is True
    assert _contents(turn)[-1] == (
        "Alice: @Claude summarize [Context from Bob's Chat]\nBob: book the flights\n"
        "[End of context from Bob's Chat]"
    )


@pytest.mark.asyncio
async def test_group_mention_before_a_bare_chat_name(store, resolver):
    room = _seed(store)
    chat, msg = _post(store, room.group["id"], room.alice, "@Claude summarize Bob's Chat")
    turn = await resolver.resolve(chat, msg)
    assert turn.respond is True
    assert _contents(turn)[-1] == "Alice: @Claude summarize Bob's Chat"


@pytest.mark.asyncio
async def test_auxiliary_failure_falls_back_to_recent_lines(store, resolver, auxiliary):
    room = _seed(store)
    store.add_message(room.group["id"], "user", "plan the trip", sender_id=room.alice["id"])
    auxiliary.fail = True
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "summarize @Group Chat")
    turn = await resolver.resolve(chat, msg)
    assert turn.respond is True
    assert "Alice: plan the trip" in _contents(turn)[-1]


# === Pill references ===


@pytest.mark.asyncio
async def test_pill_reference_filtered_by_search_terms(store, resolver, auxiliary):
    room = _seed(store)
    store.add_message(room.group["id"], "user", "book the trip to Rome", sender_id=room.alice["id"])
    store.add_message(room.group["id"], "user", "who brings snacks", sender_id=room.bob["id"])
    auxiliary.pill = '{"needed": true, "search_terms": ["rome"]}'
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "when do we leave")
    turn = await resolver.resolve(chat, msg, pill_chat_ids=[room.group["id"], room.bob_chat["id"]])
    pills = [c for c in _contents(turn) if c.startswith("[Context from")]
    assert len(pills) == 1
    assert "book the trip to Rome" in pills[0]
    assert "snacks" not in pills[0]


@pytest.mark.asyncio
async def test_pill_reference_skipped_when_not_needed(store, resolver, auxiliary):
    room = _seed(store)
    store.add_message(room.group["id"], "user", "book the trip", sender_id=room.alice["id"])
    auxiliary.pill = '{"needed": false, "search_terms": []}'
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "what is 2 + 2")
    turn = await resolver.resolve(chat, msg, pill_chat_ids=[room.group["id"]])
    assert not any(c.startswith("[Context from") for c in _contents(turn))


# === History and summary ===


@pytest.mark.asyncio
async def test_summarize_runs_once_over_first_window(store, settings, resolver, auxiliary):
    room = _seed(store)
    settings.set("summary.threshold", 3)
    settings.set("summary.window", 2)
    for text in ("first", "second", "third"):
        store.add_message(room.bob_chat["id"], "user", text, sender_id=room.bob["id"])
    chat = store.get_chat(room.bob_chat["id"])
    assert resolver.needs_summary(chat)

    assert await resolver.summarize(chat["id"]) == "Earlier they planned a trip."
    prompt = auxiliary.prompts[-1]
    assert "Bob: first" in prompt and "Bob: second" in prompt
    assert "third" not in prompt

    assert await resolver.summarize(chat["id"]) is None
    assert not resolver.needs_summary(store.get_chat(chat["id"]))


@pytest.mark.asyncio
async def test_history_skips_summarized_window(store, settings, resolver):
    room = _seed(store)
    settings.set("summary.window", 2)
    for text in ("old one", "old two", "recent one"):
        store.add_message(room.bob_chat["id"], "user", text, sender_id=room.bob["id"])
    store.set_chat_summary(room.bob_chat["id"], "They talked about old things.")
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "and now?")
    turn = await resolver.resolve(chat, msg)
    contents = _contents(turn)
    assert contents[1] == prompts.summary_context("They talked about old things.")
    assert "recent one" in contents
    assert "old one" not in contents
    assert contents.count("and now?") == 1
    assert contents[-1] == prompts.TOPIC_CONTINUED_INSTRUCTION


@pytest.mark.asyncio
async def test_topic_change_adds_instruction(store, resolver, auxiliary):
    room = _seed(store)
    store.add_message(room.bob_chat["id"], "user", "tell me about cats", sender_id=room.bob["id"])
    auxiliary.topic = '{"topic_changed": true}'
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "how do rockets work")
    turn = await resolver.resolve(chat, msg)
    assert _contents(turn)[-1] == prompts.TOPIC_CHANGED_INSTRUCTION


# === Web search ===


@pytest.mark.asyncio
async def test_link_request_forces_search(store, settings, auxiliary, make_search, make_responder):
    room = _seed(store)
    settings.set("search.enabled", True)
    search = make_search()
    resolver = ChatResolver(store, settings, responder=make_responder(), auxiliary=auxiliary, search=search)
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "give me links about asyncio")
    turn = await resolver.resolve(chat, msg)
    assert search.queries == ["give me links about asyncio"]
    assert any("https://example.com/docs" in c for c in _contents(turn))


@pytest.mark.asyncio
async def test_search_decision_from_responder(store, settings, auxiliary, make_search, make_responder):
    room = _seed(store)
    settings.set("search.enabled", True)
    search = make_search()
    responder = make_responder(replies=['```json\n{"search": true, "query": "weather paris"}\n```'])
    resolver = ChatResolver(store, settings, responder=responder, auxiliary=auxiliary, search=search)
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "should I bring an umbrella to Paris today")
    await resolver.resolve(chat, msg)
    assert search.queries == ["weather paris"]


@pytest.mark.asyncio
async def test_search_failure_adds_notice(store, settings, auxiliary, make_search, make_responder):
    room = _seed(store)
    settings.set("search.enabled", True)
    search = make_search(SearchResult(success=False, items=[], reason="rate_limited"))
    resolver = ChatResolver(store, settings, responder=make_responder(), auxiliary=auxiliary, search=search)
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "cite your sources on this")
    turn = await resolver.resolve(chat, msg)
    assert prompts.search_failed_context("rate_limited") in _contents(turn)


@pytest.mark.asyncio
async def test_no_search_when_disabled(store, auxiliary, settings, make_search, make_responder):
    room = _seed(store)
    search = make_search()
    resolver = ChatResolver(store, settings, responder=make_responder(), auxiliary=auxiliary, search=search)
    chat, msg = _post(store, room.bob_chat["id"], room.bob, "give me links")
    await resolver.resolve(chat, msg)
    assert search.queries == []
