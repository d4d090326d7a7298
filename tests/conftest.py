import asyncio

import pytest

from promptroom.chat.resolver import ChatResolver
from promptroom.responders.base import BaseResponder, ResponderResult
from promptroom.responders.search import SearchResult
from promptroom.server.lifecycle import RoomLifecycle
from promptroom.server.runner import RoomRunner
from promptroom.server.settings import SettingsStore
from promptroom.server.store import RoomStore


class FakeResponder(BaseResponder):
    name = "fake"
    model = "fake-model"

    def __init__(self, replies: list[str] | None = None, fail: bool = False):
        self._replies = iter(replies or [])
        self.fail = fail
        self.error: Exception | None = None
        self.calls: list[list[dict]] = []
        self.gate: asyncio.Event | None = None

    async def complete(self, messages):
        self.calls.append(messages)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.fail:
            return ResponderResult(text="", success=False, latency_ms=1.0, error="boom")
        text = next(self._replies, "Here is an answer.")
        return ResponderResult(
            text=text, success=True, latency_ms=5.0,
            model="fake-model", input_tokens=10, output_tokens=3,
        )


class FakeAuxiliary:
    """Answers each auxiliary prompt kind from an attribute."""

    def __init__(self):
        self.intent = "REQUEST"
        self.redundant = '{"redundant": false}'
        self.topic = '{"topic_changed": false}'
        self.relevance = '{"relevant": []}'
        self.pill = '{"needed": true, "search_terms": []}'
        self.summary = "Earlier they planned a trip."
        self.fail = False
        self.prompts: list[str] = []

    async def ask(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise RuntimeError("auxiliary down")
        if "Classify the intent" in prompt:
            return self.intent
        if "already fully" in prompt:
            return self.redundant
        if "unrelated topic" in prompt:
            return self.topic
        if "Which messages relate" in prompt:
            return self.relevance
        if "attached the conversation" in prompt:
            return self.pill
        if "Summarize the following" in prompt:
            return self.summary
        return ""


class FakeSearch:
    def __init__(self, result: SearchResult | None = None, configured: bool = True):
        self.result = result or SearchResult(
            success=True,
            items=[{"title": "Docs", "link": "https://example.com/docs", "snippet": "Reference docs"}],
        )
        self.configured = configured
        self.queries: list[str] = []

    async def search(self, query: str, num_results: int = 3) -> SearchResult:
        self.queries.append(query)
        return self.result


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == msg_type]


@pytest.fixture
def store(tmp_path):
    return RoomStore(tmp_path / "test.db")


@pytest.fixture
def settings(store):
    settings = SettingsStore(store.db_path)
    settings.set("search.enabled", False)
    return settings


@pytest.fixture
def responder():
    return FakeResponder()


@pytest.fixture
def auxiliary():
    return FakeAuxiliary()


@pytest.fixture
def resolver(store, settings, responder, auxiliary):
    return ChatResolver(store, settings, responder=responder, auxiliary=auxiliary)


@pytest.fixture
def runner(store, settings, resolver, responder):
    return RoomRunner(store=store, settings=settings, resolver=resolver, responder=responder, send_timeout=1.0)


@pytest.fixture
def lifecycle(store, settings, runner):
    return RoomLifecycle(store, settings, runner)


@pytest.fixture
def make_ws():
    return FakeWebSocket


@pytest.fixture
def make_search():
    return FakeSearch


@pytest.fixture
def make_responder():
    return FakeResponder
