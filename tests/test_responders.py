from types import SimpleNamespace

import httpx
import pytest

from promptroom.responders.base import ResponderResult, estimate_tokens, parse_json_reply, strip_code_fences
from promptroom.responders.openai_chat import OpenAIResponder, to_openai_messages
from promptroom.responders.search import WebSearch


def test_strip_code_fences_and_parse():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert parse_json_reply('```\n{"redundant": true}\n```') == {"redundant": True}
    assert parse_json_reply("not json") is None
    assert parse_json_reply(None) is None


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("") == 0


def test_to_openai_messages_converts_images():
    converted = to_openai_messages([
        {"role": "system", "content": "be nice"},
        {"role": "user", "content": [
            {"type": "text", "text": "look"},
            {"type": "image", "media_type": "image/jpeg", "data": "AAA"},
        ]},
    ])
    assert converted[0] == {"role": "system", "content": "be nice"}
    assert converted[1]["content"][1] == {
        "type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAA"},
    }


# === OpenAI responder ===


class _Completions:
    def __init__(self, response=None, chunks=None, error=None):
        self.response = response
        self.chunks = chunks or []
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        if kwargs.get("stream"):
            return self._stream()
        return self.response

    async def _stream(self):
        for chunk in self.chunks:
            yield chunk


def _client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _chunk(text=None, usage=None):
    choices = [SimpleNamespace(delta=SimpleNamespace(content=text))] if text is not None else []
    return SimpleNamespace(model="gpt-test", usage=usage, choices=choices)


@pytest.mark.asyncio
async def test_complete_reports_usage():
    response = SimpleNamespace(
        model="gpt-test",
        choices=[SimpleNamespace(message=SimpleNamespace(content="hi there"))],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=2),
    )
    completions = _Completions(response=response)
    result = await OpenAIResponder(_client(completions), model="gpt-test").complete(
        [{"role": "user", "content": "hi"}]
    )
    assert result.success
    assert result.text == "hi there"
    assert (result.input_tokens, result.output_tokens) == (12, 2)
    assert completions.kwargs["stream"] is False


@pytest.mark.asyncio
async def test_complete_failure_is_a_result():
    completions = _Completions(error=RuntimeError("down"))
    result = await OpenAIResponder(_client(completions), model="gpt-test").complete([])
    assert result.success is False
    assert result.error == "down"


@pytest.mark.asyncio
async def test_stream_yields_deltas_then_result():
    completions = _Completions(chunks=[
        _chunk("Hel"), _chunk("lo"), _chunk(usage=SimpleNamespace(prompt_tokens=5, completion_tokens=2)),
    ])
    responder = OpenAIResponder(_client(completions), model="gpt-test")
    items = [item async for item in responder.stream([{"role": "user", "content": "hi"}])]
    assert items[:2] == ["Hel", "lo"]
    final = items[-1]
    assert isinstance(final, ResponderResult)
    assert final.text == "Hello"
    assert final.output_tokens == 2
    assert completions.kwargs["stream_options"] == {"include_usage": True}


# === Web search ===


def _search(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebSearch("key", "engine", client=client)


@pytest.mark.asyncio
async def test_search_returns_items():
    def handler(request):
        assert request.url.params["q"] == "asyncio docs"
        return httpx.Response(200, json={"items": [
            {"title": "asyncio", "link": "https://docs.python.org/3/library/asyncio.html", "snippet": "Async I/O"},
        ]})

    result = await _search(handler).search("asyncio docs")
    assert result.success
    assert result.items[0]["title"] == "asyncio"


@pytest.mark.asyncio
async def test_search_rate_limited():
    result = await _search(lambda request: httpx.Response(429)).search("q")
    assert result.success is False
    assert result.reason == "rate_limited"


@pytest.mark.asyncio
async def test_search_transport_error():
    def handler(request):
        raise httpx.ConnectError("no route", request=request)

    result = await _search(handler).search("q")
    assert result.reason == "error"


@pytest.mark.asyncio
async def test_search_not_configured():
    search = WebSearch(None, None)
    assert not search.configured
    assert (await search.search("q")).reason == "not_configured"
