from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator
from typing import Any

from openai import AsyncOpenAI

from .base import BaseResponder, ContextEntry, ResponderResult

log = logging.getLogger("promptroom")


def to_openai_messages(messages: list[ContextEntry]) -> list[dict[str, Any]]:
    """Translate context entries into the chat-completions message shape."""
    converted: list[dict[str, Any]] = []
    for entry in messages:
        content = entry.get("content", "")
        if isinstance(content, list):
            parts: list[dict[str, Any]] = []
            for part in content:
                if part.get("type") == "image":
                    media_type = part.get("media_type", "image/png")
                    parts.append({
                        "type": "image_url",
                        "image_url": {"url": f"data:{media_type};base64,{part['data']}"},
                    })
                else:
                    parts.append({"type": "text", "text": part.get("text", "")})
            content = parts
        converted.append({"role": entry["role"], "content": content})
    return converted


class OpenAIResponder(BaseResponder):
    """Responder backed by any OpenAI-compatible chat-completions endpoint."""

    name = "openai"

    def __init__(self, client: AsyncOpenAI, model: str, max_tokens: int = 1024) -> None:
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    async def complete(self, messages: list[ContextEntry]) -> ResponderResult:
        start = time.monotonic()
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=to_openai_messages(messages),
                max_tokens=self.max_tokens,
                stream=False,
            )
        except Exception as exc:
            log.warning("[%s] completion failed: %s", self.name, exc)
            return ResponderResult(
                text="", success=False,
                latency_ms=(time.monotonic() - start) * 1000, error=str(exc),
            )
        text = (resp.choices[0].message.content or "") if resp.choices else ""
        usage = resp.usage
        return ResponderResult(
            text=text,
            success=True,
            latency_ms=(time.monotonic() - start) * 1000,
            model=resp.model or self.model,
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
        )

    async def stream(self, messages: list[ContextEntry]) -> AsyncGenerator[str | ResponderResult, None]:
        start = time.monotonic()
        collected: list[str] = []
        usage = None
        model = self.model
        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=to_openai_messages(messages),
                max_tokens=self.max_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in stream:
                if chunk.model:
                    model = chunk.model
                if chunk.usage is not None:
                    usage = chunk.usage
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    collected.append(delta)
                    yield delta
        except Exception as exc:
            log.warning("[%s] stream failed after %d chunks: %s", self.name, len(collected), exc)
            yield ResponderResult(
                text="".join(collected), success=False,
                latency_ms=(time.monotonic() - start) * 1000, model=model, error=str(exc),
            )
            return
        yield ResponderResult(
            text="".join(collected),
            success=True,
            latency_ms=(time.monotonic() - start) * 1000,
            model=model,
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
        )
