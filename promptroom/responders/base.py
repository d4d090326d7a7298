from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any, TypeAlias

log = logging.getLogger("promptroom")

# A context entry is {"role": ..., "content": str | list[part]}; image parts are
# {"type": "image", "media_type": "image/png", "data": <base64>}.
ContextEntry: TypeAlias = dict[str, Any]

_CODE_FENCE_RE = re.compile(r"^\s*```[\w-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a single ``` wrapper that models like to put around JSON."""
    match = _CODE_FENCE_RE.match(text or "")
    if match:
        return match.group(1).strip()
    return (text or "").strip()


def parse_json_reply(text: str | None, *, context: str = "") -> Any | None:
    """Parse a JSON-shaped model reply, returning None when it is not JSON."""
    if not text:
        return None
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        truncated = cleaned[:200] + "..." if len(cleaned) > 200 else cleaned
        log.debug("json parse failed (%s): %s", context, truncated)
        return None


def estimate_tokens(value: Any) -> int:
    """Roughly one token per four characters of serialized text."""
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return -(-len(text) // 4)


@dataclass
class ResponderResult:
    text: str
    success: bool
    latency_ms: float
    model: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    error: str | None = field(default=None)


class BaseResponder(ABC):
    """An LLM that answers an ordered list of context entries."""

    name: str = ""
    model: str | None = None

    @abstractmethod
    async def complete(self, messages: list[ContextEntry]) -> ResponderResult:
        """Return the full reply in one piece."""

    async def stream(self, messages: list[ContextEntry]) -> AsyncGenerator[str | ResponderResult, None]:
        """Yield text fragments, then a final ResponderResult.

        Backends without incremental output deliver the whole reply as one fragment.
        """
        result = await self.complete(messages)
        if result.success and result.text:
            yield result.text
        yield result
