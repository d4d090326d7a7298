from __future__ import annotations

import asyncio
import logging

from openai import AsyncOpenAI

log = logging.getLogger("promptroom")


class AuxiliaryModel:
    """Small, cheap model used for classification and summarization prompts.

    ``ask`` raises on transport errors; callers treat a failure as "no opinion".
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        max_tokens: int = 512,
        timeout: float = 30.0,
    ) -> None:
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout

    async def ask(self, prompt: str) -> str:
        resp = await asyncio.wait_for(
            self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self.max_tokens,
                temperature=0,
                stream=False,
            ),
            timeout=self.timeout,
        )
        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""
