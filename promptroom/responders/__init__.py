from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI

from .auxiliary import AuxiliaryModel
from .base import BaseResponder
from .openai_chat import OpenAIResponder
from .search import WebSearch


@dataclass
class Backends:
    responder: BaseResponder
    auxiliary: AuxiliaryModel
    search: WebSearch


def create_backends(
    settings: dict[str, Any],
    api_key: str,
    base_url: str | None = None,
    search_api_key: str | None = None,
    search_engine_id: str | None = None,
) -> Backends:
    """Build the responder, auxiliary model and search client from effective settings."""
    client = AsyncOpenAI(api_key=api_key, base_url=base_url or None)
    responder = OpenAIResponder(
        client,
        model=settings["responder.model"],
        max_tokens=int(settings["responder.max_tokens"]),
    )
    auxiliary = AuxiliaryModel(client, model=settings["auxiliary.model"])
    search = WebSearch(search_api_key, search_engine_id)
    return Backends(responder=responder, auxiliary=auxiliary, search=search)
