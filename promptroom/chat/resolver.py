from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ..responders import prompts
from ..responders.auxiliary import AuxiliaryModel
from ..responders.base import BaseResponder, parse_json_reply
from ..responders.search import WebSearch
from ..server.settings import SettingsStore
from ..server.store import RoomStore
from .models import UserMessage, message_from_row
from .router import (
    NO_MESSAGES_PLACEHOLDER,
    ai_mentioned,
    assemble_context,
    build_user_content,
    extract_chat_references,
    filter_by_terms,
    format_context_block,
    history_entries,
    resolve_chat_name,
    splice_references,
    transcript_line,
    wants_links,
)

log = logging.getLogger("promptroom")
_T = TypeVar("_T")


@dataclass
class ResolvedTurn:
    """What to do after a user message has been stored."""
    respond: bool
    canned_reply: str | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)


class ChatResolver:
    """Turns a stored user message into the responder's context window.

    Every auxiliary step is best effort: a failure is logged and the step
    contributes nothing.
    """

    def __init__(
        self,
        store: RoomStore,
        settings: SettingsStore,
        responder: BaseResponder | None = None,
        auxiliary: AuxiliaryModel | None = None,
        search: WebSearch | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.responder = responder
        self.auxiliary = auxiliary
        self.search = search

    async def _store_call(self, fn: Callable[..., _T], *args: object, **kwargs: object) -> _T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    @property
    def ai_name(self) -> str:
        return self.settings.get("ai.name")

    # --- gate ---

    def needs_response(self, chat: dict, text: str, ai_selected: bool) -> bool:
        if chat["type"] == "individual":
            return True
        return ai_selected or ai_mentioned(text, self.ai_name)

    # --- summary ---

    def summary_due(self, message_count: int | None) -> bool:
        return message_count == int(self.settings.get("summary.threshold"))

    def needs_summary(self, chat: dict) -> bool:
        return chat["summary"] is None and self.summary_due(chat["message_count"])

    async def summarize(self, chat_id: str) -> str | None:
        """Summarize the first window of a chat once and store it."""
        if self.auxiliary is None:
            return None
        chat = await self._store_call(self.store.get_chat, chat_id)
        if chat is None or chat["summary"] is not None:
            return None
        window = int(self.settings.get("summary.window"))
        rows = (await self._store_call(self.store.get_messages, chat_id))[:window]
        if not rows:
            return None
        transcript = "\n".join(transcript_line(row, self.ai_name) for row in rows)
        summary = (await self.auxiliary.ask(prompts.summary_prompt(transcript))).strip()
        if not summary:
            return None
        if await self._store_call(self.store.set_chat_summary, chat_id, summary):
            log.info("summarized chat %s (%d messages)", chat_id, len(rows))
            return summary
        return None

    # --- auxiliary helpers ---

    async def _aux_text(self, prompt: str, context: str) -> str | None:
        if self.auxiliary is None:
            return None
        try:
            return await self.auxiliary.ask(prompt)
        except Exception:
            log.warning("auxiliary %s pass failed", context, exc_info=True)
            return None

    async def _aux_json(self, prompt: str, context: str) -> Any | None:
        return parse_json_reply(await self._aux_text(prompt, context), context=context)

    # --- pipeline ---

    async def resolve(
        self,
        chat: dict,
        message: UserMessage,
        *,
        ai_selected: bool = False,
        pill_chat_ids: list[str] | None = None,
        images: list[dict] | None = None,
    ) -> ResolvedTurn:
        text = message.text
        if not self.needs_response(chat, text, ai_selected):
            return ResolvedTurn(respond=False)

        room_chats = await self._load_chats(chat["room_id"])
        chat_names = [c["name"] for c in room_chats]
        references = extract_chat_references(text, chat_names)
        augmented = await self._inline_references(text, references, room_chats)
        pill_contexts = await self._pill_references(text, chat, pill_chat_ids or [], room_chats)

        canned = await self._short_circuit(chat, text, has_references=bool(references))
        if canned is not None:
            return ResolvedTurn(respond=False, canned_reply=canned)

        history_rows = await self._history_rows(chat, exclude_id=message.id)
        topic = await self._topic_instruction(text, history_rows)
        search_context = None
        if not references:
            search_context = await self._search_context(text)

        summary = prompts.summary_context(chat["summary"]) if chat["summary"] else None
        messages = assemble_context(
            memory=prompts.memory_instruction(self.ai_name, chat["name"]),
            summary=summary,
            history=history_entries(
                [message_from_row(row) for row in history_rows],
                named_senders=chat["type"] == "group",
            ),
            pill_contexts=pill_contexts,
            user_content=build_user_content(
                f"{message.sender_name}: {augmented}" if chat["type"] == "group" and message.sender_name else augmented,
                images,
            ),
            search_context=search_context,
            topic_instruction=topic,
        )
        return ResolvedTurn(respond=True, messages=messages)

    async def _load_chats(self, room_id: str) -> list[dict]:
        try:
            return await self._store_call(self.store.get_chats, room_id)
        except Exception:
            log.warning("chat lookup failed room=%s", room_id, exc_info=True)
            return []

    async def _history_rows(self, chat: dict, exclude_id: str) -> list[dict]:
        skip = int(self.settings.get("summary.window")) if chat["summary"] else 0
        limit = int(self.settings.get("context.recent_messages"))
        try:
            rows = await self._store_call(self.store.get_messages, chat["id"], skip)
        except Exception:
            log.warning("history read failed chat=%s", chat["id"], exc_info=True)
            return []
        rows = [row for row in rows if row["id"] != exclude_id]
        return rows[-limit:] if limit > 0 else []

    async def _inline_references(self, text: str, names: list[str], room_chats: list[dict]) -> str:
        if not names:
            return text
        replacements: dict[str, str] = {}
        for name in dict.fromkeys(names):
            try:
                block = await self._reference_block(text, name, room_chats)
            except Exception:
                log.warning("inline reference %r failed", name, exc_info=True)
                continue
            replacements[name] = block
        return splice_references(text, replacements, [c["name"] for c in room_chats])

    async def _reference_block(self, text: str, name: str, room_chats: list[dict]) -> str:
        target = resolve_chat_name(name, room_chats)
        if target is None:
            return NO_MESSAGES_PLACEHOLDER.format(name=name)
        rows = await self._store_call(self.store.get_messages, target["id"])
        if not rows:
            return NO_MESSAGES_PLACEHOLDER.format(name=target["name"])
        lines = [transcript_line(row, self.ai_name) for row in rows]
        selected = await self._relevant_lines(text, lines)
        return format_context_block(target["name"], selected)

    async def _relevant_lines(self, text: str, lines: list[str]) -> list[str]:
        fallback = lines[-int(self.settings.get("context.reference_messages")):]
        data = await self._aux_json(prompts.relevance_prompt(text, lines), "relevance")
        if not isinstance(data, dict):
            return fallback
        indices = [i for i in data.get("relevant", []) if isinstance(i, int) and 0 <= i < len(lines)]
        if not indices:
            return fallback
        return [lines[i] for i in sorted(set(indices))]

    async def _pill_references(
        self, text: str, chat: dict, chat_ids: list[str], room_chats: list[dict],
    ) -> list[str]:
        by_id = {c["id"]: c for c in room_chats}
        blocks: list[str] = []
        for chat_id in dict.fromkeys(chat_ids):
            target = by_id.get(chat_id)
            if target is None or target["id"] == chat["id"]:
                continue
            try:
                block = await self._pill_block(text, target)
            except Exception:
                log.warning("pill reference %s failed", chat_id, exc_info=True)
                continue
            if block:
                blocks.append(block)
        return blocks

    async def _pill_block(self, text: str, target: dict) -> str | None:
        data = await self._aux_json(prompts.pill_intent_prompt(text, target["name"]), "pill intent")
        if isinstance(data, dict) and data.get("needed") is False:
            return None
        rows = await self._store_call(self.store.get_messages, target["id"])
        if not rows:
            return None
        terms = data.get("search_terms", []) if isinstance(data, dict) else []
        matched = filter_by_terms(rows, terms if isinstance(terms, list) else [])
        if not matched:
            matched = rows[-int(self.settings.get("context.reference_messages")):]
        return format_context_block(target["name"], [transcript_line(row, self.ai_name) for row in matched])

    async def _short_circuit(self, chat: dict, text: str, has_references: bool) -> str | None:
        reply = await self._aux_text(prompts.intent_prompt(text), "intent")
        intent = (reply or "").strip().upper()
        if intent.startswith(prompts.INTENT_ACKNOWLEDGMENT):
            return prompts.ACKNOWLEDGMENT_REPLY
        if intent.startswith(prompts.INTENT_GREETING):
            return prompts.GREETING_REPLY
        if has_references:
            return None
        try:
            rows = await self._store_call(self.store.get_messages, chat["id"])
        except Exception:
            log.warning("redundancy history read failed chat=%s", chat["id"], exc_info=True)
            return None
        previous = [row["text"] for row in rows if row["role"] == "assistant"][-2:]
        if not previous:
            return None
        data = await self._aux_json(prompts.redundancy_prompt(text, previous), "redundancy")
        if isinstance(data, dict) and data.get("redundant") is True:
            return prompts.REDUNDANT_REPLY
        return None

    async def _topic_instruction(self, text: str, history_rows: list[dict]) -> str | None:
        if not history_rows:
            return None
        recent = [transcript_line(row, self.ai_name) for row in history_rows[-6:]]
        data = await self._aux_json(prompts.topic_prompt(text, recent), "topic")
        if not isinstance(data, dict) or "topic_changed" not in data:
            return None
        if data["topic_changed"]:
            return prompts.TOPIC_CHANGED_INSTRUCTION
        return prompts.TOPIC_CONTINUED_INSTRUCTION

    async def _search_context(self, text: str) -> str | None:
        if self.search is None or not self.settings.get("search.enabled"):
            return None
        query: str | None = None
        if wants_links(text):
            query = text.strip()[:200]
        elif self.search.configured and self.responder is not None:
            query = await self._search_decision(text)
        if not query:
            return None
        try:
            result = await self.search.search(query, int(self.settings.get("search.results")))
        except Exception:
            log.warning("web search raised", exc_info=True)
            return prompts.search_failed_context("error")
        if not result.success:
            return prompts.search_failed_context(result.reason or "error")
        if not result.items:
            return None
        return prompts.search_results_context(query, result.items)

    async def _search_decision(self, text: str) -> str | None:
        try:
            result = await self.responder.complete(
                [{"role": "user", "content": prompts.search_decision_prompt(text)}]
            )
        except Exception:
            log.warning("search decision failed", exc_info=True)
            return None
        if not result.success:
            return None
        data = parse_json_reply(result.text, context="search decision")
        if not isinstance(data, dict) or data.get("search") is not True:
            return None
        query = data.get("query")
        return query.strip()[:200] if isinstance(query, str) and query.strip() else text.strip()[:200]
