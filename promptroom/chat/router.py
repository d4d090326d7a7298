from __future__ import annotations

import re
from collections.abc import Iterable
from functools import lru_cache
from typing import Any

from .models import AssistantMessage, Message, PromptMarker, SystemNotice, UserMessage

# A reference is "@" followed by a chat name the room has, or by one word and
# "Chat" ("@Group Chat", "@Zed's Chat") for names the room does not have.
_FALLBACK_REF = r"[\w\-]+(?:['’]s)?\s+Chat"
_MENTION_RE = re.compile(r"(?<![\w/])@(\w+)\b(?!['’]s\b)")
_LINKS_RE = re.compile(
    r"\b(links?|urls?|sources?|citations?|cite|references? (?:to|for)|websites?)\b",
    re.IGNORECASE,
)

NO_MESSAGES_PLACEHOLDER = "[No messages found for @{name}]"


def _name_alternative(name: str) -> str:
    words = []
    for word in name.split():
        words.append("['’]".join(re.escape(piece) for piece in re.split(r"['’]", word)))
    return r"\s+".join(words)


@lru_cache(maxsize=256)
def _reference_re(chat_names: tuple[str, ...]) -> re.Pattern[str]:
    # Longest names first so "Mary Jane's Chat" wins over "Jane's Chat".
    names = sorted({n for n in chat_names if n.strip()}, key=len, reverse=True)
    alternatives = [_name_alternative(n) for n in names] + [_FALLBACK_REF]
    return re.compile(r"@(" + "|".join(alternatives) + r")(?!\w)", re.IGNORECASE)


def reference_pattern(chat_names: Iterable[str] = ()) -> re.Pattern[str]:
    return _reference_re(tuple(chat_names))


def find_inline_references(text: str, chat_names: Iterable[str] = ()) -> list[re.Match[str]]:
    return list(reference_pattern(chat_names).finditer(text or ""))


def extract_chat_references(text: str, chat_names: Iterable[str] = ()) -> list[str]:
    """Return referenced chat names, in order, without the leading '@'."""
    return [m.group(1).strip() for m in find_inline_references(text, chat_names)]


def extract_mentions(text: str, chat_names: Iterable[str] = ()) -> list[str]:
    """Plain @name mentions, ignoring anything that is a chat reference."""
    stripped = reference_pattern(chat_names).sub(" ", text or "")
    return _MENTION_RE.findall(stripped)


def ai_mentioned(text: str, ai_name: str, chat_names: Iterable[str] = ()) -> bool:
    target = ai_name.lower()
    return any(m.lower() == target for m in extract_mentions(text, chat_names))


def resolve_chat_name(name: str, chats: list[dict]) -> dict | None:
    """Match a referenced name to a chat: exact (case-insensitive) first, then substring."""
    wanted = " ".join(name.split()).lower().replace("’", "'")
    if not wanted:
        return None
    for chat in chats:
        if chat["name"].lower() == wanted:
            return chat
    for chat in chats:
        have = chat["name"].lower()
        if wanted in have or have in wanted:
            return chat
    return None


def format_context_block(chat_name: str, lines: list[str]) -> str:
    body = "\n".join(lines)
    return f"[Context from {chat_name}]\n{body}\n[End of context from {chat_name}]"


def splice_references(text: str, replacements: dict[str, str], chat_names: Iterable[str] = ()) -> str:
    """Replace each '@<name>' token with its block; the dict is keyed by matched name."""
    def _sub(match: re.Match[str]) -> str:
        name = match.group(1).strip()
        return replacements.get(name, match.group(0))

    return reference_pattern(chat_names).sub(_sub, text)


def wants_links(text: str) -> bool:
    return bool(_LINKS_RE.search(text or ""))


def transcript_line(row: dict, ai_name: str) -> str:
    match row["role"]:
        case "assistant":
            speaker = ai_name
        case "user":
            speaker = row.get("sender_name") or "User"
        case "prompt":
            speaker = "Prompt"
        case _:
            speaker = "System"
    return f"{speaker}: {row['text']}"


def filter_by_terms(rows: list[dict], terms: list[str]) -> list[dict]:
    lowered = [t.lower() for t in terms if isinstance(t, str) and t.strip()]
    if not lowered:
        return []
    return [row for row in rows if any(t in row["text"].lower() for t in lowered)]


def history_entries(messages: list[Message], *, named_senders: bool) -> list[dict[str, Any]]:
    """Turn stored messages into responder context entries."""
    entries: list[dict[str, Any]] = []
    for msg in messages:
        match msg:
            case UserMessage(text=text, sender_name=sender):
                content = f"{sender}: {text}" if named_senders and sender else text
                entries.append({"role": "user", "content": content})
            case AssistantMessage(text=text):
                entries.append({"role": "assistant", "content": text})
            case PromptMarker(text=text):
                entries.append({"role": "user", "content": text})
            case SystemNotice():
                continue
    return entries


def build_user_content(text: str, images: list[dict] | None = None) -> str | list[dict[str, Any]]:
    if not images:
        return text
    parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
    for image in images:
        parts.append({
            "type": "image",
            "media_type": image.get("media_type", "image/png"),
            "data": image["data"],
        })
    return parts


def assemble_context(
    *,
    memory: str,
    summary: str | None,
    history: list[dict[str, Any]],
    pill_contexts: list[str],
    user_content: str | list[dict[str, Any]],
    search_context: str | None,
    topic_instruction: str | None,
) -> list[dict[str, Any]]:
    """Order: memory, summary, history, pill contexts, user message, search, topic."""
    messages: list[dict[str, Any]] = [{"role": "system", "content": memory}]
    if summary:
        messages.append({"role": "system", "content": summary})
    messages.extend(history)
    for block in pill_contexts:
        messages.append({"role": "system", "content": block})
    messages.append({"role": "user", "content": user_content})
    if search_context:
        messages.append({"role": "system", "content": search_context})
    if topic_instruction:
        messages.append({"role": "system", "content": topic_instruction})
    return messages
