"""Translate inbound chat-completion requests into upstream Messages requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .errors import ValidationError

LOG = logging.getLogger(__name__)

SYSTEM_PROMPT_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class UpstreamTurn:
    """One user or assistant turn forwarded upstream."""

    role: str
    content: Any

    def to_payload(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class UpstreamRequest:
    """Upstream Messages request built once per inbound request."""

    model: str
    max_tokens: int
    turns: tuple[UpstreamTurn, ...]
    system_prompt: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the upstream JSON body; streaming is always requested."""
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "stream": True,
            "messages": [turn.to_payload() for turn in self.turns],
        }
        if self.system_prompt:
            payload["system"] = self.system_prompt
        return payload


def _normalize_turn_role(role: Any) -> str:
    """Keep `assistant`, map every other non-system role to `user`."""
    return "assistant" if role == "assistant" else "user"


def _system_text(content: Any) -> str:
    """Return system content as text: a string, or the joined `text` parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list) and all(
        isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
        for part in content
    ):
        return "".join(part["text"] for part in content)
    raise ValidationError("system message content must be text")


def _resolve_max_tokens(value: Any, default_max_tokens: int) -> int:
    """Return the requested token limit or the configured default."""
    if value is None:
        return default_max_tokens
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError("max_tokens must be a positive integer")
    return value


def translate_chat_request(
    body: dict[str, Any],
    *,
    model: str,
    default_max_tokens: int,
) -> UpstreamRequest:
    """Build the upstream request from a parsed chat-completion body.

    System messages are folded, in order, into one system prompt separated by a
    blank line. All other messages keep their order and content.
    """
    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ValidationError("messages required")

    system_parts: list[str] = []
    turns: list[UpstreamTurn] = []
    for msg in messages:
        if not isinstance(msg, dict):
            raise ValidationError("each message must be an object")
        role = msg.get("role")
        content = msg.get("content")
        if role == "system":
            if content is None:
                continue
            text = _system_text(content)
            if text:
                system_parts.append(text)
            continue
        if role not in {"user", "assistant"}:
            LOG.debug("normalizing inbound message role=%r to user", role)
        turns.append(UpstreamTurn(role=_normalize_turn_role(role), content=content))

    if not turns:
        raise ValidationError("no user/assistant messages")

    system_prompt = SYSTEM_PROMPT_SEPARATOR.join(system_parts) or None
    return UpstreamRequest(
        model=model,
        max_tokens=_resolve_max_tokens(body.get("max_tokens"), default_max_tokens),
        turns=tuple(turns),
        system_prompt=system_prompt,
    )
