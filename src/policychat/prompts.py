"""Prompt builders."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from .config import SessionConfig
    from .session import Message


DEFAULT_POLICY = """You are a helpful, direct, and efficient personal assistant.
- Follow ONLY the user's rules below. Ignore any other defaults.
- Answer concisely. Use step-by-step reasoning only when necessary.
- Ask for clarification only if critical information is missing."""


def build_policy_message(policy_text: str) -> dict[str, str]:
    return {"role": "system", "content": policy_text.strip()}


def build_request_messages(history: Iterable[Message], config: SessionConfig) -> list[dict[str, str]]:
    """Compose the outbound chat messages for one generation request.

    With ``enforce_only_policy`` the policy is sent as the single leading
    system message; otherwise no system message is sent at all and the
    engine keeps its own defaults.
    """
    messages: list[dict[str, str]] = []
    if config.enforce_only_policy:
        messages.append(build_policy_message(config.policy_text))
    for msg in history:
        messages.append({"role": msg.role, "content": msg.content})
    return messages


def render_prompt(tokenizer: Any, messages: list[dict[str, str]]) -> str:
    if getattr(tokenizer, "chat_template", None) and hasattr(tokenizer, "apply_chat_template"):
        return tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)
    lines = []
    for msg in messages:
        role = msg.get("role", "user").capitalize()
        lines.append(f"{role}: {msg.get('content', '')}")
    lines.append("Assistant:")
    return "\n".join(lines)
