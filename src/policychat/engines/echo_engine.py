"""Offline engine that streams a deterministic reply, for demos without model weights."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator

from ..streaming import CancellationToken
from .base import ChatChunk, EngineOptions, SamplingParams


class EchoChat:
    def __init__(self, model_id: str, delay_s: float) -> None:
        self.model_id = model_id
        self._delay = delay_s
        self.loaded = True

    def _reply(self, messages: list[dict[str, str]]) -> str:
        last_user = next((m["content"] for m in reversed(messages) if m["role"] == "user"), "")
        has_policy = bool(messages) and messages[0]["role"] == "system"
        prefix = "[policy] " if has_policy else ""
        return f"{prefix}You said: {last_user}"

    async def stream_chat(
        self,
        messages: list[dict[str, str]],
        sampling: SamplingParams,
        token: CancellationToken,
    ) -> AsyncIterator[ChatChunk]:
        if not self.loaded:
            raise RuntimeError("Engine not loaded")
        words = self._reply(messages).split(" ")
        # rough budget: one word per token
        for index, word in enumerate(words[: sampling.max_tokens]):
            if token.cancelled:
                return
            await asyncio.sleep(self._delay)
            yield ChatChunk(delta=word if index == 0 else f" {word}")

    def unload(self) -> None:
        self.loaded = False


class EchoEngine:
    def __init__(self, delay_s: float = 0.02) -> None:
        self._delay = delay_s

    async def load(self, model_id: str, options: EngineOptions) -> EchoChat:
        await asyncio.sleep(0)
        return EchoChat(model_id, self._delay)
