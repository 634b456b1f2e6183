"""Engine protocol and dataclasses."""
from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Literal, Protocol

from ..streaming import CancellationToken


@dataclass
class DeviceSpec:
    kind: Literal["cuda", "cpu"]
    gpu_index: int | None


@dataclass
class EngineOptions:
    device: DeviceSpec | None = None
    compression: str | None = None
    layer_cache_dir: str = ""
    max_context: int = 4096


@dataclass(frozen=True)
class SamplingParams:
    temperature: float
    max_tokens: int


@dataclass(frozen=True)
class ChatChunk:
    delta: str = ""


class EngineRef(Protocol):
    """A loaded model that can stream chat completions."""

    def stream_chat(
        self,
        messages: list[dict[str, str]],
        sampling: SamplingParams,
        token: CancellationToken,
    ) -> AsyncIterator[ChatChunk]:
        ...

    def unload(self) -> None:
        ...


class InferenceEngine(Protocol):
    async def load(self, model_id: str, options: EngineOptions) -> EngineRef:
        ...
