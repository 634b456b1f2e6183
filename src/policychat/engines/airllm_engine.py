"""AirLLM engine implementation."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, AsyncIterator

import torch
from airllm import AutoModel
from transformers import StoppingCriteria, StoppingCriteriaList, TextIteratorStreamer

from ..prompts import render_prompt
from ..registry import ModelRegistry
from ..streaming import CancellationToken
from .base import ChatChunk, DeviceSpec, EngineOptions, SamplingParams

logger = logging.getLogger("policychat")

_WORKER_JOIN_TIMEOUT_S = 5.0


def _ensure_safetensors_index(model_path: str) -> None:
    # AirLLM splits layers using the sharded index, single-file checkpoints lack one
    index_path = Path(model_path) / "model.safetensors.index.json"
    st_path = Path(model_path) / "model.safetensors"
    if index_path.exists() or not st_path.exists():
        return
    try:
        from safetensors import safe_open
    except ImportError:
        return
    with safe_open(str(st_path), framework="pt") as f:
        weight_map = {key: st_path.name for key in f.keys()}
    with open(index_path, "w", encoding="utf-8") as handle:
        json.dump({"metadata": {"total_size": os.path.getsize(st_path)}, "weight_map": weight_map}, handle)


def _resolve_device(spec: DeviceSpec | None) -> torch.device:
    if spec is not None and spec.kind == "cuda" and torch.cuda.is_available():
        return torch.device(f"cuda:{spec.gpu_index or 0}")
    return torch.device("cpu")


def _resolve_cache_dir(base_dir: str, model_id: str) -> str:
    if not base_dir:
        return base_dir
    slug = model_id.strip("/").replace("/", "--")
    if "{model_key}" in base_dir:
        return base_dir.replace("{model_key}", slug)
    return os.path.join(base_dir, slug)


class _StopOnEvent(StoppingCriteria):
    def __init__(self, token: CancellationToken, stop: threading.Event) -> None:
        self._token = token
        self._stop = stop

    def __call__(self, input_ids: torch.LongTensor, scores: torch.FloatTensor, **kwargs: Any) -> torch.BoolTensor:
        done = self._token.cancelled or self._stop.is_set()
        return torch.full((input_ids.shape[0],), done, dtype=torch.bool, device=input_ids.device)


class AirLLMChat:
    def __init__(self, model: Any, tokenizer: Any, device: torch.device, max_context: int) -> None:
        self._model: Any | None = model
        self._tokenizer: Any | None = tokenizer
        self._device = device
        self._max_context = max_context

    def _generate(
        self,
        prompt: str,
        sampling: SamplingParams,
        criteria: StoppingCriteriaList,
        streamer: TextIteratorStreamer,
        failure: list[BaseException],
    ) -> None:
        try:
            inputs = self._tokenizer(
                prompt,
                return_tensors="pt",
                truncation=True,
                max_length=self._max_context,
            )
            input_ids = inputs["input_ids"].to(self._device)
            attention_mask = inputs.get("attention_mask")
            if attention_mask is not None:
                attention_mask = attention_mask.to(self._device)
            kwargs: dict[str, Any] = {"do_sample": sampling.temperature > 0}
            if kwargs["do_sample"]:
                kwargs["temperature"] = sampling.temperature
            self._model.generate(
                input_ids=input_ids,
                attention_mask=attention_mask,
                max_new_tokens=sampling.max_tokens,
                use_cache=False,
                streamer=streamer,
                stopping_criteria=criteria,
                **kwargs,
            )
        except Exception as exc:  # noqa: BLE001
            failure.append(exc)
        finally:
            streamer.end()

    async def stream_chat(
        self,
        messages: list[dict[str, str]],
        sampling: SamplingParams,
        token: CancellationToken,
    ) -> AsyncIterator[ChatChunk]:
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Engine not loaded")

        prompt = render_prompt(self._tokenizer, messages)
        streamer = TextIteratorStreamer(self._tokenizer, skip_prompt=True, skip_special_tokens=True)
        stop = threading.Event()
        failure: list[BaseException] = []
        worker = threading.Thread(
            target=self._generate,
            args=(prompt, sampling, StoppingCriteriaList([_StopOnEvent(token, stop)]), streamer, failure),
            daemon=True,
        )
        worker.start()

        loop = asyncio.get_running_loop()
        try:
            while True:
                text = await loop.run_in_executor(None, next, streamer, None)
                if text is None:
                    break
                yield ChatChunk(delta=text)
        finally:
            stop.set()
            await loop.run_in_executor(None, worker.join, _WORKER_JOIN_TIMEOUT_S)

        if failure:
            raise failure[0]

    def unload(self) -> None:
        self._model = None
        self._tokenizer = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()


class AirLLMEngine:
    def __init__(self, registry: ModelRegistry | None = None) -> None:
        self._registry = registry

    async def load(self, model_id: str, options: EngineOptions) -> AirLLMChat:
        return await asyncio.to_thread(self._load_sync, model_id, options)

    def _load_sync(self, model_id: str, options: EngineOptions) -> AirLLMChat:
        device = _resolve_device(options.device)
        model_path = self._registry.resolve_path(model_id) if self._registry else model_id

        if os.path.isdir(model_path):
            _ensure_safetensors_index(model_path)

        cache_dir = _resolve_cache_dir(options.layer_cache_dir, model_id)
        if cache_dir:
            os.makedirs(cache_dir, exist_ok=True)

        logger.info(f"[PolicyChat Engine] AirLLM loading {model_path} on {device}")
        model = AutoModel.from_pretrained(
            model_path,
            layer_shards_saving_path=cache_dir or None,
            compression=options.compression,
        )
        tokenizer = getattr(model, "tokenizer", None)
        if tokenizer is None:
            raise RuntimeError("Model tokenizer not available")
        return AirLLMChat(model, tokenizer, device, options.max_context)
