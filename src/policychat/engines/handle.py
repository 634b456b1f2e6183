"""Lifecycle of the single inference engine owned by a session."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Union

from .base import EngineOptions, EngineRef, InferenceEngine

logger = logging.getLogger("policychat")


@dataclass(frozen=True)
class Uninitialized:
    pass


@dataclass(frozen=True)
class Loading:
    model_id: str
    task: asyncio.Task = field(compare=False, repr=False)


@dataclass(frozen=True)
class Ready:
    model_id: str
    engine: EngineRef = field(compare=False, repr=False)


@dataclass(frozen=True)
class Failed:
    model_id: str
    error: BaseException = field(compare=False)


EngineState = Union[Uninitialized, Loading, Ready, Failed]


class EngineHandle:
    """Owns one engine instance and collapses concurrent loads into one.

    ``ensure_ready`` never raises for load failures: the outcome is returned
    as ``Failed`` and kept until the next explicit call, which retries.
    """

    def __init__(self, engine: InferenceEngine, options: EngineOptions | None = None) -> None:
        self._engine = engine
        self._options = options or EngineOptions()
        self._state: EngineState = Uninitialized()

    @property
    def state(self) -> EngineState:
        return self._state

    def describe(self) -> str:
        state = self._state
        if isinstance(state, Ready):
            return f"Model ready: {state.model_id}"
        if isinstance(state, Loading):
            return f"Loading model {state.model_id}..."
        if isinstance(state, Failed):
            return f"Model failed to load: {state.model_id}"
        return "Model not loaded"

    async def ensure_ready(self, model_id: str) -> Ready | Failed:
        while True:
            state = self._state
            if isinstance(state, Ready):
                if state.model_id == model_id:
                    return state
                logger.info(
                    f"[PolicyChat Engine] Model changed from {state.model_id} to {model_id}; reloading"
                )
                self._unload(state)
                continue
            if isinstance(state, Loading):
                outcome = await asyncio.shield(state.task)
                # a teardown may have unloaded the outcome before this waiter resumed
                if state.model_id == model_id and self._state is outcome:
                    return outcome
                continue
            self._start_load(model_id)

    def _start_load(self, model_id: str) -> None:
        task = asyncio.ensure_future(self._load(model_id))
        self._state = Loading(model_id=model_id, task=task)

    async def _load(self, model_id: str) -> Ready | Failed:
        logger.info(f"[PolicyChat Engine] Loading model {model_id}...")
        try:
            ref = await self._engine.load(model_id, self._options)
        except asyncio.CancelledError:
            self._state = Uninitialized()
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"[PolicyChat Engine] Failed to load model {model_id}: {exc}")
            outcome: Ready | Failed = Failed(model_id=model_id, error=exc)
        else:
            logger.info(f"[PolicyChat Engine] Model {model_id} ready")
            outcome = Ready(model_id=model_id, engine=ref)
        self._state = outcome
        return outcome

    def _unload(self, state: Ready) -> None:
        self._state = Uninitialized()
        try:
            state.engine.unload()
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"[PolicyChat Engine] Unload of {state.model_id} failed: {exc}")

    async def teardown(self) -> None:
        state = self._state
        if isinstance(state, Loading):
            await asyncio.shield(state.task)
            state = self._state
        if isinstance(state, Ready):
            logger.info(f"[PolicyChat Engine] Tearing down {state.model_id}")
            self._unload(state)
        else:
            self._state = Uninitialized()

    async def reinit(self, model_id: str) -> Ready | Failed:
        await self.teardown()
        return await self.ensure_ready(model_id)
