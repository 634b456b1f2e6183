"""Conversation session: history, request composition, streaming merge and cancellation.

A turn moves through ``IDLE -> REQUESTED -> STREAMING`` and ends as
completed, cancelled or failed before returning to ``IDLE``. Only one turn
may be in flight per session; ``send()`` during a turn is ignored unless
that turn has already been cancelled, in which case it waits for the slot.

The engine stream is read by a producer task that feeds a bounded
``ChunkChannel``; ``send()`` consumes the channel and appends each delta to
the assistant placeholder it created for the turn. Cancelling closes the
channel, so chunks the engine still delivers afterwards are never merged.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Literal

from .config import SessionConfig
from .engines.base import EngineRef, SamplingParams
from .engines.handle import EngineHandle, EngineState, Failed
from .errors import EngineLoadError, GenerationError
from .metrics import Instrumentation, StreamMeter, TurnMetrics
from .prompts import build_request_messages
from .storage import ConfigStore
from .streaming import (
    END_OF_STREAM,
    CancellationToken,
    ChannelClosed,
    ChunkChannel,
    StreamFailure,
    extract_delta,
)

logger = logging.getLogger("policychat")


@dataclass
class Message:
    role: Literal["user", "assistant"]
    content: str


class RequestState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    STREAMING = "streaming"


class TurnOutcome(str, Enum):
    IGNORED = "ignored"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class GenerationRequest:
    model_id: str
    sampling: SamplingParams
    channel: ChunkChannel
    token: CancellationToken = field(default_factory=CancellationToken)
    messages: list[dict[str, str]] = field(default_factory=list)
    producer: asyncio.Task | None = field(default=None, repr=False)
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)


HistoryListener = Callable[[list[Message]], None]


class SessionController:
    def __init__(
        self,
        engine: EngineHandle,
        store: ConfigStore | None = None,
        instrumentation: Instrumentation | None = None,
        channel_size: int = 32,
    ) -> None:
        self._engine = engine
        self._store = store if store is not None else ConfigStore()
        self._instrumentation = instrumentation or Instrumentation()
        self._channel_size = channel_size
        self._history: list[Message] = []
        self._active: GenerationRequest | None = None
        self._state = RequestState.IDLE
        self._listeners: list[HistoryListener] = []
        self.last_request: GenerationRequest | None = None
        self.last_metrics: TurnMetrics | None = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._active is not None

    @property
    def engine_state(self) -> EngineState:
        return self._engine.state

    def engine_status(self) -> str:
        return self._engine.describe()

    def get_history(self) -> list[Message]:
        return [Message(role=m.role, content=m.content) for m in self._history]

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_config(self) -> SessionConfig:
        return self._store.get_config()

    def set_config(self, **changes: Any) -> SessionConfig:
        """Update and persist settings. The turn in flight keeps its snapshot."""
        return self._store.set_config(**changes)

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.get_history()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("[PolicyChat Session] History listener failed")

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the configured model ahead of the first message."""
        model_id = self.get_config().model_id
        outcome = await self._engine.ensure_ready(model_id)
        if isinstance(outcome, Failed):
            raise EngineLoadError(model_id, outcome.error) from outcome.error

    async def send(self, text: str) -> TurnOutcome:
        """Run one turn for *text*.

        Returns ``IGNORED`` for blank input or while another turn is in
        flight. A cancelled turn that is still winding down is awaited
        first, so cancel-then-send goes through. Otherwise returns
        ``COMPLETED`` or ``CANCELLED``. Raises
        ``EngineLoadError`` (nothing appended) or ``GenerationError``
        (partial reply kept); the session is idle again either way.
        """
        content = text.strip() if isinstance(text, str) else ""
        if not content:
            return TurnOutcome.IGNORED
        while self._active is not None:
            active = self._active
            if not active.token.cancelled:
                logger.debug("[PolicyChat Session] send() ignored: a request is already active")
                return TurnOutcome.IGNORED
            await active.done.wait()

        config = self.get_config()
        request = GenerationRequest(
            model_id=config.model_id,
            sampling=SamplingParams(temperature=config.temperature, max_tokens=config.max_tokens),
            channel=ChunkChannel(self._channel_size),
        )
        self._active = request
        self._state = RequestState.REQUESTED
        try:
            return await self._run(request, config, content)
        finally:
            await self._stop_producer(request)
            self._active = None
            self._state = RequestState.IDLE
            request.done.set()

    async def _run(self, request: GenerationRequest, config: SessionConfig, content: str) -> TurnOutcome:
        outcome = await self._engine.ensure_ready(request.model_id)
        if request.token.cancelled:
            logger.info("[PolicyChat Session] Request cancelled before streaming started")
            return TurnOutcome.CANCELLED
        if isinstance(outcome, Failed):
            raise EngineLoadError(request.model_id, outcome.error) from outcome.error

        user = Message(role="user", content=content)
        target = Message(role="assistant", content="")
        request.messages = build_request_messages([*self._history, user], config)
        self._history.extend([user, target])
        self.last_request = request
        self._state = RequestState.STREAMING
        self._notify()

        logger.info(
            f"[PolicyChat Session] Streaming {len(request.messages)} messages to {request.model_id} "
            f"(policy={'on' if config.enforce_only_policy else 'off'})"
        )
        meter = self._instrumentation.meter()
        meter.start()
        request.producer = asyncio.create_task(self._produce(outcome.engine, request))
        try:
            result = await self._consume(request, target, meter)
        finally:
            self.last_metrics = meter.finish()
        logger.info(f"[PolicyChat Session] Request {result.value} after {self.last_metrics.chunks} chunks")
        return result

    async def _produce(self, engine: EngineRef, request: GenerationRequest) -> None:
        channel = request.channel
        stream = None
        try:
            stream = engine.stream_chat(request.messages, request.sampling, request.token)
            async for chunk in stream:
                if request.token.cancelled:
                    return
                if not await channel.send(extract_delta(chunk)):
                    return
            await channel.send(END_OF_STREAM)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            await channel.send(StreamFailure(exc))
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _consume(self, request: GenerationRequest, target: Message, meter: StreamMeter) -> TurnOutcome:
        while True:
            try:
                item = await request.channel.receive()
            except ChannelClosed:
                return TurnOutcome.CANCELLED
            if item is END_OF_STREAM:
                return TurnOutcome.COMPLETED
            if isinstance(item, StreamFailure):
                if request.token.cancelled:
                    return TurnOutcome.CANCELLED
                logger.warning(f"[PolicyChat Session] Generation failed: {item.error}")
                raise GenerationError(
                    f"Generation failed: {item.error}", partial=target.content
                ) from item.error
            if not item:
                continue
            if not self._history or self._history[-1] is not target:
                return TurnOutcome.CANCELLED
            target.content += item
            meter.record(item)
            self._notify()

    async def _stop_producer(self, request: GenerationRequest) -> None:
        task = request.producer
        if task is None:
            return
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def cancel(self) -> bool:
        """Signal the active turn to stop at the next chunk boundary.

        Partial assistant content stays in the history. Returns False when
        there is nothing to cancel.
        """
        request = self._active
        if request is None or request.token.cancelled:
            return False
        logger.info("[PolicyChat Session] Cancelling active request")
        request.token.cancel()
        request.channel.close()
        if request.producer is not None and not request.producer.done():
            request.producer.cancel()
        return True

    def reset(self) -> None:
        """Clear the history, cancelling any turn still in flight."""
        self.cancel()
        self._history.clear()
        self._notify()
