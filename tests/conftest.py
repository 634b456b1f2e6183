"""Shared fakes for the session tests.

The fake engines stand in for a real model: ``ListChat`` streams a fixed
list of chunks, ``ScriptedChat`` streams whatever the test feeds it, one
stream queue per ``stream_chat`` call.
"""

import asyncio

import pytest

from policychat.engines.base import ChatChunk
from policychat.engines.handle import EngineHandle
from policychat.session import SessionController
from policychat.storage import ConfigStore, MemoryBackend

DONE = object()


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


class ListChat:
    def __init__(self, chunks, error=None):
        self.chunks = list(chunks)
        self.error = error
        self.calls = []
        self.unloaded = False

    async def stream_chat(self, messages, sampling, token):
        self.calls.append({"messages": messages, "sampling": sampling, "token": token})
        for chunk in self.chunks:
            await asyncio.sleep(0)
            yield chunk if not isinstance(chunk, str) else ChatChunk(delta=chunk)
        if self.error is not None:
            raise self.error

    def unload(self):
        self.unloaded = True


class ScriptedChat:
    def __init__(self):
        self.streams = []
        self.calls = []
        self.unloaded = False

    def feed(self, *items):
        queue = self.streams[-1]
        for item in items:
            queue.put_nowait(item)

    def finish(self):
        self.feed(DONE)

    async def stream_chat(self, messages, sampling, token):
        queue = asyncio.Queue()
        self.streams.append(queue)
        self.calls.append({"messages": messages, "sampling": sampling, "token": token})
        while True:
            item = await queue.get()
            if item is DONE:
                return
            if isinstance(item, BaseException):
                raise item
            yield ChatChunk(delta=item)

    def unload(self):
        self.unloaded = True


class FakeEngine:
    """InferenceEngine fake; ``errors`` are raised by successive loads before any succeed."""

    def __init__(self, chat_factory=None, errors=None, gate=None):
        self.chat_factory = chat_factory or (lambda model_id: ListChat([]))
        self.errors = list(errors or [])
        self.gate = gate
        self.loads = []
        self.refs = []

    async def load(self, model_id, options):
        self.loads.append(model_id)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.errors:
            raise self.errors.pop(0)
        ref = self.chat_factory(model_id)
        self.refs.append(ref)
        return ref


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend):
    return ConfigStore(backend)


@pytest.fixture
def make_controller(store):
    def _make(engine, **kwargs):
        return SessionController(EngineHandle(engine), store, **kwargs)

    return _make
