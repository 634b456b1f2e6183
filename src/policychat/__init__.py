"""PolicyChat: a local chat session that streams from an on-device model under user-defined rules."""

from .config import SessionConfig
from .engines.handle import EngineHandle
from .errors import EngineLoadError, GenerationError
from .session import Message, SessionController, TurnOutcome
from .storage import ConfigStore, JsonFileBackend, MemoryBackend

__all__ = [
    "ConfigStore",
    "EngineHandle",
    "EngineLoadError",
    "GenerationError",
    "JsonFileBackend",
    "MemoryBackend",
    "Message",
    "SessionConfig",
    "SessionController",
    "TurnOutcome",
]
