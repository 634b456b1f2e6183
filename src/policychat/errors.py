"""Error types surfaced by the session core."""
from __future__ import annotations


class PolicyChatError(Exception):
    """Base class for PolicyChat errors."""


class EngineLoadError(PolicyChatError, RuntimeError):
    def __init__(self, model_id: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to load model {model_id}{detail}")
        self.model_id = model_id
        self.cause = cause


class GenerationError(PolicyChatError, RuntimeError):
    """Raised when the engine stream fails for any reason other than cancellation."""

    def __init__(self, message: str, partial: str = "") -> None:
        super().__init__(message)
        self.partial = partial


class ConfigDecodeError(PolicyChatError, ValueError):
    """A persisted entry could not be decoded into its typed value.

    Only raised inside the storage layer, which recovers by falling back to
    the field default.
    """

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Cannot decode {key!r}: {reason}")
        self.key = key
