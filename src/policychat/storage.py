"""Persistent key-value store for session settings.

Each setting lives under its own key as a JSON document, so one corrupt
entry only ever costs that setting its value. Reads never raise and writes
are best effort: the in-memory session keeps working when the backing store
is missing, unreadable or read-only.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any, Protocol, TypeVar

from .config import SESSION_FIELDS, SessionConfig, coerce_session_field, session_default
from .errors import ConfigDecodeError

logger = logging.getLogger("policychat")

T = TypeVar("T")


class KeyValueBackend(Protocol):
    def get_item(self, key: str) -> str | None:
        ...

    def set_item(self, key: str, raw: str) -> None:
        ...


class MemoryBackend:
    """Dict-backed store. Sharing one instance between stores models a persisted backing."""

    def __init__(self, data: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(data or {})

    def get_item(self, key: str) -> str | None:
        return self.data.get(key)

    def set_item(self, key: str, raw: str) -> None:
        self.data[key] = raw


class JsonFileBackend:
    """Stores all entries as one JSON object on disk."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path).expanduser()
        self._entries: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._entries is not None:
            return self._entries
        entries: dict[str, str] = {}
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                raw = json.load(handle)
            if isinstance(raw, dict):
                entries = {str(k): v for k, v in raw.items() if isinstance(v, str)}
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as exc:
            logger.debug(f"[PolicyChat Store] Ignoring unreadable settings file {self.path}: {exc}")
        self._entries = entries
        return entries

    def get_item(self, key: str) -> str | None:
        return self._load().get(key)

    def set_item(self, key: str, raw: str) -> None:
        entries = dict(self._load())
        entries[key] = raw
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".settings-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(entries, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        self._entries = entries

    def __repr__(self) -> str:
        return f"JsonFileBackend(path={str(self.path)!r})"


def _decode(key: str, raw: str | None) -> Any:
    if raw is None:
        raise ConfigDecodeError(key, "missing")
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ConfigDecodeError(key, str(exc)) from exc


class ConfigStore:
    def __init__(self, backend: KeyValueBackend | None = None) -> None:
        self.backend: KeyValueBackend = backend if backend is not None else MemoryBackend()
        self._config = self._read_config()

    def get(self, key: str, default: T) -> T:
        try:
            raw = self.backend.get_item(key)
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"[PolicyChat Store] Read of {key!r} failed: {exc}")
            return default
        try:
            value = _decode(key, raw)
            if key in SESSION_FIELDS:
                try:
                    value = coerce_session_field(key, value)
                except ValueError as exc:
                    raise ConfigDecodeError(key, str(exc)) from exc
        except ConfigDecodeError as exc:
            if raw is not None:
                logger.debug(f"[PolicyChat Store] {exc}; using default")
            return default
        return value

    def set(self, key: str, value: Any) -> None:
        try:
            self.backend.set_item(key, json.dumps(value))
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"[PolicyChat Store] Write of {key!r} dropped: {exc}")

    def _read_config(self) -> SessionConfig:
        values = {name: self.get(name, session_default(name)) for name in SESSION_FIELDS}
        return SessionConfig(**values)

    def get_config(self) -> SessionConfig:
        return self._config

    def set_config(self, **changes: Any) -> SessionConfig:
        """Validate, apply and persist a partial settings update."""
        normalized = {name: coerce_session_field(name, value) for name, value in changes.items()}
        self._config = replace(self._config, **normalized)
        for name, value in normalized.items():
            self.set(name, value)
        return self._config
