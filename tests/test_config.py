"""
Tests for application config loading, prompt composition and the model registry.
"""

from unittest.mock import MagicMock

import pytest

from policychat.config import (
    AppConfig,
    EngineConfig,
    ModelSpec,
    SessionConfig,
    coerce_session_field,
    load_config,
    session_default,
)
from policychat.prompts import build_policy_message, build_request_messages, render_prompt
from policychat.registry import ModelRegistry
from policychat.session import Message


class TestLoadConfig:
    def test_full_file(self, tmp_path):
        path = tmp_path / "policychat.yaml"
        path.write_text(
            "app:\n"
            "  title: My Rules\n"
            "  port: 8000\n"
            "  engine: echo\n"
            "  settings_path: /tmp/settings.json\n"
            "  gpu_index: null\n"
            "engine:\n"
            "  compression: 4bit\n"
            "  max_context: 2048\n"
            "models:\n"
            "  - key: tiny\n"
            "    display_name: Tiny\n"
            "    local_path: /models/tiny\n"
            "  - display_name: no key\n",
            encoding="utf-8",
        )

        cfg = load_config(str(path))

        assert cfg.app.title == "My Rules"
        assert cfg.app.port == 8000
        assert cfg.app.engine == "echo"
        assert cfg.app.settings_path == "/tmp/settings.json"
        assert cfg.app.gpu_index is None
        assert cfg.app.host == AppConfig.host
        assert cfg.engine.compression == "4bit"
        assert cfg.engine.max_context == 2048
        assert cfg.engine.layer_cache_dir == EngineConfig.layer_cache_dir
        assert cfg.models == [ModelSpec(key="tiny", display_name="Tiny", local_path="/models/tiny")]

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")

        cfg = load_config(str(path))

        assert cfg.app == AppConfig()
        assert cfg.engine == EngineConfig()
        assert cfg.models == []


class TestSessionFields:
    def test_session_default(self):
        assert session_default("max_tokens") == 512
        with pytest.raises(KeyError):
            session_default("top_p")

    def test_model_id_is_stripped(self):
        assert coerce_session_field("model_id", "  tiny ") == "tiny"

    def test_temperature_is_float(self):
        value = coerce_session_field("temperature", 1)
        assert isinstance(value, float)

    def test_config_is_immutable(self):
        with pytest.raises(AttributeError):
            SessionConfig().temperature = 1.0


class TestPrompts:
    def test_policy_message(self):
        assert build_policy_message("  Be terse.\n") == {"role": "system", "content": "Be terse."}

    def test_request_with_policy(self):
        history = [Message("user", "a"), Message("assistant", "b"), Message("user", "c")]
        config = SessionConfig(policy_text="Rules", enforce_only_policy=True)

        assert build_request_messages(history, config) == [
            {"role": "system", "content": "Rules"},
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "b"},
            {"role": "user", "content": "c"},
        ]

    def test_request_without_policy(self):
        config = SessionConfig(policy_text="Rules", enforce_only_policy=False)

        assert build_request_messages([Message("user", "a")], config) == [
            {"role": "user", "content": "a"}
        ]

    def test_render_prompt_uses_chat_template(self):
        tokenizer = MagicMock()
        tokenizer.chat_template = "{{ messages }}"
        tokenizer.apply_chat_template.return_value = "<prompt>"
        messages = [{"role": "user", "content": "hi"}]

        assert render_prompt(tokenizer, messages) == "<prompt>"
        tokenizer.apply_chat_template.assert_called_once_with(
            messages, tokenize=False, add_generation_prompt=True
        )

    def test_render_prompt_fallback(self):
        tokenizer = object()
        messages = [
            {"role": "system", "content": "Be terse."},
            {"role": "user", "content": "hi"},
        ]

        assert render_prompt(tokenizer, messages) == "System: Be terse.\nUser: hi\nAssistant:"


class TestModelRegistry:
    def test_lookup_and_resolution(self):
        registry = ModelRegistry(
            [
                ModelSpec(key="tiny", display_name="Tiny", local_path="/models/tiny"),
                ModelSpec(key="hub/model", display_name="Hub", local_path=""),
            ]
        )

        assert registry.get("tiny").display_name == "Tiny"
        assert registry.resolve_path("tiny") == "/models/tiny"
        assert registry.resolve_path("hub/model") == "hub/model"
        assert registry.resolve_path("unknown/model") == "unknown/model"
        with pytest.raises(KeyError):
            registry.get("missing")

    def test_choices_keep_current_selection(self):
        registry = ModelRegistry([ModelSpec(key="tiny", display_name="Tiny", local_path="")])

        assert registry.choices("tiny") == [("Tiny", "tiny")]
        assert registry.choices("custom") == [("Tiny", "tiny"), ("custom", "custom")]
