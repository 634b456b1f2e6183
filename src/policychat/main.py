"""PolicyChat UI entrypoint."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import Any

import gradio as gr
import torch

from .config import MAX_TOKENS_RANGE, TEMPERATURE_RANGE, AppConfig, RootConfig, load_config
from .engines.base import DeviceSpec, EngineOptions, InferenceEngine
from .engines.echo_engine import EchoEngine
from .engines.handle import EngineHandle
from .errors import EngineLoadError, GenerationError
from .metrics import Instrumentation, TurnMetrics
from .registry import ModelRegistry
from .session import Message, SessionController, TurnOutcome
from .storage import ConfigStore, JsonFileBackend

logger = logging.getLogger("policychat")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="PolicyChat UI")
    parser.add_argument("--config", default="configs/policychat.yaml")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--title")
    parser.add_argument("--settings", help="Path of the persisted session settings file")
    parser.add_argument("--engine", choices=["airllm", "echo"])
    parser.add_argument("--gpu-index", type=int)
    parser.add_argument("--offline", action="store_true")
    parser.add_argument("--share", action="store_true")
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args()


def load_root_config(path: str) -> RootConfig:
    if not os.path.exists(path):
        return RootConfig()
    return load_config(path)


def apply_overrides(cfg: RootConfig, args: argparse.Namespace) -> RootConfig:
    if args.title:
        cfg.app.title = args.title
    if args.host:
        cfg.app.host = args.host
    if args.port is not None:
        cfg.app.port = args.port
    if args.settings:
        cfg.app.settings_path = args.settings
    if args.engine:
        cfg.app.engine = args.engine
    if args.gpu_index is not None:
        cfg.app.gpu_index = args.gpu_index
    if args.offline:
        cfg.app.offline_mode = True
    return cfg


def ensure_offline(cfg: AppConfig) -> None:
    if cfg.offline_mode:
        os.environ.setdefault("HF_HUB_OFFLINE", "1")
        os.environ.setdefault("TRANSFORMERS_OFFLINE", "1")


def _build_device(cfg: AppConfig) -> DeviceSpec:
    if torch.cuda.is_available() and cfg.gpu_index is not None and cfg.gpu_index >= 0:
        return DeviceSpec(kind="cuda", gpu_index=cfg.gpu_index)
    return DeviceSpec(kind="cpu", gpu_index=None)


def _build_engine(cfg: RootConfig, registry: ModelRegistry) -> InferenceEngine:
    if cfg.app.engine == "echo":
        return EchoEngine()
    from .engines.airllm_engine import AirLLMEngine

    return AirLLMEngine(registry)


def build_controller(cfg: RootConfig, registry: ModelRegistry) -> SessionController:
    options = EngineOptions(
        device=_build_device(cfg.app),
        compression=cfg.engine.compression,
        layer_cache_dir=cfg.engine.layer_cache_dir,
        max_context=cfg.engine.max_context,
    )
    handle = EngineHandle(_build_engine(cfg, registry), options)
    store = ConfigStore(JsonFileBackend(cfg.app.settings_path))
    instrumentation = Instrumentation(cfg.app.sampling_interval_ms, cfg.app.gpu_index)
    return SessionController(handle, store, instrumentation)


def _metrics_markdown(metrics: TurnMetrics | None, error: str | None = None) -> str:
    if error:
        return f"**error:** {error}"
    if metrics is None:
        return "No metrics yet."
    first = f"{metrics.first_chunk_s:.3f}" if metrics.first_chunk_s is not None else "n/a"
    ram = f"{metrics.ram_peak_mb:.2f}" if metrics.ram_peak_mb is not None else "n/a"
    vram = f"{metrics.vram_peak_mb:.2f}" if metrics.vram_peak_mb is not None else "n/a"
    return (
        f"**chars/s:** {metrics.chars_per_s:.2f}\n"
        f"**chunks:** {metrics.chunks}\n"
        f"**first_chunk_s:** {first}\n"
        f"**total_s:** {metrics.total_s:.3f}\n"
        f"**ram_peak_mb:** {ram}\n"
        f"**vram_peak_mb:** {vram}"
    )


def _to_chatbot(history: list[Message]) -> list[dict[str, str]]:
    return [{"role": m.role, "content": m.content} for m in history]


def build_app(cfg: RootConfig, controller: SessionController, registry: ModelRegistry) -> gr.Blocks:
    settings = controller.get_config()
    poll_s = max(cfg.app.stream_poll_interval_ms, 10) / 1000.0

    with gr.Blocks(title=cfg.app.title) as demo:
        gr.Markdown(f"# {cfg.app.title}")

        with gr.Row():
            with gr.Column(scale=2):
                with gr.Row():
                    status_md = gr.Markdown(controller.engine_status())
                    model_dd = gr.Dropdown(
                        label="Model",
                        choices=registry.choices(settings.model_id),
                        value=settings.model_id,
                        allow_custom_value=True,
                    )
                    init_btn = gr.Button("Init", variant="secondary")

                chatbot = gr.Chatbot(label="Chat", value=_to_chatbot(controller.get_history()))
                with gr.Row():
                    user_input = gr.Textbox(
                        label="Message",
                        placeholder="Type your message...",
                        scale=4,
                    )
                    send_btn = gr.Button("Send", variant="primary")
                    stop_btn = gr.Button("Stop", variant="secondary")
                    clear_btn = gr.Button("Clear")
                metrics_md = gr.Markdown(_metrics_markdown(None))

            with gr.Column(scale=1):
                gr.Markdown("### My Rules\nThese replace all default model behavior.")
                rules_box = gr.Textbox(value=settings.policy_text, lines=10, show_label=False)
                enforce_cb = gr.Checkbox(
                    value=settings.enforce_only_policy,
                    label="Enforce only my rules (strip defaults)",
                )
                temperature = gr.Slider(
                    minimum=TEMPERATURE_RANGE[0],
                    maximum=TEMPERATURE_RANGE[1],
                    step=0.1,
                    value=settings.temperature,
                    label="Temperature",
                )
                max_tokens = gr.Slider(
                    minimum=MAX_TOKENS_RANGE[0],
                    maximum=MAX_TOKENS_RANGE[1],
                    step=1,
                    value=settings.max_tokens,
                    label="Max tokens",
                )

        def _setter(name: str, cast: Any):
            def _apply(value: Any) -> str:
                if value is None:
                    return controller.engine_status()
                try:
                    controller.set_config(**{name: cast(value)})
                except (KeyError, ValueError) as exc:
                    gr.Warning(str(exc))
                return controller.engine_status()

            return _apply

        model_dd.change(_setter("model_id", str), inputs=model_dd, outputs=status_md)
        rules_box.change(_setter("policy_text", str), inputs=rules_box, outputs=status_md)
        enforce_cb.change(_setter("enforce_only_policy", bool), inputs=enforce_cb, outputs=status_md)
        temperature.change(_setter("temperature", float), inputs=temperature, outputs=status_md)
        max_tokens.change(_setter("max_tokens", int), inputs=max_tokens, outputs=status_md)

        async def _handle_init():
            yield controller.engine_status(), gr.update()
            try:
                await controller.initialize()
            except EngineLoadError as exc:
                yield controller.engine_status(), _metrics_markdown(None, str(exc))
                return
            yield controller.engine_status(), gr.update()

        def _status() -> str:
            status = controller.engine_status()
            return f"{status} (generating...)" if controller.is_active else status

        async def _handle_send(message: str):
            if not (message or "").strip():
                yield _to_chatbot(controller.get_history()), _status(), gr.update(), message
                return

            task = asyncio.ensure_future(controller.send(message))
            while not task.done():
                await asyncio.wait({task}, timeout=poll_s)
                if not task.done():
                    yield _to_chatbot(controller.get_history()), _status(), gr.update(), ""

            error: str | None = None
            try:
                outcome = task.result()
            except (EngineLoadError, GenerationError) as exc:
                error = str(exc)
            else:
                if outcome is TurnOutcome.IGNORED:
                    yield _to_chatbot(controller.get_history()), _status(), gr.update(), message
                    return
                if outcome is TurnOutcome.CANCELLED:
                    logger.info("[PolicyChat UI] Generation stopped by user")
            yield (
                _to_chatbot(controller.get_history()),
                _status(),
                _metrics_markdown(controller.last_metrics, error),
                "",
            )

        def _handle_stop() -> None:
            controller.cancel()

        def _handle_clear():
            controller.reset()
            return _to_chatbot(controller.get_history())

        init_btn.click(_handle_init, outputs=[status_md, metrics_md])
        send_outputs = [chatbot, status_md, metrics_md, user_input]
        send_btn.click(_handle_send, inputs=user_input, outputs=send_outputs)
        user_input.submit(_handle_send, inputs=user_input, outputs=send_outputs)
        stop_btn.click(_handle_stop, queue=False)
        clear_btn.click(_handle_clear, outputs=chatbot, queue=False)

        # eager init on page load, mirrors the Init button
        demo.load(_handle_init, outputs=[status_md, metrics_md])

    return demo


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_root_config(args.config)
    cfg = apply_overrides(cfg, args)
    ensure_offline(cfg.app)

    registry = ModelRegistry(cfg.models)
    controller = build_controller(cfg, registry)
    app = build_app(cfg, controller, registry)
    app.queue(default_concurrency_limit=cfg.app.concurrency_limit)
    app.launch(server_name=cfg.app.host, server_port=cfg.app.port, share=args.share)


if __name__ == "__main__":
    main()
