from .base import ChatChunk, DeviceSpec, EngineOptions, EngineRef, InferenceEngine, SamplingParams
from .handle import EngineHandle, EngineState, Failed, Loading, Ready, Uninitialized

__all__ = [
    "ChatChunk",
    "DeviceSpec",
    "EngineHandle",
    "EngineOptions",
    "EngineRef",
    "EngineState",
    "Failed",
    "InferenceEngine",
    "Loading",
    "Ready",
    "SamplingParams",
    "Uninitialized",
]
