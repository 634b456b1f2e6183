from .instrumentation import Instrumentation, StreamMeter, TurnMetrics

__all__ = ["Instrumentation", "StreamMeter", "TurnMetrics"]
