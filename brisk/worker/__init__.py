"""Task execution: the consume loop and the per-delivery state machine."""

from brisk.worker.tracer import DeliveryTracer, Outcome
from brisk.worker.worker import Worker

__all__ = ["DeliveryTracer", "Outcome", "Worker"]
