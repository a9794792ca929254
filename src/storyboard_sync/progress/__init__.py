"""Monitoreo del progreso: canal SSE, polling y la transición entre ambos."""

from .stream import ProgressStreamClient, StreamFailure, StreamHandlers
from .polling import PollingController
from .monitor import Monitor, NotMonitoring, Polling, Streaming

__all__ = [
    "ProgressStreamClient",
    "StreamFailure",
    "StreamHandlers",
    "PollingController",
    "Monitor",
    "NotMonitoring",
    "Polling",
    "Streaming",
]
