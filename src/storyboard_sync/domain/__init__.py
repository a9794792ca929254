"""Modelos, eventos y transformaciones del documento."""

from .models import Clip, Document, GenerationStatus, JobSession, JobStatus, ProgressMessage, ProgressSnapshot
from .events import JobState

__all__ = [
    "Clip",
    "Document",
    "GenerationStatus",
    "JobSession",
    "JobStatus",
    "ProgressMessage",
    "ProgressSnapshot",
    "JobState",
]
