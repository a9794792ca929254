"""
Eventos del orquestador.
Canal explícito de notificaciones hacia la UI: cada listener registrado
recibe estos objetos en el orden en que ocurren.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from .models import Document, ProgressSnapshot


class JobState(str, Enum):
    """Máquina de estados del orquestador para el documento actual."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    GENERATING = "generating"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


@dataclass(frozen=True)
class DocumentChanged:
    document: Document


@dataclass(frozen=True)
class ProgressChanged:
    snapshot: ProgressSnapshot


@dataclass(frozen=True)
class JobStateChanged:
    previous: JobState
    current: JobState


@dataclass(frozen=True)
class ActiveClipChanged:
    clip_id: Optional[str]


@dataclass(frozen=True)
class GenerationIndicatorChanged:
    """Mostrar u ocultar el indicador de 'generando'."""
    visible: bool


@dataclass(frozen=True)
class UserNotification:
    level: str  # "info" | "success" | "error"
    message: str


OrchestratorEvent = Union[
    DocumentChanged,
    ProgressChanged,
    JobStateChanged,
    ActiveClipChanged,
    GenerationIndicatorChanged,
    UserNotification,
]

Listener = Callable[[OrchestratorEvent], None]
