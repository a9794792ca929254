"""
Sincronización del progreso de generación de storyboards.

Componentes:
- JobOrchestrator: Ciclo de vida de la generación y operaciones del documento
- GenerationBackend: Cliente HTTP/SSE del servidor de generación
- ArtifactRegistry: Cache compartido de artefactos
- ConsoleProgressView: Vista de consola basada en rich
"""

from .config import SyncSettings, configure_logging, load_settings
from .domain.events import JobState
from .domain.models import Clip, Document, GenerationStatus, JobStatus, ProgressSnapshot
from .infrastructure.backend import GenerationBackend
from .orchestrator import JobOrchestrator
from .ui.console import ConsoleProgressView
from .utils.cache import ArtifactRegistry

__all__ = [
    "SyncSettings",
    "configure_logging",
    "load_settings",
    "JobState",
    "Clip",
    "Document",
    "GenerationStatus",
    "JobStatus",
    "ProgressSnapshot",
    "GenerationBackend",
    "JobOrchestrator",
    "ConsoleProgressView",
    "ArtifactRegistry",
]
