"""
Modelos de Dominio
Definen la estructura de datos central del storyboard: documento, clips,
estado de generación y los mensajes de progreso que llegan del servidor.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class JobStatus(str, Enum):
    """Estados que el servidor reporta para una sesión de generación."""
    INITIALIZING = "initializing"
    GENERATING = "generating"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.COMPLETED_WITH_ERRORS,
    JobStatus.FAILED,
})


class WireModel(BaseModel):
    """Base común: snake_case en Python, camelCase en el JSON del servidor."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        """Serializa con los nombres de campo que espera el servidor."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Clip(WireModel):
    """
    Una escena generada del storyboard.
    O trae su contenido, o apunta a un artefacto que se carga después.
    """
    id: str
    order: int = Field(..., ge=0, description="Posición de la escena (0..N-1)")
    name: str = ""
    content: Optional[str] = Field(None, description="Artefacto generado (SVG)")
    artifact_id: Optional[str] = Field(None, alias="artifactId")
    prompt: Optional[str] = None
    duration_seconds: float = Field(5.0, alias="durationSeconds", gt=0)
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    @model_validator(mode="after")
    def _content_or_reference(self) -> "Clip":
        if not self.content and not self.artifact_id:
            raise ValueError(f"El clip {self.id} no tiene contenido ni artifactId")
        return self

    @property
    def is_pointer(self) -> bool:
        """True si el contenido todavía hay que pedirlo al registro."""
        return not self.content and bool(self.artifact_id)


class GenerationStatus(WireModel):
    """Estado de generación persistido dentro del documento."""
    in_progress: bool = Field(False, alias="inProgress")
    completed_scenes: int = Field(0, alias="completedScenes", ge=0)
    total_scenes: int = Field(0, alias="totalScenes", ge=0)
    status: Optional[JobStatus] = None
    active_session_id: Optional[str] = Field(None, alias="activeSessionId")
    current_scene_index: Optional[int] = Field(None, alias="currentSceneIndex")
    started_at: Optional[datetime] = Field(None, alias="startedAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")
    paused_at: Optional[datetime] = Field(None, alias="pausedAt")
    paused_reason: Optional[str] = Field(None, alias="pausedReason")
    error: Optional[str] = None


class Document(WireModel):
    """El storyboard: unidad de persistencia en el servidor."""
    id: str
    name: str = "New Movie"
    description: str = ""
    clips: List[Clip] = Field(default_factory=list)
    generation_status: Optional[GenerationStatus] = Field(None, alias="generationStatus")
    # Plan de generación, necesario para reanudar
    original_scenes: Optional[List[Dict[str, Any]]] = Field(None, alias="originalScenes")
    ai_provider: Optional[str] = Field(None, alias="aiProvider")
    ai_model: Optional[str] = Field(None, alias="aiModel")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    @property
    def in_progress(self) -> bool:
        return bool(self.generation_status and self.generation_status.in_progress)

    def sorted_clips(self) -> List[Clip]:
        return sorted(self.clips, key=lambda c: c.order)

    def first_clip(self) -> Optional[Clip]:
        """Clip con el `order` más bajo, o None si no hay clips."""
        clips = self.sorted_clips()
        return clips[0] if clips else None

    def clip_by_id(self, clip_id: str) -> Optional[Clip]:
        for clip in self.clips:
            if clip.id == clip_id:
                return clip
        return None


class ProgressSnapshot(WireModel):
    """Vista instantánea del avance de una sesión."""
    current: int = 0
    total: int = 0
    status: JobStatus = JobStatus.INITIALIZING
    current_index: Optional[int] = Field(None, alias="currentIndex")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class NewClip(WireModel):
    clip: Clip


class ProgressData(ProgressSnapshot):
    """Carga útil de un mensaje `progress` del canal push."""
    new_clip: Optional[NewClip] = Field(None, alias="newClip")
    storyboard_id: Optional[str] = Field(None, alias="storyboardId")
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            current=self.current,
            total=self.total,
            status=self.status,
            current_index=self.current_index,
        )


class ProgressMessage(WireModel):
    """Mensaje discreto del canal de progreso: {type, data}."""
    type: str
    data: Optional[ProgressData] = None


class JobSession(WireModel):
    """
    Vista de una sesión de generación sobre `Document.generation_status`.
    No se persiste por separado.
    """
    session_id: Optional[str] = None
    status: JobStatus = JobStatus.INITIALIZING
    completed_count: int = 0
    total_count: int = 0
    current_index: Optional[int] = None

    @classmethod
    def from_document(cls, document: Document) -> Optional["JobSession"]:
        status = document.generation_status
        if status is None:
            return None
        if status.status is not None:
            job_status = status.status
        elif status.in_progress:
            job_status = JobStatus.IN_PROGRESS
        else:
            job_status = JobStatus.COMPLETED
        return cls(
            session_id=status.active_session_id,
            status=job_status,
            completed_count=status.completed_scenes,
            total_count=status.total_scenes,
            current_index=status.current_scene_index,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            current=self.completed_count,
            total=self.total_count,
            status=self.status,
            current_index=self.current_index,
        )
