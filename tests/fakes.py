"""
Backend en memoria para los tests.

Implementa la misma interfaz que GenerationBackend. El canal de progreso
de cada sesión es una cola: los tests empujan mensajes y el cliente los lee.
"""

import asyncio
import json
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Tuple

from storyboard_sync.domain.models import Clip, Document, GenerationStatus, JobStatus
from storyboard_sync.infrastructure.backend import ArtifactPayload
from storyboard_sync.utils.backoff import NotFoundError

CLOSE = object()


def svg(index: int) -> str:
    """Contenido de artefacto con tamaño suficiente para ser válido."""
    return f"<svg data-scene='{index}'>" + "<rect/>" * 30 + "</svg>"


def clip_payload(
    index: int,
    clip_id: Optional[str] = None,
    artifact_id: Optional[str] = None,
    with_content: bool = True,
) -> Dict[str, Any]:
    payload = {
        "id": clip_id or f"clip-{index}",
        "order": index,
        "name": f"Scene {index + 1}",
        "artifactId": artifact_id or f"art-{index}",
        "durationSeconds": 5,
    }
    if with_content:
        payload["content"] = svg(index)
    return payload


def make_clip(index: int, **kwargs: Any) -> Clip:
    return Clip.model_validate(clip_payload(index, **kwargs))


def make_document(
    document_id: str = "doc-1",
    clips: Optional[List[Clip]] = None,
    in_progress: Optional[bool] = None,
    session_id: Optional[str] = None,
    status: Optional[JobStatus] = None,
    total: int = 0,
    description: str = "",
) -> Document:
    clips = clips or []
    generation_status = None
    if in_progress is not None:
        generation_status = GenerationStatus(
            in_progress=in_progress,
            completed_scenes=len(clips),
            total_scenes=total,
            status=status,
            active_session_id=session_id,
        )
    return Document(
        id=document_id,
        name="Test Movie",
        description=description,
        clips=clips,
        generation_status=generation_status,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    """Cede el control al loop hasta que `predicate()` sea verdadero."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("La condición no se cumplió a tiempo")
        await asyncio.sleep(interval)


class FakeBackend:
    """Servidor de generación en memoria."""

    def __init__(self):
        self.documents: Dict[str, Document] = {}
        self.sessions: Dict[str, str] = {}
        self.artifacts: Dict[str, str] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.saved: List[Document] = []
        self.deleted: List[str] = []
        self.cleaned: List[str] = []
        self.stream_opened: List[str] = []
        self.artifact_fetches: Counter = Counter()
        self.document_fetches: Counter = Counter()
        self.listings: Counter = Counter()

        self.initialize_error: Optional[Exception] = None
        self.start_error: Optional[Exception] = None
        self.save_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.artifact_errors: Dict[str, Exception] = {}

        self._scripted: Dict[str, List[Any]] = {}
        self._streams: Dict[str, asyncio.Queue] = {}
        self._session_numbers = 0

    # -- Preparación -----------------------------------------------------

    def script_documents(self, document_id: str, responses: List[Any]) -> None:
        """Respuestas (Document o excepción) para los próximos `get_document`."""
        self._scripted.setdefault(document_id, []).extend(responses)

    def channel(self, session_id: str) -> asyncio.Queue:
        return self._streams.setdefault(session_id, asyncio.Queue())

    def push_raw(self, session_id: str, raw: Any) -> None:
        self.channel(session_id).put_nowait(raw)

    def push_progress(
        self,
        session_id: str,
        current: int,
        total: int,
        status: str = "generating",
        clip: Optional[Dict[str, Any]] = None,
        storyboard_id: Optional[str] = None,
        persist: bool = True,
    ) -> None:
        """
        Emite un mensaje de progreso.

        Con `persist` el clip también queda escrito en el documento del
        servidor; sin él simula una escritura perdida.
        """
        data: Dict[str, Any] = {"current": current, "total": total, "status": status}
        if clip is not None:
            data["newClip"] = {"clip": clip}
            if persist:
                self._persist_clip(session_id, clip)
        if storyboard_id:
            data["storyboardId"] = storyboard_id
        if JobStatus(status).is_terminal:
            self._finish_session(session_id, JobStatus(status))
        self.push_raw(session_id, json.dumps({"type": "progress", "data": data}))

    def close_stream(self, session_id: str) -> None:
        self.push_raw(session_id, CLOSE)

    def _persist_clip(self, session_id: str, clip: Dict[str, Any]) -> None:
        document_id = self.sessions.get(session_id)
        document = self.documents.get(document_id)
        if document is None or document.clip_by_id(clip["id"]) is not None:
            return
        clips = sorted([*document.clips, Clip.model_validate(clip)], key=lambda c: c.order)
        status = (document.generation_status or GenerationStatus()).model_copy(
            update={"completed_scenes": len(clips)}
        )
        self.documents[document_id] = document.model_copy(update={"clips": clips, "generation_status": status})

    def _finish_session(self, session_id: str, status: JobStatus) -> None:
        document_id = self.sessions.get(session_id)
        document = self.documents.get(document_id)
        if document is None:
            return
        finished = (document.generation_status or GenerationStatus()).model_copy(
            update={"in_progress": False, "status": status, "active_session_id": None}
        )
        self.documents[document_id] = document.model_copy(update={"generation_status": finished})

    # -- Interfaz de GenerationBackend -------------------------------------

    async def initialize(self, prompt, provider=None, model=None, num_scenes=None, existing_document_id=None):
        self.calls.append(("initialize", {
            "prompt": prompt,
            "provider": provider,
            "model": model,
            "num_scenes": num_scenes,
            "existing_document_id": existing_document_id,
        }))
        if self.initialize_error is not None:
            raise self.initialize_error

        self._session_numbers += 1
        session_id = f"session-{self._session_numbers}"
        status = GenerationStatus(
            in_progress=True,
            total_scenes=num_scenes or 0,
            status=JobStatus.INITIALIZING,
            active_session_id=session_id,
        )
        existing = self.documents.get(existing_document_id) if existing_document_id else None
        if existing is not None:
            document = existing.model_copy(update={"generation_status": status})
        else:
            document = Document(
                id=f"doc-{self._session_numbers}",
                description=prompt,
                generation_status=status,
                ai_provider=provider,
                ai_model=model,
            )
        self.documents[document.id] = document
        self.sessions[session_id] = document.id
        return session_id, document

    async def start(self, session_id, document_id=None):
        self.calls.append(("start", session_id))
        if self.start_error is not None:
            raise self.start_error

    async def stream_progress(self, session_id):
        self.stream_opened.append(session_id)
        queue = self.channel(session_id)
        while True:
            item = await queue.get()
            if item is CLOSE:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def cleanup_session(self, session_id):
        self.cleaned.append(session_id)

    async def get_document(self, document_id):
        self.document_fetches[document_id] += 1
        scripted = self._scripted.get(document_id)
        if scripted:
            item = scripted.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if document_id not in self.documents:
            raise NotFoundError(f"Documento {document_id} no disponible", status_code=404)
        return self.documents[document_id]

    async def save_document(self, document):
        if self.save_error is not None:
            raise self.save_error
        self.saved.append(document)
        self.documents[document.id] = document
        return document.id

    async def delete_document(self, document_id):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(document_id)
        self.documents.pop(document_id, None)
        return True

    async def list_documents(self):
        self.listings["documents"] += 1
        return [{"id": d.id, "name": d.name} for d in self.documents.values()]

    async def get_artifact(self, artifact_id):
        self.artifact_fetches[artifact_id] += 1
        # Cede el control para que otras corrutinas puedan unirse a la petición
        await asyncio.sleep(0)
        if artifact_id in self.artifact_errors:
            raise self.artifact_errors.pop(artifact_id)
        if artifact_id not in self.artifacts:
            raise NotFoundError(f"Artefacto {artifact_id} no disponible", status_code=404)
        return ArtifactPayload(artifact_id=artifact_id, content=self.artifacts[artifact_id], metadata={})

    async def list_artifacts(self):
        self.listings["artifacts"] += 1
        return [{"id": a} for a in self.artifacts]
