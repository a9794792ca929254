"""
Transformaciones puras sobre el documento.
Cada función recibe el documento previo y devuelve uno nuevo; si no hay
cambios devuelve el mismo objeto. El DocumentStore es quien las aplica.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .models import Clip, Document, GenerationStatus, JobStatus, ProgressSnapshot

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _touch(document: Document, **changes: Any) -> Document:
    return document.model_copy(update={**changes, "updated_at": _now()})


def new_document(name: str = "New Movie", description: str = "") -> Document:
    now = _now()
    return Document(
        id=str(uuid.uuid4()),
        name=name or "New Movie",
        description=description or "",
        clips=[],
        created_at=now,
        updated_at=now,
    )


def insert_clip(document: Document, clip: Clip) -> Document:
    """
    Inserta un clip de forma idempotente.

    Un id ya presente no se vuelve a agregar. La lista resultante queda
    ordenada por `order` y los contadores de generación se actualizan.
    """
    if document.clip_by_id(clip.id) is not None:
        logger.debug(f"Clip {clip.id} ya existe en el documento, se ignora")
        return document

    clips = sorted([*document.clips, clip], key=lambda c: c.order)
    status = document.generation_status
    if status is not None:
        completed = len(clips)
        in_progress = status.in_progress
        if status.total_scenes:
            in_progress = completed < status.total_scenes
        status = status.model_copy(update={
            "completed_scenes": completed,
            "in_progress": in_progress,
        })
        logger.debug(f"Clips: {completed}/{status.total_scenes} escenas completadas")

    return document.model_copy(update={"clips": clips, "generation_status": status})


def merge_clips(document: Document, clips: Iterable[Clip]) -> Document:
    """Inserta varios clips (idempotente por id)."""
    for clip in clips:
        document = insert_clip(document, clip)
    return document


def append_clip(
    document: Document,
    name: str,
    content: Optional[str] = None,
    artifact_id: Optional[str] = None,
    prompt: Optional[str] = None,
    duration_seconds: float = 5.0,
) -> Document:
    """Agrega un clip manual al final del storyboard."""
    clip = Clip(
        id=str(uuid.uuid4()),
        order=len(document.clips),
        name=name,
        content=content,
        artifact_id=artifact_id,
        prompt=prompt,
        duration_seconds=duration_seconds,
        created_at=_now(),
    )
    return _touch(document, clips=[*document.clips, clip])


def update_clip(document: Document, clip_id: str, changes: Dict[str, Any]) -> Document:
    """Aplica cambios a un clip; un id desconocido no modifica nada."""
    if "id" in changes:
        raise ValueError("El id de un clip no se puede modificar")

    clips: List[Clip] = []
    found = False
    for clip in document.clips:
        if clip.id == clip_id:
            data = {**clip.model_dump(), **changes}
            clips.append(Clip.model_validate(data))
            found = True
        else:
            clips.append(clip)

    if not found:
        logger.warning(f"update_clip: clip {clip_id} no encontrado")
        return document
    return _touch(document, clips=sorted(clips, key=lambda c: c.order))


def replace_clip(document: Document, clip: Clip) -> Document:
    """Sustituye el clip con el mismo id (p. ej. al cargar su contenido)."""
    if document.clip_by_id(clip.id) is None:
        return document
    clips = [clip if c.id == clip.id else c for c in document.clips]
    return document.model_copy(update={"clips": clips})


def remove_clip(document: Document, clip_id: str) -> Document:
    """Elimina un clip y vuelve a numerar `order` de forma contigua."""
    remaining = [c for c in document.sorted_clips() if c.id != clip_id]
    if len(remaining) == len(document.clips):
        return document
    renumbered = [c.model_copy(update={"order": i}) for i, c in enumerate(remaining)]
    return _touch(document, clips=renumbered)


def reorder_clips(document: Document, clip_ids: List[str]) -> Document:
    """Reordena según la lista de ids, que debe ser una permutación exacta."""
    by_id = {c.id: c for c in document.clips}
    if len(clip_ids) != len(by_id) or set(clip_ids) != set(by_id):
        raise ValueError("La lista de ids no coincide con los clips del documento")
    reordered = [by_id[cid].model_copy(update={"order": i}) for i, cid in enumerate(clip_ids)]
    return _touch(document, clips=reordered)


def rename(document: Document, name: str) -> Document:
    return _touch(document, name=name)


def set_description(document: Document, description: str) -> Document:
    return _touch(document, description=description)


def apply_progress(document: Document, snapshot: ProgressSnapshot) -> Document:
    """Refleja el avance reportado por el servidor en `generation_status`."""
    status = document.generation_status or GenerationStatus(in_progress=True)
    status = status.model_copy(update={
        "completed_scenes": max(snapshot.current, len(document.clips)),
        "total_scenes": snapshot.total or status.total_scenes,
        "status": snapshot.status,
        "current_scene_index": snapshot.current_index,
        "in_progress": not snapshot.is_terminal,
    })
    return document.model_copy(update={"generation_status": status})


def mark_generation_finished(
    document: Document,
    status: JobStatus,
    error: Optional[str] = None,
) -> Document:
    """Cierra el estado de generación conservando los clips parciales."""
    current = document.generation_status or GenerationStatus()
    finished = current.model_copy(update={
        "in_progress": False,
        "status": status,
        "completed_scenes": len(document.clips),
        "active_session_id": None,
        "completed_at": _now(),
        "error": error,
    })
    return document.model_copy(update={"generation_status": finished})


def rebase_clips(document: Document, base_clips: Iterable[Clip], reconciled: Iterable[Clip]) -> Document:
    """
    Aplica la lista reconciliada sin perder ediciones posteriores a `base_clips`.

    `base_clips` es la lista que se mandó a reconciliar. Respecto de ella, los
    clips que el usuario borró no vuelven, los que editó conservan la versión
    local y los que agregó se suman al final. El orden queda contiguo.
    """
    base = {c.id: c for c in base_clips}
    current = {c.id: c for c in document.clips}

    clips: List[Clip] = []
    for clip in reconciled:
        local = current.get(clip.id)
        if clip.id in base and local is None:
            continue
        if local is not None and clip.id in base and local != base[clip.id]:
            clips.append(local)
        else:
            clips.append(clip)

    kept = {c.id for c in clips}
    clips.extend(c for c in document.sorted_clips() if c.id not in base and c.id not in kept)
    clips = normalize_order(clips)
    if clips == document.sorted_clips():
        return document
    return document.model_copy(update={"clips": clips})


def find_order_problems(clips: Iterable[Clip]) -> List[str]:
    """
    Verifica que `order` sea único y contiguo desde 0.

    Returns:
        Lista de problemas encontrados (vacía si el orden es válido)
    """
    orders = sorted(c.order for c in clips)
    problems = []
    seen = set()
    for order in orders:
        if order in seen:
            problems.append(f"order duplicado: {order}")
        seen.add(order)
    expected = set(range(len(orders)))
    missing = sorted(expected - seen)
    if missing:
        problems.append(f"huecos en order: {missing}")
    return problems


def normalize_order(clips: Iterable[Clip]) -> List[Clip]:
    """Renumera 0..N-1 respetando el orden relativo actual."""
    ordered = sorted(clips, key=lambda c: c.order)
    return [
        c if c.order == i else c.model_copy(update={"order": i})
        for i, c in enumerate(ordered)
    ]
