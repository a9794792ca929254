"""
Carga perezosa del contenido de los clips.

Los clips pueden llegar solo con `artifact_id`; el contenido se pide al
servidor una única vez y queda en el ArtifactRegistry.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..domain.models import Clip
from ..utils.backoff import APIError
from ..utils.cache import ArtifactRegistry, ArtifactStatus, artifact_request_key

logger = logging.getLogger(__name__)

# Cuántos clips por delante se precargan
PRELOAD_AHEAD = 2


class ArtifactLoader:
    """Puente entre el registro de artefactos y el backend."""

    def __init__(self, registry: ArtifactRegistry, backend, list_max_age: float = 5.0):
        self.registry = registry
        self.backend = backend
        self.list_max_age = list_max_age

    async def load(self, artifact_id: str) -> Optional[str]:
        """
        Devuelve el contenido de un artefacto.

        Usa el registro si está disponible; si no, hace (o se une a) una
        única petición al servidor.

        Args:
            artifact_id: ID del artefacto

        Returns:
            Contenido válido o None si no se pudo obtener
        """
        entry = self.registry.get(artifact_id)
        if entry.status == ArtifactStatus.AVAILABLE:
            return entry.content

        return await self.registry.track_request(
            artifact_request_key(artifact_id),
            lambda: self._fetch(artifact_id),
        )

    async def _fetch(self, artifact_id: str) -> Optional[str]:
        self.registry.mark_loading(artifact_id)
        try:
            payload = await self.backend.get_artifact(artifact_id)
        except APIError as e:
            logger.warning(f"[Artifacts] No se pudo cargar {artifact_id}: {e}")
            self.registry.mark_failed(artifact_id)
            return None

        self.registry.store(artifact_id, payload.content, payload.metadata)
        if not self.registry.is_valid_content(payload.content):
            self.registry.mark_failed(artifact_id)
            return None
        return payload.content

    async def fill_clip(self, clip: Clip) -> Clip:
        """Completa el contenido de un clip que solo trae `artifact_id`."""
        if not clip.is_pointer:
            return clip
        content = await self.load(clip.artifact_id)
        if not content:
            return clip
        return clip.model_copy(update={"content": content})

    def _has_content(self, clip: Clip) -> bool:
        return bool(clip.content) and len(clip.content) >= self.registry.min_content_length

    async def preload(self, clips: Sequence[Clip], current_index: int, looping: bool = False) -> List[str]:
        """
        Precarga los siguientes clips a partir de `current_index`.

        Args:
            clips: Clips del documento
            current_index: Posición (orden) del clip que se está mostrando
            looping: Si la reproducción vuelve al principio al final

        Returns:
            IDs de artefactos cargados
        """
        ordered = sorted(clips, key=lambda c: c.order)
        if not ordered:
            return []

        targets: List[str] = []
        for step in range(1, PRELOAD_AHEAD + 1):
            index = current_index + step
            if index >= len(ordered):
                if not looping:
                    break
                index %= len(ordered)
            if index == current_index:
                break

            clip = ordered[index]
            if self._has_content(clip) or not clip.artifact_id:
                continue
            status = self.registry.get(clip.artifact_id).status
            if status in (ArtifactStatus.AVAILABLE, ArtifactStatus.LOADING):
                continue
            if clip.artifact_id not in targets:
                targets.append(clip.artifact_id)

        if not targets:
            return []

        logger.debug(f"[Artifacts] Precargando {len(targets)} artefactos: {targets}")
        results = await asyncio.gather(*(self.load(a) for a in targets))
        return [artifact_id for artifact_id, content in zip(targets, results) if content]

    async def list_artifacts(self, max_age: Optional[float] = None) -> List[Dict[str, Any]]:
        """Listado de artefactos, cacheado durante `max_age` segundos."""
        age = self.list_max_age if max_age is None else max_age
        cached = self.registry.get_list(age, key="artifacts")
        if cached is not None:
            return cached

        items = await self.backend.list_artifacts()
        self.registry.store_list(items, key="artifacts")
        return items
