"""
Registro en memoria de artefactos generados.
Evita pedir dos veces el mismo artefacto y cachea el listado de artefactos.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

# Contenido más corto que esto es un placeholder o un stub de error
MIN_CONTENT_LENGTH = 100
DEFAULT_LIST_KEY = "artifacts"


def artifact_request_key(artifact_id: str) -> str:
    """Clave de `track_request` para la descarga de un artefacto."""
    return f"artifact:{artifact_id}"


class ArtifactStatus(str, Enum):
    AVAILABLE = "available"
    LOADING = "loading"
    FAILED = "failed"
    NOT_FOUND = "not_found"

    @property
    def safe_to_retry(self) -> bool:
        """`failed` y `not_found` se pueden reintentar; `loading` hay que esperarlo."""
        return self in (ArtifactStatus.FAILED, ArtifactStatus.NOT_FOUND)


@dataclass
class RegistryEntry:
    """Resultado de una consulta al registro."""
    artifact_id: str
    status: ArtifactStatus
    content: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ArtifactRegistry:
    """
    Cache de artefactos compartido por toda la aplicación.

    Se construye una sola vez al arrancar y se pasa por referencia a quien
    lo necesite; `clear()` lo deja como nuevo (útil entre tests).
    """

    def __init__(
        self,
        min_content_length: int = MIN_CONTENT_LENGTH,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Inicializa el registro.

        Args:
            min_content_length: Tamaño mínimo para considerar válido un artefacto
            clock: Reloj en segundos (inyectable para tests)
        """
        self.min_content_length = min_content_length
        self._clock = clock
        self._contents: Dict[str, str] = {}
        self._metadata: Dict[str, Dict[str, Any]] = {}
        self._loading: Set[str] = set()
        self._failed: Set[str] = set()
        self._pending: Dict[str, asyncio.Future] = {}
        self._list_cache: Dict[str, tuple] = {}

    def is_valid_content(self, content: Optional[str]) -> bool:
        return bool(content) and len(content) >= self.min_content_length

    def get(self, artifact_id: str) -> RegistryEntry:
        """
        Consulta el estado de un artefacto.

        Args:
            artifact_id: ID del artefacto

        Returns:
            Entrada con estado y, si está disponible, su contenido
        """
        if not artifact_id:
            return RegistryEntry(artifact_id or "", ArtifactStatus.NOT_FOUND)

        if artifact_id in self._loading:
            return RegistryEntry(artifact_id, ArtifactStatus.LOADING)

        if artifact_id in self._failed:
            return RegistryEntry(artifact_id, ArtifactStatus.FAILED)

        content = self._contents.get(artifact_id)
        if self.is_valid_content(content):
            return RegistryEntry(
                artifact_id,
                ArtifactStatus.AVAILABLE,
                content=content,
                metadata=dict(self._metadata.get(artifact_id, {})),
            )

        return RegistryEntry(artifact_id, ArtifactStatus.NOT_FOUND)

    def store(self, artifact_id: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Almacena el contenido de un artefacto.

        Un contenido por debajo del tamaño mínimo se guarda igual, pero
        nunca se reporta como `available`.

        Args:
            artifact_id: ID del artefacto
            content: Contenido generado
            metadata: Metadata opcional (name, timestamp, chat_history)
        """
        if not artifact_id:
            return

        self._contents[artifact_id] = content or ""
        if metadata:
            self._metadata[artifact_id] = {**self._metadata.get(artifact_id, {}), **metadata}

        self._loading.discard(artifact_id)
        self._failed.discard(artifact_id)

        if self.is_valid_content(content):
            logger.debug(f"[Registry] Artefacto {artifact_id} almacenado ({len(content)} bytes)")
        else:
            logger.warning(f"[Registry] Artefacto {artifact_id} demasiado corto, no queda disponible")

    def mark_loading(self, artifact_id: str) -> None:
        if not artifact_id:
            return
        self._loading.add(artifact_id)
        self._failed.discard(artifact_id)
        logger.debug(f"[Registry] Artefacto {artifact_id} marcado como cargando")

    def mark_failed(self, artifact_id: str) -> None:
        if not artifact_id:
            return
        self._failed.add(artifact_id)
        self._loading.discard(artifact_id)
        logger.debug(f"[Registry] Artefacto {artifact_id} marcado como fallido")

    def clear(self, artifact_id: Optional[str] = None) -> None:
        """
        Limpia una entrada o todo el registro.

        Args:
            artifact_id: Artefacto a limpiar, o None para limpiar todo
        """
        if artifact_id:
            self._contents.pop(artifact_id, None)
            self._metadata.pop(artifact_id, None)
            self._loading.discard(artifact_id)
            self._failed.discard(artifact_id)
            self._pending.pop(artifact_request_key(artifact_id), None)
            logger.debug(f"[Registry] Artefacto {artifact_id} limpiado")
            return

        self._contents.clear()
        self._metadata.clear()
        self._loading.clear()
        self._failed.clear()
        self._pending.clear()
        self._list_cache.clear()
        logger.debug("[Registry] Registro limpiado por completo")

    def track_request(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Awaitable[Any]:
        """
        Une peticiones concurrentes con la misma clave.

        Si ya hay una en vuelo para `key`, devuelve esa; si no, crea una con
        `factory()` y la registra hasta que termine.

        Args:
            key: Clave de la petición (ver `artifact_request_key`)
            factory: Función que crea el awaitable de la petición

        Returns:
            Awaitable con el resultado compartido
        """
        pending = self._pending.get(key)
        if pending is not None:
            logger.debug(f"[Registry] Reutilizando petición en vuelo: {key}")
            return asyncio.shield(pending)

        task = asyncio.ensure_future(factory())
        self._pending[key] = task
        logger.debug(f"[Registry] Nueva petición: {key}")

        def _done(finished: asyncio.Future) -> None:
            if self._pending.get(key) is finished:
                del self._pending[key]
            logger.debug(f"[Registry] Petición completada: {key}")

        task.add_done_callback(_done)
        return asyncio.shield(task)

    def has_pending(self, key: str) -> bool:
        return key in self._pending

    def store_list(self, items: List[Any], key: str = DEFAULT_LIST_KEY) -> None:
        """Guarda el listado con la marca de tiempo actual."""
        self._list_cache[key] = (self._clock(), list(items))
        logger.debug(f"[Registry] Listado '{key}' guardado con {len(items)} elementos")

    def get_list(self, max_age: float = 5.0, key: str = DEFAULT_LIST_KEY) -> Optional[List[Any]]:
        """
        Devuelve el listado cacheado si no es más viejo que `max_age`.

        La expiración se evalúa solo al leer.

        Args:
            max_age: Edad máxima aceptada en segundos
            key: Nombre del listado ("artifacts", "documents")

        Returns:
            Listado cacheado o None si no hay o expiró
        """
        cached = self._list_cache.get(key)
        if cached is None:
            return None

        stored_at, items = cached
        age = self._clock() - stored_at
        if age < max_age:
            logger.debug(f"[Registry] Usando listado '{key}' cacheado ({age:.2f}s)")
            return list(items)

        logger.debug(f"[Registry] Listado '{key}' expirado ({age:.2f}s)")
        return None

    def invalidate_list(self, key: str = DEFAULT_LIST_KEY) -> None:
        self._list_cache.pop(key, None)
