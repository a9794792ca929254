"""
Auto-guardado con debounce (flanco de bajada).

Guarda como mucho una vez por periodo de inactividad y siempre termina
guardando el último estado.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from ..domain.models import Document
from ..utils.backoff import APIError
from ..utils.fingerprint import document_fingerprint

logger = logging.getLogger(__name__)


class AutoSaveDebouncer:
    """Programa guardados del documento tras un periodo sin cambios."""

    def __init__(self, save: Callable[[Document], Awaitable[Any]], quiet_period: float = 2.0):
        """
        Args:
            save: Corrutina que persiste el documento
            quiet_period: Segundos sin cambios antes de guardar
        """
        self._save = save
        self.quiet_period = quiet_period
        self.save_count = 0
        self._latest: Optional[Document] = None
        self._persisted_fingerprint: Optional[str] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def notify(self, document: Document) -> bool:
        """
        Registra un cambio y reinicia el temporizador.

        Returns:
            True si quedó un guardado programado
        """
        if document_fingerprint(document) == self._persisted_fingerprint:
            logger.debug("[AutoSave] Sin cambios respecto a lo guardado, no se programa")
            self.cancel()
            return False

        self._latest = document
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.quiet_period, self._fire)
        return True

    def cancel(self) -> None:
        """Descarta el guardado pendiente sin persistir."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            logger.debug("[AutoSave] Guardado pendiente descartado")
        self._latest = None

    async def flush(self) -> bool:
        """
        Persiste ya el estado pendiente y cancela el temporizador.

        Los errores de guardado se propagan.

        Returns:
            True si había algo pendiente y se guardó
        """
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        document = self._latest
        if document is None:
            return False
        await self.persist(document)
        return True

    async def persist(self, document: Document) -> None:
        """Guarda `document` inmediatamente y actualiza la huella de referencia."""
        await self._save(document)
        self.save_count += 1
        self._persisted_fingerprint = document_fingerprint(document)
        if self._latest is document:
            self._latest = None

    def mark_persisted(self, document: Document) -> None:
        """Toma `document` como ya guardado (p. ej. tras cargarlo o reconciliarlo)."""
        self._persisted_fingerprint = document_fingerprint(document)

    async def drain(self) -> None:
        """Espera a que termine un guardado disparado por el temporizador."""
        if self._task is not None:
            await self._task

    def _fire(self) -> None:
        self._handle = None
        document = self._latest
        if document is None:
            return
        self._task = asyncio.ensure_future(self._persist_in_background(document))

    async def _persist_in_background(self, document: Document) -> None:
        try:
            await self.persist(document)
            logger.info(f"[AutoSave] Documento {document.id} guardado")
        except APIError as e:
            # Sin reintento: la próxima edición vuelve a programar un guardado
            logger.error(f"[AutoSave] Error guardando {document.id}: {e}")
