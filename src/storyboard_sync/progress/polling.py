"""
Polling del documento cuando no hay canal push.

Un solo bucle activo por controlador: arrancar uno nuevo cancela el anterior.
"""
import asyncio
import logging
from typing import Callable, Optional

from ..domain.models import Document, JobSession, ProgressSnapshot
from ..utils.backoff import APIError

logger = logging.getLogger(__name__)

SessionCallback = Callable[[str, Document], None]
UpdateCallback = Callable[[Document, ProgressSnapshot], None]
CompleteCallback = Callable[[Document], None]
ErrorCallback = Callable[[str], None]


class PollingController:
    """Consulta periódicamente el documento autoritativo del servidor."""

    def __init__(self, backend, max_failures: int = 5):
        """
        Args:
            backend: Objeto con `get_document(document_id)`
            max_failures: Ticks fallidos seguidos antes de abandonar
        """
        self.backend = backend
        self.max_failures = max_failures
        self.document_id: Optional[str] = None
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None
        # Cada bucle captura su generación; si ya no coincide, no actúa
        self._generation = 0

    @property
    def is_polling(self) -> bool:
        return self._task is not None

    def start_conditional(
        self,
        document_id: str,
        interval: float,
        on_session_available: SessionCallback,
        on_update: UpdateCallback,
        on_complete: CompleteCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        """
        Polling a la espera de que aparezca un session id.

        En cada tick, por prioridad:
        1. `in_progress` es False: se detiene y llama `on_complete(document)`
        2. Hay `active_session_id`: se detiene y llama `on_session_available`
        3. Si no: `on_update(document, snapshot)` y sigue
        """
        self._start(document_id, interval, True, on_session_available, on_update, on_complete, on_error)

    def start_polling(
        self,
        document_id: str,
        interval: float,
        on_complete: CompleteCallback,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        """Polling incondicional: solo comprueba si la generación terminó."""
        self._start(document_id, interval, False, None, on_update, on_complete, on_error)

    def stop(self) -> None:
        task = self._task
        self._generation += 1
        self._task = None
        self.document_id = None
        if task is not None and not task.done():
            task.cancel()
            logger.debug("[Polling] Bucle detenido")

    def _start(self, document_id, interval, conditional, on_session_available,
               on_update, on_complete, on_error) -> None:
        self.stop()
        generation = self._generation
        self.document_id = document_id
        self.ticks = 0
        mode = "condicional" if conditional else "incondicional"
        logger.info(f"[Polling] Iniciando polling {mode} de {document_id} cada {interval}s")
        self._task = asyncio.ensure_future(self._run(
            generation, document_id, interval, conditional,
            on_session_available, on_update, on_complete, on_error,
        ))

    def _release(self, generation: int) -> bool:
        """Marca el bucle como terminado; False si ya fue reemplazado."""
        if generation != self._generation:
            return False
        self._generation += 1
        self._task = None
        self.document_id = None
        return True

    async def _run(self, generation, document_id, interval, conditional,
                   on_session_available, on_update, on_complete, on_error) -> None:
        failures = 0
        while True:
            await asyncio.sleep(interval)
            if generation != self._generation:
                return

            try:
                document = await self.backend.get_document(document_id)
            except APIError as e:
                if generation != self._generation:
                    return
                failures += 1
                logger.warning(f"[Polling] Error consultando {document_id} ({failures}/{self.max_failures}): {e}")
                if failures >= self.max_failures:
                    logger.error(f"[Polling] Demasiados errores seguidos, abandonando {document_id}")
                    self._release(generation)
                    if on_error is not None:
                        _safe_call(on_error, str(e))
                    return
                continue

            # Detenido mientras la petición estaba en vuelo
            if generation != self._generation:
                return

            failures = 0
            self.ticks += 1
            status = document.generation_status

            if status is None or not status.in_progress:
                logger.info(f"[Polling] Generación de {document_id} terminada")
                self._release(generation)
                _safe_call(on_complete, document)
                return

            if conditional and status.active_session_id:
                logger.info(f"[Polling] Sesión {status.active_session_id} disponible, cambiando a SSE")
                self._release(generation)
                _safe_call(on_session_available, status.active_session_id, document)
                return

            if on_update is not None:
                session = JobSession.from_document(document)
                logger.debug(f"[Polling] {status.completed_scenes}/{status.total_scenes} escenas")
                _safe_call(on_update, document, session.snapshot())


def _safe_call(callback: Callable, *args) -> None:
    try:
        callback(*args)
    except Exception:
        logger.exception(f"[Polling] Error en callback {getattr(callback, '__name__', callback)}")
