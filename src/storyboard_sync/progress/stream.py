"""
Cliente del canal de progreso (push).

Mantiene como máximo una suscripción abierta, descarta clips repetidos
y dispara exactamente un callback terminal por sesión.
"""
import asyncio
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Set

from pydantic import ValidationError

from ..domain.models import Clip, JobStatus, ProgressData, ProgressMessage, ProgressSnapshot
from ..utils.backoff import APIError

logger = logging.getLogger(__name__)

LOST_CONNECTION_MESSAGE = "Lost connection to server."
GENERATION_FAILED_MESSAGE = "Generation failed. Please try again."


@dataclass(frozen=True)
class StreamFailure:
    """Error reportado por el canal; `transport` distingue caída de conexión."""
    message: str
    transport: bool = False


@dataclass
class StreamHandlers:
    on_progress: Callable[[ProgressSnapshot], None]
    on_clip_arrived: Callable[[Clip], None]
    on_complete: Callable[[Optional[str]], None]
    on_error: Callable[[StreamFailure], None]
    on_cleanup: Callable[[str], None]


def _salvage_terminal_status(payload: Any) -> Optional[JobStatus]:
    """Rescata el estado de un mensaje inválido si es terminal."""
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
        return None
    try:
        status = JobStatus(payload["data"].get("status"))
    except ValueError:
        return None
    return status if status.is_terminal else None


def decode_message(raw: str) -> Optional[ProgressMessage]:
    """
    Decodifica un mensaje del canal.

    Un mensaje malformado se descarta (None), salvo que declare un estado
    terminal: en ese caso se conserva solo el estado.
    """
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"[SSE] Mensaje no es JSON, descartado: {raw[:80]!r}")
        return None

    try:
        return ProgressMessage.model_validate(payload)
    except ValidationError as e:
        status = _salvage_terminal_status(payload)
        if status is None:
            logger.warning(f"[SSE] Mensaje inválido descartado ({e.error_count()} errores)")
            return None
        logger.warning(f"[SSE] Mensaje terminal malformado, se conserva el estado {status.value}")
        data = payload["data"]
        storyboard_id = data.get("storyboardId")
        return ProgressMessage(
            type="progress",
            data=ProgressData(
                status=status,
                storyboard_id=storyboard_id if isinstance(storyboard_id, str) else None,
            ),
        )


class ProgressStreamClient:
    """Suscripción al progreso push de una sesión de generación."""

    def __init__(self, backend):
        """
        Args:
            backend: Objeto con `stream_progress(session_id)` (GenerationBackend)
        """
        self.backend = backend
        self.progress = ProgressSnapshot()
        self.subscriptions_opened = 0
        self._active_session: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        # artifact_id -> ids de clips ya entregados
        self._delivered: Dict[str, Set[str]] = {}

    @property
    def active_session_id(self) -> Optional[str]:
        return self._active_session

    @property
    def is_streaming(self) -> bool:
        return self._active_session is not None

    def attach(self, session_id: str, handlers: StreamHandlers) -> bool:
        """
        Abre la suscripción para `session_id`.

        Con el mismo id no hace nada; con otro id cierra antes la anterior.

        Returns:
            True si se abrió una suscripción nueva
        """
        if not session_id:
            logger.debug("[SSE] Sin session id, no se abre suscripción")
            return False

        if session_id == self._active_session:
            logger.info(f"[SSE] Ya conectado a la sesión {session_id}")
            return False

        if self._active_session is not None:
            logger.info(f"[SSE] Reemplazando sesión {self._active_session} por {session_id}")
            self.detach()

        self._active_session = session_id
        self.subscriptions_opened += 1
        self._task = asyncio.ensure_future(self._listen(session_id, handlers))
        return True

    def detach(self) -> None:
        """Cierra la suscripción actual sin disparar callbacks."""
        task = self._task
        self._active_session = None
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    async def close(self) -> None:
        """Cierra la suscripción y espera a que la tarea termine."""
        task = self._task
        self.detach()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def remember(self, clips: Iterable[Clip]) -> None:
        """Registra clips ya conocidos para no volver a entregarlos."""
        for clip in clips:
            if clip.artifact_id:
                self._delivered.setdefault(clip.artifact_id, set()).add(clip.id)

    def reset_dedup(self) -> None:
        self._delivered.clear()

    async def _listen(self, session_id: str, handlers: StreamHandlers) -> None:
        logger.info(f"[SSE] Conectando a la sesión {session_id}")
        try:
            async with aclosing(self.backend.stream_progress(session_id)) as messages:
                async for raw in messages:
                    if self._active_session != session_id:
                        logger.info(f"[SSE] Sesión {session_id} ya no está activa, ignorando mensaje")
                        return
                    if self._handle_raw(session_id, handlers, raw):
                        return
        except asyncio.CancelledError:
            logger.debug(f"[SSE] Suscripción a {session_id} cancelada")
            raise
        except APIError as e:
            logger.error(f"[SSE] Error de conexión en sesión {session_id}: {e}")
            self._fail_connection(session_id, handlers)
            return

        if self._active_session == session_id:
            logger.warning(f"[SSE] Canal de {session_id} cerrado sin estado terminal")
            self._fail_connection(session_id, handlers)

    def _handle_raw(self, session_id: str, handlers: StreamHandlers, raw: str) -> bool:
        """Procesa un mensaje. Devuelve True si fue terminal."""
        message = decode_message(raw)
        if message is None:
            return False

        if message.type != "progress" or message.data is None:
            logger.debug(f"[SSE] Mensaje de tipo '{message.type}' ignorado")
            return False

        data = message.data
        if data.new_clip is not None:
            self._deliver_clip(handlers, data.new_clip.clip)

        snapshot = data.snapshot()
        self.progress = snapshot
        _safe_call(handlers.on_progress, snapshot)

        if snapshot.is_terminal:
            self._finish(session_id, handlers, data)
            return True
        return False

    def _deliver_clip(self, handlers: StreamHandlers, clip: Clip) -> None:
        if clip.artifact_id:
            seen = self._delivered.setdefault(clip.artifact_id, set())
            if clip.id in seen:
                logger.info(f"[SSE] Clip {clip.id} duplicado (artefacto {clip.artifact_id}), ignorado")
                return
            seen.add(clip.id)

        logger.info(f"[SSE] Nuevo clip recibido: escena {clip.order + 1}")
        _safe_call(handlers.on_clip_arrived, clip)

    def _finish(self, session_id: str, handlers: StreamHandlers, data: ProgressData) -> None:
        # Primero dejar de escuchar, después un único callback terminal y al final cleanup
        self._active_session = None
        self._task = None

        if data.status == JobStatus.FAILED:
            logger.info(f"[SSE] Generación fallida en sesión {session_id}")
            _safe_call(handlers.on_error, StreamFailure(GENERATION_FAILED_MESSAGE))
        else:
            logger.info(f"[SSE] Generación terminada con estado: {data.status.value}")
            _safe_call(handlers.on_complete, data.storyboard_id)

        _safe_call(handlers.on_cleanup, session_id)

    def _fail_connection(self, session_id: str, handlers: StreamHandlers) -> None:
        self._active_session = None
        self._task = None
        _safe_call(handlers.on_error, StreamFailure(LOST_CONNECTION_MESSAGE, transport=True))
        _safe_call(handlers.on_cleanup, session_id)


def _safe_call(callback: Callable, *args) -> None:
    try:
        callback(*args)
    except Exception:
        logger.exception(f"[SSE] Error en callback {getattr(callback, '__name__', callback)}")
