"""
Estado de monitoreo de una generación: sin monitoreo, polling o SSE.

Un único campo guarda la variante actual y una única transición desmonta
la anterior antes de instalar la nueva.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .polling import CompleteCallback, ErrorCallback, PollingController, SessionCallback, UpdateCallback
from .stream import ProgressStreamClient, StreamHandlers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotMonitoring:
    pass


@dataclass(frozen=True)
class Polling:
    document_id: str
    conditional: bool = True


@dataclass(frozen=True)
class Streaming:
    session_id: str


MonitorState = Union[NotMonitoring, Polling, Streaming]
NOT_MONITORING = NotMonitoring()


class Monitor:
    """Dueño exclusivo del cliente SSE y del controlador de polling."""

    def __init__(self, stream: ProgressStreamClient, poller: PollingController):
        self.stream_client = stream
        self.poller = poller
        self.state: MonitorState = NOT_MONITORING

    @property
    def is_active(self) -> bool:
        return not isinstance(self.state, NotMonitoring)

    def stream(self, session_id: str, handlers: StreamHandlers) -> bool:
        """Pasa a SSE; con la misma sesión ya conectada no hace nada."""
        if (
            isinstance(self.state, Streaming)
            and self.state.session_id == session_id
            and self.stream_client.active_session_id == session_id
        ):
            logger.debug(f"[Monitor] Ya escuchando la sesión {session_id}")
            return False

        self._transition(Streaming(session_id), lambda: self.stream_client.attach(session_id, handlers))
        return True

    def poll_conditional(
        self,
        document_id: str,
        interval: float,
        on_session_available: SessionCallback,
        on_update: UpdateCallback,
        on_complete: CompleteCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._transition(
            Polling(document_id, conditional=True),
            lambda: self.poller.start_conditional(
                document_id, interval, on_session_available, on_update, on_complete, on_error,
            ),
        )

    def poll(
        self,
        document_id: str,
        interval: float,
        on_complete: CompleteCallback,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._transition(
            Polling(document_id, conditional=False),
            lambda: self.poller.start_polling(document_id, interval, on_complete, on_update, on_error),
        )

    def stop(self) -> None:
        self._transition(NOT_MONITORING, None)

    def release(self, session_id: str) -> None:
        """El canal de `session_id` terminó por sí solo; olvida la variante si sigue siendo esa."""
        if isinstance(self.state, Streaming) and self.state.session_id == session_id:
            self.state = NOT_MONITORING

    def _transition(self, next_state: MonitorState, install: Optional[Callable[[], object]]) -> None:
        self._teardown(self.state)
        if self.state != next_state:
            logger.debug(f"[Monitor] {self.state} -> {next_state}")
        self.state = NOT_MONITORING
        if install is not None:
            install()
        self.state = next_state

    def _teardown(self, state: MonitorState) -> None:
        if isinstance(state, Streaming):
            # Solo se cierra lo que sigue siendo de esta variante
            if self.stream_client.active_session_id == state.session_id:
                self.stream_client.detach()
        elif isinstance(state, Polling):
            if self.poller.document_id == state.document_id:
                self.poller.stop()
