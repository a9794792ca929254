"""
Vista de consola del orquestador.
Pinta con rich la barra de progreso de la generación y las notificaciones.
"""

import logging
from typing import Callable, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn, TaskProgressColumn

from ..domain.events import (
    ActiveClipChanged,
    GenerationIndicatorChanged,
    JobState,
    JobStateChanged,
    OrchestratorEvent,
    ProgressChanged,
    UserNotification,
)

logger = logging.getLogger(__name__)

_LEVEL_STYLES = {
    "success": "green",
    "info": "cyan",
    "error": "red",
}

_STATE_LABELS = {
    JobState.INITIALIZING: "Inicializando generación",
    JobState.GENERATING: "Generando escenas",
    JobState.COMPLETED: "Generación completa",
    JobState.COMPLETED_WITH_ERRORS: "Generación completa con errores",
    JobState.FAILED: "Generación fallida",
}


class ConsoleProgressView:
    """Listener del orquestador que muestra el avance en la terminal."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, orchestrator) -> None:
        """Se suscribe a los eventos de `orchestrator`."""
        self.detach()
        self._unsubscribe = orchestrator.subscribe(self)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._stop_progress()

    def __call__(self, event: OrchestratorEvent) -> None:
        if isinstance(event, GenerationIndicatorChanged):
            if event.visible:
                self._start_progress()
            else:
                self._stop_progress()
        elif isinstance(event, ProgressChanged):
            self._update_progress(event)
        elif isinstance(event, JobStateChanged):
            label = _STATE_LABELS.get(event.current)
            if label:
                self.console.print(Panel(f"[bold cyan]{label}[/bold cyan]"))
        elif isinstance(event, UserNotification):
            style = _LEVEL_STYLES.get(event.level, "white")
            self.console.print(f"[{style}]{event.message}[/{style}]")
        elif isinstance(event, ActiveClipChanged) and event.clip_id:
            self.console.print(f"[dim]Clip activo: {event.clip_id}[/dim]")

    def _start_progress(self) -> None:
        if self._progress is not None:
            return
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=self.console,
        )
        self._progress.start()
        self._task = self._progress.add_task("Generando escenas...", total=None)

    def _update_progress(self, event: ProgressChanged) -> None:
        if self._progress is None or self._task is None:
            return
        snapshot = event.snapshot
        self._progress.update(
            self._task,
            total=snapshot.total or None,
            completed=snapshot.current,
            description=f"Escenas {snapshot.current}/{snapshot.total or '?'} ({snapshot.status.value})",
        )

    def _stop_progress(self) -> None:
        if self._progress is None:
            return
        self._progress.stop()
        self._progress = None
        self._task = None
