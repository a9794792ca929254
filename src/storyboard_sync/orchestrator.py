"""
Orquestador de Generación
Coordina el ciclo de vida de un trabajo de generación sobre el documento
actual: inicializar, arrancar, monitorear (SSE o polling), reconciliar al
terminar y notificar a la UI.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .config import SyncSettings
from .domain import editing
from .domain.events import (
    ActiveClipChanged,
    DocumentChanged,
    GenerationIndicatorChanged,
    JobState,
    JobStateChanged,
    Listener,
    OrchestratorEvent,
    ProgressChanged,
    UserNotification,
)
from .domain.models import Clip, Document, JobSession, JobStatus, ProgressSnapshot
from .progress.monitor import Monitor
from .progress.polling import PollingController
from .progress.stream import (
    GENERATION_FAILED_MESSAGE,
    LOST_CONNECTION_MESSAGE,
    ProgressStreamClient,
    StreamFailure,
    StreamHandlers,
)
from .sync.artifacts import ArtifactLoader
from .sync.autosave import AutoSaveDebouncer
from .sync.reconcile import ReconciliationEngine, clips_differ
from .sync.state import DocumentStore
from .utils.backoff import APIError, NotFoundError
from .utils.cache import ArtifactRegistry

logger = logging.getLogger(__name__)

_FINAL_STATES = {
    JobStatus.COMPLETED: JobState.COMPLETED,
    JobStatus.COMPLETED_WITH_ERRORS: JobState.COMPLETED_WITH_ERRORS,
    JobStatus.FAILED: JobState.FAILED,
}
_ACTIVE_STATES = (JobState.INITIALIZING, JobState.GENERATING)


@dataclass
class _Job:
    """Identidad de un trabajo. Los callbacks comparan contra el trabajo activo."""
    number: int
    document_id: Optional[str] = None
    session_id: Optional[str] = None
    stream_failures: int = 0
    finished: bool = False
    cancel: asyncio.Event = field(default_factory=asyncio.Event)


class JobOrchestrator:
    """
    Punto único de control del documento y de su generación.

    Máquina de estados:
    Idle -> Initializing -> Generating -> {Completed | CompletedWithErrors | Failed} -> Idle
    """

    def __init__(
        self,
        backend,
        settings: Optional[SyncSettings] = None,
        registry: Optional[ArtifactRegistry] = None,
        document: Optional[Document] = None,
    ):
        """
        Inicializa el orquestador.

        Args:
            backend: GenerationBackend (o un doble con la misma interfaz)
            settings: Configuración; por defecto SyncSettings()
            registry: Registro de artefactos compartido por la aplicación
            document: Documento inicial; por defecto uno nuevo vacío
        """
        self.settings = settings or SyncSettings()
        self.backend = backend
        self.registry = registry or ArtifactRegistry(min_content_length=self.settings.min_artifact_size)

        # Subsistemas
        self.artifacts = ArtifactLoader(self.registry, backend, self.settings.list_cache_max_age)
        self.stream = ProgressStreamClient(backend)
        self.poller = PollingController(backend, max_failures=self.settings.max_poll_failures)
        self.monitor = Monitor(self.stream, self.poller)
        self.reconciler = ReconciliationEngine(
            backend,
            max_retries=self.settings.verify_max_retries,
            backoff=self.settings.verify_backoff,
        )
        self.autosave = AutoSaveDebouncer(self._save_document, self.settings.autosave_quiet_period)
        self.store = DocumentStore(
            document or editing.new_document(),
            on_change=lambda doc: self._emit(DocumentChanged(doc)),
            on_select=lambda clip_id: self._emit(ActiveClipChanged(clip_id)),
        )

        self.state = JobState.IDLE
        self.progress = ProgressSnapshot()
        self.generation_indicator = False
        self._listeners: List[Listener] = []
        self._job: Optional[_Job] = None
        self._job_numbers = itertools.count(1)
        self._finalize_task: Optional[asyncio.Task] = None
        self._not_found: Set[str] = set()

    # ------------------------------------------------------------------
    # Observadores
    # ------------------------------------------------------------------

    @property
    def document(self) -> Document:
        return self.store.document

    @property
    def active_clip_id(self) -> Optional[str]:
        return self.store.active_clip_id

    @property
    def active_session_id(self) -> Optional[str]:
        return self._job.session_id if self._job else None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Registra un listener de eventos.

        Returns:
            Función que lo da de baja
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: OrchestratorEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Listener falló procesando {type(event).__name__}")

    def _notify(self, level: str, message: str) -> None:
        self._emit(UserNotification(level, message))

    def _set_state(self, state: JobState) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        logger.info(f"Estado del trabajo: {previous.value} -> {state.value}")
        self._emit(JobStateChanged(previous, state))

    def _set_indicator(self, visible: bool) -> None:
        if visible == self.generation_indicator:
            return
        self.generation_indicator = visible
        self._emit(GenerationIndicatorChanged(visible))

    def _set_progress(self, snapshot: ProgressSnapshot) -> None:
        self.progress = snapshot
        self._emit(ProgressChanged(snapshot))

    # ------------------------------------------------------------------
    # Trabajos
    # ------------------------------------------------------------------

    def _begin_job(self, document_id: Optional[str] = None, session_id: Optional[str] = None) -> _Job:
        self._abandon_job()
        job = _Job(next(self._job_numbers), document_id, session_id)
        self._job = job
        return job

    def _abandon_job(self) -> None:
        """Desmonta lo que pertenece al trabajo activo sin tocar el documento."""
        job = self._job
        self.monitor.stop()
        if job is not None:
            job.cancel.set()
            logger.debug(f"Trabajo #{job.number} abandonado")
        self._job = None

    def _is_current(self, job: _Job) -> bool:
        return job is self._job and not job.finished

    async def generate(
        self,
        prompt: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        num_scenes: Optional[int] = None,
        existing_document_id: Optional[str] = None,
    ) -> Optional[Document]:
        """
        Inicia una generación nueva.

        Args:
            prompt: Descripción de la película
            provider: Proveedor de IA (por defecto el configurado)
            model: Modelo concreto del proveedor
            num_scenes: Número de escenas pedido
            existing_document_id: Reutilizar un documento del servidor

        Returns:
            Documento inicial devuelto por el servidor, o None si falló
        """
        job = self._begin_job()
        self.autosave.cancel()
        self._set_state(JobState.IDLE)
        self._set_state(JobState.INITIALIZING)
        self._set_indicator(True)
        self._set_progress(ProgressSnapshot(total=num_scenes or 0))

        try:
            session_id, document = await self.backend.initialize(
                prompt,
                provider=provider or self.settings.default_provider,
                model=model,
                num_scenes=num_scenes,
                existing_document_id=existing_document_id,
            )
        except APIError as e:
            if job is self._job:
                self._fail_start(job, e)
            return None

        if job is not self._job:
            logger.info(f"Trabajo #{job.number} reemplazado durante initialize, se descarta")
            return None

        job.document_id = document.id
        job.session_id = session_id
        self._adopt(document)
        self.autosave.mark_persisted(document)

        # El canal se abre antes de arrancar para no perder los primeros mensajes
        self.monitor.stream(session_id, self._stream_handlers(job))

        try:
            await self.backend.start(session_id, document.id)
        except APIError as e:
            if job is self._job:
                self._fail_start(job, e)
            return None

        if job is self._job and self.state == JobState.INITIALIZING:
            self._set_state(JobState.GENERATING)
        return document

    def _fail_start(self, job: _Job, error: APIError) -> None:
        logger.error(f"No se pudo iniciar la generación: {error}")
        job.finished = True
        self.monitor.stop()
        self._set_state(JobState.FAILED)
        self._set_indicator(False)
        self._notify("error", str(error))

    def _adopt(self, document: Document) -> None:
        """Sustituye el documento actual por uno que viene del servidor."""
        self.stream.reset_dedup()
        self.stream.remember(document.clips)
        self.store.replace(document)

    # ------------------------------------------------------------------
    # Callbacks de monitoreo
    # ------------------------------------------------------------------

    def _stream_handlers(self, job: _Job) -> StreamHandlers:
        return StreamHandlers(
            on_progress=lambda snapshot: self._on_progress(job, snapshot),
            on_clip_arrived=lambda clip: self._on_clip(job, clip),
            on_complete=lambda document_id: self._on_stream_complete(job, document_id),
            on_error=lambda failure: self._on_stream_error(job, failure),
            on_cleanup=self.monitor.release,
        )

    def _start_conditional_poll(self, job: _Job) -> None:
        self.monitor.poll_conditional(
            job.document_id,
            self.settings.poll_interval,
            on_session_available=lambda session_id, doc: self._on_session_available(job, session_id, doc),
            on_update=lambda doc, snapshot: self._on_poll_update(job, doc, snapshot),
            on_complete=lambda doc: self._on_poll_complete(job, doc),
            on_error=lambda message: self._on_poll_error(job, message),
        )

    def _start_plain_poll(self, job: _Job) -> None:
        self.monitor.poll(
            job.document_id,
            self.settings.poll_interval,
            on_complete=lambda doc: self._on_poll_complete(job, doc),
            on_update=lambda doc, snapshot: self._on_poll_update(job, doc, snapshot),
            on_error=lambda message: self._on_poll_error(job, message),
        )

    def _on_progress(self, job: _Job, snapshot: ProgressSnapshot) -> None:
        if not self._is_current(job):
            return
        self.store.apply(lambda doc: editing.apply_progress(doc, snapshot))
        self._set_progress(snapshot)
        if self.state == JobState.INITIALIZING and not snapshot.is_terminal:
            self._set_state(JobState.GENERATING)

    def _on_clip(self, job: _Job, clip: Clip) -> None:
        if not self._is_current(job):
            return
        self.store.apply(lambda doc: editing.insert_clip(doc, clip))

    def _merge_server_clips(self, document: Document) -> None:
        self.stream.remember(document.clips)
        self.store.apply(lambda doc: editing.merge_clips(doc, document.clips))

    def _on_session_available(self, job: _Job, session_id: str, document: Document) -> None:
        if not self._is_current(job):
            return
        self._merge_server_clips(document)
        job.session_id = session_id
        self.monitor.stream(session_id, self._stream_handlers(job))

    def _on_poll_update(self, job: _Job, document: Document, snapshot: ProgressSnapshot) -> None:
        if not self._is_current(job):
            return
        self._merge_server_clips(document)
        self._on_progress(job, snapshot)

    def _on_poll_complete(self, job: _Job, document: Document) -> None:
        if not self._is_current(job):
            return
        self._merge_server_clips(document)
        status = document.generation_status
        if status is not None and status.status is not None and status.status.is_terminal:
            self._on_terminal(job, status.status, status.error)
        else:
            self._on_terminal(job, JobStatus.COMPLETED)

    def _on_poll_error(self, job: _Job, message: str) -> None:
        logger.error(f"Polling abandonado: {message}")
        self._on_terminal(job, JobStatus.FAILED, LOST_CONNECTION_MESSAGE)

    def _on_stream_complete(self, job: _Job, document_id: Optional[str]) -> None:
        status = self.progress.status if self.progress.is_terminal else JobStatus.COMPLETED
        if document_id and job.document_id and document_id != job.document_id:
            logger.warning(f"El canal reporta el documento {document_id}, se esperaba {job.document_id}")
        self._on_terminal(job, status)

    def _on_stream_error(self, job: _Job, failure: StreamFailure) -> None:
        if not failure.transport:
            self._on_terminal(job, JobStatus.FAILED, failure.message)
            return
        if not self._is_current(job):
            return

        job.stream_failures += 1
        if job.stream_failures >= self.settings.max_stream_failures:
            logger.error(f"Canal perdido {job.stream_failures} veces, se sigue solo con polling")
            self._notify("error", failure.message)
            self._start_plain_poll(job)
        else:
            logger.warning(
                f"Canal perdido ({job.stream_failures}/{self.settings.max_stream_failures}), "
                f"cambiando a polling"
            )
            self._start_conditional_poll(job)

    def _on_terminal(self, job: _Job, status: JobStatus, error: Optional[str] = None) -> None:
        """Cierre del trabajo. Corre una sola vez aunque SSE y polling lo vean a la vez."""
        if not self._is_current(job):
            logger.debug(f"Estado terminal de trabajo #{job.number} ya procesado, se ignora")
            return

        job.finished = True
        self.monitor.stop()
        self.store.apply(lambda doc: editing.mark_generation_finished(doc, status, error))
        self._set_state(_FINAL_STATES.get(status, JobState.COMPLETED))

        if status == JobStatus.FAILED:
            self._notify("error", error or GENERATION_FAILED_MESSAGE)
        elif status == JobStatus.COMPLETED_WITH_ERRORS:
            self._notify("info", f"Generación terminada con errores ({len(self.document.clips)} escenas)")

        self._finalize_task = asyncio.ensure_future(self._finalize(job, self.document))

    async def _finalize(self, job: _Job, snapshot: Document) -> None:
        """
        Reconcilia con el servidor y recién entonces cierra el indicador.

        `snapshot` es el documento al cerrar el trabajo; lo que el usuario
        edite mientras se reconcilia se conserva encima del resultado.
        """
        result = await self.reconciler.reconcile(snapshot, cancel=job.cancel)

        if job is not self._job or job.cancel.is_set():
            logger.debug(f"Trabajo #{job.number} descartado durante la reconciliación")
            return

        edited = self.document is not snapshot
        if clips_differ(result.document.clips, snapshot.clips):
            self.store.apply(lambda doc: editing.rebase_clips(doc, snapshot.clips, result.document.clips))
            self.stream.remember(self.document.clips)

        if result.persisted:
            self.autosave.mark_persisted(result.document if edited else self.document)
        if edited:
            logger.info("Ediciones durante la reconciliación, se programa un guardado")
            self.autosave.notify(self.document)

        self._set_indicator(False)
        self.store.select_default()
        if self.state == JobState.COMPLETED:
            self._notify("success", f"Generación completa: {len(self.document.clips)} escenas")

    async def wait_for_settle(self) -> None:
        """Espera a que termine la reconciliación en curso, si la hay."""
        task = self._finalize_task
        if task is not None:
            await task

    # ------------------------------------------------------------------
    # Carga y reanudación
    # ------------------------------------------------------------------

    async def load_document(self, document_id: str) -> Optional[Document]:
        """
        Carga un documento del servidor y reanuda su generación si seguía en curso.

        Un id que ya respondió 404 no se vuelve a pedir.
        """
        if document_id in self._not_found:
            logger.info(f"Documento {document_id} marcado como inexistente, no se pide")
            return None

        try:
            document = await self.backend.get_document(document_id)
        except NotFoundError:
            logger.warning(f"Documento {document_id} no encontrado")
            self._not_found.add(document_id)
            self._notify("error", f"Document {document_id} not found.")
            return None
        except APIError as e:
            logger.error(f"Error cargando {document_id}: {e}")
            self._notify("error", str(e))
            return None

        await self._flush_quietly()
        self._abandon_job()
        self.autosave.cancel()
        self._adopt(document)
        self.autosave.mark_persisted(document)
        self.store.select_default()
        self._set_state(JobState.IDLE)
        self._set_indicator(False)

        if document.in_progress:
            await self._resume(document)
        return document

    async def _resume(self, document: Document) -> None:
        status = document.generation_status
        job = self._begin_job(document.id, status.active_session_id)
        session = JobSession.from_document(document)
        logger.info(
            f"Reanudando generación de {document.id}: "
            f"{session.completed_count}/{session.total_count} escenas"
        )
        self._set_state(JobState.GENERATING)
        self._set_indicator(True)
        self._set_progress(session.snapshot())

        if status.status == JobStatus.INITIALIZING and not status.active_session_id:
            await self._restart(job, document)
        elif status.active_session_id:
            self.monitor.stream(status.active_session_id, self._stream_handlers(job))
        else:
            self._start_conditional_poll(job)

    async def _restart(self, job: _Job, document: Document) -> None:
        """Vuelve a pedir initialize/start para un trabajo que nunca arrancó."""
        logger.warning(f"Generación de {document.id} quedó en 'initializing' sin sesión, reintentando")
        total = len(document.original_scenes or []) or document.generation_status.total_scenes or None
        try:
            session_id, server_document = await self.backend.initialize(
                document.description,
                provider=document.ai_provider or self.settings.default_provider,
                model=document.ai_model,
                num_scenes=total,
                existing_document_id=document.id,
            )
            if not self._is_current(job):
                return
            job.session_id = session_id
            self._merge_server_clips(server_document)
            self.monitor.stream(session_id, self._stream_handlers(job))
            await self.backend.start(session_id, document.id)
        except APIError as e:
            logger.error(f"No se pudo reanudar la generación de {document.id}: {e}")
            self._on_terminal(job, JobStatus.FAILED, str(e))

    # ------------------------------------------------------------------
    # Reset y cierre
    # ------------------------------------------------------------------

    async def reset(self) -> Document:
        """Vuelve a Idle con un documento nuevo y limpia la sesión del servidor."""
        job = self._job
        session_id = job.session_id if job is not None and not job.finished else None

        self._abandon_job()
        self.autosave.cancel()
        if session_id:
            try:
                await self.backend.cleanup_session(session_id)
            except APIError as e:
                logger.warning(f"No se pudo limpiar la sesión {session_id}: {e}")

        self.stream.reset_dedup()
        self.store.replace(editing.new_document())
        self.store.select(None)
        self._set_progress(ProgressSnapshot())
        self._set_indicator(False)
        self._set_state(JobState.IDLE)
        return self.document

    async def close(self) -> None:
        """Guarda lo pendiente y desmonta el monitoreo."""
        await self._flush_quietly()
        self._abandon_job()
        await self.stream.close()
        task = self._finalize_task
        if task is not None and not task.done():
            await task
        logger.debug("Orquestador cerrado")

    async def _flush_quietly(self) -> None:
        try:
            await self.autosave.flush()
        except APIError as e:
            logger.error(f"No se pudo guardar el documento pendiente: {e}")

    # ------------------------------------------------------------------
    # Operaciones sobre el documento
    # ------------------------------------------------------------------

    async def _save_document(self, document: Document) -> None:
        saved_id = await self.backend.save_document(document)
        self.registry.invalidate_list("documents")
        if saved_id and saved_id != document.id and self.document.id == document.id:
            logger.info(f"El servidor asignó el id {saved_id} al documento {document.id}")
            self.store.apply(lambda doc: doc.model_copy(update={"id": saved_id}))

    def _edit(self, transform: Callable[[Document], Document]) -> Document:
        before = self.document
        after = self.store.apply(transform)
        if after is not before:
            self.autosave.notify(after)
        return after

    async def create_new_document(self, name: str = "New Movie", description: str = "") -> Document:
        await self._flush_quietly()
        self._abandon_job()
        self.autosave.cancel()
        self.stream.reset_dedup()
        self.store.replace(editing.new_document(name, description))
        self.store.select(None)
        self._set_indicator(False)
        self._set_state(JobState.IDLE)
        return self.document

    def rename(self, name: str) -> Document:
        return self._edit(lambda doc: editing.rename(doc, name))

    def update_description(self, description: str) -> Document:
        return self._edit(lambda doc: editing.set_description(doc, description))

    def add_clip(
        self,
        name: str,
        content: Optional[str] = None,
        artifact_id: Optional[str] = None,
        prompt: Optional[str] = None,
        duration_seconds: float = 5.0,
    ) -> Document:
        return self._edit(lambda doc: editing.append_clip(
            doc, name, content=content, artifact_id=artifact_id,
            prompt=prompt, duration_seconds=duration_seconds,
        ))

    def update_clip(self, clip_id: str, **changes: Any) -> Document:
        return self._edit(lambda doc: editing.update_clip(doc, clip_id, changes))

    def remove_clip(self, clip_id: str) -> Document:
        return self._edit(lambda doc: editing.remove_clip(doc, clip_id))

    def reorder_clips(self, clip_ids: List[str]) -> Document:
        return self._edit(lambda doc: editing.reorder_clips(doc, clip_ids))

    def select_clip(self, clip_id: Optional[str]) -> bool:
        return self.store.select(clip_id)

    async def save_now(self) -> bool:
        """Guarda ya. Un fallo se notifica al usuario."""
        try:
            if not await self.autosave.flush():
                await self.autosave.persist(self.document)
        except APIError as e:
            logger.error(f"Guardado manual fallido: {e}")
            self._notify("error", f"Save failed: {e}")
            return False
        self._notify("success", "Saved.")
        return True

    async def delete_document(self, document_id: str) -> bool:
        try:
            await self.backend.delete_document(document_id)
        except APIError as e:
            logger.error(f"No se pudo borrar {document_id}: {e}")
            self._notify("error", str(e))
            return False

        self.registry.invalidate_list("documents")
        if document_id == self.document.id:
            logger.info(f"Documento actual {document_id} borrado, se crea uno nuevo")
            self._abandon_job()
            self.autosave.cancel()
            self.stream.reset_dedup()
            self.store.replace(editing.new_document())
            self.store.select(None)
            self._set_indicator(False)
            self._set_state(JobState.IDLE)
        return True

    async def list_documents(self, max_age: Optional[float] = None) -> List[Dict[str, Any]]:
        age = self.settings.list_cache_max_age if max_age is None else max_age
        cached = self.registry.get_list(age, key="documents")
        if cached is not None:
            return cached
        items = await self.backend.list_documents()
        self.registry.store_list(items, key="documents")
        return items

    # ------------------------------------------------------------------
    # Contenido de clips
    # ------------------------------------------------------------------

    async def ensure_clip_content(self, clip_id: str) -> Optional[Clip]:
        """Carga el contenido de un clip que solo trae `artifact_id`."""
        clip = self.document.clip_by_id(clip_id)
        if clip is None:
            return None
        filled = await self.artifacts.fill_clip(clip)
        if filled is not clip:
            self.store.apply(lambda doc: editing.replace_clip(doc, filled))
        return filled

    async def preload_from(self, index: int, looping: bool = False) -> List[str]:
        return await self.artifacts.preload(self.document.clips, index, looping=looping)
