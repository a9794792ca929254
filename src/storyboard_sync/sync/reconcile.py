"""
Reconciliación posterior a la generación.

Al terminar un trabajo, el estado local se presume correcto pero la escritura
del servidor puede ir atrasada. Aquí se verifica contra el servidor, se
reparan los clips perdidos en tránsito y se deja el orden contiguo.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..domain.editing import find_order_problems, normalize_order
from ..domain.models import Clip, Document
from ..utils.backoff import APIError

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """Reparaciones hechas por `sync_clips`, indexadas por `order`."""
    pushed: List[int] = field(default_factory=list)
    relinked: List[int] = field(default_factory=list)
    server_only: List[int] = field(default_factory=list)
    saved: bool = False

    @property
    def repaired(self) -> bool:
        return bool(self.pushed or self.relinked)


@dataclass
class ReconcileResult:
    document: Document
    verified: bool = False
    replaced: bool = False
    order_problems: List[str] = field(default_factory=list)
    sync: Optional[SyncReport] = None

    @property
    def persisted(self) -> bool:
        """True si el servidor quedó con el mismo estado que `document`."""
        if not self.verified or self.order_problems:
            return False
        return self.sync is None or not self.sync.repaired or self.sync.saved


def _clip_signature(clips: Sequence[Clip]) -> List[dict]:
    return [c.to_wire() for c in sorted(clips, key=lambda c: c.order)]


def clips_differ(left: Sequence[Clip], right: Sequence[Clip]) -> bool:
    return _clip_signature(left) != _clip_signature(right)


class ReconciliationEngine:
    """Verifica y repara el documento contra el servidor."""

    def __init__(self, backend, max_retries: int = 3, backoff: float = 2.0):
        """
        Inicializa el motor.

        Args:
            backend: Objeto con `get_document` y `save_document`
            max_retries: Reintentos cuando el servidor aún no tiene clips
            backoff: Espera fija entre reintentos (segundos)
        """
        self.backend = backend
        self.max_retries = max_retries
        self.backoff = backoff

    async def verify(
        self,
        document_id: str,
        local_clips: Sequence[Clip],
        max_retries: Optional[int] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Optional[Document]:
        """
        Obtiene el documento del servidor tolerando el retraso de escritura.

        Si el servidor responde sin clips y localmente sí hay, se asume que
        la escritura va atrasada y se reintenta con espera fija.

        Args:
            document_id: ID del documento
            local_clips: Clips en memoria
            max_retries: Sobrescribe el límite configurado
            cancel: Evento que aborta la espera

        Returns:
            Documento del servidor, o None si no se pudo verificar
        """
        retries = self.max_retries if max_retries is None else max_retries
        attempt = 0

        while True:
            if cancel is not None and cancel.is_set():
                logger.info(f"[Reconcile] Verificación de {document_id} cancelada")
                return None

            try:
                server = await self.backend.get_document(document_id)
            except APIError as e:
                logger.warning(f"[Reconcile] No se pudo verificar {document_id}: {e}")
                return None

            if server.clips or not local_clips:
                return server

            if attempt >= retries:
                logger.warning(
                    f"[Reconcile] El servidor sigue sin clips para {document_id} "
                    f"tras {retries} reintentos; se conserva el estado local"
                )
                return None

            attempt += 1
            logger.info(
                f"[Reconcile] Servidor sin clips todavía, reintento {attempt}/{retries} "
                f"en {self.backoff}s"
            )
            if await self._wait(cancel):
                logger.info(f"[Reconcile] Verificación de {document_id} cancelada durante la espera")
                return None

    async def _wait(self, cancel: Optional[asyncio.Event]) -> bool:
        """Espera `backoff` segundos. Devuelve True si se canceló antes."""
        if cancel is None:
            await asyncio.sleep(self.backoff)
            return False
        try:
            await asyncio.wait_for(cancel.wait(), timeout=self.backoff)
        except asyncio.TimeoutError:
            return False
        return True

    async def sync_clips(
        self,
        document_id: str,
        local_clips: Sequence[Clip],
        server_document: Optional[Document] = None,
    ) -> Tuple[Document, SyncReport]:
        """
        Compara clip a clip (por `order`) y repara el servidor.

        - Local sin contraparte en el servidor: se sube.
        - Referencia de artefacto ausente o distinta en el servidor: se pisa con la local.
        - Solo en el servidor: no se toca.

        Todas las reparaciones se guardan con una única escritura.

        Returns:
            (documento resultante, reporte)
        """
        server = server_document
        if server is None:
            server = await self.backend.get_document(document_id)
        report = SyncReport()

        local_by_order: Dict[int, Clip] = {c.order: c for c in local_clips}
        server_by_order: Dict[int, Clip] = {c.order: c for c in server.clips}
        last_order = max([*local_by_order, *server_by_order], default=-1)

        repaired: Dict[int, Clip] = dict(server_by_order)
        for index in range(last_order + 1):
            local = local_by_order.get(index)
            remote = server_by_order.get(index)

            if local is not None and remote is None:
                logger.info(f"[Sync] Escena {index + 1} falta en el servidor, se sube")
                repaired[index] = local
                report.pushed.append(index)
            elif local is not None and local.artifact_id and remote.artifact_id != local.artifact_id:
                logger.info(
                    f"[Sync] Escena {index + 1}: artefacto {remote.artifact_id} -> {local.artifact_id}"
                )
                repaired[index] = remote.model_copy(update={"artifact_id": local.artifact_id})
                report.relinked.append(index)
            elif local is None and remote is not None:
                report.server_only.append(index)

        if not report.repaired:
            logger.debug(f"[Sync] {document_id} ya está sincronizado")
            return server, report

        merged = server.model_copy(update={"clips": [repaired[i] for i in sorted(repaired)]})
        try:
            await self.backend.save_document(merged)
            report.saved = True
            logger.info(
                f"[Sync] {document_id} reparado: {len(report.pushed)} subidos, "
                f"{len(report.relinked)} re-enlazados"
            )
        except APIError as e:
            logger.error(f"[Sync] No se pudo guardar la reparación de {document_id}: {e}")
        return merged, report

    async def reconcile(self, document: Document, cancel: Optional[asyncio.Event] = None) -> ReconcileResult:
        """
        Verificación + sincronización + validación de orden.

        Nunca lanza por errores de red: en el peor caso devuelve el
        documento local con el orden normalizado.
        """
        result = ReconcileResult(document=document)
        server = await self.verify(document.id, document.clips, cancel=cancel)

        if server is not None:
            result.verified = True
            merged, report = await self.sync_clips(document.id, document.clips, server)
            result.sync = report
            if clips_differ(merged.clips, document.clips):
                logger.info(f"[Reconcile] El servidor difiere, se adopta su lista de clips ({len(merged.clips)})")
                result.document = document.model_copy(update={"clips": list(merged.clips)})
                result.replaced = True

        problems = find_order_problems(result.document.clips)
        if problems:
            logger.warning(f"[Reconcile] Orden inválido en {document.id}: {'; '.join(problems)}")
            result.order_problems = problems
            result.document = result.document.model_copy(
                update={"clips": normalize_order(result.document.clips)}
            )
        return result
