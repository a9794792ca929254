"""
Estado del documento actual con un único punto de escritura.

Toda mutación (clips que llegan, ediciones, reconciliación) pasa por
`apply(transform)`, así el bucle de eventos las serializa.
"""
import logging
from typing import Callable, Optional

from ..domain.models import Document

logger = logging.getLogger(__name__)

Transform = Callable[[Document], Document]


class DocumentStore:
    """Documento actual y clip seleccionado."""

    def __init__(
        self,
        document: Document,
        on_change: Optional[Callable[[Document], None]] = None,
        on_select: Optional[Callable[[Optional[str]], None]] = None,
    ):
        self._document = document
        self._active_clip_id: Optional[str] = None
        self._on_change = on_change
        self._on_select = on_select

    @property
    def document(self) -> Document:
        return self._document

    @property
    def active_clip_id(self) -> Optional[str]:
        return self._active_clip_id

    def apply(self, transform: Transform) -> Document:
        """
        Aplica una transformación al estado previo.

        Si la transformación devuelve el mismo objeto no se notifica nada.
        """
        previous = self._document
        updated = transform(previous)
        if updated is previous:
            return previous

        self._document = updated
        if self._active_clip_id and updated.clip_by_id(self._active_clip_id) is None:
            logger.debug(f"El clip activo {self._active_clip_id} ya no existe")
            self.select(updated.first_clip().id if updated.clips else None)
        if self._on_change is not None:
            self._on_change(updated)
        return updated

    def replace(self, document: Document) -> Document:
        return self.apply(lambda _: document)

    def select(self, clip_id: Optional[str]) -> bool:
        """Cambia el clip activo. Un id desconocido se ignora."""
        if clip_id is not None and self._document.clip_by_id(clip_id) is None:
            logger.warning(f"No se puede seleccionar el clip {clip_id}: no existe")
            return False
        if clip_id == self._active_clip_id:
            return False
        self._active_clip_id = clip_id
        if self._on_select is not None:
            self._on_select(clip_id)
        return True

    def select_default(self) -> Optional[str]:
        """Selecciona el clip con el `order` más bajo (o ninguno)."""
        first = self._document.first_clip()
        self.select(first.id if first else None)
        return self._active_clip_id
