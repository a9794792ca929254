"""Huella estructural estable de un documento."""

import hashlib
import json
from typing import Iterable

from ..domain.models import Document

# Campos que cambian sin alterar el significado del documento
TRANSIENT_FIELDS = frozenset({"updated_at", "generation_status"})


def document_fingerprint(document: Document, exclude: Iterable[str] = TRANSIENT_FIELDS) -> str:
    """
    Genera una clave estable a partir de los campos persistibles.

    Dos documentos con el mismo contenido relevante producen la misma huella,
    sin importar el orden de las claves ni los campos transitorios.
    """
    data = document.model_dump(mode="json", exclude=set(exclude))
    payload = json.dumps(data, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()[:16]
