"""Estado del documento, auto-guardado, reconciliación y carga de artefactos."""

from .state import DocumentStore
from .autosave import AutoSaveDebouncer
from .reconcile import ReconciliationEngine, ReconcileResult, SyncReport
from .artifacts import ArtifactLoader

__all__ = [
    "DocumentStore",
    "AutoSaveDebouncer",
    "ReconciliationEngine",
    "ReconcileResult",
    "SyncReport",
    "ArtifactLoader",
]
