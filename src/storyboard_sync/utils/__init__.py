"""Módulo de utilidades"""

from .cache import ArtifactRegistry, ArtifactStatus, artifact_request_key
from .backoff import with_retry, APIError
from .fingerprint import document_fingerprint

__all__ = ["ArtifactRegistry", "ArtifactStatus", "artifact_request_key", "with_retry", "APIError", "document_fingerprint"]
