"""Clientes de servicios externos."""

from .backend import ArtifactPayload, GenerationBackend

__all__ = ["ArtifactPayload", "GenerationBackend"]
