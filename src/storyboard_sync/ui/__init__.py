"""Vistas de consola."""

from .console import ConsoleProgressView

__all__ = ["ConsoleProgressView"]
