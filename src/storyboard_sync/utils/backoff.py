"""
Reintentos y taxonomía de errores para el backend de generación.
Implementa exponential backoff para lecturas idempotentes.
"""

import logging
from typing import Optional

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Error genérico del backend."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RequestTimeoutError(APIError):
    """La petición se abortó por el timeout del cliente."""
    pass


class ServerUnreachableError(APIError):
    """No se pudo contactar al servidor (red caída, conexión rechazada)."""
    pass


class NotFoundError(APIError):
    """El recurso pedido no existe en el servidor."""
    pass


class ProtocolError(APIError):
    """Respuesta o mensaje con formato inválido."""
    pass


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 10.0,
    exceptions: tuple = (ServerUnreachableError,),
):
    """
    Decorador para reintentar funciones con exponential backoff.

    Funciona igual con funciones síncronas y corrutinas.

    Args:
        max_attempts: Número máximo de intentos
        min_wait: Tiempo mínimo de espera entre intentos (segundos)
        max_wait: Tiempo máximo de espera entre intentos (segundos)
        exceptions: Tupla de excepciones que disparan un reintento

    Returns:
        Decorador configurado
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
