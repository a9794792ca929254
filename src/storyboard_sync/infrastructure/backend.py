"""
Cliente del Backend de Generación - Infraestructura
Habla con el servidor que genera las escenas: inicializar/arrancar sesiones,
canal de progreso (SSE), documentos y artefactos.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from ..config import SyncSettings
from ..domain.models import Document
from ..utils.backoff import (
    APIError,
    NotFoundError,
    ProtocolError,
    RequestTimeoutError,
    ServerUnreachableError,
    with_retry,
)

logger = logging.getLogger(__name__)


@dataclass
class ArtifactPayload:
    """Contenido de un artefacto tal como lo devuelve el servidor."""
    artifact_id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def _translate_transport_error(exc: httpx.HTTPError, what: str) -> APIError:
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(f"{what}: aborted due to timeout")
    return ServerUnreachableError(f"{what}: server unreachable ({exc})")


def _parse_document(data: Any, what: str) -> Document:
    try:
        return Document.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"{what}: documento inválido ({e.error_count()} errores)") from e


class GenerationBackend:
    """
    Cliente asíncrono del backend de generación.
    Una sola instancia por aplicación; cerrar con `aclose()`.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3001/api",
        request_timeout: float = 30.0,
        generation_timeout: float = 600.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.generation_timeout = generation_timeout
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=request_timeout,
        )

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "GenerationBackend":
        return cls(
            base_url=settings.api_base_url,
            request_timeout=settings.request_timeout,
            generation_timeout=settings.generation_timeout,
        )

    async def _request(
        self,
        method: str,
        path: str,
        timeout: Optional[float] = None,
        expect_object: bool = True,
        **kwargs,
    ) -> Any:
        """
        Ejecuta una petición y devuelve el JSON, traduciendo errores.

        Con `expect_object` una respuesta que no sea un objeto JSON es un
        ProtocolError; los listados pueden venir como lista.
        """
        what = f"{method} {path}"
        logger.debug(f"Petición al backend: {what}")
        try:
            response = await self.client.request(
                method,
                path,
                timeout=timeout or self.request_timeout,
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise _translate_transport_error(e, what) from e

        if response.status_code == 404:
            raise NotFoundError(f"{what}: no encontrado", status_code=404)

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ProtocolError(f"{what}: respuesta no es JSON", status_code=response.status_code) from e

        if response.is_error:
            message = data.get("error") or data.get("message") if isinstance(data, dict) else None
            raise APIError(f"{what}: {message or 'error del servidor'}", status_code=response.status_code)

        if expect_object and not isinstance(data, dict):
            raise ProtocolError(f"{what}: se esperaba un objeto JSON", status_code=response.status_code)

        return data

    async def initialize(
        self,
        prompt: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        num_scenes: Optional[int] = None,
        existing_document_id: Optional[str] = None,
    ) -> Tuple[str, Document]:
        """
        Crea (o reutiliza) un documento y una sesión de generación.

        Returns:
            (session_id, documento inicial)
        """
        payload: Dict[str, Any] = {"prompt": prompt}
        if provider:
            payload["provider"] = provider
        if model:
            payload["model"] = model
        if num_scenes:
            payload["numScenes"] = num_scenes
        if existing_document_id:
            payload["existingDocumentId"] = existing_document_id

        data = await self._request(
            "POST",
            "/movie/generate/initialize",
            json=payload,
            timeout=self.generation_timeout,
        )
        session_id = data.get("sessionId")
        if not session_id or "document" not in data:
            raise ProtocolError("initialize: falta sessionId o document en la respuesta")
        document = _parse_document(data["document"], "initialize")
        logger.info(f"Sesión {session_id} creada para documento {document.id}")
        return session_id, document

    async def start(self, session_id: str, document_id: Optional[str] = None) -> None:
        """Arranca la generación de una sesión ya inicializada."""
        body = {"movieId": document_id} if document_id else {}
        await self._request(
            "POST",
            f"/movie/generate/{session_id}/start",
            json=body,
            timeout=self.generation_timeout,
        )
        logger.info(f"Generación iniciada para sesión {session_id}")

    async def stream_progress(self, session_id: str) -> AsyncIterator[str]:
        """
        Se suscribe al canal SSE de progreso de una sesión.

        Yields:
            El campo `data` de cada evento, sin decodificar
        """
        path = f"/movie/generate/{session_id}/progress"
        timeout = httpx.Timeout(self.request_timeout, read=None)
        try:
            async with self.client.stream(
                "GET",
                path,
                timeout=timeout,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if response.status_code == 404:
                    raise NotFoundError(f"Sesión {session_id} no encontrada", status_code=404)
                if response.is_error:
                    raise APIError(f"Canal de progreso rechazado ({response.status_code})",
                                   status_code=response.status_code)

                data_lines: List[str] = []
                async for line in response.aiter_lines():
                    if not line:
                        # Línea vacía: fin del evento
                        if data_lines:
                            yield "\n".join(data_lines)
                            data_lines = []
                        continue
                    if line.startswith(":"):
                        continue
                    if line.startswith("data:"):
                        value = line[5:]
                        data_lines.append(value[1:] if value.startswith(" ") else value)

                if data_lines:
                    yield "\n".join(data_lines)
        except httpx.HTTPError as e:
            raise _translate_transport_error(e, f"progreso de {session_id}") from e

    async def cleanup_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/movie/generate/{session_id}")
        logger.info(f"Sesión {session_id} limpiada en el servidor")

    @with_retry(max_attempts=3, min_wait=0.5, max_wait=4.0)
    async def get_document(self, document_id: str) -> Document:
        """Obtiene el documento autoritativo del servidor."""
        data = await self._request("GET", f"/movie/{document_id}")
        if not data.get("success") or not data.get("document"):
            raise NotFoundError(f"Documento {document_id} no disponible")
        return _parse_document(data["document"], f"documento {document_id}")

    async def save_document(self, document: Document) -> str:
        """Persiste el documento y devuelve el id asignado por el servidor."""
        data = await self._request("POST", "/movie/save", json=document.to_wire())
        saved_id = data.get("id") or document.id
        logger.info(f"Documento guardado: {saved_id} ({len(document.clips)} clips)")
        return saved_id

    async def delete_document(self, document_id: str) -> bool:
        data = await self._request("DELETE", f"/movie/{document_id}")
        return bool(data.get("success"))

    async def list_documents(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/movie/list", expect_object=False)
        return data.get("documents", []) if isinstance(data, dict) else list(data)

    @with_retry(max_attempts=3, min_wait=0.5, max_wait=4.0)
    async def get_artifact(self, artifact_id: str) -> ArtifactPayload:
        """Descarga el contenido de un artefacto."""
        data = await self._request("GET", f"/movie/clip-animation/{artifact_id}")
        if not data.get("success") or "content" not in data:
            raise NotFoundError(f"Artefacto {artifact_id} no disponible")
        return ArtifactPayload(
            artifact_id=artifact_id,
            content=data.get("content") or "",
            metadata=data.get("metadata") or {},
        )

    async def list_artifacts(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/animation/list", expect_object=False)
        return data.get("artifacts", []) if isinstance(data, dict) else list(data)

    async def aclose(self) -> None:
        await self.client.aclose()
