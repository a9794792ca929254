"""Tests del cliente HTTP del backend, con respx."""

import json

import httpx
import pytest
import respx

from storyboard_sync.config import SyncSettings
from storyboard_sync.domain.models import Document
from storyboard_sync.infrastructure.backend import GenerationBackend
from storyboard_sync.utils.backoff import (
    APIError,
    NotFoundError,
    ProtocolError,
    RequestTimeoutError,
    ServerUnreachableError,
)

from fakes import clip_payload

pytestmark = pytest.mark.anyio

BASE = "http://test/api"


@pytest.fixture
async def client():
    backend = GenerationBackend.from_settings(SyncSettings(api_base_url=BASE, request_timeout=5))
    yield backend
    await backend.aclose()


def _document():
    return Document.model_validate(document_json())


def document_json(**overrides):
    data = {"id": "doc-1", "name": "Space", "clips": [clip_payload(0)]}
    data.update(overrides)
    return data


@respx.mock
async def test_initialize_sends_payload_and_parses_document(client):
    route = respx.post(f"{BASE}/movie/generate/initialize").mock(
        return_value=httpx.Response(200, json={
            "sessionId": "s1",
            "document": document_json(generationStatus={"inProgress": True, "activeSessionId": "s1"}),
        })
    )

    session_id, document = await client.initialize("a movie", provider="openai", num_scenes=5, existing_document_id="doc-1")

    assert session_id == "s1"
    assert document.generation_status.active_session_id == "s1"
    sent = json.loads(route.calls.last.request.content)
    assert sent == {"prompt": "a movie", "provider": "openai", "numScenes": 5, "existingDocumentId": "doc-1"}


@respx.mock
async def test_initialize_without_session_is_protocol_error(client):
    respx.post(f"{BASE}/movie/generate/initialize").mock(return_value=httpx.Response(200, json={"ok": True}))

    with pytest.raises(ProtocolError):
        await client.initialize("a movie")


@respx.mock
async def test_timeout_is_distinguishable(client):
    respx.post(f"{BASE}/movie/generate/s1/start").mock(side_effect=httpx.ReadTimeout("slow"))

    with pytest.raises(RequestTimeoutError) as excinfo:
        await client.start("s1")
    assert "aborted due to timeout" in str(excinfo.value)


@respx.mock
async def test_connection_failure_is_unreachable(client):
    respx.post(f"{BASE}/movie/save").mock(side_effect=httpx.ConnectError("refused"))

    with pytest.raises(ServerUnreachableError) as excinfo:
        await client.save_document(_document())
    assert "server unreachable" in str(excinfo.value)


@respx.mock
async def test_get_document_retries_unreachable_server(client):
    route = respx.get(f"{BASE}/movie/doc-1").mock(side_effect=[
        httpx.ConnectError("refused"),
        httpx.Response(200, json={"success": True, "document": document_json()}),
    ])

    document = await client.get_document("doc-1")

    assert document.id == "doc-1"
    assert route.call_count == 2


@respx.mock
async def test_get_document_not_found(client):
    respx.get(f"{BASE}/movie/missing").mock(return_value=httpx.Response(404, json={"error": "nope"}))

    with pytest.raises(NotFoundError):
        await client.get_document("missing")


@respx.mock
async def test_server_error_carries_status(client):
    respx.delete(f"{BASE}/movie/doc-1").mock(return_value=httpx.Response(500, json={"error": "disk full"}))

    with pytest.raises(APIError) as excinfo:
        await client.delete_document("doc-1")
    assert excinfo.value.status_code == 500
    assert "disk full" in str(excinfo.value)


@respx.mock
async def test_save_returns_server_id(client):
    route = respx.post(f"{BASE}/movie/save").mock(return_value=httpx.Response(200, json={"id": "doc-9"}))

    assert await client.save_document(_document()) == "doc-9"
    sent = json.loads(route.calls.last.request.content)
    assert sent["clips"][0]["artifactId"] == "art-0"


@respx.mock
async def test_stream_progress_parses_sse_events(client):
    first = json.dumps({"type": "progress", "data": {"current": 1, "total": 2, "status": "generating"}})
    second = json.dumps({"type": "progress", "data": {"current": 2, "total": 2, "status": "completed"}})
    body = f": keep-alive\n\ndata: {first}\n\nevent: progress\ndata: {second}\n\n"
    respx.get(f"{BASE}/movie/generate/s1/progress").mock(
        return_value=httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})
    )

    received = [raw async for raw in client.stream_progress("s1")]

    assert received == [first, second]


@respx.mock
async def test_stream_progress_rejected_session(client):
    respx.get(f"{BASE}/movie/generate/s1/progress").mock(return_value=httpx.Response(404))

    with pytest.raises(NotFoundError):
        async for _ in client.stream_progress("s1"):
            pass


@respx.mock
async def test_artifacts(client):
    respx.get(f"{BASE}/movie/clip-animation/art-0").mock(
        return_value=httpx.Response(200, json={"success": True, "content": "<svg/>", "metadata": {"name": "A"}})
    )
    respx.get(f"{BASE}/animation/list").mock(
        return_value=httpx.Response(200, json={"artifacts": [{"id": "art-0"}]})
    )

    payload = await client.get_artifact("art-0")
    assert payload.content == "<svg/>"
    assert payload.metadata == {"name": "A"}
    assert await client.list_artifacts() == [{"id": "art-0"}]


@respx.mock
async def test_cleanup_session(client):
    route = respx.delete(f"{BASE}/movie/generate/s1").mock(return_value=httpx.Response(200, json={"success": True}))

    await client.cleanup_session("s1")
    assert route.called


@respx.mock
async def test_non_object_body_is_protocol_error(client):
    respx.post(f"{BASE}/movie/save").mock(return_value=httpx.Response(200, json=["doc-9"]))
    respx.get(f"{BASE}/movie/doc-1").mock(return_value=httpx.Response(200, json=[document_json()]))

    with pytest.raises(ProtocolError):
        await client.save_document(_document())
    with pytest.raises(ProtocolError):
        await client.get_document("doc-1")


@respx.mock
async def test_listings_accept_bare_lists(client):
    respx.get(f"{BASE}/movie/list").mock(return_value=httpx.Response(200, json=[{"id": "doc-1"}]))

    assert await client.list_documents() == [{"id": "doc-1"}]
