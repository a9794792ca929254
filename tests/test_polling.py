"""Tests del polling y del monitor."""

import asyncio

import pytest

from storyboard_sync.domain.models import JobStatus
from storyboard_sync.progress.monitor import Monitor, NotMonitoring, Polling, Streaming
from storyboard_sync.progress.polling import PollingController
from storyboard_sync.progress.stream import ProgressStreamClient, StreamHandlers
from storyboard_sync.utils.backoff import ServerUnreachableError

from fakes import make_clip, make_document, wait_until

pytestmark = pytest.mark.anyio

INTERVAL = 0.01


class Calls:
    def __init__(self):
        self.sessions = []
        self.updates = []
        self.completed = []
        self.errors = []

    def conditional(self, poller, document_id):
        poller.start_conditional(
            document_id,
            INTERVAL,
            on_session_available=lambda session_id, doc: self.sessions.append(session_id),
            on_update=lambda doc, snapshot: self.updates.append(snapshot),
            on_complete=self.completed.append,
            on_error=self.errors.append,
        )


async def test_conditional_poll_hands_off_to_session(backend):
    running = make_document("doc-1", in_progress=True, total=5, clips=[make_clip(0)])
    with_session = make_document("doc-1", in_progress=True, total=5, session_id="s9", clips=[make_clip(0)])
    backend.script_documents("doc-1", [running, running, with_session])
    backend.documents["doc-1"] = with_session

    poller = PollingController(backend)
    calls = Calls()
    calls.conditional(poller, "doc-1")
    await wait_until(lambda: calls.sessions)
    await asyncio.sleep(INTERVAL * 5)

    assert calls.sessions == ["s9"]
    assert len(calls.updates) == 2
    assert calls.updates[0].current == 1
    assert not poller.is_polling
    assert backend.document_fetches["doc-1"] == 3


async def test_finished_generation_wins_over_session(backend):
    finished = make_document("doc-1", in_progress=False, session_id="s9", status=JobStatus.COMPLETED)
    backend.documents["doc-1"] = finished

    poller = PollingController(backend)
    calls = Calls()
    calls.conditional(poller, "doc-1")
    await wait_until(lambda: calls.completed)

    assert calls.sessions == []
    assert calls.completed[0].id == "doc-1"


async def test_missing_generation_status_counts_as_complete(backend):
    backend.documents["doc-1"] = make_document("doc-1")

    poller = PollingController(backend)
    completed = []
    poller.start_polling("doc-1", INTERVAL, on_complete=completed.append)
    await wait_until(lambda: completed)

    assert not poller.is_polling


async def test_plain_polling_ignores_session_ids(backend):
    with_session = make_document("doc-1", in_progress=True, session_id="s9")
    done = make_document("doc-1", in_progress=False)
    backend.script_documents("doc-1", [with_session, with_session, done])

    poller = PollingController(backend)
    updates, completed = [], []
    poller.start_polling("doc-1", INTERVAL, on_complete=completed.append, on_update=lambda d, s: updates.append(s))
    await wait_until(lambda: completed)

    assert len(updates) == 2


async def test_starting_a_new_loop_cancels_the_previous(backend):
    backend.documents["a"] = make_document("a", in_progress=False)
    backend.documents["b"] = make_document("b", in_progress=False)

    poller = PollingController(backend)
    first, second = Calls(), Calls()
    first.conditional(poller, "a")
    second.conditional(poller, "b")
    await wait_until(lambda: second.completed)
    await asyncio.sleep(INTERVAL * 3)

    assert first.completed == []
    assert backend.document_fetches["a"] == 0


async def test_transient_failure_is_retried_on_next_tick(backend):
    backend.script_documents("doc-1", [ServerUnreachableError("down")])
    backend.documents["doc-1"] = make_document("doc-1", in_progress=False)

    poller = PollingController(backend, max_failures=3)
    calls = Calls()
    calls.conditional(poller, "doc-1")
    await wait_until(lambda: calls.completed)

    assert calls.errors == []


async def test_repeated_failures_give_up(backend):
    backend.script_documents("doc-1", [ServerUnreachableError("down")] * 3)

    poller = PollingController(backend, max_failures=3)
    calls = Calls()
    calls.conditional(poller, "doc-1")
    await wait_until(lambda: calls.errors)

    assert not poller.is_polling
    assert calls.completed == []


async def test_stop_during_in_flight_fetch_suppresses_callbacks(backend):
    gate = asyncio.Event()
    fetching = asyncio.Event()

    class SlowBackend:
        async def get_document(self, document_id):
            fetching.set()
            await gate.wait()
            return make_document(document_id, in_progress=False)

    poller = PollingController(SlowBackend())
    calls = Calls()
    calls.conditional(poller, "doc-1")
    await fetching.wait()
    poller.stop()
    gate.set()
    await asyncio.sleep(INTERVAL * 3)

    assert calls.completed == []


async def test_monitor_replaces_polling_with_stream(backend):
    backend.documents["doc-1"] = make_document("doc-1", in_progress=True)
    stream = ProgressStreamClient(backend)
    poller = PollingController(backend)
    monitor = Monitor(stream, poller)
    noop = StreamHandlers(
        on_progress=lambda s: None,
        on_clip_arrived=lambda c: None,
        on_complete=lambda d: None,
        on_error=lambda f: None,
        on_cleanup=monitor.release,
    )

    monitor.poll_conditional("doc-1", INTERVAL, lambda s, d: None, lambda d, s: None, lambda d: None)
    assert isinstance(monitor.state, Polling)
    assert poller.is_polling

    monitor.stream("s1", noop)
    assert isinstance(monitor.state, Streaming)
    assert not poller.is_polling
    assert stream.active_session_id == "s1"
    assert not monitor.stream("s1", noop)

    monitor.stop()
    assert isinstance(monitor.state, NotMonitoring)
    assert not stream.is_streaming
    await stream.close()


async def test_failing_update_callback_keeps_loop_alive(backend, caplog):
    running = make_document("doc-1", in_progress=True, total=2)
    done = make_document("doc-1", in_progress=False)
    backend.script_documents("doc-1", [running, running, done])

    def broken(document, snapshot):
        raise RuntimeError("vista rota")

    poller = PollingController(backend)
    completed = []
    poller.start_polling("doc-1", INTERVAL, on_complete=completed.append, on_update=broken)
    await wait_until(lambda: completed)

    assert backend.document_fetches["doc-1"] == 3
    assert not poller.is_polling
    assert "Error en callback" in caplog.text
