"""Tests for the log sync task."""

import asyncio
from unittest.mock import patch

import httpx
import pytest

from fleetsync.config import LogSyncConfig
from fleetsync.discovery import StaticDiscovery, StaticIdentification
from fleetsync.log import (
    LogSyncTask,
    SQLiteLogStore,
    SyncMode,
    SyncResult,
    SyncStatus,
)
from fleetsync.ranges import RangeSet
from fleetsync.wire import Descriptor, Event, encode

OWNER = "target-1"
TRICKY_OWNER = "gw,id\n\r$"


@pytest.fixture
def store():
    """Create an in-memory log store holding events 1..10 of log 1."""
    s = SQLiteLogStore(":memory:", OWNER)
    s.connect()
    for i in range(1, 11):
        s.log_event(1, 1001, {"seq": str(i)}, timestamp=1000 + i)
    yield s
    s.close()


class FakeServer:
    """Records requests and answers like a log endpoint."""

    def __init__(self, descriptors=None, send_status=200):
        self.descriptors = descriptors or {}
        self.send_status = send_status
        self.queries = []
        self.sent_bodies = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auditlog/query":
            tid = request.url.params["tid"]
            log_id = int(request.url.params["logid"])
            self.queries.append((tid, log_id))
            line = self.descriptors.get(log_id)
            if line is None:
                line = Descriptor(tid, log_id).to_representation()
            return httpx.Response(200, text=line + "\n")
        if request.url.path == "/auditlog/send":
            self.sent_bodies.append(request.content.decode("utf-8"))
            return httpx.Response(self.send_status, text="OK\n")
        return httpx.Response(404)

    @property
    def sent_events(self) -> list[Event]:
        return [
            Event.parse(line)
            for body in self.sent_bodies
            for line in body.splitlines()
            if line
        ]


def make_task(store, server, owner=OWNER, url="http://server", **kwargs):
    return LogSyncTask(
        store,
        StaticDiscovery(url),
        StaticIdentification(owner),
        transport=httpx.MockTransport(server),
        max_retries=1,
        retry_backoff=0,
        **kwargs,
    )


class TestPush:
    """Tests for pushing local events to the server."""

    @pytest.mark.asyncio
    async def test_sends_only_missing_events(self, store):
        server = FakeServer({1: f"{OWNER},1,1-5"})
        task = make_task(store, server)

        result = await task.push()

        assert result.status == SyncStatus.SUCCESS
        assert result.events_pushed == 5
        assert [e.id for e in server.sent_events] == [6, 7, 8, 9, 10]
        assert server.sent_events[0].properties == {"seq": "6"}
        assert server.queries == [(OWNER, 1)]

    @pytest.mark.asyncio
    async def test_nothing_sent_when_server_is_current(self, store):
        server = FakeServer({1: f"{OWNER},1,1-10"})
        task = make_task(store, server)

        result = await task.push()

        assert result.status == SyncStatus.SUCCESS
        assert result.events_pushed == 0
        assert server.sent_bodies == []

    @pytest.mark.asyncio
    async def test_fills_holes_in_remote_range(self, store):
        server = FakeServer({1: f"{OWNER},1,1-3,6,9-10"})
        task = make_task(store, server)

        await task.push()

        assert [e.id for e in server.sent_events] == [4, 5, 7, 8]

    @pytest.mark.asyncio
    async def test_empty_descriptor_sends_everything(self, store):
        server = FakeServer()
        task = make_task(store, server)

        result = await task.push()

        assert result.events_pushed == 10
        assert [e.id for e in server.sent_events] == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_one_request_for_all_logs(self, store):
        for _ in range(3):
            store.log_event(2, 1002)
        server = FakeServer({1: f"{OWNER},1,1-8"})
        task = make_task(store, server)

        result = await task.push()

        assert result.events_pushed == 5
        assert len(server.sent_bodies) == 1
        assert [(e.log_id, e.id) for e in server.sent_events] == [
            (1, 9),
            (1, 10),
            (2, 1),
            (2, 2),
            (2, 3),
        ]

    @pytest.mark.asyncio
    async def test_events_are_stamped_with_node_identity(self):
        s = SQLiteLogStore(":memory:", TRICKY_OWNER)
        s.connect()
        for _ in range(3):
            s.log_event(1, 1)
        server = FakeServer({1: Descriptor(TRICKY_OWNER, 1, RangeSet.parse("1")).to_representation()})
        task = make_task(s, server, owner=TRICKY_OWNER)

        await task.push()

        body = server.sent_bodies[0]
        assert body.count("\n") == 2
        assert body.startswith(encode(TRICKY_OWNER) + ",")
        assert [e.owner_id for e in server.sent_events] == [TRICKY_OWNER] * 2
        assert server.queries == [(TRICKY_OWNER, 1)]
        s.close()

    @pytest.mark.asyncio
    async def test_rejected_send_fails(self, store):
        server = FakeServer(send_status=400)
        task = make_task(store, server)

        result = await task.push()

        assert result.status == SyncStatus.FAILED
        assert "400" in result.error


class TestPushFailures:
    """Tests for protocol and network failures."""

    @pytest.mark.asyncio
    async def test_malformed_descriptor_is_isolated(self, store):
        for _ in range(2):
            store.log_event(2, 1)
        server = FakeServer({1: "garbage"})
        task = make_task(store, server)

        result = await task.push()

        assert result.status == SyncStatus.PARTIAL
        assert result.logs_failed == 1
        assert [(e.log_id, e.id) for e in server.sent_events] == [(2, 1), (2, 2)]

    @pytest.mark.asyncio
    async def test_malformed_descriptor_aborts_without_isolation(self, store):
        for _ in range(2):
            store.log_event(2, 1)
        server = FakeServer({1: "garbage"})
        task = make_task(store, server, isolate_failures=False)

        result = await task.push()

        assert result.status == SyncStatus.FAILED
        assert result.logs_failed == 1
        assert server.sent_bodies == []

    @pytest.mark.asyncio
    async def test_empty_descriptor_response_is_protocol_error(self, store):
        def handler(request):
            return httpx.Response(200, text="")

        task = make_task(store, handler)

        result = await task.push()

        assert result.status == SyncStatus.FAILED
        assert result.logs_failed == 1
        assert "Empty descriptor" in result.error

    @pytest.mark.asyncio
    async def test_all_logs_failing_fails_the_cycle(self, store):
        for _ in range(2):
            store.log_event(2, 1)
        task = make_task(store, lambda request: httpx.Response(200, text="garbage\n"))

        result = await task.push()

        assert result.status == SyncStatus.FAILED
        assert result.logs_failed == 2
        status = task.get_sync_status()
        assert status["consecutive_failures"] == 1
        assert status["last_sync"] is None

    @pytest.mark.asyncio
    async def test_server_error_on_query_is_protocol_error(self, store):
        task = make_task(store, lambda request: httpx.Response(500))

        result = await task.push()

        assert result.logs_failed == 1
        assert "500" in result.error

    @pytest.mark.asyncio
    async def test_unreachable_server_is_offline(self, store):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        task = make_task(store, handler)

        result = await task.push()

        assert result.status == SyncStatus.OFFLINE
        assert task.get_sync_status()["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_query_retried_after_server_error(self, store):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if len(calls) == 1:
                return httpx.Response(503)
            if request.url.path.endswith("/query"):
                return httpx.Response(200, text=f"{OWNER},1,1-10\n")
            return httpx.Response(200)

        task = make_task(store, handler)
        task.max_retries = 2

        result = await task.push()

        assert result.status == SyncStatus.SUCCESS
        assert calls == ["/auditlog/query", "/auditlog/query"]


class TestCycleControl:
    """Tests for discovery, modes and single-flight execution."""

    @pytest.mark.asyncio
    async def test_file_url_skips_cycle(self, store):
        server = FakeServer()
        task = make_task(store, server, url="file:///var/lib/fleetsync")

        result = await task.push()

        assert result.status == SyncStatus.SKIPPED
        assert server.queries == []

    @pytest.mark.asyncio
    async def test_missing_url_fails(self, store):
        task = make_task(store, FakeServer(), url=None)

        result = await task.push()

        assert result.status == SyncStatus.FAILED

    @pytest.mark.asyncio
    async def test_overlapping_invocation_is_skipped(self, store):
        server = FakeServer()
        task = make_task(store, server)

        async with task._lock:
            result = await task.push()

        assert result.status == SyncStatus.SKIPPED
        assert server.queries == []

    @pytest.mark.asyncio
    async def test_mode_none_does_nothing(self, store):
        server = FakeServer()
        task = make_task(store, server, mode=SyncMode.NONE)

        result = await task.execute()

        assert result.status == SyncStatus.SKIPPED
        assert server.queries == []

    @pytest.mark.asyncio
    async def test_execute_dispatches_on_mode(self, store):
        task = make_task(store, FakeServer(), mode=SyncMode.PULL)

        with patch.object(task, "pull", return_value=SyncResult(SyncStatus.SUCCESS)) as pull:
            await task.execute()

        pull.assert_awaited_once()

    def test_reconfigure(self, store):
        task = make_task(store, FakeServer())

        task.reconfigure(
            LogSyncConfig(
                endpoint="/audit/",
                mode="pushpull",
                isolate_failures=False,
                interval_seconds=5,
            )
        )

        assert task.endpoint == "audit"
        assert task.mode == SyncMode.PUSHPULL
        assert task.isolate_failures is False
        assert task.interval_seconds == 5

    @pytest.mark.asyncio
    async def test_run_forever_stops_on_event(self, store):
        task = make_task(store, FakeServer())
        stop = asyncio.Event()

        async def cycle():
            stop.set()
            return SyncResult(SyncStatus.SUCCESS)

        with patch.object(task, "execute", side_effect=cycle) as execute:
            await asyncio.wait_for(task.run_forever(1, stop_event=stop), timeout=5)

        assert execute.await_count == 1

    @pytest.mark.asyncio
    async def test_sync_status(self, store):
        task = make_task(store, FakeServer({1: f"{OWNER},1,1-10"}))

        await task.push()
        status = task.get_sync_status()

        assert status["server_url"] == "http://server"
        assert status["last_status"] == "success"
        assert status["last_sync"] is not None
        assert status["local_logs"] == 1


class TestPull:
    """Tests for fetching foreign events from a peer."""

    @pytest.mark.asyncio
    async def test_pulls_missing_events(self):
        local = SQLiteLogStore(":memory:", "relay")
        local.connect()
        local.append([Event("gw", 1, i, i, 1) for i in (1, 2)])
        remote_events = {i: Event("gw", 1, i, i, 1, {"n": str(i)}) for i in range(1, 6)}
        receive_params = []

        def handler(request):
            if request.url.path == "/auditlog/query":
                assert "tid" not in request.url.params
                return httpx.Response(200, text="gw,1,1-5\nother,2,\n")
            if request.url.path == "/auditlog/receive":
                receive_params.append(dict(request.url.params))
                wanted = RangeSet.parse(request.url.params["range"])
                lines = "".join(
                    remote_events[i].to_representation() + "\n" for i in wanted
                )
                return httpx.Response(200, text=lines)
            return httpx.Response(404)

        task = make_task(local, handler, owner="relay", mode=SyncMode.PULL)

        result = await task.execute()

        assert result.status == SyncStatus.SUCCESS
        assert result.events_pulled == 3
        assert receive_params == [{"tid": "gw", "logid": "1", "range": "3-5"}]
        assert local.descriptor("gw", 1).to_representation() == "gw,1,1-5"
        assert local.get(1, 5, 5, owner_id="gw")[0].properties == {"n": "5"}
        local.close()

    @pytest.mark.asyncio
    async def test_malformed_event_isolated_per_log(self):
        local = SQLiteLogStore(":memory:", "relay")
        local.connect()

        def handler(request):
            if request.url.path == "/auditlog/query":
                return httpx.Response(200, text="a,1,1\nb,1,1\n")
            if request.url.params["tid"] == "a":
                return httpx.Response(200, text="not,an,event\n")
            return httpx.Response(200, text="b,1,1,0,1\n")

        task = make_task(local, handler, owner="relay")

        result = await task.pull()

        assert result.status == SyncStatus.PARTIAL
        assert result.logs_failed == 1
        assert result.events_pulled == 1
        local.close()

    @pytest.mark.asyncio
    async def test_all_logs_failing_fails_the_pull(self):
        local = SQLiteLogStore(":memory:", "relay")
        local.connect()

        def handler(request):
            if request.url.path == "/auditlog/query":
                return httpx.Response(200, text="a,1,1\nb,1,1-2\n")
            return httpx.Response(200, text="not,an,event\n")

        task = make_task(local, handler, owner="relay")

        result = await task.pull()

        assert result.status == SyncStatus.FAILED
        assert result.logs_failed == 2
        assert task.last_sync is None
        local.close()


class TestEndToEnd:
    """Push against the real server application."""

    @pytest.mark.asyncio
    async def test_push_into_server_app(self, store, tmp_path):
        pytest.importorskip("fastapi")
        from fleetsync.config import Config
        from fleetsync.server import create_app

        server_store = SQLiteLogStore(":memory:", "server")
        server_store.connect()
        server_store.append(store.get(1, 1, 5))
        app = create_app(Config(), log_store=server_store)

        task = LogSyncTask(
            store,
            StaticDiscovery("http://server"),
            StaticIdentification(OWNER),
            transport=httpx.ASGITransport(app=app),
        )

        first = await task.push()
        second = await task.push()

        assert first.events_pushed == 5
        assert second.events_pushed == 0
        assert server_store.descriptor(OWNER, 1).to_representation() == f"{OWNER},1,1-10"
        server_store.close()
