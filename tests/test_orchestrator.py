"""Tests for sync orchestration."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from scribble.config import SyncConfig
from scribble.errors import NotConfigured, TransportError, Unauthorized
from scribble.state import AppState, LocalState, Task
from scribble.sync import BlobClient, SyncOrchestrator, SyncResult, SyncStatus
from scribble.sync.orchestrator import (
    LAST_ATTEMPT_KEY,
    LOCK_KEY,
    SYNC_CONFIG_KEY,
)

HOUR_MS = 60 * 60 * 1000


def make_client(remote=None, merged=None):
    """Create a mock BlobClient."""
    client = MagicMock()
    client.fetch_remote = AsyncMock(return_value=remote)
    client.push_and_merge = AsyncMock(return_value=merged)
    client.close = AsyncMock()
    return client


@pytest.fixture
def local(store, clock):
    state = LocalState(store, clock=clock)
    state.load()
    return state


@pytest.fixture
def sync_config():
    return SyncConfig(base_url="http://blobs.test", sync_id="home", token="secret")


@pytest.fixture
def client():
    return make_client()


@pytest.fixture
def orchestrator(local, store, sync_config, client, clock):
    return SyncOrchestrator(
        local,
        store,
        config=sync_config,
        client_factory=lambda endpoint: client,
        clock=clock,
    )


class TestConfiguration:
    """Tests for endpoint configuration."""

    @pytest.mark.asyncio
    async def test_not_configured(self, local, store, clock):
        client = make_client()
        orchestrator = SyncOrchestrator(
            local, store, client_factory=lambda endpoint: client, clock=clock
        )

        result = await orchestrator.sync(force=True)

        assert result.status == SyncStatus.NOT_CONFIGURED
        assert result.ok
        client.fetch_remote.assert_not_called()
        assert store.get(LAST_ATTEMPT_KEY) is None

    @pytest.mark.asyncio
    async def test_disabled(self, orchestrator, client):
        orchestrator.config.enabled = False

        result = await orchestrator.sync(force=True)

        assert result.status == SyncStatus.NOT_CONFIGURED
        client.fetch_remote.assert_not_called()

    def test_configure_endpoint_persists(self, orchestrator, store):
        orchestrator.configure_endpoint(" http://other.test ", "work", "tok")

        assert store.get(SYNC_CONFIG_KEY) == {
            "base": "http://other.test",
            "syncId": "work",
            "token": "tok",
        }
        assert orchestrator.endpoint().sync_id == "work"

    def test_configure_endpoint_rejects_bad_id(self, orchestrator, store):
        with pytest.raises(NotConfigured):
            orchestrator.configure_endpoint("http://x", "not valid!", "tok")
        assert store.get(SYNC_CONFIG_KEY) is None

    def test_endpoint_falls_back_to_config(self, orchestrator):
        assert orchestrator.endpoint().base_url == "http://blobs.test"


class TestGating:
    """Tests for the attempt interval."""

    @pytest.mark.asyncio
    async def test_first_sync_is_due(self, orchestrator, clock):
        result = await orchestrator.sync()

        assert result.status == SyncStatus.SUCCESS
        assert orchestrator.last_attempt == clock.now

    @pytest.mark.asyncio
    async def test_skipped_until_interval_elapses(self, orchestrator, client, clock):
        await orchestrator.sync()
        clock.advance(23 * HOUR_MS)

        assert (await orchestrator.sync()).status == SyncStatus.SKIPPED

        clock.advance(HOUR_MS)

        assert (await orchestrator.sync()).status == SyncStatus.SUCCESS
        assert client.fetch_remote.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_still_records_attempt(self, orchestrator, client, clock):
        """Test a failing remote is not retried before the interval."""
        client.fetch_remote.side_effect = TransportError("Connection refused")

        result = await orchestrator.sync()

        assert result.status == SyncStatus.FAILED
        assert not result.ok
        assert orchestrator.last_attempt == clock.now
        assert orchestrator.last_success == 0

        clock.advance(HOUR_MS)
        assert (await orchestrator.sync()).status == SyncStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_force_bypasses_gate(self, orchestrator, client):
        await orchestrator.sync()

        result = await orchestrator.sync(force=True)

        assert result.status == SyncStatus.SUCCESS
        assert client.fetch_remote.await_count == 2


class TestLease:
    """Tests for the time-bounded sync lease."""

    @pytest.mark.asyncio
    async def test_live_lease_blocks(self, orchestrator, client, store, clock, local):
        local.add_task("pending")
        store.set(LOCK_KEY, clock.now + 60_000)

        result = await orchestrator.sync(force=True)

        assert result.status == SyncStatus.LOCKED
        assert result.ok
        client.fetch_remote.assert_not_called()
        assert store.get(LOCK_KEY) == clock.now + 60_000
        assert local.is_dirty is True

    @pytest.mark.asyncio
    async def test_expired_lease_taken_over(self, orchestrator, store, clock):
        store.set(LOCK_KEY, clock.now - 1)

        result = await orchestrator.sync(force=True)

        assert result.status == SyncStatus.SUCCESS
        assert store.get(LOCK_KEY) == 0

    @pytest.mark.asyncio
    async def test_released_after_failure(self, orchestrator, client, store):
        client.fetch_remote.side_effect = TransportError("HTTP 503", status_code=503)

        await orchestrator.sync(force=True)

        assert store.get(LOCK_KEY) == 0
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_released_after_unexpected_error(self, orchestrator, client, store):
        client.fetch_remote.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await orchestrator.sync(force=True)

        assert store.get(LOCK_KEY) == 0
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_taken_over_lease_not_released(self, orchestrator, store, clock):
        async with orchestrator.lease():
            store.set(LOCK_KEY, clock.now + 999_999)

        assert store.get(LOCK_KEY) == clock.now + 999_999

    @pytest.mark.asyncio
    async def test_concurrent_attempts(self, orchestrator, client):
        """Test only one of two overlapping attempts runs."""

        async def slow_fetch():
            await asyncio.sleep(0)
            return None

        client.fetch_remote.side_effect = slow_fetch

        results = await asyncio.gather(
            orchestrator.sync(force=True), orchestrator.sync(force=True)
        )

        assert {result.status for result in results} == {
            SyncStatus.SUCCESS,
            SyncStatus.LOCKED,
        }
        assert client.fetch_remote.await_count == 1


class TestPull:
    """Tests for adopting the remote copy."""

    @pytest.mark.asyncio
    async def test_adopts_newer_remote_when_clean(self, orchestrator, client, local, clock):
        client.fetch_remote.return_value = AppState(
            tasks={1: Task(task_id=1, text="from remote", task_updated_at=5)},
            updated_at=clock.now - 1000,
        )

        result = await orchestrator.sync()

        assert result.pulled is True
        assert result.pushed is False
        assert [task.text for task in local.tasks()] == ["from remote"]
        client.push_and_merge.assert_not_called()

    @pytest.mark.asyncio
    async def test_ignores_older_remote(self, orchestrator, client, local):
        local.apply(AppState(tasks={2: Task(task_id=2, text="local")}, updated_at=500))
        client.fetch_remote.return_value = AppState(
            tasks={1: Task(task_id=1, text="stale")}, updated_at=400
        )

        result = await orchestrator.sync()

        assert result.pulled is False
        assert result.message == "already up to date"
        assert [task.text for task in local.tasks()] == ["local"]

    @pytest.mark.asyncio
    async def test_adopt_flag_takes_remote(self, orchestrator, client, local):
        local.apply(AppState(tasks={2: Task(task_id=2, text="local")}, updated_at=500))
        client.fetch_remote.return_value = AppState(
            tasks={1: Task(task_id=1, text="remote")}, updated_at=400
        )

        result = await orchestrator.sync(adopt=True)

        assert result.pulled is True
        assert [task.text for task in local.tasks()] == ["remote"]

    @pytest.mark.asyncio
    async def test_pull_filters_tombstoned_tasks(self, orchestrator, client, local):
        client.fetch_remote.return_value = AppState(
            tasks={
                1: Task(task_id=1, text="deleted", task_updated_at=10),
                2: Task(task_id=2, text="kept", task_updated_at=10),
            },
            tombstones={1: 20},
            updated_at=30,
        )

        await orchestrator.sync()

        assert [task.text for task in local.tasks()] == ["kept"]

    @pytest.mark.asyncio
    async def test_absent_remote(self, orchestrator, local):
        result = await orchestrator.sync()

        assert result.status == SyncStatus.SUCCESS
        assert result.pulled is False
        assert local.state == AppState()


class TestPush:
    """Tests for pushing local changes."""

    @pytest.mark.asyncio
    async def test_dirty_local_not_replaced(self, orchestrator, client, local, clock):
        """Test a newer remote does not overwrite unpushed edits."""
        mine = local.add_task("mine")
        client.fetch_remote.return_value = AppState(
            tasks={1: Task(task_id=1, text="theirs", task_updated_at=1)},
            updated_at=clock.now + 10_000,
        )
        client.push_and_merge.return_value = AppState(
            tasks={
                1: Task(task_id=1, text="theirs", task_updated_at=1),
                mine.task_id: mine,
            },
            updated_at=clock.now + 10_000,
        )

        result = await orchestrator.sync()

        assert result.pulled is False
        assert result.pushed is True
        pushed_state = client.push_and_merge.call_args[0][0]
        assert mine.task_id in pushed_state.tasks
        assert sorted(task.text for task in local.tasks()) == ["mine", "theirs"]
        assert local.is_dirty is False

    @pytest.mark.asyncio
    async def test_push_applies_server_result(self, orchestrator, client, local):
        task = local.add_task("mine")
        client.push_and_merge.return_value = AppState(
            tasks={}, tombstones={task.task_id: task.task_updated_at}, updated_at=99
        )

        result = await orchestrator.sync()

        assert result.message == "pushed local changes"
        assert local.tasks() == []
        assert local.updated_at == 99

    @pytest.mark.asyncio
    async def test_clean_state_not_pushed(self, orchestrator, client):
        await orchestrator.sync()
        client.push_and_merge.assert_not_called()

    @pytest.mark.asyncio
    async def test_push_failure_keeps_dirty(self, orchestrator, client, local):
        local.add_task("mine")
        client.push_and_merge.side_effect = TransportError("HTTP 503", status_code=503)

        result = await orchestrator.sync()

        assert result.status == SyncStatus.FAILED
        assert local.is_dirty is True
        assert [task.text for task in local.tasks()] == ["mine"]
        assert orchestrator.last_success == 0

    @pytest.mark.asyncio
    async def test_push_failure_keeps_applied_pull(self, orchestrator, client, local, clock):
        """Test a failed push does not undo a pull adopted earlier in the attempt."""
        local.add_task("mine")
        remote = AppState(
            tasks={1: Task(task_id=1, text="theirs", task_updated_at=5)},
            updated_at=clock.now + 10_000,
        )
        client.fetch_remote.return_value = remote
        client.push_and_merge.side_effect = TransportError("HTTP 503", status_code=503)

        result = await orchestrator.sync(adopt=True)

        assert result.status == SyncStatus.FAILED
        assert result.pulled is True
        assert result.pushed is False
        assert local.state == remote
        assert local.is_dirty is True

    @pytest.mark.asyncio
    async def test_malformed_push_reply_keeps_local(self, local, store, sync_config, clock):
        """Test a push answered with a non-blob leaves local tasks in place."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"null")

        orchestrator = SyncOrchestrator(
            local,
            store,
            config=sync_config,
            client_factory=lambda endpoint: BlobClient(
                endpoint, clock=clock, transport=httpx.MockTransport(handler)
            ),
            clock=clock,
        )
        local.add_task("precious")

        result = await orchestrator.sync()

        assert result.status == SyncStatus.FAILED
        assert [task.text for task in local.tasks()] == ["precious"]
        assert local.is_dirty is True

    @pytest.mark.asyncio
    async def test_unauthorized(self, orchestrator, client, local):
        local.add_task("mine")
        before = local.state.copy()
        client.fetch_remote.side_effect = Unauthorized("Remote rejected the sync token")

        result = await orchestrator.sync()

        assert result.status == SyncStatus.UNAUTHORIZED
        assert not result.ok
        assert local.state == before
        assert local.is_dirty is True
        client.push_and_merge.assert_not_called()

    @pytest.mark.asyncio
    async def test_success_recorded(self, orchestrator, clock):
        await orchestrator.sync()
        assert orchestrator.last_success == clock.now


class TestStatusAndLoop:
    """Tests for status reporting and the background loop."""

    @pytest.mark.asyncio
    async def test_get_sync_status(self, orchestrator, client, local):
        local.add_task("a")
        client.push_and_merge.return_value = local.state.copy()
        await orchestrator.sync()

        status = orchestrator.get_sync_status()

        assert status["enabled"] is True
        assert status["configured"] is True
        assert status["sync_id"] == "home"
        assert status["last_attempt"] is not None
        assert status["last_success"] is not None
        assert status["dirty"] is False
        assert status["lock_until"] is None

    def test_status_before_any_sync(self, local, store, clock):
        orchestrator = SyncOrchestrator(local, store, clock=clock)

        status = orchestrator.get_sync_status()

        assert status["configured"] is False
        assert status["last_attempt"] is None
        assert status["task_count"] == 0

    @pytest.mark.asyncio
    async def test_sync_loop_stops(self, orchestrator):
        stop_event = asyncio.Event()
        calls = []

        async def fake_sync():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            stop_event.set()
            return SyncResult(SyncStatus.SKIPPED, "not due")

        orchestrator.sync = fake_sync

        await asyncio.wait_for(
            orchestrator.sync_loop(check_interval_seconds=0.01, stop_event=stop_event),
            timeout=5,
        )

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_sync_loop_preset_stop(self, orchestrator, client):
        stop_event = asyncio.Event()
        stop_event.set()

        await orchestrator.sync_loop(check_interval_seconds=0.01, stop_event=stop_event)

        client.fetch_remote.assert_not_called()
