"""Tests for the daemon, its scheduler helpers and the HTTP API."""

import asyncio
from datetime import datetime, time as dtime

import pytest
from fastapi.testclient import TestClient

from devsync.config import DevSyncConfig
from devsync.daemon import SyncDaemon, create_app, next_run_time, parse_run_times
from devsync.errors import ConfigurationError, CrossSyncError, SyncInProgressError


def _config(**cross_sync) -> DevSyncConfig:
    config = DevSyncConfig()
    config.cross_sync.enabled = False
    for name, value in cross_sync.items():
        setattr(config.cross_sync, name, value)
    return config


@pytest.fixture
def seeded_store(fake_store):
    fake_store.seed("devices_intune", [
        {"id": "a1", "azureADDeviceId": "K1"},
        {"id": "a2", "azureADDeviceId": "K2"},
    ])
    fake_store.seed("devices_defender", [
        {"id": "b1", "aadDeviceId": "K1"},
        {"id": "b3", "aadDeviceId": None},
    ])
    return fake_store


class TestSchedule:
    def test_parse_run_times(self):
        assert parse_run_times(["18:00", "06:00", "06:00"]) == [dtime(6, 0), dtime(18, 0)]

    @pytest.mark.parametrize("value", ["6am", "25:00", "12"])
    def test_parse_invalid_run_time(self, value):
        with pytest.raises(ConfigurationError):
            parse_run_times([value])

    def test_next_run_same_day(self):
        slots = parse_run_times(["06:00", "12:00", "18:00"])
        assert next_run_time(datetime(2026, 5, 4, 7, 30), slots) == datetime(2026, 5, 4, 12, 0)

    def test_next_run_is_strictly_after_now(self):
        slots = parse_run_times(["06:00", "12:00"])
        assert next_run_time(datetime(2026, 5, 4, 12, 0), slots) == datetime(2026, 5, 5, 6, 0)

    def test_next_run_without_slots(self):
        assert next_run_time(datetime(2026, 5, 4), []) is None


class TestSyncDaemon:
    @pytest.mark.asyncio
    async def test_trigger_sync_records_run(self, seeded_store):
        daemon = SyncDaemon(config=_config(), store=seeded_store)

        result = await daemon.trigger_sync()

        assert result.matched == 1
        assert result.only_intune == 1
        assert result.only_defender == 1
        assert daemon.runs_completed == 1
        assert daemon.last_run["status"] == "success"
        assert not daemon.sync_in_progress

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_rejected(self, seeded_store):
        daemon = SyncDaemon(config=_config(), store=seeded_store)
        started = asyncio.Event()
        release = asyncio.Event()
        build = daemon.build_orchestrator

        def slow_orchestrator():
            orchestrator = build()
            execute = orchestrator.execute_cross_sync

            async def blocked():
                started.set()
                await release.wait()
                return await execute()

            orchestrator.execute_cross_sync = blocked
            return orchestrator

        daemon.build_orchestrator = slow_orchestrator
        first = asyncio.create_task(daemon.trigger_sync())
        await started.wait()

        assert daemon.sync_in_progress
        with pytest.raises(SyncInProgressError):
            await daemon.trigger_sync()

        release.set()
        result = await first
        assert result.total_processed == 3
        assert daemon.runs_rejected == 1

    @pytest.mark.asyncio
    async def test_run_timeout(self, seeded_store):
        daemon = SyncDaemon(config=_config(run_timeout=0.01), store=seeded_store)
        build = daemon.build_orchestrator

        def hanging_orchestrator():
            orchestrator = build()

            async def hang():
                await asyncio.sleep(10)

            orchestrator.execute_cross_sync = hang
            return orchestrator

        daemon.build_orchestrator = hanging_orchestrator

        with pytest.raises(CrossSyncError, match="timed out"):
            await daemon.trigger_sync()
        assert daemon.runs_failed == 1
        assert daemon.last_run["status"] == "failed"
        assert not daemon.sync_in_progress

    @pytest.mark.asyncio
    async def test_failed_run_is_recorded(self, seeded_store):
        from devsync.errors import StoreError

        seeded_store.read_errors = [StoreError("disk gone")]
        daemon = SyncDaemon(config=_config(), store=seeded_store)

        with pytest.raises(CrossSyncError):
            await daemon.trigger_sync()

        assert daemon.runs_failed == 1
        assert "disk gone" in daemon.last_run["error"]

    @pytest.mark.asyncio
    async def test_unknown_source_mode(self, seeded_store):
        config = _config()
        config.sources.mode = "ftp"
        daemon = SyncDaemon(config=config, store=seeded_store)

        with pytest.raises(ConfigurationError):
            await daemon.trigger_sync()

    @pytest.mark.asyncio
    async def test_scheduled_run_warns_when_past_due(self, seeded_store, caplog):
        now = datetime(2026, 5, 4, 12, 5)
        daemon = SyncDaemon(config=_config(), store=seeded_store, clock=lambda: now)

        await daemon._run_scheduled(datetime(2026, 5, 4, 12, 0))

        assert "past due" in caplog.text
        assert daemon.runs_completed == 1

    @pytest.mark.asyncio
    async def test_scheduled_run_swallows_failure(self, seeded_store):
        from devsync.errors import SourceError

        seeded_store.read_errors = [SourceError("Invalid credentials")]
        daemon = SyncDaemon(config=_config(), store=seeded_store)

        await daemon._run_scheduled(datetime.now())

        assert daemon.runs_failed == 1

    @pytest.mark.asyncio
    async def test_start_and_stop_scheduler(self, seeded_store):
        config = _config()
        config.cross_sync.enabled = True
        daemon = SyncDaemon(config=config, store=seeded_store)

        await daemon.start()
        await asyncio.sleep(0)
        assert daemon.running
        assert daemon.next_run is not None

        await daemon.stop()
        assert not daemon.running

    def test_status(self, seeded_store):
        status = SyncDaemon(config=_config(), store=seeded_store).get_status()

        assert status["sync_in_progress"] is False
        assert status["stats"]["runs_completed"] == 0
        assert status["config"]["sources_mode"] == "store"


@pytest.fixture
def client(seeded_store):
    daemon = SyncDaemon(config=_config(), store=seeded_store)
    app = create_app(daemon)
    with TestClient(app) as test_client:
        yield test_client
    create_app(None)


class TestApi:
    def test_root(self, client):
        assert client.get("/").json()["name"] == "DEVSYNC"

    def test_health(self, client):
        data = client.get("/api/v1/health").json()
        assert data["status"] == "healthy"

    def test_sync_cross_then_query(self, client):
        response = client.post("/api/v1/devices/sync-cross")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["status"] == "success"
        assert body["data"]["statistics"]["matched"] == 1

        response = client.get("/api/v1/devices/sync-all", params={"syncState": "matched"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["count"] == 1
        assert data["devices"][0]["syncKey"] == "K1"
        assert data["hasMore"] is False

    def test_sync_all_pagination(self, client):
        client.post("/api/v1/devices/sync-cross")

        first = client.get("/api/v1/devices/sync-all", params={"pageSize": 2}).json()["data"]
        assert first["count"] == 2
        assert first["hasMore"] is True

        second = client.get(
            "/api/v1/devices/sync-all",
            params={"pageSize": 2, "continuationToken": first["continuationToken"]},
        ).json()["data"]
        assert second["count"] == 1
        assert second["hasMore"] is False

    @pytest.mark.parametrize("params", [
        {"pageSize": 0},
        {"pageSize": 101},
        {"syncState": "only_a"},
        {"continuationToken": "Zm9vOmJhcg"},
    ])
    def test_sync_all_rejects_bad_input(self, client, params):
        response = client.get("/api/v1/devices/sync-all", params=params)
        assert response.status_code == 400

    def test_sync_cross_conflict(self, client, monkeypatch):
        from devsync.daemon import get_daemon

        async def busy(*args, **kwargs):
            raise SyncInProgressError("A cross-sync run is already in progress")

        monkeypatch.setattr(get_daemon(), "trigger_sync", busy)
        response = client.post("/api/v1/devices/sync-cross")
        assert response.status_code == 409

    def test_status_endpoint(self, client):
        client.post("/api/v1/devices/sync-cross")
        data = client.get("/api/v1/status").json()
        assert data["running"] is True
        assert data["stats"]["runs_completed"] == 1
        assert data["last_run"]["result"]["matched"] == 1

    def test_shutdown(self, client):
        data = client.post("/api/v1/shutdown").json()
        assert data["status"] == "shutting_down"
