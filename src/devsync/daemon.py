"""DEVSYNC daemon - scheduler and run coordinator.

The daemon owns the document store and the source readers. It also holds the
run lease, so at most one cross-sync (or ingest) touches the store at a time.
Scheduled runs fire at the configured ``run_times`` and get one retry for
transient failures. On-demand runs come from the API or the CLI.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, time as dtime, timedelta
from typing import Any, AsyncGenerator, Callable

import httpx
import uvicorn
from fastapi import FastAPI

from devsync import __version__
from devsync.config import DevSyncConfig, ensure_config_dir, load_config
from devsync.errors import ConfigurationError, CrossSyncError, SyncInProgressError
from devsync.models import DefenderDevice, ManagedDevice
from devsync.sources import (
    ClientCredentialsTokenProvider,
    DefenderApiReader,
    IntuneApiReader,
    SourceReader,
    defender_store_reader,
    intune_store_reader,
)
from devsync.sources.ingest import IngestResult, SourceIngestor
from devsync.storage.documents import DocumentStore, SQLiteDocumentStore
from devsync.sync.orchestrator import CrossSyncOrchestrator, CrossSyncResult
from devsync.sync.query import SyncQueryService
from devsync.sync.runner import run_cross_sync
from devsync.sync.writer import SyncStoreWriter
from devsync.utils.logging import get_logger, setup_logging
from devsync.utils.retry import RetryPolicy

logger = get_logger(__name__)

PAST_DUE_GRACE = timedelta(minutes=1)


def parse_run_times(values: list[str]) -> list[dtime]:
    """Parse ``HH:MM`` strings into sorted times of day."""
    times = []
    for value in values:
        try:
            hour, minute = value.strip().split(":")
            times.append(dtime(int(hour), int(minute)))
        except ValueError as e:
            raise ConfigurationError(f"Invalid run time '{value}', expected HH:MM") from e
    return sorted(set(times))


def next_run_time(now: datetime, run_times: list[dtime]) -> datetime | None:
    """First scheduled slot strictly after ``now``."""
    if not run_times:
        return None
    for slot in run_times:
        candidate = datetime.combine(now.date(), slot)
        if candidate > now:
            return candidate
    return datetime.combine(now.date() + timedelta(days=1), run_times[0])


class SyncDaemon:
    """Main DEVSYNC daemon process."""

    def __init__(
        self,
        config: DevSyncConfig | None = None,
        dev_mode: bool = False,
        store: DocumentStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config or load_config()
        self.dev_mode = dev_mode
        self.store = store
        self.http_client = http_client
        self.clock = clock
        self.running = False
        self.started_at: datetime | None = None

        self._owns_http_client = http_client is None
        self._token_providers: dict[str, ClientCredentialsTokenProvider] = {}
        self._lease = asyncio.Lock()
        self._scheduler_task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()
        self.on_shutdown: Callable[[], None] | None = None

        self.run_times = parse_run_times(self.config.cross_sync.run_times)
        self.next_run: datetime | None = None

        # Stats
        self.runs_completed = 0
        self.runs_failed = 0
        self.runs_rejected = 0
        self.last_run: dict[str, Any] | None = None
        self._current_run: dict[str, Any] | None = None

    @property
    def uptime_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        return (self.clock() - self.started_at).total_seconds()

    @property
    def sync_in_progress(self) -> bool:
        return self._lease.locked()

    # ========== Lifecycle ==========

    async def open(self) -> None:
        """Open the store and HTTP client without starting the scheduler."""
        if self.store is None:
            ensure_config_dir()
            db_path = self.config.store.resolve_db_path()
            self.store = SQLiteDocumentStore(db_path)
            logger.info(f"Document store: {db_path}")

        if self.http_client is None and self.config.sources.mode == "api":
            self.http_client = httpx.AsyncClient(timeout=self.config.sources.request_timeout)

    async def start(self) -> None:
        logger.info(f"Starting DEVSYNC daemon v{__version__}")
        logger.info(f"Dev mode: {self.dev_mode}")

        await self.open()

        self.running = True
        self.started_at = self.clock()

        if self.config.cross_sync.enabled and self.run_times:
            self._scheduler_task = asyncio.create_task(self._scheduler())
            logger.info(
                f"Scheduler started (runs at {', '.join(self.config.cross_sync.run_times)})"
            )
        else:
            logger.info("Scheduled cross-sync disabled")

        logger.info("DEVSYNC daemon started")

    async def stop(self) -> None:
        logger.info("Stopping DEVSYNC daemon...")
        self.running = False
        self._shutdown_event.set()

        if self._scheduler_task:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
            logger.info("Scheduler stopped.")

        await self.close()
        logger.info("DEVSYNC daemon stopped.")

    async def close(self) -> None:
        if self.http_client is not None and self._owns_http_client:
            await self.http_client.aclose()
            self.http_client = None
            self._token_providers.clear()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()
        if self.on_shutdown is not None:
            self.on_shutdown()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    # ========== Component wiring ==========

    def _require_store(self) -> DocumentStore:
        if self.store is None:
            raise RuntimeError("Document store not open")
        return self.store

    def _retry_policy(self) -> RetryPolicy:
        cfg = self.config.cross_sync
        return RetryPolicy(max_retries=cfg.max_retries, initial_delay=cfg.initial_retry_delay)

    def _token_provider(self, source: str) -> ClientCredentialsTokenProvider:
        if source not in self._token_providers:
            credentials = getattr(self.config.sources, "graph" if source == "intune" else "defender")
            self._token_providers[source] = ClientCredentialsTokenProvider.from_config(
                credentials, self.http_client
            )
        return self._token_providers[source]

    def intune_reader(self, mode: str | None = None) -> SourceReader[ManagedDevice]:
        mode = mode or self.config.sources.mode
        sources = self.config.sources
        if mode == "api":
            if self.http_client is None:
                self.http_client = httpx.AsyncClient(timeout=sources.request_timeout)
            return IntuneApiReader(
                self.http_client,
                self._token_provider("intune"),
                base_url=sources.graph_base_url,
                page_size=sources.page_size,
                retry_policy=self._retry_policy(),
            )
        if mode == "store":
            return intune_store_reader(
                self._require_store(),
                self.config.store.intune_collection,
                page_size=sources.page_size,
                retry_policy=self._retry_policy(),
            )
        raise ConfigurationError(f"Unknown sources.mode '{mode}' (expected store or api)")

    def defender_reader(self, mode: str | None = None) -> SourceReader[DefenderDevice]:
        mode = mode or self.config.sources.mode
        sources = self.config.sources
        if mode == "api":
            if self.http_client is None:
                self.http_client = httpx.AsyncClient(timeout=sources.request_timeout)
            return DefenderApiReader(
                self.http_client,
                self._token_provider("defender"),
                base_url=sources.defender_base_url,
                page_size=sources.page_size,
                retry_policy=self._retry_policy(),
            )
        if mode == "store":
            return defender_store_reader(
                self._require_store(),
                self.config.store.defender_collection,
                page_size=sources.page_size,
                retry_policy=self._retry_policy(),
            )
        raise ConfigurationError(f"Unknown sources.mode '{mode}' (expected store or api)")

    def writer(self, collection: str, key_field: str = "syncKey") -> SyncStoreWriter:
        cfg = self.config.cross_sync
        return SyncStoreWriter(
            self._require_store(),
            collection,
            batch_size=cfg.batch_size,
            max_concurrency=cfg.max_concurrency,
            retry_policy=self._retry_policy(),
            key_field=key_field,
        )

    def build_orchestrator(self) -> CrossSyncOrchestrator:
        return CrossSyncOrchestrator(
            self.intune_reader(),
            self.defender_reader(),
            self.writer(self.config.store.sync_collection),
        )

    def query_service(self) -> SyncQueryService:
        return SyncQueryService(self._require_store(), self.config.store.sync_collection)

    # ========== Runs ==========

    async def trigger_sync(self, retry: bool = False) -> CrossSyncResult:
        """Run one cross-sync under the lease.

        Raises SyncInProgressError when another run holds the lease.
        ``retry`` enables the top-level retry used by scheduled runs.
        """
        if self._lease.locked():
            self.runs_rejected += 1
            raise SyncInProgressError("A cross-sync run is already in progress")

        async with self._lease:
            started = self.clock()
            self._current_run = {"type": "cross_sync", "started_at": started.isoformat()}
            timeout = self.config.cross_sync.run_timeout
            try:
                orchestrator = self.build_orchestrator()
                if retry:
                    run = run_cross_sync(orchestrator, retry_delay=self.config.cross_sync.run_retry_delay)
                else:
                    run = orchestrator.execute_cross_sync()
                result = await asyncio.wait_for(run, timeout=timeout)
            except asyncio.TimeoutError as e:
                error = CrossSyncError("run", TimeoutError(f"run timed out after {timeout:.0f}s"))
                self._record_run(started, error=str(error))
                raise error from e
            except Exception as e:
                self._record_run(started, error=str(e))
                raise
            finally:
                self._current_run = None

            self._record_run(started, result=result)
            return result

    async def ingest(self, source: str) -> IngestResult:
        """Copy one source API inventory into its store collection."""
        if source == "intune":
            reader: SourceReader[Any] = self.intune_reader(mode="api")
            collection = self.config.store.intune_collection
        elif source == "defender":
            reader = self.defender_reader(mode="api")
            collection = self.config.store.defender_collection
        else:
            raise ConfigurationError(f"Unknown source '{source}' (expected intune or defender)")

        if self._lease.locked():
            raise SyncInProgressError("A run is already in progress")

        async with self._lease:
            self._current_run = {"type": f"ingest_{source}", "started_at": self.clock().isoformat()}
            try:
                ingestor = SourceIngestor(reader, self.writer(collection, key_field="id"))
                return await ingestor.ingest()
            finally:
                self._current_run = None

    def _record_run(
        self,
        started: datetime,
        result: CrossSyncResult | None = None,
        error: str | None = None,
    ) -> None:
        finished = self.clock()
        if result is not None:
            self.runs_completed += 1
            status = "partial" if result.errors else "success"
        else:
            self.runs_failed += 1
            status = "failed"
        self.last_run = {
            "status": status,
            "started_at": started.isoformat(),
            "finished_at": finished.isoformat(),
            "result": result.to_dict() if result is not None else None,
            "error": error,
        }

    async def _scheduler(self) -> None:
        logger.info("Scheduler running...")

        while self.running:
            now = self.clock()
            slot = next_run_time(now, self.run_times)
            if slot is None:
                return
            self.next_run = slot
            logger.info(f"Next cross-sync scheduled at {slot.isoformat(timespec='minutes')}")

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=(slot - now).total_seconds()
                )
                return
            except asyncio.TimeoutError:
                pass

            await self._run_scheduled(slot)

    async def _run_scheduled(self, slot: datetime) -> None:
        late = self.clock() - slot
        if late > PAST_DUE_GRACE:
            logger.warning(
                f"Scheduled cross-sync for {slot.isoformat(timespec='minutes')} is past due "
                f"({late.total_seconds():.0f}s late)"
            )

        try:
            result = await self.trigger_sync(retry=True)
        except SyncInProgressError:
            logger.warning("Skipping scheduled cross-sync: a run is already in progress")
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scheduled cross-sync failed: {e}")
            return

        if result.errors:
            logger.warning(
                f"Scheduled cross-sync completed with {len(result.errors)} errors, "
                f"first errors: {result.errors[:10]}"
            )

    # ========== Status ==========

    def get_status(self) -> dict:
        store_stats = {}
        if isinstance(self.store, SQLiteDocumentStore):
            try:
                store_stats = self.store.get_stats()
            except Exception as e:
                logger.debug(f"Could not read store stats: {e}")

        return {
            "version": __version__,
            "running": self.running,
            "uptime_seconds": self.uptime_seconds,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "dev_mode": self.dev_mode,
            "sync_in_progress": self.sync_in_progress,
            "current_run": self._current_run,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run,
            "stats": {
                "runs_completed": self.runs_completed,
                "runs_failed": self.runs_failed,
                "runs_rejected": self.runs_rejected,
            },
            "store": store_stats,
            "config": {
                "sources_mode": self.config.sources.mode,
                "schedule_enabled": self.config.cross_sync.enabled,
                "run_times": list(self.config.cross_sync.run_times),
                "batch_size": self.config.cross_sync.batch_size,
                "api_port": self.config.api.port,
            },
        }


# Global daemon instance
_daemon: SyncDaemon | None = None


def get_daemon() -> SyncDaemon:
    if _daemon is None:
        raise RuntimeError("Daemon not initialized")
    return _daemon


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("API server starting...")
    if _daemon is not None:
        await _daemon.start()
    yield
    logger.info("API server shutting down...")
    if _daemon is not None:
        await _daemon.stop()


def create_app(daemon: SyncDaemon | None = None) -> FastAPI:
    global _daemon
    _daemon = daemon
    from devsync.api.server import create_api_app
    return create_api_app(lifespan=lifespan)


def run_daemon(
    host: str = "127.0.0.1",
    port: int = 7787,
    dev_mode: bool = False,
    config: DevSyncConfig | None = None,
) -> None:
    log_level = "DEBUG" if dev_mode else "INFO"
    setup_logging(level=log_level)

    daemon = SyncDaemon(config=config, dev_mode=dev_mode)
    app = create_app(daemon)

    server = uvicorn.Server(
        uvicorn.Config(app, host=host, port=port, log_level="info" if dev_mode else "warning")
    )

    def handle_shutdown() -> None:
        logger.info("Shutdown requested, stopping API server...")
        server.should_exit = True

    daemon.on_shutdown = handle_shutdown

    logger.info(f"Starting API server on {host}:{port}")
    server.run()


def main() -> None:
    import argparse
    parser = argparse.ArgumentParser(description="DEVSYNC Daemon")
    parser.add_argument("--host", default=None, help="API host")
    parser.add_argument("--port", type=int, default=None, help="API port")
    parser.add_argument("--dev", action="store_true", help="Development mode")
    args = parser.parse_args()

    config = load_config()
    run_daemon(
        host=args.host or config.api.host,
        port=args.port or config.api.port,
        dev_mode=args.dev,
        config=config,
    )


if __name__ == "__main__":
    main()
