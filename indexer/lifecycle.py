"""
Tezos Delegation Indexer - Lifecycle Coordinator

Owns startup ordering and coordinated shutdown of the two execution contexts
that share the checkpoint store: the ingestion worker task and the uvicorn
HTTP server.

Shutdown sequence (SIGINT / SIGTERM, or the server exiting on its own):
    a. broadcast stop to the ingestion worker
    b. let the HTTP server drain in-flight requests within shutdown_timeout
    c. wait for the worker's completion barrier (its current cycle finishes)
    d. return to the caller

Missing the HTTP drain deadline, or the worker join deadline, raises
ShutdownTimeoutError. The entrypoint treats it as fatal.
"""

from __future__ import annotations

import asyncio
import signal
from types import FrameType
from typing import Any, Callable, Protocol

import uvicorn

from .core.errors import ShutdownTimeoutError
from .core.logging import get_logger
from .workers.ingest_worker import IngestionWorker

logger = get_logger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 10.0
DEFAULT_WORKER_JOIN_TIMEOUT = 90.0


class ServerLike(Protocol):
    should_exit: bool
    force_exit: bool

    async def serve(self, sockets: Any = None) -> None: ...


class WorkerHandle:
    """A spawned ingestion worker task and its completion barrier."""

    def __init__(self, worker: IngestionWorker, task: asyncio.Task[None]) -> None:
        self.worker = worker
        self._task = task

    @classmethod
    def spawn(cls, worker: IngestionWorker) -> "WorkerHandle":
        task = asyncio.create_task(worker.run(), name="ingestion-worker")
        return cls(worker, task)

    @property
    def done(self) -> bool:
        return self._task.done()

    def stop(self) -> None:
        self.worker.request_stop()

    async def join(self, timeout: float) -> None:
        """
        Wait until the worker task has finished.

        Raises:
            ShutdownTimeoutError: If the worker is still busy after ``timeout``
        """
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ShutdownTimeoutError(
                f"Ingestion worker did not finish its cycle within {timeout:.1f}s"
            ) from exc


class CoordinatedServer(uvicorn.Server):
    """
    uvicorn server that reports exit signals to the coordinator.

    handle_exit does not record the signal for re-raising after serve()
    returns, so the process is not torn down before the worker has joined.
    """

    def __init__(self, config: uvicorn.Config, on_exit: Callable[[], None]) -> None:
        super().__init__(config)
        self._on_exit = on_exit

    def handle_exit(self, sig: int, frame: FrameType | None) -> None:
        logger.info(f"Received {signal.Signals(sig).name}, shutting down")
        self._on_exit()
        if self.should_exit and sig == signal.SIGINT:
            self.force_exit = True
        else:
            self.should_exit = True


class LifecycleCoordinator:
    """
    Runs the ingestion worker and the HTTP server until shutdown.

    Usage:
        coordinator = LifecycleCoordinator(worker, app, port=8000)
        await coordinator.run()
    """

    def __init__(
        self,
        worker: IngestionWorker,
        app: Any,
        *,
        host: str = "0.0.0.0",
        port: int = 8000,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        worker_join_timeout: float = DEFAULT_WORKER_JOIN_TIMEOUT,
        server_factory: Callable[["LifecycleCoordinator"], ServerLike] | None = None,
    ) -> None:
        self.worker = worker
        self.app = app
        self.host = host
        self.port = port
        self.shutdown_timeout = shutdown_timeout
        self.worker_join_timeout = worker_join_timeout
        self._server_factory = server_factory or _build_uvicorn_server
        self._shutdown_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None

    def request_shutdown(self) -> None:
        """Begin shutdown. Safe to call from signal handlers and other threads."""
        if self._loop is None:
            self._shutdown_event.set()
            return
        self._loop.call_soon_threadsafe(self._shutdown_event.set)

    async def run(self) -> int:
        """
        Serve until a shutdown is requested or the server exits, then tear down.

        Returns:
            Process exit code: 0, or the code the server exited with on its own

        Raises:
            ShutdownTimeoutError: If the HTTP drain or the worker join overran
        """
        self._loop = asyncio.get_running_loop()
        server = self._server_factory(self)

        handle = WorkerHandle.spawn(self.worker)
        server_task = asyncio.create_task(self._serve(server), name="http-server")
        logger.info(f"Server is running on {self.host}:{self.port}")

        shutdown_wait = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait({server_task, shutdown_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            shutdown_wait.cancel()

        if server_task.done() and not self._shutdown_event.is_set():
            logger.warning("HTTP server exited without a shutdown request")

        # a. broadcast stop to the worker
        handle.stop()

        # b. bounded graceful drain of the HTTP server
        server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(server_task), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError as exc:
            server.force_exit = True
            raise ShutdownTimeoutError(
                f"HTTP connections still open after {self.shutdown_timeout:.1f}s"
            ) from exc

        # c. completion barrier
        await handle.join(self.worker_join_timeout)
        logger.info("Ingestion worker and HTTP server stopped")
        return server_task.result()

    async def _serve(self, server: ServerLike) -> int:
        # uvicorn calls sys.exit(1) when it cannot bind
        try:
            await server.serve()
        except SystemExit as exc:
            code = exc.code if isinstance(exc.code, int) else 1
            logger.error(f"HTTP server failed to start (exit code {code})")
            return code
        return 0


def _build_uvicorn_server(coordinator: LifecycleCoordinator) -> CoordinatedServer:
    config = uvicorn.Config(
        coordinator.app,
        host=coordinator.host,
        port=coordinator.port,
        log_config=None,
        lifespan="on",
    )
    return CoordinatedServer(config, on_exit=coordinator.request_shutdown)
