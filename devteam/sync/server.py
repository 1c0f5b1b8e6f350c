"""WebSocket sync server distributing engine snapshots to observers.

One FastAPI app, served by uvicorn, exposes a single WebSocket route (default
`/sync`). Each connection gets a `ready` frame on connect and may then send
`hello` (declare topic subscriptions) or `get.worktrees` (one-shot snapshot).
Every new engine snapshot is pushed to connections subscribed to
`worktrees`. Refreshes are driven by a coarse timer and by the filesystem
watcher; overlapping requests collapse into one follow-up refresh.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from devteam.constants import (
    DEFAULT_SYNC_HOST,
    DEFAULT_SYNC_PATH,
    DEFAULT_SYNC_PORT,
    DEFAULT_SYNC_REFRESH_INTERVAL_S,
    WORKTREES_TOPIC,
    WS_SEND_TIMEOUT_S,
)
from devteam.core.models import Snapshot
from devteam.core.task_registry import TaskRegistry
from devteam.sync.protocol import (
    CLIENT_MESSAGE_ADAPTER,
    HelloMessage,
    ReadyMessage,
    WorktreesSnapshotMessage,
    now_ms,
)

if TYPE_CHECKING:
    from devteam.core.engine import SnapshotEngine
    from devteam.sync.watcher import WorktreeWatcher

logger = logging.getLogger(__name__)

_SERVER_START_RETRIES = 50  # x 0.1s
_SERVER_STOP_TIMEOUT_S = 5.0


class SyncServer:  # pylint: disable=too-many-instance-attributes  # Server owns clients, tasks and uvicorn
    """Serves snapshots of one engine over WebSocket."""

    def __init__(
        self,
        engine: SnapshotEngine,
        host: str = DEFAULT_SYNC_HOST,
        port: int = DEFAULT_SYNC_PORT,
        path: str = DEFAULT_SYNC_PATH,
        refresh_interval_s: float = DEFAULT_SYNC_REFRESH_INTERVAL_S,
        send_timeout_s: float = WS_SEND_TIMEOUT_S,
        watcher: Optional[WorktreeWatcher] = None,
        task_registry: Optional[TaskRegistry] = None,
    ) -> None:
        self.engine = engine
        self.host = host
        self.port = port
        self.path = path
        self.refresh_interval_s = refresh_interval_s
        self.send_timeout_s = send_timeout_s
        self.watcher = watcher
        self.task_registry = task_registry or TaskRegistry()

        self.app = FastAPI(title="DevTeam Sync")
        self._ws_clients: set[WebSocket] = set()
        self._client_subscriptions: dict[WebSocket, set[str]] = {}

        self._refresh_task: Optional[asyncio.Task[None]] = None
        self._refresh_pending = False
        self._timer_task: Optional[asyncio.Task[None]] = None
        self._watch_task: Optional[asyncio.Task[None]] = None
        self._running = False

        self.server: Optional[uvicorn.Server] = None
        self.server_task: Optional[asyncio.Task[None]] = None

        self._setup_routes()
        self.engine.subscribe(self._on_engine_event)

    # ==================== Routes ====================

    def _setup_routes(self) -> None:
        @self.app.get("/health", response_model=None)
        async def health() -> dict[str, object]:  # guard: loose-dict - health payload
            return {
                "status": "ok",
                "version": self.engine.current_snapshot().version,
                "clients": len(self._ws_clients),
            }

        self.app.add_api_websocket_route(self.path, self._handle_websocket)

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        """Serve one observer connection until it disconnects."""
        await websocket.accept()
        self._ws_clients.add(websocket)
        self._client_subscriptions[websocket] = set()
        logger.info("WebSocket client connected (%d total)", len(self._ws_clients))

        try:
            await self._send(websocket, ReadyMessage(version=self.engine.current_snapshot().version, ts=now_ms()))
            while True:
                message = await websocket.receive_text()
                try:
                    data_raw: object = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("WebSocket received invalid JSON")
                    continue

                if not isinstance(data_raw, dict):
                    logger.warning("WebSocket received non-dict message: %s", type(data_raw))
                    continue

                try:
                    request = CLIENT_MESSAGE_ADAPTER.validate_python(data_raw)
                except ValidationError:
                    logger.warning("WebSocket received unsupported message type: %s", data_raw.get("type"))
                    continue

                if isinstance(request, HelloMessage):
                    self._client_subscriptions[websocket] = set(request.subs)
                    logger.info("WebSocket client subscribed to %s", sorted(request.subs))
                await self._send(websocket, WorktreesSnapshotMessage.from_snapshot(self.engine.current_snapshot()))

        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected")
        except Exception as e:
            logger.error("WebSocket error: %s", e, exc_info=True)
        finally:
            self._ws_clients.discard(websocket)
            self._client_subscriptions.pop(websocket, None)

    async def _send(self, websocket: WebSocket, message: BaseModel) -> None:
        await websocket.send_json(message.model_dump(mode="json"))

    # ==================== Broadcast ====================

    def subscribers(self, topic: str) -> list[WebSocket]:
        return [ws for ws, topics in self._client_subscriptions.items() if topic in topics]

    def _on_engine_event(self, event: str, data: object) -> None:
        if event == "snapshot" and isinstance(data, Snapshot):
            self._broadcast_payload(WorktreesSnapshotMessage.from_snapshot(data).model_dump(mode="json"))
        elif event == "error":
            logger.warning("Engine refresh error, serving last snapshot: %s", data)

    def _drop_client(self, client: WebSocket) -> None:
        self._ws_clients.discard(client)
        self._client_subscriptions.pop(client, None)

    def _broadcast_payload(self, payload: dict[str, object]) -> None:  # guard: loose-dict - WS payload
        """Send a snapshot payload to every `worktrees` subscriber."""
        for ws in self.subscribers(WORKTREES_TOPIC):

            async def _send_with_timeout(client: WebSocket = ws) -> None:
                try:
                    await asyncio.wait_for(client.send_json(payload), timeout=self.send_timeout_s)
                except asyncio.TimeoutError:
                    logger.warning("WebSocket send timeout, removing client")
                    self._drop_client(client)
                    await self._close_ws(client)
                except (OSError, ConnectionError, RuntimeError) as exc:
                    logger.info("WebSocket connection lost: %s", exc)
                    self._drop_client(client)

            self.task_registry.spawn(_send_with_timeout(), name="ws-broadcast-snapshot")

    async def _close_ws(self, websocket: WebSocket) -> None:
        try:
            await asyncio.wait_for(websocket.close(), timeout=1.0)
        except (asyncio.TimeoutError, OSError, RuntimeError) as e:
            logger.debug("Closing WebSocket failed: %s", e)

    # ==================== Refresh scheduling ====================

    def request_refresh(self, reason: str = "") -> None:
        """Ask for a refresh; requests during a running refresh coalesce into one rerun."""
        if self._refresh_task and not self._refresh_task.done():
            self._refresh_pending = True
            return
        logger.debug("Refresh requested (%s)", reason or "unspecified")
        self._refresh_task = self.task_registry.spawn(self._run_refresh(), name="sync-refresh")

    async def _run_refresh(self, progressive: bool = False) -> None:
        while True:
            self._refresh_pending = False
            try:
                if progressive:
                    await self.engine.refresh_progressive()
                else:
                    await self.engine.refresh()
            except Exception as e:
                logger.error("Refresh failed: %s", e, exc_info=True)
            progressive = False
            if not self._refresh_pending:
                return

    async def _timer_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.refresh_interval_s)
            self.request_refresh("timer")

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start uvicorn, the refresh timer and the filesystem watcher."""
        self._running = True
        logger.info("Sync server starting on ws://%s:%d%s", self.host, self.port, self.path)
        await self._start_server()
        self._refresh_task = self.task_registry.spawn(self._run_refresh(progressive=True), name="sync-refresh")
        self._timer_task = self.task_registry.spawn(self._timer_loop(), name="sync-timer")
        if self.watcher is not None:
            self._watch_task = self.task_registry.spawn(self.watcher.run(), name="sync-watcher")

    async def stop(self) -> None:
        self._running = False
        logger.info("Sync server stopping")
        self.engine.unsubscribe(self._on_engine_event)

        for ws in list(self._ws_clients):
            await self._close_ws(ws)
        self._ws_clients.clear()
        self._client_subscriptions.clear()

        await self.task_registry.shutdown(timeout=2.0)
        await self._stop_server()
        logger.info("Sync server stopped")

    async def _start_server(self) -> None:
        if self.server_task and not self.server_task.done():
            logger.warning("Sync server already running; skipping start")
            return

        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self.server = uvicorn.Server(config)
        server = self.server

        # Run in the background without uvicorn's signal handlers; the daemon owns shutdown.
        serve_coro = server._serve() if hasattr(server, "_serve") else server.serve()
        self.server_task = asyncio.create_task(serve_coro)

        for _ in range(_SERVER_START_RETRIES):
            if server.started:
                break
            if self.server_task.done():
                exc = self.server_task.exception()
                raise RuntimeError("Sync server exited during startup") from exc
            await asyncio.sleep(0.1)
        if not server.started:
            raise TimeoutError("Sync server failed to start within timeout")

    async def _stop_server(self) -> None:
        if self.server is not None:
            if self.server.started:
                self.server.should_exit = True
            elif self.server_task:
                self.server_task.cancel()
        if self.server_task:
            try:
                await asyncio.wait_for(self.server_task, timeout=_SERVER_STOP_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.warning("Timed out stopping sync server; cancelling task")
                self.server_task.cancel()
            except asyncio.CancelledError:
                pass
        self.server = None
        self.server_task = None
