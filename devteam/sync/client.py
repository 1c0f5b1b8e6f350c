"""Sync client for observers of a running sync server.

The WebSocket connection runs in a background thread (sync `websockets`
client) so it never blocks a UI event loop. On every (re)connect the client
sends `hello` for its topics; snapshots are delivered to the callback only
when their version is newer than the last one seen.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Callable, Optional

import httpx
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import ClientConnection, connect

from devteam.constants import DEFAULT_SYNC_HOST, DEFAULT_SYNC_PATH, DEFAULT_SYNC_PORT, WORKTREES_TOPIC
from devteam.core.models import WorktreeSummary
from devteam.sync.protocol import SERVER_MESSAGE_ADAPTER, ReadyMessage, WorktreesSnapshotMessage

logger = logging.getLogger(__name__)

# Reconnection settings
WS_INITIAL_BACKOFF = 1.0  # Initial reconnect delay in seconds
WS_MAX_BACKOFF = 30.0  # Maximum reconnect delay
WS_BACKOFF_MULTIPLIER = 2.0  # Exponential backoff multiplier

SnapshotCallback = Callable[[list[WorktreeSummary], int], None]


def next_backoff(current: float) -> float:
    return min(current * WS_BACKOFF_MULTIPLIER, WS_MAX_BACKOFF)


class SyncClient:
    """Background-thread WebSocket client that tracks the latest snapshot."""

    def __init__(
        self,
        host: str = DEFAULT_SYNC_HOST,
        port: int = DEFAULT_SYNC_PORT,
        path: str = DEFAULT_SYNC_PATH,
        subscriptions: Optional[list[str]] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.path = path
        self.subscriptions = subscriptions or [WORKTREES_TOPIC]
        self.last_version = -1
        self._callback: Optional[SnapshotCallback] = None
        self._ws: Optional[ClientConnection] = None
        self._ws_lock = threading.Lock()
        self._ws_thread: Optional[threading.Thread] = None
        self._ws_running = False
        self._stop_event = threading.Event()

    @property
    def uri(self) -> str:
        return f"ws://{self.host}:{self.port}{self.path}"

    @property
    def connected(self) -> bool:
        with self._ws_lock:
            return self._ws is not None

    def start(self, callback: SnapshotCallback) -> None:
        """Connect in a background thread and deliver snapshots to callback.

        Args:
            callback: Called with (items, version) for each newer snapshot.
        """
        if self._ws_running:
            logger.debug("Sync client already running")
            return
        self._callback = callback
        self._ws_running = True
        self._stop_event.clear()
        self._ws_thread = threading.Thread(target=self._ws_loop, daemon=True, name="sync-client")
        self._ws_thread.start()

    def stop(self) -> None:
        self._ws_running = False
        self._stop_event.set()
        with self._ws_lock:
            if self._ws:
                try:
                    self._ws.close()
                except (OSError, WebSocketException) as e:
                    logger.debug("Error closing sync socket: %s", e)
                self._ws = None
        if self._ws_thread and self._ws_thread.is_alive():
            self._ws_thread.join(timeout=2.0)
        self._ws_thread = None

    def request_snapshot(self) -> None:
        """Ask the server for the current snapshot without changing subscriptions."""
        self._send({"type": "get.worktrees"})

    def _send(self, payload: dict[str, object]) -> None:  # guard: loose-dict - WS payload
        with self._ws_lock:
            if not self._ws:
                return
            try:
                self._ws.send(json.dumps(payload))
            except (ConnectionClosed, OSError) as e:
                logger.debug("Sync send failed: %s", e)

    def _ws_loop(self) -> None:
        backoff = WS_INITIAL_BACKOFF
        while self._ws_running:
            try:
                self._connect_and_run()
                backoff = WS_INITIAL_BACKOFF
            except ConnectionClosed:
                logger.info("Sync connection closed")
            except WebSocketException as e:
                logger.warning("Sync WebSocket error: %s", e)
            except OSError as e:
                logger.debug("Sync connection failed: %s", e)

            with self._ws_lock:
                self._ws = None
            if not self._ws_running:
                break
            logger.debug("Reconnecting in %.1fs...", backoff)
            self._stop_event.wait(backoff)
            backoff = next_backoff(backoff)

    def _connect_and_run(self) -> None:
        ws = connect(self.uri)
        with self._ws_lock:
            self._ws = ws
        logger.info("Sync client connected to %s", self.uri)
        ws.send(json.dumps({"type": "hello", "subs": self.subscriptions}))
        for message in ws:
            if not self._ws_running:
                break
            self.handle_message(message)

    def handle_message(self, message: str | bytes) -> None:
        """Apply one server frame; stale or duplicate snapshots are dropped."""
        try:
            event = SERVER_MESSAGE_ADAPTER.validate_json(message)
        except ValidationError as e:
            logger.warning("Invalid sync payload: %s", e)
            return
        if isinstance(event, ReadyMessage):
            logger.debug("Sync server ready at version %d", event.version)
            return
        if isinstance(event, WorktreesSnapshotMessage):
            if event.version <= self.last_version:
                return
            self.last_version = event.version
            items = [WorktreeSummary.from_dict(item) for item in event.items]
            if self._callback:
                self._callback(items, event.version)

    def fetch_health(self, timeout: float = 2.0) -> dict[str, object]:  # guard: loose-dict - health payload
        """Query the server's HTTP health endpoint."""
        resp = httpx.get(f"http://{self.host}:{self.port}/health", timeout=timeout)
        resp.raise_for_status()
        data: dict[str, object] = resp.json()
        return data
