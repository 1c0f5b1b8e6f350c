"""DevTeam sync daemon: engine + WebSocket server + filesystem watcher."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from devteam.config import DevTeamConfig, config
from devteam.core.engine import SnapshotEngine
from devteam.core.git_inspector import GitInspector
from devteam.core.github_client import GitHubClient
from devteam.core.pr_cache import PRCacheTTL, PRStatusCache
from devteam.core.tmux_multiplexer import TmuxMultiplexer
from devteam.logging_config import setup_logging
from devteam.sync.server import SyncServer
from devteam.sync.watcher import WorktreeWatcher

logger = logging.getLogger(__name__)


def build_engine(cfg: DevTeamConfig) -> SnapshotEngine:
    """Wire the production adapters into an engine."""
    inspector = GitInspector(
        cfg.projects_dir,
        timeout=cfg.engine.subprocess_timeout_s,
        short_timeout=cfg.engine.subprocess_short_timeout_s,
        concurrency=cfg.engine.git_concurrency,
    )
    cache_path = Path(cfg.cache.pr_cache_path).expanduser() if cfg.cache.persist else None
    ttl = PRCacheTTL(
        pending_s=cfg.cache.pending_ttl_s,
        no_pr_s=cfg.cache.no_pr_ttl_s,
        passing_s=cfg.cache.passing_ttl_s,
        failing_s=cfg.cache.failing_ttl_s,
        open_s=cfg.cache.open_ttl_s,
        closed_s=cfg.cache.closed_ttl_s,
        merged_s=cfg.cache.merged_ttl_s,
        unknown_s=cfg.cache.unknown_ttl_s,
    )
    pr_cache = PRStatusCache(inspector, persist_path=cache_path, ttl=ttl, concurrency=cfg.engine.git_concurrency)
    return SnapshotEngine(
        inspector,
        TmuxMultiplexer(timeout=cfg.engine.subprocess_short_timeout_s),
        GitHubClient(timeout=cfg.engine.subprocess_timeout_s),
        pr_cache,
        git_refresh_interval_s=cfg.engine.git_refresh_interval_s,
        pr_refresh_interval_s=cfg.engine.pr_refresh_interval_s,
        git_concurrency=cfg.engine.git_concurrency,
    )


def build_server(cfg: DevTeamConfig, engine: SnapshotEngine) -> SyncServer:
    server = SyncServer(
        engine,
        host=cfg.sync.host,
        port=cfg.sync.port,
        path=cfg.sync.path,
        refresh_interval_s=cfg.sync.refresh_interval_s,
        send_timeout_s=cfg.sync.send_timeout_s,
    )
    if cfg.sync.watch:
        server.watcher = WorktreeWatcher(cfg.projects_dir, server.request_refresh, debounce_s=cfg.sync.debounce_s)
    return server


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="devteam-server", description="Serve worktree snapshots over WebSocket")
    parser.add_argument("--projects-dir", help="Root holding projects and their -branches dirs")
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="Bind port")
    parser.add_argument("--path", help="WebSocket path")
    parser.add_argument("--no-watch", action="store_true", help="Disable the filesystem watcher")
    parser.add_argument("--log-level", help="Override DEVTEAM_LOG_LEVEL")
    return parser.parse_args(argv)


def apply_args(cfg: DevTeamConfig, args: argparse.Namespace) -> DevTeamConfig:
    """Command-line flags take precedence over environment and file config."""
    data = cfg.model_dump()
    if args.projects_dir:
        data["projects_dir"] = args.projects_dir
    if args.host:
        data["sync"]["host"] = args.host
    if args.port is not None:
        data["sync"]["port"] = args.port
    if args.path:
        data["sync"]["path"] = args.path
    if args.no_watch:
        data["sync"]["watch"] = False
    return DevTeamConfig.model_validate(data)


async def run(cfg: DevTeamConfig) -> None:
    """Run until SIGINT/SIGTERM."""
    engine = build_engine(cfg)
    server = build_server(cfg, engine)
    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await server.start()
        logger.info("DevTeam sync serving %s on ws://%s:%d%s", cfg.projects_dir, server.host, server.port, server.path)
        await shutdown_event.wait()
    finally:
        await server.stop()


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(level=args.log_level)
    cfg = apply_args(config, args)
    try:
        asyncio.run(run(cfg))
    except KeyboardInterrupt:
        logger.info("Received interrupt signal...")
    except (OSError, RuntimeError, TimeoutError) as e:
        logger.error("Sync daemon failed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
