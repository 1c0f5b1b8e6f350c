"""WebSocket distribution of worktree snapshots."""
