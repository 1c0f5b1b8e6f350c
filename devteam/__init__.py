"""DevTeam worktree synchronization and status engine."""

__version__ = "0.1.0"
