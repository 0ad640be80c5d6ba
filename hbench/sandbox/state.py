"""In-memory agent -> worktree path table."""

from __future__ import annotations

from pathlib import Path


class WorktreeTable:
    """
    Runtime lookup of where each agent's worktree lives.
    This is NOT persisted; it is rebuilt by setup or use-existing after a restart.
    """

    def __init__(self) -> None:
        self._paths: dict[str, Path] = {}

    def set(self, agent: str, path: Path) -> None:
        self._paths[agent] = path

    def get(self, agent: str) -> Path | None:
        return self._paths.get(agent)

    def clear(self) -> None:
        self._paths.clear()
