"""Unified diff snapshots covering tracked edits and untracked files."""

from __future__ import annotations

import asyncio
from pathlib import Path

from hbench.sandbox.git import run_git

# `git diff --no-index` exits 1 when the compared files differ.
NO_INDEX_ACCEPTED_EXIT_CODES = (0, 1)


def parse_untracked(porcelain_z: str) -> list[str]:
    """Extract untracked paths from `git status --porcelain -z` output."""
    return [
        entry[3:]
        for entry in porcelain_z.split("\0")
        if entry.startswith("?? ") and len(entry) > 3
    ]


async def build_worktree_diff(worktree_path: Path) -> str:
    """Return tracked diff followed by one diff per untracked file.

    Always reads the current disk state; returns "" for a pristine worktree.
    """
    cwd = str(worktree_path)
    diff = await run_git(["-C", cwd, "diff"], worktree_path)
    status = await run_git(
        ["-C", cwd, "status", "--porcelain", "-z", "--untracked-files=all"],
        worktree_path,
    )
    untracked = parse_untracked(status.stdout)
    if not untracked:
        return diff.stdout

    untracked_diffs = await asyncio.gather(
        *(
            run_git(
                ["-C", cwd, "diff", "--no-index", "--", "/dev/null", file_path],
                worktree_path,
                NO_INDEX_ACCEPTED_EXIT_CODES,
            )
            for file_path in untracked
        )
    )
    segments = [diff.stdout, *(entry.stdout for entry in untracked_diffs)]
    return "\n".join(segment for segment in segments if segment)
