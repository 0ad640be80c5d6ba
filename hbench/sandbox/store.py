"""Sandbox filesystem layout and destructive wipe."""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path

from hbench.errors import InvalidRepositoryUrl
from hbench.sandbox.state import WorktreeTable

logger = logging.getLogger("hbench.sandbox.store")

_REPO_PAIR_RE = re.compile(r"[:/]([^/]+/[^/]+?)(\.git)?$")


def repo_slug_from_url(repo_url: str) -> str | None:
    """Return `owner-name` for a repository URL, or None when unparseable."""
    match = _REPO_PAIR_RE.search(repo_url.strip())
    if not match:
        return None
    pair = match.group(1)
    if pair.endswith(".git"):
        pair = pair[: -len(".git")]
    return re.sub(r"[/\\]", "-", pair)


class SandboxStore:
    """Owns the sandbox root and derives every per-repository path from it."""

    def __init__(self, root: Path, worktrees: WorktreeTable) -> None:
        self.root = root
        self.worktrees = worktrees

    def slug_for(self, repo_url: str) -> str:
        slug = repo_slug_from_url(repo_url)
        if not slug:
            raise InvalidRepositoryUrl(repo_url)
        return slug

    def repo_root(self, slug: str) -> Path:
        return self.root / slug

    def base_repo_path(self, slug: str) -> Path:
        return self.repo_root(slug) / "repo"

    def worktree_root(self, slug: str) -> Path:
        return self.repo_root(slug) / "worktrees"

    def worktree_path(self, slug: str, agent: str) -> Path:
        return self.worktree_root(slug) / agent

    def wipe(self) -> bool:
        """Delete the whole sandbox root. Returns False when nothing was there."""
        self.worktrees.clear()
        if not self.root.exists():
            return False
        logger.info("Wiping sandbox root %s", self.root)
        shutil.rmtree(self.root)
        return True
