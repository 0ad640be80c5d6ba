"""Clone-once, worktree-per-agent provisioning."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

from hbench.errors import InvalidRepositoryUrl, MissingWorktrees
from hbench.sandbox.git import run_git
from hbench.sandbox.state import WorktreeTable
from hbench.sandbox.store import SandboxStore

logger = logging.getLogger("hbench.sandbox.worktrees")


def agent_branch_name(agent: str) -> str:
    return f"agent/{agent}"


class WorktreeProvisioner:
    """Creates, attaches to and looks up per-agent git worktrees.

    `provision` is destructive: it always deletes the repository subtree and
    rebuilds it from a fresh clone. `load_existing` never touches the disk
    and fails closed when any agent's worktree is missing.
    """

    def __init__(self, store: SandboxStore, agents: list[str] | tuple[str, ...]) -> None:
        self.store = store
        self.agents = list(agents)
        self._lock = asyncio.Lock()

    @property
    def worktrees(self) -> WorktreeTable:
        return self.store.worktrees

    async def provision(self, repo_url: str) -> dict[str, Path]:
        """Clone repo_url once and add one worktree per agent on `agent/<name>`."""
        slug = self.store.slug_for(repo_url)
        repo_root = self.store.repo_root(slug)
        base_repo_path = self.store.base_repo_path(slug)
        worktree_root = self.store.worktree_root(slug)

        async with self._lock:
            if repo_root.exists():
                logger.info("Removing previous sandbox for %s at %s", slug, repo_root)
                await asyncio.to_thread(shutil.rmtree, repo_root)

            repo_root.mkdir(parents=True, exist_ok=True)
            worktree_root.mkdir(parents=True, exist_ok=True)
            logger.info("Cloning %s into %s", repo_url, base_repo_path)
            await run_git(["clone", repo_url, str(base_repo_path)], repo_root)

            provisioned: dict[str, Path] = {}
            for agent in self.agents:
                worktree_path = self.store.worktree_path(slug, agent)
                if not worktree_path.exists():
                    await run_git(
                        [
                            "-C",
                            str(base_repo_path),
                            "worktree",
                            "add",
                            "-b",
                            agent_branch_name(agent),
                            str(worktree_path),
                        ],
                        repo_root,
                    )
                self.worktrees.set(agent, worktree_path)
                provisioned[agent] = worktree_path
            logger.info("Provisioned %d worktrees for %s", len(provisioned), slug)
            return provisioned

    def load_existing(self, repo_url: str) -> dict[str, Path]:
        """Attach to worktrees created by an earlier provision of repo_url."""
        slug = self.store.slug_for(repo_url)
        worktree_root = self.store.worktree_root(slug)
        if not worktree_root.exists():
            raise MissingWorktrees(
                self.agents,
                "No existing worktrees found. Run SETUP first.",
            )

        missing = [
            agent
            for agent in self.agents
            if not self.store.worktree_path(slug, agent).exists()
        ]
        if missing:
            raise MissingWorktrees(missing)

        attached: dict[str, Path] = {}
        for agent in self.agents:
            worktree_path = self.store.worktree_path(slug, agent)
            self.worktrees.set(agent, worktree_path)
            attached[agent] = worktree_path
        logger.info("Attached to existing worktrees for %s", slug)
        return attached

    def path_for(self, agent: str) -> Path | None:
        return self.worktrees.get(agent)

    def resolve_path(self, agent: str, repo_url: str | None = None) -> Path | None:
        """Known path for agent, else an on-disk candidate derived from repo_url."""
        known = self.path_for(agent)
        if known is not None:
            return known
        if not repo_url:
            return None
        try:
            slug = self.store.slug_for(repo_url)
        except InvalidRepositoryUrl:
            return None
        candidate = self.store.worktree_path(slug, agent)
        if not candidate.exists():
            return None
        self.worktrees.set(agent, candidate)
        return candidate
