"""Deterministic sandbox supervisor exception hierarchy."""

from __future__ import annotations


class HbenchError(Exception):
    """Base error type for all sandbox and supervisor failures."""

    error_code = "HBENCH_ERROR"


class InvalidRepositoryUrl(HbenchError, ValueError):
    """Repository URL cannot be parsed into an owner/name pair."""

    error_code = "REPO_URL_INVALID"

    def __init__(self, repo_url: str):
        super().__init__("Invalid repository URL")
        self.repo_url = repo_url


class GitCommandFailed(HbenchError):
    """Underlying git invocation returned an unaccepted exit status."""

    error_code = "GIT_COMMAND_FAILED"

    def __init__(self, command: list[str], stderr: str, *, returncode: int | None = None):
        super().__init__(f"git {' '.join(command)} failed: {stderr.strip()}")
        self.command = list(command)
        self.stderr = stderr
        self.returncode = returncode


class MissingWorktrees(HbenchError):
    """Previously provisioned worktrees are absent for one or more agents."""

    error_code = "WORKTREES_MISSING"

    def __init__(self, agents: list[str], message: str | None = None):
        if message is None:
            message = f"Missing worktrees for: {', '.join(agents)}. Run SETUP to recreate."
        super().__init__(message)
        self.agents = list(agents)


class WorktreeNotConfigured(HbenchError):
    """Agent has no known worktree path to run in."""

    error_code = "WORKTREE_NOT_CONFIGURED"

    def __init__(self, agent: str):
        super().__init__("No worktree configured. Run SETUP first.")
        self.agent = agent


class SpawnFailed(HbenchError):
    """Agent process could not be started."""

    error_code = "SPAWN_FAILED"

    def __init__(self, agent: str, cause: BaseException):
        super().__init__(f"Failed to start {agent}: {cause}")
        self.agent = agent
        self.cause = cause


class UnknownAgent(HbenchError):
    """Agent name is not part of the configured agent set."""

    error_code = "AGENT_UNKNOWN"

    def __init__(self, agent: str):
        super().__init__("Unknown agent")
        self.agent = agent
