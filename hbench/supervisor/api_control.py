"""Out-of-band request/response endpoints: stop-all, diff and agent status."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from hbench.contracts import NO_WORKTREE_NOTICE
from hbench.errors import HbenchError
from hbench.sandbox.diff import build_worktree_diff
from hbench.supervisor.models import AgentStatus, StopResponse
from hbench.supervisor.runtime import SandboxRuntime, get_runtime

logger = logging.getLogger("hbench.supervisor.api_control")

router = APIRouter(prefix="/api")


@router.post("/stop", response_model=StopResponse)
async def stop_all_agents(runtime: SandboxRuntime = Depends(get_runtime)):
    """Stop every running agent process."""
    try:
        await runtime.supervisor.stop_all()
    except Exception as e:
        logger.error("Failed to stop agents: %s", e)
        return PlainTextResponse(str(e) or "Unknown error", status_code=500)
    return StopResponse(status="success")


@router.get("/diff")
async def get_agent_diff(
    agent: Optional[str] = None,
    repoUrl: Optional[str] = None,
    runtime: SandboxRuntime = Depends(get_runtime),
):
    """Return the unified diff of an agent's worktree as plain text."""
    if not agent or agent not in runtime.supervisor.agents:
        return PlainTextResponse("Unknown agent", status_code=400)
    worktree_path = runtime.provisioner.resolve_path(agent, repoUrl)
    if worktree_path is None:
        return PlainTextResponse(NO_WORKTREE_NOTICE, status_code=400)
    try:
        diff = await build_worktree_diff(worktree_path)
    except HbenchError as e:
        logger.warning("Diff failed for %s [%s]: %s", agent, e.error_code, e)
        return PlainTextResponse(str(e) or "Unknown error", status_code=500)
    except OSError as e:
        logger.warning("Diff failed for %s: %s", agent, e)
        return PlainTextResponse(str(e) or "Unknown error", status_code=500)
    return PlainTextResponse(diff)


@router.get("/agents", response_model=list[AgentStatus])
async def list_agents(runtime: SandboxRuntime = Depends(get_runtime)):
    """Describe each configured agent's process and worktree."""
    statuses = []
    for row in runtime.supervisor.snapshot():
        worktree = runtime.worktrees.get(row["agent"])
        statuses.append(AgentStatus(**row, worktree=str(worktree) if worktree else None))
    return statuses
