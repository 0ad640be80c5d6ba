"""Process-wide wiring of store, provisioner and supervisor."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from hbench.config import HbenchConfig
from hbench.sandbox.state import WorktreeTable
from hbench.sandbox.store import SandboxStore
from hbench.sandbox.worktrees import WorktreeProvisioner
from hbench.supervisor.process_supervisor import ProcessSupervisor


@dataclass
class SandboxRuntime:
    config: HbenchConfig
    worktrees: WorktreeTable
    store: SandboxStore
    provisioner: WorktreeProvisioner
    supervisor: ProcessSupervisor


def build_runtime(config: HbenchConfig, **supervisor_kwargs) -> SandboxRuntime:
    worktrees = WorktreeTable()
    store = SandboxStore(config.sandbox_root, worktrees)
    return SandboxRuntime(
        config=config,
        worktrees=worktrees,
        store=store,
        provisioner=WorktreeProvisioner(store, config.agents),
        supervisor=ProcessSupervisor(config, worktrees, **supervisor_kwargs),
    )


def get_runtime(request: Request) -> SandboxRuntime:
    return request.app.state.runtime
