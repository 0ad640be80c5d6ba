"""Async git subprocess runner with explicit exit-status tolerance."""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path

from hbench.errors import GitCommandFailed

logger = logging.getLogger("hbench.sandbox.git")

GIT_BINARY = "git"


async def run_git(
    args: list[str],
    cwd: Path,
    accepted_exit_codes: tuple[int, ...] = (0,),
) -> subprocess.CompletedProcess:
    """Run `git <args>` in cwd and raise GitCommandFailed on unaccepted status."""
    logger.debug("Running git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = await asyncio.to_thread(
            subprocess.run,
            [GIT_BINARY, *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as exc:
        raise GitCommandFailed(args, str(exc)) from exc
    if result.returncode not in accepted_exit_codes:
        logger.warning(
            "git %s exited with %s: %s",
            " ".join(args),
            result.returncode,
            result.stderr.strip(),
        )
        raise GitCommandFailed(args, result.stderr, returncode=result.returncode)
    return result
