import asyncio
import json
from pathlib import Path
from typing import Optional

import httpx
import typer
import uvicorn

from hbench.config import DEFAULT_PORT, load_config, load_config_dict, parse_port, save_config
from hbench.errors import HbenchError
from hbench.sandbox.diff import build_worktree_diff
from hbench.sandbox.state import WorktreeTable
from hbench.sandbox.store import SandboxStore
from hbench.sandbox.worktrees import WorktreeProvisioner

app = typer.Typer(help="Run coding agents side by side in isolated git worktrees.")


def _resolve_port(port: Optional[str], default: int) -> int:
    if port is None:
        return default
    if not port.strip().isdigit():
        typer.echo(f"Invalid port: {port}")
        raise typer.Exit(code=1)
    parsed = parse_port(port)
    if parsed is None:
        typer.echo(f"Port out of range: {port}")
        raise typer.Exit(code=1)
    return parsed


def _server_url(host: Optional[str], port: Optional[str]) -> str:
    config = load_config()
    return f"http://{host or config.host}:{_resolve_port(port, config.port)}"


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from config)"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Override server port"),
):
    """Run the sandbox supervisor server in the foreground."""
    from hbench.supervisor.app import create_app

    config = load_config()
    bind_host = host or config.host
    bind_port = _resolve_port(port, config.port)
    typer.echo(f"Server running at http://{bind_host}:{bind_port}")
    uvicorn.run(create_app(config), host=bind_host, port=bind_port, timeout_keep_alive=120)


@app.command()
def stop(
    host: Optional[str] = typer.Option(None, "--host", help="Server host"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Server port"),
):
    """Stop every agent process on a running server."""
    url = _server_url(host, port)
    try:
        response = httpx.post(f"{url}/api/stop", timeout=10.0)
    except (httpx.ConnectError, httpx.TimeoutException):
        typer.echo("Server is not running.")
        raise typer.Exit(code=1)
    if response.status_code != 200:
        typer.echo(f"Failed to stop agents: {response.text}")
        raise typer.Exit(code=1)
    typer.echo("All agents stopped.")


@app.command()
def status(
    host: Optional[str] = typer.Option(None, "--host", help="Server host"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Server port"),
    json_output: bool = typer.Option(False, "--json", help="Print machine-readable JSON payload"),
):
    """Show per-agent process phase and worktree on a running server."""
    url = _server_url(host, port)
    try:
        response = httpx.get(f"{url}/api/agents", timeout=5.0)
    except httpx.ConnectError:
        typer.echo("Server: NOT RESPONDING (Connection refused)")
        raise typer.Exit(code=1)
    if response.status_code != 200:
        typer.echo(f"Server: UNHEALTHY (HTTP {response.status_code})")
        raise typer.Exit(code=1)
    agents = response.json()
    if json_output:
        typer.echo(json.dumps(agents, indent=2))
        return
    typer.echo("Server: RUNNING")
    for agent in agents:
        pid = agent.get("pid") or "-"
        worktree = agent.get("worktree") or "(no worktree)"
        typer.echo(f" - {agent['agent']} [{agent['phase']}] pid={pid} {worktree}")


@app.command()
def diff(
    agent: str,
    repo_url: str = typer.Option(..., "--repo-url", help="Repository URL the sandbox was set up from"),
):
    """Print the diff of an agent's worktree without a running server."""
    config = load_config()
    if agent not in config.agents:
        typer.echo("Unknown agent")
        raise typer.Exit(code=1)
    store = SandboxStore(config.sandbox_root, WorktreeTable())
    worktree_path = WorktreeProvisioner(store, config.agents).resolve_path(agent, repo_url)
    if worktree_path is None:
        typer.echo("No worktree configured. Run SETUP first.")
        raise typer.Exit(code=1)
    try:
        output = asyncio.run(build_worktree_diff(worktree_path))
    except HbenchError as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    typer.echo(output, nl=False)


@app.command()
def wipe(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete the whole sandbox root (stop the server first)."""
    config = load_config()
    if not yes:
        typer.confirm(f"Delete {config.sandbox_root}?", abort=True)
    store = SandboxStore(config.sandbox_root, WorktreeTable())
    if store.wipe():
        typer.echo(f"Removed {config.sandbox_root}")
    else:
        typer.echo("Sandbox already empty.")


@app.command()
def agents(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file to read"),
):
    """List configured agents and the command each one launches."""
    config = load_config(config_path)
    for agent in config.agents:
        typer.echo(f"{agent}: {' '.join(config.command_for(agent))}")


@app.command("config")
def config_command(
    agents_csv: Optional[str] = typer.Option(None, "--agents", help="Comma-separated agent names"),
    sandbox_root: Optional[str] = typer.Option(None, "--sandbox-root", help="Directory holding cloned repositories"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Default server port"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file to update"),
):
    """Show the persisted config, or update and save the given fields."""
    current = load_config_dict(config_path)
    updates: dict = {}
    if agents_csv is not None:
        updates["agents"] = [name.strip() for name in agents_csv.split(",") if name.strip()]
    if sandbox_root is not None:
        updates["sandbox_root"] = sandbox_root
    if port is not None:
        updates["port"] = _resolve_port(port, DEFAULT_PORT)
    if updates:
        try:
            current = save_config({**current, **updates}, path=config_path)
        except ValueError as e:
            typer.echo(f"Invalid config: {e}")
            raise typer.Exit(code=1)
    typer.echo(json.dumps(current, indent=2))


if __name__ == "__main__":
    app()
