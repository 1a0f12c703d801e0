"""CLI entry point for the exploration engine.

Commands:
- explorer start: Run a new exploration of a task
- explorer list: List explorations
- explorer show: Show one exploration in detail
- explorer stop: Stop a running exploration
- explorer cleanup: Release containers, ports, worktrees and branches
- explorer merge: Merge the winning branch into the current branch
- explorer delete: Delete an exploration record
- explorer validate: Run the pre-flight safety checks
- explorer worktrees: List exploration worktrees in this repository
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from explorer import __version__
from explorer.core.config import build_exploration_config, load_engine_config, load_exploration_config_file
from explorer.core.errors import ExplorationError
from explorer.core.models import ExecutionMode, Exploration, ExplorationStatus
from explorer.core.orchestrator import ExplorationOrchestrator
from explorer.core.worktrees import MergeResult

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
    "stopped": "magenta",
    "created": "yellow",
}


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def get_orchestrator() -> ExplorationOrchestrator:
    repo_path = get_repo_path()
    return ExplorationOrchestrator.from_config(repo_path, load_engine_config(repo_path))


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/red] {error}")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show engine log output")
def main(verbose: bool) -> None:
    """Explorer - run AI coding agents on the same task in parallel.

    Every attempt gets its own git worktree and Docker container; the
    attempts share insights through a lock-protected volume.
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )


@main.command()
@click.argument("task")
@click.option("--branches", "-b", type=int, default=None, help="Number of parallel attempts (1-10)")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ExecutionMode]),
    default=None,
    help="Run attempts in parallel or one after another",
)
@click.option("--strategy", "strategies", multiple=True, help="Strategy label per branch (repeatable)")
@click.option("--image", default=None, help="Docker image for the sandboxes")
@click.option("--cpu", default=None, help="CPU limit per sandbox, e.g. 2 or 1.5")
@click.option("--memory", default=None, help="Memory limit per sandbox, e.g. 4g or 512m")
@click.option("--timeout", type=int, default=None, help="Timeout per attempt in minutes")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file with exploration settings (options override it)",
)
@click.option("--no-cleanup", is_flag=True, default=None, help="Keep the record after cleanup")
@click.option("--auto-merge", is_flag=True, default=None, help="Merge the winning branch when the run completes")
def start(
    task: str,
    branches: int | None,
    mode: str | None,
    strategies: tuple[str, ...],
    image: str | None,
    cpu: str | None,
    memory: str | None,
    timeout: int | None,
    config_file: Path | None,
    no_cleanup: bool | None,
    auto_merge: bool | None,
) -> None:
    """Start an exploration of TASK.

    Example:
        explorer start "Add rate limiting to the API" --branches 3 --strategy redis --strategy memory
    """
    overrides = {
        "branches": branches,
        "mode": mode,
        "strategies": list(strategies) or None,
        "docker_image": image,
        "cpu_limit": cpu,
        "memory_limit": memory,
        "timeout_minutes": timeout,
        "no_cleanup": no_cleanup,
        "auto_merge": auto_merge,
    }
    try:
        if config_file is not None:
            config = load_exploration_config_file(config_file, overrides)
        else:
            config = build_exploration_config(overrides)

        orchestrator = get_orchestrator()
        with console.status(f"[bold green]Exploring with {config.branches} branches..."):
            result = orchestrator.start_exploration(task, config)
    except ExplorationError as e:
        _fail(e)
        return

    table = Table(title=f"Exploration {result.exploration_id}")
    table.add_column("Worktree", style="cyan")
    table.add_column("Container", style="white")
    table.add_column("Status")
    table.add_column("Exit", justify="right")
    for outcome in result.outcomes:
        exit_code = "-" if outcome.exit_code is None else str(outcome.exit_code)
        table.add_row(str(outcome.index), outcome.container_name, _styled(outcome.status.value), exit_code)
    console.print(table)

    winner = f"worktree {result.winner}" if result.winner else "none"
    console.print(
        Panel(
            f"Completed: {result.completed_branches}/{result.total_branches}\n"
            f"Winner: {winner}\n"
            f"Insights: {result.insights_collected}  Decisions: {result.decisions_made}\n"
            f"Duration: {result.duration_ms / 1000:.1f}s",
            title="Summary",
            border_style="green" if result.success else "red",
        )
    )
    if result.merge is not None:
        _print_merge(result.merge)
    if not result.success:
        sys.exit(1)


@main.command(name="list")
@click.option("--active", is_flag=True, help="Only pending or running explorations")
@click.option(
    "--status",
    type=click.Choice([s.value for s in ExplorationStatus]),
    default=None,
    help="Only explorations with this status",
)
def list_cmd(active: bool, status: str | None) -> None:
    """List explorations, newest first."""
    try:
        summaries = get_orchestrator().list_explorations(active_only=active, status=status)
    except ExplorationError as e:
        _fail(e)
        return

    if not summaries:
        console.print("[yellow]No explorations found.[/yellow]")
        return

    table = Table(title="Explorations")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Mode", style="white")
    table.add_column("Branches", justify="right")
    table.add_column("Completed", justify="right")
    table.add_column("Created", style="dim")
    table.add_column("Task", style="white")
    for summary in summaries:
        task = summary.task if len(summary.task) <= 50 else summary.task[:47] + "..."
        table.add_row(
            summary.id,
            _styled(summary.status.value),
            summary.mode.value,
            str(summary.branches),
            str(summary.completed_branches),
            summary.created_at.strftime("%Y-%m-%d %H:%M"),
            task,
        )
    console.print(table)


def _render_exploration(exploration: Exploration) -> None:
    config = exploration.config
    lines = [
        f"Task: {exploration.task}",
        f"Status: {_styled(exploration.status.value)}",
        f"Mode: {config.mode.value}  Branches: {config.branches}",
        f"Image: {config.docker_image}  CPU: {config.cpu_limit}  Memory: {config.memory_limit}",
        f"Created: {exploration.created_at.isoformat()}",
    ]
    if exploration.started_at:
        lines.append(f"Started: {exploration.started_at.isoformat()}")
    if exploration.completed_at:
        lines.append(f"Completed: {exploration.completed_at.isoformat()}")
    if exploration.duration_ms is not None:
        lines.append(f"Duration: {exploration.duration_ms / 1000:.1f}s")
    results = exploration.results
    if results and results.merged_branch:
        lines.append(f"Merged: {results.merged_branch} ({results.merge_commit})")
    elif results and results.merge_error:
        lines.append(f"Merge failed: {results.merge_error}")
    console.print(Panel("\n".join(lines), title=exploration.id))

    if exploration.worktrees:
        table = Table(title="Worktrees")
        table.add_column("#", style="cyan", justify="right")
        table.add_column("Branch", style="white")
        table.add_column("Strategy", style="white")
        table.add_column("Status")
        table.add_column("Port", justify="right")
        table.add_column("Path", style="dim")
        for worktree in exploration.worktrees:
            port = worktree.allocated_resources.port if worktree.allocated_resources else None
            table.add_row(
                str(worktree.index),
                worktree.branch_name,
                worktree.strategy or "default",
                _styled(worktree.status.value),
                str(port) if port else "-",
                worktree.worktree_path,
            )
        console.print(table)

    if exploration.results and exploration.results.comparison_report:
        console.print(exploration.results.comparison_report)


@main.command()
@click.argument("exploration_id")
def show(exploration_id: str) -> None:
    """Show details of EXPLORATION_ID."""
    try:
        exploration = get_orchestrator().get_exploration_status(exploration_id)
    except ExplorationError as e:
        _fail(e)
        return
    _render_exploration(exploration)


@main.command()
@click.argument("exploration_id")
def stop(exploration_id: str) -> None:
    """Stop the containers of a running exploration."""
    try:
        get_orchestrator().stop_exploration(exploration_id)
    except ExplorationError as e:
        _fail(e)
        return
    console.print(f"[green]Stopped {exploration_id}[/green]")


@main.command()
@click.argument("exploration_id")
@click.option("--force", is_flag=True, help="Discard uncommitted work and delete the record")
def cleanup(exploration_id: str, force: bool) -> None:
    """Remove containers, worktrees and branches of an exploration."""
    try:
        errors = get_orchestrator().cleanup(exploration_id, force=force)
    except ExplorationError as e:
        _fail(e)
        return
    for error in errors:
        console.print(f"[yellow]Warning:[/yellow] {error}")
    console.print(f"[green]Cleaned up {exploration_id}[/green]")


def _print_merge(result: MergeResult) -> None:
    if result.merged:
        console.print(f"[green]Merged {result.source_branch} into {result.target_branch}[/green] ({result.commit})")
    else:
        console.print(f"[yellow]Merge of {result.source_branch} aborted; conflicts:[/yellow]")
        for path in result.conflicts:
            console.print(f"  {path}")
    if result.backup_branch:
        console.print(f"Backup: {result.backup_branch}")


@main.command()
@click.argument("exploration_id")
@click.option("--worktree", "worktree_index", type=int, default=None, help="Worktree to merge (default: winner)")
@click.option("--squash", is_flag=True, help="Squash the branch into a single commit")
def merge(exploration_id: str, worktree_index: int | None, squash: bool) -> None:
    """Merge the winning (or chosen) worktree branch of EXPLORATION_ID."""
    try:
        result = get_orchestrator().merge_exploration(exploration_id, worktree_index=worktree_index, squash=squash)
    except ExplorationError as e:
        _fail(e)
        return
    _print_merge(result)
    if not result.merged:
        sys.exit(1)


@main.command()
@click.argument("exploration_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def delete(exploration_id: str, yes: bool) -> None:
    """Delete the record of an exploration (not its worktrees)."""
    if not yes and not click.confirm(f"Delete exploration {exploration_id}?"):
        console.print("[yellow]Aborted[/yellow]")
        return
    try:
        get_orchestrator().delete_exploration(exploration_id)
    except ExplorationError as e:
        _fail(e)
        return
    console.print(f"[green]Deleted {exploration_id}[/green]")


@main.command()
@click.option("--branches", "-b", type=click.IntRange(1, 10), default=3, help="Planned number of branches")
def validate(branches: int) -> None:
    """Run the pre-flight safety checks."""
    try:
        validation = get_orchestrator().validate(branches)
    except ExplorationError as e:
        _fail(e)
        return

    table = Table(title=f"Safety checks for {branches} branches")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_column("Message", style="white")
    for check in validation.checks:
        result = "[green]PASS[/green]" if check.passed else "[red]FAIL[/red]"
        if check.passed and check.warning:
            result = "[yellow]WARN[/yellow]"
        table.add_row(check.name, result, check.warning or check.message)
    console.print(table)

    if not validation.passed:
        console.print("[red]Safety validation failed[/red]")
        sys.exit(1)
    console.print("[green]Ready to explore[/green]")


@main.command()
def worktrees() -> None:
    """List exploration worktrees of this repository."""
    try:
        infos = get_orchestrator().worktrees.get_exploration_worktrees()
    except ExplorationError as e:
        _fail(e)
        return

    if not infos:
        console.print("[yellow]No exploration worktrees.[/yellow]")
        return

    table = Table(title="Exploration Worktrees")
    table.add_column("Branch", style="cyan")
    table.add_column("Commit", style="white")
    table.add_column("Locked")
    table.add_column("Path", style="dim")
    for info in infos:
        table.add_row(info.branch or "-", (info.commit or "")[:10], "yes" if info.locked else "", info.path)
    console.print(table)


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"Explorer v{__version__}")
    console.print("Parallel exploration engine for AI coding agents")


if __name__ == "__main__":
    main()
