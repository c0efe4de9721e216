import argparse
import logging
import os
import shlex
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import daemon
from .client import ControlClient, DaemonNotRunning
from .config import Config, ConfigEditor, ConfigError, parse_time
from .constants import APP_NAME, CONFIG_FILE, DEFAULT_CHECK_INTERVAL, SOCKET_FILE
from .engine import OutcomeStatus, PhaseStatus
from .protocol import (
    ErrorReply,
    Ping,
    Pong,
    ProtocolError,
    Status,
    StatusReply,
    Trigger,
    TriggerResult,
)

logger = logging.getLogger(APP_NAME)
console = Console()

_OUTCOME_STYLES = {
    OutcomeStatus.SUCCESS: "green",
    OutcomeStatus.ADVISORY: "yellow",
    OutcomeStatus.FATAL: "bold red",
}

_CONFIG_TEMPLATE = f"""# {APP_NAME} configuration

[daemon]
# check_interval_seconds = {DEFAULT_CHECK_INTERVAL}

# [[repositories]]
# path = "/home/me/notes"
# auto_commit = true
# commit_message_template = "Auto-commit: {{timestamp}}"
# check_interval_seconds = 60
"""

CONFIG_COMMANDS = {"add", "remove", "list", "enable", "disable", "interval", "edit"}


def _display_path(path: Path | str) -> str:
    return str(path).replace(str(Path.home()), "~")


def _print_error(response: object) -> None:
    if isinstance(response, ErrorReply):
        console.print(
            f"[bold red]ERROR:[/bold red] {escape(response.message)} [dim]({response.code})[/dim]"
        )
    else:
        console.print(f"[bold red]ERROR:[/bold red] Unexpected reply from daemon: {response}")


def _print_saved(config_path: Path) -> None:
    console.print(f"   Saved to [cyan]{_display_path(config_path)}[/cyan].")
    console.print("   [dim]A running daemon picks up the change automatically.[/dim]")


def _seconds(value: str) -> int:
    """Parses '90', '90s', '5m' or '1h' into seconds, for argparse."""
    try:
        return int(value) if value.strip().isdigit() else parse_time(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _humanize(seconds: int) -> str:
    minutes, rest = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    parts = [f"{n}{unit}" for n, unit in ((hours, "h"), (minutes, "m"), (rest, "s")) if n]
    return " ".join(parts) or "0s"


def ping(client: ControlClient) -> int:
    """Checks that the daemon answers on its control socket."""
    response = client.request(Ping())
    if not isinstance(response, Pong):
        _print_error(response)
        return 1
    console.print(
        f"[bold green]SUCCESS:[/bold green] Daemon is running (version {response.version})."
    )
    return 0


def show_status(client: ControlClient) -> int:
    """Displays daemon status and the state of every configured repository."""
    response = client.request(Status())
    if not isinstance(response, StatusReply):
        _print_error(response)
        return 1

    summary = Text()
    summary.append("Daemon:   ", style="bold")
    if response.shutting_down:
        summary.append("Shutting down\n", style="bold yellow")
    else:
        summary.append("Active (Running)\n", style="bold green")
    summary.append("Version:  ", style="bold")
    summary.append(f"{response.version}\n")
    summary.append("Uptime:   ", style="bold")
    summary.append(f"{response.uptime_seconds}s\n")
    summary.append("Interval: ", style="bold")
    summary.append(f"{response.check_interval_seconds}s")
    console.print(Panel(summary, title="Daemon Status", expand=False))

    if not response.repositories:
        console.print("[yellow]No repositories configured.[/yellow]")
        return 0

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Repository", style="cyan")
    table.add_column("Phase")
    table.add_column("Interval", justify="right")
    table.add_column("Last Outcome")
    table.add_column("Last Run", justify="right", style="dim")

    for repo in response.repositories:
        if repo.last_outcome is not None:
            status = str(repo.last_outcome.status)
            style = _OUTCOME_STYLES.get(repo.last_outcome.status, "white")
        else:
            status, style = "-", "white"
        last_run = repo.last_finished.strftime("%Y-%m-%d %H:%M:%S") if repo.last_finished else "-"
        table.add_row(
            escape(_display_path(repo.path)),
            str(repo.phase) if repo.enabled else "Disabled",
            f"{repo.interval_seconds}s",
            f"[{style}]{status}[/{style}]",
            last_run,
        )
    console.print(table)
    return 0


def trigger(client: ControlClient, repo: str | None) -> int:
    """Runs a sync cycle now and prints the per-repository outcomes."""
    target = Path(repo).expanduser().absolute() if repo else None
    with console.status("[bold blue]Syncing...[/bold blue]", spinner="dots"):
        response = client.request(Trigger(repo=target))
    if not isinstance(response, TriggerResult):
        _print_error(response)
        return 1

    if not response.outcomes:
        console.print("[yellow]No enabled repositories to sync.[/yellow]")
        return 0

    worst = 0
    for outcome in response.outcomes:
        style = _OUTCOME_STYLES.get(outcome.status, "white")
        name = escape(_display_path(outcome.path))
        console.print(f"[{style}]{outcome.status.upper()}[/{style}] {name}")
        for phase in outcome.phases:
            if phase.status is PhaseStatus.FAILED:
                detail = phase.stderr.strip() or phase.message
                console.print(f"   [red]{phase.phase}:[/red] {escape(detail)}")
            elif phase.message:
                console.print(f"   [dim]{phase.phase}: {escape(phase.message)}[/dim]")
        if outcome.status is OutcomeStatus.FATAL:
            worst = 1
    return worst


def add_repository(
    config_path: Path, repo: str, message: str | None, interval: int | None
) -> int:
    """Registers a working copy in the configuration file."""
    path = Path(repo).expanduser().resolve()
    if not (path / ".git").exists():
        console.print(f"[bold red]ERROR:[/bold red] Not a git repository: {escape(str(path))}")
        return 1

    editor = ConfigEditor(config_path)
    editor.add(path, message, interval)
    editor.save()
    console.print(f"[bold green]SUCCESS:[/bold green] Added repository: {escape(str(path))}")
    _print_saved(config_path)
    return 0


def remove_repository(config_path: Path, repo: str) -> int:
    """Stops syncing a repository by deleting its configuration entry."""
    path = Path(repo).expanduser().absolute()
    editor = ConfigEditor(config_path)
    editor.remove(path)
    editor.save()
    console.print(f"[bold green]SUCCESS:[/bold green] Removed repository: {escape(str(path))}")
    _print_saved(config_path)
    return 0


def set_enabled(config_path: Path, repo: str, enabled: bool) -> int:
    path = Path(repo).expanduser().absolute()
    editor = ConfigEditor(config_path)
    editor.set_enabled(path, enabled)
    editor.save()
    state = "enabled" if enabled else "disabled"
    console.print(
        f"[bold green]SUCCESS:[/bold green] Auto-commit {state} for: {escape(str(path))}"
    )
    _print_saved(config_path)
    return 0


def list_repositories(config_path: Path) -> int:
    """Lists the repositories in the configuration file, running or not."""
    config = ConfigEditor(config_path).config
    if not config.repositories:
        console.print("[yellow]No repositories configured.[/yellow]")
        console.print(f"   Add one with: [green]{APP_NAME} add <path>[/green]")
        return 0

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Status")
    table.add_column("Path", style="cyan")
    table.add_column("Commit Message Template")
    table.add_column("Interval", justify="right")

    for repo in config.repositories:
        table.add_row(
            "[green]Enabled[/green]" if repo.enabled else "[red]Disabled[/red]",
            escape(_display_path(repo.path)),
            escape(repo.commit_message_template),
            f"{config.effective_interval(repo)}s",
        )
    console.print(table)
    console.print(f"Check interval: [bold]{config.check_interval}[/bold] seconds")
    return 0


def interval(config_path: Path, seconds: int | None) -> int:
    """Shows the global check interval, or sets it when `seconds` is given."""
    editor = ConfigEditor(config_path)
    if seconds is None:
        current = editor.config.check_interval
        console.print(
            f"Current check interval: [bold]{current}[/bold] seconds ({_humanize(current)})"
        )
        return 0

    editor.set_interval(seconds)
    editor.save()
    console.print(f"[bold green]SUCCESS:[/bold green] Check interval set to {seconds} seconds.")
    _print_saved(config_path)
    return 0


def edit_config(config_path: Path) -> int:
    """Opens the configuration file in $EDITOR, creating it if needed."""
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(_CONFIG_TEMPLATE)

    editor = os.environ.get("EDITOR") or "vi"
    console.print(f"Opening [cyan]{_display_path(config_path)}[/cyan] in {editor}...")
    try:
        subprocess.run([*shlex.split(editor), str(config_path)])
    except OSError as e:
        console.print(f"[red]Could not open editor: {e}[/red]")
        return 1

    # The daemon refuses an invalid file too, so say so now.
    try:
        Config.load(config_path)
    except ConfigError as e:
        console.print(f"[bold yellow]WARNING:[/bold yellow] {escape(str(e))}")
        console.print("   The daemon keeps its previous configuration until this is fixed.")
        return 1
    return 0


def _run_config_command(args: argparse.Namespace) -> int:
    if args.command == "add":
        return add_repository(args.config, args.repo, args.message, args.interval)
    elif args.command == "remove":
        return remove_repository(args.config, args.repo)
    elif args.command == "enable":
        return set_enabled(args.config, args.repo, True)
    elif args.command == "disable":
        return set_enabled(args.config, args.repo, False)
    elif args.command == "list":
        return list_repositories(args.config)
    elif args.command == "interval":
        return interval(args.config, args.seconds)
    return edit_config(args.config)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the Git Autosync CLI."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Keep git working copies committed, pushed and pulled.",
    )
    parser.add_argument(
        "--config", type=Path, default=CONFIG_FILE, help="Path to config.toml"
    )
    parser.add_argument(
        "--socket", type=Path, default=SOCKET_FILE, help="Path to the control socket"
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("daemon", help="Run the sync daemon in the foreground")
    subparsers.add_parser("ping", help="Check whether the daemon is running")
    subparsers.add_parser("status", help="Show daemon and repository status")
    trigger_parser = subparsers.add_parser("trigger", help="Sync now and wait for the result")
    trigger_parser.add_argument(
        "repo", nargs="?", help="Repository path (default: all enabled repositories)"
    )

    add_parser = subparsers.add_parser("add", help="Add a repository to sync")
    add_parser.add_argument("repo", help="Path to the git working copy")
    add_parser.add_argument(
        "-m", "--message", help="Commit message template (default: 'Auto-commit: {timestamp}')"
    )
    add_parser.add_argument(
        "-i", "--interval", type=_seconds, help="Check interval for this repository (e.g. 90, 5m)"
    )
    for name, help_text in (
        ("remove", "Stop syncing a repository"),
        ("enable", "Resume periodic syncing for a repository"),
        ("disable", "Pause periodic syncing for a repository"),
    ):
        subparsers.add_parser(name, help=help_text).add_argument("repo", help="Repository path")
    subparsers.add_parser("list", help="List configured repositories")
    interval_parser = subparsers.add_parser("interval", help="Show or set the check interval")
    interval_parser.add_argument(
        "seconds", nargs="?", type=_seconds, help="New interval (e.g. 300, 5m, 1h)"
    )
    subparsers.add_parser("edit", help="Open the configuration file in $EDITOR")

    args = parser.parse_args(argv)

    if args.command == "daemon":
        daemon.setup_logging(interactive=True)
        sys.exit(daemon.run(args.config, args.socket))

    if args.command is None:
        parser.print_help()
        return

    if args.command in CONFIG_COMMANDS:
        try:
            code = _run_config_command(args)
        except ConfigError as e:
            console.print(f"[bold red]ERROR:[/bold red] {escape(str(e))}")
            sys.exit(1)
        sys.exit(code)

    # Trigger waits for whole cycles, which may include slow network calls.
    timeout = None if args.command == "trigger" else 5.0
    client = ControlClient(args.socket, timeout=timeout)

    try:
        if args.command == "ping":
            code = ping(client)
        elif args.command == "status":
            code = show_status(client)
        else:
            code = trigger(client, args.repo)
    except DaemonNotRunning as e:
        console.print(f"[bold red]ERROR:[/bold red] {e}")
        console.print(f"   Start it with: [green]{APP_NAME} daemon[/green]")
        sys.exit(1)
    except TimeoutError:
        console.print(
            f"[bold red]ERROR:[/bold red] Daemon did not reply within {timeout}s "
            f"on {_display_path(args.socket)}."
        )
        sys.exit(1)
    except ProtocolError as e:
        console.print(f"[bold red]ERROR:[/bold red] Unexpected reply from daemon: {e}")
        sys.exit(1)

    sys.exit(code)


if __name__ == "__main__":
    main()
