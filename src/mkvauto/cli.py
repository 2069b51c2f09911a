"""Command-line interface for mkvauto."""

import logging
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import MkvautoConfig, create_sample_config, load_config
from .core.orchestrator import MkvautoApp, add_file_to_queue
from .disc.monitor import read_drive_status
from .error_handling import (
    ConfigurationError,
    LockError,
    MkvautoError,
    check_dependencies,
    graceful_exit,
    handle_error,
)
from .notify.discord import DiscordNotifier
from .process_lock import ProcessLock
from .queue.manager import QueueManager, QueueStatePersistence
from .ui.console import format_queue_table

console = Console()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    *,
    verbose: bool = False,
    config: MkvautoConfig | None = None,
    console_output: bool = True,
    session: bool = False,
) -> None:
    """Set up logging configuration.

    A session log (used by ``start``) truncates the log file and begins it
    with a session marker; other commands append.
    """
    level = logging.DEBUG if verbose else logging.INFO

    # Clean up existing handlers first to prevent resource leaks
    cleanup_logging()

    handlers: list[logging.Handler] = []
    if console_output:
        # Show path only at DEBUG level
        show_path = level == logging.DEBUG
        handlers.append(
            RichHandler(console=console, rich_tracebacks=True, show_path=show_path),
        )

    if config:
        config.state_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.log_file, mode="w" if session else "a")
        if session:
            started = datetime.now().astimezone().isoformat(timespec="seconds")
            file_handler.stream.write(f"=== Session started at {started} ===\n")
            file_handler.flush()
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,  # Force reconfiguration of root logger
    )


def cleanup_logging() -> None:
    """Clean up logging handlers to prevent ResourceWarnings."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            handler.close()
            root_logger.removeHandler(handler)


def _offline_queue(config: MkvautoConfig) -> QueueManager:
    """Load the queue for editing; refused while mkvauto is running."""
    pid = ProcessLock(config.lock_file).holder()
    if pid is not None:
        msg = f"mkvauto is running (PID {pid}) and owns the encode queue"
        raise LockError(
            msg,
            solution="Use the interactive commands, or quit mkvauto first",
        )
    queue_manager = QueueManager(config.queue_file)
    queue_manager.load_state()
    return queue_manager


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Configuration file path",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, config: Path | None, verbose: bool) -> None:
    """mkvauto - Automated disc ripping and encoding."""
    try:
        ctx.ensure_object(dict)
        loaded_config = load_config(config)
        ctx.obj["config"] = loaded_config
        ctx.obj["verbose"] = verbose

        # Setup logging with the loaded config for file logging
        setup_logging(verbose=verbose, config=loaded_config)
    except ConfigurationError as e:
        e.display_to_user()
        sys.exit(1)
    except OSError as e:
        config_error = ConfigurationError(
            f"Failed to load configuration: {e}",
            config_path=config,
            solution="Run 'mkvauto config validate' to check your configuration file",
        )
        config_error.display_to_user()
        sys.exit(1)


@cli.command()
@click.pass_context
def start(ctx: click.Context) -> None:
    """Start the interactive pipeline - rip discs and encode the queue."""
    config: MkvautoConfig = ctx.obj["config"]

    missing_deps = check_dependencies(
        config.makemkv.binary_path,
        config.handbrake.binary_path,
    )
    if missing_deps:
        for error in missing_deps:
            error.display_to_user()
        sys.exit(1)

    # The console UI shows log lines itself
    setup_logging(
        verbose=ctx.obj["verbose"],
        config=config,
        console_output=False,
        session=True,
    )

    app = MkvautoApp(config)
    try:
        app.run()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
    except Exception as e:
        handle_error(e)
        graceful_exit(1)

    graceful_exit(0)


@cli.command()
@click.pass_context
def stop(ctx: click.Context) -> None:
    """Stop a running mkvauto process."""
    config: MkvautoConfig = ctx.obj["config"]
    pid = ProcessLock(config.lock_file).holder()

    if pid is None:
        console.print("[yellow]mkvauto is not running[/yellow]")
        return

    console.print(f"[blue]Stopping mkvauto (PID {pid})...[/blue]")

    if ProcessLock.stop_process(pid):
        console.print("[green]mkvauto stopped[/green]")
    else:
        console.print(f"[red]Failed to stop mkvauto process {pid}[/red]")
        sys.exit(1)


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--type",
    "media_type",
    type=click.Choice(["auto", "bluray", "dvd"], case_sensitive=False),
    default="auto",
    help="Encoder profile to use; auto picks by file size",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Encoded file path (default: <name>_encoded<ext> next to the source)",
)
@click.pass_context
def add(
    ctx: click.Context,
    file_path: Path,
    media_type: str,
    output: Path | None,
) -> None:
    """Add an existing video file to the encode queue."""
    config: MkvautoConfig = ctx.obj["config"]

    try:
        item = add_file_to_queue(config, file_path, media_type, output)
    except MkvautoError as e:
        e.display_to_user()
        sys.exit(1)

    console.print("[green]Added to queue:[/green]")
    console.print(f"  Source: {item.source_path}")
    console.print(f"  Output: {item.dest_path}")
    console.print(f"  Type: {item.media_kind.label}")


@cli.group()
@click.pass_context
def queue(ctx: click.Context) -> None:
    """Queue management commands."""


@queue.command("list")
@click.pass_context
def queue_list(ctx: click.Context) -> None:
    """Show all items in the encode queue."""
    config: MkvautoConfig = ctx.obj["config"]

    try:
        items = QueueStatePersistence(config.queue_file).load()
    except MkvautoError as e:
        e.display_to_user()
        sys.exit(1)

    if not items:
        console.print("Queue is empty")
        return

    console.print(format_queue_table(items))


@queue.command("clear")
@click.pass_context
def queue_clear(ctx: click.Context) -> None:
    """Remove completed and failed items from the queue."""
    config: MkvautoConfig = ctx.obj["config"]

    try:
        count = _offline_queue(config).clear_completed()
    except MkvautoError as e:
        e.display_to_user()
        sys.exit(1)

    console.print(f"[green]Cleared {count} finished items from queue[/green]")


@queue.command("retry")
@click.pass_context
def queue_retry(ctx: click.Context) -> None:
    """Return failed items to the queue."""
    config: MkvautoConfig = ctx.obj["config"]

    try:
        count = _offline_queue(config).retry_failed()
    except MkvautoError as e:
        e.display_to_user()
        sys.exit(1)

    console.print(f"[green]Reset {count} items for retry[/green]")


@cli.group("config")
@click.pass_context
def config_cmd(ctx: click.Context) -> None:
    """Configuration management commands."""


@config_cmd.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration."""
    config: MkvautoConfig = ctx.obj["config"]

    table = Table()
    table.add_column("Setting")
    table.add_column("Value")

    table.add_row("Output Directory", str(config.output_dir))
    table.add_row("State Directory", str(config.state_dir))
    table.add_row("Optical Drive", config.drive.path)
    table.add_row(
        "Thresholds",
        f"movie >= {config.thresholds.movie_min_minutes} min, "
        f"episode >= {config.thresholds.episode_min_minutes} min",
    )
    table.add_row("MakeMKV", config.makemkv.binary_path)
    table.add_row("HandBrake", config.handbrake.binary_path)
    table.add_row("Presets Directory", str(config.handbrake.presets_dir or "Not configured"))
    table.add_row("Blu-ray Preset", config.handbrake.bluray.preset_name or "Default")
    table.add_row("DVD Preset", config.handbrake.dvd.preset_name or "Default")
    table.add_row("Discord Webhook", "***" if config.discord_webhook else "Not configured")

    console.print(table)


@config_cmd.command("validate")
@click.pass_context
def config_validate(ctx: click.Context) -> None:
    """Validate current configuration."""
    config: MkvautoConfig = ctx.obj["config"]

    console.print("[bold]Configuration Validation[/bold]")

    errors = []

    for name, path in [
        ("Output", config.output_dir),
        ("State", config.state_dir),
    ]:
        try:
            path.mkdir(parents=True, exist_ok=True)
            console.print(f"[green]✓[/green] {name} directory: {path}")
        except OSError as e:
            console.print(f"[red]✗[/red] {name} directory: {e}")
            errors.append(f"{name} directory: {e}")

    missing_tools = config.validate_tools()
    for binary in [config.makemkv.binary_path, config.handbrake.binary_path]:
        if binary in missing_tools:
            console.print(f"[red]✗[/red] {binary} not found on PATH")
            errors.append(f"{binary} not found")
        else:
            console.print(f"[green]✓[/green] {binary} available")

    for kind, profile in [
        ("Blu-ray", config.handbrake.bluray),
        ("DVD", config.handbrake.dvd),
    ]:
        if not profile.preset_file:
            continue
        preset_path = Path(profile.preset_file)
        if config.handbrake.presets_dir:
            preset_path = config.handbrake.presets_dir / profile.preset_file
        if preset_path.exists():
            console.print(f"[green]✓[/green] {kind} preset file: {preset_path}")
        else:
            console.print(f"[red]✗[/red] {kind} preset file not found: {preset_path}")
            errors.append(f"{kind} preset file not found")

    if Path(config.drive.path).exists():
        console.print(f"[green]✓[/green] Optical drive: {config.drive.path}")
    else:
        console.print(
            f"[yellow]⚠[/yellow] Optical drive not found: {config.drive.path}",
        )

    if config.discord_webhook:
        console.print("[green]✓[/green] Discord webhook configured")
    else:
        console.print("[yellow]⚠[/yellow] Discord webhook not configured")

    if errors:
        console.print(f"\n[red]Found {len(errors)} configuration errors[/red]")
        sys.exit(1)
    else:
        console.print("\n[green]Configuration is valid[/green]")


@config_cmd.command("init")
@click.option(
    "--path",
    "-p",
    type=click.Path(path_type=Path),
    default=Path.home() / ".config" / "mkvauto" / "config.toml",
    help="Path for the configuration file",
)
def config_init(path: Path) -> None:
    """Create a sample configuration file."""
    try:
        create_sample_config(path)
        console.print(f"[green]Created sample configuration at {path}[/green]")
        console.print("Please edit the configuration file with your settings.")
    except OSError as e:
        console.print(f"[red]Error creating configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show system status and queue information."""
    config: MkvautoConfig = ctx.obj["config"]

    console.print("[bold]System Status[/bold]")

    pid = ProcessLock(config.lock_file).holder()
    if pid is not None:
        console.print(f"🟢 mkvauto: [green]Running (PID {pid})[/green]")
    else:
        console.print("🔴 mkvauto: [red]Not running[/red]")

    drive_status = read_drive_status(config.drive.path)
    console.print(
        f"📀 Drive {config.drive.path}: {drive_status.name.replace('_', ' ').title()}",
    )

    missing_tools = config.validate_tools()
    for binary in [config.makemkv.binary_path, config.handbrake.binary_path]:
        if binary in missing_tools:
            console.print(f"⚙️ {binary}: [red]Not available[/red]")
        else:
            console.print(f"⚙️ {binary}: Available")

    if config.discord_webhook:
        console.print("📱 Notifications: Configured")
    else:
        console.print("📱 Notifications: [yellow]Not configured[/yellow]")

    console.print("\n[bold]Queue Status[/bold]")
    try:
        items = QueueStatePersistence(config.queue_file).load()
    except MkvautoError as e:
        console.print(f"[yellow]Could not read queue: {e}[/yellow]")
        return

    if not items:
        console.print("Queue is empty")
        return

    stats: dict[str, int] = {}
    for item in items:
        stats[item.status.label] = stats.get(item.status.label, 0) + 1

    table = Table()
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status_label, count in stats.items():
        table.add_row(status_label, str(count))
    console.print(table)


@cli.command("test-notify")
@click.pass_context
def test_notify(ctx: click.Context) -> None:
    """Send a test notification."""
    config: MkvautoConfig = ctx.obj["config"]
    notifier = DiscordNotifier(config)

    if notifier.test_notification():
        console.print("[green]Test notification sent successfully[/green]")
    else:
        console.print("[red]Failed to send test notification[/red]")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
