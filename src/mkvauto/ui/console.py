"""Interactive console display and keyboard commands."""

import logging
import sys
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TextIO

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

from mkvauto.core.events import (
    CancelRip,
    ClearCompleted,
    Command,
    DeleteEncoding,
    DiscInserted,
    EncodeComplete,
    EncodeProgress,
    ErrorOccurred,
    Event,
    EventBus,
    LogLine,
    PauseEncoding,
    Quit,
    ResumeEncoding,
    RetryFailed,
    RipComplete,
    RipProgress,
    RipStatus,
    ScanComplete,
    ScanForMissing,
    ScanStatus,
    SelectTitles,
    StopEncoding,
    TitleSelectionRequired,
)
from mkvauto.disc.parser import Title, format_size
from mkvauto.queue.manager import QueueItem, QueueManager

logger = logging.getLogger(__name__)

KEY_COMMANDS: dict[str, Command] = {
    "p": PauseEncoding(),
    "r": ResumeEncoding(),
    "s": StopEncoding(),
    "d": DeleteEncoding(),
    "c": ClearCompleted(),
    "f": RetryFailed(),
    "m": ScanForMissing(),
    "x": CancelRip(),
    "q": Quit(),
}

HELP_TEXT = (
    "[bold]p[/bold] pause  [bold]r[/bold] resume  [bold]s[/bold] stop  "
    "[bold]d[/bold] delete  [bold]c[/bold] clear done  [bold]f[/bold] retry failed  "
    "[bold]m[/bold] scan missing  [bold]x[/bold] cancel rip  [bold]q[/bold] quit"
)

LOG_LINES = 10


def get_status_color(status: object) -> str:
    """Get color code for status display."""
    status_colors = {
        "queued": "yellow",
        "encoding": "blue",
        "paused": "magenta",
        "complete": "green",
        "failed": "red",
    }

    status_str = status.value if hasattr(status, "value") else str(status)
    return status_colors.get(status_str.lower(), "white")


def format_queue_table(queue_items: list[QueueItem]) -> Table:
    """Format queue items into a table."""
    table = Table(expand=True)
    table.add_column("Status")
    table.add_column("Title")
    table.add_column("Disc")
    table.add_column("Type")
    table.add_column("Progress", justify="right")
    table.add_column("Error")

    for item in queue_items:
        color = get_status_color(item.status)
        table.add_row(
            f"[{color}]{item.status.label}[/{color}]",
            item.title_name or item.source_path.name,
            item.disc_name,
            item.media_kind.label,
            f"{item.progress:.1f}%",
            item.error or "",
        )

    return table


def format_title_table(titles: tuple[Title, ...]) -> Table:
    """Format scanned titles for manual selection."""
    table = Table(title="Select titles to rip")
    table.add_column("ID", justify="right")
    table.add_column("Name")
    table.add_column("Duration", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Chapters", justify="right")

    for title in titles:
        table.add_row(
            str(title.title_id),
            title.name,
            title.duration_str,
            format_size(title.size),
            str(title.chapters),
        )

    return table


@dataclass
class UIState:
    """Everything the display shows that does not come from the queue."""

    status: str = "Waiting for disc..."
    disc_name: str = ""
    rip_title: str = ""
    rip_index: int = 0
    rip_count: int = 0
    rip_percent: float | None = None
    encode_title: str = ""
    encode_percent: float | None = None
    pending_titles: tuple[Title, ...] | None = None
    logs: deque[str] = field(default_factory=lambda: deque(maxlen=LOG_LINES))


class ConsoleUI:
    """Renders pipeline events with rich and turns keystrokes into commands.

    Commands are read one line at a time from input_stream on a helper
    thread. While a title selection is pending a line of comma separated
    title ids answers it, and an empty line selects nothing.
    """

    def __init__(
        self,
        bus: EventBus,
        queue: QueueManager,
        on_command: Callable[[Command], None],
        console: Console | None = None,
        input_stream: TextIO | None = None,
    ):
        self.bus = bus
        self.queue = queue
        self.on_command = on_command
        self.console = console or Console()
        self.input_stream = input_stream or sys.stdin
        self.state = UIState()
        self.subscription = bus.subscribe("console-ui")
        self._state_lock = threading.Lock()

    def apply(self, event: Event) -> None:
        """Fold one event into the display state."""
        with self._state_lock:
            state = self.state
            if isinstance(event, DiscInserted):
                state.status = f"Disc inserted in {event.device}, scanning..."
                state.rip_percent = None
            elif isinstance(event, ScanStatus):
                state.status = event.message
            elif isinstance(event, ScanComplete):
                state.disc_name = event.disc_name
                state.status = (
                    f"Found {len(event.titles)} titles on {event.media_kind.label} "
                    f"'{event.disc_name}'"
                )
            elif isinstance(event, TitleSelectionRequired):
                state.pending_titles = event.titles
                state.status = "Enter title ids to rip (e.g. 1,3), empty for none"
            elif isinstance(event, RipProgress):
                state.rip_title = event.title_name
                state.rip_index = event.title_index
                state.rip_count = event.title_count
                state.rip_percent = event.percent
            elif isinstance(event, RipStatus):
                state.status = event.message
            elif isinstance(event, RipComplete):
                state.status = (
                    f"Rip complete: {event.disc_name} "
                    f"({event.titles_ripped} title(s) queued). Waiting for disc..."
                )
                state.rip_percent = None
            elif isinstance(event, EncodeProgress):
                state.encode_title = event.title_name
                state.encode_percent = event.percent
            elif isinstance(event, EncodeComplete):
                state.encode_percent = None
                state.logs.append(f"Encode complete: {event.title_name}")
            elif isinstance(event, ErrorOccurred):
                state.logs.append(f"ERROR {event.operation}: {event.message}")
                state.status = f"{event.operation} failed"
            elif isinstance(event, LogLine):
                state.logs.append(event.message)

    def parse_input(self, line: str) -> Command | None:
        """Map one line of keyboard input to a command."""
        text = line.strip()
        key = text.lower()

        with self._state_lock:
            pending = self.state.pending_titles is not None

        if key in KEY_COMMANDS:
            command = KEY_COMMANDS[key]
            if isinstance(command, CancelRip | Quit):
                self._clear_selection()
            return command

        if not pending:
            if text:
                self._add_log(f"Unknown command: {text}")
            return None

        if not text:
            self._clear_selection()
            return SelectTitles(())

        try:
            title_ids = tuple(int(part) for part in text.split(",") if part.strip())
        except ValueError:
            self._add_log(f"Invalid title selection: {text}")
            return None

        self._clear_selection()
        return SelectTitles(title_ids)

    def _clear_selection(self) -> None:
        with self._state_lock:
            self.state.pending_titles = None

    def _add_log(self, message: str) -> None:
        with self._state_lock:
            self.state.logs.append(message)

    def render(self) -> RenderableType:
        with self._state_lock:
            state = self.state
            parts: list[RenderableType] = [
                Text.from_markup(f"[bold]Status:[/bold] {state.status}"),
            ]

            if state.rip_percent is not None:
                parts.append(
                    Text(
                        f"Ripping title {state.rip_index}/{state.rip_count} "
                        f"{state.rip_title}: {state.rip_percent:.1f}%",
                    ),
                )
                parts.append(ProgressBar(total=100.0, completed=state.rip_percent))

            if state.encode_percent is not None:
                parts.append(
                    Text(f"Encoding {state.encode_title}: {state.encode_percent:.1f}%"),
                )
                parts.append(ProgressBar(total=100.0, completed=state.encode_percent))

            if state.pending_titles is not None:
                parts.append(format_title_table(state.pending_titles))

            if state.logs:
                log_text = Text("\n".join(state.logs))
            else:
                log_text = Text("No output yet", style="dim")

        parts.append(Panel(format_queue_table(self.queue.get_all()), title="Encode queue"))
        parts.append(Panel(log_text, title="Log"))
        parts.append(Text.from_markup(HELP_TEXT))
        return Group(*parts)

    def _read_input(self, stop_event: threading.Event) -> None:
        for line in self.input_stream:
            if stop_event.is_set():
                return
            command = self.parse_input(line)
            if command is None:
                continue
            try:
                self.on_command(command)
            except Exception:
                logger.exception(f"Command {command!r} failed")
            if isinstance(command, Quit):
                return
        # End of input behaves like quit
        self.on_command(Quit())

    def run(self, stop_event: threading.Event) -> None:
        """Render until stop_event is set."""
        reader = threading.Thread(
            target=self._read_input,
            args=(stop_event,),
            name="console-input",
            daemon=True,
        )
        reader.start()

        try:
            with Live(
                self.render(),
                console=self.console,
                refresh_per_second=4,
                transient=False,
            ) as live:
                while not stop_event.is_set():
                    event = self.subscription.get(timeout=0.25)
                    while event is not None:
                        self.apply(event)
                        event = self.subscription.get(timeout=0)
                    live.update(self.render())
        finally:
            self.bus.unsubscribe(self.subscription)
