"""Error types and user-facing error display for mkvauto."""

import logging
import shutil
import sys
from enum import Enum
from pathlib import Path

from rich.console import Console

logger = logging.getLogger(__name__)
console = Console()


class ErrorCategory(Enum):
    """Categories of errors for better user experience."""

    CONFIGURATION = "configuration"
    DEPENDENCY = "dependency"
    HARDWARE = "hardware"
    FILESYSTEM = "filesystem"
    EXTERNAL_TOOL = "external_tool"
    SYSTEM = "system"
    CANCELLED = "cancelled"


CATEGORY_STYLES = {
    ErrorCategory.CONFIGURATION: ("⚙️", "yellow"),
    ErrorCategory.DEPENDENCY: ("📦", "red"),
    ErrorCategory.HARDWARE: ("🔌", "red"),
    ErrorCategory.FILESYSTEM: ("📁", "red"),
    ErrorCategory.EXTERNAL_TOOL: ("🔧", "red"),
    ErrorCategory.SYSTEM: ("💻", "red"),
    ErrorCategory.CANCELLED: ("⏹", "yellow"),
}

# (display name, url, purpose) for each external binary
TOOL_DEPENDENCIES = (
    ("MakeMKV", "https://makemkv.com/", "disc ripping"),
    ("HandBrakeCLI", "https://handbrake.fr/", "encoding"),
)



class MkvautoError(Exception):
    """Base exception for mkvauto with enhanced user experience."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        *,
        solution: str | None = None,
        details: str | None = None,
        recoverable: bool = True,
        log_level: int = logging.ERROR,
        original_error: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.solution = solution
        self.details = details
        self.recoverable = recoverable
        self.log_level = log_level
        self.original_error = original_error

    def display_to_user(self) -> None:
        """Print the error with its details and suggested fix."""
        emoji, color = CATEGORY_STYLES.get(self.category, ("❌", "red"))
        title = self.category.value.replace("_", " ").title()

        console.print(f"\n{emoji} [{color} bold]{title} Error[/{color} bold]")
        console.print(f"[{color}]{self.message}[/{color}]")
        if self.details:
            console.print(f"\n[dim]Details:[/dim] {self.details}")
        if self.solution:
            console.print(f"\n[green]💡 Solution:[/green] {self.solution}")
        hint = (
            "The pipeline keeps running; the affected disc or file can be retried."
            if self.recoverable
            else "This error requires intervention before mkvauto can continue."
        )
        console.print(f"\n[dim]{hint}[/dim]")

        logger.log(
            self.log_level,
            "%s: %s",
            self.category.value,
            self.message,
            exc_info=self.original_error,
        )


class ConfigurationError(MkvautoError):
    """Configuration-related errors."""

    def __init__(self, message: str, *, config_path: Path | None = None, **kwargs):
        solution = kwargs.pop("solution", None)
        if not solution and config_path:
            solution = f"Check your configuration file at {config_path}"
        super().__init__(
            message,
            ErrorCategory.CONFIGURATION,
            solution=solution,
            recoverable=False,
            **kwargs,
        )


class DependencyError(MkvautoError):
    """Missing or broken dependency errors."""

    def __init__(
        self,
        dependency: str,
        *,
        install_command: str | None = None,
        **kwargs,
    ):
        message = f"Required dependency '{dependency}' is not available"
        solution = kwargs.pop("solution", None)
        if not solution and install_command:
            solution = f"Install with: {install_command}"
        super().__init__(
            message,
            ErrorCategory.DEPENDENCY,
            solution=solution,
            recoverable=False,
            **kwargs,
        )


class HardwareError(MkvautoError):
    """Optical drive errors."""

    def __init__(self, message: str, **kwargs):
        solution = kwargs.pop(
            "solution",
            "Check disc is inserted properly and drive is accessible",
        )
        super().__init__(message, ErrorCategory.HARDWARE, solution=solution, **kwargs)


class LockError(MkvautoError):
    """Another instance already holds the process lock."""

    def __init__(self, message: str, **kwargs):
        solution = kwargs.pop(
            "solution",
            "Stop the other mkvauto instance or remove the lock file if it is stale",
        )
        super().__init__(
            message,
            ErrorCategory.SYSTEM,
            solution=solution,
            recoverable=False,
            **kwargs,
        )


class PersistenceError(MkvautoError):
    """Reading or writing the queue state failed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.FILESYSTEM, **kwargs)


class ExternalToolError(MkvautoError):
    """External tool execution errors."""

    def __init__(
        self,
        tool: str,
        exit_code: int | None = None,
        stderr: str | None = None,
        **kwargs,
    ):
        message = kwargs.pop("message", None)
        if message is None:
            message = f"{tool} failed"
            if exit_code is not None:
                message += f" with exit code {exit_code}"

        details = kwargs.pop("details", stderr)
        solution = kwargs.pop(
            "solution",
            f"Check {tool} is properly installed and configured",
        )

        super().__init__(
            message,
            ErrorCategory.EXTERNAL_TOOL,
            details=details,
            solution=solution,
            **kwargs,
        )
        self.tool = tool
        self.exit_code = exit_code


class ScanError(ExternalToolError):
    """MakeMKV could not scan the disc."""

    def __init__(self, message: str, exit_code: int | None = None, **kwargs):
        super().__init__("makemkvcon", exit_code, message=message, **kwargs)


class RipError(ExternalToolError):
    """MakeMKV failed to extract a title."""

    def __init__(self, message: str, exit_code: int | None = None, **kwargs):
        super().__init__("makemkvcon", exit_code, message=message, **kwargs)


class EncodeError(ExternalToolError):
    """HandBrake exited unsuccessfully."""

    def __init__(self, message: str, exit_code: int | None = None, **kwargs):
        super().__init__("HandBrakeCLI", exit_code, message=message, **kwargs)


class EncodeCancelledError(EncodeError):
    """HandBrake was terminated by a signal."""

    def __init__(self, signal_number: int, **kwargs):
        super().__init__(
            f"HandBrakeCLI was killed by signal {signal_number}",
            exit_code=-signal_number,
            **kwargs,
        )
        self.signal_number = signal_number


class OperationCancelledError(MkvautoError):
    """An operation was cancelled by the operator; never reported as a failure."""

    def __init__(self, message: str = "Operation cancelled", **kwargs):
        super().__init__(
            message,
            ErrorCategory.CANCELLED,
            log_level=logging.INFO,
            **kwargs,
        )


def handle_error(
    error: Exception,
    *,
    category: ErrorCategory | None = None,
    **kwargs,
) -> None:
    """Display any exception, wrapping non-mkvauto errors first."""
    if not isinstance(error, MkvautoError):
        if category is None:
            category = (
                ErrorCategory.FILESYSTEM if isinstance(error, OSError) else ErrorCategory.SYSTEM
            )
        error = MkvautoError(
            str(error) or f"Unexpected {type(error).__name__}",
            category,
            original_error=error,
            **kwargs,
        )
    error.display_to_user()


def check_dependencies(
    makemkv_binary: str = "makemkvcon",
    handbrake_binary: str = "HandBrakeCLI",
) -> list[DependencyError]:
    """Return a DependencyError for each external binary missing from PATH."""
    binaries = (makemkv_binary, handbrake_binary)
    return [
        DependencyError(
            name,
            solution=f"Install {name} from {url} or your package manager",
            details=f"'{binary}' is required for {purpose}",
        )
        for binary, (name, url, purpose) in zip(binaries, TOOL_DEPENDENCIES)
        if not shutil.which(binary)
    ]


def graceful_exit(exit_code: int = 1) -> None:
    """Print a closing line and exit."""
    if exit_code == 0:
        console.print("\n[green]mkvauto stopped[/green]")
    else:
        console.print("\n[red]mkvauto stopped with errors[/red]")
        console.print("[dim]Run 'mkvauto config validate' to check your setup[/dim]")
    sys.exit(exit_code)
