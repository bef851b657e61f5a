"""Core utility functions: logging, command execution, directory resolution."""

import os
import shutil
import subprocess

from rich.console import Console

from storyloop.config import DEFAULT_LOGS_DIR, LOGS_DIR_ENV

console = Console()


def resolve_logs_dir() -> str:
    """Find the logs directory, creating it if needed.

    Logs live outside the project tree so writing them never leaves
    uncommitted changes behind.
    """
    logs_dir = os.path.expanduser(os.environ.get(LOGS_DIR_ENV) or DEFAULT_LOGS_DIR)
    os.makedirs(logs_dir, exist_ok=True)
    return logs_dir


def log(channel: str, message: str, style: str = "") -> None:
    """Print to the console and append the plain message to <logs>/<channel>.log.

    Logging never interrupts the workflow: file errors are ignored.
    """
    console.print(message, style=style or None)
    try:
        logs_dir = resolve_logs_dir()
    except OSError:
        return
    write_log_entry(os.path.join(logs_dir, f"{channel}.log"), message + "\n")


def write_log_entry(log_file: str, text: str) -> None:
    """Append raw text to log_file, ignoring I/O errors."""
    try:
        with open(log_file, "a", encoding="utf-8") as f:
            f.write(text)
    except OSError:
        pass


def check_command(name: str) -> bool:
    """Check if a command is available on PATH."""
    return shutil.which(name) is not None


def resolve_directory(directory: str) -> str:
    """Expand ~ and return an absolute, normalized path."""
    return os.path.abspath(os.path.expanduser(directory))


def run_cmd(
    args: list[str], capture: bool = False, quiet: bool = False, cwd: str | None = None,
) -> subprocess.CompletedProcess:
    """Run a shell command, optionally capturing output."""
    kwargs = {}
    if capture or quiet:
        kwargs["stdout"] = subprocess.PIPE
        kwargs["stderr"] = subprocess.PIPE
        kwargs["text"] = True
    if cwd:
        kwargs["cwd"] = cwd
    return subprocess.run(args, **kwargs)
