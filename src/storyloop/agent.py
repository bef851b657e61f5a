"""Agent runner: spawn the coding agent in a pseudo-terminal and stream its output."""

import codecs
import fcntl
import os
import pty
import select
import shlex
import shutil
import signal
import struct
import subprocess
import sys
import termios
import threading
import time
from dataclasses import dataclass
from datetime import datetime

from storyloop.config import (
    AGENT_EXECUTABLE,
    AGENT_IDLE_TIMEOUT_SECONDS,
    AGENT_MIN_RUNTIME_SECONDS,
    AGENT_POLL_INTERVAL_SECONDS,
    AGENT_TERMINAL_COLS,
    AGENT_TERMINAL_ROWS,
    AGENT_TIMEOUT_EXIT_CODE,
    CLAUDE_PATH_ENV,
    MODEL_ENV,
)
from storyloop.utils import check_command, log, resolve_logs_dir, run_cmd, write_log_entry

# How long the reader blocks in select() before rechecking its stop flag.
_READ_WAIT_SECONDS = 0.1

# Grace period for the reader to drain buffered output after the agent exits.
_READER_DRAIN_SECONDS = 5.0


@dataclass
class AgentOptions:
    """Per-run agent CLI flags."""

    model: str = ""
    max_turns: int | None = None
    verbose: bool = False


@dataclass
class AgentResult:
    """Outcome of one agent invocation."""

    output: str
    exit_code: int
    duration_ms: int
    command: str

    @property
    def timed_out(self) -> bool:
        return self.exit_code == AGENT_TIMEOUT_EXIT_CODE


# ============================================
# Executable resolution
# ============================================


def parse_alias_output(output: str) -> list[str]:
    """Parse `alias name` output such as "claude='/opt/claude/bin/claude'".

    Pure function: returns the alias target split into arguments, or [].
    """
    line = output.strip().splitlines()[0] if output.strip() else ""
    if "=" not in line:
        return []
    target = line.split("=", 1)[1].strip()
    try:
        return shlex.split(target)
    except ValueError:
        return []


def _resolve_zsh_alias(name: str) -> list[str]:
    """Look up a shell alias defined in the user's interactive zsh profile."""
    if not check_command("zsh"):
        return []
    try:
        result = run_cmd(["zsh", "-ic", f"alias {name}"], capture=True)
    except OSError:
        return []
    if result.returncode != 0:
        return []
    return parse_alias_output(result.stdout)


def resolve_agent_cmd() -> list[str]:
    """Resolve the agent CLI command.

    Order: the STORYLOOP_CLAUDE_PATH environment variable, 'claude' on PATH,
    then a 'claude' alias from the zsh profile. Raises SystemExit when none
    is available.
    """
    configured = os.environ.get(CLAUDE_PATH_ENV, "")
    if configured:
        return [os.path.expanduser(configured)]
    exe = shutil.which(AGENT_EXECUTABLE)
    if exe:
        return [exe]
    alias_cmd = _resolve_zsh_alias(AGENT_EXECUTABLE)
    if alias_cmd:
        return alias_cmd
    raise SystemExit(
        f"Could not find the '{AGENT_EXECUTABLE}' executable. "
        f"Install it or set {CLAUDE_PATH_ENV} to its path."
    )


def build_agent_args(instruction: str, options: AgentOptions) -> list[str]:
    """Build the agent CLI arguments. Pure function; the instruction goes last."""
    args = ["--dangerously-skip-permissions"]
    if options.verbose:
        args.append("--verbose")
    if options.max_turns:
        args += ["--max-turns", str(options.max_turns)]
    model = options.model or os.environ.get(MODEL_ENV, "")
    if model:
        args += ["--model", model]
    args.append(instruction)
    return args


# ============================================
# Liveness
# ============================================


def is_agent_hung(
    has_output: bool,
    runtime_seconds: float,
    idle_seconds: float,
    min_runtime: float,
    idle_timeout: float,
) -> bool:
    """Decide whether a running agent should be treated as hung.

    Pure function. Only a process that has already produced output can hang,
    and never before min_runtime has elapsed since it started.
    """
    return has_output and runtime_seconds >= min_runtime and idle_seconds >= idle_timeout


def _kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except OSError:
            pass
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        pass


def _set_terminal_size(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _stream_with_liveness(
    proc: subprocess.Popen, master_fd: int, log_file: str, start: float,
) -> tuple[str, int]:
    """Stream terminal output while enforcing the liveness policy.

    Reads the pseudo-terminal in a background thread while the main thread
    polls for exit or a hang. Returns (output, exit_code), with
    AGENT_TIMEOUT_EXIT_CODE when the process was killed as hung.

    Owns master_fd: it is closed here, and only once the reader has stopped,
    so a later pseudo-terminal reusing the descriptor number can never be
    read by this call's reader.
    """
    chunks: list[str] = []
    last_output_time = start
    has_output = False
    lock = threading.Lock()
    finished = threading.Event()
    stop = threading.Event()
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _reader() -> None:
        nonlocal last_output_time, has_output
        try:
            f = open(log_file, "a", encoding="utf-8")
        except OSError:
            f = None
        try:
            while not stop.is_set():
                ready, _, _ = select.select([master_fd], [], [], _READ_WAIT_SECONDS)
                if not ready:
                    continue
                try:
                    data = os.read(master_fd, 4096)
                except OSError:
                    break  # EIO once every writer on the terminal is gone
                if not data:
                    break
                text = decoder.decode(data)
                with lock:
                    last_output_time = time.monotonic()
                    has_output = True
                    chunks.append(text)
                sys.stdout.write(text)
                sys.stdout.flush()
                if f is not None:
                    try:
                        f.write(text)
                        f.flush()
                    except OSError:
                        pass
        finally:
            if f is not None:
                f.close()
            finished.set()

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        while not finished.wait(timeout=AGENT_POLL_INTERVAL_SECONDS):
            now = time.monotonic()
            with lock:
                timed_out = is_agent_hung(
                    has_output,
                    now - start,
                    now - last_output_time,
                    AGENT_MIN_RUNTIME_SECONDS,
                    AGENT_IDLE_TIMEOUT_SECONDS,
                )
            if timed_out or proc.poll() is not None:
                break
        if not timed_out:
            proc.wait()
    finally:
        # Takes down a hung agent, and any background child that outlived it
        # while still holding the terminal.
        _kill_process_group(proc)
        finished.wait(timeout=_READER_DRAIN_SECONDS)
        stop.set()
        reader_thread.join(timeout=_READER_DRAIN_SECONDS)
        if reader_thread.is_alive():
            log("agent", "WARNING: Terminal reader did not stop; leaving its descriptor open.", style="yellow")
        else:
            os.close(master_fd)

    with lock:
        output = "".join(chunks)
    if timed_out:
        return output, AGENT_TIMEOUT_EXIT_CODE
    return output, proc.returncode


def run_agent(instruction: str, working_dir: str, options: AgentOptions | None = None) -> AgentResult:
    """Run the agent with one instruction in working_dir.

    Output is echoed to the console and appended to logs/agent.log. Never
    raises on a hang: the process is killed and the result carries
    AGENT_TIMEOUT_EXIT_CODE.
    """
    options = options or AgentOptions()
    cmd = resolve_agent_cmd() + build_agent_args(instruction, options)

    log_file = os.path.join(resolve_logs_dir(), "agent.log")
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    write_log_entry(
        log_file,
        f"\n========== [{timestamp}] agent ==========\n"
        f"Directory: {working_dir}\n"
        f"Instruction: {instruction[:100]}...\n"
        f"--- output ---\n",
    )
    log("agent", f"\n> {AGENT_EXECUTABLE} {shlex.join(cmd[1:])}", style="dim")

    start = time.monotonic()
    master_fd, slave_fd = pty.openpty()
    try:
        _set_terminal_size(slave_fd, AGENT_TERMINAL_ROWS, AGENT_TERMINAL_COLS)
        env = dict(os.environ, TERM="xterm-color")
        proc = subprocess.Popen(
            cmd,
            cwd=working_dir,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            env=env,
            start_new_session=True,
            close_fds=True,
        )
    except BaseException:
        os.close(master_fd)
        raise
    finally:
        os.close(slave_fd)

    output, exit_code = _stream_with_liveness(proc, master_fd, log_file, start)
    duration_ms = int((time.monotonic() - start) * 1000)

    if exit_code == AGENT_TIMEOUT_EXIT_CODE:
        write_log_entry(log_file, f"\n--- TIMEOUT (no output for {AGENT_IDLE_TIMEOUT_SECONDS:g}s) ---\n")
        log(
            "agent",
            f"\n[Timeout] No output for {AGENT_IDLE_TIMEOUT_SECONDS:g}s after "
            f"{AGENT_MIN_RUNTIME_SECONDS:g}s minimum runtime. Agent killed.",
            style="yellow",
        )
    else:
        write_log_entry(log_file, f"\n--- end (exit: {exit_code}) ---\n")

    return AgentResult(output=output, exit_code=exit_code, duration_ms=duration_ms, command=instruction)
