"""
Opaque command execution.

Every external action the engine takes (provisioning, topology procedures,
test units) goes through run_command: launch, stream output into a log file,
wait with a bound, report exit code. Output is never interpreted.
"""

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence


@dataclass
class CommandResult:
    """Exit code of one command; its output lives in the log file."""
    args: List[str]
    returncode: int
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def log_to_file(log_file: Path, message: str):
    """Append timestamped log entry to a per-unit or per-topology log file."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    with log_file.open('a', encoding='utf-8') as log_handle:
        log_handle.write(f"[{timestamp}] {message}\n")


def substitute(args: Sequence[str], values: Dict[str, str]) -> List[str]:
    """Replace {placeholder} tokens in each argument.

    Unknown placeholders are left untouched so shell snippets with braces
    survive.
    """
    rendered = []
    for arg in args:
        for key, value in values.items():
            arg = arg.replace('{' + key + '}', str(value))
        rendered.append(arg)
    return rendered


def _kill_process_group(process: subprocess.Popen):
    """Kill the command and everything it spawned."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def run_command(
    cmd: Sequence[str],
    log_file: Path,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run a command, streaming combined stdout/stderr into log_file.

    The command gets its own process group so a timeout kills every process
    it started, not only the direct child. Raises OSError if the command
    cannot be launched. A command that exceeds timeout is reported with
    timed_out=True.
    """
    cmd = [str(part) for part in cmd]
    log_to_file(log_file, f"Running command: {' '.join(cmd)}")

    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    start_time = time.time()
    process = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        bufsize=1,
        env=full_env,
        cwd=str(cwd) if cwd else None,
        start_new_session=True,
    )

    def pump():
        for line in process.stdout:
            log_to_file(log_file, line.rstrip())

    reader = threading.Thread(target=pump, daemon=True)
    reader.start()

    timed_out = False
    try:
        returncode = process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_group(process)
        returncode = process.wait()
        log_to_file(log_file, f"Command timed out after {timeout}s and was killed")

    reader.join(timeout=5)
    if reader.is_alive():
        log_to_file(log_file, "Processes left behind still hold the output pipe, killing them")
        _kill_process_group(process)
        reader.join(timeout=5)
    if not reader.is_alive() and process.stdout:
        process.stdout.close()

    duration = time.time() - start_time
    log_to_file(log_file, f"Command exited with {returncode}")
    return CommandResult(
        args=cmd,
        returncode=returncode,
        timed_out=timed_out,
        duration=duration,
    )
