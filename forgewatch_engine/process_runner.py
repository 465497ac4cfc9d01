import logging
import os
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

Command = Union[str, Sequence[str]]


@dataclass
class CommandResult:
    returncode: Optional[int]
    output: str = ""
    error: Optional[str] = None  # spawn error, timeout or non-zero exit
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0


def resolve_shell() -> Optional[str]:
    if sys.platform == "win32":
        return os.environ.get("ComSpec", "cmd.exe")
    for candidate in (os.environ.get("SHELL"), "/bin/sh", "/usr/bin/sh", "/bin/bash", "/usr/bin/bash"):
        if candidate and Path(candidate).exists():
            return candidate
    return None


def _kill_tree(process: subprocess.Popen):
    if sys.platform == "win32":
        process.kill()
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def mask_secrets(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


def describe(command: Command, secrets: Sequence[str] = ()) -> str:
    text = command if isinstance(command, str) else " ".join(str(part) for part in command)
    return mask_secrets(text, secrets)


def run_command(command: Command, build_logger: logging.Logger, env: Optional[Dict[str, str]] = None,
                cwd: Optional[Path] = None, shell: Optional[str] = None, timeout: Optional[float] = None,
                stdin_data: Optional[str] = None, secrets: Sequence[str] = ()) -> CommandResult:
    """Runs one command, streaming merged stdout/stderr into build_logger line by line.

    A string command goes through a shell (``shell`` or the resolved default),
    a list is executed directly. ``env`` replaces the process environment.
    """
    use_shell = isinstance(command, str)
    try:
        process = subprocess.Popen(
            command,
            shell=use_shell,
            executable=(shell or resolve_shell()) if use_shell else None,
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding='utf-8',
            errors='replace',
            env=env,
            # own process group so a timeout also reaches the shell's children
            start_new_session=(sys.platform != "win32"),
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
        build_logger.error(f"[CMD] Cannot start '{describe(command, secrets)}': {e}")
        return CommandResult(returncode=None, error=f"spawn error: {e}")

    timed_out = threading.Event()
    timer = None
    if timeout:
        def _kill():
            timed_out.set()
            _kill_tree(process)
        timer = threading.Timer(timeout, _kill)
        timer.daemon = True
        timer.start()

    if stdin_data is not None:
        try:
            process.stdin.write(stdin_data)
            process.stdin.close()
        except BrokenPipeError:
            pass

    captured: List[str] = []
    try:
        for line in process.stdout:
            line = mask_secrets(line.rstrip("\n"), secrets)
            captured.append(line)
            build_logger.info(f"[CMD] {line}")
        process.wait()
    finally:
        if timer:
            timer.cancel()

    output = "\n".join(captured)
    if timed_out.is_set():
        message = f"timed out after {timeout}s"
        build_logger.error(f"[CMD] '{describe(command, secrets)}' {message}")
        return CommandResult(returncode=process.returncode, output=output, error=message, timed_out=True)
    if process.returncode != 0:
        message = f"exit code {process.returncode}"
        build_logger.error(f"[CMD] '{describe(command, secrets)}' failed with {message}")
        return CommandResult(returncode=process.returncode, output=output, error=message)
    return CommandResult(returncode=0, output=output)


def run_series(commands: Sequence[Command], build_logger: logging.Logger, secrets: Sequence[str] = (),
               stdin_for: Optional[Dict[int, str]] = None, **kwargs) -> List[CommandResult]:
    """Runs commands in order and stops at the first failure."""
    results = []
    for index, command in enumerate(commands):
        build_logger.info(f"[RUN] {describe(command, secrets)}")
        result = run_command(command, build_logger, secrets=secrets,
                             stdin_data=(stdin_for or {}).get(index), **kwargs)
        results.append(result)
        if not result.ok:
            build_logger.error(f"[RUN][ERROR] {result.error}")
            break
    return results
