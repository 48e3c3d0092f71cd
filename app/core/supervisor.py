from __future__ import annotations
import logging
import os
import shlex
import signal
import socket
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional
from app.core.errors import ProcessError
from app.core.progress import ProgressEvent, parse_line

log = logging.getLogger(__name__)

HOSTNAME = socket.gethostname()


@dataclass
class ProcessExit:
    exit_code: int
    tail: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessHandle:
    """A spawned tool process plus the bookkeeping the supervisor needs."""

    def __init__(self, process: subprocess.Popen, command: str, tail_lines: int):
        self.process = process
        self.pid = process.pid
        self.command = command
        self.started_at = datetime.utcnow()
        self.tail: deque[str] = deque(maxlen=tail_lines)
        # Set before a controller-issued stop/cancel signals the process.
        self.stop_requested = threading.Event()
        self.stop_mode: str | None = None
        self._consumed = False
        self._lock = threading.Lock()

    @property
    def handle_id(self) -> str:
        return f"{HOSTNAME}:{self.pid}"

    def request_stop(self, mode: str) -> None:
        self.stop_mode = mode
        self.stop_requested.set()


class ProcessSupervisor:
    def __init__(self, grace_seconds: float = 10.0, tail_lines: int = 200, base_env: Optional[Dict[str, str]] = None):
        self.grace_seconds = grace_seconds
        self.tail_lines = tail_lines
        self.base_env = dict(os.environ if base_env is None else base_env)

    @classmethod
    def from_settings(cls, settings) -> "ProcessSupervisor":
        return cls(grace_seconds=settings.stop_grace_seconds, tail_lines=settings.output_tail_lines)

    def spawn(self, command: str, env: Optional[Dict[str, str]] = None) -> ProcessHandle:
        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise ProcessError(f"Command cannot be parsed: {e}") from e
        if not argv:
            raise ProcessError("Command is empty")

        full_env = dict(self.base_env)
        full_env.update(env or {})
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=full_env,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ProcessError(f"Command not found: {argv[0]}", exit_code=127) from e
        except OSError as e:
            raise ProcessError(f"Failed to start process: {e}") from e

        handle = ProcessHandle(process, command, self.tail_lines)
        log.info("Spawned process pid=%s", handle.pid, extra={"job_id": "-", "stage": "spawn"})
        return handle

    def read_progress(self, handle: ProcessHandle) -> Iterator[ProgressEvent]:
        """Yields one event per output line until the process closes its output.

        A handle's stream can be consumed once; restarting means respawning.
        """
        with handle._lock:
            if handle._consumed:
                raise ProcessError("Progress stream already consumed; respawn the process to read it again")
            handle._consumed = True

        stream = handle.process.stdout
        try:
            for raw in stream:
                line = raw.rstrip("\r\n")
                handle.tail.append(line)
                yield parse_line(line)
        finally:
            stream.close()

    def wait(self, handle: ProcessHandle, timeout: float | None = None) -> ProcessExit:
        exit_code = handle.process.wait(timeout=timeout)
        return ProcessExit(exit_code=exit_code, tail=list(handle.tail))

    def is_alive(self, handle: ProcessHandle) -> bool:
        return handle.process.poll() is None

    def stop(self, handle: ProcessHandle, graceful: bool = True) -> int:
        """Interrupt (graceful) or kill the process and wait for it to exit.

        Graceful stops escalate to SIGKILL after grace_seconds.
        """
        if not self.is_alive(handle):
            return handle.process.returncode

        if graceful:
            self._signal(handle, signal.SIGINT)
            try:
                return handle.process.wait(timeout=self.grace_seconds)
            except subprocess.TimeoutExpired:
                log.warning("Process pid=%s ignored SIGINT for %.1fs, killing", handle.pid, self.grace_seconds,
                            extra={"job_id": "-", "stage": "stop"})

        self._signal(handle, signal.SIGKILL)
        return handle.process.wait()

    def _signal(self, handle: ProcessHandle, sig: int) -> None:
        try:
            os.killpg(handle.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            handle.process.send_signal(sig)

    @staticmethod
    def is_pid_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True
