"""Child-process execution for build steps, with cancellation."""
from __future__ import annotations

import logging
import shlex
import subprocess
import threading
import time
from typing import Dict, List, Optional

from constants import Constants
from errors import BuildCancelled, ProcessFailed, ToolMissing

logger = logging.getLogger(__name__)

_POLL_SEC = 0.2
_TERMINATE_GRACE_SEC = 5


class CancelToken:
    """Shared cancellation flag that also terminates registered children."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._processes: set = set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()
        with self._lock:
            processes = list(self._processes)
        for proc in processes:
            if proc.poll() is None:
                logger.debug("Terminating build process %s", proc.pid)
                proc.terminate()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def register(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._processes.add(proc)
        if self.cancelled:
            proc.terminate()

    def unregister(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._processes.discard(proc)


def excerpt(lines: List[str], count: int = Constants.LOG_EXCERPT_LINES) -> str:
    """The last ``count`` log lines."""
    return "\n".join(lines[-count:])


def _stop(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.wait(_TERMINATE_GRACE_SEC)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def run_step(
    cmd: List[str],
    *,
    cwd: str,
    env: Dict[str, str],
    backend: str,
    log: List[str],
    cancel: Optional[CancelToken] = None,
    timeout: Optional[float] = None,
) -> None:
    """Run one build step, appending its combined output to ``log``.

    Raises:
        ToolMissing: the executable does not exist.
        ProcessFailed: non-zero exit status or timeout.
        BuildCancelled: ``cancel`` fired while the step was running.
    """
    command = shlex.join(cmd)
    if cancel is not None and cancel.cancelled:
        raise BuildCancelled(backend)
    log.append(f"$ {command}")
    logger.debug("Running build step: %s", command)
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
    except FileNotFoundError as exc:
        raise ToolMissing(backend, cmd[0]) from exc
    except PermissionError as exc:
        raise ToolMissing(backend, f"{cmd[0]} (not executable)") from exc

    if cancel is not None:
        cancel.register(proc)
    deadline = time.monotonic() + timeout if timeout else None
    try:
        while True:
            try:
                output, _ = proc.communicate(timeout=_POLL_SEC)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    _stop(proc)
                    raise BuildCancelled(backend)
                if deadline is not None and time.monotonic() > deadline:
                    _stop(proc)
                    log.append(f"step timed out after {timeout}s")
                    raise ProcessFailed(backend, -1, excerpt(log), command)
    finally:
        if cancel is not None:
            cancel.unregister(proc)

    if output:
        log.extend(output.splitlines())
    if cancel is not None and cancel.cancelled:
        raise BuildCancelled(backend)
    if proc.returncode != 0:
        raise ProcessFailed(backend, proc.returncode, excerpt(log), command)
