# worker.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional, Tuple

from .model import ExitOutcome, Job, WorkerState
from .script import ScriptError, ScriptNotFound, resolve_script, spawn_supervised
from .settings import AGENT_CLEANUP_PREFIX, AGENT_INIT_PREFIX
from .shutdown import ShutdownCoordinator, ShutdownLevel

logger = logging.getLogger(__name__)

TAIL_LINES = 200


@dataclass(eq=False)
class WorkerError(Exception):
    """A job whose worker could not be started at all."""
    job: str
    reason: str

    def __str__(self) -> str:
        return f"[{self.job}] worker failed: {self.reason}"


class _StreamDrain(threading.Thread):
    """Reads one child pipe to EOF, keeping a tail for diagnostics."""

    def __init__(self, job: str, label: str, stream):
        super().__init__(name=f"formica-{label}-{job}", daemon=True)
        self.job = job
        self.label = label
        self.stream = stream
        self.lines: Deque[str] = deque(maxlen=TAIL_LINES)

    def run(self) -> None:
        try:
            for line in self.stream:
                self.lines.append(line)
                logger.debug("[%s] %s: %s", self.job, self.label, line.rstrip())
        except (OSError, ValueError) as e:
            # A closed pipe is the normal teardown after a kill.
            if not self.stream.closed:
                logger.warning("[%s] %s reader stopped early: %s", self.job, self.label, e)
        finally:
            try:
                self.stream.close()
            except OSError:
                pass

    def text(self) -> str:
        return "".join(self.lines)


class WorkerSupervisor:
    """
    Runs one job's agent-init script and sees it through to the end.

    The child is owned exclusively by this object: nothing else touches its
    pipes, and `run` never returns (or raises) before the child is reaped.
    Reaction to shutdown levels:
      - IMMEDIATE_SHUTDOWN_REQUESTED: one graceful stop request
      - FORCE_TERMINATION_REQUESTED: kill and reap at once, skip cleanup
    """

    def __init__(
        self,
        job: Job,
        coordinator: ShutdownCoordinator,
        *,
        handshake: str = "ls\n",
        agent_init_prefix: str = AGENT_INIT_PREFIX,
        agent_cleanup_prefix: str = AGENT_CLEANUP_PREFIX,
        wait_slice: float = 0.1,
    ):
        self.job = job
        self.coordinator = coordinator
        self.handshake = handshake
        self.agent_init_prefix = agent_init_prefix
        self.agent_cleanup_prefix = agent_cleanup_prefix
        self.wait_slice = wait_slice
        self.state = WorkerState.STARTING
        self.pid: Optional[int] = None

    def run(self) -> ExitOutcome:
        """
        Resolve, spawn, supervise and reap the worker, then run cleanup.

        Returns:
            ExitOutcome (a non-zero exit is an outcome, not an error)

        Raises:
            WorkerError: The agent-init script could not be resolved or spawned,
                or shutdown had already escalated before the job started
        """
        job = self.job
        started = time.monotonic()

        if self.coordinator.reached(ShutdownLevel.IMMEDIATE_SHUTDOWN_REQUESTED):
            self.state = WorkerState.FAILED
            raise WorkerError(job.name, "shutdown in progress, not starting")

        try:
            script = resolve_script(job.root_folder, self.agent_init_prefix)
            proc = spawn_supervised(job.root_folder, script)
        except ScriptError as e:
            self.state = WorkerState.FAILED
            raise WorkerError(job.name, str(e)) from e

        self.pid = proc.pid
        self.state = WorkerState.RUNNING
        logger.info("[%s] worker started (pid=%s)", job.name, proc.pid)

        returncode, stopped_by, stdout, stderr = self._supervise(
            proc, graceful_stop=True, stdin_text=self.handshake
        )
        self.state = WorkerState.COMPLETED

        outcome = ExitOutcome(
            job=job.name,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            stopped_by=stopped_by,
        )
        outcome.cleanup_returncode = self._cleanup()
        outcome.duration = time.monotonic() - started
        return outcome

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _supervise(
        self,
        proc: subprocess.Popen,
        *,
        graceful_stop: bool,
        stdin_text: str = "",
    ) -> Tuple[int, Optional[str], str, str]:
        drains: List[_StreamDrain] = [
            _StreamDrain(self.job.name, "stdout", proc.stdout),
            _StreamDrain(self.job.name, "stderr", proc.stderr),
        ]
        for drain in drains:
            drain.start()

        stopped_by: Optional[str] = None
        try:
            self._write_stdin(proc, stdin_text)
            stopped_by = self._wait(proc, graceful_stop=graceful_stop)
        finally:
            if proc.poll() is None:
                self._signal(proc, hard=True)
                stopped_by = "kill"
            proc.wait()
            for drain in drains:
                drain.join(timeout=1.0)

        return proc.returncode, stopped_by, drains[0].text(), drains[1].text()

    def _write_stdin(self, proc: subprocess.Popen, text: str) -> None:
        try:
            if text:
                proc.stdin.write(text)
                proc.stdin.flush()
            proc.stdin.close()
        except (BrokenPipeError, OSError, ValueError):
            logger.debug("[%s] child closed stdin before the handshake", self.job.name)

    def _wait(self, proc: subprocess.Popen, *, graceful_stop: bool) -> Optional[str]:
        stopped_by: Optional[str] = None
        while True:
            try:
                proc.wait(timeout=self.wait_slice)
                return stopped_by
            except subprocess.TimeoutExpired:
                pass

            level = self.coordinator.level
            if level >= ShutdownLevel.FORCE_TERMINATION_REQUESTED:
                logger.warning("[%s] killing pid %s", self.job.name, proc.pid)
                self._signal(proc, hard=True)
                proc.wait()
                return "kill"
            if graceful_stop and stopped_by is None and level >= ShutdownLevel.IMMEDIATE_SHUTDOWN_REQUESTED:
                logger.info("[%s] asking pid %s to terminate", self.job.name, proc.pid)
                self._signal(proc, hard=False)
                stopped_by = "terminate"

    def _signal(self, proc: subprocess.Popen, *, hard: bool) -> None:
        try:
            if os.name == "nt":
                if hard:
                    proc.kill()
                else:
                    proc.terminate()
            else:
                os.killpg(proc.pid, signal.SIGKILL if hard else signal.SIGTERM)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning("[%s] could not signal pid %s: %s", self.job.name, proc.pid, e)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _cleanup(self) -> Optional[int]:
        if self.coordinator.reached(ShutdownLevel.FORCE_TERMINATION_REQUESTED):
            logger.warning("[%s] force termination: skipping agent cleanup", self.job.name)
            return None
        try:
            script = resolve_script(self.job.root_folder, self.agent_cleanup_prefix)
        except ScriptNotFound:
            return None
        except ScriptError as e:
            logger.warning("[%s] agent cleanup skipped: %s", self.job.name, e)
            return None

        try:
            proc = spawn_supervised(self.job.root_folder, script)
        except ScriptError as e:
            logger.warning("[%s] agent cleanup could not start: %s", self.job.name, e)
            return None

        returncode, stopped_by, _stdout, stderr = self._supervise(proc, graceful_stop=False)
        if returncode != 0:
            logger.warning(
                "[%s] agent cleanup exited with %s%s\n%s",
                self.job.name,
                returncode,
                " (killed)" if stopped_by else "",
                stderr.strip(),
            )
        return returncode
