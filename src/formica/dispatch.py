# dispatch.py
from __future__ import annotations

import logging
import os
import queue
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional

from .model import ExitOutcome, Job
from .registry import JobRegistry
from .shutdown import ShutdownCoordinator, ShutdownLevel
from .worker import WorkerError, WorkerSupervisor

logger = logging.getLogger(__name__)

# Finished runs kept in memory; older ones only survive in the log.
HISTORY_LIMIT = 100


# ----------------------------------------------------------------------
# Queue poller
# ----------------------------------------------------------------------

def read_trigger(path: Path) -> str:
    """
    Job name carried by a trigger file: the first non-empty line of its
    content, or the file name when the file is empty or unreadable.
    """
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        content = ""
    for line in content.splitlines():
        if line.strip():
            return line.strip()
    return path.name.strip()


class QueuePoller(threading.Thread):
    """
    Watches the queue directory and turns every trigger file into exactly
    one dispatch signal.

    A trigger is removed before its signal is enqueued, so a file that
    cannot be removed is never dispatched twice. Hidden files are ignored,
    which lets writers create a dotfile and rename it into place.
    """

    def __init__(
        self,
        queue_dir: str | Path,
        channel: "queue.Queue[str]",
        coordinator: ShutdownCoordinator,
        *,
        poll_interval: float = 1.0,
    ):
        super().__init__(name="formica-queue-poller", daemon=True)
        self.queue_dir = Path(queue_dir)
        self.channel = channel
        self.coordinator = coordinator
        self.poll_interval = poll_interval

    def ensure_queue_dir(self) -> None:
        self.queue_dir.mkdir(parents=True, exist_ok=True)

    def run(self) -> None:
        logger.debug("Queue poller watching %s", self.queue_dir)
        while not self.coordinator.wait_for(ShutdownLevel.COOLDOWN_REQUESTED, self.poll_interval):
            try:
                self.poll_once()
            except OSError as e:
                logger.warning("Could not poll queue directory %s: %s", self.queue_dir, e)
        logger.debug("Queue poller stopped")

    def poll_once(self) -> List[str]:
        """Consume every trigger currently in the queue directory."""
        if not self.queue_dir.is_dir():
            self.ensure_queue_dir()
            return []

        triggers = []
        for entry in os.scandir(self.queue_dir):
            if entry.name.startswith("."):
                continue
            try:
                if not entry.is_file():
                    continue
                mtime = entry.stat().st_mtime
            except OSError:
                continue
            triggers.append((mtime, entry.name))

        signals: List[str] = []
        for _mtime, name in sorted(triggers):
            path = self.queue_dir / name
            job_name = read_trigger(path)
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Ignoring trigger %s, it cannot be consumed: %s", path, e)
                continue
            if not job_name:
                logger.warning("Dropping trigger %r: it names no job", name)
                continue
            logger.info("Queue trigger for %r", job_name)
            self.channel.put_nowait(job_name)
            signals.append(job_name)
        return signals


# ----------------------------------------------------------------------
# Worker pool
# ----------------------------------------------------------------------

@dataclass
class WorkerRecord:
    job: str
    outcome: Optional[ExitOutcome] = None
    error: Optional[str] = None


class WorkerPool:
    """
    In-flight supervisor threads keyed by job name.

    `policy` decides what happens when a job is dispatched while already
    running: "reject" drops the request, "queue" runs it after the current
    one finishes, "concurrent" starts another worker.
    """

    def __init__(
        self,
        coordinator: ShutdownCoordinator,
        supervisor_factory: Callable[[Job], WorkerSupervisor],
        *,
        policy: str = "reject",
        history_limit: int = HISTORY_LIMIT,
    ):
        self.coordinator = coordinator
        self.supervisor_factory = supervisor_factory
        self.policy = policy
        self.history: Deque[WorkerRecord] = deque(maxlen=history_limit)
        self._running: Dict[str, List[threading.Thread]] = defaultdict(list)
        self._pending: Dict[str, Deque[Job]] = defaultdict(deque)
        self._cond = threading.Condition()

    def submit(self, job: Job) -> bool:
        """
        Start (or queue) a worker for `job`.

        Returns:
            False if the request was rejected
        """
        with self._cond:
            if self.coordinator.reached(ShutdownLevel.IMMEDIATE_SHUTDOWN_REQUESTED):
                logger.warning("[%s] not started: shutdown in progress", job.name)
                return False
            if self._running.get(job.name):
                if self.policy == "reject":
                    logger.warning("[%s] already running, request rejected", job.name)
                    return False
                if self.policy == "queue":
                    self._pending[job.name].append(job)
                    logger.info(
                        "[%s] already running, queued (%d waiting)",
                        job.name, len(self._pending[job.name]),
                    )
                    return True
            self._start_locked(job)
            return True

    def active_count(self) -> int:
        with self._cond:
            return sum(len(threads) for threads in self._running.values())

    def pending_count(self) -> int:
        with self._cond:
            return sum(len(jobs) for jobs in self._pending.values())

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no worker is running or queued."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not any(self._running.values()) and not any(self._pending.values()),
                timeout,
            )

    def _start_locked(self, job: Job) -> None:
        thread = threading.Thread(
            target=self._run, args=(job,), name=f"formica-worker-{job.name}", daemon=True
        )
        self._running[job.name].append(thread)
        thread.start()

    def _run(self, job: Job) -> None:
        record = WorkerRecord(job=job.name)
        try:
            outcome = self.supervisor_factory(job).run()
            record.outcome = outcome
            if outcome.succeeded:
                logger.info("[%s] job succeeded in %.1fs", job.name, outcome.duration)
            elif outcome.stopped_by:
                logger.warning("[%s] job stopped (%s), exit status %s", job.name, outcome.stopped_by, outcome.returncode)
            else:
                logger.error(
                    "[%s] job failed with exit status %s\n%s",
                    job.name, outcome.returncode, outcome.stderr.strip(),
                )
        except WorkerError as e:
            record.error = str(e)
            logger.error("%s", e)
        except Exception as e:
            record.error = f"{type(e).__name__}: {e}"
            logger.exception("[%s] unexpected error while supervising the job", job.name)
        finally:
            self._finish(job, record)

    def _finish(self, job: Job, record: WorkerRecord) -> None:
        with self._cond:
            self.history.append(record)
            threads = self._running[job.name]
            current = threading.current_thread()
            if current in threads:
                threads.remove(current)

            pending = self._pending[job.name]
            if pending:
                if self.coordinator.reached(ShutdownLevel.IMMEDIATE_SHUTDOWN_REQUESTED):
                    logger.warning("[%s] dropping %d queued run(s): shutdown in progress", job.name, len(pending))
                    pending.clear()
                else:
                    self._start_locked(pending.popleft())
            if not threads:
                del self._running[job.name]
            if not pending:
                del self._pending[job.name]
            self._cond.notify_all()


# ----------------------------------------------------------------------
# Dispatcher
# ----------------------------------------------------------------------

class Dispatcher(threading.Thread):
    """
    Consumes dispatch signals one at a time and hands matched jobs to the
    pool, so a long job never delays the next signal. Stops consuming at
    cooldown.
    """

    def __init__(
        self,
        channel: "queue.Queue[str]",
        registry: JobRegistry,
        pool: WorkerPool,
        coordinator: ShutdownCoordinator,
        *,
        get_timeout: float = 0.2,
    ):
        super().__init__(name="formica-dispatcher", daemon=True)
        self.channel = channel
        self.registry = registry
        self.pool = pool
        self.coordinator = coordinator
        self.get_timeout = get_timeout

    def run(self) -> None:
        while not self.coordinator.reached(ShutdownLevel.COOLDOWN_REQUESTED):
            try:
                signal_name = self.channel.get(timeout=self.get_timeout)
            except queue.Empty:
                continue
            if self.coordinator.reached(ShutdownLevel.COOLDOWN_REQUESTED):
                logger.info("Cooldown: not dispatching %r", signal_name)
                break
            self.dispatch(signal_name)
        self._drop_pending()
        logger.debug("Dispatcher stopped")

    def dispatch(self, signal_name: str) -> Optional[Job]:
        """
        Match a signal against the current catalog and start its job.

        The catalog is ordered by job name and the first job whose folder
        name contains the signal wins.
        """
        catalog = self.registry.catalog
        matches = catalog.match(signal_name)
        if not matches:
            logger.warning("No job matches %r, signal dropped", signal_name)
            return None
        if len(matches) > 1:
            logger.warning(
                "Signal %r matches several jobs (%s); running %s",
                signal_name, ", ".join(j.name for j in matches), matches[0].name,
            )
        job = matches[0]
        logger.info("Dispatching %r to job %s", signal_name, job.name)
        if not self.pool.submit(job):
            return None
        return job

    def _drop_pending(self) -> None:
        dropped = 0
        while True:
            try:
                self.channel.get_nowait()
            except queue.Empty:
                break
            dropped += 1
        if dropped:
            logger.info("Cooldown: dropped %d pending signal(s)", dropped)
