# shutdown.py
"""
Escalating shutdown driven by repeated operator interrupts.

Each interrupt moves the process exactly one level forward:

    RUNNING -> COOLDOWN_REQUESTED -> IMMEDIATE_SHUTDOWN_REQUESTED
            -> FORCE_TERMINATION_REQUESTED -> TERMINATED

Only the foreground interrupt loop calls `advance`. Every other activity
reads `level`, or waits on the per-level event, which is set once and stays
set, so checking it on every loop iteration is harmless.
"""

from __future__ import annotations

import enum
import logging
import queue
import signal
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


class ShutdownLevel(enum.IntEnum):
    RUNNING = 0
    COOLDOWN_REQUESTED = 1
    IMMEDIATE_SHUTDOWN_REQUESTED = 2
    FORCE_TERMINATION_REQUESTED = 3
    TERMINATED = 4


EXIT_LOGIC = (
    "Successive Ctrl + C presses will exit, with the following logic:",
    "Press Ctrl + C to stop accepting new jobs; running jobs finish and then Formica exits.",
    "Press Ctrl + C again to terminate all running jobs and clean up their agents.",
    "Press Ctrl + C again to kill running jobs without cleaning up.",
    "Press Ctrl + C again to exit immediately.",
)

_ANNOUNCEMENTS = {
    ShutdownLevel.COOLDOWN_REQUESTED: "Starting slow shutdown: no more jobs will be accepted...",
    ShutdownLevel.IMMEDIATE_SHUTDOWN_REQUESTED: "Triggering full shutdown: terminating jobs and cleaning up agents...",
    ShutdownLevel.FORCE_TERMINATION_REQUESTED: "Force termination: killing jobs without cleaning up!",
    ShutdownLevel.TERMINATED: "Terminating immediately! (without cleaning up!)",
}


@dataclass(eq=False)
class SignalSetupError(Exception):
    reason: str

    def __str__(self) -> str:
        return f"Could not install the interrupt handler: {self.reason}"


class ShutdownCoordinator:
    """Monotonic shutdown level with one broadcast event per level."""

    def __init__(self):
        self._level = ShutdownLevel.RUNNING
        self._lock = threading.Lock()
        self._events: Dict[ShutdownLevel, threading.Event] = {
            level: threading.Event() for level in ShutdownLevel if level != ShutdownLevel.RUNNING
        }
        self._listeners: List[Callable[[ShutdownLevel], None]] = []

    @property
    def level(self) -> ShutdownLevel:
        return self._level

    def reached(self, level: ShutdownLevel) -> bool:
        return self._level >= level

    def wait_for(self, level: ShutdownLevel, timeout: float | None = None) -> bool:
        """Block until `level` is reached (or `timeout` expires)."""
        if level == ShutdownLevel.RUNNING:
            return True
        return self._events[level].wait(timeout)

    def listen(self, callback: Callable[[ShutdownLevel], None]) -> None:
        """Register a callback run once for every level transition."""
        self._listeners.append(callback)

    def advance(self) -> ShutdownLevel:
        """
        Move one level forward and broadcast it.

        Returns:
            The new level. Past TERMINATED this is a no-op.
        """
        with self._lock:
            if self._level == ShutdownLevel.TERMINATED:
                return self._level
            self._level = ShutdownLevel(self._level + 1)
            new_level = self._level
            self._events[new_level].set()

        if new_level == ShutdownLevel.TERMINATED:
            logger.warning(_ANNOUNCEMENTS[new_level])
        else:
            logger.info(_ANNOUNCEMENTS[new_level])
        for callback in list(self._listeners):
            try:
                callback(new_level)
            except Exception:
                logger.exception("Shutdown listener failed at %s", new_level.name)
        return new_level


def install_interrupt_channel() -> "queue.Queue[int]":
    """
    Route SIGINT into a channel the foreground loop consumes.

    The handler only enqueues; all decisions happen on the reading side.

    Raises:
        SignalSetupError: Not called from the main thread, or the platform refused
    """
    channel: "queue.Queue[int]" = queue.Queue()

    def _handler(signum, frame):
        channel.put_nowait(signum)

    try:
        signal.signal(signal.SIGINT, _handler)
    except (ValueError, OSError) as e:
        raise SignalSetupError(str(e)) from e
    return channel
