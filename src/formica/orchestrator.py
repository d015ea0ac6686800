# orchestrator.py
from __future__ import annotations

import logging
import queue
import threading
from typing import List, Optional

from .config_sync import ConfigError, ConfigSynchronizer, PeriodicRefresher
from .dispatch import Dispatcher, QueuePoller, WorkerPool
from .model import Job, JobCatalog
from .registry import JobRegistry, NoJobsFound, RegistryError
from .settings import (
    EXIT_FORCED_TERMINATION,
    EXIT_MISSING_SCRIPT,
    EXIT_SIGNAL_SETUP,
    Settings,
)
from .shutdown import (
    EXIT_LOGIC,
    ShutdownCoordinator,
    ShutdownLevel,
    SignalSetupError,
    install_interrupt_channel,
)
from .ui.console import Console, get_console
from .worker import WorkerSupervisor

logger = logging.getLogger(__name__)

STARTER_HINT = (
    "If this is your first time, I recommend you run one of the starter tools, e.g.: setup_git\n"
    "This will setup a scaffold/skeleton jobs configuration ready to populate with new jobs!"
)


class Orchestrator:
    """
    Owns the startup sequence and every background activity.

    Startup order is fixed: bootstrap (only when the configuration directory
    is missing), initial refresh, first scan. Only then do the refresher,
    the queue poller and the dispatcher start, and from that point they run
    independently, each bounded by the shutdown level.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        coordinator: Optional[ShutdownCoordinator] = None,
        console: Optional[Console] = None,
    ):
        self.settings = settings
        self.coordinator = coordinator or ShutdownCoordinator()
        self.console = console or get_console()
        self.synchronizer = ConfigSynchronizer(settings)
        self.registry = JobRegistry(
            settings.config_root,
            agent_init_prefix=settings.agent_init_prefix,
            agent_cleanup_prefix=settings.agent_cleanup_prefix,
            step_prefix=settings.step_prefix,
            allow_empty=settings.allow_empty,
        )
        self.channel: "queue.Queue[str]" = queue.Queue()
        self.pool = WorkerPool(self.coordinator, self.make_supervisor, policy=settings.on_busy)
        self.refresher: Optional[PeriodicRefresher] = None
        self.poller: Optional[QueuePoller] = None
        self.dispatcher: Optional[Dispatcher] = None
        self.coordinator.listen(self._report_in_flight)

    def make_supervisor(self, job: Job) -> WorkerSupervisor:
        return WorkerSupervisor(
            job,
            self.coordinator,
            handshake=self.settings.handshake,
            agent_init_prefix=self.settings.agent_init_prefix,
            agent_cleanup_prefix=self.settings.agent_cleanup_prefix,
        )

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def startup(self) -> JobCatalog:
        """
        Make the configuration valid and build the first catalog.

        Raises:
            ConfigError: Bootstrap or initial update failed
            RegistryError: No jobs found
        """
        logger.debug("Initializing Formica CI")
        self.synchronizer.ensure_bootstrapped()
        self.synchronizer.initial_refresh()
        catalog = self.registry.rescan()
        for job in catalog.values():
            logger.info("Found job %s at %s", job.name, job.root_folder)
        return catalog

    def start_background(self) -> None:
        """Start the refresher, the queue poller and the dispatcher."""
        on_refreshed = self._rescan_after_refresh if self.settings.rescan_on_refresh else None
        self.refresher = PeriodicRefresher(
            self.synchronizer,
            self.coordinator,
            interval=self.settings.update_interval,
            tick=self.settings.refresh_tick,
            on_refreshed=on_refreshed,
        )
        self.poller = QueuePoller(
            self.settings.queue_root,
            self.channel,
            self.coordinator,
            poll_interval=self.settings.poll_interval,
        )
        self.poller.ensure_queue_dir()
        self.dispatcher = Dispatcher(self.channel, self.registry, self.pool, self.coordinator)

        self.refresher.start()
        self.poller.start()
        self.dispatcher.start()

    def _rescan_after_refresh(self) -> None:
        try:
            self.registry.rescan()
        except RegistryError as e:
            logger.warning("Keeping the previous job catalog: %s", e)

    # ------------------------------------------------------------------
    # Foreground loop
    # ------------------------------------------------------------------

    def serve(self, interrupts: "queue.Queue[int]", *, idle_check: float = 0.5) -> int:
        """
        Consume operator interrupts until shutdown completes.

        Returns:
            0 once cooldown (or a later level) is reached and no worker is
            left, EXIT_FORCED_TERMINATION on the fourth interrupt
        """
        while True:
            try:
                interrupts.get(timeout=idle_check)
            except queue.Empty:
                pass
            else:
                if self.coordinator.advance() == ShutdownLevel.TERMINATED:
                    return EXIT_FORCED_TERMINATION

            if self.coordinator.reached(ShutdownLevel.COOLDOWN_REQUESTED) and self._drained():
                logger.info("All jobs finished, Formica is shutting down")
                self.join_background(timeout=idle_check)
                return 0

    def _drained(self) -> bool:
        if self.dispatcher is not None and self.dispatcher.is_alive():
            return False
        return self.pool.wait_idle(timeout=0)

    def _report_in_flight(self, level: ShutdownLevel) -> None:
        if level > ShutdownLevel.IMMEDIATE_SHUTDOWN_REQUESTED:
            return
        running, queued = self.pool.active_count(), self.pool.pending_count()
        if running or queued:
            logger.info("Waiting for %d running job(s), %d queued", running, queued)

    def join_background(self, timeout: float | None = None) -> None:
        threads: List[threading.Thread] = [
            t for t in (self.refresher, self.poller, self.dispatcher) if t is not None
        ]
        for thread in threads:
            thread.join(timeout)

    # ------------------------------------------------------------------
    # Whole run
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Start up, serve, and return the process exit code."""
        try:
            catalog = self.startup()
        except ConfigError as e:
            return report_config_error(e, self.console)
        except NoJobsFound as e:
            return report_no_jobs(e, self.console)

        try:
            interrupts = install_interrupt_channel()
        except SignalSetupError as e:
            self.console.print_error(
                "Interrupt handler unavailable",
                str(e),
                suggestion="Run formica from the main thread of a regular terminal session.",
            )
            return EXIT_SIGNAL_SETUP

        self.start_background()
        self.console.print_started(
            config_dir=str(self.settings.config_root),
            queue_dir=str(self.settings.queue_root),
            job_count=len(catalog),
        )
        self.console.print_exit_logic(EXIT_LOGIC)
        return self.serve(interrupts)


def report_config_error(error: ConfigError, console: Console) -> int:
    """Explain a fatal configuration error and return its exit code."""
    what = "job initialization" if error.stage == "init" else "job update"
    where = "the current directory" if error.stage == "init" else "the configuration directory"

    if error.kind == "missing_script":
        console.print_error(
            f"No {what} script",
            f"No {what} script (starting with '{error.prefix}') was found in {where} ({error.directory})!",
            suggestion=STARTER_HINT,
        )
    elif error.kind == "ambiguous_script":
        console.print_error(
            f"Too many {what} scripts",
            f"More than one '{error.prefix}' script was found in {where}:",
            details=[f"* {name}" for name in error.candidates],
            suggestion="Keep exactly one of them.",
        )
    elif error.kind == "execution_failed" and error.result is not None:
        console.print_error(
            f"The {what} script failed",
            str(error),
        )
        console.print_script_output(error.result)
    else:
        console.print_error(f"The {what} script could not be run", str(error))
    return error.exit_code


def report_no_jobs(error: NoJobsFound, console: Console) -> int:
    console.print_error(
        "No jobs found",
        str(error),
        suggestion=(
            f"Add a job folder containing an '{error.prefix}' script to the configuration, "
            "or start with --allow-empty to wait for jobs to appear."
        ),
    )
    return EXIT_MISSING_SCRIPT

