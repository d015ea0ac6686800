# config_sync.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from .model import ScriptResult
from .script import (
    AmbiguousScript,
    ScriptDirectoryError,
    ScriptError,
    ScriptLaunchError,
    ScriptNotFound,
    resolve_script,
    run_to_completion,
)
from .settings import (
    EXIT_AMBIGUOUS_SCRIPT,
    EXIT_MISSING_SCRIPT,
    EXIT_SCRIPT_FAILURE,
    Settings,
)
from .shutdown import ShutdownCoordinator, ShutdownLevel

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ConfigError(Exception):
    """
    Failure to bootstrap or update the configuration directory.

    kind is one of:
      - "missing_script"
      - "ambiguous_script"
      - "execution_failed"  (result holds the captured output)
      - "launch_failed"
      - "unreadable_directory"
    stage is "init" or "update".
    """
    kind: str
    stage: str
    directory: Path
    prefix: str
    candidates: List[str] = field(default_factory=list)
    result: Optional[ScriptResult] = None
    reason: str = ""

    def __str__(self) -> str:
        what = "init" if self.stage == "init" else "update"
        if self.kind == "missing_script":
            return f"No {what} script (starting with '{self.prefix}') found in {self.directory}"
        if self.kind == "ambiguous_script":
            listing = "\n".join(f" * {name}" for name in self.candidates)
            return (
                f"More than one '{self.prefix}' script found in {self.directory}:\n{listing}"
            )
        if self.kind == "execution_failed" and self.result is not None:
            return f"The {what} script terminated with status {self.result.returncode}"
        return f"The {what} script could not be run: {self.reason}"

    @property
    def exit_code(self) -> int:
        if self.kind == "missing_script":
            return EXIT_MISSING_SCRIPT
        if self.kind == "ambiguous_script":
            return EXIT_AMBIGUOUS_SCRIPT
        if self.kind == "execution_failed" and self.result is not None:
            if 0 < self.result.returncode < 256:
                return self.result.returncode
        return EXIT_SCRIPT_FAILURE


def _config_error(stage: str, err: ScriptError) -> ConfigError:
    if isinstance(err, ScriptNotFound):
        return ConfigError("missing_script", stage, err.directory, err.prefix)
    if isinstance(err, AmbiguousScript):
        return ConfigError(
            "ambiguous_script", stage, err.directory, err.prefix, candidates=list(err.candidates)
        )
    if isinstance(err, ScriptDirectoryError):
        return ConfigError(
            "unreadable_directory", stage, err.directory, err.prefix, reason=err.reason
        )
    if isinstance(err, ScriptLaunchError):
        return ConfigError("launch_failed", stage, err.directory, err.prefix, reason=err.reason)
    return ConfigError("launch_failed", stage, err.directory, err.prefix, reason=str(err))


class ConfigSynchronizer:
    """Creates the configuration directory and keeps it up to date."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def config_root(self) -> Path:
        return self.settings.config_root

    def ensure_bootstrapped(self) -> bool:
        """
        Run the init script only if the configuration directory is missing.

        Returns:
            True if bootstrap ran
        """
        if self.config_root.is_dir():
            logger.debug("Configuration directory %s present", self.config_root)
            return False
        logger.info("No configuration directory was found... initializing the configuration!")
        self.bootstrap()
        return True

    def bootstrap(self) -> ScriptResult:
        """
        Resolve and run the init script in the working directory.

        Raises:
            ConfigError: stage "init", every kind is fatal
        """
        return self._run("init", self.settings.work_dir, self.settings.config_init_prefix)

    def refresh(self) -> ScriptResult:
        """
        Resolve and run the update script inside the configuration directory.

        Raises:
            ConfigError: stage "update"
        """
        return self._run("update", self.config_root, self.settings.update_prefix)

    def initial_refresh(self) -> ScriptResult:
        """The first refresh at startup; any ConfigError is fatal to the caller."""
        logger.info("Updating configuration in %s", self.config_root)
        return self.refresh()

    def _run(self, stage: str, directory: Path, prefix: str) -> ScriptResult:
        try:
            script = resolve_script(directory, prefix)
            logger.debug("Running %s script %s", stage, script)
            result = run_to_completion(directory, script)
        except ScriptError as e:
            raise _config_error(stage, e) from e
        if not result.ok:
            raise ConfigError(
                "execution_failed", stage, Path(directory), prefix, candidates=[script], result=result
            )
        return result


class PeriodicRefresher(threading.Thread):
    """
    Background config refresh.

    Wakes every `tick` seconds and refreshes once `interval` seconds have
    passed since the previous attempt. Failures are warnings; the next due
    tick simply tries again. Stops at cooldown.
    """

    def __init__(
        self,
        synchronizer: ConfigSynchronizer,
        coordinator: ShutdownCoordinator,
        *,
        interval: float,
        tick: float = 1.0,
        on_refreshed: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(name="formica-config-refresh", daemon=True)
        self.synchronizer = synchronizer
        self.coordinator = coordinator
        self.interval = interval
        self.tick_seconds = tick
        self.on_refreshed = on_refreshed
        self._clock = clock
        self._last_attempt = clock()

    def run(self) -> None:
        logger.debug("Config refresher started (every %.0fs)", self.interval)
        while not self.coordinator.wait_for(ShutdownLevel.COOLDOWN_REQUESTED, self.tick_seconds):
            self.tick()
        logger.debug("Config refresher stopped")

    def due(self, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        return now - self._last_attempt >= self.interval

    def tick(self, now: float | None = None) -> bool:
        """
        Refresh if due.

        Returns:
            True if the refresh ran and succeeded
        """
        now = self._clock() if now is None else now
        if not self.due(now):
            return False
        self._last_attempt = now

        try:
            self.synchronizer.refresh()
        except ConfigError as e:
            if e.kind == "missing_script":
                logger.warning("Update script has disappeared! %s", e)
            elif e.kind == "ambiguous_script":
                logger.warning("Unexpectedly, more than one update script found! %s", e)
            elif e.result is not None:
                logger.warning(
                    "Update script failed with status %s; keeping the current configuration.\n%s",
                    e.result.returncode,
                    (e.result.stderr or e.result.stdout).strip(),
                )
            else:
                logger.warning("Configuration update skipped: %s", e)
            return False
        except Exception:
            logger.exception("Configuration update crashed; retrying on the next interval")
            return False

        logger.info("Configuration updated")
        if self.on_refreshed is not None:
            try:
                self.on_refreshed()
            except Exception as e:
                logger.warning("Post-refresh hook failed: %s", e)
        return True
