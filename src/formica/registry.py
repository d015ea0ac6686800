# registry.py
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .model import Job, JobCatalog
from .script import ScriptError, find_candidates
from .settings import AGENT_CLEANUP_PREFIX, AGENT_INIT_PREFIX, STEP_PREFIX

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class RegistryError(Exception):
    config_root: Path

    def __str__(self) -> str:
        return f"Could not build the job catalog from {self.config_root}"


@dataclass(eq=False)
class NoJobsFound(RegistryError):
    prefix: str = AGENT_INIT_PREFIX

    def __str__(self) -> str:
        return (
            f"No jobs found under {self.config_root}: no file starting with "
            f"'{self.prefix}' in any folder"
        )


def walk_agent_init_dirs(config_root: Path, prefix: str) -> Dict[Path, List[str]]:
    """
    Walk the configuration tree (following symlinks) and collect, per
    folder, the regular files whose name starts with `prefix`.

    Each real directory is visited once, so symlink loops terminate.
    """
    found: Dict[Path, List[str]] = {}
    seen: set[str] = set()

    def _on_error(err: OSError) -> None:
        logger.warning("Skipping unreadable path during job scan: %s", err)

    for dirpath, dirnames, filenames in os.walk(config_root, followlinks=True, onerror=_on_error):
        real = os.path.realpath(dirpath)
        if real in seen:
            dirnames[:] = []
            continue
        seen.add(real)
        dirnames.sort()

        matches = sorted(
            name for name in filenames
            if name.startswith(prefix) and os.path.isfile(os.path.join(dirpath, name))
        )
        if matches:
            found[Path(dirpath)] = matches
    return found


class JobRegistry:
    """
    Discovers jobs in the configuration tree.

    `catalog` is always a complete snapshot: `rescan` builds the replacement
    off to the side and swaps the reference in one assignment, so dispatch
    lookups running in other threads never see a half-built catalog.
    """

    def __init__(
        self,
        config_root: str | Path,
        *,
        agent_init_prefix: str = AGENT_INIT_PREFIX,
        agent_cleanup_prefix: str = AGENT_CLEANUP_PREFIX,
        step_prefix: str = STEP_PREFIX,
        allow_empty: bool = False,
    ):
        self.config_root = Path(config_root)
        self.agent_init_prefix = agent_init_prefix
        self.agent_cleanup_prefix = agent_cleanup_prefix
        self.step_prefix = step_prefix
        self.allow_empty = allow_empty
        self._catalog = JobCatalog()
        self._swap_lock = threading.Lock()

    @property
    def catalog(self) -> JobCatalog:
        return self._catalog

    def scan(self) -> JobCatalog:
        """
        Build a fresh catalog from disk without touching the current one.

        Raises:
            NoJobsFound: Nothing under the configuration root defines a job
                (unless allow_empty is set)
        """
        jobs: List[Job] = []
        for folder, scripts in walk_agent_init_dirs(self.config_root, self.agent_init_prefix).items():
            if len(scripts) > 1:
                logger.warning(
                    "Skipping %s: more than one '%s' script found: %s",
                    folder, self.agent_init_prefix, ", ".join(scripts),
                )
                continue
            try:
                jobs.append(self._build_job(folder, scripts[0]))
            except ScriptError as e:
                logger.warning("Skipping %s: %s", folder, e)

        if not jobs and not self.allow_empty:
            raise NoJobsFound(self.config_root, prefix=self.agent_init_prefix)

        catalog = JobCatalog(jobs)
        for job in catalog.values():
            logger.debug("Found job %s at %s", job.name, job.root_folder)
        return catalog

    def rescan(self) -> JobCatalog:
        """Scan and atomically replace the current catalog. On error the old one stays."""
        with self._swap_lock:
            catalog = self.scan()
            previous = self._catalog
            self._catalog = catalog
        added = sorted(set(catalog) - set(previous))
        removed = sorted(set(previous) - set(catalog))
        if added or removed:
            logger.info("Job catalog changed: added=%s removed=%s", added, removed)
        return catalog

    def _build_job(self, folder: Path, agent_init: str) -> Job:
        name = self._job_name(folder)
        cleanup = self._optional_script(folder, self.agent_cleanup_prefix)
        steps = tuple(folder / s for s in find_candidates(folder, self.step_prefix))
        return Job(
            name=name,
            root_folder=folder,
            agent_init=folder / agent_init,
            agent_cleanup=cleanup,
            steps=steps,
        )

    def _job_name(self, folder: Path) -> str:
        try:
            relative = folder.relative_to(self.config_root)
        except ValueError:
            return folder.name
        name = relative.as_posix()
        return folder.resolve().name if name == "." else name

    def _optional_script(self, folder: Path, prefix: str) -> Optional[Path]:
        candidates = find_candidates(folder, prefix)
        if not candidates:
            return None
        if len(candidates) > 1:
            logger.warning(
                "Ignoring '%s' scripts in %s, more than one found: %s",
                prefix, folder, ", ".join(candidates),
            )
            return None
        return folder / candidates[0]
