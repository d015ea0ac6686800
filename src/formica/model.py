# model.py
from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class Job:
    """
    A CI job discovered in the configuration tree.

    `name` is the root folder relative to the configuration root, so two
    nested folders sharing a basename remain distinct jobs. Dispatch matches
    against `folder_name`.
    """
    name: str
    root_folder: Path
    agent_init: Path
    agent_cleanup: Optional[Path] = None
    steps: Tuple[Path, ...] = ()

    @property
    def folder_name(self) -> str:
        return self.root_folder.name


class JobCatalog(Mapping[str, Job]):
    """
    Read-only mapping of job name -> Job.

    Iteration order is the lexicographic order of job names; `match` relies
    on it for its first-match rule.
    """

    def __init__(self, jobs: Iterable[Job] = ()):
        by_name: Dict[str, Job] = {}
        for job in sorted(jobs, key=lambda j: j.name):
            if job.name in by_name:
                raise ValueError(f"Duplicate job name: {job.name}")
            by_name[job.name] = job
        self._jobs = by_name

    def __getitem__(self, name: str) -> Job:
        return self._jobs[name]

    def __iter__(self):
        return iter(self._jobs)

    def __len__(self) -> int:
        return len(self._jobs)

    def __repr__(self) -> str:
        return f"JobCatalog({list(self._jobs)})"

    def match(self, signal: str) -> List[Job]:
        """All jobs whose folder name contains `signal`, in catalog order."""
        if not signal:
            return []
        return [job for job in self._jobs.values() if signal in job.folder_name]


class WorkerState(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ScriptResult:
    """Captured result of a script run to completion."""
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class ExitOutcome:
    """Final status of one supervised worker."""
    job: str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    stopped_by: Optional[str] = None   # None | "terminate" | "kill"
    cleanup_returncode: Optional[int] = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and self.stopped_by is None
