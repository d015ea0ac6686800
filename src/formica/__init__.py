from .model import Job, JobCatalog, ExitOutcome, ScriptResult, WorkerState
from .script import resolve_script, run_to_completion, spawn_supervised
from .config_sync import ConfigError, ConfigSynchronizer, PeriodicRefresher
from .registry import JobRegistry, NoJobsFound
from .dispatch import Dispatcher, QueuePoller, WorkerPool
from .worker import WorkerError, WorkerSupervisor
from .shutdown import ShutdownCoordinator, ShutdownLevel
from .orchestrator import Orchestrator
from .settings import Settings

__version__ = "0.1.0"

__all__ = [
    "Job", "JobCatalog", "ExitOutcome", "ScriptResult", "WorkerState",
    "resolve_script", "run_to_completion", "spawn_supervised",
    "ConfigError", "ConfigSynchronizer", "PeriodicRefresher",
    "JobRegistry", "NoJobsFound",
    "Dispatcher", "QueuePoller", "WorkerPool",
    "WorkerError", "WorkerSupervisor",
    "ShutdownCoordinator", "ShutdownLevel",
    "Orchestrator", "Settings",
]
