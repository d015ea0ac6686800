# settings.py
"""Runtime configuration for the orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

# Well-known names inside the working directory / configuration tree.
CONFIG_DIR = "formica_conf"
CONFIG_INIT_PREFIX = "config_init"
UPDATE_PREFIX = "update"
AGENT_INIT_PREFIX = "agent_init"
AGENT_CLEANUP_PREFIX = "agent_cleanup"
STEP_PREFIX = "step"
QUEUE_DIR = "queue"

# Operator-facing process exit codes (sysexits.h values).
EXIT_AMBIGUOUS_SCRIPT = 65
EXIT_MISSING_SCRIPT = 66
EXIT_SCRIPT_FAILURE = 70
EXIT_SIGNAL_SETUP = 71
EXIT_FORCED_TERMINATION = 75
EXIT_INTERRUPTED = 130

ON_BUSY_POLICIES = ("reject", "queue", "concurrent")


@dataclass(frozen=True)
class Settings:
    """Everything the orchestrator needs to know before it starts."""

    work_dir: Path = Path(".")
    config_dir: Path = Path(CONFIG_DIR)
    queue_dir: Path = Path(QUEUE_DIR)

    config_init_prefix: str = CONFIG_INIT_PREFIX
    update_prefix: str = UPDATE_PREFIX
    agent_init_prefix: str = AGENT_INIT_PREFIX
    agent_cleanup_prefix: str = AGENT_CLEANUP_PREFIX
    step_prefix: str = STEP_PREFIX

    update_interval: float = 5 * 60.0
    refresh_tick: float = 1.0
    poll_interval: float = 1.0

    handshake: str = "ls\n"
    on_busy: str = "reject"
    allow_empty: bool = False
    rescan_on_refresh: bool = True

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``FORMICA_*`` environment variables."""
        return cls(
            work_dir=Path(os.getenv("FORMICA_WORK_DIR", ".")),
            config_dir=Path(os.getenv("FORMICA_CONFIG_DIR", CONFIG_DIR)),
            queue_dir=Path(os.getenv("FORMICA_QUEUE_DIR", QUEUE_DIR)),
            update_interval=float(os.getenv("FORMICA_UPDATE_INTERVAL", "300")),
            refresh_tick=float(os.getenv("FORMICA_REFRESH_TICK", "1")),
            poll_interval=float(os.getenv("FORMICA_POLL_INTERVAL", "1")),
            handshake=os.getenv("FORMICA_HANDSHAKE", "ls") + "\n",
            on_busy=os.getenv("FORMICA_ON_BUSY", "reject"),
            allow_empty=_env_bool("FORMICA_ALLOW_EMPTY", default=False),
            rescan_on_refresh=_env_bool("FORMICA_RESCAN_ON_REFRESH", default=True),
        )

    def with_overrides(self, **overrides) -> Settings:
        """Return a copy with every non-``None`` override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def validate(self) -> None:
        for name in ("update_interval", "refresh_tick", "poll_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")
        if self.on_busy not in ON_BUSY_POLICIES:
            raise ValueError(
                f"on_busy must be one of {', '.join(ON_BUSY_POLICIES)}, got {self.on_busy!r}"
            )

    # Relative paths are anchored at the working directory.
    @property
    def config_root(self) -> Path:
        return self._anchor(self.config_dir)

    @property
    def queue_root(self) -> Path:
        return self._anchor(self.queue_dir)

    def _anchor(self, path: Path) -> Path:
        return path if path.is_absolute() else self.work_dir / path


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}
