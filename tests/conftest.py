from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Callable

import pytest

from formica.settings import Settings


def pytest_collection_modifyitems(config, items):
    if os.name == "nt":
        skip = pytest.mark.skip(reason="tests drive /bin/sh scripts")
        for item in items:
            item.add_marker(skip)


def write_script(path: Path, body: str) -> Path:
    """Create an executable /bin/sh script."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body.strip() + "\n", encoding="utf-8")
    path.chmod(0o755)
    return path


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        work_dir=tmp_path,
        update_interval=3600.0,
        refresh_tick=0.05,
        poll_interval=0.05,
    )


@pytest.fixture
def config_root(settings: Settings) -> Path:
    root = settings.config_root
    root.mkdir(parents=True)
    return root


@pytest.fixture
def three_job_config(config_root: Path) -> Path:
    """Config dir with one update script and three job folders."""
    write_script(config_root / "update.sh", "echo updated > .last_update")
    for name in ("job-a", "job-b", "job-c"):
        write_script(config_root / name / "agent_init.sh", f"echo running {name}")
    return config_root
