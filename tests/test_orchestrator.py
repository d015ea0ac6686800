from __future__ import annotations

import dataclasses
import logging
import queue
import threading
from pathlib import Path

import pytest

from conftest import wait_until, write_script
from formica.model import ExitOutcome
from formica.orchestrator import Orchestrator
from formica.settings import (
    EXIT_FORCED_TERMINATION,
    EXIT_MISSING_SCRIPT,
    EXIT_SIGNAL_SETUP,
)
from formica.shutdown import ShutdownLevel, SignalSetupError
from formica.ui.console import Console


class CountingSupervisor:
    def __init__(self, job, started: list, release: threading.Event):
        self.job = job
        self.started = started
        self.release = release

    def run(self) -> ExitOutcome:
        self.started.append(self.job.name)
        self.release.wait(timeout=10)
        return ExitOutcome(job=self.job.name, returncode=0)


@pytest.fixture
def counting(request):
    started: list = []
    release = threading.Event()
    request.addfinalizer(release.set)
    return started, release, (lambda job: CountingSupervisor(job, started, release))


def test_empty_directory_exits_with_missing_script(settings, capsys) -> None:
    orchestrator = Orchestrator(settings, console=Console())

    assert orchestrator.run() == EXIT_MISSING_SCRIPT
    assert len(orchestrator.registry.catalog) == 0
    assert not settings.config_root.exists()
    assert "No job initialization script" in capsys.readouterr().err


def test_config_without_jobs_exits_with_missing_script(settings, config_root: Path, capsys) -> None:
    write_script(config_root / "update.sh", "true")

    assert Orchestrator(settings, console=Console()).run() == EXIT_MISSING_SCRIPT
    assert "No jobs found" in capsys.readouterr().err


def test_allow_empty_starts_with_an_empty_catalog(settings, config_root: Path) -> None:
    write_script(config_root / "update.sh", "true")
    settings = dataclasses.replace(settings, allow_empty=True)

    assert len(Orchestrator(settings).startup()) == 0


def test_bootstrap_then_update_then_scan(settings) -> None:
    write_script(
        settings.work_dir / "config_init.sh",
        """
mkdir -p formica_conf/integration_test
printf '#!/bin/sh\\necho updated > .last_update\\n' > formica_conf/update.sh
printf '#!/bin/sh\\nexit 0\\n' > formica_conf/integration_test/agent_init.sh
""",
    )

    catalog = Orchestrator(settings).startup()

    assert list(catalog) == ["integration_test"]
    assert (settings.config_root / ".last_update").exists()


def test_signal_setup_failure_has_its_own_exit_code(settings, three_job_config, monkeypatch) -> None:
    def _fail():
        raise SignalSetupError("signal only works in main thread")

    monkeypatch.setattr("formica.orchestrator.install_interrupt_channel", _fail)
    orchestrator = Orchestrator(settings, console=Console())

    assert orchestrator.run() == EXIT_SIGNAL_SETUP
    assert orchestrator.dispatcher is None


def test_trigger_starts_exactly_one_worker(settings, three_job_config, counting) -> None:
    started, release, factory = counting
    orchestrator = Orchestrator(settings)
    orchestrator.pool.supervisor_factory = factory

    assert len(orchestrator.startup()) == 3
    orchestrator.start_background()
    try:
        (settings.queue_root / "job-b").write_text("")
        assert wait_until(lambda: started == ["job-b"])
        assert wait_until(lambda: not (settings.queue_root / "job-b").exists())
    finally:
        release.set()
        orchestrator.coordinator.advance()
        orchestrator.join_background(timeout=5)

    assert started == ["job-b"]
    assert not orchestrator.dispatcher.is_alive()
    assert not orchestrator.poller.is_alive()
    assert not orchestrator.refresher.is_alive()


def test_refresh_rescans_the_catalog(settings, three_job_config) -> None:
    orchestrator = Orchestrator(settings)
    orchestrator.startup()

    write_script(three_job_config / "job-d" / "agent_init.sh", "true")
    orchestrator._rescan_after_refresh()
    assert "job-d" in orchestrator.registry.catalog

    for name in ("job-a", "job-b", "job-c", "job-d"):
        (three_job_config / name / "agent_init.sh").unlink()
    orchestrator._rescan_after_refresh()
    assert len(orchestrator.registry.catalog) == 4


def test_serve_returns_zero_once_drained_after_cooldown(settings, three_job_config) -> None:
    orchestrator = Orchestrator(settings)
    orchestrator.startup()
    interrupts: "queue.Queue[int]" = queue.Queue()
    interrupts.put(1)

    assert orchestrator.serve(interrupts, idle_check=0.02) == 0
    assert orchestrator.coordinator.level == ShutdownLevel.COOLDOWN_REQUESTED


def test_cooldown_waits_for_running_jobs(settings, three_job_config, counting) -> None:
    started, release, factory = counting
    orchestrator = Orchestrator(settings)
    orchestrator.pool.supervisor_factory = factory
    orchestrator.startup()
    orchestrator.pool.submit(orchestrator.registry.catalog["job-a"])
    assert wait_until(lambda: started == ["job-a"])

    interrupts: "queue.Queue[int]" = queue.Queue()
    interrupts.put(1)
    threading.Timer(0.2, release.set).start()

    assert orchestrator.serve(interrupts, idle_check=0.02) == 0
    assert len(orchestrator.pool.history) == 1


def test_fourth_interrupt_forces_exit(settings, three_job_config, counting) -> None:
    started, _release, factory = counting
    orchestrator = Orchestrator(settings)
    orchestrator.pool.supervisor_factory = factory
    orchestrator.startup()
    orchestrator.pool.submit(orchestrator.registry.catalog["job-c"])
    assert wait_until(lambda: started == ["job-c"])

    interrupts: "queue.Queue[int]" = queue.Queue()
    for _ in range(4):
        interrupts.put(1)

    assert orchestrator.serve(interrupts, idle_check=0.02) == EXIT_FORCED_TERMINATION
    assert orchestrator.coordinator.level == ShutdownLevel.TERMINATED


def test_cooldown_reports_jobs_still_running(settings, three_job_config, counting, caplog) -> None:
    caplog.set_level(logging.INFO, logger="formica.orchestrator")
    started, release, factory = counting
    orchestrator = Orchestrator(settings)
    orchestrator.pool.supervisor_factory = factory
    orchestrator.startup()
    orchestrator.pool.submit(orchestrator.registry.catalog["job-a"])
    assert wait_until(lambda: started == ["job-a"])

    orchestrator.coordinator.advance()
    assert "Waiting for 1 running job(s), 0 queued" in caplog.text
    assert not orchestrator._drained()

    release.set()
    assert orchestrator.pool.wait_idle(timeout=5)
    assert orchestrator._drained()
