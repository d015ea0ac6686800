from __future__ import annotations

import threading

import pytest

from formica.shutdown import (
    ShutdownCoordinator,
    ShutdownLevel,
    SignalSetupError,
    install_interrupt_channel,
)


@pytest.mark.parametrize("presses", [1, 2, 3, 4, 7])
def test_each_interrupt_advances_exactly_one_level(presses: int) -> None:
    coordinator = ShutdownCoordinator()
    observed = []

    for _ in range(presses):
        observed.append(coordinator.advance())

    expected = [ShutdownLevel(min(i, ShutdownLevel.TERMINATED)) for i in range(1, presses + 1)]
    assert observed == expected
    assert coordinator.level == expected[-1]


def test_levels_are_broadcast_once_and_stay_set() -> None:
    coordinator = ShutdownCoordinator()
    seen = []
    coordinator.listen(seen.append)

    coordinator.advance()
    assert coordinator.wait_for(ShutdownLevel.COOLDOWN_REQUESTED, timeout=0)
    assert not coordinator.wait_for(ShutdownLevel.IMMEDIATE_SHUTDOWN_REQUESTED, timeout=0)

    for _ in range(5):
        coordinator.advance()

    assert seen == [
        ShutdownLevel.COOLDOWN_REQUESTED,
        ShutdownLevel.IMMEDIATE_SHUTDOWN_REQUESTED,
        ShutdownLevel.FORCE_TERMINATION_REQUESTED,
        ShutdownLevel.TERMINATED,
    ]
    assert all(coordinator.wait_for(level, timeout=0) for level in seen)


def test_reached_is_cumulative() -> None:
    coordinator = ShutdownCoordinator()
    assert coordinator.reached(ShutdownLevel.RUNNING)
    assert not coordinator.reached(ShutdownLevel.COOLDOWN_REQUESTED)

    coordinator.advance()
    coordinator.advance()

    assert coordinator.reached(ShutdownLevel.COOLDOWN_REQUESTED)
    assert coordinator.reached(ShutdownLevel.IMMEDIATE_SHUTDOWN_REQUESTED)
    assert not coordinator.reached(ShutdownLevel.FORCE_TERMINATION_REQUESTED)


def test_wait_for_wakes_other_threads() -> None:
    coordinator = ShutdownCoordinator()
    woke = threading.Event()

    def _listener():
        if coordinator.wait_for(ShutdownLevel.COOLDOWN_REQUESTED, timeout=5):
            woke.set()

    thread = threading.Thread(target=_listener)
    thread.start()
    coordinator.advance()
    thread.join(timeout=5)

    assert woke.is_set()
    assert coordinator.wait_for(ShutdownLevel.RUNNING, timeout=0)


def test_failing_listener_does_not_block_the_transition() -> None:
    coordinator = ShutdownCoordinator()

    def _broken(level):
        raise RuntimeError("listener bug")

    coordinator.listen(_broken)

    assert coordinator.advance() == ShutdownLevel.COOLDOWN_REQUESTED


def test_interrupt_channel_needs_the_main_thread() -> None:
    errors = []

    def _install():
        try:
            install_interrupt_channel()
        except SignalSetupError as e:
            errors.append(e)

    thread = threading.Thread(target=_install)
    thread.start()
    thread.join(timeout=5)

    assert len(errors) == 1
