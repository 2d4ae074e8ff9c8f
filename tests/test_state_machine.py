from __future__ import annotations

import allure
import pytest

from edit_relay.errors import InvalidTransitionError
from edit_relay.models import Pair, PairState
from edit_relay.state_machine import PairStateMachine

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("Pair State Machine"),
]


class _FakeMonotonic:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


def _machine() -> tuple[PairStateMachine, _FakeMonotonic]:
    monotonic = _FakeMonotonic()
    return PairStateMachine(Pair("site1", "alice"), monotonic=monotonic), monotonic


def test_happy_path_through_pipeline() -> None:
    machine, _ = _machine()

    for target in (
        PairState.PROCESSING,
        PairState.BUILDING,
        PairState.DEPLOYING,
        PairState.COMMITTING,
        PairState.READY,
        PairState.IDLE,
        PairState.PROCESSING,
    ):
        machine.transition(target, reason="test")

    assert machine.state == PairState.PROCESSING
    assert [change.target for change in machine.history][:3] == [
        PairState.PROCESSING,
        PairState.BUILDING,
        PairState.DEPLOYING,
    ]


@pytest.mark.parametrize(
    "failing_state",
    [PairState.BUILDING, PairState.DEPLOYING, PairState.COMMITTING],
)
def test_failures_return_to_processing(failing_state: PairState) -> None:
    machine, _ = _machine()
    path = [PairState.PROCESSING, PairState.BUILDING, PairState.DEPLOYING, PairState.COMMITTING]
    for target in path[: path.index(failing_state) + 1]:
        machine.transition(target)

    machine.transition(PairState.PROCESSING, reason="failure")

    assert machine.state == PairState.PROCESSING


@pytest.mark.parametrize(
    ("source_path", "target"),
    [
        ((), PairState.BUILDING),
        ((PairState.PROCESSING,), PairState.COMMITTING),
        ((PairState.PROCESSING, PairState.BUILDING), PairState.READY),
        ((PairState.PROCESSING, PairState.READY, PairState.IDLE), PairState.READY),
    ],
)
def test_invalid_transitions_raise(source_path: tuple[PairState, ...], target: PairState) -> None:
    machine, _ = _machine()
    for state in source_path:
        machine.transition(state)

    with pytest.raises(InvalidTransitionError):
        machine.transition(target)


def test_released_is_terminal_and_reachable_from_active_states() -> None:
    machine, _ = _machine()
    machine.transition(PairState.PROCESSING)
    machine.transition(PairState.BUILDING)

    machine.transition(PairState.RELEASED, reason="lease_lost")

    assert machine.is_released
    assert not machine.can_transition(PairState.RELEASED)
    with pytest.raises(InvalidTransitionError):
        machine.transition(PairState.PROCESSING)


def test_active_states_and_time_in_state() -> None:
    machine, monotonic = _machine()
    assert not machine.is_active

    machine.transition(PairState.PROCESSING)
    monotonic.value += 12.5

    assert machine.is_active
    assert machine.seconds_in_state() == 12.5
    machine.transition(PairState.READY, reason="settled")
    assert machine.seconds_in_state() == 0.0
    assert not machine.is_active
