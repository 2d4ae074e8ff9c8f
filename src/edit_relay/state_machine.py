"""Per-pair lifecycle state machine."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from edit_relay.errors import InvalidTransitionError
from edit_relay.models import Pair, PairState

logger = logging.getLogger(__name__)

_ACTIVE_STATES = frozenset({PairState.PROCESSING, PairState.BUILDING, PairState.DEPLOYING})

# RELEASED is reachable from every live state (idle expiry, lost lease, shutdown).
_TRANSITIONS: dict[PairState, frozenset[PairState]] = {
    PairState.CLAIMED: frozenset({PairState.PROCESSING, PairState.IDLE}),
    PairState.PROCESSING: frozenset(
        {PairState.PROCESSING, PairState.BUILDING, PairState.READY},
    ),
    PairState.BUILDING: frozenset({PairState.DEPLOYING, PairState.PROCESSING}),
    PairState.DEPLOYING: frozenset({PairState.COMMITTING, PairState.PROCESSING}),
    PairState.COMMITTING: frozenset({PairState.READY, PairState.PROCESSING}),
    PairState.READY: frozenset({PairState.PROCESSING, PairState.IDLE}),
    PairState.IDLE: frozenset({PairState.PROCESSING}),
    PairState.RELEASED: frozenset(),
}


@dataclass(slots=True)
class StateChange:
    source: PairState
    target: PairState
    reason: str


class PairStateMachine:
    """Tracks the state of one owned pair; invalid moves raise InvalidTransitionError."""

    def __init__(
        self,
        pair: Pair,
        *,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pair = pair
        self.state = PairState.CLAIMED
        self.history: list[StateChange] = []
        self._monotonic = monotonic
        self._entered_at = monotonic()

    @property
    def is_active(self) -> bool:
        return self.state in _ACTIVE_STATES

    @property
    def is_released(self) -> bool:
        return self.state == PairState.RELEASED

    def seconds_in_state(self) -> float:
        return self._monotonic() - self._entered_at

    def can_transition(self, target: PairState) -> bool:
        if target == PairState.RELEASED:
            return self.state != PairState.RELEASED
        return target in _TRANSITIONS[self.state]

    def transition(self, target: PairState, *, reason: str = "") -> None:
        if not self.can_transition(target):
            raise InvalidTransitionError(self.state.value, target.value)
        change = StateChange(source=self.state, target=target, reason=reason)
        self.history.append(change)
        self.state = target
        self._entered_at = self._monotonic()
        logger.debug("%s: %s -> %s (%s)", self.pair, change.source.value, target.value, reason)
