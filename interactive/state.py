"""Per-step execution state machine and change notifications."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from .errors import InvalidTransition

log = logging.getLogger(__name__)


class StepStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    # idle -> completed happens when objectives are already met.
    StepStatus.IDLE: frozenset({StepStatus.RUNNING, StepStatus.COMPLETED}),
    StepStatus.RUNNING: frozenset({StepStatus.IDLE, StepStatus.COMPLETED, StepStatus.ERROR}),
    StepStatus.COMPLETED: frozenset({StepStatus.IDLE}),
    StepStatus.ERROR: frozenset({StepStatus.IDLE}),
}


@dataclass(slots=True)
class ExecutionState:
    status: StepStatus = StepStatus.IDLE
    current_index: Optional[int] = None
    error: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(slots=True, frozen=True)
class StepStateChanged:
    step_id: str
    previous: StepStatus
    status: StepStatus
    error: Optional[str] = None
    current_index: Optional[int] = None


Listener = Callable[[StepStateChanged], None]


class EventChannel:
    """Synchronous fan-out of state changes to subscribers."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: StepStateChanged) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("State listener failed for %s", event.step_id)


class StepStateStore:
    """Execution state for every step, keyed by the step's unique id."""

    def __init__(self, channel: Optional[EventChannel] = None) -> None:
        self.channel = channel or EventChannel()
        self._states: Dict[str, ExecutionState] = {}

    def get(self, step_id: str) -> ExecutionState:
        return self._states.get(step_id) or ExecutionState()

    def status(self, step_id: str) -> StepStatus:
        return self.get(step_id).status

    def transition(
        self,
        step_id: str,
        status: StepStatus,
        *,
        error: Optional[str] = None,
        current_index: Optional[int] = None,
    ) -> ExecutionState:
        current = self.get(step_id)
        if status not in TRANSITIONS[current.status]:
            raise InvalidTransition(step_id, current.status.value, status.value)
        if current_index is None and status is not StepStatus.IDLE:
            current_index = current.current_index
        state = ExecutionState(
            status=status,
            current_index=current_index,
            error=error if status is StepStatus.ERROR else None,
        )
        self._states[step_id] = state
        log.debug("Step %s: %s -> %s", step_id, current.status.value, status.value)
        self.channel.publish(
            StepStateChanged(
                step_id=step_id,
                previous=current.status,
                status=status,
                error=state.error,
                current_index=state.current_index,
            )
        )
        return state

    def set_index(self, step_id: str, index: int) -> None:
        """Progress within a running sequence or multi-step; not a transition."""

        state = self.get(step_id)
        state.current_index = index
        state.updated_at = time.time()
        self._states[step_id] = state

    def reset(self, step_id: str) -> ExecutionState:
        """Return a finished or failed step to idle; idle steps are left alone."""

        current = self.get(step_id)
        if current.status is StepStatus.IDLE:
            return current
        return self.transition(step_id, StepStatus.IDLE)

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        return {step_id: state.as_dict() for step_id, state in self._states.items()}
