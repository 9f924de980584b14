"""Saga state transition validators."""
from __future__ import annotations

from student_registrator.core.exceptions import InvalidSagaTransitionError
from student_registrator.domain.enums import SagaState

SAGA_TRANSITIONS: dict[SagaState, set[SagaState]] = {
    SagaState.INIT: {SagaState.BACKEND_START, SagaState.DEVICE_ROLLOUT},
    SagaState.BACKEND_START: {SagaState.DEVICE_ROLLOUT, SagaState.ROLLBACK_DEVICES},
    SagaState.DEVICE_ROLLOUT: {SagaState.COMMIT, SagaState.ROLLBACK_DEVICES},
    SagaState.COMMIT: {SagaState.SUCCEEDED},
    SagaState.ROLLBACK_DEVICES: {SagaState.ROLLBACK_FINALIZE},
    SagaState.ROLLBACK_FINALIZE: {SagaState.FAILED},
    SagaState.SUCCEEDED: set(),
    SagaState.FAILED: set(),
}


def validate_saga_transition(current: SagaState, new: SagaState) -> None:
    allowed = SAGA_TRANSITIONS.get(current, set())
    if new not in allowed:
        raise InvalidSagaTransitionError(
            f"Invalid saga state transition: {current.value} → {new.value}"
        )
