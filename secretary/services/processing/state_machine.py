"""
Processing state machine: legal edges, retry backoff and transition planning.

Everything in this module is pure. The Transition Authority applies the
plans it produces; the Queue Driver and the tests use the same tables.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from secretary.core.exceptions import InvalidTransitionError
from secretary.core.models import STATE_STEPS, ProcessingError, ProcessingState

S = ProcessingState

FAILURE_STATES: frozenset[ProcessingState] = frozenset(
    {S.upload_failed, S.transcribe_failed, S.webhook_failed}
)

# States the Queue Driver picks up on its own.
ELIGIBLE_STATES: frozenset[ProcessingState] = frozenset(
    {S.recorded, S.uploaded, S.transcribed, *FAILURE_STATES}
)

# States a crashed or interrupted stage can be left in.
IN_FLIGHT_STATES: frozenset[ProcessingState] = frozenset(
    {S.uploading, S.transcribing, S.webhook_sending, S.webhook_sent}
)

# Manual retry re-enters the stage that failed.
RETRY_TARGETS: dict[ProcessingState, ProcessingState] = {
    S.upload_failed: S.recorded,
    S.transcribe_failed: S.uploaded,
    S.webhook_failed: S.transcribed,
}

# Failure state reached from each in-flight stage.
FAILURE_FOR: dict[ProcessingState, ProcessingState] = {
    S.uploading: S.upload_failed,
    S.transcribing: S.transcribe_failed,
    S.webhook_sending: S.webhook_failed,
}

LEGAL_TRANSITIONS: dict[ProcessingState, frozenset[ProcessingState]] = {
    S.recorded: frozenset({S.uploading, S.uploaded, S.completed}),
    S.uploading: frozenset({S.uploaded, S.upload_failed, S.completed}),
    S.upload_failed: frozenset({S.uploading, S.uploaded, S.completed, S.recorded}),
    S.uploaded: frozenset({S.transcribing}),
    S.transcribing: frozenset({S.transcribed, S.transcribe_failed}),
    S.transcribe_failed: frozenset({S.transcribing, S.uploaded}),
    S.transcribed: frozenset({S.webhook_sending, S.completed}),
    S.webhook_sending: frozenset({S.webhook_sent, S.webhook_failed}),
    S.webhook_sent: frozenset({S.completed}),
    S.webhook_failed: frozenset({S.webhook_sending, S.completed, S.transcribed}),
    S.completed: frozenset(),
}

MAX_BACKOFF_EXPONENT = 5


def allowed_transitions(state: ProcessingState) -> frozenset[ProcessingState]:
    """Return the states reachable from *state* in one step."""
    return LEGAL_TRANSITIONS[ProcessingState(state)]


def is_legal(current: ProcessingState, new: ProcessingState) -> bool:
    """True when ``current -> new`` is an edge (or the same state)."""
    return current == new or new in allowed_transitions(current)


def ensure_transition(current: ProcessingState, new: ProcessingState) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> new`` is legal."""
    if not is_legal(current, new):
        raise InvalidTransitionError(
            current_state=str(current),
            attempted_state=str(new),
            allowed=sorted(str(s) for s in allowed_transitions(current)),
        )


def backoff(retry_count: int, base_seconds: float = 60.0, cap_seconds: float = 1920.0) -> float:
    """Seconds to wait after the *retry_count*-th failure.

    ``min(base * 2**min(n, 5), cap)``; negative counts are treated as 0.
    """
    exponent = min(max(retry_count, 0), MAX_BACKOFF_EXPONENT)
    return min(base_seconds * (2**exponent), cap_seconds)


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff parameters injected into the authority and the tests."""

    base_seconds: float = 60.0
    cap_seconds: float = 1920.0

    def delay(self, retry_count: int) -> timedelta:
        return timedelta(seconds=backoff(retry_count, self.base_seconds, self.cap_seconds))

    def next_retry_at(self, retry_count: int, now: datetime) -> datetime:
        return now + self.delay(retry_count)


@dataclass(frozen=True)
class TransitionPlan:
    """Column values a single accepted transition writes."""

    state: ProcessingState
    state_step: int
    last_error: ProcessingError | None
    retry_count: int
    next_retry_at: datetime | None
    upload_progress: int | None
    last_state_change_at: datetime

    def values(self) -> dict:
        """Return the remote ``recordings`` columns to update."""
        values = {
            "processing_state": self.state.value,
            "processing_step": self.state_step,
            "processing_error": (
                self.last_error.model_dump(mode="json") if self.last_error else None
            ),
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at,
            "last_state_change_at": self.last_state_change_at,
        }
        if self.upload_progress is not None:
            values["upload_progress"] = self.upload_progress
        return values


def plan_transition(
    current_state: ProcessingState,
    new_state: ProcessingState,
    *,
    retry_count: int,
    now: datetime,
    policy: BackoffPolicy,
    current_error: ProcessingError | None = None,
    error: ProcessingError | None = None,
    progress: int | None = None,
) -> TransitionPlan:
    """Compute the writes for ``current_state -> new_state``.

    Entering a failure state increments ``retry_count`` and schedules the
    next attempt; a new *error* replaces the stored one, otherwise the
    stored one is kept. Any other state clears error and schedule.

    Raises:
        InvalidTransitionError: If the edge is not part of the state machine.
    """
    ensure_transition(current_state, new_state)
    new_state = ProcessingState(new_state)
    if new_state in FAILURE_STATES:
        retries = retry_count + 1
        return TransitionPlan(
            state=new_state,
            state_step=STATE_STEPS[new_state],
            last_error=error or current_error,
            retry_count=retries,
            next_retry_at=policy.next_retry_at(retries, now),
            upload_progress=progress,
            last_state_change_at=now,
        )
    return TransitionPlan(
        state=new_state,
        state_step=STATE_STEPS[new_state],
        last_error=None,
        retry_count=retry_count,
        next_retry_at=None,
        upload_progress=progress,
        last_state_change_at=now,
    )


def plan_reset(current_state: ProcessingState, *, now: datetime) -> TransitionPlan | None:
    """Compute the manual-retry writes, or ``None`` if *current_state* is not a failure."""
    target = RETRY_TARGETS.get(ProcessingState(current_state))
    if target is None:
        return None
    return TransitionPlan(
        state=target,
        state_step=STATE_STEPS[target],
        last_error=None,
        retry_count=0,
        next_retry_at=None,
        upload_progress=None,
        last_state_change_at=now,
    )
