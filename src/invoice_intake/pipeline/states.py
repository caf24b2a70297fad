"""
Processing pipeline state machine.

A run is strictly linear:

    started -> classify -> classify_done -> extract -> extract_done
    -> verify -> verify_done -> duplicate_check -> duplicate_check_done
    -> validate -> validate_done -> save -> save_done -> notify -> done

with two early terminal exits: not_invoice (from classify) and
duplicate_skipped (from duplicate_check). save_done goes straight to done
when there is no notification channel.

`transition` is pure; the processor persists each new state to the audit
record before doing the step's work.
"""

from enum import Enum


class InvalidTransitionError(Exception):
    """Event is not accepted in the current state."""

    def __init__(self, state: "PipelineState", event: "PipelineEvent"):
        self.state = state
        self.event = event
        super().__init__(f"Cannot apply {event.value} in state {state.value}")


class PipelineState(str, Enum):
    STARTED = "started"
    CLASSIFY = "classify"
    CLASSIFY_DONE = "classify_done"
    EXTRACT = "extract"
    EXTRACT_DONE = "extract_done"
    VERIFY = "verify"
    VERIFY_DONE = "verify_done"
    DUPLICATE_CHECK = "duplicate_check"
    DUPLICATE_CHECK_DONE = "duplicate_check_done"
    VALIDATE = "validate"
    VALIDATE_DONE = "validate_done"
    SAVE = "save"
    SAVE_DONE = "save_done"
    NOTIFY = "notify"
    DONE = "done"
    NOT_INVOICE = "not_invoice"
    DUPLICATE_SKIPPED = "duplicate_skipped"


class PipelineEvent(str, Enum):
    ADVANCE = "advance"  # begin the next step
    STEP_OK = "step_ok"  # current step completed
    NOT_INVOICE = "not_invoice"
    EXACT_DUPLICATE = "exact_duplicate"
    SKIP = "skip"  # skip an optional step


S = PipelineState
E = PipelineEvent

TRANSITIONS: dict[tuple[PipelineState, PipelineEvent], PipelineState] = {
    (S.STARTED, E.ADVANCE): S.CLASSIFY,
    (S.CLASSIFY, E.STEP_OK): S.CLASSIFY_DONE,
    (S.CLASSIFY, E.NOT_INVOICE): S.NOT_INVOICE,
    (S.CLASSIFY_DONE, E.ADVANCE): S.EXTRACT,
    (S.EXTRACT, E.STEP_OK): S.EXTRACT_DONE,
    (S.EXTRACT_DONE, E.ADVANCE): S.VERIFY,
    (S.VERIFY, E.STEP_OK): S.VERIFY_DONE,
    (S.VERIFY_DONE, E.ADVANCE): S.DUPLICATE_CHECK,
    (S.DUPLICATE_CHECK, E.STEP_OK): S.DUPLICATE_CHECK_DONE,
    (S.DUPLICATE_CHECK, E.EXACT_DUPLICATE): S.DUPLICATE_SKIPPED,
    (S.DUPLICATE_CHECK_DONE, E.ADVANCE): S.VALIDATE,
    (S.VALIDATE, E.STEP_OK): S.VALIDATE_DONE,
    (S.VALIDATE_DONE, E.ADVANCE): S.SAVE,
    (S.SAVE, E.STEP_OK): S.SAVE_DONE,
    (S.SAVE_DONE, E.ADVANCE): S.NOTIFY,
    (S.SAVE_DONE, E.SKIP): S.DONE,
    (S.NOTIFY, E.STEP_OK): S.DONE,
}

TERMINAL_STATES = frozenset({S.DONE, S.NOT_INVOICE, S.DUPLICATE_SKIPPED})

# In-flight step -> checkpoint it started from
_PREVIOUS_CHECKPOINT = {
    S.CLASSIFY: S.STARTED,
    S.EXTRACT: S.CLASSIFY_DONE,
    S.VERIFY: S.EXTRACT_DONE,
    S.DUPLICATE_CHECK: S.VERIFY_DONE,
    S.VALIDATE: S.DUPLICATE_CHECK_DONE,
    S.SAVE: S.VALIDATE_DONE,
    S.NOTIFY: S.SAVE_DONE,
}


def transition(state: PipelineState, event: PipelineEvent) -> PipelineState:
    """Next state for `event` in `state`. Raises InvalidTransitionError."""
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(state, event) from None


def is_terminal(state: PipelineState) -> bool:
    return state in TERMINAL_STATES


def is_in_flight(state: PipelineState) -> bool:
    """Whether `state` is a step still doing its work."""
    return state in _PREVIOUS_CHECKPOINT


def last_completed(state: PipelineState) -> PipelineState:
    """The last state that finished its work, as recorded on failure."""
    return _PREVIOUS_CHECKPOINT.get(state, state)
