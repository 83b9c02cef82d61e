"""Generation session state machine.

A session is one user-initiated generation for one target entity. Its
state is a tagged union; every flow (outfit render, try-on, headshot,
body shot, wardrobe item) moves through it with the same ``transition``
reducer.

    Idle -> Preprocessing(phase)* -> Polling(job_id) -> Succeeded | Failed | TimedOut
    any non-terminal state -> Failed | Cancelled
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from wardrobe_ai.jobs.errors import InvalidTransition
from wardrobe_ai.jobs.models import JobType


class FailureKind(str, Enum):
    PREREQUISITE = "prerequisite"
    PHASE = "phase"
    POLICY_BLOCKED = "policy_blocked"
    JOB_FAILED = "job_failed"
    UNEXPECTED = "unexpected"


# --- states -----------------------------------------------------------------

@dataclass(frozen=True)
class Idle:
    name: str = "idle"


@dataclass(frozen=True)
class Preprocessing:
    phase: str
    name: str = "preprocessing"


@dataclass(frozen=True)
class Polling:
    job_id: str
    name: str = "polling"


@dataclass(frozen=True)
class Succeeded:
    job_id: str
    result: Dict[str, Any] = field(default_factory=dict)
    name: str = "succeeded"


@dataclass(frozen=True)
class Failed:
    kind: FailureKind
    message: str
    job_id: Optional[str] = None
    phase: Optional[str] = None
    name: str = "failed"


@dataclass(frozen=True)
class TimedOut:
    job_id: str
    name: str = "timed_out"


@dataclass(frozen=True)
class Cancelled:
    job_id: Optional[str] = None
    name: str = "cancelled"


SessionState = Union[Idle, Preprocessing, Polling, Succeeded, Failed, TimedOut, Cancelled]
TERMINAL_STATES = (Succeeded, Failed, TimedOut, Cancelled)


# --- events -----------------------------------------------------------------

@dataclass(frozen=True)
class PhaseStarted:
    phase: str
    progress: int = 0


@dataclass(frozen=True)
class JobSubmitted:
    job_id: str
    progress: int = 0


@dataclass(frozen=True)
class PollProgressed:
    progress: int


@dataclass(frozen=True)
class JobSucceeded:
    result: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobFailed:
    kind: FailureKind
    message: str


@dataclass(frozen=True)
class PollTimedOut:
    pass


@dataclass(frozen=True)
class Errored:
    kind: FailureKind
    message: str
    phase: Optional[str] = None


@dataclass(frozen=True)
class StopRequested:
    pass


SessionEvent = Union[
    PhaseStarted, JobSubmitted, PollProgressed, JobSucceeded, JobFailed,
    PollTimedOut, Errored, StopRequested,
]


def is_terminal(state: SessionState) -> bool:
    return isinstance(state, TERMINAL_STATES)


def transition(state: SessionState, event: SessionEvent) -> SessionState:
    """Next state for ``event``. Raises InvalidTransition on illegal moves."""
    if is_terminal(state):
        raise InvalidTransition(f"Session already finished ({state.name}); got {type(event).__name__}")

    job_id = state.job_id if isinstance(state, Polling) else None

    if isinstance(event, Errored):
        return Failed(event.kind, event.message, job_id=job_id, phase=event.phase)
    if isinstance(event, StopRequested):
        return Cancelled(job_id)

    if isinstance(state, (Idle, Preprocessing)):
        if isinstance(event, PhaseStarted):
            return Preprocessing(event.phase)
        if isinstance(event, JobSubmitted):
            return Polling(event.job_id)

    if isinstance(state, Polling):
        if isinstance(event, PollProgressed):
            return state
        if isinstance(event, JobSucceeded):
            return Succeeded(state.job_id, dict(event.result))
        if isinstance(event, JobFailed):
            return Failed(event.kind, event.message, job_id=state.job_id)
        if isinstance(event, PollTimedOut):
            return TimedOut(state.job_id)

    raise InvalidTransition(f"{type(event).__name__} not allowed while {state.name}")


@dataclass
class GenerationSession:
    """Local, ephemeral record of one in-flight generation."""

    target_entity_id: str
    job_type: JobType
    state: SessionState = field(default_factory=Idle)
    progress_percent: int = 0
    job_id: Optional[str] = None

    @property
    def phase(self) -> str:
        if isinstance(self.state, Preprocessing):
            return self.state.phase
        return self.state.name

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.state)

    def apply(self, event: SessionEvent) -> SessionState:
        self.state = transition(self.state, event)
        if isinstance(event, JobSubmitted):
            self.job_id = event.job_id
        progress = getattr(event, "progress", None)
        if isinstance(self.state, Succeeded):
            progress = 100
        if progress is not None:
            # Progress is a UI hint and never goes backwards.
            self.progress_percent = max(self.progress_percent, min(100, int(progress)))
        return self.state
