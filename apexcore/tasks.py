"""
Task Models

The request/result contract shared by the Apex Loop, the Orchestrator
and every feature call site.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Optional, Tuple

if TYPE_CHECKING:
    from .schema import OutputContract


class TaskCategory(str, Enum):
    """The kind of work a task represents. Each category has its own provider ladder."""
    PHYSICS = "physics"
    REFLEX = "reflex"
    MATH = "math"
    INGEST = "ingest"
    VISION = "vision"
    CHAT = "chat"
    CODE = "code"
    GENERAL = "general"


class AttemptOutcome(str, Enum):
    """How a single provider attempt ended."""
    SUCCESS = "success"
    SCHEMA_INVALID = "schema_invalid"
    PROVIDER_ERROR = "provider_error"
    TIMEOUT = "timeout"


class ErrorKind(str, Enum):
    """Typed failure reasons surfaced in TaskResult.error."""
    NO_PROVIDER_CONFIGURED = "no_provider_configured"
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"
    SCHEMA_INVALID = "schema_invalid"
    EXHAUSTED = "exhausted"
    SATURATED = "saturated"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProgressEvent:
    """
    A partial/log event forwarded to a request's progress sink.

    Emitted once per attempt outcome so call sites can render their own logs.
    """
    provider_id: str
    attempt: int
    outcome: AttemptOutcome
    message: str = ""


ProgressSink = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class TaskRequest:
    """
    An immutable unit of work for the Apex Loop.

    Examples:
        TaskRequest(
            category=TaskCategory.PHYSICS,
            prompt="A ball dropped from 10m",
            output_contract=OutputContract(WorldState),
        )
    """
    category: TaskCategory
    prompt: str
    output_contract: "OutputContract"
    preferred_provider: Optional[str] = None
    progress_sink: Optional[ProgressSink] = field(default=None, compare=False)
    system: Optional[str] = None


@dataclass(frozen=True)
class AttemptRecord:
    """One provider invocation inside a single Apex Loop execution."""
    provider_id: str
    started_at: datetime
    duration_ms: float
    outcome: AttemptOutcome
    detail: str = ""


@dataclass(frozen=True)
class TaskError:
    kind: ErrorKind
    message: str = ""

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value


@dataclass(frozen=True)
class TaskResult:
    """
    The outcome of an Apex Loop execution.

    `error` is present if and only if `success` is False. Results are never
    mutated after they are returned.
    """
    success: bool
    output: Any = None
    attempts: Tuple[AttemptRecord, ...] = ()
    error: Optional[TaskError] = None
    thinking: Optional[str] = None

    def __post_init__(self):
        if self.success and self.error is not None:
            raise ValueError("A successful TaskResult cannot carry an error")
        if not self.success and self.error is None:
            raise ValueError("A failed TaskResult must carry an error")

    @classmethod
    def ok(cls, output: Any, attempts: Tuple[AttemptRecord, ...], thinking: Optional[str] = None) -> "TaskResult":
        return cls(success=True, output=output, attempts=tuple(attempts), thinking=thinking)

    @classmethod
    def failed(cls, kind: ErrorKind, message: str = "", attempts: Tuple[AttemptRecord, ...] = ()) -> "TaskResult":
        return cls(success=False, attempts=tuple(attempts), error=TaskError(kind, message))

    def outcome_counts(self) -> Dict[str, int]:
        """Aggregate attempt outcomes. This is the only attempt data that should be logged."""
        return count_outcomes(self.attempts)


def count_outcomes(attempts: Iterable[AttemptRecord]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for record in attempts:
        counts[record.outcome.value] = counts.get(record.outcome.value, 0) + 1
    return counts
