"""Apex-Core - Resilient LLM task execution with a shared Blackboard."""

# Task model
from .tasks import (
    TaskCategory,
    TaskRequest,
    TaskResult,
    TaskError,
    ErrorKind,
    AttemptOutcome,
    AttemptRecord,
    ProgressEvent,
)

# Schema validation
from .schema import (
    OutputContract,
    ValidatedOutput,
    ValidationFailure,
    validate,
)

# Provider ladder
from .ladder import (
    ProviderDescriptor,
    ProviderLadder,
    CostClass,
    DEFAULT_LADDER,
    load_ladder,
)

# Provider adapters
from .providers import (
    ProviderAdapter,
    RawResponse,
    CallableProvider,
    LiteLLMProvider,
    OpenAICompatibleProvider,
)

# Apex Loop
from .apex import ApexLoop, LoopState
from .retry import RetryPolicy
from .cancellation import CancellationToken
from .quota import QuotaOracle, get_quota_oracle

# Blackboard
from .state import (
    Blackboard,
    BlackboardContext,
    ContextPatch,
    LogEntry,
    LogLevel,
    EntityRef,
    get_blackboard,
)

# Admission control
from .admission import AdmissionController, WorkerSlot
from .events import Event, EventBus, EventType, get_event_bus

# Orchestrator
from .orchestrator import (
    Orchestrator,
    OrchestrationMode,
    AggregateResult,
    SubTaskOutcome,
    SubTaskSpec,
    TaskPlan,
    run_swarm,
)

# Configuration
from .config import ApexConfig

# Errors
from .errors import (
    ApexError,
    ConfigError,
    TransportError,
    ProviderTimeoutError,
    SaturatedError,
)

__version__ = "0.4.0"

__all__ = [
    # Tasks
    "TaskCategory",
    "TaskRequest",
    "TaskResult",
    "TaskError",
    "ErrorKind",
    "AttemptOutcome",
    "AttemptRecord",
    "ProgressEvent",
    # Schema
    "OutputContract",
    "ValidatedOutput",
    "ValidationFailure",
    "validate",
    # Ladder
    "ProviderDescriptor",
    "ProviderLadder",
    "CostClass",
    "DEFAULT_LADDER",
    "load_ladder",
    # Providers
    "ProviderAdapter",
    "RawResponse",
    "CallableProvider",
    "LiteLLMProvider",
    "OpenAICompatibleProvider",
    # Apex Loop
    "ApexLoop",
    "LoopState",
    "RetryPolicy",
    "CancellationToken",
    "QuotaOracle",
    "get_quota_oracle",
    # Blackboard
    "Blackboard",
    "BlackboardContext",
    "ContextPatch",
    "LogEntry",
    "LogLevel",
    "EntityRef",
    "get_blackboard",
    # Admission
    "AdmissionController",
    "WorkerSlot",
    "Event",
    "EventBus",
    "EventType",
    "get_event_bus",
    # Orchestrator
    "Orchestrator",
    "OrchestrationMode",
    "AggregateResult",
    "SubTaskOutcome",
    "SubTaskSpec",
    "TaskPlan",
    "run_swarm",
    # Configuration
    "ApexConfig",
    # Errors
    "ApexError",
    "ConfigError",
    "TransportError",
    "ProviderTimeoutError",
    "SaturatedError",
    # Version
    "__version__",
]
