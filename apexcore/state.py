"""
Blackboard State

The "Single Source of Truth" shared by the orchestrator, agents and UI.
All mutation goes through one atomic `update()`; readers only ever see
immutable snapshots.
"""

import copy
import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from uuid import uuid4

from pydantic import BaseModel, Field

logger = logging.getLogger("apexcore.blackboard")


class LogLevel(str, Enum):
    """Severity/kind of a mission log entry."""
    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    TRAP = "trap"
    ERROR = "error"
    THINKING = "thinking"
    MANIFEST = "manifest"


_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.MANIFEST: logging.INFO,
    LogLevel.THINKING: logging.DEBUG,
    LogLevel.WARN: logging.WARNING,
    LogLevel.TRAP: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

# Documented keys for task-specific findings stored in `extra`
KNOWN_EXTRA_KEYS = (
    "research_findings",   # str: grounding notes from the research agent
    "swarm_telemetry",     # dict: peer id -> device capabilities
    "world_rules",         # list: active world rules extracted from documents
    "current_metaphor",    # str: explanation behind a metaphor/voxel scene
    "latent_history",      # list: compressed summaries of older logs
)


class LogEntry(BaseModel):
    """
    A single mission log line.

    Examples:
        - LogEntry(source="Physicist", message="Gravity set to Mars", level=LogLevel.SUCCESS)
        - LogEntry(source="Critic", message="Input rejected", level=LogLevel.TRAP)
    """
    timestamp: datetime = Field(default_factory=datetime.now)
    source: str = Field(..., description="Agent or subsystem that wrote the entry")
    message: str
    level: LogLevel = LogLevel.INFO

    model_config = {"frozen": True}


class EntityRef(BaseModel):
    """A reference to something manifested into the world by a task."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    category: Optional[str] = None
    payload: Any = Field(default=None, description="Task output backing this entity")

    model_config = {"frozen": True}


class ContextPatch(BaseModel):
    """
    A partial update for the Blackboard.

    Sequence fields are appended, `streaming_progress` is replaced when set,
    and each `extra` key is replaced (nested dicts are shallow-merged).
    """
    mission_logs: List[LogEntry] = Field(default_factory=list)
    manifested_entities: List[EntityRef] = Field(default_factory=list)
    streaming_progress: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    extra: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}


class BlackboardContext(BaseModel):
    """
    A point-in-time snapshot of the Blackboard.

    Snapshots are copies: mutating one never affects the live Blackboard.
    """
    mission_logs: Tuple[LogEntry, ...] = ()
    manifested_entities: Tuple[EntityRef, ...] = ()
    streaming_progress: float = 0.0
    extra: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def get_last_log(self, level: Optional[LogLevel] = None) -> Optional[LogEntry]:
        """
        Get the most recent log entry, optionally filtered by level.

        Returns:
            The most recent matching entry, or None if not found
        """
        for entry in reversed(self.mission_logs):
            if level is None or entry.level == level:
                return entry
        return None

    def logs_from(self, source: str) -> List[LogEntry]:
        return [e for e in self.mission_logs if e.source == source]

    def entity_names(self) -> List[str]:
        return [e.name for e in self.manifested_entities]

    def to_context_string(self, recent_logs: int = 5) -> str:
        """
        Generate a human-readable context fragment for prompts.

        This is what planning agents "see" of the shared state.
        """
        lines = [
            "## Shared Context (Blackboard)",
            f"- Progress: {self.streaming_progress:.0%}",
        ]

        if self.manifested_entities:
            names = ", ".join(self.entity_names()[-10:])
            lines.append(f"- Manifested entities ({len(self.manifested_entities)}): {names}")

        for key in KNOWN_EXTRA_KEYS:
            value = self.extra.get(key)
            if value:
                preview = str(value)[:300]
                lines.append(f"- {key}: {preview}")

        if self.mission_logs:
            lines.append("\n## Recent Log")
            for entry in self.mission_logs[-recent_logs:]:
                lines.append(f"- [{entry.level.value.upper()}] {entry.source}: {entry.message}")

        return "\n".join(lines)


ContextListener = Callable[[BlackboardContext], None]
PatchLike = Union[ContextPatch, Mapping[str, Any]]


class Blackboard:
    """
    The shared, process-wide context that tasks write to and the UI reads from.

    Every mutation is applied under a single lock so concurrent writers cannot
    interleave and lose each other's appended items. Updates are applied in
    the order their calls reach the lock.

    Example:
        board = Blackboard()
        board.log("Physicist", "World generated", LogLevel.SUCCESS)
        board.update({"extra": {"research_findings": "g = 3.71 m/s^2 on Mars"}})
        ctx = board.get_context()
    """

    def __init__(self, max_log_entries: Optional[int] = None):
        """
        Args:
            max_log_entries: If set, keep only this many most recent log entries
        """
        self.max_log_entries = max_log_entries
        self._lock = threading.Lock()
        self._logs: List[LogEntry] = []
        self._entities: List[EntityRef] = []
        self._progress = 0.0
        self._extra: Dict[str, Any] = {}
        self._listeners: List[ContextListener] = []

    def get_context(self) -> BlackboardContext:
        """Return an immutable snapshot of the current context."""
        with self._lock:
            return self._snapshot()

    def update(self, partial: PatchLike) -> None:
        """
        Atomically merge a partial update into the live context.

        Raises:
            ValueError: If the patch has unknown fields or invalid values
                (nothing is applied in that case)
        """
        patch = partial if isinstance(partial, ContextPatch) else ContextPatch.model_validate(partial)
        with self._lock:
            self._apply(patch)
            snapshot = self._snapshot()
        self._notify(snapshot)

    def log(self, source: str, message: str, level: LogLevel = LogLevel.INFO) -> None:
        """Append a mission log entry."""
        level = LogLevel(level)
        logger.log(_PY_LEVELS[level], f"[{level.value.upper()}] {source}: {message}")
        self.update(ContextPatch(mission_logs=[LogEntry(source=source, message=message, level=level)]))

    def advance_progress(self, progress: float) -> float:
        """
        Move streaming progress forward, never backward.

        Returns:
            The progress value after the update
        """
        progress = min(max(progress, 0.0), 1.0)
        with self._lock:
            if progress <= self._progress:
                return self._progress
            self._progress = progress
            snapshot = self._snapshot()
        self._notify(snapshot)
        return progress

    def manifest(self, progress: float, entities: Iterable[Union[EntityRef, str]]) -> List[EntityRef]:
        """
        Record streaming progress and any entities not manifested yet.

        Each new entity also gets a MANIFEST log entry. Entities are matched
        by id; plain strings are used as both id and name.

        Returns:
            The newly manifested entities
        """
        refs = [e if isinstance(e, EntityRef) else EntityRef(id=e, name=e) for e in entities]
        with self._lock:
            known = {e.id for e in self._entities}
            new: List[EntityRef] = []
            for ref in refs:
                if ref.id not in known:
                    known.add(ref.id)
                    new.append(ref)
            self._apply(ContextPatch(
                mission_logs=[
                    LogEntry(source="Manifest", message=f"Manifested: {ref.name}", level=LogLevel.MANIFEST)
                    for ref in new
                ],
                manifested_entities=new,
                streaming_progress=min(max(progress, 0.0), 1.0)
            ))
            snapshot = self._snapshot()
        logger.debug(f"Streaming progress {progress:.0%}, {len(new)} new entities")
        self._notify(snapshot)
        return new

    def reset(self) -> None:
        """Clear logs, entities, progress and findings. Calling it twice is the same as once."""
        with self._lock:
            self._logs = []
            self._entities = []
            self._progress = 0.0
            self._extra = {}
            snapshot = self._snapshot()
        self._notify(snapshot)

    def subscribe(self, listener: ContextListener) -> Callable[[], None]:
        """
        Receive a fresh snapshot after every change.

        Returns:
            A function that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def to_context_string(self) -> str:
        return self.get_context().to_context_string()

    def _apply(self, patch: ContextPatch) -> None:
        # Caller holds the lock
        if patch.mission_logs:
            self._logs.extend(patch.mission_logs)
            if self.max_log_entries is not None and len(self._logs) > self.max_log_entries:
                del self._logs[:len(self._logs) - self.max_log_entries]

        if patch.manifested_entities:
            self._entities.extend(copy.deepcopy(patch.manifested_entities))

        if patch.streaming_progress is not None:
            self._progress = patch.streaming_progress

        for key, value in patch.extra.items():
            current = self._extra.get(key)
            if isinstance(value, Mapping) and isinstance(current, dict):
                self._extra[key] = {**current, **copy.deepcopy(dict(value))}
            else:
                self._extra[key] = copy.deepcopy(value)

    def _snapshot(self) -> BlackboardContext:
        # Caller holds the lock
        return BlackboardContext.model_construct(
            mission_logs=tuple(self._logs),
            manifested_entities=tuple(copy.deepcopy(self._entities)),
            streaming_progress=self._progress,
            extra=copy.deepcopy(self._extra)
        )

    def _notify(self, snapshot: BlackboardContext) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Blackboard listener failed: {e}")


_default_blackboard: Optional[Blackboard] = None
_default_lock = threading.Lock()


def get_blackboard() -> Blackboard:
    """Get the process-wide Blackboard, creating it on first use."""
    global _default_blackboard
    with _default_lock:
        if _default_blackboard is None:
            _default_blackboard = Blackboard()
        return _default_blackboard
