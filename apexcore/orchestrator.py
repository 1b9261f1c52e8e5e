"""
Orchestrator (Hive Swarm)

Decomposes a high-level goal into sub-tasks, drives each one through the
Admission Controller and the Apex Loop, streams results into the
Blackboard as they complete, and aggregates a final result.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from .admission import AdmissionController, WorkerSlot
from .apex import ApexLoop
from .cancellation import CancellationToken
from .config import ApexConfig
from .events import Event, EventBus, EventType, get_event_bus
from .features import critique_input
from .schema import OutputContract
from .state import Blackboard, ContextPatch, EntityRef, LogEntry, LogLevel, get_blackboard
from .tasks import AttemptOutcome, ErrorKind, ProgressEvent, TaskCategory, TaskRequest, TaskResult

logger = logging.getLogger("apexcore.orchestrator")


class OrchestrationMode(str, Enum):
    """How the caller wants the goal rendered."""
    AUTO = "auto"
    PHYSICS = "physics"
    VOXEL = "voxel"
    SCIENTIFIC = "scientific"


# Category used for plan entries left as GENERAL when the mode is explicit
_MODE_CATEGORIES = {
    OrchestrationMode.PHYSICS: TaskCategory.PHYSICS,
    OrchestrationMode.VOXEL: TaskCategory.PHYSICS,
    OrchestrationMode.SCIENTIFIC: TaskCategory.MATH,
}


class SubTaskSpec(BaseModel):
    """One entry of a decomposed plan."""
    title: str = Field(..., min_length=1)
    category: TaskCategory = TaskCategory.GENERAL
    prompt: str = Field(..., min_length=1)

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return TaskCategory(value.strip().lower())
            except ValueError:
                return TaskCategory.GENERAL
        return value


class TaskPlan(BaseModel):
    """The decomposition contract: an ordered list of sub-tasks."""
    tasks: List[SubTaskSpec] = Field(..., min_length=1)


class SubTaskOutput(BaseModel):
    """Default output contract for sub-tasks."""
    summary: str
    entities: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


PLAN_CONTRACT = OutputContract(TaskPlan)
SUBTASK_CONTRACT = OutputContract(SubTaskOutput)


@dataclass(frozen=True)
class SubTaskOutcome:
    index: int
    spec: SubTaskSpec
    result: TaskResult

    @property
    def success(self) -> bool:
        return self.result.success


@dataclass(frozen=True)
class AggregateResult:
    """
    The outcome of an Orchestrator run.

    `success` is True when at least one sub-task succeeded; partial success
    is normal and reported through `outcomes`.
    """
    goal: str
    success: bool
    outcomes: Tuple[SubTaskOutcome, ...]
    outputs: Tuple[Any, ...]
    decomposition_fallback: bool = False
    blocked: bool = False
    message: str = ""

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goal": self.goal,
            "success": self.success,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "decomposition_fallback": self.decomposition_fallback,
            "blocked": self.blocked,
            "message": self.message,
            "outcomes": [
                {
                    "index": o.index,
                    "title": o.spec.title,
                    "category": o.spec.category.value,
                    "success": o.success,
                    "error": str(o.result.error) if o.result.error else None,
                    "attempts": o.result.outcome_counts(),
                    "output": o.result.output.model_dump(mode="json") if isinstance(o.result.output, BaseModel) else o.result.output,
                }
                for o in self.outcomes
            ],
        }


@dataclass
class _RunState:
    """Counters for one run()."""
    total: int = 0
    completed: int = 0
    pending: int = 0
    token: Optional[CancellationToken] = None
    outcomes: List[SubTaskOutcome] = field(default_factory=list)


class Orchestrator:
    """
    Goal-level driver for the Apex Loop.

    1. Decompose: one loop call produces a TaskPlan (falls back to a single
       PHYSICS task for the whole goal when decomposition fails)
    2. Admit: each sub-task polls the Admission Controller for a slot,
       failing with SATURATED after `max_wait`
    3. Execute: the sub-task runs through the Apex Loop; the slot is always
       released afterwards
    4. Stream: every completion is written to the Blackboard and advances
       `streaming_progress` toward 1.0
    5. Aggregate: success if any sub-task succeeded

    One failing sub-task never cancels its siblings.

    Example:
        loop = ApexLoop(adapter=LiteLLMProvider())
        orchestrator = Orchestrator(loop=loop, admission=AdmissionController(max_workers=8))
        result = await orchestrator.run("Simulate a pendulum on the Moon")
    """

    PLANNER_SYSTEM_PROMPT = '''You are the planner of a simulation swarm.
Break the user's goal into small, independent sub-tasks that specialist agents can run in parallel.

Respond with valid JSON only:
{{
    "tasks": [
        {{"title": "Short name", "category": "<one of: {categories}>", "prompt": "Specific instructions"}}
    ]
}}

Rules:
1. Use at most {max_tasks} tasks
2. Prefer "physics" for world/entity generation, "math" for derivations, "reflex" for quick lookups
3. Each prompt must be self-contained; agents do not see each other's output
'''

    def __init__(
        self,
        loop: ApexLoop,
        admission: Optional[AdmissionController] = None,
        blackboard: Optional[Blackboard] = None,
        config: Optional[ApexConfig] = None,
        event_bus: Optional[EventBus] = None,
        contracts: Optional[Mapping[TaskCategory, OutputContract]] = None,
        planning_category: TaskCategory = TaskCategory.GENERAL,
        guard: bool = False,
        verbose: bool = False
    ):
        """
        Initialize the orchestrator.

        Args:
            loop: The Apex Loop used for planning and every sub-task
            admission: Slot pool (default: a new pool of `config.max_workers`)
            blackboard: Shared context (default: the process-wide Blackboard)
            config: Tunables (default: ApexConfig())
            event_bus: Event bus for observability (uses global if not provided)
            contracts: Per-category output contracts (default: SubTaskOutput)
            planning_category: Ladder used for decomposition
            guard: If True, run the critic on the goal first and stop on a TRAP verdict
            verbose: If True, enable DEBUG level logging
        """
        self.config = config or ApexConfig()
        self.loop = loop
        self.event_bus = event_bus or get_event_bus()
        self.admission = admission or AdmissionController(self.config.max_workers, event_bus=self.event_bus)
        self.blackboard = blackboard or get_blackboard()
        self.contracts = dict(contracts or {})
        self.planning_category = planning_category
        self.guard = guard

        if verbose and not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('[%(name)s] %(message)s'))
            logger.addHandler(handler)
            logger.setLevel(logging.DEBUG)

    async def run(
        self,
        goal: str,
        context: str = "",
        mode: OrchestrationMode = OrchestrationMode.AUTO,
        cancel_token: Optional[CancellationToken] = None
    ) -> AggregateResult:
        """
        Execute a goal end to end (async).

        Args:
            goal: The high-level objective
            context: Extra grounding text (document excerpts, prior state)
            mode: Rendering mode hint
            cancel_token: Stops new slot acquisition and in-flight retries when cancelled

        Returns:
            The aggregate result; failures are reported, never raised
        """
        mode = OrchestrationMode(mode)
        run = _RunState(token=cancel_token)

        # First update of a run resets progress
        self.blackboard.update(ContextPatch(
            streaming_progress=0.0,
            mission_logs=[LogEntry(source="Orchestrator", message=f"Goal received: {goal}")]
        ))
        await self._publish_event(EventType.ORCHESTRATOR_STARTED, {"goal": goal, "mode": mode.value})
        logger.info(f"Goal: {goal} (mode={mode.value})")

        if self.guard:
            blocked = await self._guard(goal, run)
            if blocked is not None:
                return blocked

        plan, fallback = await self._decompose(goal, context, mode, run)
        run.total = len(plan)
        await self._publish_event(EventType.PLAN_CREATED, {
            "tasks": [s.title for s in plan],
            "fallback": fallback
        })
        logger.info(f"Plan: {run.total} sub-task(s){' (fallback)' if fallback else ''}")

        outcomes = await asyncio.gather(*[
            self._run_subtask(index, spec, goal, context, run)
            for index, spec in enumerate(plan)
        ])

        self.blackboard.advance_progress(1.0)
        outputs = tuple(o.result.output for o in outcomes if o.success)
        result = AggregateResult(
            goal=goal,
            success=bool(outputs),
            outcomes=tuple(outcomes),
            outputs=outputs,
            decomposition_fallback=fallback
        )

        level = LogLevel.SUCCESS if result.success else LogLevel.WARN
        self.blackboard.log(
            "Orchestrator",
            f"Swarm finished: {result.succeeded}/{len(outcomes)} sub-task(s) succeeded",
            level
        )
        await self._publish_event(EventType.ORCHESTRATOR_COMPLETED, {
            "success": result.success,
            "succeeded": result.succeeded,
            "failed": result.failed
        })
        return result

    def run_sync(
        self,
        goal: str,
        context: str = "",
        mode: OrchestrationMode = OrchestrationMode.AUTO
    ) -> AggregateResult:
        """Synchronous wrapper for run()."""
        return asyncio.run(self.run(goal=goal, context=context, mode=mode))

    async def _guard(self, goal: str, run: _RunState) -> Optional[AggregateResult]:
        """
        Run the critic over the goal. Returns a blocked result on TRAP, None to proceed.

        A critic that cannot be reached or answers badly does not block the run.
        """
        slot, error = await self._acquire(TaskCategory.REFLEX, run)
        if slot is None:
            logger.warning(f"Critic skipped, no slot ({error.value})")
            return None
        try:
            verdict = await critique_input(
                self.loop,
                f"{self.blackboard.to_context_string()}\n\nUSER INPUT: {goal}",
                progress_sink=self._progress_sink("Critic"),
                cancel_token=run.token
            )
        finally:
            self.admission.release(slot)

        if not verdict.success:
            self.blackboard.log("Critic", f"Guard unavailable ({verdict.error}), proceeding", LogLevel.WARN)
            return None
        if verdict.output.status != "TRAP":
            return None

        message = verdict.output.message or "Request rejected by the critic"
        self.blackboard.log("Critic", message, LogLevel.TRAP)
        self.blackboard.advance_progress(1.0)
        await self._publish_event(EventType.ORCHESTRATOR_COMPLETED, {
            "success": False,
            "blocked": True,
            "succeeded": 0,
            "failed": 0
        })
        return AggregateResult(goal=goal, success=False, outcomes=(), outputs=(), blocked=True, message=message)

    async def _decompose(
        self,
        goal: str,
        context: str,
        mode: OrchestrationMode,
        run: _RunState
    ) -> Tuple[List[SubTaskSpec], bool]:
        """Ask the planner for a TaskPlan. Returns (plan, used_fallback)."""
        request = TaskRequest(
            category=self.planning_category,
            prompt=self._planning_prompt(goal, context, mode),
            output_contract=PLAN_CONTRACT,
            system=self.PLANNER_SYSTEM_PROMPT.format(
                categories=", ".join(c.value for c in TaskCategory),
                max_tasks=self.config.max_subtasks
            ),
            progress_sink=self._progress_sink("Planner")
        )

        slot, error = await self._acquire(self.planning_category, run)
        if slot is None:
            result = TaskResult.failed(error, "No slot available for planning")
        else:
            try:
                result = await self.loop.execute(request, run.token)
            finally:
                self.admission.release(slot)

        if not result.success:
            self.blackboard.log(
                "Orchestrator",
                f"Decomposition failed ({result.error}), running goal as a single task",
                LogLevel.WARN
            )
            return [self._fallback_task(goal)], True

        tasks = list(result.output.tasks)
        if len(tasks) > self.config.max_subtasks:
            logger.warning(f"Plan has {len(tasks)} tasks, keeping the first {self.config.max_subtasks}")
            tasks = tasks[:self.config.max_subtasks]

        override = _MODE_CATEGORIES.get(mode)
        if override is not None:
            tasks = [
                t.model_copy(update={"category": override}) if t.category == TaskCategory.GENERAL else t
                for t in tasks
            ]

        self.blackboard.log("Orchestrator", f"Decomposed into {len(tasks)} sub-task(s)")
        return tasks, False

    def _planning_prompt(self, goal: str, context: str, mode: OrchestrationMode) -> str:
        parts = [f"## Goal\n{goal}", f"\n## Mode\n{mode.value.upper()}"]
        if context:
            parts.append(f"\n## Context\n{context}")
        parts.append(f"\n{self.blackboard.to_context_string()}")
        return "\n".join(parts)

    def _fallback_task(self, goal: str) -> SubTaskSpec:
        return SubTaskSpec(title=goal[:80] or "goal", category=TaskCategory.PHYSICS, prompt=goal)

    async def _run_subtask(
        self,
        index: int,
        spec: SubTaskSpec,
        goal: str,
        context: str,
        run: _RunState
    ) -> SubTaskOutcome:
        """The per-task unit of work. Never raises for task failures."""
        try:
            slot, error = await self._acquire(spec.category, run)
            if slot is None:
                result = TaskResult.failed(error, f"Sub-task '{spec.title}' could not be admitted")
            else:
                try:
                    result = await self.loop.execute(self._subtask_request(spec, goal, context), run.token)
                finally:
                    self.admission.release(slot)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Sub-task '{spec.title}' crashed: {e}")
            result = TaskResult.failed(ErrorKind.PROVIDER_ERROR, f"Sub-task crashed: {e}")

        outcome = SubTaskOutcome(index=index, spec=spec, result=result)
        await self._record_completion(outcome, run)
        return outcome

    def _subtask_request(self, spec: SubTaskSpec, goal: str, context: str) -> TaskRequest:
        prompt = f"{spec.prompt}\n\n## Overall Goal\n{goal}"
        if context:
            prompt += f"\n\n## Context\n{context}"
        return TaskRequest(
            category=spec.category,
            prompt=prompt,
            output_contract=self.contracts.get(spec.category, SUBTASK_CONTRACT),
            progress_sink=self._progress_sink(spec.title)
        )

    async def _acquire(
        self,
        category: TaskCategory,
        run: _RunState
    ) -> Tuple[Optional[WorkerSlot], Optional[ErrorKind]]:
        """
        Poll for a slot until one frees, the run is cancelled, or `max_wait` elapses.

        Returns:
            (slot, None) on success, (None, CANCELLED | SATURATED) otherwise
        """
        if run.token is not None and run.token.cancelled:
            return None, ErrorKind.CANCELLED

        slot = self.admission.try_acquire(category)
        if slot is not None:
            return slot, None

        clock = asyncio.get_running_loop()
        deadline = clock.time() + self.config.max_wait
        run.pending += 1
        logger.info(f"Queued {category.value} task ({run.pending} pending)")
        try:
            while True:
                if run.token is not None and run.token.cancelled:
                    return None, ErrorKind.CANCELLED
                remaining = deadline - clock.time()
                if remaining <= 0:
                    logger.warning(f"Gave up waiting {self.config.max_wait}s for a {category.value} slot")
                    return None, ErrorKind.SATURATED
                await asyncio.sleep(min(self.config.poll_interval, remaining))
                slot = self.admission.try_acquire(category)
                if slot is not None:
                    return slot, None
        finally:
            run.pending -= 1

    async def _record_completion(self, outcome: SubTaskOutcome, run: _RunState) -> None:
        spec, result = outcome.spec, outcome.result
        if result.success:
            payload = result.output.model_dump(mode="json") if isinstance(result.output, BaseModel) else result.output
            self.blackboard.update(ContextPatch(
                manifested_entities=[EntityRef(name=spec.title, category=spec.category.value, payload=payload)],
                mission_logs=[LogEntry(
                    source=spec.category.value.capitalize(),
                    message=f"Completed '{spec.title}' ({len(result.attempts)} attempt(s))",
                    level=LogLevel.SUCCESS
                )]
            ))
        else:
            self.blackboard.log(
                spec.category.value.capitalize(),
                f"Sub-task '{spec.title}' failed: {result.error}",
                LogLevel.WARN
            )

        run.completed += 1
        self.blackboard.advance_progress(run.completed / run.total)
        await self._publish_event(EventType.SUBTASK_COMPLETED, {
            "index": outcome.index,
            "title": spec.title,
            "success": result.success,
            "error": result.error.kind.value if result.error else None,
            "attempts": result.outcome_counts()
        })

    def _progress_sink(self, source: str):
        def sink(event: ProgressEvent) -> None:
            if event.outcome == AttemptOutcome.SUCCESS:
                return
            logger.debug(f"{source}: {event.provider_id} -> {event.outcome.value} {event.message}")
        return sink

    async def _publish_event(self, event_type: EventType, data: Dict[str, Any]) -> None:
        await self.event_bus.publish_async(Event(type=event_type, data=data))


async def run_swarm(
    goal: str,
    loop: ApexLoop,
    context: str = "",
    mode: OrchestrationMode = OrchestrationMode.AUTO,
    max_workers: int = 8,
    blackboard: Optional[Blackboard] = None,
    verbose: bool = False
) -> AggregateResult:
    """Convenience function to run a goal with a fresh admission pool (async)."""
    orchestrator = Orchestrator(
        loop=loop,
        admission=AdmissionController(max_workers=max_workers),
        blackboard=blackboard,
        verbose=verbose
    )
    return await orchestrator.run(goal=goal, context=context, mode=mode)
