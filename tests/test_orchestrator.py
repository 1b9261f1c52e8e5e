"""Tests for the Orchestrator."""

import asyncio

import pytest

from apexcore import (
    AdmissionController, ApexConfig, ApexLoop, Blackboard, CancellationToken,
    ErrorKind, EventBus, EventType, LogLevel, Orchestrator, OrchestrationMode,
    ProviderDescriptor, ProviderLadder, RawResponse, RetryPolicy, TaskCategory,
    TransportError, run_swarm
)


LADDER = ProviderLadder({
    category: [ProviderDescriptor(id="w1"), ProviderDescriptor(id="w2")]
    for category in TaskCategory
})


def task(title, category="physics", prompt=None):
    return {"title": title, "category": category, "prompt": prompt or f"do {title}"}


class SwarmProvider:
    """
    A mock adapter for a whole swarm.

    Planning calls (the only ones with a system prompt) return `plan`, or
    fail when it is None. Sub-task calls fail when their prompt contains a
    marker in `failing`, sleep for any matching entry in `delays`, and
    otherwise return a summary.
    """

    def __init__(self, plan=None, failing=(), delays=None, on_call=None):
        self.plan = plan
        self.failing = failing
        self.delays = delays or {}
        self.on_call = on_call
        self.prompts = []
        self.running = 0
        self.peak = 0

    async def invoke(self, provider_id, prompt, timeout, system=None):
        if system is not None:
            if self.plan is None:
                raise TransportError("planner offline")
            return RawResponse(data={"tasks": self.plan})

        self.prompts.append(prompt)
        if self.on_call is not None:
            self.on_call(prompt)
        if any(marker in prompt for marker in self.failing):
            raise TransportError("backend error")

        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            delay = next((d for marker, d in self.delays.items() if marker in prompt), 0)
            await asyncio.sleep(delay)
        finally:
            self.running -= 1
        first_line = prompt.splitlines()[0]
        return RawResponse(data={"summary": first_line, "entities": [first_line]})


def make_orchestrator(adapter, max_workers=8, bus=None, guard=False, **config):
    bus = bus or EventBus()
    config.setdefault("poll_interval", 0.01)
    return Orchestrator(
        loop=ApexLoop(adapter=adapter, ladder=LADDER, retry_policy=RetryPolicy(base_delay=0)),
        admission=AdmissionController(max_workers=max_workers, event_bus=bus),
        blackboard=Blackboard(),
        config=ApexConfig(max_workers=max_workers, **config),
        event_bus=bus,
        guard=guard
    )


class TestRun:
    """Tests for end-to-end runs."""

    @pytest.mark.asyncio
    async def test_partial_failure_is_isolated(self):
        """Test five sub-tasks where the third exhausts every provider."""
        plan = [task(f"step-{i}") for i in range(1, 6)]
        adapter = SwarmProvider(plan=plan, failing=("do step-3",))
        orch = make_orchestrator(adapter)

        result = await orch.run("Build a marble run")

        assert result.success
        assert result.succeeded == 4
        assert result.failed == 1
        assert len(result.outcomes) == 5
        assert len(result.outputs) == 4

        failed = [o for o in result.outcomes if not o.success]
        assert failed[0].index == 2
        assert failed[0].result.error.kind == ErrorKind.EXHAUSTED

        ctx = orch.blackboard.get_context()
        assert ctx.streaming_progress == 1.0
        assert sorted(ctx.entity_names()) == ["step-1", "step-2", "step-4", "step-5"]
        warnings = [e for e in ctx.mission_logs if e.level == LogLevel.WARN]
        assert any("step-3" in e.message for e in warnings)
        assert orch.admission.active_count() == 0

    @pytest.mark.asyncio
    async def test_all_subtasks_fail(self):
        """Test a run with no successful sub-task reports failure."""
        adapter = SwarmProvider(plan=[task("a"), task("b")], failing=("do ",))
        orch = make_orchestrator(adapter)

        result = await orch.run("Impossible goal")

        assert not result.success
        assert result.outputs == ()
        assert result.failed == 2
        assert orch.blackboard.get_context().streaming_progress == 1.0

    @pytest.mark.asyncio
    async def test_decomposition_fallback(self):
        """Test a failed plan degrades to one PHYSICS task for the whole goal."""
        adapter = SwarmProvider(plan=None)
        orch = make_orchestrator(adapter)

        result = await orch.run("Drop a feather on the Moon")

        assert result.decomposition_fallback
        assert len(result.outcomes) == 1
        outcome = result.outcomes[0]
        assert outcome.spec.category == TaskCategory.PHYSICS
        assert outcome.spec.prompt == "Drop a feather on the Moon"
        assert outcome.success
        assert "Decomposition failed" in orch.blackboard.get_context().get_last_log(LogLevel.WARN).message

    @pytest.mark.asyncio
    async def test_plan_is_truncated(self):
        """Test plans longer than max_subtasks are cut."""
        adapter = SwarmProvider(plan=[task(f"t{i}") for i in range(6)])
        orch = make_orchestrator(adapter, max_subtasks=2)

        result = await orch.run("Many things")

        assert [o.spec.title for o in result.outcomes] == ["t0", "t1"]

    @pytest.mark.asyncio
    async def test_categories_coerced_and_mode_override(self):
        """Test plan categories are normalized and GENERAL follows the mode."""
        plan = [task("a", "Physics"), task("b", "general"), task("c", "telepathy")]
        adapter = SwarmProvider(plan=plan)
        orch = make_orchestrator(adapter)

        result = await orch.run("Derive orbital period", mode=OrchestrationMode.SCIENTIFIC)

        assert [o.spec.category for o in result.outcomes] == [
            TaskCategory.PHYSICS, TaskCategory.MATH, TaskCategory.MATH
        ]

    @pytest.mark.asyncio
    async def test_auto_mode_keeps_general(self):
        """Test AUTO mode leaves GENERAL sub-tasks alone."""
        adapter = SwarmProvider(plan=[task("a", "general")])
        orch = make_orchestrator(adapter)

        result = await orch.run("Anything")

        assert result.outcomes[0].spec.category == TaskCategory.GENERAL

    @pytest.mark.asyncio
    async def test_context_reaches_subtasks(self):
        """Test the goal and caller context are included in sub-task prompts."""
        adapter = SwarmProvider(plan=[task("a")])
        orch = make_orchestrator(adapter)

        await orch.run("Simulate rain", context="Use metric units")

        assert "Simulate rain" in adapter.prompts[0]
        assert "Use metric units" in adapter.prompts[0]

    @pytest.mark.asyncio
    async def test_to_dict(self):
        """Test the aggregate serializes outputs and attempt counts."""
        adapter = SwarmProvider(plan=[task("a"), task("b")], failing=("do b",))
        orch = make_orchestrator(adapter)

        data = (await orch.run("Goal")).to_dict()

        assert data["succeeded"] == 1
        assert data["failed"] == 1
        assert data["outcomes"][0]["output"]["summary"] == "do a"
        assert data["outcomes"][1]["error"].startswith("exhausted")
        assert data["outcomes"][1]["attempts"] == {"provider_error": 2}


class TestStreaming:
    """Tests for incremental Blackboard updates."""

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self):
        """Test streaming progress never decreases during a run."""
        adapter = SwarmProvider(
            plan=[task(f"t{i}") for i in range(4)],
            delays={"do t0": 0.03, "do t2": 0.01}
        )
        orch = make_orchestrator(adapter)
        seen = []
        orch.blackboard.subscribe(lambda ctx: seen.append(ctx.streaming_progress))

        await orch.run("Goal")

        assert seen == sorted(seen)
        assert seen[-1] == 1.0
        assert 0.25 in seen and 0.5 in seen and 0.75 in seen

    @pytest.mark.asyncio
    async def test_entities_follow_completion_order(self):
        """Test the Blackboard reflects completion order, not plan order."""
        adapter = SwarmProvider(plan=[task("slow"), task("fast")], delays={"do slow": 0.05})
        orch = make_orchestrator(adapter)

        result = await orch.run("Goal")

        assert [o.spec.title for o in result.outcomes] == ["slow", "fast"]
        assert orch.blackboard.get_context().entity_names() == ["fast", "slow"]

    @pytest.mark.asyncio
    async def test_events_published(self):
        """Test run lifecycle events are published in order."""
        bus = EventBus()
        seen = []
        for event_type in (
            EventType.ORCHESTRATOR_STARTED, EventType.PLAN_CREATED,
            EventType.SUBTASK_COMPLETED, EventType.ORCHESTRATOR_COMPLETED
        ):
            bus.subscribe(event_type, lambda e: seen.append(e.type))

        adapter = SwarmProvider(plan=[task("a"), task("b")])
        await make_orchestrator(adapter, bus=bus).run("Goal")

        assert seen == [
            EventType.ORCHESTRATOR_STARTED,
            EventType.PLAN_CREATED,
            EventType.SUBTASK_COMPLETED,
            EventType.SUBTASK_COMPLETED,
            EventType.ORCHESTRATOR_COMPLETED,
        ]


class TestAdmission:
    """Tests for slot handling inside a run."""

    @pytest.mark.asyncio
    async def test_nine_tasks_eight_workers(self):
        """Test at most eight sub-tasks are in flight and the ninth still runs."""
        adapter = SwarmProvider(plan=[task(f"t{i}") for i in range(9)], delays={"do t": 0.05})
        orch = make_orchestrator(adapter, max_workers=8)

        result = await orch.run("Goal")

        assert adapter.peak == 8
        assert result.succeeded == 9
        assert orch.admission.active_count() == 0

    @pytest.mark.asyncio
    async def test_saturated_after_max_wait(self):
        """Test a sub-task that never gets a slot fails with SATURATED."""
        adapter = SwarmProvider(plan=[task("a")])
        orch = make_orchestrator(adapter, max_workers=1, max_wait=0.05)
        held = orch.admission.try_acquire()

        result = await orch.run("Goal")

        assert not result.success
        assert result.decomposition_fallback
        assert result.outcomes[0].result.error.kind == ErrorKind.SATURATED
        assert adapter.prompts == []
        orch.admission.release(held)
        assert orch.admission.active_count() == 0

    @pytest.mark.asyncio
    async def test_slot_released_when_loop_crashes(self):
        """Test an unexpected loop exception is isolated and the slot freed."""
        adapter = SwarmProvider(plan=[task("a"), task("b")])
        orch = make_orchestrator(adapter)
        real_execute = orch.loop.execute

        async def flaky_execute(request, cancel_token=None):
            if "do a" in request.prompt:
                raise RuntimeError("loop bug")
            return await real_execute(request, cancel_token)

        orch.loop.execute = flaky_execute

        result = await orch.run("Goal")

        assert result.succeeded == 1
        assert result.outcomes[0].result.error.kind == ErrorKind.PROVIDER_ERROR
        assert orch.admission.active_count() == 0


class TestCancellation:
    """Tests for run-level cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_stops_queued_subtasks(self):
        """Test queued sub-tasks are cancelled while the in-flight one completes."""
        token = CancellationToken()
        adapter = SwarmProvider(
            plan=[task("a"), task("b"), task("c")],
            delays={"do ": 0.05},
            on_call=lambda prompt: token.cancel("user stop")
        )
        orch = make_orchestrator(adapter, max_workers=1)

        result = await orch.run("Goal", cancel_token=token)

        assert result.succeeded == 1
        cancelled = [o for o in result.outcomes if not o.success]
        assert len(cancelled) == 2
        assert all(o.result.error.kind == ErrorKind.CANCELLED for o in cancelled)
        assert len(adapter.prompts) == 1
        assert orch.admission.active_count() == 0
        assert orch.blackboard.get_context().streaming_progress == 1.0

    @pytest.mark.asyncio
    async def test_cancelled_before_run(self):
        """Test a pre-cancelled run makes no provider calls."""
        token = CancellationToken()
        token.cancel()
        adapter = SwarmProvider(plan=[task("a")])
        orch = make_orchestrator(adapter)

        result = await orch.run("Goal", cancel_token=token)

        assert not result.success
        assert result.outcomes[0].result.error.kind == ErrorKind.CANCELLED
        assert adapter.prompts == []


class GuardedSwarm(SwarmProvider):
    """A SwarmProvider that also answers the critic with a fixed verdict (None: critic offline)."""

    def __init__(self, verdict, **kwargs):
        super().__init__(**kwargs)
        self.verdict = verdict
        self.critiques = []

    async def invoke(self, provider_id, prompt, timeout, system=None):
        if system is not None and system.startswith("Decide whether"):
            self.critiques.append(prompt)
            if self.verdict is None:
                raise TransportError("critic offline")
            return RawResponse(data=self.verdict)
        return await super().invoke(provider_id, prompt, timeout, system=system)


class TestGuard:
    """Tests for the critic guard that runs before decomposition."""

    @pytest.mark.asyncio
    async def test_trap_blocks_the_run(self):
        """Test a TRAP verdict stops the run before planning and fan-out."""
        adapter = GuardedSwarm(
            {"status": "TRAP", "message": "Perpetual motion violates energy conservation"},
            plan=[task("a")]
        )
        orch = make_orchestrator(adapter, guard=True)

        result = await orch.run("Build a perpetual motion machine")

        assert not result.success
        assert result.blocked
        assert result.message == "Perpetual motion violates energy conservation"
        assert result.outcomes == ()
        assert adapter.prompts == []
        assert "USER INPUT: Build a perpetual motion machine" in adapter.critiques[0]

        ctx = orch.blackboard.get_context()
        assert ctx.streaming_progress == 1.0
        assert [e.source for e in ctx.mission_logs if e.level == LogLevel.TRAP] == ["Critic"]
        assert orch.admission.active_count() == 0
        assert result.to_dict()["blocked"] is True

    @pytest.mark.asyncio
    async def test_pass_proceeds(self):
        """Test a PASS verdict lets the swarm run normally."""
        adapter = GuardedSwarm({"status": "PASS"}, plan=[task("a"), task("b")])
        orch = make_orchestrator(adapter, guard=True)

        result = await orch.run("Drop a ball")

        assert result.success
        assert not result.blocked
        assert result.succeeded == 2
        assert len(adapter.critiques) == 1

    @pytest.mark.asyncio
    async def test_unreachable_critic_does_not_block(self):
        """Test a failed critic call is logged and the run continues."""
        adapter = GuardedSwarm(None, plan=[task("a")])
        orch = make_orchestrator(adapter, guard=True)

        result = await orch.run("Drop a ball")

        assert result.success
        warnings = [e for e in orch.blackboard.get_context().mission_logs if e.level == LogLevel.WARN]
        assert any(e.source == "Critic" for e in warnings)

    @pytest.mark.asyncio
    async def test_guard_off_by_default(self):
        adapter = GuardedSwarm({"status": "TRAP"}, plan=[task("a")])
        orch = make_orchestrator(adapter)

        result = await orch.run("Drop a ball")

        assert result.success
        assert adapter.critiques == []


class TestRunSwarm:
    """Tests for the convenience entry point."""

    @pytest.mark.asyncio
    async def test_run_swarm(self):
        """Test run_swarm wires a fresh pool and the given Blackboard."""
        board = Blackboard()
        loop = ApexLoop(
            adapter=SwarmProvider(plan=[task("a")]),
            ladder=LADDER,
            retry_policy=RetryPolicy(base_delay=0)
        )

        result = await run_swarm("Goal", loop, max_workers=2, blackboard=board)

        assert result.success
        assert board.get_context().entity_names() == ["a"]
