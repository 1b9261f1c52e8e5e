"""
Apex Loop

The resilient task executor. Runs a TaskRequest down its provider ladder
with per-attempt timeouts, schema validation, backoff and failover, and
returns a typed TaskResult. It never raises for task failures and never
touches the Blackboard.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Mapping, Optional

from .cancellation import CancellationToken
from .errors import ProviderTimeoutError
from .ladder import DEFAULT_LADDER, ProviderDescriptor, ProviderGate, ProviderLadder
from .providers import ProviderAdapter, RawResponse
from .quota import QuotaOracle
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy, is_throttling_error, is_transient_error
from .schema import ValidatedOutput, validate
from .tasks import (
    AttemptOutcome, AttemptRecord, ErrorKind, ProgressEvent, TaskRequest, TaskResult,
    count_outcomes,
)

logger = logging.getLogger("apexcore.apex")


class LoopState(str, Enum):
    """Execution phases. SUCCESS and EXHAUSTED are terminal."""
    PENDING = "pending"
    ATTEMPTING = "attempting"
    VALIDATING = "validating"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


_TRANSITIONS = {
    LoopState.PENDING: {LoopState.ATTEMPTING, LoopState.EXHAUSTED},
    LoopState.ATTEMPTING: {LoopState.VALIDATING, LoopState.ATTEMPTING, LoopState.EXHAUSTED},
    LoopState.VALIDATING: {LoopState.SUCCESS, LoopState.ATTEMPTING, LoopState.EXHAUSTED},
    LoopState.SUCCESS: set(),
    LoopState.EXHAUSTED: set(),
}

# Consecutive schema failures from one provider before moving on
MAX_SCHEMA_FAILURES_PER_PROVIDER = 2


@dataclass
class _Execution:
    """Per-call bookkeeping. Discarded when execute() returns."""
    request: TaskRequest
    state: LoopState = LoopState.PENDING
    attempts: List[AttemptRecord] = field(default_factory=list)
    deadline: Optional[float] = None

    def transition(self, new_state: LoopState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal loop transition {self.state.value} -> {new_state.value}")
        self.state = new_state


class ApexLoop:
    """
    Resilient executor over a provider ladder.

    For each provider in ladder order, up to its `max_attempts`:
    1. Invoke the adapter, bounded by the provider's `per_attempt_timeout`
    2. On timeout/transport error: record it, back off, try again
       (throttled providers are skipped immediately)
    3. On a response: validate it against the request's output contract
       (two consecutive schema failures skip to the next provider)
    4. On the first valid response: return immediately

    Example:
        loop = ApexLoop(adapter=LiteLLMProvider())
        result = await loop.execute(TaskRequest(
            category=TaskCategory.MATH,
            prompt="Integrate x^2 from 0 to 3",
            output_contract=OutputContract(Answer),
        ))
        if result.success:
            print(result.output)
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        ladder: Optional[ProviderLadder] = None,
        retry_policy: Optional[RetryPolicy] = None,
        task_deadline: Optional[float] = None,
        gate: Optional[ProviderGate] = None,
        quota: Optional[QuotaOracle] = None,
        verbose: bool = False
    ):
        """
        Initialize the loop.

        Args:
            adapter: Transport used for every provider call
            ladder: Provider ladder (default: DEFAULT_LADDER)
            retry_policy: Backoff between same-provider retries
            task_deadline: Optional wall-clock budget in seconds for one execute() call
            gate: Optional provider availability check (e.g. quota)
            quota: Optional QuotaOracle; used as the gate when none is given,
                and fed with usage and rate-limit telemetry
            verbose: If True, enable DEBUG level logging
        """
        self.adapter = adapter
        self.ladder = ladder if ladder is not None else DEFAULT_LADDER
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICY
        self.task_deadline = task_deadline
        self.quota = quota
        self.gate = gate if gate is not None else (quota.is_safe if quota is not None else None)

        if verbose and not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('[%(name)s] %(message)s'))
            logger.addHandler(handler)
            logger.setLevel(logging.DEBUG)

    async def execute(
        self,
        request: TaskRequest,
        cancel_token: Optional[CancellationToken] = None
    ) -> TaskResult:
        """
        Run a request through its provider ladder.

        Returns:
            A TaskResult. Failures are encoded in `result.error`; nothing is raised
            except asyncio cancellation of the calling task.
        """
        run = _Execution(request=request)
        try:
            return await self._run(run, cancel_token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error executing {request.category.value} task: {e}")
            return TaskResult.failed(ErrorKind.EXHAUSTED, f"Internal error: {e}", tuple(run.attempts))

    async def _run(self, run: _Execution, cancel_token: Optional[CancellationToken]) -> TaskResult:
        request = run.request
        ladder = self.ladder.resolve(request.category, request.preferred_provider, self.gate)

        if not ladder:
            logger.error(f"No providers configured for category '{request.category.value}'")
            run.transition(LoopState.EXHAUSTED)
            return TaskResult.failed(
                ErrorKind.NO_PROVIDER_CONFIGURED,
                f"No providers configured for '{request.category.value}'"
            )

        if self.task_deadline is not None:
            run.deadline = time.monotonic() + self.task_deadline

        for descriptor in ladder:
            schema_failures = 0

            for attempt in range(descriptor.max_attempts):
                if attempt > 0:
                    await asyncio.sleep(self._backoff(run, attempt - 1))

                if cancel_token is not None and cancel_token.cancelled:
                    logger.info(f"Cancelled before attempt on {descriptor.id}")
                    run.transition(LoopState.EXHAUSTED)
                    return TaskResult.failed(ErrorKind.CANCELLED, cancel_token.reason or "", tuple(run.attempts))

                if self._deadline_passed(run):
                    logger.warning(f"Task deadline of {self.task_deadline}s reached after {len(run.attempts)} attempt(s)")
                    run.transition(LoopState.EXHAUSTED)
                    return TaskResult.failed(
                        ErrorKind.EXHAUSTED,
                        f"Task deadline of {self.task_deadline}s exceeded",
                        tuple(run.attempts)
                    )

                run.transition(LoopState.ATTEMPTING)
                result, advance = await self._attempt(run, descriptor, attempt, schema_failures)
                if result is not None:
                    return result

                last = run.attempts[-1].outcome
                schema_failures = schema_failures + 1 if last == AttemptOutcome.SCHEMA_INVALID else 0
                if advance:
                    break

        run.transition(LoopState.EXHAUSTED)
        counts = count_outcomes(run.attempts)
        logger.warning(f"All providers exhausted for {request.category.value} task: {counts}")
        return TaskResult.failed(
            ErrorKind.EXHAUSTED,
            f"All {len(ladder)} provider(s) exhausted after {len(run.attempts)} attempt(s)",
            tuple(run.attempts)
        )

    async def _attempt(
        self,
        run: _Execution,
        descriptor: ProviderDescriptor,
        attempt: int,
        schema_failures: int
    ):
        """
        Make one provider call.

        Returns:
            (result, advance): a TaskResult on success (else None), and whether
            the loop should skip the rest of this provider's attempts
        """
        request = run.request
        timeout = descriptor.per_attempt_timeout
        if run.deadline is not None:
            timeout = max(min(timeout, run.deadline - time.monotonic()), 0.001)

        logger.info(f"Attempt {attempt + 1}/{descriptor.max_attempts} using {descriptor.id}")
        started_at = datetime.now()
        started = time.perf_counter()

        try:
            response = await asyncio.wait_for(
                self.adapter.invoke(descriptor.id, request.prompt, timeout, system=request.system),
                timeout=timeout
            )
        except (asyncio.TimeoutError, ProviderTimeoutError):
            self._record(run, descriptor, started_at, started, AttemptOutcome.TIMEOUT, f"Timed out after {timeout:.2f}s")
            return None, False
        except Exception as e:
            logger.error(f"Provider error ({descriptor.id}): {e}")
            self._record(run, descriptor, started_at, started, AttemptOutcome.PROVIDER_ERROR, str(e)[:200])
            if is_throttling_error(e):
                logger.warning(f"Provider {descriptor.id} throttled, pivoting to next provider")
                return None, True
            if not is_transient_error(e):
                logger.warning(f"Non-transport error from {descriptor.id} ({type(e).__name__}), advancing")
                return None, True
            return None, False

        self._observe_quota(descriptor, response)
        run.transition(LoopState.VALIDATING)
        outcome = validate(response.payload, request.output_contract)

        if not isinstance(outcome, ValidatedOutput):
            logger.warning(f"Schema validation failed for {descriptor.id}: {outcome.reason}")
            self._record(run, descriptor, started_at, started, AttemptOutcome.SCHEMA_INVALID, outcome.reason[:200])
            run.transition(LoopState.ATTEMPTING)
            return None, schema_failures + 1 >= MAX_SCHEMA_FAILURES_PER_PROVIDER

        self._record(run, descriptor, started_at, started, AttemptOutcome.SUCCESS)
        if self.quota is not None:
            self.quota.record_success(descriptor.id)
        run.transition(LoopState.SUCCESS)
        logger.info(f"Link established via {descriptor.id} ({response.latency_ms:.0f}ms)")
        return TaskResult.ok(outcome.value, tuple(run.attempts), thinking=outcome.thinking), False

    def _observe_quota(self, descriptor: ProviderDescriptor, response: RawResponse) -> None:
        if self.quota is None:
            return
        headers = response.metadata.get("ratelimit")
        if isinstance(headers, Mapping) and headers:
            self.quota.record_headers(descriptor.id, headers)

    def _record(
        self,
        run: _Execution,
        descriptor: ProviderDescriptor,
        started_at: datetime,
        started: float,
        outcome: AttemptOutcome,
        detail: str = ""
    ) -> None:
        record = AttemptRecord(
            provider_id=descriptor.id,
            started_at=started_at,
            duration_ms=(time.perf_counter() - started) * 1000,
            outcome=outcome,
            detail=detail
        )
        run.attempts.append(record)
        self._emit(run.request, ProgressEvent(
            provider_id=descriptor.id,
            attempt=len(run.attempts),
            outcome=outcome,
            message=detail
        ))

    def _emit(self, request: TaskRequest, event: ProgressEvent) -> None:
        if request.progress_sink is None:
            return
        try:
            request.progress_sink(event)
        except Exception as e:
            logger.warning(f"Progress sink raised: {e}")

    def _backoff(self, run: _Execution, retry: int) -> float:
        delay = self.retry_policy.delay_for(retry)
        if run.deadline is not None:
            delay = max(min(delay, run.deadline - time.monotonic()), 0.0)
        return delay

    def _deadline_passed(self, run: _Execution) -> bool:
        return run.deadline is not None and time.monotonic() >= run.deadline
