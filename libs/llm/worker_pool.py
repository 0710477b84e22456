from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Deque, Dict, List, Optional, Protocol, Set

from prometheus_client import Counter, Gauge, Histogram

from libs.core import logging as core_logging
from libs.core import tracing as core_tracing
from libs.core.config import Settings, load_settings
from libs.core.errors import LLMErrorCategory, classify_error, is_retryable
from libs.core.models import (
    ModelConfig,
    ModelConfigOverride,
    QueuePosition,
    QueueStatus,
    RetryPolicy,
    Step,
    Task,
    TaskResult,
    TaskState,
    Tier,
    TokenUsage,
    WorkerPoolStatus,
)
from libs.core.state_machine import validate_task_transition

from .provider_registry import ProviderRegistry
from .providers import LLMProvider
from .routing import resolve_model_config

LOGGER = core_logging.get_logger("worker_pool")

WAIT_SAMPLE_WINDOW = 100
DEFAULT_ESTIMATED_WAIT_MS = 30000.0

TASKS_SUBMITTED = Counter("llm_tasks_submitted_total", "Tasks submitted to the worker pool", ["provider"])
TASK_ATTEMPTS = Counter("llm_task_attempts_total", "Provider call attempts", ["provider", "outcome"])
TASK_FAILURES = Counter("llm_task_failures_total", "Tasks resolved as failures", ["provider", "category"])
QUEUE_WAIT_SECONDS = Histogram("llm_queue_wait_seconds", "Time spent queued before dispatch", ["provider"])
ACTIVE_TASKS = Gauge("llm_active_tasks", "Tasks currently executing", ["provider"])


class UsageRecorder(Protocol):
    def record_usage(
        self,
        task_id: str,
        tokens: TokenUsage,
        cost: float | None = None,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> Any: ...


def backoff_delay_s(attempt: int, base_s: float = 1.0, cap_s: float = 8.0) -> float:
    """Delay before the retry that follows ``attempt`` (1-based)."""
    return min(base_s * (2 ** max(attempt - 1, 0)), cap_s)


def max_attempts_for(task: Task) -> int:
    return max(1, task.max_retries)


@dataclass(order=True)
class _QueueEntry:
    sort_key: tuple
    task: Task = field(compare=False)
    config: ModelConfig = field(compare=False)
    future: asyncio.Future = field(compare=False)
    enqueued_at: float = field(compare=False)
    deadline_at: Optional[float] = field(default=None, compare=False)
    state: TaskState = field(default=TaskState.queued, compare=False)
    attempts: int = field(default=0, compare=False)
    first_wait_ms: Optional[int] = field(default=None, compare=False)
    started_at: Optional[float] = field(default=None, compare=False)
    runner: Optional[asyncio.Task] = field(default=None, compare=False)
    timer: Optional[asyncio.TimerHandle] = field(default=None, compare=False)


class _ProviderLane:
    """Priority queue and active count for one provider."""

    def __init__(self, provider: str, max_concurrent: int) -> None:
        self.provider = provider
        self.max_concurrent = max(1, max_concurrent)
        self.heap: List[_QueueEntry] = []
        self.active = 0
        self.wait_samples: Deque[float] = deque(maxlen=WAIT_SAMPLE_WINDOW)
        self.lock = Lock()

    def push(self, entry: _QueueEntry) -> None:
        heapq.heappush(self.heap, entry)

    def pop(self) -> Optional[_QueueEntry]:
        if not self.heap:
            return None
        return heapq.heappop(self.heap)

    def remove(self, entry: _QueueEntry) -> bool:
        for index, queued in enumerate(self.heap):
            if queued is entry:
                self.heap.pop(index)
                heapq.heapify(self.heap)
                return True
        return False

    def position(self, task_id: str) -> Optional[int]:
        for index, queued in enumerate(sorted(self.heap)):
            if queued.task.id == task_id:
                return index
        return None

    def avg_wait_ms(self) -> float:
        if not self.wait_samples:
            return 0.0
        return sum(self.wait_samples) / len(self.wait_samples)


class WorkerPool:
    """Per-provider priority queues with a concurrency ceiling and retry.

    ``submit`` resolves once the task succeeds or fails terminally. Each
    provider lane dispatches while its active count is under the ceiling and
    every completion re-enters the dispatcher. Provider calls are blocking
    and run in worker threads, bounded by the per-attempt HTTP timeout.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        settings: Settings | None = None,
        *,
        usage_recorder: UsageRecorder | None = None,
        retry_policy: RetryPolicy = RetryPolicy.in_place,
        backoff_base_s: float | None = None,
        backoff_cap_s: float | None = None,
        max_concurrency: Dict[str, int] | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or load_settings()
        self.usage_recorder = usage_recorder
        self.retry_policy = retry_policy
        self.backoff_base_s = self.settings.backoff_base_s if backoff_base_s is None else backoff_base_s
        self.backoff_cap_s = self.settings.backoff_cap_s if backoff_cap_s is None else backoff_cap_s
        self._max_concurrency = dict(max_concurrency or {})
        self._lanes: Dict[str, _ProviderLane] = {}
        self._lanes_lock = Lock()
        self._entries: Dict[str, _QueueEntry] = {}
        self._seq = itertools.count()
        self._background: Set[asyncio.Task] = set()

    def _lane(self, provider: str) -> _ProviderLane:
        with self._lanes_lock:
            lane = self._lanes.get(provider)
            if lane is None:
                ceiling = self._max_concurrency.get(provider) or self.settings.max_workers_for(provider)
                lane = _ProviderLane(provider, ceiling)
                self._lanes[provider] = lane
            return lane

    async def submit(
        self,
        task: Task,
        tier: Tier | str = Tier.free,
        *,
        deadline: float | None = None,
    ) -> TaskResult:
        """Queue ``task`` and wait for its final result.

        ``deadline`` is a budget in seconds from now covering queueing,
        attempts and backoff sleeps.
        """
        config = resolve_model_config(task.step, tier, task.config, self.settings)
        provider = self.registry.get(config.provider)
        if provider is None or not provider.is_ready():
            LOGGER.warning("provider_unavailable", task_id=task.id, provider=config.provider)
            TASK_FAILURES.labels(config.provider, LLMErrorCategory.input_validation.value).inc()
            return TaskResult(
                task_id=task.id,
                success=False,
                error=f"Provider {config.provider} not available",
                error_category=LLMErrorCategory.input_validation.value,
                provider_name=config.provider,
                model_name=config.model,
            )

        loop = asyncio.get_running_loop()
        lane = self._lane(provider.name)
        entry = _QueueEntry(
            sort_key=(-task.priority, next(self._seq)),
            task=task,
            config=config,
            future=loop.create_future(),
            enqueued_at=time.monotonic(),
            deadline_at=loop.time() + deadline if deadline is not None else None,
        )
        if entry.deadline_at is not None:
            entry.timer = loop.call_at(entry.deadline_at, self._expire, lane, entry)
        with lane.lock:
            lane.push(entry)
        self._entries[task.id] = entry
        TASKS_SUBMITTED.labels(provider.name).inc()
        core_logging.log_event(
            LOGGER,
            "task_queued",
            {
                "task_id": task.id,
                "correlation_id": task.correlation_id,
                "provider": provider.name,
                "priority": task.priority,
                "step": task.step.value,
            },
        )
        self._dispatch(lane)
        try:
            return await entry.future
        except asyncio.CancelledError:
            self._withdraw(lane, entry)
            raise

    def _dispatch(self, lane: _ProviderLane) -> None:
        loop = asyncio.get_running_loop()
        while True:
            with lane.lock:
                if lane.active >= lane.max_concurrent:
                    return
                entry = lane.pop()
                if entry is None:
                    return
                lane.active += 1
                wait_ms = (time.monotonic() - entry.enqueued_at) * 1000
                lane.wait_samples.append(wait_ms)
            ACTIVE_TASKS.labels(lane.provider).inc()
            QUEUE_WAIT_SECONDS.labels(lane.provider).observe(wait_ms / 1000)
            if entry.first_wait_ms is None:
                entry.first_wait_ms = int(wait_ms)
            if entry.started_at is None:
                entry.started_at = time.monotonic()
            runner = loop.create_task(self._run(lane, entry))
            entry.runner = runner
            runner.add_done_callback(lambda _done, lane=lane: self._on_finished(lane))

    def _on_finished(self, lane: _ProviderLane) -> None:
        with lane.lock:
            lane.active = max(0, lane.active - 1)
        ACTIVE_TASKS.labels(lane.provider).dec()
        self._dispatch(lane)

    def _transition(self, entry: _QueueEntry, new_state: TaskState) -> None:
        if not validate_task_transition(entry.state, new_state):
            LOGGER.warning(
                "invalid_task_transition",
                task_id=entry.task.id,
                current=entry.state.value,
                new=new_state.value,
            )
        entry.state = new_state

    async def _run(self, lane: _ProviderLane, entry: _QueueEntry) -> None:
        task = entry.task
        loop = asyncio.get_running_loop()
        provider = self.registry.get(entry.config.provider)
        if provider is None or not provider.is_ready():
            self._fail(entry, f"Provider {entry.config.provider} not available", LLMErrorCategory.input_validation)
            return
        self._transition(entry, TaskState.running)
        while True:
            entry.attempts += 1
            try:
                response = await self._attempt(provider, entry)
            except Exception as exc:  # noqa: BLE001
                category = classify_error(exc)
                TASK_ATTEMPTS.labels(provider.name, "failure").inc()
                LOGGER.warning(
                    "task_attempt_failed",
                    task_id=task.id,
                    correlation_id=task.correlation_id,
                    provider=provider.name,
                    attempt=entry.attempts,
                    error_category=category.value,
                    error=str(exc),
                )
                if not is_retryable(category) or entry.attempts >= max_attempts_for(task):
                    self._fail(entry, str(exc), category)
                    return
                delay = backoff_delay_s(entry.attempts, self.backoff_base_s, self.backoff_cap_s)
                if entry.deadline_at is not None and loop.time() + delay >= entry.deadline_at:
                    self._fail(entry, f"Task {task.id} deadline exceeded", LLMErrorCategory.timeout)
                    return
                self._transition(entry, TaskState.retrying)
                task.retry_count += 1
                if self.retry_policy == RetryPolicy.requeue:
                    loop.call_later(delay, self._requeue, lane, entry)
                    return
                await asyncio.sleep(delay)
                self._transition(entry, TaskState.running)
                continue
            TASK_ATTEMPTS.labels(provider.name, "success").inc()
            self._succeed(entry, response)
            return

    async def _attempt(self, provider: LLMProvider, entry: _QueueEntry):
        loop = asyncio.get_running_loop()
        timeout_s = entry.config.timeout_s
        remaining = None
        if entry.deadline_at is not None:
            remaining = max(entry.deadline_at - loop.time(), 0.001)
            timeout_s = min(timeout_s, remaining) if timeout_s else remaining
        attributes = {
            "llm.task_id": entry.task.id,
            "llm.provider": provider.name,
            "llm.model": entry.config.model,
            "llm.attempt": entry.attempts,
        }
        with core_tracing.start_span("llm.provider_call", attributes=attributes):
            call = asyncio.to_thread(provider.generate, entry.task.payload, entry.config, timeout_s)
            if remaining is not None:
                return await asyncio.wait_for(call, timeout=remaining)
            return await call

    def _requeue(self, lane: _ProviderLane, entry: _QueueEntry) -> None:
        if entry.future.done():
            return
        self._transition(entry, TaskState.queued)
        entry.sort_key = (-entry.task.priority, next(self._seq))
        entry.enqueued_at = time.monotonic()
        entry.runner = None
        with lane.lock:
            lane.push(entry)
        LOGGER.info("task_requeued", task_id=entry.task.id, provider=lane.provider, attempt=entry.attempts)
        self._dispatch(lane)

    def _succeed(self, entry: _QueueEntry, response) -> None:
        task = entry.task
        self._transition(entry, TaskState.succeeded)
        result = TaskResult(
            task_id=task.id,
            success=True,
            raw_content=response.content,
            usage=response.usage,
            duration_ms=self._duration_ms(entry),
            provider_name=entry.config.provider,
            model_name=entry.config.model,
            attempts=entry.attempts,
            wait_ms=entry.first_wait_ms,
        )
        if response.usage is not None:
            self._record_usage(entry, response.usage)
        core_logging.log_event(
            LOGGER,
            "task_succeeded",
            {
                "task_id": task.id,
                "correlation_id": task.correlation_id,
                "provider": entry.config.provider,
                "attempts": entry.attempts,
                "duration_ms": result.duration_ms,
            },
        )
        self._resolve(entry, result)

    def _fail(self, entry: _QueueEntry, error: str, category: LLMErrorCategory) -> None:
        task = entry.task
        self._transition(entry, TaskState.failed)
        TASK_FAILURES.labels(entry.config.provider, category.value).inc()
        LOGGER.warning(
            "task_failed",
            task_id=task.id,
            correlation_id=task.correlation_id,
            provider=entry.config.provider,
            attempts=entry.attempts,
            error_category=category.value,
            error=error,
        )
        self._resolve(
            entry,
            TaskResult(
                task_id=task.id,
                success=False,
                error=error,
                error_category=category.value,
                duration_ms=self._duration_ms(entry),
                provider_name=entry.config.provider,
                model_name=entry.config.model,
                attempts=entry.attempts,
                wait_ms=entry.first_wait_ms,
            ),
        )

    def _resolve(self, entry: _QueueEntry, result: TaskResult) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        if self._entries.get(entry.task.id) is entry:
            del self._entries[entry.task.id]
        if not entry.future.done():
            entry.future.set_result(result)

    @staticmethod
    def _duration_ms(entry: _QueueEntry) -> int:
        started = entry.started_at if entry.started_at is not None else entry.enqueued_at
        return int((time.monotonic() - started) * 1000)

    def _expire(self, lane: _ProviderLane, entry: _QueueEntry) -> None:
        with lane.lock:
            removed = lane.remove(entry)
        if removed:
            self._fail(entry, f"Task {entry.task.id} deadline exceeded while queued", LLMErrorCategory.timeout)

    def _withdraw(self, lane: _ProviderLane, entry: _QueueEntry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        with lane.lock:
            removed = lane.remove(entry)
        if not removed and entry.runner is not None and not entry.runner.done():
            entry.runner.cancel()
        if self._entries.get(entry.task.id) is entry:
            del self._entries[entry.task.id]
        LOGGER.info(
            "task_cancelled",
            task_id=entry.task.id,
            correlation_id=entry.task.correlation_id,
            provider=lane.provider,
            was_queued=removed,
        )

    def _record_usage(self, entry: _QueueEntry, usage: TokenUsage) -> None:
        if self.usage_recorder is None:
            return
        background = asyncio.get_running_loop().create_task(self._record_usage_async(entry, usage))
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    async def _record_usage_async(self, entry: _QueueEntry, usage: TokenUsage) -> None:
        try:
            outcome = await asyncio.to_thread(
                self.usage_recorder.record_usage,
                entry.task.id,
                usage,
                usage.cost,
                provider=entry.config.provider,
                model=entry.config.model,
            )
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:  # noqa: BLE001
            LOGGER.exception("usage_record_failed", task_id=entry.task.id, provider=entry.config.provider)

    def get_status(self) -> WorkerPoolStatus:
        queues: List[QueueStatus] = []
        with self._lanes_lock:
            lanes = list(self._lanes.values())
        for lane in lanes:
            with lane.lock:
                queues.append(
                    QueueStatus(
                        provider=lane.provider,
                        pending=len(lane.heap),
                        active=lane.active,
                        max_concurrent=lane.max_concurrent,
                        avg_wait_ms=lane.avg_wait_ms(),
                    )
                )
        return WorkerPoolStatus(
            queues=queues,
            total_active=sum(q.active for q in queues),
            total_pending=sum(q.pending for q in queues),
        )

    def get_queue_position(self, task_id: str) -> Optional[QueuePosition]:
        entry = self._entries.get(task_id)
        if entry is None:
            return None
        lane = self._lane(entry.config.provider)
        with lane.lock:
            index = lane.position(task_id)
            avg_wait = lane.avg_wait_ms() if lane.wait_samples else DEFAULT_ESTIMATED_WAIT_MS
        if index is None:
            return None
        return QueuePosition(position=index + 1, provider=lane.provider, estimated_wait_ms=index * avg_wait)

    def clear(self) -> None:
        with self._lanes_lock:
            lanes = list(self._lanes.values())
        for lane in lanes:
            with lane.lock:
                pending = list(lane.heap)
                lane.heap.clear()
                lane.wait_samples.clear()
            for entry in pending:
                if entry.timer is not None:
                    entry.timer.cancel()
                if not entry.future.done():
                    entry.future.cancel()
        self._entries.clear()

    async def drain_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


async def execute_llm_task(
    pool: WorkerPool,
    owner_id: str,
    correlation_id: str,
    step: Step | str,
    prompt: str,
    *,
    tier: Tier | str = Tier.free,
    priority: int = 1,
    config: ModelConfigOverride | None = None,
    max_retries: int | None = None,
    deadline: float | None = None,
) -> TaskResult:
    resolved_step = Step(step)
    task = Task(
        id=f"{resolved_step.value}-{uuid.uuid4()}",
        owner_id=owner_id,
        correlation_id=correlation_id,
        step=resolved_step,
        payload=prompt,
        priority=priority,
        max_retries=pool.settings.default_max_retries if max_retries is None else max_retries,
        config=config,
    )
    return await pool.submit(task, tier, deadline=deadline)
