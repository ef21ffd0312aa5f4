"""
Event dispatch: leases, per-execution ordering and infrastructure retries
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Optional
from uuid import uuid4

from ..config import EngineSettings
from ..exceptions import (
    ExecutionNotFoundError, InfrastructureError, LeaseUnavailableError, RetryExhaustedError,
)
from ..models.execution import ExecutionEvent, ExecutionStatus
from ..monitoring import MetricsRecorder
from ..storage.repository import ExecutionRepository
from .error_handler import RetryPolicy, calculate_retry_delay
from .interpreter import DispatchResult, FlowInterpreter
from .scheduler import TimerScheduler


logger = logging.getLogger(__name__)


class KeyedLock:
    """One asyncio lock per key, dropped when nobody holds or waits on it"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class EventDispatcher:
    """
    Delivers events to the interpreter, one at a time per execution

    Events for the same execution queue on an in-process FIFO lock; across
    processes the repository lease keeps a single writer. When the lease is
    held elsewhere the event is requeued on the timer scheduler.
    """

    def __init__(
        self,
        interpreter: FlowInterpreter,
        executions: ExecutionRepository,
        scheduler: TimerScheduler,
        settings: Optional[EngineSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[MetricsRecorder] = None,
        worker_id: Optional[str] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.interpreter = interpreter
        self.executions = executions
        self.scheduler = scheduler
        self.settings = settings or EngineSettings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.metrics = metrics or interpreter.metrics
        self.worker_id = worker_id or f"worker-{uuid4().hex[:8]}"
        self._sleep = sleep
        self._ordering = KeyedLock()
        scheduler.set_handler(self.dispatch)

    async def dispatch(self, execution_id: str, event: ExecutionEvent) -> Optional[DispatchResult]:
        """
        Dispatch one event

        Returns:
            The interpreter's result, or None when the event was requeued
            because another worker holds the execution.

        Raises:
            RetryExhaustedError: infrastructure kept failing; the event is
                queued again for delivery after ``retry_max_delay`` seconds
        """
        async with self._ordering.hold(execution_id):
            ttl = self.settings.lease_ttl_seconds
            if not await self.executions.acquire_lease(execution_id, self.worker_id, ttl):
                if await self.executions.get(execution_id) is None:
                    raise ExecutionNotFoundError(execution_id)
                await self._requeue(execution_id, event)
                return None
            try:
                result = await self._handle_with_retry(execution_id, event)
            except LeaseUnavailableError:
                await self._requeue(execution_id, event)
                return None
            except RetryExhaustedError:
                await self._redeliver_later(execution_id, event)
                raise
            finally:
                await self.executions.release_lease(execution_id, self.worker_id)

        await self._schedule_resume(result)
        return result

    async def cancel(self, execution_id: str, reason: str):
        """Stop a non-terminal execution while holding its lease"""
        async with self._ordering.hold(execution_id):
            ttl = self.settings.lease_ttl_seconds
            if not await self.executions.acquire_lease(execution_id, self.worker_id, ttl):
                raise LeaseUnavailableError(execution_id)
            try:
                execution = await self.executions.get(execution_id)
                if execution is None:
                    raise ExecutionNotFoundError(execution_id)
                return await self.interpreter.cancel(execution, reason)
            finally:
                await self.executions.release_lease(execution_id, self.worker_id)

    async def _handle_with_retry(self, execution_id: str, event: ExecutionEvent) -> DispatchResult:
        retry_count = 0
        while True:
            try:
                return await self.interpreter.handle(execution_id, event)
            except InfrastructureError as e:
                self.metrics.inc("dispatch_failures", {"error": type(e).__name__})
                if not self.retry_policy.can_retry(retry_count):
                    logger.error(
                        f"Giving up on {event.type.value} for execution {execution_id} "
                        f"after {retry_count} retries: {e}"
                    )
                    raise RetryExhaustedError(execution_id, retry_count, e) from e

                delay = calculate_retry_delay(retry_count, self.retry_policy)
                retry_count += 1
                logger.warning(
                    f"Retrying {event.type.value} for execution {execution_id} after "
                    f"{delay:.2f}s (attempt {retry_count}): {e}"
                )
                await self._sleep(delay)
                # the lease may have expired while sleeping
                ttl = self.settings.lease_ttl_seconds
                if not await self.executions.acquire_lease(execution_id, self.worker_id, ttl):
                    raise LeaseUnavailableError(execution_id)

    async def _requeue(self, execution_id: str, event: ExecutionEvent):
        self.metrics.inc("dispatch_requeued")
        logger.info(f"Execution {execution_id} is leased elsewhere, requeueing {event.id}")
        await self.scheduler.schedule_in(self.settings.requeue_delay_seconds, execution_id, event)

    async def _redeliver_later(self, execution_id: str, event: ExecutionEvent):
        # the execution keeps its stored state; the same event picks it up again
        self.metrics.inc("dispatch_redelivered")
        delay = self.settings.retry_max_delay
        logger.warning(f"Redelivering {event.id} to execution {execution_id} in {delay:.0f}s")
        await self.scheduler.schedule_in(delay, execution_id, event)

    async def _schedule_resume(self, result: DispatchResult):
        execution = result.execution
        if not result.applied or execution.status != ExecutionStatus.WAITING:
            return
        if execution.wait_until is None:
            return
        timer = ExecutionEvent.timer_elapsed(execution.id, execution.step_sequence)
        await self.scheduler.schedule_at(execution.wait_until, execution.id, timer)
