"""
Timer scheduler: future dispatches kept in a heap, never held threads
"""
import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from ..exceptions import InfrastructureError
from ..integrations.clock import Clock
from ..models.execution import ExecutionEvent


logger = logging.getLogger(__name__)

DispatchHandler = Callable[[str, ExecutionEvent], Awaitable]

_counter = itertools.count()


@dataclass
class ScheduledDispatch:
    """An event to deliver once ``due_at`` is reached"""
    due_at: datetime
    execution_id: str
    event: ExecutionEvent
    order: int = field(default_factory=lambda: next(_counter))

    def __lt__(self, other):
        if self.due_at != other.due_at:
            return self.due_at < other.due_at
        return self.order < other.order


class TimerScheduler:
    """
    Delivers scheduled events to a handler when they come due

    ``run_due`` can be driven manually (tests, the simulate command); ``start``
    runs the same check in a background task every ``poll_interval`` seconds.
    """

    def __init__(
        self,
        clock: Clock,
        handler: Optional[DispatchHandler] = None,
        poll_interval: float = 0.5,
        redelivery_delay: float = 60.0,
    ):
        self.clock = clock
        self.handler = handler
        self.poll_interval = poll_interval
        self.redelivery_delay = redelivery_delay
        self.queue: List[ScheduledDispatch] = []
        self._pending: Set[Tuple[str, str]] = set()
        self._lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def set_handler(self, handler: DispatchHandler):
        self.handler = handler

    async def start(self):
        if self._loop_task:
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._scheduler_loop())
        logger.info("Timer scheduler started")

    async def stop(self):
        if not self._loop_task:
            return
        self._stop_event.set()
        await self._loop_task
        self._loop_task = None
        logger.info("Timer scheduler stopped")

    @property
    def running(self) -> bool:
        return self._loop_task is not None

    async def schedule_at(self, due_at: datetime, execution_id: str, event: ExecutionEvent) -> bool:
        """Queue an event; False when the execution already has it queued"""
        key = (execution_id, event.id)
        async with self._lock:
            if key in self._pending:
                return False
            heapq.heappush(self.queue, ScheduledDispatch(due_at, execution_id, event))
            self._pending.add(key)
        logger.debug(f"Scheduled {event.type.value} for {execution_id} at {due_at.isoformat()}")
        return True

    async def schedule_in(self, seconds: float, execution_id: str, event: ExecutionEvent) -> bool:
        return await self.schedule_at(
            self.clock.now() + timedelta(seconds=seconds), execution_id, event
        )

    async def pop_due(self, now: Optional[datetime] = None) -> List[ScheduledDispatch]:
        now = now or self.clock.now()
        due = []
        async with self._lock:
            while self.queue and self.queue[0].due_at <= now:
                item = heapq.heappop(self.queue)
                self._pending.discard((item.execution_id, item.event.id))
                due.append(item)
        return due

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Dispatch every due event in due order; returns how many were delivered"""
        if self.handler is None:
            raise RuntimeError("TimerScheduler has no dispatch handler")
        due = await self.pop_due(now)
        for item in due:
            try:
                await self.handler(item.execution_id, item.event)
            except InfrastructureError as e:
                # the event was not marked processed, so delivering it again resumes the chain
                logger.warning(
                    f"Redelivering {item.event.id} for {item.execution_id} "
                    f"in {self.redelivery_delay:.0f}s: {e}"
                )
                await self.schedule_in(self.redelivery_delay, item.execution_id, item.event)
        return len(due)

    def pending(self) -> int:
        return len(self.queue)

    def next_due(self) -> Optional[datetime]:
        return self.queue[0].due_at if self.queue else None

    async def _scheduler_loop(self):
        while not self._stop_event.is_set():
            try:
                await self.run_due()
            except Exception as e:
                logger.error(f"Timer dispatch failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
