"""
Resume conditions for wait nodes
"""
import logging
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Sequence

from ..models.execution import EventType, ExecutionEvent, ResumeCondition, ResumeKind
from ..models.flow import WaitData, WaitMode, WEEKDAYS


logger = logging.getLogger(__name__)


class WaitScheduler:
    """Computes when a suspended execution may run again"""

    def __init__(self, tz: tzinfo = timezone.utc):
        self.tz = tz

    def compute_resume_condition(self, data: WaitData, now: datetime) -> ResumeCondition:
        """
        Args:
            data: parsed wait-node data
            now: current instant (timezone aware)

        Returns:
            ResumeCondition: a deadline (possibly ``now`` for an immediate
            release) or an await-event condition
        """
        if data.mode == WaitMode.TIMER:
            return ResumeCondition.deadline(now + timedelta(seconds=data.seconds), reason="timer")

        if data.mode == WaitMode.MESSAGE:
            return ResumeCondition.await_event(EventType.MESSAGE_RECEIVED, reason="message")

        boundary = self.window_end(data.days, data.start, data.end, now)
        if boundary is None:
            return ResumeCondition.deadline(now, reason="business_hours")
        logger.debug(f"Inside business hours, blocking until {boundary.isoformat()}")
        return ResumeCondition.deadline(boundary, reason="business_hours")

    def window_end(
        self,
        days: Sequence[str],
        start: time,
        end: time,
        now: datetime,
    ) -> Optional[datetime]:
        """End of the business window containing ``now``, or None when outside"""
        local = now.astimezone(self.tz)
        today = local.date()
        moment = local.time()

        def configured(day) -> bool:
            return WEEKDAYS[day.weekday()] in days

        if start < end:
            if configured(today) and start <= moment < end:
                return self._at(today, end)
            return None

        # overnight window: opens on a configured day, closes the next morning
        if configured(today) and moment >= start:
            return self._at(today + timedelta(days=1), end)
        yesterday = today - timedelta(days=1)
        if configured(yesterday) and moment < end:
            return self._at(today, end)
        return None

    def _at(self, day, clock: time) -> datetime:
        return datetime.combine(day, clock, tzinfo=self.tz).astimezone(timezone.utc)

    def is_satisfied(
        self,
        condition: Optional[ResumeCondition],
        event: ExecutionEvent,
        now: datetime,
    ) -> bool:
        """Re-check a stored condition against the event being dispatched"""
        if event.type == EventType.MANUAL_ADVANCE:
            return True
        if condition is None:
            return False
        if condition.kind == ResumeKind.DEADLINE:
            return event.type == EventType.TIMER_ELAPSED and condition.is_due(now)
        return event.type == condition.event
