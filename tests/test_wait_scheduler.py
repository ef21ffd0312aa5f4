"""
Wait scheduler tests
"""
from datetime import datetime, time, timedelta, timezone

import pytest

from salesbot_engine.config import resolve_timezone
from salesbot_engine.core.wait_scheduler import WaitScheduler
from salesbot_engine.models import EventType, ExecutionEvent, ResumeCondition, ResumeKind, WaitData, WaitMode


WEEKDAYS = ("mon", "tue", "wed", "thu", "fri")
BUSINESS = WaitData(mode=WaitMode.BUSINESS_HOURS, days=WEEKDAYS, start=time(9), end=time(18))


@pytest.fixture
def waits():
    return WaitScheduler(timezone.utc)


class TestComputeResumeCondition:

    def test_timer(self, waits):
        now = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        condition = waits.compute_resume_condition(WaitData(mode=WaitMode.TIMER, seconds=3600), now)
        assert condition.kind == ResumeKind.DEADLINE
        assert condition.at == now + timedelta(hours=1)
        assert not condition.is_due(now)

    def test_zero_timer_is_due(self, waits):
        now = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        assert waits.compute_resume_condition(WaitData(mode=WaitMode.TIMER), now).is_due(now)

    def test_message(self, waits):
        now = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        condition = waits.compute_resume_condition(WaitData(mode=WaitMode.MESSAGE), now)
        assert condition.kind == ResumeKind.AWAIT_EVENT
        assert condition.event == EventType.MESSAGE_RECEIVED

    def test_business_hours_saturday_releases_immediately(self, waits):
        saturday = datetime(2024, 1, 20, 11, 0, tzinfo=timezone.utc)
        condition = waits.compute_resume_condition(BUSINESS, saturday)
        assert condition.at == saturday
        assert condition.is_due(saturday)

    def test_business_hours_after_close_releases(self, waits):
        evening = datetime(2024, 1, 15, 18, 0, tzinfo=timezone.utc)
        assert waits.compute_resume_condition(BUSINESS, evening).is_due(evening)

    def test_business_hours_inside_window_blocks_until_close(self, waits):
        now = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        condition = waits.compute_resume_condition(BUSINESS, now)
        assert condition.at == datetime(2024, 1, 15, 18, 0, tzinfo=timezone.utc)
        assert not condition.is_due(now)

    def test_overnight_window(self, waits):
        night = WaitData(mode=WaitMode.BUSINESS_HOURS, days=("fri",), start=time(22), end=time(6))
        friday_late = datetime(2024, 1, 19, 23, 0, tzinfo=timezone.utc)
        saturday_early = datetime(2024, 1, 20, 5, 0, tzinfo=timezone.utc)
        close = datetime(2024, 1, 20, 6, 0, tzinfo=timezone.utc)

        assert waits.compute_resume_condition(night, friday_late).at == close
        assert waits.compute_resume_condition(night, saturday_early).at == close
        # Saturday night is not a configured opening day
        saturday_late = datetime(2024, 1, 20, 23, 0, tzinfo=timezone.utc)
        assert waits.compute_resume_condition(night, saturday_late).is_due(saturday_late)

    def test_window_in_workspace_timezone(self):
        waits = WaitScheduler(resolve_timezone("America/Sao_Paulo"))
        # 11:00 UTC is 08:00 local, before opening
        early = datetime(2024, 1, 15, 11, 0, tzinfo=timezone.utc)
        assert waits.compute_resume_condition(BUSINESS, early).is_due(early)
        # 13:00 UTC is 10:00 local; closes at 18:00 local = 21:00 UTC
        inside = datetime(2024, 1, 15, 13, 0, tzinfo=timezone.utc)
        assert waits.compute_resume_condition(BUSINESS, inside).at == \
            datetime(2024, 1, 15, 21, 0, tzinfo=timezone.utc)


class TestIsSatisfied:

    NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_deadline_needs_elapsed_timer(self, waits):
        condition = ResumeCondition.deadline(self.NOW)
        timer = ExecutionEvent.timer_elapsed("e1", 1)
        message = ExecutionEvent.message_received("e1", "oi")
        assert waits.is_satisfied(condition, timer, self.NOW)
        assert not waits.is_satisfied(condition, timer, self.NOW - timedelta(seconds=1))
        assert not waits.is_satisfied(condition, message, self.NOW)

    def test_await_event(self, waits):
        condition = ResumeCondition.await_event(EventType.MESSAGE_RECEIVED)
        assert waits.is_satisfied(condition, ExecutionEvent.message_received("e1", "oi"), self.NOW)
        assert not waits.is_satisfied(condition, ExecutionEvent.timer_elapsed("e1", 1), self.NOW)

    def test_manual_advance_releases_any_wait(self, waits):
        advance = ExecutionEvent.manual_advance("e1")
        later = ResumeCondition.deadline(self.NOW + timedelta(days=1))
        assert waits.is_satisfied(later, advance, self.NOW)
        assert waits.is_satisfied(ResumeCondition.await_event(EventType.MESSAGE_RECEIVED), advance, self.NOW)
