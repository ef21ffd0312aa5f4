"""
Flow execution tests against in-memory collaborators
"""
from datetime import datetime, timedelta, timezone

import pytest

from salesbot_engine.core.engine import SalesBotEngine
from salesbot_engine.exceptions import (
    ExecutionNotFoundError, FlowNotFoundError, FlowValidationError, MessagingUnavailableError,
    RetryExhaustedError, StateTransitionError,
)
from salesbot_engine.integrations import EXECUTION_EVENTS_TOPIC, InMemoryMessagingGateway
from salesbot_engine.models import ExecutionEvent, ExecutionStatus, LeadSnapshot, MutationType

from conftest import chain, make_flow


class FlakyGateway(InMemoryMessagingGateway):
    """Fails the first ``times`` sends of one particular content"""

    def __init__(self, fail_on, times=1):
        super().__init__()
        self.fail_on = fail_on
        self.times = times

    async def send(self, conversation_id, content, kind, idempotency_key):
        if content == self.fail_on and self.times > 0:
            self.times -= 1
            raise MessagingUnavailableError("channel down")
        return await super().send(conversation_id, content, kind, idempotency_key)


def send(node_id, message):
    return {"id": node_id, "type": "send_message", "data": {"message": message}}


STOP = {"id": "end", "type": "stop"}

PRICE_FLOW = make_flow(
    [
        {"id": "ask", "type": "condition",
         "data": {"field": "message", "operator": "contains", "value": "preço"}},
        send("price", "Nosso preço é..."),
        {"id": "tag", "type": "tag", "data": {"tag_id": "X"}},
        STOP,
        {"id": "other", "type": "stop"},
    ],
    [
        {"source": "ask", "target": "price", "outcome": "true"},
        {"source": "ask", "target": "other", "outcome": "false"},
    ] + chain("price", "tag", "end"),
    id="price-flow",
)

CONVERSATION_FLOW = make_flow(
    [
        send("hello", "Olá {{lead.name}}! Qual o seu email?"),
        {"id": "wait_email", "type": "wait", "data": {"wait_mode": "message"}},
        send("thanks", "Obrigado!"),
        {"id": "wait_more", "type": "wait", "data": {"wait_mode": "message"}},
        STOP,
    ],
    chain("hello", "wait_email", "thanks", "wait_more", "end"),
    id="conversation",
)

TIMER_FLOW = make_flow(
    [
        {"id": "pause", "type": "wait", "data": {"wait_mode": "timer", "hours": 1}},
        send("followup", "Ainda por aí?"),
        STOP,
    ],
    chain("pause", "followup", "end"),
    id="timer-flow",
)


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_price_question(self, engine, messaging, crm):
        await engine.publish_flow(PRICE_FLOW)
        execution = await engine.start_execution("price-flow", "lead-1", initial_message="qual o preço?")

        assert execution.status == ExecutionStatus.COMPLETED
        assert [m.content for m in messaging.sent] == ["Nosso preço é..."]
        assert "X" in crm.leads["lead-1"].tags

        status = await engine.get_execution_status(execution.id)
        assert status["mutations"] == [
            {"type": "add_tag", "value": "X", "key": f"{execution.id}:2"}
        ]

    @pytest.mark.asyncio
    async def test_false_branch(self, engine, messaging, crm):
        await engine.publish_flow(PRICE_FLOW)
        execution = await engine.start_execution("price-flow", "lead-1", initial_message="bom dia")

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.current_node_id == "other"
        assert messaging.sent == []
        assert crm.leads["lead-1"].tags == []

    @pytest.mark.asyncio
    async def test_conversation_with_waits(self, engine, messaging):
        await engine.publish_flow(CONVERSATION_FLOW)
        execution = await engine.start_execution("conversation", "lead-1")

        assert execution.status == ExecutionStatus.WAITING
        assert execution.current_node_id == "wait_email"
        assert execution.wait_predicate == "message_received"
        assert messaging.sent[0].content == "Olá Maria! Qual o seu email?"

        results = await engine.receive_message("lead-1", "maria@example.com", message_id="wamid-1")
        assert len(results) == 1
        assert results[0].execution.current_node_id == "wait_more"
        assert results[0].execution.context_snapshot["message"] == "maria@example.com"
        assert len(messaging.sent) == 2

        results = await engine.receive_message("lead-1", "tchau", message_id="wamid-2")
        assert results[0].status == ExecutionStatus.COMPLETED
        assert results[0].execution.context_snapshot["last_message"] == "maria@example.com"

    @pytest.mark.asyncio
    async def test_missing_successor_completes(self, engine, messaging):
        await engine.publish_flow(make_flow([send("only", "hi")], id="single"))
        execution = await engine.start_execution("single", "lead-1")
        assert execution.status == ExecutionStatus.COMPLETED
        assert len(messaging.sent) == 1

    @pytest.mark.asyncio
    async def test_all_send_kinds(self, engine, messaging):
        flow = make_flow(
            [
                {"id": "react", "type": "react", "data": {"emoji": "👍"}},
                {"id": "comment", "type": "comment", "data": {"text": "Lead {{lead.name}}"}},
                {"id": "menu", "type": "whatsapp_list",
                 "data": {"title": "Planos", "button_text": "Ver", "items": ["Basic", "Pro"]}},
            ],
            chain("react", "comment", "menu"),
            id="kinds",
        )
        await engine.publish_flow(flow)
        await engine.start_execution("kinds", "lead-1")

        assert [m.kind.value for m in messaging.sent] == ["reaction", "comment", "list"]
        assert messaging.sent[1].content == "Lead Maria"
        assert messaging.sent[2].content == {"title": "Planos", "button_text": "Ver", "items": ["Basic", "Pro"]}

    @pytest.mark.asyncio
    async def test_lead_mutation_nodes(self, engine, crm):
        flow = make_flow(
            [
                {"id": "stage", "type": "move_stage", "data": {"stage_id": "qualified"}},
                {"id": "untag", "type": "tag", "data": {"tag_id": "cold", "action": "remove"}},
                {"id": "note", "type": "add_note", "data": {"note": "Lead {{lead.name}} em {{lead.stage}}"}},
                {"id": "owner", "type": "change_responsible", "data": {"user_id": "bob"}},
            ],
            chain("stage", "untag", "note", "owner"),
            id="mutations",
        )
        crm.leads["lead-1"].tags.append("cold")
        await engine.publish_flow(flow)
        execution = await engine.start_execution("mutations", "lead-1")

        lead = crm.leads["lead-1"]
        assert execution.status == ExecutionStatus.COMPLETED
        assert lead.stage == "qualified"
        assert lead.tags == []
        assert lead.assignee_id == "bob"
        assert crm.notes["lead-1"] == ["Lead Maria em qualified"]
        mutations = await engine.execution_repository.list_mutations(execution.id)
        assert [m.type for m in mutations] == [
            MutationType.SET_STAGE, MutationType.REMOVE_TAG,
            MutationType.APPEND_NOTE, MutationType.SET_ASSIGNEE,
        ]


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_redelivered_message_has_no_duplicate_effect(self, engine, messaging):
        await engine.publish_flow(CONVERSATION_FLOW)
        execution = await engine.start_execution("conversation", "lead-1")
        await engine.receive_message("lead-1", "maria@example.com", message_id="wamid-1")
        assert len(messaging.sent) == 2

        event = ExecutionEvent.message_received(execution.id, "maria@example.com", "wamid-1")
        result = await engine.dispatch(execution.id, event)

        assert result.applied is False
        assert result.reason == "duplicate"
        assert result.execution.current_node_id == "wait_more"
        assert len(messaging.sent) == 2

    @pytest.mark.asyncio
    async def test_stop_is_absorbing(self, engine, messaging):
        await engine.publish_flow(PRICE_FLOW)
        execution = await engine.start_execution("price-flow", "lead-1", initial_message="preço?")
        assert execution.status == ExecutionStatus.COMPLETED

        events = [
            ExecutionEvent.message_received(execution.id, "preço de novo"),
            ExecutionEvent.manual_advance(execution.id),
            ExecutionEvent.timer_elapsed(execution.id, execution.step_sequence),
            ExecutionEvent.flow_started(execution.id),
        ]
        for event in events:
            result = await engine.dispatch(execution.id, event)
            assert result.applied is False
            assert result.reason == "terminal"
            assert result.status == ExecutionStatus.COMPLETED
        assert len(messaging.sent) == 1
        assert await engine.receive_message("lead-1", "oi") == []

    @pytest.mark.asyncio
    async def test_start_returns_active_execution(self, engine, messaging):
        await engine.publish_flow(CONVERSATION_FLOW)
        first = await engine.start_execution("conversation", "lead-1")
        second = await engine.start_execution("conversation", "lead-1")
        assert first.id == second.id
        assert len(messaging.sent) == 1

    @pytest.mark.asyncio
    async def test_partial_failure_continues_without_repeating_steps(self, settings, clock, crm, sleeper):
        messaging = FlakyGateway("segunda")
        engine = SalesBotEngine(messaging=messaging, crm=crm, clock=clock, settings=settings, sleep=sleeper)
        await engine.publish_flow(make_flow(
            [
                send("first", "primeira"),
                {"id": "tag", "type": "tag", "data": {"tag_id": "contacted"}},
                send("second", "segunda"),
            ],
            chain("first", "tag", "second"),
            id="flaky",
        ))
        execution = await engine.start_execution("flaky", "lead-1")

        assert execution.status == ExecutionStatus.COMPLETED
        assert [m.content for m in messaging.sent] == ["primeira", "segunda"]
        assert len(crm.history) == 1
        assert len(sleeper.delays) == 1

    @pytest.mark.asyncio
    async def test_redelivered_message_is_merged_once(self, settings, clock, crm, sleeper):
        messaging = FlakyGateway("recebido")
        engine = SalesBotEngine(messaging=messaging, crm=crm, clock=clock, settings=settings, sleep=sleeper)
        await engine.publish_flow(make_flow(
            [
                {"id": "listen", "type": "wait", "data": {"wait_mode": "message"}},
                send("ack", "recebido"),
                {"id": "check", "type": "condition",
                 "data": {"field": "last_message", "operator": "equals", "value": "first"}},
                {"id": "yes", "type": "stop"},
                {"id": "no", "type": "stop"},
            ],
            chain("listen", "ack", "check") + [
                {"source": "check", "target": "yes", "outcome": "true"},
                {"source": "check", "target": "no", "outcome": "false"},
            ],
            id="last-message",
        ))
        await engine.start_execution("last-message", "lead-1", initial_message="first")

        results = await engine.receive_message("lead-1", "second", message_id="m2")

        execution = results[0].execution
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.current_node_id == "yes"
        assert execution.context_snapshot["message"] == "second"
        assert execution.context_snapshot["last_message"] == "first"
        assert execution.context_snapshot["message_id"] == "m2"
        assert [m.content for m in messaging.sent] == ["recebido"]
        assert len(sleeper.delays) == 1



class TestWaits:

    @pytest.mark.asyncio
    async def test_timer_wait(self, engine, clock, messaging):
        await engine.publish_flow(TIMER_FLOW)
        execution = await engine.start_execution("timer-flow", "lead-1")

        assert execution.status == ExecutionStatus.WAITING
        assert execution.wait_until == clock.now() + timedelta(hours=1)
        assert engine.scheduler.pending() == 1
        assert await engine.run_due_timers() == 0

        clock.advance(hours=1)
        assert await engine.run_due_timers() == 1
        execution = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.COMPLETED
        assert [m.content for m in messaging.sent] == ["Ainda por aí?"]

    @pytest.mark.asyncio
    async def test_message_does_not_release_timer(self, engine):
        await engine.publish_flow(TIMER_FLOW)
        await engine.start_execution("timer-flow", "lead-1")

        results = await engine.receive_message("lead-1", "oi")
        assert results[0].applied is False
        assert results[0].reason == "not_awaited"
        assert results[0].status == ExecutionStatus.WAITING

    @pytest.mark.asyncio
    async def test_stale_timer_discarded(self, engine):
        await engine.publish_flow(TIMER_FLOW)
        execution = await engine.start_execution("timer-flow", "lead-1")

        result = await engine.dispatch(execution.id, ExecutionEvent.timer_elapsed(execution.id, 0))
        assert result.reason == "stale_timer"
        assert result.status == ExecutionStatus.WAITING

    @pytest.mark.asyncio
    async def test_manual_advance_releases_timer(self, engine, messaging):
        await engine.publish_flow(TIMER_FLOW)
        execution = await engine.start_execution("timer-flow", "lead-1")

        result = await engine.advance(execution.id)
        assert result.status == ExecutionStatus.COMPLETED
        assert len(messaging.sent) == 1

        # the original timer still fires later and finds a finished execution
        assert await engine.run_due_timers(datetime(2030, 1, 1, tzinfo=timezone.utc)) == 1
        assert len(messaging.sent) == 1

    @pytest.mark.asyncio
    async def test_zero_timer_continues_immediately(self, engine, messaging):
        flow = make_flow(
            [{"id": "pause", "type": "wait", "data": {"seconds": 0}}, send("go", "já")],
            chain("pause", "go"),
            id="zero",
        )
        await engine.publish_flow(flow)
        execution = await engine.start_execution("zero", "lead-1")
        assert execution.status == ExecutionStatus.COMPLETED
        assert engine.scheduler.pending() == 0

    @pytest.mark.asyncio
    async def test_business_hours_outside_window(self, engine, clock, messaging):
        clock.set(datetime(2024, 1, 20, 11, 0, tzinfo=timezone.utc))  # Saturday
        await engine.publish_flow(make_flow(
            [{"id": "office", "type": "wait", "data": {"wait_mode": "business_hours"}}, send("go", "fora")],
            chain("office", "go"),
            id="office",
        ))
        execution = await engine.start_execution("office", "lead-1")
        assert execution.status == ExecutionStatus.COMPLETED
        assert len(messaging.sent) == 1

    @pytest.mark.asyncio
    async def test_business_hours_late_timer_waits_again(self, engine, clock, messaging):
        await engine.publish_flow(make_flow(
            [{"id": "office", "type": "wait", "data": {"wait_mode": "business_hours"}}, send("go", "fora")],
            chain("office", "go"),
            id="office",
        ))
        execution = await engine.start_execution("office", "lead-1")
        assert execution.status == ExecutionStatus.WAITING
        assert execution.wait_until == datetime(2024, 1, 15, 18, 0, tzinfo=timezone.utc)

        # the worker was down until Tuesday morning, inside the next window
        clock.set(datetime(2024, 1, 16, 10, 0, tzinfo=timezone.utc))
        await engine.run_due_timers()
        execution = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.WAITING
        assert execution.wait_until == datetime(2024, 1, 16, 18, 0, tzinfo=timezone.utc)
        assert messaging.sent == []

        clock.set(datetime(2024, 1, 16, 18, 0, tzinfo=timezone.utc))
        await engine.run_due_timers()
        execution = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.COMPLETED
        assert len(messaging.sent) == 1


class TestFailures:

    @pytest.mark.asyncio
    async def test_loop_limit_fails_at_limit_plus_one(self, engine, messaging):
        await engine.publish_flow(make_flow(
            [send("ping", "loop"), {"id": "again", "type": "goto", "data": {"target_node_id": "ping"}}],
            chain("ping", "again"),
            id="loop",
        ))
        execution = await engine.start_execution("loop", "lead-1")

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error["type"] == "LoopLimitExceeded"
        assert execution.error["node_id"] == "again"
        assert execution.jump_count == engine.settings.max_loop_jumps + 1
        assert len(messaging.sent) == engine.settings.max_loop_jumps + 1

    @pytest.mark.asyncio
    async def test_jumps_up_to_limit_are_allowed(self, engine):
        limit = engine.settings.max_loop_jumps
        nodes = [
            {"id": f"g{i}", "type": "goto", "data": {"target_node_id": f"g{i + 1}" if i < limit else "end"}}
            for i in range(1, limit + 1)
        ]
        await engine.publish_flow(make_flow(nodes + [STOP], id="jumps", entry_node_id="g1"))
        execution = await engine.start_execution("jumps", "lead-1")

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.jump_count == limit

    @pytest.mark.asyncio
    async def test_no_eligible_assignee(self, engine, crm):
        await engine.publish_flow(make_flow(
            [{"id": "assign", "type": "round_robin", "data": {}}],
            id="rr", workspace_id="ws-empty",
        ))
        execution = await engine.start_execution("rr", "lead-1")

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error["type"] == "NoEligibleAssigneeError"
        assert execution.error["node_id"] == "assign"
        assert crm.leads["lead-1"].assignee_id is None
        assert await engine.execution_repository.list_mutations(execution.id) == []
        steps = (await engine.get_execution_status(execution.id))["steps"]
        assert [(s["node_id"], s["status"]) for s in steps] == [("assign", "error")]
        assert "ws-empty" in steps[0]["message"]

    @pytest.mark.asyncio
    async def test_specific_assignee_not_a_member(self, engine, crm):
        await engine.publish_flow(make_flow(
            [{"id": "assign", "type": "action", "data": {"user_id": "zed"}}], id="specific",
        ))
        execution = await engine.start_execution("specific", "lead-1")
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error["type"] == "UnassignedTargetError"
        assert crm.leads["lead-1"].assignee_id is None

    @pytest.mark.asyncio
    async def test_round_robin_across_leads(self, engine, crm):
        for lead_id in ("lead-2", "lead-3", "lead-4"):
            crm.add_lead(LeadSnapshot(lead_id=lead_id))
        await engine.publish_flow(make_flow([{"id": "assign", "type": "round_robin"}], id="rr"))

        for lead_id in ("lead-1", "lead-2", "lead-3", "lead-4"):
            await engine.start_execution("rr", lead_id)
        assignees = [crm.leads[lead_id].assignee_id for lead_id in ("lead-1", "lead-2", "lead-3", "lead-4")]
        assert assignees == ["alice", "bob", "carol", "alice"]
        # picks are kept only until their step is committed
        assert engine.rotation_repository.picks == {}

    @pytest.mark.asyncio
    async def test_retries_exhausted_start_is_redelivered(self, engine, clock, messaging, sleeper):
        await engine.publish_flow(make_flow([send("only", "oi")], id="single"))
        messaging.fail_next = 100

        with pytest.raises(RetryExhaustedError):
            await engine.start_execution("single", "lead-1")

        execution = await engine.execution_repository.find_active("lead-1", "single")
        assert execution.status == ExecutionStatus.RUNNING
        assert execution.step_sequence == 0
        assert len(sleeper.delays) == engine.settings.max_dispatch_retries
        assert sleeper.delays == sorted(sleeper.delays)
        assert engine.scheduler.pending() == 1
        assert engine.metrics.get_counter("dispatch_redelivered") == 1

        # starting again returns the queued execution
        assert (await engine.start_execution("single", "lead-1")).id == execution.id

        messaging.fail_next = 0
        clock.advance(seconds=engine.settings.retry_max_delay)
        assert await engine.run_due_timers() == 1
        execution = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.COMPLETED
        assert len(messaging.sent) == 1

    @pytest.mark.asyncio
    async def test_timer_survives_channel_outage(self, engine, clock, messaging):
        await engine.publish_flow(TIMER_FLOW)
        execution = await engine.start_execution("timer-flow", "lead-1")

        messaging.fail_next = 100
        clock.advance(hours=1)
        assert await engine.run_due_timers() == 1
        stored = await engine.get_execution(execution.id)
        assert stored.status == ExecutionStatus.RUNNING
        assert stored.current_node_id == "followup"
        assert engine.scheduler.pending() == 1

        messaging.fail_next = 0
        clock.advance(hours=5)
        assert await engine.run_due_timers() == 1
        stored = await engine.get_execution(execution.id)
        assert stored.status == ExecutionStatus.COMPLETED
        assert [m.content for m in messaging.sent] == ["Ainda por aí?"]
        assert engine.scheduler.pending() == 0

    @pytest.mark.asyncio
    async def test_failing_execution_does_not_block_the_others(self, settings, clock, crm, sleeper):
        messaging = FlakyGateway("Obrigado!", times=100)
        engine = SalesBotEngine(messaging=messaging, crm=crm, clock=clock, settings=settings, sleep=sleeper)
        await engine.publish_flow(CONVERSATION_FLOW)
        await engine.publish_flow(make_flow(
            [{"id": "listen", "type": "wait", "data": {"wait_mode": "message"}}, send("echo", "Recebido")],
            chain("listen", "echo"),
            id="echo",
        ))
        stuck = await engine.start_execution("conversation", "lead-1")
        echo = await engine.start_execution("echo", "lead-1")

        results = await engine.receive_message("lead-1", "maria@example.com", message_id="m1")

        assert [r.execution.id for r in results] == [echo.id]
        assert results[0].status == ExecutionStatus.COMPLETED
        assert [m.content for m in messaging.sent] == ["Olá Maria! Qual o seu email?", "Recebido"]
        assert engine.scheduler.pending() == 1

        messaging.times = 0
        clock.advance(seconds=settings.retry_max_delay)
        assert await engine.run_due_timers() == 1
        stuck = await engine.get_execution(stuck.id)
        assert stuck.status == ExecutionStatus.WAITING
        assert stuck.current_node_id == "wait_more"
        assert stuck.context_snapshot["message"] == "maria@example.com"
        assert messaging.sent[-1].content == "Obrigado!"

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, engine, messaging, sleeper):
        await engine.publish_flow(make_flow([send("only", "oi")], id="single"))
        messaging.fail_next = 2

        execution = await engine.start_execution("single", "lead-1")
        assert execution.status == ExecutionStatus.COMPLETED
        assert len(sleeper.delays) == 2
        assert engine.metrics.total("dispatch_failures") == 2


class TestCancellation:

    @pytest.mark.asyncio
    async def test_unpublished_flow_stops_on_next_event(self, engine, messaging):
        await engine.publish_flow(CONVERSATION_FLOW)
        await engine.start_execution("conversation", "lead-1")
        await engine.unpublish_flow("conversation")

        results = await engine.receive_message("lead-1", "maria@example.com")
        assert results[0].status == ExecutionStatus.STOPPED
        assert results[0].reason == "flow_unpublished"
        assert len(messaging.sent) == 1

        with pytest.raises(FlowNotFoundError):
            await engine.start_execution("conversation", "lead-2")

    @pytest.mark.asyncio
    async def test_deleted_lead_stops_on_next_event(self, engine, crm):
        await engine.publish_flow(TIMER_FLOW)
        execution = await engine.start_execution("timer-flow", "lead-1")
        crm.delete_lead("lead-1")

        result = await engine.advance(execution.id)
        assert result.status == ExecutionStatus.STOPPED
        assert result.execution.error["message"] == "lead_deleted"

    @pytest.mark.asyncio
    async def test_cancel_execution(self, engine):
        await engine.publish_flow(CONVERSATION_FLOW)
        execution = await engine.start_execution("conversation", "lead-1")

        cancelled = await engine.cancel_execution(execution.id, "opted_out")
        assert cancelled.status == ExecutionStatus.STOPPED
        assert cancelled.error["message"] == "opted_out"
        assert await engine.receive_message("lead-1", "oi") == []

        with pytest.raises(StateTransitionError):
            await engine.cancel_execution(execution.id)

    @pytest.mark.asyncio
    async def test_unknown_ids(self, engine):
        with pytest.raises(FlowNotFoundError):
            await engine.unpublish_flow("nope")
        with pytest.raises(FlowNotFoundError):
            await engine.start_execution("nope", "lead-1")
        with pytest.raises(ExecutionNotFoundError):
            await engine.advance("nope")
        with pytest.raises(ExecutionNotFoundError):
            await engine.get_execution_status("nope")


class TestFlowsAndTriggers:

    @pytest.mark.asyncio
    async def test_publish_rejects_invalid_flow(self, engine):
        broken = make_flow(
            [{"id": "c1", "type": "condition", "data": {"value": "x"}}, STOP],
            [{"source": "c1", "target": "end", "outcome": "true"}],
            id="broken",
        )
        with pytest.raises(FlowValidationError) as exc_info:
            await engine.publish_flow(broken)
        assert exc_info.value.issues[0]["kind"] == "missing_branch"
        assert engine.validate_flow(broken)[0]["node_id"] == "c1"

    @pytest.mark.asyncio
    async def test_executions_stay_pinned_to_their_version(self, engine, messaging):
        first = await engine.publish_flow(CONVERSATION_FLOW)
        execution = await engine.start_execution("conversation", "lead-1")

        updated = make_flow(
            [
                send("hello", "Oi!"),
                {"id": "wait_email", "type": "wait", "data": {"wait_mode": "message"}},
                send("thanks", "Valeu!"),
            ],
            chain("hello", "wait_email", "thanks"),
            id="conversation",
        )
        second = await engine.publish_flow(updated)
        assert (first.version, second.version) == (1, 2)
        assert (await engine.get_flow("conversation")).version == 2
        pinned = await engine.load_graph("conversation", version=1)
        assert pinned.successor("thanks") == "wait_more"
        assert "wait_more" not in await engine.load_graph("conversation")

        await engine.receive_message("lead-1", "maria@example.com")
        execution = await engine.get_execution(execution.id)
        assert execution.flow_version == 1
        assert messaging.sent[-1].content == "Obrigado!"

    @pytest.mark.asyncio
    async def test_lead_event_triggers(self, engine):
        await engine.publish_flow(make_flow(
            [send("welcome", "Bem-vindo")],
            id="on-stage", trigger={"type": "stage_entered", "stage": "qualified"},
        ))
        await engine.publish_flow(make_flow(
            [send("vip", "VIP")],
            id="on-tag", trigger={"type": "tag_added", "tag": "vip"},
        ))

        started = await engine.on_lead_event("ws-1", "lead-1", "stage_entered", "qualified")
        assert [e.flow_id for e in started] == ["on-stage"]
        assert await engine.on_lead_event("ws-1", "lead-1", "stage_entered", "lost") == []
        assert await engine.on_lead_event("ws-2", "lead-1", "tag_added", "vip") == []
        started = await engine.on_lead_event("ws-1", "lead-1", "tag_added", "vip")
        assert [e.flow_id for e in started] == ["on-tag"]

    @pytest.mark.asyncio
    async def test_new_lead_trigger_cooldown(self, engine, clock):
        await engine.publish_flow(make_flow(
            [send("welcome", "Bem-vindo")], id="welcome", trigger={"type": "new_lead"},
        ))
        first = await engine.on_lead_event("ws-1", "lead-1", "new_lead")
        assert first[0].status == ExecutionStatus.COMPLETED

        clock.advance(hours=23)
        assert await engine.on_lead_event("ws-1", "lead-1", "new_lead") == []
        clock.advance(hours=2)
        again = await engine.on_lead_event("ws-1", "lead-1", "new_lead")
        assert again[0].id != first[0].id
        assert (await engine.get_flow("welcome")).executions_count == 2

    @pytest.mark.asyncio
    async def test_inbound_message_starts_keyword_flow(self, engine, clock, messaging):
        await engine.publish_flow(make_flow(
            [send("promo", "Nossa promoção: {{lead.message}}")],
            id="promo", trigger_type="keyword",
            trigger_config={"keyword": "PROMO", "instance_name": "vendas"},
        ))
        await engine.publish_flow(make_flow(
            [send("hello", "Oi!")], id="any-message", trigger={"type": "message_received"},
        ))

        results = await engine.receive_message(
            "lead-1", "tem promo?", message_id="m1", workspace_id="ws-1", instance_name="vendas",
        )
        assert [(r.execution.flow_id, r.reason) for r in results] == [("promo", "triggered")]
        assert messaging.sent[-1].content == "Nossa promoção: tem promo?"

        # keyword cooling down, the catch-all flow takes the next message
        clock.advance(minutes=10)
        results = await engine.receive_message(
            "lead-1", "promo de novo", message_id="m2", workspace_id="ws-1", instance_name="vendas",
        )
        assert [r.execution.flow_id for r in results] == ["any-message"]

        clock.advance(minutes=2)
        assert await engine.receive_message("lead-1", "oi", message_id="m3", workspace_id="ws-1") == []

        clock.advance(minutes=5)
        results = await engine.receive_message(
            "lead-1", "promo!", message_id="m4", workspace_id="ws-1", instance_name="suporte",
        )
        assert [r.execution.flow_id for r in results] == ["any-message"]
        assert (await engine.get_flow("promo")).executions_count == 1
        assert (await engine.get_flow("any-message")).executions_count == 2

    @pytest.mark.asyncio
    async def test_message_for_a_waiting_execution_starts_nothing(self, engine, messaging):
        await engine.publish_flow(CONVERSATION_FLOW)
        await engine.publish_flow(make_flow(
            [send("hello", "Oi!")], id="any-message", trigger={"type": "message_received"},
        ))
        await engine.start_execution("conversation", "lead-1")

        results = await engine.receive_message("lead-1", "maria@example.com", workspace_id="ws-1")
        assert [r.execution.flow_id for r in results] == ["conversation"]
        assert "Oi!" not in [m.content for m in messaging.sent]

    @pytest.mark.asyncio
    async def test_action_node_types(self, engine, crm):
        await engine.publish_flow(make_flow(
            [
                {"id": "note", "type": "action", "data": {"action_type": "add_note", "note": "lead quente"}},
                {"id": "owner", "type": "action",
                 "data": {"action_type": "change_responsible", "user_id": "bob"}},
            ],
            chain("note", "owner"),
            id="actions",
        ))
        execution = await engine.start_execution("actions", "lead-1")

        assert execution.status == ExecutionStatus.COMPLETED
        assert crm.notes["lead-1"] == ["lead quente"]
        assert crm.leads["lead-1"].assignee_id == "bob"
        status = await engine.get_execution_status(execution.id)
        assert [m["type"] for m in status["mutations"]] == ["append_note", "set_assignee"]


class TestRecoveryAndObservability:

    @pytest.mark.asyncio
    async def test_recover_rearms_timers(self, engine, settings, clock, crm, messaging):
        await engine.publish_flow(TIMER_FLOW)
        execution = await engine.start_execution("timer-flow", "lead-1")

        restarted = SalesBotEngine(
            flow_repository=engine.flow_repository,
            execution_repository=engine.execution_repository,
            messaging=messaging,
            crm=crm,
            clock=clock,
            settings=settings,
        )
        assert await restarted.recover() == 1
        assert restarted.scheduler.pending() == 1

        clock.advance(hours=1)
        await restarted.run_due_timers()
        assert (await restarted.get_execution(execution.id)).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_lifecycle_events_and_metrics(self, engine, event_bus):
        names = []

        async def on_event(event):
            names.append(event.name)

        await event_bus.subscribe(EXECUTION_EVENTS_TOPIC, on_event)
        await engine.publish_flow(CONVERSATION_FLOW)
        await engine.start_execution("conversation", "lead-1")
        await engine.receive_message("lead-1", "a")
        await engine.receive_message("lead-1", "b")

        assert names == ["execution.waiting", "execution.waiting", "execution.completed"]
        assert engine.metrics.get_counter("executions_finished", {"status": "completed"}) == 1
        assert engine.metrics.get_counter("side_effects", {"kind": "text"}) == 2

        await event_bus.unsubscribe(EXECUTION_EVENTS_TOPIC, on_event)
        await engine.start_execution("conversation", "lead-1")
        assert len(names) == 3

    @pytest.mark.asyncio
    async def test_execution_status_report(self, engine):
        await engine.publish_flow(TIMER_FLOW)
        execution = await engine.start_execution("timer-flow", "lead-1")
        status = await engine.get_execution_status(execution.id)

        assert status["status"] == "waiting"
        assert status["current_node_id"] == "pause"
        assert status["wait_predicate"] == "timer"
        assert status["wait_until"] == "2024-01-15T11:00:00+00:00"
        assert status["step_sequence"] == 1
        assert status["mutations"] == []
        assert [(s["node_id"], s["node_type"], s["status"], s["message"]) for s in status["steps"]] == [
            ("pause", "wait", "waiting", "timer"),
        ]

        await engine.advance(execution.id)
        steps = (await engine.get_execution_status(execution.id))["steps"]
        assert [(s["step_sequence"], s["node_id"], s["status"]) for s in steps] == [
            (0, "pause", "waiting"),
            (1, "pause", "success"),
            (2, "followup", "success"),
            (3, "end", "success"),
        ]
        assert steps[2]["message"] == "text: Ainda por aí?"
