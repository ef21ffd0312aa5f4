"""
Flow interpreter: steps one execution through its pinned flow graph
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..config import EngineSettings
from ..exceptions import (
    AssignmentError, ConfigurationError, ExecutionNotFoundError, LoopLimitExceeded,
)
from ..integrations.clock import Clock
from ..integrations.crm import LeadGateway
from ..integrations.event_bus import EXECUTION_EVENTS_TOPIC, EventBus
from ..integrations.messaging import MessagingGateway
from ..models.execution import (
    EventType, Execution, ExecutionEvent, ExecutionStatus, ResumeCondition,
    StepLogEntry, StepStatus,
)
from ..models.flow import (
    BotFlow, BotNode, MessageKind, NodeType, NoteData, Outcome, WaitMode,
)
from ..models.lead import LeadMutation, LeadSnapshot, MutationType
from ..monitoring import EventLogger, MetricsRecorder, TracingManager
from ..storage.repository import ExecutionRepository, FlowRepository
from .assignment import AssignmentResolver
from .conditions import ConditionEvaluator, classify_reply, render_template
from .graph import FlowGraph
from .wait_scheduler import WaitScheduler


logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """Inputs of a single node step"""
    execution: Execution
    graph: FlowGraph
    node: BotNode
    snapshot: LeadSnapshot
    event: ExecutionEvent
    key: str
    now: datetime
    resuming: bool = False

    @property
    def default_successor(self) -> Optional[str]:
        return self.graph.successor(self.node.id)


@dataclass
class StepResult:
    """What a single node decided"""
    next_node_id: Optional[str] = None
    mutations: List[LeadMutation] = field(default_factory=list)
    suspend_with: Optional[ResumeCondition] = None
    detail: str = ""
    pick_key: Optional[str] = None  # rotation pick to release after commit


@dataclass
class DispatchResult:
    """Outcome of dispatching one event to one execution"""
    execution: Execution
    applied: bool = True
    reason: str = ""
    steps: int = 0

    @property
    def status(self) -> ExecutionStatus:
        return self.execution.status


class FlowInterpreter:
    """
    Executes nodes until the execution suspends or terminates

    Each node is one step: its side effect is keyed by
    ``"{execution_id}:{step_sequence}"`` and the execution is persisted with
    the step's lead mutations before the next node runs. Infrastructure
    errors propagate unchanged so the dispatch layer can redeliver.
    """

    def __init__(
        self,
        flows: FlowRepository,
        executions: ExecutionRepository,
        messaging: MessagingGateway,
        crm: LeadGateway,
        clock: Clock,
        assignment: AssignmentResolver,
        settings: Optional[EngineSettings] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
        tracer: Optional[TracingManager] = None,
        event_logger: Optional[EventLogger] = None,
    ):
        self.flows = flows
        self.executions = executions
        self.messaging = messaging
        self.crm = crm
        self.clock = clock
        self.assignment = assignment
        self.settings = settings or EngineSettings()
        self.event_bus = event_bus
        self.metrics = metrics or MetricsRecorder()
        self.tracer = tracer or TracingManager(self.metrics)
        self.event_logger = event_logger or EventLogger()

        self.evaluator = ConditionEvaluator(self.settings.tz)
        self.waits = WaitScheduler(self.settings.tz)
        self._graphs: Dict[Tuple[str, int], FlowGraph] = {}

        self._handlers = {
            NodeType.SEND_MESSAGE: self._send_message,
            NodeType.REACT: self._send_message,
            NodeType.COMMENT: self._send_message,
            NodeType.WHATSAPP_LIST: self._send_message,
            NodeType.CONDITION: self._condition,
            NodeType.VALIDATE: self._validate,
            NodeType.WAIT: self._wait,
            NodeType.TAG: self._tag,
            NodeType.MOVE_STAGE: self._move_stage,
            NodeType.GOTO: self._goto,
            NodeType.ACTION: self._action,
            NodeType.ROUND_ROBIN: self._assign,
            NodeType.CHANGE_RESPONSIBLE: self._assign,
            NodeType.ADD_NOTE: self._add_note,
            NodeType.STOP: self._stop,
        }
        missing = set(NodeType) - set(self._handlers)
        if missing:
            raise NotImplementedError(f"No handler for node types {sorted(t.value for t in missing)}")

    def graph_for(self, flow: BotFlow) -> FlowGraph:
        key = (flow.id, flow.version)
        graph = self._graphs.get(key)
        if graph is None:
            graph = self._graphs[key] = FlowGraph.build(flow)
        return graph

    async def handle(self, execution_id: str, event: ExecutionEvent) -> DispatchResult:
        """Apply one event; the caller holds the execution lease"""
        execution = await self.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)

        if execution.is_terminal_state():
            return self._discard(execution, event, "terminal")
        if execution.has_processed(event.id):
            return self._discard(execution, event, "duplicate")
        if (
            execution.status == ExecutionStatus.WAITING
            and event.type == EventType.TIMER_ELAPSED
            and event.sequence != execution.step_sequence
        ):
            return self._discard(execution, event, "stale_timer")

        flow = await self.flows.get(execution.flow_id, execution.flow_version)
        if flow is None or not flow.is_active:
            return await self._cancel(execution, event, "flow_unpublished")

        snapshot = await self.crm.get_snapshot(execution.lead_id)
        if snapshot is None:
            return await self._cancel(execution, event, "lead_deleted")

        now = self.clock.now()
        resuming_node = None
        if execution.status == ExecutionStatus.WAITING:
            if not self.waits.is_satisfied(execution.wait_condition, event, now):
                return self._discard(execution, event, "not_awaited")
            resuming_node = execution.current_node_id
            execution.resume()

        self._merge_inbound(execution, snapshot, event)
        graph = self.graph_for(flow)
        steps = await self._run(execution, graph, snapshot, event, now, resuming_node)
        return DispatchResult(execution=execution, steps=steps)

    async def _run(
        self,
        execution: Execution,
        graph: FlowGraph,
        snapshot: LeadSnapshot,
        event: ExecutionEvent,
        now: datetime,
        resuming_node: Optional[str],
    ) -> int:
        steps = 0
        while True:
            node = graph.node(execution.current_node_id)
            sequence = execution.step_sequence
            step_key = f"{execution.id}:{sequence}"
            try:
                if node is None:
                    raise ConfigurationError(
                        f"Node '{execution.current_node_id}' is not in flow version {graph.version}"
                    )
                ctx = StepContext(
                    execution=execution,
                    graph=graph,
                    node=node,
                    snapshot=snapshot,
                    event=event,
                    key=step_key,
                    now=now,
                    resuming=steps == 0 and node.id == resuming_node,
                )
                with self.tracer.span("node_step", node_id=node.id, node_type=node.type.value,
                                      execution_id=execution.id):
                    result = await self._handlers[node.type](ctx)
            except (AssignmentError, LoopLimitExceeded, ConfigurationError) as e:
                await self._fail(execution, snapshot, event, e, node)
                return steps + 1

            steps += 1
            self.metrics.inc("node_steps", {"type": node.type.value})
            execution.step_sequence += 1

            finished = True
            if result.suspend_with is not None:
                execution.suspend(result.suspend_with)
            elif result.next_node_id is None:
                execution.complete()
            else:
                execution.current_node_id = result.next_node_id
                finished = False

            execution.context_snapshot = snapshot.to_dict()
            if finished:
                execution.mark_processed(event.id)
            status = StepStatus.WAITING if result.suspend_with is not None else StepStatus.SUCCESS
            log = self._log_entry(execution, sequence, status, result.detail, now, node)
            await self.executions.commit_step(execution, result.mutations, log)
            if result.pick_key:
                await self.assignment.forget(result.pick_key)

            if finished:
                await self._publish_status(execution)
                return steps

    # node handlers ---------------------------------------------------------

    async def _send_message(self, ctx: StepContext) -> StepResult:
        node, data = ctx.node, ctx.node.data
        if node.type == NodeType.SEND_MESSAGE:
            kind, content = MessageKind.TEXT, render_template(data.message, ctx.snapshot)
        elif node.type == NodeType.REACT:
            kind, content = MessageKind.REACTION, data.emoji
        elif node.type == NodeType.COMMENT:
            kind, content = MessageKind.COMMENT, render_template(data.text, ctx.snapshot)
        else:
            kind, content = MessageKind.LIST, {
                "title": render_template(data.title, ctx.snapshot),
                "button_text": data.button_text,
                "items": list(data.items),
            }

        await self.messaging.send(ctx.execution.conversation_id, content, kind, ctx.key)
        self.metrics.inc("side_effects", {"kind": kind.value})
        detail = content["title"] if kind == MessageKind.LIST else content
        return StepResult(next_node_id=ctx.default_successor, detail=f"{kind.value}: {detail}")

    async def _condition(self, ctx: StepContext) -> StepResult:
        data = ctx.node.data
        result = self.evaluator.evaluate(data.field, data.operator, data.value, ctx.snapshot, ctx.now)
        detail = f"{data.field} {data.operator} {data.value!r} -> {result}"
        logger.debug(f"Condition {ctx.node.id} ({detail})")
        return StepResult(
            next_node_id=ctx.graph.successor(ctx.node.id, Outcome.from_bool(result)),
            detail=detail,
        )

    async def _validate(self, ctx: StepContext) -> StepResult:
        validation_type = ctx.node.data.validation_type
        result = classify_reply(validation_type, ctx.snapshot.message)
        return StepResult(
            next_node_id=ctx.graph.successor(ctx.node.id, Outcome.from_bool(result)),
            detail=f"{validation_type} -> {result}",
        )

    async def _wait(self, ctx: StepContext) -> StepResult:
        data = ctx.node.data
        if ctx.resuming:
            if data.mode == WaitMode.BUSINESS_HOURS and ctx.event.type != EventType.MANUAL_ADVANCE:
                # a late timer may land inside the next window
                condition = self.waits.compute_resume_condition(data, ctx.now)
                if not condition.is_due(ctx.now):
                    return StepResult(suspend_with=condition, detail=condition.reason)
            return StepResult(next_node_id=ctx.default_successor, detail=f"resumed by {ctx.event.type.value}")

        condition = self.waits.compute_resume_condition(data, ctx.now)
        if condition.is_due(ctx.now):
            return StepResult(next_node_id=ctx.default_successor, detail="no wait needed")
        return StepResult(suspend_with=condition, detail=condition.reason)

    async def _mutate(self, ctx: StepContext, mutation_type: MutationType, value: str) -> StepResult:
        mutation = LeadMutation(ctx.execution.lead_id, mutation_type, value, ctx.key)
        await self.crm.apply(mutation)
        self.metrics.inc("lead_mutations", {"type": mutation_type.value})
        return StepResult(
            next_node_id=ctx.default_successor,
            mutations=[mutation],
            detail=f"{mutation_type.value}: {value}",
        )

    async def _tag(self, ctx: StepContext) -> StepResult:
        tag, tags = ctx.node.data.tag, ctx.snapshot.tags
        if ctx.node.data.action == "remove":
            result = await self._mutate(ctx, MutationType.REMOVE_TAG, tag)
            if tag in tags:
                tags.remove(tag)
        else:
            result = await self._mutate(ctx, MutationType.ADD_TAG, tag)
            if tag not in tags:
                tags.append(tag)
        return result

    async def _move_stage(self, ctx: StepContext) -> StepResult:
        result = await self._mutate(ctx, MutationType.SET_STAGE, ctx.node.data.stage)
        ctx.snapshot.stage = ctx.node.data.stage
        return result

    async def _goto(self, ctx: StepContext) -> StepResult:
        target = ctx.node.data.target_node_id
        if ctx.graph.node(target) is None:
            raise ConfigurationError(f"goto target '{target}' does not exist", ctx.node.id)
        jumps = ctx.execution.record_jump(ctx.node.id)
        if jumps > self.settings.max_loop_jumps:
            raise LoopLimitExceeded(ctx.node.id, self.settings.max_loop_jumps, ctx.execution.jump_trail)
        return StepResult(next_node_id=target, detail=f"jump {jumps} to {target}")

    async def _assign(self, ctx: StepContext) -> StepResult:
        workspace_id = ctx.execution.workspace_id
        members = await self.crm.list_members(workspace_id)
        user_id = await self.assignment.resolve(ctx.node.data, members, workspace_id, ctx.key)
        result = await self._mutate(ctx, MutationType.SET_ASSIGNEE, user_id)
        ctx.snapshot.assignee_id = user_id
        result.pick_key = ctx.key
        return result

    async def _add_note(self, ctx: StepContext) -> StepResult:
        note = render_template(ctx.node.data.note, ctx.snapshot)
        return await self._mutate(ctx, MutationType.APPEND_NOTE, note)

    async def _action(self, ctx: StepContext) -> StepResult:
        if isinstance(ctx.node.data, NoteData):
            return await self._add_note(ctx)
        return await self._assign(ctx)

    async def _stop(self, ctx: StepContext) -> StepResult:
        return StepResult(next_node_id=None)

    # lifecycle helpers -----------------------------------------------------

    def _merge_inbound(self, execution: Execution, snapshot: LeadSnapshot, event: ExecutionEvent):
        """Conversation fields come from the execution, lead fields from the CRM"""
        previous = execution.context_snapshot
        snapshot.message = previous.get("message")
        snapshot.last_message = previous.get("last_message")
        snapshot.message_id = previous.get("message_id")
        if event.type != EventType.MESSAGE_RECEIVED or event.text is None:
            return
        # a redelivered message was already merged before the chain broke
        if event.message_id is not None and event.message_id == snapshot.message_id:
            return
        snapshot.last_message = snapshot.message
        snapshot.message = event.text
        snapshot.message_id = event.message_id

    def _discard(self, execution: Execution, event: ExecutionEvent, reason: str) -> DispatchResult:
        logger.debug(f"Discarded {event.type.value} {event.id} for execution {execution.id}: {reason}")
        self.metrics.inc("events_discarded", {"reason": reason})
        return DispatchResult(execution=execution, applied=False, reason=reason)

    async def _cancel(self, execution: Execution, event: ExecutionEvent, reason: str) -> DispatchResult:
        execution.stop(reason)
        execution.mark_processed(event.id)
        log = self._log_entry(execution, execution.step_sequence, StepStatus.SKIPPED, reason, self.clock.now())
        await self.executions.commit_step(execution, [], log)
        await self._publish_status(execution)
        return DispatchResult(execution=execution, reason=reason)

    async def _fail(
        self,
        execution: Execution,
        snapshot: LeadSnapshot,
        event: ExecutionEvent,
        error: Exception,
        node: Optional[BotNode] = None,
    ):
        if isinstance(error, LoopLimitExceeded):
            logger.error(f"Execution {execution.id} exceeded the loop limit, goto chain: "
                         f"{' -> '.join(error.trail)}")
        else:
            logger.error(f"Execution {execution.id} failed at {execution.current_node_id}: {error}")
        execution.fail(error, getattr(error, "node_id", None) or execution.current_node_id)
        execution.context_snapshot = snapshot.to_dict()
        execution.mark_processed(event.id)
        log = self._log_entry(
            execution, execution.step_sequence, StepStatus.ERROR, str(error), self.clock.now(), node
        )
        await self.executions.commit_step(execution, [], log)
        await self._publish_status(execution)

    async def cancel(self, execution: Execution, reason: str) -> Execution:
        """External cancellation of a non-terminal execution"""
        execution.stop(reason)
        log = self._log_entry(execution, execution.step_sequence, StepStatus.SKIPPED, reason, self.clock.now())
        await self.executions.commit_step(execution, [], log)
        await self._publish_status(execution)
        return execution

    def _log_entry(
        self,
        execution: Execution,
        sequence: int,
        status: StepStatus,
        message: str,
        now: datetime,
        node: Optional[BotNode] = None,
    ) -> StepLogEntry:
        return StepLogEntry(
            execution_id=execution.id,
            step_sequence=sequence,
            node_id=node.id if node else execution.current_node_id,
            node_type=node.type.value if node else None,
            status=status,
            message=message or "",
            created_at=now,
        )

    async def _publish_status(self, execution: Execution):
        status = execution.status.value
        payload = {
            "execution_id": execution.id,
            "flow_id": execution.flow_id,
            "flow_version": execution.flow_version,
            "lead_id": execution.lead_id,
            "status": status,
            "node_id": execution.current_node_id,
            "wait_until": execution.wait_until.isoformat() if execution.wait_until else None,
            "error": execution.error,
        }
        if execution.is_terminal_state():
            self.metrics.inc("executions_finished", {"status": status})
        self.event_logger.log(f"execution.{status}", **payload)
        if self.event_bus is not None:
            await self.event_bus.publish(EXECUTION_EVENTS_TOPIC, f"execution.{status}", payload)
