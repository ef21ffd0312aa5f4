"""
Sales-bot engine facade
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from ..config import EngineSettings
from ..exceptions import ExecutionNotFoundError, FlowNotFoundError, InfrastructureError
from ..integrations.clock import Clock, SystemClock
from ..integrations.crm import InMemoryLeadStore, LeadGateway
from ..integrations.event_bus import EventBus
from ..integrations.messaging import InMemoryMessagingGateway, MessagingGateway
from ..models.execution import Execution, ExecutionEvent, ExecutionStatus
from ..models.flow import MESSAGE_TRIGGER, BotFlow
from ..monitoring import EventLogger, MetricsRecorder, TracingManager
from ..storage.repository import (
    ExecutionRepository, FlowRepository, InMemoryExecutionRepository,
    InMemoryFlowRepository, InMemoryRotationCursorRepository, RotationCursorRepository,
)
from .assignment import AssignmentResolver
from .dispatcher import EventDispatcher
from .graph import FlowGraph, ensure_valid, validate_flow
from .interpreter import DispatchResult, FlowInterpreter
from .parser import FlowParser
from .scheduler import TimerScheduler


logger = logging.getLogger(__name__)

FlowDefinition = Union[str, Dict[str, Any], BotFlow]


class SalesBotEngine:
    """Publishes flows, starts executions and routes inbound events to them"""

    def __init__(
        self,
        flow_repository: FlowRepository = None,
        execution_repository: ExecutionRepository = None,
        rotation_repository: RotationCursorRepository = None,
        messaging: MessagingGateway = None,
        crm: LeadGateway = None,
        clock: Clock = None,
        event_bus: EventBus = None,
        settings: EngineSettings = None,
        metrics: MetricsRecorder = None,
        scheduler: TimerScheduler = None,
        sleep=None,
    ):
        self.settings = settings or EngineSettings()
        self.flow_repository = flow_repository or InMemoryFlowRepository()
        self.execution_repository = execution_repository or InMemoryExecutionRepository()
        self.rotation_repository = rotation_repository or InMemoryRotationCursorRepository()
        self.messaging = messaging or InMemoryMessagingGateway()
        self.crm = crm or InMemoryLeadStore()
        self.clock = clock or SystemClock()
        self.event_bus = event_bus or EventBus()
        self.metrics = metrics or MetricsRecorder()
        self.parser = FlowParser()

        self.interpreter = FlowInterpreter(
            flows=self.flow_repository,
            executions=self.execution_repository,
            messaging=self.messaging,
            crm=self.crm,
            clock=self.clock,
            assignment=AssignmentResolver(self.rotation_repository),
            settings=self.settings,
            event_bus=self.event_bus,
            metrics=self.metrics,
            tracer=TracingManager(self.metrics),
            event_logger=EventLogger(),
        )
        self.scheduler = scheduler or TimerScheduler(
            self.clock, redelivery_delay=self.settings.retry_max_delay
        )
        dispatcher_options = {"sleep": sleep} if sleep is not None else {}
        self.dispatcher = EventDispatcher(
            interpreter=self.interpreter,
            executions=self.execution_repository,
            scheduler=self.scheduler,
            settings=self.settings,
            metrics=self.metrics,
            **dispatcher_options,
        )

    async def start(self):
        """Re-arm pending timers and start the background timer loop"""
        await self.recover()
        await self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()

    # flows -------------------------------------------------------------------

    def parse_flow(self, definition: FlowDefinition) -> BotFlow:
        if isinstance(definition, BotFlow):
            return definition
        return self.parser.parse(definition)

    def validate_flow(self, definition: FlowDefinition) -> List[Dict[str, Any]]:
        return validate_flow(self.parse_flow(definition))

    async def publish_flow(self, definition: FlowDefinition) -> BotFlow:
        """
        Validate and store a new immutable version of a flow

        Raises:
            FlowParseError / ConfigurationError: unreadable definition
            FlowValidationError: structural issues, listed on ``issues``
        """
        flow = self.parse_flow(definition)
        ensure_valid(flow)
        version = await self.flow_repository.publish(flow)
        logger.info(f"Published flow {flow.id} version {version}")
        await self.event_bus.publish(
            "salesbot.flow.events", "flow.published",
            {"flow_id": flow.id, "version": version, "workspace_id": flow.workspace_id},
        )
        return await self.flow_repository.load(flow.id, version)

    async def unpublish_flow(self, flow_id: str) -> None:
        """Deactivate a flow; its executions stop on their next dispatch"""
        if not await self.flow_repository.set_active(flow_id, False):
            raise FlowNotFoundError(flow_id)
        logger.info(f"Unpublished flow {flow_id}")
        await self.event_bus.publish(
            "salesbot.flow.events", "flow.unpublished", {"flow_id": flow_id}
        )

    async def get_flow(self, flow_id: str, version: Optional[int] = None) -> BotFlow:
        return await self.flow_repository.load(flow_id, version)

    async def load_graph(self, flow_id: str, version: Optional[int] = None) -> FlowGraph:
        return self.interpreter.graph_for(await self.get_flow(flow_id, version))

    # executions --------------------------------------------------------------

    async def start_execution(
        self,
        flow_id: str,
        lead_id: str,
        conversation_id: Optional[str] = None,
        initial_message: Optional[str] = None,
    ) -> Execution:
        """Start (or return the already running) execution of a lead in a flow"""
        existing = await self.execution_repository.find_active(lead_id, flow_id)
        if existing is not None:
            logger.debug(f"Lead {lead_id} already has execution {existing.id} in {flow_id}")
            return existing

        flow = await self.flow_repository.load(flow_id)
        if not flow.is_active:
            raise FlowNotFoundError(flow_id)
        graph = self.interpreter.graph_for(flow)

        execution = Execution(
            flow_id=flow.id,
            workspace_id=flow.workspace_id,
            lead_id=lead_id,
            flow_version=flow.version,
            current_node_id=graph.entry_node_id,
            conversation_id=conversation_id,
            created_at=self.clock.now(),
        )
        if initial_message is not None:
            execution.context_snapshot["message"] = initial_message
        await self.execution_repository.save(execution)
        await self.flow_repository.record_execution(flow.id)
        self.metrics.inc("executions_started", {"flow_id": flow.id})
        logger.info(f"Started execution {execution.id} of {flow.id} v{flow.version} for lead {lead_id}")

        result = await self.dispatcher.dispatch(execution.id, ExecutionEvent.flow_started(execution.id))
        return result.execution if result else execution

    async def receive_message(
        self,
        lead_id: str,
        text: str,
        message_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        instance_name: Optional[str] = None,
    ) -> List[DispatchResult]:
        """
        Route an inbound message to every in-progress execution of the lead

        A failing execution does not keep the message from the others; its
        event is queued for redelivery. When ``workspace_id`` is given and no
        execution consumed the message, the first active ``message_received``
        or ``keyword`` flow that matches (and is not cooling down for the
        lead) is started with the message.
        """
        message_id = message_id or uuid4().hex
        results = []
        for execution in await self.execution_repository.list_by_lead(lead_id):
            if execution.is_terminal_state():
                continue
            event = ExecutionEvent.message_received(execution.id, text, message_id)
            try:
                result = await self.dispatcher.dispatch(execution.id, event)
            except InfrastructureError as e:
                logger.error(f"Message {message_id} not yet applied to execution {execution.id}: {e}")
                continue
            if result is not None:
                results.append(result)

        if workspace_id is None or any(result.applied for result in results):
            return results

        for flow in await self.flow_repository.list_active(workspace_id):
            if not flow.trigger.matches(MESSAGE_TRIGGER, text, instance_name):
                continue
            if not await self._can_trigger(flow, lead_id):
                continue
            execution = await self.start_execution(flow.id, lead_id, initial_message=text)
            results.append(DispatchResult(execution=execution, reason="triggered"))
            break
        return results

    async def advance(self, execution_id: str) -> Optional[DispatchResult]:
        """Manually release the execution's wait, if any, and keep stepping"""
        await self._require_execution(execution_id)
        return await self.dispatcher.dispatch(execution_id, ExecutionEvent.manual_advance(execution_id))

    async def dispatch(self, execution_id: str, event: ExecutionEvent) -> Optional[DispatchResult]:
        return await self.dispatcher.dispatch(execution_id, event)

    async def cancel_execution(self, execution_id: str, reason: str = "cancelled") -> Execution:
        return await self.dispatcher.cancel(execution_id, reason)

    async def on_lead_event(
        self,
        workspace_id: str,
        lead_id: str,
        event_type: str,
        value: Optional[str] = None,
        instance_name: Optional[str] = None,
    ) -> List[Execution]:
        """Start every active flow of the workspace whose trigger matches"""
        started = []
        for flow in await self.flow_repository.list_active(workspace_id):
            if not flow.trigger.matches(event_type, value, instance_name):
                continue
            if await self._can_trigger(flow, lead_id):
                started.append(await self.start_execution(flow.id, lead_id))
        return started

    async def _can_trigger(self, flow: BotFlow, lead_id: str) -> bool:
        """False while the lead is inside the trigger's re-trigger cooldown"""
        cooldown = flow.trigger.cooldown
        if cooldown is None:
            return True
        since = self.clock.now() - cooldown
        for execution in await self.execution_repository.list_by_lead(lead_id):
            if execution.flow_id == flow.id and execution.created_at >= since:
                logger.debug(f"Lead {lead_id} triggered {flow.id} less than {cooldown} ago")
                return False
        return True

    async def run_due_timers(self, now: Optional[datetime] = None) -> int:
        return await self.scheduler.run_due(now)

    async def recover(self) -> int:
        """
        Re-arm timers of waiting executions and continue interrupted ones

        Returns the number of executions that were re-armed or resumed.
        """
        count = 0
        for execution in await self.execution_repository.list_by_status(ExecutionStatus.WAITING):
            if execution.wait_until is None:
                continue
            timer = ExecutionEvent.timer_elapsed(execution.id, execution.step_sequence)
            await self.scheduler.schedule_at(execution.wait_until, execution.id, timer)
            count += 1

        for execution in await self.execution_repository.list_by_status(ExecutionStatus.RUNNING):
            event = ExecutionEvent.manual_advance(execution.id)
            await self.scheduler.schedule_at(self.clock.now(), execution.id, event)
            count += 1

        if count:
            logger.info(f"Recovered {count} pending executions")
        return count

    async def get_execution(self, execution_id: str) -> Execution:
        return await self._require_execution(execution_id)

    async def get_execution_status(self, execution_id: str) -> Dict[str, Any]:
        execution = await self._require_execution(execution_id)
        mutations = await self.execution_repository.list_mutations(execution_id)
        step_logs = await self.execution_repository.list_step_logs(execution_id)
        return {
            "execution_id": execution.id,
            "flow_id": execution.flow_id,
            "flow_version": execution.flow_version,
            "lead_id": execution.lead_id,
            "status": execution.status.value,
            "current_node_id": execution.current_node_id,
            "wait_until": execution.wait_until.isoformat() if execution.wait_until else None,
            "wait_predicate": execution.wait_predicate,
            "step_sequence": execution.step_sequence,
            "jump_count": execution.jump_count,
            "error": execution.error,
            "created_at": execution.created_at.isoformat(),
            "updated_at": execution.updated_at.isoformat(),
            "finished_at": execution.finished_at.isoformat() if execution.finished_at else None,
            "mutations": [
                {"type": m.type.value, "value": m.value, "key": m.key} for m in mutations
            ],
            "steps": [entry.to_dict() for entry in step_logs],
        }

    async def _require_execution(self, execution_id: str) -> Execution:
        execution = await self.execution_repository.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution
