"""
Flow parser: turns stored bot definitions into runtime models
"""
import json
from datetime import time
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from ..exceptions import ConfigurationError, FlowParseError
from ..models.flow import (
    AssignData, AssignMode, BotFlow, BotNode, CommentData, ConditionData, Edge,
    FlowTrigger, GotoData, MoveStageData, NodeType, NoteData, Outcome, ReactData,
    SendMessageData, StopData, TagData, ValidateData, WaitData, WaitMode,
    WhatsAppListData, WEEKDAYS,
)


VALIDATION_TYPES = ("any", "number", "email", "text", "cpf")
TIMER_UNITS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}
_TRUE_HANDLES = {"true", "yes", "sim"}
_FALSE_HANDLES = {"false", "no", "nao", "não"}


def parse_clock(value: str, node_id: str = None) -> time:
    """Parse an ``HH:MM`` literal"""
    try:
        hours, minutes = str(value).strip().split(":")
        return time(int(hours), int(minutes))
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid time of day '{value}'", node_id)


def format_clock(value: time) -> str:
    return value.strftime("%H:%M")


class FlowParser:
    """Parser that understands the flow_data format (dict, JSON or YAML)"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.node_parsers = {
            NodeType.SEND_MESSAGE: self._parse_send_message,
            NodeType.REACT: self._parse_react,
            NodeType.COMMENT: self._parse_comment,
            NodeType.WHATSAPP_LIST: self._parse_whatsapp_list,
            NodeType.CONDITION: self._parse_condition,
            NodeType.ACTION: self._parse_action,
            NodeType.ROUND_ROBIN: self._parse_assignment,
            NodeType.CHANGE_RESPONSIBLE: self._parse_assignment,
            NodeType.WAIT: self._parse_wait,
            NodeType.TAG: self._parse_tag,
            NodeType.MOVE_STAGE: self._parse_move_stage,
            NodeType.VALIDATE: self._parse_validate,
            NodeType.GOTO: self._parse_goto,
            NodeType.STOP: lambda node_id, data: StopData(),
            NodeType.ADD_NOTE: self._parse_note,
        }

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> BotFlow:
        """
        Parse a flow definition

        Args:
            source: a file path, a YAML/JSON string, or an already decoded dict

        Returns:
            BotFlow: the parsed, not yet validated, flow
        """
        if isinstance(source, dict):
            return self.parse_dict(source)

        if isinstance(source, (str, Path)):
            path = Path(source)
            try:
                is_file = path.exists() and path.is_file()
            except OSError:
                is_file = False
            if is_file:
                return self.parse_file(path)
            return self.parse_string(str(source))

        raise FlowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path) -> BotFlow:
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise FlowParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        return self.parse_dict(self.parsers[suffix](content))

    def parse_string(self, content: str) -> BotFlow:
        # JSON is a subset of YAML, so YAML alone covers both
        data = self._parse_yaml(content)
        if not isinstance(data, dict):
            raise FlowParseError("Flow definition must be a mapping")
        return self.parse_dict(data)

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise FlowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise FlowParseError(f"Failed to parse JSON: {e}")

    def parse_dict(self, data: Dict[str, Any]) -> BotFlow:
        if 'flow' in data:
            data = data['flow']

        flow_data = data.get('flow_data') or data
        if 'id' not in data:
            raise FlowParseError("Flow must include an 'id'")

        nodes: Dict[str, BotNode] = {}
        duplicates: List[str] = []
        for node_data in flow_data.get('nodes') or []:
            node = self._parse_node(node_data)
            if node.id in nodes:
                # keep the first; graph validation reports the duplicate
                duplicates.append(node.id)
                continue
            nodes[node.id] = node

        edges = [self._parse_edge(edge_data) for edge_data in flow_data.get('edges') or []]
        metadata = dict(data.get('metadata') or {})
        if duplicates:
            metadata['duplicate_nodes'] = duplicates

        return BotFlow(
            id=str(data['id']),
            workspace_id=str(data.get('workspace_id', '')),
            name=data.get('name', ''),
            nodes=nodes,
            edges=edges,
            version=int(data.get('version') or 0),
            entry_node_id=data.get('entry_node_id'),
            trigger=self._parse_trigger(data),
            is_active=bool(data.get('is_active', True)),
            metadata=metadata,
        )

    def _parse_trigger(self, data: Dict[str, Any]) -> FlowTrigger:
        trigger = data.get('trigger')
        if isinstance(trigger, dict):
            value = (
                trigger.get('value') or trigger.get('stage')
                or trigger.get('tag') or trigger.get('keyword')
            )
            return FlowTrigger(
                type=trigger.get('type', 'manual'),
                value=value,
                instance_name=trigger.get('instance_name') or None,
            )

        trigger_type = data.get('trigger_type')
        if not trigger_type:
            return FlowTrigger()
        config = data.get('trigger_config') or {}
        value = (
            config.get('stage_id') or config.get('tag_id')
            or config.get('keyword') or config.get('value')
        )
        return FlowTrigger(
            type=trigger_type,
            value=value,
            instance_name=config.get('instance_name') or None,
        )

    def _parse_node(self, spec: Dict[str, Any]) -> BotNode:
        if 'id' not in spec or 'type' not in spec:
            raise FlowParseError("Node must include 'id' and 'type'")

        node_id = str(spec['id'])
        try:
            node_type = NodeType(spec['type'])
        except ValueError:
            raise ConfigurationError(f"Unknown node type '{spec['type']}'", node_id)

        data = spec.get('data') or {}
        return BotNode(
            id=node_id,
            type=node_type,
            data=self.node_parsers[node_type](node_id, data),
            name=spec.get('name'),
        )

    def _require(self, node_id: str, data: Dict[str, Any], *keys: str) -> str:
        for key in keys:
            value = data.get(key)
            if value not in (None, ""):
                return str(value)
        raise ConfigurationError(f"Missing '{keys[0]}'", node_id)

    def _parse_send_message(self, node_id: str, data: Dict[str, Any]) -> SendMessageData:
        return SendMessageData(
            message=self._require(node_id, data, 'message'),
            instance_name=data.get('instance_name') or data.get('instanceName'),
        )

    def _parse_react(self, node_id: str, data: Dict[str, Any]) -> ReactData:
        return ReactData(emoji=self._require(node_id, data, 'emoji'))

    def _parse_comment(self, node_id: str, data: Dict[str, Any]) -> CommentData:
        return CommentData(text=self._require(node_id, data, 'text'))

    def _parse_whatsapp_list(self, node_id: str, data: Dict[str, Any]) -> WhatsAppListData:
        items = tuple(str(item) for item in data.get('items') or [])
        return WhatsAppListData(
            title=self._require(node_id, data, 'title'),
            button_text=data.get('button_text') or data.get('buttonText') or "",
            items=items,
        )

    def _parse_condition(self, node_id: str, data: Dict[str, Any]) -> ConditionData:
        field_name = data.get('field') or 'message'
        default_operator = 'between' if field_name == 'current_time' else 'contains'
        value = data.get('value')
        return ConditionData(
            field=field_name,
            operator=data.get('operator') or default_operator,
            value="" if value is None else str(value),
        )

    def _parse_wait(self, node_id: str, data: Dict[str, Any]) -> WaitData:
        raw_mode = data.get('wait_mode') or data.get('wait_for') or 'timer'
        if raw_mode == 'wait_message':
            raw_mode = 'message'
        try:
            mode = WaitMode(raw_mode)
        except ValueError:
            raise ConfigurationError(f"Unknown wait mode '{raw_mode}'", node_id)

        if mode == WaitMode.TIMER:
            return WaitData(mode=mode, seconds=self._timer_seconds(node_id, data))

        if mode == WaitMode.BUSINESS_HOURS:
            days = tuple(data.get('days') or WEEKDAYS[:5])
            unknown = [day for day in days if day not in WEEKDAYS]
            if unknown:
                raise ConfigurationError(f"Unknown weekdays {unknown}", node_id)
            start = parse_clock(data.get('start') or '09:00', node_id)
            end = parse_clock(data.get('end') or '18:00', node_id)
            if start == end:
                raise ConfigurationError("Business-hours window is empty", node_id)
            return WaitData(mode=mode, days=days, start=start, end=end)

        return WaitData(mode=mode)

    def _timer_seconds(self, node_id: str, data: Dict[str, Any]) -> int:
        try:
            if data.get('seconds') is not None:
                total = int(data['seconds'])
            elif any(key in data for key in ('hours', 'minutes', 'secs')):
                total = (
                    int(data.get('hours') or 0) * 3600
                    + int(data.get('minutes') or 0) * 60
                    + int(data.get('secs') or 0)
                )
            elif data.get('duration') is not None:
                unit = data.get('unit') or 'minutes'
                if unit not in TIMER_UNITS:
                    raise ConfigurationError(f"Unknown timer unit '{unit}'", node_id)
                total = int(data['duration']) * TIMER_UNITS[unit]
            else:
                total = 0
        except (TypeError, ValueError):
            raise ConfigurationError("Timer duration must be numeric", node_id)

        if total < 0:
            raise ConfigurationError("Timer duration cannot be negative", node_id)
        return total

    def _parse_tag(self, node_id: str, data: Dict[str, Any]) -> TagData:
        action = data.get('action') or 'add'
        if action not in ('add', 'remove'):
            raise ConfigurationError(f"Invalid tag action '{action}'", node_id)
        return TagData(tag=self._require(node_id, data, 'tag_id', 'tag_name', 'tag'), action=action)

    def _parse_move_stage(self, node_id: str, data: Dict[str, Any]) -> MoveStageData:
        return MoveStageData(stage=self._require(node_id, data, 'stage_id', 'stage_name', 'stage'))

    def _parse_validate(self, node_id: str, data: Dict[str, Any]) -> ValidateData:
        validation_type = data.get('validation_type') or 'any'
        if validation_type not in VALIDATION_TYPES:
            raise ConfigurationError(f"Unknown validation type '{validation_type}'", node_id)
        return ValidateData(validation_type=validation_type)

    def _parse_goto(self, node_id: str, data: Dict[str, Any]) -> GotoData:
        return GotoData(target_node_id=str(data.get('target_node_id') or ''))

    def _parse_assignment(self, node_id: str, data: Dict[str, Any]) -> AssignData:
        user_id = data.get('user_id') or None
        raw_mode = data.get('mode')
        if raw_mode is None:
            raw_mode = 'specific' if user_id else 'round_robin'
        try:
            mode = AssignMode(raw_mode)
        except ValueError:
            raise ConfigurationError(f"Unknown assignment mode '{raw_mode}'", node_id)
        users = tuple(str(user) for user in data.get('users') or [])
        return AssignData(mode=mode, user_id=user_id, users=users)

    def _parse_note(self, node_id: str, data: Dict[str, Any]) -> NoteData:
        return NoteData(note=self._require(node_id, data, 'note', 'text'))

    def _parse_action(self, node_id: str, data: Dict[str, Any]) -> Union[AssignData, NoteData]:
        action_type = data.get('action_type') or 'change_responsible'
        if action_type == 'add_note':
            return self._parse_note(node_id, data)
        if action_type == 'change_responsible':
            return self._parse_assignment(node_id, data)
        raise ConfigurationError(f"Unsupported action type '{action_type}'", node_id)

    def _parse_edge(self, spec: Dict[str, Any]) -> Edge:
        source = spec.get('source', spec.get('from'))
        target = spec.get('target', spec.get('to'))
        if not source or not target:
            raise FlowParseError("Edge must include 'source/target' or 'from/to'")

        handle = spec.get('outcome') or spec.get('label') or spec.get('sourceHandle') or ''
        handle = str(handle).strip().lower()
        if handle in _TRUE_HANDLES:
            outcome = Outcome.TRUE
        elif handle in _FALSE_HANDLES:
            outcome = Outcome.FALSE
        else:
            outcome = Outcome.DEFAULT

        if spec.get("id"):
            return Edge(source=str(source), target=str(target), outcome=outcome, id=str(spec["id"]))
        return Edge(source=str(source), target=str(target), outcome=outcome)

    def to_dict(self, flow: BotFlow) -> Dict[str, Any]:
        return {
            "id": flow.id,
            "workspace_id": flow.workspace_id,
            "name": flow.name,
            "version": flow.version,
            "entry_node_id": flow.entry_node_id,
            "is_active": flow.is_active,
            "trigger": {
                "type": flow.trigger.type,
                "value": flow.trigger.value,
                "instance_name": flow.trigger.instance_name,
            },
            "metadata": flow.metadata,
            "nodes": [self._node_to_dict(node) for node in flow.nodes.values()],
            "edges": [self._edge_to_dict(edge) for edge in flow.edges],
        }

    def serialize(self, flow: BotFlow, fmt: str = "json") -> str:
        data = {"flow": self.to_dict(flow)}
        if fmt == "json":
            return json.dumps(data, ensure_ascii=False, indent=2)
        if fmt == "yaml":
            return yaml.safe_dump(data, allow_unicode=True, sort_keys=False)
        raise FlowParseError(f"Unsupported serialisation format: {fmt}")

    def _node_to_dict(self, node: BotNode) -> Dict[str, Any]:
        payload = {"id": node.id, "type": node.type.value, "data": self._data_to_dict(node)}
        if node.type == NodeType.ACTION:
            action_type = "add_note" if isinstance(node.data, NoteData) else "change_responsible"
            payload["data"]["action_type"] = action_type
        if node.name:
            payload["name"] = node.name
        return payload

    def _data_to_dict(self, node: BotNode) -> Dict[str, Any]:
        data = node.data
        if isinstance(data, WaitData):
            payload: Dict[str, Any] = {"wait_mode": data.mode.value}
            if data.mode == WaitMode.TIMER:
                payload["seconds"] = data.seconds
            elif data.mode == WaitMode.BUSINESS_HOURS:
                payload.update(
                    days=list(data.days),
                    start=format_clock(data.start),
                    end=format_clock(data.end),
                )
            return payload
        if isinstance(data, TagData):
            return {"tag_id": data.tag, "action": data.action}
        if isinstance(data, MoveStageData):
            return {"stage_id": data.stage}
        if isinstance(data, AssignData):
            return {"mode": data.mode.value, "user_id": data.user_id, "users": list(data.users)}
        if isinstance(data, WhatsAppListData):
            return {"title": data.title, "button_text": data.button_text, "items": list(data.items)}
        return dict(vars(data))

    def _edge_to_dict(self, edge: Edge) -> Dict[str, Any]:
        payload = {"id": edge.id, "source": edge.source, "target": edge.target}
        if edge.outcome != Outcome.DEFAULT:
            payload["outcome"] = edge.outcome.value
        return payload
