"""
Immutable flow graph and publish-time validation
"""
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..exceptions import FlowValidationError
from ..models.flow import BotFlow, BotNode, Edge, GotoData, NodeType, Outcome


SuccessorKey = Tuple[str, Outcome]

# control leaves these nodes without following an edge
TERMINAL_TYPES = frozenset({NodeType.STOP, NodeType.GOTO})


def _normalized_outcome(flow: BotFlow, edge: Edge) -> Outcome:
    # only branching nodes have true/false ports
    node = flow.nodes.get(edge.source)
    if node is not None and node.is_branching:
        return edge.outcome
    return Outcome.DEFAULT


class FlowGraph:
    """
    Read-only view of one published flow version

    Shared by every execution pinned to the version; successor lookups are
    a single dict access.
    """

    def __init__(
        self,
        flow_id: str,
        version: int,
        workspace_id: str,
        entry_node_id: str,
        nodes: Mapping[str, BotNode],
        successors: Mapping[SuccessorKey, str],
    ):
        self.flow_id = flow_id
        self.version = version
        self.workspace_id = workspace_id
        self.entry_node_id = entry_node_id
        self._nodes = MappingProxyType(dict(nodes))
        self._successors = MappingProxyType(dict(successors))

    @classmethod
    def build(cls, flow: BotFlow) -> "FlowGraph":
        successors: Dict[SuccessorKey, str] = {}
        for edge in flow.edges:
            key = (edge.source, _normalized_outcome(flow, edge))
            successors.setdefault(key, edge.target)
        return cls(
            flow_id=flow.id,
            version=flow.version,
            workspace_id=flow.workspace_id,
            entry_node_id=flow.resolve_entry_node(),
            nodes=flow.nodes,
            successors=successors,
        )

    @property
    def nodes(self) -> Mapping[str, BotNode]:
        return self._nodes

    def node(self, node_id: str) -> Optional[BotNode]:
        return self._nodes.get(node_id)

    def successor(self, node_id: str, outcome: Outcome = Outcome.DEFAULT) -> Optional[str]:
        return self._successors.get((node_id, outcome))

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"FlowGraph(flow_id={self.flow_id!r}, version={self.version}, nodes={len(self)})"


def _issue(kind: str, message: str, node_id: str = None, **extra: Any) -> Dict[str, Any]:
    issue = {"kind": kind, "node_id": node_id, "message": message}
    issue.update(extra)
    return issue


def _find_cycles(flow: BotFlow) -> List[List[str]]:
    """Cycles along edges; goto jumps are not edges and are never counted"""
    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in flow.nodes}
    for edge in flow.edges:
        if edge.source in adjacency and edge.target in adjacency:
            adjacency[edge.source].append(edge.target)

    white, grey, black = 0, 1, 2
    color = {node_id: white for node_id in adjacency}
    cycles: List[List[str]] = []

    for root in adjacency:
        if color[root] != white:
            continue
        path: List[str] = [root]
        stack = [(root, iter(adjacency[root]))]
        color[root] = grey
        while stack:
            node_id, children = stack[-1]
            child = next(children, None)
            if child is None:
                color[node_id] = black
                stack.pop()
                path.pop()
                continue
            if color[child] == grey:
                cycles.append(path[path.index(child):] + [child])
            elif color[child] == white:
                color[child] = grey
                path.append(child)
                stack.append((child, iter(adjacency[child])))
    return cycles


def validate_flow(flow: BotFlow) -> List[Dict[str, Any]]:
    """
    Check the structural rules a flow must satisfy before publishing

    Returns:
        A list of issue dicts (``kind``, ``node_id``, ``message``); empty
        when the flow is valid.
    """
    issues: List[Dict[str, Any]] = []

    for node_id in flow.metadata.get("duplicate_nodes", []):
        issues.append(_issue("duplicate_node", f"Node id '{node_id}' is used twice", node_id))

    entry = flow.resolve_entry_node()
    if entry is None or entry not in flow.nodes:
        issues.append(_issue("missing_entry", "Flow has no valid entry node", entry))

    seen: Dict[SuccessorKey, str] = {}
    for edge in flow.edges:
        if edge.source not in flow.nodes or edge.target not in flow.nodes:
            issues.append(_issue(
                "dangling_edge",
                f"Edge {edge.source} -> {edge.target} leaves the flow",
                edge.source, edge_id=edge.id,
            ))
            continue
        source_type = flow.nodes[edge.source].type
        if source_type in TERMINAL_TYPES:
            issues.append(_issue(
                "unexpected_successor",
                f"{source_type.value} node cannot have outgoing edges",
                edge.source, edge_id=edge.id,
            ))
            continue
        key = (edge.source, _normalized_outcome(flow, edge))
        if key in seen and seen[key] != edge.target:
            issues.append(_issue(
                "duplicate_successor",
                f"Node has two '{key[1].value}' successors",
                edge.source, edge_id=edge.id,
            ))
        seen.setdefault(key, edge.target)

    for node in flow.nodes.values():
        if node.is_branching:
            for outcome in (Outcome.TRUE, Outcome.FALSE):
                if (node.id, outcome) not in seen:
                    issues.append(_issue(
                        "missing_branch",
                        f"{node.type.value} node has no '{outcome.value}' successor",
                        node.id, outcome=outcome.value,
                    ))
        if node.type == NodeType.GOTO and isinstance(node.data, GotoData):
            if node.data.target_node_id not in flow.nodes:
                issues.append(_issue(
                    "dangling_edge",
                    f"goto target '{node.data.target_node_id}' is not in the flow",
                    node.id,
                ))

    for cycle in _find_cycles(flow):
        issues.append(_issue(
            "cyclic_default_path",
            "Cycle without a goto: " + " -> ".join(cycle),
            cycle[0], cycle=cycle,
        ))

    return issues


def ensure_valid(flow: BotFlow) -> FlowGraph:
    """Validate and build, raising ``FlowValidationError`` on any issue"""
    issues = validate_flow(flow)
    if issues:
        raise FlowValidationError(issues)
    return FlowGraph.build(flow)
