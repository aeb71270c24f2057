"""
Publish-time validation of flow graphs.

Pure functions: no database access, no logging, no state mutation. Every
check collects error strings instead of stopping at the first problem so the
builder can show the operator all of them at once.
"""

from collections import deque
from typing import List, Optional, Set, Tuple

from pydantic import TypeAdapter, ValidationError

from models.flow_data import (
    DraftGraph,
    FlowGraph,
    FlowNode,
    NodeType,
    TRUE_BRANCH,
    FALSE_BRANCH,
    TIMEOUT_BRANCH,
)
from exceptions.flow_exception import FlowValidationException


_node_adapter = TypeAdapter(FlowNode)


def _format_pydantic_error(node_id: str, error: ValidationError) -> List[str]:
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ()) if part)
        prefix = f"node '{node_id}'"
        if location:
            prefix = f"{prefix} field '{location}'"
        messages.append(f"{prefix}: {detail.get('msg')}")
    return messages


def parse_nodes(raw_nodes: List[dict]) -> Tuple[list, List[str]]:
    """
    Parse raw draft nodes into the typed node union.

    Returns:
        (parsed nodes, errors). Nodes that fail to parse are left out of the list.
    """
    nodes = []
    errors: List[str] = []
    for index, raw_node in enumerate(raw_nodes):
        node_id = raw_node.get("id") if isinstance(raw_node, dict) else None
        if not node_id:
            errors.append(f"node at position {index} has no id")
            continue
        try:
            nodes.append(_node_adapter.validate_python(raw_node))
        except ValidationError as e:
            errors.extend(_format_pydantic_error(node_id, e))
    return nodes, errors


def validate_unique_ids(graph: FlowGraph) -> List[str]:
    errors = []
    seen: Set[str] = set()
    for node in graph.nodes:
        if node.id in seen:
            errors.append(f"duplicate node id '{node.id}'")
        seen.add(node.id)
    seen_edges: Set[str] = set()
    for edge in graph.edges:
        if edge.id in seen_edges:
            errors.append(f"duplicate edge id '{edge.id}'")
        seen_edges.add(edge.id)
    return errors


def validate_edge_references(graph: FlowGraph, known_ids: Set[str]) -> List[str]:
    """
    Every edge must connect two nodes of the same graph.

    known_ids includes nodes that failed to parse so a broken node does not
    also produce a dangling edge error for each of its edges.
    """
    errors = []
    for edge in graph.edges:
        if edge.sourceNodeId not in known_ids:
            errors.append(f"edge '{edge.id}' source '{edge.sourceNodeId}' does not exist")
        if edge.targetNodeId not in known_ids:
            errors.append(f"edge '{edge.id}' target '{edge.targetNodeId}' does not exist")
    return errors


def validate_trigger(graph: FlowGraph) -> List[str]:
    triggers = [node for node in graph.nodes if node.type == NodeType.TRIGGER.value]
    if len(triggers) == 0:
        return ["flow has no trigger node"]
    if len(triggers) > 1:
        return [f"flow has {len(triggers)} trigger nodes, expected exactly one"]

    errors = []
    trigger = triggers[0]
    if graph.incoming_edges(trigger.id):
        errors.append(f"trigger node '{trigger.id}' must not have inbound edges")
    if not graph.outgoing_edges(trigger.id):
        errors.append(f"trigger node '{trigger.id}' has no outgoing edge")
    return errors


def validate_discriminators(graph: FlowGraph) -> List[str]:
    """
    Condition nodes branch only on "true"/"false"; "timeout" belongs to waitForReply.
    """
    errors = []
    for node in graph.nodes:
        edges = graph.outgoing_edges(node.id)
        discriminators = [edge.discriminator for edge in edges]

        if node.type == NodeType.CONDITION.value:
            if TRUE_BRANCH not in discriminators and FALSE_BRANCH not in discriminators:
                errors.append(f"condition node '{node.id}' needs a 'true' or 'false' edge")
            for edge in edges:
                if edge.discriminator not in (TRUE_BRANCH, FALSE_BRANCH):
                    errors.append(
                        f"condition node '{node.id}' edge '{edge.id}' must be labelled 'true' or 'false'"
                    )
            for branch in (TRUE_BRANCH, FALSE_BRANCH):
                if discriminators.count(branch) > 1:
                    errors.append(f"condition node '{node.id}' has more than one '{branch}' edge")
            continue

        for edge in edges:
            if edge.discriminator in (TRUE_BRANCH, FALSE_BRANCH):
                errors.append(
                    f"edge '{edge.id}' uses '{edge.discriminator}' but node '{node.id}' is not a condition"
                )

        timeout_count = discriminators.count(TIMEOUT_BRANCH)
        if timeout_count and node.type != NodeType.WAIT_FOR_REPLY.value:
            errors.append(f"node '{node.id}' is not a waitForReply and cannot have a 'timeout' edge")
        elif timeout_count > 1:
            errors.append(f"waitForReply node '{node.id}' has more than one 'timeout' edge")
    return errors


def reachable_node_ids(graph: FlowGraph) -> Set[str]:
    trigger = graph.trigger_node()
    if trigger is None:
        return set()
    seen = {trigger.id}
    queue = deque([trigger.id])
    while queue:
        node_id = queue.popleft()
        for edge in graph.outgoing_edges(node_id):
            if edge.targetNodeId not in seen:
                seen.add(edge.targetNodeId)
                queue.append(edge.targetNodeId)
    return seen


def validate_reachability(graph: FlowGraph) -> Tuple[List[str], List[str]]:
    """
    Unreachable nodes with outgoing edges are errors. Unreachable terminal
    nodes are only reported as warnings.

    Returns:
        (errors, warnings)
    """
    errors = []
    warnings = []
    reachable = reachable_node_ids(graph)
    for node in graph.nodes:
        if node.id in reachable:
            continue
        if graph.outgoing_edges(node.id):
            errors.append(f"node '{node.id}' is not reachable from the trigger")
        else:
            warnings.append(f"terminal node '{node.id}' is not reachable from the trigger")
    return errors, warnings


def validate_graph(graph: FlowGraph, known_ids: Optional[Set[str]] = None) -> Tuple[List[str], List[str]]:
    """
    Run every structural check on a typed graph.

    Returns:
        (errors, warnings)
    """
    if known_ids is None:
        known_ids = {node.id for node in graph.nodes}
    errors: List[str] = []
    errors.extend(validate_unique_ids(graph))
    errors.extend(validate_edge_references(graph, known_ids))
    errors.extend(validate_trigger(graph))
    errors.extend(validate_discriminators(graph))
    reachability_errors, warnings = validate_reachability(graph)
    errors.extend(reachability_errors)
    return errors, warnings


def parse_graph(draft: DraftGraph) -> Tuple[FlowGraph, List[str]]:
    """
    Turn a draft into a typed, validated graph.

    Raises:
        FlowValidationException: carrying every violation found

    Returns:
        (graph, warnings)
    """
    nodes, errors = parse_nodes(draft.nodes)
    known_ids = {raw.get("id") for raw in draft.nodes if isinstance(raw, dict) and raw.get("id")}
    graph = FlowGraph(nodes=nodes, edges=draft.edges)

    graph_errors, warnings = validate_graph(graph, known_ids)
    errors.extend(graph_errors)
    if errors:
        raise FlowValidationException(
            message=f"Flow graph is invalid: {len(errors)} error(s)",
            errors=errors
        )
    return graph, warnings
