import pytest

from models.flow_data import DraftGraph, FlowEdge
from services.flow_graph_validator import parse_graph, validate_graph, reachable_node_ids
from exceptions.flow_exception import FlowValidationException


def make_draft(nodes, edges):
    return DraftGraph(
        nodes=nodes,
        edges=[
            FlowEdge(id=f"e{index}", sourceNodeId=source, targetNodeId=target, discriminator=discriminator, sequence=index)
            for index, (source, target, discriminator) in enumerate(edges)
        ]
    )


def simple_nodes():
    return [
        {"id": "t", "type": "trigger"},
        {"id": "m", "type": "sendMessage", "content": "Hi"},
    ]


def publish_errors(nodes, edges):
    with pytest.raises(FlowValidationException) as exc_info:
        parse_graph(make_draft(nodes, edges))
    return exc_info.value.errors


def test_valid_graph_parses_into_typed_nodes():
    graph, warnings = parse_graph(make_draft(simple_nodes(), [("t", "m", None)]))

    assert [node.type for node in graph.nodes] == ["trigger", "sendMessage"]
    assert graph.trigger_node().id == "t"
    assert warnings == []


def test_editor_only_fields_are_dropped():
    nodes = simple_nodes()
    nodes[1]["selected"] = True
    nodes[1]["position"] = {"posX": 10, "posY": 20}

    graph, _ = parse_graph(make_draft(nodes, [("t", "m", None)]))

    assert not hasattr(graph.get_node("m"), "selected")
    assert graph.get_node("m").position.posX == 10


def test_missing_trigger():
    errors = publish_errors([{"id": "m", "type": "sendMessage", "content": "Hi"}], [])
    assert "flow has no trigger node" in errors


def test_two_triggers():
    nodes = simple_nodes() + [{"id": "t2", "type": "trigger"}]
    errors = publish_errors(nodes, [("t", "m", None), ("t2", "m", None)])
    assert any("2 trigger nodes" in error for error in errors)


def test_trigger_with_inbound_edge():
    errors = publish_errors(simple_nodes(), [("t", "m", None), ("m", "t", None)])
    assert any("must not have inbound edges" in error for error in errors)


def test_trigger_without_outgoing_edge():
    errors = publish_errors([{"id": "t", "type": "trigger"}], [])
    assert any("has no outgoing edge" in error for error in errors)


def test_dangling_edge():
    errors = publish_errors(simple_nodes(), [("t", "m", None), ("m", "ghost", None)])
    assert "edge 'e1' target 'ghost' does not exist" in errors


def test_condition_without_branches():
    nodes = simple_nodes() + [{"id": "c", "type": "condition", "operator": "equals", "compareValue": "yes"}]
    errors = publish_errors(nodes, [("t", "c", None), ("c", "m", None)])
    assert any("needs a 'true' or 'false' edge" in error for error in errors)
    assert any("must be labelled 'true' or 'false'" in error for error in errors)


def test_condition_with_duplicate_branch():
    nodes = simple_nodes() + [
        {"id": "c", "type": "condition", "operator": "equals", "compareValue": "yes"},
        {"id": "m2", "type": "sendMessage", "content": "Other"},
    ]
    errors = publish_errors(nodes, [("t", "c", None), ("c", "m", "true"), ("c", "m2", "true")])
    assert "condition node 'c' has more than one 'true' edge" in errors


def test_condition_with_only_true_edge_is_accepted():
    nodes = simple_nodes() + [{"id": "c", "type": "condition", "operator": "equals", "compareValue": "yes"}]
    graph, _ = parse_graph(make_draft(nodes, [("t", "c", None), ("c", "m", "true")]))
    assert graph.get_node("c").operator.value == "equals"


def test_true_branch_on_non_condition():
    errors = publish_errors(simple_nodes(), [("t", "m", "true")])
    assert any("is not a condition" in error for error in errors)


def test_timeout_edge_outside_wait_for_reply():
    errors = publish_errors(simple_nodes(), [("t", "m", "timeout")])
    assert any("cannot have a 'timeout' edge" in error for error in errors)


def test_two_timeout_edges_on_wait():
    nodes = simple_nodes() + [
        {"id": "w", "type": "waitForReply", "timeout": 10},
        {"id": "m2", "type": "sendMessage", "content": "Late"},
    ]
    errors = publish_errors(nodes, [("t", "w", None), ("w", "m", "timeout"), ("w", "m2", "timeout")])
    assert "waitForReply node 'w' has more than one 'timeout' edge" in errors


def test_unreachable_node_with_outgoing_edge_is_an_error():
    nodes = simple_nodes() + [
        {"id": "island", "type": "sendMessage", "content": "Lost"},
    ]
    errors = publish_errors(nodes, [("t", "m", None), ("island", "m", None)])
    assert "node 'island' is not reachable from the trigger" in errors


def test_unreachable_terminal_node_is_a_warning():
    nodes = simple_nodes() + [{"id": "orphan", "type": "sendMessage", "content": "Lost"}]
    _, warnings = parse_graph(make_draft(nodes, [("t", "m", None)]))
    assert warnings == ["terminal node 'orphan' is not reachable from the trigger"]


def test_node_property_errors_are_reported_per_node():
    nodes = simple_nodes() + [
        {"id": "empty", "type": "sendMessage"},
        {"id": "bad-regex", "type": "condition", "operator": "regex", "compareValue": "("},
        {"id": "no-compare", "type": "condition", "operator": "greater_than"},
        {"id": "mystery", "type": "teleport"},
    ]
    errors = publish_errors(nodes, [("t", "m", None)])

    assert any("node 'empty'" in error for error in errors)
    assert any("node 'bad-regex'" in error and "invalid regex" in error for error in errors)
    assert any("node 'no-compare'" in error and "needs a compareValue" in error for error in errors)
    assert any("node 'mystery'" in error for error in errors)


def test_unparseable_node_does_not_cause_dangling_edge_errors():
    nodes = [{"id": "t", "type": "trigger"}, {"id": "broken", "type": "sendMessage"}]
    errors = publish_errors(nodes, [("t", "broken", None)])
    assert not any("does not exist" in error for error in errors)


def test_all_errors_are_collected():
    nodes = [
        {"id": "m", "type": "sendMessage", "content": "Hi"},
        {"id": "m", "type": "sendMessage", "content": "Again"},
    ]
    errors = publish_errors(nodes, [("m", "ghost", "true")])

    assert "duplicate node id 'm'" in errors
    assert "flow has no trigger node" in errors
    assert "edge 'e0' target 'ghost' does not exist" in errors
    assert len(errors) >= 4


def test_validate_graph_reports_reachable_cycle_as_valid():
    graph, _ = parse_graph(make_draft(
        simple_nodes() + [{"id": "m2", "type": "sendMessage", "content": "Loop"}],
        [("t", "m", None), ("m", "m2", None), ("m2", "m", None)]
    ))
    errors, warnings = validate_graph(graph)

    assert errors == []
    assert reachable_node_ids(graph) == {"t", "m", "m2"}
