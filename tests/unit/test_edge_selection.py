from models.flow_data import FlowEdge
from services.flow_interpreter_service import select_edge, find_branch


def make_edge(edge_id, discriminator=None, sequence=0):
    return FlowEdge(id=edge_id, sourceNodeId="a", targetNodeId=f"to-{edge_id}", discriminator=discriminator, sequence=sequence)


def test_lowest_sequence_wins_among_plain_edges():
    edges = [make_edge("late", sequence=5), make_edge("early", sequence=1)]
    assert select_edge(edges).id == "early"


def test_matching_button_id_wins_over_plain_edge():
    edges = [make_edge("plain", sequence=0), make_edge("yes-button", "btn_yes", sequence=3)]
    assert select_edge(edges, preferred="btn_yes").id == "yes-button"


def test_plain_edge_used_when_button_id_has_no_edge():
    edges = [make_edge("yes-button", "btn_yes", sequence=0), make_edge("plain", sequence=1)]
    assert select_edge(edges, preferred="btn_other").id == "plain"


def test_labelled_edge_used_when_nothing_else_applies():
    edges = [make_edge("b", "btn_b", sequence=2), make_edge("a", "btn_a", sequence=1)]
    assert select_edge(edges).id == "a"


def test_reserved_branches_are_never_selected():
    edges = [make_edge("t", "true"), make_edge("f", "false"), make_edge("late", "timeout")]
    assert select_edge(edges) is None
    assert select_edge(edges, preferred="timeout") is None


def test_no_edges():
    assert select_edge([]) is None


def test_find_branch():
    edges = [make_edge("f", "false", sequence=1), make_edge("t", "true", sequence=0)]
    assert find_branch(edges, "true").id == "t"
    assert find_branch(edges, "timeout") is None
