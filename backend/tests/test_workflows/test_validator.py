"""Tests for GraphValidator — schema, edges, topology and settings checks."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from execflow.models.graph import GraphSettings, RetryPolicy
from execflow.workflows.validator import GraphValidator, find_cycles, longest_chain


def raw_graph(nodes, edges, **extra) -> dict:
    """Raw document: nodes as ids, edges as (source, target) pairs."""
    doc = {
        "id": "g",
        "name": "Raw graph",
        "version": "1.0.0",
        "nodes": [{"id": n, "type": "transform"} for n in nodes],
        "edges": [
            {"id": f"e{i}", "source": s, "target": t, "source_output": "out", "target_input": "in"}
            for i, (s, t) in enumerate(edges)
        ],
    }
    doc.update(extra)
    return doc


# === Valid graphs ===

def test_linear_chain_is_valid(graph_factory):
    result = GraphValidator().validate(graph_factory())
    assert result.valid
    assert result.errors == []
    assert result.warnings == []
    assert result.stats.total_nodes == 3
    assert result.stats.total_edges == 2
    assert result.stats.start_nodes == 1
    assert result.stats.end_nodes == 1
    assert result.stats.max_depth == 3
    print("  PASS: linear chain a -> b -> c, depth 3")


def test_diamond_depth(graph_factory):
    graph = graph_factory(
        node_ids=("a", "b", "c", "d"),
        edges=[("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
    )
    result = GraphValidator().validate(graph)
    assert result.valid
    assert result.stats.max_depth == 3
    assert result.stats.start_nodes == 1
    assert result.stats.end_nodes == 1
    print("  PASS: diamond depth")


def test_single_node_is_not_isolated(graph_factory):
    result = GraphValidator().validate(graph_factory(node_ids=("only",), edges=[]))
    assert result.valid
    assert "ISOLATED_NODE" not in result.codes()
    assert result.stats.max_depth == 1
    print("  PASS: single node")


def test_empty_workflow_warns():
    result = GraphValidator().validate(raw_graph([], []))
    assert result.valid
    assert result.codes() == ["EMPTY_WORKFLOW"]
    print("  PASS: empty workflow")


def test_long_chain_does_not_recurse(graph_factory):
    ids = tuple(f"n{i}" for i in range(5000))
    result = GraphValidator().validate(graph_factory(node_ids=ids))
    assert result.valid
    assert result.stats.max_depth == 5000
    print("  PASS: 5000-node chain")


# === Cycles ===

def test_two_node_cycle():
    result = GraphValidator().validate(raw_graph(["a", "b"], [("a", "b"), ("b", "a")]))
    assert not result.valid
    cycles = [e for e in result.errors if e.code == "CIRCULAR_DEPENDENCY"]
    assert len(cycles) == 1
    assert cycles[0].message == "Circular dependency detected: a -> b -> a"
    assert cycles[0].node_id == "a"
    assert cycles[0].details["cycle"] == ["a", "b"]
    assert "NO_START_NODE" in result.codes()
    assert "NO_END_NODE" in result.codes()
    assert result.stats.max_depth == 0
    print("  PASS: a -> b -> a")


def test_cycle_reported_once():
    result = GraphValidator().validate(
        raw_graph(["a", "b", "c"], [("a", "b"), ("b", "c"), ("c", "a")])
    )
    cycles = [e for e in result.errors if e.code == "CIRCULAR_DEPENDENCY"]
    assert len(cycles) == 1
    assert cycles[0].message == "Circular dependency detected: a -> b -> c -> a"
    print("  PASS: three-node cycle reported once")


def test_find_cycles_separate_cycles():
    adjacency = {"a": ["b"], "b": ["a"], "c": ["d"], "d": ["c"], "e": []}
    cycles = find_cycles(["a", "b", "c", "d", "e"], adjacency)
    assert sorted(map(tuple, cycles)) == [("a", "b"), ("c", "d")]


def test_cycle_behind_dag_prefix():
    adjacency = {"s": ["x"], "x": ["y"], "y": ["z"], "z": ["x"]}
    assert find_cycles(["s", "x", "y", "z"], adjacency) == [["x", "y", "z"]]


def test_longest_chain_with_shared_descendants():
    adjacency = {"a": ["b", "c"], "b": [], "c": ["b"]}
    assert longest_chain(["a", "b", "c"], adjacency) == 3


def test_disabled_edge_does_not_close_cycle():
    doc = raw_graph(["a", "b"], [("a", "b"), ("b", "a")])
    doc["edges"][1]["enabled"] = False
    result = GraphValidator().validate(doc)
    assert result.valid
    assert "CIRCULAR_DEPENDENCY" not in result.codes()
    assert result.stats.max_depth == 2
    print("  PASS: disabled edge ignored for topology")


# === Edges ===

def test_self_loop():
    result = GraphValidator().validate(raw_graph(["a"], [("a", "a")]))
    assert not result.valid
    assert "SELF_LOOP" in [e.code for e in result.errors]
    # Self loops are reported once, not also as a cycle
    assert "CIRCULAR_DEPENDENCY" not in result.codes()


def test_unknown_endpoints():
    result = GraphValidator().validate(raw_graph(["a"], [("a", "ghost"), ("phantom", "a")]))
    codes = [e.code for e in result.errors]
    assert "INVALID_TARGET_NODE" in codes
    assert "INVALID_SOURCE_NODE" in codes
    target_issue = next(e for e in result.errors if e.code == "INVALID_TARGET_NODE")
    assert target_issue.edge_id == "e0"
    assert target_issue.node_id == "ghost"
    print("  PASS: unknown edge endpoints")


def test_missing_ports_and_duplicate_connection_warn():
    doc = raw_graph(["a", "b"], [("a", "b"), ("a", "b")])
    doc["edges"][0].pop("source_output")
    doc["edges"][0].pop("target_input")
    doc["edges"][1].pop("source_output")
    doc["edges"][1].pop("target_input")
    result = GraphValidator().validate(doc)
    assert result.valid
    warnings = [w.code for w in result.warnings]
    assert warnings.count("MISSING_SOURCE_OUTPUT") == 2
    assert warnings.count("MISSING_TARGET_INPUT") == 2
    assert warnings.count("DUPLICATE_CONNECTION") == 1


def test_isolated_node_warns(graph_factory):
    graph = graph_factory(node_ids=("a", "b", "c"), edges=[("a", "b")])
    result = GraphValidator().validate(graph)
    assert result.valid
    isolated = [w for w in result.warnings if w.code == "ISOLATED_NODE"]
    assert [w.node_id for w in isolated] == ["c"]
    assert result.stats.start_nodes == 2
    assert result.stats.end_nodes == 2


# === Schema ===

def test_missing_fields_and_bad_version():
    doc = raw_graph(["a"], [])
    doc.pop("name")
    doc["version"] = "1.0"
    result = GraphValidator().validate(doc)
    assert not result.valid
    missing = [e for e in result.errors if e.code == "MISSING_FIELD"]
    assert [e.field for e in missing] == ["name"]
    assert "INVALID_VERSION_FORMAT" in [w.code for w in result.warnings]
    print("  PASS: missing name, non-semver version")


def test_duplicate_ids():
    doc = raw_graph(["a", "a", "b"], [("a", "b"), ("a", "b")])
    doc["edges"][1]["id"] = "e0"
    result = GraphValidator().validate(doc)
    codes = [e.code for e in result.errors]
    assert "DUPLICATE_NODE_ID" in codes
    assert "DUPLICATE_EDGE_ID" in codes


def test_nodes_must_be_a_list():
    doc = raw_graph([], [])
    doc["nodes"] = {"a": {"type": "transform"}}
    result = GraphValidator().validate(doc)
    assert not result.valid
    assert result.errors[0].code == "INVALID_SCHEMA"
    assert result.errors[0].field == "nodes"


def test_not_a_mapping():
    result = GraphValidator().validate(["not", "a", "graph"])  # type: ignore[arg-type]
    assert not result.valid
    assert result.errors[0].code == "INVALID_SCHEMA"


def test_unknown_node_type(graph_factory):
    validator = GraphValidator(known_node_types={"transform"})
    graph = graph_factory(node_types={"b": "teleport"})
    result = validator.validate(graph)
    assert not result.valid
    issue = result.errors[0]
    assert issue.code == "UNKNOWN_NODE_TYPE"
    assert issue.node_id == "b"


def test_incomplete_input_mapping():
    doc = raw_graph(["a", "b"], [("a", "b")])
    doc["nodes"][1]["inputs"] = {"rows": {"from": "a"}}
    result = GraphValidator().validate(doc)
    assert result.valid
    issue = next(w for w in result.warnings if w.code == "INCOMPLETE_INPUT_MAPPING")
    assert issue.node_id == "b"
    assert issue.field == "inputs.rows"


# === Settings ===

def test_settings_thresholds(graph_factory):
    graph = graph_factory(settings=GraphSettings(
        max_concurrency=500,
        timeout=200,
        retry_policy=RetryPolicy(max_retries=20),
    ))
    result = GraphValidator().validate(graph)
    assert result.valid
    codes = [w.code for w in result.warnings]
    assert "HIGH_CONCURRENCY" in codes
    assert "LOW_TIMEOUT" in codes
    assert "HIGH_RETRY_COUNT" in codes
    print("  PASS: settings warnings")


def test_invalid_settings():
    doc = raw_graph(["a"], [], settings={"max_concurrency": 0, "retry_policy": {"max_retries": -1}})
    result = GraphValidator().validate(doc)
    assert not result.valid
    fields = [e.field for e in result.errors if e.code == "INVALID_SETTING"]
    assert fields == ["settings.max_concurrency", "settings.retry_policy.max_retries"]


def test_custom_thresholds(graph_factory):
    validator = GraphValidator(high_concurrency=4)
    result = validator.validate(graph_factory(settings=GraphSettings(max_concurrency=5)))
    assert "HIGH_CONCURRENCY" in result.codes()
