"""
test_graph.py

Dependency graph: ordering and cycle detection.
"""

import itertools

import pytest

from reconciler import CyclicDependency, Identity, ResourceSpec, build_graph, ref
from reconciler.graph import DependencyGraph, graph_from_dependencies


def _specs():
    return [
        ResourceSpec("KeyPair", "lab", {"key_name": "lab"}),
        ResourceSpec("Instance", "web", {"key_name": ref("KeyPair", "lab", "key_name")}),
        ResourceSpec("Instance", "db", {"key_name": ref("KeyPair", "lab", "key_name")}),
        ResourceSpec("Address", "web-ip", {"instance": ref("Instance", "web", "id")}),
        ResourceSpec("LocalExec", "record", {"env": {"IP": ref("Address", "web-ip", "public_ip")}}),
    ]


def _index(specs):
    return {s.identity: s for s in specs}


def test_dependencies_come_first():
    order = build_graph(_index(_specs())).topological_order()
    position = {identity: i for i, identity in enumerate(order)}

    assert position[Identity("KeyPair", "lab")] < position[Identity("Instance", "web")]
    assert position[Identity("Instance", "web")] < position[Identity("Address", "web-ip")]
    assert position[Identity("Address", "web-ip")] < position[Identity("LocalExec", "record")]


def test_order_is_identical_for_any_input_order():
    expected = build_graph(_index(_specs())).topological_order()
    for permutation in itertools.permutations(_specs()):
        assert build_graph(_index(permutation)).topological_order() == expected


def test_ties_broken_by_identity():
    order = build_graph(_index(_specs())).topological_order()
    # Both instances become ready together; "db" sorts before "web".
    assert order.index(Identity("Instance", "db")) < order.index(Identity("Instance", "web"))
    assert order[0] == Identity("KeyPair", "lab")


def test_edges_only_from_references():
    graph = build_graph(_index([
        ResourceSpec("Instance", "a", {"name": "Instance.b"}),
        ResourceSpec("Instance", "b", {}),
    ]))
    assert graph.edges == []
    assert graph.nodes == [Identity("Instance", "a"), Identity("Instance", "b")]


def test_nested_reference_creates_edge():
    graph = build_graph(_index(_specs()))
    assert graph.dependencies_of(Identity("LocalExec", "record")) == [Identity("Address", "web-ip")]


def test_cycle_is_reported_with_its_members():
    specs = [
        ResourceSpec("Instance", "a", {"peer": ref("Instance", "b", "id")}),
        ResourceSpec("Instance", "b", {"peer": ref("Instance", "a", "id")}),
        ResourceSpec("Instance", "c", {}),
    ]
    with pytest.raises(CyclicDependency) as exc_info:
        build_graph(_index(specs))

    assert set(exc_info.value.identities) == {Identity("Instance", "a"), Identity("Instance", "b")}
    assert "Instance.a" in str(exc_info.value)


def test_self_reference_is_a_cycle():
    specs = [ResourceSpec("Instance", "a", {"peer": ref("Instance", "a", "id")})]
    with pytest.raises(CyclicDependency) as exc_info:
        build_graph(_index(specs))
    assert exc_info.value.identities == (Identity("Instance", "a"),)


def test_transitive_dependents():
    graph = build_graph(_index(_specs()))
    assert graph.transitive_dependents(Identity("Instance", "web")) == {
        Identity("Address", "web-ip"),
        Identity("LocalExec", "record"),
    }


def test_graph_from_dependencies_ignores_missing_targets():
    a, b, gone = Identity("Instance", "a"), Identity("Address", "b"), Identity("KeyPair", "gone")
    graph = graph_from_dependencies({a: [gone], b: [a]})
    assert graph.edges == [(b, a)]
    assert gone not in graph


def test_empty_graph():
    graph = DependencyGraph()
    assert graph.topological_order() == []
    assert graph.find_cycle() is None
