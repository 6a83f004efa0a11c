"""Tests for stage graph construction and readiness."""

import random

import pytest

from stagecraft.contracts import ResourceDescriptor, StageDefinition
from stagecraft.errors import CycleError, DefinitionError
from stagecraft.graph import StageGraph


def _stage(name, *deps):
    return StageDefinition(
        name=name,
        depends_on=list(deps),
        resource=ResourceDescriptor(kind="thing", name=name),
    )


def _diamond():
    return StageGraph.build(
        [_stage("a"), _stage("b", "a"), _stage("c", "a"), _stage("d", "b", "c")]
    )


def test_build_diamond_waves():
    graph = _diamond()
    assert len(graph) == 4
    assert "d" in graph
    assert graph.waves() == [["a"], ["b", "c"], ["d"]]
    assert graph.topological_order() == ["a", "b", "c", "d"]
    assert [d.name for d in graph] == ["a", "b", "c", "d"]


def test_ready_is_lexical_and_never_repeats_dispatched():
    graph = StageGraph.build([_stage("zeta"), _stage("alpha"), _stage("mid", "alpha")])
    assert graph.ready(set()) == ["alpha", "zeta"]
    assert graph.ready({"alpha"}, dispatched={"alpha", "zeta"}) == ["mid"]
    assert graph.ready({"alpha", "zeta", "mid"}) == []


def test_ready_requires_every_dependency():
    graph = _diamond()
    assert graph.ready({"a", "b"}, dispatched={"a", "b", "c"}) == []
    assert graph.ready({"a", "b", "c"}, dispatched={"a", "b", "c"}) == ["d"]


def test_descendants_are_transitive():
    graph = StageGraph.build([_stage("a"), _stage("b", "a"), _stage("c", "b"), _stage("x")])
    assert graph.descendants("a") == ["b", "c"]
    assert graph.descendants("x") == []
    assert graph.dependents("a") == frozenset({"b"})
    assert graph.dependencies("c") == frozenset({"b"})


def test_two_stage_cycle_is_reported():
    with pytest.raises(CycleError) as exc_info:
        StageGraph.build([_stage("a", "b"), _stage("b", "a")])
    assert exc_info.value.cycle == ["a", "b", "a"]
    assert exc_info.value.to_dict()["cycle"] == ["a", "b", "a"]


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleError) as exc_info:
        StageGraph.build([_stage("ok"), _stage("loop", "loop")])
    assert exc_info.value.cycle == ["loop", "loop"]


def test_cycle_behind_acyclic_prefix():
    with pytest.raises(CycleError) as exc_info:
        StageGraph.build(
            [_stage("a"), _stage("b", "a", "d"), _stage("c", "b"), _stage("d", "c")]
        )
    cycle = exc_info.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"b", "c", "d"}


def test_unknown_dependency_and_duplicates_are_rejected():
    with pytest.raises(DefinitionError):
        StageGraph.build([_stage("a", "missing")])
    with pytest.raises(DefinitionError):
        StageGraph.build([_stage("a"), _stage("a")])


def test_stage_definition_requires_desired_state():
    with pytest.raises(ValueError):
        StageDefinition(name="bare")
    with pytest.raises(ValueError):
        StageDefinition(name="", resource=ResourceDescriptor(kind="k", name="n"))


@pytest.mark.parametrize("seed", range(5))
def test_topological_order_respects_dependencies(seed):
    rng = random.Random(seed)
    names = [f"stage-{i:02d}" for i in range(20)]
    stages = [
        _stage(name, *rng.sample(names[:i], k=min(i, rng.randint(0, 3))))
        for i, name in enumerate(names)
    ]
    rng.shuffle(stages)

    order = StageGraph.build(stages).topological_order()
    position = {name: i for i, name in enumerate(order)}
    assert sorted(order) == names
    for stage in stages:
        for dep in stage.depends_on:
            assert position[dep] < position[stage.name]
