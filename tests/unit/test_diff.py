"""Tests for resource diff computation."""

from stagecraft.contracts import DiffAction, ResourceDescriptor, ResourceState
from stagecraft.reconcile import compute_diff, deep_merge
from stagecraft.reconcile.diff import has_path


def _compute(properties, immutable=()):
    return ResourceDescriptor(
        kind="compute",
        name="gpu-cluster",
        properties=properties,
        immutable_fields=list(immutable),
    )


def test_missing_resource_is_created():
    diff = compute_diff(_compute({"size": "NC6", "tier": "dedicated"}), None)
    assert diff.action == DiffAction.CREATE
    assert [c.path for c in diff.changes] == ["size", "tier"]
    assert diff.etag is None


def test_matching_state_is_noop_and_ignores_server_fields():
    observed = ResourceState(
        resource_id="/resources/compute/gpu-cluster/1",
        properties={"size": "NC6", "provisioning_state": "Succeeded"},
        etag='W/"1"',
    )
    diff = compute_diff(_compute({"size": "NC6"}), observed)
    assert diff.is_empty
    assert diff.changes == []


def test_nested_change_reports_dotted_path_and_top_level_field():
    observed = ResourceState(
        resource_id="r",
        properties={"size": "NC6", "scale": {"min": 0, "max": 2}},
        etag="e1",
    )
    diff = compute_diff(_compute({"size": "NC6", "scale": {"min": 0, "max": 4}}), observed)
    assert diff.action == DiffAction.UPDATE
    assert [(c.path, c.old, c.new) for c in diff.changes] == [("scale.max", 2, 4)]
    assert diff.changed_fields() == {"scale": {"min": 0, "max": 4}}
    assert diff.etag == "e1"


def test_immutable_change_becomes_replace():
    observed = ResourceState(resource_id="r", properties={"size": "NC6", "max": 2})
    diff = compute_diff(_compute({"size": "NC12", "max": 2}, immutable=["size"]), observed)
    assert diff.action == DiffAction.REPLACE


def test_immutable_prefix_covers_nested_fields():
    observed = ResourceState(resource_id="r", properties={"network": {"subnet": "a"}})
    diff = compute_diff(
        _compute({"network": {"subnet": "b"}}, immutable=["network"]), observed
    )
    assert diff.action == DiffAction.REPLACE


def test_deep_merge_and_has_path():
    merged = deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}, "c": 4})
    assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
    assert has_path(merged, "a.y")
    assert not has_path(merged, "a.z")
    assert not has_path(merged, "b.x")
