"""Pure diff computation between observed and desired resource state."""

from __future__ import annotations

from typing import Any, Dict, Iterator, Mapping, Optional, Sequence

from ..contracts import DiffAction, FieldChange, ResourceDescriptor, ResourceDiff, ResourceState

_MISSING = object()


def compute_diff(
    descriptor: ResourceDescriptor, observed: Optional[ResourceState]
) -> ResourceDiff:
    """Compare ``observed`` against ``descriptor`` and describe the delta.

    Only fields declared in ``descriptor.properties`` are compared, so values
    the backend populates on its own never show up as drift. Nested mappings
    are compared key by key and reported with dotted paths. A change touching
    a field listed in ``descriptor.immutable_fields`` turns the update into a
    replacement.
    """
    desired = descriptor.properties
    if observed is None:
        return ResourceDiff(
            action=DiffAction.CREATE,
            changes=[FieldChange(path=key, new=desired[key]) for key in sorted(desired)],
            desired=desired,
        )

    changes = list(_walk(desired, observed.properties, ""))
    if not changes:
        action = DiffAction.NOOP
    elif any(_is_immutable(c.path, descriptor.immutable_fields) for c in changes):
        action = DiffAction.REPLACE
    else:
        action = DiffAction.UPDATE
    return ResourceDiff(action=action, changes=changes, desired=desired, etag=observed.etag)


def _walk(
    desired: Mapping[str, Any], observed: Mapping[str, Any], prefix: str
) -> Iterator[FieldChange]:
    for key in sorted(desired):
        path = f"{prefix}{key}"
        want = desired[key]
        have = observed.get(key, _MISSING)
        if isinstance(want, Mapping) and isinstance(have, Mapping):
            yield from _walk(want, have, f"{path}.")
        elif have is _MISSING:
            yield FieldChange(path=path, new=want)
        elif have != want:
            yield FieldChange(path=path, old=have, new=want)


def _is_immutable(path: str, immutable_fields: Sequence[str]) -> bool:
    return any(path == field or path.startswith(f"{field}.") for field in immutable_fields)


def has_path(properties: Mapping[str, Any], path: str) -> bool:
    node: Any = properties
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return False
        node = node[part]
    return True


def deep_merge(base: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Return ``base`` with ``patch`` merged in, recursing into mappings."""
    merged = dict(base)
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged
