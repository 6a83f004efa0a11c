"""Parsing of run definitions supplied by the caller (e.g. a CI trigger)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .constants import DEFAULT_SCOPE
from .contracts import StageDefinition
from .errors import DefinitionError
from .graph import StageGraph

logger = logging.getLogger(__name__)


class RunDefinition(BaseModel):
    """Validated description of the stages of one pipeline."""

    name: str = "pipeline"
    scope: str = DEFAULT_SCOPE
    stages: List[StageDefinition] = Field(default_factory=list)

    def graph(self) -> StageGraph:
        return StageGraph.build(self.stages)

    def to_document(self) -> Dict[str, Any]:
        """Serialize back into the document shape :func:`parse_definition` reads."""
        return {
            "run": {"name": self.name, "scope": self.scope},
            "stages": [
                stage.model_dump(mode="json", exclude_none=True) for stage in self.stages
            ],
        }


def parse_definition(
    document: Mapping[str, Any], default_rollout_steps: Optional[int] = None
) -> RunDefinition:
    """Build a :class:`RunDefinition` from a mapping.

    The document has an optional ``run`` header (``name``, ``scope``,
    ``ordered``) and a ``stages`` list. With ``ordered: true`` every stage that
    omits ``depends_on`` depends on the stage listed before it.

    Raises:
        DefinitionError: When the document is malformed.
    """
    if not isinstance(document, Mapping):
        raise DefinitionError("run definition must be a mapping")
    header = document.get("run") or {}
    raw_stages = document.get("stages")
    if not isinstance(raw_stages, list) or not raw_stages:
        raise DefinitionError("run definition must declare a non-empty 'stages' list")

    ordered = bool(header.get("ordered", False))
    stages: List[Dict[str, Any]] = []
    previous: Optional[str] = None
    for raw in raw_stages:
        if not isinstance(raw, Mapping):
            raise DefinitionError(f"stage entries must be mappings, got {raw!r}")
        stage = dict(raw)
        if ordered and "depends_on" not in stage and previous is not None:
            stage["depends_on"] = [previous]
        rollout = stage.get("rollout")
        if default_rollout_steps and isinstance(rollout, Mapping) and "steps" not in rollout:
            stage["rollout"] = {**rollout, "steps": default_rollout_steps}
        stages.append(stage)
        previous = stage.get("name")

    try:
        return RunDefinition(
            name=header.get("name", "pipeline"),
            scope=header.get("scope", DEFAULT_SCOPE),
            stages=stages,
        )
    except ValidationError as exc:
        raise DefinitionError(f"invalid run definition: {exc}") from exc


def load_definition(
    path: str | Path, default_rollout_steps: Optional[int] = None
) -> RunDefinition:
    """Read and parse a YAML run definition file."""
    try:
        with open(path) as f:
            document = yaml.safe_load(f) or {}
    except OSError as exc:
        raise DefinitionError(f"cannot read run definition {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise DefinitionError(f"run definition {path} is not valid YAML: {exc}") from exc
    logger.debug(f"Loaded run definition from {path}")
    return parse_definition(document, default_rollout_steps=default_rollout_steps)
