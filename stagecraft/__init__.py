"""Stagecraft: idempotent, staged provisioning of ML platform resources."""

from .auth import CredentialBroker, get_broker
from .contracts import Credential, ResourceDescriptor, RolloutSpec, RunReport, StageDefinition
from .definitions import RunDefinition, load_definition, parse_definition
from .executor import PipelineExecutor
from .graph import StageGraph
from .persistence import get_repository
from .reconcile import ResourceReconciler, get_backend
from .rollout import RolloutController
from .templates import ml_platform_pipeline

__version__ = "0.1.0"
__all__ = [
    "Credential",
    "CredentialBroker",
    "PipelineExecutor",
    "ResourceDescriptor",
    "ResourceReconciler",
    "RolloutController",
    "RolloutSpec",
    "RunDefinition",
    "RunReport",
    "StageDefinition",
    "StageGraph",
    "get_backend",
    "get_broker",
    "get_repository",
    "load_definition",
    "ml_platform_pipeline",
    "parse_definition",
]
