"""Reusable run definitions for common ML platform pipelines."""

from __future__ import annotations

from typing import Optional

from .constants import DEFAULT_ROLLOUT_STEPS, DEFAULT_SCOPE
from .contracts import ResourceDescriptor, RolloutSpec, StageDefinition, StageKind
from .definitions import RunDefinition


def ml_platform_pipeline(
    model_name: str,
    endpoint: str,
    slot: str = "green",
    previous_slot: Optional[str] = "blue",
    traffic_share: int = 100,
    steps: int = DEFAULT_ROLLOUT_STEPS,
    image: str = "mcr.microsoft.com/azureml/openmpi4.1.0-ubuntu22.04:latest",
    dataset_path: str = "azureml://datastores/workspaceblobstore/paths/training/",
    compute_size: str = "Standard_DS3_v2",
    instance_type: str = "Standard_DS3_v2",
    scope: str = DEFAULT_SCOPE,
) -> RunDefinition:
    """Standard pipeline: environment, dataset, compute -> training -> endpoint,
    deployment -> traffic allocation.

    ``traffic_share`` is the percentage moved onto ``slot``; the remainder
    stays on ``previous_slot``. Without a previous slot all traffic goes to
    the new deployment.
    """
    env_name = f"{model_name}-env"
    data_name = f"{model_name}-data"
    compute_name = f"{model_name}-cluster"

    stages = [
        StageDefinition(
            name="register-environment",
            resource=ResourceDescriptor(
                kind="environment",
                name=env_name,
                properties={"image": image},
                immutable_fields=["image"],
            ),
        ),
        StageDefinition(
            name="register-dataset",
            resource=ResourceDescriptor(
                kind="data-asset",
                name=data_name,
                properties={"type": "uri_folder", "path": dataset_path},
                immutable_fields=["path"],
            ),
        ),
        StageDefinition(
            name="create-compute",
            resource=ResourceDescriptor(
                kind="compute",
                name=compute_name,
                properties={
                    "type": "amlcompute",
                    "size": compute_size,
                    "scale": {"min_instances": 0, "max_instances": 4},
                },
                immutable_fields=["size"],
            ),
        ),
        StageDefinition(
            name="run-training",
            depends_on=["create-compute", "register-dataset", "register-environment"],
            resource=ResourceDescriptor(
                kind="pipeline-job",
                name=f"{model_name}-training",
                properties={
                    "compute": compute_name,
                    "environment": env_name,
                    "inputs": {"training_data": data_name},
                    "outputs": {"model": model_name},
                },
                immutable_fields=["compute", "environment", "inputs"],
            ),
        ),
        StageDefinition(
            name="create-endpoint",
            resource=ResourceDescriptor(
                kind="online-endpoint",
                name=endpoint,
                properties={"auth_mode": "key"},
            ),
        ),
        StageDefinition(
            name="create-deployment",
            depends_on=["create-endpoint", "run-training"],
            resource=ResourceDescriptor(
                kind="online-deployment",
                # deployment names are only unique within their endpoint
                name=f"{endpoint}-{slot}",
                properties={
                    "endpoint_name": endpoint,
                    "deployment_name": slot,
                    "model": model_name,
                    "instance_type": instance_type,
                    "instance_count": 1,
                },
                immutable_fields=["instance_type"],
            ),
        ),
    ]

    if previous_slot:
        traffic = {previous_slot: 100 - traffic_share, slot: traffic_share}
        deployments = [previous_slot, slot]
    else:
        traffic = {slot: 100}
        deployments = [slot]
    stages.append(
        StageDefinition(
            name="allocate-traffic",
            kind=StageKind.ROLLOUT,
            depends_on=["create-deployment"],
            rollout=RolloutSpec(
                endpoint=endpoint,
                traffic=traffic,
                steps=steps,
                deployments=deployments,
            ),
        )
    )
    return RunDefinition(name=f"{model_name}-platform", scope=scope, stages=stages)
