"""Shared test fixtures."""

from __future__ import annotations

from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from ecs_sd_exporter.rate_limiter import RateLimiter
from ecs_sd_exporter.resource import Resource, ResourceType
from ecs_sd_exporter.resource_mapper import ResourceMapper

REGION = "us-west-2"
ACCOUNT = "123456789012"


def cluster_arn(name: str = "prod") -> str:
    return f"arn:aws:ecs:{REGION}:{ACCOUNT}:cluster/{name}"


def service_arn(service: str = "checkout", cluster: str = "prod") -> str:
    return f"arn:aws:ecs:{REGION}:{ACCOUNT}:service/{cluster}/{service}"


def task_arn(task_id: str, cluster: str = "prod") -> str:
    return f"arn:aws:ecs:{REGION}:{ACCOUNT}:task/{cluster}/{task_id}"


def task_def_arn(family: str = "checkout", revision: int = 7) -> str:
    return f"arn:aws:ecs:{REGION}:{ACCOUNT}:task-definition/{family}:{revision}"


def make_task(
    task_id: str,
    *,
    ip: str | None = "10.0.1.15",
    status: str = "RUNNING",
    cluster: str = "prod",
    family: str = "checkout",
    revision: int = 7,
) -> dict[str, Any]:
    """A describe_tasks entry with an ENI attachment."""
    details = [{"name": "subnetId", "value": "subnet-0abc"}]
    if ip is not None:
        details.append({"name": "privateIPv4Address", "value": ip})
    return {
        "taskArn": task_arn(task_id, cluster),
        "taskDefinitionArn": task_def_arn(family, revision),
        "lastStatus": status,
        "availabilityZone": f"{REGION}a",
        "attachments": [{"type": "ElasticNetworkInterface", "details": details}],
    }


def container(
    name: str,
    ports: list[int] | None = None,
    docker_labels: dict[str, str] | None = None,
) -> dict[str, Any]:
    out: dict[str, Any] = {
        "name": name,
        "portMappings": [{"containerPort": p, "hostPort": p} for p in ports or []],
    }
    if docker_labels:
        out["dockerLabels"] = docker_labels
    return out


@pytest.fixture()
def registry() -> CollectorRegistry:
    """A fresh registry so metrics never leak between tests."""
    return CollectorRegistry()


@pytest.fixture()
def rate_limiter(registry: CollectorRegistry) -> RateLimiter:
    return RateLimiter(registry)


@pytest.fixture()
def mapper() -> ResourceMapper:
    return ResourceMapper()


@pytest.fixture()
def cluster(mapper: ResourceMapper) -> Resource:
    resource = mapper.map(cluster_arn())
    assert resource is not None and resource.type == ResourceType.ECSCluster
    return resource


@pytest.fixture()
def service(mapper: ResourceMapper) -> Resource:
    resource = mapper.map(service_arn())
    assert resource is not None and resource.type == ResourceType.ECSService
    return resource
