"""Build scrape targets for running ECS tasks.

A task qualifies once it is RUNNING and has an ENI with a private IPv4
address.  Its task definition decides which container ports are scraped:

* a container carrying the ``PROMETHEUS_EXPORTER_PORT`` docker label is
  scraped on that port only (path from ``PROMETHEUS_EXPORTER_PATH``);
* otherwise each declared port mapping is scraped when the operator
  configured an override for that container (and port, or any port), or
  when ``discover_all_ecs_tasks_by_default`` is on.

Output order follows the task definition: containers in declared order, and
ports in declared port-mapping order within each container.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Any

from ecs_sd_exporter.config import ANY_PORT, DEFAULT_METRIC_PATH, ScrapeConfig
from ecs_sd_exporter.metrics import telemetry_labels
from ecs_sd_exporter.models import Labels, StaticConfig
from ecs_sd_exporter.rate_limiter import RateLimiter
from ecs_sd_exporter.resource import Resource
from ecs_sd_exporter.resource_mapper import ResourceMapper

logger = logging.getLogger(__name__)

ENI = "ElasticNetworkInterface"
PRIVATE_IPV4_ADDRESS = "privateIPv4Address"
SUBNET_ID = "subnetId"
RUNNING = "RUNNING"
PROMETHEUS_PORT_DOCKER_LABEL = "PROMETHEUS_EXPORTER_PORT"
PROMETHEUS_METRIC_PATH_DOCKER_LABEL = "PROMETHEUS_EXPORTER_PATH"

DEFAULT_TASK_DEFINITION_CACHE_SIZE = 1000


def _eni_details(task: dict[str, Any]) -> dict[str, str]:
    for attachment in task.get("attachments") or []:
        if attachment.get("type") == ENI:
            return {d.get("name", ""): d.get("value", "") for d in attachment.get("details") or []}
    return {}


class ECSTaskUtil:
    """Turns described ECS tasks into :class:`StaticConfig` entries.

    Parameters
    ----------
    resource_mapper : ResourceMapper
        Decodes task and task-definition ARNs.
    rate_limiter : RateLimiter
        Wraps the ``describe_task_definition`` calls.
    cache_size : int
        Task definitions kept in memory.  The least recently used one is
        evicted once more revisions than this have been described.
    """

    def __init__(
        self,
        resource_mapper: ResourceMapper,
        rate_limiter: RateLimiter,
        cache_size: int = DEFAULT_TASK_DEFINITION_CACHE_SIZE,
    ) -> None:
        self._resource_mapper = resource_mapper
        self._rate_limiter = rate_limiter
        self._cache_size = max(cache_size, 1)
        self._task_definitions: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._cache_lock = threading.Lock()

    def has_all_info(self, task: dict[str, Any]) -> bool:
        return task.get("lastStatus") == RUNNING and bool(_eni_details(task).get(PRIVATE_IPV4_ADDRESS))

    def build_scrape_targets(
        self,
        config: ScrapeConfig,
        client: Any,
        cluster: Resource,
        service: Resource,
        task: dict[str, Any],
    ) -> list[StaticConfig]:
        task_resource = self._resource_mapper.map(task.get("taskArn"))
        task_def_resource = self._resource_mapper.map(task.get("taskDefinitionArn"))
        if task_resource is None or task_def_resource is None:
            logger.debug("Skipping task with unrecognised ARNs: %s", task.get("taskArn"))
            return []

        try:
            task_def = self._describe_task_definition(client, cluster, task_def_resource.arn)
        except Exception:
            logger.exception("Failed to describe task definition %s", task_def_resource.arn)
            return []

        eni = _eni_details(task)
        ip_address = eni[PRIVATE_IPV4_ADDRESS]
        overrides = config.ecs_config_by_name_and_port()

        targets: list[StaticConfig] = []
        for container in task_def.get("containerDefinitions") or []:
            name = container.get("name", "")

            def _target(port: int, path: str) -> StaticConfig:
                return StaticConfig(
                    targets=[f"{ip_address}:{port}"],
                    labels=Labels(
                        job=service.name,
                        cluster=cluster.name,
                        metrics_path=path,
                        task_def_name=task_def_resource.name,
                        task_def_version=task_def_resource.version,
                        container=name,
                        task_id=task_resource.name,
                        availability_zone=task.get("availabilityZone"),
                        subnet_id=eni.get(SUBNET_ID),
                        region=cluster.region,
                        account_id=cluster.account,
                    ),
                )

            docker_labels = container.get("dockerLabels") or {}
            label_port = docker_labels.get(PROMETHEUS_PORT_DOCKER_LABEL)
            if label_port:
                try:
                    port = int(label_port)
                except ValueError:
                    logger.warning(
                        "Ignoring container %s: invalid %s label %r",
                        name, PROMETHEUS_PORT_DOCKER_LABEL, label_port,
                    )
                    continue
                path = docker_labels.get(PROMETHEUS_METRIC_PATH_DOCKER_LABEL) or DEFAULT_METRIC_PATH
                targets.append(_target(port, path))
                continue

            by_port = overrides.get(name, {})
            for mapping in container.get("portMappings") or []:
                port = mapping.get("containerPort")
                if port is None:
                    continue
                override = by_port.get(port) or by_port.get(ANY_PORT)
                if override is not None:
                    targets.append(_target(port, override.metric_path))
                elif config.discover_all_ecs_tasks_by_default:
                    targets.append(_target(port, DEFAULT_METRIC_PATH))
        return targets

    def _describe_task_definition(self, client: Any, cluster: Resource, arn: str) -> dict[str, Any]:
        # Task definition revisions are immutable, so the ARN is a safe cache key.
        with self._cache_lock:
            cached = self._task_definitions.get(arn)
            if cached is not None:
                self._task_definitions.move_to_end(arn)
                return cached

        resp = self._rate_limiter.do_with_rate_limit(
            "EcsClient/describeTaskDefinition",
            telemetry_labels(cluster.account, cluster.region, "describeTaskDefinition"),
            lambda: client.describe_task_definition(taskDefinition=arn),
        )
        task_def = resp.get("taskDefinition") or {}
        with self._cache_lock:
            self._task_definitions[arn] = task_def
            self._task_definitions.move_to_end(arn)
            while len(self._task_definitions) > self._cache_size:
                self._task_definitions.popitem(last=False)
        return task_def
