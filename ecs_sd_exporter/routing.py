"""Infer load-balancer → ECS service routing edges."""

from __future__ import annotations

import logging
from typing import Any

from ecs_sd_exporter.metrics import telemetry_labels
from ecs_sd_exporter.rate_limiter import RateLimiter
from ecs_sd_exporter.resource import Resource, ResourceRelation, ResourceType
from ecs_sd_exporter.resource_mapper import ResourceMapper

logger = logging.getLogger(__name__)

ROUTES_TO = "ROUTES_TO"

# describe_services accepts at most 10 services per call
_DESCRIBE_SERVICES_BATCH = 10


class LBToECSRoutingBuilder:
    """Builds target-group → service edges from ECS service definitions."""

    def __init__(self, resource_mapper: ResourceMapper, rate_limiter: RateLimiter) -> None:
        self._resource_mapper = resource_mapper
        self._rate_limiter = rate_limiter

    def get_routings(self, client: Any, cluster: Resource, services: list[Resource]) -> set[ResourceRelation]:
        routings: set[ResourceRelation] = set()
        by_arn = {service.arn: service for service in services}
        arns = list(by_arn)
        try:
            for i in range(0, len(arns), _DESCRIBE_SERVICES_BATCH):
                batch = arns[i : i + _DESCRIBE_SERVICES_BATCH]
                resp = self._rate_limiter.do_with_rate_limit(
                    "EcsClient/describeServices",
                    telemetry_labels(cluster.account, cluster.region, "describeServices"),
                    lambda: client.describe_services(cluster=cluster.name, services=batch),
                )
                for svc in resp.get("services") or []:
                    service = by_arn.get(svc.get("serviceArn", ""))
                    if service is None:
                        continue
                    for lb in svc.get("loadBalancers") or []:
                        target_group = self._resource_mapper.map(lb.get("targetGroupArn"))
                        if target_group is not None and target_group.type == ResourceType.TargetGroup:
                            routings.add(ResourceRelation(target_group, service, ROUTES_TO))
        except Exception:
            logger.exception("Failed to build LB routing for cluster %s", cluster.name)
            return set()
        return routings
