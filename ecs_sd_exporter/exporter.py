"""ECS service discovery exporter.

Walks every configured account and region, cluster → service → task, and
produces:

* the list of :class:`StaticConfig` scrape targets (also written to the
  Prometheus file-SD document when task discovery is on),
* the set of load-balancer → service routing edges,
* an ``aws_resource`` inventory gauge with one sample per ECS service.

A cycle builds everything into fresh local collections and publishes them
with a single reference swap at the end, so readers only ever see the
complete result of the last finished cycle.  Failures are contained to the
smallest scope they occur in (region, cluster, service); nothing raises out
of :meth:`ECSServiceDiscoveryExporter.update`.
"""

from __future__ import annotations

import logging
import threading
from contextlib import closing
from dataclasses import dataclass, field
from typing import Any, Iterator

from prometheus_client import REGISTRY, CollectorRegistry
from prometheus_client.core import Metric
from prometheus_client.samples import Sample

from ecs_sd_exporter.aws import AccountProvider, AWSClientProvider
from ecs_sd_exporter.config import AWSAccount, ScrapeConfig, ScrapeConfigProvider
from ecs_sd_exporter.ecs_tasks import ECSTaskUtil
from ecs_sd_exporter.metrics import (
    RESOURCE_METRIC,
    SCRAPE_ACCOUNT_ID_LABEL,
    SCRAPE_REGION_LABEL,
    MetricSampleBuilder,
    telemetry_labels,
)
from ecs_sd_exporter.models import StaticConfig, write_sd_file
from ecs_sd_exporter.rate_limiter import RateLimiter
from ecs_sd_exporter.resource import Resource, ResourceRelation, ResourceType
from ecs_sd_exporter.resource_mapper import ResourceMapper
from ecs_sd_exporter.routing import LBToECSRoutingBuilder

logger = logging.getLogger(__name__)

# describe_tasks accepts at most 100 task ARNs per call
DESCRIBE_TASKS_BATCH_SIZE = 100


@dataclass(frozen=True)
class DiscoverySnapshot:
    """The published, immutable result of one completed discovery cycle."""

    targets: tuple[StaticConfig, ...] = ()
    routing: frozenset[ResourceRelation] = frozenset()
    resource_metrics: tuple[Metric, ...] = ()


@dataclass
class _CycleState:
    """Mutable accumulators private to a single running cycle."""

    targets: list[StaticConfig] = field(default_factory=list)
    routing: set[ResourceRelation] = field(default_factory=set)
    samples: list[Sample] = field(default_factory=list)


class ECSServiceDiscoveryExporter:
    """Discovers ECS tasks and publishes them as scrape targets.

    Also acts as a Prometheus custom collector for the resource inventory
    metric; call :meth:`register` to expose it.
    """

    def __init__(
        self,
        account_provider: AccountProvider,
        scrape_config_provider: ScrapeConfigProvider,
        client_provider: AWSClientProvider,
        resource_mapper: ResourceMapper,
        ecs_task_util: ECSTaskUtil,
        rate_limiter: RateLimiter,
        routing_builder: LBToECSRoutingBuilder,
        sample_builder: MetricSampleBuilder,
    ) -> None:
        self._account_provider = account_provider
        self._scrape_config_provider = scrape_config_provider
        self._client_provider = client_provider
        self._resource_mapper = resource_mapper
        self._ecs_task_util = ecs_task_util
        self._rate_limiter = rate_limiter
        self._routing_builder = routing_builder
        self._sample_builder = sample_builder
        self._snapshot = DiscoverySnapshot()
        self._update_lock = threading.Lock()

    # ── Published state ───────────────────────────────────────────────────

    @property
    def snapshot(self) -> DiscoverySnapshot:
        return self._snapshot

    @property
    def targets(self) -> tuple[StaticConfig, ...]:
        return self._snapshot.targets

    @property
    def routing(self) -> frozenset[ResourceRelation]:
        return self._snapshot.routing

    def collect(self) -> Iterator[Metric]:
        yield from self._snapshot.resource_metrics

    def register(self, registry: CollectorRegistry = REGISTRY) -> None:
        registry.register(self)

    # ── Discovery cycle ───────────────────────────────────────────────────

    def update(self) -> None:
        """Run one full discovery cycle and publish its result."""
        with self._update_lock:
            config = self._scrape_config_provider.get_scrape_config()
            state = _CycleState()

            for account in self._account_provider.get_accounts(config):
                for region in config.regions_for(account):
                    self._discover_region(config, account, region, state)

            family = self._sample_builder.build_family(
                state.samples, "ECS services discovered by the exporter"
            )
            self._snapshot = DiscoverySnapshot(
                targets=tuple(state.targets),
                routing=frozenset(state.routing),
                resource_metrics=(family,) if family is not None else (),
            )
            logger.info(
                "ECS discovery complete: %d targets, %d routing edges, %d services",
                len(state.targets),
                len(state.routing),
                len(state.samples),
            )

            if config.discover_ecs_tasks:
                try:
                    write_sd_file(self._snapshot.targets, config.ecs_target_sd_file)
                except Exception:
                    logger.exception("Failed to write ECS SD file %s", config.ecs_target_sd_file)

    def _discover_region(
        self,
        config: ScrapeConfig,
        account: AWSAccount,
        region: str,
        state: _CycleState,
    ) -> None:
        try:
            with closing(self._client_provider.get_ecs_client(region, account)) as client:
                # list_clusters only returns ARNs; a single page is enough
                resp = self._rate_limiter.do_with_rate_limit(
                    "EcsClient/listClusters",
                    telemetry_labels(account.account_id, region, "listClusters"),
                    client.list_clusters,
                )
                for arn in resp.get("clusterArns") or []:
                    cluster = self._resource_mapper.map(arn)
                    if cluster is None or cluster.type != ResourceType.ECSCluster:
                        continue
                    try:
                        state.targets.extend(
                            self.build_targets_in_cluster(
                                config, client, cluster, state.routing, state.samples
                            )
                        )
                    except Exception:
                        logger.exception("Failed to discover ECS cluster %s", cluster.arn)
        except Exception:
            logger.exception(
                "Failed to discover ECS clusters in account %s region %s",
                account.account_id,
                region,
            )

    def build_targets_in_cluster(
        self,
        config: ScrapeConfig,
        client: Any,
        cluster: Resource,
        routing: set[ResourceRelation],
        samples: list[Sample],
    ) -> list[StaticConfig]:
        targets: list[StaticConfig] = []
        # list_services only returns ARNs; a single page is enough
        resp = self._rate_limiter.do_with_rate_limit(
            "EcsClient/listServices",
            telemetry_labels(cluster.account, cluster.region, "listServices"),
            lambda: client.list_services(cluster=cluster.name),
        )
        services: list[Resource] = []
        for arn in resp.get("serviceArns") or []:
            service = self._resource_mapper.map(arn)
            if service is None or service.type != ResourceType.ECSService:
                continue
            if config.discover_ecs_tasks:
                try:
                    targets.extend(self.build_targets_in_service(config, client, cluster, service))
                except Exception:
                    logger.exception("Failed to discover tasks of ECS service %s", service.arn)
            services.append(service)
            samples.append(
                self._sample_builder.build_single_sample(
                    RESOURCE_METRIC,
                    {
                        SCRAPE_ACCOUNT_ID_LABEL: cluster.account,
                        SCRAPE_REGION_LABEL: cluster.region,
                        "cluster": cluster.name,
                        "job": service.name,
                        "name": service.name,
                        "resource_type": service.type.cfn_type,
                    },
                    1.0,
                )
            )
        if services:
            routing.update(self._routing_builder.get_routings(client, cluster, services))
        return targets

    def build_targets_in_service(
        self,
        config: ScrapeConfig,
        client: Any,
        cluster: Resource,
        service: Resource,
    ) -> list[StaticConfig]:
        """Page through the service's tasks, describing them 100 at a time.

        A batch is flushed as soon as it holds exactly
        ``DESCRIBE_TASKS_BATCH_SIZE`` task ARNs, independent of how the
        listing is paged; whatever remains is flushed after the last page.
        """
        targets: list[StaticConfig] = []
        seen: set[str] = set()
        batch: dict[str, None] = {}
        next_token: str | None = None
        while True:
            kwargs: dict[str, str] = {"cluster": cluster.name, "serviceName": service.name}
            if next_token:
                kwargs["nextToken"] = next_token
            resp = self._rate_limiter.do_with_rate_limit(
                "EcsClient/listTasks",
                telemetry_labels(cluster.account, cluster.region, "listTasks"),
                lambda: client.list_tasks(**kwargs),
            )
            for task_arn in resp.get("taskArns") or []:
                if task_arn in seen:
                    continue
                seen.add(task_arn)
                batch[task_arn] = None
                if len(batch) == DESCRIBE_TASKS_BATCH_SIZE:
                    targets.extend(self.build_task_targets(config, client, cluster, service, list(batch)))
                    batch = {}
            next_token = resp.get("nextToken")
            if not next_token:
                break

        if batch:
            targets.extend(self.build_task_targets(config, client, cluster, service, list(batch)))
        return targets

    def build_task_targets(
        self,
        config: ScrapeConfig,
        client: Any,
        cluster: Resource,
        service: Resource,
        task_arns: list[str],
    ) -> list[StaticConfig]:
        resp = self._rate_limiter.do_with_rate_limit(
            "EcsClient/describeTasks",
            telemetry_labels(cluster.account, cluster.region, "describeTasks"),
            lambda: client.describe_tasks(cluster=cluster.name, tasks=task_arns),
        )
        configs: list[StaticConfig] = []
        for task in resp.get("tasks") or []:
            if not self._ecs_task_util.has_all_info(task):
                continue
            configs.extend(self._ecs_task_util.build_scrape_targets(config, client, cluster, service, task))
        return configs
