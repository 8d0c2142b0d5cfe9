"""Tests for the ECS discovery cycle."""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from prometheus_client import CollectorRegistry

from conftest import ACCOUNT, REGION, cluster_arn, container, make_task, service_arn, task_arn
from ecs_sd_exporter.config import AWSAccount, ScrapeConfig
from ecs_sd_exporter.ecs_tasks import ECSTaskUtil
from ecs_sd_exporter.exporter import ECSServiceDiscoveryExporter
from ecs_sd_exporter.metrics import MetricSampleBuilder
from ecs_sd_exporter.rate_limiter import RateLimiter
from ecs_sd_exporter.resource_mapper import ResourceMapper
from ecs_sd_exporter.routing import LBToECSRoutingBuilder

TG_ARN = "arn:aws:elasticloadbalancing:us-west-2:123456789012:targetgroup/checkout-tg/73e2d6bc24d8a067"


# ══════════════════════════════════════════════════════════════════════════════
#  Helpers
# ══════════════════════════════════════════════════════════════════════════════


def _task_ids(count: int, start: int = 0) -> list[str]:
    return [f"task-{n:04d}" for n in range(start, start + count)]


def _ip_for(task_id: str) -> str:
    n = int(task_id.rsplit("-", 1)[1])
    return f"10.0.{n // 200}.{n % 200 + 1}"


def _ecs_client(
    task_pages: list[list[str]] | None = None,
    *,
    clusters: list[str] | None = None,
    services: list[str] | None = None,
    containers: list[dict[str, Any]] | None = None,
) -> MagicMock:
    """A fake ECS client serving one service whose tasks are listed in *task_pages*."""
    pages = task_pages if task_pages is not None else [[]]
    client = MagicMock()
    client.list_clusters.return_value = {
        "clusterArns": [cluster_arn(c) for c in (clusters or ["prod"])]
    }
    client.list_services.side_effect = lambda cluster: {
        "serviceArns": [service_arn(s, cluster) for s in (services or ["checkout"])]
    }

    def _list_tasks(cluster: str, serviceName: str, nextToken: str | None = None) -> dict[str, Any]:
        idx = 0 if nextToken is None else int(nextToken.split("-")[1])
        resp: dict[str, Any] = {"taskArns": [task_arn(t, cluster) for t in pages[idx]]}
        if idx < len(pages) - 1:
            resp["nextToken"] = f"page-{idx + 1}"
        return resp

    def _describe_tasks(cluster: str, tasks: list[str]) -> dict[str, Any]:
        out = []
        for arn in tasks:
            task_id = arn.rsplit("/", 1)[1]
            out.append(make_task(task_id, ip=_ip_for(task_id), cluster=cluster))
        return {"tasks": out}

    client.list_tasks.side_effect = _list_tasks
    client.describe_tasks.side_effect = _describe_tasks
    client.describe_task_definition.return_value = {
        "taskDefinition": {
            "containerDefinitions": containers
            or [container("app", ports=[8080], docker_labels={"PROMETHEUS_EXPORTER_PORT": "9100"})]
        }
    }
    client.describe_services.return_value = {"services": []}
    return client


def _exporter(
    config: ScrapeConfig,
    client: Any,
    rate_limiter: RateLimiter,
    mapper: ResourceMapper,
    accounts: list[AWSAccount] | None = None,
) -> ECSServiceDiscoveryExporter:
    config_provider = MagicMock()
    config_provider.get_scrape_config.return_value = config
    account_provider = MagicMock()
    account_provider.get_accounts.return_value = (
        accounts if accounts is not None else [AWSAccount(account_id=ACCOUNT, regions=(REGION,))]
    )
    client_provider = MagicMock()
    if callable(client) and not isinstance(client, MagicMock):
        client_provider.get_ecs_client.side_effect = client
    else:
        client_provider.get_ecs_client.return_value = client
    return ECSServiceDiscoveryExporter(
        account_provider=account_provider,
        scrape_config_provider=config_provider,
        client_provider=client_provider,
        resource_mapper=mapper,
        ecs_task_util=ECSTaskUtil(mapper, rate_limiter),
        rate_limiter=rate_limiter,
        routing_builder=LBToECSRoutingBuilder(mapper, rate_limiter),
        sample_builder=MetricSampleBuilder(),
    )


@pytest.fixture()
def sd_config(tmp_path: Path) -> ScrapeConfig:
    return ScrapeConfig(
        regions=[REGION],
        discover_ecs_tasks=True,
        ecs_target_sd_file=str(tmp_path / "ecs-task-scrape-targets.json"),
    )


def _describe_sizes(client: MagicMock) -> list[int]:
    return [len(c.kwargs["tasks"]) for c in client.describe_tasks.call_args_list]


# ══════════════════════════════════════════════════════════════════════════════
#  Task batching
# ══════════════════════════════════════════════════════════════════════════════


class TestTaskBatching:
    @pytest.mark.parametrize("count", [0, 1, 100, 101, 250])
    def test_describe_calls_per_task_count(
        self, count: int, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        client = _ecs_client([_task_ids(count)])
        exporter = _exporter(sd_config, client, rate_limiter, mapper)
        exporter.update()

        assert client.describe_tasks.call_count == math.ceil(count / 100)
        assert all(size <= 100 for size in _describe_sizes(client))
        assert sum(_describe_sizes(client)) == count
        assert len(exporter.targets) == count

    def test_batch_boundary_inside_a_page(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        client = _ecs_client([_task_ids(60), _task_ids(41, start=60)])
        exporter = _exporter(sd_config, client, rate_limiter, mapper)
        exporter.update()

        assert client.list_tasks.call_count == 2
        assert client.list_tasks.call_args_list[1].kwargs["nextToken"] == "page-1"
        assert _describe_sizes(client) == [100, 1]
        assert len(exporter.targets) == 101
        assert {t.labels.cluster for t in exporter.targets} == {"prod"}
        assert {t.labels.job for t in exporter.targets} == {"checkout"}
        addresses = [t.targets[0] for t in exporter.targets]
        assert len(set(addresses)) == 101

    def test_duplicate_task_arns_across_pages(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        client = _ecs_client([["task-0001", "task-0002"], ["task-0002", "task-0003"]])
        exporter = _exporter(sd_config, client, rate_limiter, mapper)
        exporter.update()

        assert _describe_sizes(client) == [3]
        assert len(exporter.targets) == 3

    def test_tasks_not_ready_are_skipped(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        client = _ecs_client([_task_ids(2)])
        client.describe_tasks.side_effect = lambda cluster, tasks: {
            "tasks": [make_task("task-0000"), make_task("task-0001", status="PENDING")]
        }
        exporter = _exporter(sd_config, client, rate_limiter, mapper)
        exporter.update()
        assert [t.labels.task_id for t in exporter.targets] == ["task-0000"]


# ══════════════════════════════════════════════════════════════════════════════
#  Publishing
# ══════════════════════════════════════════════════════════════════════════════


class TestPublishing:
    def test_sd_file_written(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        exporter = _exporter(sd_config, _ecs_client([_task_ids(2)]), rate_limiter, mapper)
        exporter.update()

        data = json.loads(Path(sd_config.ecs_target_sd_file).read_text())
        assert len(data) == 2
        assert data[0]["targets"] == ["10.0.0.1:9100"]
        assert data[0]["labels"]["job"] == "checkout"
        assert data[0]["labels"]["pod"] == "task-0000"

    def test_sd_file_failure_still_publishes(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        exporter = _exporter(sd_config, _ecs_client([_task_ids(2)]), rate_limiter, mapper)
        with patch("ecs_sd_exporter.exporter.write_sd_file", side_effect=OSError("read-only")):
            exporter.update()
        assert len(exporter.targets) == 2

    def test_idempotent(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        exporter = _exporter(sd_config, _ecs_client([_task_ids(5)]), rate_limiter, mapper)
        exporter.update()
        first = exporter.snapshot
        content = Path(sd_config.ecs_target_sd_file).read_text()
        exporter.update()

        assert exporter.snapshot is not first
        assert exporter.targets == first.targets
        assert exporter.routing == first.routing
        assert Path(sd_config.ecs_target_sd_file).read_text() == content

    def test_task_discovery_disabled(
        self, tmp_path: Path, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        sd_file = tmp_path / "targets.json"
        config = ScrapeConfig(regions=[REGION], ecs_target_sd_file=str(sd_file))
        client = _ecs_client([_task_ids(3)])
        exporter = _exporter(config, client, rate_limiter, mapper)
        exporter.update()

        assert exporter.targets == ()
        client.list_tasks.assert_not_called()
        assert not sd_file.exists()
        # services are still inventoried
        assert len(list(exporter.collect())[0].samples) == 1

    def test_no_accounts_publishes_empty(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        exporter = _exporter(sd_config, _ecs_client(), rate_limiter, mapper, accounts=[])
        exporter.update()
        assert exporter.targets == ()
        assert list(exporter.collect()) == []
        assert json.loads(Path(sd_config.ecs_target_sd_file).read_text()) == []

    def test_routing_published(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        client = _ecs_client([_task_ids(1)])
        client.describe_services.return_value = {
            "services": [{"serviceArn": service_arn(), "loadBalancers": [{"targetGroupArn": TG_ARN}]}]
        }
        exporter = _exporter(sd_config, client, rate_limiter, mapper)
        exporter.update()

        assert len(exporter.routing) == 1
        edge = next(iter(exporter.routing))
        assert edge.from_resource.name == "checkout-tg"
        assert edge.to_resource.name == "checkout"


# ══════════════════════════════════════════════════════════════════════════════
#  Failure isolation
# ══════════════════════════════════════════════════════════════════════════════


class TestFailureIsolation:
    def test_failing_region_does_not_stop_others(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        healthy = _ecs_client([_task_ids(3)])
        broken = MagicMock()
        broken.list_clusters.side_effect = RuntimeError("AccessDenied")
        clients = {"eu-west-1": broken, REGION: healthy}

        exporter = _exporter(
            sd_config,
            lambda region, account: clients[region],
            rate_limiter,
            mapper,
            accounts=[AWSAccount(account_id=ACCOUNT, regions=("eu-west-1", REGION))],
        )
        exporter.update()

        assert len(exporter.targets) == 3
        broken.close.assert_called_once()
        healthy.close.assert_called_once()

    def test_failing_region_logs_error(
        self,
        sd_config: ScrapeConfig,
        rate_limiter: RateLimiter,
        mapper: ResourceMapper,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        broken = MagicMock()
        broken.list_clusters.side_effect = RuntimeError("AccessDenied")
        clients = {"eu-west-1": broken, REGION: _ecs_client([_task_ids(1)])}
        exporter = _exporter(
            sd_config,
            lambda region, account: clients[region],
            rate_limiter,
            mapper,
            accounts=[AWSAccount(account_id=ACCOUNT, regions=("eu-west-1", REGION))],
        )
        with caplog.at_level(logging.ERROR, logger="ecs_sd_exporter.exporter"):
            exporter.update()

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert ACCOUNT in errors[0].getMessage()
        assert "eu-west-1" in errors[0].getMessage()
        assert errors[0].exc_info is not None
        assert len(exporter.targets) == 1

    def test_unmappable_arns_are_skipped(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        client = _ecs_client([_task_ids(2)])
        client.list_clusters.return_value = {"clusterArns": ["garbage", cluster_arn()]}
        client.list_services.side_effect = lambda cluster: {
            "serviceArns": [f"arn:aws:ecs:{REGION}:{ACCOUNT}:service/bad", service_arn()]
        }
        described = client.describe_tasks.side_effect

        def _describe_tasks(cluster: str, tasks: list[str]) -> dict[str, Any]:
            resp = described(cluster=cluster, tasks=tasks)
            bogus = make_task("task-0009", ip="10.9.9.9")
            bogus["taskArn"] = "not-an-arn"
            return {"tasks": [bogus] + resp["tasks"]}

        client.describe_tasks.side_effect = _describe_tasks
        exporter = _exporter(sd_config, client, rate_limiter, mapper)
        exporter.update()

        assert sorted(t.labels.task_id for t in exporter.targets) == ["task-0000", "task-0001"]
        assert {t.labels.cluster for t in exporter.targets} == {"prod"}
        client.list_services.assert_called_once_with(cluster="prod")
        assert client.list_tasks.call_args.kwargs["serviceName"] == "checkout"
        assert len(list(exporter.collect())[0].samples) == 1

    def test_client_creation_failure_is_contained(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        healthy = _ecs_client([_task_ids(1)])

        def _get_client(region: str, account: AWSAccount) -> MagicMock:
            if account.account_id == "210987654321":
                raise RuntimeError("AssumeRole denied")
            return healthy

        exporter = _exporter(
            sd_config,
            _get_client,
            rate_limiter,
            mapper,
            accounts=[
                AWSAccount(account_id="210987654321", regions=(REGION,)),
                AWSAccount(account_id=ACCOUNT, regions=(REGION,)),
            ],
        )
        exporter.update()
        assert len(exporter.targets) == 1

    def test_failing_cluster_does_not_stop_others(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        client = _ecs_client([_task_ids(2)], clusters=["staging", "prod"])
        listed = client.list_services.side_effect

        def _list_services(cluster: str) -> dict[str, Any]:
            if cluster == "staging":
                raise RuntimeError("throttled")
            return listed(cluster)

        client.list_services.side_effect = _list_services
        exporter = _exporter(sd_config, client, rate_limiter, mapper)
        exporter.update()

        assert len(exporter.targets) == 2
        assert {t.labels.cluster for t in exporter.targets} == {"prod"}

    def test_failing_service_does_not_stop_others(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        client = _ecs_client([_task_ids(2)], services=["cart", "checkout"])
        listed = client.list_tasks.side_effect

        def _list_tasks(cluster: str, serviceName: str, nextToken: str | None = None) -> dict[str, Any]:
            if serviceName == "cart":
                raise RuntimeError("throttled")
            return listed(cluster=cluster, serviceName=serviceName, nextToken=nextToken)

        client.list_tasks.side_effect = _list_tasks
        exporter = _exporter(sd_config, client, rate_limiter, mapper)
        exporter.update()

        assert {t.labels.job for t in exporter.targets} == {"checkout"}
        # both services still inventoried
        assert len(list(exporter.collect())[0].samples) == 2

    def test_failed_calls_counted(
        self,
        sd_config: ScrapeConfig,
        rate_limiter: RateLimiter,
        registry: CollectorRegistry,
        mapper: ResourceMapper,
    ) -> None:
        broken = MagicMock()
        broken.list_clusters.side_effect = RuntimeError("AccessDenied")
        exporter = _exporter(sd_config, broken, rate_limiter, mapper)
        exporter.update()

        assert registry.get_sample_value(
            "aws_exporter_errors_total",
            {"account_id": ACCOUNT, "region": REGION, "operation": "listClusters", "cw_namespace": "AWS/ECS"},
        ) == 1.0


# ══════════════════════════════════════════════════════════════════════════════
#  Inventory metric
# ══════════════════════════════════════════════════════════════════════════════


class TestInventoryMetric:
    def test_collect(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        exporter = _exporter(sd_config, _ecs_client([_task_ids(1)]), rate_limiter, mapper)
        assert list(exporter.collect()) == []
        exporter.update()

        families = list(exporter.collect())
        assert len(families) == 1
        family = families[0]
        assert family.name == "aws_resource"
        assert family.type == "gauge"
        assert family.samples[0].labels == {
            "account_id": ACCOUNT,
            "cluster": "prod",
            "job": "checkout",
            "name": "checkout",
            "region": REGION,
            "resource_type": "AWS::ECS::Service",
        }
        assert family.samples[0].value == 1.0

    def test_registered_collector(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        registry = CollectorRegistry()
        exporter = _exporter(sd_config, _ecs_client([_task_ids(1)]), rate_limiter, mapper)
        exporter.register(registry)
        exporter.update()

        assert registry.get_sample_value(
            "aws_resource",
            {
                "account_id": ACCOUNT,
                "cluster": "prod",
                "job": "checkout",
                "name": "checkout",
                "region": REGION,
                "resource_type": "AWS::ECS::Service",
            },
        ) == 1.0

    def test_no_services_no_family(
        self, sd_config: ScrapeConfig, rate_limiter: RateLimiter, mapper: ResourceMapper
    ) -> None:
        client = _ecs_client()
        client.list_services.side_effect = None
        client.list_services.return_value = {"serviceArns": []}
        exporter = _exporter(sd_config, client, rate_limiter, mapper)
        exporter.update()

        assert list(exporter.collect()) == []
        client.describe_services.assert_not_called()
