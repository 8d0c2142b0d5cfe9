"""CLI entry-point for the ecs-sd-exporter."""

from __future__ import annotations

import logging
import sys
import time
from pathlib import Path

import click
from prometheus_client import REGISTRY, CollectorRegistry, start_http_server
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ecs_sd_exporter import __version__
from ecs_sd_exporter.aws import AccountProvider, AWSClientProvider
from ecs_sd_exporter.config import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_INTERVAL_SECONDS,
    DEFAULT_LISTEN_PORT,
    ScrapeConfigProvider,
    Settings,
)
from ecs_sd_exporter.ecs_tasks import ECSTaskUtil
from ecs_sd_exporter.exporter import ECSServiceDiscoveryExporter
from ecs_sd_exporter.metrics import MetricSampleBuilder
from ecs_sd_exporter.models import write_sd_file
from ecs_sd_exporter.rate_limiter import RateLimiter
from ecs_sd_exporter.resource_mapper import ResourceMapper
from ecs_sd_exporter.routing import LBToECSRoutingBuilder

console = Console()


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy libraries
    for name in ("botocore", "boto3", "urllib3", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)


def build_exporter(
    settings: Settings,
    registry: CollectorRegistry = REGISTRY,
) -> tuple[ScrapeConfigProvider, ECSServiceDiscoveryExporter]:
    """Wire up the exporter and its collaborators."""
    rate_limiter = RateLimiter(registry)
    resource_mapper = ResourceMapper()
    client_provider = AWSClientProvider(rate_limiter, profile=settings.aws_profile)
    config_provider = ScrapeConfigProvider(rate_limiter, settings.config_file)
    exporter = ECSServiceDiscoveryExporter(
        account_provider=AccountProvider(client_provider, rate_limiter),
        scrape_config_provider=config_provider,
        client_provider=client_provider,
        resource_mapper=resource_mapper,
        ecs_task_util=ECSTaskUtil(resource_mapper, rate_limiter),
        rate_limiter=rate_limiter,
        routing_builder=LBToECSRoutingBuilder(resource_mapper, rate_limiter),
        sample_builder=MetricSampleBuilder(),
    )
    return config_provider, exporter


@click.group()
@click.version_option(version=__version__, prog_name="ecs-sd")
def main() -> None:
    """ECS service discovery exporter for Prometheus."""


@main.command()
@click.option(
    "--config",
    "-c",
    "config_file",
    default=DEFAULT_CONFIG_FILE,
    envvar="SCRAPE_CONFIG_FILE",
    help="Discovery configuration YAML file.",
)
@click.option(
    "--output", "-o", "output", default="", help="Also write the SD document to this path."
)
@click.option("--profile", default="", help="AWS CLI profile name.")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def discover(config_file: str, output: str, profile: str, verbose: bool) -> None:
    """Run one discovery cycle and print the scrape targets found."""
    _configure_logging(verbose)

    settings = Settings(config_file=config_file, verbose=verbose)
    if profile:
        settings.aws_profile = profile

    _, exporter = build_exporter(settings, CollectorRegistry())
    console.print(Panel("Discovering ECS scrape targets", style="bold cyan"))
    exporter.update()

    targets = exporter.targets
    if not targets:
        console.print("[yellow]No ECS scrape targets found.[/yellow]")
    else:
        table = Table(title="ECS Scrape Targets", show_lines=False)
        table.add_column("Job", style="bold")
        table.add_column("Cluster")
        table.add_column("Container")
        table.add_column("Targets")
        table.add_column("Path", style="dim")
        for target in targets:
            labels = target.labels
            table.add_row(
                labels.job,
                labels.cluster,
                labels.container or "",
                ", ".join(target.targets),
                labels.metrics_path,
            )
        console.print(table)

    console.print(
        f"\n  Targets: [green]{len(targets)}[/green]  "
        f"Routing edges: [cyan]{len(exporter.routing)}[/cyan]"
    )

    if output:
        try:
            path = write_sd_file(targets, output)
        except OSError as exc:
            console.print(f"[red bold]Error:[/red bold] could not write {output}: {exc}")
            sys.exit(1)
        console.print(f"  SD file written to [green]{Path(path).resolve()}[/green]")


@main.command()
@click.option(
    "--config",
    "-c",
    "config_file",
    default=DEFAULT_CONFIG_FILE,
    envvar="SCRAPE_CONFIG_FILE",
    help="Discovery configuration YAML file.",
)
@click.option("--port", default=DEFAULT_LISTEN_PORT, type=int, help="Metrics endpoint port.")
@click.option(
    "--interval", default=DEFAULT_INTERVAL_SECONDS, type=int, help="Seconds between discovery cycles."
)
@click.option("--profile", default="", help="AWS CLI profile name.")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def serve(config_file: str, port: int, interval: int, profile: str, verbose: bool) -> None:
    """Expose metrics and refresh the SD file continuously.

    Examples:

      ecs-sd serve --config ecs_sd_config.yml --port 9102 --interval 60
    """
    _configure_logging(verbose)
    logger = logging.getLogger(__name__)

    settings = Settings(
        config_file=config_file,
        listen_port=port,
        interval_seconds=interval,
        verbose=verbose,
    )
    if profile:
        settings.aws_profile = profile

    config_provider, exporter = build_exporter(settings)
    exporter.register()
    start_http_server(settings.listen_port)
    console.print(
        f"  Serving metrics on [green]:{settings.listen_port}/metrics[/green], "
        f"refreshing every {settings.interval_seconds}s"
    )

    try:
        while True:
            exporter.update()
            time.sleep(settings.interval_seconds)
            config_provider.update()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
