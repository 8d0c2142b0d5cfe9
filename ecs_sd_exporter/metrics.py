"""Helpers for building Prometheus samples and metric families."""

from __future__ import annotations

from typing import Any

from prometheus_client.core import Metric
from prometheus_client.samples import Sample

SCRAPE_ACCOUNT_ID_LABEL = "account_id"
SCRAPE_REGION_LABEL = "region"
SCRAPE_OPERATION_LABEL = "operation"
SCRAPE_NAMESPACE_LABEL = "cw_namespace"

ECS_NAMESPACE = "AWS/ECS"

SCRAPE_LATENCY_METRIC = "aws_exporter_call_latency_seconds"
SCRAPE_ERROR_COUNT_METRIC = "aws_exporter_errors"
RESOURCE_METRIC = "aws_resource"

TELEMETRY_LABELS = (
    SCRAPE_ACCOUNT_ID_LABEL,
    SCRAPE_REGION_LABEL,
    SCRAPE_OPERATION_LABEL,
    SCRAPE_NAMESPACE_LABEL,
)


def telemetry_labels(account_id: str, region: str, operation: str) -> dict[str, str]:
    """Dimension labels for an ECS API call."""
    return {
        SCRAPE_ACCOUNT_ID_LABEL: account_id,
        SCRAPE_REGION_LABEL: region,
        SCRAPE_OPERATION_LABEL: operation,
        SCRAPE_NAMESPACE_LABEL: ECS_NAMESPACE,
    }


class MetricSampleBuilder:
    """Formats samples and groups them into gauge families."""

    def build_single_sample(self, name: str, labels: dict[str, Any], value: float) -> Sample:
        clean = {key: str(val) for key, val in sorted(labels.items()) if val is not None}
        return Sample(name, clean, float(value))

    def build_family(self, samples: list[Sample], documentation: str = "") -> Metric | None:
        """Group *samples* into one gauge family named after the first sample.

        Returns ``None`` when there is nothing to export.
        """
        if not samples:
            return None
        name = samples[0].name
        family = Metric(name, documentation or f"{name} gauge", "gauge")
        family.samples.extend(samples)
        return family
