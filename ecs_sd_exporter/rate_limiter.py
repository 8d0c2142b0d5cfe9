"""Single chokepoint for outbound AWS calls.

Every remote call made during discovery goes through
:meth:`RateLimiter.do_with_rate_limit`, which records latency and error
telemetry tagged with the call's dimension labels.  Failures are re-raised
unchanged; the limiter never retries or swallows an error.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Mapping, TypeVar

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from ecs_sd_exporter.metrics import (
    SCRAPE_ERROR_COUNT_METRIC,
    SCRAPE_LATENCY_METRIC,
    SCRAPE_OPERATION_LABEL,
    TELEMETRY_LABELS,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LATENCY_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30)


class RateLimiter:
    """Wraps remote calls with latency / error metrics.

    Parameters
    ----------
    registry : CollectorRegistry
        Registry the telemetry metrics are created on.  Defaults to the
        process-global ``prometheus_client.REGISTRY``.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        registry = REGISTRY if registry is None else registry
        self.latency = Histogram(
            SCRAPE_LATENCY_METRIC,
            "Latency of AWS API calls made by the exporter",
            list(TELEMETRY_LABELS),
            buckets=_LATENCY_BUCKETS,
            registry=registry,
        )
        self.errors = Counter(
            SCRAPE_ERROR_COUNT_METRIC,
            "Number of failed AWS API calls made by the exporter",
            list(TELEMETRY_LABELS),
            registry=registry,
        )

    @staticmethod
    def _label_values(operation_name: str, labels: Mapping[str, str]) -> dict[str, str]:
        values = {key: str(labels.get(key) or "") for key in TELEMETRY_LABELS}
        if not values[SCRAPE_OPERATION_LABEL]:
            values[SCRAPE_OPERATION_LABEL] = operation_name
        return values

    def record_error(self, operation_name: str, labels: Mapping[str, str]) -> None:
        self.errors.labels(**self._label_values(operation_name, labels)).inc()

    def do_with_rate_limit(
        self,
        operation_name: str,
        labels: Mapping[str, str],
        call: Callable[[], T],
    ) -> T:
        """Run *call*, recording its latency and any failure."""
        values = self._label_values(operation_name, labels)
        logger.debug("%s %s", operation_name, values)
        start = time.perf_counter()
        try:
            return call()
        except Exception:
            self.errors.labels(**values).inc()
            raise
        finally:
            self.latency.labels(**values).observe(time.perf_counter() - start)
