"""Pydantic models for Prometheus file-based service discovery output."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ecs_sd_exporter.metrics import ECS_NAMESPACE

logger = logging.getLogger(__name__)

# Label names as they appear in the SD file.
_LABEL_NAMES: dict[str, str] = {
    "metrics_path": "__metrics_path__",
    "job": "job",
    "cluster": "cluster",
    "task_def_name": "ecs_taskdef_name",
    "task_def_version": "ecs_taskdef_version",
    "container": "container",
    "task_id": "pod",
    "availability_zone": "availability_zone",
    "subnet_id": "subnet_id",
    "namespace": "namespace",
    "region": "region",
    "account_id": "account_id",
}


class Labels(BaseModel):
    """Target labels attached to one scrape endpoint."""

    model_config = ConfigDict(frozen=True)

    job: str
    cluster: str
    metrics_path: str = "/metrics"
    task_def_name: str | None = None
    task_def_version: str | None = None
    container: str | None = None
    task_id: str | None = None
    availability_zone: str | None = None
    subnet_id: str | None = None
    namespace: str = ECS_NAMESPACE
    region: str = ""
    account_id: str = ""

    def to_dict(self) -> dict[str, str]:
        """Label map keyed by exported label name, sorted; empty values dropped."""
        out = {
            _LABEL_NAMES[field]: value
            for field, value in self.model_dump().items()
            if value not in (None, "")
        }
        return dict(sorted(out.items()))


class StaticConfig(BaseModel):
    """One entry of a Prometheus ``file_sd_configs`` document."""

    model_config = ConfigDict(frozen=True)

    targets: tuple[str, ...] = Field(description="Deduplicated, sorted host:port strings")
    labels: Labels

    @field_validator("targets", mode="before")
    @classmethod
    def _dedupe(cls, value: Iterable[str]) -> tuple[str, ...]:
        return tuple(sorted(set(value)))

    @model_validator(mode="after")
    def _check_invariants(self) -> StaticConfig:
        if not self.targets:
            raise ValueError("StaticConfig needs at least one target")
        if not self.labels.job or not self.labels.cluster:
            raise ValueError("StaticConfig needs non-empty job and cluster labels")
        return self

    def to_sd_entry(self) -> dict[str, Any]:
        return {"targets": list(self.targets), "labels": self.labels.to_dict()}


def render_sd_file(configs: Iterable[StaticConfig]) -> str:
    """Pretty, key-sorted JSON so successive files diff cleanly."""
    return json.dumps([c.to_sd_entry() for c in configs], indent=2, sort_keys=True) + "\n"


def write_sd_file(configs: Iterable[StaticConfig], path: str | Path) -> Path:
    """Write the SD document to *path*, replacing any previous file atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    content = render_sd_file(configs)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.info("Wrote %s", path)
    return path
