"""Application configuration and settings.

Two layers of configuration exist:

* :class:`Settings`: process-level runtime settings resolved from env vars
  and CLI flags (where the operator config lives, listen port, ...).
* :class:`ScrapeConfig`: the operator's discovery configuration (regions,
  accounts, toggles, per-container overrides).  It is loaded by
  :class:`ScrapeConfigProvider` from a remote config API, an S3 object, or a
  local YAML file, and handed to each discovery cycle as an immutable
  snapshot.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Mapping

import httpx
import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from ecs_sd_exporter.metrics import SCRAPE_OPERATION_LABEL
from ecs_sd_exporter.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "ecs_sd_config.yml"
DEFAULT_SD_FILE = "ecs-task-scrape-targets.json"
DEFAULT_METRIC_PATH = "/metrics"
DEFAULT_LISTEN_PORT = 9102
DEFAULT_INTERVAL_SECONDS = 60

# Container port sentinel meaning "any port of this container".
ANY_PORT = -1

CONFIG_API_PATH = "/api-server/v1/config/aws-exporter"

_TRUTHY = {"y", "yes", "true"}


def is_enabled(flag: str | None) -> bool:
    return (flag or "").strip().lower() in _TRUTHY


class Settings(BaseModel):
    """Runtime settings resolved from env vars and CLI flags."""

    config_file: str = Field(
        default_factory=lambda: os.environ.get("SCRAPE_CONFIG_FILE", DEFAULT_CONFIG_FILE),
        description="Local YAML file with the discovery configuration.",
    )
    listen_port: int = Field(
        default=DEFAULT_LISTEN_PORT,
        description="Port the Prometheus metrics endpoint listens on.",
    )
    interval_seconds: int = Field(
        default=DEFAULT_INTERVAL_SECONDS,
        description="Pause between two discovery cycles.",
    )
    aws_profile: str = Field(
        default_factory=lambda: os.environ.get("AWS_PROFILE", ""),
        description="AWS CLI profile name. Uses default credentials if empty.",
    )
    verbose: bool = False


# ──────────────────────────── Operator configuration ─────────────────────────

# Keys of the shared exporter configuration that drive CloudWatch scraping.
# They may appear in the same document and are dropped without error.
CLOUDWATCH_ONLY_KEYS = frozenset(
    {
        "namespaces",
        "scrapeInterval",
        "delay",
        "dimensionToLabels",
        "discoverResourceTypes",
        "importEvents",
    }
)


def _key(name: str, camel: str) -> AliasChoices:
    """Accept both the snake_case field name and the camelCase document key."""
    return AliasChoices(name, camel)


class ECSTaskDefScrapeConfig(BaseModel):
    """Scrape override for one container (and optionally one port)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    container_definition_name: str = Field(
        validation_alias=_key("container_definition_name", "containerDefinitionName")
    )
    container_port: int = Field(
        default=ANY_PORT, validation_alias=_key("container_port", "containerPort")
    )
    metric_path: str = Field(
        default=DEFAULT_METRIC_PATH, validation_alias=_key("metric_path", "metricPath")
    )

    @field_validator("container_port", mode="before")
    @classmethod
    def _default_port(cls, value: Any) -> Any:
        return ANY_PORT if value is None else value

    @field_validator("metric_path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"metric_path must start with '/': {value!r}")
        return value


class AWSAccount(BaseModel):
    """An AWS account to discover, optionally reached by assuming a role."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    account_id: str = Field(validation_alias=_key("account_id", "accountId"))
    assume_role: str = Field(default="", validation_alias=_key("assume_role", "assumeRole"))
    external_id: str = Field(default="", validation_alias=_key("external_id", "externalId"))
    regions: tuple[str, ...] = ()


class ScrapeConfig(BaseModel):
    """Immutable snapshot of the operator's discovery configuration.

    Keys may be given in snake_case or in the camelCase used by the config
    API (``discoverECSTasks``, ``ecsTaskScrapeConfigs``, ...).  Unknown keys
    are rejected so a typo cannot silently disable discovery; only the
    CloudWatch settings in :data:`CLOUDWATCH_ONLY_KEYS` are tolerated.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    regions: tuple[str, ...] = ()
    accounts: tuple[AWSAccount, ...] = ()
    discover_ecs_tasks: bool = Field(
        default=False, validation_alias=_key("discover_ecs_tasks", "discoverECSTasks")
    )
    discover_all_ecs_tasks_by_default: bool = Field(
        default=False,
        validation_alias=_key("discover_all_ecs_tasks_by_default", "discoverAllECSTasksByDefault"),
    )
    ecs_target_sd_file: str = Field(
        default=DEFAULT_SD_FILE, validation_alias=_key("ecs_target_sd_file", "ecsTargetSDFile")
    )
    ecs_task_scrape_configs: tuple[ECSTaskDefScrapeConfig, ...] = Field(
        default=(), validation_alias=_key("ecs_task_scrape_configs", "ecsTaskScrapeConfigs")
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_cloudwatch_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        ignored = sorted(CLOUDWATCH_ONLY_KEYS.intersection(data))
        if ignored:
            logger.debug("Ignoring CloudWatch settings: %s", ", ".join(ignored))
            data = {k: v for k, v in data.items() if k not in CLOUDWATCH_ONLY_KEYS}
        return data

    @model_validator(mode="after")
    def _check_regions(self) -> ScrapeConfig:
        missing = [a.account_id for a in self.accounts if not a.regions and not self.regions]
        if missing:
            raise ValueError(f"No regions configured for accounts: {', '.join(missing)}")
        return self

    def regions_for(self, account: AWSAccount) -> tuple[str, ...]:
        return account.regions or self.regions

    def ecs_config_by_name_and_port(self) -> dict[str, dict[int, ECSTaskDefScrapeConfig]]:
        """Overrides keyed by container name, then port (``ANY_PORT`` for all)."""
        by_name: dict[str, dict[int, ECSTaskDefScrapeConfig]] = {}
        for cfg in self.ecs_task_scrape_configs:
            by_name.setdefault(cfg.container_definition_name, {})[cfg.container_port] = cfg
        return by_name


NOOP_CONFIG = ScrapeConfig()


# ──────────────────────────── Provider ───────────────────────────────────────


def _default_s3_client() -> Any:
    import boto3

    return boto3.client("s3")


class ScrapeConfigProvider:
    """Loads and caches the operator's :class:`ScrapeConfig`.

    Sources, in priority order:

    1. remote config API: ``CONFIG_API_HOST`` / ``CONFIG_API_USER`` /
       ``CONFIG_API_SECRET_KEY``
    2. S3 object: ``CONFIG_S3_BUCKET`` / ``CONFIG_S3_KEY``
    3. the local YAML file given by *config_file*

    ``REGIONS`` and ``ENABLE_ECS_SD`` env vars override the loaded values.
    Any load failure yields an empty configuration (nothing is discovered)
    instead of raising.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        config_file: str = DEFAULT_CONFIG_FILE,
        *,
        env: Mapping[str, str] | None = None,
        s3_client_factory: Callable[[], Any] = _default_s3_client,
        http_timeout: float = 10.0,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._config_file = config_file
        self._env = env
        self._s3_client_factory = s3_client_factory
        self._http_timeout = http_timeout
        self._lock = threading.Lock()
        self._config = NOOP_CONFIG
        self.update()

    def get_scrape_config(self) -> ScrapeConfig:
        with self._lock:
            return self._config

    def update(self) -> None:
        config = self._load()
        with self._lock:
            self._config = config

    # ── Loading ───────────────────────────────────────────────────────────

    def _environ(self) -> Mapping[str, str]:
        return os.environ if self._env is None else self._env

    def _load(self) -> ScrapeConfig:
        env = self._environ()
        operation = "loadConfig"
        try:
            if all(k in env for k in ("CONFIG_API_HOST", "CONFIG_API_USER", "CONFIG_API_SECRET_KEY")):
                operation = "loadConfigFromAPI"
                raw = self._load_from_api(env)
            elif "CONFIG_S3_BUCKET" in env and "CONFIG_S3_KEY" in env:
                operation = "loadConfigFromS3"
                raw = self._load_from_s3(env["CONFIG_S3_BUCKET"], env["CONFIG_S3_KEY"])
            else:
                operation = "loadConfigFromFile"
                raw = self._load_from_file(self._config_file)
            config = ScrapeConfig.model_validate(raw or {})
        except Exception:
            logger.exception("Failed to load scrape configuration (%s)", operation)
            self._rate_limiter.record_error(operation, {SCRAPE_OPERATION_LABEL: operation})
            return NOOP_CONFIG

        overrides: dict[str, Any] = {}
        if env.get("REGIONS"):
            overrides["regions"] = tuple(r.strip() for r in env["REGIONS"].split(",") if r.strip())
        if "ENABLE_ECS_SD" in env:
            overrides["discover_ecs_tasks"] = is_enabled(env["ENABLE_ECS_SD"])
        if overrides:
            config = config.model_copy(update=overrides)

        logger.info(
            "Loaded configuration: %d regions, %d accounts, ECS task discovery %s",
            len(config.regions),
            len(config.accounts),
            "on" if config.discover_ecs_tasks else "off",
        )
        return config

    def _load_from_api(self, env: Mapping[str, str]) -> Any:
        url = env["CONFIG_API_HOST"].rstrip("/") + CONFIG_API_PATH
        logger.info("Loading configuration from %s as %s", url, env["CONFIG_API_USER"])
        resp = httpx.get(
            url,
            auth=(env["CONFIG_API_USER"], env["CONFIG_API_SECRET_KEY"]),
            headers={"Accept": "application/json"},
            timeout=self._http_timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def _load_from_s3(self, bucket: str, key: str) -> Any:
        logger.info("Loading configuration from s3://%s/%s", bucket, key)
        labels = {SCRAPE_OPERATION_LABEL: "getObject"}
        s3 = self._s3_client_factory()
        try:
            resp = self._rate_limiter.do_with_rate_limit(
                "S3Client/getObject",
                labels,
                lambda: s3.get_object(Bucket=bucket, Key=key),
            )
            return yaml.safe_load(resp["Body"].read())
        finally:
            close = getattr(s3, "close", None)
            if callable(close):
                close()

    @staticmethod
    def _load_from_file(path: str) -> Any:
        logger.info("Loading configuration from %s", path)
        return yaml.safe_load(Path(path).read_text(encoding="utf-8"))
