"""boto3 session / client plumbing.

Hands out region-scoped clients for the accounts being discovered, assuming
a cross-account role where one is configured.  Callers own the returned
clients and must close them (``contextlib.closing``) before moving on to the
next region.
"""

from __future__ import annotations

import logging
from typing import Any

import boto3

from ecs_sd_exporter.config import AWSAccount, ScrapeConfig
from ecs_sd_exporter.metrics import SCRAPE_OPERATION_LABEL
from ecs_sd_exporter.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

_SESSION_NAME = "ecs-sd-exporter"


def _get_boto3_session(region: str = "", profile: str = "") -> Any:
    kwargs: dict[str, str] = {}
    if region:
        kwargs["region_name"] = region
    if profile:
        kwargs["profile_name"] = profile
    return boto3.Session(**kwargs)


class AWSClientProvider:
    """Creates boto3 clients for a given account and region."""

    def __init__(self, rate_limiter: RateLimiter, profile: str = "") -> None:
        self._rate_limiter = rate_limiter
        self._profile = profile

    def _session_for(self, region: str, account: AWSAccount | None) -> Any:
        session = _get_boto3_session(region=region, profile=self._profile)
        if account is None or not account.assume_role:
            return session

        sts = session.client("sts", region_name=region)
        try:
            kwargs: dict[str, str] = {
                "RoleArn": account.assume_role,
                "RoleSessionName": _SESSION_NAME,
            }
            if account.external_id:
                kwargs["ExternalId"] = account.external_id
            creds = self._rate_limiter.do_with_rate_limit(
                "STSClient/assumeRole",
                {
                    "account_id": account.account_id,
                    "region": region,
                    SCRAPE_OPERATION_LABEL: "assumeRole",
                },
                lambda: sts.assume_role(**kwargs),
            )["Credentials"]
        finally:
            sts.close()

        return boto3.Session(
            aws_access_key_id=creds["AccessKeyId"],
            aws_secret_access_key=creds["SecretAccessKey"],
            aws_session_token=creds["SessionToken"],
            region_name=region,
        )

    def get_ecs_client(self, region: str, account: AWSAccount | None = None) -> Any:
        return self._session_for(region, account).client("ecs", region_name=region)

    def get_sts_client(self) -> Any:
        return _get_boto3_session(profile=self._profile).client("sts")


class AccountProvider:
    """Resolves the accounts a discovery cycle should walk."""

    def __init__(self, client_provider: AWSClientProvider, rate_limiter: RateLimiter) -> None:
        self._client_provider = client_provider
        self._rate_limiter = rate_limiter

    def get_accounts(self, config: ScrapeConfig) -> list[AWSAccount]:
        """Configured accounts, or the caller's own account when none are listed."""
        if config.accounts:
            return list(config.accounts)
        if not config.regions:
            return []

        try:
            sts = self._client_provider.get_sts_client()
            try:
                identity = self._rate_limiter.do_with_rate_limit(
                    "STSClient/getCallerIdentity",
                    {SCRAPE_OPERATION_LABEL: "getCallerIdentity"},
                    sts.get_caller_identity,
                )
            finally:
                sts.close()
        except Exception:
            logger.exception("Failed to resolve the current AWS account")
            return []
        return [AWSAccount(account_id=identity["Account"], regions=config.regions)]
