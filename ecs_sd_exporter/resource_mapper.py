"""Decode AWS ARNs (and SQS queue URLs) into typed :class:`Resource` objects.

The mapper is an ordered chain of matchers, one per resource family.  Each
matcher first does a cheap substring check and only then runs its regular
expression.  The first matcher that produces a resource wins, so more
specific patterns must come before the broader ones they overlap with
(API-gateway stages before the bare API, for instance).

Unknown identifiers simply map to ``None``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable

from ecs_sd_exporter.resource import Resource, ResourceType

logger = logging.getLogger(__name__)

SQS_QUEUE_ARN_PATTERN = re.compile(r"arn:aws:sqs:(.+?):(.+?):(.+)")
SQS_URL_PATTERN = re.compile(r"https://sqs\.(.+?)\.amazonaws\.com/(.+?)/(.+)")
DYNAMODB_TABLE_ARN_PATTERN = re.compile(r"arn:aws:dynamodb:(.*?):(.*?):table/(.+?)(/.+)?")
LAMBDA_ARN_PATTERN = re.compile(r"arn:aws:lambda:(.*?):(.*?):function:(.+?)(:.+)?")
S3_ARN_PATTERN = re.compile(r"arn:aws:s3:(.*?):(.*?):(.+?)")
SNS_ARN_PATTERN = re.compile(r"arn:aws:sns:(.+?):(.+?):(.+)")
EVENTBUS_ARN_PATTERN = re.compile(r"arn:aws:events:(.+?):(.+?):event-bus/(.+)")
ECS_CLUSTER_PATTERN = re.compile(r"arn:aws:ecs:(.+?):(.+?):cluster/(.+)")
ECS_SERVICE_PATTERN = re.compile(r"arn:aws:ecs:(.+?):(.+?):service/(.+?)/(.+)")
ECS_TASK_DEFINITION_PATTERN = re.compile(r"arn:aws:ecs:(.+?):(.+?):task-definition/(.+)")
ECS_TASK_PATTERN = re.compile(r"arn:aws:ecs:(.+?):(.+?):task/(.+?)/(.+)")
LOAD_BALANCER_PATTERN = re.compile(
    r"arn:aws:elasticloadbalancing:(.+?):(.+?):loadbalancer/(.+?)/(.+?)/(.+)"
)
TARGET_GROUP_PATTERN = re.compile(r"arn:aws:elasticloadbalancing:(.+?):(.+?):targetgroup/(.+?)/(.+)")
ASG_PATTERN = re.compile(
    r"arn:aws:autoscaling:(.+?):(.+?):autoScalingGroup:(.+?):autoScalingGroupName/(.+)"
)
APIGATEWAY_STAGE_PATTERN = re.compile(r"arn:aws:apigateway:(.+?):(.*?):/restapis/(.+?)/stages/(.+)")
APIGATEWAY_PATTERN = re.compile(r"arn:aws:apigateway:(.+?):(.*?):/restapis/(.+)")


@dataclass(frozen=True)
class _Matcher:
    """One link of the mapping chain.

    ``required`` substrings must all be present and ``excluded`` ones absent
    before ``pattern`` is evaluated against the whole identifier.
    """

    required: tuple[str, ...]
    pattern: re.Pattern[str]
    build: Callable[[str, re.Match[str]], Resource]
    excluded: tuple[str, ...] = ()

    def match(self, arn: str) -> Resource | None:
        if not all(token in arn for token in self.required):
            return None
        if any(token in arn for token in self.excluded):
            return None
        m = self.pattern.fullmatch(arn)
        if m is None:
            return None
        return self.build(arn, m)


# ── Builders ──────────────────────────────────────────────────────────────


def _simple(resource_type: ResourceType, name_group: int = 3) -> Callable[[str, re.Match[str]], Resource]:
    """Builder for patterns shaped ``(region)(account)...(name)``."""

    def build(arn: str, m: re.Match[str]) -> Resource:
        return Resource(
            type=resource_type,
            arn=arn,
            region=m.group(1),
            account=m.group(2),
            name=m.group(name_group),
        )

    return build


def _s3_bucket(arn: str, m: re.Match[str]) -> Resource:
    return Resource(type=ResourceType.S3Bucket, arn=arn, region=m.group(1), account=m.group(2), name=m.group(3))


def _ecs_service(arn: str, m: re.Match[str]) -> Resource:
    cluster = Resource(
        type=ResourceType.ECSCluster,
        arn=f"arn:aws:ecs:{m.group(1)}:{m.group(2)}:cluster/{m.group(3)}",
        region=m.group(1),
        account=m.group(2),
        name=m.group(3),
    )
    return Resource(
        type=ResourceType.ECSService,
        arn=arn,
        region=m.group(1),
        account=m.group(2),
        name=m.group(4),
        parent=cluster,
    )


def _ecs_task_definition(arn: str, m: re.Match[str]) -> Resource:
    # "family:revision" -- the revision is only split off when present
    name, sep, version = m.group(3).rpartition(":")
    if not sep:
        name, version = version, None
    return Resource(
        type=ResourceType.ECSTaskDef,
        arn=arn,
        region=m.group(1),
        account=m.group(2),
        name=name,
        version=version or None,
    )


def _ecs_task(arn: str, m: re.Match[str]) -> Resource:
    cluster = Resource(
        type=ResourceType.ECSCluster,
        arn=f"arn:aws:ecs:{m.group(1)}:{m.group(2)}:cluster/{m.group(3)}",
        region=m.group(1),
        account=m.group(2),
        name=m.group(3),
    )
    return Resource(
        type=ResourceType.ECSTask,
        arn=arn,
        region=m.group(1),
        account=m.group(2),
        name=m.group(4),
        parent=cluster,
    )


def _load_balancer(arn: str, m: re.Match[str]) -> Resource:
    return Resource(
        type=ResourceType.LoadBalancer,
        arn=arn,
        region=m.group(1),
        account=m.group(2),
        sub_type=m.group(3),
        name=m.group(4),
        id=m.group(5),
    )


def _target_group(arn: str, m: re.Match[str]) -> Resource:
    return Resource(
        type=ResourceType.TargetGroup,
        arn=arn,
        region=m.group(1),
        account=m.group(2),
        name=m.group(3),
        id=m.group(4),
    )


def _sqs_url(url: str, m: re.Match[str]) -> Resource:
    region, account, name = m.group(1), m.group(2), m.group(3)
    return Resource(
        type=ResourceType.SQSQueue,
        arn=f"arn:aws:sqs:{region}:{account}:{name}",
        region=region,
        account=account,
        name=name,
    )


def _auto_scaling_group(arn: str, m: re.Match[str]) -> Resource:
    return Resource(
        type=ResourceType.AutoScalingGroup,
        arn=arn,
        region=m.group(1),
        account=m.group(2),
        id=m.group(3),
        name=m.group(4),
    )


def _api_gateway_stage(arn: str, m: re.Match[str]) -> Resource:
    api = Resource(
        type=ResourceType.APIGateway,
        arn=f"arn:aws:apigateway:{m.group(1)}:{m.group(2)}:/restapis/{m.group(3)}",
        region=m.group(1),
        account=m.group(2),
        name=m.group(3),
    )
    return Resource(
        type=ResourceType.APIGatewayStage,
        arn=arn,
        region=m.group(1),
        account=m.group(2),
        name=m.group(4),
        parent=api,
    )


# Order matters: the first matcher that produces a resource wins.
_MATCHERS: tuple[_Matcher, ...] = (
    _Matcher((":sqs",), SQS_QUEUE_ARN_PATTERN, _simple(ResourceType.SQSQueue)),
    _Matcher((":dynamodb", ":table/"), DYNAMODB_TABLE_ARN_PATTERN, _simple(ResourceType.DynamoDBTable)),
    _Matcher((":lambda", ":function:"), LAMBDA_ARN_PATTERN, _simple(ResourceType.LambdaFunction)),
    _Matcher((":s3",), S3_ARN_PATTERN, _s3_bucket),
    _Matcher((":sns",), SNS_ARN_PATTERN, _simple(ResourceType.SNSTopic)),
    _Matcher((":events", ":event-bus/"), EVENTBUS_ARN_PATTERN, _simple(ResourceType.EventBus)),
    _Matcher((":ecs", ":cluster/"), ECS_CLUSTER_PATTERN, _simple(ResourceType.ECSCluster)),
    _Matcher((":ecs", ":service/"), ECS_SERVICE_PATTERN, _ecs_service),
    _Matcher((":ecs", ":task-definition/"), ECS_TASK_DEFINITION_PATTERN, _ecs_task_definition),
    _Matcher((":ecs", ":task/"), ECS_TASK_PATTERN, _ecs_task),
    _Matcher(("arn:aws:elasticloadbalancing", ":loadbalancer/"), LOAD_BALANCER_PATTERN, _load_balancer),
    _Matcher(("arn:aws:elasticloadbalancing", ":targetgroup/"), TARGET_GROUP_PATTERN, _target_group),
    _Matcher(("https://sqs",), SQS_URL_PATTERN, _sqs_url),
    _Matcher(("arn:aws:autoscaling:",), ASG_PATTERN, _auto_scaling_group),
    _Matcher(("arn:aws:apigateway:", "/stages/"), APIGATEWAY_STAGE_PATTERN, _api_gateway_stage),
    _Matcher(
        ("arn:aws:apigateway:",),
        APIGATEWAY_PATTERN,
        _simple(ResourceType.APIGateway),
        excluded=("/stages/",),
    ),
)


class ResourceMapper:
    """Maps resource identifiers to :class:`Resource` objects.

    Stateless; a single instance can be shared across threads.
    """

    def __init__(self, matchers: tuple[_Matcher, ...] = _MATCHERS) -> None:
        self._matchers = matchers

    def map(self, arn: str | None) -> Resource | None:
        """Return the resource named by *arn*, or ``None`` if nothing matches."""
        if not isinstance(arn, str) or not arn:
            return None
        for matcher in self._matchers:
            resource = matcher.match(arn)
            if resource is not None:
                return resource
        logger.debug("No resource mapping for %s", arn)
        return None
