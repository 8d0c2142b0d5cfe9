"""Typed identities for AWS resources and the relations between them."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ResourceType(str, Enum):
    """Supported AWS resource families.

    The value is the short name used internally; ``cfn_type`` is the
    CloudFormation style name exported in metric labels.
    """

    ECSCluster = "ECSCluster"
    ECSService = "ECSService"
    ECSTask = "ECSTask"
    ECSTaskDef = "ECSTaskDef"
    LoadBalancer = "LoadBalancer"
    TargetGroup = "TargetGroup"
    SQSQueue = "SQSQueue"
    DynamoDBTable = "DynamoDBTable"
    LambdaFunction = "LambdaFunction"
    S3Bucket = "S3Bucket"
    SNSTopic = "SNSTopic"
    EventBus = "EventBus"
    AutoScalingGroup = "AutoScalingGroup"
    APIGateway = "APIGateway"
    APIGatewayStage = "APIGatewayStage"

    @property
    def cfn_type(self) -> str:
        return _CFN_TYPES[self]


_CFN_TYPES: dict[ResourceType, str] = {
    ResourceType.ECSCluster: "AWS::ECS::Cluster",
    ResourceType.ECSService: "AWS::ECS::Service",
    ResourceType.ECSTask: "AWS::ECS::Task",
    ResourceType.ECSTaskDef: "AWS::ECS::TaskDefinition",
    ResourceType.LoadBalancer: "AWS::ElasticLoadBalancingV2::LoadBalancer",
    ResourceType.TargetGroup: "AWS::ElasticLoadBalancingV2::TargetGroup",
    ResourceType.SQSQueue: "AWS::SQS::Queue",
    ResourceType.DynamoDBTable: "AWS::DynamoDB::Table",
    ResourceType.LambdaFunction: "AWS::Lambda::Function",
    ResourceType.S3Bucket: "AWS::S3::Bucket",
    ResourceType.SNSTopic: "AWS::SNS::Topic",
    ResourceType.EventBus: "AWS::Events::EventBus",
    ResourceType.AutoScalingGroup: "AWS::AutoScaling::AutoScalingGroup",
    ResourceType.APIGateway: "AWS::ApiGateway::RestApi",
    ResourceType.APIGatewayStage: "AWS::ApiGateway::Stage",
}


@dataclass(frozen=True)
class Resource:
    """An AWS resource decoded from its ARN (or queue URL).

    Two resources are equal when they have the same ``type`` and ``arn``;
    every other field is descriptive. ``parent`` points at the owning
    resource (service → cluster, stage → API) and is only used to
    propagate labels.
    """

    type: ResourceType
    arn: str = ""
    region: str = field(default="", compare=False)
    account: str = field(default="", compare=False)
    name: str = field(default="", compare=False)
    sub_type: str | None = field(default=None, compare=False)
    id: str | None = field(default=None, compare=False)
    version: str | None = field(default=None, compare=False)
    parent: Resource | None = field(default=None, compare=False, repr=False)

    def add_labels(self, labels: dict[str, str], prefix: str) -> None:
        """Write this resource's identity into *labels* under *prefix*."""
        labels[f"{prefix}_type"] = self.type.value
        labels[f"{prefix}_name"] = self.name
        optional = {
            "account": self.account,
            "region": self.region,
            "id": self.id,
            "version": self.version,
            "subtype": self.sub_type,
        }
        for key, value in optional.items():
            if value:
                labels[f"{prefix}_{key}"] = value
        if self.parent is not None:
            labels[f"{prefix}_parent_type"] = self.parent.type.value
            labels[f"{prefix}_parent_name"] = self.parent.name


@dataclass(frozen=True)
class ResourceRelation:
    """A directed edge between two resources, e.g. target group → service."""

    from_resource: Resource
    to_resource: Resource
    name: str

    def labels(self) -> dict[str, str]:
        labels: dict[str, str] = {"rel_name": self.name}
        self.from_resource.add_labels(labels, "from")
        self.to_resource.add_labels(labels, "to")
        return labels
