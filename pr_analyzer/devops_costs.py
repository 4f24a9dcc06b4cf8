"""Infrastructure cost estimates for IaC changes (Terraform, CloudFormation)."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Optional

from pr_analyzer.config import AWS_MONTHLY_COSTS, DEVOPS_FILE_PATTERNS, RESOURCE_COST_KEYS
from pr_analyzer.diff_parser import added_lines
from pr_analyzer.models import Confidence, DevOpsCostEstimate, DiffFile

logger = logging.getLogger(__name__)

_DEVOPS_RES = {
    kind: tuple(re.compile(p) for p in patterns) for kind, patterns in DEVOPS_FILE_PATTERNS.items()
}

_TERRAFORM_RESOURCE_RE = re.compile(r'resource\s+"([^"]+)"\s+"([^"]+)"')

# Terraform type prefix -> resource kind, first match wins
_TERRAFORM_KINDS = (
    (("aws_instance",), "ec2"),
    (("aws_lambda",), "lambda"),
    (("aws_s3",), "s3"),
    (("aws_rds", "aws_db"), "rds"),
    (("aws_ecs",), "ecs"),
    (("aws_alb", "aws_lb"), "alb"),
    (("aws_nat",), "nat-gateway"),
    (("aws_elasticache",), "elasticache"),
    (("aws_cloudfront",), "cloudfront"),
    (("aws_api_gateway", "aws_apigatewayv2"), "api-gateway"),
    (("aws_sqs",), "sqs"),
    (("aws_sns",), "sns"),
    (("aws_dynamodb",), "dynamodb"),
)

_CLOUDFORMATION_KINDS = {
    "AWS::EC2::Instance": "ec2",
    "AWS::Lambda::Function": "lambda",
    "AWS::S3::Bucket": "s3",
    "AWS::RDS::DBInstance": "rds",
    "AWS::ECS::Service": "ecs",
    "AWS::ECS::TaskDefinition": "ecs",
    "AWS::ElasticLoadBalancingV2::LoadBalancer": "alb",
    "AWS::EC2::NatGateway": "nat-gateway",
    "AWS::ElastiCache::CacheCluster": "elasticache",
    "AWS::CloudFront::Distribution": "cloudfront",
    "AWS::ApiGateway::RestApi": "api-gateway",
    "AWS::ApiGatewayV2::Api": "api-gateway",
    "AWS::SQS::Queue": "sqs",
    "AWS::SNS::Topic": "sns",
    "AWS::DynamoDB::Table": "dynamodb",
}


def devops_file_kind(path: str) -> Optional[str]:
    """terraform, docker, kubernetes, ... for infrastructure files; None otherwise."""
    for kind, patterns in _DEVOPS_RES.items():
        if any(p.search(path) for p in patterns):
            return kind
    return None


# ── Resource extraction ──────────────────────────────────────────────────────


def terraform_resources(content: str) -> list[tuple[str, str]]:
    """(resource name, kind) for each costed AWS resource block."""
    resources = []
    for tf_type, name in _TERRAFORM_RESOURCE_RE.findall(content):
        for prefixes, kind in _TERRAFORM_KINDS:
            if tf_type.startswith(prefixes):
                resources.append((name, kind))
                break
    return resources


def cloudformation_resources(content: str) -> list[tuple[str, str]]:
    """(logical ID, kind) for each costed resource in a template."""
    resources = []
    for aws_type, kind in _CLOUDFORMATION_KINDS.items():
        if aws_type not in content:
            continue
        pattern = re.compile(rf"(\w+):\s*\n\s*Type:\s*['\"]?{re.escape(aws_type)}(?![\w:])")
        ids = pattern.findall(content)
        # The type is mentioned but no logical ID could be matched
        resources.extend((logical_id, kind) for logical_id in ids or [kind])
    return resources


def estimate_resource_cost(kind: str) -> DevOpsCostEstimate:
    """Typical monthly cost of one resource kind, with its min-max range."""
    entry = RESOURCE_COST_KEYS.get(kind)
    if entry is None:
        return DevOpsCostEstimate(
            resource=kind,
            resource_type=kind,
            estimated_new_cost=0.0,
            details="Unknown resource type - manual estimation required",
        )
    cost_key, confidence = entry
    low, typical, high = AWS_MONTHLY_COSTS[cost_key]
    return DevOpsCostEstimate(
        resource=kind,
        resource_type=kind,
        estimated_new_cost=typical,
        confidence=Confidence(confidence),
        details=f"Estimated ${low:.2f} - ${high:.2f}/month",
    )


# ── Estimates ────────────────────────────────────────────────────────────────


def estimate_devops_costs(files: Iterable[DiffFile]) -> list[DevOpsCostEstimate]:
    """One estimate per resource kind added by Terraform or CloudFormation changes.

    Only added lines are scanned. Other infrastructure files (Docker,
    Kubernetes, CI workflows) are recognised but carry no cost table.
    """
    resources: list[tuple[str, str]] = []
    kinds_seen: set[str] = set()
    for f in files:
        kind = devops_file_kind(f.path)
        if kind is None:
            continue
        kinds_seen.add(kind)
        content = "\n".join(added_lines(f.diff))
        if kind == "terraform":
            resources += terraform_resources(content)
        elif kind == "cloudformation":
            resources += cloudformation_resources(content)

    estimates = []
    for _name, resource_kind in resources:
        if resource_kind not in {e.resource_type for e in estimates}:
            estimates.append(estimate_resource_cost(resource_kind))

    if estimates:
        logger.info(
            "DevOps changes (%s): %d resource kinds, ~$%.2f/month",
            ", ".join(sorted(kinds_seen)),
            len(estimates),
            total_monthly_cost(estimates),
        )
    return estimates


def total_monthly_cost(estimates: Iterable[DevOpsCostEstimate]) -> float:
    return sum(e.estimated_new_cost for e in estimates)
