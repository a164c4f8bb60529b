"""
The web tier: stack configuration, lookups, bootstrap payload and the
declared resource nodes for security groups, launch template, autoscaling
group, load balancer, listener, listener rule and target group.
"""

import base64
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from .datasources import (
    CachingProvider, CrossStackOutput, DataSourceProvider, LocalStateBackend,
    NetworkDefault, S3StateBackend, SubnetSetForNetwork, resolve_lookups,
)
from .graph import DataRef, Lifecycle, Reference, ResourceKind, ResourceNode, ResourceGraph, build_graph
from .health.config import HealthCheckConfig
from .health.membership import MembershipStateMachine
from .health.routing import ListenerRouter, ListenerRule
from .render import render_template, template_hash
from .tags import base_tags

logger = logging.getLogger(__name__)


DEFAULT_USER_DATA = """#!/bin/bash

cat > index.html <<EOF
<h1>Hello, World</h1>
<p>DB address: ${db_address}</p>
<p>DB port: ${db_port}</p>
EOF

nohup busybox httpd -f -p ${server_port} &
"""

ALL_CIDRS = ["0.0.0.0/0"]

# Node ids
INSTANCE_SG = "instance_sg"
LAUNCH_TEMPLATE = "web_lt"
AUTOSCALING_GROUP = "web_asg"
LOAD_BALANCER = "web_alb"
HTTP_LISTENER = "http_listener"
ALB_SG = "alb_sg"
TARGET_GROUP = "asg_tg"
LISTENER_RULE = "asg_rule"

STACK_OUTPUTS = {
    "alb_dns_name": Reference(LOAD_BALANCER, "dns_name"),
    "asg_name": Reference(AUTOSCALING_GROUP, "name"),
}


class SecurityRule(BaseModel):
    protocol: str = "tcp"
    from_port: int = Field(ge=-1, le=65535)
    to_port: int = Field(ge=-1, le=65535)
    cidr_blocks: List[str] = Field(default_factory=lambda: list(ALL_CIDRS))

    @model_validator(mode="after")
    def _port_range(self):
        if self.from_port > self.to_port:
            raise ValueError("from_port must not exceed to_port")
        return self

    def to_attributes(self) -> Dict[str, Any]:
        return self.model_dump()


class RemoteStateConfig(BaseModel):
    """Where the database stack publishes its outputs: S3 or a local file."""
    bucket: Optional[str] = None
    key: Optional[str] = None
    region: Optional[str] = None
    path: Optional[str] = None

    @model_validator(mode="after")
    def _one_backend(self):
        if self.path is None and not (self.bucket and self.key):
            raise ValueError("db_remote_state needs either 'path' or 'bucket' and 'key'")
        return self

    def backend(self, default_region: str):
        if self.path is not None:
            return LocalStateBackend(self.path)
        return S3StateBackend(self.bucket, self.key, self.region or default_region)


class BootstrapVars(BaseModel):
    server_port: int = Field(ge=1, le=65535)
    db_address: str
    db_port: int = Field(ge=1, le=65535)


class StackConfig(BaseModel):
    name: str = Field(pattern=r"^[a-z0-9][a-z0-9-]{0,30}[a-z0-9]$")
    region: str = "us-east-2"
    image_id: str = "ami-0fb653ca2d3203ac1"
    instance_type: str = "t2.micro"
    server_port: int = Field(8080, ge=1, le=65535)
    http_port: int = Field(80, ge=1, le=65535)
    min_size: int = Field(2, ge=0)
    max_size: int = Field(10, ge=1)
    db_remote_state: RemoteStateConfig
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    drain_timeout: float = Field(ge=0)
    path_patterns: List[str] = Field(default_factory=lambda: ["*"])
    lifecycle_overrides: Dict[str, Lifecycle] = Field(default_factory=dict)
    tags: Dict[str, str] = Field(default_factory=dict)
    user_data_template: Optional[str] = None

    @model_validator(mode="after")
    def _sizes(self):
        if self.min_size > self.max_size:
            raise ValueError("min_size must not exceed max_size")
        return self


def load_stack_config(path: str) -> StackConfig:
    """Load and validate a stack definition from YAML."""
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    config = StackConfig.model_validate(data)

    # A relative template path is relative to the stack file.
    if config.user_data_template and not Path(config.user_data_template).is_absolute():
        config.user_data_template = str(Path(path).parent / config.user_data_template)
    return config


def lookup_requests(config: StackConfig) -> list:
    return [
        NetworkDefault("vpc_id"),
        SubnetSetForNetwork("subnet_ids", network_key="vpc_id"),
        CrossStackOutput(
            config.db_remote_state.backend(config.region),
            {"address": "db_address", "port": "db_port"},
        ),
    ]


def render_user_data(config: StackConfig, data: Mapping[str, Any]) -> str:
    """Render the instance bootstrap script from the stack and database lookups."""
    if config.user_data_template:
        template = Path(config.user_data_template).read_text()
    else:
        template = DEFAULT_USER_DATA

    variables = BootstrapVars(
        server_port=config.server_port,
        db_address=data["db_address"],
        db_port=data["db_port"],
    )
    return render_template(template, variables.model_dump())


def _lifecycle(config: StackConfig, node_id: str, default: Lifecycle) -> Lifecycle:
    return config.lifecycle_overrides.get(node_id, default)


def declare_resources(config: StackConfig, user_data: str) -> List[ResourceNode]:
    """
    Declare the web tier's resource nodes.

    Network and subnet values are left as DataRefs for the graph builder
    to fill in.
    """
    tags = base_tags(config.name, config.tags)
    content_hash = template_hash(user_data)
    encoded_user_data = base64.b64encode(user_data.encode("utf-8")).decode("ascii")

    def node(kind, node_id, attributes, default=Lifecycle.DESTROY_BEFORE_CREATE):
        return ResourceNode(kind, node_id, attributes, _lifecycle(config, node_id, default))

    instance_ingress = SecurityRule(from_port=config.server_port, to_port=config.server_port)
    alb_ingress = SecurityRule(from_port=config.http_port, to_port=config.http_port)
    alb_egress = SecurityRule(protocol="-1", from_port=0, to_port=0)

    return [
        node(ResourceKind.SECURITY_GROUP, INSTANCE_SG, {
            "name": f"{config.name}-instance",
            "vpc_id": DataRef("vpc_id"),
            "ingress": [instance_ingress.to_attributes()],
            "egress": [],
            "tags": tags,
        }),
        node(ResourceKind.LAUNCH_TEMPLATE, LAUNCH_TEMPLATE, {
            "name": f"{config.name}-{content_hash[:8]}",
            "image_id": config.image_id,
            "instance_type": config.instance_type,
            "security_groups": [Reference(INSTANCE_SG, "id")],
            "user_data": encoded_user_data,
            "tags": tags,
        }, default=Lifecycle.CREATE_BEFORE_DESTROY),
        node(ResourceKind.AUTOSCALING_GROUP, AUTOSCALING_GROUP, {
            # Naming the group after the template replaces it on every new template.
            "name": Reference(LAUNCH_TEMPLATE, "name"),
            "launch_template": {"id": Reference(LAUNCH_TEMPLATE, "id"), "version": "$Latest"},
            "vpc_zone_identifier": DataRef("subnet_ids"),
            "target_group_arns": [Reference(TARGET_GROUP, "arn")],
            "health_check_type": "ELB",
            "min_size": config.min_size,
            "max_size": config.max_size,
            "min_elb_capacity": config.min_size,
            "tags": tags,
        }, default=Lifecycle.CREATE_BEFORE_DESTROY),
        node(ResourceKind.LOAD_BALANCER, LOAD_BALANCER, {
            "name": f"{config.name}-alb",
            "load_balancer_type": "application",
            "internal": False,
            "subnets": DataRef("subnet_ids"),
            "security_groups": [Reference(ALB_SG, "id")],
            "tags": tags,
        }),
        node(ResourceKind.LISTENER, HTTP_LISTENER, {
            "load_balancer_arn": Reference(LOAD_BALANCER, "arn"),
            "port": config.http_port,
            "protocol": "HTTP",
            "default_action": {
                "type": "fixed-response",
                "fixed_response": {
                    "content_type": "text/plain",
                    "message_body": "404: page not found",
                    "status_code": 404,
                },
            },
        }),
        node(ResourceKind.SECURITY_GROUP, ALB_SG, {
            "name": f"{config.name}-alb",
            "vpc_id": DataRef("vpc_id"),
            "ingress": [alb_ingress.to_attributes()],
            "egress": [alb_egress.to_attributes()],
            "tags": tags,
        }),
        node(ResourceKind.TARGET_GROUP, TARGET_GROUP, {
            "name": f"{config.name}-tg",
            "port": config.server_port,
            "protocol": "HTTP",
            "vpc_id": DataRef("vpc_id"),
            "health_check": config.health_check.to_attributes(),
            "deregistration_delay": config.drain_timeout,
            "tags": tags,
        }),
        node(ResourceKind.LISTENER_RULE, LISTENER_RULE, {
            "listener_arn": Reference(HTTP_LISTENER, "arn"),
            "priority": 100,
            "condition": {"path_pattern": list(config.path_patterns)},
            "action": {"type": "forward", "target_group_arn": Reference(TARGET_GROUP, "arn")},
        }),
    ]


@dataclass
class PreparedStack:
    config: StackConfig
    data: Mapping[str, Any]
    user_data: str
    graph: ResourceGraph
    outputs: Dict[str, Reference]


def prepare_stack(config: StackConfig, provider: DataSourceProvider) -> PreparedStack:
    """
    Resolve lookups, render the bootstrap payload and build the graph.

    Raises:
        ResolutionError, MissingVariable, GraphError
    """
    data = resolve_lookups(lookup_requests(config), CachingProvider(provider))
    user_data = render_user_data(config, data)
    graph = build_graph(declare_resources(config, user_data), data)
    logger.info(f"Prepared stack {config.name}: {len(graph)} resources")
    return PreparedStack(config, data, user_data, graph, dict(STACK_OUTPUTS))


def membership_for(config: StackConfig, **kwargs) -> MembershipStateMachine:
    """State machine configured from the stack's target group settings."""
    return MembershipStateMachine(config.health_check, config.drain_timeout, **kwargs)


def router_for(config: StackConfig, machine: MembershipStateMachine) -> ListenerRouter:
    return ListenerRouter(machine, [ListenerRule(100, list(config.path_patterns))])
