"""
Desired-state declarations for a single EC2 deployment target.

A ResourceDeclaration describes one security group and the instance that
references it, plus the named outputs downstream automation binds to.
"""

from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, model_validator

SECURITY_GROUP = "security_group"
INSTANCE = "instance"

# Tag carried by every resource ec2deploy creates; value is the environment.
MARKER_TAG_KEY = "ec2deploy_environment"

# Changing any of these cannot be done in place.
FORCE_NEW_ATTRIBUTES: Dict[str, Tuple[str, ...]] = {
    SECURITY_GROUP: ("name", "description", "vpc_id"),
    INSTANCE: ("ami_id", "key_name", "subnet_id", "instance_profile"),
}


class IngressRule(BaseModel, frozen=True):
    from_port: int
    to_port: int
    protocol: str = "tcp"
    cidr: str = "0.0.0.0/0"

    @model_validator(mode="after")
    def _check_ports(self) -> "IngressRule":
        if self.from_port > self.to_port:
            raise ValueError(
                f"from_port {self.from_port} is greater than to_port {self.to_port}"
            )
        return self

    def key(self) -> Tuple[str, int, int, str]:
        return (self.protocol, self.from_port, self.to_port, self.cidr)


class SecurityGroupDeclaration(BaseModel, frozen=True):
    name: str
    description: str = "Managed by ec2deploy"
    vpc_id: Optional[str] = None
    ingress: Tuple[IngressRule, ...] = ()
    tags: Tuple[Tuple[str, str], ...] = ()


class InstanceDeclaration(BaseModel, frozen=True):
    ami_id: str
    instance_type: str
    key_name: str
    subnet_id: Optional[str] = None
    instance_profile: Optional[str] = None
    tags: Tuple[Tuple[str, str], ...] = ()


class OutputDeclaration(BaseModel, frozen=True):
    """
    A named value extracted from applied state.

    Attributes:
        name: Output name downstream automation binds to, e.g. ec2_public_ip
        address: Resource address to read from
        attribute: Attribute of that resource; "id" is the provider ID,
            anything else is looked up in the provider-assigned attributes
            and then in the declared ones
    """

    name: str
    address: str
    attribute: str


DEFAULT_OUTPUTS: Tuple[OutputDeclaration, ...] = (
    OutputDeclaration(name="ec2_public_ip", address=INSTANCE, attribute="public_ip"),
    OutputDeclaration(name="ec2_instance_id", address=INSTANCE, attribute="id"),
)


class DesiredResource(BaseModel, frozen=True):
    kind: str
    attributes: Dict[str, Any]
    depends_on: Tuple[str, ...] = ()


class ResourceDeclaration(BaseModel, frozen=True):
    """Everything that should exist for one environment."""

    environment: str
    region: str
    security_group: SecurityGroupDeclaration
    instance: InstanceDeclaration
    outputs: Tuple[OutputDeclaration, ...] = DEFAULT_OUTPUTS

    @model_validator(mode="after")
    def _check_outputs(self) -> "ResourceDeclaration":
        names = [output.name for output in self.outputs]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate output names: {', '.join(duplicates)}")
        for output in self.outputs:
            if output.address not in (SECURITY_GROUP, INSTANCE):
                raise ValueError(
                    f"Output '{output.name}' refers to unknown resource "
                    f"'{output.address}'"
                )
        return self

    def desired_resources(self) -> Dict[str, DesiredResource]:
        sg = self.security_group
        instance = self.instance
        return {
            SECURITY_GROUP: DesiredResource(
                kind=SECURITY_GROUP,
                attributes={
                    "name": sg.name,
                    "description": sg.description,
                    "vpc_id": sg.vpc_id,
                    "ingress": sorted(
                        [rule.model_dump() for rule in sg.ingress],
                        key=lambda r: (r["protocol"], r["from_port"], r["to_port"], r["cidr"]),
                    ),
                    "tags": dict(sg.tags),
                },
            ),
            INSTANCE: DesiredResource(
                kind=INSTANCE,
                attributes={
                    "ami_id": instance.ami_id,
                    "instance_type": instance.instance_type,
                    "key_name": instance.key_name,
                    "subnet_id": instance.subnet_id,
                    "instance_profile": instance.instance_profile,
                    "tags": dict(instance.tags),
                },
                depends_on=(SECURITY_GROUP,),
            ),
        }
