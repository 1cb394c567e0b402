"""
Configuration for ec2deploy environments.

Values come from EC2_DEPLOY_* environment variables (or a .env file),
overridden by keyword arguments, with defaults for everything but the
state backend.
"""

import os
from pathlib import Path
from typing import Optional, Tuple

import boto3
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from ._unpack import unpack_ingress_rules, unpack_tags
from .declaration import (
    MARKER_TAG_KEY,
    IngressRule,
    InstanceDeclaration,
    ResourceDeclaration,
    SecurityGroupDeclaration,
)
from .state import LocalStateStore, S3StateStore, StateStore

env_prefix = "EC2_DEPLOY_"

DEFAULT_REGION = "us-east-1"
DEFAULT_AMI_ID = "ami-0953476d60561c955"
DEFAULT_INSTANCE_TYPE = "t2.micro"
DEFAULT_KEY_NAME = "testkey"
DEFAULT_INGRESS_RULES = "22/tcp/0.0.0.0/0;80/tcp/0.0.0.0/0"

# Resolve the AMI from the public Ubuntu 24.04 parameter instead of a fixed ID.
UBUNTU_24_ALIAS = "ubuntu-24.04"


class _Ec2DeploySettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", env_prefix=env_prefix
    )
    environment: Optional[str] = None
    region: Optional[str] = None
    vpc_id: Optional[str] = None
    subnet_id: Optional[str] = None
    ami_id: Optional[str] = None
    instance_type: Optional[str] = None
    key_name: Optional[str] = None
    instance_profile: Optional[str] = None
    ingress_rules_str: Optional[str] = None  # in the format "22/tcp/0.0.0.0/0;80/tcp/0.0.0.0/0"
    extra_tags_str: Optional[str] = None  # in the format "key1=value1;key2=value2"
    state_bucket: Optional[str] = None
    state_key: Optional[str] = None
    lock_table: Optional[str] = None
    state_dir: Optional[str] = None
    lock_timeout: Optional[float] = None
    readiness_port: Optional[int] = None
    readiness_timeout: Optional[float] = None
    readiness_interval: Optional[float] = None
    ssh_user: Optional[str] = None
    ssh_key_file: Optional[str] = None


class Ec2DeployConfig(BaseModel, frozen=True):
    """
    Configuration for one deployment environment.

    Attributes:
        environment: Environment name, used in resource names, tags and the state key
        region: AWS region
        vpc_id: VPC for the security group (optional, default VPC otherwise)
        subnet_id: Subnet for the instance (optional, default subnet otherwise)
        ami_id: AMI ID, or "ubuntu-24.04" to look up the current Ubuntu image
        instance_type: EC2 instance type
        key_name: Name of an existing EC2 key pair
        instance_profile: IAM instance profile (optional, needed for SSM execution)
        ingress_rules: Rules for the instance security group
        extra_tags: tuple of 2-tuples of additional tags
        state_bucket: S3 bucket holding state (optional, local state otherwise)
        state_key: S3 key of the state object
        lock_table: DynamoDB table holding the state lock, required with state_bucket
        state_dir: Directory for local state files
        lock_timeout: Seconds to keep retrying a held lock, 0 fails immediately
        readiness_port: Port polled before handing off
        readiness_timeout: Seconds to wait for the port
        readiness_interval: Seconds between connection attempts
        ssh_user: Remote user for SSH deployment
        ssh_key_file: Private key for SSH deployment (optional)
    """

    environment: str
    region: str
    vpc_id: Optional[str]
    subnet_id: Optional[str]
    ami_id: str
    instance_type: str
    key_name: str
    instance_profile: Optional[str]
    ingress_rules: Tuple[IngressRule, ...]
    extra_tags: Tuple[Tuple[str, str], ...]
    state_bucket: Optional[str]
    state_key: str
    lock_table: Optional[str]
    state_dir: str
    lock_timeout: float
    readiness_port: int
    readiness_timeout: float
    readiness_interval: float
    ssh_user: str
    ssh_key_file: Optional[str]

    @classmethod
    def from_settings(cls, **kwargs):
        """Create an instance from environment settings with optional overrides."""
        settings = _Ec2DeploySettings()

        params = {
            "environment": settings.environment,
            "region": settings.region,
            "vpc_id": settings.vpc_id,
            "subnet_id": settings.subnet_id,
            "ami_id": settings.ami_id,
            "instance_type": settings.instance_type,
            "key_name": settings.key_name,
            "instance_profile": settings.instance_profile,
            "ingress_rules": unpack_ingress_rules(
                settings.ingress_rules_str or DEFAULT_INGRESS_RULES
            ),
            "extra_tags": unpack_tags(settings.extra_tags_str),
            "state_bucket": settings.state_bucket,
            "state_key": settings.state_key,
            "lock_table": settings.lock_table,
            "state_dir": settings.state_dir,
            "lock_timeout": settings.lock_timeout,
            "readiness_port": settings.readiness_port,
            "readiness_timeout": settings.readiness_timeout,
            "readiness_interval": settings.readiness_interval,
            "ssh_user": settings.ssh_user,
            "ssh_key_file": settings.ssh_key_file,
        }

        # Override with any provided kwargs
        params.update({k: v for k, v in kwargs.items() if v is not None})

        if params["environment"] is None:
            params["environment"] = "dev"

        if params["region"] is None:
            params["region"] = os.getenv("AWS_REGION") or DEFAULT_REGION

        if params["ami_id"] is None:
            params["ami_id"] = DEFAULT_AMI_ID
        elif params["ami_id"] == UBUNTU_24_ALIAS:
            params["ami_id"] = _find_ami_ubu24(params["region"])

        if params["instance_type"] is None:
            params["instance_type"] = DEFAULT_INSTANCE_TYPE

        if params["key_name"] is None:
            params["key_name"] = DEFAULT_KEY_NAME

        if params["state_key"] is None:
            params["state_key"] = f"{params['environment']}/terraform.tfstate"

        if params["state_key"].startswith("/"):
            raise ValueError(f"State key '{params['state_key']}' must not start with a '/'")

        if bool(params["state_bucket"]) != bool(params["lock_table"]):
            raise ValueError(
                "State bucket and lock table must be set together,"
                f" via {env_prefix}STATE_BUCKET and {env_prefix}LOCK_TABLE."
            )

        defaults = {
            "state_dir": ".ec2deploy",
            "lock_timeout": 0.0,
            "readiness_port": 22,
            "readiness_timeout": 30.0,
            "readiness_interval": 2.0,
            "ssh_user": "ubuntu",
        }
        for name, value in defaults.items():
            if params[name] is None:
                params[name] = value

        return cls(**params)

    @property
    def resource_name(self) -> str:
        return f"ec2deploy-{self.environment}"

    def declaration(self) -> ResourceDeclaration:
        tags = (
            ("Name", self.resource_name),
            (MARKER_TAG_KEY, self.environment),
            *self.extra_tags,
        )
        return ResourceDeclaration(
            environment=self.environment,
            region=self.region,
            security_group=SecurityGroupDeclaration(
                name=f"{self.resource_name}-sg",
                description=f"Access to the {self.environment} deployment host",
                vpc_id=self.vpc_id,
                ingress=self.ingress_rules,
                tags=tags,
            ),
            instance=InstanceDeclaration(
                ami_id=self.ami_id,
                instance_type=self.instance_type,
                key_name=self.key_name,
                subnet_id=self.subnet_id,
                instance_profile=self.instance_profile,
                tags=tags,
            ),
        )

    def state_store(self) -> StateStore:
        if self.state_bucket and self.lock_table:
            return S3StateStore(
                bucket=self.state_bucket,
                key=self.state_key,
                region=self.region,
                lock_table=self.lock_table,
            )
        return LocalStateStore(Path(self.state_dir) / f"{self.environment}.tfstate.json")


def _find_ami_ubu24(region: str) -> str:
    ssm_client = boto3.client("ssm", region_name=region)

    # see https://documentation.ubuntu.com/aws/aws-how-to/instances/find-ubuntu-images/
    response = ssm_client.get_parameters(
        Names=[
            "/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp3/ami-id"
        ]
    )

    if not response["Parameters"]:
        raise ValueError("Could not find Ubuntu 24.04 AMI ID in SSM Parameter Store")

    return response["Parameters"][0]["Value"]
