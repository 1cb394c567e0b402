import itertools
import threading
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ec2deploy import Ec2DeployConfig, Provider, ProviderResource
from ec2deploy.declaration import INSTANCE, MARKER_TAG_KEY

PUBLIC_IP = "54.210.167.204"


def has_aws_creds():
    try:
        boto3.client("sts").get_caller_identity()
        return True
    except (BotoCoreError, ClientError):
        return False


def make_declaration(**overrides):
    params = {
        "environment": "test",
        "region": "us-east-1",
        "ami_id": "ami-0953476d60561c955",
        "instance_type": "t2.micro",
        "key_name": "testkey",
        "state_dir": "unused",
    }
    params.update(overrides)
    return Ec2DeployConfig.from_settings(**params).declaration()


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(Provider):
    """In-memory provider that records every call."""

    def __init__(self, public_ip: Optional[str] = PUBLIC_IP):
        self.public_ip = public_ip
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.client_tokens: Dict[str, str] = {}
        self.fail_on: Dict[Tuple[str, str], Exception] = {}
        self._ids = itertools.count(1)

    def create(self, address, kind, attributes, refs, client_token=None):
        self._record("create", address)
        if client_token and client_token in self.client_tokens:
            resource_id = self.client_tokens[client_token]
        else:
            prefix = "i-" if kind == INSTANCE else "sg-"
            resource_id = f"{prefix}{next(self._ids):08x}"
            if client_token:
                self.client_tokens[client_token] = resource_id
        self.resources[resource_id] = {
            "kind": kind,
            "attributes": dict(attributes),
            "refs": dict(refs),
            "computed": self._computed(kind),
        }
        return ProviderResource(id=resource_id, computed=self._computed(kind))

    def update(self, address, kind, resource_id, before, after, refs):
        self._record("update", address)
        self.resources[resource_id]["attributes"] = dict(after)
        return ProviderResource(id=resource_id, computed=self.resources[resource_id]["computed"])

    def delete(self, address, kind, resource_id):
        self._record("delete", address)
        self.resources.pop(resource_id, None)

    def describe(self, address, kind, resource_id):
        resource = self.resources.get(resource_id)
        if resource is None:
            return None
        return ProviderResource(id=resource_id, computed=resource["computed"])

    def list_tagged_instances(self, environment):
        return [
            {"id": resource_id, "name": "", "state": "running"}
            for resource_id, resource in self.resources.items()
            if resource["kind"] == INSTANCE
            and resource["attributes"].get("tags", {}).get(MARKER_TAG_KEY) == environment
        ]

    def operations(self) -> List[Tuple[str, str]]:
        return list(self.calls)

    def _computed(self, kind) -> Dict[str, Any]:
        if kind == INSTANCE:
            return {"public_ip": self.public_ip, "state": "running"}
        return {"vpc_id": "vpc-0a1b2c3d"}

    def _record(self, operation: str, address: str) -> None:
        self.calls.append((operation, address))
        error = self.fail_on.get((operation, address))
        if error is not None:
            raise error


class BlockingProvider(FakeProvider):
    """Blocks inside the first create until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def create(self, address, kind, attributes, refs, client_token=None):
        self.entered.set()
        if not self.release.wait(timeout=10):
            raise RuntimeError("BlockingProvider was never released")
        return super().create(address, kind, attributes, refs, client_token)
