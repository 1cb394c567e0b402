import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Dict, List, Mapping, Optional

import boto3
from botocore.exceptions import ClientError, WaiterError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from typing_extensions import override

from ._unpack import convert_tags_for_aws_interface
from .declaration import INSTANCE, MARKER_TAG_KEY, SECURITY_GROUP, IngressRule
from .errors import ProviderError, ProviderRejected

logger = getLogger(__name__)

TRANSIENT_ERROR_CODES = frozenset(
    {
        "RequestLimitExceeded",
        "Throttling",
        "ThrottlingException",
        "InternalError",
        "InternalFailure",
        "ServiceUnavailable",
        "Unavailable",
    }
)

REJECTED_ERROR_PREFIXES = (
    "InvalidParameter",
    "InvalidAMIID",
    "InvalidKeyPair",
    "InvalidSubnetID",
    "InvalidVpcID",
    "InvalidGroup.Duplicate",
    "InvalidPermission",
    "InvalidInstanceType",
    "MissingParameter",
    "Unsupported",
)

NOT_FOUND_ERROR_CODES = frozenset(
    {
        "InvalidInstanceID.NotFound",
        "InvalidInstanceID.Malformed",
        "InvalidGroup.NotFound",
        "InvalidGroupId.Malformed",
    }
)

LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]


@dataclass(frozen=True)
class ProviderResource:
    id: str
    computed: Dict[str, Any] = field(default_factory=dict)


class Provider(ABC):
    """Create, change, describe and delete the resources a declaration names."""

    @abstractmethod
    def create(
        self,
        address: str,
        kind: str,
        attributes: Mapping[str, Any],
        refs: Mapping[str, str],
        client_token: Optional[str] = None,
    ) -> ProviderResource:
        pass

    @abstractmethod
    def update(
        self,
        address: str,
        kind: str,
        resource_id: str,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
        refs: Mapping[str, str],
    ) -> ProviderResource:
        pass

    @abstractmethod
    def delete(self, address: str, kind: str, resource_id: str) -> None:
        pass

    @abstractmethod
    def describe(
        self, address: str, kind: str, resource_id: str
    ) -> Optional[ProviderResource]:
        """Current provider view of a resource, or None if it no longer exists."""

    @abstractmethod
    def list_tagged_instances(self, environment: str) -> List[Dict[str, str]]:
        pass


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "") if e.response else ""


def _translate(e: ClientError, address: str, operation: str) -> ProviderError:
    code = _error_code(e)
    message = e.response.get("Error", {}).get("Message", str(e)) if e.response else str(e)
    if code.startswith(REJECTED_ERROR_PREFIXES):
        return ProviderRejected(address, operation, code, message)
    return ProviderError(address, operation, code, message)


class Ec2Provider(Provider):
    """Provider backed by the EC2 API via boto3."""

    def __init__(
        self,
        region: str,
        client=None,
        max_attempts: int = 5,
        backoff: float = 1.0,
    ):
        self.region = region
        self.client = client or boto3.client("ec2", region_name=region)
        self.max_attempts = max_attempts
        self.backoff = backoff

    @override
    def create(self, address, kind, attributes, refs, client_token=None):
        if kind == SECURITY_GROUP:
            return self._create_security_group(address, attributes)
        if kind == INSTANCE:
            return self._create_instance(address, attributes, refs, client_token)
        raise ValueError(f"Unknown resource kind {kind}")

    @override
    def update(self, address, kind, resource_id, before, after, refs):
        if kind == SECURITY_GROUP:
            self._update_ingress(address, resource_id, before, after)
        elif kind == INSTANCE:
            if before.get("instance_type") != after.get("instance_type"):
                self._change_instance_type(address, resource_id, after["instance_type"])
        else:
            raise ValueError(f"Unknown resource kind {kind}")
        self._update_tags(address, resource_id, before.get("tags") or {}, after.get("tags") or {})

        current = self.describe(address, kind, resource_id)
        if current is None:
            raise ProviderError(address, "update", message=f"{resource_id} disappeared")
        return current

    @override
    def delete(self, address, kind, resource_id):
        try:
            if kind == SECURITY_GROUP:
                self._call(
                    address,
                    "delete",
                    "delete_security_group",
                    transient=("DependencyViolation",),
                    GroupId=resource_id,
                )
            elif kind == INSTANCE:
                self._call(address, "delete", "terminate_instances", InstanceIds=[resource_id])
                self._wait(address, "delete", "instance_terminated", InstanceIds=[resource_id])
            else:
                raise ValueError(f"Unknown resource kind {kind}")
        except ProviderError as e:
            if e.code not in NOT_FOUND_ERROR_CODES:
                raise
            logger.info(f"{address} ({resource_id}) was already gone")

    @override
    def describe(self, address, kind, resource_id):
        try:
            if kind == SECURITY_GROUP:
                return self._describe_security_group(address, resource_id)
            if kind == INSTANCE:
                return self._describe_instance(address, resource_id)
        except ProviderError as e:
            if e.code in NOT_FOUND_ERROR_CODES:
                return None
            raise
        raise ValueError(f"Unknown resource kind {kind}")

    @override
    def list_tagged_instances(self, environment):
        response = self._call(
            "instances",
            "list",
            "describe_instances",
            Filters=[
                {"Name": f"tag:{MARKER_TAG_KEY}", "Values": [environment]},
                {"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES},
            ],
        )
        instances = []
        for reservation in response["Reservations"]:
            for instance in reservation["Instances"]:
                name_tag = ""
                for tag in instance.get("Tags", []):
                    if tag["Key"] == "Name":
                        name_tag = tag["Value"]
                        break
                instances.append(
                    {
                        "id": instance["InstanceId"],
                        "name": name_tag,
                        "state": instance["State"]["Name"],
                    }
                )
        return instances

    def _create_security_group(self, address, attributes) -> ProviderResource:
        params: Dict[str, Any] = {
            "GroupName": attributes["name"],
            "Description": attributes["description"],
            "TagSpecifications": convert_tags_for_aws_interface(
                "security-group", attributes.get("tags") or {}
            ),
        }
        if attributes.get("vpc_id"):
            params["VpcId"] = attributes["vpc_id"]

        response = self._call(address, "create", "create_security_group", **params)
        group_id = response["GroupId"]
        logger.info(f"Created security group {group_id} for {address}")

        applied = {**attributes, "ingress": []}
        try:
            self._update_ingress(address, group_id, applied, attributes)
            applied = dict(attributes)
            current = self._describe_security_group(address, group_id)
        except ProviderError as e:
            raise e.left_behind(group_id, applied)
        if current is None:
            raise ProviderError(address, "create", message=f"{group_id} not visible after create")
        return current

    def _update_ingress(self, address, group_id, before, after) -> None:
        old = {IngressRule(**r).key(): IngressRule(**r) for r in before.get("ingress") or []}
        new = {IngressRule(**r).key(): IngressRule(**r) for r in after.get("ingress") or []}

        revoked = [rule for key, rule in old.items() if key not in new]
        granted = [rule for key, rule in new.items() if key not in old]
        if revoked:
            self._call(
                address,
                "update",
                "revoke_security_group_ingress",
                GroupId=group_id,
                IpPermissions=[_ip_permission(rule) for rule in revoked],
            )
        if granted:
            self._call(
                address,
                "update",
                "authorize_security_group_ingress",
                GroupId=group_id,
                IpPermissions=[_ip_permission(rule) for rule in granted],
            )

    def _describe_security_group(self, address, group_id) -> Optional[ProviderResource]:
        response = self._call(address, "describe", "describe_security_groups", GroupIds=[group_id])
        groups = response.get("SecurityGroups", [])
        if not groups:
            return None
        group = groups[0]
        return ProviderResource(
            id=group["GroupId"],
            computed={"vpc_id": group.get("VpcId"), "owner_id": group.get("OwnerId")},
        )

    def _create_instance(self, address, attributes, refs, client_token) -> ProviderResource:
        params: Dict[str, Any] = {
            "ImageId": attributes["ami_id"],
            "InstanceType": attributes["instance_type"],
            "KeyName": attributes["key_name"],
            "SecurityGroupIds": [refs[SECURITY_GROUP]],
            "TagSpecifications": convert_tags_for_aws_interface(
                "instance", attributes.get("tags") or {}
            ),
            "MinCount": 1,
            "MaxCount": 1,
        }
        if attributes.get("subnet_id"):
            params["SubnetId"] = attributes["subnet_id"]
        if attributes.get("instance_profile"):
            params["IamInstanceProfile"] = {"Name": attributes["instance_profile"]}
        if client_token:
            params["ClientToken"] = client_token

        response = self._call(address, "create", "run_instances", **params)
        instance_id = response["Instances"][0]["InstanceId"]
        logger.info(f"Launched {instance_id} for {address}, waiting for it to run")

        try:
            self._wait(address, "create", "instance_running", InstanceIds=[instance_id])
            current = self._describe_instance(address, instance_id)
        except ProviderError as e:
            raise e.left_behind(instance_id, attributes)
        if current is None:
            raise ProviderError(address, "create", message=f"{instance_id} terminated after launch")
        return current

    def _change_instance_type(self, address, instance_id, instance_type) -> None:
        logger.info(f"Stopping {instance_id} to change its type to {instance_type}")
        self._call(address, "update", "stop_instances", InstanceIds=[instance_id])
        self._wait(address, "update", "instance_stopped", InstanceIds=[instance_id])
        self._call(
            address,
            "update",
            "modify_instance_attribute",
            InstanceId=instance_id,
            InstanceType={"Value": instance_type},
        )
        self._call(address, "update", "start_instances", InstanceIds=[instance_id])
        self._wait(address, "update", "instance_running", InstanceIds=[instance_id])

    def _describe_instance(self, address, instance_id) -> Optional[ProviderResource]:
        response = self._call(address, "describe", "describe_instances", InstanceIds=[instance_id])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                state = instance["State"]["Name"]
                if state in ("shutting-down", "terminated"):
                    return None
                return ProviderResource(
                    id=instance["InstanceId"],
                    computed={
                        "public_ip": instance.get("PublicIpAddress"),
                        "private_ip": instance.get("PrivateIpAddress"),
                        "public_dns": instance.get("PublicDnsName") or None,
                        "state": state,
                        "availability_zone": instance.get("Placement", {}).get(
                            "AvailabilityZone"
                        ),
                    },
                )
        return None

    def _update_tags(self, address, resource_id, before, after) -> None:
        stale = [k for k in before if k not in after]
        fresh = {k: v for k, v in after.items() if before.get(k) != v}
        if stale:
            self._call(
                address,
                "update",
                "delete_tags",
                Resources=[resource_id],
                Tags=[{"Key": k} for k in stale],
            )
        if fresh:
            self._call(
                address,
                "update",
                "create_tags",
                Resources=[resource_id],
                Tags=[{"Key": k, "Value": v} for k, v in fresh.items()],
            )

    def _call(self, address: str, operation: str, method: str, transient=(), **params):
        retryable = TRANSIENT_ERROR_CODES | set(transient)
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff, max=20),
                retry=retry_if_exception(
                    lambda e: isinstance(e, ClientError) and _error_code(e) in retryable
                ),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    logger.debug(f"{method} for {address}")
                    return getattr(self.client, method)(**params)
        except ClientError as e:
            raise _translate(e, address, operation) from e

    def _wait(self, address: str, operation: str, waiter_name: str, **params) -> None:
        try:
            self.client.get_waiter(waiter_name).wait(**params)
        except WaiterError as we:
            raise ProviderError(address, operation, message=f"{waiter_name}: {we}") from we


def _ip_permission(rule: IngressRule) -> Dict[str, Any]:
    return {
        "IpProtocol": rule.protocol,
        "FromPort": rule.from_port,
        "ToPort": rule.to_port,
        "IpRanges": [{"CidrIp": rule.cidr}],
    }
