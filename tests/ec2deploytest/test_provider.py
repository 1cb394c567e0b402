import boto3
import pytest
from botocore.stub import ANY, Stubber

from ec2deploy import (
    Ec2Provider,
    InMemoryStateStore,
    ProviderError,
    ProviderRejected,
    Reconciler,
)
from ec2deploy.declaration import INSTANCE, MARKER_TAG_KEY, SECURITY_GROUP
from ec2deploy.planner import Action

from .helpers import make_declaration

INSTANCE_ATTRIBUTES = {
    "ami_id": "ami-0953476d60561c955",
    "instance_type": "t2.micro",
    "key_name": "testkey",
    "subnet_id": None,
    "instance_profile": None,
    "tags": {"Name": "ec2deploy-test", MARKER_TAG_KEY: "test"},
}

SECURITY_GROUP_ATTRIBUTES = {
    "name": "ec2deploy-test-sg",
    "description": "ec2deploy test",
    "vpc_id": None,
    "ingress": [
        {"from_port": 22, "to_port": 22, "protocol": "tcp", "cidr": "0.0.0.0/0"},
    ],
    "tags": {"Name": "ec2deploy-test"},
}


@pytest.fixture
def ec2_client(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    return boto3.client("ec2", region_name="us-east-1")


@pytest.fixture
def stubber(ec2_client):
    with Stubber(ec2_client) as stubber:
        yield stubber
        stubber.assert_no_pending_responses()


@pytest.fixture
def provider(ec2_client):
    return Ec2Provider("us-east-1", client=ec2_client, backoff=0)


def _running_instance(instance_id="i-0abc", state="running"):
    return {
        "Reservations": [
            {
                "Instances": [
                    {
                        "InstanceId": instance_id,
                        "State": {"Code": 16, "Name": state},
                        "PublicIpAddress": "54.210.167.204",
                        "PrivateIpAddress": "172.31.0.10",
                        "Placement": {"AvailabilityZone": "us-east-1a"},
                        "Tags": [{"Key": "Name", "Value": "ec2deploy-test"}],
                    }
                ]
            }
        ]
    }


def test_create_security_group(stubber, provider):
    stubber.add_response(
        "create_security_group",
        {"GroupId": "sg-0abc"},
        {
            "GroupName": "ec2deploy-test-sg",
            "Description": "ec2deploy test",
            "TagSpecifications": ANY,
        },
    )
    stubber.add_response(
        "authorize_security_group_ingress",
        {"Return": True},
        {
            "GroupId": "sg-0abc",
            "IpPermissions": [
                {
                    "IpProtocol": "tcp",
                    "FromPort": 22,
                    "ToPort": 22,
                    "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
                }
            ],
        },
    )
    stubber.add_response(
        "describe_security_groups",
        {"SecurityGroups": [{"GroupId": "sg-0abc", "VpcId": "vpc-0a1b", "OwnerId": "123"}]},
        {"GroupIds": ["sg-0abc"]},
    )

    resource = provider.create(SECURITY_GROUP, SECURITY_GROUP, SECURITY_GROUP_ATTRIBUTES, {})

    assert resource.id == "sg-0abc"
    assert resource.computed["vpc_id"] == "vpc-0a1b"


def test_create_instance(stubber, provider):
    stubber.add_response(
        "run_instances",
        {"Instances": [{"InstanceId": "i-0abc"}]},
        {
            "ImageId": "ami-0953476d60561c955",
            "InstanceType": "t2.micro",
            "KeyName": "testkey",
            "SecurityGroupIds": ["sg-0abc"],
            "TagSpecifications": ANY,
            "MinCount": 1,
            "MaxCount": 1,
            "ClientToken": "token-1",
        },
    )
    # instance_running waiter, then the describe that reads computed attributes
    stubber.add_response("describe_instances", _running_instance(), {"InstanceIds": ["i-0abc"]})
    stubber.add_response("describe_instances", _running_instance(), {"InstanceIds": ["i-0abc"]})

    resource = provider.create(
        INSTANCE, INSTANCE, INSTANCE_ATTRIBUTES, {SECURITY_GROUP: "sg-0abc"}, "token-1"
    )

    assert resource.id == "i-0abc"
    assert resource.computed["public_ip"] == "54.210.167.204"
    assert resource.computed["availability_zone"] == "us-east-1a"


def test_invalid_ami_is_rejected_without_retry(stubber, provider):
    stubber.add_client_error(
        "run_instances",
        service_error_code="InvalidAMIID.NotFound",
        service_message="The image id '[ami-0bad]' does not exist",
    )

    with pytest.raises(ProviderRejected) as excinfo:
        provider.create(INSTANCE, INSTANCE, INSTANCE_ATTRIBUTES, {SECURITY_GROUP: "sg-0abc"})

    assert excinfo.value.code == "InvalidAMIID.NotFound"
    assert excinfo.value.address == INSTANCE
    assert excinfo.value.operation == "create"


def test_throttling_is_retried(stubber, provider):
    stubber.add_client_error("describe_instances", service_error_code="RequestLimitExceeded")
    stubber.add_response("describe_instances", _running_instance())

    resource = provider.describe(INSTANCE, INSTANCE, "i-0abc")

    assert resource.computed["state"] == "running"


def test_persistent_failure_surfaces_after_attempts(ec2_client):
    provider = Ec2Provider("us-east-1", client=ec2_client, max_attempts=2, backoff=0)
    with Stubber(ec2_client) as stubber:
        stubber.add_client_error("describe_instances", service_error_code="InternalError")
        stubber.add_client_error("describe_instances", service_error_code="InternalError")

        with pytest.raises(ProviderError) as excinfo:
            provider.describe(INSTANCE, INSTANCE, "i-0abc")

    assert excinfo.value.code == "InternalError"
    assert not isinstance(excinfo.value, ProviderRejected)


def test_describe_missing_instance(stubber, provider):
    stubber.add_client_error("describe_instances", service_error_code="InvalidInstanceID.NotFound")

    assert provider.describe(INSTANCE, INSTANCE, "i-0gone") is None


def test_describe_terminated_instance(stubber, provider):
    stubber.add_response("describe_instances", _running_instance(state="terminated"))

    assert provider.describe(INSTANCE, INSTANCE, "i-0abc") is None


def test_security_group_delete_waits_out_dependency(stubber, provider):
    stubber.add_client_error("delete_security_group", service_error_code="DependencyViolation")
    stubber.add_response("delete_security_group", {}, {"GroupId": "sg-0abc"})

    provider.delete(SECURITY_GROUP, SECURITY_GROUP, "sg-0abc")


def test_delete_already_gone(stubber, provider):
    stubber.add_client_error("delete_security_group", service_error_code="InvalidGroup.NotFound")

    provider.delete(SECURITY_GROUP, SECURITY_GROUP, "sg-0gone")


def test_list_tagged_instances(stubber, provider):
    stubber.add_response(
        "describe_instances",
        _running_instance("i-0stray"),
        {
            "Filters": [
                {"Name": f"tag:{MARKER_TAG_KEY}", "Values": ["test"]},
                {
                    "Name": "instance-state-name",
                    "Values": ["pending", "running", "stopping", "stopped"],
                },
            ]
        },
    )

    assert provider.list_tagged_instances("test") == [
        {"id": "i-0stray", "name": "ec2deploy-test", "state": "running"}
    ]


def test_security_group_left_behind_by_failed_ingress_is_recorded(stubber, provider):
    store = InMemoryStateStore("test/terraform.tfstate")
    reconciler = Reconciler(store, provider)
    stubber.add_response("create_security_group", {"GroupId": "sg-0abc"})
    stubber.add_client_error(
        "authorize_security_group_ingress",
        service_error_code="InvalidParameterValue",
        service_message="CIDR block 0.0.0.0/0 is malformed",
    )

    with pytest.raises(ProviderRejected):
        reconciler.apply(make_declaration())

    recorded = store.read().resources[SECURITY_GROUP]
    assert recorded.id == "sg-0abc"
    assert recorded.attributes["ingress"] == []
    assert store.lock_holder() is None

    stubber.add_response(
        "describe_security_groups",
        {"SecurityGroups": [{"GroupId": "sg-0abc", "VpcId": "vpc-0a1b", "OwnerId": "123"}]},
        {"GroupIds": ["sg-0abc"]},
    )
    plan = reconciler.plan(make_declaration())

    assert [(c.action, c.address) for c in plan] == [
        (Action.UPDATE, SECURITY_GROUP),
        (Action.CREATE, INSTANCE),
    ]


def test_instance_left_behind_by_failed_wait_is_recorded(stubber, provider):
    stubber.add_response("run_instances", {"Instances": [{"InstanceId": "i-0abc"}]})
    stubber.add_client_error("describe_instances", service_error_code="UnauthorizedOperation")

    with pytest.raises(ProviderError) as excinfo:
        provider.create(INSTANCE, INSTANCE, INSTANCE_ATTRIBUTES, {SECURITY_GROUP: "sg-0abc"})

    assert excinfo.value.resource_id == "i-0abc"
    assert excinfo.value.applied == INSTANCE_ATTRIBUTES
