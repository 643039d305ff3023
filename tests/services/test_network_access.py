import pytest
import requests
from botocore.exceptions import ClientError

from pipelinedeployer.errors import DeployError
from pipelinedeployer.models import (
    CloudTarget,
    CredentialBundle,
    RunConfiguration,
    SecurityGroupHandle,
)
from pipelinedeployer.services.network_access import NetworkAccessService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeEC2:
    def __init__(self, vpcs=None, groups=None, authorize_error=None, revoke_error=None):
        self.vpcs = vpcs if vpcs is not None else [{"VpcId": "vpc-1"}]
        self.groups = groups if groups is not None else []
        self.authorize_error = authorize_error
        self.revoke_error = revoke_error
        self.calls = []

    def describe_vpcs(self, **kwargs):
        self.calls.append(("describe_vpcs", kwargs))
        return {"Vpcs": self.vpcs}

    def describe_security_groups(self, **kwargs):
        self.calls.append(("describe_security_groups", kwargs))
        return {"SecurityGroups": self.groups}

    def authorize_security_group_ingress(self, **kwargs):
        self.calls.append(("authorize_security_group_ingress", kwargs))
        if self.authorize_error:
            raise self.authorize_error
        return {"Return": True}

    def revoke_security_group_ingress(self, **kwargs):
        self.calls.append(("revoke_security_group_ingress", kwargs))
        if self.revoke_error:
            raise self.revoke_error
        return {"Return": True}


class FakeSessionFactory:
    def __init__(self, ec2):
        self.ec2 = ec2
        self.kwargs = None

    def __call__(self, **kwargs):
        self.kwargs = kwargs
        return self

    def client(self, name):
        assert name == "ec2"
        return self.ec2


def _config():
    return RunConfiguration(
        cloud=CloudTarget.AWS,
        account_id="123456789012",
        region="us-east-1",
        client_code="pkt",
        environment="stg",
        pipeline_name="main",
    )


def _bundle():
    return CredentialBundle(
        cloud=CloudTarget.AWS,
        env={"AWS_ACCESS_KEY_ID": "AKIA123", "AWS_SECRET_ACCESS_KEY": "secret"},
    )


def _service(ec2, requests_module=requests):
    return NetworkAccessService(
        logger=DummyLogger(),
        console=DummyConsole(),
        session_factory=FakeSessionFactory(ec2),
        requests_module=requests_module,
    )


def test_find_security_group_returns_none_when_group_missing():
    ec2 = FakeEC2(groups=[])

    assert _service(ec2).find_security_group(_config(), _bundle()) is None

    _, filters = ec2.calls[1]
    assert {"Name": "vpc-id", "Values": ["vpc-1"]} in filters["Filters"]
    assert {"Name": "group-name", "Values": ["meltano-db-sg"]} in filters["Filters"]


def test_find_security_group_returns_none_without_default_vpc():
    ec2 = FakeEC2(vpcs=[])

    assert _service(ec2).find_security_group(_config(), _bundle()) is None
    assert [name for name, _ in ec2.calls] == ["describe_vpcs"]


def test_find_security_group_uses_bundle_credentials():
    ec2 = FakeEC2(groups=[{"GroupId": "sg-123"}])
    factory = FakeSessionFactory(ec2)
    service = NetworkAccessService(
        logger=DummyLogger(),
        console=DummyConsole(),
        session_factory=factory,
    )

    handle = service.find_security_group(_config(), _bundle())

    assert handle.group_id == "sg-123"
    assert handle.port == 5432
    assert factory.kwargs == {
        "aws_access_key_id": "AKIA123",
        "aws_secret_access_key": "secret",
        "region_name": "us-east-1",
    }


def test_open_ingress_authorizes_runner_ip_on_postgres_port():
    ec2 = FakeEC2()
    handle = SecurityGroupHandle(group_id="sg-123", description="Created by pipelinedeployer")

    opened = _service(ec2).open_ingress(handle, _config(), _bundle(), "203.0.113.7")

    assert opened.cidr == "203.0.113.7/32"
    name, kwargs = ec2.calls[0]
    assert name == "authorize_security_group_ingress"
    assert kwargs["GroupId"] == "sg-123"
    permission = kwargs["IpPermissions"][0]
    assert permission["IpProtocol"] == "tcp"
    assert permission["FromPort"] == 5432
    assert permission["ToPort"] == 5432
    assert permission["IpRanges"] == [
        {"CidrIp": "203.0.113.7/32", "Description": "Created by pipelinedeployer"}
    ]


def test_open_ingress_treats_duplicate_rule_as_already_open():
    duplicate = ClientError(
        {"Error": {"Code": "InvalidPermission.Duplicate", "Message": "exists"}},
        "AuthorizeSecurityGroupIngress",
    )
    ec2 = FakeEC2(authorize_error=duplicate)

    opened = _service(ec2).open_ingress(
        SecurityGroupHandle(group_id="sg-123"),
        _config(),
        _bundle(),
        "203.0.113.7",
    )

    assert opened is None


def test_open_ingress_raises_on_other_errors():
    denied = ClientError(
        {"Error": {"Code": "UnauthorizedOperation", "Message": "denied"}},
        "AuthorizeSecurityGroupIngress",
    )
    ec2 = FakeEC2(authorize_error=denied)

    with pytest.raises(DeployError, match="Could not open database access"):
        _service(ec2).open_ingress(
            SecurityGroupHandle(group_id="sg-123"),
            _config(),
            _bundle(),
            "203.0.113.7",
        )


def test_revoke_ingress_removes_rule_and_tolerates_errors():
    ec2 = FakeEC2()
    handle = SecurityGroupHandle(group_id="sg-123", cidr="203.0.113.7/32")

    _service(ec2).revoke_ingress(handle, _config(), _bundle())

    name, kwargs = ec2.calls[0]
    assert name == "revoke_security_group_ingress"
    assert kwargs["IpPermissions"][0]["IpRanges"] == [{"CidrIp": "203.0.113.7/32"}]

    failing = FakeEC2(
        revoke_error=ClientError(
            {"Error": {"Code": "InvalidPermission.NotFound", "Message": "gone"}},
            "RevokeSecurityGroupIngress",
        )
    )
    _service(failing).revoke_ingress(handle, _config(), _bundle())


def test_discover_public_ip_reads_checkip_response():
    class FakeResponse:
        text = "198.51.100.4\n"

        def raise_for_status(self):
            return None

    class FakeRequests:
        RequestException = requests.RequestException

        @staticmethod
        def get(url, timeout):
            assert url == "https://checkip.amazonaws.com"
            return FakeResponse()

    service = _service(FakeEC2(), requests_module=FakeRequests)

    assert service.discover_public_ip() == "198.51.100.4"


def test_discover_public_ip_validates_override():
    service = _service(FakeEC2())

    assert service.discover_public_ip("203.0.113.9") == "203.0.113.9"
    with pytest.raises(DeployError, match="Invalid runner public IP"):
        service.discover_public_ip("not-an-ip")
