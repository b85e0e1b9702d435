from types import SimpleNamespace

import pytest

from ekstester.clients import AwsClients, NoSuchEntityError, StackNotFoundError
from ekstester.infra import (
    EKS_ENDPOINT_URL_TAG,
    INFRA_LEAKED_ENIS,
    INFRA_STACK_DELETION_FAILED,
    IPAM_CONTROLLER_ENI_TAG_KEY,
    VPC_CNI_ENI_TAG_KEY,
    Infrastructure,
    InfrastructureManager,
)

NODE_ROLE = "arn:aws:iam::000000000000:role/NodeRoleX"
CLUSTER_ROLE = "arn:aws:iam::000000000000:role/ClusterRoleX"


class Recorder:
    def __init__(self):
        self.records = []

    def record(self, spec, value, dimensions=None):
        self.records.append((spec, value, dimensions))

    def emit(self):
        return None


def outputs(node_role=NODE_ROLE, cluster_role=CLUSTER_ROLE):
    return [
        {"OutputKey": "VPC", "OutputValue": "vpc-1"},
        {"OutputKey": "SubnetsPublic", "OutputValue": "s-1,s-2"},
        {"OutputKey": "SubnetsPrivate", "OutputValue": "s-3,s-4"},
        {"OutputKey": "ClusterRole", "OutputValue": cluster_role},
        {"OutputKey": "NodeRole", "OutputValue": node_role},
    ]


class FakeCFN:
    def __init__(self, outputs=None, exists=True, status_after_delete=None):
        self.outputs = outputs or []
        self.exists = exists
        self.status = "CREATE_COMPLETE"
        self.status_after_delete = status_after_delete
        self.created = None
        self.deleted = False

    def create_stack(self, **request):
        self.created = request
        self.exists = True
        return {"StackId": "stack-id-1"}

    def describe_stacks(self, StackName):
        if not self.exists:
            raise StackNotFoundError(StackName)
        return {"Stacks": [{"StackStatus": self.status, "Outputs": self.outputs}]}

    def delete_stack(self, StackName):
        self.deleted = True
        if self.status_after_delete is None:
            self.exists = False
        else:
            self.status = self.status_after_delete


class FakeEC2:
    def __init__(self, zones=(), reservations=(), pages=()):
        self.zones = list(zones)
        self.reservations = list(reservations)
        self.pages = list(pages)
        self.requests = []
        self.deleted = []

    def describe_availability_zones(self):
        return {"AvailabilityZones": [{"ZoneName": z} for z in self.zones]}

    def describe_capacity_reservations(self, Filters):
        self.requests.append(Filters)
        return {"CapacityReservations": self.reservations}

    def describe_network_interfaces(self, **request):
        if "NetworkInterfaceIds" in request:
            return {
                "NetworkInterfaces": [
                    {"NetworkInterfaceId": i, "Status": "available"}
                    for i in request["NetworkInterfaceIds"]
                ]
            }
        self.requests.append(request)
        return self.pages[len(self.requests) - 1]

    def delete_network_interface(self, NetworkInterfaceId):
        self.deleted.append(NetworkInterfaceId)


class FakeIAM:
    def __init__(self, profiles=(), missing_role=False):
        self.profiles = list(profiles)
        self.missing_role = missing_role
        self.removed = []
        self.deleted = []
        self.listed = []

    def list_instance_profiles_for_role(self, RoleName):
        self.listed.append(RoleName)
        if self.missing_role:
            raise NoSuchEntityError(RoleName)
        return {"InstanceProfiles": [{"InstanceProfileName": p} for p in self.profiles]}

    def remove_role_from_instance_profile(self, RoleName, InstanceProfileName):
        self.removed.append((RoleName, InstanceProfileName))

    def delete_instance_profile(self, InstanceProfileName):
        self.deleted.append(InstanceProfileName)


def manager(cfn=None, ec2=None, iam=None, metrics=None):
    clients = AwsClients(cfn=cfn or FakeCFN(), ec2=ec2 or FakeEC2(), iam=iam or FakeIAM())
    m = InfrastructureManager(clients, "kubetest2-eksapi-run", metrics or Recorder())
    m.poll_interval = 0
    m.template_body = "Resources: {}"
    return m


def options(**overrides):
    values = dict(
        capacity_reservation=False,
        cluster_role_service_principal="",
        eks_endpoint_url="",
        instance_types=["m5.large"],
        nodes=3,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_subnets_public_then_private():
    infra = Infrastructure(subnets_public=["a", "b"], subnets_private=["c"])
    assert infra.subnets() == ["a", "b", "c"]


def test_stack_resources_parsed():
    infra = manager(cfn=FakeCFN(outputs=outputs())).get_infrastructure_stack_resources()
    assert infra.vpc == "vpc-1"
    assert infra.subnets_public == ["s-1", "s-2"]
    assert infra.subnets_private == ["s-3", "s-4"]
    assert infra.cluster_role_arn == CLUSTER_ROLE
    assert infra.node_role_arn == NODE_ROLE
    assert infra.node_role_name == "NodeRoleX"


@pytest.mark.parametrize("bad", ["not-an-arn", "arn:aws:iam"])
def test_invalid_node_role_arn_raises(bad):
    m = manager(cfn=FakeCFN(outputs=outputs(node_role=bad)))
    with pytest.raises(ValueError, match="NodeRole output is not a valid ARN"):
        m.get_infrastructure_stack_resources()


def test_create_stack_request():
    cfn = FakeCFN(outputs=outputs(), exists=False)
    ec2 = FakeEC2(zones=["zone-a", "zone-b", "zone-c"])
    m = manager(cfn=cfn, ec2=ec2)
    infra = m.create_infrastructure_stack(
        options(eks_endpoint_url="https://eks.example.com", cluster_role_service_principal="svc")
    )
    params = {p["ParameterKey"]: p["ParameterValue"] for p in cfn.created["Parameters"]}
    assert params["ResourceId"] == "kubetest2-eksapi-run"
    assert params["Subnet01AZ"] == "zone-a"
    assert params["Subnet02AZ"] == "zone-b"
    assert params["AdditionalClusterRoleServicePrincipal"] == "svc"
    assert cfn.created["Capabilities"] == ["CAPABILITY_IAM"]
    assert cfn.created["Tags"] == [
        {"Key": EKS_ENDPOINT_URL_TAG, "Value": "https://eks.example.com"}
    ]
    assert infra.node_role_arn == NODE_ROLE


def test_create_stack_without_endpoint_has_no_tags():
    cfn = FakeCFN(outputs=outputs())
    manager(cfn=cfn, ec2=FakeEC2(zones=["zone-a", "zone-b"])).create_infrastructure_stack(
        options()
    )
    assert "Tags" not in cfn.created
    assert len(cfn.created["Parameters"]) == 3


def test_create_stack_failure_raises():
    cfn = FakeCFN(outputs=outputs())
    cfn.status = "ROLLBACK_COMPLETE"
    m = manager(cfn=cfn, ec2=FakeEC2(zones=["zone-a", "zone-b"]))
    with pytest.raises(RuntimeError, match="infrastructure stack creation"):
        m.create_infrastructure_stack(options())


def test_capacity_reservation_zone_comes_first():
    cfn = FakeCFN(outputs=outputs())
    ec2 = FakeEC2(
        zones=["zone-a", "zone-b", "zone-c"],
        reservations=[
            {"AvailableInstanceCount": 1, "AvailabilityZone": "zone-b"},
            {"AvailableInstanceCount": 5, "AvailabilityZone": "zone-c"},
        ],
    )
    manager(cfn=cfn, ec2=ec2).create_infrastructure_stack(options(capacity_reservation=True))
    params = {p["ParameterKey"]: p["ParameterValue"] for p in cfn.created["Parameters"]}
    assert (params["Subnet01AZ"], params["Subnet02AZ"]) == ("zone-c", "zone-a")


def test_azs_with_capacity_none_large_enough():
    ec2 = FakeEC2(reservations=[{"AvailableInstanceCount": 2, "AvailabilityZone": "zone-b"}])
    assert manager(ec2=ec2).get_azs_with_capacity(options(nodes=3)) == []
    assert ec2.requests[0][0] == {"Name": "instance-type", "Values": ["m5.large"]}


def test_delete_missing_stack_is_noop():
    cfn = FakeCFN(exists=False)
    manager(cfn=cfn).delete_infrastructure_stack()
    assert cfn.deleted is False


def test_delete_stack_removes_instance_profiles():
    cfn = FakeCFN(outputs=outputs())
    iam = FakeIAM(profiles=["profile-1", "profile-2"])
    metrics = Recorder()
    manager(cfn=cfn, iam=iam, metrics=metrics).delete_infrastructure_stack()
    assert cfn.deleted is True
    assert iam.removed == [("NodeRoleX", "profile-1"), ("NodeRoleX", "profile-2")]
    assert iam.deleted == ["profile-1", "profile-2"]
    assert metrics.records == []


def test_delete_stack_wait_failure_records_metric():
    cfn = FakeCFN(outputs=outputs(), status_after_delete="DELETE_FAILED")
    metrics = Recorder()
    manager(cfn=cfn, metrics=metrics).delete_infrastructure_stack()
    assert metrics.records == [(INFRA_STACK_DELETION_FAILED, 1, None)]


def test_instance_profiles_missing_role_is_fine():
    iam = FakeIAM(missing_role=True)
    manager(iam=iam).delete_leaked_instance_profiles(Infrastructure(node_role_name="R"))
    assert iam.listed == ["R"]
    assert iam.deleted == []


def test_instance_profiles_skipped_without_node_role():
    iam = FakeIAM(profiles=["p"])
    manager(iam=iam).delete_leaked_instance_profiles(Infrastructure())
    assert iam.listed == []


def test_vpc_cni_enis_paginated():
    ec2 = FakeEC2(
        pages=[
            {"NetworkInterfaces": [{"NetworkInterfaceId": "eni-1"}], "NextToken": "t"},
            {"NetworkInterfaces": [{"NetworkInterfaceId": "eni-2"}]},
        ]
    )
    assert manager(ec2=ec2).get_vpc_cni_network_interface_ids("vpc-1") == ["eni-1", "eni-2"]
    filters = ec2.requests[0]["Filters"]
    assert {"Name": "vpc-id", "Values": ["vpc-1"]} in filters
    assert {
        "Name": "tag-key",
        "Values": [VPC_CNI_ENI_TAG_KEY, IPAM_CONTROLLER_ENI_TAG_KEY],
    } in filters
    assert ec2.requests[1]["NextToken"] == "t"


def test_delete_leaked_enis():
    ec2 = FakeEC2(
        pages=[{"NetworkInterfaces": [{"NetworkInterfaceId": "eni-1"}, {"NetworkInterfaceId": "eni-2"}]}]
    )
    metrics = Recorder()
    manager(cfn=FakeCFN(outputs=outputs()), ec2=ec2, metrics=metrics).delete_leaked_enis()
    assert ec2.deleted == ["eni-1", "eni-2"]
    assert metrics.records == [(INFRA_LEAKED_ENIS, 2.0, None)]
    assert INFRA_LEAKED_ENIS.metric == "LeakedENIs"


def test_delete_leaked_enis_without_stack():
    ec2 = FakeEC2()
    manager(cfn=FakeCFN(exists=False), ec2=ec2).delete_leaked_enis()
    assert ec2.requests == []
    assert ec2.deleted == []