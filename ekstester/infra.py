"""The CloudFormation stack holding the VPC, subnets and IAM roles of a run."""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Mapping, Optional

from .clients import AwsClients, NoSuchEntityError, StackNotFoundError, wait_for
from .metrics import DEPLOYER_METRIC_NAMESPACE, UNIT_COUNT, MetricRegistry, MetricSpec

logger = logging.getLogger(__name__)

INFRA_STACK_CREATION_TIMEOUT = timedelta(minutes=15)
INFRA_STACK_DELETION_TIMEOUT = timedelta(minutes=30)
NETWORK_INTERFACE_DETACHMENT_TIMEOUT = timedelta(minutes=5)

# the VPC CNI always adds this tag to the ENIs it creates
VPC_CNI_ENI_TAG_KEY = "node.k8s.amazonaws.com/createdAt"
# the IPAM controller adds this tag to the ENIs it creates
IPAM_CONTROLLER_ENI_TAG_KEY = "eks:kubernetes-cni-node-name"

# Optional tag on the infrastructure stack naming the EKS environment it
# belongs to; only added when an EKS endpoint URL is given.
EKS_ENDPOINT_URL_TAG = "eks-endpoint-url"

INFRA_METRIC_NAMESPACE = posixpath.join(DEPLOYER_METRIC_NAMESPACE, "infrastructure")

INFRA_STACK_DELETION_FAILED = MetricSpec(
    namespace=INFRA_METRIC_NAMESPACE,
    metric="StackDeletionFailed",
    unit=UNIT_COUNT,
)

INFRA_LEAKED_ENIS = MetricSpec(
    namespace=INFRA_METRIC_NAMESPACE,
    metric="LeakedENIs",
    unit=UNIT_COUNT,
)

_CREATE_FAILURE_STATES = frozenset(
    {
        "CREATE_FAILED",
        "DELETE_COMPLETE",
        "DELETE_FAILED",
        "DELETE_IN_PROGRESS",
        "ROLLBACK_FAILED",
        "ROLLBACK_COMPLETE",
        "ROLLBACK_IN_PROGRESS",
    }
)

_DELETE_FAILURE_STATES = frozenset(
    {
        "DELETE_FAILED",
        "CREATE_FAILED",
        "ROLLBACK_FAILED",
        "UPDATE_ROLLBACK_IN_PROGRESS",
        "UPDATE_ROLLBACK_FAILED",
        "UPDATE_ROLLBACK_COMPLETE",
        "UPDATE_COMPLETE",
    }
)


def _error_code(exc: BaseException) -> tuple[str, str]:
    response = getattr(exc, "response", None)
    if isinstance(response, Mapping):
        error = response.get("Error", {})
        return str(error.get("Code", "")), str(error.get("Message", ""))
    return "", ""


def _is_stack_not_found(exc: BaseException) -> bool:
    if isinstance(exc, StackNotFoundError):
        return True
    code, message = _error_code(exc)
    if code == "StackNotFoundException":
        return True
    return code == "ValidationError" and "does not exist" in message


def _is_no_such_entity(exc: BaseException) -> bool:
    if isinstance(exc, NoSuchEntityError):
        return True
    code, _ = _error_code(exc)
    return code in ("NoSuchEntity", "NoSuchEntityException")


def _arn_resource(value: str) -> str:
    """Validate an ARN and return its resource part."""
    if not value.startswith("arn:"):
        raise ValueError("arn: invalid prefix")
    sections = value.split(":", 5)
    if len(sections) != 6:
        raise ValueError("arn: not enough sections")
    return sections[5]


@dataclass
class Infrastructure:
    """Resources created by the infrastructure stack."""

    vpc: str = ""
    subnets_public: list[str] = field(default_factory=list)
    subnets_private: list[str] = field(default_factory=list)
    cluster_role_arn: str = ""
    node_role_arn: str = ""
    node_role_name: str = ""

    def subnets(self) -> list[str]:
        """Public subnets followed by private subnets."""
        return [*self.subnets_public, *self.subnets_private]


class InfrastructureManager:
    """Manages the infrastructure stack named after the run's resource ID."""

    poll_interval: float = 15.0
    template_body: str = ""

    def __init__(self, clients: AwsClients, resource_id: str, metrics: MetricRegistry) -> None:
        self._clients = clients
        self.resource_id = resource_id
        self._metrics = metrics

    def create_infrastructure_stack(self, opts: Any) -> Infrastructure:
        """Create the stack in two availability zones and return its resources."""
        if not self.template_body:
            raise ValueError("no infrastructure stack template is set")
        ec2 = self._clients.ec2
        cfn = self._clients.cfn
        zones = [az["ZoneName"] for az in ec2.describe_availability_zones()["AvailabilityZones"]]
        if opts.capacity_reservation:
            subnet_azs = self.get_azs_with_capacity(opts)
            for zone in zones:
                if len(subnet_azs) == 2:
                    break
                if zone not in subnet_azs:
                    subnet_azs.append(zone)
        else:
            subnet_azs = zones[:2]
        if len(subnet_azs) < 2:
            raise RuntimeError(f"need two availability zones, found: {subnet_azs}")
        logger.info("creating infrastructure stack with AZs: %s", subnet_azs)
        parameters = [
            {"ParameterKey": "ResourceId", "ParameterValue": self.resource_id},
            {"ParameterKey": "Subnet01AZ", "ParameterValue": subnet_azs[0]},
            {"ParameterKey": "Subnet02AZ", "ParameterValue": subnet_azs[1]},
        ]
        if opts.cluster_role_service_principal:
            parameters.append(
                {
                    "ParameterKey": "AdditionalClusterRoleServicePrincipal",
                    "ParameterValue": opts.cluster_role_service_principal,
                }
            )
        request: dict[str, Any] = {
            "StackName": self.resource_id,
            "TemplateBody": self.template_body,
            "Capabilities": ["CAPABILITY_IAM"],
            "Parameters": parameters,
        }
        if opts.eks_endpoint_url:
            request["Tags"] = [{"Key": EKS_ENDPOINT_URL_TAG, "Value": opts.eks_endpoint_url}]
        logger.info("creating infrastructure stack...")
        stack_id = cfn.create_stack(**request)["StackId"]
        logger.info("waiting for infrastructure stack to be created: %s", stack_id)

        def created() -> bool:
            status = cfn.describe_stacks(StackName=stack_id)["Stacks"][0]["StackStatus"]
            if status in _CREATE_FAILURE_STATES:
                raise RuntimeError(f"stack entered state {status}")
            return status == "CREATE_COMPLETE"

        try:
            wait_for(created, INFRA_STACK_CREATION_TIMEOUT, self.poll_interval)
        except Exception as exc:
            raise RuntimeError(
                f"failed to wait for infrastructure stack creation: {exc}"
            ) from exc
        logger.info("getting infrastructure stack resources: %s", stack_id)
        try:
            infra = self.get_infrastructure_stack_resources()
        except Exception as exc:
            raise RuntimeError(f"failed to get infrastructure stack resources: {exc}") from exc
        logger.info("created infrastructure: %s", infra)
        return infra

    def get_infrastructure_stack_resources(self) -> Infrastructure:
        """Read the stack's outputs into an ``Infrastructure``."""
        out = self._clients.cfn.describe_stacks(StackName=self.resource_id)
        infra = Infrastructure()
        for output in out["Stacks"][0].get("Outputs") or ():
            value = output["OutputValue"]
            key = output["OutputKey"]
            if key == "VPC":
                infra.vpc = value
            elif key == "SubnetsPublic":
                infra.subnets_public = value.split(",")
            elif key == "SubnetsPrivate":
                infra.subnets_private = value.split(",")
            elif key == "ClusterRole":
                try:
                    _arn_resource(value)
                except ValueError as exc:
                    raise ValueError(
                        "infrastructure stack ClusterRole output is not a valid ARN: "
                        f"'{value}': {exc}"
                    ) from exc
                infra.cluster_role_arn = value
            elif key == "NodeRole":
                try:
                    resource = _arn_resource(value)
                except ValueError as exc:
                    raise ValueError(
                        "infrastructure stack NodeRole output is not a valid ARN: "
                        f"'{value}': {exc}"
                    ) from exc
                infra.node_role_arn = value
                # the resource looks like 'role/MyRole'
                infra.node_role_name = resource.split("/")[-1]
        return infra

    def delete_infrastructure_stack(self) -> None:
        """Delete the stack; a missing stack is fine, a slow deletion only warns."""
        try:
            infra = self.get_infrastructure_stack_resources()
        except Exception as exc:
            if _is_stack_not_found(exc):
                logger.info("infrastructure stack does not exist: %s", self.resource_id)
                return
            raise
        self.delete_leaked_instance_profiles(infra)
        cfn = self._clients.cfn
        logger.info("deleting infrastructure stack: %s", self.resource_id)
        try:
            cfn.delete_stack(StackName=self.resource_id)
        except Exception as exc:
            if _is_stack_not_found(exc):
                logger.info("infrastructure stack does not exist: %s", self.resource_id)
                return
            raise RuntimeError(f"failed to delete infrastructure stack: {exc}") from exc
        logger.info("waiting for infrastructure stack to be deleted: %s", self.resource_id)

        def deleted() -> bool:
            try:
                stacks = cfn.describe_stacks(StackName=self.resource_id)["Stacks"]
            except Exception as exc:
                if _is_stack_not_found(exc):
                    return True
                raise
            if not stacks:
                return True
            status = stacks[0]["StackStatus"]
            if status in _DELETE_FAILURE_STATES:
                raise RuntimeError(f"stack entered state {status}")
            return status == "DELETE_COMPLETE"

        try:
            wait_for(deleted, INFRA_STACK_DELETION_TIMEOUT, self.poll_interval)
        except Exception as exc:
            # the janitor can clean this up; don't fail the run
            logger.warning("failed to wait for infrastructure stack deletion: %s", exc)
            self._metrics.record(INFRA_STACK_DELETION_FAILED, 1, None)
            return
        logger.info("deleted infrastructure stack: %s", self.resource_id)

    def delete_leaked_instance_profiles(self, infra: Infrastructure) -> None:
        """Delete instance profiles holding the node role, which block its deletion."""
        if not infra.node_role_name:
            # a stack that failed to create may have no node role, and then no profiles
            return
        iam = self._clients.iam
        role = infra.node_role_name
        try:
            profiles = iam.list_instance_profiles_for_role(RoleName=role)["InstanceProfiles"]
        except Exception as exc:
            if _is_no_such_entity(exc):
                return
            raise RuntimeError(
                f"failed to list instance profiles for role name: '{role}': {exc}"
            ) from exc
        if not profiles:
            return
        deleted = []
        for profile in profiles:
            name = profile.get("InstanceProfileName", "")
            try:
                iam.remove_role_from_instance_profile(RoleName=role, InstanceProfileName=name)
            except Exception as exc:
                if _is_no_such_entity(exc):
                    logger.info("instance profile does not exist: %s", name)
                    continue
                raise RuntimeError(
                    f"failed to remove node role {role} from instance profile: {name}: {exc}"
                ) from exc
            try:
                iam.delete_instance_profile(InstanceProfileName=name)
            except Exception as exc:
                if _is_no_such_entity(exc):
                    logger.info("instance profile does not exist: %s", name)
                    continue
                raise RuntimeError(f"failed to delete instance profile: {name}: {exc}") from exc
            deleted.append(name)
        logger.info("deleted %d leaked instance profile(s): %s", len(deleted), deleted)

    def delete_leaked_enis(self) -> None:
        """Delete ENIs left behind by the VPC CNI, which block subnet and group deletion."""
        try:
            infra = self.get_infrastructure_stack_resources()
        except Exception as exc:
            if _is_stack_not_found(exc):
                return
            raise RuntimeError(f"failed to get infrastructure stack resources: {exc}") from exc
        enis = self.get_vpc_cni_network_interface_ids(infra.vpc)
        if not enis:
            return
        ec2 = self._clients.ec2
        logger.info("waiting for %d leaked ENI(s) to become available: %s", len(enis), enis)

        def available() -> bool:
            interfaces = ec2.describe_network_interfaces(NetworkInterfaceIds=enis)[
                "NetworkInterfaces"
            ]
            return all(eni.get("Status") == "available" for eni in interfaces)

        try:
            wait_for(available, NETWORK_INTERFACE_DETACHMENT_TIMEOUT, self.poll_interval)
        except Exception as exc:
            raise RuntimeError(f"failed to wait for ENI(s) to become available: {exc}") from exc
        for eni in enis:
            logger.info("deleting leaked ENI: %s", eni)
            try:
                ec2.delete_network_interface(NetworkInterfaceId=eni)
            except Exception as exc:
                raise RuntimeError(f"failed to delete leaked ENI: {exc}") from exc
        logger.info("deleted %d leaked ENI(s)!", len(enis))
        self._metrics.record(INFRA_LEAKED_ENIS, float(len(enis)), None)

    def get_vpc_cni_network_interface_ids(self, vpc_id: str) -> list[str]:
        """IDs of the ENIs in ``vpc_id`` created by the VPC CNI or IPAM controller."""
        filters = [
            {"Name": "vpc-id", "Values": [vpc_id]},
            {"Name": "interface-type", "Values": ["interface"]},
            {"Name": "tag-key", "Values": [VPC_CNI_ENI_TAG_KEY, IPAM_CONTROLLER_ENI_TAG_KEY]},
        ]
        ec2 = self._clients.ec2
        enis: list[str] = []
        token: Optional[str] = None
        while True:
            request: dict[str, Any] = {"Filters": filters}
            if token:
                request["NextToken"] = token
            try:
                page = ec2.describe_network_interfaces(**request)
            except Exception as exc:
                raise RuntimeError(f"failed to describe ENIs: {exc}") from exc
            enis.extend(eni["NetworkInterfaceId"] for eni in page.get("NetworkInterfaces") or ())
            token = page.get("NextToken")
            if not token:
                return enis

    def get_azs_with_capacity(self, opts: Any) -> list[str]:
        """The zone of the first active reservation with room for all nodes, if any."""
        out = self._clients.ec2.describe_capacity_reservations(
            Filters=[
                {"Name": "instance-type", "Values": list(opts.instance_types)},
                {"Name": "state", "Values": ["active"]},
            ]
        )
        for reservation in out.get("CapacityReservations") or ():
            if reservation["AvailableInstanceCount"] >= opts.nodes:
                return [reservation["AvailabilityZone"]]
        return []