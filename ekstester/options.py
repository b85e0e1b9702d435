"""Options of the EKS API deployer and the checks run before bringing it up."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional

from .metrics import DEPLOYER_NAME

logger = logging.getLogger(__name__)

RESOURCE_PREFIX = "kubetest2-" + DEPLOYER_NAME

SUPPORTED_NODE_NAME_STRATEGY = ("SessionName", "EC2PrivateDNSName")

DEFAULT_NODES = 3
DEFAULT_IP_FAMILY = "ipv4"
DEFAULT_NODE_CREATION_TIMEOUT = timedelta(minutes=20)
DEFAULT_NODE_READY_TIMEOUT = timedelta(minutes=5)
DEFAULT_NODE_NAME_STRATEGY = "EC2PrivateDNSName"
DEFAULT_USER_DATA_FORMAT = "bootstrap.sh"
DEFAULT_AMI_TYPE = "AL2023_x86_64_STANDARD"


@dataclass
class DeployerOptions:
    """Flag-controlled settings of the deployer."""

    addons: list[str] = field(default_factory=list)
    ami: str = ""
    ami_type: str = ""
    auto_mode: bool = False
    capacity_reservation: bool = False
    cluster_role_service_principal: str = ""
    efa: bool = False
    eks_endpoint_url: str = ""
    emit_metrics: bool = False
    expected_ami: str = ""
    generate_ssh_key: bool = False
    instance_types: list[str] = field(default_factory=list)
    instance_type_archs: list[str] = field(default_factory=list)
    ip_family: str = ""
    kubeconfig_path: str = ""
    kubernetes_version: str = ""
    log_bucket: str = ""
    node_creation_timeout: timedelta = timedelta(0)
    node_ready_timeout: timedelta = timedelta(0)
    nodes: int = 0
    node_name_strategy: str = ""
    region: str = ""
    static_cluster_name: str = ""
    tune_vpc_cni: bool = False
    unmanaged_nodes: bool = False
    up_cluster_headers: list[str] = field(default_factory=list)
    user_data_format: str = ""

    def verify_up_flags(self, detect_version: Optional[Callable[[], str]] = None) -> None:
        """Validate the options and fill in defaults; raise ValueError if invalid.

        ``detect_version`` returns the Kubernetes minor version to use when
        none was given.
        """
        if not self.kubernetes_version:
            logger.info("--kubernetes-version is empty, attempting to detect it...")
            try:
                if detect_version is None:
                    raise LookupError("no version detector")
                detected = detect_version()
            except Exception as exc:
                raise ValueError(
                    "unable to detect --kubernetes-version, flag cannot be empty"
                ) from exc
            if not detected:
                raise ValueError("unable to detect --kubernetes-version, flag cannot be empty")
            logger.info("detected --kubernetes-version=%s", detected)
            self.kubernetes_version = detected
        if self.nodes < 0:
            raise ValueError("number of nodes must be greater than zero")
        if self.nodes == 0:
            self.nodes = DEFAULT_NODES
            logger.info("Using default number of nodes: %d", self.nodes)
        if not self.ip_family:
            self.ip_family = DEFAULT_IP_FAMILY
            logger.info("Using default IP family: %s", self.ip_family)
        if not self.node_creation_timeout:
            self.node_creation_timeout = DEFAULT_NODE_CREATION_TIMEOUT
        if not self.node_ready_timeout:
            self.node_ready_timeout = DEFAULT_NODE_READY_TIMEOUT
        if self.static_cluster_name:
            logger.info("Skip configuration for static cluster")
            return
        if self.instance_types and self.instance_type_archs:
            raise ValueError("--instance-types and --instance-type-archs are mutually exclusive")
        if self.unmanaged_nodes:
            self._verify_unmanaged()
        else:
            if self.ami:
                raise ValueError("--ami should not be provided without --unmanaged-nodes")
            if not self.ami_type:
                self.ami_type = DEFAULT_AMI_TYPE
                logger.info("Using default AMI type: %s", self.ami_type)

    def _verify_unmanaged(self) -> None:
        if not self.ami:
            raise ValueError("--ami must be specified for --unmanaged-nodes")
        if self.ami_type:
            raise ValueError("--ami-type should not be provided with --unmanaged-nodes")
        if not self.node_name_strategy:
            self.node_name_strategy = DEFAULT_NODE_NAME_STRATEGY
            logger.info("Using default node name strategy: %s", self.node_name_strategy)
        elif self.node_name_strategy not in SUPPORTED_NODE_NAME_STRATEGY:
            raise ValueError(
                "--node-name-strategy must be one of the following values: "
                "['SessionName', 'EC2PrivateDNSName']"
            )
        if not self.user_data_format:
            self.user_data_format = DEFAULT_USER_DATA_FORMAT
            logger.info("Using default user data format: %s", self.user_data_format)
        if self.efa and len(self.instance_types) != 1:
            raise ValueError("--efa requires a single instance type")