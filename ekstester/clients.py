"""Bundle of AWS service clients, AWS error types and a polling waiter."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")


class ResourceNotFoundError(Exception):
    """An EKS resource does not exist."""


class StackNotFoundError(Exception):
    """A CloudFormation stack does not exist."""


class NoSuchEntityError(Exception):
    """An IAM entity does not exist."""


class WaiterTimeoutError(TimeoutError):
    """A waiter gave up before its condition was met."""


def _seconds(value: float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def wait_for(
    check: Callable[[], T],
    timeout: float | timedelta,
    interval: float | timedelta = 5.0,
) -> T:
    """Call ``check`` until it returns a truthy value, and return that value.

    Exceptions raised by ``check`` propagate. ``WaiterTimeoutError`` is raised
    when ``timeout`` passes without success.
    """
    limit = _seconds(timeout)
    pause = _seconds(interval)
    deadline = time.monotonic() + limit
    while True:
        result = check()
        if result:
            return result
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise WaiterTimeoutError(f"exceeded max wait time of {limit}s")
        time.sleep(max(0.0, min(pause, remaining)))


@dataclass
class AwsClients:
    """The service clients a deployer works with."""

    eks: Any = None
    cfn: Any = None
    ec2: Any = None
    asg: Any = None
    ssm: Any = None
    iam: Any = None
    s3: Any = None
    s3_presign: Any = None
    eks_endpoint_url: str = ""

    @classmethod
    def build(
        cls,
        factory: Callable[..., Any],
        eks_endpoint_url: str = "",
        presigner: Optional[Callable[[Any], Any]] = None,
    ) -> "AwsClients":
        """Create every client with ``factory(service_name, **options)``.

        The EKS client receives ``endpoint_url`` when an endpoint override is
        given. ``presigner`` wraps the S3 client into a presigning client.
        """
        s3 = factory("s3")
        if eks_endpoint_url:
            eks = factory("eks", endpoint_url=eks_endpoint_url)
        else:
            eks = factory("eks")
        return cls(
            eks=eks,
            cfn=factory("cloudformation"),
            ec2=factory("ec2"),
            asg=factory("autoscaling"),
            ssm=factory("ssm"),
            iam=factory("iam"),
            s3=s3,
            s3_presign=presigner(s3) if presigner is not None else None,
            eks_endpoint_url=eks_endpoint_url,
        )