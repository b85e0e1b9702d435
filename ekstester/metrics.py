"""Metric specifications and a registry that discards everything."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

DEPLOYER_NAME = "eksapi"

DEPLOYER_METRIC_NAMESPACE = posixpath.join("kubetest2", DEPLOYER_NAME)

UNIT_SECONDS = "Seconds"
UNIT_COUNT = "Count"


@dataclass(frozen=True)
class MetricSpec:
    """Where a metric is recorded and in which unit."""

    namespace: str
    metric: str
    unit: str


class MetricRegistry(Protocol):
    def record(
        self,
        spec: MetricSpec,
        value: float,
        dimensions: Optional[Mapping[str, str]],
    ) -> None: ...

    def emit(self) -> None: ...


class NoopMetricRegistry:
    """A registry that accepts records and emits nothing.

    Records are checked and counted, then dropped when ``emit`` is called.
    """

    def __init__(self) -> None:
        self._pending = 0

    @property
    def pending(self) -> int:
        """Number of records accepted since the last emit."""
        return self._pending

    def record(
        self,
        spec: MetricSpec,
        value: float,
        dimensions: Optional[Mapping[str, str]] = None,
    ) -> None:
        if not isinstance(spec, MetricSpec):
            raise TypeError(f"expected a MetricSpec, got {type(spec).__name__}")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"metric value must be a number, got {value!r}")
        self._pending += 1

    def emit(self) -> None:
        self._pending = 0


TOTAL_RUNTIME_SECONDS = MetricSpec(
    namespace=DEPLOYER_METRIC_NAMESPACE,
    metric="TotalRuntimeSeconds",
    unit=UNIT_SECONDS,
)

NODE_TIME_TO_REGISTRATION_SECONDS = MetricSpec(
    namespace=DEPLOYER_METRIC_NAMESPACE,
    metric="NodeTimeToRegistrationSeconds",
    unit=UNIT_SECONDS,
)

NODE_TIME_TO_READY_SECONDS = MetricSpec(
    namespace=DEPLOYER_METRIC_NAMESPACE,
    metric="NodeTimeToReadySeconds",
    unit=UNIT_SECONDS,
)