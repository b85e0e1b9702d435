"""Node readiness, node watches, provider IDs and node metrics.

Nodes are Kubernetes API objects in their JSON form (nested dicts).
"""

from __future__ import annotations

import logging
import queue
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional
from urllib.parse import unquote, urlsplit

from .metrics import (
    NODE_TIME_TO_READY_SECONDS,
    NODE_TIME_TO_REGISTRATION_SECONDS,
    MetricRegistry,
)

logger = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
ERROR = "ERROR"


class NodeWatchError(RuntimeError):
    """The node watch failed or delivered something unexpected."""


@dataclass(frozen=True)
class KubernetesProviderID:
    availability_zone: str
    instance_id: str


@dataclass(frozen=True)
class WatchEvent:
    """One event from a node watch."""

    type: str
    object: Any = None


def parse_kubernetes_provider_id(raw: str) -> KubernetesProviderID:
    """Parse an AWS provider ID such as ``aws:///us-west-2a/i-0abc``."""
    try:
        url = urlsplit(raw)
    except ValueError as exc:
        raise ValueError(f"malformed provider ID: {raw}") from exc
    if url.scheme != "aws":
        raise ValueError(f"unsupported provider ID scheme: {url.scheme}")
    path = unquote(url.path)
    if not path:
        raise ValueError(f"provider ID path is empty: {raw}")
    parts = path.split("/")
    if len(parts) != 3:
        raise ValueError(f"provider ID path does not have 3 parts: {path}")
    return KubernetesProviderID(availability_zone=parts[1], instance_id=parts[2])


def _node_name(node: Mapping[str, Any]) -> str:
    return node.get("metadata", {}).get("name", "")


def _is_node(obj: Any) -> bool:
    return isinstance(obj, Mapping) and obj.get("kind", "Node") == "Node"


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def get_node_ready_condition(node: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    """Return the node's ``Ready`` condition, or None."""
    for condition in node.get("status", {}).get("conditions") or ():
        if condition.get("type") == "Ready":
            return condition
    return None


def is_node_ready(node: Mapping[str, Any]) -> bool:
    condition = get_node_ready_condition(node)
    return condition is not None and condition.get("status") == "True"


def get_node_instance_ids(nodes: Iterable[Mapping[str, Any]]) -> list[str]:
    """Return the EC2 instance IDs of ``nodes``; raise if any cannot be parsed."""
    instance_ids = []
    errors = []
    for node in nodes:
        try:
            provider_id = parse_kubernetes_provider_id(
                node.get("spec", {}).get("providerID", "")
            )
        except ValueError as exc:
            errors.append(str(exc))
            continue
        instance_ids.append(provider_id.instance_id)
    if errors:
        raise ValueError("\n".join(errors))
    return instance_ids


def _receive(events: Any, timeout: float, timeout_message: str) -> Iterator[WatchEvent]:
    """Yield events until the watch closes or the deadline passes.

    ``events`` is either a ``queue.Queue`` (``None`` marks a closed watch)
    or any iterable, whose end marks a closed watch.
    """
    deadline = time.monotonic() + timeout
    closed = NodeWatchError(
        "the watcher channel for the nodes was closed by Kubernetes due to an unknown error"
    )
    if isinstance(events, queue.Queue):
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(timeout_message)
            try:
                event = events.get(timeout=remaining)
            except queue.Empty:
                raise TimeoutError(timeout_message) from None
            if event is None:
                raise closed
            yield event
    else:
        for event in events:
            if time.monotonic() > deadline:
                raise TimeoutError(timeout_message)
            yield event
        raise closed


def _raise_on_error(event: WatchEvent) -> None:
    if event.type != ERROR:
        return
    msg = "unexpected error event type from node watcher"
    obj = event.object
    if isinstance(obj, Mapping) and obj.get("kind") == "Status":
        raise NodeWatchError(f"{msg}: {obj.get('message', obj)}")
    raise NodeWatchError(f"{msg}: {obj!r}")


def wait_for_ready_nodes(
    events: Any,
    initial_ready: Iterable[Any],
    node_count: int,
    timeout: float,
) -> set[str]:
    """Consume watch events until ``node_count`` nodes are ready.

    Returns the names of the nodes seen ready in the watch.
    """
    logger.info("waiting up to %ss for %d node(s) to be ready...", timeout, node_count)
    ready: set[str] = set()
    counter = len(list(initial_ready))
    message = f"timed out waiting for {node_count} nodes to be ready"
    for event in _receive(events, timeout, message):
        _raise_on_error(event)
        if event.object is not None and event.type != DELETED and _is_node(event.object):
            if is_node_ready(event.object):
                ready.add(_node_name(event.object))
                counter = len(ready)
        if counter >= node_count:
            break
    logger.info("%d node(s) are ready: %s", len(ready), sorted(ready))
    return ready


def wait_for_node_deletion(
    events: Any,
    initial_nodes: Iterable[Mapping[str, Any]],
    timeout: float,
) -> None:
    """Consume watch events until every known node has been deleted."""
    logger.info("waiting up to %ss for node(s) to be deleted...", timeout)
    names = {_node_name(node) for node in initial_nodes}
    for event in _receive(events, timeout, "timed out waiting for nodes to be deleted"):
        _raise_on_error(event)
        if event.object is not None:
            if not _is_node(event.object):
                raise NodeWatchError(
                    f"node watcher received an object that isn't a Node: {event.object!r}"
                )
            if event.type == ADDED:
                names.add(_node_name(event.object))
            elif event.type == DELETED:
                names.discard(_node_name(event.object))
        if not names:
            break
    logger.info("all nodes deleted!")


def node_dimension_sets(node: Mapping[str, Any], instance_type: str) -> list[dict[str, str]]:
    """Return the dimension sets under which a node's metrics are recorded."""
    info = node.get("status", {}).get("nodeInfo", {})
    os_image = info.get("osImage", "")
    dimensions = {
        "instanceType": instance_type,
        "os": info.get("operatingSystem", ""),
        "osImage": os_image,
        "arch": info.get("architecture", ""),
    }
    sets = [dimensions]
    os_distro = os_image.split(".")[0] if os_image.startswith("Amazon Linux") else ""
    if os_distro:
        dimensions["osDistro"] = os_distro
        sets.append(
            {
                "osDistro": os_distro,
                "instanceType": instance_type,
                "arch": dimensions["arch"],
            }
        )
    return sets


def emit_node_metrics(
    nodes: Iterable[Mapping[str, Any]],
    describe_instance: Callable[[str], Mapping[str, Any]],
    registry: MetricRegistry,
) -> None:
    """Record registration and readiness delays of ready nodes.

    ``describe_instance`` maps an instance ID to a mapping holding
    ``InstanceType`` and ``LaunchTime``.
    """
    errors: list[str] = []
    for node in nodes:
        try:
            provider_id = parse_kubernetes_provider_id(
                node.get("spec", {}).get("providerID", "")
            )
        except ValueError as exc:
            errors.append(str(exc))
            continue
        try:
            instance = describe_instance(provider_id.instance_id)
        except Exception as exc:  # any lookup failure is collected, like the others
            errors.append(str(exc))
            continue
        launch_time = _to_datetime(instance["LaunchTime"])
        created = _to_datetime(node["metadata"]["creationTimestamp"])
        ready_condition = get_node_ready_condition(node)
        if ready_condition is None:
            errors.append(f"node has no Ready condition: {_node_name(node)}")
            continue
        ready_at = _to_datetime(ready_condition["lastTransitionTime"])
        to_registration = (created - launch_time).total_seconds()
        to_ready = (ready_at - launch_time).total_seconds()
        for dimension_set in node_dimension_sets(node, str(instance["InstanceType"])):
            registry.record(NODE_TIME_TO_REGISTRATION_SECONDS, to_registration, dimension_set)
            registry.record(NODE_TIME_TO_READY_SECONDS, to_ready, dimension_set)
    if errors:
        raise RuntimeError("\n".join(errors))