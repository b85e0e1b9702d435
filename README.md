# ekstester

Building blocks for test runs against short-lived Amazon EKS clusters:
validating deployer options, waiting for nodes to become ready or to be
deleted, recording node timings, and managing the CloudFormation stack that
holds a run's VPC, subnets and IAM roles.

The package talks to AWS and Kubernetes only through objects you pass in
(SDK-style clients, watch event streams, node objects in their JSON form), so
every piece can be driven by a real client or by a stand-in. It has no
third-party runtime dependencies.

## Modules

| Module | Contents |
| --- | --- |
| `ekstester.clients` | `AwsClients`, the error types `ResourceNotFoundError`, `StackNotFoundError`, `NoSuchEntityError`, `WaiterTimeoutError`, and the polling helper `wait_for` |
| `ekstester.metrics` | `MetricSpec`, `NoopMetricRegistry` and the node and runtime metric specs |
| `ekstester.nodes` | provider-ID parsing, node readiness, node watch loops and node metric recording |
| `ekstester.options` | `DeployerOptions` and its `verify_up_flags` check |
| `ekstester.infra` | `Infrastructure` and `InfrastructureManager` for the infrastructure stack |

## Clients and waiting

`AwsClients.build(factory, eks_endpoint_url="", presigner=None)` creates each
service client by calling `factory(service_name, **options)` for `eks`,
`cloudformation`, `ec2`, `autoscaling`, `ssm`, `iam` and `s3`. When an
endpoint URL is given, the EKS client is created with `endpoint_url=...`.
`presigner`, if given, wraps the S3 client into `s3_presign`.

`wait_for(check, timeout, interval=5.0)` calls `check` until it returns a
truthy value and returns that value. Times may be seconds or `timedelta`.
Exceptions from `check` propagate; running out of time raises
`WaiterTimeoutError` (a `TimeoutError`).

```python
from datetime import timedelta
from ekstester.clients import wait_for

result = wait_for(lambda: lookup_status() == "ACTIVE", timedelta(minutes=5), 10)
```

## Metrics

`MetricSpec(namespace, metric, unit)` describes a metric. The deployer's
namespace is `kubetest2/eksapi`. `NoopMetricRegistry.record(spec, value,
dimensions)` checks that it got a `MetricSpec` and a number, counts the record
in `pending`, and `emit()` drops everything.

## Nodes

Nodes are Kubernetes `Node` objects as nested dicts.

```python
from ekstester.nodes import parse_kubernetes_provider_id

provider = parse_kubernetes_provider_id("aws:///us-west-2a/i-0123456789abcdef0")
print(provider.availability_zone, provider.instance_id)
```

A provider ID whose scheme is not `aws`, whose path is empty, or whose path
does not split into exactly three parts raises `ValueError`.

- `get_node_ready_condition(node)` / `is_node_ready(node)` look at the `Ready`
  condition.
- `get_node_instance_ids(nodes)` returns instance IDs, raising `ValueError`
  with every parse failure if any node's provider ID is bad.
- `wait_for_ready_nodes(events, initial_ready, node_count, timeout)` consumes
  `WatchEvent`s until `node_count` nodes are ready and returns the names seen
  ready in the watch. The count starts from the number of `initial_ready`
  nodes, so it returns at once on the first event when enough were already
  ready.
- `wait_for_node_deletion(events, initial_nodes, timeout)` consumes events,
  adding names on `ADDED` and removing them on `DELETED`, until none are left.

`events` is a `queue.Queue` (where `None` marks a closed watch) or any
iterable (whose end marks a closed watch). A closed watch, an `ERROR` event,
or, while waiting for deletion, an object that is not a Node raises
`NodeWatchError`; running out of time raises `TimeoutError`.

`node_dimension_sets(node, instance_type)` returns the dimension sets used for
node metrics: `instanceType`, `os`, `osImage`, `arch`, plus `osDistro` (such
as `Amazon Linux 2023`) and a reduced set when the OS image is Amazon Linux.
`emit_node_metrics(nodes, describe_instance, registry)` records the time from
instance launch to node registration and to readiness under each set;
`describe_instance(instance_id)` must return a mapping with `InstanceType` and
`LaunchTime`. Failures are collected and raised together as `RuntimeError`.

## Deployer options

`DeployerOptions` holds the deployer's settings. `verify_up_flags(detect_version=None)`
fills in defaults and raises `ValueError` on invalid combinations. When
`kubernetes_version` is empty, `detect_version()` is called to supply it; with
no detector, or if it fails, that is an error.

Defaults:

- 3 nodes when none are given; a negative count is an error
- IP family `ipv4`
- 20 minutes to create nodes and 5 minutes for them to become ready
- for unmanaged nodes: node name strategy `EC2PrivateDNSName` and user data format `bootstrap.sh`
- for managed nodes: AMI type `AL2023_x86_64_STANDARD`

With `static_cluster_name` set, the checks stop after the defaults above for
nodes, IP family and timeouts. Otherwise it raises when:

- `instance_types` and `instance_type_archs` are both set
- unmanaged nodes are requested without an AMI, or with an AMI type
- a node name strategy other than `SessionName` or `EC2PrivateDNSName` is given
- EFA is requested with anything other than exactly one instance type
- an AMI is given without unmanaged nodes

```python
from ekstester.options import DeployerOptions

opts = DeployerOptions(kubernetes_version="1.31")
opts.verify_up_flags()
print(opts.nodes, opts.ip_family, opts.ami_type)  # 3 ipv4 AL2023_x86_64_STANDARD
```

## Infrastructure stack

`InfrastructureManager(clients, resource_id, metrics)` manages the stack
named `resource_id` using the `cfn`, `ec2` and `iam` clients of an
`AwsClients`.

- `create_infrastructure_stack(opts)` picks two availability zones (with
  `capacity_reservation`, the zone of the first active reservation that fits
  all nodes comes first), creates the stack and waits for `CREATE_COMPLETE`.
  The template must be set in `InfrastructureManager.template_body`; the
  package ships none, and an empty template raises `ValueError`.
- `get_infrastructure_stack_resources()` reads the `VPC`, `SubnetsPublic`,
  `SubnetsPrivate`, `ClusterRole` and `NodeRole` outputs into an
  `Infrastructure`; role outputs must be valid ARNs.
- `delete_infrastructure_stack()` removes leaked instance profiles and
  deletes the stack. A missing stack is not an error; a deletion that does not
  finish in 30 minutes logs a warning and records `StackDeletionFailed`.
- `delete_leaked_enis()` waits for ENIs tagged by the VPC CNI or IPAM
  controller to become available, deletes them and records `LeakedENIs`.

Polls run every `InfrastructureManager.poll_interval` seconds (15 by default).

## What this package does not do

It does not create or delete EKS clusters, install managed addons, write
kubeconfig files, gather node logs, or sweep stale test stacks, and it
provides no command-line program. Those steps are left to the code that uses
these building blocks.