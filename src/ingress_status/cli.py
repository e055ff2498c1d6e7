#!/usr/bin/env python3
"""ingress-status-sync - Ingress Status Synchronization

Keeps the addresses where the ingress controller is reachable published in the
status of every Ingress rule of its class, so external consumers (DNS
controllers, load balancers, dashboards) always know where traffic should go.

Only one replica writes at a time: replicas take part in a leader election on
a ConfigMap lock named "<ELECTION_ID>-<ingress class>", and only the leader
runs the periodic status update. When the last replica leaves, it clears the
addresses it published.

Environment variables:

    Identity (usually injected through the downward API):
        POD_NAME               Name of the pod running this controller (required)
        POD_NAMESPACE          Namespace of that pod (required)

    Leader Election:
        ELECTION_ID            Prefix of the election lock name
                               (default: ingress-controller-leader)
        DEFAULT_INGRESS_CLASS  Class owned when INGRESS_CLASS is unset (default: nginx)
        INGRESS_CLASS          Ingress class handled by this deployment (optional)
        LEASE_DURATION_SECONDS Lease duration T; renew deadline is T/2 and the
                               retry period T/4 (default: 30)

    Status Updates:
        WATCH_NAMESPACE        Only update Ingress rules in this namespace
                               (default: all namespaces)
        UPDATE_INTERVAL_SECONDS
                               Period of the status update (default: 60)
        USE_NODE_INTERNAL_IP   Publish the InternalIP of the nodes running the
                               controller instead of their ExternalIP (default: true)

    Runtime:
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        STATUS_SYNC_CONFIG_PATH
                               Optional YAML file overriding the settings above
                               (default: /config/status-sync.yaml)
                               Example config file:
                                 election_id: "ingress-controller-leader"
                                 ingress_class: "internal"
                                 watch_namespace: ""
                                 update_interval_seconds: 60
                                 lease_duration_seconds: 30
                                 use_node_internal_ip: true
"""

from __future__ import annotations

import functools
import ipaddress
import json
import logging
import os
import signal
import sys
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml
from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.leaderelection import electionconfig, leaderelection
from kubernetes.leaderelection.resourcelock.configmaplock import ConfigMapLock
from urllib3.exceptions import HTTPError

# =============================================================================
# Configuration
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_seconds(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


# Pod identity
POD_NAME = os.getenv("POD_NAME", "").strip()
POD_NAMESPACE = os.getenv("POD_NAMESPACE", "").strip()

# Leader election
ELECTION_ID = os.getenv("ELECTION_ID", "ingress-controller-leader").strip()
DEFAULT_INGRESS_CLASS = os.getenv("DEFAULT_INGRESS_CLASS", "nginx").strip()
INGRESS_CLASS = os.getenv("INGRESS_CLASS", "").strip()
LEASE_DURATION_SECONDS = _parse_seconds(os.getenv("LEASE_DURATION_SECONDS"), 30.0)

# Status updates
WATCH_NAMESPACE = os.getenv("WATCH_NAMESPACE", "").strip()
UPDATE_INTERVAL_SECONDS = _parse_seconds(os.getenv("UPDATE_INTERVAL_SECONDS"), 60.0)
USE_NODE_INTERNAL_IP = _parse_bool(os.getenv("USE_NODE_INTERNAL_IP"), default=True)

# Runtime
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
STATUS_SYNC_CONFIG_PATH = os.getenv("STATUS_SYNC_CONFIG_PATH", "/config/status-sync.yaml")

# Fixed limits
UPDATE_CONCURRENCY = 10
SHUTDOWN_TIMEOUT_SECONDS = 30.0
SYNC_KEY = "sync status"
INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"
LEADER_ELECTOR_COMPONENT = "ingress-leader-elector"

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class StatusSyncError(Exception):
    """Base class for status synchronization errors."""


class StartupError(StatusSyncError):
    """The controller cannot establish its identity or its leader election."""


class DiscoveryError(StatusSyncError):
    """Listing the controller pods failed; the current cycle is abandoned."""


class IngressStoreError(StatusSyncError):
    """Reading or writing an Ingress failed."""


class FetchError(IngressStoreError):
    pass


class WriteError(IngressStoreError):
    pass


# =============================================================================
# Enums
# =============================================================================


class AddressKind(Enum):
    IP = "ip"
    HOSTNAME = "hostname"


class UpdateOutcome(Enum):
    """Result of a single Ingress status update task."""

    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LoopState(Enum):
    """Lifecycle of the reconcile loop.

    IDLE: not leading, no background threads.
    LEADING: ticker and worker threads are running.
    DRAINING: process shutdown; no new work is accepted.
    """

    IDLE = "idle"
    LEADING = "leading"
    DRAINING = "draining"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class AddressRecord:
    """A load balancer ingress point: either an IP or a hostname."""

    ip: str = ""
    hostname: str = ""

    @classmethod
    def from_string(cls, value: str) -> "AddressRecord":
        try:
            ipaddress.ip_address(value)
        except ValueError:
            return cls(hostname=value)
        return cls(ip=value)

    @property
    def kind(self) -> AddressKind:
        return AddressKind.IP if self.ip else AddressKind.HOSTNAME

    @property
    def value(self) -> str:
        return self.ip or self.hostname

    def to_status(self) -> Dict[str, str]:
        if self.ip:
            return {"ip": self.ip}
        return {"hostname": self.hostname}

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class IngressResource:
    """Point-in-time view of an Ingress rule."""

    namespace: str
    name: str
    annotations: Dict[str, str] = field(default_factory=dict)
    ingress_class_name: str = ""
    addresses: Tuple[AddressRecord, ...] = ()
    resource_version: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class PodInfo:
    """Runtime information about the pod running this controller."""

    name: str
    namespace: str
    node_name: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    uid: str = ""


@dataclass(frozen=True)
class PodRef:
    name: str
    node_name: str = ""


@dataclass(frozen=True)
class UpdateResult:
    namespace: str
    name: str
    outcome: UpdateOutcome
    error: str = ""


@dataclass(frozen=True)
class LeaderCallbacks:
    """Lifecycle notifications issued by a LeaderElector."""

    on_started_leading: Callable[[], None]
    on_stopped_leading: Callable[[], None]
    on_new_leader: Callable[[str], None]


@dataclass(frozen=True)
class SyncConfig:
    """Effective controller configuration."""

    pod_name: str = ""
    pod_namespace: str = ""
    election_id: str = "ingress-controller-leader"
    default_ingress_class: str = "nginx"
    ingress_class: str = ""
    watch_namespace: str = ""
    update_interval: float = 60.0
    lease_duration: float = 30.0
    use_node_internal_ip: bool = True

    @property
    def lock_name(self) -> str:
        return election_lock_name(
            self.election_id, self.default_ingress_class, self.ingress_class
        )


# =============================================================================
# Address Canonicalization
# =============================================================================


def _canonical_key(record: AddressRecord) -> Tuple[str, str]:
    return (record.hostname, record.ip)


def canonicalize_addresses(raw: Iterable[str]) -> List[AddressRecord]:
    """Convert raw IPs and/or hostnames into status records.

    Duplicates (by raw value) and empty strings are dropped. The result is
    ordered by IP, so hostname records come first.
    """
    seen: List[str] = []
    for value in raw:
        if value and value not in seen:
            seen.append(value)

    records = [AddressRecord.from_string(value) for value in seen]
    return sorted(records, key=lambda r: r.ip)


def sort_addresses(records: Iterable[AddressRecord]) -> List[AddressRecord]:
    """Return the records sorted by hostname, then IP."""
    return sorted(records, key=_canonical_key)


def addresses_equal(lhs: Sequence[AddressRecord], rhs: Sequence[AddressRecord]) -> bool:
    lhs_sorted = sort_addresses(lhs)
    rhs_sorted = sort_addresses(rhs)
    if len(lhs_sorted) != len(rhs_sorted):
        return False

    for left, right in zip(lhs_sorted, rhs_sorted):
        if left.ip != right.ip:
            return False
        if left.hostname != right.hostname:
            return False
    return True


def format_addresses(records: Iterable[AddressRecord]) -> str:
    return "[" + ", ".join(str(r) for r in records) + "]"


def election_lock_name(election_id: str, default_class: str, ingress_class: str = "") -> str:
    """Name of the leader election lock.

    The ingress class is part of the name so several controller deployments
    in one cluster each elect their own leader.
    """
    return f"{election_id}-{ingress_class or default_class}"


def label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


# =============================================================================
# Cluster Provider Interfaces
# =============================================================================


class IngressStore(ABC):
    """Access to the Ingress rules whose status is kept in sync."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the store name for logging."""
        pass

    @abstractmethod
    def list_ingresses(self) -> List[IngressResource]:
        """Snapshot of all Ingress rules (may be stale)."""
        pass

    @abstractmethod
    def get_ingress(self, namespace: str, name: str) -> IngressResource:
        """Fetch the latest revision of an Ingress. Raises FetchError."""
        pass

    @abstractmethod
    def update_ingress_status(
        self, ingress: IngressResource, addresses: Sequence[AddressRecord]
    ) -> IngressResource:
        """Write the status of an Ingress.

        Must fail with WriteError when the Ingress changed since
        ``ingress.resource_version``.
        """
        pass


class PodInventory(ABC):
    """Lookup of controller pods and the nodes hosting them."""

    @abstractmethod
    def get_pod(self, namespace: str, name: str) -> PodInfo:
        """Raises DiscoveryError when the pod cannot be read."""
        pass

    @abstractmethod
    def list_pods(self, namespace: str, labels: Dict[str, str]) -> List[PodRef]:
        """Raises DiscoveryError when the listing fails."""
        pass

    @abstractmethod
    def node_address(self, node_name: str, prefer_internal: bool = True) -> str:
        pass


class LeaderElector(ABC):
    """Cluster-wide mutual exclusion between controller replicas."""

    @abstractmethod
    def run(self) -> None:
        """Take part in the election; blocks until stopped."""
        pass

    @abstractmethod
    def is_leader(self) -> bool:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass


# =============================================================================
# Kubernetes Implementations
# =============================================================================


def load_kube_config() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        kube_config.load_incluster_config()
        logger.info("Using in-cluster config")
        return
    except kube_config.ConfigException:
        pass

    try:
        kube_config.load_kube_config()
    except (kube_config.ConfigException, OSError) as e:
        raise StartupError(f"unable to load Kubernetes configuration: {e}") from e
    logger.info("Using local kubeconfig")


def ingress_from_api(obj: Any) -> IngressResource:
    """Convert a networking/v1 Ingress returned by the API client."""
    meta = obj.metadata
    spec = getattr(obj, "spec", None)
    load_balancer = getattr(getattr(obj, "status", None), "load_balancer", None)

    addresses = tuple(
        AddressRecord(ip=entry.ip or "", hostname=entry.hostname or "")
        for entry in (getattr(load_balancer, "ingress", None) or [])
    )
    return IngressResource(
        namespace=meta.namespace,
        name=meta.name,
        annotations=dict(meta.annotations or {}),
        ingress_class_name=(getattr(spec, "ingress_class_name", None) or ""),
        addresses=addresses,
        resource_version=meta.resource_version or "",
    )


class KubernetesIngressStore(IngressStore):
    """Ingress store backed by the networking.k8s.io/v1 API."""

    def __init__(self, api: Any = None, namespace: str = ""):
        self._api = api if api is not None else client.NetworkingV1Api()
        self._namespace = namespace

    @property
    def name(self) -> str:
        return "Kubernetes"

    def list_ingresses(self) -> List[IngressResource]:
        try:
            if self._namespace:
                result = self._api.list_namespaced_ingress(self._namespace)
            else:
                result = self._api.list_ingress_for_all_namespaces()
        except (ApiException, HTTPError) as e:
            raise FetchError(f"unable to list Ingress rules: {e}") from e
        return [ingress_from_api(item) for item in (result.items or [])]

    def get_ingress(self, namespace: str, name: str) -> IngressResource:
        try:
            obj = self._api.read_namespaced_ingress(name, namespace)
        except (ApiException, HTTPError) as e:
            raise FetchError(f"unexpected error searching Ingress {namespace}/{name}: {e}") from e
        return ingress_from_api(obj)

    def update_ingress_status(
        self, ingress: IngressResource, addresses: Sequence[AddressRecord]
    ) -> IngressResource:
        body: Dict[str, Any] = {
            "status": {"loadBalancer": {"ingress": [a.to_status() for a in addresses]}}
        }
        # The API server rejects the patch with 409 if the revision moved on.
        if ingress.resource_version:
            body["metadata"] = {"resourceVersion": ingress.resource_version}

        try:
            self._api.patch_namespaced_ingress_status(ingress.name, ingress.namespace, body)
        except (ApiException, HTTPError) as e:
            raise WriteError(f"error updating Ingress {ingress.key} status: {e}") from e
        return replace(ingress, addresses=tuple(addresses))


class KubernetesPodInventory(PodInventory):
    """Pod and node lookups backed by the core/v1 API."""

    def __init__(self, api: Any = None):
        self._api = api if api is not None else client.CoreV1Api()

    def get_pod(self, namespace: str, name: str) -> PodInfo:
        try:
            pod = self._api.read_namespaced_pod(name, namespace)
        except (ApiException, HTTPError) as e:
            raise DiscoveryError(f"unable to read pod {namespace}/{name}: {e}") from e
        return PodInfo(
            name=pod.metadata.name,
            namespace=pod.metadata.namespace,
            node_name=(pod.spec.node_name if pod.spec else "") or "",
            labels=dict(pod.metadata.labels or {}),
            uid=pod.metadata.uid or "",
        )

    def list_pods(self, namespace: str, labels: Dict[str, str]) -> List[PodRef]:
        try:
            result = self._api.list_namespaced_pod(namespace, label_selector=label_selector(labels))
        except (ApiException, HTTPError) as e:
            raise DiscoveryError(f"unable to list pods in namespace {namespace}: {e}") from e
        return [
            PodRef(
                name=pod.metadata.name,
                node_name=(pod.spec.node_name if pod.spec else "") or "",
            )
            for pod in (result.items or [])
        ]

    def node_address(self, node_name: str, prefer_internal: bool = True) -> str:
        """Return the InternalIP/ExternalIP of a node, or its name."""
        try:
            node = self._api.read_node(node_name)
        except (ApiException, HTTPError) as e:
            logger.error(f"Error getting node {node_name}: {e}")
            return node_name

        node_addresses = (node.status.addresses if node.status else None) or []
        wanted = ["InternalIP", "ExternalIP"] if prefer_internal else ["ExternalIP"]
        for address_type in wanted:
            for address in node_addresses:
                if address.type == address_type and address.address:
                    return address.address
        return node_name


class OwnedConfigMapLock(ConfigMapLock):
    """ConfigMap lock created with the controller pod as its owner.

    The lock is garbage collected together with that pod.
    """

    def __init__(self, name: str, namespace: str, identity: str, owner: Optional[PodInfo] = None):
        super().__init__(name, namespace, identity)
        self.owner = owner

    def owner_references(self) -> List[Any]:
        if self.owner is None or not self.owner.uid:
            return []
        return [
            client.V1OwnerReference(
                api_version="v1",
                kind="Pod",
                name=self.owner.name,
                uid=self.owner.uid,
                block_owner_deletion=True,
                controller=True,
            )
        ]

    def create(self, name, namespace, election_record):
        record = json.dumps(self.get_lock_dict(election_record))
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=name,
                annotations={self.leader_electionrecord_annotationkey: record},
                owner_references=self.owner_references() or None,
            )
        )
        try:
            self.api_instance.create_namespaced_config_map(namespace, body)
        except (ApiException, HTTPError) as e:
            logger.info(f"Failed to create lock {namespace}/{name}: {e}")
            return False
        return True


class LeaderEventRecorder:
    """Records leader election events against the lock ConfigMap."""

    def __init__(self, namespace: str, lock_name: str, host: str = "", api: Any = None):
        self.namespace = namespace
        self.lock_name = lock_name
        self.host = host
        self._api = api if api is not None else client.CoreV1Api()

    def record(self, reason: str, message: str) -> None:
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                name=f"{self.lock_name}.{time.time_ns():x}", namespace=self.namespace
            ),
            involved_object=client.V1ObjectReference(
                api_version="v1", kind="ConfigMap", name=self.lock_name, namespace=self.namespace
            ),
            reason=reason,
            message=message,
            type="Normal",
            source=client.V1EventSource(component=LEADER_ELECTOR_COMPONENT, host=self.host or None),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self._api.create_namespaced_event(self.namespace, event)
        except (ApiException, HTTPError) as e:
            # Best effort, leadership does not depend on events.
            logger.warning(f"Unable to record event {reason} ({message}): {e}")


class ObservingLeaderElection(leaderelection.LeaderElection):
    """LeaderElection that reports every change of the lock holder.

    Once `stopped` is set no lock is acquired or renewed anymore: a candidate
    leaves the acquire loop and a leader gives up after its renew deadline.
    """

    def __init__(
        self,
        election_config: Any,
        on_new_leader: Callable[[str], None],
        stopped: Optional[threading.Event] = None,
    ):
        super().__init__(election_config)
        self._on_new_leader = on_new_leader
        self._stopped = stopped or threading.Event()
        self._last_holder: Optional[str] = None

    def acquire(self):
        logger.debug(f"{self.election_config.lock.identity} is a candidate")
        while not self._stopped.is_set():
            if self.try_acquire_or_renew():
                return True
            self._stopped.wait(self.election_config.retry_period)
        return False

    def try_acquire_or_renew(self):
        if self._stopped.is_set():
            return False
        result = super().try_acquire_or_renew()
        holder = getattr(self.observed_record, "holder_identity", None)
        if holder and holder != self._last_holder:
            self._last_holder = holder
            self._on_new_leader(holder)
        return result


class KubernetesLeaderElector(LeaderElector):
    """Leader election on a ConfigMap lock.

    Lease duration T, renew deadline T/2 and retry period T/4 keep renewals
    well inside the lease. After losing the lease the replica rejoins the
    election as a candidate until stop() is called.

    When `owner` is given the lock ConfigMap is created owned by that pod.
    """

    def __init__(
        self,
        *,
        lock_name: str,
        namespace: str,
        identity: str,
        callbacks: LeaderCallbacks,
        lease_duration: float = LEASE_DURATION_SECONDS,
        owner: Optional[PodInfo] = None,
        event_recorder: Optional[LeaderEventRecorder] = None,
    ):
        self.lock_name = lock_name
        self.namespace = namespace
        self.identity = identity
        self._callbacks = callbacks
        self._event_recorder = event_recorder
        self._leading = threading.Event()
        self._stopped = threading.Event()

        try:
            lock = OwnedConfigMapLock(lock_name, namespace, identity, owner=owner)
            self._election_config = electionconfig.Config(
                lock,
                lease_duration=lease_duration,
                renew_deadline=lease_duration / 2,
                retry_period=lease_duration / 4,
                onstarted_leading=self._handle_started_leading,
                onstopped_leading=self._handle_stopped_leading,
            )
        # electionconfig.Config reports invalid settings through sys.exit
        except (SystemExit, ValueError) as e:
            raise StartupError(f"unexpected error starting leader election: {e}") from e

    def run(self) -> None:
        """Take part in the election until stop() is called.

        A leader returns at most one renew deadline after stop().
        """
        while not self._stopped.is_set():
            election = ObservingLeaderElection(
                self._election_config, self._callbacks.on_new_leader, self._stopped
            )
            election.run()
            if not self._stopped.is_set():
                logger.info(f"Rejoining leader election for lock {self.namespace}/{self.lock_name}")

    def is_leader(self) -> bool:
        return self._leading.is_set()

    def stop(self) -> None:
        self._stopped.set()

    def _handle_started_leading(self) -> None:
        self._leading.set()
        self._record(f"{self.identity} became leader")
        self._callbacks.on_started_leading()

    def _handle_stopped_leading(self) -> None:
        self._leading.clear()
        self._record(f"{self.identity} stopped leading")
        self._callbacks.on_stopped_leading()

    def _record(self, message: str) -> None:
        if self._event_recorder is not None:
            self._event_recorder.record("LeaderElection", message)


class IngressClassValidator:
    """Decides whether an Ingress belongs to this controller.

    Valid combinations:
      1. controller with the default class, Ingress without class
      2. controller with a specific class, Ingress with that same class
    """

    def __init__(self, ingress_class: str = "", default_class: str = DEFAULT_INGRESS_CLASS):
        self.default_class = default_class
        self.ingress_class = ingress_class or default_class

    def is_valid(self, ingress: IngressResource) -> bool:
        value = ingress.annotations.get(INGRESS_CLASS_ANNOTATION) or ingress.ingress_class_name
        if not value:
            logger.debug(
                f"annotation {INGRESS_CLASS_ANNOTATION} is not present in Ingress {ingress.key}"
            )
            return self.ingress_class == self.default_class
        return value == self.ingress_class


def get_pod_details(
    inventory: PodInventory, pod_name: str = POD_NAME, pod_namespace: str = POD_NAMESPACE
) -> PodInfo:
    if not pod_name or not pod_namespace:
        raise StartupError(
            "unable to get POD information (missing POD_NAME or POD_NAMESPACE environment variable)"
        )
    try:
        return inventory.get_pod(pod_namespace, pod_name)
    except DiscoveryError as e:
        raise StartupError(f"unable to get POD information: {e}") from e


# =============================================================================
# Replica Discovery
# =============================================================================


class ReplicaProbe:
    """Finds where the replicas of this controller are running."""

    def __init__(self, inventory: PodInventory, pod: PodInfo, use_internal_ip: bool = True):
        self.inventory = inventory
        self.pod = pod
        self.use_internal_ip = use_internal_ip

    def running_addresses(self) -> List[str]:
        """Addresses (IP or node name) of the nodes running the controller.

        Raises DiscoveryError when the pods cannot be listed.
        """
        pods = self.inventory.list_pods(self.pod.namespace, self.pod.labels)

        addrs: List[str] = []
        for pod in pods:
            if not pod.node_name:
                logger.debug(f"Pod {pod.name} is not scheduled yet, ignoring")
                continue
            address = self.inventory.node_address(pod.node_name, self.use_internal_ip)
            if address and address not in addrs:
                addrs.append(address)
        return addrs

    def is_running_multiple_pods(self) -> bool:
        # A listing error answers False: callers may then clear the status.
        try:
            pods = self.inventory.list_pods(self.pod.namespace, self.pod.labels)
        except DiscoveryError as e:
            logger.warning(f"Unable to count controller pods, assuming a single replica: {e}")
            return False
        return len(pods) > 1


# =============================================================================
# Status Updates
# =============================================================================


class BoundedUpdater:
    """Applies a desired address list to eligible Ingress rules in parallel."""

    def __init__(
        self,
        store: IngressStore,
        validator: IngressClassValidator,
        concurrency: int = UPDATE_CONCURRENCY,
    ):
        self.store = store
        self.validator = validator
        self.concurrency = max(1, concurrency)

    def apply(
        self,
        desired: Sequence[AddressRecord],
        ingresses: Iterable[IngressResource],
        cancel: Optional[threading.Event] = None,
    ) -> List[UpdateResult]:
        """Update every eligible Ingress and wait for all of them.

        Tasks that have not started when ``cancel`` is set are skipped; tasks
        already running are not interrupted.
        """
        eligible = [ing for ing in ingresses if self.validator.is_valid(ing)]
        if not eligible:
            return []

        results: List[UpdateResult] = []
        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="status-update"
        ) as pool:
            futures = [pool.submit(self._run_update, ing, desired, cancel) for ing in eligible]
            for ing, future in zip(eligible, futures):
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.error(f"Unexpected error updating Ingress {ing.key}: {e}", exc_info=True)
                    results.append(
                        UpdateResult(ing.namespace, ing.name, UpdateOutcome.FAILED, str(e))
                    )
        return results

    def _run_update(
        self,
        ingress: IngressResource,
        desired: Sequence[AddressRecord],
        cancel: Optional[threading.Event],
    ) -> UpdateResult:
        if cancel is not None and cancel.is_set():
            logger.debug(f"skipping update of Ingress {ingress.key} (cancelled)")
            return UpdateResult(ingress.namespace, ingress.name, UpdateOutcome.CANCELLED)

        status = sort_addresses(desired)
        current = sort_addresses(ingress.addresses)
        if addresses_equal(status, current):
            logger.debug(f"skipping update of Ingress {ingress.key} (no change)")
            return UpdateResult(ingress.namespace, ingress.name, UpdateOutcome.SKIPPED)

        try:
            latest = self.store.get_ingress(ingress.namespace, ingress.name)
            logger.info(f"updating Ingress {latest.key} status to {format_addresses(status)}")
            self.store.update_ingress_status(latest, status)
        except IngressStoreError as e:
            logger.warning(f"error updating ingress rule {ingress.key}: {e}")
            return UpdateResult(ingress.namespace, ingress.name, UpdateOutcome.FAILED, str(e))

        return UpdateResult(ingress.namespace, ingress.name, UpdateOutcome.UPDATED)


# =============================================================================
# Reconcile Loop
# =============================================================================


class TaskQueue:
    """Single-consumer queue holding at most one pending sync request.

    Requests made while one is already pending are absorbed, so at most one
    cycle is pending and one running at any time.
    """

    def __init__(self, sync_fn: Callable[[Any], None]):
        self._sync_fn = sync_fn
        self._cond = threading.Condition()
        self._pending: Optional[Any] = None
        self._has_pending = False
        self._shutting_down = False

    def enqueue(self, key: Any) -> bool:
        """Request a sync. Returns False when the request was absorbed or dropped."""
        with self._cond:
            if self._shutting_down:
                logger.debug(f"queue is shutting down, dropping {key!r}")
                return False
            if self._has_pending:
                return False
            self._pending = key
            self._has_pending = True
            self._cond.notify()
            return True

    def has_pending(self) -> bool:
        with self._cond:
            return self._has_pending

    def run(
        self, stop_event: threading.Event, sync_fn: Optional[Callable[[Any], None]] = None
    ) -> None:
        """Process requests until stop_event is set or the queue shuts down.

        sync_fn, when given, replaces the queue's handler for this consumer.
        """
        sync = sync_fn or self._sync_fn
        while True:
            with self._cond:
                while not (self._has_pending or self._shutting_down or stop_event.is_set()):
                    self._cond.wait()
                if self._shutting_down or stop_event.is_set():
                    return
                key = self._pending
                self._pending = None
                self._has_pending = False

            try:
                sync(key)
            except Exception as e:
                logger.error(f"error syncing {key!r}: {e}", exc_info=True)

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._pending = None
            self._has_pending = False
            self._cond.notify_all()

    def is_shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down


class ReconcileLoop:
    """Runs the status sync periodically while this replica is the leader.

    Each leadership term gets its own stop event. The event ends the ticker
    and the worker when the term ends and is handed to the sync function so
    update tasks that have not started yet are cancelled.

    Cycles are serialized by a lock: a worker from an earlier term that is
    still finishing its cycle delays the first cycle of the next term.
    """

    def __init__(
        self,
        sync_fn: Callable[[Optional[threading.Event]], Any],
        interval: float = UPDATE_INTERVAL_SECONDS,
    ):
        self.sync_fn = sync_fn
        self.interval = interval
        self._queue = TaskQueue(self._process)
        self._lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._state = LoopState.IDLE
        self._stop_event: Optional[threading.Event] = None
        self._ticker: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None

    @property
    def state(self) -> LoopState:
        with self._lock:
            return self._state

    def is_shutting_down(self) -> bool:
        return self._queue.is_shutting_down()

    def start(self) -> bool:
        with self._lock:
            if self._state != LoopState.IDLE:
                logger.debug(f"reconcile loop not started (state: {self._state.value})")
                return False

            stop_event = threading.Event()
            self._stop_event = stop_event
            self._worker = threading.Thread(
                target=self._queue.run,
                args=(stop_event, functools.partial(self._process, stop_event=stop_event)),
                name="status-sync-worker",
                daemon=True,
            )
            self._ticker = threading.Thread(
                target=self._tick, args=(stop_event,), name="status-sync-ticker", daemon=True
            )
            self._state = LoopState.LEADING
            self._worker.start()
            self._ticker.start()
        logger.debug(f"reconcile loop started (interval: {self.interval}s)")
        return True

    def stop(self, timeout: Optional[float] = SHUTDOWN_TIMEOUT_SECONDS) -> None:
        with self._lock:
            if self._state != LoopState.LEADING:
                return
            self._state = LoopState.IDLE
            threads = self._end_term()
        self._join(threads, timeout)
        logger.debug("reconcile loop stopped")

    def drain(self, timeout: Optional[float] = SHUTDOWN_TIMEOUT_SECONDS) -> None:
        with self._lock:
            previous = self._state
            self._state = LoopState.DRAINING
            self._queue.shutdown()
            threads = self._end_term() if previous == LoopState.LEADING else []
        self._join(threads, timeout)

    def _tick(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self._queue.enqueue(SYNC_KEY)
            if stop_event.wait(self.interval):
                return

    def _process(self, key: Any, stop_event: Optional[threading.Event] = None) -> None:
        with self._cycle_lock:
            if stop_event is not None and stop_event.is_set():
                logger.debug(f"leadership term ended, dropping {key!r}")
                return
            try:
                self.sync_fn(stop_event)
            except DiscoveryError as e:
                logger.warning(f"error obtaining running addresses, retrying on next tick: {e}")

    def _end_term(self) -> List[threading.Thread]:
        if self._stop_event is not None:
            self._stop_event.set()
        self._queue.wake()
        threads = [t for t in (self._ticker, self._worker) if t is not None]
        self._ticker = None
        self._worker = None
        return threads

    @staticmethod
    def _join(threads: List[threading.Thread], timeout: Optional[float]) -> None:
        current = threading.current_thread()
        for thread in threads:
            if thread is current:
                continue
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"{thread.name} did not finish within {timeout}s")


# =============================================================================
# Core Syncer
# =============================================================================


class StatusSyncer:
    """Keeps the status of Ingress rules in sync with the running replicas.

    Leader election makes sure a single replica performs the updates. The
    published addresses are those of the nodes running the controller pods.
    """

    def __init__(
        self,
        *,
        ingress_store: IngressStore,
        pod_inventory: PodInventory,
        pod: PodInfo,
        validator: IngressClassValidator,
        elector_factory: Callable[[LeaderCallbacks], LeaderElector],
        update_interval: float = UPDATE_INTERVAL_SECONDS,
        use_internal_ip: bool = True,
        concurrency: int = UPDATE_CONCURRENCY,
    ):
        self.ingress_store = ingress_store
        self.pod = pod
        self.probe = ReplicaProbe(pod_inventory, pod, use_internal_ip)
        self.updater = BoundedUpdater(ingress_store, validator, concurrency)
        self.loop = ReconcileLoop(self.sync, update_interval)
        self.elector = elector_factory(
            LeaderCallbacks(
                on_started_leading=self._on_started_leading,
                on_stopped_leading=self._on_stopped_leading,
                on_new_leader=self._on_new_leader,
            )
        )

    def run(self) -> None:
        """Take part in the leader election; blocks until stopped."""
        self.elector.run()

    def shutdown(self) -> None:
        """Stop syncing. The last leader standing removes its address.

        The lease is held until the removal is done, then the elector stops.
        """
        self.loop.drain()
        try:
            if self.elector.is_leader():
                self._remove_addresses()
        finally:
            self.elector.stop()

    def _remove_addresses(self) -> None:
        logger.info("updating status of Ingress rules (remove)")

        try:
            addrs = self.probe.running_addresses()
        except DiscoveryError as e:
            logger.error(f"error obtaining running IPs: {e}")
            return

        if len(addrs) > 1:
            logger.info(f"leaving status update for next leader ({len(addrs)})")
            return

        if self.probe.is_running_multiple_pods():
            logger.debug(
                "skipping Ingress status update "
                "(multiple pods running - another one will be elected as master)"
            )
            return

        logger.info(f"removing address from ingress status ({', '.join(addrs)})")
        self.update_status([])

    def sync(self, cancel: Optional[threading.Event] = None) -> List[UpdateResult]:
        """One reconcile cycle. Raises DiscoveryError if the pods cannot be listed."""
        if self.loop.is_shutting_down():
            logger.debug("skipping Ingress status update (shutting down in progress)")
            return []
        if not self.elector.is_leader():
            logger.debug("skipping Ingress status update (not the leader)")
            return []

        addrs = self.probe.running_addresses()
        return self.update_status(canonicalize_addresses(addrs), cancel)

    def update_status(
        self, desired: Sequence[AddressRecord], cancel: Optional[threading.Event] = None
    ) -> List[UpdateResult]:
        try:
            ingresses = self.ingress_store.list_ingresses()
        except IngressStoreError as e:
            logger.error(f"Unable to list Ingress rules: {e}")
            return []

        results = self.updater.apply(desired, ingresses, cancel)

        counts: Dict[UpdateOutcome, int] = {}
        for result in results:
            counts[result.outcome] = counts.get(result.outcome, 0) + 1
        if counts:
            stats = ", ".join(f"{counts[o]} {o.value}" for o in UpdateOutcome if o in counts)
            logger.info(f"Ingress status sync to {format_addresses(desired)}: {stats}")
        return results

    def _on_started_leading(self) -> None:
        logger.info("I am the new status update leader")
        self.loop.start()

    def _on_stopped_leading(self) -> None:
        logger.info("I am not status update leader anymore")
        self.loop.stop()

    def _on_new_leader(self, identity: str) -> None:
        logger.info(f"new leader elected: {identity}")


# =============================================================================
# Main
# =============================================================================


def load_config(config_path: str = STATUS_SYNC_CONFIG_PATH) -> SyncConfig:
    """Build the configuration from the environment and an optional YAML file."""
    cfg = SyncConfig(
        pod_name=POD_NAME,
        pod_namespace=POD_NAMESPACE,
        election_id=ELECTION_ID,
        default_ingress_class=DEFAULT_INGRESS_CLASS,
        ingress_class=INGRESS_CLASS,
        watch_namespace=WATCH_NAMESPACE,
        update_interval=UPDATE_INTERVAL_SECONDS,
        lease_duration=LEASE_DURATION_SECONDS,
        use_node_internal_ip=USE_NODE_INTERNAL_IP,
    )

    path = Path(config_path) if config_path else None
    if path is None or not path.is_file():
        return cfg

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {path}: {e}")
        return cfg

    if not data:
        return cfg
    if not isinstance(data, dict):
        logger.warning(f"Config file {path} must contain a mapping, ignoring it")
        return cfg

    overrides: Dict[str, Any] = {}
    for key in ("election_id", "default_ingress_class", "ingress_class", "watch_namespace"):
        if key in data:
            overrides[key] = str(data[key] or "").strip()
    if "update_interval_seconds" in data:
        overrides["update_interval"] = _parse_seconds(
            data["update_interval_seconds"], cfg.update_interval
        )
    if "lease_duration_seconds" in data:
        overrides["lease_duration"] = _parse_seconds(
            data["lease_duration_seconds"], cfg.lease_duration
        )
    if "use_node_internal_ip" in data:
        overrides["use_node_internal_ip"] = _parse_bool(
            data["use_node_internal_ip"], default=cfg.use_node_internal_ip
        )

    logger.info(f"Loaded {len(overrides)} setting(s) from {path}")
    return replace(cfg, **overrides)


def validate_config(cfg: SyncConfig) -> bool:
    """Validate configuration."""
    errors = []

    if not cfg.pod_name or not cfg.pod_namespace:
        errors.append("POD_NAME and POD_NAMESPACE are required (use the downward API)")
    if not cfg.election_id:
        errors.append("ELECTION_ID must not be empty")
    if not (cfg.ingress_class or cfg.default_ingress_class):
        errors.append("Either INGRESS_CLASS or DEFAULT_INGRESS_CLASS must be set")
    if cfg.update_interval <= 0:
        errors.append(f"UPDATE_INTERVAL_SECONDS must be positive, got {cfg.update_interval}")
    # electionconfig requires a retry period (T/4) of at least one second.
    if cfg.lease_duration < 4:
        errors.append(f"LEASE_DURATION_SECONDS must be at least 4, got {cfg.lease_duration}")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def create_status_syncer(cfg: SyncConfig) -> StatusSyncer:
    """Build a syncer wired to the Kubernetes API. Raises StartupError."""
    inventory = KubernetesPodInventory()
    pod = get_pod_details(inventory, cfg.pod_name, cfg.pod_namespace)

    def elector_factory(callbacks: LeaderCallbacks) -> LeaderElector:
        return KubernetesLeaderElector(
            lock_name=cfg.lock_name,
            namespace=pod.namespace,
            identity=pod.name,
            callbacks=callbacks,
            lease_duration=cfg.lease_duration,
            owner=pod,
            event_recorder=LeaderEventRecorder(
                namespace=pod.namespace, lock_name=cfg.lock_name, host=pod.node_name
            ),
        )

    return StatusSyncer(
        ingress_store=KubernetesIngressStore(namespace=cfg.watch_namespace),
        pod_inventory=inventory,
        pod=pod,
        validator=IngressClassValidator(cfg.ingress_class, cfg.default_ingress_class),
        elector_factory=elector_factory,
        update_interval=cfg.update_interval,
        use_internal_ip=cfg.use_node_internal_ip,
    )


def main():
    """Main entry point."""
    cfg = load_config(STATUS_SYNC_CONFIG_PATH)

    logger.info(f"ingress-status-sync: {cfg.pod_namespace}/{cfg.pod_name}")
    logger.info(f"Election lock: {cfg.lock_name}")
    logger.info(f"Ingress class: {cfg.ingress_class or cfg.default_ingress_class}")
    logger.info(f"Watch namespace: {cfg.watch_namespace or '(all)'}")
    logger.info(f"Update interval: {cfg.update_interval}s")

    if not validate_config(cfg):
        logger.error("Configuration validation failed")
        sys.exit(1)

    try:
        load_kube_config()
        syncer = create_status_syncer(cfg)
    except StartupError as e:
        logger.error(f"{e}")
        sys.exit(1)

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    runner = threading.Thread(target=syncer.run, name="leader-election", daemon=True)
    runner.start()

    while not stop_event.wait(1.0):
        if not runner.is_alive():
            logger.error("Leader election stopped unexpectedly")
            break

    syncer.shutdown()
    logger.info("Shutdown complete")


if __name__ == "__main__":
    main()
