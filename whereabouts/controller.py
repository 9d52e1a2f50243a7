"""Control loop that frees the addresses held by pods once they are deleted."""

from __future__ import annotations

import copy
import dataclasses
import heapq
import ipaddress
import itertools
import json
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from whereabouts import logger
from whereabouts.config import ConfigError, IPAMConfig, InvalidPluginError, load_ipam_configuration
from whereabouts.entities import (
    NETWORK_STATUS_ANNOT,
    NetworkAttachmentDefinition,
    NetworkStatus,
    Pod,
    normalize_range,
)
from whereabouts.listers import Indexer, IPPool, IPPoolLister, NotFoundError

DEFAULT_MOUNT_PATH = "/host"
IP_RECONCILER_QUEUE_NAME = "pod-updates"
SYNC_PERIOD = 1.0
WHEREABOUTS_CONFIG_PATH = "/etc/cni/net.d/whereabouts.d/whereabouts.conf"
MAX_RETRIES = 2

ADDRESS_GARBAGE_COLLECTED = "IPAddressGarbageCollected"
ADDRESS_GARBAGE_COLLECTION_FAILED = "IPAddressGarbageCollectionFailed"

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

DEALLOCATE = 1

BASE_RETRY_DELAY = 0.005
MAX_RETRY_DELAY = 1000.0

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
GarbageCollector = Callable[[int, IPAMConfig], Any]


@dataclass
class DeletedFinalStateUnknown:
    """Placeholder for an object whose deletion was observed without its final state."""

    key: str
    obj: Any = None


@dataclass
class Event:
    """A recorded event about an object."""

    obj: Any
    event_type: str
    reason: str
    message: str

    def __str__(self) -> str:
        return f"{self.event_type} {self.reason} {self.message}"


class EventRecorder:
    """Keeps events in memory; once ``max_events`` is reached further events are dropped."""

    def __init__(self, max_events: Optional[int] = None):
        self.max_events = max_events
        self.events: list[Event] = []
        self._lock = threading.Lock()

    def eventf(self, obj, event_type: str, reason: str, fmt: str, *args) -> None:
        message = fmt % args if args else fmt
        with self._lock:
            if self.max_events is not None and len(self.events) >= self.max_events:
                return
            self.events.append(Event(obj, event_type, reason, message))


class RateLimitingQueue:
    """Work queue with de-duplication and exponential back-off on re-queueing.

    Items are tracked by identity.
    """

    def __init__(self, name: str = IP_RECONCILER_QUEUE_NAME,
                 base_delay: float = BASE_RETRY_DELAY, max_delay: float = MAX_RETRY_DELAY):
        self.name = name
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._dirty: dict[int, Any] = {}
        self._processing: dict[int, Any] = {}
        self._waiting: list = []
        self._sequence = itertools.count()
        self._requeues: dict[int, tuple[Any, int]] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue) + len(self._waiting)

    def _add_locked(self, item) -> None:
        key = id(item)
        if key in self._dirty:
            return
        self._dirty[key] = item
        if key in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def _promote_ready(self) -> None:
        now = time.monotonic()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, item = heapq.heappop(self._waiting)
            self._add_locked(item)

    def add(self, item) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(item)

    def add_rate_limited(self, item) -> None:
        """Add ``item`` again after a delay that doubles with each re-queue."""
        with self._cond:
            if self._shutting_down:
                return
            _, count = self._requeues.get(id(item), (item, 0))
            self._requeues[id(item)] = (item, count + 1)
            delay = min(self._base_delay * (2 ** count), self._max_delay)
            if delay <= 0:
                self._add_locked(item)
                return
            heapq.heappush(self._waiting, (time.monotonic() + delay, next(self._sequence), item))
            self._cond.notify()

    def get(self):
        """Block until an item is available; return None once shut down and drained."""
        with self._cond:
            while True:
                self._promote_ready()
                if self._queue:
                    item = self._queue.popleft()
                    self._processing[id(item)] = item
                    self._dirty.pop(id(item), None)
                    return item
                if self._shutting_down:
                    return None
                timeout = None
                if self._waiting:
                    timeout = max(0.0, self._waiting[0][0] - time.monotonic())
                self._cond.wait(timeout)

    def done(self, item) -> None:
        with self._cond:
            self._processing.pop(id(item), None)
            if id(item) in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def forget(self, item) -> None:
        with self._cond:
            self._requeues.pop(id(item), None)

    def num_requeues(self, item) -> int:
        with self._cond:
            return self._requeues.get(id(item), (item, 0))[1]

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._cond.notify_all()


class PodController:
    """Garbage-collects the IP allocations of deleted pods."""

    def __init__(self, ip_pool_lister: IPPoolLister, net_attach_defs: Indexer,
                 cleanup_func: GarbageCollector, recorder: Optional[EventRecorder] = None,
                 mount_path: str = "", queue: Optional[RateLimitingQueue] = None):
        self.ip_pool_lister = ip_pool_lister
        self.net_attach_defs = net_attach_defs
        self.cleanup_func = cleanup_func
        self.recorder = recorder
        self.mount_path = mount_path
        self.queue = queue if queue is not None else RateLimitingQueue()

    def on_pod_delete(self, obj) -> None:
        """Queue a deleted pod (or its tombstone) for address reconciliation."""
        try:
            pod = pod_from_tombstone(obj)
        except TypeError as exc:
            logger.errorf("cannot create pod object from %s on pod delete: %s", obj, exc)
            return
        logger.verbosef("deleted pod [%s]", pod_id(pod.namespace, pod.name))
        self.queue.add(strip_pod(pod))

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Run the worker in a background thread until ``stop_event`` is set."""
        logger.verbosef("starting network controller")

        def shut_down_on_stop() -> None:
            stop_event.wait()
            self.shutdown()

        threading.Thread(target=shut_down_on_stop, daemon=True).start()
        worker = threading.Thread(target=self._run, args=(stop_event,), daemon=True)
        worker.start()
        return worker

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            while self.process_next_work_item():
                pass
            stop_event.wait(SYNC_PERIOD)

    def shutdown(self) -> None:
        self.queue.shut_down()

    def process_next_work_item(self) -> bool:
        """Handle one queued pod; False once the queue is shut down."""
        pod = self.queue.get()
        if pod is None:
            return False
        try:
            error: Optional[Exception] = None
            try:
                self.garbage_collect_pod_ips(pod)
            except Exception as exc:  # any failure leads to a retry
                error = exc
            logger.verbosef("result of garbage collecting pods: %s", error)
            self._handle_result(pod, error)
        finally:
            self.queue.done(pod)
        return True

    def garbage_collect_pod_ips(self, pod: Pod) -> None:
        """Release every allocation the pod holds in the pools of its networks."""
        namespace, name = pod.namespace, pod.name
        try:
            statuses = pod_network_status(pod)
        except ValueError as exc:
            raise RuntimeError(
                f"failed to access the network status for pod [{name}/{namespace}]: {exc}"
            ) from exc

        for status in statuses:
            if status.default:
                logger.verbosef("skipped net-attach-def for default network")
                continue
            try:
                nad = self._iface_net_attach_def(status)
            except (LookupError, ValueError) as exc:
                raise RuntimeError(
                    f"failed to get network-attachment-definition for iface {status.name}: {exc}"
                ) from exc

            mount_path = self.mount_path or DEFAULT_MOUNT_PATH
            logger.verbosef("the NAD's config: %s", nad.config)
            try:
                ipam_config = ipam_configuration(nad, namespace, name, mount_path)
            except InvalidPluginError as exc:
                logger.debugf("error while computing something: %s", exc)
                continue
            except ConfigError as exc:
                raise RuntimeError(
                    f"failed to create an IPAM configuration for the pod "
                    f"{pod_id(namespace, name)} iface {status.name}: {exc}"
                ) from exc

            pools: list[IPPool] = []
            for range_config in ipam_config.ip_ranges:
                try:
                    pool = self._ip_pool(range_config.range)
                except NotFoundError as exc:
                    raise RuntimeError(f"failed to get the IPPool data: {exc}") from exc
                logger.verbosef("pool range [%s]", pool.range)
                pools.append(pool)

            for pool in pools:
                for index, allocation in list(pool.allocations.items()):
                    if allocation.pod_ref != pod_id(namespace, name):
                        continue
                    logger.verbosef("stale allocation to cleanup: %s", allocation)
                    try:
                        self.cleanup_func(DEALLOCATE, ipam_config)
                    except Exception as exc:
                        logger.errorf("failed to cleanup allocation: %s", exc)
                    try:
                        self._address_garbage_collected(pod, nad.name, pool.range, index)
                    except ValueError as exc:
                        logger.errorf(
                            "failed to issue event for successful IP address cleanup: %s", exc)

    def _handle_result(self, pod: Pod, error: Optional[Exception]) -> None:
        if error is None:
            self.queue.forget(pod)
            return
        retries = self.queue.num_requeues(pod)
        if retries <= MAX_RETRIES:
            logger.verbosef(
                "re-queuing IP address reconciliation request for pod %s; retry #: %d",
                pod_id(pod.namespace, pod.name), retries)
            self.queue.add_rate_limited(pod)
            return
        self._address_garbage_collection_failed(pod, error)

    def _iface_net_attach_def(self, status: NetworkStatus) -> NetworkAttachmentDefinition:
        logger.debugf("pod's network status: %s", status)
        parts = status.name.split("/")
        if len(parts) < 2:
            raise ValueError(
                f"pod {status.name} name does not feature namespace/pod name syntax")
        namespace, name = parts[0], parts[1]
        nad = self.net_attach_defs.get_by_key(f"{namespace}/{name}")
        if not isinstance(nad, NetworkAttachmentDefinition):
            raise LookupError(f'network-attachment-definition "{namespace}/{name}" not found')
        return nad

    def _ip_pool(self, cidr: str) -> IPPool:
        return self.ip_pool_lister.ip_pools(ip_pools_namespace()).get(normalize_range(cidr))

    def _address_garbage_collected(self, pod: Pod, network_name: str, ip_range: str,
                                   allocation_index: str) -> None:
        if self.recorder is None:
            return
        ip = ipaddress.ip_interface(ip_range).ip
        index = int(allocation_index)
        self.recorder.eventf(
            pod, EVENT_TYPE_NORMAL, ADDRESS_GARBAGE_COLLECTED,
            "successful cleanup of IP address [%s] from network %s",
            ip_add_offset(ip, index), network_name)

    def _address_garbage_collection_failed(self, pod: Pod, error: Exception) -> None:
        logger.errorf(
            "dropping pod [%s] deletion out of the queue - could not reconcile IP: %s",
            pod_id(pod.namespace, pod.name), error)
        self.queue.forget(pod)
        if self.recorder is not None:
            self.recorder.eventf(
                pod, EVENT_TYPE_WARNING, ADDRESS_GARBAGE_COLLECTION_FAILED,
                "failed to garbage collect addresses for pod %s",
                pod_id(pod.namespace, pod.name))


def ip_add_offset(ip: Union[IPAddress, str], offset: int) -> IPAddress:
    """Return the address ``offset`` places after ``ip``, in the same family."""
    address = ipaddress.ip_address(ip) if isinstance(ip, str) else ip
    return type(address)(int(address) + offset)


def pod_id(pod_namespace: str, pod_name: str) -> str:
    return f"{pod_namespace}/{pod_name}"


def pod_network_status(pod: Pod) -> list[NetworkStatus]:
    """Parse the pod's network-status annotation; ValueError if it is malformed."""
    raw = pod.annotations.get(NETWORK_STATUS_ANNOT)
    if raw is None:
        return []
    entries = json.loads(raw)
    if entries is None:
        return []
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise ValueError("network status must be a list of objects")
    statuses = []
    for entry in entries:
        name = entry.get("name", "")
        if not isinstance(name, str):
            raise ValueError(f"invalid network name: {name!r}")
        statuses.append(NetworkStatus(
            name=name,
            interface=str(entry.get("interface", "") or ""),
            ips=[str(ip) for ip in entry.get("ips", []) or []],
            mac=str(entry.get("mac", "") or ""),
            default=bool(entry.get("default", False)),
        ))
    return statuses


def ipam_configuration(nad: NetworkAttachmentDefinition, pod_namespace: str, pod_name: str,
                       mount_path: str) -> IPAMConfig:
    """Load the attachment's IPAM configuration as seen through ``mount_path``."""
    flat_file_path = mount_path + WHEREABOUTS_CONFIG_PATH
    ipam_config = load_ipam_configuration(nad.config, "", flat_file_path)
    ipam_config.pod_name = pod_name
    ipam_config.pod_namespace = pod_namespace
    ipam_config.kubernetes.kubeconfig_path = mount_path + ipam_config.kubernetes.kubeconfig_path
    return ipam_config


def ip_pools_namespace() -> str:
    return os.environ.get("WHEREABOUTS_NAMESPACE", "kube-system")


def pod_from_tombstone(obj) -> Pod:
    """Extract the pod from ``obj`` or its tombstone; TypeError for anything else."""
    if isinstance(obj, Pod):
        return obj
    if not isinstance(obj, DeletedFinalStateUnknown):
        raise TypeError(f"received unexpected object: {obj}")
    if not isinstance(obj.obj, Pod):
        raise TypeError(f"deletedFinalStateUnknown contained non-Pod object: {obj.obj}")
    return obj.obj


def strip_pod(pod: Pod) -> Pod:
    """A deep copy of ``pod`` keeping only metadata and annotations."""
    return dataclasses.replace(copy.deepcopy(pod), spec={}, status={})


def is_invalid_plugin_type(err: BaseException) -> bool:
    return isinstance(err, InvalidPluginError)