"""A pod controller wired to in-memory stores, driven synchronously."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from whereabouts.config import IPAMConfig
from whereabouts.controller import EventRecorder, PodController, RateLimitingQueue
from whereabouts.entities import NetworkAttachmentDefinition, Pod
from whereabouts.listers import Indexer, IPPool, IPPoolLister


def cast_to_ip_pool(objects: Iterable) -> list[IPPool]:
    """Keep only the IP pools among ``objects``."""
    return [obj for obj in objects if isinstance(obj, IPPool)]


@dataclass
class DummyPodController:
    """A :class:`PodController` whose pods, pools and networks live in memory."""

    controller: PodController
    pod_cache: Indexer
    ip_pool_cache: Indexer
    network_cache: Indexer

    def delete_pod(self, namespace: str, name: str) -> Pod:
        """Remove the pod from the cache and notify the controller; KeyError if absent."""
        key = f"{namespace}/{name}" if namespace else name
        pod = self.pod_cache.get_by_key(key)
        if not isinstance(pod, Pod):
            raise KeyError(f"pod {key} not found")
        self.pod_cache.delete(pod)
        self.controller.on_pod_delete(pod)
        return pod

    def run_until_idle(self) -> int:
        """Process queued work, retries included, until the queue is empty.

        Returns the number of work items handled.
        """
        handled = 0
        while len(self.controller.queue) > 0:
            if not self.controller.process_next_work_item():
                break
            handled += 1
        return handled


def new_dummy_pod_controller(pods: Iterable[Pod], pools: Iterable[IPPool],
                             networks: Iterable[NetworkAttachmentDefinition],
                             mount_path: str,
                             recorder: Optional[EventRecorder]) -> DummyPodController:
    """Build a controller over caches pre-filled with the given objects.

    Its clean-up drops every allocation held by the pod from the cached pools.
    """
    pod_cache, pool_cache, network_cache = Indexer(), Indexer(), Indexer()
    for pod in pods:
        pod_cache.add(pod)
    for pool in pools:
        pool_cache.add(pool)
    for network in networks:
        network_cache.add(network)

    def cleanup(_mode: int, ipam_config: IPAMConfig) -> list:
        pod_ref = ipam_config.get_pod_ref()
        for pool in cast_to_ip_pool(pool_cache.list()):
            stale = [index for index, allocation in pool.allocations.items()
                     if allocation.pod_ref == pod_ref]
            for index in stale:
                del pool.allocations[index]
            if stale:
                pool_cache.update(pool)
        return []

    controller = PodController(
        ip_pool_lister=IPPoolLister(pool_cache),
        net_attach_defs=network_cache,
        cleanup_func=cleanup,
        recorder=recorder,
        mount_path=mount_path,
        queue=RateLimitingQueue(),
    )
    return DummyPodController(
        controller=controller,
        pod_cache=pod_cache,
        ip_pool_cache=pool_cache,
        network_cache=network_cache,
    )