import os

import pytest

from whereabouts.controller import WHEREABOUTS_CONFIG_PATH, ip_pools_namespace, pod_id
from whereabouts.entities import (
    dummy_net_spec,
    dummy_non_whereabouts_ipam_net_spec,
    ip_pool,
    net_attach_def,
    pod_spec,
)
from whereabouts.controller import EventRecorder
from whereabouts.harness import cast_to_ip_pool, new_dummy_pod_controller
from whereabouts.listers import IPAllocation, OverlappingRangeIPReservation

DUMMY_NET_IP_RANGE = "192.168.2.0/24"
NAMESPACE = "default"
NETWORK_NAME = "meganet"
POD_NAME = "tiny-winy-pod"


def _dummy_whereabouts_config() -> str:
    return """{
      "datastore": "kubernetes",
      "kubernetes": {
        "kubeconfig": "/etc/cni/net.d/whereabouts.d/whereabouts.kubeconfig"
      },
      "log_level": "verbose"
    }
"""


@pytest.fixture
def cni_config_dir(tmp_path):
    path = str(tmp_path) + WHEREABOUTS_CONFIG_PATH
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(_dummy_whereabouts_config())
    return str(tmp_path)


@pytest.fixture
def pod():
    return pod_spec(POD_NAME, NAMESPACE, NETWORK_NAME)


@pytest.fixture
def pool(pod):
    return ip_pool(DUMMY_NET_IP_RANGE, ip_pools_namespace(), pod_id(pod.namespace, pod.name))


def test_stale_addresses_are_garbage_collected(cni_config_dir, pod, pool):
    recorder = EventRecorder(10)
    nad = net_attach_def(NETWORK_NAME, NAMESPACE, dummy_net_spec(NETWORK_NAME, DUMMY_NET_IP_RANGE))
    dummy = new_dummy_pod_controller([pod], [pool], [nad], cni_config_dir, recorder)
    assert pool.allocations

    dummy.delete_pod(NAMESPACE, POD_NAME)
    dummy.run_until_idle()

    stored = dummy.ip_pool_cache.get_by_key(f"{pool.namespace}/{pool.name}")
    assert stored.allocations == {}


def test_successful_cleanup_event(cni_config_dir, pod, pool):
    recorder = EventRecorder(10)
    nad = net_attach_def(NETWORK_NAME, NAMESPACE, dummy_net_spec(NETWORK_NAME, DUMMY_NET_IP_RANGE))
    dummy = new_dummy_pod_controller([pod], [pool], [nad], cni_config_dir, recorder)

    dummy.delete_pod(NAMESPACE, POD_NAME)
    dummy.run_until_idle()

    assert [str(e) for e in recorder.events] == [
        "Normal IPAddressGarbageCollected successful cleanup of IP address "
        "[192.168.2.0] from network meganet"
    ]


def test_stale_addresses_left_when_network_deleted(cni_config_dir, pod, pool):
    recorder = EventRecorder(10)
    dummy = new_dummy_pod_controller([pod], [pool], [], cni_config_dir, recorder)

    dummy.delete_pod(NAMESPACE, POD_NAME)
    dummy.run_until_idle()

    stored = dummy.ip_pool_cache.get_by_key(f"{pool.namespace}/{pool.name}")
    assert IPAllocation(pod_ref=pod_id(pod.namespace, pod.name)) in stored.allocations.values()


def test_drop_from_queue_event_when_network_deleted(cni_config_dir, pod, pool):
    recorder = EventRecorder(10)
    dummy = new_dummy_pod_controller([pod], [pool], [], cni_config_dir, recorder)

    dummy.delete_pod(NAMESPACE, POD_NAME)
    dummy.run_until_idle()

    expected = ("Warning IPAddressGarbageCollectionFailed failed to garbage collect "
                f"addresses for pod {pod_id(pod.namespace, pod.name)}")
    assert [str(e) for e in recorder.events] == [expected]
    assert len(dummy.controller.queue) == 0


def test_non_whereabouts_network_reports_no_event(cni_config_dir, pod):
    recorder = EventRecorder(1)
    nad = net_attach_def(NETWORK_NAME, NAMESPACE, dummy_non_whereabouts_ipam_net_spec(NETWORK_NAME))
    dummy = new_dummy_pod_controller([pod], [], [nad], cni_config_dir, recorder)

    dummy.delete_pod(NAMESPACE, POD_NAME)
    handled = dummy.run_until_idle()

    assert recorder.events == []
    assert handled == 1


def test_delete_pod_removes_it_from_cache(cni_config_dir, pod, pool):
    dummy = new_dummy_pod_controller([pod], [pool], [], cni_config_dir, None)
    removed = dummy.delete_pod(NAMESPACE, POD_NAME)
    assert removed is pod
    assert dummy.pod_cache.get_by_key(f"{NAMESPACE}/{POD_NAME}") is None
    assert len(dummy.controller.queue) == 1


def test_delete_unknown_pod_raises(cni_config_dir):
    dummy = new_dummy_pod_controller([], [], [], cni_config_dir, None)
    with pytest.raises(KeyError):
        dummy.delete_pod(NAMESPACE, "missing")


def test_cast_to_ip_pool_keeps_only_pools(pool):
    reservation = OverlappingRangeIPReservation(name="r1", namespace=NAMESPACE)
    result = cast_to_ip_pool([reservation, pool, "junk", None])
    assert result == [pool]


def test_cast_to_ip_pool_empty():
    assert cast_to_ip_pool([]) == []