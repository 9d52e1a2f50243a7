"""Pods, network attachments and helpers that build them."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from whereabouts.listers import IPAllocation, IPPool

NETWORK_ATTACHMENT_ANNOT = "k8s.v1.cni.cncf.io/networks"
NETWORK_STATUS_ANNOT = "k8s.v1.cni.cncf.io/network-status"


@dataclass
class Pod:
    name: str
    namespace: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    spec: dict = field(default_factory=dict)
    status: dict = field(default_factory=dict)


@dataclass
class NetworkStatus:
    """One entry of a pod's network-status annotation."""

    name: str
    interface: str = ""
    ips: list[str] = field(default_factory=list)
    mac: str = ""
    default: bool = False


@dataclass
class NetworkAttachmentDefinition:
    name: str
    namespace: str = ""
    config: str = ""


def _status_to_dict(status: NetworkStatus) -> dict:
    out: dict = {"name": status.name}
    if status.interface:
        out["interface"] = status.interface
    if status.ips:
        out["ips"] = list(status.ips)
    if status.mac:
        out["mac"] = status.mac
    if status.default:
        out["default"] = True
    return out


def normalize_range(ip_range: str) -> str:
    """Turn a CIDR into a string usable as an object name."""
    return ip_range.replace(":", "-").replace("/", "-")


def dummy_net_spec(network_name: str, ip_range: str) -> str:
    """A macvlan network config using whereabouts IPAM over ``ip_range``."""
    return json.dumps({
        "cniVersion": "0.3.0",
        "name": network_name,
        "type": "macvlan",
        "master": "eth0",
        "mode": "bridge",
        "ipam": {"type": "whereabouts", "range": ip_range},
    }, indent=2)


def dummy_non_whereabouts_ipam_net_spec(network_name: str) -> str:
    """A macvlan network config using static IPAM."""
    return json.dumps({
        "cniVersion": "0.3.0",
        "name": network_name,
        "type": "macvlan",
        "master": "eth0",
        "mode": "bridge",
        "ipam": {
            "type": "static",
            "addresses": [{"address": "10.10.0.1/24", "gateway": "10.10.0.254"}],
        },
    }, indent=2)


def pod_spec(name: str, namespace: str, *networks: str) -> Pod:
    """A pod attached to ``networks``."""
    return Pod(
        name=name,
        namespace=namespace,
        annotations=pod_network_selection_elements(*networks),
    )


def net_attach_def(net_name: str, namespace: str, config: str) -> NetworkAttachmentDefinition:
    return NetworkAttachmentDefinition(name=net_name, namespace=namespace, config=config)


def pod_network_selection_elements(*network_names: str) -> dict[str, str]:
    """Annotations requesting the networks and reporting their status."""
    return {
        NETWORK_ATTACHMENT_ANNOT: ",".join(network_names),
        NETWORK_STATUS_ANNOT: pod_network_status_annotations("default", *network_names),
    }


def pod_network_status_annotations(namespace: str, *network_names: str) -> str:
    """Serialized network status, one ``netN`` interface per network."""
    statuses = [
        _status_to_dict(NetworkStatus(name=f"{namespace}/{net}", interface=f"net{i}"))
        for i, net in enumerate(network_names)
    ]
    return json.dumps(statuses or None, separators=(",", ":"))


def ip_pool(ip_range: str, namespace: str, *pod_references: str) -> IPPool:
    """A pool over ``ip_range`` with one allocation per pod reference."""
    return IPPool(
        name=normalize_range(ip_range),
        namespace=namespace,
        range=ip_range,
        allocations=allocations(*pod_references),
    )


def allocations(*pod_references: str) -> dict[str, IPAllocation]:
    """Allocations keyed by their offset in the pool."""
    return {
        str(i): IPAllocation(container_id="", pod_ref=ref)
        for i, ref in enumerate(pod_references)
    }