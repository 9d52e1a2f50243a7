# whereabouts

A pure-Python library for IP address management of pod networks. It loads
and validates IPAM configuration, keeps IP pools and overlapping-range
reservations in an in-memory indexer, and runs a controller that releases the
pool allocations still held by pods after they are deleted. It has no
dependencies outside the standard library.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Loading an IPAM configuration

`whereabouts.config.load_ipam_config(data, env_args, *extra_paths)` takes a
single plugin's network configuration (JSON as `bytes` or `str`) and returns
the resolved `IPAMConfig` together with the CNI version.
`load_ipam_configuration` accepts either a single plugin or a plugin list; for
a list it uses the first plugin and gives it the list's `cniVersion`. It
returns only the `IPAMConfig`.

```python
from whereabouts.config import load_ipam_config

conf = b'''{
  "cniVersion": "0.3.1",
  "name": "mynet",
  "type": "ipvlan",
  "ipam": {
    "type": "whereabouts",
    "kubernetes": {"kubeconfig": "/etc/cni/net.d/whereabouts.d/whereabouts.kubeconfig"},
    "range": "192.168.1.5-192.168.1.25/24",
    "gateway": "192.168.10.1"
  }
}'''

ipam, cni_version = load_ipam_config(conf, "")
print(ipam.ip_ranges[0].range)        # 192.168.1.0/24
print(ipam.ip_ranges[0].range_start)  # 192.168.1.5
print(ipam.ip_ranges[0].range_end)    # 192.168.1.25
print(ipam.leader_lease_duration)     # 1500 (default)
```

What loading does:

- A `range` of the form `start-cidr` is split into the network, its start and
  its end; a plain CIDR becomes the network and, unless `range_start` is
  given, the network address as start. The top-level range is moved to the
  front of `ip_ranges`.
- Fields left empty are filled in from a flat file named `whereabouts.conf`.
  It is looked for first at the IPAM section's `configuration_path`, then at
  `/etc/kubernetes/cni/net.d/whereabouts.d/whereabouts.conf`,
  `/etc/cni/net.d/whereabouts.d/whereabouts.conf` and
  `/host/etc/cni/net.d/whereabouts.d/whereabouts.conf`, then at any extra
  paths passed in. The first file that exists is used (`get_flat_ipam`).
- `env_args` is a CNI argument string such as
  `K8S_POD_NAME=web;K8S_POD_NAMESPACE=default`. `IP` and `GATEWAY` arguments
  add static addresses and their gateways.
- `log_file` and `log_level` in the configuration are applied to
  `whereabouts.logger` as a side effect.
- The leader lease duration, renew deadline and retry period default to 1500,
  1000 and 500.

A network whose IPAM type is not `whereabouts` raises `InvalidPluginError`.
Malformed JSON, invalid ranges, a missing `kubernetes.kubeconfig` and other
invalid input raise `ConfigError` (a `ValueError`).

`parse_ip_sloppy` and `parse_cidr_sloppy` accept IPv4 octets with leading
zeroes, such as `00192.00168.1.0/24`, and raise `ValueError` otherwise.

## Logging

`whereabouts.logger` writes timestamped lines to stderr (on by default), to a
log file, or to both:

```python
from whereabouts import logger

logger.set_log_level("verbose")
logger.set_log_file("/tmp/whereabouts.log")
logger.verbosef("allocated %s", "192.168.1.5")
```

The levels, from most to least severe, are panic, error, verbose and debug;
the default is debug. Level names are case-insensitive, and an unknown name
leaves the current level unchanged. `errorf` logs and returns a `LoggedError`
carrying the message; `panicf` also logs the current stack.

## Pools and listers

`whereabouts.listers` provides the `IPPool`, `IPAllocation` and
`OverlappingRangeIPReservation` dataclasses, an `Indexer` keyed by
`namespace/name`, and `IPPoolLister` / `OverlappingRangeIPReservationLister`
with per-namespace listers. `list(selector)` filters by labels; `get(name)`
raises `NotFoundError` when the object is not there.

## Releasing the addresses of deleted pods

`whereabouts.controller.PodController` is given an `IPPoolLister`, an
`Indexer` of `NetworkAttachmentDefinition`s and a clean-up callable. Deleted
pods (or `DeletedFinalStateUnknown` tombstones) are handed to
`on_pod_delete`, which queues a stripped copy. For each queued pod the
controller reads its network-status annotation, loads the IPAM configuration
of every non-default attached network through the mount path (default
`/host`), looks up the pool of each range in the namespace named by
`WHEREABOUTS_NAMESPACE` (default `kube-system`), and, for every allocation
still referring to the pod, calls the clean-up callable and records a
`Normal IPAddressGarbageCollected` event on its `EventRecorder`. Networks with
another IPAM type are skipped. A failing pod is retried with exponential
back-off; after its retries run out a `Warning
IPAddressGarbageCollectionFailed` event is recorded and the pod is dropped.
`start(stop_event)` runs the worker in a background thread.

`whereabouts.harness.new_dummy_pod_controller` builds a self-contained
controller over in-memory caches whose clean-up removes the pod's allocations
from the cached pools. `delete_pod` and `run_until_idle` drive it
synchronously. The helpers in `whereabouts.entities` build matching sample
objects:

```python
import os, tempfile
from whereabouts.controller import EventRecorder, WHEREABOUTS_CONFIG_PATH, ip_pools_namespace
from whereabouts.entities import dummy_net_spec, ip_pool, net_attach_def, pod_spec
from whereabouts.harness import new_dummy_pod_controller

mount = tempfile.mkdtemp()
flat = mount + WHEREABOUTS_CONFIG_PATH
os.makedirs(os.path.dirname(flat))
with open(flat, "w") as fh:
    fh.write('{"kubernetes": {"kubeconfig": "/etc/kubeconfig"}}')

pod = pod_spec("tiny-pod", "default", "meganet")
pool = ip_pool("192.168.2.0/24", ip_pools_namespace(), "default/tiny-pod")
nad = net_attach_def("meganet", "default", dummy_net_spec("meganet", "192.168.2.0/24"))
recorder = EventRecorder()

harness = new_dummy_pod_controller([pod], [pool], [nad], mount, recorder)
harness.delete_pod("default", "tiny-pod")
harness.run_until_idle()
print(pool.allocations)         # {}
print(str(recorder.events[0]))  # Normal IPAddressGarbageCollected successful cleanup of IP address [192.168.2.0] from network meganet
```

## What the package does not do

It does not talk to a cluster API server: there is no client, no watching of
pods, pools or attachments, and no persistent storage beyond the in-memory
`Indexer`. Deletions must be fed to `on_pod_delete` by the caller, and the
actual release of an address is whatever clean-up callable the controller is
given. It does not allocate addresses and provides no CNI plugin command or
other command-line entry point.