"""Loading and validation of the IPAM plugin configuration."""

from __future__ import annotations

import dataclasses
import ipaddress
import json
import os
from dataclasses import dataclass, field
from typing import Optional, Union

from whereabouts import logger

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]

DEFAULT_LEADER_LEASE_DURATION = 1500
DEFAULT_LEADER_RENEW_DEADLINE = 1000
DEFAULT_LEADER_RETRY_PERIOD = 500

_DEFAULT_FLAT_PATHS = (
    "/etc/kubernetes/cni/net.d/whereabouts.d/whereabouts.conf",
    "/etc/cni/net.d/whereabouts.d/whereabouts.conf",
    "/host/etc/cni/net.d/whereabouts.d/whereabouts.conf",
)
_LEGACY_CNI_VERSIONS = ("", "0.1.0", "0.2.0")
_RELEVANT_IPAM_TYPE = "whereabouts"


class ConfigError(ValueError):
    """Raised when the configuration cannot be loaded or is invalid."""


class InvalidPluginError(ConfigError):
    """The IPAM section belongs to another plugin."""

    def __init__(self, ipam_type: str):
        self.ipam_type = ipam_type
        super().__init__(
            "only interested in networks whose IPAM type is 'whereabouts'. "
            f"This one was: {ipam_type}"
        )


@dataclass
class KubernetesConfig:
    kubeconfig_path: str = ""
    k8s_api_root: str = ""


@dataclass
class RangeConfiguration:
    range: str = ""
    range_start: Optional[IPAddress] = None
    range_end: Optional[IPAddress] = None
    omit_ranges: list[str] = field(default_factory=list)


@dataclass
class Address:
    address_str: str = ""
    address: Optional[IPInterface] = None
    gateway: Optional[IPAddress] = None
    version: str = ""


@dataclass
class IPAMConfig:
    name: str = ""
    type: str = ""
    pod_name: str = ""
    pod_namespace: str = ""
    datastore: str = ""
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    configuration_path: str = ""
    log_file: str = ""
    log_level: str = ""
    range: str = ""
    range_start: Optional[IPAddress] = None
    range_end: Optional[IPAddress] = None
    omit_ranges: list[str] = field(default_factory=list)
    ip_ranges: list[RangeConfiguration] = field(default_factory=list)
    addresses: list[Address] = field(default_factory=list)
    gateway_str: str = ""
    gateway: Optional[IPAddress] = None
    reconciler_cron_expression: str = ""
    enable_overlapping_ranges: bool = False
    sleep_for_race: int = 0
    leader_lease_duration: int = 0
    leader_renew_deadline: int = 0
    leader_retry_period: int = 0

    def get_pod_ref(self) -> str:
        return f"{self.pod_namespace}/{self.pod_name}"


def parse_ip_sloppy(text: str) -> IPAddress:
    """Parse an IP address, accepting leading zeros in IPv4 octets."""
    if ":" in text:
        try:
            return ipaddress.IPv6Address(text)
        except ValueError as exc:
            raise ValueError(f"invalid IP address: {text}") from exc
    parts = text.split(".")
    if len(parts) != 4 or not all(p.isascii() and p.isdigit() for p in parts):
        raise ValueError(f"invalid IP address: {text}")
    octets = [int(p) for p in parts]
    if any(o > 255 for o in octets):
        raise ValueError(f"invalid IP address: {text}")
    return ipaddress.IPv4Address(bytes(octets))


def parse_cidr_sloppy(text: str) -> tuple[IPAddress, IPNetwork]:
    """Parse ``addr/prefix`` into the address and its network."""
    addr, sep, prefix = text.partition("/")
    try:
        if not sep or not (prefix.isascii() and prefix.isdigit()):
            raise ValueError
        ip = parse_ip_sloppy(addr)
        network = ipaddress.ip_network(f"{ip}/{int(prefix)}", strict=False)
    except ValueError as exc:
        raise ValueError(f"invalid CIDR address: {text}") from exc
    return ip, network


def _get(d: dict, key: str, kind, default):
    value = d.get(key)
    if value is None:
        return default
    if kind is int and isinstance(value, bool) or not isinstance(value, kind):
        raise ConfigError(f"field {key!r} has the wrong type: {value!r}")
    return value


def _get_ip(d: dict, key: str) -> Optional[IPAddress]:
    text = _get(d, key, str, "")
    if not text:
        return None
    try:
        return parse_ip_sloppy(text)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def _get_str_list(d: dict, key: str) -> list[str]:
    items = _get(d, key, list, [])
    if not all(isinstance(i, str) for i in items):
        raise ConfigError(f"field {key!r} must hold strings")
    return list(items)


def _dicts(d: dict, key: str) -> list[dict]:
    items = _get(d, key, list, [])
    if not all(isinstance(i, dict) for i in items):
        raise ConfigError(f"field {key!r} must hold objects")
    return items


def _ipam_from_dict(d: dict) -> IPAMConfig:
    if not isinstance(d, dict):
        raise ConfigError("IPAM configuration must be an object")
    kube = _get(d, "kubernetes", dict, {})
    return IPAMConfig(
        name=_get(d, "name", str, ""),
        type=_get(d, "type", str, ""),
        datastore=_get(d, "datastore", str, ""),
        kubernetes=KubernetesConfig(
            kubeconfig_path=_get(kube, "kubeconfig", str, ""),
            k8s_api_root=_get(kube, "k8s_api_root", str, ""),
        ),
        configuration_path=_get(d, "configuration_path", str, ""),
        log_file=_get(d, "log_file", str, ""),
        log_level=_get(d, "log_level", str, ""),
        range=_get(d, "range", str, ""),
        range_start=_get_ip(d, "range_start"),
        range_end=_get_ip(d, "range_end"),
        omit_ranges=_get_str_list(d, "exclude"),
        ip_ranges=[
            RangeConfiguration(
                range=_get(r, "range", str, ""),
                range_start=_get_ip(r, "range_start"),
                range_end=_get_ip(r, "range_end"),
                omit_ranges=_get_str_list(r, "exclude"),
            )
            for r in _dicts(d, "ipRanges")
        ],
        addresses=[
            Address(address_str=_get(a, "address", str, ""), gateway=_get_ip(a, "gateway"))
            for a in _dicts(d, "addresses")
        ],
        gateway_str=_get(d, "gateway", str, ""),
        reconciler_cron_expression=_get(d, "reconciler_cron_expression", str, ""),
        enable_overlapping_ranges=_get(d, "enable_overlapping_ranges", bool, False),
        sleep_for_race=_get(d, "sleep_for_race", int, 0),
        leader_lease_duration=_get(d, "leader_lease_duration", int, 0),
        leader_renew_deadline=_get(d, "leader_renew_deadline", int, 0),
        leader_retry_period=_get(d, "leader_retry_period", int, 0),
    )


def _is_empty(value) -> bool:
    if value is None or isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value is None
    return value == "" or value == 0 or value == []


def _merge(dst, src) -> None:
    """Fill empty fields of ``dst`` with values from ``src``."""
    for f in dataclasses.fields(dst):
        current = getattr(dst, f.name)
        incoming = getattr(src, f.name)
        if dataclasses.is_dataclass(current):
            _merge(current, incoming)
        elif _is_empty(current):
            setattr(dst, f.name, incoming)


def _path_exists(path: str) -> bool:
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return True


def get_flat_ipam(is_control_loop: bool, ipam: Optional[IPAMConfig], *args: str
                  ) -> tuple[Optional[IPAMConfig], str]:
    """Find and parse the first flat configuration file that exists."""
    paths = [*_DEFAULT_FLAT_PATHS, *args]
    if not is_control_loop and ipam is not None and ipam.configuration_path:
        paths.insert(0, ipam.configuration_path)
    for path in paths:
        if not _path_exists(path):
            continue
        try:
            with open(path, "rb") as fh:
                raw = fh.read()
        except OSError as exc:
            raise ConfigError(f"error opening flat configuration file @ {path} with: {exc}") from exc
        try:
            flat = _ipam_from_dict(json.loads(raw))
        except (ValueError, ConfigError) as exc:
            raise ConfigError(
                f"LoadIPAMConfig Flatfile ({path}) - JSON Parsing Error: {exc} / bytes: "
                f"{raw.decode(errors='replace')}"
            ) from exc
        return flat, path
    return None, ""


def _load_args(env_args: str) -> dict[str, str]:
    known = {"IP", "GATEWAY", "K8S_POD_NAME", "K8S_POD_NAMESPACE",
             "K8S_POD_INFRA_CONTAINER_ID", "IGNOREUNKNOWN"}
    if not env_args:
        return {}
    pairs = {}
    for item in env_args.split(";"):
        key, sep, value = item.partition("=")
        if not sep:
            raise ConfigError(f"ARGS: invalid pair {item!r}")
        pairs[key] = value
    ignore = pairs.get("IGNOREUNKNOWN", "").lower() in ("1", "true")
    for key in pairs:
        if key not in known and not ignore:
            raise ConfigError(f"ARGS: can not set unknown field {key!r}")
    return pairs


def _normalize_ranges(ipam: IPAMConfig) -> None:
    if ipam.range:
        ipam.ip_ranges.insert(0, RangeConfiguration(
            range=ipam.range, range_start=ipam.range_start,
            range_end=ipam.range_end, omit_ranges=ipam.omit_ranges,
        ))
    for rc in ipam.ip_ranges:
        start_text, sep, cidr = rc.range.partition("-")
        if sep:
            try:
                first = parse_ip_sloppy(start_text)
            except ValueError as exc:
                raise ConfigError(f"invalid range start IP: {start_text}") from exc
            try:
                last, network = parse_cidr_sloppy(cidr)
            except ValueError as exc:
                raise ConfigError(
                    "invalid CIDR (do you have the 'range' parameter set for Whereabouts?) "
                    f"'{cidr}': {exc}"
                ) from exc
            if first.version != network.version or first not in network:
                raise ConfigError(f"invalid range start for CIDR {network}: {first}")
            rc.range = str(network)
            rc.range_start = first
            rc.range_end = last
        else:
            try:
                _, network = parse_cidr_sloppy(rc.range)
            except ValueError as exc:
                raise ConfigError(f"invalid CIDR {rc.range}: {exc}") from exc
            rc.range = str(network)
            if rc.range_start is None:
                rc.range_start = network.network_address
    ipam.omit_ranges = []
    ipam.range = ""
    ipam.range_start = None
    ipam.range_end = None


def _configure_static(ipam: IPAMConfig, cni_version: str, args: dict[str, str]) -> None:
    counts = {"4": 0, "6": 0}
    for index, addr in enumerate(ipam.addresses):
        try:
            ip, network = parse_cidr_sloppy(addr.address_str)
        except ValueError as exc:
            raise ConfigError(f"invalid CIDR in addresses {addr.address_str}: {exc}") from exc
        addr.address = ipaddress.ip_interface(f"{ip}/{network.prefixlen}")
        addr.version = str(ip.version)
        counts[addr.version] += 1

    for item in filter(None, args.get("IP", "").split(",")):
        text = item.strip()
        try:
            ip, network = parse_cidr_sloppy(text)
        except ValueError as exc:
            raise ConfigError(f"invalid CIDR {text}: {exc}") from exc
        version = str(ip.version)
        ipam.addresses.append(Address(
            address=ipaddress.ip_interface(f"{ip}/{network.prefixlen}"), version=version,
        ))
        counts[version] += 1

    for item in filter(None, args.get("GATEWAY", "").split(",")):
        try:
            gateway = parse_ip_sloppy(item.strip())
        except ValueError as exc:
            raise ConfigError(f"invalid gateway address: {item}") from exc
        for addr in ipam.addresses:
            if addr.address is not None and gateway in addr.address.network:
                addr.gateway = gateway

    if (counts["4"] > 1 or counts["6"] > 1) and cni_version in _LEGACY_CNI_VERSIONS:
        raise ConfigError(
            f"CNI version {cni_version} does not support more than 1 address per family"
        )


def load_ipam_config(data: Union[bytes, str], env_args: str, *args: str
                     ) -> tuple[IPAMConfig, str]:
    """Build the IPAM configuration from a single plugin's JSON.

    Returns the configuration and the CNI version.
    """
    text = data.decode(errors="replace") if isinstance(data, bytes) else data
    try:
        net = json.loads(text)
        if not isinstance(net, dict):
            raise ConfigError("network configuration must be an object")
        name = _get(net, "name", str, "")
        cni_version = _get(net, "cniVersion", str, "")
        ipam_raw = net.get("ipam")
        ipam = _ipam_from_dict(ipam_raw) if ipam_raw is not None else None
    except (ValueError, ConfigError) as exc:
        raise ConfigError(f"LoadIPAMConfig - JSON Parsing Error: {exc} / bytes: {text}") from exc

    if ipam is None:
        raise ConfigError("IPAM config missing 'ipam' key")
    if ipam.type != _RELEVANT_IPAM_TYPE:
        raise InvalidPluginError(ipam.type)

    try:
        env = _load_args(env_args)
    except ConfigError as exc:
        raise ConfigError(f"LoadArgs - CNI Args Parsing Error: {exc}") from exc
    ipam.pod_name = env.get("K8S_POD_NAME", "")
    ipam.pod_namespace = env.get("K8S_POD_NAMESPACE", "")

    flat, found = get_flat_ipam(False, ipam, *args)
    if flat is not None:
        _merge(ipam, flat)

    if ipam.log_file:
        logger.set_log_file(ipam.log_file)
    if ipam.log_level:
        logger.set_log_level(ipam.log_level)
    if found:
        logger.debugf("Used defaults from parsed flat file config @ %s", found)

    _normalize_ranges(ipam)

    if not ipam.kubernetes.kubeconfig_path:
        raise ConfigError(
            "you have not configured the storage engine (looks like you're using an invalid "
            "`kubernetes.kubeconfig` parameter in your config)"
        )

    if ipam.gateway_str:
        try:
            ipam.gateway = parse_ip_sloppy(ipam.gateway_str)
        except ValueError as exc:
            raise ConfigError(f"couldn't parse gateway IP: {ipam.gateway_str}") from exc

    _configure_static(ipam, cni_version, env)

    ipam.leader_lease_duration = ipam.leader_lease_duration or DEFAULT_LEADER_LEASE_DURATION
    ipam.leader_renew_deadline = ipam.leader_renew_deadline or DEFAULT_LEADER_RENEW_DEADLINE
    ipam.leader_retry_period = ipam.leader_retry_period or DEFAULT_LEADER_RETRY_PERIOD
    ipam.name = name
    return ipam, cni_version


def load_ipam_configuration(data: Union[bytes, str], env_args: str, *args: str) -> IPAMConfig:
    """Load from a plugin config or from the first plugin of a config list."""
    text = data.decode(errors="replace") if isinstance(data, bytes) else data
    try:
        plugin = json.loads(text)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    if not isinstance(plugin, dict):
        raise ConfigError("plugin configuration must be an object")
    if plugin.get("type"):
        return load_ipam_config(text, env_args, *args)[0]
    plugins = plugin.get("plugins")
    if not isinstance(plugins, list) or not plugins or not isinstance(plugins[0], dict):
        raise ConfigError("configuration list holds no plugins")
    first = dict(plugins[0])
    first["cniVersion"] = plugin.get("cniVersion", "")
    return load_ipam_config(json.dumps(first), env_args, *args)[0]