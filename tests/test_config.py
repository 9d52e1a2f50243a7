import json
from ipaddress import ip_address

import pytest

from whereabouts import logger
from whereabouts.config import (
    ConfigError,
    InvalidPluginError,
    get_flat_ipam,
    load_ipam_config,
    load_ipam_configuration,
    parse_cidr_sloppy,
    parse_ip_sloppy,
)

KUBECONFIG = "/etc/cni/net.d/whereabouts.d/whereabouts.kubeconfig"


@pytest.fixture(autouse=True)
def quiet_logs():
    logger.set_log_stderr(False)
    yield


@pytest.fixture
def log_file(tmp_path):
    return str(tmp_path / "whereabouts.log")


def conf(ipam, **top):
    base = {"cniVersion": "0.3.1", "name": "mynet", "type": "ipvlan", "master": "foo0", "ipam": ipam}
    base.update(top)
    return json.dumps(base).encode()


def ipam(log_file, **extra):
    d = {"type": "whereabouts", "log_file": log_file, "log_level": "debug",
         "kubernetes": {"kubeconfig": KUBECONFIG}, "gateway": "192.168.10.1"}
    d.update(extra)
    return d


def test_basic_config(log_file):
    cfg, version = load_ipam_config(conf(ipam(log_file, range="192.168.1.5-192.168.1.25/24")), "")
    assert version == "0.3.1"
    assert cfg.log_level == "debug"
    assert cfg.log_file == log_file
    assert cfg.ip_ranges[0].range == "192.168.1.0/24"
    assert cfg.ip_ranges[0].range_start == ip_address("192.168.1.5")
    assert cfg.ip_ranges[0].range_end == ip_address("192.168.1.25")
    assert cfg.gateway == ip_address("192.168.10.1")
    assert (cfg.leader_lease_duration, cfg.leader_renew_deadline, cfg.leader_retry_period) == (1500, 1000, 500)
    assert cfg.name == "mynet"


def test_flat_file_config(tmp_path, log_file):
    flat = tmp_path / "whereabouts.conf"
    flat.write_text(json.dumps({
        "datastore": "kubernetes", "kubernetes": {"kubeconfig": KUBECONFIG},
        "log_file": log_file, "log_level": "debug", "gateway": "192.168.5.5",
    }))
    data = conf({
        "configuration_path": str(flat), "type": "whereabouts",
        "range": "192.168.2.230/24", "range_start": "192.168.2.223", "gateway": "192.168.10.1",
        "leader_lease_duration": 3000, "leader_renew_deadline": 2000, "leader_retry_period": 1000,
    })
    cfg, _ = load_ipam_config(data, "")
    assert cfg.log_level == "debug"
    assert cfg.log_file == log_file
    assert cfg.ip_ranges[0].range == "192.168.2.0/24"
    assert str(cfg.ip_ranges[0].range_start) == "192.168.2.223"
    assert cfg.gateway == ip_address("192.168.10.1")
    assert cfg.kubernetes.kubeconfig_path == KUBECONFIG
    assert (cfg.leader_lease_duration, cfg.leader_renew_deadline, cfg.leader_retry_period) == (3000, 2000, 1000)


def test_config_list(log_file):
    data = json.dumps({"cniVersion": "0.3.0", "disableCheck": True, "plugins": [{
        "type": "macvlan", "master": "eth0", "mode": "bridge",
        "ipam": ipam(log_file, range="192.168.1.5-192.168.1.25/24", leader_lease_duration=1500,
                     leader_renew_deadline=1000, leader_retry_period=500),
    }]})
    cfg = load_ipam_configuration(data, "")
    assert cfg.log_level == "debug"
    assert cfg.ip_ranges[0].range == "192.168.1.0/24"
    assert cfg.ip_ranges[0].range_start == ip_address("192.168.1.5")
    assert cfg.ip_ranges[0].range_end == ip_address("192.168.1.25")
    assert cfg.gateway == ip_address("192.168.10.1")
    assert cfg.leader_lease_duration == 1500


def test_non_whereabouts_plugin():
    with pytest.raises(InvalidPluginError) as info:
        load_ipam_config(conf({"type": "static"}), "")
    assert info.value.ipam_type == "static"
    assert str(info.value).endswith("This one was: static")


@pytest.mark.parametrize("extra, start, end", [
    ({"range": "00192.00168.1.5-000000192.168.1.25/24"}, "192.168.1.5", "192.168.1.25"),
    ({"range": "00192.00168.1.0/24"}, "192.168.1.0", None),
    ({"range": "00192.00168.1.0/24", "range_start": "00192.00168.1.44"}, "192.168.1.44", None),
    ({"range": "00192.00168.1.0/24", "range_start": "00192.00168.1.44",
      "range_end": "00192.00168.01.209"}, "192.168.1.44", "192.168.1.209"),
])
def test_leading_zeroes(log_file, extra, start, end):
    cfg, _ = load_ipam_config(conf(ipam(log_file, **extra)), "")
    assert cfg.ip_ranges[0].range == "192.168.1.0/24"
    assert cfg.ip_ranges[0].range_start == ip_address(start)
    if end is not None:
        assert cfg.ip_ranges[0].range_end == ip_address(end)


def test_cron_expression(log_file):
    cfg, _ = load_ipam_config(conf(ipam(
        log_file, range="00192.00168.1.0/24", range_start="00192.00168.1.44",
        range_end="00192.00168.01.209", reconciler_cron_expression="30 4 * * *")), "")
    assert cfg.ip_ranges[0].range_end == ip_address("192.168.1.209")
    assert cfg.reconciler_cron_expression == "30 4 * * *"


def test_invalid_range(log_file):
    data = conf({"type": "whereabouts", "log_file": log_file, "log_level": "debug",
                 "range": "192.168.1.5-192.168.2.25/28", "gateway": "192.168.10.1"})
    with pytest.raises(ConfigError, match=r"^invalid range start for CIDR 192\.168\.2\.16/28: 192\.168\.1\.5$"):
        load_ipam_config(data, "")


def test_invalid_json():
    data = b'{"cniVersion": "0.3.1", "name": "mynet", "ipam": { asdf } }'
    with pytest.raises(ConfigError) as info:
        load_ipam_config(data, "")
    assert str(info.value).startswith("LoadIPAMConfig - JSON Parsing Error: ")


def test_missing_ipam():
    with pytest.raises(ConfigError, match="missing 'ipam' key"):
        load_ipam_config(b'{"name": "x"}', "")


def test_missing_kubeconfig(log_file):
    data = conf({"type": "whereabouts", "log_file": log_file, "range": "10.0.0.0/24"})
    with pytest.raises(ConfigError, match="storage engine"):
        load_ipam_config(data, "")


def test_env_args(log_file):
    cfg, _ = load_ipam_config(
        conf(ipam(log_file, range="10.0.0.0/24")),
        "IP=10.1.0.5/24;GATEWAY=10.1.0.1;K8S_POD_NAME=p;K8S_POD_NAMESPACE=ns",
    )
    assert cfg.get_pod_ref() == "ns/p"
    assert cfg.addresses[0].version == "4"
    assert cfg.addresses[0].gateway == ip_address("10.1.0.1")


def test_env_args_unknown_key(log_file):
    with pytest.raises(ConfigError, match="LoadArgs"):
        load_ipam_config(conf(ipam(log_file, range="10.0.0.0/24")), "FOO=bar")


def test_legacy_cni_version_rejects_two_addresses(log_file):
    data = conf(ipam(log_file, range="10.0.0.0/24",
                     addresses=[{"address": "10.0.0.1/24"}, {"address": "10.0.0.2/24"}]),
                cniVersion="0.2.0")
    with pytest.raises(ConfigError, match="does not support more than 1 address"):
        load_ipam_config(data, "")


def test_parse_helpers():
    assert parse_ip_sloppy("010.001.0.1") == ip_address("10.1.0.1")
    with pytest.raises(ValueError):
        parse_ip_sloppy("1.2.3.256")
    ip, net = parse_cidr_sloppy("192.168.1.77/24")
    assert (str(ip), str(net)) == ("192.168.1.77", "192.168.1.0/24")
    with pytest.raises(ValueError):
        parse_cidr_sloppy("192.168.1.77")


def test_flat_ipam_not_found(tmp_path):
    flat, found = get_flat_ipam(True, None, str(tmp_path / "missing.conf"))
    assert (flat, found) == (None, "")