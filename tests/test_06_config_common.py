# tests/test_06_config_common.py

import os
import logging
from unittest.mock import MagicMock, patch

import pytest
from kubernetes import client

from local_volume_provisioner.cleanup_tracker import CleanupStatusError, CleanupStatusTracker, ProcTable
from local_volume_provisioner.common import (
    GiB, MiB, MalformedAffinityError, fnv1a_32, format_quantity, generate_pv_name,
    is_reclaimable, local_pv_node_names, node_attached_to_local_pv, provisioner_name,
    round_down_capacity_pretty,
)
from local_volume_provisioner.config import (
    ConfigurationError, load_node_cleanup_config, load_provisioner_config,
    split_csv, validate_mount_config,
)
from local_volume_provisioner.node_cleanup import main as node_cleanup_main
from local_volume_provisioner.provisioner import main as provisioner_main
from local_volume_provisioner.volume_util import VolumeUtil

from conftest import FakeVolumeUtil, make_node, make_pv, make_storage_class


# --- naming and capacity ---

def test_fnv1a_reference_values():
    assert fnv1a_32(b"") == 0x811c9dc5
    assert fnv1a_32(b"a") == 0xe40c292c
    assert fnv1a_32(b"foobar") == 0xbf9cf968


def test_pv_name_is_deterministic():
    assert generate_pv_name("foo", "bar", "") == "local-pv-bf9cf968"
    assert generate_pv_name("d1", "n1", "sc1") == generate_pv_name("d1", "n1", "sc1")
    assert generate_pv_name("d1", "n1", "sc1") != generate_pv_name("d1", "n2", "sc1")


@pytest.mark.parametrize("capacity, expected", [
    (100 * 1024, 100 * 1024),
    (5 * MiB, 5 * MiB),
    (15 * MiB + 5, 15 * MiB),
    (9 * GiB + 3, 9216 * MiB),
    (12 * GiB + 7, 12 * GiB),
])
def test_round_down_capacity_pretty(capacity, expected):
    assert round_down_capacity_pretty(capacity) == expected


def test_format_quantity():
    assert format_quantity(12 * GiB) == "12Gi"
    assert format_quantity(9216 * MiB) == "9Gi"
    assert format_quantity(15 * MiB) == "15Mi"
    assert format_quantity(102400) == "102400"
    assert format_quantity(0) == "0"


def test_provisioner_name():
    node = make_node("n1", uid="1234")
    assert provisioner_name(node) == "local-volume-provisioner-n1-1234"
    assert provisioner_name(node, use_node_name_only=True) == "local-volume-provisioner-n1"


def test_node_names_from_affinity_terms():
    pv = make_pv("v1", node="n1")
    pv.spec.node_affinity.required.node_selector_terms.append(client.V1NodeSelectorTerm(match_expressions=[
        client.V1NodeSelectorRequirement(key="kubernetes.io/hostname", operator="In", values=["n1", "n2"]),
        client.V1NodeSelectorRequirement(key="kubernetes.io/hostname", operator="In", values=["n2"]),
    ]))
    assert local_pv_node_names(pv) == {"n1", "n2"}
    with pytest.raises(MalformedAffinityError):
        node_attached_to_local_pv(pv)
    assert node_attached_to_local_pv(make_pv("v2", node="n7")) == "n7"


def test_is_reclaimable():
    assert is_reclaimable(make_pv(phase="Available", reclaim="Retain"))
    assert is_reclaimable(make_pv(phase="Released", reclaim="Delete"))
    assert not is_reclaimable(make_pv(phase="Released", reclaim="Retain"))
    assert not is_reclaimable(make_pv(phase="Bound"))


# --- configuration ---

def test_provisioner_config_defaults(tmp_path, caplog):
    path = tmp_path / "provisioner.yaml"
    path.write_text("""
storage_class_map:
  fast-disks:
    host_dir: /mnt/fast-disks
    mount_dir: /mnt/fast-disks
  broken:
    host_dir: /mnt/broken
node_labels_for_pv:
  - topology.kubernetes.io/zone
""")
    with caplog.at_level(logging.WARNING):
        conf = load_provisioner_config(path)
    assert conf['discovery_period'] == 10
    assert conf['use_node_name_only'] is False
    assert conf['node_label_key'] == "kubernetes.io/hostname"
    fast = conf['storage_class_map']['fast-disks']
    assert (fast['volume_mode'], fast['name_pattern'], fast['fs_type']) == ("Filesystem", "*", None)
    assert "Storage Class broken is misconfigured, missing host_dir or mount_dir parameter" in caplog.text


@pytest.mark.parametrize("content, message", [
    ("storage_class_map: [unclosed", "could not parse"),
    ("- a\n- b\n", "must be a mapping"),
    ("discovery_period: soon\n", "non-negative number"),
    ("use_job_for_cleaning: 1\n", "boolean"),
])
def test_provisioner_config_errors(tmp_path, content, message):
    path = tmp_path / "provisioner.yaml"
    path.write_text(content)
    with pytest.raises(ConfigurationError) as e:
        load_provisioner_config(path)
    assert message in str(e.value)


def test_unsupported_volume_mode():
    with pytest.raises(ConfigurationError) as e:
        validate_mount_config("sc1", {"host_dir": "/a", "mount_dir": "/a", "volume_mode": "Tape"})
    assert str(e.value) == "unsupported volume mode Tape"


def test_node_cleanup_config(tmp_path):
    conf = load_node_cleanup_config(str(tmp_path / "missing.yaml"))
    assert conf['pvc_deletion_delay'] == 60
    assert conf['worker_threads'] == 10

    path = tmp_path / "node_cleanup.yaml"
    path.write_text("""
storage_class_names: [nvme]
pod_namespaces: [apps]
claim_name_patterns:
  nvme: "data-*"
""")
    conf = load_node_cleanup_config(str(path))
    assert conf['storage_class_names'] == ["nvme"]
    assert conf['claim_name_patterns'] == {"nvme": ["data-*"]}


@pytest.mark.parametrize("content, message", [
    ("worker_threads: 2.5\n", "must be an integer"),
    ("worker_threads: -1\n", "non-negative number"),
    ("pvc_deletion_delay: later\n", "non-negative number"),
])
def test_node_cleanup_config_errors(tmp_path, content, message):
    path = tmp_path / "node_cleanup.yaml"
    path.write_text(content)
    with pytest.raises(ConfigurationError) as e:
        load_node_cleanup_config(str(path))
    assert message in str(e.value)


def test_split_csv():
    assert split_csv("a, b,,c ") == ["a", "b", "c"]


# --- host probing ---

def test_volume_util_probes_tmp_path(tmp_path):
    vol_util = VolumeUtil()
    assert vol_util.get_volume_mode(str(tmp_path)) == "Filesystem"
    assert vol_util.get_fs_capacity_byte(str(tmp_path)) > 0
    regular = tmp_path / "file"
    regular.write_bytes(b"\0" * 4096)
    with pytest.raises(ValueError):
        vol_util.get_volume_mode(str(regular))
    assert vol_util.get_block_capacity_byte(str(regular)) == 4096
    (tmp_path / "b").mkdir()
    assert vol_util.read_dir(str(tmp_path)) == ["b", "file"]


def test_mount_points_from_mountinfo(tmp_path):
    mountinfo = tmp_path / "mountinfo"
    mountinfo.write_text(
        "22 1 8:1 / / rw,relatime shared:1 - ext4 /dev/sda1 rw\n"
        "36 22 8:17 / /mnt/disks/with\\040space rw,noatime shared:2 - xfs /dev/sdb1 rw\n"
    )
    vol_util = VolumeUtil(mountinfo_path=str(mountinfo))
    mount_points = vol_util.list_mount_points()
    assert mount_points == {"/", "/mnt/disks/with space"}
    assert vol_util.is_mount_point("/mnt/disks/with space/", mount_points)
    assert not vol_util.is_mount_point("/mnt/disks", mount_points)


# --- cleanup status ---

def test_proc_table_status_lifecycle():
    table = ProcTable()
    tracker = CleanupStatusTracker(table)
    table.mark_running("v1")
    assert tracker.in_progress("v1", use_job=False)
    with pytest.raises(CleanupStatusError):
        tracker.remove_status("v1", use_job=False)
    table.mark_failed("v1")
    assert table.stats() == {"Running": 0, "Failed": 1, "Succeeded": 0}
    assert tracker.remove_status("v1", use_job=False) == "Failed"
    assert tracker.remove_status("v1", use_job=False) == "NotFound"


def test_job_based_cleanup_status():
    jobs = MagicMock()
    jobs.is_cleaning_job_running.return_value = True
    tracker = CleanupStatusTracker(job_controller=jobs)
    assert tracker.in_progress("v1", use_job=True)
    tracker.remove_status("v1", use_job=True)
    jobs.remove_job.assert_called_once_with("v1")


def test_job_cleanup_without_job_controller_uses_proc_table():
    table = ProcTable()
    tracker = CleanupStatusTracker(table)
    table.mark_running("v1")
    assert tracker.in_progress("v1", use_job=True)
    with pytest.raises(CleanupStatusError):
        tracker.remove_status("v1", use_job=True)
    table.mark_succeeded("v1")
    assert not tracker.in_progress("v1", use_job=True)
    assert tracker.remove_status("v1", use_job=True) == "Succeeded"


# --- command line ---

def list_of(list_cls, items):
    return list_cls(items=items, metadata=client.V1ListMeta(resource_version="1"))


def test_provisioner_missing_config_is_fatal(tmp_path, capsys, run_cli):
    with pytest.raises(SystemExit) as e:
        run_cli(provisioner_main, '-c', str(tmp_path / "nope.yaml"), '--run-once')
    assert e.value.code == 1
    assert "FATAL: Could not load or validate config" in capsys.readouterr().err


def test_provisioner_requires_node_name(tmp_path, run_cli):
    path = tmp_path / "provisioner.yaml"
    path.write_text("storage_class_map: {}\n")
    env = {k: v for k, v in os.environ.items() if k != "MY_NODE_NAME"}
    with patch.dict(os.environ, env, clear=True):
        with pytest.raises(SystemExit) as e:
            run_cli(provisioner_main, '-c', str(path), '--run-once')
    assert e.value.code == 1


def test_provisioner_run_once(tmp_path, run_cli):
    path = tmp_path / "provisioner.yaml"
    path.write_text("""
storage_class_map:
  sc1:
    host_dir: /disks
    mount_dir: /disks
""")
    api = MagicMock()
    api.get_node.return_value = make_node("n1")
    api.list_pvs.return_value = list_of(client.V1PersistentVolumeList, [])
    api.list_storage_classes.return_value = list_of(client.V1StorageClassList, [make_storage_class("sc1")])
    vol_util = FakeVolumeUtil()
    vol_util.add("/disks/d1")
    with patch.dict(os.environ, {"MY_NODE_NAME": "n1"}), \
            patch("local_volume_provisioner.provisioner.setup_client"), \
            patch("local_volume_provisioner.provisioner.APIUtil", return_value=api), \
            patch("local_volume_provisioner.provisioner.VolumeUtil", return_value=vol_util):
        run_cli(provisioner_main, '-c', str(path), '--run-once')
    created = api.create_pv.call_args.args[0]
    assert created.metadata.name == generate_pv_name("d1", "n1", "sc1")
    assert created.metadata.annotations["pv.kubernetes.io/provisioned-by"] == "local-volume-provisioner-n1-uid-n1"


def test_node_cleanup_requires_storage_classes(tmp_path, capsys, run_cli):
    with pytest.raises(SystemExit) as e:
        run_cli(node_cleanup_main, '-c', str(tmp_path / "none.yaml"), '--run-once')
    assert e.value.code == 1
    assert "storage_class_names" in capsys.readouterr().err


def test_node_cleanup_run_once_deletes_stale_pv(tmp_path, run_cli):
    api = MagicMock()
    api.list_pvs.return_value = list_of(client.V1PersistentVolumeList, [make_pv("v1", node="gone")])
    api.list_pvcs.return_value = list_of(client.V1PersistentVolumeClaimList, [])
    api.list_nodes.return_value = list_of(client.V1NodeList, [make_node("n1")])
    with patch("local_volume_provisioner.node_cleanup.setup_client"), \
            patch("local_volume_provisioner.node_cleanup.APIUtil", return_value=api):
        run_cli(node_cleanup_main, '-c', str(tmp_path / "none.yaml"), '--storageclass-names', 'sc1,sc2', '--run-once')
    api.delete_pv.assert_called_once_with("v1")
