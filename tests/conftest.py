# tests/conftest.py

import pytest
import os
import sys
from types import SimpleNamespace
from unittest.mock import patch

from kubernetes import client
from kubernetes.client.rest import ApiException

# --- Add src to path to allow imports ---
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from local_volume_provisioner.cache import VolumeCache
from local_volume_provisioner.cleanup_tracker import CleanupStatusTracker, ProcTable
from local_volume_provisioner.common import ANN_PROVISIONED_BY, NODE_LABEL_KEY, provisioner_name
from local_volume_provisioner.config import PROVISIONER_DEFAULTS
from local_volume_provisioner.discovery import Discoverer
from local_volume_provisioner.informer import Store
from local_volume_provisioner.populator import Populator

ZONE_LABEL = "topology.kubernetes.io/zone"


def make_node(name="n1", uid=None, labels=None):
    if labels is None:
        labels = {NODE_LABEL_KEY: name, ZONE_LABEL: "zone-a"}
    return client.V1Node(metadata=client.V1ObjectMeta(name=name, uid=uid or f"uid-{name}", labels=labels))


def make_affinity(values, key=NODE_LABEL_KEY):
    return client.V1VolumeNodeAffinity(required=client.V1NodeSelector(node_selector_terms=[
        client.V1NodeSelectorTerm(match_expressions=[
            client.V1NodeSelectorRequirement(key=key, operator="In", values=list(values)),
        ]),
    ]))


def make_pv(name="v1", path="/disks/d1", node="n1", phase="Available", reclaim="Delete",
            storage_class="sc1", mode="Filesystem", claim=None, provisioner=None, local=True):
    """claim is (namespace, name, uid); node may be a name, a list of names or None."""
    annotations = {ANN_PROVISIONED_BY: provisioner} if provisioner else None
    affinity = None
    if node is not None:
        affinity = make_affinity([node] if isinstance(node, str) else node)
    claim_ref = None
    if claim is not None:
        claim_ref = client.V1ObjectReference(kind="PersistentVolumeClaim", namespace=claim[0],
                                             name=claim[1], uid=claim[2])
    spec = client.V1PersistentVolumeSpec(
        capacity={"storage": "10Gi"},
        local=client.V1LocalVolumeSource(path=path) if local else None,
        host_path=None if local else client.V1HostPathVolumeSource(path=path),
        storage_class_name=storage_class,
        persistent_volume_reclaim_policy=reclaim,
        volume_mode=mode,
        node_affinity=affinity,
        claim_ref=claim_ref,
    )
    return client.V1PersistentVolume(
        metadata=client.V1ObjectMeta(name=name, annotations=annotations),
        spec=spec,
        status=client.V1PersistentVolumeStatus(phase=phase),
    )


def make_pvc(namespace="default", name="c1", volume_name="v1", uid="uid-c1"):
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(namespace=namespace, name=name, uid=uid),
        spec=client.V1PersistentVolumeClaimSpec(volume_name=volume_name),
    )


def make_pod(namespace="default", name="p1", claim_name="c1", phase="Pending"):
    volume = client.V1Volume(
        name="data",
        persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=claim_name),
    )
    return client.V1Pod(
        metadata=client.V1ObjectMeta(namespace=namespace, name=name),
        spec=client.V1PodSpec(containers=[client.V1Container(name="app")], volumes=[volume]),
        status=client.V1PodStatus(phase=phase),
    )


def make_storage_class(name="sc1", reclaim_policy="Delete", mount_options=None):
    return client.V1StorageClass(
        metadata=client.V1ObjectMeta(name=name),
        provisioner="kubernetes.io/no-provisioner",
        reclaim_policy=reclaim_policy,
        mount_options=mount_options,
    )


def store_of(*objs):
    store = Store()
    for obj in objs:
        store.add(obj)
    return store


def api_error(status):
    reasons = {404: "Not Found", 409: "Conflict", 500: "Internal Server Error"}
    return ApiException(status=status, reason=reasons.get(status, "Error"))


class FakeAPI:
    """In-memory stand-in for kubeapi.APIUtil recording every mutation."""

    def __init__(self):
        self.pvs = {}
        self.pvcs = {}
        self.pods = {}
        self.created = []
        self.deleted_pvs = []
        self.deleted_pvcs = []
        self.deleted_pods = []
        self.errors = {}
        self.on_create = None

    def _maybe_fail(self, method):
        err = self.errors.get(method)
        if err is not None:
            raise err

    def create_pv(self, pv):
        self._maybe_fail('create_pv')
        name = pv.metadata.name
        if name in self.pvs:
            raise api_error(409)
        self.pvs[name] = pv
        self.created.append(pv)
        if self.on_create is not None:
            self.on_create(pv)
        return pv

    def delete_pv(self, name):
        self._maybe_fail('delete_pv')
        if name not in self.pvs:
            raise api_error(404)
        del self.pvs[name]
        self.deleted_pvs.append(name)

    def delete_pvc(self, namespace, name, uid=None):
        self._maybe_fail('delete_pvc')
        key = f"{namespace}/{name}"
        pvc = self.pvcs.get(key)
        if pvc is None:
            raise api_error(404)
        if uid and pvc.metadata.uid != uid:
            raise api_error(409)
        del self.pvcs[key]
        self.deleted_pvcs.append(key)

    def claim_exists(self, namespace, name):
        return f"{namespace}/{name}" in self.pvcs

    def list_pending_pods(self, namespace):
        self._maybe_fail('list_pending_pods')
        return [p for p in self.pods.get(namespace, []) if p.status.phase == "Pending"]

    def delete_pod(self, namespace, name):
        self._maybe_fail('delete_pod')
        self.pods[namespace] = [p for p in self.pods.get(namespace, []) if p.metadata.name != name]
        self.deleted_pods.append(f"{namespace}/{name}")


class FakeRecorder:

    def __init__(self):
        self.events = []

    def event(self, ref, event_type, reason, message):
        self.events.append((ref, event_type, reason, message))


class FakeVolumeUtil:
    """Host probing over an in-memory table of path -> (volume mode, capacity)."""

    def __init__(self):
        self.entries = {}
        self.mount_points = set()

    def add(self, path, mode="Filesystem", capacity=100 * 1024, mounted=True):
        self.entries[path] = (mode, capacity)
        if mounted:
            self.mount_points.add(path)

    def read_dir(self, path):
        path = path.rstrip('/')
        if not any(os.path.dirname(p) == path for p in self.entries):
            raise FileNotFoundError(f"No such file or directory: '{path}'")
        return sorted(os.path.basename(p) for p in self.entries if os.path.dirname(p) == path)

    def get_volume_mode(self, path):
        mode = self.entries[path][0]
        if mode not in ("Filesystem", "Block"):
            raise ValueError(f"Block device or file system not found at {path}")
        return mode

    def get_fs_capacity_byte(self, path):
        return self.entries[path][1]

    def get_block_capacity_byte(self, path):
        return self.entries[path][1]

    def list_mount_points(self):
        return set(self.mount_points)

    def is_mount_point(self, path, mount_points):
        return path in mount_points


@pytest.fixture
def fake_api():
    return FakeAPI()


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest.fixture
def provisioner_env(fake_api, recorder):
    """
    A discoverer on node n1 with one Filesystem class 'sc1' under /disks.
    PVs created through the fake API are fed back to the populator the way
    the PV watch would.
    """
    node = make_node("n1")
    name = provisioner_name(node)
    cache = VolumeCache()
    populator = Populator(cache, name)
    fake_api.on_create = populator.on_add
    vol_util = FakeVolumeUtil()
    tracker = CleanupStatusTracker(ProcTable())
    class_store = store_of(make_storage_class("sc1"))

    conf = {k: (v.copy() if isinstance(v, (dict, list)) else v) for k, v in PROVISIONER_DEFAULTS.items()}
    conf['storage_class_map'] = {"sc1": {"host_dir": "/disks", "mount_dir": "/disks"}}
    conf['node_labels_for_pv'] = [NODE_LABEL_KEY, ZONE_LABEL, "missing/label"]
    conf['labels_for_pv'] = {"team": "storage"}

    def build(**overrides):
        conf.update(overrides)
        return Discoverer(conf, node, cache, fake_api, vol_util, tracker, class_store,
                          recorder, name)

    return SimpleNamespace(node=node, name=name, cache=cache, populator=populator, api=fake_api,
                           vol_util=vol_util, tracker=tracker, class_store=class_store,
                           recorder=recorder, conf=conf, build=build)


@pytest.fixture
def run_cli():
    """Returns a helper function to run a main function from one of the tools."""
    def _run_cli_wrapper(main_func, *args):
        with patch.object(sys, 'argv', [main_func.__module__] + list(args)):
            try:
                main_func()
            except SystemExit as e:
                if e.code != 0:
                    raise
    return _run_cli_wrapper
