# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""
Shared helpers for the local volume provisioner and the node cleanup
controller: deterministic PV naming, capacity rounding, PV spec construction
and the node-affinity based eligibility checks used by both deleters.
"""

from kubernetes import client

ANN_PROVISIONED_BY = "pv.kubernetes.io/provisioned-by"
NODE_LABEL_KEY = "kubernetes.io/hostname"

EVENT_VOLUME_FAILED_DELETE = "VolumeFailedDelete"
EVENT_REFERENCED_NODE_DELETED = "ReferencedNodeDeleted"
EVENT_TYPE_WARNING = "Warning"

VOLUME_MODE_FILESYSTEM = "Filesystem"
VOLUME_MODE_BLOCK = "Block"
VOLUME_MODES = (VOLUME_MODE_FILESYSTEM, VOLUME_MODE_BLOCK)

PHASE_AVAILABLE = "Available"
PHASE_RELEASED = "Released"

RECLAIM_RETAIN = "Retain"
RECLAIM_DELETE = "Delete"

MiB = 1024 * 1024
GiB = 1024 * MiB

# FNV-1a, 32 bit
_FNV32_OFFSET = 0x811c9dc5
_FNV32_PRIME = 0x01000193


class MalformedAffinityError(ValueError):
    """The PV node affinity does not resolve to exactly one node."""


def fnv1a_32(data):
    h = _FNV32_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xffffffff
    return h


def generate_pv_name(file, node, class_name):
    """
    Returns the deterministic PV name for a discovered entry. Hashing the same
    (file, node, class) always yields the same name, which makes creation
    idempotent across discovery passes.
    """
    h = fnv1a_32(file.encode() + node.encode() + class_name.encode())
    return f"local-pv-{h:x}"


def round_down_capacity_pretty(capacity_bytes):
    """
    Rounds down to the largest of GiB or MiB giving at least 10 units,
    otherwise returns the raw byte count.
    """
    for unit in (GiB, MiB):
        size = capacity_bytes // unit
        if size >= 10:
            return size * unit
    return capacity_bytes


def format_quantity(capacity_bytes):
    """Renders a byte count as a binary-SI Kubernetes quantity string."""
    if capacity_bytes and capacity_bytes % GiB == 0:
        return f"{capacity_bytes // GiB}Gi"
    if capacity_bytes and capacity_bytes % MiB == 0:
        return f"{capacity_bytes // MiB}Mi"
    return str(capacity_bytes)


def provisioner_name(node, use_node_name_only=False):
    if use_node_name_only:
        return f"local-volume-provisioner-{node.metadata.name}"
    return f"local-volume-provisioner-{node.metadata.name}-{node.metadata.uid}"


def local_path(pv):
    """Returns the host path of a local PV, or None for other PV types."""
    spec = pv.spec
    if spec is None or spec.local is None:
        return None
    return spec.local.path


def generate_owner_reference(node):
    if not node.metadata.name:
        raise ValueError("Node does not have name")
    if not node.metadata.uid:
        raise ValueError("Node does not have UID")
    return client.V1OwnerReference(
        api_version="v1", kind="Node",
        name=node.metadata.name, uid=node.metadata.uid,
    )


def generate_volume_node_affinity(node, label_key=NODE_LABEL_KEY):
    labels = node.metadata.labels
    if not labels:
        raise ValueError("Node does not have labels")
    if label_key not in labels:
        raise ValueError(f"Node does not have expected label {label_key}")
    requirement = client.V1NodeSelectorRequirement(
        key=label_key, operator="In", values=[labels[label_key]],
    )
    return client.V1VolumeNodeAffinity(
        required=client.V1NodeSelector(
            node_selector_terms=[client.V1NodeSelectorTerm(match_expressions=[requirement])]
        )
    )


def create_local_pv_spec(name, host_path, capacity, storage_class, reclaim_policy,
                         provisioner, volume_mode, labels=None, mount_options=None,
                         node_affinity=None, owner_reference=None, fs_type=None):
    """Builds the V1PersistentVolume published for a discovered local volume."""
    metadata = client.V1ObjectMeta(
        name=name,
        labels=dict(labels or {}),
        annotations={ANN_PROVISIONED_BY: provisioner},
    )
    if owner_reference is not None:
        metadata.owner_references = [owner_reference]

    spec = client.V1PersistentVolumeSpec(
        capacity={"storage": format_quantity(capacity)},
        local=client.V1LocalVolumeSource(path=host_path, fs_type=fs_type),
        persistent_volume_reclaim_policy=reclaim_policy,
        storage_class_name=storage_class,
        access_modes=["ReadWriteOnce"],
        volume_mode=volume_mode,
        node_affinity=node_affinity,
    )
    if mount_options:
        spec.mount_options = list(mount_options)

    return client.V1PersistentVolume(
        api_version="v1", kind="PersistentVolume", metadata=metadata, spec=spec,
    )


def local_pv_node_names(pv, label_key=NODE_LABEL_KEY):
    """
    Returns the set of node label values a local PV is pinned to. Within a
    selector term the 'In' expressions on label_key are intersected, and the
    terms are unioned. An unexpected affinity shape raises
    MalformedAffinityError.
    """
    affinity = pv.spec.node_affinity if pv.spec else None
    if affinity is None or affinity.required is None:
        return set()
    result = set()
    try:
        for term in affinity.required.node_selector_terms or []:
            nodes = None
            for expr in term.match_expressions or []:
                if expr.key == label_key and expr.operator == "In":
                    values = set(expr.values or [])
                    nodes = values if nodes is None else nodes & values
            if nodes:
                result |= nodes
    except (AttributeError, TypeError) as e:
        raise MalformedAffinityError(f"unexpected node affinity on pv {pv.metadata.name}: {e}")
    return result


def node_attached_to_local_pv(pv, label_key=NODE_LABEL_KEY):
    """
    Returns the single node name a local PV is attached to. Raises
    MalformedAffinityError when zero or several node names are found.
    """
    names = local_pv_node_names(pv, label_key)
    if len(names) != 1:
        raise MalformedAffinityError(
            f"pv {pv.metadata.name} must reference exactly one node, found {sorted(names)}")
    return next(iter(names))


def is_local_pv_with_storage_class(pv, storage_class_names):
    if pv.spec is None or pv.spec.local is None:
        return False
    return pv.spec.storage_class_name in storage_class_names


def node_exists(node_store, node_name, label_key=NODE_LABEL_KEY):
    """True if any known node carries label_key=node_name."""
    for node in node_store.list():
        labels = node.metadata.labels or {}
        if labels.get(label_key) == node_name:
            return True
    return False


def is_released_with_delete(pv):
    return (pv.status is not None and pv.status.phase == PHASE_RELEASED
            and pv.spec.persistent_volume_reclaim_policy == RECLAIM_DELETE)


def is_reclaimable(pv):
    """Stale PVs may only go away when Available, or Released with Delete."""
    if pv.status is not None and pv.status.phase == PHASE_AVAILABLE:
        return True
    return is_released_with_delete(pv)
