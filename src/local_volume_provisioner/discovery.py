# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""
Local volume discovery.

Each pass walks the mount directory of every configured storage class and
publishes one PV per usable entry. PV names are derived from (file, node,
class), so a volume already known to the cache is never created twice. A
Released PV with the Delete policy whose device is still present is deleted
and recreated in the same pass so the device becomes Available again.
"""

import os
import time
import fnmatch
import logging
import threading

from kubernetes.client.rest import ApiException

from .common import (
    EVENT_TYPE_WARNING, EVENT_VOLUME_FAILED_DELETE, RECLAIM_DELETE, RECLAIM_RETAIN,
    VOLUME_MODE_BLOCK, VOLUME_MODE_FILESYSTEM, create_local_pv_spec,
    generate_owner_reference, generate_pv_name, generate_volume_node_affinity,
    is_released_with_delete, round_down_capacity_pretty,
)
from .config import ConfigurationError, validate_mount_config
from .kubeapi import is_conflict, is_not_found, object_reference


class DiscoveryError(Exception):
    """One or more entries of a storage class could not be published."""

    def __init__(self, class_name, errors):
        self.class_name = class_name
        self.errors = list(errors)
        super().__init__(f"{len(self.errors)} error(s) while discovering volumes for "
                         f"storage class {class_name}: {'; '.join(self.errors)}")


class Readiness:
    """True once the most recent discovery pass completed without error."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ready = False

    def set(self, ready):
        with self._lock:
            self._ready = ready

    def is_ready(self):
        with self._lock:
            return self._ready


class Discoverer:

    def __init__(self, conf, node, cache, api, vol_util, cleanup_tracker, class_store,
                 recorder, provisioner_name, readiness=None, metrics=None):
        self.conf = conf
        self.node = node
        self.node_name = node.metadata.name
        self.cache = cache
        self.api = api
        self.vol_util = vol_util
        self.cleanup_tracker = cleanup_tracker
        self.class_store = class_store
        self.recorder = recorder
        self.provisioner_name = provisioner_name
        self.readiness = readiness if readiness is not None else Readiness()
        self.metrics = metrics

        node_labels = node.metadata.labels or {}
        self.labels = {name: node_labels[name] for name in conf['node_labels_for_pv'] if name in node_labels}
        self.labels.update(conf['labels_for_pv'])

        # Both raise ValueError for an unusable node, which is fatal at startup.
        self.owner_reference = generate_owner_reference(node)
        self.node_affinity = generate_volume_node_affinity(node, conf['node_label_key'])

    def discover_local_volumes(self):
        """Runs one pass over every storage class and updates readiness."""
        ready = True
        try:
            mount_points = self.vol_util.list_mount_points()
        except OSError as e:
            logging.error(f"[Discovery] Could not read the mount table: {e}")
            mount_points = None
            ready = False
        for class_name, mount_config in sorted(self.conf['storage_class_map'].items()):
            try:
                self.discover_volumes_at_path(class_name, mount_config, mount_points)
            except (DiscoveryError, ConfigurationError, OSError, ApiException) as e:
                ready = False
                logging.error(f"[Discovery] Failed to discover local volumes for class {class_name}: {e}")
            except Exception as e:
                ready = False
                logging.error(f"[Discovery] Unexpected error for class {class_name}: {e}", exc_info=True)
        self.readiness.set(ready)
        if self.metrics is not None:
            self.metrics.inc("discovery_passes")
            self.metrics.set_gauge("ready", int(ready))
        return ready

    def _reclaim_policy(self, class_name):
        storage_class = self.class_store.get(class_name)
        if storage_class is None:
            raise ConfigurationError(f"storage class {class_name} not found")
        policy = storage_class.reclaim_policy or RECLAIM_DELETE
        if policy not in (RECLAIM_RETAIN, RECLAIM_DELETE):
            raise ConfigurationError(f"unsupported ReclaimPolicy {policy} from storage class {class_name}, "
                                     f"supported policy are Retain and Delete")
        return policy, list(storage_class.mount_options or [])

    def _reclaim_released(self, pv):
        name = pv.metadata.name
        logging.info(f"[Discovery] PV {name} is Released with Delete policy and its volume is "
                     f"still present, deleting it so it can be recreated")
        try:
            self.api.delete_pv(name)
        except ApiException as e:
            if not is_not_found(e):
                raise
            logging.debug(f"[Discovery] PV {name} already deleted")

    def discover_volumes_at_path(self, class_name, mount_config, mount_points=None):
        """
        Publishes the volumes of one storage class. Raises DiscoveryError.
        mount_points is the mount table snapshot of the current pass; it is
        read here when the class is scanned on its own.
        """
        mc = validate_mount_config(class_name, mount_config)
        reclaim_policy, mount_options = self._reclaim_policy(class_name)
        logging.debug(f"[Discovery] Discovering volumes at host path {mc['host_dir']}, "
                      f"mount path {mc['mount_dir']} for storage class {class_name}")

        files = self.vol_util.read_dir(mc['mount_dir'])
        if mount_points is None:
            mount_points = self.vol_util.list_mount_points()
        desired_mode = mc['volume_mode']

        errors = []
        capacity_totals = {VOLUME_MODE_BLOCK: 0, VOLUME_MODE_FILESYSTEM: 0}
        for file in files:
            if mc['name_pattern'] and not fnmatch.fnmatchcase(file, mc['name_pattern']):
                logging.debug(f"[Discovery] {file} under {mc['mount_dir']} does not match pattern {mc['name_pattern']}")
                continue
            start_time = time.monotonic()
            file_path = os.path.join(mc['mount_dir'], file)
            try:
                vol_mode = self.vol_util.get_volume_mode(file_path)
            except (OSError, ValueError) as e:
                errors.append(str(e))
                continue

            pv_name = generate_pv_name(file, self.node_name, class_name)
            pv = self.cache.get_pv(pv_name)
            reclaimed = False
            if pv is not None:
                if is_released_with_delete(pv):
                    try:
                        self._reclaim_released(pv)
                        reclaimed = True
                    except ApiException as e:
                        errors.append(f"failed to delete released PV {pv_name}: {e.status} {e.reason}")
                        continue
                else:
                    if pv.spec.volume_mode == VOLUME_MODE_BLOCK and vol_mode == VOLUME_MODE_FILESYSTEM:
                        msg = (f"incorrect Volume Mode: PV {pv_name} requires block mode "
                               f"but path {file_path} was in fs mode")
                        errors.append(msg)
                        self.recorder.event(object_reference(pv, "PersistentVolume"),
                                            EVENT_TYPE_WARNING, EVENT_VOLUME_FAILED_DELETE, msg)
                    continue

            host_path = os.path.join(mc['host_dir'], file)
            others = [name for name in self.cache.find_by_path(host_path) if name != pv_name]
            if others:
                logging.error(f"[Discovery] Volume path already in use: PV {pv_name} wants path {host_path} "
                              f"which was already found in {','.join(others)}.")
                continue

            use_job = vol_mode == VOLUME_MODE_BLOCK and self.conf['use_job_for_cleaning']
            if self.cleanup_tracker.in_progress(pv_name, use_job):
                logging.info(f"[Discovery] PV {pv_name} is still being cleaned, not going to recreate it")
                continue
            try:
                self.cleanup_tracker.remove_status(pv_name, use_job)
            except Exception as e:
                logging.error(f"[Discovery] Expected status exists and failed to remove cleanup status for pv {pv_name}: {e}")
                continue

            if vol_mode == VOLUME_MODE_BLOCK:
                try:
                    capacity = self.vol_util.get_block_capacity_byte(file_path)
                except OSError as e:
                    errors.append(f"path {file_path} block stats error: {e}")
                    continue
                if desired_mode == VOLUME_MODE_BLOCK and mount_options:
                    logging.warning(f"[Discovery] Path {file_path} will be used to create block volume, "
                                    f"mount options {mount_options} will not take effect.")
            else:
                if desired_mode == VOLUME_MODE_BLOCK:
                    errors.append(f"path {file_path} of filesystem mode cannot be used to create block volume")
                    continue
                if not self.vol_util.is_mount_point(file_path, mount_points):
                    errors.append(f"path {file_path} is not an actual mountpoint")
                    continue
                try:
                    capacity = self.vol_util.get_fs_capacity_byte(file_path)
                except OSError as e:
                    errors.append(f"path {file_path} fs stats error: {e}")
                    continue
            capacity_totals[vol_mode] += capacity

            try:
                self._create_pv(pv_name, host_path, class_name, reclaim_policy, mount_options,
                                mc, capacity, desired_mode, start_time)
            except ApiException as e:
                if reclaimed and is_conflict(e):
                    logging.info(f"[Discovery] PV {pv_name} is still being deleted, it will be recreated "
                                 f"on a later pass")
                    continue
                errors.append(f"error creating PV {pv_name} for volume at {host_path}: {e.status} {e.reason}")

        if self.metrics is not None:
            for mode, total in capacity_totals.items():
                self.metrics.set_gauge(f"capacity_bytes_{mode.lower()}_{class_name}", total)
        if errors:
            raise DiscoveryError(class_name, errors)

    def _create_pv(self, pv_name, host_path, class_name, reclaim_policy, mount_options,
                   mc, capacity, vol_mode, start_time):
        logging.info(f"[Discovery] Found new volume at host path {host_path} with capacity {capacity}, "
                     f"creating Local PV {pv_name}, required volumeMode {vol_mode}")
        pv = create_local_pv_spec(
            name=pv_name,
            host_path=host_path,
            capacity=round_down_capacity_pretty(capacity),
            storage_class=class_name,
            reclaim_policy=reclaim_policy,
            provisioner=self.provisioner_name,
            volume_mode=vol_mode,
            labels=self.labels,
            mount_options=mount_options,
            node_affinity=self.node_affinity,
            owner_reference=self.owner_reference if self.conf['set_pv_owner_ref'] else None,
            fs_type=mc['fs_type'] or None,
        )
        self.api.create_pv(pv)
        logging.info(f"[Discovery] Created PV {pv_name} for volume at {host_path}")
        if self.metrics is not None:
            self.metrics.inc(f"pv_discovered_{vol_mode.lower()}")
            self.metrics.set_gauge("last_discovery_duration_seconds", round(time.monotonic() - start_time, 3))
