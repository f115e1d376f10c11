# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""
Stale volume deleter.

Periodically deletes local PVs whose node no longer exists, as long as they
are Available, or Released with the Delete policy. Bound PVs are left to the
cleanup controller, which removes their claim first.

After each pass it can also delete Pending pods that wait for a claim which
no longer exists, so their workload controller recreates the claim.
"""

import time
import fnmatch
import logging

from kubernetes.client.rest import ApiException

from .common import (
    MalformedAffinityError, is_local_pv_with_storage_class, is_reclaimable,
    node_attached_to_local_pv, node_exists,
)
from .kubeapi import is_not_found


class StaleVolumeDeleter:

    def __init__(self, api, pv_store, node_store, storage_class_names, node_label_key,
                 pvc_store=None, pod_namespaces=(), claim_name_patterns=None, metrics=None):
        self.api = api
        self.pv_store = pv_store
        self.node_store = node_store
        self.storage_class_names = set(storage_class_names)
        self.node_label_key = node_label_key
        self.pvc_store = pvc_store
        self.pod_namespaces = list(pod_namespaces)
        self.claim_name_patterns = claim_name_patterns or {}
        self.metrics = metrics

    def _count(self, name):
        if self.metrics is not None:
            self.metrics.inc(name)

    def references_non_existent_node(self, pv):
        """Raises MalformedAffinityError unless the PV names exactly one node."""
        node_name = node_attached_to_local_pv(pv, self.node_label_key)
        return not node_exists(self.node_store, node_name, self.node_label_key)

    def delete_pvs(self):
        """One pass over the PV store. Returns the names of the deleted PVs."""
        deleted = []
        for pv in self.pv_store.list():
            if not is_local_pv_with_storage_class(pv, self.storage_class_names):
                continue
            name = pv.metadata.name
            try:
                if not self.references_non_existent_node(pv):
                    continue
            except MalformedAffinityError as e:
                logging.error(f"[Deleter] Error determining if pv {name} references deleted node: {e}")
                continue
            if not is_reclaimable(pv):
                continue

            logging.info(f"[Deleter] Attempting to delete PV that has NodeAffinity to deleted Node, pv: {name}")
            try:
                self.delete_pv(name)
            except ApiException as e:
                phase = pv.status.phase if pv.status else None
                self._count(f"pv_delete_failed_{phase}_{pv.spec.persistent_volume_reclaim_policy}")
                logging.error(f"[Deleter] Error deleting PV {name}: {e.status} {e.reason}")
                continue
            deleted.append(name)
        return deleted

    def delete_pv(self, name):
        try:
            self.api.delete_pv(name)
        except ApiException as e:
            if is_not_found(e):
                logging.info(f"[Deleter] PV {name} was already deleted")
                return
            raise
        self._count("pv_deleted")
        logging.info(f"[Deleter] Deleted PV {name}")

    def _matches_managed_claim_pattern(self, claim_name):
        for class_name, patterns in self.claim_name_patterns.items():
            if class_name not in self.storage_class_names:
                continue
            if any(fnmatch.fnmatchcase(claim_name, pattern) for pattern in patterns):
                return True
        return False

    def _missing_claim(self, namespace, claim_name):
        if self.pvc_store is not None and self.pvc_store.get(f"{namespace}/{claim_name}") is not None:
            return False
        # The store may lag behind a recent create.
        return not self.api.claim_exists(namespace, claim_name)

    def delete_pending_pods(self):
        """Deletes Pending pods stuck on a deleted managed claim. Returns their keys."""
        deleted = []
        for namespace in self.pod_namespaces:
            try:
                pods = self.api.list_pending_pods(namespace)
            except ApiException as e:
                logging.error(f"[Deleter] Could not list pending pods in {namespace}: {e.status} {e.reason}")
                continue
            for pod in pods:
                key = f"{namespace}/{pod.metadata.name}"
                try:
                    claim_name = self._stuck_on_claim(namespace, pod)
                    if claim_name is None:
                        continue
                    logging.info(f"[Deleter] Deleting pending pod {key} referencing missing claim {claim_name}")
                    self.api.delete_pod(namespace, pod.metadata.name)
                except ApiException as e:
                    if not is_not_found(e):
                        logging.error(f"[Deleter] Error handling pending pod {key}: {e.status} {e.reason}")
                        continue
                self._count("pending_pod_deleted")
                deleted.append(key)
        return deleted

    def _stuck_on_claim(self, namespace, pod):
        """Returns the first managed claim the pod uses that no longer exists."""
        volumes = pod.spec.volumes if pod.spec else None
        for volume in volumes or []:
            claim = volume.persistent_volume_claim
            if claim is None or not self._matches_managed_claim_pattern(claim.claim_name):
                continue
            if self._missing_claim(namespace, claim.claim_name):
                return claim.claim_name
        return None

    def run_once(self):
        self.delete_pvs()
        if self.pod_namespaces:
            self.delete_pending_pods()

    def run(self, shutdown_event, interval):
        logging.info("[Deleter] Stale volume deleter started.")
        while not shutdown_event.is_set():
            start_time = time.time()
            try:
                self.run_once()
            except Exception:
                logging.error("[Deleter] Unhandled exception in deleter loop.", exc_info=True)
            elapsed = time.time() - start_time
            shutdown_event.wait(max(0, interval - elapsed))
        logging.info("[Deleter] Stale volume deleter stopped.")
