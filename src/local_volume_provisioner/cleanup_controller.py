# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""
Node deletion cleanup controller.

When a node goes away, the claims bound to local PVs on that node can never
be used again. Each such (PV, node) pair is scheduled for a delayed check;
when the delay expires a worker verifies that the node is still gone and the
claim still points at the PV, then deletes the claim so its workload can get
a new volume elsewhere. Failures are retried with backoff.
"""

import logging
import threading
from collections import namedtuple

from kubernetes.client.rest import ApiException

from .common import (
    EVENT_REFERENCED_NODE_DELETED, EVENT_TYPE_WARNING, MalformedAffinityError,
    is_local_pv_with_storage_class, node_attached_to_local_pv, node_exists,
)
from .kubeapi import is_conflict, is_not_found
from .workqueue import DelayingQueue

CleanupEntry = namedtuple('CleanupEntry', ['pv_name', 'node_name', 'attempt'])

OUTCOME_DELETED = "deleted"
OUTCOME_CANCELLED = "cancelled"


class CleanupController:

    def __init__(self, api, pv_store, pvc_store, node_store, recorder, storage_class_names,
                 pvc_deletion_delay, node_label_key, queue=None, metrics=None):
        self.api = api
        self.pv_store = pv_store
        self.pvc_store = pvc_store
        self.node_store = node_store
        self.recorder = recorder
        self.storage_class_names = set(storage_class_names)
        self.pvc_deletion_delay = pvc_deletion_delay
        self.node_label_key = node_label_key
        self.queue = queue if queue is not None else DelayingQueue()
        self.metrics = metrics

    def register(self, node_informer):
        node_informer.add_event_handler(on_delete=self.node_deleted)

    def node_deleted(self, obj):
        self.start_cleanup_timers_if_needed()

    def should_enqueue_entry(self, pv, node_name):
        if not is_local_pv_with_storage_class(pv, self.storage_class_names) or pv.spec.claim_ref is None:
            return False
        return not node_exists(self.node_store, node_name, self.node_label_key)

    def start_cleanup_timers_if_needed(self):
        """Schedules a delayed check for every bound local PV on a missing node."""
        scheduled = 0
        for pv in self.pv_store.list():
            if not is_local_pv_with_storage_class(pv, self.storage_class_names):
                continue
            try:
                node_name = node_attached_to_local_pv(pv, self.node_label_key)
            except MalformedAffinityError as e:
                logging.error(f"[Cleanup] Error getting node attached to pv {pv.metadata.name}: {e}")
                continue
            if not self.should_enqueue_entry(pv, node_name):
                continue

            claim_ref = pv.spec.claim_ref
            logging.info(f"[Cleanup] Starting timer for resource deletion, resource: "
                         f"{claim_ref.namespace}/{claim_ref.name}, timer duration: {self.pvc_deletion_delay}s")
            self.recorder.event(
                claim_ref, EVENT_TYPE_WARNING, EVENT_REFERENCED_NODE_DELETED,
                f"PVC is tied to a deleted Node. PVC will be cleaned up in "
                f"{self.pvc_deletion_delay}s if the Node doesn't come back")
            self.queue.add_after(CleanupEntry(pv.metadata.name, node_name, 0), self.pvc_deletion_delay)
            scheduled += 1
        if self.metrics is not None:
            self.metrics.inc("cleanup_scheduled", scheduled)
        return scheduled

    def sync_handler(self, entry):
        """
        Verifies the entry against the current stores and deletes the claim
        when it is still stale. Returns OUTCOME_DELETED or OUTCOME_CANCELLED;
        raises on errors that should be retried.
        """
        pv = self.pv_store.get(entry.pv_name)
        if pv is None:
            logging.info(f"[Cleanup] PV {entry.pv_name} in queue no longer exists")
            return OUTCOME_CANCELLED

        try:
            node_name = node_attached_to_local_pv(pv, self.node_label_key)
        except MalformedAffinityError as e:
            logging.error(f"[Cleanup] Error getting node attached to pv {entry.pv_name}: {e}")
            return OUTCOME_CANCELLED

        if node_exists(self.node_store, node_name, self.node_label_key):
            logging.info(f"[Cleanup] Node {node_name} of PV {entry.pv_name} came back, nothing to clean up")
            return OUTCOME_CANCELLED

        claim_ref = pv.spec.claim_ref
        if claim_ref is None:
            return OUTCOME_CANCELLED

        pvc = self.pvc_store.get(f"{claim_ref.namespace}/{claim_ref.name}")
        if pvc is None:
            logging.info(f"[Cleanup] PVC {claim_ref.name} in namespace {claim_ref.namespace} no longer exists")
            return OUTCOME_CANCELLED
        if pvc.spec.volume_name != pv.metadata.name:
            logging.info(f"[Cleanup] PVC {pvc.metadata.name} no longer references PV {pv.metadata.name} "
                         f"so will not be cleaned up")
            return OUTCOME_CANCELLED
        if claim_ref.uid and pvc.metadata.uid != claim_ref.uid:
            logging.info(f"[Cleanup] PVC {pvc.metadata.name} was recreated since PV {pv.metadata.name} "
                         f"was bound to it so will not be cleaned up")
            return OUTCOME_CANCELLED

        try:
            self.api.delete_pvc(pvc.metadata.namespace, pvc.metadata.name, uid=pvc.metadata.uid)
        except ApiException as e:
            if is_not_found(e):
                logging.info(f"[Cleanup] PVC {pvc.metadata.name} in namespace {pvc.metadata.namespace} no longer exists")
                return OUTCOME_DELETED
            if is_conflict(e):
                logging.info(f"[Cleanup] PVC {pvc.metadata.name} changed before deletion, not cleaning up")
                return OUTCOME_CANCELLED
            raise
        logging.info(f"[Cleanup] Deleted PVC {pvc.metadata.name} that pointed to Node {node_name}")
        return OUTCOME_DELETED

    def process_entry(self, entry):
        try:
            outcome = self.sync_handler(entry)
        except Exception as e:
            logging.error(f"[Cleanup] Error syncing {entry.pv_name} (attempt {entry.attempt}): {e}, requeuing")
            if self.metrics is not None:
                self.metrics.inc("cleanup_retries")
            self.queue.add_rate_limited(entry)
            return None
        if self.metrics is not None:
            self.metrics.inc(f"cleanup_{outcome}")
        return outcome

    def _worker(self):
        while True:
            entry = self.queue.get()
            if entry is None:
                break
            self.process_entry(entry)

    def run(self, shutdown_event, workers):
        """
        Starts the workers and schedules the initial scan. Blocks until
        shutdown_event is set, then drains the workers.
        """
        logging.info(f"[Cleanup] Starting workers, count: {workers}")
        threads = [threading.Thread(target=self._worker, name=f"CleanupWorker-{i}") for i in range(workers)]
        for t in threads:
            t.start()

        self.start_cleanup_timers_if_needed()

        shutdown_event.wait()
        logging.info("[Cleanup] Shutting down workers")
        self.queue.shut_down()
        for t in threads:
            t.join()
        logging.info("[Cleanup] All workers have finished.")
