# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""
Kubernetes API access shared by both executables: client setup, a thin
wrapper around the calls the reconcilers make, and an asynchronous event
recorder so watch handlers never block on the API server.
"""

import time
import queue
import socket
import logging
from datetime import datetime, timezone

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException


def setup_client(kubeconfig=None):
    """
    Loads the client configuration: an explicit kubeconfig file when given,
    otherwise the in-cluster service account, otherwise the default kubeconfig.
    """
    if kubeconfig:
        logging.info(f"Using kubeconfig {kubeconfig}")
        config.load_kube_config(config_file=kubeconfig)
    else:
        try:
            config.load_incluster_config()
            logging.info("Using in-cluster configuration.")
        except ConfigException:
            logging.info("Not running in a cluster, falling back to the default kubeconfig.")
            config.load_kube_config()
    return client.ApiClient()


def is_not_found(e):
    return isinstance(e, ApiException) and e.status == 404


def is_conflict(e):
    return isinstance(e, ApiException) and e.status == 409


def object_reference(obj, kind):
    meta = obj.metadata
    return client.V1ObjectReference(
        api_version="v1", kind=kind, name=meta.name, namespace=meta.namespace,
        uid=meta.uid, resource_version=meta.resource_version,
    )


class APIUtil:
    """The subset of the Kubernetes API the provisioner and the cleanup controller use."""

    def __init__(self, api_client=None, metrics=None):
        self.core = client.CoreV1Api(api_client)
        self.storage = client.StorageV1Api(api_client)
        self.metrics = metrics

    def _count(self, name):
        if self.metrics is not None:
            self.metrics.inc(name)

    def create_pv(self, pv):
        self._count("api_pv_create")
        return self.core.create_persistent_volume(pv)

    def delete_pv(self, name):
        self._count("api_pv_delete")
        return self.core.delete_persistent_volume(name)

    def get_pvc(self, namespace, name):
        return self.core.read_namespaced_persistent_volume_claim(name, namespace)

    def claim_exists(self, namespace, name):
        try:
            self.get_pvc(namespace, name)
        except ApiException as e:
            if is_not_found(e):
                return False
            raise
        return True

    def delete_pvc(self, namespace, name, uid=None):
        """Deletes a claim, only if it still has the given UID when one is passed."""
        self._count("api_pvc_delete")
        body = client.V1DeleteOptions()
        if uid:
            body.preconditions = client.V1Preconditions(uid=uid)
        return self.core.delete_namespaced_persistent_volume_claim(name, namespace, body=body)

    def list_pending_pods(self, namespace):
        return self.core.list_namespaced_pod(namespace, field_selector="status.phase=Pending").items

    def delete_pod(self, namespace, name):
        self._count("api_pod_delete")
        return self.core.delete_namespaced_pod(name, namespace)

    def get_node(self, name, retries=3, delay=1):
        """Reads a node, retrying transient failures. Raises the last error."""
        for attempt in range(1, retries + 1):
            try:
                return self.core.read_node(name)
            except ApiException as e:
                if attempt == retries:
                    raise
                logging.warning(f"Could not get node {name} (attempt {attempt}/{retries}): {e.status} {e.reason}")
                time.sleep(delay)

    # List functions fed to informers; they also accept watch arguments.
    @property
    def list_pvs(self):
        return self.core.list_persistent_volume

    @property
    def list_pvcs(self):
        return self.core.list_persistent_volume_claim_for_all_namespaces

    @property
    def list_nodes(self):
        return self.core.list_node

    @property
    def list_storage_classes(self):
        return self.storage.list_storage_class


class EventRecorder:
    """
    Queues Kubernetes events and posts them from a dedicated thread. When the
    queue is full, new events are dropped with a warning.
    """

    def __init__(self, core_api, component, max_pending=1000):
        self.core = core_api
        self.component = component
        self.host = socket.gethostname()
        self.pending = queue.Queue(maxsize=max_pending)

    def event(self, ref, event_type, reason, message):
        try:
            self.pending.put_nowait((ref, event_type, reason, message))
        except queue.Full:
            logging.warning(f"[Events] Event queue is full. Dropping {reason} event for {ref.kind} {ref.name}.")

    def _build(self, ref, event_type, reason, message):
        now = datetime.now(timezone.utc)
        namespace = ref.namespace or "default"
        return client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{ref.name}.", namespace=namespace),
            involved_object=ref,
            type=event_type,
            reason=reason,
            message=message,
            source=client.V1EventSource(component=self.component, host=self.host),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )

    def send(self, ref, event_type, reason, message):
        body = self._build(ref, event_type, reason, message)
        try:
            self.core.create_namespaced_event(body.metadata.namespace, body)
        except ApiException as e:
            logging.error(f"[Events] Could not post {reason} event for {ref.kind} {ref.name}: {e.status} {e.reason}")

    def flush(self):
        """Posts every pending event from the calling thread."""
        while True:
            try:
                item = self.pending.get_nowait()
            except queue.Empty:
                return
            try:
                self.send(*item)
            finally:
                self.pending.task_done()

    def run(self, shutdown_event):
        logging.info("[Events] Event recorder started.")
        while not shutdown_event.is_set():
            try:
                item = self.pending.get(timeout=1)
            except queue.Empty:
                continue
            try:
                self.send(*item)
            except Exception:
                logging.error("[Events] Unhandled exception while posting event.", exc_info=True)
            finally:
                self.pending.task_done()
        logging.info("[Events] Event recorder gracefully shut down.")
