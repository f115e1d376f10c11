# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""
local-volume-provisioner

Per-node daemon that discovers local volumes under the configured mount
directories and publishes them as Kubernetes PersistentVolumes pinned to
this node.
"""

import argparse
import os
import sys
import signal
import logging
import threading

from kubernetes.client.rest import ApiException

from .cache import VolumeCache
from .cleanup_tracker import CleanupStatusTracker, ProcTable
from .common import provisioner_name
from .config import DEFAULT_PROVISIONER_CONFIG_PATH, ConfigurationError, load_provisioner_config
from .discovery import Discoverer, Readiness
from .informer import Informer
from .kubeapi import APIUtil, EventRecorder, setup_client
from .metrics import MetricsTracker, create_app, start_http_server
from .populator import Populator
from .volume_util import VolumeUtil

# Global shutdown event for coordinating graceful termination of threads.
SHUTDOWN_EVENT = threading.Event()

def handle_shutdown_signal(signum, frame):
    """Handles SIGTERM/SIGINT, setting the global shutdown event."""
    if not SHUTDOWN_EVENT.is_set():
        logging.info(f"Shutdown signal ({signal.Signals(signum).name}) received. Stopping all threads...")
        SHUTDOWN_EVENT.set()
    else:
        logging.warning("Multiple shutdown signals received. Forcing exit.")
        sys.exit(1)

def load_config(path):
    try:
        return load_provisioner_config(path)
    except (OSError, ConfigurationError) as e:
        print(f"FATAL: Could not load or validate config {path}: {e}", file=sys.stderr)
        sys.exit(1)

def discovery_thread_worker(discoverer, informers, period):
    logging.info("Discovery thread started. Waiting for informer caches to sync...")
    for informer in informers:
        while not informer.wait_for_sync(timeout=1):
            if SHUTDOWN_EVENT.is_set():
                return
    while not SHUTDOWN_EVENT.is_set():
        try:
            discoverer.discover_local_volumes()
        except Exception:
            logging.error("[Discovery] Unhandled exception in discovery loop.", exc_info=True)
        SHUTDOWN_EVENT.wait(period)
    logging.info("Discovery thread gracefully shut down.")

def main():
    signal.signal(signal.SIGTERM, handle_shutdown_signal)
    signal.signal(signal.SIGINT, handle_shutdown_signal)
    parser = argparse.ArgumentParser(description="Local volume provisioner: publishes local disks as PersistentVolumes.")
    parser.add_argument("-c", "--config", default=DEFAULT_PROVISIONER_CONFIG_PATH)
    parser.add_argument("--kubeconfig", help="Path to a kubeconfig file, when not running in a cluster.")
    parser.add_argument("--discovery-period", type=float, help="Seconds between discovery passes (overrides config).")
    parser.add_argument("--listen-address", help="host:port for /healthz, /ready and /metrics.")
    parser.add_argument("--log-level", help="Logging level (overrides config).")
    parser.add_argument("--run-once", action="store_true", help="Perform one discovery pass and exit.")
    args = parser.parse_args()
    conf = load_config(args.config)
    log_level = (args.log_level or conf.get("log_level", "INFO")).upper()
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s:%(name)s:%(threadName)s:%(message)s")

    node_name = os.environ.get("MY_NODE_NAME")
    if not node_name:
        logging.critical("MY_NODE_NAME environment variable not set")
        sys.exit(1)
    namespace = os.environ.get("MY_NAMESPACE", "default")
    logging.info(f"Starting provisioner on node {node_name} in namespace {namespace}")

    metrics = MetricsTracker("local-volume-provisioner")
    api = APIUtil(setup_client(args.kubeconfig), metrics=metrics)
    try:
        node = api.get_node(node_name, retries=3)
    except ApiException as e:
        logging.critical(f"Could not get node information: {e.status} {e.reason}")
        sys.exit(1)

    if conf['use_job_for_cleaning']:
        logging.warning("use_job_for_cleaning is set but no job controller is running; "
                        "block volume cleanup status comes from the process table.")
    name = provisioner_name(node, conf['use_node_name_only'])
    cache = VolumeCache()
    readiness = Readiness()
    recorder = EventRecorder(api.core, name)
    pv_informer = Informer("PersistentVolume", api.list_pvs, resync_period=conf['min_resync_period'])
    class_informer = Informer("StorageClass", api.list_storage_classes, resync_period=conf['min_resync_period'])
    Populator(cache, name, conf['use_node_name_only']).register(pv_informer)

    try:
        discoverer = Discoverer(
            conf, node, cache, api, VolumeUtil(), CleanupStatusTracker(ProcTable()),
            class_informer.store, recorder, name, readiness=readiness, metrics=metrics,
        )
    except ValueError as e:
        logging.critical(f"Error initializing discoverer: {e}")
        sys.exit(1)

    if args.run_once:
        logging.info("Executing in run-once mode.")
        pv_informer.list_and_replace()
        class_informer.list_and_replace()
        ready = discoverer.discover_local_volumes()
        recorder.flush()
        logging.info(f"Run-once execution complete, {len(cache)} PV(s) cached.")
        sys.exit(0 if ready else 1)

    if args.listen_address:
        start_http_server(create_app(metrics, readiness), args.listen_address)

    period = args.discovery_period if args.discovery_period is not None else conf['discovery_period']
    threads = [
        threading.Thread(target=pv_informer.run, args=(SHUTDOWN_EVENT,), name="PVInformer", daemon=True),
        threading.Thread(target=class_informer.run, args=(SHUTDOWN_EVENT,), name="StorageClassInformer", daemon=True),
        threading.Thread(target=recorder.run, args=(SHUTDOWN_EVENT,), name="EventRecorder"),
        threading.Thread(target=discovery_thread_worker, args=(discoverer, [pv_informer, class_informer], period),
                         name="Discovery"),
    ]
    try:
        for t in threads:
            t.start()
        while all(t.is_alive() for t in threads):
            threads[-1].join(timeout=1.0)
    except KeyboardInterrupt:
        logging.info("KeyboardInterrupt in main thread, initiating shutdown.")
        if not SHUTDOWN_EVENT.is_set():
            SHUTDOWN_EVENT.set()
    except Exception as e:
        logging.critical(f"Unhandled exception in main thread: {e}", exc_info=True)
        if not SHUTDOWN_EVENT.is_set():
            SHUTDOWN_EVENT.set()
        sys.exit(1)
    finally:
        if not SHUTDOWN_EVENT.is_set():
            SHUTDOWN_EVENT.set()
        logging.info("Waiting for threads to join...")
        for t in threads:
            if t.is_alive() and not t.daemon:
                t.join()
        logging.info("All threads have finished.")

if __name__ == "__main__":
    main()
