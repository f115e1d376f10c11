# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""
local-volume-node-cleanup

Cluster-wide controller that cleans up after deleted nodes: claims bound to
local PVs of a deleted node are removed after a grace delay, and stale
unbound local PVs are deleted.
"""

import argparse
import sys
import signal
import logging
import threading

from .cleanup_controller import CleanupController
from .config import DEFAULT_NODE_CLEANUP_CONFIG_PATH, ConfigurationError, load_node_cleanup_config, split_csv
from .deleter import StaleVolumeDeleter
from .informer import Informer
from .kubeapi import APIUtil, EventRecorder, setup_client
from .metrics import MetricsTracker, create_app, start_http_server

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

def load_config(args):
    """Loads the optional config file, then applies command line overrides."""
    try:
        conf = load_node_cleanup_config(args.config)
    except (OSError, ConfigurationError) as e:
        print(f"FATAL: Could not load or validate config {args.config}: {e}", file=sys.stderr)
        sys.exit(1)

    if args.storageclass_names is not None:
        conf['storage_class_names'] = split_csv(args.storageclass_names)
    if args.pod_namespaces is not None:
        conf['pod_namespaces'] = split_csv(args.pod_namespaces)
    for key in ('pvc_deletion_delay', 'stale_pv_discovery_interval', 'worker_threads',
                'node_label_key', 'resync_period', 'log_level'):
        value = getattr(args, key)
        if value is not None:
            conf[key] = value

    if not conf['storage_class_names']:
        print("FATAL: storage_class_names must contain at least one StorageClass "
              "(config file or --storageclass-names)", file=sys.stderr)
        sys.exit(1)
    if conf['worker_threads'] < 1:
        print("FATAL: worker_threads must be at least 1", file=sys.stderr)
        sys.exit(1)
    return conf

def main():
    signal.signal(signal.SIGTERM, handle_shutdown_signal)
    signal.signal(signal.SIGINT, handle_shutdown_signal)
    parser = argparse.ArgumentParser(description="Cleans up local PVs and PVCs that reference deleted nodes.")
    parser.add_argument("-c", "--config", default=DEFAULT_NODE_CLEANUP_CONFIG_PATH)
    parser.add_argument("--kubeconfig", help="Path to a kubeconfig file, when not running in a cluster.")
    parser.add_argument("--storageclass-names", help="Comma separated StorageClasses opted in for cleanup.")
    parser.add_argument("--pvc-deletion-delay", type=float, help="Seconds to wait after node deletion before deleting a PVC.")
    parser.add_argument("--stale-pv-discovery-interval", type=float, help="Seconds between stale PV deletion passes.")
    parser.add_argument("--worker-threads", type=int, help="Number of cleanup worker threads.")
    parser.add_argument("--node-label-key", help="Node label used in PV node affinity.")
    parser.add_argument("--pod-namespaces", help="Comma separated namespaces swept for pods stuck on deleted claims.")
    parser.add_argument("--resync-period", type=float, help="Seconds between informer relists.")
    parser.add_argument("--listen-address", help="host:port for /healthz, /ready and /metrics.")
    parser.add_argument("--log-level", help="Logging level (overrides config).")
    parser.add_argument("--run-once", action="store_true", help="Perform one stale PV deletion pass and exit.")
    args = parser.parse_args()
    conf = load_config(args)
    logging.basicConfig(level=conf['log_level'].upper(), format="%(asctime)s %(levelname)s:%(name)s:%(threadName)s:%(message)s")
    logging.info(f"Cleaning up PVs and PVCs of StorageClasses {conf['storage_class_names']}")

    metrics = MetricsTracker("local-volume-node-cleanup")
    api = APIUtil(setup_client(args.kubeconfig), metrics=metrics)
    pv_informer = Informer("PersistentVolume", api.list_pvs, resync_period=conf['resync_period'])
    pvc_informer = Informer("PersistentVolumeClaim", api.list_pvcs, resync_period=conf['resync_period'])
    node_informer = Informer("Node", api.list_nodes, resync_period=conf['resync_period'])
    informers = [pv_informer, pvc_informer, node_informer]

    deleter = StaleVolumeDeleter(
        api, pv_informer.store, node_informer.store, conf['storage_class_names'], conf['node_label_key'],
        pvc_store=pvc_informer.store, pod_namespaces=conf['pod_namespaces'],
        claim_name_patterns=conf['claim_name_patterns'], metrics=metrics,
    )

    if args.run_once:
        logging.info("Executing in run-once mode.")
        for informer in informers:
            informer.list_and_replace()
        deleter.run_once()
        logging.info("Run-once execution complete.")
        sys.exit(0)

    recorder = EventRecorder(api.core, "cleanup-controller")
    controller = CleanupController(
        api, pv_informer.store, pvc_informer.store, node_informer.store, recorder,
        conf['storage_class_names'], conf['pvc_deletion_delay'], conf['node_label_key'], metrics=metrics,
    )
    controller.register(node_informer)

    if args.listen_address:
        start_http_server(create_app(metrics), args.listen_address)

    threads = [threading.Thread(target=i.run, args=(SHUTDOWN_EVENT,), name=f"{i.name}Informer", daemon=True)
               for i in informers]
    threads.append(threading.Thread(target=recorder.run, args=(SHUTDOWN_EVENT,), name="EventRecorder"))
    try:
        for t in threads:
            t.start()
        logging.info("Waiting for informer caches to sync")
        for informer in informers:
            while not informer.wait_for_sync(timeout=1):
                if SHUTDOWN_EVENT.is_set():
                    return
        workers = [
            threading.Thread(target=controller.run, args=(SHUTDOWN_EVENT, conf['worker_threads']), name="Cleanup"),
            threading.Thread(target=deleter.run, args=(SHUTDOWN_EVENT, conf['stale_pv_discovery_interval']),
                             name="Deleter"),
        ]
        threads.extend(workers)
        for t in workers:
            t.start()
        while all(t.is_alive() for t in threads):
            workers[0].join(timeout=1.0)
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
