# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).

import logging
import threading
from collections import Counter

from flask import Flask, jsonify


class MetricsTracker:
    """A thread-safe class for aggregating metrics for the API endpoint."""
    def __init__(self, component):
        self.component = component
        self.lock = threading.Lock()
        self.counters = Counter()
        self.gauges = {}

    def inc(self, metric_name, value=1):
        with self.lock:
            self.counters[metric_name] += value

    def set_gauge(self, metric_name, value):
        with self.lock:
            self.gauges[metric_name] = value

    def get_metrics(self):
        """Returns all current metric values. Counters are monotonic and never reset."""
        with self.lock:
            output = {
                "component": self.component,
                "counters": dict(self.counters),
                "gauges": dict(self.gauges)
            }
        return output


def create_app(metrics, readiness=None):
    """Health and metrics endpoints. /ready reflects the last discovery pass."""
    app = Flask(__name__)

    @app.route('/metrics')
    def get_metrics_endpoint():
        return jsonify(metrics.get_metrics())

    @app.route('/healthz')
    def get_health_endpoint():
        return jsonify({"status": "ok", "component": metrics.component})

    @app.route('/ready')
    def get_ready_endpoint():
        if readiness is None or readiness.is_ready():
            return jsonify({"ready": True})
        return jsonify({"ready": False}), 503

    return app


def parse_listen_address(address):
    """'host:port' or ':port' -> (host, port)."""
    host, _, port = address.rpartition(':')
    return host or "0.0.0.0", int(port)


def start_http_server(app, address):
    host, port = parse_listen_address(address)
    logging.info(f"Serving /healthz, /ready and /metrics on {host}:{port}")
    # Daemon thread, not joined on shutdown.
    t = threading.Thread(target=lambda: app.run(host=host, port=port), name="APIServer", daemon=True)
    t.start()
    return t
