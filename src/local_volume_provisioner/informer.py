# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""
A small list+watch informer on top of the kubernetes client.

Each Informer keeps a local Store mirroring one resource type and dispatches
add/update/delete notifications to registered handlers. When the watch
breaks (expired resource version, connection loss), the informer relists.
Objects that vanished while no watch was running are delivered to delete
handlers wrapped in a Tombstone carrying the last known state.
"""

import time
import random
import logging
import threading
from collections import namedtuple

from kubernetes import watch
from kubernetes.client.rest import ApiException

# Delete notification for an object whose DELETED event was never observed.
Tombstone = namedtuple('Tombstone', ['key', 'obj'])

_ADD, _UPDATE, _DELETE = range(3)


def object_key(obj):
    """'namespace/name' for namespaced objects, 'name' otherwise."""
    meta = obj.metadata
    if meta.namespace:
        return f"{meta.namespace}/{meta.name}"
    return meta.name


def unwrap(obj):
    return obj.obj if isinstance(obj, Tombstone) else obj


class Store:
    """Thread-safe key -> object map, read by listers and written by one informer."""

    def __init__(self):
        self._lock = threading.Lock()
        self._items = {}

    def get(self, key):
        with self._lock:
            return self._items.get(key)

    def list(self):
        with self._lock:
            return list(self._items.values())

    def keys(self):
        with self._lock:
            return list(self._items.keys())

    def add(self, obj):
        with self._lock:
            self._items[object_key(obj)] = obj

    update = add

    def delete(self, key):
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, objs):
        """Swaps the whole content, returning the previous content."""
        new_items = {object_key(obj): obj for obj in objs}
        with self._lock:
            old_items, self._items = self._items, new_items
        return old_items


class Informer:
    """
    Lists then watches one resource, keeping `store` current and calling
    handlers synchronously from the informer thread. Handlers must be fast and
    must not call back into the API.
    """

    def __init__(self, name, list_func, resync_period=0, watch_timeout=300, **list_kwargs):
        self.name = name
        self.list_func = list_func
        self.list_kwargs = list_kwargs
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self.store = Store()
        self._handlers = []
        self._synced = threading.Event()

    def add_event_handler(self, on_add=None, on_update=None, on_delete=None):
        self._handlers.append((on_add, on_update, on_delete))

    def has_synced(self):
        return self._synced.is_set()

    def wait_for_sync(self, timeout=None):
        return self._synced.wait(timeout)

    def _dispatch(self, kind, *args):
        for handlers in self._handlers:
            handler = handlers[kind]
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:
                logging.error(f"[Informer:{self.name}] Event handler failed.", exc_info=True)

    def list_and_replace(self):
        """
        Lists every object, replaces the store and replays the differences as
        notifications. Returns the list resource version to watch from.
        """
        resp = self.list_func(**self.list_kwargs)
        items = resp.items or []
        old_items = self.store.replace(items)
        for obj in items:
            key = object_key(obj)
            old = old_items.pop(key, None)
            if old is None:
                self._dispatch(_ADD, obj)
            else:
                self._dispatch(_UPDATE, old, obj)
        for key, last_known in old_items.items():
            self._dispatch(_DELETE, Tombstone(key, last_known))
        self._synced.set()
        logging.debug(f"[Informer:{self.name}] Listed {len(items)} objects.")
        return resp.metadata.resource_version

    def handle_event(self, event):
        """Applies one watch event. Returns the object's resource version."""
        event_type, obj = event['type'], event['object']
        key = object_key(obj)
        if event_type == 'ADDED':
            old = self.store.get(key)
            self.store.add(obj)
            if old is None:
                self._dispatch(_ADD, obj)
            else:
                self._dispatch(_UPDATE, old, obj)
        elif event_type == 'MODIFIED':
            old = self.store.get(key)
            self.store.update(obj)
            if old is None:
                self._dispatch(_ADD, obj)
            else:
                self._dispatch(_UPDATE, old, obj)
        elif event_type == 'DELETED':
            self.store.delete(key)
            self._dispatch(_DELETE, obj)
        return obj.metadata.resource_version

    def _next_resync(self):
        if not self.resync_period:
            return None
        # Jittered between 1x and 2x the period.
        return time.monotonic() + self.resync_period * (1 + random.random())

    def run(self, shutdown_event):
        """Informer thread body. Returns when shutdown_event is set."""
        logging.info(f"[Informer:{self.name}] Started.")
        delay = 1
        while not shutdown_event.is_set():
            try:
                resource_version = self.list_and_replace()
                delay = 1
                resync_at = self._next_resync()
                while not shutdown_event.is_set():
                    if resync_at is not None and time.monotonic() >= resync_at:
                        logging.debug(f"[Informer:{self.name}] Resync period reached, relisting.")
                        break
                    w = watch.Watch()
                    expired = False
                    for event in w.stream(self.list_func, resource_version=resource_version,
                                          timeout_seconds=self.watch_timeout, **self.list_kwargs):
                        if shutdown_event.is_set():
                            w.stop()
                            break
                        if event['type'] == 'ERROR':
                            logging.info(f"[Informer:{self.name}] Watch error event, relisting: {event.get('raw_object')}")
                            w.stop()
                            expired = True
                            break
                        resource_version = self.handle_event(event) or resource_version
                    if expired:
                        break
            except ApiException as e:
                if e.status == 410:
                    logging.info(f"[Informer:{self.name}] Resource version expired, relisting.")
                    continue
                logging.error(f"[Informer:{self.name}] API error: {e.status} {e.reason}. Retrying in {delay}s...")
                shutdown_event.wait(delay)
                delay = min(delay * 2, 30)
            except Exception as e:
                logging.error(f"[Informer:{self.name}] Watch failed: {e}. Retrying in {delay}s...")
                shutdown_event.wait(delay)
                delay = min(delay * 2, 30)
        logging.info(f"[Informer:{self.name}] Gracefully shut down.")
