# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).

import logging

from kubernetes import client

from .common import ANN_PROVISIONED_BY
from .informer import unwrap


class Populator:
    """
    Keeps the volume cache in sync with the PVs this provisioner created,
    from PV watch notifications. It never talks to the API.
    """

    def __init__(self, cache, provisioner_name, use_node_name_only=False):
        self.cache = cache
        self.provisioner_name = provisioner_name
        self.use_node_name_only = use_node_name_only

    def register(self, informer):
        informer.add_event_handler(self.on_add, self.on_update, self.on_delete)

    def _pv(self, obj, event):
        pv = unwrap(obj)
        if not isinstance(pv, client.V1PersistentVolume):
            logging.error(f"[Populator] Ignoring {event} notification for unexpected object {type(pv).__name__}")
            return None
        return pv

    def on_add(self, obj):
        pv = self._pv(obj, "add")
        if pv is not None:
            self.handle_pv_update(pv)

    def on_update(self, old, new):
        pv = self._pv(new, "update")
        if pv is not None:
            self.handle_pv_update(pv)

    def on_delete(self, obj):
        pv = self._pv(obj, "delete")
        if pv is not None:
            self.handle_pv_delete(pv)

    def owns(self, pv):
        annotations = pv.metadata.annotations or {}
        provisioned_by = annotations.get(ANN_PROVISIONED_BY)
        if provisioned_by is None:
            return False
        if self.use_node_name_only:
            return (provisioned_by == self.provisioner_name
                    or provisioned_by.startswith(self.provisioner_name + "-"))
        return provisioned_by == self.provisioner_name

    def handle_pv_update(self, pv):
        name = pv.metadata.name
        if self.cache.get_pv(name) is not None:
            self.cache.update_pv(pv)
            logging.debug(f"[Populator] Updated pv {name} in cache")
        elif self.owns(pv):
            self.cache.add_pv(pv)
            logging.info(f"[Populator] Added pv {name} to cache")

    def handle_pv_delete(self, pv):
        name = pv.metadata.name
        if self.cache.get_pv(name) is not None:
            self.cache.delete_pv(name)
            logging.info(f"[Populator] Removed pv {name} from cache")
