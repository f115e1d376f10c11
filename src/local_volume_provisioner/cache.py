# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).

import threading

from .common import local_path


class VolumeCache:
    """
    Thread-safe mirror of the PVs owned by this provisioner, indexed by name
    and by host path. Entries only change through explicit add/update/delete.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pvs = {}
        self._paths = {}

    def _index(self, name, pv):
        path = local_path(pv)
        if path:
            self._paths.setdefault(path, set()).add(name)

    def _unindex(self, name):
        old = self._pvs.get(name)
        if old is None:
            return
        path = local_path(old)
        names = self._paths.get(path)
        if names is not None:
            names.discard(name)
            if not names:
                del self._paths[path]

    def get_pv(self, name):
        with self._lock:
            return self._pvs.get(name)

    def add_pv(self, pv):
        name = pv.metadata.name
        with self._lock:
            self._unindex(name)
            self._pvs[name] = pv
            self._index(name, pv)

    # Re-indexes the host path as well.
    update_pv = add_pv

    def delete_pv(self, name):
        with self._lock:
            self._unindex(name)
            self._pvs.pop(name, None)

    def find_by_path(self, host_path):
        """Returns the sorted names of cached PVs using host_path."""
        with self._lock:
            return sorted(self._paths.get(host_path, ()))

    def list_pvs(self):
        with self._lock:
            return list(self._pvs.values())

    def __len__(self):
        with self._lock:
            return len(self._pvs)
