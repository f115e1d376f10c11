# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""
Status of volume cleaning. The cleaner itself lives elsewhere; discovery only
asks whether a volume is being cleaned and clears stale results before it
republishes a volume.
"""

import threading

STATUS_NOT_FOUND = "NotFound"
STATUS_RUNNING = "Running"
STATUS_FAILED = "Failed"
STATUS_SUCCEEDED = "Succeeded"


class CleanupStatusError(Exception):
    pass


class ProcTable:
    """In-process table of cleanup runs keyed by PV name."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries = {}

    def is_running(self, pv_name):
        with self._lock:
            return self._entries.get(pv_name) == STATUS_RUNNING

    def is_empty(self):
        with self._lock:
            return not self._entries

    def mark_running(self, pv_name):
        with self._lock:
            if self._entries.get(pv_name) == STATUS_RUNNING:
                raise CleanupStatusError(f"Failed to mark running of {pv_name} as it is already running")
            self._entries[pv_name] = STATUS_RUNNING

    def _mark_done(self, pv_name, status):
        with self._lock:
            if self._entries.get(pv_name) != STATUS_RUNNING:
                raise CleanupStatusError(f"Failed to mark {status} of {pv_name} as it is not running")
            self._entries[pv_name] = status

    def mark_failed(self, pv_name):
        self._mark_done(pv_name, STATUS_FAILED)

    def mark_succeeded(self, pv_name):
        self._mark_done(pv_name, STATUS_SUCCEEDED)

    def remove_entry(self, pv_name):
        """Removes a finished entry. Returns its last status."""
        with self._lock:
            status = self._entries.get(pv_name, STATUS_NOT_FOUND)
            if status == STATUS_RUNNING:
                raise CleanupStatusError(f"Failed to remove proc table entry of {pv_name} as it is still running")
            self._entries.pop(pv_name, None)
            return status

    def stats(self):
        with self._lock:
            counts = {STATUS_RUNNING: 0, STATUS_FAILED: 0, STATUS_SUCCEEDED: 0}
            for status in self._entries.values():
                counts[status] += 1
            return counts


class CleanupStatusTracker:
    """
    Answers cleanup questions for discovery, from the process table or, when
    cleaning runs as jobs, from the job controller. Without a job controller
    every question goes to the process table.
    """

    def __init__(self, proc_table=None, job_controller=None):
        self.proc_table = proc_table if proc_table is not None else ProcTable()
        self.job_controller = job_controller

    def _jobs(self, use_job):
        return use_job and self.job_controller is not None

    def in_progress(self, pv_name, use_job):
        if self._jobs(use_job):
            return self.job_controller.is_cleaning_job_running(pv_name)
        return self.proc_table.is_running(pv_name)

    def remove_status(self, pv_name, use_job):
        if self._jobs(use_job):
            return self.job_controller.remove_job(pv_name)
        return self.proc_table.remove_entry(pv_name)
