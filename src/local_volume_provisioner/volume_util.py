# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""Host probing used by volume discovery."""

import os
import stat

from .common import VOLUME_MODE_BLOCK, VOLUME_MODE_FILESYSTEM

MOUNTINFO_PATH = "/proc/self/mountinfo"


def _unescape_mount_path(path):
    # mountinfo octal-escapes space, tab, newline and backslash
    for escaped, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        path = path.replace(escaped, char)
    return path


class VolumeUtil:

    def __init__(self, mountinfo_path=MOUNTINFO_PATH):
        self.mountinfo_path = mountinfo_path

    def read_dir(self, path):
        return sorted(os.listdir(path))

    def get_volume_mode(self, path):
        """Returns Block for block devices, Filesystem for directories."""
        mode = os.stat(path).st_mode
        if stat.S_ISBLK(mode):
            return VOLUME_MODE_BLOCK
        if stat.S_ISDIR(mode):
            return VOLUME_MODE_FILESYSTEM
        raise ValueError(f"Block device or file system not found at {path}")

    def get_fs_capacity_byte(self, path):
        st = os.statvfs(path)
        return st.f_blocks * st.f_frsize

    def get_block_capacity_byte(self, path):
        fd = os.open(path, os.O_RDONLY)
        try:
            return os.lseek(fd, 0, os.SEEK_END)
        finally:
            os.close(fd)

    def list_mount_points(self):
        """Snapshot of the mount points currently visible to this process."""
        mount_points = set()
        with open(self.mountinfo_path) as f:
            for line in f:
                fields = line.split()
                if len(fields) > 4:
                    mount_points.add(_unescape_mount_path(fields[4]))
        return mount_points

    def is_mount_point(self, path, mount_points):
        return os.path.normpath(path) in mount_points
