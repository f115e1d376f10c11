# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""
YAML configuration for the provisioner daemon and the node cleanup
controller. Both loaders fill in defaults so older config files keep working.
"""

import os
import logging

import yaml

from .common import NODE_LABEL_KEY, VOLUME_MODES, VOLUME_MODE_FILESYSTEM

DEFAULT_PROVISIONER_CONFIG_PATH = "/etc/local-volume-provisioner/provisioner.yaml"
DEFAULT_NODE_CLEANUP_CONFIG_PATH = "/etc/local-volume-provisioner/node_cleanup.yaml"

PROVISIONER_DEFAULTS = {
    'storage_class_map': {},
    'node_labels_for_pv': [],
    'labels_for_pv': {},
    'use_job_for_cleaning': False,
    'use_node_name_only': False,
    'set_pv_owner_ref': False,
    'min_resync_period': 300,
    'discovery_period': 10,
    'node_label_key': NODE_LABEL_KEY,
    'log_level': "INFO",
}

NODE_CLEANUP_DEFAULTS = {
    'storage_class_names': [],
    'pvc_deletion_delay': 60,
    'stale_pv_discovery_interval': 10,
    'worker_threads': 10,
    'node_label_key': NODE_LABEL_KEY,
    'pod_namespaces': [],
    'claim_name_patterns': {},
    'resync_period': 600,
    'log_level': "INFO",
}


class ConfigurationError(Exception):
    """Invalid configuration, either global or for one storage class."""


def _read_yaml(path):
    with open(path) as f:
        conf = yaml.safe_load(f)
    if conf is None:
        return {}
    if not isinstance(conf, dict):
        raise ConfigurationError(f"top level of {path} must be a mapping")
    return conf


def _check_types(conf, defaults, path):
    for key, default in defaults.items():
        value = conf[key]
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ConfigurationError(f"'{key}' in {path} must be a boolean")
        elif isinstance(default, (int, float)):
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigurationError(f"'{key}' in {path} must be a non-negative number")
        elif not isinstance(value, type(default)):
            raise ConfigurationError(f"'{key}' in {path} must be a {type(default).__name__}")


def validate_mount_config(class_name, mount_config):
    """
    Checks one storage_class_map entry and returns it with defaults applied.
    Raises ConfigurationError when the entry cannot be used.
    """
    if not isinstance(mount_config, dict):
        raise ConfigurationError(f"Storage Class {class_name} is misconfigured, expected a mapping")
    mc = dict(mount_config)
    if not mc.get('host_dir') or not mc.get('mount_dir'):
        raise ConfigurationError(
            f"Storage Class {class_name} is misconfigured, missing host_dir or mount_dir parameter")
    mc.setdefault('volume_mode', VOLUME_MODE_FILESYSTEM)
    mc.setdefault('name_pattern', "*")
    mc.setdefault('fs_type', None)
    if mc['volume_mode'] not in VOLUME_MODES:
        raise ConfigurationError(f"unsupported volume mode {mc['volume_mode']}")
    return mc


def load_provisioner_config(path):
    """Loads the provisioner YAML file. Raises ConfigurationError or OSError."""
    try:
        conf = _read_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"could not parse {path}: {e}")

    for key, default in PROVISIONER_DEFAULTS.items():
        if key not in conf or conf[key] is None:
            conf[key] = default.copy() if isinstance(default, (dict, list)) else default
            logging.debug(f"Config key '{key}' not found. Defaulting to {default!r}.")
    _check_types(conf, PROVISIONER_DEFAULTS, path)

    # A broken class mapping only fails that class's scan, so keep it and warn.
    for class_name, mount_config in conf['storage_class_map'].items():
        try:
            conf['storage_class_map'][class_name] = validate_mount_config(class_name, mount_config)
        except ConfigurationError as e:
            logging.warning(f"Config: {e}. Discovery for this class will fail until fixed.")

    if not conf['storage_class_map']:
        logging.warning(f"No storage classes configured in {path}; nothing will be discovered.")
    return conf


def load_node_cleanup_config(path):
    """
    Loads the node cleanup YAML file. A missing file is not an error, since
    every setting can come from the command line.
    """
    conf = {}
    if path and os.path.exists(path):
        try:
            conf = _read_yaml(path)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"could not parse {path}: {e}")

    for key, default in NODE_CLEANUP_DEFAULTS.items():
        if key not in conf or conf[key] is None:
            conf[key] = default.copy() if isinstance(default, (dict, list)) else default
    _check_types(conf, NODE_CLEANUP_DEFAULTS, path)
    if not isinstance(conf['worker_threads'], int):
        raise ConfigurationError(f"'worker_threads' in {path} must be an integer")

    patterns = conf['claim_name_patterns']
    for class_name, globs in list(patterns.items()):
        if isinstance(globs, str):
            patterns[class_name] = [globs]
        elif not isinstance(globs, list):
            raise ConfigurationError(f"claim_name_patterns for {class_name} must be a list of globs")
    return conf


def split_csv(value):
    """Splits a comma separated command line value, dropping empty items."""
    return [item.strip() for item in value.split(',') if item.strip()]
