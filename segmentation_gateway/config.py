"""
config.py - Configuration loader for the segmentation gateway.

Loads settings from config.yaml with built-in defaults so that the
service address, retry tuning and the anonymisation protocol are not
hard-coded inside a module.
"""

import copy
import os
from typing import Any

import yaml

# Resolve the config file relative to the repo root, not the CWD.
_REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
_CONFIG_PATH = os.path.join(_REPO_ROOT, "config.yaml")

LICENSE_KEY_ENV = "SEGMENTATION_LICENSE_KEY"

_DEFAULTS: dict[str, Any] = {
    "service": {
        "base_url": "http://localhost:5000",
        "license_key": "",
        "timeout_s": 600.0,
    },
    "retry": {
        "max_attempts": 3,
        "base_delay": 1.0,
        "max_delay": 30.0,
    },
    "anonymisation": {
        # Must change whenever "protocol" changes.
        "protocol_id": "f336816b-4de8-4633-9056-fbe0fe007a03",
        "protocol": {
            "keep": [
                "Modality",
                "SOPClassUID",
                "ImageType",
                "Rows",
                "Columns",
                "PixelSpacing",
                "SliceThickness",
                "ImagePositionPatient",
                "ImageOrientationPatient",
                "PatientPosition",
                "BodyPartExamined",
                "RescaleSlope",
                "RescaleIntercept",
                "Manufacturer",
                "ManufacturerModelName",
            ],
            "hash": [
                "StudyInstanceUID",
                "SeriesInstanceUID",
                "SOPInstanceUID",
                "FrameOfReferenceUID",
                "SeriesDescription",
            ],
            "random": [
                "SeriesDate",
                "SeriesTime",
                "AcquisitionDate",
                "AcquisitionTime",
                "ContentDate",
                "ContentTime",
            ],
        },
        "top_level_replacements": [
            "PatientID",
            "PatientName",
            "PatientBirthDate",
            "PatientSex",
            "StudyDate",
            "StudyTime",
            "ReferringPhysicianName",
            "StudyID",
            "AccessionNumber",
            "StudyDescription",
        ],
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base*, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            # A protocol given in config.yaml replaces the default one
            # outright; merging method lists would silently widen it.
            if key == "protocol":
                result[key] = value
            else:
                result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: str = _CONFIG_PATH) -> dict[str, Any]:
    """
    Load the YAML configuration file and merge it with built-in defaults.

    The license key can also be supplied through the
    ``SEGMENTATION_LICENSE_KEY`` environment variable, which wins over
    the file.

    Parameters
    ----------
    config_path : str
        Path to config.yaml. Defaults to the repo-root config.yaml.

    Returns
    -------
    dict
        Merged configuration dictionary.
    """
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            user_config = yaml.safe_load(f) or {}
    else:
        user_config = {}

    config = _deep_merge(copy.deepcopy(_DEFAULTS), user_config)

    license_key = os.environ.get(LICENSE_KEY_ENV)
    if license_key:
        config["service"]["license_key"] = license_key

    return config


# Module-level singleton so callers can just do
# `from segmentation_gateway.config import CONFIG`
CONFIG = load_config()
