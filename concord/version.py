"""
Concord Version Information
Central version management for the Concord queue service.
"""

from typing import Dict, Optional, Union

# Semantic Versioning: MAJOR.MINOR.PATCH
VERSION = "0.4.0"

VERSION_INFO: Dict[str, Union[int, Optional[str]]] = {
    "major": 0,
    "minor": 4,
    "patch": 0,
    "pre_release": None,  # e.g., "alpha", "beta", "rc1"
    "build": None
}

APP_NAME = "Concord Queue"
APP_DESCRIPTION = "Collaborative queues and presence-relative quorum voting"


def get_version() -> str:
    """Get the current version string."""
    return VERSION


def get_full_version() -> str:
    """Get version with pre-release and build info if available.

    Returns:
        str: Full version string with pre-release and build metadata
    """
    version = VERSION
    if VERSION_INFO["pre_release"]:
        version += f"-{VERSION_INFO['pre_release']}"
    if VERSION_INFO["build"]:
        version += f"+{VERSION_INFO['build']}"
    return version


def get_app_info() -> str:
    """Get application name and version in format "AppName vX.Y.Z"."""
    return f"{APP_NAME} v{get_version()}"


def get_version_dict() -> Dict[str, Union[str, int, Optional[str]]]:
    """Get version information as dictionary."""
    return {
        "version": VERSION,
        "full_version": get_full_version(),
        "app_name": APP_NAME,
        "description": APP_DESCRIPTION,
        **VERSION_INFO
    }
