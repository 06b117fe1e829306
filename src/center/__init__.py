"""
Nix Software Center backend service.

Exposes the SoftwareCenter facade used by the user interface, its
configuration, and a command-line front end.
"""

from .config import CenterConfig, default_config_path
from .service import SoftwareCenter, AvailableUpdate

__all__ = [
    "CenterConfig",
    "default_config_path",
    "SoftwareCenter",
    "AvailableUpdate",
]
