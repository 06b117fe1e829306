"""
Software Center Utility Modules

File helpers shared by the configuration layer and the Nix backend.
"""

from .atomic_write import (
    replacing,
    atomic_write_text,
    atomic_write_json,
)

__all__ = [
    "replacing",
    "atomic_write_text",
    "atomic_write_json",
]
