"""
Software center configuration.

Stored as JSON at ``$XDG_CONFIG_HOME/nix-software-center/config.json``;
the ``NSC_CONFIG`` environment variable points at an alternative file.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from common.exceptions import InvalidConfigError
from transactions.models import Scope
from utils.atomic_write import atomic_write_json

logger = logging.getLogger(__name__)

APP_NAME = "nix-software-center"
CONFIG_ENV = "NSC_CONFIG"


def _xdg_dir(variable: str, fallback: str) -> Path:
    base = os.environ.get(variable)
    return Path(base) if base else Path.home() / fallback


def default_config_path() -> Path:
    """Config file location, honoring ``NSC_CONFIG``."""
    override = os.environ.get(CONFIG_ENV)
    if override:
        return Path(override).expanduser()
    return _xdg_dir("XDG_CONFIG_HOME", ".config") / APP_NAME / "config.json"


def _cache_dir() -> Path:
    return _xdg_dir("XDG_CACHE_HOME", ".cache") / APP_NAME


def _state_dir() -> Path:
    return _xdg_dir("XDG_STATE_HOME", ".local/state") / APP_NAME


@dataclass
class CenterConfig:
    """Backend configuration."""

    # Catalog sources
    metadata_dir: Path = field(default_factory=lambda: _cache_dir() / "appdata")
    package_db: Path = field(default_factory=lambda: _cache_dir() / "nixpkgs.db")
    keep_unmatched_metadata: bool = False

    # Nix
    nix_system: str = "x86_64-linux"
    flake_ref: str = "nixpkgs"
    default_scope: Scope = Scope.USER
    elevate_command: List[str] = field(default_factory=lambda: ["pkexec"])
    system_profile: Path = Path("/nix/var/nix/profiles/system")
    system_packages_file: Path = Path("/etc/nixos/software-center.nix")
    rebuild_command: List[str] = field(default_factory=lambda: ["nixos-rebuild", "switch"])

    # Transactions
    history_limit: int = 100
    slow_threshold_seconds: float = 600.0
    # Finished transactions are kept here between runs; None keeps them in memory only
    history_file: Optional[Path] = field(default_factory=lambda: _state_dir() / "history.json")

    # Logging
    log_dir: Optional[Path] = None
    json_logs: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Check field values.

        Raises:
            InvalidConfigError: On the first invalid field.
        """
        if not isinstance(self.default_scope, Scope):
            try:
                self.default_scope = Scope(self.default_scope)
            except ValueError:
                raise InvalidConfigError(
                    "default_scope", self.default_scope, "must be 'user' or 'system'"
                ) from None
        if not isinstance(self.history_limit, int) or self.history_limit < 1:
            raise InvalidConfigError("history_limit", self.history_limit, "must be a positive integer")
        if not isinstance(self.slow_threshold_seconds, (int, float)) or self.slow_threshold_seconds <= 0:
            raise InvalidConfigError(
                "slow_threshold_seconds", self.slow_threshold_seconds, "must be a positive number"
            )
        if not self.nix_system:
            raise InvalidConfigError("nix_system", self.nix_system, "must not be empty")
        if not self.rebuild_command:
            raise InvalidConfigError("rebuild_command", self.rebuild_command, "must not be empty")
        for name in ("elevate_command", "rebuild_command"):
            value = getattr(self, name)
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise InvalidConfigError(name, value, "must be a list of strings")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "metadata_dir": str(self.metadata_dir),
            "package_db": str(self.package_db),
            "keep_unmatched_metadata": self.keep_unmatched_metadata,
            "nix_system": self.nix_system,
            "flake_ref": self.flake_ref,
            "default_scope": self.default_scope.value,
            "elevate_command": list(self.elevate_command),
            "system_profile": str(self.system_profile),
            "system_packages_file": str(self.system_packages_file),
            "rebuild_command": list(self.rebuild_command),
            "history_limit": self.history_limit,
            "slow_threshold_seconds": self.slow_threshold_seconds,
            "history_file": str(self.history_file) if self.history_file else None,
            "log_dir": str(self.log_dir) if self.log_dir else None,
            "json_logs": self.json_logs,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CenterConfig":
        """
        Create from dictionary. Missing keys keep their defaults.

        Raises:
            InvalidConfigError: On unknown keys or invalid values.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidConfigError(unknown[0], data[unknown[0]], "unknown setting")

        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key in ("metadata_dir", "package_db", "system_profile", "system_packages_file"):
                value = Path(value).expanduser()
            elif key in ("log_dir", "history_file") and value is not None:
                value = Path(value).expanduser()
            kwargs[key] = value
        return cls(**kwargs)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "CenterConfig":
        """
        Load configuration from disk.

        A missing file yields the defaults.

        Raises:
            InvalidConfigError: If the file is unreadable or invalid.
        """
        path = Path(path) if path else default_config_path()
        if not path.exists():
            logger.debug(f"No config at {path}, using defaults")
            return cls()

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise InvalidConfigError("file", str(path), f"cannot read: {e}") from e

        if not isinstance(data, dict):
            raise InvalidConfigError("file", str(path), "top level must be an object")

        config = cls.from_dict(data)
        logger.info(f"Loaded configuration from {path}")
        return config

    def save(self, path: Optional[Path] = None) -> Path:
        """Write configuration atomically and return the path written."""
        path = Path(path) if path else default_config_path()
        atomic_write_json(path, self.to_dict())
        logger.info(f"Saved configuration to {path}")
        return path
