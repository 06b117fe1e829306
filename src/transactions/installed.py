"""
Installed-State Tracker - What is installed, and where.

Queries the user's ``nix profile`` and the current NixOS system closure and
keeps the result as one immutable InstalledState snapshot. A refresh
rebuilds the snapshot from scratch and swaps it in; it is never patched.
"""

from __future__ import annotations

import json
import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from catalog.package_set import PackageSet, normalize_attr_path, split_name
from common.concurrency import SnapshotRef
from common.decorators import timed
from common.exceptions import BackendFailureError

from .models import FailureCode, Scope

logger = logging.getLogger(__name__)

# /nix/store/<32 char hash>-<name>
STORE_HASH_LENGTH = 32


@dataclass(frozen=True)
class InstalledPackage:
    """One installed package."""
    entry_id: str
    scope: Scope
    installed_version: str = ""


@dataclass(frozen=True)
class InstalledState:
    """Immutable view of installed packages per scope."""
    user: Mapping[str, InstalledPackage] = field(default_factory=dict)
    system: Mapping[str, InstalledPackage] = field(default_factory=dict)
    taken_at: Optional[datetime] = None

    def _scope_map(self, scope: Scope) -> Mapping[str, InstalledPackage]:
        return self.user if scope == Scope.USER else self.system

    def get(self, entry_id: str, scope: Optional[Scope] = None) -> Optional[InstalledPackage]:
        """Installed package for an entry; the user profile wins when both have it."""
        if scope is not None:
            return self._scope_map(scope).get(entry_id)
        return self.user.get(entry_id) or self.system.get(entry_id)

    def is_installed(self, entry_id: str, scope: Optional[Scope] = None) -> bool:
        return self.get(entry_id, scope) is not None

    def packages(self, scope: Optional[Scope] = None) -> List[InstalledPackage]:
        """Installed packages sorted by entry id, user scope first."""
        scopes = [scope] if scope is not None else [Scope.USER, Scope.SYSTEM]
        result = []
        for s in scopes:
            m = self._scope_map(s)
            result.extend(m[k] for k in sorted(m))
        return result

    def __len__(self) -> int:
        return len(self.user) + len(self.system)


def store_path_name(store_path: str) -> Tuple[str, str]:
    """Split ``/nix/store/<hash>-firefox-120.0`` into ``("firefox", "120.0")``."""
    name = Path(store_path).name
    if len(name) > STORE_HASH_LENGTH and name[STORE_HASH_LENGTH] == "-":
        name = name[STORE_HASH_LENGTH + 1:]
    return split_name(name)


def parse_profile_json(text: str) -> Dict[str, str]:
    """
    Parse ``nix profile list --json``.

    Handles both manifest layouts: ``elements`` as a list (version 2) and
    as a name-keyed object (version 3).

    Returns:
        Attribute path -> installed version.
    """
    data = json.loads(text or "{}")
    elements = data.get("elements", []) if isinstance(data, dict) else []
    if isinstance(elements, dict):
        elements = list(elements.values())

    installed: Dict[str, str] = {}
    for element in elements:
        if not isinstance(element, dict) or not element.get("active", True):
            continue
        attr = element.get("attrPath")
        if not attr:
            continue
        paths = element.get("storePaths") or []
        version = store_path_name(paths[0])[1] if paths else ""
        installed[normalize_attr_path(attr)] = version
    return installed


class PackageStateSource(ABC):
    """Something that can list the packages installed in one scope."""

    scope: Scope

    @abstractmethod
    def list_installed(self) -> Dict[str, str]:
        """
        List installed packages.

        Returns:
            Attribute path -> installed version.

        Raises:
            BackendFailureError: If the state cannot be queried.
        """
        pass


def _run_query(command: List[str]) -> str:
    try:
        result = subprocess.run(command, capture_output=True, text=True, errors="replace")
    except (FileNotFoundError, OSError) as e:
        raise BackendFailureError(
            FailureCode.BACKEND_UNAVAILABLE.value,
            f"Cannot run {command[0]}: {e}",
            cause=e,
        ) from e

    if result.returncode != 0:
        raise BackendFailureError(
            FailureCode.STATE_REFRESH_FAILED.value,
            f"{' '.join(command)} exited with {result.returncode}",
            raw_output=result.stderr or "",
        )
    return result.stdout


class UserProfileSource(PackageStateSource):
    """Packages in the invoking user's ``nix profile``."""

    scope = Scope.USER

    def __init__(self, nix_command: str = "nix"):
        self.command = [nix_command, "profile", "list", "--json"]

    def list_installed(self) -> Dict[str, str]:
        output = _run_query(self.command)
        try:
            return parse_profile_json(output)
        except (ValueError, AttributeError) as e:
            raise BackendFailureError(
                FailureCode.STATE_REFRESH_FAILED.value,
                "Cannot parse nix profile listing",
                raw_output=output,
                cause=e,
            ) from e


class SystemPackagesSource(PackageStateSource):
    """
    Packages in the current NixOS system closure.

    Store paths only carry a derivation name, so package names are mapped
    back to attribute paths through the package set. Without a package set
    the package name itself is used.
    """

    scope = Scope.SYSTEM

    def __init__(
        self,
        system_path: Path = Path("/run/current-system/sw"),
        package_set: Optional[Callable[[], Optional[PackageSet]]] = None,
    ):
        self.system_path = Path(system_path)
        self._package_set = package_set

    def _attr_for(self, pname: str, packages: Optional[PackageSet]) -> Optional[str]:
        if packages is None:
            return pname
        attrs = packages.by_pname(pname)
        if not attrs:
            return None
        for attr in attrs:
            if attr.rsplit(".", 1)[-1] == pname:
                return attr
        return attrs[0]

    def list_installed(self) -> Dict[str, str]:
        output = _run_query(["nix-store", "--query", "--references", str(self.system_path)])
        packages = self._package_set() if self._package_set else None

        installed: Dict[str, str] = {}
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            pname, version = store_path_name(line)
            attr = self._attr_for(pname, packages)
            if attr and attr not in installed:
                installed[attr] = version
        return installed


class InstalledStateTracker:
    """
    Holds the latest InstalledState snapshot.

    All lookups are pure reads of the latest snapshot; only ``refresh()``
    talks to the system.
    """

    def __init__(self, sources: Iterable[PackageStateSource]):
        self.sources = list(sources)
        self._ref: SnapshotRef[InstalledState] = SnapshotRef(InstalledState())
        self._refresh_lock = threading.Lock()

    @timed
    def refresh(self) -> InstalledState:
        """
        Re-query every source and swap in a new snapshot.

        Raises:
            BackendFailureError: If any source fails; the previous snapshot
                is kept.
        """
        with self._refresh_lock:
            per_scope: Dict[Scope, Dict[str, InstalledPackage]] = {
                Scope.USER: {},
                Scope.SYSTEM: {},
            }
            for source in self.sources:
                for attr, version in source.list_installed().items():
                    per_scope[source.scope][attr] = InstalledPackage(attr, source.scope, version)

            state = InstalledState(
                user=per_scope[Scope.USER],
                system=per_scope[Scope.SYSTEM],
                taken_at=datetime.now(),
            )
            self._ref.swap(state)

        logger.info(
            f"Installed state refreshed: {len(state.user)} user, "
            f"{len(state.system)} system package(s)"
        )
        return state

    def snapshot(self) -> InstalledState:
        """Latest snapshot (empty until the first refresh)."""
        return self._ref.get()

    def get(self, entry_id: str, scope: Optional[Scope] = None) -> Optional[InstalledPackage]:
        return self.snapshot().get(entry_id, scope)

    def is_installed(self, entry_id: str, scope: Optional[Scope] = None) -> bool:
        return self.snapshot().is_installed(entry_id, scope)

    def scope(self, entry_id: str) -> Optional[Scope]:
        package = self.snapshot().get(entry_id)
        return package.scope if package else None

    def version(self, entry_id: str) -> Optional[str]:
        package = self.snapshot().get(entry_id)
        return package.installed_version if package else None
