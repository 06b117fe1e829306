"""
Software Center Service - The API the user interface talks to.

Wires the catalog, the installed-state tracker, the transaction engine
and the generation manager together. Reads go straight to the current
snapshots; anything that changes the system goes through the engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from catalog.catalog import CatalogManager, CatalogSnapshot
from catalog.merger import CatalogEntry
from catalog.metadata import Category, MetadataStore
from catalog.package_set import PackageSetIndex
from common.exceptions import BackendFailureError
from generations.generations import Generation, GenerationManager, NixGenerationSource
from transactions.backend import NixBackend
from transactions.engine import TransactionEngine
from transactions.history import HistoryStore
from transactions.installed import (
    InstalledPackage,
    InstalledState,
    InstalledStateTracker,
    SystemPackagesSource,
    UserProfileSource,
)
from transactions.models import Scope, Transaction, TransactionKind, TransactionUpdate

from .config import CenterConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailableUpdate:
    """An installed package whose catalog version differs."""
    entry: CatalogEntry
    scope: Scope
    installed_version: str
    available_version: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry.entry_id,
            "name": self.entry.name,
            "scope": self.scope.value,
            "installed_version": self.installed_version,
            "available_version": self.available_version,
        }


class SoftwareCenter:
    """
    Facade over the catalog and the transaction engine.

    Example:
        center = SoftwareCenter.from_config(CenterConfig.load())
        center.start()
        for entry in center.search("text editor", limit=10):
            print(entry.name, entry.is_installed)
        tx = center.submit("install", "gedit")
    """

    def __init__(
        self,
        catalog: CatalogManager,
        tracker: InstalledStateTracker,
        engine: TransactionEngine,
        generations: Optional[GenerationManager] = None,
    ):
        self.catalog = catalog
        self.tracker = tracker
        self.engine = engine
        self.generations = generations

    @classmethod
    def from_config(cls, config: CenterConfig, autostart: bool = True) -> "SoftwareCenter":
        """Build a fully wired service backed by the real Nix tools."""
        catalog = CatalogManager(
            MetadataStore(config.metadata_dir),
            PackageSetIndex(config.package_db),
            keep_unmatched_metadata=config.keep_unmatched_metadata,
        )

        def package_set():
            return catalog.current().packages if catalog.is_built else None

        tracker = InstalledStateTracker([
            UserProfileSource(),
            SystemPackagesSource(package_set=package_set),
        ])

        generation_source = NixGenerationSource(
            system_profile=config.system_profile,
            elevate_command=config.elevate_command,
        )
        generations = GenerationManager(generation_source)

        backend = NixBackend(
            nix_system=config.nix_system,
            flake_ref=config.flake_ref,
            elevate_command=config.elevate_command,
            rebuild_command=config.rebuild_command,
            system_packages_file=config.system_packages_file,
            generations=generation_source,
        )

        history_store = None
        if config.history_file is not None:
            history_store = HistoryStore(config.history_file, config.history_limit)

        engine = TransactionEngine(
            backend,
            tracker,
            catalog=catalog,
            generations=generations,
            default_scope=config.default_scope,
            history_limit=config.history_limit,
            slow_threshold_seconds=config.slow_threshold_seconds,
            history_store=history_store,
            autostart=autostart,
        )
        return cls(catalog, tracker, engine, generations)

    # ------------------------------------------------------------------
    # Startup and refresh
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Build the catalog and take the first installed-state snapshot.

        Raises:
            CatalogUnavailableError: If the catalog cannot be built.
        """
        self.catalog.rebuild()
        self.refresh_installed()

    def refresh_catalog(self) -> CatalogSnapshot:
        """Rebuild the catalog from its sources."""
        return self.catalog.rebuild()

    def refresh_installed(self) -> Optional[InstalledState]:
        """Re-query installed packages; on failure the previous view is kept."""
        try:
            return self.tracker.refresh()
        except BackendFailureError as e:
            logger.warning(f"Cannot read installed packages: {e}")
            return None

    def close(self) -> None:
        """Stop the transaction worker."""
        self.engine.shutdown()

    # ------------------------------------------------------------------
    # Catalog reads
    # ------------------------------------------------------------------

    def search(
        self,
        query: str = "",
        filters: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> Tuple[CatalogEntry, ...]:
        """Ranked catalog search with installed badges."""
        return self.catalog.search(query, filters, self.tracker.snapshot(), limit)

    def get_entry(self, entry_id: str) -> Optional[CatalogEntry]:
        """One entry with its installed state, or None."""
        entry = self.catalog.get(entry_id)
        if entry is None:
            return None
        package = self.tracker.get(entry_id)
        if package is None:
            return entry
        return entry.with_installed(package.scope, package.installed_version)

    def categories(self) -> Dict[Category, int]:
        return self.catalog.categories()

    def browse(self, category: Union[Category, str]) -> Tuple[CatalogEntry, ...]:
        return self.catalog.browse(Category(category), self.tracker.snapshot())

    def available_updates(self, scope: Optional[Scope] = None) -> List[AvailableUpdate]:
        """Installed packages whose catalog version differs from the installed one."""
        snapshot = self.catalog.current()
        updates = []
        for package in self.tracker.snapshot().packages(scope):
            entry = snapshot.get(package.entry_id)
            if entry is None or not entry.version or not package.installed_version:
                continue
            if entry.version != package.installed_version:
                updates.append(AvailableUpdate(
                    entry=entry.with_installed(package.scope, package.installed_version),
                    scope=package.scope,
                    installed_version=package.installed_version,
                    available_version=entry.version,
                ))
        return updates

    def unavailable_installed(self, scope: Optional[Scope] = None) -> List[InstalledPackage]:
        """Installed packages the catalog no longer knows about."""
        snapshot = self.catalog.current()
        return [
            package for package in self.tracker.snapshot().packages(scope)
            if snapshot.get(package.entry_id) is None
        ]

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def submit(
        self,
        kind: Union[TransactionKind, str],
        target: str,
        scope: Optional[Union[Scope, str]] = None,
    ) -> Transaction:
        return self.engine.submit(kind, target, scope)

    def install(self, entry_id: str, scope: Optional[Union[Scope, str]] = None) -> Transaction:
        return self.submit(TransactionKind.INSTALL, entry_id, scope)

    def remove(self, entry_id: str, scope: Optional[Union[Scope, str]] = None) -> Transaction:
        return self.submit(TransactionKind.REMOVE, entry_id, scope)

    def upgrade(self, entry_id: str, scope: Optional[Union[Scope, str]] = None) -> Transaction:
        return self.submit(TransactionKind.UPGRADE, entry_id, scope)

    def upgrade_all(self, scope: Union[Scope, str] = Scope.USER) -> Transaction:
        scope = Scope(scope)
        return self.submit(TransactionKind.UPGRADE_ALL, scope.value, scope)

    def subscribe(self, transaction_id: int) -> Iterator[TransactionUpdate]:
        return self.engine.subscribe(transaction_id)

    def cancel(self, transaction_id: int) -> Transaction:
        return self.engine.cancel(transaction_id)

    def get_transaction(self, transaction_id: int) -> Transaction:
        return self.engine.get(transaction_id)

    def history(self) -> List[Transaction]:
        return self.engine.history()

    def wait(self, transaction_id: int, timeout: Optional[float] = None) -> Transaction:
        return self.engine.wait(transaction_id, timeout)

    # ------------------------------------------------------------------
    # Generations
    # ------------------------------------------------------------------

    def list_generations(self) -> Tuple[Generation, ...]:
        """
        System generations, most recent first, current one flagged.

        Empty when no generation manager is configured.

        Raises:
            BackendFailureError: If the system profile cannot be listed,
                e.g. on a host that is not NixOS.
        """
        if self.generations is None:
            return ()
        return self.generations.list_generations()

    def rollback(self, generation_id: int) -> Transaction:
        """Queue a switch to an earlier generation."""
        return self.submit(TransactionKind.ROLLBACK, str(generation_id), Scope.SYSTEM)
