"""
Catalog Manager - Owns the current catalog snapshot.

A rebuild reads both sources, merges them and swaps the finished snapshot
in behind a single reference. Readers never see a partially built catalog.
If a source becomes unreadable after a catalog has been built, the
last-known-good snapshot stays in place and is flagged stale.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from common.concurrency import SnapshotRef
from common.decorators import timed
from common.exceptions import CatalogBusyError, CatalogUnavailableError

from .merger import CatalogEntry, fingerprint, merge
from .metadata import Category, MetadataStore
from .package_set import PackageSet, PackageSetIndex
from .search import SearchIndex, by_category, search

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogSnapshot:
    """One fully built catalog and everything derived from it."""
    entries: Tuple[CatalogEntry, ...]
    packages: PackageSet = field(repr=False, compare=False)
    index: SearchIndex = field(repr=False, compare=False)
    built_at: datetime = field(default_factory=datetime.now)
    fingerprint: str = ""
    stale: bool = False
    by_id: Dict[str, CatalogEntry] = field(default_factory=dict, repr=False, compare=False)

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, entry_id: str) -> Optional[CatalogEntry]:
        return self.by_id.get(entry_id)


def build_snapshot(
    metadata: Mapping[str, Any],
    packages: PackageSet,
    keep_unmatched_metadata: bool = False,
) -> CatalogSnapshot:
    """Merge two source snapshots into a searchable catalog."""
    entries = merge(metadata, packages, keep_unmatched_metadata)
    return CatalogSnapshot(
        entries=entries,
        packages=packages,
        index=SearchIndex(entries, packages),
        fingerprint=fingerprint(entries),
        by_id={e.entry_id: e for e in entries},
    )


class CatalogManager:
    """
    Builds and serves the catalog.

    Example:
        manager = CatalogManager(MetadataStore(dir), PackageSetIndex(db))
        manager.rebuild()
        results = manager.search("firefox")
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        package_index: PackageSetIndex,
        keep_unmatched_metadata: bool = False,
    ):
        self.metadata_store = metadata_store
        self.package_index = package_index
        self.keep_unmatched_metadata = keep_unmatched_metadata
        self._ref: SnapshotRef[CatalogSnapshot] = SnapshotRef()
        self._rebuild_lock = threading.Lock()

    @property
    def rebuilding(self) -> bool:
        """True while a rebuild is in progress."""
        return self._rebuild_lock.locked()

    @property
    def is_built(self) -> bool:
        return self._ref.get() is not None

    @timed
    def rebuild(self) -> CatalogSnapshot:
        """
        Rebuild the catalog from its sources.

        Returns:
            The snapshot now being served (stale if the sources failed).

        Raises:
            CatalogBusyError: If another rebuild is running.
            CatalogUnavailableError: If a source fails and no catalog exists.
        """
        if not self._rebuild_lock.acquire(blocking=False):
            raise CatalogBusyError()

        try:
            try:
                metadata = self.metadata_store.load()
                packages = self.package_index.load()
            except CatalogUnavailableError as e:
                current = self._ref.get()
                if current is None:
                    logger.error(f"Catalog unavailable: {e}")
                    raise
                logger.warning(f"Keeping last-known-good catalog: {e}")
                stale = replace(current, stale=True)
                self._ref.swap(stale)
                return stale

            snapshot = build_snapshot(metadata, packages, self.keep_unmatched_metadata)
            self._ref.swap(snapshot)
            logger.info(
                f"Catalog rebuilt: {len(snapshot)} entries "
                f"({sum(e.has_metadata for e in snapshot.entries)} with metadata)"
            )
            return snapshot
        finally:
            self._rebuild_lock.release()

    def current(self) -> CatalogSnapshot:
        """
        Get the snapshot currently served.

        Raises:
            CatalogUnavailableError: If no catalog has been built yet.
        """
        snapshot = self._ref.get()
        if snapshot is None:
            raise CatalogUnavailableError("catalog", "catalog has not been built")
        return snapshot

    def get(self, entry_id: str) -> Optional[CatalogEntry]:
        """Get an entry by id from the current snapshot."""
        return self.current().get(entry_id)

    def search(
        self,
        query: str = "",
        filters: Optional[Mapping[str, Any]] = None,
        installed: Any = None,
        limit: Optional[int] = None,
    ) -> Tuple[CatalogEntry, ...]:
        """Ranked search against the current snapshot."""
        return search(self.current().index, query, filters, installed, limit)

    def categories(self) -> Dict[Category, int]:
        """Number of installable entries per category."""
        groups = by_category(self.current().index)
        return {category: len(entries) for category, entries in groups.items()}

    def browse(self, category: Category, installed: Any = None) -> Tuple[CatalogEntry, ...]:
        """All installable entries in a category, alphabetically."""
        return by_category(self.current().index, installed).get(category, ())
