"""
Package catalog.

Merges AppStream metadata with the nixpkgs package set into a searchable,
immutable catalog snapshot.
"""

from .metadata import Category, MetadataRecord, MetadataStore
from .package_set import PackageRecord, PackageSet, PackageSetIndex
from .merger import CatalogEntry, merge, fingerprint
from .search import SearchIndex, search, ALLOWED_FILTERS
from .catalog import CatalogManager, CatalogSnapshot, build_snapshot

__all__ = [
    "Category", "MetadataRecord", "MetadataStore",
    "PackageRecord", "PackageSet", "PackageSetIndex",
    "CatalogEntry", "merge", "fingerprint",
    "SearchIndex", "search", "ALLOWED_FILTERS",
    "CatalogManager", "CatalogSnapshot", "build_snapshot",
]
