"""
Catalog Merger - Joins AppStream metadata to package-set attributes.

Matching is a pure, order-stable function of its two inputs:

1. A component that declares ``<pkgname>`` naming an existing attribute
   path is matched to it directly.
2. Remaining components are matched on identifier leaf: the normalized
   component id (``org.mozilla.firefox`` -> ``firefox``) against the
   normalized last segment of each attribute path.
3. When several packages share that leaf, the one whose version shares the
   longest prefix with the component's newest release wins; otherwise the
   first in attribute-path order.

Components are visited in sorted id order and a package can be claimed by
at most one component, so rebuilding from identical snapshots always
produces the identical catalog.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from .metadata import Category, MetadataRecord
from .package_set import PackageRecord, PackageSet

if TYPE_CHECKING:
    from transactions.models import Scope

logger = logging.getLogger(__name__)

INFO_PREFIX = "appstream:"


@dataclass(frozen=True)
class CatalogEntry:
    """A searchable catalog item: a package, optionally enriched with metadata."""
    entry_id: str
    name: str
    summary: str = ""
    description: str = ""

    # Package side (None for informational metadata-only entries)
    attr_path: Optional[str] = None
    pname: str = ""
    version: str = ""
    license: str = ""

    # Metadata side
    component_id: Optional[str] = None
    icon_ref: Optional[str] = None
    screenshots: Tuple[str, ...] = ()
    categories: FrozenSet[Category] = field(default_factory=frozenset)
    homepage: Optional[str] = None

    has_metadata: bool = False
    installable: bool = True

    # Filled in on query results only
    is_installed: bool = False
    installed_scope: Optional["Scope"] = None
    installed_version: Optional[str] = None

    @property
    def sort_key(self) -> Tuple[str, str]:
        return (self.name.lower(), self.entry_id)

    def with_installed(
        self,
        scope: Optional["Scope"],
        installed_version: Optional[str] = None,
    ) -> "CatalogEntry":
        """Copy of this entry annotated with installed state."""
        return replace(
            self,
            is_installed=scope is not None,
            installed_scope=scope,
            installed_version=installed_version if scope is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entry_id": self.entry_id,
            "name": self.name,
            "summary": self.summary,
            "description": self.description,
            "attr_path": self.attr_path,
            "pname": self.pname,
            "version": self.version,
            "license": self.license,
            "component_id": self.component_id,
            "icon_ref": self.icon_ref,
            "screenshots": list(self.screenshots),
            "categories": sorted(c.value for c in self.categories),
            "homepage": self.homepage,
            "has_metadata": self.has_metadata,
            "installable": self.installable,
            "is_installed": self.is_installed,
            "installed_scope": self.installed_scope.value if self.installed_scope else None,
            "installed_version": self.installed_version,
        }


def version_closeness(a: Optional[str], b: Optional[str]) -> int:
    """Length of the common prefix of two version strings."""
    if not a or not b:
        return 0
    n = 0
    for x, y in zip(a, b):
        if x != y:
            break
        n += 1
    return n


def _pick_candidate(
    record: MetadataRecord,
    candidates: List[str],
    packages: PackageSet,
) -> Optional[str]:
    if not candidates:
        return None
    if len(candidates) == 1 or not record.release_version:
        return candidates[0]

    best = candidates[0]
    best_score = -1
    for attr in candidates:
        score = version_closeness(record.release_version, packages.get(attr).version)
        # Strictly greater keeps the earliest candidate on ties
        if score > best_score:
            best, best_score = attr, score
    return best


def match_metadata(
    metadata: Mapping[str, MetadataRecord],
    packages: PackageSet,
) -> Dict[str, MetadataRecord]:
    """
    Decide which component describes which package.

    Args:
        metadata: Component id -> record
        packages: Package set snapshot

    Returns:
        Attribute path -> matched record.
    """
    matches: Dict[str, MetadataRecord] = {}
    claimed: Set[str] = set()
    pending: List[MetadataRecord] = []

    # Pass 1: declared package names
    for comp_id in sorted(metadata):
        record = metadata[comp_id]
        if record.pkgname and record.pkgname in packages and record.pkgname not in claimed:
            matches[record.pkgname] = record
            claimed.add(record.pkgname)
        else:
            pending.append(record)

    # Pass 2: identifier leaf
    for record in pending:
        candidates = [a for a in packages.by_leaf(record.component_id) if a not in claimed]
        if not candidates and record.pkgname:
            candidates = [a for a in packages.by_leaf(record.pkgname) if a not in claimed]
        attr = _pick_candidate(record, candidates, packages)
        if attr is None:
            continue
        matches[attr] = record
        claimed.add(attr)

    logger.debug(f"Matched {len(matches)} of {len(metadata)} components")
    return matches


def _package_entry(package: PackageRecord, record: Optional[MetadataRecord]) -> CatalogEntry:
    if record is None:
        return CatalogEntry(
            entry_id=package.attr_path,
            name=package.pname or package.attr_path,
            summary=package.description,
            description=package.description,
            attr_path=package.attr_path,
            pname=package.pname,
            version=package.version,
            license=package.license,
        )

    return CatalogEntry(
        entry_id=package.attr_path,
        name=record.name,
        summary=record.summary or package.description,
        description=record.description or package.description,
        attr_path=package.attr_path,
        pname=package.pname,
        version=package.version,
        license=package.license,
        component_id=record.component_id,
        icon_ref=record.icon_ref,
        screenshots=record.screenshots,
        categories=record.categories,
        homepage=record.homepage,
        has_metadata=True,
    )


def _informational_entry(record: MetadataRecord) -> CatalogEntry:
    return CatalogEntry(
        entry_id=f"{INFO_PREFIX}{record.component_id}",
        name=record.name,
        summary=record.summary,
        description=record.description,
        version=record.release_version or "",
        component_id=record.component_id,
        icon_ref=record.icon_ref,
        screenshots=record.screenshots,
        categories=record.categories,
        homepage=record.homepage,
        has_metadata=True,
        installable=False,
    )


def merge(
    metadata: Mapping[str, MetadataRecord],
    packages: PackageSet,
    keep_unmatched_metadata: bool = False,
) -> Tuple[CatalogEntry, ...]:
    """
    Produce the catalog entry sequence from two snapshots.

    Every package yields exactly one entry. Components that matched no
    package are dropped, or kept as non-installable entries when
    ``keep_unmatched_metadata`` is set.

    Returns:
        Entries in default order (case-insensitive name, then entry id).
    """
    matches = match_metadata(metadata, packages)

    entries = [_package_entry(pkg, matches.get(pkg.attr_path)) for pkg in packages]

    if keep_unmatched_metadata:
        matched_ids = {r.component_id for r in matches.values()}
        for comp_id in sorted(metadata):
            if comp_id not in matched_ids:
                entries.append(_informational_entry(metadata[comp_id]))

    entries.sort(key=lambda e: e.sort_key)
    return tuple(entries)


def fingerprint(entries: Tuple[CatalogEntry, ...]) -> str:
    """SHA-256 over the canonical JSON form of an entry sequence."""
    payload = json.dumps(
        [e.to_dict() for e in entries],
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
