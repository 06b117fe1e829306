"""
Search Engine - Ranked queries over one catalog snapshot.

The index is built once per catalog snapshot and never mutated, so a
query always sees a single consistent catalog even if a rebuild swaps in
a new snapshot while it runs.
"""

from __future__ import annotations

import bisect
import difflib
import logging
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from common.decorators import timed
from common.exceptions import InvalidFilterError

from .merger import CatalogEntry
from .metadata import Category
from .package_set import PackageSet
from .tokens import tokenize

logger = logging.getLogger(__name__)

ALLOWED_FILTERS = ("category", "installed", "scope", "has_metadata", "installable")

# Ranking weights
W_COVERAGE = 10.0
W_ATTR_PATH = 4.0
W_INSTALLED = 2.0
W_CATEGORY = 1.0
W_METADATA = 1.0

# Description hits count half as much as name/summary/category hits
DESCRIPTION_WEIGHT = 0.5
FUZZY_CUTOFF = 0.8


def parse_filters(filters: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Validate and normalize search filters.

    Raises:
        InvalidFilterError: On unknown keys or unusable values.
    """
    if not filters:
        return {}

    unknown = sorted(k for k in filters if k not in ALLOWED_FILTERS)
    if unknown:
        raise InvalidFilterError(unknown, list(ALLOWED_FILTERS))

    parsed: Dict[str, Any] = {}
    for key, value in filters.items():
        if value is None:
            continue
        if key == "category":
            if isinstance(value, Category):
                parsed[key] = value
            else:
                try:
                    parsed[key] = Category(str(value).lower())
                except ValueError:
                    raise InvalidFilterError(
                        [f"category={value}"], [c.value for c in Category]
                    ) from None
        elif key == "scope":
            scope = getattr(value, "value", value)
            if scope not in ("user", "system"):
                raise InvalidFilterError([f"scope={value}"], ["user", "system"])
            parsed[key] = scope
        else:
            parsed[key] = bool(value)
    return parsed


class SearchIndex:
    """
    Token index over catalog entries.

    Name, summary and category tokens form the primary index. Package
    descriptions are searched through the package set's reverse index,
    and attribute paths through a plain substring scan.
    """

    def __init__(self, entries: Tuple[CatalogEntry, ...], packages: Optional[PackageSet] = None):
        self._entries = entries
        self._packages = packages
        self._position: Dict[str, int] = {e.entry_id: i for i, e in enumerate(entries)}

        tokens: Dict[str, Set[int]] = defaultdict(set)
        for i, entry in enumerate(entries):
            for token in self._entry_tokens(entry):
                tokens[token].add(i)
        self._tokens = {k: frozenset(v) for k, v in tokens.items()}
        self._vocabulary = sorted(self._tokens)

        self._lower_attrs: List[Tuple[int, str]] = [
            (i, e.attr_path.lower()) for i, e in enumerate(entries) if e.attr_path
        ]

    @staticmethod
    def _entry_tokens(entry: CatalogEntry) -> Set[str]:
        words = set(tokenize(entry.name))
        words.update(tokenize(entry.summary))
        words.update(tokenize(entry.pname))
        for category in entry.categories:
            words.add(category.value)
        return words

    @property
    def entries(self) -> Tuple[CatalogEntry, ...]:
        return self._entries

    def _prefix_tokens(self, prefix: str) -> List[str]:
        start = bisect.bisect_left(self._vocabulary, prefix)
        found = []
        for token in self._vocabulary[start:]:
            if not token.startswith(prefix):
                break
            found.append(token)
        return found

    def _primary_hits(self, token: str) -> Set[int]:
        matched = self._prefix_tokens(token)
        if not matched:
            matched = difflib.get_close_matches(token, self._vocabulary, n=5, cutoff=FUZZY_CUTOFF)
        hits: Set[int] = set()
        for t in matched:
            hits.update(self._tokens[t])
        return hits

    def _description_hits(self, token: str) -> Set[int]:
        if self._packages is None:
            return set()
        return {
            self._position[attr]
            for attr in self._packages.attrs_with_token(token)
            if attr in self._position
        }

    def coverage(self, query_tokens: List[str]) -> Dict[int, float]:
        """Fraction of query tokens each entry matches."""
        scores: Dict[int, float] = defaultdict(float)
        if not query_tokens:
            return scores
        share = 1.0 / len(query_tokens)
        for token in query_tokens:
            primary = self._primary_hits(token)
            for i in primary:
                scores[i] += share
            for i in self._description_hits(token) - primary:
                scores[i] += share * DESCRIPTION_WEIGHT
        return scores

    def attr_substring(self, text: str) -> Set[int]:
        """Entries whose attribute path contains ``text`` verbatim."""
        needle = text.strip().lower()
        if not needle:
            return set()
        return {i for i, attr in self._lower_attrs if needle in attr}


def _passes(entry: CatalogEntry, filters: Dict[str, Any]) -> bool:
    category = filters.get("category")
    if category is not None and category not in entry.categories:
        return False
    if "installed" in filters and entry.is_installed != filters["installed"]:
        return False
    if "scope" in filters:
        if entry.installed_scope is None or entry.installed_scope.value != filters["scope"]:
            return False
    if "has_metadata" in filters and entry.has_metadata != filters["has_metadata"]:
        return False
    if "installable" in filters and entry.installable != filters["installable"]:
        return False
    return True


def _annotate(entry: CatalogEntry, installed: Any) -> CatalogEntry:
    if installed is None:
        return entry
    package = installed.get(entry.entry_id)
    if package is None:
        return entry
    return entry.with_installed(package.scope, package.installed_version)


@timed
def search(
    index: SearchIndex,
    query: str = "",
    filters: Optional[Mapping[str, Any]] = None,
    installed: Any = None,
    limit: Optional[int] = None,
) -> Tuple[CatalogEntry, ...]:
    """
    Run a ranked query.

    Args:
        index: Index of the catalog snapshot to query
        query: Free text; empty returns the whole catalog alphabetically
        filters: Subset of ALLOWED_FILTERS
        installed: Installed-state snapshot (anything with ``get(entry_id)``)
        limit: Maximum number of results

    Returns:
        Fully materialized, ranked tuple of annotated entries.

    Raises:
        InvalidFilterError: On unknown filter keys.
    """
    parsed = parse_filters(filters)
    entries = index.entries
    query = (query or "").strip()

    if not query:
        results = [
            e for e in (_annotate(e, installed) for e in entries) if _passes(e, parsed)
        ]
        return tuple(results[:limit] if limit is not None else results)

    query_tokens = tokenize(query)
    coverage = index.coverage(query_tokens)
    attr_hits = index.attr_substring(query)
    query_categories = {t for t in query_tokens if t in Category._value2member_map_}

    scored: List[Tuple[float, str, str, CatalogEntry]] = []
    for i in set(coverage) | attr_hits:
        entry = _annotate(entries[i], installed)
        if not _passes(entry, parsed):
            continue

        category_match = (
            ("category" in parsed)
            or any(c.value in query_categories for c in entry.categories)
        )
        score = (
            W_COVERAGE * coverage.get(i, 0.0)
            + W_ATTR_PATH * (i in attr_hits)
            + W_INSTALLED * entry.is_installed
            + W_CATEGORY * category_match
            + W_METADATA * entry.has_metadata
        )
        scored.append((-score, entry.name.lower(), entry.entry_id, entry))

    scored.sort(key=lambda item: item[:3])
    results = [item[3] for item in scored]
    logger.debug(f"Query {query!r} matched {len(results)} entries")
    return tuple(results[:limit] if limit is not None else results)


def by_category(
    index: SearchIndex,
    installed: Any = None,
) -> Dict[Category, Tuple[CatalogEntry, ...]]:
    """Group installable entries by category, alphabetically within each."""
    groups: Dict[Category, List[CatalogEntry]] = defaultdict(list)
    for entry in index.entries:
        if not entry.installable:
            continue
        for category in entry.categories:
            groups[category].append(_annotate(entry, installed))
    return {c: tuple(groups[c]) for c in Category if c in groups}
