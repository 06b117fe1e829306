"""
Package Set Index - Enumerates the nixpkgs package set.

Reads a package snapshot either from the SQLite package database built
alongside the AppStream data (tables ``pkgs`` and ``meta``) or from a
JSON dump produced by ``nix-env -qa --json --meta`` / ``nix search --json``,
and builds the lookups the rest of the catalog needs.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from common.exceptions import CatalogUnavailableError

from .tokens import normalize_identifier, tokenize

logger = logging.getLogger(__name__)

# "legacyPackages.x86_64-linux.firefox", "nixos.firefox", "nixpkgs.firefox"
_ATTR_PREFIX = re.compile(r"^(legacyPackages\.[^.]+\.|packages\.[^.]+\.|nixos\.|nixpkgs\.)")


@dataclass(frozen=True)
class PackageRecord:
    """One installable attribute of the package set."""
    attr_path: str
    pname: str
    version: str
    description: str = ""
    license: str = ""

    @property
    def leaf(self) -> str:
        """Last component of the attribute path."""
        return self.attr_path.rsplit(".", 1)[-1]


def normalize_attr_path(attr: str) -> str:
    """Strip flake / channel prefixes from an attribute path."""
    return _ATTR_PREFIX.sub("", attr.strip())


def license_text(value: Any) -> str:
    """Flatten the many shapes of ``meta.license`` into a display string."""
    if value is None:
        return ""
    if isinstance(value, str):
        stripped = value.strip()
        if stripped[:1] in ("{", "["):
            try:
                return license_text(json.loads(stripped))
            except ValueError:
                return stripped
        return stripped
    if isinstance(value, dict):
        for key in ("spdxId", "fullName", "shortName"):
            if value.get(key):
                return str(value[key])
        return ""
    if isinstance(value, (list, tuple)):
        parts = [license_text(v) for v in value]
        return ", ".join(p for p in parts if p)
    return str(value)


class PackageSet:
    """
    Immutable snapshot of the package set with its lookup indexes.

    Records are held in attribute-path order, which is the stable scan
    order the catalog merger relies on.
    """

    def __init__(self, records: Iterable[PackageRecord]):
        by_attr: Dict[str, PackageRecord] = {}
        for record in records:
            if record.attr_path in by_attr:
                logger.debug(f"Duplicate attribute {record.attr_path}, keeping first")
                continue
            by_attr[record.attr_path] = record

        self._records: Tuple[PackageRecord, ...] = tuple(
            by_attr[attr] for attr in sorted(by_attr)
        )
        self._by_attr = by_attr

        by_leaf: Dict[str, List[str]] = defaultdict(list)
        by_pname: Dict[str, List[str]] = defaultdict(list)
        tokens: Dict[str, List[str]] = defaultdict(list)
        for record in self._records:
            by_leaf[normalize_identifier(record.leaf)].append(record.attr_path)
            by_pname[record.pname.lower()].append(record.attr_path)
            for token in set(tokenize(record.description)):
                tokens[token].append(record.attr_path)

        self._by_leaf = {k: tuple(v) for k, v in by_leaf.items()}
        self._by_pname = {k: tuple(v) for k, v in by_pname.items()}
        self._tokens = {k: frozenset(v) for k, v in tokens.items()}

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(self._records)

    def __contains__(self, attr_path: str) -> bool:
        return attr_path in self._by_attr

    @property
    def records(self) -> Tuple[PackageRecord, ...]:
        return self._records

    def get(self, attr_path: str) -> Optional[PackageRecord]:
        """Get package by attribute path."""
        return self._by_attr.get(attr_path)

    def by_leaf(self, leaf: str) -> Tuple[str, ...]:
        """Attribute paths whose normalized last component equals ``leaf``."""
        return self._by_leaf.get(normalize_identifier(leaf), ())

    def by_pname(self, pname: str) -> Tuple[str, ...]:
        """Attribute paths providing ``pname``, in scan order."""
        return self._by_pname.get(pname.lower(), ())

    def attrs_with_token(self, token: str) -> frozenset:
        """Reverse index over description tokens."""
        return self._tokens.get(token, frozenset())

    def vocabulary(self) -> Iterable[str]:
        return self._tokens.keys()


class PackageSetIndex:
    """
    Reads package snapshots from the configured source.

    The source type is picked from the file: ``.json`` dumps are parsed
    as JSON, anything else is opened as a SQLite database.
    """

    def __init__(self, source: Path):
        self.source = Path(source)

    def load(self) -> PackageSet:
        """
        Load the package set.

        Raises:
            CatalogUnavailableError: If the source is missing or unreadable.
        """
        if not self.source.exists():
            raise CatalogUnavailableError(str(self.source), "package source not found")

        if self.source.suffix == ".json":
            records = self._load_json()
        else:
            records = self._load_sqlite()

        package_set = PackageSet(records)
        logger.info(f"Loaded {len(package_set)} packages from {self.source}")
        return package_set

    def _load_json(self) -> List[PackageRecord]:
        try:
            with open(self.source, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise CatalogUnavailableError(
                str(self.source), "cannot parse package dump", cause=e
            ) from e

        if isinstance(data, dict) and isinstance(data.get("packages"), dict):
            data = data["packages"]
        if not isinstance(data, dict):
            raise CatalogUnavailableError(str(self.source), "unexpected package dump layout")

        records = []
        for attr, info in data.items():
            if not attr or not isinstance(info, dict):
                continue
            meta = info.get("meta") or {}
            name = info.get("name", "")
            pname = info.get("pname") or split_name(name)[0] or normalize_attr_path(attr)
            version = info.get("version") or split_name(name)[1]
            records.append(PackageRecord(
                attr_path=normalize_attr_path(attr),
                pname=pname,
                version=version or "",
                description=info.get("description") or meta.get("description") or "",
                license=license_text(info.get("license", meta.get("license"))),
            ))
        return records

    def _load_sqlite(self) -> List[PackageRecord]:
        try:
            conn = sqlite3.connect(f"file:{self.source}?mode=ro", uri=True)
        except sqlite3.Error as e:
            raise CatalogUnavailableError(str(self.source), "cannot open database", cause=e) from e

        conn.row_factory = sqlite3.Row
        try:
            tables = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
            if "pkgs" not in tables:
                raise CatalogUnavailableError(str(self.source), "database has no pkgs table")

            if "meta" in tables:
                query = (
                    "SELECT pkgs.attribute, pkgs.pname, pkgs.version, "
                    "meta.description, meta.license "
                    "FROM pkgs LEFT JOIN meta ON (pkgs.attribute = meta.attribute)"
                )
            else:
                query = (
                    "SELECT attribute, pname, version, "
                    "'' AS description, '' AS license FROM pkgs"
                )

            records = []
            for row in conn.execute(query):
                attr = row[0]
                if not attr:
                    continue
                records.append(PackageRecord(
                    attr_path=normalize_attr_path(attr),
                    pname=row[1] or normalize_attr_path(attr),
                    version=row[2] or "",
                    description=row[3] or "",
                    license=license_text(row[4]),
                ))
            return records
        except sqlite3.Error as e:
            raise CatalogUnavailableError(str(self.source), "cannot query database", cause=e) from e
        finally:
            conn.close()


def split_name(name: str) -> Tuple[str, str]:
    """Split a derivation name such as ``firefox-120.0`` into pname and version."""
    match = re.match(r"^(.+?)-(\d.*)$", name or "")
    if match:
        return match.group(1), match.group(2)
    return name or "", ""
