"""
Metadata Store - AppStream component descriptions.

Parses the AppStream collection files shipped with the package set
(``*.xml`` / ``*.xml.gz``) into immutable MetadataRecord values keyed by
component id. Parsed files are cached by size and mtime so a catalog
refresh only re-reads collections that changed on disk.
"""

from __future__ import annotations

import gzip
import logging
import xml.etree.ElementTree as ET
import zlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from common.decorators import handle_errors
from common.exceptions import CatalogUnavailableError

logger = logging.getLogger(__name__)

XML_LANG = "{http://www.w3.org/XML/1998/namespace}lang"

APPLICATION_TYPES = ("desktop-application", "desktop", "console-application")


class Category(Enum):
    """Browsable application categories."""
    AUDIO = "audio"
    DEVELOPMENT = "development"
    EDUCATION = "education"
    GAMES = "games"
    GRAPHICS = "graphics"
    OFFICE = "office"
    SCIENCE = "science"
    SYSTEM = "system"
    UTILITIES = "utilities"
    VIDEO = "video"
    WEB = "web"


# freedesktop.org menu categories -> browsable category
FREEDESKTOP_CATEGORIES: Dict[str, Category] = {
    "audio": Category.AUDIO,
    "music": Category.AUDIO,
    "development": Category.DEVELOPMENT,
    "ide": Category.DEVELOPMENT,
    "education": Category.EDUCATION,
    "game": Category.GAMES,
    "graphics": Category.GRAPHICS,
    "photography": Category.GRAPHICS,
    "office": Category.OFFICE,
    "science": Category.SCIENCE,
    "system": Category.SYSTEM,
    "settings": Category.SYSTEM,
    "utility": Category.UTILITIES,
    "video": Category.VIDEO,
    "network": Category.WEB,
    "webbrowser": Category.WEB,
    "chat": Category.WEB,
}


def map_categories(names: Iterable[str]) -> FrozenSet[Category]:
    """Map raw AppStream category names to browsable categories."""
    result = set()
    for name in names:
        category = FREEDESKTOP_CATEGORIES.get(name.strip().lower())
        if category is not None:
            result.add(category)
    return frozenset(result)


@dataclass(frozen=True)
class MetadataRecord:
    """Human-facing description of an installable application."""
    component_id: str
    name: str
    summary: str = ""
    icon_ref: Optional[str] = None
    screenshots: Tuple[str, ...] = ()
    categories: FrozenSet[Category] = field(default_factory=frozenset)

    # Identifier hints used by the catalog merger
    pkgname: Optional[str] = None
    release_version: Optional[str] = None

    description: str = ""
    homepage: Optional[str] = None


def _localized_text(component: ET.Element, tag: str) -> Optional[str]:
    """Return the untranslated text of ``tag`` (the element without xml:lang)."""
    fallback = None
    for elem in component.findall(tag):
        text = (elem.text or "").strip()
        if not text:
            continue
        lang = elem.get(XML_LANG)
        if lang is None or lang == "C":
            return text
        if fallback is None:
            fallback = text
    return fallback


def _description_text(component: ET.Element) -> str:
    for desc in component.findall("description"):
        if desc.get(XML_LANG) not in (None, "C"):
            continue
        parts = ["".join(p.itertext()).strip() for p in desc.findall("p")]
        text = "\n\n".join(p for p in parts if p)
        return text or (desc.text or "").strip()
    return ""


def _icon_ref(component: ET.Element, icon_root: Path, origin: str) -> Optional[str]:
    """Pick the largest cached icon, else a remote or stock icon."""
    cached: List[Tuple[int, str, str]] = []
    remote = None
    stock = None
    for icon in component.findall("icon"):
        text = (icon.text or "").strip()
        if not text:
            continue
        kind = icon.get("type", "")
        if kind == "cached":
            width = icon.get("width", "64")
            height = icon.get("height", width)
            try:
                size = int(height)
            except ValueError:
                size = 0
            cached.append((size, f"{width}x{height}", text))
        elif kind == "remote" and remote is None:
            remote = text
        elif kind == "stock" and stock is None:
            stock = text

    if cached:
        cached.sort()
        _, dims, name = cached[-1]
        return str(icon_root / origin / dims / name)
    return remote or stock


def _screenshots(component: ET.Element) -> Tuple[str, ...]:
    """Source images, default screenshot first, without duplicates."""
    urls: List[str] = []
    for shot in component.findall("screenshots/screenshot"):
        image = None
        for img in shot.findall("image"):
            if img.get("type", "source") == "source" and img.text:
                image = img.text.strip()
                break
        if not image:
            continue
        is_default = shot.get("type") == "default"
        if image in urls:
            if is_default:
                urls.remove(image)
                urls.insert(0, image)
            continue
        if is_default:
            urls.insert(0, image)
        else:
            urls.append(image)
    return tuple(urls)


def _release_version(component: ET.Element) -> Optional[str]:
    release = component.find("releases/release")
    if release is not None:
        return release.get("version")
    return None


def _homepage(component: ET.Element) -> Optional[str]:
    for url in component.findall("url"):
        if url.get("type") == "homepage" and url.text:
            return url.text.strip()
    return None


def parse_component(
    component: ET.Element,
    icon_root: Path,
    origin: str,
) -> Optional[MetadataRecord]:
    """Build a MetadataRecord from a <component> element, or None if unusable."""
    if component.get("type", "desktop-application") not in APPLICATION_TYPES:
        return None

    comp_id = (component.findtext("id") or "").strip()
    if not comp_id:
        return None

    categories = [
        (c.text or "") for c in component.findall("categories/category")
    ]

    pkgname = (component.findtext("pkgname") or "").strip() or None

    return MetadataRecord(
        component_id=comp_id,
        name=_localized_text(component, "name") or comp_id,
        summary=_localized_text(component, "summary") or "",
        icon_ref=_icon_ref(component, icon_root, origin),
        screenshots=_screenshots(component),
        categories=map_categories(categories),
        pkgname=pkgname,
        release_version=_release_version(component),
        description=_description_text(component),
        homepage=_homepage(component),
    )


@handle_errors(ET.ParseError, OSError, EOFError, zlib.error, default=None,
               log_level=logging.WARNING, message="Skipping unreadable collection")
def parse_collection(path: Path) -> Optional[List[MetadataRecord]]:
    """
    Parse one AppStream collection file.

    Args:
        path: ``.xml`` or ``.xml.gz`` collection

    Returns:
        Records in document order, or None if the file cannot be parsed.
    """
    if path.suffix == ".gz":
        with gzip.open(path, "rb") as f:
            root = ET.parse(f).getroot()
    else:
        root = ET.parse(path).getroot()

    origin = root.get("origin", "nixos")
    # <prefix>/xmls/<origin>.xml.gz keeps icons in <prefix>/icons/<origin>/
    icon_root = path.parent.parent / "icons"

    components = [root] if root.tag == "component" else root.findall("component")

    records = []
    for component in components:
        record = parse_component(component, icon_root, origin)
        if record is not None:
            records.append(record)
    return records


class MetadataStore:
    """
    Loads and caches AppStream metadata from a directory.

    The store is read-only with respect to the directory; every ``load()``
    returns a fresh dict that callers may treat as an immutable snapshot.
    """

    PATTERNS = ("*.xml", "*.xml.gz")

    def __init__(self, metadata_dir: Path):
        """
        Initialize MetadataStore.

        Args:
            metadata_dir: Directory containing AppStream collection files
        """
        self.metadata_dir = Path(metadata_dir)
        self._cache: Dict[Path, Tuple[Tuple[int, int], List[MetadataRecord]]] = {}

    def _collection_files(self) -> List[Path]:
        files = set()
        for pattern in self.PATTERNS:
            files.update(self.metadata_dir.rglob(pattern))
        return sorted(files)

    def load(self) -> Dict[str, MetadataRecord]:
        """
        Read every collection in the directory.

        Returns:
            Mapping of component id to record. When two files describe the
            same component, the file that sorts first wins.

        Raises:
            CatalogUnavailableError: If the directory cannot be read.
        """
        if not self.metadata_dir.is_dir():
            raise CatalogUnavailableError(
                str(self.metadata_dir), "metadata directory not found"
            )

        try:
            files = self._collection_files()
        except OSError as e:
            raise CatalogUnavailableError(
                str(self.metadata_dir), "cannot list metadata directory", cause=e
            ) from e

        records: Dict[str, MetadataRecord] = {}
        seen_files = set()
        for path in files:
            seen_files.add(path)
            for record in self._load_file(path):
                if record.component_id in records:
                    logger.debug(f"Duplicate component {record.component_id} in {path}")
                    continue
                records[record.component_id] = record

        # Forget collections that disappeared
        for stale in set(self._cache) - seen_files:
            del self._cache[stale]

        logger.info(f"Loaded {len(records)} components from {len(files)} collection(s)")
        return records

    def _load_file(self, path: Path) -> List[MetadataRecord]:
        try:
            stat = path.stat()
        except OSError as e:
            logger.warning(f"Cannot stat {path}: {e}")
            return []

        key = (stat.st_size, stat.st_mtime_ns)
        cached = self._cache.get(path)
        if cached and cached[0] == key:
            return cached[1]

        records = parse_collection(path)
        if records is None:
            self._cache.pop(path, None)
            return []

        self._cache[path] = (key, records)
        return records
