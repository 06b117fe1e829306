"""
Tests for the AppStream metadata store.

Covers component parsing (localized names, icons, screenshots,
categories), gzip collections, caching and error handling.
"""

import gzip
import os
from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from catalog.metadata import Category, MetadataStore, map_categories, parse_collection
from common.exceptions import CatalogUnavailableError


class TestCategoryMapping:

    @pytest.mark.unit
    def test_freedesktop_names_map_to_browsable_categories(self):
        assert map_categories(["Network", "WebBrowser"]) == frozenset({Category.WEB})
        assert map_categories(["AudioVideo", "Music"]) == frozenset({Category.AUDIO})

    @pytest.mark.unit
    def test_unknown_names_are_ignored(self):
        assert map_categories(["TextEditor", "GTK"]) == frozenset()


class TestParseCollection:

    @pytest.mark.unit
    def test_parses_application_components(self, metadata_dir):
        records = parse_collection(metadata_dir / "xmls" / "nixos.xml")
        ids = [r.component_id for r in records]
        assert ids == ["org.mozilla.firefox", "org.gnome.gedit", "org.kde.krita.desktop"]

    @pytest.mark.unit
    def test_untranslated_name_is_used(self, metadata_dir):
        firefox = parse_collection(metadata_dir / "xmls" / "nixos.xml")[0]
        assert firefox.name == "Firefox"
        assert firefox.summary == "Fast, private web browser"
        assert firefox.description == "Browse the web.\n\nStay private."

    @pytest.mark.unit
    def test_largest_cached_icon_is_chosen(self, metadata_dir):
        firefox = parse_collection(metadata_dir / "xmls" / "nixos.xml")[0]
        expected = metadata_dir / "icons" / "nixos" / "128x128" / "firefox.png"
        assert firefox.icon_ref == str(expected)

    @pytest.mark.unit
    def test_default_screenshot_comes_first(self, metadata_dir):
        firefox = parse_collection(metadata_dir / "xmls" / "nixos.xml")[0]
        assert firefox.screenshots == (
            "https://example.org/ff-1.png",
            "https://example.org/ff-2.png",
        )

    @pytest.mark.unit
    def test_release_pkgname_and_homepage(self, metadata_dir):
        firefox, gedit, _ = parse_collection(metadata_dir / "xmls" / "nixos.xml")
        assert firefox.release_version == "120.0"
        assert firefox.homepage == "https://www.mozilla.org/firefox/"
        assert firefox.pkgname is None
        assert gedit.pkgname == "gedit"
        assert gedit.categories == frozenset({Category.UTILITIES})

    @pytest.mark.unit
    def test_malformed_file_returns_none(self, tmp_path):
        bad = tmp_path / "broken.xml"
        bad.write_text("<components><component>", encoding="utf-8")
        assert parse_collection(bad) is None


class TestMetadataStore:

    @pytest.mark.unit
    def test_load_keys_by_component_id(self, metadata_dir):
        records = MetadataStore(metadata_dir).load()
        assert set(records) == {"org.mozilla.firefox", "org.gnome.gedit", "org.kde.krita.desktop"}

    @pytest.mark.unit
    def test_missing_directory_is_unavailable(self, tmp_path):
        with pytest.raises(CatalogUnavailableError):
            MetadataStore(tmp_path / "missing").load()

    @pytest.mark.unit
    def test_gzip_collections_are_read(self, tmp_path, metadata_dir):
        xml = (metadata_dir / "xmls" / "nixos.xml").read_bytes()
        root = tmp_path / "gz"
        (root / "xmls").mkdir(parents=True)
        with gzip.open(root / "xmls" / "nixos.xml.gz", "wb") as f:
            f.write(xml)

        records = MetadataStore(root).load()
        assert "org.mozilla.firefox" in records

    @pytest.mark.unit
    def test_unreadable_file_is_skipped(self, metadata_dir):
        (metadata_dir / "xmls" / "zz-broken.xml").write_text("not xml", encoding="utf-8")
        records = MetadataStore(metadata_dir).load()
        assert len(records) == 3

    @pytest.mark.unit
    def test_corrupt_gzip_body_is_skipped(self, metadata_dir):
        # Valid gzip header followed by a deflate block of reserved type 3
        header = b"\x1f\x8b\x08\x00\x00\x00\x00\x00\x00\xff"
        (metadata_dir / "xmls" / "zz-broken.xml.gz").write_bytes(header + b"\x07" + b"\x00" * 16)

        records = MetadataStore(metadata_dir).load()
        assert "org.mozilla.firefox" in records
        assert len(records) == 3

    @pytest.mark.unit
    def test_first_file_wins_on_duplicate_ids(self, metadata_dir):
        override = (metadata_dir / "xmls" / "nixos.xml").read_text(encoding="utf-8")
        override = override.replace("<name>Firefox</name>", "<name>Other Firefox</name>")
        (metadata_dir / "xmls" / "zz-other.xml").write_text(override, encoding="utf-8")

        records = MetadataStore(metadata_dir).load()
        assert records["org.mozilla.firefox"].name == "Firefox"

    @pytest.mark.unit
    def test_unchanged_files_come_from_cache(self, metadata_dir):
        store = MetadataStore(metadata_dir)
        first = store.load()
        second = store.load()
        assert first["org.mozilla.firefox"] is second["org.mozilla.firefox"]

    @pytest.mark.unit
    def test_changed_files_are_reparsed(self, metadata_dir):
        store = MetadataStore(metadata_dir)
        store.load()

        path = metadata_dir / "xmls" / "nixos.xml"
        path.write_text(
            path.read_text(encoding="utf-8").replace("Text editor", "Simple text editor"),
            encoding="utf-8",
        )
        stat = path.stat()
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))

        assert store.load()["org.gnome.gedit"].summary == "Simple text editor"
