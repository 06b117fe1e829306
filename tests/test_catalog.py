"""
Tests for the catalog manager: rebuild, busy lock, last-known-good
fallback and category browsing.
"""

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from catalog.catalog import CatalogManager
from catalog.metadata import Category, MetadataStore
from catalog.package_set import PackageSetIndex
from common.exceptions import CatalogBusyError, CatalogUnavailableError


class TestRebuild:

    @pytest.mark.unit
    def test_rebuild_swaps_snapshot(self, metadata_dir, packages_json):
        manager = CatalogManager(MetadataStore(metadata_dir), PackageSetIndex(packages_json))
        assert not manager.is_built

        snapshot = manager.rebuild()
        assert manager.current() is snapshot
        assert len(snapshot) == 5
        assert not snapshot.stale
        assert snapshot.get("firefox").has_metadata

    @pytest.mark.unit
    def test_current_before_build_is_unavailable(self, metadata_dir, packages_json):
        manager = CatalogManager(MetadataStore(metadata_dir), PackageSetIndex(packages_json))
        with pytest.raises(CatalogUnavailableError):
            manager.current()

    @pytest.mark.unit
    def test_identical_rebuilds_have_same_fingerprint(self, catalog_manager):
        first = catalog_manager.current()
        second = catalog_manager.rebuild()
        assert first is not second
        assert first.fingerprint == second.fingerprint
        assert first.entries == second.entries

    @pytest.mark.unit
    def test_first_build_failure_raises(self, tmp_path, packages_json):
        manager = CatalogManager(MetadataStore(tmp_path / "missing"), PackageSetIndex(packages_json))
        with pytest.raises(CatalogUnavailableError):
            manager.rebuild()
        assert not manager.is_built

    @pytest.mark.unit
    def test_failure_keeps_last_known_good_marked_stale(self, catalog_manager, packages_json):
        good = catalog_manager.current()
        packages_json.unlink()

        snapshot = catalog_manager.rebuild()
        assert snapshot.stale
        assert snapshot.fingerprint == good.fingerprint
        assert catalog_manager.current().stale
        assert catalog_manager.search("firefox")

    @pytest.mark.unit
    def test_concurrent_rebuild_is_busy(self, catalog_manager):
        entered = threading.Event()
        release = threading.Event()
        original_load = catalog_manager.metadata_store.load

        def slow_load():
            entered.set()
            release.wait(5)
            return original_load()

        with patch.object(catalog_manager.metadata_store, "load", side_effect=slow_load):
            worker = threading.Thread(target=catalog_manager.rebuild)
            worker.start()
            assert entered.wait(5)
            assert catalog_manager.rebuilding

            with pytest.raises(CatalogBusyError):
                catalog_manager.rebuild()

            # Reads still work during a rebuild
            assert catalog_manager.search("firefox")

            release.set()
            worker.join(5)

        assert not catalog_manager.rebuilding


class TestBrowse:

    @pytest.mark.unit
    def test_categories_counts(self, catalog_manager):
        counts = catalog_manager.categories()
        assert counts == {Category.UTILITIES: 1, Category.WEB: 1}

    @pytest.mark.unit
    def test_browse_category(self, catalog_manager, tracker):
        entries = catalog_manager.browse(Category.WEB, tracker.snapshot())
        assert [e.entry_id for e in entries] == ["firefox"]
        assert catalog_manager.browse(Category.GAMES) == ()
