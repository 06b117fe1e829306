"""
Pytest configuration and shared fixtures for software center tests.

Provides on-disk catalog sources and in-memory stand-ins for the Nix
profile, the system generations and the privileged mutation backend.
"""

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock, patch

import pytest
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from common.exceptions import BackendFailureError  # noqa: E402
from generations.generations import Generation, GenerationManager, GenerationSource  # noqa: E402
from transactions.backend import MutationBackend  # noqa: E402
from transactions.installed import InstalledStateTracker, PackageStateSource  # noqa: E402
from transactions.models import FailureCode, Operation, Scope, TransactionKind  # noqa: E402


# ============ Catalog Source Fixtures ============

APPSTREAM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<components version="0.14" origin="nixos">
  <component type="desktop-application">
    <id>org.mozilla.firefox</id>
    <name>Firefox</name>
    <name xml:lang="de">Firefox Webbrowser</name>
    <summary>Fast, private web browser</summary>
    <description>
      <p>Browse the web.</p>
      <p>Stay private.</p>
    </description>
    <icon type="cached" width="64" height="64">firefox.png</icon>
    <icon type="cached" width="128" height="128">firefox.png</icon>
    <categories>
      <category>Network</category>
      <category>WebBrowser</category>
    </categories>
    <url type="homepage">https://www.mozilla.org/firefox/</url>
    <screenshots>
      <screenshot>
        <image type="source">https://example.org/ff-2.png</image>
      </screenshot>
      <screenshot type="default">
        <image type="thumbnail" width="224" height="126">https://example.org/ff-1-small.png</image>
        <image type="source">https://example.org/ff-1.png</image>
      </screenshot>
    </screenshots>
    <releases>
      <release version="120.0" timestamp="1700000000"/>
    </releases>
  </component>
  <component type="desktop-application">
    <id>org.gnome.gedit</id>
    <pkgname>gedit</pkgname>
    <name>gedit</name>
    <summary>Text editor</summary>
    <categories>
      <category>Utility</category>
      <category>TextEditor</category>
    </categories>
  </component>
  <component type="desktop-application">
    <id>org.kde.krita.desktop</id>
    <name>Krita</name>
    <summary>Digital painting</summary>
    <categories>
      <category>Graphics</category>
    </categories>
  </component>
  <component type="addon">
    <id>org.mozilla.firefox.ublock</id>
    <name>uBlock</name>
  </component>
</components>
"""

PACKAGES = {
    "nixos.firefox": {
        "name": "firefox-120.0",
        "pname": "firefox",
        "version": "120.0",
        "meta": {
            "description": "A web browser built from Firefox source tree",
            "license": {"spdxId": "MPL-2.0"},
        },
    },
    "nixos.firefox-esr": {
        "name": "firefox-esr-115.5.0esr",
        "pname": "firefox-esr",
        "version": "115.5.0esr",
        "meta": {
            "description": "A web browser built from Firefox Extended Support Release source tree",
        },
    },
    "nixos.gedit": {
        "name": "gedit-46.1",
        "meta": {
            "description": "Former GNOME text editor",
            "license": [{"spdxId": "GPL-2.0-or-later"}],
        },
    },
    "nixos.hello": {
        "name": "hello-2.12.1",
        "pname": "hello",
        "version": "2.12.1",
        "meta": {
            "description": "A program that produces a familiar, friendly greeting",
            "license": {"spdxId": "GPL-3.0-or-later"},
        },
    },
    "nixos.ripgrep": {
        "name": "ripgrep-14.0.3",
        "pname": "ripgrep",
        "version": "14.0.3",
        "meta": {
            "description": "Utility that combines the usability of The Silver Searcher "
                           "with the raw speed of grep",
        },
    },
}


@pytest.fixture
def metadata_dir(tmp_path: Path) -> Path:
    """AppStream collection laid out as <dir>/xmls/nixos.xml."""
    root = tmp_path / "appdata"
    (root / "xmls").mkdir(parents=True)
    (root / "xmls" / "nixos.xml").write_text(APPSTREAM_XML, encoding="utf-8")
    return root


@pytest.fixture
def packages_json(tmp_path: Path) -> Path:
    """Package dump in ``nix-env -qa --json --meta`` shape."""
    path = tmp_path / "packages.json"
    path.write_text(json.dumps(PACKAGES), encoding="utf-8")
    return path


@pytest.fixture
def package_db(tmp_path: Path) -> Path:
    """SQLite package database with pkgs and meta tables."""
    path = tmp_path / "nixpkgs.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE pkgs (attribute TEXT, system TEXT, pname TEXT, version TEXT)")
    conn.execute(
        "CREATE TABLE meta (attribute TEXT, description TEXT, longdescription TEXT, "
        "homepage TEXT, license TEXT)"
    )
    conn.executemany("INSERT INTO pkgs VALUES (?, ?, ?, ?)", [
        ("firefox", "x86_64-linux", "firefox", "120.0"),
        ("legacyPackages.x86_64-linux.hello", "x86_64-linux", "hello", "2.12.1"),
        ("gimp", "x86_64-linux", "gimp", "2.10.36"),
    ])
    conn.executemany("INSERT INTO meta VALUES (?, ?, ?, ?, ?)", [
        ("firefox", "A web browser", "", "https://www.mozilla.org", '{"spdxId": "MPL-2.0"}'),
        ("legacyPackages.x86_64-linux.hello", "A friendly greeting", "", "", "GPL-3.0-or-later"),
    ])
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def catalog_manager(metadata_dir, packages_json):
    """Catalog manager with a built catalog."""
    from catalog.catalog import CatalogManager
    from catalog.metadata import MetadataStore
    from catalog.package_set import PackageSetIndex

    manager = CatalogManager(MetadataStore(metadata_dir), PackageSetIndex(packages_json))
    manager.rebuild()
    return manager


# ============ Installed State Fixtures ============

class FakeStateSource(PackageStateSource):
    """In-memory profile."""

    def __init__(self, scope: Scope, installed: Optional[Dict[str, str]] = None):
        self.scope = scope
        self.installed: Dict[str, str] = dict(installed or {})
        self.fail = False
        self.calls = 0

    def list_installed(self) -> Dict[str, str]:
        self.calls += 1
        if self.fail:
            raise BackendFailureError(
                FailureCode.STATE_REFRESH_FAILED.value, "profile query failed"
            )
        return dict(self.installed)


@pytest.fixture
def user_source() -> FakeStateSource:
    return FakeStateSource(Scope.USER, {"hello": "2.12.1", "oldpkg": "1.0"})


@pytest.fixture
def system_source() -> FakeStateSource:
    return FakeStateSource(Scope.SYSTEM, {"ripgrep": "13.0.0"})


@pytest.fixture
def tracker(user_source, system_source) -> InstalledStateTracker:
    tracker = InstalledStateTracker([user_source, system_source])
    tracker.refresh()
    return tracker


# ============ Generation Fixtures ============

class FakeGenerationSource(GenerationSource):
    """Generations 40..42 with 42 current."""

    def __init__(self):
        self.current = 42
        self.ids = [42, 41, 40]
        self.fail = False
        self.activated: List[int] = []

    def list(self) -> List[Generation]:
        if self.fail:
            raise BackendFailureError(FailureCode.BACKEND_UNAVAILABLE.value, "no system profile")
        return [
            Generation(
                id=gen_id,
                created_at=datetime(2024, 1, gen_id - 30, 10, 0, 0),
                description=f"NixOS 24.05 (generation {gen_id})",
                is_current=gen_id == self.current,
            )
            for gen_id in self.ids
        ]

    def activate(self, generation_id: int, on_line) -> int:
        on_line(f"switching to generation {generation_id}")
        self.activated.append(generation_id)
        self.current = generation_id
        return 0


@pytest.fixture
def generation_source() -> FakeGenerationSource:
    return FakeGenerationSource()


@pytest.fixture
def generations(generation_source) -> GenerationManager:
    return GenerationManager(generation_source)


# ============ Backend Fixtures ============

class FakeBackend(MutationBackend):
    """
    Applies operations to the fake profiles.

    ``results`` maps a target to ``(exit_status, output_lines)``; set
    ``gate`` to an Event to hold every operation until it is set.
    """

    def __init__(self, sources, generation_source=None):
        self.sources = {s.scope: s for s in sources}
        self.generation_source = generation_source
        self.operations: List[Operation] = []
        self.results: Dict[str, tuple] = {}
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()

    def execute(self, operation: Operation, on_line) -> int:
        self.operations.append(operation)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(10)

        if operation.kind == TransactionKind.ROLLBACK:
            return self.generation_source.activate(operation.generation, on_line)

        status, lines = self.results.get(
            operation.target, (0, [f"{operation.kind.value} {operation.target}"])
        )
        for line in lines:
            on_line(line)

        if status == 0:
            profile = self.sources[operation.scope].installed
            if operation.kind == TransactionKind.INSTALL:
                profile[operation.target] = "1.0"
            elif operation.kind == TransactionKind.REMOVE:
                profile.pop(operation.target, None)
        return status

    def release(self) -> None:
        if self.gate is not None:
            self.gate.set()


@pytest.fixture
def fake_backend(user_source, system_source, generation_source) -> FakeBackend:
    return FakeBackend([user_source, system_source], generation_source)


@pytest.fixture
def engine(fake_backend, tracker, catalog_manager, generations):
    """Running transaction engine over the fake system."""
    from transactions.engine import TransactionEngine

    engine = TransactionEngine(
        fake_backend,
        tracker,
        catalog=catalog_manager,
        generations=generations,
        history_limit=10,
    )
    yield engine
    fake_backend.release()
    engine.shutdown(timeout=5)


@pytest.fixture
def center(catalog_manager, tracker, engine, generations):
    """SoftwareCenter wired to the fakes."""
    from center.service import SoftwareCenter
    return SoftwareCenter(catalog_manager, tracker, engine, generations)


# ============ Subprocess Fixtures ============

@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for tests."""
    with patch('subprocess.run') as mock_run:
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout="",
            stderr="",
        )
        yield mock_run


@pytest.fixture
def mock_subprocess_popen():
    """Mock subprocess.Popen streaming no output."""
    with patch('subprocess.Popen') as mock_popen:
        mock_proc = MagicMock()
        mock_proc.__enter__.return_value = mock_proc
        mock_proc.stdout = iter([])
        mock_proc.wait.return_value = 0
        mock_popen.return_value = mock_proc
        yield mock_popen


# ============ Pytest Hooks ============

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "unit: fast unit tests with no external deps"
    )
    config.addinivalue_line(
        "markers", "integration: tests that drive several components together"
    )
