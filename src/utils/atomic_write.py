"""
Atomic file replacement.

The config file and the staged system-packages module are written to a
sibling temp file, flushed, then renamed over the target, so readers see
either the old or the new content.
"""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any, Iterator, Union

PathLike = Union[str, Path]


def _sync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


@contextmanager
def replacing(path: PathLike, mode: int = 0o644) -> Iterator[IO[str]]:
    """
    Open a temp file that replaces ``path`` when the block exits cleanly.

    If the block raises, the temp file is removed and ``path`` is untouched.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=target.parent,
        prefix=f".{target.name}.",
        suffix=".tmp",
        delete=False,
    )
    try:
        with handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(handle.name, mode)
        os.replace(handle.name, target)
    except BaseException:
        if os.path.exists(handle.name):
            os.unlink(handle.name)
        raise
    _sync_directory(target.parent)


def atomic_write_text(path: PathLike, content: str, mode: int = 0o644) -> None:
    """Replace ``path`` with ``content``."""
    with replacing(path, mode) as f:
        f.write(content)


def atomic_write_json(path: PathLike, data: Any, indent: int = 2, mode: int = 0o644) -> None:
    """Replace ``path`` with ``data`` as sorted, indented JSON."""
    with replacing(path, mode) as f:
        json.dump(data, f, indent=indent, ensure_ascii=False, sort_keys=True)
        f.write("\n")
