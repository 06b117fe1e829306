"""Tokenization shared by the package index and the search engine."""

from __future__ import annotations

import re
from typing import List

_SPLIT = re.compile(r"[^0-9a-z]+")


def tokenize(text: str, min_length: int = 2) -> List[str]:
    """
    Split text into lower-case alphanumeric tokens.

    Single characters are dropped; they match nearly everything and only
    add noise to the ranking.
    """
    if not text:
        return []
    return [t for t in _SPLIT.split(text.lower()) if len(t) >= min_length]


def normalize_identifier(identifier: str) -> str:
    """
    Reduce a component id or attribute path to its comparable leaf.

    ``org.mozilla.firefox.desktop`` and ``firefox`` both become ``firefox``;
    ``gnome_calculator`` becomes ``gnome-calculator``.
    """
    ident = identifier.strip().lower()
    if ident.endswith(".desktop"):
        ident = ident[: -len(".desktop")]
    ident = ident.rsplit(".", 1)[-1]
    return ident.replace("_", "-")
