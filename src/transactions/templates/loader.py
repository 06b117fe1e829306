"""
Nix Module Template Loader

Renders the managed NixOS module with Jinja2. Templates are looked up in
the user's override directory, then the system-wide one, then the copy
shipped with the package, so a distribution can restyle the module
without patching code.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    StrictUndefined,
    Template,
    TemplateNotFound,
)

logger = logging.getLogger(__name__)

# Dotted attribute path of plain Nix identifiers, e.g. python3Packages.requests
_ATTR_PATH = re.compile(r"^[A-Za-z_][A-Za-z0-9_'-]*(\.[A-Za-z_][A-Za-z0-9_'-]*)*$")

PACKAGED_TEMPLATES = Path(__file__).parent


def nix_attr(value: str) -> str:
    """
    Jinja filter admitting only attribute paths that are safe to splice
    into a ``with pkgs; [ ... ]`` list.

    Raises:
        ValueError: For anything else.
    """
    value = str(value)
    if not _ATTR_PATH.match(value):
        raise ValueError(f"Not a plain Nix attribute path: {value!r}")
    return value


def default_search_path() -> List[Path]:
    return [
        Path.home() / ".config/nix-software-center/templates",
        Path("/usr/share/nix-software-center/templates"),
        PACKAGED_TEMPLATES,
    ]


class TemplateLoader:
    """
    Jinja2 environment over an ordered list of template directories.

    Example:
        loader = TemplateLoader()
        text = loader.render("system-packages.nix.j2", packages=["firefox"])
    """

    def __init__(
        self,
        additional_paths: Optional[Sequence[Path]] = None,
        search_path: Optional[Sequence[Path]] = None,
    ):
        paths = list(search_path) if search_path is not None else default_search_path()
        # Explicit paths win over the defaults
        self.paths = [Path(p) for p in (additional_paths or [])] + paths

        present = [p for p in self.paths if p.is_dir()]
        for path in present:
            logger.debug(f"Template directory: {path}")

        self.env = Environment(
            loader=ChoiceLoader([FileSystemLoader(str(p)) for p in present]),
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["nix_attr"] = nix_attr

    def get_template(self, name: str) -> Optional[Template]:
        try:
            return self.env.get_template(name)
        except TemplateNotFound:
            logger.warning(f"Template not found: {name}")
            return None

    def render(self, name: str, **variables) -> Optional[str]:
        """Render ``name``, or return None when no directory has it."""
        template = self.get_template(name)
        return template.render(**variables) if template is not None else None

    def list_templates(self) -> List[str]:
        """Names of all ``*.nix.j2`` templates visible on the search path."""
        return sorted(self.env.list_templates(filter_func=lambda n: n.endswith(".nix.j2")))


_loader: Optional[TemplateLoader] = None


def get_template_loader() -> TemplateLoader:
    """Get the shared template loader."""
    global _loader
    if _loader is None:
        _loader = TemplateLoader()
    return _loader
