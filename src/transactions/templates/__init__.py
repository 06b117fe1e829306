"""
Nix Module Templates Package

Provides Jinja2 template loading and rendering for the managed NixOS
module that holds system-scope packages.
"""

from .loader import TemplateLoader, get_template_loader, nix_attr

__all__ = ["TemplateLoader", "get_template_loader", "nix_attr"]
