"""
NixOS system generations: listing and activation.
"""

from .generations import (
    Generation,
    GenerationSource,
    NixGenerationSource,
    GenerationManager,
    parse_generations,
)

__all__ = [
    "Generation",
    "GenerationSource",
    "NixGenerationSource",
    "GenerationManager",
    "parse_generations",
]
