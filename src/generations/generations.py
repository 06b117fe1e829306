"""
Generation Manager - NixOS system generations.

Lists the generations of the system profile and switches the system to
one of them. Rollback requests themselves go through the transaction
engine; this module only provides the listing and the activation step.
"""

from __future__ import annotations

import logging
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from common.concurrency import SnapshotRef
from common.exceptions import BackendFailureError
from transactions.backend import run_streaming
from transactions.models import FailureCode

logger = logging.getLogger(__name__)

#   42   2024-01-05 10:11:12   (current)
_GENERATION_LINE = re.compile(
    r"^\s*(\d+)\s+(\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2})(\s+\(current\))?\s*$"
)


@dataclass(frozen=True)
class Generation:
    """One system generation."""
    id: int
    created_at: Optional[datetime]
    description: str
    is_current: bool = False

    @property
    def age_str(self) -> str:
        """Get human-readable age."""
        if self.created_at is None:
            return "unknown"
        delta = datetime.now() - self.created_at
        if delta.days > 0:
            return f"{delta.days} days ago"
        elif delta.seconds > 3600:
            return f"{delta.seconds // 3600} hours ago"
        elif delta.seconds > 60:
            return f"{delta.seconds // 60} minutes ago"
        else:
            return "Just now"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "description": self.description,
            "is_current": self.is_current,
        }


def parse_generations(
    text: str,
    describe: Optional[Callable[[int], str]] = None,
) -> List[Generation]:
    """
    Parse ``nix-env --list-generations`` output.

    Returns:
        Generations, most recent first.
    """
    generations = []
    for line in (text or "").splitlines():
        match = _GENERATION_LINE.match(line)
        if not match:
            continue
        gen_id = int(match.group(1))
        try:
            created = datetime.strptime(match.group(2), "%Y-%m-%d %H:%M:%S")
        except ValueError:
            created = None
        description = describe(gen_id) if describe else ""
        generations.append(Generation(
            id=gen_id,
            created_at=created,
            description=description or f"NixOS generation {gen_id}",
            is_current=match.group(3) is not None,
        ))
    generations.sort(key=lambda g: g.id, reverse=True)
    return generations


class GenerationSource(ABC):
    """System generation interface."""

    @abstractmethod
    def list(self) -> List[Generation]:
        """List generations, most recent first."""
        pass

    @abstractmethod
    def activate(self, generation_id: int, on_line: Callable[[str], None]) -> int:
        """Switch the system to a generation and return the exit status."""
        pass


class NixGenerationSource(GenerationSource):
    """Generations of the NixOS system profile."""

    def __init__(
        self,
        system_profile: Path = Path("/nix/var/nix/profiles/system"),
        elevate_command: Sequence[str] = ("pkexec",),
    ):
        self.system_profile = Path(system_profile)
        self.elevate_command = list(elevate_command)

    def _link(self, generation_id: int) -> Path:
        return self.system_profile.parent / f"{self.system_profile.name}-{generation_id}-link"

    def _describe(self, generation_id: int) -> str:
        version_file = self._link(generation_id) / "nixos-version"
        try:
            version = version_file.read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            return ""
        return f"NixOS {version}" if version else ""

    def list(self) -> List[Generation]:
        command = ["nix-env", "--list-generations", "--profile", str(self.system_profile)]
        try:
            result = subprocess.run(command, capture_output=True, text=True, errors="replace")
        except (FileNotFoundError, OSError) as e:
            raise BackendFailureError(
                FailureCode.BACKEND_UNAVAILABLE.value,
                f"Cannot run nix-env: {e}",
                cause=e,
            ) from e

        if result.returncode != 0:
            raise BackendFailureError(
                FailureCode.UNKNOWN.value,
                f"Listing generations failed with {result.returncode}",
                raw_output=result.stderr or "",
            )
        return parse_generations(result.stdout, self._describe)

    def activate(self, generation_id: int, on_line: Callable[[str], None]) -> int:
        switch = self.elevate_command + [
            "nix-env", "--profile", str(self.system_profile),
            "--switch-generation", str(generation_id),
        ]
        status = run_streaming(switch, on_line)
        if status != 0:
            return status

        activate = self.elevate_command + [
            str(self.system_profile / "bin" / "switch-to-configuration"), "switch",
        ]
        return run_streaming(activate, on_line)


class GenerationManager:
    """
    Holds the latest generation listing.

    Example:
        manager = GenerationManager(NixGenerationSource())
        for gen in manager.list_generations():
            print(gen.id, gen.is_current)
    """

    def __init__(self, source: GenerationSource):
        self.source = source
        self._ref: SnapshotRef[Tuple[Generation, ...]] = SnapshotRef()

    def refresh(self) -> Tuple[Generation, ...]:
        """
        Re-read generations from the system.

        Raises:
            BackendFailureError: If the listing fails; the previous listing is kept.
        """
        generations = tuple(self.source.list())
        self._ref.swap(generations)
        logger.info(f"Found {len(generations)} system generation(s)")
        return generations

    def list_generations(self) -> Tuple[Generation, ...]:
        """Generations, most recent first, current one flagged."""
        generations = self._ref.get()
        if generations is None:
            generations = self.refresh()
        return generations

    def get(self, generation_id: int) -> Optional[Generation]:
        for generation in self.list_generations():
            if generation.id == generation_id:
                return generation
        return None

    def current(self) -> Optional[Generation]:
        for generation in self.list_generations():
            if generation.is_current:
                return generation
        return None
