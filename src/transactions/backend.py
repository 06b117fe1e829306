"""
Mutation Backend - Applies operations to the Nix store.

User-scope operations run ``nix profile`` directly. System-scope installs
and removals rewrite a managed NixOS module listing the extra system
packages, install it with the elevation prefix and rebuild the system.
Rollback switches the system profile to an earlier generation.

Every command's combined output is streamed line by line to the caller.
"""

from __future__ import annotations

import errno
import logging
import os
import re
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Sequence, Tuple

from common.exceptions import BackendFailureError
from utils.atomic_write import atomic_write_text

from .models import FailureCode, Operation, Scope, TransactionKind
from .templates import TemplateLoader, get_template_loader

if TYPE_CHECKING:
    from generations.generations import GenerationSource

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]

SYSTEM_PACKAGES_TEMPLATE = "system-packages.nix.j2"

# pkexec: 126 = authorization dismissed, 127 = not authorized
ELEVATION_DENIED_STATUSES = (126, 127)

# Checked in order; the first match wins
FAILURE_PATTERNS: List[Tuple[FailureCode, re.Pattern]] = [
    (FailureCode.PERMISSION_DENIED, re.compile(
        r"not authorized|request dismissed|permission denied|"
        r"authentication (failed|dismissed)", re.I)),
    (FailureCode.DISK_FULL, re.compile(r"no space left on device", re.I)),
    (FailureCode.ATTRIBUTE_NOT_FOUND, re.compile(
        r"does not provide attribute|attribute '.+' missing|"
        r"undefined variable|does not match any packages", re.I)),
    (FailureCode.NETWORK, re.compile(
        r"unable to download|could not resolve host|connection timed out|"
        r"network is unreachable|http error \d+", re.I)),
    (FailureCode.BUILD_FAILED, re.compile(
        r"builder for .* failed|build of .* failed|cannot build|"
        r"dependencies couldn't be built", re.I)),
]


def classify_failure(
    exit_status: int,
    lines: Iterable[str],
    elevated: bool = False,
) -> FailureCode:
    """
    Map a failed command to a FailureCode.

    Args:
        exit_status: Non-zero exit status
        lines: Output the command produced
        elevated: Whether the command ran behind the elevation prefix
    """
    lines = list(lines)
    for code, pattern in FAILURE_PATTERNS:
        if any(pattern.search(line) for line in lines):
            return code
    if elevated and exit_status in ELEVATION_DENIED_STATUSES:
        return FailureCode.PERMISSION_DENIED
    return FailureCode.UNKNOWN


def run_streaming(command: Sequence[str], on_line: LineCallback) -> int:
    """
    Run a command, forwarding each output line as it arrives.

    Returns:
        Exit status.

    Raises:
        BackendFailureError: If the command cannot be started.
    """
    logger.info(f"Running: {' '.join(command)}")
    try:
        proc = subprocess.Popen(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1,
        )
    except (FileNotFoundError, OSError) as e:
        raise BackendFailureError(
            FailureCode.BACKEND_UNAVAILABLE.value,
            f"Cannot start {command[0]}: {e}",
            cause=e,
        ) from e

    with proc:
        for line in proc.stdout:
            line = line.rstrip("\n")
            logger.debug(f"{command[0]}: {line}")
            on_line(line)
        status = proc.wait()

    logger.debug(f"{command[0]} exited with {status}")
    return status


def _staging_error(path: Optional[Path], error: OSError) -> BackendFailureError:
    code = FailureCode.DISK_FULL if error.errno == errno.ENOSPC else FailureCode.UNKNOWN
    return BackendFailureError(code.value, f"Cannot stage {path or 'module'}: {error}", cause=error)


class MutationBackend(ABC):
    """Executes one operation against the system."""

    @abstractmethod
    def execute(self, operation: Operation, on_line: LineCallback) -> int:
        """
        Execute an operation.

        Args:
            operation: What to do
            on_line: Called with every output line, in order

        Returns:
            Exit status; 0 means success.

        Raises:
            BackendFailureError: If the operation cannot even be started.
        """
        pass

    def classify(self, operation: Operation, exit_status: int, lines: Sequence[str]) -> FailureCode:
        """Classify a non-zero exit status."""
        return classify_failure(exit_status, lines)


class SystemPackagesModule:
    """
    The managed NixOS module listing system-scope packages.

    The module is always rendered from the template, so it can be parsed
    back by reading the package list between ``[`` and ``];``.
    """

    _LIST = re.compile(r"environment\.systemPackages\s*=\s*with\s+pkgs;\s*\[(.*?)\];", re.S)

    def __init__(self, path: Path, templates: Optional[TemplateLoader] = None):
        self.path = Path(path)
        self.templates = templates or get_template_loader()

    @classmethod
    def parse(cls, text: str) -> List[str]:
        match = cls._LIST.search(text or "")
        if not match:
            return []
        body = re.sub(r"#[^\n]*", "", match.group(1))
        return body.split()

    def read(self) -> List[str]:
        """Attribute paths currently listed in the module."""
        if not self.path.exists():
            return []
        return self.parse(self.path.read_text(encoding="utf-8"))

    def render(self, attrs: Iterable[str]) -> str:
        try:
            content = self.templates.render(SYSTEM_PACKAGES_TEMPLATE, packages=sorted(set(attrs)))
        except ValueError as e:
            raise BackendFailureError(FailureCode.ATTRIBUTE_NOT_FOUND.value, str(e), cause=e) from e
        if content is None:
            raise BackendFailureError(
                FailureCode.BACKEND_UNAVAILABLE.value,
                f"Template {SYSTEM_PACKAGES_TEMPLATE} not found",
            )
        return content

    def with_change(self, operation: Operation) -> List[str]:
        """Package list after applying an install or remove."""
        attrs = self.read()
        attr = operation.attr_path or operation.target
        if operation.kind == TransactionKind.INSTALL and attr not in attrs:
            attrs.append(attr)
        elif operation.kind == TransactionKind.REMOVE:
            attrs = [a for a in attrs if a != attr]
        return attrs


class NixBackend(MutationBackend):
    """
    Backend driving ``nix profile``, ``nixos-rebuild`` and ``nix-env``.

    Example:
        backend = NixBackend(elevate_command=["pkexec"])
        status = backend.execute(op, print)
    """

    def __init__(
        self,
        nix_system: str = "x86_64-linux",
        flake_ref: str = "nixpkgs",
        elevate_command: Sequence[str] = ("pkexec",),
        rebuild_command: Sequence[str] = ("nixos-rebuild", "switch"),
        system_packages_file: Path = Path("/etc/nixos/software-center.nix"),
        generations: Optional["GenerationSource"] = None,
        staging_dir: Optional[Path] = None,
        templates: Optional[TemplateLoader] = None,
    ):
        self.nix_system = nix_system
        self.flake_ref = flake_ref
        self.elevate_command = list(elevate_command)
        self.rebuild_command = list(rebuild_command)
        self.module = SystemPackagesModule(system_packages_file, templates)
        self.generations = generations
        # Parent for the per-operation staging directories; must not be writable by others
        runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
        self.staging_dir = Path(staging_dir) if staging_dir else (Path(runtime_dir) if runtime_dir else None)

    def _profile_attr(self, attr: str) -> str:
        return f"legacyPackages.{self.nix_system}.{attr}"

    def user_command(self, operation: Operation) -> List[str]:
        """The ``nix profile`` invocation for a user-scope operation."""
        attr = operation.attr_path or operation.target
        kind = operation.kind
        if kind == TransactionKind.INSTALL:
            return ["nix", "profile", "install", f"{self.flake_ref}#{attr}", "--impure"]
        if kind == TransactionKind.REMOVE:
            return ["nix", "profile", "remove", self._profile_attr(attr)]
        if kind == TransactionKind.UPGRADE:
            return ["nix", "profile", "upgrade", self._profile_attr(attr), "--impure"]
        if kind == TransactionKind.UPGRADE_ALL:
            return ["nix", "profile", "upgrade", ".*", "--impure"]
        raise ValueError(f"{kind.value} is not a user profile operation")

    def stale_removal_command(self, operation: Operation) -> List[str]:
        """``nix profile remove`` for attributes the package set dropped."""
        return ["nix", "profile", "remove"] + [
            self._profile_attr(attr) for attr in operation.remove_first
        ]

    def rebuild(self, upgrade: bool = False) -> List[str]:
        command = self.elevate_command + self.rebuild_command
        if upgrade:
            command.append("--upgrade")
        return command

    def execute(self, operation: Operation, on_line: LineCallback) -> int:
        kind = operation.kind

        if kind == TransactionKind.ROLLBACK:
            if self.generations is None:
                raise BackendFailureError(
                    FailureCode.BACKEND_UNAVAILABLE.value,
                    "No generation source configured",
                )
            return self.generations.activate(operation.generation, on_line)

        if operation.scope == Scope.USER:
            if kind == TransactionKind.UPGRADE_ALL and operation.remove_first:
                # One attribute nixpkgs dropped makes the whole upgrade fail
                on_line(f"Removing unavailable packages: {' '.join(operation.remove_first)}")
                status = run_streaming(self.stale_removal_command(operation), on_line)
                if status != 0:
                    return status
            return run_streaming(self.user_command(operation), on_line)

        if kind == TransactionKind.UPGRADE:
            on_line(f"Upgrading {operation.target} rebuilds the system with every package upgraded")
            logger.warning(f"System upgrade of {operation.target} upgrades all system packages")
        if kind in (TransactionKind.UPGRADE, TransactionKind.UPGRADE_ALL):
            return run_streaming(self.rebuild(upgrade=True), on_line)

        return self._change_system_packages(operation, on_line)

    def _install_module(self, staged: Path, on_line: LineCallback) -> int:
        command = self.elevate_command + [
            "install", "-m", "0644", str(staged), str(self.module.path),
        ]
        return run_streaming(command, on_line)

    def _change_system_packages(self, operation: Operation, on_line: LineCallback) -> int:
        previous = self.module.path.read_text(encoding="utf-8") if self.module.path.exists() else None
        content = self.module.render(self.module.with_change(operation))

        # Fresh 0700 directory per operation; the elevated install reads from it
        try:
            workdir = Path(tempfile.mkdtemp(prefix="nix-software-center-", dir=self.staging_dir))
        except OSError as e:
            raise _staging_error(self.staging_dir, e) from e

        try:
            staged = workdir / self.module.path.name
            try:
                atomic_write_text(staged, content)
            except OSError as e:
                raise _staging_error(staged, e) from e

            on_line(f"Updating {self.module.path}")
            status = self._install_module(staged, on_line)
            if status != 0:
                return status

            status = run_streaming(self.rebuild(), on_line)
            if status != 0:
                # Put the old package list back so the file matches the running system
                on_line(f"Restoring previous {self.module.path}")
                atomic_write_text(staged, previous if previous is not None else self.module.render([]))
                self._install_module(staged, on_line)
            return status
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def classify(self, operation: Operation, exit_status: int, lines: Sequence[str]) -> FailureCode:
        elevated = operation.scope == Scope.SYSTEM or operation.kind == TransactionKind.ROLLBACK
        return classify_failure(exit_status, lines, elevated=elevated and bool(self.elevate_command))
