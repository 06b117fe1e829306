"""
Transaction engine and installed-state tracking.

Serializes installs, removals, upgrades and rollbacks against the Nix
store and keeps the installed-package view in step with them.
"""

from .models import (
    Scope,
    TransactionKind,
    TransactionState,
    FailureCode,
    Failure,
    Operation,
    Transaction,
    TransactionUpdate,
)
from .installed import (
    InstalledPackage,
    InstalledState,
    InstalledStateTracker,
    PackageStateSource,
    UserProfileSource,
    SystemPackagesSource,
)
from .backend import MutationBackend, NixBackend, classify_failure
from .engine import TransactionEngine

__all__ = [
    "Scope",
    "TransactionKind",
    "TransactionState",
    "FailureCode",
    "Failure",
    "Operation",
    "Transaction",
    "TransactionUpdate",
    "InstalledPackage",
    "InstalledState",
    "InstalledStateTracker",
    "PackageStateSource",
    "UserProfileSource",
    "SystemPackagesSource",
    "MutationBackend",
    "NixBackend",
    "classify_failure",
    "TransactionEngine",
]
