#!/usr/bin/env python3
"""
Nix Software Center CLI

Command-line interface for searching the catalog, installing, removing and
upgrading packages, and rolling the system back to earlier generations.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from catalog.metadata import Category
from common.exceptions import CenterError
from common.logging_config import setup_logging
from transactions.models import Scope, Transaction

from .config import CenterConfig
from .service import SoftwareCenter

logger = logging.getLogger(__name__)


def get_center(args) -> SoftwareCenter:
    """Load configuration, set up logging and start the service."""
    config = CenterConfig.load(Path(args.config) if args.config else None)
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        log_dir=config.log_dir,
        json_logs=config.json_logs,
    )
    center = SoftwareCenter.from_config(config)
    center.start()
    return center


def confirm(args, question: str) -> bool:
    if args.yes:
        return True
    response = input(f"{question} [y/N] ")
    return response.lower() == "y"


def follow(center: SoftwareCenter, transaction: Transaction) -> int:
    """Stream a transaction's log until it finishes."""
    for update in center.subscribe(transaction.id):
        if update.line is not None:
            print(f"  {update.line}")
        elif not update.state.is_terminal:
            print(f"[{update.state.value}]")

    result = center.get_transaction(transaction.id)
    if result.succeeded:
        print(f"Transaction {result.id} succeeded")
        return 0

    if result.failure:
        print(
            f"Transaction {result.id} {result.state.value}: "
            f"{result.failure.message} ({result.failure.code.value})",
            file=sys.stderr,
        )
    else:
        print(f"Transaction {result.id} {result.state.value}", file=sys.stderr)
    return 1


def cmd_search(args, center: SoftwareCenter):
    """Search the catalog."""
    filters = {}
    if args.category:
        filters["category"] = args.category
    if args.installed:
        filters["installed"] = True

    results = center.search(args.query or "", filters, limit=args.limit)

    if not results:
        print(f"No packages found for: {args.query or '(all)'}")
        return 0

    print(f"Found {len(results)} package(s):\n")
    for entry in results:
        badge = f" [installed: {entry.installed_scope.value}]" if entry.is_installed else ""
        version = f" {entry.version}" if entry.version else ""
        print(f"  {entry.entry_id}{version}{badge}")
        if entry.name != entry.entry_id:
            print(f"    {entry.name}")
        if entry.summary:
            print(f"    {entry.summary[:80]}")
        print()

    return 0


def cmd_info(args, center: SoftwareCenter):
    """Show detailed package information."""
    entry = center.get_entry(args.entry_id)

    if not entry:
        print(f"Package not found: {args.entry_id}", file=sys.stderr)
        return 1

    print(f"Name:        {entry.name}")
    print(f"ID:          {entry.entry_id}")
    if entry.version:
        print(f"Version:     {entry.version}")
    if entry.summary:
        print(f"Summary:     {entry.summary}")
    if entry.categories:
        print(f"Categories:  {', '.join(sorted(c.value for c in entry.categories))}")
    if entry.license:
        print(f"License:     {entry.license}")
    if entry.homepage:
        print(f"Homepage:    {entry.homepage}")

    if entry.is_installed:
        print(f"Installed:   Yes ({entry.installed_scope.value}, {entry.installed_version or 'unknown'})")
    else:
        print("Installed:   No")

    if entry.description and entry.description != entry.summary:
        print(f"\n{entry.description}")

    return 0


def cmd_install(args, center: SoftwareCenter):
    """Install a package."""
    entry = center.get_entry(args.entry_id)
    if not entry:
        print(f"Package not found: {args.entry_id}", file=sys.stderr)
        return 1

    scope = args.scope or None
    if not confirm(args, f"Install {entry.name} ({entry.entry_id})?"):
        print("Install cancelled.")
        return 0

    tx = center.install(entry.entry_id, scope)
    print(f"Installing {entry.name}...")
    return follow(center, tx)


def cmd_remove(args, center: SoftwareCenter):
    """Remove a package."""
    if not confirm(args, f"Remove {args.entry_id}?"):
        print("Remove cancelled.")
        return 0

    tx = center.remove(args.entry_id, args.scope or None)
    print(f"Removing {args.entry_id}...")
    return follow(center, tx)


def cmd_upgrade(args, center: SoftwareCenter):
    """Upgrade one package or everything in a scope."""
    if args.entry_id:
        if not confirm(args, f"Upgrade {args.entry_id}?"):
            print("Upgrade cancelled.")
            return 0
        tx = center.upgrade(args.entry_id, args.scope or None)
    else:
        scope = Scope(args.scope or "user")
        if not confirm(args, f"Upgrade all {scope.value} packages?"):
            print("Upgrade cancelled.")
            return 0
        tx = center.upgrade_all(scope)

    return follow(center, tx)


def cmd_updates(args, center: SoftwareCenter):
    """List available updates and unavailable packages."""
    scope = Scope(args.scope) if args.scope else None
    updates = center.available_updates(scope)

    if not updates:
        print("All installed packages are up to date.")
    else:
        print(f"{len(updates)} package(s) can be upgraded:\n")
        for update in updates:
            print(
                f"  {update.entry.entry_id} ({update.scope.value}): "
                f"{update.installed_version} -> {update.available_version}"
            )

    unavailable = center.unavailable_installed(scope)
    if unavailable:
        print(f"\n{len(unavailable)} installed package(s) are no longer available:\n")
        for package in unavailable:
            print(f"  {package.entry_id} ({package.scope.value})")

    return 0


def cmd_categories(args, center: SoftwareCenter):
    """List categories, or the packages in one."""
    if args.category:
        try:
            category = Category(args.category)
        except ValueError:
            print(f"Unknown category: {args.category}", file=sys.stderr)
            print(f"Valid categories: {', '.join(c.value for c in Category)}")
            return 1
        for entry in center.browse(category):
            print(f"  {entry.entry_id}: {entry.name}")
        return 0

    print("Categories:\n")
    for category, count in center.categories().items():
        print(f"  {category.value}: {count} package(s)")
    return 0


def cmd_generations(args, center: SoftwareCenter):
    """List system generations."""
    generations = center.list_generations()
    if args.json:
        print(json.dumps([g.to_dict() for g in generations], indent=2))
        return 0

    if not generations:
        print("No system generations found.")
        return 0

    print("System Generations:\n")
    for gen in generations:
        marker = " (current)" if gen.is_current else ""
        created = gen.created_at.strftime("%Y-%m-%d %H:%M:%S") if gen.created_at else "unknown"
        print(f"  {gen.id}{marker}")
        print(f"    Created: {created} ({gen.age_str})")
        print(f"    {gen.description}")
        print()
    return 0


def cmd_rollback(args, center: SoftwareCenter):
    """Switch the system to an earlier generation."""
    if not confirm(args, f"Roll back the system to generation {args.generation}?"):
        print("Rollback cancelled.")
        return 0

    tx = center.rollback(args.generation)
    print(f"Rolling back to generation {args.generation}...")
    return follow(center, tx)


def cmd_history(args, center: SoftwareCenter):
    """Show recent transactions."""
    transactions = center.history()
    if args.json:
        print(json.dumps([t.to_dict() for t in transactions], indent=2))
        return 0

    if not transactions:
        print("No transactions yet.")
        return 0

    for tx in transactions:
        slow = " (slow)" if tx.is_slow else ""
        print(f"  #{tx.id} {tx.kind.value} {tx.target} [{tx.scope.value}]: {tx.state.value}{slow}")
        if tx.failure:
            print(f"    {tx.failure.code.value}: {tx.failure.message}")
    return 0


def cmd_refresh(args, center: SoftwareCenter):
    """Rebuild the catalog."""
    snapshot = center.refresh_catalog()
    stale = " (stale: sources unavailable)" if snapshot.stale else ""
    print(f"Catalog has {len(snapshot)} entries{stale}")
    print(f"Fingerprint: {snapshot.fingerprint}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nix-software-center-backend",
        description="Nix Software Center",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose output"
    )
    parser.add_argument("--config", help="Path to config.json")
    parser.add_argument(
        "-y", "--yes", action="store_true", help="Do not ask for confirmation"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")
    scopes = [s.value for s in Scope]

    # search
    search_p = subparsers.add_parser("search", help="Search for packages")
    search_p.add_argument("query", nargs="?", default="", help="Search query")
    search_p.add_argument("-c", "--category", help="Filter by category")
    search_p.add_argument("-i", "--installed", action="store_true", help="Only installed packages")
    search_p.add_argument("-n", "--limit", type=int, help="Maximum number of results")
    search_p.set_defaults(func=cmd_search)

    # info
    info_p = subparsers.add_parser("info", help="Show package details")
    info_p.add_argument("entry_id", help="Attribute path")
    info_p.set_defaults(func=cmd_info)

    # install
    install_p = subparsers.add_parser("install", help="Install a package")
    install_p.add_argument("entry_id", help="Attribute path")
    install_p.add_argument("-s", "--scope", choices=scopes, help="Install scope")
    install_p.set_defaults(func=cmd_install)

    # remove
    remove_p = subparsers.add_parser("remove", help="Remove a package")
    remove_p.add_argument("entry_id", help="Attribute path")
    remove_p.add_argument("-s", "--scope", choices=scopes, help="Scope to remove from")
    remove_p.set_defaults(func=cmd_remove)

    # upgrade
    upgrade_p = subparsers.add_parser("upgrade", help="Upgrade a package, or all of them")
    upgrade_p.add_argument("entry_id", nargs="?", help="Attribute path (omit for all)")
    upgrade_p.add_argument("-s", "--scope", choices=scopes, help="Scope to upgrade")
    upgrade_p.set_defaults(func=cmd_upgrade)

    # updates
    updates_p = subparsers.add_parser("updates", help="List available updates")
    updates_p.add_argument("-s", "--scope", choices=scopes, help="Only this scope")
    updates_p.set_defaults(func=cmd_updates)

    # categories
    cat_p = subparsers.add_parser("categories", help="List categories")
    cat_p.add_argument("category", nargs="?", help="Show packages in this category")
    cat_p.set_defaults(func=cmd_categories)

    # generations
    gen_p = subparsers.add_parser("generations", help="List system generations")
    gen_p.add_argument("--json", action="store_true", help="Print as JSON")
    gen_p.set_defaults(func=cmd_generations)

    # rollback
    rollback_p = subparsers.add_parser("rollback", help="Roll back to a generation")
    rollback_p.add_argument("generation", type=int, help="Generation number")
    rollback_p.set_defaults(func=cmd_rollback)

    # history
    history_p = subparsers.add_parser("history", help="Show recent transactions")
    history_p.add_argument("--json", action="store_true", help="Print as JSON")
    history_p.set_defaults(func=cmd_history)

    # refresh
    refresh_p = subparsers.add_parser("refresh", help="Rebuild the catalog")
    refresh_p.set_defaults(func=cmd_refresh)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    try:
        center = get_center(args)
    except CenterError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    try:
        return args.func(args, center)
    except CenterError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        center.close()


if __name__ == "__main__":
    sys.exit(main())
