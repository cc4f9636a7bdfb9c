"""
TreeVault CLI — Database bootstrap and access administration.

Commands:
- treevault init          — Create the folders/files/permissions tables
- treevault check-access  — Resolve one (user, resource, action) and print the decision
- treevault grant         — Grant global or resource-scoped access levels
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional

from treevault.engine.config import load_platform_config
from treevault.engine.errors import TreeVaultError

logger = logging.getLogger("treevault.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="treevault",
        description="TreeVault — folder hierarchy and access control",
    )
    parser.add_argument(
        "--config", default=None, help="Path to treevault.yaml (default: auto-discover)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # treevault init
    subparsers.add_parser("init", help="Create database tables")

    # treevault check-access
    check_parser = subparsers.add_parser("check-access", help="Resolve an access decision")
    check_parser.add_argument("user_id")
    check_parser.add_argument("resource_type", choices=["file", "folder"])
    check_parser.add_argument("resource_id")
    check_parser.add_argument("action")

    # treevault grant
    grant_parser = subparsers.add_parser("grant", help="Grant access levels to a user")
    grant_parser.add_argument("user_id")
    grant_parser.add_argument(
        "access_levels", nargs="+", help="One or more of: read write create delete owner"
    )
    target = grant_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--global", dest="is_global", action="store_true", help="Grant on every resource")
    target.add_argument("--folder", dest="folder_id", help="Grant on a folder and its subtree")
    target.add_argument("--file", dest="file_id", help="Grant on one file")

    args = parser.parse_args(argv)

    if args.command == "init":
        return cmd_init(args)
    elif args.command == "check-access":
        return cmd_check_access(args)
    elif args.command == "grant":
        return cmd_grant(args)
    else:
        parser.print_help()
        return 0


def _build_runtime(args: argparse.Namespace, create_tables: bool = False):
    from treevault.engine.runtime import TreeVaultRuntime

    config = load_platform_config(args.config)
    return TreeVaultRuntime.from_config(config, create_tables=create_tables)


def cmd_init(args: argparse.Namespace) -> int:
    """Load config, connect, create tables."""
    print("=" * 60)
    print("  TreeVault Initialization")
    print("=" * 60)

    try:
        runtime = _build_runtime(args, create_tables=True)
    except TreeVaultError as e:
        print(f"[ERROR] {e.message}")
        return 1

    print(f"[OK] Environment: {runtime.config.environment}")
    print("[OK] Database tables created")
    print(f"[OK] Blob root: {runtime.config.storage.root}")
    if runtime.decision_cache is None:
        print("[INFO] Decision cache disabled or Redis unavailable")
    return 0


def cmd_check_access(args: argparse.Namespace) -> int:
    """Exit code 0 on allow, 2 on deny, 1 on error."""
    try:
        runtime = _build_runtime(args)
        decision = runtime.resolver.can_access(
            args.user_id, args.resource_type, args.resource_id, args.action,
        )
    except TreeVaultError as e:
        print(e.to_json())
        return 1

    print(json.dumps({
        "user_id": args.user_id,
        "resource_type": args.resource_type,
        "resource_id": args.resource_id,
        "action": args.action,
        "allowed": decision.allowed,
        "tier": decision.tier,
    }, indent=2))
    return 0 if decision.allowed else 2


def cmd_grant(args: argparse.Namespace) -> int:
    try:
        runtime = _build_runtime(args)
        if args.is_global:
            permission = runtime.permissions.grant_global(args.user_id, args.access_levels)
        elif args.folder_id:
            permission = runtime.permissions.grant_specific(
                args.user_id, args.folder_id, "folder", args.access_levels,
            )
        else:
            permission = runtime.permissions.grant_specific(
                args.user_id, args.file_id, "file", args.access_levels,
            )
    except TreeVaultError as e:
        print(e.to_json())
        return 1

    print(f"[OK] Permission {permission.id}: {permission.scope} -> "
          f"{', '.join(sorted(level.value for level in permission.access_levels))}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
