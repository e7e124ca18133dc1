"""
flowfolders CLI — Database bootstrap and folder tree inspection.

Commands:
- flowfolders init-db   — Create the folder / permission / binding tables
- flowfolders tree      — Print the folder tree (all folders, or one user's view)
- flowfolders check     — Run the tree integrity check (cycles, orphans, duplicate names)
- flowfolders report    — Print a user's effective permissions report
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Callable, List, Optional

from flowfolders.engine.errors import FlowFoldersError, IntegrityCheckError
from flowfolders.folders.models import FolderTreeNode

logger = logging.getLogger("flowfolders.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="flowfolders",
        description="flowfolders — Folder permission engine for workflow automation",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config", default=None,
        help="Path to flowfolders.yaml (default: discovered from the working directory)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # flowfolders init-db
    subparsers.add_parser("init-db", parents=[common], help="Create database tables")

    # flowfolders tree
    tree_parser = subparsers.add_parser("tree", parents=[common], help="Print the folder tree")
    tree_parser.add_argument("--user", help="Show only the folders this user can reach")
    tree_parser.add_argument(
        "--admin", action="store_true", help="Treat --user as an admin (sees every folder)"
    )

    # flowfolders check
    check_parser = subparsers.add_parser("check", parents=[common], help="Check tree integrity")
    check_parser.add_argument(
        "--strict", action="store_true", help="Exit with status 1 if any problem is found"
    )

    # flowfolders report
    report_parser = subparsers.add_parser(
        "report", parents=[common], help="Effective permissions for a user"
    )
    report_parser.add_argument("user_id", help="User id to report on")

    args = parser.parse_args(argv)

    if args.command == "init-db":
        return _run(cmd_init_db, args)
    elif args.command == "tree":
        return _run(cmd_tree, args)
    elif args.command == "check":
        return _run(cmd_check, args)
    elif args.command == "report":
        return _run(cmd_report, args)
    else:
        parser.print_help()
        return 0


def _run(command: Callable[[argparse.Namespace], int], args: argparse.Namespace) -> int:
    try:
        return command(args)
    except FlowFoldersError as e:
        print(f"[ERROR] {e.message}")
        for problem in getattr(e, "problems", []):
            print(f"  - {problem}")
        return 1


def _open_engine(args: argparse.Namespace, create_tables: bool = False):
    from flowfolders.engine.config import load_config
    from flowfolders.folders.engine import FolderEngine

    config = load_config(args.config)
    return FolderEngine.from_config(config, create_tables=create_tables)


def cmd_init_db(args: argparse.Namespace) -> int:
    with _open_engine(args, create_tables=True) as engine:
        stats = engine.tree.get_folder_stats()
    print(f"[OK] Tables ready ({stats.total} existing folder(s))")
    return 0


def format_tree(nodes: List[FolderTreeNode], indent: int = 0) -> List[str]:
    lines: List[str] = []
    for node in nodes:
        suffix = f" [{node.workflow_count} workflow(s)]" if node.workflow_count else ""
        lines.append(f"{'  ' * indent}{node.name} ({node.id}){suffix}")
        lines.extend(format_tree(node.children, indent + 1))
    return lines


def cmd_tree(args: argparse.Namespace) -> int:
    with _open_engine(args) as engine:
        if args.user:
            nodes = engine.access.get_folder_tree(args.user, is_admin=args.admin)
        else:
            nodes = engine.access.get_folder_tree("", is_admin=True)
    if not nodes:
        print("(no folders)")
        return 0
    for line in format_tree(nodes):
        print(line)
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    from flowfolders.engine.logging import emit, log_system_event

    with _open_engine(args) as engine:
        report = engine.check_integrity()
        emit(log_system_event(
            "integrity_check",
            level="INFO" if report.ok else "WARNING",
            details=report.to_dict(),
        ))

    if report.ok:
        print(f"[OK] {report.folder_count} folder(s), no integrity problems")
        return 0

    problems = report.problems()
    if args.strict:
        raise IntegrityCheckError(
            f"{len(problems)} integrity problem(s) in {report.folder_count} folder(s)",
            problems=problems,
            operation="check",
        )
    for problem in problems:
        print(f"  [WARN] {problem}")
    print(f"\nTotal: {len(problems)} problem(s)")
    return 0


def cmd_report(args: argparse.Namespace) -> int:
    with _open_engine(args) as engine:
        rows = engine.access.get_user_permissions_report(args.user_id)
    if not rows:
        print(f"User {args.user_id} has no folder permissions")
        return 0
    width = max(len(r.folder_name) for r in rows)
    for row in rows:
        source = f"inherited from {row.inherited_from}" if row.inherited else "direct"
        print(f"{row.folder_name.ljust(width)}  {row.level.value:<8}  {source}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
