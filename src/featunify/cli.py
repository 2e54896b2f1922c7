"""Command-line interface for featunify."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from featunify import pipeline
from featunify.errors import AlreadyHacked, ChecksumMismatch, FeatunifyError

logger = logging.getLogger(__name__)


def _add_query_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-T",
        "--no-transitive-opt",
        action="store_false",
        dest="reduce",
        help="Keep edges implied by other paths",
    )
    parser.add_argument(
        "-P",
        "--package-nodes",
        action="store_true",
        help="Show packages instead of individual features",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Write the DOT graph to this file (default: stdout)",
    )


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="featunify",
        description="Unify Cargo features across a workspace and explain where they come from.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) output",
    )
    parser.add_argument(
        "--manifest-dir",
        type=Path,
        default=Path("."),
        help="Directory of the workspace Cargo.toml (default: current directory)",
    )
    parser.add_argument(
        "--target",
        default=None,
        help="Target triple to resolve for (default: host)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    hack = commands.add_parser("hack", help="Unify features by patching member manifests")
    hack.add_argument("--dry", action="store_true", help="Only report what would change")
    hack.add_argument(
        "-D", "--no-dev", action="store_true", help="Ignore dev-dependencies"
    )

    restore = commands.add_parser("restore", help="Remove the changes made by hack")
    restore.add_argument(
        "files", nargs="*", type=Path, help="Manifests to restore (default: all members)"
    )

    check = commands.add_parser("check", help="Exit with 1 if features are not unified")
    check.add_argument(
        "-D", "--no-dev", action="store_true", help="Ignore dev-dependencies"
    )

    explain = commands.add_parser("explain", help="Show why a crate is in the build")
    explain.add_argument("crate")
    explain.add_argument("feature", nargs="?", default=None)
    explain.add_argument("version", nargs="?", default=None)
    _add_query_flags(explain)

    tree = commands.add_parser("tree", help="Show what a crate or the workspace pulls in")
    tree.add_argument("crate", nargs="?", default=None)
    tree.add_argument("feature", nargs="?", default=None)
    tree.add_argument("version", nargs="?", default=None)
    tree.add_argument(
        "-w",
        "--workspace",
        action="store_true",
        dest="workspace_only",
        help="Stop at workspace members",
    )
    _add_query_flags(tree)

    commands.add_parser("dupes", help="List packages present in several versions")
    return parser


def _dispatch(args: argparse.Namespace) -> int:
    if args.command == "hack":
        return pipeline.run_hack(
            args.manifest_dir, dry=args.dry, no_dev=args.no_dev, target=args.target
        )
    if args.command == "restore":
        return pipeline.run_restore(args.manifest_dir, args.files)
    if args.command == "check":
        return pipeline.run_check(args.manifest_dir, no_dev=args.no_dev, target=args.target)
    if args.command == "explain":
        return pipeline.run_explain(
            args.manifest_dir,
            args.crate,
            args.feature,
            args.version,
            reduce=args.reduce,
            package_nodes=args.package_nodes,
            output=args.output,
            target=args.target,
        )
    if args.command == "tree":
        return pipeline.run_tree(
            args.manifest_dir,
            args.crate,
            args.feature,
            args.version,
            workspace_only=args.workspace_only,
            reduce=args.reduce,
            package_nodes=args.package_nodes,
            output=args.output,
            target=args.target,
        )
    return pipeline.run_dupes(args.manifest_dir, target=args.target)


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(message)s")
    if args.verbose:
        logging.getLogger("featunify").setLevel(logging.DEBUG)

    try:
        return _dispatch(args)
    except ChecksumMismatch as e:
        logger.error("%s", e)
        return 1
    except AlreadyHacked as e:
        logger.error("%s", e)
        return 1
    except FeatunifyError as e:
        logger.error("featunify: %s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
