"""Fetch the workspace snapshot from cargo and the target description from rustc."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path

from featunify.errors import MetadataError
from featunify.platform import Platform

logger = logging.getLogger(__name__)

_TIMEOUT = 120


def _run(args: list[str], cwd: Path | None = None) -> str:
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            cwd=str(cwd) if cwd is not None else None,
            timeout=_TIMEOUT,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise MetadataError(f"could not run {args[0]}: {e}") from e

    if result.returncode != 0:
        raise MetadataError(
            f"{' '.join(args[:2])} failed: "
            + (result.stderr.strip() if result.stderr else "unknown error")
        )
    return result.stdout


def fetch_metadata(manifest_dir: Path) -> dict:
    """Run ``cargo metadata`` in *manifest_dir* and return the parsed snapshot."""
    logger.debug("Running cargo metadata in %s", manifest_dir)
    stdout = _run(["cargo", "metadata", "--format-version", "1"], cwd=manifest_dir)
    try:
        snapshot = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise MetadataError(f"cargo metadata JSON parse error: {e}") from e
    if not isinstance(snapshot, dict):
        raise MetadataError("cargo metadata did not return a JSON object")
    return snapshot


def _host_triple() -> str:
    for line in _run(["rustc", "-vV"]).splitlines():
        if line.startswith("host:"):
            return line.split(":", 1)[1].strip()
    raise MetadataError("rustc -vV did not report a host triple")


def host_platform(target: str | None = None) -> Platform:
    """Platform for *target* (the host when None), as rustc describes it.

    When rustc cannot print the cfg set for an explicit *target*, the set is
    derived from the triple alone.
    """
    triple = target or _host_triple()
    args = ["rustc", "--print=cfg"]
    if target is not None:
        args += ["--target", target]
    try:
        lines = _run(args).splitlines()
    except MetadataError as e:
        if target is None:
            raise
        logger.warning("Could not query rustc for %s (%s), guessing cfg from the triple", target, e)
        return Platform.from_triple(target)
    logger.debug("Target %s sets %d cfg values", triple, len(lines))
    return Platform.from_cfg_lines(triple, lines)
