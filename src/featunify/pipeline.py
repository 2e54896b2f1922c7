"""Orchestrator: fetch → build → unify or query → manifests or render."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from featunify.builder import build_graph, workspace_manifests
from featunify.config import Settings, load_settings
from featunify.graph import WorkspaceGraph
from featunify.manifest import (
    apply_changes,
    apply_restore,
    overrides,
    prepare_changes,
    read_state,
    workspace_dependencies,
)
from featunify.metadata import fetch_metadata, host_platform
from featunify.model import AnnotatedGraph, HackEntry, HackState
from featunify.query import dupes, explain, tree
from featunify.renderer.dot import render_dot, write_dot
from featunify.unify import (
    check,
    compute_hack_plan,
    guard_against_rehack,
    restore_plan,
)

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    snapshot: dict[str, Any]
    settings: Settings
    graph: WorkspaceGraph
    states: dict[Path, HackState]

    @property
    def hack_states(self) -> list[HackState]:
        return list(self.states.values())


def _workspace_root(snapshot: dict[str, Any], manifest_dir: Path) -> Path:
    root = snapshot.get("workspace_root")
    return Path(root) if root else manifest_dir


def _hack_states(snapshot: dict[str, Any]) -> dict[Path, HackState]:
    states = {}
    for member, path in workspace_manifests(snapshot):
        state = read_state(path, member)
        if state is not None:
            logger.debug("%s carries hack %s", path, state.fingerprint[:12])
            states[path] = state
    return states


def load_workspace(
    manifest_dir: Path,
    *,
    target: str | None = None,
    no_dev: bool = False,
    pristine: bool = True,
) -> Workspace:
    """Fetch the snapshot and build the graph for *manifest_dir*.

    With *pristine*, members that carry a hack are viewed as they were
    before it was applied.
    """
    manifest_dir = manifest_dir.resolve()
    snapshot = fetch_metadata(manifest_dir)
    root = _workspace_root(snapshot, manifest_dir)

    settings = load_settings(root, snapshot.get("metadata"))
    if target is not None:
        settings = replace(settings, target=target)
    if no_dev:
        settings = replace(settings, no_dev=True)
    logger.debug("Settings: %s", settings)

    platform = host_platform(settings.target)
    states = _hack_states(snapshot)
    declared = []
    if pristine and states:
        declared = overrides(states, workspace_dependencies(root))
    graph = build_graph(snapshot, platform, declared)
    return Workspace(snapshot, settings, graph, states)


def _describe(entry: HackEntry) -> str:
    return f"{entry.member.name}: {entry.package} [{entry.kind.table}] {entry.features}"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def run_hack(
    manifest_dir: Path,
    *,
    dry: bool = False,
    no_dev: bool = False,
    target: str | None = None,
) -> int:
    """Unify features by patching member manifests."""
    ws = load_workspace(manifest_dir, target=target, no_dev=no_dev)
    plan = compute_hack_plan(ws.graph, no_dev=ws.settings.no_dev)
    guard_against_rehack(plan, ws.hack_states)

    if plan.is_empty:
        logger.warning("Features are unified as is")
        return 0

    if dry:
        for entry in plan.entries:
            print(_describe(entry))
        logger.warning("Features are not unified, %d changes needed", len(plan.entries))
        return 1

    apply_changes(prepare_changes(ws.graph, plan), plan.fingerprint)
    # let cargo pick up the new declarations in Cargo.lock
    fetch_metadata(manifest_dir.resolve())
    logger.warning("Applied %d changes", len(plan.entries))
    return 0


def run_restore(manifest_dir: Path, files: list[Path] | None = None) -> int:
    """Remove the hack from the given manifests or from every member."""
    if files:
        restored = sum(apply_restore(path) for path in files)
    else:
        snapshot = fetch_metadata(manifest_dir.resolve())
        restored = 0
        for path, state in _hack_states(snapshot).items():
            instructions = restore_plan(injected.entry for injected in state.injected)
            restored += apply_restore(path, instructions)
    if restored:
        logger.warning("Restored %d manifests", restored)
    else:
        logger.warning("Nothing to restore")
    return 0


def run_check(
    manifest_dir: Path, *, no_dev: bool = False, target: str | None = None
) -> int:
    """Exit status 0 when the workspace needs no (further) hack."""
    ws = load_workspace(manifest_dir, target=target, no_dev=no_dev)
    report = check(ws.graph, ws.hack_states, no_dev=ws.settings.no_dev)
    if report.checksum_mismatch:
        logger.error("Hack is out of date: restore, update dependencies and hack again")
    elif report.unification_required:
        logger.error("Features are not unified, run `featunify hack`")
    else:
        logger.info("Features are unified")
    return 0 if report.ok else 1


def _emit(annotated: AnnotatedGraph, output: Path | None, title: str) -> None:
    if annotated.is_empty:
        logger.warning("Nothing to show for %s", title)
    if output is None:
        sys.stdout.write(render_dot(annotated, title))
    else:
        write_dot(annotated, output, title)
        logger.info("Generated %s", output)


def run_explain(
    manifest_dir: Path,
    crate: str,
    feature: str | None = None,
    version: str | None = None,
    *,
    reduce: bool = True,
    package_nodes: bool = False,
    output: Path | None = None,
    target: str | None = None,
) -> int:
    ws = load_workspace(manifest_dir, target=target, pristine=False)
    annotated = explain(
        ws.graph, crate, feature, version, reduce=reduce, package_nodes=package_nodes
    )
    _emit(annotated, output, crate)
    return 0


def run_tree(
    manifest_dir: Path,
    crate: str | None = None,
    feature: str | None = None,
    version: str | None = None,
    *,
    workspace_only: bool = False,
    reduce: bool = True,
    package_nodes: bool = False,
    output: Path | None = None,
    target: str | None = None,
) -> int:
    ws = load_workspace(manifest_dir, target=target, pristine=False)
    annotated = tree(
        ws.graph,
        crate,
        feature,
        version,
        workspace_only=workspace_only,
        reduce=reduce,
        package_nodes=package_nodes,
    )
    _emit(annotated, output, crate or "workspace")
    return 0


def run_dupes(manifest_dir: Path, *, target: str | None = None) -> int:
    """Print packages present in more than one version."""
    ws = load_workspace(manifest_dir, target=target, pristine=False)
    for name, versions in dupes(ws.graph):
        print(f"{name}: " + ", ".join(f"v{v}" for v in versions))
    return 0
