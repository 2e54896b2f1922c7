"""Hack, restore and check plans.

The whole-workspace build is the reference: every member is compared against
it on each external package the member already pulls in, and wherever the
member would build that package with a strict subset of the reference
features, a HackEntry forces the reference set.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from featunify.errors import AlreadyHacked, ChecksumMismatch
from featunify.graph import WorkspaceGraph
from featunify.integrity import fingerprint, verify
from featunify.model import (
    BuildContext,
    CheckReport,
    DependencyKind,
    FeatureSet,
    HackEntry,
    HackPlan,
    HackState,
    PackageIdentity,
    RestoreInstruction,
)
from featunify.resolve import resolve_context

logger = logging.getLogger(__name__)


def whole_workspace(graph: WorkspaceGraph, *, dev: bool = False) -> BuildContext:
    return BuildContext.of(graph.members, dev=dev, label="workspace")


def member_context(member: PackageIdentity, *, dev: bool = False) -> BuildContext:
    label = f"{member.name} (dev)" if dev else member.name
    return BuildContext.of([member], dev=dev, label=label)


def compute_hack_plan(graph: WorkspaceGraph, *, no_dev: bool = False) -> HackPlan:
    """Minimal set of entries giving every member the workspace feature sets."""
    reference = resolve_context(graph, whole_workspace(graph, dev=not no_dev))
    logger.info("Workspace build resolves %d external packages", len(reference))

    entries: list[HackEntry] = []
    for member in graph.members:
        normal = _unify_member(graph, member, reference, DependencyKind.NORMAL, [])
        entries.extend(normal)
        if no_dev:
            continue
        if not graph.package(member).has_dev_dependencies:
            logger.debug("No dev dependencies for %s, skipping", member)
            continue
        entries.extend(_unify_member(graph, member, reference, DependencyKind.DEV, normal))

    entries.sort(key=HackEntry.sort_key)
    return HackPlan(entries, fingerprint(entries))


def _unify_member(
    graph: WorkspaceGraph,
    member: PackageIdentity,
    reference: dict[PackageIdentity, FeatureSet],
    kind: DependencyKind,
    applied: list[HackEntry],
) -> list[HackEntry]:
    context = member_context(member, dev=kind is DependencyKind.DEV)
    forced: dict[PackageIdentity, HackEntry] = {}
    # forcing features can pull in packages the member did not reach before,
    # so repeat with the entries applied until nothing new diverges
    while True:
        resolved = resolve_context(graph, context, [*applied, *forced.values()])
        new = []
        for package in sorted(resolved):
            wanted = reference.get(package)
            if wanted is None or package in forced:
                continue
            have = resolved[package]
            if have.is_strict_subset(wanted):
                logger.info("%s lacks %s on %s", context.label, wanted, package)
                new.append(HackEntry(member, package, wanted, kind))
            elif have != wanted:
                logger.warning(
                    "%s builds %s with %s, outside the workspace set %s",
                    context.label,
                    package,
                    have,
                    wanted,
                )
        if not new:
            break
        forced.update((entry.package, entry) for entry in new)
    return sorted(forced.values(), key=HackEntry.sort_key)


def restore_plan(entries: Iterable[HackEntry]) -> list[RestoreInstruction]:
    """Instructions removing previously applied *entries*."""
    instructions = {
        RestoreInstruction(entry.member, entry.package, entry.kind) for entry in entries
    }
    return sorted(instructions, key=lambda i: (i.member, i.package, i.kind.value))


def applied_entries(states: Iterable[HackState]) -> list[HackEntry]:
    return sorted(
        (injected.entry for state in states for injected in state.injected),
        key=HackEntry.sort_key,
    )


def _staleness(plan: HackPlan, states: list[HackState]) -> tuple[str, str] | None:
    """(stored, current) fingerprints when the persisted hack does not match *plan*."""
    stored = {state.fingerprint for state in states}
    if len(stored) != 1:
        return ", ".join(sorted(stored)), plan.fingerprint
    (stored_fingerprint,) = stored
    applied = applied_entries(states)
    if not verify(stored_fingerprint, applied):
        return stored_fingerprint, fingerprint(applied)
    if stored_fingerprint != plan.fingerprint:
        return stored_fingerprint, plan.fingerprint
    return None


def guard_against_rehack(plan: HackPlan, states: list[HackState]) -> None:
    """Refuse to hack a workspace that carries a hack already.

    *plan* must be computed on the pre-hack view of the workspace.  Raises
    AlreadyHacked when the persisted hack is exactly *plan*, ChecksumMismatch
    when the persisted hack is stale or inconsistent.
    """
    if not states:
        return
    stale = _staleness(plan, states)
    if stale is not None:
        raise ChecksumMismatch(*stale)
    raise AlreadyHacked(plan.fingerprint)


def check(
    graph: WorkspaceGraph, states: list[HackState], *, no_dev: bool = False
) -> CheckReport:
    """Is unification required, and does the persisted hack still fit?

    *graph* must be the pre-hack view when *states* is not empty.
    """
    plan = compute_hack_plan(graph, no_dev=no_dev)
    if not states:
        return CheckReport(unification_required=not plan.is_empty)
    stale = _staleness(plan, states)
    if stale is None:
        return CheckReport(unification_required=False)
    logger.warning("Stored fingerprint %s, current plan %s", *stale)
    return CheckReport(unification_required=not plan.is_empty, checksum_mismatch=True)
