"""Patch member manifests with hack entries, and undo the patch.

Manifests are edited with tomlkit, so everything the hack does not touch keeps
its formatting and comments.  What the hack did is persisted in a generated
``[package.metadata.featunify]`` section at the end of the manifest.  The
work happens on text (``patch_text`` / ``restore_text``); the ``apply_*``
functions only read and write files.
"""

from __future__ import annotations

import hashlib
import logging
import os
from collections import defaultdict
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import tomlkit
from tomlkit.exceptions import TOMLKitError
from tomlkit.items import InlineTable, Item, String
from tomlkit.toml_document import TOMLDocument

from featunify.errors import ManifestError
from featunify.graph import WorkspaceGraph
from featunify.model import (
    Declaration,
    DeclarationOverride,
    DependencyKind,
    FeatureSet,
    HackEntry,
    HackPlan,
    HackState,
    InjectedDependency,
    Package,
    PackageIdentity,
    RestoreInstruction,
)

logger = logging.getLogger(__name__)

BANNER = (
    "# !\n"
    "# ! This Cargo.toml file has unified features. In order to edit it\n"
    "# ! you should first restore it using `featunify restore`\n"
    "# !\n"
    "\n"
)
BEGIN = "# featunify: begin generated section"
END = "# featunify: end generated section"
STATE_TABLE = "package.metadata.featunify"

CRATES_IO = frozenset(
    {
        "registry+https://github.com/rust-lang/crates.io-index",
        "sparse+https://index.crates.io/",
    }
)

# TOML source of a replaced value, or the fields of a replaced table
Original = str | dict[str, Any] | None


@dataclass(frozen=True)
class ManifestChange:
    """One dependency declaration to write into a member manifest."""

    entry: HackEntry
    key: str
    fields: tuple[tuple[str, Any], ...]


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def _parse(text: str, path: Path | str) -> TOMLDocument:
    try:
        return tomlkit.parse(text)
    except TOMLKitError as e:
        raise ManifestError(path, f"invalid TOML: {e}") from e


def _read(path: Path) -> str:
    try:
        return path.read_text()
    except OSError as e:
        raise ManifestError(path, f"cannot read manifest: {e}") from e


def _load(path: Path) -> dict[str, Any]:
    return _parse(_read(path), path).unwrap()


def _metadata(data: Mapping[str, Any]) -> Mapping[str, Any]:
    package = data.get("package")
    metadata = package.get("metadata") if isinstance(package, Mapping) else None
    return metadata if isinstance(metadata, Mapping) else {}


def _state_table(data: Mapping[str, Any]) -> dict[str, Any] | None:
    table = _metadata(data).get("featunify")
    if not isinstance(table, dict) or "fingerprint" not in table:
        return None
    return table


def _original(item: Mapping[str, Any]) -> Original:
    if "original-table" in item:
        return dict(item["original-table"])
    return item.get("original")


def read_state(path: Path, member: PackageIdentity) -> HackState | None:
    """The hack persisted in *path*, or None for a manifest that is not hacked."""
    table = _state_table(_load(path))
    if table is None:
        return None
    try:
        injected = [
            InjectedDependency(
                entry=HackEntry(
                    member=member,
                    package=PackageIdentity(item["name"], item["version"], item["source"]),
                    features=FeatureSet.of(
                        item.get("features", ()), default=bool(item.get("default", False))
                    ),
                    kind=DependencyKind(item["kind"]),
                ),
                key=item["key"],
                original=_original(item),
            )
            for item in table.get("hacked", [])
        ]
        created = [str(t) for t in table.get("created-tables", [])]
    except (KeyError, TypeError, ValueError) as e:
        raise ManifestError(path, f"corrupt hack state: {e}") from e
    return HackState(member, str(table["fingerprint"]), injected, created)


def workspace_dependencies(workspace_root: Path) -> dict[str, Any]:
    """``[workspace.dependencies]`` of the root manifest (empty when absent)."""
    manifest = workspace_root / "Cargo.toml"
    if not manifest.exists():
        return {}
    return _load(manifest).get("workspace", {}).get("dependencies", {})


def parse_declaration(
    key: str,
    value: str | Mapping[str, Any],
    kind: DependencyKind,
    inherited: Mapping[str, Any] | None = None,
) -> Declaration:
    """Declaration of *key* from its manifest value.

    ``workspace = true`` declarations are completed from *inherited*, the
    ``[workspace.dependencies]`` table.
    """
    if isinstance(value, str):
        return Declaration(name=key, key=key, kind=kind, req=value)
    if not isinstance(value, Mapping):
        raise ValueError(f"unsupported declaration of {key}")

    features = list(value.get("features", ()))
    base: dict[str, Any] = {}
    if value.get("workspace") is True:
        shared = (inherited or {}).get(key)
        if shared is None:
            raise ValueError(f"{key} inherits from the workspace, which does not declare it")
        base = {"version": shared} if isinstance(shared, str) else dict(shared)
        features = list(base.get("features", ())) + features
    merged = {**base, **value}
    return Declaration(
        name=merged.get("package", key),
        key=key,
        kind=kind,
        optional=bool(value.get("optional", False)),
        features=tuple(dict.fromkeys(features)),
        uses_default_features=bool(
            merged.get("default-features", merged.get("default_features", True))
        ),
        req=str(merged.get("version", "*")),
    )


def overrides(
    states: Mapping[Path, HackState],
    inherited: Mapping[str, Any] | None = None,
) -> list[DeclarationOverride]:
    """Overrides that show the hacked members as they were before the hack."""
    result = []
    for path, state in states.items():
        for injected in state.injected:
            kind = injected.entry.kind
            replacement = None
            original = injected.original
            if original is not None:
                try:
                    if isinstance(original, str):
                        original = tomlkit.value(original).unwrap()
                    replacement = parse_declaration(injected.key, original, kind, inherited)
                except (TOMLKitError, ValueError) as e:
                    raise ManifestError(path, f"corrupt hack state for {injected.key}: {e}") from e
            result.append(DeclarationOverride(state.member, kind, injected.key, replacement))
    return result


# ---------------------------------------------------------------------------
# Planning declarations
# ---------------------------------------------------------------------------


def prepare_changes(graph: WorkspaceGraph, plan: HackPlan) -> dict[Path, list[ManifestChange]]:
    """Declarations realising *plan*, grouped by member manifest."""
    changes: dict[Path, list[ManifestChange]] = defaultdict(list)
    for member, entries in plan.by_member().items():
        package = graph.package(member)
        if not package.manifest_path:
            raise ManifestError(member.name, "member has no manifest path")
        manifest = Path(package.manifest_path)
        taken = {(d.kind, d.key) for d in package.declarations if d.target is None}
        for entry in entries:
            key, optional = _declaration_key(graph, entry, taken)
            taken.add((entry.kind, key))
            fields: list[tuple[str, Any]] = []
            if key != entry.package.name:
                fields.append(("package", entry.package.name))
            fields += _source_fields(entry.package, manifest)
            features = _minimal_features(graph.package(entry.package), entry.features)
            if features:
                fields.append(("features", features))
            if not entry.features.default:
                fields.append(("default-features", False))
            if optional:
                fields.append(("optional", True))
            changes[manifest].append(ManifestChange(entry, key, tuple(fields)))
    return dict(changes)


def _declaration_key(
    graph: WorkspaceGraph, entry: HackEntry, taken: set[tuple[DependencyKind, str]]
) -> tuple[str, bool]:
    """Key of the member's own declaration of the package, or a fresh one."""
    for edge in graph.out_edges(entry.member):
        if (
            edge.target == entry.package
            and edge.kind is entry.kind
            and edge.platform is None
            and edge.activator in (None, f"dep:{edge.key}")
        ):
            return edge.key, edge.optional
    key = entry.package.name
    if (entry.kind, key) in taken:
        # another version of the package already owns the plain key
        digest = hashlib.sha256(
            f"{entry.package.source}#{entry.package.version}".encode()
        ).hexdigest()
        key = f"featunify-{key}-{digest[:8]}"
    return key, False


def _source_fields(identity: PackageIdentity, manifest: Path) -> list[tuple[str, Any]]:
    source = identity.source
    if source in CRATES_IO:
        return [("version", identity.version)]
    if source.startswith("git+"):
        url, _, rev = source[4:].partition("#")
        url = url.split("?", 1)[0]
        return [("git", url), ("rev", rev)] if rev else [("git", url)]
    if source.startswith("path+file://"):
        directory = source[len("path+file://") :]
        relative = os.path.relpath(directory, manifest.parent)
        return [("path", Path(relative).as_posix())]
    raise ManifestError(manifest, f"cannot declare {identity} from source {source}")


def _minimal_features(package: Package, features: FeatureSet) -> list[str]:
    """Requested names minus those another requested feature already implies."""
    roots = set(features.names)
    if features.default:
        roots.add("default")
    dropped: set[str] = set()
    for name in features.sorted_names():
        if any(
            name in package.features.get(other, ())
            for other in roots - dropped - {name}
        ):
            dropped.add(name)
    return sorted(features.names - dropped)


# ---------------------------------------------------------------------------
# Editing
# ---------------------------------------------------------------------------


def _plain(table: Mapping[str, Any]) -> dict[str, Any]:
    return {str(k): v.unwrap() if isinstance(v, Item) else v for k, v in table.items()}


def _is_super_table(table: Any) -> bool:
    check = getattr(table, "is_super_table", None)
    return bool(check()) if callable(check) else False


def _set_fields(table: MutableMapping[str, Any], fields: Mapping[str, Any]) -> None:
    for name in [k for k in table if k not in fields]:
        del table[name]
    for name, value in fields.items():
        table[name] = value


def _patch(
    doc: TOMLDocument, change: ManifestChange, created: list[str], path: Path | str
) -> Original:
    """Write *change* into *doc*; return what it replaced."""
    name = change.entry.kind.table
    if name not in doc:
        doc.add(name, tomlkit.table())
        created.append(name)
    deps = doc[name]
    if not isinstance(deps, MutableMapping):
        raise ManifestError(path, f"[{name}] is not a table")

    current = deps.get(change.key)
    if current is None:
        # [dependencies.x] tables only: keep that style
        declaration = tomlkit.table() if _is_super_table(deps) else tomlkit.inline_table()
        for field, value in change.fields:
            declaration.add(field, value)
        deps[change.key] = declaration
        return None
    if isinstance(current, (String, InlineTable)):
        original = current.as_string()
        declaration = tomlkit.inline_table()
        for field, value in change.fields:
            declaration.add(field, value)
        deps[change.key] = declaration
        return original
    if isinstance(current, MutableMapping):
        # table form or dotted keys: rewrite the fields in place
        original_fields = _plain(current)
        _set_fields(current, dict(change.fields))
        return original_fields
    raise ManifestError(path, f"unsupported declaration of {change.key} in [{name}]")


def _state_text(
    fingerprint: str,
    injected: list[tuple[ManifestChange, Original]],
    created: list[str],
    eof_newline: bool,
) -> str:
    state = tomlkit.table()
    state.add("fingerprint", fingerprint)
    if created:
        state.add("created-tables", created)
    if not eof_newline:
        state.add("eof-newline", False)
    hacked = tomlkit.aot()
    for change, original in injected:
        entry = change.entry
        item = tomlkit.table()
        item.add("kind", entry.kind.value)
        item.add("key", change.key)
        item.add("name", entry.package.name)
        item.add("version", entry.package.version)
        item.add("source", entry.package.source)
        item.add("features", entry.features.sorted_names())
        item.add("default", entry.features.default)
        if isinstance(original, str):
            item.add("original", original)
        elif original is not None:
            fields = tomlkit.inline_table()
            fields.update(original)
            item.add("original-table", fields)
        hacked.append(item)
    if injected:
        state.add("hacked", hacked)

    metadata = tomlkit.table(is_super_table=True)
    metadata.add("featunify", state)
    package = tomlkit.table(is_super_table=True)
    package.add("metadata", metadata)
    doc = tomlkit.document()
    doc.add("package", package)
    text = tomlkit.dumps(doc)
    return text if text.endswith("\n") else text + "\n"


def patch_text(
    text: str,
    changes: Iterable[ManifestChange],
    fingerprint: str,
    path: Path | str = "Cargo.toml",
) -> str:
    """Manifest *text* with *changes* applied and the hack state appended."""
    if text.startswith(BANNER) or BEGIN in text:
        raise ManifestError(path, "manifest is already hacked, restore it first")
    eof_newline = not text or text.endswith("\n")
    doc = _parse(text if eof_newline else text + "\n", path)
    if "featunify" in _metadata(doc.unwrap()):
        raise ManifestError(path, f"[{STATE_TABLE}] is reserved")

    created: list[str] = []
    injected = [(change, _patch(doc, change, created, path)) for change in changes]

    body = doc.as_string()
    if body and not body.endswith("\n"):
        body += "\n"
    state = _state_text(fingerprint, injected, created, eof_newline)
    return BANNER + body + "\n" + BEGIN + "\n" + state + END + "\n"


def apply_changes(changes: Mapping[Path, Iterable[ManifestChange]], fingerprint: str) -> None:
    """Patch every manifest in *changes*; nothing is written unless all of them patch."""
    patched = {
        path: patch_text(_read(path), items, fingerprint, path)
        for path, items in sorted(changes.items())
    }
    for path, text in patched.items():
        path.write_text(text)
        logger.info("Patched %s", path)


def _unpatch(
    doc: TOMLDocument, name: str, key: str, original: Original, path: Path | str
) -> None:
    deps = doc.get(name)
    current = deps.get(key) if isinstance(deps, MutableMapping) else None
    if current is None:
        raise ManifestError(path, f"injected dependency {name}.{key} went missing")
    if original is None:
        del deps[key]
    elif isinstance(original, str):
        deps[key] = tomlkit.value(original)
    elif isinstance(current, MutableMapping):
        _set_fields(current, original)
    else:
        raise ManifestError(path, f"{name}.{key} is no longer a table")


def restore_text(
    text: str,
    instructions: Iterable[RestoreInstruction] | None = None,
    path: Path | str = "Cargo.toml",
) -> str | None:
    """Manifest *text* with the hack undone; None when there is nothing to undo.

    With *instructions*, refuse a manifest whose persisted hack is not exactly
    what they describe.
    """
    begin = text.find("\n" + BEGIN + "\n")
    if begin < 0:
        return None
    end = text.find(END, begin)
    if end < 0:
        raise ManifestError(path, "generated section is not terminated")

    section = text[begin + 1 + len(BEGIN) + 1 : end]
    table = _state_table(_parse(section, path).unwrap())
    if table is None:
        raise ManifestError(path, "generated section carries no fingerprint")

    slots: list[tuple[str, str, Original]] = []
    persisted = set()
    try:
        for item in table.get("hacked", []):
            kind = DependencyKind(item["kind"])
            slots.append((kind.table, item["key"], _original(item)))
            persisted.add((kind, item["name"], item["version"], item["source"]))
    except (KeyError, TypeError, ValueError) as e:
        raise ManifestError(path, f"corrupt hack state: {e}") from e
    if instructions is not None:
        expected = {
            (i.kind, i.package.name, i.package.version, i.package.source) for i in instructions
        }
        if expected != persisted:
            raise ManifestError(path, "persisted hack does not match the restore plan")

    doc = _parse(text[:begin].removeprefix(BANNER), path)
    try:
        for name, key, original in slots:
            _unpatch(doc, name, key, original, path)
    except TOMLKitError as e:
        raise ManifestError(path, f"corrupt hack state: {e}") from e
    for name in table.get("created-tables", []):
        deps = doc.get(name)
        if deps is None:
            continue
        if len(deps):
            logger.warning("Keeping [%s]: it has gained declarations since the hack", name)
        else:
            del doc[name]

    restored = doc.as_string()
    if not table.get("eof-newline", True):
        restored = restored.removesuffix("\n")
    return restored + text[end + len(END) :].removeprefix("\n")


def apply_restore(path: Path, instructions: Iterable[RestoreInstruction] | None = None) -> bool:
    """Undo the hack in *path*; return False when there is nothing to undo."""
    restored = restore_text(_read(path), instructions, path)
    if restored is None:
        logger.debug("No hack in %s", path)
        return False
    path.write_text(restored)
    logger.info("Restored %s", path)
    return True
