"""Shared fixtures: a small factory for cargo-metadata-shaped snapshots."""

from __future__ import annotations

from typing import Any

import pytest

from featunify.builder import build_graph
from featunify.graph import WorkspaceGraph
from featunify.platform import Platform

CRATES_IO = "registry+https://github.com/rust-lang/crates.io-index"

LINUX_CFG = [
    "debug_assertions",
    "panic=\"unwind\"",
    "target_arch=\"x86_64\"",
    "target_endian=\"little\"",
    "target_env=\"gnu\"",
    "target_family=\"unix\"",
    "target_os=\"linux\"",
    "target_pointer_width=\"64\"",
    "target_vendor=\"unknown\"",
    "unix",
]


class SnapshotBuilder:
    """Assemble a ``cargo metadata --format-version 1`` document by hand.

    Every dependency added with ``depend`` is also recorded in the
    resolution, as if cargo had activated it.
    """

    def __init__(self, root: str = "/ws") -> None:
        self.root = root
        self.packages: dict[str, dict[str, Any]] = {}
        self.resolved: dict[str, list[dict[str, Any]]] = {}
        self.members: list[str] = []
        self.metadata: dict[str, Any] | None = None

    def _add(
        self,
        pid: str,
        name: str,
        version: str,
        source: str | None,
        features: dict[str, list[str]] | None,
        manifest_path: str,
    ) -> str:
        self.packages[pid] = {
            "name": name,
            "version": version,
            "id": pid,
            "source": source,
            "dependencies": [],
            "features": dict(features or {}),
            "manifest_path": manifest_path,
            "targets": [
                {"kind": ["lib"], "crate_types": ["lib"], "name": name.replace("-", "_")}
            ],
        }
        self.resolved[pid] = []
        return pid

    def member(
        self, name: str, version: str = "0.1.0", features: dict[str, list[str]] | None = None
    ) -> str:
        pid = f"path+file://{self.root}/{name}#{version}"
        self._add(pid, name, version, None, features, f"{self.root}/{name}/Cargo.toml")
        self.members.append(pid)
        return pid

    def crate(
        self, name: str, version: str = "1.0.0", features: dict[str, list[str]] | None = None
    ) -> str:
        pid = f"{CRATES_IO}#{name}@{version}"
        return self._add(
            pid, name, version, CRATES_IO, features, f"/registry/{name}-{version}/Cargo.toml"
        )

    def depend(
        self,
        source: str,
        target: str,
        *,
        kind: str | None = None,
        features: tuple[str, ...] | list[str] = (),
        default: bool = True,
        optional: bool = False,
        rename: str | None = None,
        platform: str | None = None,
        resolved: bool = True,
    ) -> None:
        tgt = self.packages[target]
        self.packages[source]["dependencies"].append(
            {
                "name": tgt["name"],
                "source": tgt["source"],
                "req": f"^{tgt['version']}",
                "kind": kind,
                "rename": rename,
                "optional": optional,
                "uses_default_features": default,
                "features": list(features),
                "target": platform,
                "registry": None,
            }
        )
        if not resolved:
            return
        deps = self.resolved[source]
        entry = next((d for d in deps if d["pkg"] == target), None)
        if entry is None:
            entry = {
                "name": (rename or tgt["name"]).replace("-", "_"),
                "pkg": target,
                "dep_kinds": [],
            }
            deps.append(entry)
        entry["dep_kinds"].append({"kind": kind, "target": platform})

    def build(self) -> dict[str, Any]:
        return {
            "packages": list(self.packages.values()),
            "workspace_members": list(self.members),
            "resolve": {
                "nodes": [
                    {
                        "id": pid,
                        "deps": deps,
                        "dependencies": [d["pkg"] for d in deps],
                        "features": [],
                    }
                    for pid, deps in self.resolved.items()
                ],
                "root": None,
            },
            "workspace_root": self.root,
            "target_directory": f"{self.root}/target",
            "metadata": self.metadata,
            "version": 1,
        }


@pytest.fixture
def linux() -> Platform:
    return Platform.from_cfg_lines("x86_64-unknown-linux-gnu", LINUX_CFG)


@pytest.fixture
def snapshot() -> SnapshotBuilder:
    return SnapshotBuilder()


@pytest.fixture
def build(linux: Platform):
    """Build a frozen graph from a SnapshotBuilder for the linux target."""

    def _build(builder: SnapshotBuilder, overrides=()) -> WorkspaceGraph:
        return build_graph(builder.build(), linux, overrides)

    return _build


@pytest.fixture
def potato_workspace(snapshot: SnapshotBuilder) -> SnapshotBuilder:
    """Members ``mega`` and ``potato`` want disjoint features of ``potatoer``."""
    potatoer = snapshot.crate("potatoer", "0.1.0", {"mega": [], "potato": []})
    mega = snapshot.member("mega")
    potato = snapshot.member("potato")
    snapshot.depend(mega, potatoer, features=["mega"])
    snapshot.depend(potato, potatoer, features=["potato"])
    return snapshot
