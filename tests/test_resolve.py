"""Tests for per-context feature resolution."""

from __future__ import annotations

from featunify.model import BuildContext, DependencyKind, FeatureSet, HackEntry
from featunify.resolve import feature_set, resolve_context, resolve_features


def _by_name(resolved):
    return {p.name: fs for p, fs in resolved.items()}


def _context(graph, *names, dev=False):
    members = [m for m in graph.members if m.name in names]
    return BuildContext.of(members, dev=dev)


class TestContexts:
    def test_single_members_see_their_own_features(self, potato_workspace, build):
        graph = build(potato_workspace)
        mega = _by_name(resolve_context(graph, _context(graph, "mega")))
        potato = _by_name(resolve_context(graph, _context(graph, "potato")))
        assert mega == {"potatoer": FeatureSet(frozenset({"mega"}))}
        assert potato == {"potatoer": FeatureSet(frozenset({"potato"}))}

    def test_workspace_unifies(self, potato_workspace, build):
        graph = build(potato_workspace)
        both = _by_name(resolve_context(graph, _context(graph, "mega", "potato")))
        assert both == {"potatoer": FeatureSet(frozenset({"mega", "potato"}))}

    def test_named_subset(self, snapshot, build):
        log = snapshot.crate("log", features={"std": [], "serde": [], "kv": []})
        for name, feature in (("a", "std"), ("b", "serde"), ("c", "kv")):
            snapshot.depend(snapshot.member(name), log, features=[feature])
        graph = build(snapshot)
        subset = _by_name(resolve_context(graph, _context(graph, "a", "c")))
        assert subset == {"log": FeatureSet(frozenset({"std", "kv"}))}

    def test_members_are_not_reported(self, snapshot, build):
        app = snapshot.member("app")
        lib = snapshot.member("lib")
        snapshot.depend(app, lib)
        graph = build(snapshot)
        assert resolve_context(graph, _context(graph, "app")) == {}


class TestFeatureTables:
    def test_default_group_and_implications(self, snapshot, build):
        app = snapshot.member("app")
        tokio = snapshot.crate(
            "tokio", features={"default": ["rt"], "rt": [], "full": ["rt", "net"], "net": []}
        )
        snapshot.depend(app, tokio, features=["full"])
        graph = build(snapshot)
        resolved = _by_name(resolve_context(graph, _context(graph, "app")))
        assert resolved["tokio"] == FeatureSet(frozenset({"full", "rt", "net"}), default=True)

    def test_feature_cycles_terminate(self, snapshot, build):
        app = snapshot.member("app")
        loop = snapshot.crate("loop", features={"a": ["b"], "b": ["a"]})
        snapshot.depend(app, loop, features=["a"])
        graph = build(snapshot)
        resolved = _by_name(resolve_context(graph, _context(graph, "app")))
        assert resolved["loop"].names == {"a", "b"}

    def test_optional_dependency_follows_its_feature(self, snapshot, build):
        app = snapshot.member("app")
        lib = snapshot.crate("lib", features={"json": ["dep:serde"]})
        serde = snapshot.crate("serde")
        snapshot.depend(app, lib)
        snapshot.depend(lib, serde, optional=True)
        graph = build(snapshot)
        assert "serde" not in _by_name(resolve_context(graph, _context(graph, "app")))

    def test_optional_dependency_activated(self, snapshot, build):
        app = snapshot.member("app")
        lib = snapshot.crate("lib", features={"json": ["dep:serde"]})
        serde = snapshot.crate("serde")
        snapshot.depend(app, lib, features=["json"])
        snapshot.depend(lib, serde, optional=True)
        graph = build(snapshot)
        resolved = _by_name(resolve_context(graph, _context(graph, "app")))
        assert resolved["serde"] == FeatureSet()

    def test_strong_feature_request_enables_optional_dependency(self, snapshot, build):
        app = snapshot.member("app")
        lib = snapshot.crate("lib", features={"std": ["log/std"]})
        log = snapshot.crate("log", features={"std": []})
        snapshot.depend(app, lib, features=["std"])
        snapshot.depend(lib, log, optional=True)
        graph = build(snapshot)
        resolved = _by_name(resolve_context(graph, _context(graph, "app")))
        assert resolved["log"].names == {"std"}


class TestWeakRequests:
    def _graph(self, snapshot, build, *, enable_log):
        app = snapshot.member("app")
        lib = snapshot.crate("lib", features={"std": ["log?/std"], "logging": ["dep:log"]})
        log = snapshot.crate("log", features={"std": []})
        requested = ["std", "logging"] if enable_log else ["std"]
        snapshot.depend(app, lib, features=requested)
        snapshot.depend(lib, log, optional=True)
        return build(snapshot)

    def test_weak_request_alone_does_not_activate(self, snapshot, build):
        graph = self._graph(snapshot, build, enable_log=False)
        assert "log" not in _by_name(resolve_context(graph, _context(graph, "app")))

    def test_weak_request_fires_once_activated(self, snapshot, build):
        graph = self._graph(snapshot, build, enable_log=True)
        resolved = _by_name(resolve_context(graph, _context(graph, "app")))
        assert resolved["log"].names == {"std"}


class TestDevEdges:
    def test_dev_edges_only_in_dev_context(self, snapshot, build):
        app = snapshot.member("app")
        log = snapshot.crate("log", features={"std": []})
        snapshot.depend(app, log, kind="dev", features=["std"])
        graph = build(snapshot)
        assert resolve_context(graph, _context(graph, "app")) == {}
        dev = _by_name(resolve_context(graph, _context(graph, "app", dev=True)))
        assert dev["log"].names == {"std"}

    def test_dev_edges_of_non_roots_are_ignored(self, snapshot, build):
        app = snapshot.member("app")
        lib = snapshot.member("lib")
        log = snapshot.crate("log")
        snapshot.depend(app, lib)
        snapshot.depend(lib, log, kind="dev")
        graph = build(snapshot)
        dev = _by_name(resolve_context(graph, _context(graph, "app", dev=True)))
        assert "log" not in dev

    def test_build_edges_always_count(self, snapshot, build):
        app = snapshot.member("app")
        cc = snapshot.crate("cc")
        snapshot.depend(app, cc, kind="build")
        graph = build(snapshot)
        assert "cc" in _by_name(resolve_context(graph, _context(graph, "app")))


def test_extra_requests_model_applied_hack(potato_workspace, build):
    graph = build(potato_workspace)
    (mega,) = [m for m in graph.members if m.name == "mega"]
    (potatoer,) = graph.find("potatoer")
    forced = HackEntry(mega, potatoer, FeatureSet(frozenset({"potato"})), DependencyKind.NORMAL)
    resolved = resolve_context(graph, _context(graph, "mega"), [forced])
    assert resolved[potatoer].names == {"mega", "potato"}


def test_raw_activations_include_dep_markers(snapshot, build):
    app = snapshot.member("app", features={"default": ["json"], "json": ["dep:serde"]})
    serde = snapshot.crate("serde")
    snapshot.depend(app, serde, optional=True)
    graph = build(snapshot)
    (member,) = graph.members
    active = resolve_features(graph, _context(graph, "app"))
    assert {None, "default", "json", "dep:serde"} <= active[member]


def test_feature_set_collapses_markers():
    assert feature_set([None, "default", "dep:x", "std"]) == FeatureSet(frozenset({"std"}), True)
