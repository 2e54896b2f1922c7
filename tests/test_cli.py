"""End-to-end tests of the command line, with cargo and rustc stubbed out."""

from __future__ import annotations

import copy
import tomllib

import pytest

from conftest import SnapshotBuilder
from featunify import pipeline
from featunify.cli import main
from featunify.errors import MetadataError

MEGA_TOML = (
    '[package]\nname = "mega"\nversion = "0.1.0"\n\n'
    '[dependencies]\npotatoer = { version = "0.1", features = ["mega"] }\nrand = "0.8"\n'
)
POTATO_TOML = (
    '[package]\nname = "potato"\nversion = "0.1.0"\n\n'
    '[dependencies]\npotatoer = { version = "0.1", features = ["potato"] }\n'
    'rand07 = { package = "rand", version = "0.7" }\n'
)


@pytest.fixture
def cargo(tmp_path, linux, monkeypatch):
    """A two-member workspace on disk; ``cargo.snapshot`` is what cargo reports."""
    builder = SnapshotBuilder(root=str(tmp_path))
    potatoer = builder.crate("potatoer", "0.1.0", {"mega": [], "potato": []})
    mega = builder.member("mega")
    potato = builder.member("potato")
    builder.depend(mega, potatoer, features=["mega"])
    builder.depend(potato, potatoer, features=["potato"])
    builder.depend(potato, builder.crate("rand", "0.7.3"), rename="rand07")
    builder.depend(mega, builder.crate("rand", "0.8.5"))
    for name, text in (("mega", MEGA_TOML), ("potato", POTATO_TOML)):
        (tmp_path / name).mkdir()
        (tmp_path / name / "Cargo.toml").write_text(text)

    class Cargo:
        snapshot = builder.build()

        def hacked(self):
            snap = copy.deepcopy(self.snapshot)
            for raw in snap["packages"]:
                for dep in raw["dependencies"]:
                    if dep["name"] == "potatoer":
                        dep["features"] = ["mega", "potato"]
                        dep["uses_default_features"] = False
            self.snapshot = snap

    stub = Cargo()
    monkeypatch.setattr(pipeline, "fetch_metadata", lambda manifest_dir: stub.snapshot)
    monkeypatch.setattr(pipeline, "host_platform", lambda target=None: linux)
    return stub


def _run(tmp_path, *args):
    return main(["--manifest-dir", str(tmp_path), *args])


class TestHackCycle:
    def test_check_reports_divergence(self, cargo, tmp_path):
        assert _run(tmp_path, "check") == 1

    def test_dry_run_lists_changes(self, cargo, tmp_path, capsys):
        assert _run(tmp_path, "hack", "--dry") == 1
        out = capsys.readouterr().out
        assert "mega: potatoer v0.1.0 [dependencies] {mega, potato}" in out
        assert (tmp_path / "mega" / "Cargo.toml").read_text() == MEGA_TOML

    def test_hack_check_restore(self, cargo, tmp_path):
        assert _run(tmp_path, "hack") == 0
        assert "# featunify" in (tmp_path / "mega" / "Cargo.toml").read_text()

        cargo.hacked()
        assert _run(tmp_path, "check") == 0
        assert _run(tmp_path, "hack") == 1  # already hacked

        assert _run(tmp_path, "restore") == 0
        assert (tmp_path / "mega" / "Cargo.toml").read_text() == MEGA_TOML
        assert (tmp_path / "potato" / "Cargo.toml").read_text() == POTATO_TOML

    def test_restore_named_files(self, cargo, tmp_path):
        assert _run(tmp_path, "hack") == 0
        mega = tmp_path / "mega" / "Cargo.toml"
        assert _run(tmp_path, "restore", str(mega)) == 0
        assert mega.read_text() == MEGA_TOML
        assert "# featunify" in (tmp_path / "potato" / "Cargo.toml").read_text()

    def test_dotted_declarations(self, cargo, tmp_path):
        potato = tmp_path / "potato" / "Cargo.toml"
        dotted = (
            '[package]\nname = "potato"\nversion = "0.1.0"\n\n'
            '[dependencies]\npotatoer.version = "0.1"\npotatoer.features = ["potato"]\n'
            'rand07 = { package = "rand", version = "0.7" }\n'
        )
        potato.write_text(dotted)
        assert _run(tmp_path, "hack") == 0
        hacked = tomllib.loads(potato.read_text())["dependencies"]["potatoer"]
        assert hacked["features"] == ["mega", "potato"]

        cargo.hacked()
        assert _run(tmp_path, "check") == 0
        assert _run(tmp_path, "restore") == 0
        assert tomllib.loads(potato.read_text()) == tomllib.loads(dotted)
        assert (tmp_path / "mega" / "Cargo.toml").read_text() == MEGA_TOML

    def test_failed_hack_writes_nothing(self, cargo, tmp_path):
        potato = tmp_path / "potato" / "Cargo.toml"
        potato.write_text(POTATO_TOML + '\n[package.metadata.featunify]\nnote = "x"\n')
        assert _run(tmp_path, "hack") == 2
        assert (tmp_path / "mega" / "Cargo.toml").read_text() == MEGA_TOML

    def test_no_dev_from_config(self, cargo, tmp_path):
        (tmp_path / ".featunify.toml").write_text("[featunify]\nno-dev = true\n")
        assert _run(tmp_path, "check") == 1


class TestQueries:
    def test_dupes(self, cargo, tmp_path, capsys):
        assert _run(tmp_path, "dupes") == 0
        assert capsys.readouterr().out == "rand: v0.7.3, v0.8.5\n"

    def test_explain_to_stdout(self, cargo, tmp_path, capsys):
        assert _run(tmp_path, "explain", "potatoer", "mega") == 0
        out = capsys.readouterr().out
        assert out.startswith('digraph "potatoer"')
        assert "mega v0.1.0" in out
        assert "potato v0.1.0" not in out

    def test_tree_to_file(self, cargo, tmp_path):
        out = tmp_path / "tree.dot"
        assert _run(tmp_path, "tree", "-P", "-o", str(out)) == 0
        text = out.read_text()
        assert "potatoer v0.1.0" in text
        assert "shape=octagon" in text


def test_metadata_failure_is_fatal(tmp_path, monkeypatch):
    def fail(manifest_dir):
        raise MetadataError("cargo metadata failed: no Cargo.toml")

    monkeypatch.setattr(pipeline, "fetch_metadata", fail)
    assert _run(tmp_path, "check") == 2


def test_command_is_required():
    with pytest.raises(SystemExit):
        main([])
