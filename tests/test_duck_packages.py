import os
import subprocess

import pytest
import yaml

from duck import duck_packages
from duck.duck_datatypes import DuckRuntimeError
from duck.duck_packages import (
    LibraryManager, PackageError, default_name, expand_source, resolve_library,
)


class FakeGit:
    """Stands in for `git`: clones create a directory, pulls advance HEAD."""

    def __init__(self):
        self.commands = []
        self.heads = {}
        self.upstream = "c1"
        self.fail_on = None

    def __call__(self, command, capture_output=True, text=True, timeout=None, cwd=None):
        self.commands.append((command, cwd))
        verb = command[1]
        if verb == self.fail_on:
            return subprocess.CompletedProcess(command, 128, stdout="", stderr="fatal: nope")
        if verb == "clone":
            target = command[-1]
            os.makedirs(target)
            with open(os.path.join(target, "main.duck"), "w") as f:
                f.write("quack [let ok be true]\n")
            self.heads[target] = self.upstream
            out = ""
        elif verb == "rev-parse":
            out = self.heads[cwd]
        elif verb == "pull":
            self.heads[cwd] = self.upstream
            out = "Updating"
        elif verb == "reset":
            self.heads[cwd] = command[-1]
            out = ""
        else:
            out = ""
        return subprocess.CompletedProcess(command, 0, stdout=out + "\n", stderr="")


@pytest.fixture
def git(monkeypatch):
    fake = FakeGit()
    monkeypatch.setattr(duck_packages.subprocess, "run", fake)
    return fake


@pytest.fixture
def manager(tmp_path):
    return LibraryManager(str(tmp_path / "duck-home"))


@pytest.mark.parametrize("source, expected", [
    ("mallard/pond", "https://github.com/mallard/pond.git"),
    ("https://example.com/x/pond.git", "https://example.com/x/pond.git"),
    ("git@github.com:mallard/pond.git", "git@github.com:mallard/pond.git"),
    ("just-a-name", "just-a-name"),
])
def test_expand_source(source, expected):
    assert expand_source(source) == expected


@pytest.mark.parametrize("source, expected", [
    ("https://github.com/mallard/pond.git", "pond"),
    ("git@github.com:mallard/pond.git", "pond"),
    ("/srv/libs/pond/", "pond"),
])
def test_default_name(source, expected):
    assert default_name(source) == expected


def test_install_clones_and_records_the_commit(git, manager):
    info = manager.install("mallard/pond")
    assert info == {"name": "pond", "source": "https://github.com/mallard/pond.git",
                    "commit": "c1", "history": []}
    clone, _ = git.commands[0]
    assert clone[:4] == ["git", "clone", "--depth", "1"]
    with open(manager.manifest_path) as f:
        assert yaml.safe_load(f)["pond"]["commit"] == "c1"
    assert resolve_library("pond", home=manager.home).endswith(os.path.join("pond", "main.duck"))


def test_install_with_explicit_name(git, manager):
    assert manager.install("mallard/pond", name="lake")["name"] == "lake"
    assert [lib["name"] for lib in manager.list()] == ["lake"]


def test_install_twice_is_refused(git, manager):
    manager.install("mallard/pond")
    with pytest.raises(PackageError, match="already installed"):
        manager.install("mallard/pond")


def test_failed_clone_raises_with_git_output(git, manager):
    git.fail_on = "clone"
    with pytest.raises(PackageError, match="fatal: nope"):
        manager.install("mallard/pond")
    assert manager.list() == []


def test_missing_git_binary(monkeypatch, manager):
    def no_git(*args, **kwargs):
        raise FileNotFoundError("git")

    monkeypatch.setattr(duck_packages.subprocess, "run", no_git)
    with pytest.raises(PackageError, match="not installed"):
        manager.install("mallard/pond")


def test_update_then_rollback(git, manager):
    manager.install("mallard/pond")
    git.upstream = "c2"
    assert manager.update() == [{"name": "pond", "old": "c1", "new": "c2"}]
    assert manager.list()[0]["history"] == ["c1"]

    assert manager.rollback("pond") == "c1"
    entry = manager.list()[0]
    assert entry["commit"] == "c1"
    assert entry["history"] == []
    reset, _ = git.commands[-1]
    assert reset == ["git", "reset", "--hard", "c1"]


def test_update_without_changes_reports_nothing(git, manager):
    manager.install("mallard/pond")
    assert manager.update(["pond"]) == []


def test_update_unknown_library(git, manager):
    with pytest.raises(PackageError, match="not installed"):
        manager.update(["ghost"])


def test_rollback_needs_history(git, manager):
    manager.install("mallard/pond")
    with pytest.raises(PackageError, match="no earlier version"):
        manager.rollback("pond")


def test_resolve_library_prefers_named_entry_file(tmp_path):
    lib = tmp_path / "libs" / "pond"
    lib.mkdir(parents=True)
    (lib / "main.duck").write_text("")
    (lib / "pond.duck").write_text("")
    assert resolve_library("pond", home=str(tmp_path)) == str(lib / "pond.duck")


def test_resolve_missing_library(tmp_path):
    with pytest.raises(DuckRuntimeError, match="not installed"):
        resolve_library("ghost", home=str(tmp_path))
