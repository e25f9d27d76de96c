"""
Installed Duck libraries: a git clone per library under DUCK_HOME/libs and
a YAML manifest (DUCK_HOME/libs.yaml) recording where each came from, the
checked-out commit and the commits it was updated away from.
"""
import os
import shutil
import subprocess
from typing import Dict, List, Optional

import yaml

from duck.duck_datatypes import DuckRuntimeError, ErrorKind

GIT_TIMEOUT = 120
ENTRY_FILES = ("{name}.duck", "main.duck", "lib.duck")


class PackageError(Exception):
    """Raised when a library operation fails."""


def duck_home() -> str:
    return os.environ.get("DUCK_HOME") or os.path.join(os.path.expanduser("~"), ".duck")


def resolve_library(name: str, home: Optional[str] = None) -> str:
    """Path of the entry file of installed library `name` (for `migrate "@name"`)."""
    lib_dir = os.path.join(home or duck_home(), "libs", name)
    for pattern in ENTRY_FILES:
        candidate = os.path.join(lib_dir, pattern.format(name=name))
        if os.path.isfile(candidate):
            return candidate
    raise DuckRuntimeError(
        f"Library '@{name}' is not installed (looked in {lib_dir}); try: goose install <source> --name {name}",
        kind=ErrorKind.FILE_ERROR)


def expand_source(source: str) -> str:
    # `user/repo` shorthand means a GitHub repository
    if "://" in source or source.startswith("git@") or os.path.exists(source):
        return source
    parts = source.split("/")
    if len(parts) == 2 and all(parts):
        return f"https://github.com/{source}.git"
    return source


def default_name(source: str) -> str:
    base = source.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    if base.endswith(".git"):
        base = base[:-4]
    return base


class LibraryManager:
    def __init__(self, home: Optional[str] = None):
        self.home = home or duck_home()
        self.libs_dir = os.path.join(self.home, "libs")
        self.manifest_path = os.path.join(self.home, "libs.yaml")

    # --- Manifest ---

    def _load(self) -> Dict[str, Dict]:
        if not os.path.isfile(self.manifest_path):
            return {}
        with open(self.manifest_path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise PackageError(f"Corrupt library manifest {self.manifest_path}: {e}") from e
        return data or {}

    def _save(self, manifest: Dict[str, Dict]):
        os.makedirs(self.home, exist_ok=True)
        with open(self.manifest_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(manifest, f, sort_keys=True)

    # --- git ---

    def _git(self, *args: str, cwd: Optional[str] = None) -> str:
        command = ["git", *args]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT,
                cwd=cwd,
            )
        except FileNotFoundError:
            raise PackageError("git is not installed or not on PATH") from None
        except subprocess.TimeoutExpired:
            raise PackageError(f"'{' '.join(command)}' timed out after {GIT_TIMEOUT}s") from None
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise PackageError(f"'{' '.join(command)}' failed: {detail}")
        return result.stdout.strip()

    def _head(self, path: str) -> str:
        return self._git("rev-parse", "HEAD", cwd=path)

    def _entry(self, manifest: Dict[str, Dict], name: str) -> Dict:
        entry = manifest.get(name)
        if entry is None:
            raise PackageError(f"Library '{name}' is not installed")
        return entry

    # --- Operations ---

    def install(self, source: str, name: Optional[str] = None) -> Dict:
        url = expand_source(source)
        name = name or default_name(url)
        if not name:
            raise PackageError(f"Cannot derive a library name from '{source}'; pass --name")
        manifest = self._load()
        target = os.path.join(self.libs_dir, name)
        if name in manifest or os.path.exists(target):
            raise PackageError(f"Library '{name}' is already installed")
        os.makedirs(self.libs_dir, exist_ok=True)
        self._git("clone", "--depth", "1", url, target)
        try:
            commit = self._head(target)
        except PackageError:
            shutil.rmtree(target, ignore_errors=True)
            raise
        entry = {"source": url, "commit": commit, "history": []}
        manifest[name] = entry
        self._save(manifest)
        return {"name": name, **entry}

    def list(self) -> List[Dict]:
        manifest = self._load()
        return [{"name": name, **manifest[name]} for name in sorted(manifest)]

    def update(self, names: Optional[List[str]] = None) -> List[Dict]:
        """Pulls each library; returns {name, old, new} for every one that moved."""
        manifest = self._load()
        targets = list(names) if names else sorted(manifest)
        changed = []
        for name in targets:
            entry = self._entry(manifest, name)
            path = os.path.join(self.libs_dir, name)
            old = entry.get("commit") or self._head(path)
            self._git("pull", "--ff-only", cwd=path)
            new = self._head(path)
            if new != old:
                entry.setdefault("history", []).append(old)
                entry["commit"] = new
                changed.append({"name": name, "old": old, "new": new})
        self._save(manifest)
        return changed

    def rollback(self, name: str) -> str:
        """Checks out the commit the library had before its last update."""
        manifest = self._load()
        entry = self._entry(manifest, name)
        history = entry.get("history") or []
        if not history:
            raise PackageError(f"Library '{name}' has no earlier version to roll back to")
        previous = history[-1]
        path = os.path.join(self.libs_dir, name)
        try:
            self._git("reset", "--hard", previous, cwd=path)
        except PackageError:
            # Shallow clones may not contain the old commit yet
            self._git("fetch", "--unshallow", cwd=path)
            self._git("reset", "--hard", previous, cwd=path)
        history.pop()
        entry["history"] = history
        entry["commit"] = previous
        self._save(manifest)
        return previous
