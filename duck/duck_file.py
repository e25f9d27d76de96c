from __future__ import annotations
import os
from typing import Optional


def resolve_path(path: str, base_dir: Optional[str]) -> str:
    """Resolves a script-relative path; absolute and ~ paths pass through."""
    if path.startswith("~"):
        return os.path.expanduser(path)
    if os.path.isabs(path):
        return os.path.normpath(path)
    base = base_dir or os.getcwd()
    return os.path.normpath(os.path.join(base, path))


def read_file(path: str, *, base_dir: Optional[str] = None) -> str:
    full = resolve_path(path, base_dir)
    with open(full, "r", encoding="utf-8") as f:
        return f.read()


def write_file(path: str, text: str, *, base_dir: Optional[str] = None) -> None:
    full = resolve_path(path, base_dir)
    os.makedirs(os.path.dirname(full) or ".", exist_ok=True)
    with open(full, "w", encoding="utf-8") as f:
        f.write(text)


def append_file(path: str, text: str, *, base_dir: Optional[str] = None) -> None:
    full = resolve_path(path, base_dir)
    os.makedirs(os.path.dirname(full) or ".", exist_ok=True)
    with open(full, "a", encoding="utf-8") as f:
        f.write(text)


def file_exists(path: str, *, base_dir: Optional[str] = None) -> bool:
    return os.path.isfile(resolve_path(path, base_dir))
