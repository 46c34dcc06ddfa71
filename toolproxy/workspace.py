"""Workspace confinement: maps tool-supplied paths into the workspace root."""

from __future__ import annotations

import os
from pathlib import Path


class PathEscapeError(ValueError):
    """The path resolves outside the workspace root."""


def is_within(path: str, root: str) -> bool:
    """True if ``path`` equals ``root`` or lies beneath it (both canonical)."""
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def resolve_in_root(root: str | Path, candidate: str | Path) -> Path:
    """Resolve ``candidate`` against ``root`` and return its canonical form.

    Handles ``..`` traversal, absolute paths and symlinks (``realpath``
    follows every link that exists on disk). Raises ``PathEscapeError`` if the
    result is not the root or a descendant of it.
    """
    root_real = os.path.realpath(os.fspath(root))
    joined = os.path.join(root_real, os.fspath(candidate))
    try:
        resolved = os.path.realpath(joined)
    except (OSError, ValueError) as e:
        raise PathEscapeError(f"Cannot resolve path {candidate!r}: {e}") from e

    if not is_within(resolved, root_real):
        raise PathEscapeError(f"Path {os.fspath(candidate)!r} is outside the workspace root")
    return Path(resolved)
