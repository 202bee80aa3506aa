"""Resolution and sandboxing of `@file` references against a project root."""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def is_absolute_reference(ref: str) -> bool:
    """Return True for `/abs/path` and drive-letter references like `C:\\x`."""
    return bool(ref) and (ref[0] == "/" or (len(ref) > 1 and ref[1] == ":"))


def weakly_canonical(path: str | os.PathLike) -> str:
    """Resolve symlinks and `..` where possible; never raise."""
    try:
        return str(Path(path).resolve(strict=False))
    except (OSError, RuntimeError) as exc:
        logger.debug("Could not canonicalize %s: %s", path, exc)
        return str(path)


def resolve(ref: str, project_root: str | os.PathLike) -> str:
    """Resolve a file reference to an absolute path.

    Relative references are joined to `project_root` before
    canonicalization.  The result may point outside the root; use
    `is_allowed` before reading it.
    """
    if is_absolute_reference(ref):
        return weakly_canonical(ref)
    return weakly_canonical(os.path.join(str(project_root), ref))


def is_allowed(path: str | os.PathLike, project_root: str | os.PathLike) -> bool:
    """Return True only for existing regular files inside `project_root`."""
    root = weakly_canonical(os.path.abspath(project_root))
    target = weakly_canonical(os.path.abspath(path))
    try:
        rel = os.path.relpath(target, root)
    except ValueError:
        # Different drives on Windows
        return False
    if rel.replace(os.sep, "/").split("/", 1)[0] == "..":
        return False
    return os.path.isfile(target)


def relative_display(path: str | os.PathLike, project_root: str | os.PathLike) -> str:
    """POSIX-style path relative to the root, used in headers and summaries."""
    root = weakly_canonical(os.path.abspath(project_root))
    try:
        rel = os.path.relpath(weakly_canonical(path), root)
    except ValueError:
        return str(path)
    rel = rel.replace(os.sep, "/")
    if rel.split("/", 1)[0] == "..":
        return str(path)
    return rel
