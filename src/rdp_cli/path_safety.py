"""
Path safety utilities.

Shared validation for names that end up on the local filesystem: archive
member names and layer buffer files derived from image references.
"""
from __future__ import annotations

import re
from pathlib import Path, PurePosixPath

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_relpath(path: str) -> str:
    """
    Validate and normalize a relative path to prevent traversal attacks.

    This function enforces the following safety rules:
    - No empty strings or "." (prevents root directory access)
    - No absolute paths (starting with '/')
    - No parent directory references ('..' components)
    - No backslashes or NUL bytes

    Args:
        path: Path string

    Returns:
        Normalized relative path safe for use

    Raises:
        ValueError: If path violates safety rules

    Examples:
        >>> safe_relpath("0a1b.tar.gz")
        '0a1b.tar.gz'

        >>> safe_relpath("../secrets.txt")
        ValueError: unsafe path: ../secrets.txt
    """
    rel = PurePosixPath(path)
    s = str(rel)
    if not s or s == ".":
        raise ValueError(f"unsafe path: {path}")
    if "\\" in s or "\x00" in s:
        raise ValueError(f"unsafe path: {path}")
    if rel.is_absolute() or ".." in rel.parts:
        raise ValueError(f"unsafe path: {path}")
    return s


def buffer_filename(ref: str) -> str:
    """
    Flatten an image reference into a single safe file name.

    ``registry:5000/team/model@sha256:ab`` becomes
    ``registry_5000_team_model_sha256_ab``.

    Raises:
        ValueError: If nothing usable is left of *ref*
    """
    name = _UNSAFE_CHARS.sub("_", ref).strip("._")
    if not name:
        raise ValueError(f"cannot derive a file name from reference: {ref!r}")
    return safe_relpath(name)


def buffer_path(layer_dir: str, ref: str) -> Path:
    """Location of the local buffer for *ref* under *layer_dir*."""
    return Path(layer_dir) / buffer_filename(ref)
