"""
Path safety utilities for embedded-mongo.

Archive member names come from downloaded, untrusted data. This module
validates them before anything is written so an archive cannot escape its
extraction root or overwrite the completion marker.
"""
from __future__ import annotations

from pathlib import PurePosixPath

MARKER_NAME = ".embedmongo-extracted.json"


def safe_member_path(path: str) -> str:
    """
    Validate and normalize an archive member name.

    This function enforces the following safety rules:
    - No empty strings or "." (prevents root directory access)
    - No absolute paths (starting with '/')
    - No parent directory references ('..' components)
    - No backslashes or drive letters
    - No use of the completion marker name at the archive root

    Args:
        path: Member name as stored in the archive

    Returns:
        Normalized relative path safe for use

    Raises:
        ValueError: If path violates safety rules

    Examples:
        >>> safe_member_path("mongodb-linux-x86_64-4.2.0/bin/mongod")
        'mongodb-linux-x86_64-4.2.0/bin/mongod'

        >>> safe_member_path("./bin/mongod")
        'bin/mongod'

        >>> safe_member_path("../secrets.txt")
        ValueError: unsafe path: ../secrets.txt
    """
    rel = PurePosixPath(path)
    s = str(rel)
    if not s or s == ".":
        raise ValueError(f"unsafe path: {path}")
    if "\\" in s or ":" in rel.parts[0]:
        raise ValueError(f"unsafe path: {path}")
    if rel.is_absolute() or ".." in rel.parts or s == MARKER_NAME:
        raise ValueError(f"unsafe path: {path}")
    return s
