"""Project-relative path normalization.

Both sides of the sync protocol apply the same rule: a snapshot key must be a
POSIX path relative to the project root that stays inside it after ``.`` and
``..`` segments are resolved.
"""

from __future__ import annotations

from pathlib import PurePosixPath


class UnsafePathError(ValueError):
    """A snapshot path is empty, absolute, or escapes the project root."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Unsafe path {path!r}: {reason}")


def normalize_relative_path(path: str) -> str:
    """Return the normalized form of ``path`` or raise UnsafePathError.

    Examples:
        >>> normalize_relative_path("src/App.tsx")
        'src/App.tsx'
        >>> normalize_relative_path("./src/../index.html")
        'index.html'
    """
    if not path:
        raise UnsafePathError(path, "empty_path")

    if "\x00" in path:
        raise UnsafePathError(path, "null_byte")

    # Windows separators never reach a POSIX project root
    if "\\" in path:
        raise UnsafePathError(path, "backslash")

    p = PurePosixPath(path)
    if p.is_absolute():
        raise UnsafePathError(path, "absolute_path")

    parts: list[str] = []
    for part in p.parts:
        if part == ".":
            continue
        if part == "..":
            if not parts:
                raise UnsafePathError(path, "path_traversal")
            parts.pop()
        else:
            parts.append(part)

    if not parts:
        raise UnsafePathError(path, "project_root")
    return "/".join(parts)


def normalize_snapshot(files: dict[str, str]) -> dict[str, str]:
    """Normalize every key of a snapshot.

    Two keys that collapse onto the same path are rejected, since the
    resulting file content would depend on iteration order.
    """
    normalized: dict[str, str] = {}
    for raw_path, content in files.items():
        path = normalize_relative_path(raw_path)
        if path in normalized:
            raise UnsafePathError(raw_path, "duplicate_path")
        normalized[path] = content
    return normalized
