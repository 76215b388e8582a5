"""Path and snapshot validation for the orchestrator API.

The orchestrator rejects unsafe paths at the boundary with the same rule the
sync agent applies before writing, so a bad path never reaches a VM.
"""

from __future__ import annotations

from preview_protocol import UnsafePathError, normalize_relative_path, normalize_snapshot
from preview_orchestrator.errors import InvalidPathError, ValidationError

_REASON_MESSAGES = {
    "empty_path": "cannot be empty",
    "null_byte": "contains invalid characters",
    "backslash": "must use forward slashes",
    "absolute_path": "must be a relative path",
    "path_traversal": "escapes the project root",
    "project_root": "must name a file below the project root",
    "duplicate_path": "appears more than once after normalization",
}


def _invalid(exc: UnsafePathError, field_name: str) -> InvalidPathError:
    reason_text = _REASON_MESSAGES.get(exc.reason, exc.reason)
    return InvalidPathError(
        message=f"{field_name} {reason_text}: {exc.path!r}",
        details={"field": field_name, "reason": exc.reason, "path": exc.path},
    )


def validate_relative_path(path: str, *, field_name: str = "path") -> str:
    """Validate and normalize a project-relative path.

    Examples:
        >>> validate_relative_path("./src/../index.html")
        'index.html'
        >>> validate_relative_path("../etc/passwd")
        InvalidPathError  # escapes the project root

    Raises:
        InvalidPathError: If validation fails
    """
    try:
        return normalize_relative_path(path)
    except UnsafePathError as e:
        raise _invalid(e, field_name) from e


def validate_snapshot(files: dict[str, str], *, field_name: str = "files") -> dict[str, str]:
    """Validate a full snapshot and return it with normalized keys.

    Raises:
        ValidationError: If the snapshot is empty
        InvalidPathError: If any path is unsafe
    """
    if not files:
        raise ValidationError(
            message=f"{field_name} must contain at least one file",
            details={"field": field_name, "reason": "empty_snapshot"},
        )
    try:
        return normalize_snapshot(files)
    except UnsafePathError as e:
        raise _invalid(e, field_name) from e
