"""Validation utilities for the orchestrator API."""

from preview_orchestrator.validators.path import validate_relative_path, validate_snapshot

__all__ = ["validate_relative_path", "validate_snapshot"]
