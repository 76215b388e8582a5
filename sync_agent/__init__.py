"""Sync Agent - in-VM file sync and dev-server supervisor."""

from importlib.metadata import PackageNotFoundError, version

# Both packages ship in the preview-orchestrator distribution
try:
    __version__ = version("preview-orchestrator")
except PackageNotFoundError:
    __version__ = "unknown"
