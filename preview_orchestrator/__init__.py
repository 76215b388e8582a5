"""Preview Orchestrator - per-workspace live preview sessions."""

from importlib.metadata import PackageNotFoundError, version

# Both packages ship in the preview-orchestrator distribution
try:
    __version__ = version("preview-orchestrator")
except PackageNotFoundError:
    __version__ = "unknown"
