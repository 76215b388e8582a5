"""Request/response bodies of the sync agent HTTP surface.

Field names are camelCase on the wire and snake_case in Python.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# path -> full text content, paths relative to the project root
FileSnapshot = dict[str, str]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncRequest(WireModel):
    """Full snapshot push."""

    files: FileSnapshot = Field(..., min_length=1)


class SyncResponse(WireModel):
    success: bool = True
    file_count: int
    installed: bool = False
    restarted: bool = True


class UpdateRequest(WireModel):
    """Single-file write; never reinstalls or restarts."""

    path: str = Field(..., min_length=1)
    content: str


class UpdateResponse(WireModel):
    success: bool = True
    path: str
    updated_at: datetime


class HealthResponse(WireModel):
    status: str = "ok"
    # Named after the dev server the preview images run (Vite)
    vite_running: bool
