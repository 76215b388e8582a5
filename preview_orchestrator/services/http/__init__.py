"""HTTP client service package."""

from preview_orchestrator.services.http.client import (
    HTTPClientManager,
    get_shared_client,
    http_client_manager,
)

__all__ = [
    "HTTPClientManager",
    "get_shared_client",
    "http_client_manager",
]
