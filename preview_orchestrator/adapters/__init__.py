"""Adapters for talking to preview VMs."""

from preview_orchestrator.adapters.sync_agent import SyncAgentClient

__all__ = ["SyncAgentClient"]
