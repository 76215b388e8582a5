"""Provisioner base class - VM infrastructure abstraction.

A provisioner is responsible ONLY for VM lifecycle management.
It does NOT handle:
- Session bookkeeping
- Talking to the sync agent
- Retries across sessions

All VMs created by a provisioner are tagged with the workspace id so an
existing VM can be reacquired ("acquire or create").
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum


class VMState(str, Enum):
    """VM state from the provisioner's perspective."""

    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DESTROYED = "destroyed"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass
class VMInfo:
    """A VM ready to serve one workspace's preview."""

    vm_id: str
    sync_url: str  # Sync agent base URL (private network)
    preview_url: str  # Public dev-server URL
    address: str | None = None
    region: str | None = None
    state: VMState = VMState.STARTED


class ProvisionerError(Exception):
    """The VM infrastructure rejected or failed a request."""


class Provisioner(ABC):
    """Abstract provisioner interface."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provisioner name (for logging)."""
        ...

    @abstractmethod
    async def ensure_vm(
        self,
        workspace_id: str,
        on_vm_id: Callable[[str], None] | None = None,
    ) -> VMInfo:
        """Return a started VM for the workspace, creating one if needed.

        ``on_vm_id`` is called with the VM id as soon as the VM exists, before
        it has started, so a caller that abandons the wait can still destroy it.

        Raises:
            ProvisionerError: If no VM could be made available
        """
        ...

    @abstractmethod
    async def destroy_vm(self, vm_id: str) -> None:
        """Destroy a VM.

        Idempotent: destroying an unknown VM is not an error.
        """
        ...

    @abstractmethod
    async def status(self, vm_id: str) -> VMState:
        """Current VM state (NOT_FOUND if the VM does not exist)."""
        ...

    async def close(self) -> None:
        """Release provisioner resources."""
        return None
