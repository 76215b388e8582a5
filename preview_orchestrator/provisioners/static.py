"""Static provisioner - one pre-provisioned VM.

Used for local development: the sync agent and dev server run on fixed
addresses (e.g. a local container) and are never created or destroyed.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from preview_orchestrator.config import StaticProvisionerConfig
from preview_orchestrator.provisioners.base import Provisioner, VMInfo, VMState

logger = structlog.get_logger()


class StaticProvisioner(Provisioner):
    def __init__(self, config: StaticProvisionerConfig | None = None) -> None:
        self._config = config or StaticProvisionerConfig()
        self._log = logger.bind(provisioner="static")

    @property
    def name(self) -> str:
        return "static"

    async def ensure_vm(
        self,
        workspace_id: str,
        on_vm_id: Callable[[str], None] | None = None,
    ) -> VMInfo:
        self._log.info("provisioner.static.acquire", workspace_id=workspace_id)
        if on_vm_id is not None:
            on_vm_id(self._config.vm_id)
        return VMInfo(
            vm_id=self._config.vm_id,
            sync_url=self._config.sync_url,
            preview_url=self._config.preview_url,
            address=self._config.address,
            region="local",
        )

    async def destroy_vm(self, vm_id: str) -> None:
        # The VM outlives sessions; nothing to tear down
        self._log.info("provisioner.static.release", vm_id=vm_id)

    async def status(self, vm_id: str) -> VMState:
        if vm_id != self._config.vm_id:
            return VMState.NOT_FOUND
        return VMState.STARTED
