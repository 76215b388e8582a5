"""Fly Machines provisioner.

Creates one ephemeral Fly Machine per workspace from the preview base image.
The machine exposes two services:
- dev server (preview_port) on 443/80, public
- sync agent (sync_port) on the private network

Machines are tagged with ``metadata.workspace_id`` so a started machine
left over from an earlier session is reused instead of duplicated.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from preview_orchestrator.config import FlyProvisionerConfig
from preview_orchestrator.provisioners.base import (
    Provisioner,
    ProvisionerError,
    VMInfo,
    VMState,
)
from preview_orchestrator.utils.datetime import utcnow

logger = structlog.get_logger()

METADATA_WORKSPACE_KEY = "workspace_id"
METADATA_MANAGED_BY_KEY = "managed_by"
MANAGED_BY = "preview-orchestrator"

_STATE_MAP = {
    "created": VMState.STARTING,
    "starting": VMState.STARTING,
    "replacing": VMState.STARTING,
    "started": VMState.STARTED,
    "stopping": VMState.STOPPING,
    "stopped": VMState.STOPPED,
    "suspended": VMState.STOPPED,
    "destroying": VMState.DESTROYED,
    "destroyed": VMState.DESTROYED,
    "failed": VMState.FAILED,
}


class FlyAPIError(ProvisionerError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class FlyProvisioner(Provisioner):
    """Provisioner backed by the Fly Machines REST API."""

    def __init__(
        self,
        config: FlyProvisionerConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._owns_client = http_client is None
        self._log = logger.bind(provisioner="fly", app=config.app_name)

    @property
    def name(self) -> str:
        return "fly"

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        if not self._config.api_token:
            raise ProvisionerError("Fly API token is not configured")

        url = f"{self._config.api_base.rstrip('/')}/apps/{self._config.app_name}{path}"
        headers = {"Authorization": f"Bearer {self._config.api_token}"}

        try:
            response = await self._client().request(
                method, url, json=json, params=params, headers=headers
            )
        except httpx.HTTPError as e:
            self._log.error("fly.request_error", method=method, path=path, error=str(e))
            raise FlyAPIError(f"Fly API request error: {e}") from e

        if response.status_code >= 400:
            self._log.warning(
                "fly.request_failed",
                method=method,
                path=path,
                status=response.status_code,
                body=response.text[:500],
            )
            raise FlyAPIError(
                f"Fly API error ({response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
            )

        # DELETE and stop return empty bodies
        if not response.content:
            return {}
        return response.json()

    def _machine_config(self, workspace_id: str) -> dict[str, Any]:
        cfg = self._config
        return {
            "name": f"preview-{workspace_id[:8]}-{int(utcnow().timestamp())}",
            "region": cfg.region,
            "config": {
                "image": cfg.image,
                "auto_destroy": True,
                "restart": {"policy": "no"},
                "guest": {
                    "cpu_kind": "shared",
                    "cpus": cfg.cpus,
                    "memory_mb": cfg.memory_mb,
                },
                "env": {
                    "WORKSPACE_ID": workspace_id,
                    "NODE_ENV": "development",
                },
                "metadata": {
                    METADATA_WORKSPACE_KEY: workspace_id,
                    METADATA_MANAGED_BY_KEY: MANAGED_BY,
                },
                "services": [
                    {
                        "protocol": "tcp",
                        "internal_port": cfg.preview_port,
                        "force_https": True,
                        "ports": [
                            {"port": 443, "handlers": ["tls", "http"]},
                            {"port": 80, "handlers": ["http"]},
                        ],
                    },
                    {
                        "protocol": "tcp",
                        "internal_port": cfg.sync_port,
                        "ports": [{"port": cfg.sync_port, "handlers": ["http"]}],
                    },
                ],
            },
        }

    def _to_vm_info(self, machine: dict[str, Any]) -> VMInfo:
        machine_id = machine["id"]
        private_ip = machine.get("private_ip")
        if not private_ip:
            raise ProvisionerError(f"Machine {machine_id} has no private address")

        # IPv6 private addresses need brackets inside a URL
        host = f"[{private_ip}]" if ":" in private_ip else private_ip
        return VMInfo(
            vm_id=machine_id,
            sync_url=f"http://{host}:{self._config.sync_port}",
            preview_url=f"https://{machine_id}.{self._config.app_name}.fly.dev",
            address=private_ip,
            region=machine.get("region"),
            state=_STATE_MAP.get(machine.get("state", ""), VMState.STARTING),
        )

    async def _find_machine(self, workspace_id: str) -> dict[str, Any] | None:
        machines = await self._request(
            "GET",
            "/machines",
            params={f"metadata.{METADATA_WORKSPACE_KEY}": workspace_id},
        )
        for machine in machines or []:
            metadata = (machine.get("config") or {}).get("metadata") or {}
            if metadata.get(METADATA_WORKSPACE_KEY) != workspace_id:
                continue
            if machine.get("state") in ("started", "starting", "created", "stopped"):
                return machine
        return None

    async def _get_machine(self, machine_id: str) -> dict[str, Any] | None:
        try:
            return await self._request("GET", f"/machines/{machine_id}")
        except FlyAPIError as e:
            if e.status_code == 404:
                return None
            raise

    async def _wait_started(self, machine_id: str) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.machine_start_timeout_seconds

        while True:
            machine = await self._get_machine(machine_id)
            if machine is None:
                raise ProvisionerError(f"Machine {machine_id} not found")

            state = machine.get("state")
            if state == "started":
                return machine
            if state in ("destroyed", "failed"):
                raise ProvisionerError(f"Machine {machine_id} entered terminal state: {state}")

            if loop.time() >= deadline:
                raise ProvisionerError(
                    f"Timeout waiting for machine {machine_id} to start (state={state})"
                )
            await asyncio.sleep(self._config.poll_interval_seconds)

    async def ensure_vm(
        self,
        workspace_id: str,
        on_vm_id: Callable[[str], None] | None = None,
    ) -> VMInfo:
        existing = await self._find_machine(workspace_id)

        if existing is not None:
            machine_id = existing["id"]
            self._log.info(
                "fly.machine.reuse",
                workspace_id=workspace_id,
                machine_id=machine_id,
                state=existing.get("state"),
            )
            if on_vm_id is not None:
                on_vm_id(machine_id)
            if existing.get("state") == "stopped":
                await self._request("POST", f"/machines/{machine_id}/start")
            machine = existing if existing.get("state") == "started" else await self._wait_started(machine_id)
            return self._to_vm_info(machine)

        created = await self._request("POST", "/machines", json=self._machine_config(workspace_id))
        machine_id = created["id"]
        self._log.info(
            "fly.machine.created",
            workspace_id=workspace_id,
            machine_id=machine_id,
            region=created.get("region"),
        )
        if on_vm_id is not None:
            on_vm_id(machine_id)

        try:
            machine = await self._wait_started(machine_id)
        except ProvisionerError:
            await self.destroy_vm(machine_id)
            raise
        return self._to_vm_info(machine)

    async def destroy_vm(self, vm_id: str) -> None:
        try:
            await self._request("POST", f"/machines/{vm_id}/stop")
        except FlyAPIError as e:
            # Already stopped or gone
            self._log.debug("fly.machine.stop_ignored", machine_id=vm_id, error=str(e))

        try:
            await self._request("DELETE", f"/machines/{vm_id}", params={"force": "true"})
        except FlyAPIError as e:
            if e.status_code == 404:
                self._log.info("fly.machine.already_destroyed", machine_id=vm_id)
                return
            raise

        self._log.info("fly.machine.destroyed", machine_id=vm_id)

    async def status(self, vm_id: str) -> VMState:
        machine = await self._get_machine(vm_id)
        if machine is None:
            return VMState.NOT_FOUND
        return _STATE_MAP.get(machine.get("state", ""), VMState.STARTING)
