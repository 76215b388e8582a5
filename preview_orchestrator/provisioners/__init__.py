"""VM provisioners."""

from preview_orchestrator.provisioners.base import (
    Provisioner,
    ProvisionerError,
    VMInfo,
    VMState,
)
from preview_orchestrator.provisioners.fly import FlyProvisioner
from preview_orchestrator.provisioners.static import StaticProvisioner

__all__ = [
    "FlyProvisioner",
    "Provisioner",
    "ProvisionerError",
    "StaticProvisioner",
    "VMInfo",
    "VMState",
]
