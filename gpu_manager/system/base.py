"""Protocols for the system collaborators the decision engine talks to."""

from enum import Enum
from typing import Optional, Protocol

from gpu_manager.devices import Device, Snapshot


class RemoveResult(Enum):
    """Outcome of removing a generated configuration file."""

    REMOVED = "removed"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class PxAction(Enum):
    """Actions understood by the AMD switchable graphics helper."""

    MODE_POWERSAVING = "mode powersaving"
    MODE_PERFORMANCE = "mode performance"
    RESET = "reset"
    ISPX = "ispx"


class ModuleStatus(Protocol):
    """Read-only view of kernel driver modules."""

    def is_loaded(self, name: str) -> bool:
        ...

    def is_blacklisted(self, name: str) -> bool:
        ...

    def is_available(self, name: str) -> bool:
        """Check if a module was built for the running kernel (DKMS)."""
        ...

    def is_versioned(self, name: str) -> bool:
        ...


class ProcessActions(Protocol):
    """Side effects that run external processes.

    Every method reports failure through its return value and never raises.
    """

    def load_module(self, name: str) -> bool:
        ...

    def unload_module(self, name: str) -> bool:
        ...

    def terminate_session(self, backend: str) -> Optional[int]:
        """Kill the display session running ``backend``.

        Returns:
            The PID that was killed, or None if no session was found or the
            kill failed
        """
        ...

    def run_vendor_helper(self, action: PxAction) -> bool:
        ...


class XorgConfig(Protocol):
    """Generates and removes display-server configuration snippets."""

    def publish_offload_config(self) -> bool:
        ...

    def publish_always_discrete_config(self) -> bool:
        ...

    def remove_offload_config(self) -> RemoveResult:
        ...

    def remove_always_discrete_config(self) -> RemoveResult:
        ...


class PowerControl(Protocol):
    """PCI runtime power management of a single device."""

    def set_power_management(self, device: Device, enabled: bool) -> bool:
        """Write "auto" (enabled) or "on" (disabled) to the device's power control."""
        ...


class DeviceEnumerator(Protocol):
    """Lists the display controllers currently on the PCI bus."""

    def enumerate(self) -> Optional[Snapshot]:
        """Return the live snapshot with output status filled in, or None on failure."""
        ...
