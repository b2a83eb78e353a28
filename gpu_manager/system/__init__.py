"""Concrete system collaborators and the factory that wires them from Settings."""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from gpu_manager.system.amdgpu_pro import AmdgpuProPx
from gpu_manager.system.base import (
    DeviceEnumerator,
    ModuleStatus,
    PowerControl,
    ProcessActions,
    PxAction,
    RemoveResult,
    XorgConfig,
)
from gpu_manager.system.cmdline import KernelCommandLine
from gpu_manager.system.kmod import KernelModules
from gpu_manager.system.pci import PciPowerControl, SysfsEnumerator
from gpu_manager.system.sessions import DisplaySessionKiller
from gpu_manager.system.xorg import XorgConfigWriter

if TYPE_CHECKING:
    from gpu_manager.config import Settings

__all__ = [
    "DeviceEnumerator",
    "ModuleStatus",
    "PowerControl",
    "ProcessActions",
    "PxAction",
    "RemoveResult",
    "XorgConfig",
    "System",
    "SystemActions",
    "create_system",
]


class SystemActions:
    """ProcessActions backed by modprobe/rmmod, kill and the amdgpu-pro helper."""

    def __init__(self, modules: KernelModules, sessions: DisplaySessionKiller, px: AmdgpuProPx):
        self._modules = modules
        self._sessions = sessions
        self._px = px

    def load_module(self, name: str) -> bool:
        return self._modules.load_module(name)

    def unload_module(self, name: str) -> bool:
        return self._modules.unload_module(name)

    def terminate_session(self, backend: str) -> Optional[int]:
        return self._sessions.terminate_session(backend)

    def run_vendor_helper(self, action: PxAction) -> bool:
        return self._px.run_vendor_helper(action)


@dataclass
class System:
    """Everything GPUManager needs from the outside world."""

    modules: ModuleStatus
    actions: ProcessActions
    xorg: XorgConfig
    power: PowerControl
    enumerator: DeviceEnumerator
    cmdline: KernelCommandLine
    px: AmdgpuProPx


def create_system(settings: "Settings") -> System:
    """Factory function building the live collaborators from settings."""
    modules = KernelModules(
        proc_modules_path=settings.proc_modules_path,
        modprobe_d_path=settings.modprobe_d_path,
        kernel_modules_path=settings.kernel_modules_path,
        dry_run=settings.dry_run,
    )
    px = AmdgpuProPx(settings.amdgpu_pro_px_file, dry_run=settings.dry_run)
    sessions = DisplaySessionKiller(dry_run=settings.dry_run)

    return System(
        modules=modules,
        actions=SystemActions(modules, sessions, px),
        xorg=XorgConfigWriter(settings.xorg_conf_d_path, multiarch=settings.multiarch),
        power=PciPowerControl(settings.sysfs_pci_path),
        enumerator=SysfsEnumerator(settings.sysfs_pci_path, settings.sysfs_drm_path),
        cmdline=KernelCommandLine(settings.proc_cmdline_path),
        px=px,
    )
