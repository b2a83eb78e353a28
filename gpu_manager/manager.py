"""Per-boot decision: what to do with the discrete GPU.

GPUManager runs once per boot. It reads the previous boot's snapshot, builds
the current one, gathers driver state and walks a small decision tree:

    single card:
        Intel + offloading + nvidia unloaded  -> PRIME on the card found in
                                                 the disabled-card markers
        AMD + changed + amdgpu-pro PX stack   -> reset the PX helper
        NVIDIA                                -> drop the offload snippet
    several cards (boot display is Intel):
        changed + amdgpu-pro PX stack         -> PX power saving mode
        offloading + i915 + nvidia usable     -> PRIME
        otherwise                             -> desktop, nothing to do

The current snapshot is then written as the next boot's "previous" one.
"""

import logging
import os
from dataclasses import dataclass, fields
from enum import Enum, IntEnum
from typing import Optional, Tuple

from gpu_manager.config import Settings
from gpu_manager.devices import Device, Snapshot, Vendor, boot_display, first_discrete, should_offload
from gpu_manager.prime import (
    NVIDIA_MODULE,
    PrimeSwitcher,
    clear_offloading,
    read_prime_mode,
    set_offloading,
)
from gpu_manager.snapshot import (
    ReadStatus,
    decode,
    find_disabled_cards,
    has_system_changed,
    read_snapshot,
    write_snapshot,
)
from gpu_manager.system import PxAction, RemoveResult, System, create_system
from gpu_manager.system.cmdline import DISABLE_PARAM

logger = logging.getLogger(__name__)


class ExitStatus(IntEnum):
    OK = 0
    FAILURE = 1
    DISABLED = 2


class Decision(Enum):
    """What the decision tree ended up doing."""

    NO_BOOT_DISPLAY = "no_boot_display"
    NO_DISCRETE = "no_discrete"
    NOTHING_TO_DO = "nothing_to_do"
    PRIME_ENABLED = "prime_enabled"
    PRIME_FAILED = "prime_failed"
    AMDGPU_PRO_RESET = "amdgpu_pro_reset"
    AMDGPU_PRO_POWERSAVING = "amdgpu_pro_powersaving"
    OFFLOAD_CONFIG_REMOVED = "offload_config_removed"
    DESKTOP = "desktop"
    UNSUPPORTED_VENDOR = "unsupported_vendor"


@dataclass
class DriverState:
    """Driver/module flags probed once at startup."""

    nvidia_loaded: bool = False
    nvidia_unloaded: bool = False
    nvidia_blacklisted: bool = False
    intel_loaded: bool = False
    radeon_loaded: bool = False
    radeon_blacklisted: bool = False
    amdgpu_loaded: bool = False
    amdgpu_blacklisted: bool = False
    amdgpu_versioned: bool = False
    amdgpu_pro_px_installed: bool = False
    nouveau_loaded: bool = False
    nouveau_blacklisted: bool = False
    nvidia_kmod_available: bool = False
    amdgpu_kmod_available: bool = False

    @property
    def amdgpu_is_pro(self) -> bool:
        return self.amdgpu_kmod_available and self.amdgpu_versioned

    @property
    def amdgpu_pro_px(self) -> bool:
        """amdgpu-pro with its PX helper: a PowerXpress system."""
        return self.amdgpu_loaded and self.amdgpu_is_pro and self.amdgpu_pro_px_installed

    def log(self) -> None:
        for f in fields(self):
            logger.info(f"{f.name}? {'yes' if getattr(self, f.name) else 'no'}")
        logger.info(f"amdgpu_is_pro? {'yes' if self.amdgpu_is_pro else 'no'}")


class GPUManager:
    """Decides and applies the discrete GPU configuration for this boot.

    Example:
        manager = GPUManager(Settings())
        status = manager.run()
    """

    def __init__(self, settings: Settings, system: Optional[System] = None):
        self.settings = settings
        self.system = system or create_system(settings)
        self.switcher = PrimeSwitcher(
            modules=self.system.modules,
            actions=self.system.actions,
            xorg=self.system.xorg,
            power=self.system.power,
        )

    def gather_driver_state(self) -> DriverState:
        modules = self.system.modules
        nvidia_loaded = modules.is_loaded(NVIDIA_MODULE)

        state = DriverState(
            nvidia_loaded=nvidia_loaded,
            nvidia_unloaded=not nvidia_loaded and self._was_loaded(NVIDIA_MODULE),
            nvidia_blacklisted=modules.is_blacklisted("nvidia"),
            intel_loaded=modules.is_loaded("i915") or modules.is_loaded("i810"),
            radeon_loaded=modules.is_loaded("radeon"),
            radeon_blacklisted=modules.is_blacklisted("radeon"),
            amdgpu_loaded=modules.is_loaded("amdgpu"),
            amdgpu_blacklisted=modules.is_blacklisted("amdgpu"),
            amdgpu_versioned=modules.is_versioned("amdgpu"),
            amdgpu_pro_px_installed=self.system.px.is_installed(),
            nouveau_loaded=modules.is_loaded("nouveau"),
            nouveau_blacklisted=modules.is_blacklisted("nouveau"),
        )

        if self.settings.fake_lspci_file:
            state.nvidia_kmod_available = self.settings.fake_module_available
            state.amdgpu_kmod_available = self.settings.fake_module_available
            state.amdgpu_versioned = self.settings.fake_module_versioned
        else:
            state.nvidia_kmod_available = modules.is_available("nvidia")
            state.amdgpu_kmod_available = modules.is_available("amdgpu")

        return state

    def _was_loaded(self, module: str) -> bool:
        """A marker left behind when ``module`` was loaded in this boot."""
        marker = os.path.join(self.settings.gpu_detection_path, f"u-d-c-{module}-was-loaded")
        if os.path.exists(marker):
            logger.info(f"{module} was unloaded")
            return True
        return False

    def current_devices(self) -> Tuple[Optional[Snapshot], bool]:
        """Current snapshot and whether it requires offloading."""
        fake_lspci_file = self.settings.fake_lspci_file
        if fake_lspci_file:
            logger.info(f"fake_lspci_file: {fake_lspci_file}")
            try:
                with open(fake_lspci_file, "r", errors="replace") as f:
                    snapshot = decode(f.read())
            except (IOError, OSError) as e:
                logger.error(f"Can't read {fake_lspci_file}: {e}")
                return None, False
            return snapshot, self.settings.fake_requires_offloading

        snapshot = self.system.enumerator.enumerate()
        if snapshot is None:
            return None, False
        return snapshot, should_offload(snapshot)

    def run(self) -> ExitStatus:
        if self.system.cmdline.is_disabled():
            logger.info(f"Disabled by kernel parameter \"{DISABLE_PARAM}\"")
            return ExitStatus.DISABLED

        logger.info(f"last_boot_file: {self.settings.last_boot_file}")
        logger.info(f"new_boot_file: {self.settings.boot_file_to_write}")
        logger.info(f"prime_settings file: {self.settings.prime_settings}")

        state = self.gather_driver_state()
        state.log()
        self.system.cmdline.report_intel_driver()

        # Read the data from last boot
        read_status, previous = read_snapshot(self.settings.last_boot_file)
        if read_status is ReadStatus.FAILED:
            logger.error(f"Can't read {self.settings.last_boot_file}")
            return ExitStatus.FAILURE
        logger.info(f"last cards number = {len(previous)}")

        current, offloading = self.current_devices()
        if current is None:
            logger.error("Can't detect the current graphics cards")
            return ExitStatus.FAILURE

        logger.info(f"Does it require offloading? {'yes' if offloading else 'no'}")

        # Tells other apps such as nvidia-prime whether to offload rendering
        if not offloading:
            clear_offloading(self.settings.offloading_conf, self.settings.dry_run)

        if read_status is ReadStatus.CREATED:
            logger.info("First boot: no previous configuration to compare with")
            has_changed = False
        else:
            has_changed = has_system_changed(previous, current)
        logger.info(f"Has the system changed? {'Yes' if has_changed else 'No'}")

        decision = self.decide(current, state, offloading, has_changed)
        logger.info(f"Decision: {decision.value}")

        # Written whatever the decision was
        if not write_snapshot(self.settings.boot_file_to_write, current):
            logger.error(f"Can't write to {self.settings.boot_file_to_write}")
            return ExitStatus.FAILURE

        return ExitStatus.OK

    def decide(
        self,
        current: Snapshot,
        state: DriverState,
        offloading: bool,
        has_changed: bool,
    ) -> Decision:
        boot_device = boot_display(current)
        if boot_device is None:
            logger.info("No boot display controller detected")
            return Decision.NO_BOOT_DISPLAY

        if len(current) == 1:
            logger.info("Single card detected")
            return self._decide_single(current, boot_device, state, offloading, has_changed)

        discrete_device = first_discrete(current)
        if discrete_device is None:
            return Decision.NO_DISCRETE

        if boot_device.vendor is not Vendor.INTEL:
            logger.info(f"Unsupported discrete card vendor: {discrete_device.vendor_id:x}")
            logger.info("Nothing to do")
            return Decision.UNSUPPORTED_VENDOR

        logger.info("Intel IGP detected")
        if has_changed and state.amdgpu_pro_px:
            # Switchable graphics got enabled in the BIOS again
            logger.info("AMDGPU-Pro switchable graphics detected")
            self.system.actions.run_vendor_helper(PxAction.MODE_POWERSAVING)
            return Decision.AMDGPU_PRO_POWERSAVING

        if offloading and (
            state.intel_loaded
            and not state.nouveau_loaded
            and (state.nvidia_loaded or state.nvidia_kmod_available)
        ):
            logger.info("Intel hybrid system")
            return self._enable_prime(discrete_device)

        logger.info("Desktop system detected")
        logger.info("or laptop with open drivers")
        logger.info("Nothing to do")
        return Decision.DESKTOP

    def _decide_single(
        self,
        current: Snapshot,
        boot_device: Device,
        state: DriverState,
        offloading: bool,
        has_changed: bool,
    ) -> Decision:
        match boot_device.vendor:
            case Vendor.INTEL:
                if offloading and state.nvidia_unloaded:
                    logger.info("PRIME detected")
                    # The discrete card is powered down; its marker file is all we have
                    rediscovered = current.extended(
                        find_disabled_cards(self.settings.gpu_detection_path)
                    )
                    logger.info(f"Total number of cards is {len(rediscovered)} now")
                    discrete_device = first_discrete(rediscovered)
                    if discrete_device is None:
                        return Decision.NO_DISCRETE
                    return self._enable_prime(discrete_device)

            case Vendor.AMD:
                if has_changed and state.amdgpu_pro_px:
                    # The PX helper is installed but only one card shows up: the
                    # user disabled switchable graphics in the BIOS
                    logger.info("AMDGPU-Pro discrete graphics detected")
                    self.system.actions.run_vendor_helper(PxAction.RESET)
                    return Decision.AMDGPU_PRO_RESET

            case Vendor.NVIDIA:
                if self.system.xorg.remove_offload_config() is not RemoveResult.NOT_FOUND:
                    return Decision.OFFLOAD_CONFIG_REMOVED

        logger.info("Nothing to do")
        return Decision.NOTHING_TO_DO

    def _enable_prime(self, discrete_device: Device) -> Decision:
        mode = read_prime_mode(self.settings.prime_settings)
        if not self.switcher.switch(mode, discrete_device):
            logger.info("Nothing to do")
            return Decision.PRIME_FAILED

        # Write permanent settings about offloading
        set_offloading(self.settings.offloading_conf, self.settings.dry_run)
        return Decision.PRIME_ENABLED
