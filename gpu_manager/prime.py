"""NVIDIA PRIME: the persisted user preference and the mode switch.

The preference file holds one line, ``on``, ``off`` or ``on-demand``. Switching
publishes or removes the matching display-server snippets, sets PCI runtime
power management on the discrete card and loads or unloads the NVIDIA driver.

Unloading may fail because the display session still holds the card. In that
case the session is killed once and the unload retried once; a second failure
is reported, never escalated.
"""

import logging
import os
from enum import Enum
from typing import Optional

from gpu_manager.devices import Device
from gpu_manager.system.base import ModuleStatus, PowerControl, ProcessActions, XorgConfig
from gpu_manager.system.sessions import DISPLAY_SERVERS

logger = logging.getLogger(__name__)

NVIDIA_MODULE = "nvidia"

# Dependent modules first, the core module last
NVIDIA_MODULE_FAMILY = ("nvidia-drm", "nvidia-uvm", "nvidia-modeset", NVIDIA_MODULE)


class PrimeMode(Enum):
    ON = "on"
    OFF = "off"
    ONDEMAND = "on-demand"


def parse_prime_mode(text: str) -> PrimeMode:
    """Parse preference text.

    Only the first line counts. "on-demand" is checked before "on", both as
    case-insensitive substrings; anything else, including nothing, is OFF.
    """
    lines = text.splitlines()
    if not lines:
        return PrimeMode.OFF
    line = lines[0].lower()
    if PrimeMode.ONDEMAND.value in line:
        return PrimeMode.ONDEMAND
    if PrimeMode.ON.value in line:
        return PrimeMode.ON
    return PrimeMode.OFF


def read_prime_mode(path: str) -> PrimeMode:
    try:
        with open(path, "r", errors="replace") as f:
            text = f.read()
    except (IOError, OSError) as e:
        logger.warning(f"No settings for prime can be found in {path}: {e}")
        return PrimeMode.OFF
    mode = parse_prime_mode(text)
    logger.info(f"Prime mode from {path}: {mode.value}")
    return mode


def set_offloading(path: str, dry_run: bool = False) -> bool:
    """Record that offloading is in use, for nvidia-prime and friends."""
    if dry_run:
        return True
    try:
        with open(path, "w") as f:
            f.write("ON\n")
    except (IOError, OSError) as e:
        logger.error(f"Can't write {path}: {e}")
        return False
    return True


def clear_offloading(path: str, dry_run: bool = False) -> None:
    if dry_run:
        return
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Can't remove {path}: {e}")


class PrimeSwitcher:
    """Applies a PrimeMode to the discrete NVIDIA device.

    Example:
        switcher = PrimeSwitcher(modules, actions, xorg, power)
        ok = switcher.switch(PrimeMode.ONDEMAND, discrete_device)
    """

    def __init__(
        self,
        modules: ModuleStatus,
        actions: ProcessActions,
        xorg: XorgConfig,
        power: PowerControl,
    ):
        self.modules = modules
        self.actions = actions
        self.xorg = xorg
        self.power = power

    def switch(self, mode: PrimeMode, device: Device) -> bool:
        """Bring the system in line with ``mode``.

        Returns:
            False if the driver could not be loaded (ON/ONDEMAND) or unloaded
            (OFF). Failures of the other steps are logged but don't count.
        """
        logger.info(f"Switching PRIME to \"{mode.value}\" for {device}")

        match mode:
            case PrimeMode.ON:
                # OutputClass just for PRIME, overriding the default NVIDIA settings
                self.xorg.publish_always_discrete_config()
                self.xorg.remove_offload_config()
                self.power.set_power_management(device, enabled=False)
                return self._ensure_loaded()

            case PrimeMode.ONDEMAND:
                self.xorg.publish_offload_config()
                self.xorg.remove_always_discrete_config()
                self.power.set_power_management(device, enabled=True)
                return self._ensure_loaded()

            case _:
                self.xorg.remove_always_discrete_config()
                self.xorg.remove_offload_config()
                if not self.unload_driver():
                    return False
                # Set power control to "auto" to save power
                self.power.set_power_management(device, enabled=True)
                return True

    def _ensure_loaded(self) -> bool:
        if self.modules.is_loaded(NVIDIA_MODULE):
            return True
        if not self.actions.load_module(NVIDIA_MODULE):
            logger.error(f"Failed to load {NVIDIA_MODULE}")
            return False
        return True

    def _unload_family(self) -> bool:
        status = True
        for module in NVIDIA_MODULE_FAMILY:
            status = self.actions.unload_module(module)
        # Only the core module decides
        return status or not self.modules.is_loaded(NVIDIA_MODULE)

    def unload_driver(self) -> bool:
        """Unload the NVIDIA modules, killing the display session at most once."""
        if not self.modules.is_loaded(NVIDIA_MODULE):
            return True

        if self._unload_family():
            return True

        logger.warning("Failure to unload the nvidia modules.")
        logger.info("Killing the display session...")
        if self.kill_display_session() is None:
            logger.error("No display session could be killed. Giving up on unloading nvidia...")
            return False

        if self._unload_family():
            return True

        logger.error("Giving up on unloading nvidia...")
        return False

    def kill_display_session(self) -> Optional[int]:
        for backend in DISPLAY_SERVERS:
            pid = self.actions.terminate_session(backend)
            if pid is not None:
                logger.info(f"Killed PID {pid} for {backend}.")
                return pid
            logger.info(f"No PID found for {backend}.")
        return None
