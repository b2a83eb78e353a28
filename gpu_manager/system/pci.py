"""PCI display controller enumeration and runtime power control via sysfs.

Enumeration:
    Walks /sys/bus/pci/devices and keeps display-class devices (class
    0x03xxxx). Devices handed to pci-stub or pciback for passthrough are
    skipped.

Connected outputs:
    For each DRM driver of interest, finds the /sys/class/drm/cardN node the
    driver created and counts its connectors (cardN-*) whose status reads
    "connected". A driver without a card gives UNKNOWN.
"""

import logging
import os
import re
from typing import Dict, List, Optional

from gpu_manager.devices import MAX_CARDS, Device, OutputStatus, Snapshot, Vendor

logger = logging.getLogger(__name__)

PCI_CLASS_DISPLAY = 0x03

PASSTHROUGH_DRIVERS = ("pci-stub", "pciback")

# DRM drivers probed for connected outputs
OUTPUT_DRIVERS = ("amdgpu", "radeon", "nouveau", "i915")

_ADDRESS_RE = re.compile(
    r"^([0-9a-fA-F]{4}):([0-9a-fA-F]{2}):([0-9a-fA-F]{2})\.([0-7])$"
)
_CARD_RE = re.compile(r"^card\d+$")


def _read_attr(path: str) -> Optional[str]:
    try:
        with open(path, "r") as f:
            return f.read().strip()
    except (IOError, OSError):
        return None


def _read_hex_attr(path: str) -> Optional[int]:
    value = _read_attr(path)
    if value is None:
        return None
    try:
        return int(value, 16)
    except ValueError:
        return None


def _driver_name(device_path: str) -> Optional[str]:
    """Basename of the driver symlink, or None if unbound."""
    try:
        return os.path.basename(os.readlink(os.path.join(device_path, "driver")))
    except (IOError, OSError):
        return None


class DRMOutputProbe:
    """Counts connected outputs of the DRM card created by a given driver."""

    def __init__(self, sysfs_drm_path: str = "/sys/class/drm"):
        self._drm_path = sysfs_drm_path

    def _cards(self) -> List[str]:
        try:
            return sorted(e for e in os.listdir(self._drm_path) if _CARD_RE.match(e))
        except (FileNotFoundError, OSError) as e:
            logger.warning(f"Can't open {self._drm_path}: {e}")
            return []

    def find_card(self, driver: str) -> Optional[str]:
        """Return the first cardN whose driver name contains ``driver``."""
        for card in self._cards():
            name = _driver_name(os.path.join(self._drm_path, card, "device"))
            if name is None:
                continue
            # Substring match to catch backported kernel modules
            if driver in name:
                logger.info(f"Found \"{card}\", driven by \"{name}\"")
                return card
            logger.debug(f"Skipping \"{card}\", driven by \"{name}\"")
        return None

    def count_connected_outputs(self, card: str) -> int:
        prefix = f"{card}-"
        connected = 0
        try:
            entries = sorted(os.listdir(self._drm_path))
        except (FileNotFoundError, OSError) as e:
            logger.warning(f"Can't open {self._drm_path}: {e}")
            return 0

        for entry in entries:
            if not entry.startswith(prefix):
                continue
            status = _read_attr(os.path.join(self._drm_path, entry, "status"))
            if status and status.split()[0].startswith("connected"):
                logger.info(f"output {connected}: {entry}")
                connected += 1
        return connected

    def driver_outputs(self, driver: str) -> OutputStatus:
        card = self.find_card(driver)
        if card is None:
            return OutputStatus.UNKNOWN
        connected = self.count_connected_outputs(card)
        logger.info(f"Number of connected outputs for {card}: {connected}")
        return OutputStatus.from_count(connected)


class SysfsEnumerator:
    """Builds the live Snapshot from sysfs."""

    def __init__(
        self,
        sysfs_pci_path: str = "/sys/bus/pci/devices",
        sysfs_drm_path: str = "/sys/class/drm",
        max_cards: int = MAX_CARDS,
    ):
        self._pci_path = sysfs_pci_path
        self._probe = DRMOutputProbe(sysfs_drm_path)
        self._max_cards = max_cards

    def enumerate(self) -> Optional[Snapshot]:
        try:
            entries = sorted(os.listdir(self._pci_path))
        except (FileNotFoundError, OSError) as e:
            logger.error(f"Can't scan the PCI bus at {self._pci_path}: {e}")
            return None

        outputs: Dict[str, OutputStatus] = {
            driver: self._probe.driver_outputs(driver) for driver in OUTPUT_DRIVERS
        }

        devices: List[Device] = []
        for entry in entries:
            device = self._read_device(entry)
            if device is None:
                continue
            if len(devices) >= self._max_cards:
                logger.warning(
                    f"Too many devices. Max supported {self._max_cards}. Ignoring the rest."
                )
                break
            device.output_connected = self._outputs_for(device.vendor, outputs)
            devices.append(device)

        snapshot = Snapshot(devices, capacity=self._max_cards)
        vendors = {device.vendor for device in snapshot}
        logger.info(f"Cards detected: {len(snapshot)}")
        for vendor in (Vendor.AMD, Vendor.INTEL, Vendor.NVIDIA):
            logger.info(f"  {vendor.name}: {'yes' if vendor in vendors else 'no'}")
        return snapshot

    def _read_device(self, entry: str) -> Optional[Device]:
        match = _ADDRESS_RE.match(entry)
        if not match:
            return None

        path = os.path.join(self._pci_path, entry)
        device_class = _read_hex_attr(os.path.join(path, "class"))
        if device_class is None or ((device_class >> 16) & 0xFF) != PCI_CLASS_DISPLAY:
            return None

        vendor_id = _read_hex_attr(os.path.join(path, "vendor"))
        device_id = _read_hex_attr(os.path.join(path, "device"))
        if vendor_id is None or device_id is None:
            logger.warning(f"Can't read vendor/device of {entry}. Skipping...")
            return None

        boot_vga = _read_attr(os.path.join(path, "boot_vga")) == "1"
        domain, bus, dev, func = (int(g, 16) for g in match.groups())

        logger.info(f"Device ID: 0x{device_id:04X}")
        logger.info(f"  Vendor ID: 0x{vendor_id:04X}")
        logger.info(f"  Bus ID: \"{entry}\"")
        logger.info(f"  Boot VGA: {'yes' if boot_vga else 'no'}")

        driver = _driver_name(path)
        if driver is None:
            logger.info("The device is not bound to any driver.")
        elif driver in PASSTHROUGH_DRIVERS:
            logger.info("The device is a pci passthrough. Skipping...")
            return None

        return Device(
            vendor_id=vendor_id,
            device_id=device_id,
            domain=domain,
            bus=bus,
            dev=dev,
            func=func,
            boot_vga=boot_vga,
        )

    @staticmethod
    def _outputs_for(vendor: Vendor, outputs: Dict[str, OutputStatus]) -> OutputStatus:
        match vendor:
            case Vendor.AMD:
                radeon = outputs["radeon"]
                return radeon if radeon is not OutputStatus.UNKNOWN else outputs["amdgpu"]
            case Vendor.INTEL:
                return outputs["i915"]
            case Vendor.NVIDIA:
                return outputs["nouveau"]
            case _:
                return OutputStatus.UNKNOWN


class PciPowerControl:
    """Runtime power management through <device>/power/control."""

    def __init__(self, sysfs_pci_path: str = "/sys/bus/pci/devices"):
        self._pci_path = sysfs_pci_path

    def set_power_management(self, device: Device, enabled: bool) -> bool:
        path = os.path.join(self._pci_path, device.bus_id, "power", "control")
        value = "auto" if enabled else "on"
        logger.info(f"Setting power control to \"{value}\" in {path}")
        try:
            with open(path, "w") as f:
                f.write(f"{value}\n")
        except (IOError, OSError) as e:
            logger.error(f"Error while opening {path}: {e}")
            return False
        return True
