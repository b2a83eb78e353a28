"""Graphics controller records and the queries run over a set of them."""

import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)

# We don't support more than this many cards
MAX_CARDS = 10


class Vendor(IntEnum):
    """PCI vendor IDs the decision tree knows about.

    Anything else maps to OTHER; the raw ID stays on the Device.
    """

    OTHER = 0
    AMD = 0x1002
    INTEL = 0x8086
    NVIDIA = 0x10DE

    @classmethod
    def from_id(cls, vendor_id: int) -> "Vendor":
        try:
            return cls(vendor_id)
        except ValueError:
            return cls.OTHER


class OutputStatus(Enum):
    """Whether a controller drives at least one connected display."""

    UNKNOWN = "unknown"
    NO = "no"
    YES = "yes"

    @classmethod
    def from_count(cls, connected_outputs: int) -> "OutputStatus":
        return cls.YES if connected_outputs > 0 else cls.NO


@dataclass
class Device:
    """One graphics controller.

    Attributes:
        vendor_id: Raw PCI vendor ID (see Vendor for the known ones)
        device_id: PCI device ID
        domain, bus, dev, func: PCI address, the identity of the card
        boot_vga: True for the controller initialised by the firmware
        output_connected: Filled in after enumeration for live snapshots;
            not persisted, so it takes no part in equality
    """

    vendor_id: int
    device_id: int
    domain: int = 0
    bus: int = 0
    dev: int = 0
    func: int = 0
    boot_vga: bool = False
    output_connected: OutputStatus = field(default=OutputStatus.UNKNOWN, compare=False)

    @property
    def vendor(self) -> Vendor:
        return Vendor.from_id(self.vendor_id)

    @property
    def address(self) -> tuple[int, int, int, int]:
        return (self.domain, self.bus, self.dev, self.func)

    @property
    def bus_id(self) -> str:
        """Address in sysfs notation, e.g. ``0000:01:00.0``."""
        return f"{self.domain:04x}:{self.bus:02x}:{self.dev:02x}.{self.func:x}"

    def __str__(self) -> str:
        return (
            f"{self.vendor_id:04x}:{self.device_id:04x} in PCI:{self.bus_id}"
            f" (boot_vga={int(self.boot_vga)})"
        )


class Snapshot:
    """Ordered, capacity-bounded set of Devices detected at one point in time.

    Devices past MAX_CARDS are dropped with a warning. A device whose address
    is already present is ignored.
    """

    def __init__(self, devices: Iterable[Device] = (), capacity: int = MAX_CARDS):
        self._capacity = capacity
        self._devices: List[Device] = []
        for device in devices:
            self._add(device)

    def _add(self, device: Device) -> bool:
        if len(self._devices) >= self._capacity:
            logger.warning(
                f"Too many devices. Max supported {self._capacity}. Ignoring {device}"
            )
            return False
        if any(d.address == device.address for d in self._devices):
            logger.warning(f"Duplicate PCI address {device.bus_id}. Ignoring {device}")
            return False
        self._devices.append(device)
        return True

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_full(self) -> bool:
        return len(self._devices) >= self._capacity

    def extended(self, devices: Iterable[Device]) -> "Snapshot":
        """Return a new snapshot with ``devices`` appended."""
        return Snapshot([*self._devices, *devices], capacity=self._capacity)

    def __iter__(self) -> Iterator[Device]:
        return iter(self._devices)

    def __len__(self) -> int:
        return len(self._devices)

    def __getitem__(self, index: int) -> Device:
        return self._devices[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Snapshot):
            return NotImplemented
        return self._devices == other._devices

    def __repr__(self) -> str:
        return f"Snapshot({self._devices!r})"


def boot_display(snapshot: Snapshot) -> Optional[Device]:
    """First controller flagged as boot VGA, or None."""
    for device in snapshot:
        if device.boot_vga:
            return device
    return None


def first_discrete(snapshot: Snapshot) -> Optional[Device]:
    """First controller that is not the boot display.

    Only meaningful with exactly two controllers; with more, whichever comes
    first in enumeration order wins.
    """
    for device in snapshot:
        if not device.boot_vga:
            return device
    return None


def should_offload(snapshot: Snapshot) -> bool:
    """Whether render offload should be advertised.

    Only when the boot display is an Intel IGP that actually drives a
    connected output. We don't offload to any other driver.
    """
    device = boot_display(snapshot)
    return (
        device is not None
        and device.vendor is Vendor.INTEL
        and device.output_connected is OutputStatus.YES
    )
