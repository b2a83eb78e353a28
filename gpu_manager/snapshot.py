"""Persisted snapshot format, boot-state file handling and snapshot diffing.

One line per card, fixed-width and positional::

    VVVV:DDDD;DOMM:BB:DD:F;B

vendor, device, domain, bus and dev in lowercase hex; function and boot VGA
flag as bare decimals. The format carries no version marker, so adding a
field later can't be told apart from corruption. Everything that knows about
it lives in this module.
"""

import logging
import os
import re
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from gpu_manager.devices import Device, OutputStatus, Snapshot

logger = logging.getLogger(__name__)

_LINE_RE = re.compile(
    r"^([0-9a-fA-F]{1,4}):([0-9a-fA-F]{1,4});"
    r"([0-9a-fA-F]{1,4}):([0-9a-fA-F]{1,2}):([0-9a-fA-F]{1,2}):(\d+);(\d+)\s*$"
)

# u-d-c-gpu-0000:09:00.0-0x10de-0x1140
MARKER_PREFIX = "u-d-c-gpu-"
_MARKER_RE = re.compile(
    r"^u-d-c-gpu-([0-9a-fA-F]{4}):([0-9a-fA-F]{2}):([0-9a-fA-F]{2})\.(\d+)"
    r"-0x([0-9a-fA-F]{4})-0x([0-9a-fA-F]{4})"
)

PLACEHOLDER = Device(vendor_id=0, device_id=0)


class ReadStatus(Enum):
    """Outcome of reading the boot-state file."""

    FAILED = 0
    READ = 1
    CREATED = 2


def encode_device(device: Device) -> str:
    return (
        f"{device.vendor_id:04x}:{device.device_id:04x};"
        f"{device.domain:04x}:{device.bus:02x}:{device.dev:02x}:{device.func:d};"
        f"{int(device.boot_vga):d}"
    )


def decode_device(line: str) -> Optional[Device]:
    """Parse one persisted line. Returns None if it doesn't match the grammar."""
    match = _LINE_RE.match(line)
    if not match:
        return None
    vendor, device_id, domain, bus, dev, func, boot_vga = match.groups()
    return Device(
        vendor_id=int(vendor, 16),
        device_id=int(device_id, 16),
        domain=int(domain, 16),
        bus=int(bus, 16),
        dev=int(dev, 16),
        func=int(func),
        boot_vga=int(boot_vga) != 0,
    )


def encode(snapshot: Iterable[Device]) -> str:
    return "".join(f"{encode_device(device)}\n" for device in snapshot)


def decode(text: str) -> Snapshot:
    """Parse persisted text into a Snapshot.

    Lines that don't parse are skipped, so this never fails: an empty or
    garbage file gives an empty snapshot.
    """
    devices: List[Device] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        device = decode_device(line)
        if device is None:
            logger.debug(f"Skipping unparseable line: {line!r}")
            continue
        devices.append(device)
    return Snapshot(devices)


def read_snapshot(path: str) -> Tuple[ReadStatus, Snapshot]:
    """Read a snapshot file, creating it on first use.

    A missing file is created with a single zeroed placeholder record and
    reported as CREATED. FAILED means the file could neither be read nor
    created.
    """
    status = ReadStatus.READ
    try:
        with open(path, "r", errors="replace") as f:
            text = f.read()
    except FileNotFoundError:
        logger.info(f"I couldn't open {path} for reading.")
        logger.info(f"Create {path} for the 1st time")
        if not write_snapshot(path, [PLACEHOLDER]):
            return ReadStatus.FAILED, Snapshot()
        status = ReadStatus.CREATED
        text = f"{encode_device(PLACEHOLDER)}\n"
    except (IOError, OSError) as e:
        logger.error(f"I couldn't open {path} for reading: {e}")
        return ReadStatus.FAILED, Snapshot()

    return status, decode(text)


def write_snapshot(path: str, snapshot: Iterable[Device]) -> bool:
    try:
        with open(path, "w") as f:
            f.write(encode(snapshot))
    except (IOError, OSError) as e:
        logger.error(f"I couldn't open {path} for writing: {e}")
        return False
    return True


def has_system_changed(previous: Snapshot, current: Snapshot) -> bool:
    """Compare two snapshots position by position.

    Reordering the same cards counts as a change. Output status is not
    compared.
    """
    if len(previous) != len(current):
        logger.info("The number of cards has changed!")
        return True

    for old, new in zip(previous, current):
        if (
            old.boot_vga != new.boot_vga
            or old.vendor_id != new.vendor_id
            or old.device_id != new.device_id
            or old.address != new.address
        ):
            return True

    return False


def parse_marker_name(name: str) -> Optional[Device]:
    """Build a Device from a disabled-card marker file name."""
    match = _MARKER_RE.match(name)
    if not match:
        return None
    domain, bus, dev, func, vendor, device_id = match.groups()
    return Device(
        vendor_id=int(vendor, 16),
        device_id=int(device_id, 16),
        domain=int(domain, 16),
        bus=int(bus, 16),
        dev=int(dev, 16),
        func=int(func),
        boot_vga=False,
        output_connected=OutputStatus.UNKNOWN,
    )


def find_disabled_cards(directory: str) -> List[Device]:
    """Look for clues of disabled cards in ``directory``.

    Whoever powered a card down leaves a marker file behind; its name is the
    only record of the card we have.
    """
    logger.info(f"Looking for disabled cards in {directory}")

    try:
        names = sorted(os.listdir(directory))
    except (FileNotFoundError, OSError) as e:
        logger.error(f"Can't open {directory}: {e}")
        return []

    devices: List[Device] = []
    for name in names:
        if not name.startswith(MARKER_PREFIX):
            continue
        logger.info(f"Adding GPU from file: {os.path.join(directory, name)}")
        device = parse_marker_name(name)
        if device is None:
            logger.warning(f"No matches in marker name {name!r}")
            continue
        logger.info(f"Adding {device} to the list")
        devices.append(device)

    return devices
