"""Tests for sysfs PCI enumeration, DRM output probing and power control."""

import os

import pytest

from gpu_manager.devices import Device, OutputStatus, Vendor
from gpu_manager.system.pci import DRMOutputProbe, PciPowerControl, SysfsEnumerator


def add_pci_device(root, address, vendor, device, pci_class="0x030000", boot_vga=None, driver=None):
    path = root / "devices" / address
    path.mkdir(parents=True)
    (path / "vendor").write_text(f"0x{vendor:04x}\n")
    (path / "device").write_text(f"0x{device:04x}\n")
    (path / "class").write_text(f"{pci_class}\n")
    if boot_vga is not None:
        (path / "boot_vga").write_text("1\n" if boot_vga else "0\n")
    if driver:
        driver_dir = root / "drivers" / driver
        driver_dir.mkdir(parents=True, exist_ok=True)
        os.symlink(driver_dir, path / "driver")
    return path


def add_drm_card(root, card, device_path, connectors):
    drm = root / "drm"
    card_dir = drm / card
    card_dir.mkdir(parents=True)
    os.symlink(device_path, card_dir / "device")
    for name, status in connectors.items():
        connector = drm / f"{card}-{name}"
        connector.mkdir()
        (connector / "status").write_text(f"{status}\n")


@pytest.fixture
def sysfs(tmp_path):
    """Intel laptop panel + NVIDIA discrete + an audio device."""
    igp = add_pci_device(tmp_path, "0000:00:02.0", 0x8086, 0x0166, boot_vga=True, driver="i915")
    add_pci_device(tmp_path, "0000:00:1f.3", 0x8086, 0xA348, pci_class="0x040300", driver="snd_hda_intel")
    add_pci_device(tmp_path, "0000:01:00.0", 0x10DE, 0x1140, pci_class="0x030200", boot_vga=False, driver="nvidia")
    add_drm_card(tmp_path, "card0", igp, {"eDP-1": "connected", "HDMI-A-1": "disconnected"})
    return tmp_path


class TestDRMOutputProbe:
    def test_connected_outputs(self, sysfs):
        probe = DRMOutputProbe(str(sysfs / "drm"))
        assert probe.find_card("i915") == "card0"
        assert probe.count_connected_outputs("card0") == 1
        assert probe.driver_outputs("i915") is OutputStatus.YES

    def test_no_card_for_driver(self, sysfs):
        probe = DRMOutputProbe(str(sysfs / "drm"))
        assert probe.driver_outputs("nouveau") is OutputStatus.UNKNOWN

    def test_nothing_connected(self, tmp_path):
        amd = add_pci_device(tmp_path, "0000:03:00.0", 0x1002, 0x6798, boot_vga=True, driver="amdgpu")
        add_drm_card(tmp_path, "card1", amd, {"DP-1": "disconnected"})
        probe = DRMOutputProbe(str(tmp_path / "drm"))
        assert probe.driver_outputs("amdgpu") is OutputStatus.NO

    def test_card10_connectors_not_counted_for_card1(self, tmp_path):
        amd = add_pci_device(tmp_path, "0000:03:00.0", 0x1002, 0x6798, driver="amdgpu")
        add_drm_card(tmp_path, "card1", amd, {"DP-1": "disconnected"})
        other = add_pci_device(tmp_path, "0000:04:00.0", 0x1002, 0x6799, driver="radeon")
        add_drm_card(tmp_path, "card10", other, {"DP-1": "connected"})
        probe = DRMOutputProbe(str(tmp_path / "drm"))
        assert probe.count_connected_outputs("card1") == 0

    def test_missing_drm_directory(self, tmp_path):
        probe = DRMOutputProbe(str(tmp_path / "nope"))
        assert probe.driver_outputs("i915") is OutputStatus.UNKNOWN


class TestSysfsEnumerator:
    def test_enumerate(self, sysfs):
        snapshot = SysfsEnumerator(str(sysfs / "devices"), str(sysfs / "drm")).enumerate()

        assert snapshot is not None
        assert len(snapshot) == 2
        igp, dgpu = snapshot
        assert igp.vendor is Vendor.INTEL
        assert igp.boot_vga is True
        assert igp.output_connected is OutputStatus.YES
        assert dgpu == Device(vendor_id=0x10DE, device_id=0x1140, bus=1)
        assert dgpu.output_connected is OutputStatus.UNKNOWN

    def test_passthrough_skipped(self, tmp_path):
        add_pci_device(tmp_path, "0000:00:02.0", 0x8086, 0x0166, boot_vga=True, driver="i915")
        add_pci_device(tmp_path, "0000:01:00.0", 0x10DE, 0x1140, driver="pci-stub")

        snapshot = SysfsEnumerator(str(tmp_path / "devices"), str(tmp_path / "drm")).enumerate()

        assert [d.vendor for d in snapshot] == [Vendor.INTEL]

    def test_unbound_device_kept(self, tmp_path):
        add_pci_device(tmp_path, "0000:01:00.0", 0x10DE, 0x1140, boot_vga=False)
        snapshot = SysfsEnumerator(str(tmp_path / "devices"), str(tmp_path / "drm")).enumerate()
        assert len(snapshot) == 1

    def test_capacity(self, tmp_path):
        for bus in range(4):
            add_pci_device(tmp_path, f"0000:{bus:02x}:00.0", 0x1002, 0x6798 + bus)
        enumerator = SysfsEnumerator(str(tmp_path / "devices"), str(tmp_path / "drm"), max_cards=3)
        assert len(enumerator.enumerate()) == 3

    def test_amd_prefers_radeon_answer(self):
        outputs = {
            "radeon": OutputStatus.NO,
            "amdgpu": OutputStatus.YES,
            "nouveau": OutputStatus.UNKNOWN,
            "i915": OutputStatus.UNKNOWN,
        }
        assert SysfsEnumerator._outputs_for(Vendor.AMD, outputs) is OutputStatus.NO
        outputs["radeon"] = OutputStatus.UNKNOWN
        assert SysfsEnumerator._outputs_for(Vendor.AMD, outputs) is OutputStatus.YES
        assert SysfsEnumerator._outputs_for(Vendor.OTHER, outputs) is OutputStatus.UNKNOWN

    def test_missing_pci_directory(self, tmp_path):
        enumerator = SysfsEnumerator(str(tmp_path / "nope"), str(tmp_path / "drm"))
        assert enumerator.enumerate() is None


class TestPciPowerControl:
    def test_enable_and_disable(self, tmp_path):
        control = tmp_path / "0000:01:00.0" / "power" / "control"
        control.parent.mkdir(parents=True)
        device = Device(vendor_id=0x10DE, device_id=0x1140, bus=1)
        power = PciPowerControl(str(tmp_path))

        assert power.set_power_management(device, enabled=True) is True
        assert control.read_text() == "auto\n"
        assert power.set_power_management(device, enabled=False) is True
        assert control.read_text() == "on\n"

    def test_missing_device(self, tmp_path):
        device = Device(vendor_id=0x10DE, device_id=0x1140, bus=1)
        assert PciPowerControl(str(tmp_path)).set_power_management(device, enabled=True) is False
