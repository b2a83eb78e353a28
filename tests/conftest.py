"""Pytest configuration and shared fixtures."""

from typing import List, Optional, Set

import pytest

from gpu_manager.devices import Device, OutputStatus, Snapshot
from gpu_manager.system import PxAction, RemoveResult, System
from gpu_manager.system.cmdline import KernelCommandLine


class CallLog:
    """Ordered record of side-effecting calls made on the fakes."""

    def __init__(self):
        self.calls: List[tuple] = []

    def add(self, *call) -> None:
        self.calls.append(call)

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def count(self, name: str) -> int:
        return self.names().count(name)


class FakeModules:
    def __init__(self, log: CallLog, loaded: Optional[Set[str]] = None):
        self.log = log
        self.loaded: Set[str] = set(loaded or ())
        self.blacklisted: Set[str] = set()
        self.available: Set[str] = set()
        self.versioned: Set[str] = set()

    def is_loaded(self, name: str) -> bool:
        return name in self.loaded

    def is_blacklisted(self, name: str) -> bool:
        return name in self.blacklisted

    def is_available(self, name: str) -> bool:
        return name in self.available

    def is_versioned(self, name: str) -> bool:
        return name in self.versioned


class FakeActions:
    """Unloading a module listed in ``stuck`` fails and leaves it loaded."""

    def __init__(self, log: CallLog, modules: FakeModules):
        self.log = log
        self.modules = modules
        self.stuck: Set[str] = set()
        self.load_fails = False
        self.session_pids = {"Xwayland": None, "Xorg": 4242}
        self.release_on_kill = False

    def load_module(self, name: str) -> bool:
        self.log.add("load_module", name)
        if self.load_fails:
            return False
        self.modules.loaded.add(name)
        return True

    def unload_module(self, name: str) -> bool:
        self.log.add("unload_module", name)
        if name in self.stuck:
            return False
        self.modules.loaded.discard(name.replace("-", "_"))
        self.modules.loaded.discard(name)
        return True

    def terminate_session(self, backend: str) -> Optional[int]:
        self.log.add("terminate_session", backend)
        pid = self.session_pids.get(backend)
        if pid is not None and self.release_on_kill:
            self.stuck.clear()
        return pid

    def run_vendor_helper(self, action: PxAction) -> bool:
        self.log.add("run_vendor_helper", action)
        return True


class FakeXorg:
    def __init__(self, log: CallLog):
        self.log = log
        self.present: Set[str] = set()

    def publish_offload_config(self) -> bool:
        self.log.add("publish_offload_config")
        self.present.add("offload")
        return True

    def publish_always_discrete_config(self) -> bool:
        self.log.add("publish_always_discrete_config")
        self.present.add("discrete")
        return True

    def _remove(self, name: str) -> RemoveResult:
        if name in self.present:
            self.present.discard(name)
            return RemoveResult.REMOVED
        return RemoveResult.NOT_FOUND

    def remove_offload_config(self) -> RemoveResult:
        self.log.add("remove_offload_config")
        return self._remove("offload")

    def remove_always_discrete_config(self) -> RemoveResult:
        self.log.add("remove_always_discrete_config")
        return self._remove("discrete")


class FakePower:
    def __init__(self, log: CallLog):
        self.log = log

    def set_power_management(self, device: Device, enabled: bool) -> bool:
        self.log.add("set_power_management", device.bus_id, enabled)
        return True


class FakeEnumerator:
    def __init__(self, snapshot: Optional[Snapshot] = None):
        self.snapshot = snapshot

    def enumerate(self) -> Optional[Snapshot]:
        return self.snapshot


class FakePx:
    def __init__(self, installed: bool = False):
        self.installed = installed

    def is_installed(self) -> bool:
        return self.installed


@pytest.fixture
def call_log():
    return CallLog()


@pytest.fixture
def fake_modules(call_log):
    return FakeModules(call_log)


@pytest.fixture
def fake_actions(call_log, fake_modules):
    return FakeActions(call_log, fake_modules)


@pytest.fixture
def fake_xorg(call_log):
    return FakeXorg(call_log)


@pytest.fixture
def fake_power(call_log):
    return FakePower(call_log)


@pytest.fixture
def fake_system(fake_modules, fake_actions, fake_xorg, fake_power, tmp_path):
    cmdline = tmp_path / "cmdline"
    cmdline.write_text("BOOT_IMAGE=/vmlinuz root=/dev/sda1 quiet splash\n")
    return System(
        modules=fake_modules,
        actions=fake_actions,
        xorg=fake_xorg,
        power=fake_power,
        enumerator=FakeEnumerator(),
        cmdline=KernelCommandLine(str(cmdline)),
        px=FakePx(),
    )


@pytest.fixture
def intel_igp():
    """Intel boot display driving the laptop panel."""
    return Device(
        vendor_id=0x8086,
        device_id=0x0166,
        bus=0x00,
        dev=0x02,
        func=0,
        boot_vga=True,
        output_connected=OutputStatus.YES,
    )


@pytest.fixture
def nvidia_dgpu():
    return Device(
        vendor_id=0x10DE,
        device_id=0x1140,
        bus=0x01,
        dev=0x00,
        func=0,
        boot_vga=False,
        output_connected=OutputStatus.UNKNOWN,
    )


@pytest.fixture
def hybrid_snapshot(intel_igp, nvidia_dgpu):
    return Snapshot([intel_igp, nvidia_dgpu])
