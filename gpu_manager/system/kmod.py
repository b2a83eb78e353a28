"""Kernel module queries and modprobe/rmmod wrappers.

Detection:
    - loaded: first column of /proc/modules
    - blacklisted: ``blacklist <name>`` lines in modprobe.d
    - available: a DKMS build for the running kernel
    - versioned: ``modinfo -F version`` reports something
"""

import glob
import logging
import os
import re
import subprocess
from typing import List

logger = logging.getLogger(__name__)

SYSTEM_MODPROBE_D = "/lib/modprobe.d"


class KernelModules:
    """Module status and load/unload for the running kernel.

    In dry-run mode nothing is loaded or unloaded, ``modprobe_d_path`` is
    treated as a single file and modules are never reported as versioned.
    """

    def __init__(
        self,
        proc_modules_path: str = "/proc/modules",
        modprobe_d_path: str = "/etc/modprobe.d",
        kernel_modules_path: str = "/lib/modules",
        dry_run: bool = False,
        modprobe_path: str = "/sbin/modprobe",
        rmmod_path: str = "/sbin/rmmod",
        modinfo_path: str = "/sbin/modinfo",
    ):
        self._proc_modules_path = proc_modules_path
        self._modprobe_d_path = modprobe_d_path
        self._kernel_modules_path = kernel_modules_path
        self._dry_run = dry_run
        self._modprobe_path = modprobe_path
        self._rmmod_path = rmmod_path
        self._modinfo_path = modinfo_path

    def is_loaded(self, name: str) -> bool:
        try:
            with open(self._proc_modules_path, "r") as f:
                for line in f:
                    fields = line.split()
                    if fields and fields[0] == name:
                        return True
        except (IOError, OSError) as e:
            logger.error(f"Can't open {self._proc_modules_path}: {e}")
        return False

    def is_blacklisted(self, name: str) -> bool:
        if self._dry_run:
            # A single file when testing
            pattern = re.compile(rf"blacklist.*{re.escape(name)}\s*$")
            return self._file_matches(self._modprobe_d_path, pattern)

        pattern = re.compile(rf"^blacklist.*{re.escape(name)}\s*$")
        for directory in (self._modprobe_d_path, SYSTEM_MODPROBE_D):
            for path in sorted(glob.glob(os.path.join(directory, "*.conf"))):
                if self._file_matches(path, pattern):
                    return True
        return False

    def _file_matches(self, path: str, pattern: re.Pattern) -> bool:
        try:
            with open(path, "r", errors="replace") as f:
                return any(pattern.search(line.rstrip("\n")) for line in f)
        except (IOError, OSError) as e:
            logger.debug(f"Can't read {path}: {e}")
            return False

    def is_available(self, name: str) -> bool:
        directory = os.path.join(self._kernel_modules_path, os.uname().release, "updates", "dkms")
        logger.info(f"Looking for {name} modules in {directory}")

        try:
            entries = sorted(os.listdir(directory))
        except (FileNotFoundError, OSError) as e:
            logger.debug(f"Can't open {directory}: {e}")
            return False

        for entry in entries:
            if entry.startswith(name):
                logger.info(f"Found {name} module: {entry}")
                return True
        return False

    def is_versioned(self, name: str) -> bool:
        if self._dry_run:
            return False
        try:
            result = subprocess.run(
                [self._modinfo_path, "-F", "version", name],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (subprocess.SubprocessError, OSError) as e:
            logger.debug(f"modinfo failed for {name}: {e}")
            return False
        return result.returncode == 0 and bool(result.stdout.strip())

    def load_module(self, name: str) -> bool:
        return self._run_module_command(self._modprobe_path, name, loading=True)

    def unload_module(self, name: str) -> bool:
        return self._run_module_command(self._rmmod_path, name, loading=False)

    def _run_module_command(self, executable: str, name: str, loading: bool) -> bool:
        logger.info(f"{'Loading' if loading else 'Unloading'} {name} with \"no\" parameters")

        if self._dry_run:
            return True

        command: List[str] = [executable, name]
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=30)
        except (subprocess.SubprocessError, OSError) as e:
            logger.error(f"{' '.join(command)} failed: {e}")
            return False

        if result.returncode != 0:
            logger.warning(
                f"{' '.join(command)} exited with {result.returncode}: {result.stderr.strip()}"
            )
            return False
        return True
