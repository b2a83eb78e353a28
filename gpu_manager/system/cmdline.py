"""Kernel command line switches."""

import logging

logger = logging.getLogger(__name__)

DISABLE_PARAM = "nogpumanager"


class KernelCommandLine:
    def __init__(self, path: str = "/proc/cmdline"):
        self._path = path

    def has_option(self, option: str) -> bool:
        """Case-insensitive substring match against any line of the command line."""
        try:
            with open(self._path, "r", errors="replace") as f:
                return any(option.lower() in line.lower() for line in f)
        except (IOError, OSError) as e:
            logger.debug(f"Can't read {self._path}: {e}")
            return False

    def is_disabled(self) -> bool:
        return self.has_option(DISABLE_PARAM)

    def report_intel_driver(self) -> None:
        if self.has_option("gpumanager_modesetting"):
            logger.info("Detected boot parameter to force the modesetting driver")
        elif self.has_option("gpumanager_uxa"):
            logger.info("Detected boot parameter to force Intel/UXA")
        elif self.has_option("gpumanager_sna"):
            logger.info("Detected boot parameter to force Intel/SNA")
        else:
            logger.info("No boot parameter to force Intel: Using modesetting driver")
