"""Wrapper around the amdgpu-pro-px switchable graphics helper."""

import logging
import os
import subprocess
from typing import List

from gpu_manager.system.base import PxAction

logger = logging.getLogger(__name__)

_DESCRIPTIONS = {
    PxAction.MODE_POWERSAVING: "Enabling power saving mode for amdgpu-pro",
    PxAction.MODE_PERFORMANCE: "Enabling performance mode for amdgpu-pro",
    PxAction.RESET: "Resetting the script changes for amdgpu-pro",
    PxAction.ISPX: "Checking whether amdgpu-pro runs on a PowerXpress system",
}


class AmdgpuProPx:
    def __init__(self, helper_path: str = "/opt/amdgpu-pro/bin/amdgpu-pro-px", dry_run: bool = False):
        self._helper_path = helper_path
        self._dry_run = dry_run

    def is_installed(self) -> bool:
        """The helper exists and is not empty."""
        try:
            return os.path.getsize(self._helper_path) > 0
        except OSError:
            logger.debug(f"Can't access {self._helper_path}")
            return False

    def command_for(self, action: PxAction) -> List[str]:
        # "mode powersaving" -> --mode powersaving
        first, *rest = action.value.split()
        return [self._helper_path, f"--{first}", *rest]

    def run_vendor_helper(self, action: PxAction) -> bool:
        if action in _DESCRIPTIONS:
            logger.info(_DESCRIPTIONS[action])

        command = self.command_for(action)
        if self._dry_run:
            logger.info(" ".join(command))
            return True

        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=60)
        except (subprocess.SubprocessError, OSError) as e:
            logger.error(f"{' '.join(command)} failed: {e}")
            return False
        if result.returncode != 0:
            logger.warning(f"{' '.join(command)} exited with {result.returncode}")
            return False
        return True
