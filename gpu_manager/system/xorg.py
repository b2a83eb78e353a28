"""Display-server configuration snippets for NVIDIA PRIME."""

import logging
import os
import subprocess
from typing import Optional

from gpu_manager.system.base import RemoveResult

logger = logging.getLogger(__name__)

PRIME_OUTPUTCLASS = "11-nvidia-prime.conf"
OFFLOAD_SERVERLAYOUT = "11-nvidia-offload.conf"

HEADER = "# DO NOT EDIT. AUTOMATICALLY GENERATED BY gpu-manager\n\n"

PRIME_OUTPUTCLASS_TEMPLATE = (
    HEADER
    + 'Section "OutputClass"\n'
    '    Identifier "Nvidia Prime"\n'
    '    MatchDriver "nvidia-drm"\n'
    '    Driver "nvidia"\n'
    '    Option "AllowEmptyInitialConfiguration"\n'
    '    Option "IgnoreDisplayDevices" "CRT"\n'
    '    Option "PrimaryGPU" "Yes"\n'
    '    ModulePath "/{multiarch}/nvidia/xorg"\n'
    "EndSection\n\n"
)

OFFLOAD_SERVERLAYOUT_TEXT = (
    HEADER
    + 'Section "ServerLayout"\n'
    '    Identifier "layout"\n'
    '    Option "AllowNVIDIAGPUScreens"\n'
    "EndSection\n\n"
)


class XorgConfigWriter:
    """Writes and removes the PRIME snippets in an xorg.conf.d directory.

    The OutputClass makes the discrete GPU primary ("always discrete"); the
    ServerLayout allows NVIDIA GPU screens for render offload.
    """

    def __init__(self, xorg_conf_d_path: str, multiarch: Optional[str] = None):
        self._conf_d = xorg_conf_d_path
        self._multiarch = multiarch

    def path_of(self, name: str) -> str:
        return os.path.join(self._conf_d, name)

    def _query_multiarch(self) -> Optional[str]:
        if self._multiarch:
            return self._multiarch
        try:
            result = subprocess.run(
                ["/usr/bin/dpkg-architecture", "-qDEB_HOST_MULTIARCH"],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (subprocess.SubprocessError, OSError) as e:
            logger.error(f"Can't get the multiarch triplet: {e}")
            return None
        value = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
        if result.returncode != 0 or not value:
            logger.error("dpkg-architecture returned no multiarch triplet")
            return None
        self._multiarch = value
        return value

    def _write(self, name: str, content: str) -> bool:
        path = self.path_of(name)
        logger.info(f"Creating {path}")
        try:
            with open(path, "w") as f:
                f.write(content)
        except (IOError, OSError) as e:
            logger.error(f"Error while creating {path}: {e}")
            return False
        return True

    def _remove(self, name: str) -> RemoveResult:
        path = self.path_of(name)
        if not os.path.exists(path):
            return RemoveResult.NOT_FOUND
        logger.info(f"Removing {path}")
        try:
            os.unlink(path)
        except FileNotFoundError:
            return RemoveResult.NOT_FOUND
        except OSError as e:
            logger.error(f"Error while removing {path}: {e}")
            return RemoveResult.FAILED
        return RemoveResult.REMOVED

    def publish_always_discrete_config(self) -> bool:
        multiarch = self._query_multiarch()
        if not multiarch:
            return False
        return self._write(PRIME_OUTPUTCLASS, PRIME_OUTPUTCLASS_TEMPLATE.format(multiarch=multiarch))

    def publish_offload_config(self) -> bool:
        return self._write(OFFLOAD_SERVERLAYOUT, OFFLOAD_SERVERLAYOUT_TEXT)

    def remove_always_discrete_config(self) -> RemoveResult:
        return self._remove(PRIME_OUTPUTCLASS)

    def remove_offload_config(self) -> RemoveResult:
        return self._remove(OFFLOAD_SERVERLAYOUT)
