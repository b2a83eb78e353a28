"""Finding and killing the display session that keeps a driver busy.

Only the session owned by the display manager user (gdm) is a candidate:
that is the greeter/main session which holds the discrete GPU open at boot.
"""

import logging
import os
import pwd
import signal
import subprocess
from typing import List, Optional

logger = logging.getLogger(__name__)

# Tried in this order
DISPLAY_SERVERS = ("Xwayland", "Xorg")

SESSION_USER = "gdm"


class DisplaySessionKiller:
    """Kills the main display-manager session of a given display server."""

    def __init__(
        self,
        proc_path: str = "/proc",
        session_user: str = SESSION_USER,
        pidof_path: str = "pidof",
        dry_run: bool = False,
    ):
        self._proc_path = proc_path
        self._session_user = session_user
        self._pidof_path = pidof_path
        self._dry_run = dry_run

    def pids_of(self, name: str) -> List[int]:
        logger.info(f"Calling {self._pidof_path} {name}")
        try:
            result = subprocess.run(
                [self._pidof_path, name],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (subprocess.SubprocessError, OSError) as e:
            logger.warning(f"pidof failed for {name}: {e}")
            return []

        pids = []
        for token in result.stdout.split():
            try:
                pids.append(int(token))
            except ValueError:
                continue
        if not pids:
            logger.info(f"No PID found for {name}.")
        return pids

    def uid_of(self, pid: int) -> Optional[int]:
        """Real UID of ``pid`` from /proc/<pid>/status."""
        path = os.path.join(self._proc_path, str(pid), "status")
        try:
            with open(path, "r") as f:
                for line in f:
                    if line.startswith("Uid:"):
                        return int(line.split()[1])
        except (IOError, OSError, ValueError, IndexError) as e:
            logger.warning(f"Can't read the UID from {path}: {e}")
        return None

    @staticmethod
    def user_of(uid: int) -> Optional[str]:
        try:
            return pwd.getpwuid(uid).pw_name
        except KeyError:
            return None

    def find_session_pid(self, backend: str) -> Optional[int]:
        for pid in self.pids_of(backend):
            uid = self.uid_of(pid)
            if uid is None:
                continue
            user = self.user_of(uid)
            logger.info(f"PID {pid}: user {user} UID {uid}")
            if user == self._session_user:
                logger.info(f"Found PID {pid} for {self._session_user} main {backend} session.")
                return pid
        return None

    def terminate_session(self, backend: str) -> Optional[int]:
        if self._dry_run:
            logger.info(f"Dry run: not killing the {backend} session")
            return None

        pid = self.find_session_pid(backend)
        if pid is None:
            logger.info(f"No {self._session_user} session found for {backend}.")
            return None

        logger.warning(f"Killing the {backend} session (PID {pid})")
        try:
            os.kill(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError) as e:
            logger.error(f"Failed to kill PID {pid}: {e}")
            return None
        return pid
