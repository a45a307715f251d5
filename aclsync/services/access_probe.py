"""Effective-access probing by acting as the user.

The ACL tool reports entries, not the effective decision the kernel makes
from them. The probe asks the system directly: can the user list the
folder, and if not, can the user enter it. Nothing is ever written.
"""

import logging
import shlex
import subprocess

from ..schemas.report import AccessLevel

logger = logging.getLogger(__name__)


class SuAccessProbe:
    """Probes access with ``su <user> -s /bin/sh -c <command>``."""

    def __init__(self, su_binary: str = "su", timeout: float = 15.0, shell: str = "/bin/sh"):
        self.su_binary = su_binary
        self.timeout = timeout
        self.shell = shell

    def probe(self, principal: str, path: str) -> AccessLevel:
        """Return FULL (can list), TRAVERSAL (can enter only) or DENIED."""
        quoted = shlex.quote(path)
        if self._attempt(principal, f"ls {quoted} >/dev/null 2>&1"):
            return AccessLevel.FULL
        if self._attempt(principal, f"cd {quoted} >/dev/null 2>&1"):
            return AccessLevel.TRAVERSAL
        return AccessLevel.DENIED

    def _attempt(self, principal: str, command: str) -> bool:
        cmd = [self.su_binary, principal, "-s", self.shell, "-c", command]
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Access probe for '%s' timed out after %ss: %s", principal, self.timeout, command)
            return False
        except OSError as e:
            logger.warning("Access probe for '%s' could not run: %s", principal, e)
            return False
        return result.returncode == 0
