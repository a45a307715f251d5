"""Access to folder ACLs through the Synology ACL tool.

``SynoAclTool`` is the thin subprocess wrapper; ``AclGateway`` turns its
text output into typed ``AccessEntry`` values and hides the positional
deletion hazard: positions shift after every delete, so every deletion is
preceded by a fresh listing of the same folder.
"""

import logging
import re
import subprocess
from typing import Callable, List, Optional, Tuple

from ..exceptions import AclToolError
from ..schemas.acl import (
    WRITABLE_ENTRIES,
    AccessEntry,
    Effect,
    PrincipalKind,
    Rights,
    rights_from_mask,
)
from ..schemas.report import EntryFailure

logger = logging.getLogger(__name__)

#   [3] user:bonzac:allow:r-x---a-R-c--:fd-- (level:1)
_ENTRY_RE = re.compile(
    r"^\s*\[(?P<position>\d+)\]\s+"
    r"(?P<kind>[a-z_]+):(?P<principal>[^:]*):(?P<effect>allow|deny):"
    r"(?P<permissions>[-a-zA-Z]{13}):(?P<inheritance>[-a-z]{4})"
    r"\s*\(level:(?P<level>\d+)\)"
)

_KINDS = {kind.value: kind for kind in PrincipalKind}


def parse_entries(output: str) -> List[AccessEntry]:
    """Parse ``synoacltool -get`` output. Header and unknown lines are ignored."""
    entries = []
    for line in output.splitlines():
        match = _ENTRY_RE.match(line)
        if not match:
            continue
        kind = _KINDS.get(match.group("kind"))
        if kind is None:
            logger.debug("Ignoring ACL entry of unknown kind: %s", line.strip())
            continue
        permissions = match.group("permissions")
        entries.append(AccessEntry(
            position=int(match.group("position")),
            principal_kind=kind,
            principal=match.group("principal"),
            effect=Effect(match.group("effect")),
            rights=rights_from_mask(permissions),
            permissions=permissions,
            inheritance=match.group("inheritance"),
            level=int(match.group("level")),
        ))
    return entries


class SynoAclTool:
    """Runs ``synoacltool``. Every failure surfaces as ``AclToolError``."""

    def __init__(self, executable: str = "synoacltool", timeout: float = 30.0):
        self.executable = executable
        self.timeout = timeout

    def _run(self, *args: str) -> str:
        cmd = [self.executable, *args]
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise AclToolError(
                f"ACL tool timed out after {self.timeout}s", command=cmd,
            ) from e
        except OSError as e:
            raise AclToolError(f"Cannot run ACL tool: {e}", command=cmd) from e
        if result.returncode != 0:
            raise AclToolError(
                f"ACL tool exited with code {result.returncode}",
                command=cmd,
                stderr=result.stderr or result.stdout,
            )
        return result.stdout

    def get(self, path: str) -> str:
        return self._run("-get", path)

    def add(self, path: str, entry_text: str) -> None:
        self._run("-add", path, entry_text)

    def delete(self, path: str, position: int) -> None:
        self._run("-del", path, str(position))


class AclGateway:
    """Typed list/add/delete over one ACL tool, with per-call retries.

    Args:
        tool: Anything with the ``SynoAclTool`` interface.
        retry_attempts: Attempts per mutating call before it is reported failed.
    """

    def __init__(self, tool, retry_attempts: int = 2):
        self.tool = tool
        self.retry_attempts = max(1, retry_attempts)

    def list_entries(self, path: str) -> List[AccessEntry]:
        return parse_entries(self.tool.get(path))

    def entries_for(self, path: str, principal: str) -> List[AccessEntry]:
        """User entries of one principal, explicit and inherited."""
        return [e for e in self.list_entries(path) if e.is_user(principal)]

    def add_entry(self, path: str, principal: str, effect: Effect, rights: Rights) -> None:
        """Append an explicit user entry.

        A failed call is retried. Before each retry the folder is re-listed:
        if the entry turns out to be present the call is considered done.

        Raises:
            AclToolError: If every attempt failed.
            ValueError: For an (effect, rights) pair that is never written.
        """
        try:
            mask, inheritance = WRITABLE_ENTRIES[(effect, rights)]
        except KeyError:
            raise ValueError(f"Refusing to write a {effect.value} entry with {rights.value} rights") from None
        entry_text = f"{PrincipalKind.USER.value}:{principal}:{effect.value}:{mask}:{inheritance}"

        last_error: Optional[AclToolError] = None
        for attempt in range(1, self.retry_attempts + 1):
            if last_error is not None and self._has_explicit(path, principal, effect, mask, inheritance):
                return
            try:
                self.tool.add(path, entry_text)
                return
            except AclToolError as e:
                last_error = e
                logger.warning(
                    "Adding %s on %s failed (attempt %d/%d): %s",
                    entry_text, path, attempt, self.retry_attempts, e.message,
                )
        raise last_error

    def _has_explicit(self, path, principal, effect, mask, inheritance) -> bool:
        try:
            entries = self.list_entries(path)
        except AclToolError:
            return False
        return any(
            e.is_explicit and e.is_user(principal) and e.effect == effect
            and e.permissions == mask and e.inheritance == inheritance
            for e in entries
        )

    def delete_entry(self, path: str, position: int) -> None:
        """Delete by position. Positions of later entries shift afterwards."""
        self.tool.delete(path, position)

    def remove_where(
        self,
        path: str,
        predicate: Callable[[AccessEntry], bool],
        principal: Optional[str] = None,
    ) -> Tuple[int, List[EntryFailure]]:
        """Delete every explicit entry matching *predicate*.

        The folder is re-listed before every deletion so a position is always
        computed from the current state. An entry that still cannot be deleted
        after the retries is reported and left in place.

        Returns:
            (number of entries removed, failures)
        """
        removed = 0
        failures: List[EntryFailure] = []
        skipped = set()

        try:
            entries = self.list_entries(path)
        except AclToolError as e:
            return 0, [_failure("list", path, principal, e)]
        budget = 2 * sum(1 for e in entries if e.is_explicit and predicate(e))

        while budget > 0:
            budget -= 1
            target = next(
                (e for e in entries
                 if e.is_explicit and predicate(e) and e.identity() not in skipped),
                None,
            )
            if target is None:
                break

            error = self._delete_with_retry(path, target)
            if error is None:
                removed += 1
            else:
                skipped.add(target.identity())
                failures.append(_failure("delete", path, principal or target.principal, error))

            try:
                entries = self.list_entries(path)
            except AclToolError as e:
                failures.append(_failure("list", path, principal, e))
                break

        return removed, failures

    def _delete_with_retry(self, path: str, target: AccessEntry) -> Optional[AclToolError]:
        """Delete *target*, re-locating it by identity before each retry."""
        position = target.position
        last_error: Optional[AclToolError] = None
        for attempt in range(1, self.retry_attempts + 1):
            if last_error is not None:
                try:
                    current = self.list_entries(path)
                except AclToolError as e:
                    return e
                match = next((e for e in current if e.identity() == target.identity()), None)
                if match is None:
                    return None
                position = match.position
            try:
                self.delete_entry(path, position)
                return None
            except AclToolError as e:
                last_error = e
                logger.warning(
                    "Deleting [%d] %s on %s failed (attempt %d/%d): %s",
                    position, target.describe(), path, attempt, self.retry_attempts, e.message,
                )
        return last_error


def _failure(operation: str, path: str, principal: Optional[str], error: AclToolError) -> EntryFailure:
    return EntryFailure(
        operation=operation,
        path=path,
        principal=principal,
        message=error.message,
        details=error.details,
    )
