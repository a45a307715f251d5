"""Access-control schemas: permission levels, ACL entries and tree nodes."""

from enum import Enum, IntEnum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict

from ..exceptions import InvalidPermissionLevelError


class PermissionLevel(IntEnum):
    """Synology Photos role bitmaps, ordered by privilege.

    Every level above NONE maps to the same read-only filesystem right.
    """

    NONE = 0
    VIEW = 1
    DOWNLOAD = 3
    UPLOAD = 7
    MANAGE = 15
    ADMIN = 31

    @classmethod
    def parse(
        cls,
        value: object,
        node_id: Optional[int] = None,
        principal: Optional[str] = None,
    ) -> "PermissionLevel":
        """Decode a stored permission value.

        Raises:
            InvalidPermissionLevelError: If *value* is not a known bitmap.
        """
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise InvalidPermissionLevelError(value, node_id=node_id, principal=principal) from None

    @property
    def grants_access(self) -> bool:
        return self > PermissionLevel.NONE


class Effect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class Rights(str, Enum):
    """What an entry covers, independent of its raw permission mask."""

    TRAVERSE = "traverse"      # enter, no listing
    READ_LIST = "read_list"    # enter and list, read content
    ALL = "all"                # every right, including write
    OTHER = "other"


class PrincipalKind(str, Enum):
    USER = "user"
    GROUP = "group"
    OWNER = "owner"
    EVERYONE = "everyone"
    AUTHENTICATED_USER = "authenticated_user"
    SYSTEM = "system"


# Masks use the 13-column synoacltool layout: r w x p d D a A R W c C o
READ_LIST_MASK = "r-x---a-R-c--"
TRAVERSE_MASK = "--x---a-R-c--"
DENY_ALL_MASK = "rwxpdDaARWcCo"

INHERIT_ALL = "fd--"
INHERIT_NONE = "----"

# (effect, rights) -> (mask, inheritance) for every entry aclsync writes.
# Allow+ALL is absent: write access is never granted.
WRITABLE_ENTRIES = {
    (Effect.ALLOW, Rights.READ_LIST): (READ_LIST_MASK, INHERIT_ALL),
    (Effect.ALLOW, Rights.TRAVERSE): (TRAVERSE_MASK, INHERIT_NONE),
    (Effect.DENY, Rights.ALL): (DENY_ALL_MASK, INHERIT_ALL),
}


def rights_from_mask(mask: str) -> Rights:
    """Classify a raw permission mask."""
    if "w" in mask:
        return Rights.ALL if "r" in mask and "x" in mask else Rights.OTHER
    if "r" in mask:
        return Rights.READ_LIST
    if "x" in mask:
        return Rights.TRAVERSE
    return Rights.OTHER


class AccessEntry(BaseModel):
    """One ACL entry as reported by the ACL tool.

    ``level`` 0 is explicit on the node; ``level`` k > 0 is inherited from
    the ancestor k steps up. ``position`` is only valid until the next
    mutation of the same node.
    """

    model_config = ConfigDict(frozen=True)

    position: int
    principal_kind: PrincipalKind
    principal: str
    effect: Effect
    rights: Rights
    permissions: str
    inheritance: str
    level: int

    @property
    def is_explicit(self) -> bool:
        return self.level == 0

    def is_user(self, name: Optional[str] = None) -> bool:
        """True for user entries, optionally restricted to one user name."""
        if self.principal_kind != PrincipalKind.USER:
            return False
        return name is None or self.principal == name

    def identity(self) -> Tuple:
        """Everything but the position, which shifts on every deletion."""
        return (
            self.principal_kind, self.principal, self.effect,
            self.permissions, self.inheritance, self.level,
        )

    def describe(self) -> str:
        return (
            f"{self.principal_kind.value}:{self.principal}:{self.effect.value}:"
            f"{self.permissions}:{self.inheritance} (level:{self.level})"
        )


class Node(BaseModel):
    """A folder of the photo tree, immutable for the duration of a run.

    ``id`` is None for intermediate folders unknown to the datastore.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    path: str
    parent_id: Optional[int] = None
    physical_path: str
    is_root: bool = False
