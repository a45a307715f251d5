"""Read-only mirror of the Synology Photos tables aclsync consumes.

Only the columns used for reconciliation are mapped. aclsync never writes
to these tables; Synology Photos owns them.
"""

from sqlalchemy import Boolean, Column, Integer, String, Text
from ..database import Base


class Folder(Base):
    """A folder of the shared photo tree.

    ``name`` holds the logical path ("/Scans/Family"); the root folder is "/".
    Folders sharing the same ``passphrase_share`` share one permission set.
    """

    __tablename__ = "folder"

    id = Column(Integer, primary_key=True)
    name = Column(Text, nullable=True)
    parent = Column(Integer, nullable=True)
    id_user = Column(Integer, nullable=False, default=0)
    shared = Column(Boolean, nullable=False, default=False)
    passphrase_share = Column(String(64), nullable=True, index=True)


class SharePermission(Base):
    """A stored grant: one target (user) on one share, with a role bitmap.

    ``target_id`` 0 denotes the public/link share and is never a principal.
    """

    __tablename__ = "share_permission"

    passphrase_share = Column(String(64), primary_key=True)
    target_id = Column(Integer, primary_key=True)
    target_type = Column(Integer, nullable=False, default=1)
    permission = Column(Integer, nullable=False, default=0)


class UserInfo(Base):
    """A Synology Photos user."""

    __tablename__ = "user_info"

    id = Column(Integer, primary_key=True)
    name = Column(Text, nullable=True)
    uid = Column(Integer, nullable=True)
