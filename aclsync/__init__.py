"""aclsync: align shared-folder ACLs with Synology Photos share permissions."""

__version__ = "1.0.0"
