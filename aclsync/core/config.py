"""Application configuration with validation."""

from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from ..exceptions import ConfigurationError


# Service and system identities that the reconciler never touches and the
# audit never probes.
DEFAULT_EXCLUDED_PRINCIPALS = (
    "guest,admin,root,chef,temp_adm,"
    "backup,webdav_syno-j,unifi,shield,n8n,jeedom,cert-renewal"
)


class Settings(BaseSettings):
    """
    Application settings with validation.

    Every value can be overridden through an environment variable of the same
    name (case-insensitive) or a ``.env`` file in the working directory.
    """

    # Database Configuration
    database_url: str = Field(
        default="postgresql://postgres@localhost/synofoto",
        description="Synology Photos database connection URL"
    )
    # Connection pool tuning (PostgreSQL only; ignored for SQLite).
    db_pool_size: int = Field(
        default=2,
        description="Number of persistent database connections"
    )
    db_pool_timeout: int = Field(
        default=30,
        description="Seconds to wait for a connection from the pool before raising"
    )

    # Photo tree
    photo_root: str = Field(
        default="/volume1/photo",
        description="Physical directory the logical folder '/' maps to"
    )
    root_folder_id: int = Field(
        default=1,
        description="Folder id of the tree root in the folder table"
    )
    excluded_path_markers: str = Field(
        default="#recycle,@eaDir,.__",
        description="Folder names containing any of these markers are never reconciled"
    )

    # ACL tool
    acl_tool: str = Field(
        default="synoacltool",
        description="Executable used to list, add and delete ACL entries"
    )
    acl_tool_timeout: float = Field(
        default=30.0,
        description="Seconds before a single ACL tool call is considered failed"
    )
    acl_retry_attempts: int = Field(
        default=2,
        description="Attempts per add/delete before the entry is reported and skipped"
    )

    # Access probe
    su_binary: str = Field(
        default="su",
        description="Executable used to run the access probe as another user"
    )
    probe_timeout: float = Field(
        default=15.0,
        description="Seconds before a probe attempt counts as denied"
    )

    # Principals
    excluded_principals: str = Field(
        default=DEFAULT_EXCLUDED_PRINCIPALS,
        description="System/service users never mutated or audited (comma-separated)"
    )

    # Audit
    audit_include_root: bool = Field(
        default=False,
        description="Also audit the tree root alongside the granted folders"
    )

    # Runtime
    require_root: bool = Field(
        default=True,
        description="Refuse to run unless the effective uid is 0"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="text",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    def get_excluded_principals(self) -> frozenset:
        """Get the exclusion set as a frozenset of names."""
        return frozenset(
            name.strip() for name in self.excluded_principals.split(',') if name.strip()
        )

    def get_excluded_path_markers(self) -> List[str]:
        return [m.strip() for m in self.excluded_path_markers.split(',') if m.strip()]

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in ('json', 'text'):
            raise ValueError("Invalid log format. Must be 'json' or 'text'")
        return v_lower

    @field_validator('photo_root')
    @classmethod
    def normalize_photo_root(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith('/'):
            raise ValueError("photo_root must be an absolute path")
        return v.rstrip('/') or '/'

    def validate_runtime(self) -> None:
        """Validate settings that only matter once a run is about to start.

        Raises:
            ConfigurationError: If the configuration cannot drive a run.
        """
        errors: list[str] = []

        if self.acl_retry_attempts < 1:
            errors.append("ACL_RETRY_ATTEMPTS must be at least 1")
        if self.acl_tool_timeout <= 0 or self.probe_timeout <= 0:
            errors.append("ACL_TOOL_TIMEOUT and PROBE_TIMEOUT must be positive")
        if self.root_folder_id < 0:
            errors.append("ROOT_FOLDER_ID cannot be negative")

        if errors:
            raise ConfigurationError(
                "Invalid configuration:\n  - " + "\n  - ".join(errors)
            )

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()
