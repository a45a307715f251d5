"""Command-line entry point.

Usage:
    aclsync reconcile <folder_id>
    aclsync reconcile-all
    aclsync audit {summary|full|node <folder_id>|principal <user>}
    aclsync nightly

Exit codes: 0 when clean, 1 when mismatches or entry failures were found,
2 on a fatal error (datastore unreachable, invalid configuration, missing
prerequisites, unknown folder or excluded user).
"""

import argparse
import logging
import os
import shutil
import sys
import uuid
from typing import List, Optional

from pydantic import ValidationError

from . import __version__
from .core.config import Settings, get_settings
from .core.logging_config import run_id_var, setup_logging
from .database import create_db_engine, make_session_factory, mask_url, session_scope, verify_connection
from .exceptions import AclSyncException, ConfigurationError
from .repositories import GrantRepository
from .schemas.report import AuditMode
from .services import AclGateway, AuditEngine, BatchDriver, Reconciler, SuAccessProbe, SynoAclTool
from .tree_index import build_run_context

logger = logging.getLogger("aclsync")

EXIT_OK = 0
EXIT_NOT_CLEAN = 1
EXIT_FATAL = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aclsync",
        description="Reconcile Synology Photos shares with folder ACLs, and audit the result",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s reconcile 92
  %(prog)s reconcile-all
  %(prog)s audit summary
  %(prog)s audit principal bonzac
  %(prog)s nightly
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override LOG_LEVEL",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        default=None,
        help="Override LOG_FORMAT",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    reconcile = sub.add_parser("reconcile", help="Reconcile one folder and its ancestors")
    reconcile.add_argument("folder_id", type=int, help="Folder id in the Photos database")

    sub.add_parser("reconcile-all", help="Reconcile every folder that carries a share")

    audit = sub.add_parser("audit", help="Compare shares with effective access")
    audit.add_argument("mode", choices=[m.value for m in AuditMode], help="Audit mode")
    audit.add_argument(
        "target",
        nargs="?",
        default=None,
        help="Folder id for 'node', user name for 'principal'",
    )

    sub.add_parser("nightly", help="reconcile-all followed by a summary audit")
    return parser


def check_prerequisites(settings: Settings) -> None:
    """Verify the host can run the ACL tool and the probe.

    Raises:
        ConfigurationError: On the first missing prerequisite.
    """
    settings.validate_runtime()
    if settings.require_root and hasattr(os, "geteuid") and os.geteuid() != 0:
        raise ConfigurationError("aclsync must run as root (set REQUIRE_ROOT=false to skip this check)")
    for label, executable in (("ACL tool", settings.acl_tool), ("su", settings.su_binary)):
        if shutil.which(executable) is None:
            raise ConfigurationError(f"{label} not found: {executable}")
    if not os.path.isdir(settings.photo_root):
        raise ConfigurationError(f"Photo root does not exist: {settings.photo_root}")


def run_command(args: argparse.Namespace, settings: Settings) -> int:
    """Execute one subcommand. Fatal errors propagate as AclSyncException."""
    if args.command == "audit":
        _validate_audit_target(args)

    engine = create_db_engine(settings)
    try:
        verify_connection(engine)
        logger.info("Connected to %s", mask_url(settings.database_url))

        with session_scope(make_session_factory(engine)) as db:
            repo = GrantRepository(
                db,
                excluded_principals=settings.get_excluded_principals(),
                excluded_path_markers=settings.get_excluded_path_markers(),
                root_folder_id=settings.root_folder_id,
            )
            repo.ping()
            context = build_run_context(repo, settings.photo_root, settings.root_folder_id)

        gateway = AclGateway(
            SynoAclTool(settings.acl_tool, settings.acl_tool_timeout),
            retry_attempts=settings.acl_retry_attempts,
        )
        driver = BatchDriver(context, Reconciler(gateway, context))
        audit_engine = AuditEngine(
            context,
            SuAccessProbe(settings.su_binary, settings.probe_timeout),
            gateway=gateway,
            include_root=settings.audit_include_root,
        )

        if args.command == "reconcile":
            report = driver.reconcile_one(args.folder_id)
            return EXIT_OK if report.succeeded else EXIT_NOT_CLEAN

        if args.command == "reconcile-all":
            report = driver.run_all()
            return EXIT_OK if report.succeeded else EXIT_NOT_CLEAN

        if args.command == "audit":
            mode = AuditMode(args.mode)
            if mode == AuditMode.NODE:
                audit_report = audit_engine.audit_node_id(int(args.target))
            elif mode == AuditMode.PRINCIPAL:
                audit_report = audit_engine.audit_principal(args.target)
            else:
                audit_report = audit_engine.audit_all(mode)
            return EXIT_OK if audit_report.is_clean else EXIT_NOT_CLEAN

        if args.command == "nightly":
            run_report, audit_report = driver.nightly(audit_engine)
            return EXIT_OK if run_report.succeeded and audit_report.is_clean else EXIT_NOT_CLEAN

        raise ConfigurationError(f"Unknown command: {args.command}")
    finally:
        engine.dispose()


def _validate_audit_target(args: argparse.Namespace) -> None:
    if args.mode == AuditMode.NODE.value:
        try:
            int(args.target)
        except (TypeError, ValueError):
            raise ConfigurationError("audit node requires a numeric folder id") from None
    elif args.mode == AuditMode.PRINCIPAL.value:
        if not args.target:
            raise ConfigurationError("audit principal requires a user name")
    elif args.target is not None:
        raise ConfigurationError(f"audit {args.mode} takes no target")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"[aclsync] Invalid configuration: {e}", file=sys.stderr)
        return EXIT_FATAL

    setup_logging(args.log_level or settings.log_level, args.log_format or settings.log_format)
    token = run_id_var.set(uuid.uuid4().hex[:8])
    try:
        check_prerequisites(settings)
        code = run_command(args, settings)
    except AclSyncException as e:
        logger.error("Fatal: %s", e.message, extra={"error": e.to_dict()})
        code = EXIT_FATAL
    finally:
        run_id_var.reset(token)

    logger.info("Exit code %d", code)
    return code


if __name__ == "__main__":
    sys.exit(main())
