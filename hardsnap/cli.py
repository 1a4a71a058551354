import argparse
import sys
import signal
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, NoReturn, Optional

from .config import HardsnapConfig, load_config
from .mirror import RsyncMirror
from .operations import SnapshotOperations
from .reconcile import (
    CrossDeviceError, ReconcileError, ReconcileOptions, DEFAULT_SIZE_FLOOR,
    PERMISSION_MERGES, SCOPES, format_size,
)
from .rotation import RotationReport

logger = logging.getLogger('hardsnap')

EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_CROSS_DEVICE = 3


def _terminate(signum, frame) -> NoReturn:
    # Unwinds through the cleanup handlers of the engines instead of dying in place
    raise SystemExit(128 + signum)


def configure_logging(log_file: str, verbose: bool = False) -> None:
    """Send log records to a file only, never to stdout."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        filename=log_file,
        filemode='a'
    )


def format_timestamp(epoch: Optional[int]) -> str:
    """
    Convert epoch seconds to a readable local time.

    Args:
        epoch (Optional[int]): Seconds since epoch, or None when unknown

    Returns:
        str: Timestamp in format YYYY-MM-DD HH:MM:SS, or "unknown"
    """
    if epoch is None:
        return "unknown"
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


def print_error_and_exit(error_message: str, exit_code: int = EXIT_ERROR) -> NoReturn:
    """
    Print an error message and exit the program with the specified exit code.

    Args:
        error_message (str): The error message to display
        exit_code (int, optional): The exit code to use. Defaults to 1.
    """
    logger.error(error_message)
    print(f"Error: {error_message}", file=sys.stderr)
    sys.exit(exit_code)


def _backup_root(args: argparse.Namespace) -> Path:
    root = args.backup_root or args.config.backup_root
    if not root:
        print_error_and_exit("No backup root given (use --backup-root or the [backup] root setting)", EXIT_USAGE)
    return Path(root)


def _print_rotation(report: RotationReport) -> None:
    for decision in report.decisions:
        action = "rolled" if decision.rolled else "kept"
        print(f"{decision.name:<8}{action:<8}{decision.reason}")
    for name in report.skipped:
        print(f"{name:<8}{'skipped':<8}gated by an earlier cycle")
    for anomaly in report.anomalies:
        print(f"Warning: {anomaly}", file=sys.stderr)
    if report.rolled:
        print(f"Rotation of snapshot {report.current.label} complete: rolled {', '.join(report.rolled)}.")
    else:
        print(f"Rotation of snapshot {report.current.label} complete: nothing to roll.")


def rotate_command(args: argparse.Namespace) -> None:
    """
    Execute the rotate command to age the generations of a backup root.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - backup_root: Directory holding "current" and the generations
            - config: Loaded configuration
    """
    try:
        logger.info("Starting rotation")
        with SnapshotOperations(_backup_root(args), args.config.cycles) as ops:
            _print_rotation(ops.rotate())
    except ValueError as e:
        print_error_and_exit(f"Invalid value: {str(e)}")
    except PermissionError as e:
        print_error_and_exit(f"Permission denied: {str(e)}")
    except Exception as e:
        print_error_and_exit(f"Error rotating snapshots: {str(e)}")


def _read_paths(stream, null_separated: bool) -> Iterator[str]:
    if null_separated:
        for path in stream.read().split("\0"):
            path = path.strip("\n")
            if path:
                yield path
        return
    for line in stream:
        line = line.rstrip("\n")
        if line:
            yield line


def reconcile_command(args: argparse.Namespace) -> None:
    """
    Execute the reconcile command to re-link byte-identical files.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - paths: Files and directories to scan
            - stdin / null: Read paths from standard input
            - dry_run, size_floor, scope, permission_merge,
              progress_report, action_report: Reconciliation options
    """
    if not args.paths and not args.stdin:
        print_error_and_exit("No paths given (pass paths or use --stdin)", EXIT_USAGE)

    try:
        options = ReconcileOptions(
            dry_run=args.dry_run,
            size_floor=args.size_floor,
            scope=args.scope,
            permission_merge=args.permission_merge,
            progress_report=args.progress_report == "on",
            action_report=args.action_report == "on",
        )
    except ValueError as e:
        print_error_and_exit(str(e), EXIT_USAGE)

    paths: List = list(args.paths)
    if args.stdin:
        paths = paths + list(_read_paths(sys.stdin, args.null))

    try:
        logger.info(f"Starting reconciliation of {len(paths)} path(s)")
        with SnapshotOperations(args.backup_root or args.config.backup_root or ".", args.config.cycles) as ops:
            stats = ops.reconcile(paths, options)
    except CrossDeviceError as e:
        print_error_and_exit(f"Aborted: {str(e)}", EXIT_CROSS_DEVICE)
    except ReconcileError as e:
        print_error_and_exit(f"Aborted: {str(e)}")
    except ValueError as e:
        print_error_and_exit(f"Invalid value: {str(e)}")
    except Exception as e:
        print_error_and_exit(f"Error reconciling files: {str(e)}")

    prefix = "Would merge" if options.dry_run else "Merged"
    print(f"Scanned {stats.files_scanned} files ({stats.comparisons} comparisons, "
          f"{stats.too_small} below size floor, {stats.excluded} excluded)")
    print(f"{prefix} {stats.merges} duplicate(s), relinking {stats.relinked} path(s)")
    verb = "Would reclaim" if options.dry_run else "Reclaimed"
    print(f"{verb} {format_size(stats.bytes_saved)} ({stats.bytes_saved} bytes, {stats.inodes_freed} inode(s))")


def backup_command(args: argparse.Namespace) -> None:
    """
    Execute the backup command: mirror, stamp, optionally reconcile, rotate.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - source: rsync source of the mirror
            - ssh: Remote shell command
            - reconcile: Reconcile "current" before rotating
    """
    source = args.source or args.config.source
    if not source:
        print_error_and_exit("No mirror source given (use --source or the [backup] source setting)", EXIT_USAGE)
    mirror = RsyncMirror(source, ssh_command=args.ssh or args.config.ssh or "ssh")

    try:
        logger.info("Starting backup")
        with SnapshotOperations(_backup_root(args), args.config.cycles) as ops:
            report = ops.backup(mirror, reconcile=args.reconcile or args.config.reconcile)
        _print_rotation(report)
    except CrossDeviceError as e:
        print_error_and_exit(f"Aborted: {str(e)}", EXIT_CROSS_DEVICE)
    except ValueError as e:
        print_error_and_exit(f"Invalid value: {str(e)}")
    except Exception as e:
        print_error_and_exit(f"Error running backup: {str(e)}")


def stamp_command(args: argparse.Namespace) -> None:
    """
    Execute the stamp command to write a fresh metadata record into "current".

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - backup_root: Directory holding "current"
    """
    try:
        with SnapshotOperations(_backup_root(args), args.config.cycles) as ops:
            record = ops.stamp()
        print(f"Stamped current snapshot as {record.label}.")
    except FileNotFoundError as e:
        print_error_and_exit(f"File not found: {str(e)}")
    except Exception as e:
        print_error_and_exit(f"Error stamping snapshot: {str(e)}")


def status_command(args: argparse.Namespace) -> None:
    """
    Execute the status command to list generations per cycle.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - backup_root: Directory holding the generations
    """
    try:
        with SnapshotOperations(_backup_root(args), args.config.cycles) as ops:
            rows = ops.status()
    except Exception as e:
        print_error_and_exit(f"Error reading status: {str(e)}")

    if not rows:
        print("No generations found.")
        return

    print(f"{'CYCLE':<8}{'GEN':<5}{'CREATED':<22}{'DIRECTORY'}")
    for row in rows:
        print(f"{row['cycle']:<8}{row['index']:<5}{format_timestamp(row['created']):<22}{row['name']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hardsnap",
        description="Hardlinked snapshot rotation and duplicate reconciliation",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    # Global options must come before the subcommand
    parser.add_argument(
        "--backup-root",
        help="Directory holding 'current' and the generation directories"
    )
    parser.add_argument(
        "--config",
        help="INI file with cycle definitions and backup defaults"
    )
    parser.add_argument(
        "--log-file",
        default="hardsnap.log",
        help="File that receives the log"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log debug messages"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser(
        "rotate",
        help="Roll the generations that are due"
    )

    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Hardlink byte-identical files",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    reconcile_parser.add_argument("paths", nargs="*", help="Files and directories to scan")
    reconcile_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be done without changing anything"
    )
    reconcile_parser.add_argument(
        "--size-floor",
        type=int,
        default=DEFAULT_SIZE_FLOOR,
        help="Ignore files smaller than this many bytes"
    )
    reconcile_parser.add_argument("--scope", choices=SCOPES, default="any",
                                  help="Restrict merges to within or across top-level subtrees")
    reconcile_parser.add_argument("--permission-merge", choices=PERMISSION_MERGES, default="newer-wins",
                                  help="How permission bits of merged files are combined")
    reconcile_parser.add_argument("--progress-report", choices=["on", "off"], default="off",
                                  help="Print progress lines to stderr")
    reconcile_parser.add_argument("--action-report", choices=["on", "off"], default="off",
                                  help="Print every link, chmod and touch action")
    reconcile_parser.add_argument("--stdin", action="store_true",
                                  help="Also read paths from standard input, one per line")
    reconcile_parser.add_argument("-0", "--null", action="store_true",
                                  help="Paths on standard input are NUL separated")

    backup_parser = subparsers.add_parser(
        "backup",
        help="Mirror the source into 'current', then rotate"
    )
    backup_parser.add_argument("--source", help="rsync source, e.g. host:/srv/data")
    backup_parser.add_argument("--ssh", help="Remote shell command for rsync")
    backup_parser.add_argument("--reconcile", action="store_true",
                               help="Reconcile 'current' before rotating")

    subparsers.add_parser(
        "stamp",
        help="Write a fresh creation record into 'current'"
    )

    subparsers.add_parser(
        "status",
        help="List the generations of every cycle"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main entry point for the hardsnap command line interface.
    Parses arguments and dispatches to appropriate command handlers.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_file, args.verbose)
    signal.signal(signal.SIGTERM, _terminate)

    if args.config:
        try:
            args.config = load_config(args.config)
        except (FileNotFoundError, ValueError) as e:
            print_error_and_exit(f"Invalid configuration: {str(e)}", EXIT_USAGE)
    else:
        args.config = HardsnapConfig()

    # Command dispatch
    command_handlers = {
        "rotate": rotate_command,
        "reconcile": reconcile_command,
        "backup": backup_command,
        "stamp": stamp_command,
        "status": status_command,
    }

    if args.command in command_handlers:
        command_handlers[args.command](args)
    else:
        parser.print_help()
        sys.exit(EXIT_USAGE)


if __name__ == "__main__":
    main()
