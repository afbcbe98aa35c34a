#!/usr/bin/env python3
"""
ledger-sync - reconcile a remote task ledger with Apple Reminders.
"""

import argparse
import logging
import logging.handlers
import sys

from ledger_sync.core.config import load_config, get_default_config_path, get_log_dir
from ledger_sync.commands import (
    SyncCommand,
    DedupeCommand,
    ClassifyCommand,
    StatusCommand,
)


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(verbose: bool) -> None:
    """Console logging when verbose, plus a rotating log file under the working directory."""
    root = logging.getLogger()
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format=LOG_FORMAT)
    else:
        root.setLevel(logging.INFO)

    try:
        log_path = get_log_dir() / "ledger-sync.log"
        for existing in root.handlers:
            if getattr(existing, "baseFilename", None) == str(log_path.resolve()):
                return
        handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=1_000_000,
            backupCount=3,
            encoding="utf-8",
        )
    except OSError as e:
        print(f"Warning: file logging disabled ({e})")
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


def main(argv=None):
    """Main entry point for ledger-sync."""
    parser = argparse.ArgumentParser(
        description="Reconcile a remote task ledger with Apple Reminders",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ledger-sync sync                     # Run one pass (dry-run by default)
  ledger-sync sync --apply             # Apply changes
  ledger-sync sync --apply --full      # Force a full pass
  ledger-sync sync --apply --watch     # Keep running on the configured interval
  ledger-sync dedupe --apply           # Retire duplicate ledger tasks
  ledger-sync classify "Send invoice"  # Show the triage decision for a title
  ledger-sync status                   # Show watermark and last pass
        """
    )

    default_config = get_default_config_path()

    parser.add_argument(
        '--config',
        help=f'Path to configuration file (default: {default_config})',
        default=None
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Sync command
    sync_parser = subparsers.add_parser('sync', help='Run a reconciliation pass')
    sync_parser.add_argument(
        '--apply',
        action='store_true',
        help='Apply changes (default is dry-run)'
    )
    mode_group = sync_parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        '--full',
        dest='mode',
        action='store_const',
        const='full',
        help='Force a full pass'
    )
    mode_group.add_argument(
        '--delta',
        dest='mode',
        action='store_const',
        const='delta',
        help='Run a delta pass (escalates to full when one is due)'
    )
    sync_parser.add_argument(
        '--watch',
        action='store_true',
        help='Keep running passes on the configured interval'
    )

    # Dedupe command
    dedupe_parser = subparsers.add_parser('dedupe', help='Find and retire duplicate ledger tasks')
    dedupe_parser.add_argument(
        '--apply',
        action='store_true',
        help='Apply changes (default is dry-run)'
    )
    dedupe_parser.add_argument(
        '--hard',
        action='store_true',
        help='Delete duplicates instead of marking them done'
    )
    dedupe_parser.add_argument(
        '--purge-expired',
        action='store_true',
        help='Also delete closed tasks past their retention deadline'
    )

    # Classify command
    classify_parser = subparsers.add_parser('classify', help='Show the triage decision for a title')
    classify_parser.add_argument('title', help='Reminder title')
    classify_parser.add_argument('--notes', help='Reminder notes')
    classify_parser.add_argument(
        '--tag',
        action='append',
        dest='tags',
        default=[],
        help='Tag on the reminder (repeatable)'
    )
    classify_parser.add_argument(
        '--json',
        action='store_true',
        help='Print the result as JSON'
    )

    # Status command
    subparsers.add_parser('status', help='Show persisted pass state')

    args = parser.parse_args(argv)

    configure_logging(args.verbose)

    # Show help if no command specified
    if not args.command:
        parser.print_help()
        return 1

    config = load_config(args.config)

    if args.verbose:
        actual_config_path = args.config if args.config else get_default_config_path()
        print(f"Using config: {actual_config_path}")

    try:
        if args.command == 'sync':
            cmd = SyncCommand(config, verbose=args.verbose)
            success = cmd.run(apply_changes=args.apply, mode=args.mode, watch=args.watch)

        elif args.command == 'dedupe':
            cmd = DedupeCommand(config, verbose=args.verbose)
            success = cmd.run(
                apply_changes=args.apply,
                hard=args.hard,
                purge_expired=args.purge_expired,
            )

        elif args.command == 'classify':
            cmd = ClassifyCommand(config, verbose=args.verbose)
            success = cmd.run(args.title, notes=args.notes, tags=args.tags, as_json=args.json)

        elif args.command == 'status':
            cmd = StatusCommand(config, verbose=args.verbose)
            success = cmd.run()

        else:
            print(f"Unknown command '{args.command}'.")
            return 1

        return 0 if success else 1

    except KeyboardInterrupt:
        print("\nOperation cancelled by user.")
        return 130
    except Exception as e:
        print(f"Error: {e}")
        if not args.verbose:
            print("Re-run with --verbose for more detail.")
        else:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
