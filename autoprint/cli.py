"""
Command-line interface for the auto-print service.

Provides commands for:
- Starting/stopping the service
- Inspecting status, stored events, statistics and health
- Running a one-off event fetch, event removal or database cleanup
- Managing configuration
"""

import argparse
import json
import logging
import os
import signal
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path

from autoprint.config import ServiceConfig, ConfigError, get_data_dir
from autoprint.database import EventStore
from autoprint.health import read_health_file
from autoprint.models import EventStatus, to_iso
from autoprint.service import (
    AutoPrintService,
    _get_pid_file_path,
    get_service_info,
    is_service_running,
)
from autoprint.statistics import format_statistics_summary

logger = logging.getLogger(__name__)


def setup_logging(
    log_file: str = None,
    verbose: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    level: str = "INFO"
):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, str(level).upper(), logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # Rotating file handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)

    # APScheduler logs every job submission at INFO
    logging.getLogger('apscheduler').setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_config(args) -> ServiceConfig:
    try:
        return ServiceConfig(args.config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)


def _open_store(config: ServiceConfig) -> EventStore:
    return EventStore(
        config.database.path,
        busy_retries=config.database.busy_retries,
        busy_base_delay=config.database.busy_base_delay_ms / 1000,
    )


def cmd_start(args):
    """Start the service."""
    config = _load_config(args)
    setup_logging(
        log_file=config.logging.file,
        verbose=args.verbose,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
        level=config.logging.level
    )

    logger.info("Starting auto-print service...")

    try:
        service = AutoPrintService(config)
        if not service.start():
            sys.exit(1)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Failed to start service: {e}", exc_info=True)
        sys.exit(1)

    if args.foreground:
        logger.info("Running in foreground mode. Press Ctrl+C to stop.")
    else:
        logger.info("Service is running. Use 'autoprint stop' to stop it")
        logger.info(f"Logs: {config.logging.file}")

    service.run_forever()


def cmd_stop(args):
    """Stop the running service."""
    setup_logging(verbose=args.verbose)

    running, pid = is_service_running()
    if not running:
        logger.warning("Service does not appear to be running (no PID file)")
        return

    try:
        logger.info(f"Stopping service (PID: {pid})...")
        os.kill(pid, signal.SIGTERM)

        # Wait for in-flight jobs to finish
        for _ in range(30):
            time.sleep(1)
            if not is_service_running()[0]:
                logger.info("Service stopped successfully")
                return

        logger.warning("Service did not stop gracefully, sending SIGKILL")
        os.kill(pid, signal.SIGKILL)
        pid_file = _get_pid_file_path()
        if pid_file.exists():
            pid_file.unlink()

    except OSError as e:
        logger.error(f"Failed to stop service: {e}")
        sys.exit(1)


def cmd_status(args):
    """Show service status."""
    setup_logging(verbose=args.verbose)
    config = _load_config(args)

    info = get_service_info()
    running, pid = is_service_running()

    print("\n┌─────────────────────────────────────────────────────────────────┐")
    print("│                    AUTO-PRINT SERVICE STATUS                    │")
    print("└─────────────────────────────────────────────────────────────────┘\n")

    if running:
        print(f"  Status:     \033[92m● Running\033[0m")
        print(f"  PID:        {pid}")
        if info:
            if info.get('started_at'):
                print(f"  Started:    {info['started_at']}")
            print(f"  Config:     {info.get('config_path', 'N/A')}")
            print(f"  Database:   {info.get('database_path', 'N/A')}")
            print(f"  Log file:   {info.get('log_file', 'N/A')}")
    else:
        print(f"  Status:     \033[91m○ Not Running\033[0m")
        print("\n  Start the service with: autoprint start --foreground")

    if not Path(config.database.path).expanduser().exists():
        print()
        return

    try:
        store = _open_store(config)
        counts = store.get_status_counts()
        store.close()
    except Exception as e:
        logger.error(f"Failed to read database: {e}")
        sys.exit(1)

    print("\n  Events:")
    for status in EventStatus:
        print(f"    {status.value:<12} {counts['events'].get(status.value, 0)}")
    print("\n  Jobs:")
    for status, count in sorted(counts['jobs'].items()):
        print(f"    {status:<12} {count}")
    print()


def cmd_fetch(args):
    """Fetch upcoming events once and store them, without scheduling."""
    config = _load_config(args)
    setup_logging(verbose=args.verbose, level=config.logging.level)

    service = AutoPrintService(config)
    try:
        inserted = service.discover_events()
        logger.info(f"Fetch complete: {inserted} new event(s) stored")
    except Exception as e:
        logger.error(f"Failed to fetch events: {e}")
        sys.exit(1)
    finally:
        service.store.close()
        service.api_client.close()
        service.notifier.close()


def cmd_list(args):
    """List stored events with their job state."""
    setup_logging(verbose=args.verbose)
    config = _load_config(args)

    store = _open_store(config)
    try:
        status = EventStatus(args.status) if args.status else None
        events = store.list_events(status=status, limit=args.limit)

        if not events:
            print("No events found")
            return

        print(f"\n{len(events)} event(s):\n")
        for event in events:
            job = store.get_job(event.id)
            print(f"  \033[1m{event.name}\033[0m (ID: {event.id})")
            print(f"    Starts:   {to_iso(event.start_time)}")
            print(f"    Status:   {event.status.value}")
            if event.category:
                print(f"    Category: {event.category}")
            if job:
                print(f"    Job:      {job.status.value} at {to_iso(job.scheduled_time)} "
                      f"(retries: {job.retry_count})")
                if job.error_message:
                    print(f"    Error:    {job.error_message}")
            print()
    finally:
        store.close()


def cmd_cleanup(args):
    """Delete old finished events from the database."""
    config = _load_config(args)
    setup_logging(verbose=args.verbose)

    days = args.days if args.days is not None else config.database.cleanup_days
    store = _open_store(config)
    try:
        deleted = store.cleanup_old_events(days)
        print(f"Deleted {deleted} event(s) older than {days} days")
    finally:
        store.close()


def cmd_stats(args):
    """Show processing statistics."""
    setup_logging(verbose=args.verbose)
    config = _load_config(args)

    store = _open_store(config)
    try:
        stats = store.get_statistics(args.days)
    finally:
        store.close()

    if args.json:
        print(json.dumps(stats, indent=2))
    else:
        print(format_statistics_summary(stats))


def cmd_remove(args):
    """Delete an event and its job; a running service skips it when its timer fires."""
    setup_logging(verbose=args.verbose)
    config = _load_config(args)

    store = _open_store(config)
    try:
        if not store.delete_event(args.event_id):
            print(f"Event {args.event_id} not found")
            sys.exit(1)
        print(f"Removed event {args.event_id}")
    finally:
        store.close()


def cmd_health(args):
    """Show the last health snapshot written by the service."""
    setup_logging(verbose=args.verbose)

    snapshot = read_health_file()
    running, _ = is_service_running()
    if snapshot is None:
        print("No health information available (has the service been started?)")
        sys.exit(1)

    if not running:
        print("\033[93mService is not running; showing the last recorded snapshot.\033[0m")
    print(json.dumps(snapshot, indent=2))

    if snapshot.get('status') == 'unhealthy':
        sys.exit(1)


def cmd_init(args):
    """Initialize service configuration."""
    setup_logging(verbose=args.verbose)

    try:
        config = ServiceConfig(args.config)
        config.save()
        logger.info(f"Initialized configuration at: {config.config_path}")

        for directory in (Path(config.logging.file).parent, Path(config.output_dir), get_data_dir()):
            directory.expanduser().mkdir(parents=True, exist_ok=True)
        logger.info(f"Created data directory: {get_data_dir()}")

        errors = config.validate()
        if errors:
            logger.warning("Configuration needs attention before starting:")
            for error in errors:
                logger.warning(f"  - {error}")

    except Exception as e:
        logger.error(f"Failed to initialize: {e}")
        sys.exit(1)


def cmd_show_config(args):
    """Show current configuration."""
    setup_logging(verbose=args.verbose)
    config = _load_config(args)

    print(f"\nConfiguration file: {config.config_path}\n")
    print(json.dumps(config.to_dict(), indent=2))
    print(f"\nAPI key set: {'yes' if config.api.api_key else 'no'}")

    errors = config.validate()
    if errors:
        print("\nValidation errors:")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)
    print("\nConfiguration is valid")


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Event auto-print service - prints attendee lists before each event starts",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '-c', '--config',
        type=str,
        help='Path to service configuration file'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    start_parser = subparsers.add_parser('start', help='Start the service')
    start_parser.add_argument(
        '-f', '--foreground',
        action='store_true',
        help='Run in foreground (Ctrl+C to stop)'
    )
    start_parser.set_defaults(func=cmd_start)

    stop_parser = subparsers.add_parser('stop', help='Stop the service')
    stop_parser.set_defaults(func=cmd_stop)

    status_parser = subparsers.add_parser('status', help='Show service status')
    status_parser.set_defaults(func=cmd_status)

    fetch_parser = subparsers.add_parser('fetch', help='Fetch and store upcoming events once')
    fetch_parser.set_defaults(func=cmd_fetch)

    list_parser = subparsers.add_parser('list', help='List stored events')
    list_parser.add_argument('--status', '-s', type=str,
                             choices=[s.value for s in EventStatus],
                             help='Filter by event status')
    list_parser.add_argument('--limit', '-n', type=int, default=50,
                             help='Maximum number of events to show (default: 50)')
    list_parser.set_defaults(func=cmd_list)

    cleanup_parser = subparsers.add_parser('cleanup', help='Delete old finished events')
    cleanup_parser.add_argument('--days', '-d', type=int,
                                help='Keep events from the last N days (default: from config)')
    cleanup_parser.set_defaults(func=cmd_cleanup)

    stats_parser = subparsers.add_parser('stats', help='Show processing statistics')
    stats_parser.add_argument('--days', '-d', type=int, default=7,
                              help='Look back N days (default: 7)')
    stats_parser.add_argument('--json', action='store_true', help='Print the full report as JSON')
    stats_parser.set_defaults(func=cmd_stats)

    remove_parser = subparsers.add_parser('remove', help='Delete a stored event and its job')
    remove_parser.add_argument('event_id', help='Event ID')
    remove_parser.set_defaults(func=cmd_remove)

    health_parser = subparsers.add_parser('health', help='Show service health')
    health_parser.set_defaults(func=cmd_health)

    init_parser = subparsers.add_parser('init', help='Initialize service configuration')
    init_parser.set_defaults(func=cmd_init)

    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
