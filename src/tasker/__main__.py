#!/usr/bin/env python3
"""
tasker - Main entry point for python -m tasker

Runs the reporter daemon for one host in the foreground, together with the
periodic metrics cleanup.
"""

import argparse
import asyncio
import sys


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tasker",
        description="Run the tasker process reporter for this host"
    )
    parser.add_argument("--config", action="append", default=[], help="Configuration file (repeatable)")
    parser.add_argument("--interval", type=float, help="Collection interval in seconds")
    parser.add_argument("--hostname", help="Hostname to report for")
    parser.add_argument("--log-level", help="Override the configured log level")
    return parser.parse_args(argv)


async def run_reporter(args: argparse.Namespace) -> None:
    from tasker.registry.cleaner import RetentionCleaner
    from tasker.registry.reporter import ReporterDaemon
    from tasker.registry.storage import RegistryStorage
    from tasker.storage.database import create_database
    from tasker.utils.config import load_config
    from tasker.utils.logging import setup_logging

    extra = {}
    if args.interval is not None:
        extra["reporter"] = {"collection_interval": args.interval}
    if args.log_level:
        extra["logging"] = {"level": args.log_level}

    config = load_config(config_paths=args.config, extra_config=extra)

    setup_logging(
        app_name=config.app_name,
        log_level=config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == "json",
        enable_sentry=config.logging.enable_sentry,
        sentry_dsn=config.logging.sentry_dsn,
        enable_files=config.logging.enable_files,
    )

    storage = RegistryStorage(create_database(config.database))
    await storage.initialize()

    cleaner = RetentionCleaner(storage, retention_days=config.retention.retention_days)
    daemon = ReporterDaemon.from_config(storage, config.reporter, hostname=args.hostname)

    await cleaner.start_periodic_cleanup(config.retention.cleanup_interval_hours)
    try:
        await daemon.run()
    finally:
        await cleaner.stop_periodic_cleanup()
        await storage.close()


def main(argv=None):
    """Main entry point for python -m tasker"""
    args = parse_args(argv)
    try:
        asyncio.run(run_reporter(args))
    except KeyboardInterrupt:
        print("\ntasker reporter stopped by user", file=sys.stderr)
        sys.exit(0)
    except Exception as e:
        print(f"tasker reporter error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
