"""
Configur - command line entry point

Runs the settings sync for one application, either once (print the
resulting keys and exit) or continuously with the refresh timer and
push listener until interrupted.

Usage:
    configur --connection-string "AppId=...;AppSecret=...;AppPassword=..."
    configur --once                  # One cycle, print keys, exit
    configur --once --show-values    # Include values in the listing
    configur --config my.yaml -v     # Custom options file, debug logging
"""

import argparse
import asyncio
import os
import signal
import sys

from configur import __version__
from configur.common.config import ConfigurOptions, load_options, parse_connection_string
from configur.common.logging_setup import get_service_logger, setup_logging
from configur.services.sync.provider import ConfigurProvider
from configur.services.sync.store import SettingsStore

CONNECTION_STRING_ENV = "CONFIGUR_CONNECTION_STRING"
LOG_LEVEL_ENV = "CONFIGUR_LOG_LEVEL"
LOG_FORMAT_ENV = "CONFIGUR_LOG_FORMAT"

logger = get_service_logger("main")


def print_settings(settings: SettingsStore, show_values: bool = False) -> None:
    """Print the registry contents, values masked unless asked for."""
    print()
    print(f"  {len(settings)} settings loaded")
    print()
    for key in sorted(settings, key=str.casefold):
        value = settings[key] if show_values else "********"
        print(f"  {key} = {value}")
    print()


def print_startup_banner(app_id: str, options: ConfigurOptions) -> None:
    """Print startup information."""
    print()
    print("=" * 60)
    print("  CONFIGUR SETTINGS SYNC")
    print("=" * 60)
    print()
    print(f"  App ID:        {app_id}")
    print(f"  API host:      {options.api_host}")
    print(f"  Authority:     {options.identity_server_authority}")
    print(f"  Development:   {options.is_development}")
    print(f"  File cache:    {'enabled' if options.is_file_cache_enabled else 'disabled'}")
    print(f"  Refresh every: {options.refresh_interval_s:.0f}s")
    print()
    print("=" * 60)
    print()


async def run_forever(provider: ConfigurProvider) -> None:
    """Sync until SIGINT/SIGTERM."""
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(shutdown.set))

    def on_reload(store: SettingsStore) -> None:
        logger.info(f"Settings reloaded ({len(store)} keys, version {store.version})")

    provider.settings.add_reload_listener(on_reload)

    await provider.start()
    try:
        await shutdown.wait()
        logger.info("Received shutdown signal")
    finally:
        await provider.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="configur",
        description="Configur settings sync client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
The connection string falls back to the {CONNECTION_STRING_ENV}
environment variable. Options come from the `configur:` section of the
YAML file plus CONFIGUR_* environment overrides.
        """,
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to options file (default: /etc/configur/config.yaml or ./configur.yaml)",
    )

    parser.add_argument(
        "--connection-string",
        type=str,
        default=None,
        help="AppId=...;AppSecret=...;AppPassword=...",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sync cycle, print the keys and exit",
    )

    parser.add_argument(
        "--show-values",
        action="store_true",
        help="Print setting values with --once (they are secrets)",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Configur client v{__version__}",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.verbose:
        setup_logging("DEBUG", json_format=False)
    else:
        setup_logging(
            os.environ.get(LOG_LEVEL_ENV, "INFO"),
            json_format=os.environ.get(LOG_FORMAT_ENV, "json").lower() == "json",
        )

    connection_string = args.connection_string or os.environ.get(CONNECTION_STRING_ENV)
    identity = parse_connection_string(connection_string)
    if identity is None:
        print("Error: connection string missing or incomplete "
              "(needs AppId, AppSecret and AppPassword)")
        return 1

    options = load_options(args.config)
    provider = ConfigurProvider(identity, options)

    if args.once:
        success = provider.load()
        if not success:
            print("Failed to load app settings (see log for details)")
            return 1
        print_settings(provider.settings, show_values=args.show_values)
        return 0

    print_startup_banner(identity.app_id, options)
    print("Press Ctrl+C to stop")

    try:
        asyncio.run(run_forever(provider))
    except KeyboardInterrupt:
        print("\nStopped by user")
    except Exception as e:
        print(f"\nFatal error: {e}")
        return 1

    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
