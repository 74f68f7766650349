# SPDX-License-Identifier: MPL-2.0
"""
Relay Automation Daemon

Keeps relays in line with their daily schedules and reports automatic
power-downs through a messaging gateway.

The daemon:
1. Starts the messaging transport and supervises its connection
2. Every minute, switches each scheduled relay on or off as its window requires
3. Sends a notification when a relay is switched off automatically
4. Queues notifications that cannot be delivered and retries them every 15 seconds

Signals:
- SIGINT/SIGTERM: graceful shutdown
- SIGHUP: reload configuration
- SIGUSR1: restart the messaging transport
- SIGUSR2: run a schedule check now and log the connection status
"""

import argparse
import asyncio
import configparser
import errno
import logging
import os
import signal
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from relay_automation.automation import AutomationSettings, RelayAutomation
from relay_automation.broadcast import BroadcastChannel, NtfyObserver, NtfyPublisher
from relay_automation.gateway import GatewayClient, GatewayTransport
from relay_automation.monitor import local_now
from relay_automation.reconciler import RelayReconciler
from relay_automation.scheduler import AsyncioScheduler
from relay_automation.stores import SupabaseStore
from relay_automation.time_window import format_window
from relay_automation.transport import Transport

# Logger will be configured later based on config/CLI args
logger = logging.getLogger(__name__)

CONFIG_SEARCH_PATHS = [
    "/etc/relay-automation/relay-automation.conf",
    "/run/relay-automation/relay-automation.conf",
    "/usr/lib/relay-automation/relay-automation.conf",
]


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass
class Config:
    """Application configuration."""
    # Schedule and relay store
    store_url: str
    store_api_key: str

    # Messaging gateway
    gateway_url: str
    recipient: str
    gateway_session: str = "default"
    gateway_api_key: Optional[str] = None
    gateway_poll_interval: float = 5.0

    # Automation timing (seconds)
    schedule_interval: float = 60.0
    schedule_startup_delay: float = 30.0
    maintenance_interval: float = 15.0
    send_timeout: float = 45.0
    reconnect_base_delay: float = 5.0
    max_reconnect_attempts: int = 5

    # Optional ntfy operator alerts
    ntfy_topic: Optional[str] = None
    ntfy_server: str = "https://ntfy.sh"
    ntfy_token: Optional[str] = None

    # Logging
    logging_level: str = 'WARNING'

    def automation_settings(self) -> AutomationSettings:
        return AutomationSettings(
            schedule_interval=self.schedule_interval,
            schedule_startup_delay=self.schedule_startup_delay,
            maintenance_interval=self.maintenance_interval,
            send_timeout=self.send_timeout,
            reconnect_base_delay=self.reconnect_base_delay,
            max_reconnect_attempts=self.max_reconnect_attempts,
        )


def notify(message: bytes) -> None:
    if not message:
        raise ValueError("notify() requires a message")

    socket_path = os.environ.get("NOTIFY_SOCKET")
    if not socket_path:
        return

    if socket_path[0] not in ("/", "@"):
        raise OSError(errno.EAFNOSUPPORT, "Unsupported socket type")

    # Handle abstract socket.
    if socket_path[0] == "@":
        socket_path = "\0" + socket_path[1:]

    with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM | socket.SOCK_CLOEXEC) as sock:
        sock.connect(socket_path)
        sock.sendall(message)


def notify_ready() -> None:
    notify(b"READY=1")


def notify_reloading() -> None:
    microsecs = time.clock_gettime_ns(time.CLOCK_MONOTONIC) // 1000
    notify(f"RELOADING=1\nMONOTONIC_USEC={microsecs}".encode())


def notify_stopping() -> None:
    notify(b"STOPPING=1")


def find_default_config() -> Optional[str]:
    """
    Find configuration file using standard search paths.

    Returns:
        Path to first existing config file, or None if none found
    """
    for path in CONFIG_SEARCH_PATHS:
        if os.path.exists(path):
            logger.debug(f"Found configuration file: {path}")
            return path

    return None


def _positive(parser: configparser.ConfigParser, section: str, option: str, default: float) -> float:
    if not parser.has_option(section, option):
        return default
    value = parser.getfloat(section, option)
    if value <= 0:
        raise ConfigurationError(f"[{section}] {option} must be positive, got {value}")
    return value


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from INI file and credentials directory.

    Args:
        config_path: Path to configuration INI file. If None, searches default locations.

    Returns:
        Config object with all settings

    Raises:
        ConfigurationError: If configuration is invalid or credentials missing
    """
    if config_path is None:
        config_path = find_default_config()
        if config_path is None:
            raise ConfigurationError(
                "No configuration file found. Searched: " + ", ".join(CONFIG_SEARCH_PATHS)
            )

    if not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(config_path)

    creds_dir = os.getenv('CREDENTIALS_DIRECTORY')
    if not creds_dir:
        raise ConfigurationError(
            "CREDENTIALS_DIRECTORY environment variable not set"
        )

    creds_path = Path(creds_dir)
    if not creds_path.exists():
        raise ConfigurationError(
            f"Credentials directory does not exist: {creds_dir}"
        )

    store_key_file = creds_path / "store_api_key"
    if not store_key_file.exists():
        raise ConfigurationError(
            f"store_api_key file not found in {creds_dir}"
        )
    store_api_key = store_key_file.read_text().strip()

    # Gateway key and ntfy token are optional
    gateway_api_key = None
    gateway_key_file = creds_path / "gateway_api_key"
    if gateway_key_file.exists():
        gateway_api_key = gateway_key_file.read_text().strip()

    ntfy_token = None
    ntfy_token_file = creds_path / "ntfy_token"
    if ntfy_token_file.exists():
        ntfy_token = ntfy_token_file.read_text().strip()

    try:
        config = Config(
            store_url=parser.get('store', 'url'),
            store_api_key=store_api_key,
            gateway_url=parser.get('gateway', 'url'),
            recipient=parser.get('notifications', 'recipient'),
            gateway_api_key=gateway_api_key,
            ntfy_token=ntfy_token,
        )

        if parser.has_option('gateway', 'session'):
            config.gateway_session = parser.get('gateway', 'session')

        config.gateway_poll_interval = _positive(
            parser, 'gateway', 'poll_interval', config.gateway_poll_interval)

        if parser.has_section('automation'):
            config.schedule_interval = _positive(
                parser, 'automation', 'schedule_interval', config.schedule_interval)
            config.schedule_startup_delay = _positive(
                parser, 'automation', 'schedule_startup_delay', config.schedule_startup_delay)
            config.maintenance_interval = _positive(
                parser, 'automation', 'maintenance_interval', config.maintenance_interval)
            config.send_timeout = _positive(
                parser, 'automation', 'send_timeout', config.send_timeout)
            config.reconnect_base_delay = _positive(
                parser, 'automation', 'reconnect_base_delay', config.reconnect_base_delay)
            if parser.has_option('automation', 'max_reconnect_attempts'):
                config.max_reconnect_attempts = parser.getint('automation', 'max_reconnect_attempts')
                if config.max_reconnect_attempts < 0:
                    raise ConfigurationError("[automation] max_reconnect_attempts cannot be negative")

        if parser.has_section('ntfy'):
            if parser.has_option('ntfy', 'topic'):
                config.ntfy_topic = parser.get('ntfy', 'topic')

            if parser.has_option('ntfy', 'server'):
                config.ntfy_server = parser.get('ntfy', 'server')

        if parser.has_option('logging', 'level'):
            config.logging_level = parser.get('logging', 'level').upper()

        return config

    except (configparser.NoSectionError, configparser.NoOptionError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}")
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration value: {e}")


def apply_cli_overrides(config: Config, args: argparse.Namespace) -> None:
    """
    Apply command line argument overrides to configuration.

    Args:
        config: Configuration object to modify
        args: Parsed command line arguments
    """
    if args.recipient is not None:
        logger.debug(f"Overriding recipient with: {args.recipient}")
        config.recipient = args.recipient

    if args.schedule_interval is not None:
        config.schedule_interval = args.schedule_interval

    if args.maintenance_interval is not None:
        config.maintenance_interval = args.maintenance_interval

    if args.log_level is not None:
        config.logging_level = args.log_level.upper()

    if args.ntfy_topic is not None:
        config.ntfy_topic = args.ntfy_topic

    if args.ntfy_server is not None:
        config.ntfy_server = args.ntfy_server


def configure_logging(level: str) -> None:
    """
    Configure logging level for all modules.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL,
    }

    log_level = level_map.get(level.upper(), logging.WARNING)

    logging.basicConfig(
        level=log_level,
        format='%(name)s - %(levelname)s - %(message)s',
        force=True,
    )

    logging.getLogger('relay_automation').setLevel(log_level)
    # urllib3 connection chatter is only useful when debugging
    if log_level > logging.DEBUG:
        logging.getLogger('urllib3').setLevel(logging.WARNING)


def build_automation(config: Config, store: SupabaseStore, scheduler: AsyncioScheduler) -> RelayAutomation:
    """
    Create the automation engine for a configuration.

    Args:
        config: Application configuration
        store: Schedule and relay store
        scheduler: Timer source

    Returns:
        RelayAutomation, not yet started
    """
    def transport_factory() -> Transport:
        client = GatewayClient(
            config.gateway_url,
            session_name=config.gateway_session,
            api_key=config.gateway_api_key,
        )
        return GatewayTransport(client, poll_interval=config.gateway_poll_interval)

    broadcast = BroadcastChannel()
    if config.ntfy_topic:
        broadcast.subscribe(NtfyObserver(NtfyPublisher(
            topic=config.ntfy_topic,
            server=config.ntfy_server,
            token=config.ntfy_token,
        )))

    return RelayAutomation(
        schedule_store=store,
        relay_store=store,
        transport_factory=transport_factory,
        recipient=config.recipient,
        scheduler=scheduler,
        broadcast=broadcast,
        settings=config.automation_settings(),
    )


async def run_dry_run(config: Config) -> int:
    """
    Dry run mode: read schedules and relay states, show planned toggles.

    Nothing is written to the store and no message is sent.

    Args:
        config: Application configuration

    Returns:
        Exit code (0 for success, 1 for error)
    """
    print("\n" + "=" * 70)
    print("  RELAY AUTOMATION - DRY RUN MODE")
    print("=" * 70)
    print()

    now = local_now()
    reconciler = RelayReconciler()

    with SupabaseStore(config.store_url, config.store_api_key) as store:
        try:
            schedules = await store.list_active()
        except Exception as e:
            print(f"\n❌ ERROR: Cannot read schedules: {e}")
            return 1

        print(f"🕐 Current time: {now.strftime('%Y-%m-%d %H:%M:%S')}")
        print(f"📋 Active schedules: {len(schedules)}\n")

        for schedule in sorted(schedules, key=lambda s: s.relay_id):
            window = format_window(schedule.start_time, schedule.end_time)
            try:
                observation = await store.observe(schedule.relay_id)
            except Exception as e:
                print(f"  Relay {schedule.relay_id:>3}  {window}  ⚠️  cannot read state: {e}")
                continue

            state = "ON " if observation.current_state else "OFF"
            command = reconciler.reconcile(schedule, observation, now)
            if command is None:
                plan = "no change"
            elif command.state:
                plan = "→ turn ON"
            else:
                plan = "→ turn OFF (notify)"
            print(f"  Relay {schedule.relay_id:>3}  {window}  currently {state}  {plan}")

    print()
    return 0


def setup_signal_handlers(
    shutdown_event: asyncio.Event,
    reload_event: asyncio.Event,
    restart_event: asyncio.Event,
    tick_event: asyncio.Event,
) -> None:
    """Setup signal handlers that set corresponding events."""
    loop = asyncio.get_running_loop()

    def handle_shutdown() -> None:
        """Handle SIGINT/SIGTERM for graceful shutdown."""
        logger.debug("Received shutdown signal, initiating graceful shutdown")
        shutdown_event.set()

    def handle_reload() -> None:
        """Handle SIGHUP to reload configuration."""
        logger.debug("Received SIGHUP, will reload configuration")
        reload_event.set()

    def handle_restart() -> None:
        """Handle SIGUSR1 to restart the messaging transport."""
        logger.debug("Received SIGUSR1, will restart messaging transport")
        restart_event.set()

    def handle_tick() -> None:
        """Handle SIGUSR2 to check schedules now."""
        logger.debug("Received SIGUSR2, will run schedule check")
        tick_event.set()

    loop.add_signal_handler(signal.SIGINT, handle_shutdown)
    loop.add_signal_handler(signal.SIGTERM, handle_shutdown)
    loop.add_signal_handler(signal.SIGHUP, handle_reload)
    loop.add_signal_handler(signal.SIGUSR1, handle_restart)
    loop.add_signal_handler(signal.SIGUSR2, handle_tick)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Relay Automation Daemon - keeps relays on their daily schedules'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to configuration file (default: searches /etc, /run, /usr/lib)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show planned relay toggles without changing anything'
    )
    parser.add_argument(
        '--recipient',
        type=str,
        default=None,
        help='Phone number receiving automation notifications (overrides config file)'
    )
    parser.add_argument(
        '--schedule-interval',
        type=float,
        default=None,
        help='Seconds between schedule checks (default: 60)'
    )
    parser.add_argument(
        '--maintenance-interval',
        type=float,
        default=None,
        help='Seconds between connection checks and retry queue drains (default: 15)'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Logging level (default: WARNING)'
    )
    parser.add_argument(
        '--ntfy-topic',
        type=str,
        default=None,
        help='ntfy topic for operator alerts'
    )
    parser.add_argument(
        '--ntfy-server',
        type=str,
        default=None,
        help='ntfy server URL (default: https://ntfy.sh)'
    )
    return parser


async def async_main() -> int:
    """
    Main daemon loop (async).

    Runs until SIGINT/SIGTERM, handling reload, restart and tick signals.
    """
    shutdown_event = asyncio.Event()
    reload_event = asyncio.Event()
    restart_event = asyncio.Event()
    tick_event = asyncio.Event()

    args = build_arg_parser().parse_args()

    logger.debug("Relay Automation Daemon starting")

    config_path = args.config
    try:
        config = load_config(config_path)
        apply_cli_overrides(config, args)
        configure_logging(config.logging_level)
        logger.debug("Configuration loaded successfully")
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.dry_run:
        return await run_dry_run(config)

    setup_signal_handlers(shutdown_event, reload_event, restart_event, tick_event)

    scheduler = AsyncioScheduler()
    store = SupabaseStore(config.store_url, config.store_api_key)
    automation = build_automation(config, store, scheduler)
    automation.start()

    notify_ready()

    events = [shutdown_event, reload_event, restart_event, tick_event]
    try:
        while True:
            waiters = [asyncio.create_task(event.wait()) for event in events]

            done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            if shutdown_event.is_set():
                break

            if restart_event.is_set():
                restart_event.clear()
                await automation.restart_transport()

            if tick_event.is_set():
                tick_event.clear()
                report = await automation.run_schedule_tick()
                logger.warning(
                    f"Schedule check: {report.checked} checked, {len(report.toggles)} toggled, "
                    f"{len(report.skipped)} skipped; status: {automation.get_supervisor_status()}"
                )

            if reload_event.is_set():
                reload_event.clear()
                notify_reloading()
                logger.debug("Reloading configuration")
                try:
                    new_config = load_config(config_path)
                    apply_cli_overrides(new_config, args)
                except ConfigurationError as e:
                    logger.error(f"Failed to reload configuration: {e}")
                    logger.debug("Continuing with previous configuration")
                else:
                    config = new_config
                    configure_logging(config.logging_level)

                    # Pending notifications survive the reload
                    await automation.stop()
                    pending_messages = automation.queue.snapshot()
                    store.close()

                    store = SupabaseStore(config.store_url, config.store_api_key)
                    automation = build_automation(config, store, scheduler)
                    for message in pending_messages:
                        automation.queue.enqueue(message)
                    automation.start()
                    logger.debug("Configuration reloaded successfully")

                notify_ready()
    except Exception as e:
        logger.error(f"Error in main loop: {e}", exc_info=True)

    await automation.stop()
    await scheduler.drain()
    store.close()

    notify_stopping()

    logger.debug("Daemon shutdown complete")
    return 0


def main() -> int:
    """
    Synchronous wrapper for async_main.
    """
    return asyncio.run(async_main())


if __name__ == "__main__":
    exit(main())
