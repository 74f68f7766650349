# SPDX-License-Identifier: MPL-2.0
"""
Tests for the relay automation daemon: configuration, CLI overrides,
logging setup, dry run and the main loop.
"""

import argparse
import asyncio
import logging
import os
from datetime import datetime
from datetime import time as dt_time
from typing import Any, List, Optional
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from relay_automation.broadcast import NtfyObserver
from relay_automation.daemon import (
    Config,
    ConfigurationError,
    apply_cli_overrides,
    build_arg_parser,
    build_automation,
    configure_logging,
    find_default_config,
    load_config,
    run_dry_run,
)
from relay_automation.gateway import GatewayTransport
from relay_automation.retry_queue import QueuedMessage
from relay_automation.scheduler import ManualScheduler
from relay_automation.stores import MemoryStore, Schedule, StoreError

MINIMAL_CONFIG = """
[store]
url = https://project.supabase.co

[gateway]
url = http://localhost:3000

[notifications]
recipient = 6281234567890
"""


def write_config(tmp_path: Any, text: str, credentials: Optional[dict] = None) -> str:
    config_file = tmp_path / "relay-automation.conf"
    config_file.write_text(text)

    creds_dir = tmp_path / "credentials"
    creds_dir.mkdir()
    for name, value in (credentials or {"store_api_key": "anon-key\n"}).items():
        (creds_dir / name).write_text(value)

    return str(config_file)


def make_config(**overrides: Any) -> Config:
    values = dict(
        store_url="https://project.supabase.co",
        store_api_key="anon-key",
        gateway_url="http://localhost:3000",
        recipient="6281234567890",
    )
    values.update(overrides)
    return Config(**values)


class TestConfiguration:
    """Test configuration loading."""

    def test_load_config_success(self, tmp_path: Any) -> None:
        """Test loading a complete configuration."""
        config_path = write_config(tmp_path, """
[store]
url = https://project.supabase.co

[gateway]
url = http://localhost:3000

[notifications]
recipient = 6281234567890

[automation]
schedule_interval = 30
maintenance_interval = 10
send_timeout = 20
reconnect_base_delay = 3
max_reconnect_attempts = 8

[ntfy]
topic = relays
server = https://ntfy.example.com

[logging]
level = info
""", credentials={
            "store_api_key": "anon-key\n",
            "gateway_api_key": "gw-key\n",
            "ntfy_token": "tk_secret\n",
        })

        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(tmp_path / "credentials")}):
            config = load_config(config_path)

        assert config.store_url == "https://project.supabase.co"
        assert config.store_api_key == "anon-key"
        assert config.gateway_url == "http://localhost:3000"
        assert config.gateway_api_key == "gw-key"
        assert config.recipient == "6281234567890"
        assert config.schedule_interval == 30
        assert config.maintenance_interval == 10
        assert config.send_timeout == 20
        assert config.reconnect_base_delay == 3
        assert config.max_reconnect_attempts == 8
        assert config.ntfy_topic == "relays"
        assert config.ntfy_server == "https://ntfy.example.com"
        assert config.ntfy_token == "tk_secret"
        assert config.logging_level == "INFO"

    def test_load_config_gateway_options(self, tmp_path: Any) -> None:
        """Test gateway session name and poll interval."""
        config_path = write_config(tmp_path, MINIMAL_CONFIG.replace(
            "url = http://localhost:3000",
            "url = http://localhost:3000\nsession = relay\npoll_interval = 2",
        ))

        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(tmp_path / "credentials")}):
            config = load_config(config_path)

        assert config.gateway_session == "relay"
        assert config.gateway_poll_interval == 2

    def test_load_config_defaults(self, tmp_path: Any) -> None:
        """Test default values when only required options are given."""
        config_path = write_config(tmp_path, MINIMAL_CONFIG)

        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(tmp_path / "credentials")}):
            config = load_config(config_path)

        assert config.gateway_session == "default"
        assert config.gateway_api_key is None
        assert config.schedule_interval == 60
        assert config.maintenance_interval == 15
        assert config.max_reconnect_attempts == 5
        assert config.ntfy_topic is None
        assert config.logging_level == "WARNING"

    def test_load_config_missing_file(self) -> None:
        """Test error when config file doesn't exist."""
        with pytest.raises(ConfigurationError, match="Configuration file not found"):
            load_config("/nonexistent/relay-automation.conf")

    def test_load_config_no_credentials_dir(self, tmp_path: Any) -> None:
        """Test error when CREDENTIALS_DIRECTORY not set."""
        config_path = write_config(tmp_path, MINIMAL_CONFIG)

        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError, match="CREDENTIALS_DIRECTORY"):
                load_config(config_path)

    def test_load_config_credentials_dir_missing(self, tmp_path: Any) -> None:
        config_path = write_config(tmp_path, MINIMAL_CONFIG)

        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(tmp_path / "nope")}):
            with pytest.raises(ConfigurationError, match="Credentials directory does not exist"):
                load_config(config_path)

    def test_load_config_missing_store_key(self, tmp_path: Any) -> None:
        """Test error when the store key credential is missing."""
        config_path = write_config(tmp_path, MINIMAL_CONFIG, credentials={"gateway_api_key": "gw"})

        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(tmp_path / "credentials")}):
            with pytest.raises(ConfigurationError, match="store_api_key file not found"):
                load_config(config_path)

    def test_load_config_missing_section(self, tmp_path: Any) -> None:
        config_path = write_config(tmp_path, "[store]\nurl = https://project.supabase.co\n")

        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(tmp_path / "credentials")}):
            with pytest.raises(ConfigurationError, match="Invalid configuration"):
                load_config(config_path)

    def test_load_config_invalid_number(self, tmp_path: Any) -> None:
        config_path = write_config(tmp_path, MINIMAL_CONFIG + "\n[automation]\nschedule_interval = often\n")

        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(tmp_path / "credentials")}):
            with pytest.raises(ConfigurationError, match="Invalid configuration value"):
                load_config(config_path)

    def test_load_config_non_positive_interval(self, tmp_path: Any) -> None:
        config_path = write_config(tmp_path, MINIMAL_CONFIG + "\n[automation]\nmaintenance_interval = 0\n")

        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(tmp_path / "credentials")}):
            with pytest.raises(ConfigurationError, match="must be positive"):
                load_config(config_path)

    def test_find_default_config_not_found(self) -> None:
        """Test find_default_config returns None when no files exist."""
        with patch('os.path.exists', return_value=False):
            assert find_default_config() is None

    def test_find_default_config_finds_run(self) -> None:
        """Test find_default_config finds /run config if /etc missing."""
        def exists_mock(path: Any) -> bool:
            return bool(path == "/run/relay-automation/relay-automation.conf")

        with patch('os.path.exists', side_effect=exists_mock):
            assert find_default_config() == "/run/relay-automation/relay-automation.conf"

    def test_load_config_with_none_path_fails_if_not_found(self) -> None:
        with patch('os.path.exists', return_value=False):
            with pytest.raises(ConfigurationError, match="No configuration file found"):
                load_config(None)


class TestCliOverrides:
    """Test command line overrides."""

    def test_overrides(self) -> None:
        config = make_config()
        args = build_arg_parser().parse_args([
            '--recipient', '6289999',
            '--schedule-interval', '30',
            '--maintenance-interval', '5',
            '--log-level', 'DEBUG',
            '--ntfy-topic', 'relays',
            '--ntfy-server', 'https://ntfy.example.com',
        ])

        apply_cli_overrides(config, args)

        assert config.recipient == "6289999"
        assert config.schedule_interval == 30
        assert config.maintenance_interval == 5
        assert config.logging_level == "DEBUG"
        assert config.ntfy_topic == "relays"
        assert config.ntfy_server == "https://ntfy.example.com"

    def test_no_overrides(self) -> None:
        config = make_config()
        apply_cli_overrides(config, build_arg_parser().parse_args([]))

        assert config == make_config()

    def test_dry_run_flag(self) -> None:
        args = build_arg_parser().parse_args(['--dry-run', '--config', '/tmp/x.conf'])

        assert args.dry_run is True
        assert args.config == '/tmp/x.conf'


def test_configure_logging() -> None:
    """Test that the package logger follows the configured level."""
    configure_logging('debug')
    assert logging.getLogger('relay_automation').level == logging.DEBUG

    configure_logging('bogus')
    assert logging.getLogger('relay_automation').level == logging.WARNING
    assert logging.getLogger('urllib3').level == logging.WARNING


class TestBuildAutomation:
    """Test wiring of the automation engine."""

    def test_settings_and_transport(self) -> None:
        config = make_config(max_reconnect_attempts=3, gateway_api_key="gw-key", gateway_poll_interval=2.0)

        automation = build_automation(config, MemoryStore(), ManualScheduler())

        assert automation.recipient == "6281234567890"
        assert automation.supervisor.budget.max_attempts == 3

        transport = automation.supervisor._transport_factory()
        assert isinstance(transport, GatewayTransport)
        assert transport.poll_interval == 2.0
        assert transport.client.base_url == "http://localhost:3000"
        assert transport.client._session.headers["X-Api-Key"] == "gw-key"

    def test_ntfy_observer_subscribed(self) -> None:
        automation = build_automation(make_config(ntfy_topic="relays"), MemoryStore(), ManualScheduler())

        observers = automation.broadcast._observers
        assert len(observers) == 1
        assert isinstance(observers[0], NtfyObserver)
        assert observers[0].publisher.topic == "relays"

    def test_no_ntfy_observer_without_topic(self) -> None:
        automation = build_automation(make_config(), MemoryStore(), ManualScheduler())

        assert automation.broadcast._observers == []


def mock_store_class(store: Any) -> MagicMock:
    store_class = MagicMock()
    store_class.return_value.__enter__.return_value = store
    return store_class


class TestDryRun:
    """Test dry run mode."""

    @pytest.mark.asyncio
    async def test_dry_run_reports_plan(self, capsys: Any) -> None:
        """Test that the planned toggles are printed and nothing is written."""
        store = MemoryStore(
            schedules={
                3: Schedule(1, 3, dt_time(7), dt_time(17)),
                5: Schedule(2, 5, dt_time(8), dt_time(20)),
                9: Schedule(3, 9, dt_time(8), dt_time(20)),
            },
            states={3: True, 5: False},
        )

        with patch('relay_automation.daemon.SupabaseStore', mock_store_class(store)), \
             patch('relay_automation.daemon.local_now', return_value=datetime(2026, 10, 19, 18, 0)):
            result = await run_dry_run(make_config())

        output = capsys.readouterr().out
        assert result == 0
        assert "Active schedules: 3" in output
        assert "→ turn OFF (notify)" in output
        assert "→ turn ON" in output
        assert "cannot read state" in output
        assert store.states == {3: True, 5: False}

    @pytest.mark.asyncio
    async def test_dry_run_store_error(self, capsys: Any) -> None:
        store = Mock()
        store.list_active = AsyncMock(side_effect=StoreError("HTTP error from store (relay_schedules): 401"))

        with patch('relay_automation.daemon.SupabaseStore', mock_store_class(store)):
            result = await run_dry_run(make_config())

        assert result == 1
        assert "Cannot read schedules" in capsys.readouterr().out


def mock_automation() -> MagicMock:
    automation = MagicMock()
    automation.stop = AsyncMock()
    automation.restart_transport = AsyncMock()
    automation.run_schedule_tick = AsyncMock()
    automation.queue.snapshot.return_value = []
    return automation


class TestMainLoop:
    """Test the daemon main loop signal handling."""

    @pytest.fixture(autouse=True)
    def no_notify_socket(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("NOTIFY_SOCKET", raising=False)

    @pytest.mark.asyncio
    @patch('relay_automation.daemon.configure_logging')
    @patch('relay_automation.daemon.SupabaseStore')
    @patch('relay_automation.daemon.build_automation')
    @patch('relay_automation.daemon.load_config')
    @patch('sys.argv', ['relay-automation'])
    async def test_main_handles_shutdown_signal(self, mock_load_config: Any, mock_build: Any,
                                                mock_store_class: Any, mock_logging: Any) -> None:
        """Test main loop exits gracefully on shutdown signal."""
        from relay_automation.daemon import async_main

        mock_load_config.return_value = make_config()
        automation = mock_automation()
        mock_build.return_value = automation

        async def mock_wait(tasks: Any, **kwargs: Any) -> Any:
            return (set(), set(tasks))

        def mock_signal_setup(shutdown: asyncio.Event, reload: asyncio.Event,
                              restart: asyncio.Event, tick: asyncio.Event) -> None:
            shutdown.set()

        with patch('relay_automation.daemon.asyncio.wait', side_effect=mock_wait), \
             patch('relay_automation.daemon.setup_signal_handlers', side_effect=mock_signal_setup):
            result = await async_main()

        assert result == 0
        automation.start.assert_called_once()
        automation.stop.assert_awaited_once()
        mock_store_class.return_value.close.assert_called_once()

    @pytest.mark.asyncio
    @patch('relay_automation.daemon.configure_logging')
    @patch('relay_automation.daemon.load_config')
    @patch('sys.argv', ['relay-automation'])
    async def test_main_configuration_error(self, mock_load_config: Any, mock_logging: Any) -> None:
        """Test that a configuration error exits with status 1."""
        from relay_automation.daemon import async_main

        mock_load_config.side_effect = ConfigurationError("CREDENTIALS_DIRECTORY environment variable not set")

        assert await async_main() == 1

    @pytest.mark.asyncio
    @patch('relay_automation.daemon.configure_logging')
    @patch('relay_automation.daemon.SupabaseStore')
    @patch('relay_automation.daemon.build_automation')
    @patch('relay_automation.daemon.load_config')
    @patch('sys.argv', ['relay-automation'])
    async def test_main_restart_and_tick_signals(self, mock_load_config: Any, mock_build: Any,
                                                 mock_store_class: Any, mock_logging: Any) -> None:
        """Test SIGUSR1 restarts the transport and SIGUSR2 runs a schedule check."""
        from relay_automation.daemon import async_main

        mock_load_config.return_value = make_config()
        automation = mock_automation()
        mock_build.return_value = automation

        events: List[asyncio.Event] = []
        wait_count = [0]

        async def mock_wait(tasks: Any, **kwargs: Any) -> Any:
            wait_count[0] += 1
            shutdown, reload, restart, tick = events
            if wait_count[0] == 1:
                restart.set()
                tick.set()
            else:
                shutdown.set()
            return (set(), set(tasks))

        def mock_signal_setup(*signal_events: asyncio.Event) -> None:
            events.extend(signal_events)

        with patch('relay_automation.daemon.asyncio.wait', side_effect=mock_wait), \
             patch('relay_automation.daemon.setup_signal_handlers', side_effect=mock_signal_setup):
            result = await async_main()

        assert result == 0
        automation.restart_transport.assert_awaited_once()
        automation.run_schedule_tick.assert_awaited_once()

    @pytest.mark.asyncio
    @patch('relay_automation.daemon.configure_logging')
    @patch('relay_automation.daemon.SupabaseStore')
    @patch('relay_automation.daemon.build_automation')
    @patch('relay_automation.daemon.load_config')
    @patch('sys.argv', ['relay-automation'])
    async def test_main_reloads_config_on_sighup(self, mock_load_config: Any, mock_build: Any,
                                                 mock_store_class: Any, mock_logging: Any) -> None:
        """Test that a reload rebuilds the engine and keeps queued messages."""
        from relay_automation.daemon import async_main

        mock_load_config.side_effect = [make_config(), make_config(recipient="6289999")]
        first, second = mock_automation(), mock_automation()
        pending = QueuedMessage("6281234567890", "Relay channel 3 was switched off")
        first.queue.snapshot.return_value = [pending]
        mock_build.side_effect = [first, second]
        first_store, second_store = Mock(), Mock()
        mock_store_class.side_effect = [first_store, second_store]

        events: List[asyncio.Event] = []
        wait_count = [0]

        async def mock_wait(tasks: Any, **kwargs: Any) -> Any:
            wait_count[0] += 1
            shutdown, reload, restart, tick = events
            if wait_count[0] == 1:
                reload.set()
            else:
                shutdown.set()
            return (set(), set(tasks))

        def mock_signal_setup(*signal_events: asyncio.Event) -> None:
            events.extend(signal_events)

        with patch('relay_automation.daemon.asyncio.wait', side_effect=mock_wait), \
             patch('relay_automation.daemon.setup_signal_handlers', side_effect=mock_signal_setup):
            result = await async_main()

        assert result == 0
        assert mock_load_config.call_count == 2
        first.stop.assert_awaited_once()
        first_store.close.assert_called_once()
        second.queue.enqueue.assert_called_once_with(pending)
        assert mock_build.call_args[0][0].recipient == "6289999"
        second.start.assert_called_once()
        second.stop.assert_awaited_once()
        second_store.close.assert_called_once()
