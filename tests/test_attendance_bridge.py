"""
Tests for the sync orchestrator
"""

from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from bridge_errors import DiscoveryError, SyncError
from config_loader import load_config
from discovery.models import DiscoveryResult
from public_sync.sync_manager import DispatchResult
from services.attendance_bridge import AttendanceBridge
from terminal.models import DeviceIdentity, RawEvent

IDENTITY = DeviceIdentity(device_name="Main Gate", model="DS-K1T342MFX-E1", serial_number="GL0274831")

CONFIG_TEXT = """\
terminal:
  host: "192.168.1.64"   # terminal address
  username: admin
  password: secret
  device_name: DS-K1T342MFX-E1
  page_size: 50
cloud:
  school_code: SCH001
  base_url: https://school.example.com/api
  api_key: abc
"""

EVENTS = [
    RawEvent("1001", "2024-11-20T07:10:00+03:00"),
    RawEvent("1001", "2024-11-20T15:45:00+03:00"),
    RawEvent("0", "2024-11-20T07:11:00+03:00"),
    RawEvent("1002", "2024-11-20T07:30:00+03:00"),
]


class FakeClient:

    def __init__(self, host):
        self.host = host
        self.get_events = AsyncMock(return_value=list(EVENTS))
        self.get_device_info = AsyncMock(return_value=IDENTITY)
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_TEXT)
    return path


@pytest.fixture
def clients():
    return []


def make_bridge(config_file, clients, resolution=None, dispatch_result=None, discovery_enabled=True):
    config = load_config(str(config_file))
    config['discovery']['enabled'] = discovery_enabled

    discovery = MagicMock()
    discovery.resolve = AsyncMock(return_value=resolution or DiscoveryResult("192.168.1.64", False, IDENTITY))
    dispatcher = MagicMock()
    dispatcher.dispatch = AsyncMock(return_value=dispatch_result or DispatchResult(True, 2, {'success': True}, 200, 1))

    def factory(host):
        client = FakeClient(host)
        clients.append(client)
        return client

    bridge = AttendanceBridge(config, config_path=str(config_file), discovery=discovery,
                              dispatcher=dispatcher, client_factory=factory)
    return bridge


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_full_day_pipeline(self, config_file, clients):
        bridge = make_bridge(config_file, clients)

        summary = await bridge.run_once(date(2024, 11, 20))

        client = clients[0]
        client.get_events.assert_awaited_once_with(
            "2024-11-20T00:00:00", "2024-11-20T23:59:59", page_size=50, fetch_all_pages=True
        )
        assert client.closed

        records, day = bridge.dispatcher.dispatch.await_args.args
        assert day == "2024-11-20"
        assert [r.to_payload() for r in records] == [
            {'adm_no': "1001", 'time_in': "07:10:00", 'time_out': "15:45:00"},
            {'adm_no': "1002", 'time_in': "07:30:00"},
        ]

        assert summary.date == "2024-11-20"
        assert summary.address == "192.168.1.64"
        assert summary.address_changed is False
        assert summary.raw_events == 4
        assert summary.records == 2
        assert summary.delivered is True
        assert "192.168.1.64" in config_file.read_text()

    @pytest.mark.asyncio
    async def test_healed_address_is_used_and_persisted(self, config_file, clients):
        bridge = make_bridge(config_file, clients,
                             resolution=DiscoveryResult("192.168.1.87", True, IDENTITY))

        summary = await bridge.run_once(date(2024, 11, 20))

        assert summary.address_changed is True
        assert clients[0].host == "192.168.1.87"
        assert bridge.config['terminal']['host'] == "192.168.1.87"
        assert bridge.stats['address_changes'] == 1
        assert load_config(str(config_file))['terminal']['host'] == "192.168.1.87"
        assert "# terminal address" in config_file.read_text()

    @pytest.mark.asyncio
    async def test_unwritable_config_does_not_fail_run(self, config_file, clients, tmp_path):
        bridge = make_bridge(config_file, clients,
                             resolution=DiscoveryResult("192.168.1.87", True, IDENTITY))
        bridge.config_path = str(tmp_path / "missing" / "config.yaml")

        summary = await bridge.run_once(date(2024, 11, 20))

        assert summary.delivered is True
        assert bridge.config['terminal']['host'] == "192.168.1.87"

    @pytest.mark.asyncio
    async def test_discovery_disabled_checks_configured_host(self, config_file, clients):
        bridge = make_bridge(config_file, clients, discovery_enabled=False)

        summary = await bridge.run_once(date(2024, 11, 20))

        bridge.discovery.resolve.assert_not_awaited()
        clients[0].get_device_info.assert_awaited_once()
        assert clients[0].host == "192.168.1.64"
        assert summary.address_changed is False

    @pytest.mark.asyncio
    async def test_undelivered_raises_sync_error(self, config_file, clients):
        bridge = make_bridge(config_file, clients,
                             dispatch_result=DispatchResult(False, 0, {'error': 'bad key'}, 401, 1))

        with pytest.raises(SyncError) as exc_info:
            await bridge.run_once(date(2024, 11, 20))

        assert exc_info.value.status == 401
        assert exc_info.value.response == {'error': 'bad key'}

    @pytest.mark.asyncio
    async def test_discovery_failure_propagates(self, config_file, clients):
        bridge = make_bridge(config_file, clients)
        bridge.discovery.resolve.side_effect = DiscoveryError("nothing found", subnets=["192.168.1.0/24"])

        with pytest.raises(DiscoveryError):
            await bridge.run_once(date(2024, 11, 20))

        bridge.dispatcher.dispatch.assert_not_awaited()
        assert clients == []


class TestService:

    @pytest.mark.asyncio
    async def test_start_counts_failures_until_stopped(self, config_file, clients):
        bridge = make_bridge(config_file, clients)

        async def fail_then_stop(*args, **kwargs):
            await bridge.stop()
            raise DiscoveryError("gone")

        bridge.discovery.resolve.side_effect = fail_then_stop

        await bridge.start()

        assert bridge.running is False
        assert bridge.stats['runs'] == 1
        assert bridge.stats['failed_runs'] == 1
