"""
Tests for delivering attendance batches to the cloud service
"""

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from attendance.aggregator import AggregatedRecord
from public_sync.sync_manager import SyncDispatcher


class FakeCloud:
    """Attendance endpoint answering with a scripted sequence of statuses"""

    def __init__(self):
        self.statuses = [200]
        self.requests = []

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append({'headers': dict(request.headers), 'body': await request.json()})
        status = self.statuses[min(len(self.requests), len(self.statuses)) - 1]
        if status == 200:
            return web.json_response({'success': True, 'synced': len(self.requests[-1]['body']['attendance'])})
        return web.json_response({'error': f"status {status}"}, status=status)


@pytest_asyncio.fixture
async def cloud():
    fake = FakeCloud()
    app = web.Application()
    app.router.add_post('/api/attendance/sync', fake.handle)
    server = TestServer(app)
    await server.start_server()
    fake.base_url = f"http://127.0.0.1:{server.port}/api/"
    yield fake
    await server.close()


def cloud_config(base_url, **overrides):
    config = {
        'school_code': "SCH001",
        'base_url': base_url,
        'api_key': "k-123",
        'attendance_endpoint': "/attendance/sync",
        'retry_attempts': 3,
        'retry_delay_seconds': 0,
        'timeout_seconds': 5,
    }
    config.update(overrides)
    return config


RECORDS = [
    AggregatedRecord("1001", "07:10:00", "15:45:00"),
    AggregatedRecord("1002", "07:30:00"),
]


class TestDispatch:

    @pytest.mark.asyncio
    async def test_payload_and_headers(self, cloud):
        dispatcher = SyncDispatcher(cloud_config(cloud.base_url))

        result = await dispatcher.dispatch(RECORDS, "2024-11-20")

        assert result.delivered is True
        assert result.count == 2
        assert result.attempts == 1
        assert result.response == {'success': True, 'synced': 2}

        request = cloud.requests[0]
        assert request['body'] == {
            'school_code': "SCH001",
            'date': "2024-11-20",
            'attendance': [
                {'adm_no': "1001", 'time_in': "07:10:00", 'time_out': "15:45:00"},
                {'adm_no': "1002", 'time_in': "07:30:00"},
            ],
        }
        assert request['headers']['Authorization'] == "Bearer k-123"
        assert request['headers']['X-Source'] == "attendance-bridge"
        assert request['headers']['Content-Type'].startswith("application/json")

    @pytest.mark.asyncio
    async def test_server_error_then_success(self, cloud):
        cloud.statuses = [500, 200]
        result = await SyncDispatcher(cloud_config(cloud.base_url)).dispatch(RECORDS, "2024-11-20")

        assert result.delivered is True
        assert result.attempts == 2
        assert len(cloud.requests) == 2

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, cloud):
        cloud.statuses = [400]
        result = await SyncDispatcher(cloud_config(cloud.base_url)).dispatch(RECORDS, "2024-11-20")

        assert result.delivered is False
        assert result.status == 400
        assert result.count == 0
        assert result.response == {'error': "status 400"}
        assert len(cloud.requests) == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, cloud):
        cloud.statuses = [503]
        result = await SyncDispatcher(cloud_config(cloud.base_url)).dispatch(RECORDS, "2024-11-20")

        assert result.delivered is False
        assert result.status == 503
        assert result.attempts == 3
        assert len(cloud.requests) == 3

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_request(self, cloud):
        result = await SyncDispatcher(cloud_config(cloud.base_url)).dispatch([], "2024-11-20")

        assert result.delivered is True
        assert result.count == 0
        assert cloud.requests == []

    @pytest.mark.asyncio
    async def test_batching(self, cloud):
        records = [AggregatedRecord(str(i), "07:00:00") for i in range(5)]
        dispatcher = SyncDispatcher(cloud_config(cloud.base_url, batch_size=2))

        result = await dispatcher.dispatch(records, "2024-11-20")

        assert result.delivered is True
        assert result.count == 5
        assert [len(r['body']['attendance']) for r in cloud.requests] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_failed_batch_stops_dispatch(self, cloud):
        cloud.statuses = [200, 422]
        records = [AggregatedRecord(str(i), "07:00:00") for i in range(5)]
        dispatcher = SyncDispatcher(cloud_config(cloud.base_url, batch_size=2))

        result = await dispatcher.dispatch(records, "2024-11-20")

        assert result.delivered is False
        assert result.count == 2
        assert len(cloud.requests) == 2

    @pytest.mark.asyncio
    async def test_unreachable_service(self, closed_port):
        dispatcher = SyncDispatcher(cloud_config(f"http://127.0.0.1:{closed_port}", retry_attempts=2))

        result = await dispatcher.dispatch(RECORDS, "2024-11-20")

        assert result.delivered is False
        assert result.status is None
        assert result.response is None
        assert result.attempts == 2

    def test_endpoint_url(self):
        dispatcher = SyncDispatcher(cloud_config("https://school.example.com/api/"))
        assert dispatcher.url == "https://school.example.com/api/attendance/sync"
