"""
Pytest configuration and fixtures for the attendance bridge tests.

Provides:
- FakeTerminal: an aiohttp ISAPI terminal enforcing Digest authentication
- fake_terminal fixture running it on a local TestServer
- closed_port fixture for unreachable-host scenarios
"""

import asyncio
import hashlib
import json
import re
import socket

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from terminal.models import Credentials

USERNAME = "admin"
PASSWORD = "Secret123"
REALM = "DS-K1T342MFX-E1"
NONCE = "4d6a4578516a4930"
OPAQUE = "799d5"


def _md5(value: str) -> str:
    return hashlib.md5(value.encode('utf-8')).hexdigest()


def parse_authorization(header: str) -> dict:
    params = {}
    for key, quoted, plain in re.findall(r'(\w+)=(?:"([^"]*)"|([^\s,]+))', header):
        params[key] = quoted or plain
    return params


class FakeTerminal:
    """Minimal ISAPI terminal: deviceInfo + paginated AcsEvent, Digest protected"""

    def __init__(self):
        self.port = None
        self.device_info_body = json.dumps({
            "DeviceInfo": {
                "deviceName": "Main Gate",
                "model": "DS-K1T342MFX-E1",
                "serialNumber": "GL0274831",
                "firmwareVersion": "V4.39.180",
                "macAddress": "a4:d5:c2:11:22:33",
            }
        })
        self.device_info_content_type = "application/json"
        self.events = []
        self.page_cap = None          # firmware-side cap on entries per page
        self.total_override = None    # misreported totalMatches
        self.extra_entries = 0        # entries returned beyond the requested slice
        self.event_status = 200
        self.omit_total = False
        self.json_variant_status = None   # e.g. 404 for firmware without ?format=json
        self.json_variant_body = None
        self.stall_device_info = False
        self.release = asyncio.Event()
        self.device_info_requests = []
        self.event_requests = []
        self.unauthenticated_requests = 0

    @property
    def credentials(self) -> Credentials:
        return Credentials(USERNAME, PASSWORD)

    def _challenge(self) -> web.Response:
        self.unauthenticated_requests += 1
        return web.Response(status=401, headers={
            'WWW-Authenticate': f'Digest qop="auth", realm="{REALM}", nonce="{NONCE}", '
                                f'stale="FALSE", opaque="{OPAQUE}"'
        })

    def _authorized(self, request: web.Request) -> bool:
        header = request.headers.get('Authorization', '')
        if not header.startswith('Digest '):
            return False
        p = parse_authorization(header[7:])
        if p.get('username') != USERNAME or p.get('uri') != request.path_qs:
            return False
        ha1 = _md5(f"{USERNAME}:{REALM}:{PASSWORD}")
        ha2 = _md5(f"{request.method}:{p['uri']}")
        expected = _md5(f"{ha1}:{NONCE}:{p.get('nc')}:{p.get('cnonce')}:{p.get('qop')}:{ha2}")
        return p.get('response') == expected

    async def device_info(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return self._challenge()
        self.device_info_requests.append(request.path_qs)
        if self.stall_device_info:
            await self.release.wait()
        if request.query.get('format') == 'json':
            if self.json_variant_status is not None:
                return web.Response(status=self.json_variant_status, text="Invalid Operation")
            if self.json_variant_body is not None:
                return web.Response(text=self.json_variant_body, content_type="application/json")
        return web.Response(text=self.device_info_body, content_type=self.device_info_content_type)

    async def acs_event(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return self._challenge()
        cond = (await request.json())['AcsEventCond']
        self.event_requests.append(cond)
        if self.event_status != 200:
            return web.Response(status=self.event_status, text="device busy")

        position = cond['searchResultPosition']
        limit = cond['maxResults']
        if self.page_cap is not None:
            limit = min(limit, self.page_cap)
        page = self.events[position:position + limit + self.extra_entries]
        total = self.total_override if self.total_override is not None else len(self.events)

        acs = {"searchID": cond['searchID'], "numOfMatches": len(page)}
        if not self.omit_total:
            acs["totalMatches"] = total
        if page:
            acs["InfoList"] = page
        return web.json_response({"AcsEvent": acs})

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/ISAPI/System/deviceInfo', self.device_info)
        app.router.add_post('/ISAPI/AccessControl/AcsEvent', self.acs_event)
        return app


def make_event(employee_no, time, **extra) -> dict:
    event = {
        "major": 5,
        "minor": 75,
        "minorDesc": "Face Authentication Passed",
        "time": time,
        "employeeNoString": employee_no,
        "name": f"Student {employee_no}",
        "doorNo": 1,
        "serialNo": 1000,
        "inOutStatus": "entrance",
    }
    event.update(extra)
    return event


@pytest_asyncio.fixture
async def fake_terminal():
    """Run a FakeTerminal on a local port for the duration of a test."""
    terminal = FakeTerminal()
    server = TestServer(terminal.app())
    await server.start_server()
    terminal.port = server.port
    yield terminal
    terminal.release.set()
    await server.close()


@pytest.fixture
def closed_port() -> int:
    """A local TCP port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
