"""
ISAPI protocol client for the access-control terminal
Device identity health-check and paginated AcsEvent log retrieval
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import aiohttp

from bridge_errors import AuthError, ProtocolError
from http_helper import create_device_session
from .models import Credentials, DeviceIdentity, RawEvent
from .probe import DeviceResponse, ISAPI_DEVICE_INFO, digest_request, parse_device_identity

logger = logging.getLogger(__name__)

ISAPI_ACS_EVENT = "/ISAPI/AccessControl/AcsEvent?format=json"


def strip_timezone(value: Union[str, datetime]) -> str:
    """Render a bound as local YYYY-MM-DDTHH:MM:SS (no offset, no sub-seconds)"""
    if isinstance(value, datetime):
        return value.strftime('%Y-%m-%dT%H:%M:%S')
    local = value.strip()
    local = re.sub(r'(Z|[+-]\d{2}:?\d{2})$', '', local)
    return local.split('.')[0]


class TerminalClient:
    """Digest-authenticated ISAPI client bound to one terminal address"""

    def __init__(self, host: str, port: int, credentials: Credentials,
                 use_https: bool = False, ssl_verify: bool = False, timeout_seconds: float = 10):
        self.host = host
        self.port = port
        self.credentials = credentials
        self.use_https = use_https
        self.ssl_verify = ssl_verify
        self.timeout_seconds = timeout_seconds
        self.base_url = f"{'https' if use_https else 'http'}://{host}:{port}"
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, terminal_config: Dict[str, Any], host: Optional[str] = None) -> "TerminalClient":
        return cls(
            host=host or terminal_config['host'],
            port=terminal_config['port'],
            credentials=Credentials(terminal_config['username'], terminal_config['password']),
            use_https=terminal_config['use_https'],
            ssl_verify=terminal_config['ssl_verify'],
            timeout_seconds=terminal_config['timeout_seconds'],
        )

    async def __aenter__(self) -> "TerminalClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = create_device_session(self.timeout_seconds, self.ssl_verify)
        return self.session

    async def request(self, method: str, uri: str, json_body: Optional[Dict[str, Any]] = None,
                      accept: str = "application/json") -> DeviceResponse:
        """Perform one Digest-authenticated ISAPI request, raising on any failure"""
        response = await digest_request(
            self._get_session(), method, self.base_url, uri, self.credentials,
            json_body=json_body, accept=accept,
        )

        if not response.authenticated:
            if response.challenge_missing:
                raise AuthError(
                    response.url,
                    "Terminal returned 401 without a Digest WWW-Authenticate header; "
                    "check the credentials and that ISAPI is enabled on the device"
                )
            if response.ok:
                # Authentication disabled on the device
                return response
            raise ProtocolError(response.url, "ISAPI error", response.status, response.text)

        if response.status == 401:
            raise AuthError(
                response.url,
                "Digest authentication rejected (still 401); "
                "double-check terminal.username and terminal.password"
            )
        if not response.ok:
            raise ProtocolError(response.url, "ISAPI error", response.status, response.text)
        return response

    async def request_json(self, method: str, uri: str,
                           json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self.request(method, uri, json_body)
        try:
            data = json.loads(response.text)
        except ValueError:
            raise ProtocolError(response.url, "Response is not valid JSON", response.status, response.text)
        if not isinstance(data, dict):
            raise ProtocolError(response.url, "Unexpected JSON document", response.status, response.text)
        return data

    # ================== device identity ==================

    async def get_device_info(self) -> DeviceIdentity:
        """Fetch model/firmware/serial; used as the connectivity health-check"""
        response = await self.request("GET", ISAPI_DEVICE_INFO, accept="application/json, text/xml, */*")
        identity = parse_device_identity(response.text, response.content_type)
        if identity is None:
            raise ProtocolError(response.url, "Terminal returned no usable device identity",
                                response.status, response.text)
        return identity

    # ================== access-control events ==================

    async def get_events(
        self,
        start_local: Union[str, datetime],
        end_local: Union[str, datetime],
        page_size: int = 100,
        fetch_all_pages: bool = True,
    ) -> List[RawEvent]:
        """
        Retrieve AcsEvent records between two local wall-clock bounds.

        Firmware may return fewer entries than maxResults (some cap at 30),
        so the next offset is the number of entries received so far, never
        page_index * page_size.
        """
        if not start_local or not end_local:
            raise ValueError("start_local and end_local are required (YYYY-MM-DDTHH:MM:SS)")

        start_time = strip_timezone(start_local)
        end_time = strip_timezone(end_local)

        def build_payload(position: int) -> Dict[str, Any]:
            return {
                "AcsEventCond": {
                    "searchID": "1",
                    "searchResultPosition": position,
                    "maxResults": page_size,
                    "major": 0,   # all major categories
                    "minor": 0,   # all minor types
                    "startTime": start_time,
                    "endTime": end_time,
                }
            }

        first = await self.request_json("POST", ISAPI_ACS_EVENT, build_payload(0))
        total, entries = self._page(first)
        reported = "an unknown number of" if total is None else total
        logger.info(f"[EVENTS] Terminal reports {reported} event(s) in {start_time} -> {end_time}, "
                    f"first page returned {len(entries)}")

        if fetch_all_pages:
            # Without a usable totalMatches, page until the terminal runs dry
            while entries and (total is None or len(entries) < total):
                offset = len(entries)
                logger.debug(f"[EVENTS] Fetching page at offset {offset} (reported: {reported})")
                page = await self.request_json("POST", ISAPI_ACS_EVENT, build_payload(offset))
                _, batch = self._page(page)
                if not batch:
                    # Firmware misreported totalMatches
                    break
                entries.extend(batch)
                logger.debug(f"[EVENTS] Collected {len(entries)} event(s)")

        if total is None:
            logger.warning(f"[EVENTS] Terminal omitted totalMatches; returning the {len(entries)} event(s) received")
        elif len(entries) > total:
            logger.warning(f"[EVENTS] Terminal returned {len(entries)} entries for {total} matches, truncating")
            entries = entries[:total]
        elif len(entries) < total:
            logger.warning(f"[EVENTS] Short-fall: collected {len(entries)} of {total} reported event(s)")

        captured_at = datetime.now(timezone.utc).isoformat()
        return [self._normalize(entry, captured_at) for entry in entries]

    @staticmethod
    def _page(data: Dict[str, Any]):
        """(totalMatches or None when absent/unparseable, InfoList entries)"""
        acs = data.get('AcsEvent') or {}
        try:
            total = int(acs['totalMatches'])
        except (KeyError, TypeError, ValueError):
            total = None
        entries = acs.get('InfoList') or []
        return total, list(entries)

    @staticmethod
    def _normalize(entry: Dict[str, Any], captured_at: str) -> RawEvent:
        person_id = entry.get('employeeNoString')
        if person_id is None:
            employee_no = entry.get('employeeNo')
            person_id = "" if employee_no is None else str(employee_no)

        return RawEvent(
            person_id=str(person_id),
            event_time_local=entry.get('time'),
            direction=entry.get('inOutStatus'),
            door_no=entry.get('doorNo'),
            event_type_code=entry.get('minor'),
            event_type_name=entry.get('minorDesc'),
            name=entry.get('name'),
            card_no=entry.get('cardNo'),
            device_serial=entry.get('serialNo'),
            captured_at=captured_at,
            raw=entry,
        )
