"""
Device probe: two-step Digest request primitive and deviceInfo normalization
"""

import asyncio
import json
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from bridge_errors import TransportError
from http_helper import create_device_session
from .digest_auth import build_authorization_header, parse_challenge
from .models import Credentials, DeviceIdentity, IdentitySource

logger = logging.getLogger(__name__)

ISAPI_DEVICE_INFO = "/ISAPI/System/deviceInfo"
PROBE_TIMEOUT_SECONDS = 2.5

# Firmware honours content negotiation inconsistently, so try both
DEVICE_INFO_VARIANTS = (
    (ISAPI_DEVICE_INFO + "?format=json", "application/json"),
    (ISAPI_DEVICE_INFO, "text/xml, application/xml, */*"),
)

# (DeviceIdentity attribute, ISAPI field name)
IDENTITY_FIELDS = (
    ('device_name', 'deviceName'),
    ('model', 'model'),
    ('serial_number', 'serialNumber'),
    ('firmware_version', 'firmwareVersion'),
    ('mac_address', 'macAddress'),
)


@dataclass
class DeviceResponse:
    """Final answer of a (possibly) Digest-authenticated request"""
    url: str
    status: int
    text: str
    content_type: str
    authenticated: bool
    challenge_missing: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def _digest_challenge_header(response: aiohttp.ClientResponse) -> Optional[str]:
    for value in response.headers.getall('WWW-Authenticate', []):
        if value.strip().lower().startswith('digest'):
            return value
    return None


async def _read(url: str, response: aiohttp.ClientResponse, authenticated: bool) -> DeviceResponse:
    body = await response.read()
    return DeviceResponse(
        url=url,
        status=response.status,
        text=body.decode('utf-8', errors='replace'),
        content_type=response.headers.get('Content-Type', ''),
        authenticated=authenticated,
    )


async def digest_request(
    session: aiohttp.ClientSession,
    method: str,
    base_url: str,
    uri: str,
    credentials: Credentials,
    json_body: Optional[Dict[str, Any]] = None,
    accept: str = "application/json",
) -> DeviceResponse:
    """
    Issue an ISAPI request the way the terminal expects:
    1. unauthenticated request -> 401 + WWW-Authenticate: Digest ...
    2. same request again with the computed Authorization header

    A first answer other than a Digest 401 is returned as-is with
    authenticated=False. Network failures raise TransportError.
    """
    method = method.upper()
    url = f"{base_url}{uri}"
    body = json.dumps(json_body).encode('utf-8') if json_body is not None else None
    headers = {'Accept': accept}
    if body is not None:
        headers['Content-Type'] = 'application/json'

    try:
        async with session.request(method, url, data=body, headers=headers) as response:
            if response.status != 401:
                return await _read(url, response, authenticated=False)

            www_auth = _digest_challenge_header(response)
            if not www_auth:
                result = await _read(url, response, authenticated=False)
                result.challenge_missing = True
                return result

        challenge = parse_challenge(www_auth)
        auth_header = build_authorization_header(
            method, uri, credentials.username, credentials.password, challenge,
            body=body or b"",
        )

        async with session.request(
            method, url, data=body, headers={**headers, 'Authorization': auth_header}
        ) as response:
            return await _read(url, response, authenticated=True)

    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransportError(url, str(e) or type(e).__name__) from e


# ================== deviceInfo parsing chain ==================

def _clean(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _parse_json(text: str, content_type: str) -> Optional[DeviceIdentity]:
    if 'json' not in content_type.lower() and not text.lstrip().startswith('{'):
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    # Some firmware wraps it: {"DeviceInfo": {...}}, others answer flat
    info = data.get('DeviceInfo')
    if not isinstance(info, dict):
        info = data

    values = {}
    for attr, key in IDENTITY_FIELDS:
        value = info.get(key)
        if value is None:
            value = info.get(key[0].upper() + key[1:])
        values[attr] = _clean(value)
    return DeviceIdentity(**values, raw=info, source=IdentitySource.JSON)


def _parse_xml(text: str) -> Optional[DeviceIdentity]:
    if not text.lstrip().startswith('<'):
        return None
    try:
        root = ET.fromstring(text.strip())
    except ET.ParseError:
        return None

    # Namespace-agnostic: <DeviceInfo xmlns="http://www.hikvision.com/ver20/XMLSchema">
    found = {}
    for element in root.iter():
        tag = element.tag.rsplit('}', 1)[-1].lower()
        if tag not in found and element.text and element.text.strip():
            found[tag] = element.text.strip()

    values = {attr: found.get(key.lower()) for attr, key in IDENTITY_FIELDS}
    return DeviceIdentity(**values, raw=text, source=IdentitySource.XML)


def _xml_field(text: str, tag: str) -> Optional[str]:
    match = re.search(
        rf'<(?:\w+:)?{tag}\b[^>]*>([^<]+)</(?:\w+:)?{tag}\s*>', text, re.IGNORECASE
    )
    return _clean(match.group(1)) if match else None


def _parse_text(text: str) -> Optional[DeviceIdentity]:
    if not text.lstrip().startswith('<'):
        return None
    values = {attr: _xml_field(text, key) for attr, key in IDENTITY_FIELDS}
    return DeviceIdentity(**values, raw=text, source=IdentitySource.TEXT)


def parse_device_identity(text: str, content_type: str = "") -> Optional[DeviceIdentity]:
    """
    Normalize a deviceInfo body: JSON, then structured XML, then regex
    extraction on the raw text. The first non-empty identity wins; a
    partially populated identity is still accepted.
    """
    if not text or not text.strip():
        return None

    for parse in (
        lambda: _parse_json(text, content_type or ""),
        lambda: _parse_xml(text),
        lambda: _parse_text(text),
    ):
        identity = parse()
        if identity is not None and not identity.is_empty():
            return identity
    return None


# ================== single-host probe ==================

async def probe_device(
    address: str,
    port: int,
    credentials: Credentials,
    use_https: bool = False,
    timeout_seconds: float = PROBE_TIMEOUT_SECONDS,
) -> Optional[DeviceIdentity]:
    """
    Ask a candidate host for its deviceInfo. Returns None on any failure
    (unreachable, no Digest challenge, rejected credentials, junk body) so a
    subnet scan can move on to the next host.

    `timeout_seconds` bounds the whole probe (both variants, both legs of
    each Digest exchange), not each request.
    """
    try:
        return await asyncio.wait_for(
            _probe_variants(address, port, credentials, use_https, timeout_seconds),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.debug(f"Probe {address}:{port} gave no identity within {timeout_seconds}s")
        return None


async def _probe_variants(address: str, port: int, credentials: Credentials,
                          use_https: bool, timeout_seconds: float) -> Optional[DeviceIdentity]:
    scheme = "https" if use_https else "http"
    base_url = f"{scheme}://{address}:{port}"

    # Candidate hosts are probed without certificate validation
    async with create_device_session(timeout_seconds, ssl_verify=False) as session:
        for uri, accept in DEVICE_INFO_VARIANTS:
            try:
                response = await digest_request(
                    session, "GET", base_url, uri, credentials, accept=accept
                )
            except TransportError as e:
                logger.debug(f"Probe {base_url}{uri} failed: {e.reason}")
                continue

            if not response.authenticated:
                logger.debug(f"Probe {response.url}: no Digest challenge (HTTP {response.status})")
                continue
            if not response.ok:
                logger.debug(f"Probe {response.url}: HTTP {response.status} after Digest")
                continue

            identity = parse_device_identity(response.text, response.content_type)
            if identity:
                if identity.degraded:
                    logger.debug(f"Probe {response.url}: identity extracted from raw text")
                return identity

    return None
