"""
Terminal module for the access-control device ISAPI protocol
"""

from .models import Credentials, DeviceIdentity, DigestChallenge, IdentitySource, RawEvent
from .digest_auth import build_authorization_header, parse_challenge
from .probe import digest_request, parse_device_identity, probe_device
from .client import TerminalClient

__all__ = [
    'Credentials', 'DeviceIdentity', 'DigestChallenge', 'IdentitySource', 'RawEvent',
    'build_authorization_header', 'parse_challenge',
    'digest_request', 'parse_device_identity', 'probe_device',
    'TerminalClient',
]
