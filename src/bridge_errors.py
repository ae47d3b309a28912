"""
Typed failures raised across component boundaries of the attendance bridge
"""

from typing import Any, Dict, List, Optional


class BridgeError(Exception):
    """Base class for every failure the bridge reports to its caller"""


class ConfigurationError(BridgeError):
    """Configuration is missing or inconsistent (operator must fix settings)"""


class TransportError(BridgeError):
    """Host unreachable, connection refused, timeout or TLS failure"""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(
            f"Cannot reach terminal at {url}: {reason}. "
            f"Ensure the terminal address/port is correct and reachable on the local network."
        )


class AuthError(BridgeError):
    """Digest authentication was refused"""

    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(f"{message} ({url})")


class ProtocolError(BridgeError):
    """Non-2xx answer, malformed challenge or unparseable body"""

    def __init__(self, url: str, message: str, status: Optional[int] = None, body: Optional[str] = None):
        self.url = url
        self.status = status
        self.body = body
        detail = f"{message} ({url})"
        if status is not None:
            detail += f" HTTP {status}"
        if body:
            detail += f" body: {body[:300]}"
        super().__init__(detail)


class DiscoveryError(BridgeError):
    """Terminal could not be located on any local subnet"""

    def __init__(self, message: str, subnets: Optional[List[str]] = None,
                 candidates: Optional[List[Dict[str, Any]]] = None):
        self.subnets = subnets or []
        self.candidates = candidates or []
        super().__init__(message)


class SyncError(BridgeError):
    """Remote attendance service rejected the batch or stayed unreachable"""

    def __init__(self, message: str, status: Optional[int] = None, response: Any = None):
        self.status = status
        self.response = response
        super().__init__(message)
