# HTTP Helper for terminal and cloud connections
# One aiohttp session per peer kind: the LAN terminal (self-signed TLS, tiny pool)
# and the attendance cloud service (CA-validated TLS, shared pool)

import aiohttp
import ssl
import logging
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

def build_ssl(ssl_verify: bool, ca_cert_path: Optional[str] = None) -> Union[ssl.SSLContext, bool]:
    """
    TLS setting for a TCPConnector.
    False skips validation entirely; a custom CA bundle yields a dedicated context.
    """
    if not ssl_verify:
        return False
    if not ca_cert_path:
        return True

    ca_file = Path(ca_cert_path)
    if not ca_file.is_file():
        logger.warning(f"[TLS] CA bundle {ca_file} missing - using system trust store")
        return True

    context = ssl.create_default_context(cafile=str(ca_file))
    logger.info(f"[TLS] Trusting CA bundle {ca_file}")
    return context

def create_device_session(timeout_seconds: float = 10, ssl_verify: bool = False,
                          ca_cert_path: Optional[str] = None) -> aiohttp.ClientSession:
    """
    Session for the access-control terminal.
    The Digest handshake reuses nothing between requests, so connections are not kept alive.
    """
    connector = aiohttp.TCPConnector(
        ssl=build_ssl(ssl_verify, ca_cert_path),
        limit_per_host=2,   # the terminal serves few parallel requests
        force_close=True
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout_seconds)
    )

def create_cloud_session(timeout_seconds: float = 15, ssl_verify: bool = True,
                         ca_cert_path: Optional[str] = None) -> aiohttp.ClientSession:
    """Session for the attendance cloud service"""
    if not ssl_verify:
        logger.warning("[TLS] Cloud certificate validation disabled")

    connector = aiohttp.TCPConnector(
        ssl=build_ssl(ssl_verify, ca_cert_path),
        limit=20,
        limit_per_host=5
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout_seconds),
        raise_for_status=False
    )
