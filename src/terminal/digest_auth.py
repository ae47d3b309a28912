"""
HTTP Digest authentication (RFC 7616 subset) for ISAPI requests
"""

import hashlib
import re
import secrets
from typing import Optional

from .models import DigestChallenge

NONCE_COUNT = "00000001"

_HASHES = {
    'MD5': hashlib.md5,
    'SHA-256': hashlib.sha256,
}


def _param(header: str, key: str) -> str:
    """Read a quoted or unquoted parameter from a WWW-Authenticate value"""
    quoted = re.search(rf'(?:^|[\s,]){key}\s*=\s*"([^"]*)"', header, re.IGNORECASE)
    if quoted:
        return quoted.group(1)
    unquoted = re.search(rf'(?:^|[\s,]){key}\s*=\s*([^,\s]+)', header, re.IGNORECASE)
    return unquoted.group(1) if unquoted else ""


def parse_challenge(header: Optional[str]) -> DigestChallenge:
    """
    Parse a Digest challenge. Missing realm/nonce yield empty strings so the
    caller simply observes a second 401 instead of a crash.
    """
    header = (header or "").strip()
    if header[:6].lower() == "digest":
        header = header[6:].strip()

    return DigestChallenge(
        realm=_param(header, "realm"),
        nonce=_param(header, "nonce"),
        qop=_param(header, "qop") or None,
        opaque=_param(header, "opaque") or None,
        algorithm=_param(header, "algorithm") or "MD5",
    )


def _hash_fn(algorithm: str):
    base = algorithm.upper()
    if base.endswith("-SESS"):
        base = base[:-5]
    return _HASHES.get(base, hashlib.md5)


def _select_qop(qop: Optional[str]) -> Optional[str]:
    if not qop:
        return None
    offered = [q.strip().lower() for q in qop.split(',') if q.strip()]
    if "auth" in offered:
        return "auth"
    if "auth-int" in offered:
        return "auth-int"
    return None


def build_authorization_header(
    method: str,
    uri: str,
    username: str,
    password: str,
    challenge: DigestChallenge,
    cnonce: Optional[str] = None,
    body: bytes = b"",
) -> str:
    """
    Build the Authorization header value answering a Digest challenge.

    HA1 = H(username:realm:password), or H(HA1:nonce:cnonce) for *-sess
    HA2 = H(method:uri), or H(method:uri:H(body)) for qop=auth-int
    response = H(HA1:nonce:nc:cnonce:qop:HA2) with qop, else H(HA1:nonce:HA2)
    """
    hash_fn = _hash_fn(challenge.algorithm)
    h = lambda value: hash_fn(value.encode('utf-8')).hexdigest()
    method = method.upper()
    qop = _select_qop(challenge.qop)
    if cnonce is None:
        cnonce = secrets.token_hex(8)

    ha1 = h(f"{username}:{challenge.realm}:{password}")
    if challenge.algorithm.upper().endswith("-SESS"):
        ha1 = h(f"{ha1}:{challenge.nonce}:{cnonce}")

    if qop == "auth-int":
        ha2 = h(f"{method}:{uri}:{hash_fn(body).hexdigest()}")
    else:
        ha2 = h(f"{method}:{uri}")

    if qop:
        response = h(f"{ha1}:{challenge.nonce}:{NONCE_COUNT}:{cnonce}:{qop}:{ha2}")
    else:
        response = h(f"{ha1}:{challenge.nonce}:{ha2}")

    header = (
        f'Digest username="{username}", realm="{challenge.realm}", '
        f'nonce="{challenge.nonce}", uri="{uri}", '
        f'algorithm={challenge.algorithm}, response="{response}"'
    )
    if challenge.opaque:
        header += f', opaque="{challenge.opaque}"'
    if qop:
        header += f', qop={qop}, nc={NONCE_COUNT}, cnonce="{cnonce}"'
    return header
