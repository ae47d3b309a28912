"""
Network discovery methods for access-control terminals
Local subnet enumeration and bounded-concurrency deviceInfo scanning
"""

import asyncio
import ipaddress
import logging
import re
import time
from typing import Awaitable, Callable, Dict, List, Optional

import ifaddr

from terminal.models import DeviceIdentity
from .models import SubnetCandidate, FoundDevice

logger = logging.getLogger(__name__)

ProbeFunc = Callable[[str], Awaitable[Optional[DeviceIdentity]]]

# Virtual/hypervisor adapters (VirtualBox, VMware, Hyper-V, WSL, Docker, ...)
VIRTUAL_IFACE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'virtualbox', r'vmware', r'vmnet', r'vethernet', r'wsl', r'docker',
        r'hyper-v', r'loopback', r'^veth', r'^virbr', r'^lxc', r'^tun', r'^tap', r'^br-',
    )
]

def is_virtual_interface(name: str) -> bool:
    return any(pattern.search(name or "") for pattern in VIRTUAL_IFACE_PATTERNS)

class NetworkDiscovery:
    """Handles local subnet detection and concurrent host probing"""

    def __init__(self, config: Dict):
        self.config = config
        self.concurrency = config.get('concurrency', 30)
        self.probe_timeout = config.get('probe_timeout_seconds', 2.5)

    def detect_local_subnets(self) -> List[SubnetCandidate]:
        """
        Collect every non-loopback IPv4 address on this machine as a /24
        candidate, physical/Wi-Fi adapters first, virtual adapters last
        """
        candidates = []
        for adapter in ifaddr.get_adapters():
            names = f"{adapter.name} {adapter.nice_name}"
            for ip in adapter.ips:
                if not isinstance(ip.ip, str):
                    continue  # IPv6 entries are (address, flowinfo, scope_id) tuples
                try:
                    address = ipaddress.IPv4Address(ip.ip)
                except ValueError:
                    continue
                if address.is_loopback:
                    continue
                candidates.append(SubnetCandidate(
                    interface_name=adapter.nice_name or adapter.name,
                    local_address=str(address),
                    subnet_prefix=".".join(str(address).split(".")[:3]),
                    virtual=is_virtual_interface(names),
                ))

        # Stable sort: scan priority only
        candidates.sort(key=lambda c: c.virtual)
        return candidates

    @staticmethod
    def unique_subnets(candidates: List[SubnetCandidate]) -> List[SubnetCandidate]:
        """Keep the first candidate per /24 prefix (a host may hold several IPs on one subnet)"""
        seen = {}
        for candidate in candidates:
            seen.setdefault(candidate.subnet_prefix, candidate)
        return list(seen.values())

    @staticmethod
    def subnet_hosts(prefix: str) -> List[str]:
        """All 254 host addresses of a /24"""
        return [f"{prefix}.{i}" for i in range(1, 255)]

    async def scan_subnet(self, prefix: str, probe: ProbeFunc) -> List[FoundDevice]:
        """Probe every host of a /24 with at most `concurrency` probes in flight"""
        hosts = self.subnet_hosts(prefix)
        semaphore = asyncio.Semaphore(self.concurrency)
        start_time = time.time()

        logger.info(f"[SCAN] Scanning {len(hosts)} hosts on {prefix}.0/24 "
                    f"(concurrency {self.concurrency}, timeout per host {self.probe_timeout}s)")

        async def scan_single_ip(ip: str) -> Optional[FoundDevice]:
            async with semaphore:
                try:
                    identity = await asyncio.wait_for(probe(ip), timeout=self.probe_timeout)
                except asyncio.TimeoutError:
                    logger.debug(f"Probe of {ip} exceeded {self.probe_timeout}s")
                    return None
                except Exception as e:
                    logger.debug(f"Probe of {ip} raised: {e}")
                    return None
                if identity is None:
                    return None
                logger.info(
                    f"[FOUND] Terminal at {ip}: model={identity.model or 'unknown'} "
                    f"serial={identity.serial_number or '-'} name=\"{identity.device_name or ''}\""
                )
                return FoundDevice(address=ip, identity=identity)

        # Each task owns its own result slot
        results = await asyncio.gather(*(scan_single_ip(ip) for ip in hosts))
        found = [device for device in results if device is not None]

        logger.info(f"[SCAN] Done scanning {prefix}.0/24: {len(found)} device(s) "
                    f"in {time.time() - start_time:.1f}s")
        return found
