"""
Main discovery manager: verify the configured terminal address, and when it
no longer answers, scan the local subnets for the terminal by identity
"""

import functools
import logging
import time
from typing import Callable, Dict, List, Optional

from bridge_errors import ConfigurationError, DiscoveryError
from terminal.models import Credentials, DeviceIdentity
from terminal.probe import probe_device
from .models import DiscoveryResult, FoundDevice, SubnetCandidate
from .network_discovery import NetworkDiscovery, ProbeFunc

logger = logging.getLogger(__name__)

def is_target_device(identity: Optional[DeviceIdentity], target_name: Optional[str]) -> bool:
    """
    Decide whether a probed identity is the configured terminal.

    Case-insensitive: any of deviceName/model/serialNumber/macAddress equal
    to, containing, or contained in the target; otherwise the target found
    anywhere in the raw payload. Generic model names can over-match.
    """
    if identity is None or not target_name or not target_name.strip():
        return False
    target = target_name.strip().lower()

    candidates = [
        str(value).strip().lower()
        for value in (identity.device_name, identity.model, identity.serial_number, identity.mac_address)
        if value and str(value).strip()
    ]
    if any(c == target or target in c or c in target for c in candidates):
        return True

    return target in identity.raw_text().lower()

class TerminalDiscovery:
    """Resolves the terminal address of record: Verify -> (Scan) -> Resolved"""

    def __init__(self, terminal_config: Dict, discovery_config: Dict,
                 probe: Optional[ProbeFunc] = None,
                 subnet_detector: Optional[Callable[[], List[SubnetCandidate]]] = None):
        self.host = terminal_config.get('host')
        self.port = terminal_config.get('port', 80)
        self.target_name = (terminal_config.get('device_name') or "").strip()
        self.network = NetworkDiscovery(discovery_config)

        credentials = Credentials(terminal_config.get('username', ''), terminal_config.get('password', ''))
        self.probe = probe or functools.partial(
            probe_device,
            port=self.port,
            credentials=credentials,
            use_https=terminal_config.get('use_https', False),
            timeout_seconds=self.network.probe_timeout,
        )
        self.subnet_detector = subnet_detector or self.network.detect_local_subnets

    async def resolve(self) -> DiscoveryResult:
        """
        Return the live terminal address. The caller persists it when
        `changed` is True; this method never writes configuration.
        """
        # Verify
        if self.host:
            logger.info(f"[VERIFY] Verifying terminal at {self.host}:{self.port}...")
            identity = await self.probe(self.host)
            if identity:
                logger.info(
                    f"[OK] Terminal reachable at {self.host} "
                    f"(model={identity.model or 'N/A'}, serial={identity.serial_number or 'N/A'}, "
                    f"name={identity.device_name or 'N/A'})"
                )
                return DiscoveryResult(address=self.host, changed=False, identity=identity)
            logger.warning(f"Cannot reach terminal at {self.host}:{self.port} - starting subnet discovery")
        else:
            logger.warning("No terminal host configured - starting subnet discovery")

        # Scan
        found, scanned = await self._scan()

        # Resolved
        return self._select(found, scanned)

    async def _scan(self):
        start_time = time.time()
        try:
            candidates = self.subnet_detector()
        except Exception as e:
            raise DiscoveryError(f"Subnet detection failed: {e}") from e
        if not candidates:
            raise DiscoveryError("Could not detect any local IPv4 network interface. Check your network connection.")

        logger.info("[SCAN] Detected network interfaces:")
        for c in candidates:
            tag = "virtual - lower priority" if c.virtual else "physical"
            logger.info(f"[SCAN]   {c.interface_name:<30} {c.local_address} -> {c.cidr} ({tag})")

        subnets = self.network.unique_subnets(candidates)
        found: List[FoundDevice] = []
        scanned: List[str] = []

        for subnet in subnets:
            scanned.append(subnet.cidr)
            found.extend(await self.network.scan_subnet(subnet.subnet_prefix, self.probe))

            if self.target_name and any(is_target_device(d.identity, self.target_name) for d in found):
                logger.info("[SCAN] Target device found - skipping remaining subnets")
                break

        logger.info(f"[SCAN] Scan complete: {len(found)} terminal(s) found on {len(scanned)} subnet(s) "
                    f"in {time.time() - start_time:.1f}s")
        return found, scanned

    def _select(self, found: List[FoundDevice], scanned: List[str]) -> DiscoveryResult:
        candidates = [{'address': d.address, **d.identity.summary()} for d in found]

        if not found:
            raise DiscoveryError(
                f"No terminals responded on: {', '.join(scanned)}. "
                f"Ensure the terminal is powered on and on the same network, the admin credentials "
                f"are correct, and port {self.port} is not firewalled. "
                f"If the terminal is on a routed subnet, set terminal.host manually.",
                subnets=scanned,
                candidates=candidates,
            )

        if not self.target_name:
            raise ConfigurationError(
                "terminal.device_name is not set. Set it to the device name, model or serial of one of: "
                + "; ".join(self._describe(d) for d in found)
            )

        match = next((d for d in found if is_target_device(d.identity, self.target_name)), None)
        if match is None:
            for d in found:
                logger.error(f"[SCAN] Unmatched terminal: {self._describe(d)}")
            raise DiscoveryError(
                f"No terminal matched terminal.device_name=\"{self.target_name}\". "
                f"Terminals found: " + "; ".join(self._describe(d) for d in found)
                + ". Set terminal.device_name to one of the deviceName, model or serialNumber values above.",
                subnets=scanned,
                candidates=candidates,
            )

        changed = match.address != self.host
        if changed:
            logger.info(f"[OK] Matched terminal \"{self.target_name}\" -> new address {match.address}")
        else:
            logger.info(f"[OK] Matched terminal \"{self.target_name}\" at the configured address {match.address}")
        return DiscoveryResult(address=match.address, changed=changed, identity=match.identity)

    @staticmethod
    def _describe(device: FoundDevice) -> str:
        identity = device.identity
        return (
            f"{device.address} (deviceName={identity.device_name or '-'}, model={identity.model or '-'}, "
            f"serialNumber={identity.serial_number or '-'}, macAddress={identity.mac_address or '-'})"
        )
