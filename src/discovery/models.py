"""
Discovery data structures and models
"""

from dataclasses import dataclass

from terminal.models import DeviceIdentity

@dataclass(frozen=True)
class SubnetCandidate:
    """Represents one local IPv4 address and the /24 it sits on"""
    interface_name: str
    local_address: str
    subnet_prefix: str  # "192.168.1" -> scanned as 192.168.1.0/24
    virtual: bool = False

    @property
    def cidr(self) -> str:
        return f"{self.subnet_prefix}.0/24"

@dataclass(frozen=True)
class FoundDevice:
    """A host that answered the deviceInfo probe during a scan"""
    address: str
    identity: DeviceIdentity

@dataclass(frozen=True)
class DiscoveryResult:
    """Terminal address of record after verification or healing"""
    address: str
    changed: bool
    identity: DeviceIdentity
