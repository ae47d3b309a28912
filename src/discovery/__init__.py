"""
Discovery module for access-control terminal address healing
"""

from .manager import TerminalDiscovery, is_target_device
from .models import SubnetCandidate, FoundDevice, DiscoveryResult
from .network_discovery import NetworkDiscovery

__all__ = ['TerminalDiscovery', 'is_target_device', 'SubnetCandidate', 'FoundDevice', 'DiscoveryResult', 'NetworkDiscovery']
