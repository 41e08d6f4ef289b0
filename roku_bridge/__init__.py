"""
Roku bridge.
Finds Roku devices on the LAN and starts stream playback over ECP.
"""

__version__ = '0.1.0'

from .discovery import DiscoveryEngine, DiscoveryState
from .ecp_client import EcpClient
from .models import Device, StreamDescriptor, SubtitleTrack, AudioTrack
from .session import BridgeSession

__all__ = [
    'DiscoveryEngine', 'DiscoveryState', 'EcpClient', 'Device',
    'StreamDescriptor', 'SubtitleTrack', 'AudioTrack', 'BridgeSession',
]
