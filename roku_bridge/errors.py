"""
Exceptions raised inside the bridge.

Public discovery and control operations convert these into boolean or
``None`` results; they only escape from helpers that are documented to raise.
"""

from typing import Optional


class BridgeError(Exception):
    """Base exception for roku_bridge."""
    pass


class NetworkUnavailable(BridgeError):
    """When no usable non-loopback IPv4 interface exists on this host."""
    pass


class DiscoveryTimeout(BridgeError):
    """When the SSDP listen window closes. Ends the multicast phase normally."""
    pass


class AppNotInstalled(BridgeError):
    """When the requested channel is missing from the device's app listing."""

    def __init__(self, app_id: str, address: str):
        super().__init__(f"App {app_id} is not installed on {address}")
        self.app_id = app_id
        self.address = address


class ProtocolRejected(BridgeError):
    """When the device answers a control request with a non-success status."""

    def __init__(self, url: str, status_code: int, body: Optional[str] = None):
        super().__init__(f"{url} rejected with status {status_code}")
        self.url = url
        self.status_code = status_code
        self.body = body


class DeviceUnreachable(BridgeError):
    """When a device did not answer or the connection failed."""
    pass
