import logging
from typing import List, Optional

from .discovery import DiscoveryEngine
from .ecp_client import EcpClient
from .models import Device, StreamDescriptor, ECP_PORT

logger = logging.getLogger(__name__)


class BridgeSession:
    """Holds the device list and selection for a front end."""

    def __init__(self, engine: Optional[DiscoveryEngine] = None,
                 client: Optional[EcpClient] = None):
        self.client = client or EcpClient()
        self.engine = engine or DiscoveryEngine(self.client.config, client=self.client)
        self.devices: List[Device] = []
        self.selected_device: Optional[Device] = None
        self.status: str = ""

    def _set_status(self, status: str):
        self.status = status
        logger.info(status)

    def refresh(self) -> List[Device]:
        """Discover devices and replace the current list."""
        self._set_status("Discovering Roku devices...")
        self.devices = self.engine.discover()
        if self.devices:
            self._set_status(f"Found {len(self.devices)} Roku device(s)")
        else:
            self._set_status("No Roku devices found")
        return self.devices

    def select_device(self, device: Device):
        self.selected_device = device
        self._set_status(f"Selected: {device.display_name}")

    def find_device(self, address: str) -> Optional[Device]:
        for device in self.devices:
            if device.address == address:
                return device
        return None

    def add_manual_device(self, address: str, control_port: int = ECP_PORT) -> Optional[Device]:
        """
        Add and select a device the user typed in.

        Returns:
            The new device, or None if the address is not a valid IPv4 address
        """
        try:
            device = Device.manual(address, control_port)
        except ValueError:
            self._set_status(f"Invalid IP address: {address}")
            return None

        # Re-adding an address supersedes the earlier entry
        self.devices = [d for d in self.devices if d.address != device.address] + [device]
        self.select_device(device)
        return device

    def send(self, descriptor: StreamDescriptor, app_id: Optional[str] = None) -> bool:
        """
        Send a stream to the selected device.

        Returns:
            bool: True if the device accepted the stream
        """
        device = self.selected_device
        if device is None:
            self._set_status("No Roku device selected")
            return False

        self._set_status(f"Sending video to {device.display_name}...")
        success = self.client.send_stream(device, descriptor, app_id)
        self._set_status("Video sent successfully!" if success else "Failed to send video")
        return success
