import ipaddress
import logging
import socket
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .config import BridgeConfig, SSDP_ADDR, SSDP_PORT
from .ecp_client import EcpClient
from .errors import DiscoveryTimeout, NetworkUnavailable
from .logsink import LogCallback, LogSinkMixin
from .models import Device, DEFAULT_DEVICE_NAME
from .stream import local_ipv4_address

logger = logging.getLogger(__name__)

NAME_TAGS = ("friendly-device-name", "user-device-name")


class DiscoveryState(Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    COMPLETED = "completed"
    FAILED = "failed"


def build_msearch(search_target: str, mx: int = 3) -> bytes:
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_ADDR}:{SSDP_PORT}\r\n"
        "MAN: \"ssdp:discover\"\r\n"
        f"ST: {search_target}\r\n"
        f"MX: {mx}\r\n"
        "\r\n"
    ).encode('utf-8')


def parse_ssdp_response(response: str, address: str, control_port: int) -> Device:
    """
    Build a device from an SSDP search response.

    The name is taken from the ``USN: uuid:<name>::<type>`` header.

    Args:
        response: Raw response text
        address: Sender address of the response
        control_port: ECP port to record on the device

    Returns:
        Device named after its USN, or with the default name if none is given
    """
    name = DEFAULT_DEVICE_NAME
    for line in response.splitlines():
        if line[:4].upper() == "USN:":
            usn = line[4:].strip()
            name = usn.split("::", 1)[0]
            if "uuid:" in name:
                name = name.split("uuid:", 1)[1]
    return Device(name=name, address=address, control_port=control_port)


class _DiscoveryPass:
    """Cancellation handle for one discovery pass."""

    def __init__(self):
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._sock: Optional[socket.socket] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def attach(self, sock: socket.socket) -> bool:
        with self._lock:
            if self.cancelled:
                return False
            self._sock = sock
            return True

    def detach(self):
        with self._lock:
            self._sock = None

    def cancel(self):
        self._cancelled.set()
        with self._lock:
            if self._sock is not None:
                # close() alone does not wake a thread blocked in recvfrom
                try:
                    self._sock.shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass
                self._sock.close()
                self._sock = None


class DiscoveryEngine(LogSinkMixin):
    """Finds Roku devices on the local network."""

    _logger = logger

    def __init__(self, config: Optional[BridgeConfig] = None,
                 client: Optional[EcpClient] = None,
                 log_callback: Optional[LogCallback] = None):
        self.config = config or BridgeConfig()
        self._owns_client = client is None
        self.client = client or EcpClient(self.config)
        self.log_callback = log_callback
        self._lock = threading.Lock()
        self._state = DiscoveryState.IDLE
        self._current: Optional[_DiscoveryPass] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def state(self) -> DiscoveryState:
        return self._state

    def discover(self) -> List[Device]:
        """
        Run one discovery pass on the calling thread.

        Returns:
            Devices found, multicast results first; empty if nothing answered
        """
        return self._run_pass(self._begin_pass())

    def start(self, callback: Optional[Callable[[List[Device]], None]] = None) -> "Future[List[Device]]":
        """
        Run a discovery pass in the background, cancelling any pass in flight.

        Args:
            callback: Called with the device list unless the pass is cancelled

        Returns:
            Future resolving to the device list
        """
        discovery_pass = self._begin_pass()
        if self._executor is None:
            # One worker: a new pass starts only after the cancelled one unwinds
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="discovery")
        return self._executor.submit(self._run_pass, discovery_pass, callback)

    def cancel(self):
        with self._lock:
            if self._current is not None:
                self._log("Cancelling in-flight discovery")
                self._current.cancel()
                self._current = None
            self._state = DiscoveryState.IDLE

    def close(self):
        self.cancel()
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        if self._owns_client:
            self.client.close()

    def _begin_pass(self) -> _DiscoveryPass:
        with self._lock:
            if self._current is not None:
                self._log("Cancelling previous discovery pass")
                self._current.cancel()
            discovery_pass = _DiscoveryPass()
            self._current = discovery_pass
            self._state = DiscoveryState.DISCOVERING
        return discovery_pass

    def _run_pass(self, discovery_pass: _DiscoveryPass,
                  callback: Optional[Callable[[List[Device]], None]] = None) -> List[Device]:
        found: Dict[str, Device] = {}
        try:
            self._log("Discovering Roku devices...")
            for device in self._multicast_phase(discovery_pass):
                found[device.address] = device
            self._log(f"SSDP discovery found {len(found)} devices")

            if not found and not discovery_pass.cancelled:
                self._log("No devices found via SSDP, trying IP scan")
                for device in self._fallback_phase(discovery_pass):
                    found[device.address] = device
        except Exception as e:
            self._log(f"Error during device discovery: {e}", logging.ERROR, exc_info=True)
            found = {}

        if discovery_pass.cancelled:
            logger.info("Discovery pass cancelled, discarding results")
            return []

        devices = list(found.values())
        with self._lock:
            if self._current is discovery_pass:
                self._current = None
                self._state = DiscoveryState.COMPLETED if devices else DiscoveryState.FAILED

        self._log(f"Discovery complete. Found {len(devices)} Roku devices")
        if callback is not None:
            callback(devices)
        return devices

    def _receive(self, sock: socket.socket, deadline: float) -> Tuple[bytes, Tuple[str, int]]:
        if time.monotonic() >= deadline:
            raise DiscoveryTimeout("SSDP listen window elapsed")
        try:
            return sock.recvfrom(1024)
        except socket.timeout as e:
            raise DiscoveryTimeout("No more SSDP responses") from e

    def _multicast_phase(self, discovery_pass: _DiscoveryPass) -> List[Device]:
        """Send an M-SEARCH and collect every response until the socket times out."""
        found: Dict[str, Device] = {}
        sock = None
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.settimeout(self.config.ssdp_timeout)
            if not discovery_pass.attach(sock):
                return []

            sock.sendto(build_msearch(self.config.search_target), (SSDP_ADDR, SSDP_PORT))
            logger.debug(f"Sent SSDP search for {self.config.search_target}")

            deadline = time.monotonic() + self.config.ssdp_max_listen
            while True:
                try:
                    data, addr = self._receive(sock, deadline)
                except DiscoveryTimeout:
                    break
                if discovery_pass.cancelled:
                    break
                if not data:
                    continue
                try:
                    device = parse_ssdp_response(
                        data.decode('utf-8', errors='ignore'), addr[0], self.config.control_port
                    )
                except ValueError as e:
                    logger.warning(f"Ignoring SSDP response from {addr[0]}: {e}")
                    continue
                found[device.address] = device
                self._log(f"Found Roku via SSDP: {device.name} at {device.address}")
        except (OSError, ValueError) as e:
            if not discovery_pass.cancelled:
                self._log(f"SSDP discovery error: {e}", logging.ERROR)
        finally:
            discovery_pass.detach()
            if sock is not None:
                sock.close()

        return list(found.values())

    def scan_addresses(self) -> List[str]:
        """
        List the addresses probed by the IP scan.

        The local /24 comes first, then the configured fallback ranges. Each
        address appears once.
        """
        ranges = []
        try:
            local_ip = local_ipv4_address()
            ranges.append(f"{local_ip}/24")
        except NetworkUnavailable as e:
            self._log(f"Skipping local network scan: {e}", logging.WARNING)
        ranges.extend(self.config.fallback_ranges)

        addresses: Dict[str, None] = {}
        for ip_range in ranges:
            try:
                network = ipaddress.IPv4Network(ip_range, strict=False)
            except ValueError:
                logger.warning(f"Invalid IP range: {ip_range}")
                continue
            for host in network.hosts():
                addresses.setdefault(str(host), None)
        return list(addresses)

    def _probe(self, discovery_pass: _DiscoveryPass, address: str) -> Optional[Device]:
        if discovery_pass.cancelled:
            return None

        self._log(f"Probing {address}...", logging.DEBUG)
        candidate = Device.manual(address, self.config.control_port)
        info = self.client.query_device_info(candidate, timeout=self.config.probe_timeout)
        if not info:
            self._log(f"No Roku at {address}", logging.DEBUG)
            return None

        name = next((info[tag] for tag in NAME_TAGS if info.get(tag)), DEFAULT_DEVICE_NAME)
        device = Device(name=name, address=address, control_port=self.config.control_port)
        self._log(f"Found Roku device: {device.name} at {address}")
        return device

    def _fallback_phase(self, discovery_pass: _DiscoveryPass) -> List[Device]:
        addresses = self.scan_addresses()
        workers = max(1, self.config.scan_workers)
        self._log(f"Scanning {len(addresses)} addresses with {workers} worker(s)")

        if workers == 1:
            results = [self._probe(discovery_pass, address) for address in addresses]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as pool:
                # map keeps address order whatever the completion order
                results = list(pool.map(lambda a: self._probe(discovery_pass, a), addresses))

        return [device for device in results if device is not None]
