import socket
import threading
import unittest
from unittest.mock import Mock, patch

from roku_bridge.config import BridgeConfig
from roku_bridge.discovery import (
    DiscoveryEngine, DiscoveryState, build_msearch, parse_ssdp_response
)
from roku_bridge.ecp_client import EcpClient
from roku_bridge.errors import NetworkUnavailable


def ssdp_response(usn=None):
    lines = [
        "HTTP/1.1 200 OK",
        "Cache-Control: max-age=3600",
        "ST: roku:ecp",
        "Location: http://192.168.1.20:8060/",
    ]
    if usn is not None:
        lines.append(f"USN: {usn}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode()


def fake_socket(*responses):
    """UDP socket whose recvfrom yields the given responses, then times out."""
    sock = Mock()
    sock.recvfrom.side_effect = list(responses) + [socket.timeout("timed out")]
    return sock


class BlockingSocket:
    """UDP socket that blocks in recvfrom until it is shut down.

    Like an unconnected socket on Linux, close() does not wake the reader and
    shutdown() wakes it with an empty datagram while raising ENOTCONN.
    """

    def __init__(self):
        self.entered = threading.Event()
        self.woken = threading.Event()
        self.closed = threading.Event()
        self.shutdown_how = None

    def setsockopt(self, *args):
        pass

    def settimeout(self, timeout):
        pass

    def sendto(self, data, address):
        pass

    def recvfrom(self, size):
        self.entered.set()
        if not self.woken.wait(5):
            raise socket.timeout("timed out")
        return b"", None

    def shutdown(self, how):
        self.shutdown_how = how
        self.woken.set()
        raise OSError(107, "Transport endpoint is not connected")

    def close(self):
        self.closed.set()


class TestSsdpParsing(unittest.TestCase):
    def test_name_from_usn(self):
        """Test device naming from the USN header."""
        device = parse_ssdp_response(
            ssdp_response("uuid:roku:ecp:X00400ABCDEF::urn:roku-com:device:player:1-0").decode(),
            "192.168.1.20", 8060,
        )
        self.assertEqual(device.name, "roku:ecp:X00400ABCDEF")
        self.assertEqual(device.address, "192.168.1.20")
        self.assertEqual(device.base_url, "http://192.168.1.20:8060")

    def test_missing_usn_gets_default_name(self):
        """Test the default name for responses without a USN."""
        device = parse_ssdp_response(ssdp_response().decode(), "192.168.1.21", 8060)
        self.assertEqual(device.name, "Roku Device")

    def test_lowercase_header(self):
        """Test case-insensitive USN header matching."""
        device = parse_ssdp_response("HTTP/1.1 200 OK\nusn: uuid:Bedroom::x\n", "10.0.0.5", 8060)
        self.assertEqual(device.name, "Bedroom")

    def test_msearch_request(self):
        """Test the M-SEARCH request text."""
        request = build_msearch("roku:ecp").decode()
        self.assertTrue(request.startswith("M-SEARCH * HTTP/1.1\r\n"))
        self.assertIn("HOST: 239.255.255.250:1900\r\n", request)
        self.assertIn("ST: roku:ecp\r\n", request)
        self.assertIn('MAN: "ssdp:discover"\r\n', request)
        self.assertTrue(request.endswith("\r\n\r\n"))


class TestDiscoveryEngine(unittest.TestCase):
    def setUp(self):
        """Set up test fixtures."""
        self.config = BridgeConfig()
        self.client = Mock(spec=EcpClient)
        self.client.query_device_info.return_value = None
        self.messages = []
        self.engine = DiscoveryEngine(self.config, client=self.client,
                                      log_callback=self.messages.append)

    def tearDown(self):
        self.engine.close()

    @patch('roku_bridge.discovery.socket.socket')
    def test_multicast_collects_all_responses(self, mock_socket):
        """Test collecting every SSDP response in one pass."""
        sock = fake_socket(
            (ssdp_response("uuid:Living::a"), ("192.168.1.20", 1900)),
            (ssdp_response("uuid:Bedroom::b"), ("192.168.1.21", 1900)),
            (ssdp_response("uuid:Living-renamed::a"), ("192.168.1.20", 1900)),
        )
        mock_socket.return_value = sock

        devices = self.engine.discover()

        self.assertEqual([d.address for d in devices], ["192.168.1.20", "192.168.1.21"])
        self.assertEqual(devices[0].name, "Living-renamed")
        sock.setsockopt.assert_called_with(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.settimeout.assert_called_once_with(3.0)
        sock.sendto.assert_called_once_with(build_msearch("roku:ecp"), ("239.255.255.250", 1900))
        sock.close.assert_called()
        self.client.query_device_info.assert_not_called()
        self.assertEqual(self.engine.state, DiscoveryState.COMPLETED)

    @patch('roku_bridge.discovery.socket.socket')
    def test_fallback_scan_when_multicast_finds_nothing(self, mock_socket):
        """Test the IP scan after an empty SSDP search."""
        mock_socket.return_value = fake_socket()

        def device_info(device, timeout=None):
            if device.address == "10.0.0.2":
                return {"friendly-device-name": "Den Roku", "model-name": "Roku Express"}
            return None

        self.client.query_device_info.side_effect = device_info
        with patch.object(self.engine, 'scan_addresses',
                          return_value=["10.0.0.1", "10.0.0.2", "10.0.0.3"]):
            devices = self.engine.discover()

        self.assertEqual(len(devices), 1)
        self.assertEqual(devices[0].name, "Den Roku")
        self.assertEqual(devices[0].address, "10.0.0.2")
        self.assertEqual(self.client.query_device_info.call_count, 3)
        _, kwargs = self.client.query_device_info.call_args
        self.assertEqual(kwargs['timeout'], self.config.probe_timeout)
        self.assertTrue(any("trying IP scan" in m for m in self.messages))

    @patch('roku_bridge.discovery.local_ipv4_address', return_value="172.16.5.9")
    def test_scan_addresses_local_subnet_first(self, mock_local):
        """Test scan order with the local subnet first."""
        addresses = self.engine.scan_addresses()
        self.assertEqual(addresses[0], "172.16.5.1")
        self.assertEqual(addresses[253], "172.16.5.254")
        self.assertEqual(addresses[254], "192.168.1.1")
        self.assertEqual(len(addresses), 254 * 4)
        self.assertEqual(len(set(addresses)), len(addresses))

    @patch('roku_bridge.discovery.local_ipv4_address', return_value="192.168.1.50")
    def test_scan_addresses_overlapping_ranges(self, mock_local):
        """Test deduplication of overlapping scan ranges."""
        addresses = self.engine.scan_addresses()
        self.assertEqual(addresses[0], "192.168.1.1")
        self.assertEqual(len(addresses), 254 * 3)
        self.assertEqual(len(set(addresses)), len(addresses))

    @patch('roku_bridge.discovery.local_ipv4_address',
           side_effect=NetworkUnavailable("no interfaces"))
    def test_scan_addresses_without_network(self, mock_local):
        """Test scanning the fixed ranges without a local address."""
        self.config.fallback_ranges = ["10.0.0.0/24", "not-a-range"]
        addresses = self.engine.scan_addresses()
        self.assertEqual(len(addresses), 254)
        self.assertEqual(addresses[0], "10.0.0.1")

    @patch('roku_bridge.discovery.local_ipv4_address', return_value="192.168.0.77")
    @patch('roku_bridge.discovery.socket.socket')
    def test_no_address_probed_twice(self, mock_socket, mock_local):
        """Test that each address is probed once per pass."""
        mock_socket.return_value = fake_socket()

        devices = self.engine.discover()

        self.assertEqual(devices, [])
        probed = [c.args[0].address for c in self.client.query_device_info.call_args_list]
        self.assertEqual(len(probed), 254 * 3)
        self.assertEqual(len(set(probed)), len(probed))
        self.assertEqual(probed[0], "192.168.0.1")
        self.assertEqual(self.engine.state, DiscoveryState.FAILED)

    @patch('roku_bridge.discovery.socket.socket')
    def test_parallel_scan_keeps_address_order(self, mock_socket):
        """Test result order with a parallel scan."""
        mock_socket.return_value = fake_socket()
        self.config.scan_workers = 8
        addresses = [f"10.0.0.{i}" for i in range(1, 41)]
        self.client.query_device_info.side_effect = (
            lambda device, timeout=None: {"friendly-device-name": device.address}
            if device.address.endswith("7") else None
        )

        with patch.object(self.engine, 'scan_addresses', return_value=addresses):
            devices = self.engine.discover()

        self.assertEqual([d.address for d in devices], ["10.0.0.7", "10.0.0.17", "10.0.0.27", "10.0.0.37"])
        self.assertEqual(self.client.query_device_info.call_count, 40)

    @patch('roku_bridge.discovery.socket.socket', side_effect=OSError("Network is unreachable"))
    def test_socket_error_is_contained(self, mock_socket):
        """Test recovery from a socket error."""
        with patch.object(self.engine, 'scan_addresses', return_value=["10.0.0.1"]):
            devices = self.engine.discover()
        self.assertEqual(devices, [])
        self.assertTrue(any("SSDP discovery error" in m for m in self.messages))
        self.client.query_device_info.assert_called_once()

    @patch('roku_bridge.discovery.socket.socket')
    def test_start_runs_in_background(self, mock_socket):
        """Test background discovery with a callback."""
        mock_socket.return_value = fake_socket(
            (ssdp_response("uuid:Living::a"), ("192.168.1.20", 1900)),
        )
        callback = Mock()

        future = self.engine.start(callback)
        devices = future.result(timeout=5)

        self.assertEqual(len(devices), 1)
        callback.assert_called_once_with(devices)

    @patch('roku_bridge.discovery.socket.socket')
    def test_new_pass_cancels_in_flight_pass(self, mock_socket):
        """Test that a new pass cancels the running one."""
        blocking = BlockingSocket()
        mock_socket.side_effect = [
            blocking,
            fake_socket((ssdp_response("uuid:Living::a"), ("192.168.1.20", 1900))),
        ]
        first_callback = Mock()

        first = self.engine.start(first_callback)
        self.assertTrue(blocking.entered.wait(5))
        second = self.engine.start()

        self.assertEqual(first.result(timeout=5), [])
        self.assertTrue(blocking.closed.is_set())
        self.assertEqual(blocking.shutdown_how, socket.SHUT_RDWR)
        first_callback.assert_not_called()
        self.client.query_device_info.assert_not_called()

        devices = second.result(timeout=5)
        self.assertEqual([d.address for d in devices], ["192.168.1.20"])
        self.assertEqual(self.engine.state, DiscoveryState.COMPLETED)

    @patch('roku_bridge.discovery.socket.socket')
    def test_cancel_discards_results(self, mock_socket):
        """Test cancelling a running pass."""
        blocking = BlockingSocket()
        mock_socket.return_value = blocking

        future = self.engine.start()
        self.assertTrue(blocking.entered.wait(5))
        self.engine.cancel()

        self.assertEqual(future.result(timeout=5), [])
        self.assertEqual(self.engine.state, DiscoveryState.IDLE)
        self.assertEqual(blocking.shutdown_how, socket.SHUT_RDWR)
        self.assertFalse(any("discovery error" in m for m in self.messages))

    @patch('roku_bridge.discovery.socket.socket')
    def test_every_probe_reaches_log_callback(self, mock_socket):
        """Test that each probed address is reported to the log callback."""
        mock_socket.return_value = fake_socket()
        with patch.object(self.engine, 'scan_addresses', return_value=["10.0.0.1", "10.0.0.2"]):
            self.engine.discover()

        self.assertIn("Probing 10.0.0.1...", self.messages)
        self.assertIn("Probing 10.0.0.2...", self.messages)
        self.assertIn("No Roku at 10.0.0.2", self.messages)

    @patch('roku_bridge.discovery.socket.socket')
    def test_bad_socket_timeout_still_scans(self, mock_socket):
        """Test the IP scan after a rejected socket timeout."""
        sock = fake_socket()
        sock.settimeout.side_effect = ValueError("Timeout value out of range")
        mock_socket.return_value = sock
        self.client.query_device_info.return_value = {"friendly-device-name": "Den Roku"}

        with patch.object(self.engine, 'scan_addresses', return_value=["10.0.0.2"]):
            devices = self.engine.discover()

        self.assertEqual([d.name for d in devices], ["Den Roku"])
        self.assertTrue(any("SSDP discovery error" in m for m in self.messages))
        sock.close.assert_called()

    def test_close_keeps_injected_client_open(self):
        """Test that close leaves a caller's client open."""
        self.engine.close()
        self.client.close.assert_not_called()

    @patch('roku_bridge.discovery.EcpClient')
    def test_close_releases_own_client(self, mock_client_class):
        """Test that close releases the engine's own client."""
        engine = DiscoveryEngine(self.config)
        self.assertIs(engine.client, mock_client_class.return_value)
        engine.close()
        mock_client_class.return_value.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
