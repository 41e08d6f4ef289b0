"""
Client for the Roku External Control Protocol (ECP).
"""

import logging
import re
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional, Union, Tuple

import requests

from .config import BridgeConfig
from .errors import (
    AppNotInstalled, BridgeError, DeviceUnreachable, ProtocolRejected
)
from .logsink import LogCallback, LogSinkMixin
from .models import Device, StreamDescriptor
from .stream import normalize_descriptor, playback_warnings

logger = logging.getLogger(__name__)

Timeout = Union[float, Tuple[float, float]]

FORM_HEADERS = {'Content-Type': 'application/x-www-form-urlencoded'}

MIN_POLL_INTERVAL = 0.1

_TAG_VALUE = re.compile(r"<([A-Za-z0-9_.:-]+)>([^<]*)</\1>")


def parse_device_info(body: str) -> Dict[str, str]:
    """Collect flat ``<tag>value</tag>`` pairs from a device-info listing."""
    info = {}
    for tag, value in _TAG_VALUE.findall(body or ""):
        value = value.strip()
        if value:
            info[tag] = value
    return info


def contains_app_id(body: str, app_id: str) -> bool:
    """Check an active-app or apps listing for an app id."""
    if not body:
        return False
    return f'"id":"{app_id}"' in body or f'id="{app_id}"' in body


class EcpClient(LogSinkMixin):
    """Queries and drives Roku devices over ECP."""

    _logger = logger

    def __init__(self, config: Optional[BridgeConfig] = None,
                 session: Optional[requests.Session] = None,
                 log_callback: Optional[LogCallback] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 max_workers: int = 2):
        self.config = config or BridgeConfig()
        self.session = session or requests.Session()
        self.log_callback = log_callback
        self._sleep = sleep
        self._clock = clock
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None

    def _request(self, method: str, device: Device, path: str,
                 params: Optional[Dict[str, str]] = None,
                 timeout: Optional[Timeout] = None) -> requests.Response:
        """Send a request to the device and return the successful response.

        Raises:
            DeviceUnreachable: if the request could not be completed
            ProtocolRejected: if the device answered with a non-2xx status
        """
        url = f"{device.base_url}{path}"
        kwargs = {'params': params, 'timeout': timeout or self.config.http_timeout}
        if method == 'POST':
            kwargs['data'] = ''
            kwargs['headers'] = FORM_HEADERS

        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise DeviceUnreachable(f"{url}: {e}") from e

        logger.debug(f"Response status: {response.status_code}, "
                     f"Content-Length: {len(response.content)}")
        if not 200 <= response.status_code < 300:
            raise ProtocolRejected(url, response.status_code, response.text)
        return response

    def query_device_info(self, device: Device,
                          timeout: Optional[Timeout] = None) -> Optional[Dict[str, str]]:
        """
        Read the device-info listing of a device.

        Args:
            device: Device to query
            timeout: Overrides the configured (connect, read) timeout

        Returns:
            Mapping of tag to value, or None if no Roku answered
        """
        try:
            response = self._request('GET', device, '/query/device-info', timeout=timeout)
        except BridgeError as e:
            logger.debug(f"No device info from {device.address}: {e}")
            return None

        info = parse_device_info(response.text)
        if not info:
            logger.debug(f"Unparseable device info from {device.address}")
            return None
        return info

    def is_app_active(self, device: Device, app_id: str) -> bool:
        try:
            response = self._request('GET', device, '/query/active-app')
        except BridgeError as e:
            self._log(f"Could not check active app status: {e}", logging.WARNING)
            return False

        logger.debug(f"Active app response: {response.text}")
        return contains_app_id(response.text, app_id)

    def is_app_installed(self, device: Device, app_id: str) -> Optional[bool]:
        """
        Check the device's installed channel listing.

        Returns:
            True or False, or None if the listing could not be fetched
        """
        try:
            response = self._request('GET', device, '/query/apps')
        except BridgeError as e:
            self._log(f"Could not check available apps: {e}", logging.WARNING)
            return None
        return contains_app_id(response.text, app_id)

    def launch_app(self, device: Device, app_id: str,
                   params: Optional[Dict[str, str]] = None) -> bool:
        try:
            response = self._request('POST', device, f'/launch/{app_id}', params=params)
        except ProtocolRejected as e:
            self._log(f"Launch of app {app_id} rejected: {e.status_code} - {e.body}", logging.ERROR)
            return False
        except DeviceUnreachable as e:
            self._log(f"Launch of app {app_id} failed: {e}", logging.ERROR)
            return False

        self._log(f"Launch app response: {response.status_code}")
        return True

    def ensure_app_running(self, device: Device, app_id: Optional[str] = None) -> bool:
        """
        Make sure an app is in the foreground on the device.

        Args:
            device: Target device
            app_id: Channel id, defaults to the configured bridge app

        Returns:
            bool: True if the app was already active or the launch was accepted
        """
        app_id = app_id or self.config.app_id
        try:
            if self.is_app_active(device, app_id):
                self._log(f"App {app_id} is already active on {device.display_name}")
                return True

            installed = self.is_app_installed(device, app_id)
            if installed is False:
                raise AppNotInstalled(app_id, device.address)

            self._log(f"Launching app {app_id} on {device.display_name}...")
            return self.launch_app(device, app_id)
        except AppNotInstalled as e:
            self._log(f"{e}", logging.ERROR)
            return False
        except Exception as e:
            self._log(f"Error launching app {app_id}: {e}", logging.ERROR, exc_info=True)
            return False

    def _wait_for_app(self, device: Device, app_id: str, delay: float):
        """Give a freshly launched app time to initialise."""
        if not self.config.poll_active_app:
            self._sleep(delay)
            return

        interval = max(self.config.poll_interval, MIN_POLL_INTERVAL)
        deadline = self._clock() + delay
        while self._clock() < deadline:
            if self.is_app_active(device, app_id):
                return
            self._sleep(interval)
        logger.debug(f"App {app_id} not confirmed active after {delay}s")

    def _send_playback(self, device: Device, descriptor: StreamDescriptor, app_id: str) -> bool:
        params = {
            'contentId': self.config.content_id,
            'url': descriptor.url,
            'title': descriptor.title,
            'format': descriptor.format,
        }
        self._log("Sending video data to Roku...")
        try:
            response = self._request('POST', device, f'/launch/{app_id}', params=params)
        except ProtocolRejected as e:
            self._log(f"Send video data rejected: {e.status_code} - {e.body}", logging.ERROR)
            return False
        except DeviceUnreachable as e:
            self._log(f"Send video data failed: {e}", logging.ERROR)
            return False

        self._log(f"Send video data response: {response.status_code}")
        return True

    def send_stream(self, device: Device, descriptor: StreamDescriptor,
                    app_id: Optional[str] = None) -> bool:
        """
        Start playback of a stream on a device.

        Launches the bridge app and passes the stream as launch parameters.
        Falls back to the built-in media player when the app cannot be
        brought up.

        Returns:
            bool: True if the device accepted the stream
        """
        app_id = app_id or self.config.app_id
        try:
            descriptor = normalize_descriptor(descriptor)
            self._log(f"Sending video to Roku: {descriptor.title}")
            self._log(f"Video URL: {descriptor.url}")
            self._log(f"Format: {descriptor.format}")
            for warning in playback_warnings(descriptor):
                self._log(f"WARNING: {warning}", logging.WARNING)

            if not self.ensure_app_running(device, app_id):
                self._log(f"Failed to launch app {app_id}, trying fallback method", logging.WARNING)
                return self.send_to_builtin_player(device, descriptor)

            self._wait_for_app(device, app_id, self.config.app_settle_delay)

            success = self._send_playback(device, descriptor, app_id)
            if success:
                self._log("Successfully sent video to Roku")
            else:
                self._log("Failed to send video data to Roku", logging.ERROR)
            return success
        except Exception as e:
            self._log(f"Error sending video to Roku: {e}", logging.ERROR, exc_info=True)
            return False

    def send_to_builtin_player(self, device: Device, descriptor: StreamDescriptor) -> bool:
        """
        Best-effort playback through the built-in Roku Media Player.

        A True result only means the device accepted the input request.
        """
        player_id = self.config.builtin_player_id
        try:
            self._log("Trying fallback: Roku Media Player")
            if not self.launch_app(device, player_id):
                self._log("Failed to launch Roku Media Player", logging.ERROR)
                return False

            self._log("Roku Media Player launched successfully")
            self._wait_for_app(device, player_id, self.config.player_settle_delay)

            try:
                response = self._request('POST', device, f'/input?{descriptor.url}')
            except BridgeError as e:
                self._log(f"Failed to send video to Roku Media Player: {e}", logging.ERROR)
                return False

            self._log(f"Media player response: {response.status_code}")
            return True
        except Exception as e:
            self._log(f"Error with Roku Media Player fallback: {e}", logging.ERROR, exc_info=True)
            return False

    def submit_stream(self, device: Device, descriptor: StreamDescriptor,
                      app_id: Optional[str] = None) -> "Future[bool]":
        """Run send_stream on the client's worker pool."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self._max_workers,
                                                thread_name_prefix="ecp")
        return self._executor.submit(self.send_stream, device, descriptor, app_id)

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self.session.close()
