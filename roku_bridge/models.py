import ipaddress
from dataclasses import dataclass, field
from typing import List

ECP_PORT = 8060
DEFAULT_DEVICE_NAME = "Roku Device"
DEFAULT_FORMAT = "mp4"
STREAM_FORMATS = ("hls", "dash", "mp4", "mkv", "avi")


@dataclass(frozen=True)
class Device:
    """A Roku device reachable over ECP."""

    name: str
    address: str
    control_port: int = ECP_PORT
    online: bool = True

    def __post_init__(self):
        # Rejects hostnames and IPv6 literals
        ipaddress.IPv4Address(self.address)

    @classmethod
    def manual(cls, address: str, control_port: int = ECP_PORT) -> "Device":
        """Build a device from a user supplied address."""
        return cls(name="", address=address.strip(), control_port=control_port)

    @property
    def display_name(self) -> str:
        return self.name if self.name else f"{DEFAULT_DEVICE_NAME} ({self.address})"

    @property
    def base_url(self) -> str:
        return f"http://{self.address}:{self.control_port}"


@dataclass(frozen=True)
class SubtitleTrack:
    url: str
    language: str = "en"
    label: str = "English"
    format: str = "srt"


@dataclass(frozen=True)
class AudioTrack:
    language: str = "en"
    label: str = "English"
    codec: str = "unknown"
    channel_layout: str = "2.0"


@dataclass
class StreamDescriptor:
    """A playable stream handed to the control client."""

    url: str
    title: str
    format: str = DEFAULT_FORMAT
    subtitle_tracks: List[SubtitleTrack] = field(default_factory=list)
    audio_tracks: List[AudioTrack] = field(default_factory=list)
