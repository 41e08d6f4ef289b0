"""
Stream URL normalisation.

Stream servers running on this host usually hand out loopback URLs, which a
Roku on the LAN cannot reach. The helpers here swap the loopback host for
this machine's LAN address and classify the container from the URL.
"""

import logging
import socket
from typing import Any, List, Mapping, Optional
from urllib.parse import urlparse, unquote

import psutil

from .errors import NetworkUnavailable
from .models import (
    AudioTrack, StreamDescriptor, SubtitleTrack, DEFAULT_FORMAT
)

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = ("127.0.0.1", "localhost")
LOCAL_SERVER_PORT = ":11470"

# Checked in order, first match wins
FORMAT_EXTENSIONS = (
    (".m3u8", "hls"),
    (".mpd", "dash"),
    (".mp4", "mp4"),
    (".mkv", "mkv"),
    (".avi", "avi"),
)


def local_ipv4_address() -> str:
    """
    Find the first IPv4 address bound to an active, non-loopback interface.

    Returns:
        Dotted-quad address string

    Raises:
        NetworkUnavailable: if no such interface exists or enumeration fails
    """
    try:
        addresses = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
    except OSError as e:
        raise NetworkUnavailable(f"Could not enumerate network interfaces: {e}") from e

    for iface, addrs in addresses.items():
        iface_stats = stats.get(iface)
        if iface_stats is None or not iface_stats.isup:
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            ip = addr.address
            if ip.startswith("127.") or ip.startswith("169.254."):
                continue
            logger.debug(f"Found network IP {ip} on {iface}")
            return ip

    raise NetworkUnavailable("No active non-loopback IPv4 interface found")


def is_loopback_url(url: str) -> bool:
    return any(host in url for host in LOOPBACK_HOSTS)


def rewrite_loopback(url: str, strict: bool = False) -> str:
    """
    Replace loopback hosts in a URL with this host's LAN address.

    Args:
        url: Stream URL, possibly pointing at 127.0.0.1 or localhost
        strict: Raise NetworkUnavailable instead of returning the URL as-is

    Returns:
        The rewritten URL, or the original one when there is nothing to do
        or no LAN address could be found
    """
    if not is_loopback_url(url):
        return url

    try:
        network_ip = local_ipv4_address()
    except NetworkUnavailable as e:
        if strict:
            raise
        logger.warning(f"Could not determine network IP, using original URL: {e}")
        return url

    fixed_url = url
    for host in LOOPBACK_HOSTS:
        fixed_url = fixed_url.replace(host, network_ip)
    logger.info(f"Fixed localhost URL: {url} -> {fixed_url}")
    return fixed_url


def detect_format(url: str) -> str:
    """Classify the container of a stream from its URL."""
    for extension, fmt in FORMAT_EXTENSIONS:
        if extension in url:
            return fmt
    return DEFAULT_FORMAT


def title_from_url(url: str) -> str:
    """Derive a readable title from the last path segment of a URL."""
    try:
        segments = [s for s in urlparse(url).path.split('/') if s]
    except ValueError:
        return "Stream"

    if not segments or '.' not in segments[-1]:
        return "Stream"

    stem = unquote(segments[-1]).rsplit('.', 1)[0]
    words = stem.replace('_', ' ').replace('-', ' ').split(' ')
    title = ' '.join(w[:1].upper() + w[1:] for w in words)
    return title if title.strip() else "Stream"


def descriptor_from_url(url: str, title: Optional[str] = None,
                        fmt: Optional[str] = None) -> StreamDescriptor:
    """Build a descriptor for a bare stream URL."""
    fixed_url = rewrite_loopback(url)
    return StreamDescriptor(
        url=fixed_url,
        title=title or title_from_url(fixed_url),
        format=fmt or detect_format(fixed_url),
    )


def descriptor_from_dict(payload: Mapping[str, Any]) -> Optional[StreamDescriptor]:
    """
    Build a descriptor from a decoded JSON stream payload.

    Args:
        payload: Mapping with ``url`` and optional ``title``, ``format``,
            ``subtitles`` and ``audioTracks`` entries

    Returns:
        StreamDescriptor, or None if the payload carries no URL
    """
    url = payload.get("url")
    if not url:
        logger.warning("Stream payload has no url")
        return None

    subtitles = []
    for entry in payload.get("subtitles") or []:
        subtitles.append(SubtitleTrack(
            url=rewrite_loopback(entry.get("url", "")),
            language=entry.get("language", "en"),
            label=entry.get("label", "English"),
            format=entry.get("format", "srt"),
        ))

    audio_tracks = []
    for entry in payload.get("audioTracks") or []:
        audio_tracks.append(AudioTrack(
            language=entry.get("language", "en"),
            label=entry.get("label", "English"),
            codec=entry.get("codec", "unknown"),
            channel_layout=entry.get("channels", "2.0"),
        ))

    return StreamDescriptor(
        url=rewrite_loopback(url),
        title=payload.get("title") or "Unknown Title",
        format=payload.get("format") or detect_format(url),
        subtitle_tracks=subtitles,
        audio_tracks=audio_tracks,
    )


def normalize_descriptor(descriptor: StreamDescriptor) -> StreamDescriptor:
    """Return a copy of the descriptor with LAN-reachable URLs."""
    url = rewrite_loopback(descriptor.url)
    subtitles = [
        SubtitleTrack(rewrite_loopback(t.url), t.language, t.label, t.format)
        if is_loopback_url(t.url) else t
        for t in descriptor.subtitle_tracks
    ]
    return StreamDescriptor(
        url=url,
        title=descriptor.title,
        format=descriptor.format or detect_format(url),
        subtitle_tracks=subtitles,
        audio_tracks=list(descriptor.audio_tracks),
    )


def playback_warnings(descriptor: StreamDescriptor) -> List[str]:
    """Advisory notes about streams the device may fail to play."""
    warnings = []
    url = descriptor.url
    if is_loopback_url(url) or LOCAL_SERVER_PORT in url:
        warnings.append(
            "This is a local server URL; make sure it is reachable from the Roku's network"
        )
    if ".mkv" in url or descriptor.format.lower() == "mkv":
        warnings.append(
            "MKV format detected; Roku may not support MKV directly"
        )
    return warnings
