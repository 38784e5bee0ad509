"""
Stream identifier sanitization and snapshot path / source URL resolution.

Every identifier that arrives from outside the service passes through
``sanitize_stream_id`` before it is used as a registry key, a filename or an
FFmpeg argument.
"""

import re
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlsplit

from ..utils.logger import get_logger


logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9_-]')

SNAPSHOT_EXTENSION = '.jpg'

# Markers of a WHEP / SRS WebRTC playback URL
_WEBRTC_MARKERS = ('whep', 'rtc/v1')

_DNS_HOST = re.compile(r'[a-z0-9_.-]+')
_IPV6_HOST = re.compile(r'[0-9a-f:.]+')


def sanitize_stream_id(stream_id: Optional[str]) -> str:
    """Strip every character outside ``[A-Za-z0-9_-]``."""
    if stream_id is None:
        return ''
    return _UNSAFE_CHARS.sub('', str(stream_id))


class SnapshotPaths:
    """
    Maps sanitized stream ids to files in the snapshot directory.

    The mapping is ``<snapshot_dir>/<id>.jpg`` and never changes for the
    lifetime of a stream, so readers can always find the latest preview.
    """

    def __init__(self, snapshot_dir: Path):
        self.snapshot_dir = Path(snapshot_dir)

    def ensure_dir(self) -> Path:
        """Create the snapshot directory if it does not exist."""
        self.snapshot_dir.mkdir(parents=True, exist_ok=True)
        return self.snapshot_dir

    def snapshot_path(self, stream_id: str) -> Path:
        """Get the snapshot file for a stream id (sanitized here as well)."""
        return self.snapshot_dir / f"{sanitize_stream_id(stream_id)}{SNAPSHOT_EXTENSION}"

    def public_name(self, stream_id: str) -> str:
        """Get the snapshot filename as served under /snapshots/."""
        return f"{sanitize_stream_id(stream_id)}{SNAPSHOT_EXTENSION}"


def extract_stream_name(hint: Optional[str]) -> Optional[str]:
    """
    Pull the ``stream`` query parameter out of a playback URL.

    Returns the sanitized name, or None if the hint has no usable name.
    """
    if not hint:
        return None

    try:
        query = urlsplit(hint).query
        values = parse_qs(query).get('stream')
    except ValueError:
        return None

    if not values:
        return None

    name = sanitize_stream_id(values[0])
    return name or None


def _is_webrtc_hint(hint: str) -> bool:
    return any(marker in hint for marker in _WEBRTC_MARKERS)


def _hint_base(hint: str, force_https: bool) -> Optional[str]:
    """
    Build ``scheme://host:port`` from a WHEP/WebRTC hint URL.

    Returns None when the hint has no host or the host is not a plain
    DNS name or IP address.
    """
    try:
        parts = urlsplit(hint)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return None

    if not hostname:
        return None

    if ':' in hostname:
        if not _IPV6_HOST.fullmatch(hostname):
            return None
        hostname = f"[{hostname}]"
    elif not _DNS_HOST.fullmatch(hostname):
        return None

    if port is None:
        port = 443 if parts.scheme == 'https' else 80

    # SRS serves HTTP-HLS over plain HTTP on the WHEP port unless told otherwise
    scheme = 'https' if force_https else 'http'
    return f"{scheme}://{hostname}:{port}"


def resolve_source_url(
    stream_id: str,
    hint: Optional[str],
    base_url: str,
    force_https: bool = False,
    use_hint_host: bool = True
) -> str:
    """
    Derive the HTTP-HLS URL FFmpeg should read for a stream.

    A WHEP hint such as ``https://srs:1990/rtc/v1/whep/?app=live&stream=X1``
    yields ``http://srs:1990/live/X1.m3u8``; without a ``stream`` parameter
    the stream id is used on the hint's host. With ``use_hint_host`` off, or
    for other hints carrying a ``stream`` parameter, the name is served
    from ``base_url``. Anything else (including a WHEP hint with an
    unusable host) falls back to ``<base_url>/live/<stream_id>.m3u8``.
    Never raises.
    """
    base = base_url.rstrip('/')
    safe_id = sanitize_stream_id(stream_id)
    fallback = f"{base}/live/{safe_id}.m3u8"

    try:
        name = extract_stream_name(hint)

        if hint and use_hint_host and _is_webrtc_hint(hint):
            hint_base = _hint_base(hint, force_https)
            if hint_base is None:
                logger.debug(f"Ignoring source hint with unusable host: {hint!r}")
                return fallback
            return f"{hint_base}/live/{name or safe_id}.m3u8"

        if name is None:
            return fallback

        return f"{base}/live/{name}.m3u8"

    except (ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Ignoring unusable source hint {hint!r}: {e}")
        return fallback
