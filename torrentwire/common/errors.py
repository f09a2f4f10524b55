"""Error taxonomy for torrentwire.

Metadata errors are parse failures and are not retryable. Tracker errors are
retryable at the next announce interval. Peer errors only ever discard one
candidate peer; the session keeps going with the rest.
"""

from typing import Any, Optional


class TorrentWireError(Exception):
    """Base exception for all torrentwire errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


# Metadata


class MetadataError(TorrentWireError):
    """The torrent description does not have the expected structure."""


class MalformedInput(MetadataError):
    """Not decodable, or the top level is not a dictionary."""


class MissingInfoField(MetadataError):
    """The top-level dictionary has no "info" key."""


class MalformedInfo(MetadataError):
    """The "info" dictionary is inconsistent or incomplete."""


# Tracker


class TrackerError(TorrentWireError):
    """Tracker round trip errors."""


class AnnounceFailed(TrackerError):
    """Transport failure, non-2xx status or an undecodable response body."""


class TrackerRejected(TrackerError):
    """The tracker answered with a "failure reason"."""

    def __init__(self, reason: str):
        super().__init__(f"Tracker rejected announce: {reason}", {"reason": reason})
        self.reason = reason


class MalformedPeerList(TrackerError):
    """The "peers" field of an announce response cannot be decoded."""


class AnnounceSequenceError(TrackerError):
    """Announce events sent out of order (started, none*, completed?, stopped)."""


# Peer


class PeerError(TorrentWireError):
    """Per-peer failures. Never fatal to the session."""


class ConnectFailed(PeerError):
    """TCP connection could not be established in time."""


class HandshakeError(PeerError):
    """The remote handshake is unusable."""


class TruncatedHandshake(HandshakeError):
    """Fewer than 68 handshake bytes arrived before EOF or the deadline."""


class ProtocolMismatch(HandshakeError):
    """Wrong protocol length byte, protocol literal, or an invalid frame."""


class InfoHashMismatch(HandshakeError):
    """The peer is serving a different torrent."""


class ConnectionClosed(PeerError):
    """I/O attempted on a closed connection."""


# Local


class ListenPortUnavailable(TorrentWireError):
    """No port in the configured listen range could be bound."""
