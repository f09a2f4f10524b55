import socket
from typing import NamedTuple, Optional
import bencodepy
import logging

from torrentwire.common.errors import AnnounceFailed, MalformedPeerList, TrackerRejected

logger = logging.getLogger(__name__)

COMPACT_PEER_LENGTH = 6  # 4 byte IPv4 + 2 byte port
COMPACT_PEER6_LENGTH = 18  # 16 byte IPv6 + 2 byte port


class PeerAddress(NamedTuple):
    ip: str
    port: int
    peer_id: Optional[bytes] = None

    def __str__(self) -> str:
        if ":" in self.ip:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


class AnnounceResult:
    __slots__ = (
        "failure_reason",
        "warning_message",
        "interval",
        "min_interval",
        "tracker_id",
        "complete",
        "incomplete",
        "peers",
    )

    def __init__(
        self,
        peers: list[PeerAddress],
        interval: int | None = None,
        min_interval: int | None = None,
        tracker_id: bytes | None = None,
        complete: int | None = None,
        incomplete: int | None = None,
        warning_message: str | None = None,
        failure_reason: str | None = None,
    ):
        self.peers = peers
        self.interval = interval
        self.min_interval = min_interval
        self.tracker_id = tracker_id
        self.complete = complete
        self.incomplete = incomplete
        self.warning_message = warning_message
        self.failure_reason = failure_reason

    def __repr__(self) -> str:
        return (
            f"AnnounceResult(peers={len(self.peers)}, interval={self.interval}, "
            f"min_interval={self.min_interval})"
        )


def decode_announce_response(body: bytes) -> AnnounceResult:
    """
    Decode a bencoded tracker response.

    The peer list encoding is chosen by the type of "peers" rather than by
    the compact flag that was requested, since trackers are free to ignore
    it.
    """
    try:
        decoded = bencodepy.decode(body)
    except (bencodepy.BencodeDecodeError, ValueError) as e:
        raise AnnounceFailed(
            f"Tracker response is not valid bencode: {e}", {"body": body[:200]}
        ) from e
    if not isinstance(decoded, dict):
        raise AnnounceFailed("Tracker response is not a dictionary")

    if b"failure reason" in decoded:
        raise TrackerRejected(_text(decoded[b"failure reason"]))

    peers_raw = decoded.get(b"peers", b"")
    if isinstance(peers_raw, bytes):
        peers = decode_compact_peers(peers_raw)
    elif isinstance(peers_raw, list):
        peers = decode_dict_peers(peers_raw)
    else:
        raise MalformedPeerList(f"Unexpected peers type: {type(peers_raw).__name__}")

    peers6_raw = decoded.get(b"peers6")
    if isinstance(peers6_raw, bytes):
        peers.extend(decode_compact_peers6(peers6_raw))

    warning = decoded.get(b"warning message")
    if warning is not None:
        logger.warning(f"Tracker warning: {_text(warning)}")

    return AnnounceResult(
        peers=peers,
        interval=_positive_or_none(decoded.get(b"interval")),
        min_interval=_positive_or_none(decoded.get(b"min interval")),
        tracker_id=decoded.get(b"tracker id"),
        complete=_int_or_none(decoded.get(b"complete")),
        incomplete=_int_or_none(decoded.get(b"incomplete")),
        warning_message=_text(warning) if warning is not None else None,
    )


def decode_compact_peers(data: bytes) -> list[PeerAddress]:
    if len(data) % COMPACT_PEER_LENGTH:
        raise MalformedPeerList(
            f"Compact peer list length {len(data)} is not a multiple of 6"
        )
    peers = []
    for i in range(0, len(data), COMPACT_PEER_LENGTH):
        ip = socket.inet_ntoa(data[i : i + 4])
        port = (data[i + 4] << 8) | data[i + 5]
        peers.append(PeerAddress(ip, port))
    return peers


def decode_compact_peers6(data: bytes) -> list[PeerAddress]:
    if len(data) % COMPACT_PEER6_LENGTH:
        raise MalformedPeerList(
            f"Compact IPv6 peer list length {len(data)} is not a multiple of 18"
        )
    peers = []
    for i in range(0, len(data), COMPACT_PEER6_LENGTH):
        ip = socket.inet_ntop(socket.AF_INET6, data[i : i + 16])
        port = (data[i + 16] << 8) | data[i + 17]
        peers.append(PeerAddress(ip, port))
    return peers


def decode_dict_peers(entries: list) -> list[PeerAddress]:
    # BEP 3: [{"peer id": ..., "ip": ..., "port": ...}], "peer id" absent with no_peer_id
    peers = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise MalformedPeerList(f"peers[{index}] is not a dictionary")
        ip = entry.get(b"ip")
        port = entry.get(b"port")
        if not isinstance(ip, bytes) or not ip:
            raise MalformedPeerList(f"peers[{index}] has no ip")
        if not isinstance(port, int) or not 0 <= port <= 65535:
            raise MalformedPeerList(f"peers[{index}] has invalid port {port!r}")
        peer_id = entry.get(b"peer id")
        peers.append(
            PeerAddress(
                ip.decode("utf-8", "replace"),
                port,
                peer_id if isinstance(peer_id, bytes) else None,
            )
        )
    return peers


def _int_or_none(value) -> int | None:
    return value if isinstance(value, int) else None


def _positive_or_none(value) -> int | None:
    # a zero or negative interval would have us re-announce immediately
    value = _int_or_none(value)
    return value if value is not None and value > 0 else None


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)
