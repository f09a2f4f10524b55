"""
Peer wire handshake and message framing.

Handshake (68 bytes, same layout both ways):

    <pstrlen=19><pstr="BitTorrent protocol"><reserved: 8><info_hash: 20><peer_id: 20>

Messages after the handshake:

    <length: 4 byte big-endian><message id: 1><payload: length - 1>

A zero length message is a keep-alive and carries no id.
"""

import struct
from enum import IntEnum
from typing import NamedTuple, Optional

from torrentwire.common.errors import (
    InfoHashMismatch,
    ProtocolMismatch,
    TruncatedHandshake,
)

PROTOCOL = b"BitTorrent protocol"
PSTRLEN = len(PROTOCOL)  # 19
RESERVED = b"\x00" * 8
HANDSHAKE_LENGTH = 1 + PSTRLEN + 8 + 20 + 20  # 68
HANDSHAKE_FORMAT = "!B19s8s20s20s"
INFO_HASH_OFFSET = 28
PEER_ID_OFFSET = 48

LENGTH_PREFIX = struct.Struct("!I")
KEEP_ALIVE = LENGTH_PREFIX.pack(0)


class MessageType(IntEnum):
    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8


class Handshake(NamedTuple):
    reserved: bytes
    info_hash: bytes
    peer_id: bytes


class PeerMessage(NamedTuple):
    # msg_id is None for keep-alive. Ids outside MessageType are kept as ints
    # so extension messages pass through unharmed.
    msg_id: Optional[int]
    payload: bytes = b""

    @property
    def is_keep_alive(self) -> bool:
        return self.msg_id is None

    @property
    def type(self) -> Optional[MessageType]:
        if self.msg_id is None:
            return None
        try:
            return MessageType(self.msg_id)
        except ValueError:
            return None

    def encode(self) -> bytes:
        return encode_message(self.msg_id, self.payload)


def build_handshake(info_hash: bytes, peer_id: bytes, reserved: bytes = RESERVED) -> bytes:
    if len(info_hash) != 20:
        raise ValueError(f"info_hash must be 20 bytes, got {len(info_hash)}")
    if len(peer_id) != 20:
        raise ValueError(f"peer_id must be 20 bytes, got {len(peer_id)}")
    if len(reserved) != 8:
        raise ValueError(f"reserved must be 8 bytes, got {len(reserved)}")
    return struct.pack(HANDSHAKE_FORMAT, PSTRLEN, PROTOCOL, reserved, info_hash, peer_id)


def validate_handshake(data: bytes, info_hash: bytes) -> Handshake:
    """
    Check a received handshake against the torrent we asked for.

    Order matters: the length byte and protocol literal are checked on
    whatever arrived before the length, so garbage from a non-BitTorrent
    service reads as a protocol mismatch even when it is short.
    """
    if not data:
        raise TruncatedHandshake("Peer sent no handshake bytes")
    if data[0] != PSTRLEN:
        raise ProtocolMismatch(f"Invalid pstrlen: {data[0]}")

    pstr = data[1 : 1 + PSTRLEN]
    if pstr != PROTOCOL[: len(pstr)]:
        raise ProtocolMismatch(f"Invalid protocol string: {pstr!r}")
    if len(data) < HANDSHAKE_LENGTH:
        raise TruncatedHandshake(
            f"Incomplete handshake: received {len(data)} of {HANDSHAKE_LENGTH} bytes"
        )

    _, _, reserved, remote_hash, peer_id = struct.unpack(
        HANDSHAKE_FORMAT, data[:HANDSHAKE_LENGTH]
    )
    if remote_hash != info_hash:
        raise InfoHashMismatch(
            "Info hash mismatch",
            {"expected": info_hash.hex(), "received": remote_hash.hex()},
        )
    return Handshake(reserved, remote_hash, peer_id)


def encode_message(msg_id: Optional[int], payload: bytes = b"") -> bytes:
    if msg_id is None:
        if payload:
            raise ValueError("keep-alive carries no payload")
        return KEEP_ALIVE
    return LENGTH_PREFIX.pack(1 + len(payload)) + bytes((msg_id,)) + payload


def decode_message(frame: bytes) -> PeerMessage:
    """Decode one frame body (everything after the length prefix)."""
    if not frame:
        return PeerMessage(None)
    return PeerMessage(frame[0], bytes(frame[1:]))
