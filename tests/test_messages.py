import pytest

from conftest import PEER_ID, REMOTE_PEER_ID
from torrentwire.common.errors import (
    InfoHashMismatch,
    ProtocolMismatch,
    TruncatedHandshake,
)
from torrentwire.peer.messages import (
    HANDSHAKE_LENGTH,
    KEEP_ALIVE,
    MessageType,
    PeerMessage,
    build_handshake,
    decode_message,
    encode_message,
    validate_handshake,
)

pytestmark = pytest.mark.peer


class TestHandshake:
    def test_layout(self, info_hash):
        data = build_handshake(info_hash, PEER_ID)

        assert len(data) == HANDSHAKE_LENGTH == 68
        assert data[0] == 19
        assert data[1:20] == b"BitTorrent protocol"
        assert data[20:28] == bytes(8)
        assert data[28:48] == info_hash
        assert data[48:68] == PEER_ID

    def test_valid(self, info_hash):
        handshake = validate_handshake(build_handshake(info_hash, REMOTE_PEER_ID), info_hash)

        assert handshake.peer_id == REMOTE_PEER_ID
        assert handshake.info_hash == info_hash
        assert handshake.reserved == bytes(8)

    def test_reserved_bits_are_not_validated(self, info_hash):
        data = build_handshake(info_hash, REMOTE_PEER_ID, reserved=b"\x00" * 5 + b"\x10\x00\x05")
        assert validate_handshake(data, info_hash).reserved == b"\x00" * 5 + b"\x10\x00\x05"

    @pytest.mark.parametrize("first_byte", [0, 18, 20, 255])
    def test_wrong_length_byte(self, info_hash, first_byte):
        data = bytes([first_byte]) + build_handshake(info_hash, REMOTE_PEER_ID)[1:]
        with pytest.raises(ProtocolMismatch):
            validate_handshake(data, info_hash)

    def test_wrong_length_byte_even_when_short(self, info_hash):
        with pytest.raises(ProtocolMismatch):
            validate_handshake(b"HTTP/1.1", info_hash)

    def test_wrong_protocol_literal(self, info_hash):
        data = bytearray(build_handshake(info_hash, REMOTE_PEER_ID))
        data[1:20] = b"BitTorrent protocoL"
        with pytest.raises(ProtocolMismatch):
            validate_handshake(bytes(data), info_hash)

    def test_info_hash_mismatch(self, info_hash):
        other = bytes(20)
        with pytest.raises(InfoHashMismatch):
            validate_handshake(build_handshake(other, REMOTE_PEER_ID), info_hash)

    @pytest.mark.parametrize("length", [0, 1, 20, 47, 67])
    def test_truncated(self, info_hash, length):
        data = build_handshake(info_hash, REMOTE_PEER_ID)[:length]
        with pytest.raises(TruncatedHandshake):
            validate_handshake(data, info_hash)

    def test_rejects_bad_identifier_lengths(self, info_hash):
        with pytest.raises(ValueError):
            build_handshake(info_hash[:10], PEER_ID)
        with pytest.raises(ValueError):
            build_handshake(info_hash, PEER_ID + b"x")


class TestFraming:
    def test_message_ids(self):
        assert [m.value for m in MessageType] == list(range(9))
        assert MessageType.NOT_INTERESTED == 3
        assert MessageType.CANCEL == 8

    def test_keep_alive(self):
        assert KEEP_ALIVE == b"\x00\x00\x00\x00"
        assert encode_message(None) == KEEP_ALIVE
        assert decode_message(b"").is_keep_alive

    def test_encode_with_payload(self):
        data = encode_message(MessageType.HAVE, (42).to_bytes(4, "big"))
        assert data == b"\x00\x00\x00\x05\x04\x00\x00\x00\x2a"

    def test_encode_without_payload(self):
        assert encode_message(MessageType.INTERESTED) == b"\x00\x00\x00\x01\x02"

    def test_decode(self):
        message = decode_message(b"\x07" + b"block")

        assert message.type is MessageType.PIECE
        assert message.payload == b"block"
        assert message.encode() == b"\x00\x00\x00\x06\x07block"

    def test_unknown_message_id_is_kept(self):
        message = decode_message(b"\x14extended")

        assert message.msg_id == 20
        assert message.type is None
        assert not message.is_keep_alive

    def test_keep_alive_has_no_payload(self):
        with pytest.raises(ValueError):
            PeerMessage(None, b"x").encode()
