import asyncio
from enum import Enum
import logging
import time

from torrentwire.common.config import ClientConfig
from torrentwire.common.errors import (
    ConnectFailed,
    ConnectionClosed,
    PeerError,
    ProtocolMismatch,
    TruncatedHandshake,
)
from torrentwire.peer.messages import (
    HANDSHAKE_LENGTH,
    LENGTH_PREFIX,
    PSTRLEN,
    MessageType,
    PeerMessage,
    build_handshake,
    decode_message,
    encode_message,
    validate_handshake,
)
from torrentwire.tracker.response import PeerAddress

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    CONNECTING = "connecting"
    HANDSHAKE_SENT = "handshake_sent"
    HANDSHAKE_VALIDATED = "handshake_validated"
    ESTABLISHED = "established"
    CLOSED = "closed"


class PeerConnection:
    """
    One TCP connection to a remote peer.

    Lifecycle: Connecting -> HandshakeSent -> HandshakeValidated ->
    Established -> Closed (a responder validates before it sends). Every
    failure closes the connection, and a closed connection refuses all I/O
    with ConnectionClosed.
    """

    __slots__ = (
        # Network State
        "address",
        "reader",
        "writer",
        "state",
        "inbound",
        # Handshake
        "info_hash",
        "peer_id",
        "remote_peer_id",
        "remote_reserved",
        # Config
        "config",
        "last_message_time",
    )

    def __init__(
        self,
        address: PeerAddress,
        info_hash: bytes,
        peer_id: bytes,
        config: ClientConfig | None = None,
    ):
        self.address = address
        self.reader: asyncio.StreamReader = None
        self.writer: asyncio.StreamWriter = None
        self.state = ConnectionState.CONNECTING
        self.inbound = False

        self.info_hash = info_hash
        self.peer_id = peer_id
        self.remote_peer_id: bytes = None
        self.remote_reserved: bytes = None

        self.config = config or ClientConfig()
        self.last_message_time = time.monotonic()

    @property
    def is_established(self) -> bool:
        return self.state is ConnectionState.ESTABLISHED

    @property
    def is_closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    async def connect(self) -> None:
        """Open the TCP stream and run the initiator side of the handshake."""
        self._ensure_not_closed()
        logger.info(f"Initiating outbound connection to peer {self.address}")
        try:
            async with asyncio.timeout(self.config.connect_timeout):
                self.reader, self.writer = await asyncio.open_connection(
                    self.address.ip, self.address.port
                )
        except (OSError, TimeoutError) as e:
            await self.close()
            raise ConnectFailed(
                f"Could not connect to {self.address}: {e!r}"
            ) from e
        logger.info(f"TCP connection established to {self.address}")

        try:
            await self._handshake_sequence(initiator=True)
        except Exception as e:
            logger.warning(f"Handshake with {self.address} failed: {e}")
            await self.close()
            raise

    async def accept(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Run the responder side of the handshake on an inbound stream."""
        self._ensure_not_closed()
        self.reader = reader
        self.writer = writer
        self.inbound = True
        logger.info(f"Accepting inbound connection from peer {self.address}")
        try:
            await self._handshake_sequence(initiator=False)
        except Exception as e:
            logger.warning(f"Handshake with inbound peer {self.address} failed: {e}")
            await self.close()
            raise

    async def _handshake_sequence(self, initiator: bool) -> None:
        try:
            async with asyncio.timeout(self.config.handshake_timeout):
                if initiator:
                    await self._send_handshake()
                    await self._receive_handshake()
                else:
                    await self._receive_handshake()
                    await self._send_handshake()
        except TimeoutError as e:
            raise TruncatedHandshake(
                f"Handshake with {self.address} not completed within "
                f"{self.config.handshake_timeout}s"
            ) from e
        except OSError as e:
            raise TruncatedHandshake(
                f"Connection to {self.address} lost during handshake: {e}"
            ) from e

        self.state = ConnectionState.ESTABLISHED
        logger.info(
            f"Handshake completed with peer {self.address} "
            f"(peer_id: {self.remote_peer_id.hex()[:16]}...)"
        )

    async def _send_handshake(self) -> None:
        self.writer.write(build_handshake(self.info_hash, self.peer_id))
        await self.writer.drain()
        if self.state is ConnectionState.CONNECTING:
            self.state = ConnectionState.HANDSHAKE_SENT
        logger.debug(f"Handshake sent to {self.address}")

    async def _receive_handshake(self) -> None:
        data = b""
        try:
            # length byte first, so a non-BitTorrent service fails fast
            data = await self.reader.readexactly(1)
            if data[0] == PSTRLEN:
                data += await self.reader.readexactly(HANDSHAKE_LENGTH - 1)
        except asyncio.IncompleteReadError as e:
            data += e.partial

        handshake = validate_handshake(data, self.info_hash)
        self.remote_peer_id = handshake.peer_id
        self.remote_reserved = handshake.reserved
        self.state = ConnectionState.HANDSHAKE_VALIDATED
        self.last_message_time = time.monotonic()
        logger.debug(f"Received valid handshake from {self.address}")

    async def send(self, message: PeerMessage) -> None:
        await self._write(message.encode())

    async def send_message(self, msg_id: MessageType, payload: bytes = b"") -> None:
        await self._write(encode_message(msg_id, payload))

    async def send_keep_alive(self) -> None:
        logger.debug(f"Sending keep-alive to peer {self.address}")
        await self._write(encode_message(None))

    async def _write(self, data: bytes) -> None:
        self._ensure_established()
        try:
            self.writer.write(data)
            await self.writer.drain()
        except OSError as e:
            await self.close()
            raise ConnectionClosed(f"Write to {self.address} failed: {e}") from e

    async def read_message(self) -> PeerMessage:
        """Read one length-prefixed frame. Keep-alives are returned too."""
        self._ensure_established()
        try:
            (length,) = LENGTH_PREFIX.unpack(await self.reader.readexactly(4))
            if length > self.config.max_message_length:
                await self.close()
                raise ProtocolMismatch(
                    f"Peer {self.address} sent a {length} byte frame "
                    f"(limit {self.config.max_message_length})"
                )
            frame = await self.reader.readexactly(length) if length else b""
        except (asyncio.IncompleteReadError, OSError) as e:
            await self.close()
            raise ConnectionClosed(f"Peer {self.address} disconnected") from e

        self.last_message_time = time.monotonic()
        return decode_message(frame)

    async def messages(self):
        """Yield frames until the peer disconnects or the connection is closed."""
        while not self.is_closed:
            try:
                yield await self.read_message()
            except ConnectionClosed:
                return

    def _ensure_not_closed(self) -> None:
        if self.state is ConnectionState.CLOSED:
            raise ConnectionClosed(f"Connection to {self.address} is closed")

    def _ensure_established(self) -> None:
        self._ensure_not_closed()
        if self.state is not ConnectionState.ESTABLISHED:
            raise PeerError(
                f"Connection to {self.address} is {self.state.value}, not established"
            )

    async def close(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        if self.writer is not None:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error while closing connection to {self.address}: {e}")
        logger.info(f"Connection to peer {self.address} closed")

    def __repr__(self) -> str:
        return f"PeerConnection({self.address}, state={self.state.value})"
