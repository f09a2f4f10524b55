import asyncio
import logging
import time
from typing import Awaitable, Callable

import httpx

from torrentwire.common.config import ClientConfig
from torrentwire.common.errors import (
    AnnounceFailed,
    ListenPortUnavailable,
    PeerError,
    TrackerError,
)
from torrentwire.common.stats import TransferStats
from torrentwire.peer.connected_peer import PeerConnection
from torrentwire.peer.messages import PeerMessage
from torrentwire.torrent.metadata import TorrentMetadata
from torrentwire.tracker.response import PeerAddress
from torrentwire.tracker.tracker_client import TrackerClient

logger = logging.getLogger(__name__)

ANNOUNCE_RETRY_DELAY = 60  # seconds, when the tracker gave no min interval
STOPPED_RETRY_DELAY = 1.0  # seconds
KEEP_ALIVE_INTERVAL = 60  # seconds
PEER_IDLE_TIMEOUT = 120  # seconds without any frame from the peer

MessageHandler = Callable[[PeerConnection, PeerMessage], Awaitable[None]]


class TorrentSession:
    """
    Everything one torrent needs on the wire: transfer stats, the tracker
    announce loop, one worker task per peer connection and the inbound
    listener.

    Piece exchange is not handled here. Framed messages from established
    connections are passed to `message_handler`; that layer reports progress
    back through record_downloaded/record_uploaded/record_corrupt.
    """

    __slots__ = (
        "metadata",
        "config",
        "peer_id",
        "listen_port",
        "stats",
        "tracker",
        "message_handler",
        "connections",
        "known_peers",
        "peer_queue",
        "peer_tasks",
        "workers",
        "server",
        "_slots",
        "_announce_wakeup",
        "_shutdown",
    )

    def __init__(
        self,
        metadata: TorrentMetadata,
        peer_id: bytes,
        listen_port: int,
        config: ClientConfig | None = None,
        stats: TransferStats | None = None,
        message_handler: MessageHandler | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.metadata = metadata
        self.config = config or ClientConfig()
        self.peer_id = peer_id
        self.listen_port = listen_port
        self.stats = stats or TransferStats(left=metadata.total_length)

        self.tracker = TrackerClient(
            metadata.tracker_url,
            metadata.info_hash,
            peer_id,
            listen_port,
            self.config,
            transport=transport,
        )
        self.message_handler = message_handler or self._log_message

        # Peers
        self.connections: set[PeerConnection] = set()
        self.known_peers: set[tuple[str, int]] = set()
        self.peer_queue: asyncio.Queue[PeerAddress] = asyncio.Queue()
        self.peer_tasks: set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(self.config.max_peers)

        # Workers
        self.workers: list[asyncio.Task] = []
        self.server: asyncio.Server | None = None
        self._announce_wakeup = asyncio.Event()
        self._shutdown = False

        logger.info(f"Initialized session for {metadata.name} ({metadata.info_hash.hex()})")

    async def start(self, listen: bool = True) -> None:
        if listen:
            try:
                self.server = await asyncio.start_server(
                    self._handle_inbound, self.config.listen_host, self.listen_port
                )
            except OSError as e:
                raise ListenPortUnavailable(
                    f"Cannot listen on {self.config.listen_host}:{self.listen_port}: {e}"
                ) from e
            logger.info(f"Listening for peers on port {self.listen_port}")

        self.workers = [
            asyncio.create_task(self._announce_loop()),
            asyncio.create_task(self._peer_connector()),
        ]

    async def run(self, stop: asyncio.Event, listen: bool = True) -> None:
        """Run until `stop` is set, then shut down."""
        try:
            await self.start(listen=listen)
            await stop.wait()
        finally:
            await self.shutdown()

    # Progress reported by the piece-exchange layer

    def record_downloaded(self, nbytes: int) -> None:
        if self.stats.add_downloaded(nbytes):
            logger.info("Transfer complete, announcing early")
            self._announce_wakeup.set()

    def record_uploaded(self, nbytes: int) -> None:
        self.stats.add_uploaded(nbytes)

    def record_corrupt(self, nbytes: int) -> None:
        self.stats.add_corrupt(nbytes)

    # Tracker

    async def _announce_loop(self) -> None:
        while not self._shutdown:
            stats = self.stats.snapshot()
            event = self.tracker.next_event(stats)
            try:
                result = await self.tracker.announce(stats, event)
                self.add_peers(result.peers)
                delay = self.tracker.next_interval()
            except TrackerError as e:
                delay = self.tracker.min_interval or ANNOUNCE_RETRY_DELAY
                logger.warning(f"Announce ({event.value}) failed, retrying in {delay}s: {e}")

            try:
                async with asyncio.timeout(delay):
                    await self._announce_wakeup.wait()
            except TimeoutError:
                pass
            self._announce_wakeup.clear()

    async def _announce_stopped(self) -> bool:
        attempts = self.config.stopped_attempts
        for attempt in range(1, attempts + 1):
            try:
                await self.tracker.send_stopped(self.stats.snapshot())
                return True
            except AnnounceFailed as e:
                logger.warning(f"stopped announce attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(STOPPED_RETRY_DELAY)
            except TrackerError as e:
                logger.warning(f"stopped announce not accepted: {e}")
                return False
        return False

    # Peers

    def add_peers(self, peers: list[PeerAddress]) -> int:
        added = 0
        for address in peers:
            key = (address.ip, address.port)
            if key in self.known_peers or address.port == 0:
                continue
            self.known_peers.add(key)
            self.peer_queue.put_nowait(address)
            added += 1
        if added:
            logger.info(f"Added {added} peers to queue")
        return added

    async def _peer_connector(self) -> None:
        while not self._shutdown:
            address = await self.peer_queue.get()
            await self._slots.acquire()
            task = asyncio.create_task(self._peer_worker(address))
            self.peer_tasks.add(task)
            task.add_done_callback(self.peer_tasks.discard)

    async def _peer_worker(self, address: PeerAddress) -> None:
        connection = PeerConnection(
            address, self.metadata.info_hash, self.peer_id, self.config
        )
        self.connections.add(connection)
        try:
            await connection.connect()
            if self._is_duplicate(connection):
                return
            logger.info(f"Connected to peer {address}. Total peers: {self._established_count()}")
            await self._serve(connection)
        except PeerError as e:
            logger.info(f"Discarding peer {address}: {e}")
        except Exception:
            logger.exception(f"Peer worker for {address} crashed")
        finally:
            await connection.close()
            self.connections.discard(connection)
            self._slots.release()

    async def _handle_inbound(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        host, port = writer.get_extra_info("peername")[:2]
        if self._shutdown or self._slots.locked():
            logger.info(f"Refusing inbound peer {host}:{port}")
            writer.close()
            return
        # does not block: the semaphore was just seen unlocked
        await self._slots.acquire()

        task = asyncio.current_task()
        self.peer_tasks.add(task)
        connection = PeerConnection(
            PeerAddress(host, port), self.metadata.info_hash, self.peer_id, self.config
        )
        self.connections.add(connection)
        try:
            await connection.accept(reader, writer)
            if self._is_duplicate(connection):
                return
            await self._serve(connection)
        except PeerError as e:
            logger.info(f"Discarding inbound peer {host}:{port}: {e}")
        finally:
            await connection.close()
            self.connections.discard(connection)
            self.peer_tasks.discard(task)
            self._slots.release()

    def _is_duplicate(self, connection: PeerConnection) -> bool:
        if connection.remote_peer_id == self.peer_id:
            logger.info(f"Peer {connection.address} is ourselves, dropping")
            return True
        duplicate = any(
            other is not connection
            and other.is_established
            and other.remote_peer_id == connection.remote_peer_id
            for other in self.connections
        )
        if duplicate:
            logger.warning(
                f"Duplicate connection for peer {connection.remote_peer_id.hex()[:16]}... "
                f"at {connection.address}"
            )
        return duplicate

    def _established_count(self) -> int:
        return sum(1 for c in self.connections if c.is_established)

    async def _serve(self, connection: PeerConnection) -> None:
        keep_alive = asyncio.create_task(self._keep_alive(connection))
        try:
            async for message in connection.messages():
                await self.message_handler(connection, message)
        finally:
            keep_alive.cancel()
            await asyncio.gather(keep_alive, return_exceptions=True)

    async def _keep_alive(self, connection: PeerConnection) -> None:
        while connection.is_established:
            await asyncio.sleep(KEEP_ALIVE_INTERVAL)
            idle = time.monotonic() - connection.last_message_time
            if idle > PEER_IDLE_TIMEOUT:
                logger.warning(f"Peer {connection.address} timed out ({idle:.1f}s idle)")
                await connection.close()
                return
            try:
                await connection.send_keep_alive()
            except PeerError as e:
                logger.info(f"Keep-alive to {connection.address} failed: {e}")
                return

    async def _log_message(self, connection: PeerConnection, message: PeerMessage) -> None:
        if message.is_keep_alive:
            logger.debug(f"Received keep-alive from peer {connection.address}")
            return
        name = message.type.name if message.type is not None else f"id={message.msg_id}"
        logger.debug(
            f"Received {name} from peer {connection.address} ({len(message.payload)} bytes)"
        )

    # Teardown

    async def shutdown(self) -> None:
        """
        Stop every task, close every connection and the listener, then send
        one stopped announce (retried a bounded number of times).
        """
        if self._shutdown:
            return
        self._shutdown = True
        logger.info("Shutting down session")

        if self.server is not None:
            self.server.close()

        tasks = [*self.workers, *self.peer_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for connection in list(self.connections):
            await connection.close()
        self.connections.clear()

        if self.server is not None:
            await self.server.wait_closed()

        await self._announce_stopped()
        logger.info("Session shutdown complete")
