"""Shared fixtures: torrent builders, fake trackers and fake peers."""

import asyncio
import hashlib
import socket

import bencodepy
import httpx
import pytest
import pytest_asyncio

from torrentwire.peer.messages import HANDSHAKE_LENGTH, build_handshake
from torrentwire.tracker.response import PeerAddress
from torrentwire.tracker.tracker_client import parse_announce_url

ANNOUNCE_URL = "http://tracker.test/announce"
PEER_ID = b"-TW0100-abcdef123456"
REMOTE_PEER_ID = b"-XX0001-remotepeer01"


def make_info(piece_length=16384, total_length=40000, name=b"sample.bin", files=None):
    num_pieces = -(-total_length // piece_length)
    pieces = b"".join(hashlib.sha1(bytes([i])).digest() for i in range(num_pieces))
    info = {b"name": name, b"piece length": piece_length, b"pieces": pieces}
    if files is None:
        info[b"length"] = total_length
    else:
        info[b"files"] = files
    return info


def make_torrent(info=None, announce=ANNOUNCE_URL.encode(), extra=None):
    metainfo = {b"info": info if info is not None else make_info()}
    if announce is not None:
        metainfo[b"announce"] = announce
    metainfo.update(extra or {})
    return bencodepy.encode(metainfo)


def compact_peers(*addresses):
    return b"".join(
        socket.inet_aton(ip) + port.to_bytes(2, "big") for ip, port in addresses
    )


async def wait_until(predicate, timeout=3.0):
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture
def info_hash():
    return hashlib.sha1(b"torrentwire test torrent").digest()


@pytest.fixture
def torrent_bytes():
    return make_torrent()


@pytest_asyncio.fixture
async def peer_server():
    """Start loopback servers running a handler; returns their PeerAddress."""
    servers = []

    async def start(handler):
        server = await asyncio.start_server(handler, "127.0.0.1", 0)
        servers.append(server)
        return PeerAddress("127.0.0.1", server.sockets[0].getsockname()[1])

    yield start

    for server in servers:
        server.close()
        await server.wait_closed()


def handshaking_peer(info_hash, peer_id=REMOTE_PEER_ID, after=b""):
    """A well-behaved remote: validate nothing, answer, send `after`, wait for EOF."""

    async def handler(reader, writer):
        try:
            await reader.readexactly(HANDSHAKE_LENGTH)
            writer.write(build_handshake(info_hash, peer_id) + after)
            await writer.drain()
            await reader.read()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    return handler


class FakeTracker:
    """httpx handler recording every announce and answering with a canned body."""

    def __init__(self, peers=b"", interval=1800, min_interval=60, fail_events=()):
        self.peers = peers
        self.interval = interval
        self.min_interval = min_interval
        self.fail_events = set(fail_events)
        self.requests = []

    @property
    def events(self):
        return [parse_announce_url(str(r.url)).event.value for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        event = parse_announce_url(str(request.url)).event.value
        if event in self.fail_events:
            return httpx.Response(503, content=b"unavailable")
        response = {b"interval": self.interval, b"peers": self.peers}
        if self.min_interval is not None:
            response[b"min interval"] = self.min_interval
        body = bencodepy.encode(response)
        return httpx.Response(200, content=body)

    @property
    def transport(self):
        return httpx.MockTransport(self)
