import hashlib
import socket
import logging
from functools import lru_cache

from torrentwire.common.config import PEER_ID_PREFIX
from torrentwire.common.errors import ListenPortUnavailable

logger = logging.getLogger(__name__)


def local_fingerprint() -> str:
    # host name plus every address it resolves to, stable across restarts
    hostname = socket.gethostname()
    try:
        _, _, addresses = socket.gethostbyname_ex(hostname)
    except OSError:
        addresses = []
    return f"{hostname}:{''.join(sorted(addresses))}:"


@lru_cache(maxsize=None)
def derive_peer_id(prefix: bytes = PEER_ID_PREFIX) -> bytes:
    """
    Return this process's 20 byte peer id.

    The prefix is followed by hex characters of the SHA-1 of the local
    fingerprint, so the id survives restarts on the same host. Cached: the
    first call fixes the value for the life of the process.
    """
    digest = hashlib.sha1(local_fingerprint().encode("utf-8")).hexdigest()
    peer_id = prefix + digest[: 20 - len(prefix)].encode("ascii")
    logger.info(f"Derived peer id {peer_id!r}")
    return peer_id


def is_port_available(host: str, port: int) -> bool:
    if not 0 <= port <= 65535:
        return False
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_listen_port(host: str, start: int = 6881, end: int = 6889) -> int:
    for port in range(start, end + 1):
        if is_port_available(host, port):
            logger.info(f"Using listen port {port}")
            return port
    raise ListenPortUnavailable(
        f"No listen port available in {start}-{end}", {"host": host}
    )
