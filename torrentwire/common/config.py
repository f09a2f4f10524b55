import os
import logging

logger = logging.getLogger(__name__)

CLIENT_VERSION = "0100"
PEER_ID_PREFIX = b"-TW" + CLIENT_VERSION.encode() + b"-"  # Azureus-style, 8 bytes
USER_AGENT = f"torrentwire/{CLIENT_VERSION}"

LISTEN_HOST = "0.0.0.0"
LISTEN_PORT_RANGE = (6881, 6889)

CONNECT_TIMEOUT = 10.0  # seconds
HANDSHAKE_TIMEOUT = 10.0  # seconds, for the full 68 byte exchange
TRACKER_TIMEOUT = 15.0  # seconds
DEFAULT_INTERVAL = 1800  # seconds, used until a tracker supplies one
MAX_PEERS = 50
MAX_MESSAGE_LENGTH = 1 << 20  # 1 MiB
STOPPED_ATTEMPTS = 2

ENV_PREFIX = "TORRENTWIRE_"


class ClientConfig:
    __slots__ = (
        "peer_id_prefix",
        "user_agent",
        "listen_host",
        "port_range",
        "compact",
        "connect_timeout",
        "handshake_timeout",
        "tracker_timeout",
        "default_interval",
        "max_peers",
        "max_message_length",
        "stopped_attempts",
    )

    def __init__(
        self,
        peer_id_prefix: bytes = PEER_ID_PREFIX,
        user_agent: str = USER_AGENT,
        listen_host: str = LISTEN_HOST,
        port_range: tuple[int, int] = LISTEN_PORT_RANGE,
        compact: bool = True,
        connect_timeout: float = CONNECT_TIMEOUT,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
        tracker_timeout: float = TRACKER_TIMEOUT,
        default_interval: int = DEFAULT_INTERVAL,
        max_peers: int = MAX_PEERS,
        max_message_length: int = MAX_MESSAGE_LENGTH,
        stopped_attempts: int = STOPPED_ATTEMPTS,
    ):
        if len(peer_id_prefix) > 20:
            raise ValueError("peer_id_prefix must be at most 20 bytes")
        if port_range[0] > port_range[1]:
            raise ValueError(f"Invalid port range: {port_range}")
        if stopped_attempts < 1:
            raise ValueError("stopped_attempts must be at least 1")

        self.peer_id_prefix = peer_id_prefix
        self.user_agent = user_agent
        self.listen_host = listen_host
        self.port_range = port_range
        self.compact = compact
        self.connect_timeout = connect_timeout
        self.handshake_timeout = handshake_timeout
        self.tracker_timeout = tracker_timeout
        self.default_interval = default_interval
        self.max_peers = max_peers
        self.max_message_length = max_message_length
        self.stopped_attempts = stopped_attempts

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "ClientConfig":
        """
        Build a config from TORRENTWIRE_* environment variables.

        Keyword overrides (typically parsed CLI flags) win over the
        environment; None values are ignored so argparse defaults can be
        passed straight through.
        """
        environ = os.environ if environ is None else environ
        values = {}

        def env(name: str, convert):
            raw = environ.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                return
            try:
                values[name.lower()] = convert(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid {ENV_PREFIX}{name}={raw!r}")

        env("USER_AGENT", str)
        env("LISTEN_HOST", str)
        env("PORT_RANGE", _parse_port_range)
        env("COMPACT", _parse_bool)
        env("CONNECT_TIMEOUT", float)
        env("HANDSHAKE_TIMEOUT", float)
        env("TRACKER_TIMEOUT", float)
        env("DEFAULT_INTERVAL", int)
        env("MAX_PEERS", int)
        env("MAX_MESSAGE_LENGTH", int)
        env("STOPPED_ATTEMPTS", int)

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _parse_port_range(raw: str) -> tuple[int, int]:
    start, sep, end = raw.partition("-")
    if not sep:
        return int(start), int(start)
    return int(start), int(end)


def _parse_bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(raw)
