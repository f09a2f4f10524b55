import httpx
from enum import Enum
from urllib.parse import parse_qsl, quote, urlencode, urlsplit
import logging

from torrentwire.common.config import ClientConfig
from torrentwire.common.errors import AnnounceFailed, AnnounceSequenceError
from torrentwire.common.stats import StatsSnapshot
from torrentwire.tracker.response import AnnounceResult, decode_announce_response

logger = logging.getLogger(__name__)


class AnnounceEvent(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    STOPPED = "stopped"
    NONE = "none"  # periodic announce, sent without an event parameter


class AnnounceRequest:
    """The fields of an announce URL, as recovered by parse_announce_url."""

    __slots__ = (
        "base_url",
        "info_hash",
        "peer_id",
        "port",
        "uploaded",
        "downloaded",
        "left",
        "corrupt",
        "event",
        "compact",
        "tracker_id",
    )

    def __init__(
        self,
        base_url: str,
        info_hash: bytes,
        peer_id: bytes,
        port: int,
        uploaded: int,
        downloaded: int,
        left: int,
        corrupt: int,
        event: AnnounceEvent,
        compact: bool,
        tracker_id: bytes | None = None,
    ):
        self.base_url = base_url
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.port = port
        self.uploaded = uploaded
        self.downloaded = downloaded
        self.left = left
        self.corrupt = corrupt
        self.event = event
        self.compact = compact
        self.tracker_id = tracker_id

    @property
    def stats(self) -> StatsSnapshot:
        return StatsSnapshot(self.uploaded, self.downloaded, self.left, self.corrupt)


_ANNOUNCE_KEYS = {
    "info_hash",
    "peer_id",
    "port",
    "uploaded",
    "downloaded",
    "left",
    "corrupt",
    "event",
    "compact",
    "trackerid",
}


def build_announce_url(
    announce_url: str,
    info_hash: bytes,
    peer_id: bytes,
    port: int,
    stats: StatsSnapshot,
    event: AnnounceEvent = AnnounceEvent.NONE,
    compact: bool = True,
    tracker_id: bytes | None = None,
) -> str:
    """
    Build the GET URL for an announce.

    info_hash and peer_id are opaque bytes: quote() escapes every byte
    outside the unreserved set, printable or not.
    """
    params = {
        "info_hash": info_hash,
        "peer_id": peer_id,
        "port": port,
        "uploaded": stats.uploaded,
        "downloaded": stats.downloaded,
        "left": stats.left,
        "corrupt": stats.corrupt,
        "compact": 1 if compact else 0,
    }
    if event is not AnnounceEvent.NONE:
        params["event"] = event.value
    if tracker_id is not None:
        params["trackerid"] = tracker_id

    separator = "&" if "?" in announce_url else "?"
    return f"{announce_url}{separator}{urlencode(params, quote_via=quote)}"


def parse_announce_url(url: str) -> AnnounceRequest:
    parts = urlsplit(url)
    # latin-1 maps every percent-decoded byte to one code point and back
    fields = dict(parse_qsl(parts.query, keep_blank_values=True, encoding="latin-1"))
    base_query = "&".join(
        pair
        for pair in parts.query.split("&")
        if pair and pair.partition("=")[0] not in _ANNOUNCE_KEYS
    )
    base_url = parts._replace(query=base_query).geturl()

    try:
        tracker_id = fields.get("trackerid")
        return AnnounceRequest(
            base_url=base_url,
            info_hash=fields["info_hash"].encode("latin-1"),
            peer_id=fields["peer_id"].encode("latin-1"),
            port=int(fields["port"]),
            uploaded=int(fields["uploaded"]),
            downloaded=int(fields["downloaded"]),
            left=int(fields["left"]),
            corrupt=int(fields.get("corrupt", 0)),
            event=AnnounceEvent(fields.get("event") or AnnounceEvent.NONE.value),
            compact=fields.get("compact", "0") == "1",
            tracker_id=tracker_id.encode("latin-1") if tracker_id is not None else None,
        )
    except KeyError as e:
        raise ValueError(f"Announce URL is missing {e.args[0]}") from e


class TrackerClient:
    """
    HTTP announce client for one torrent.

    Tracks the announce event sequence: started once, then periodic
    announces, completed at most once (never when the download was already
    complete when started), and stopped last. State only advances when the
    tracker accepted the announce, so a failed started is sent again.
    """

    __slots__ = (
        "announce_url",
        "info_hash",
        "peer_id",
        "port",
        "config",
        "transport",
        "interval",
        "min_interval",
        "tracker_id",
        "complete",
        "incomplete",
        "started",
        "completed",
        "stopped",
        "complete_at_start",
    )

    def __init__(
        self,
        announce_url: str,
        info_hash: bytes,
        peer_id: bytes,
        port: int,
        config: ClientConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if len(info_hash) != 20:
            raise ValueError(f"info_hash must be 20 bytes, got {len(info_hash)}")
        if len(peer_id) != 20:
            raise ValueError(f"peer_id must be 20 bytes, got {len(peer_id)}")
        self.announce_url = announce_url
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.port = port
        self.config = config or ClientConfig()
        self.transport = transport
        self.interval = None
        self.min_interval = None
        self.tracker_id = None
        self.complete = None
        self.incomplete = None
        self.started = False
        self.completed = False
        self.stopped = False
        self.complete_at_start = False

    def build_url(self, stats: StatsSnapshot, event: AnnounceEvent) -> str:
        return build_announce_url(
            self.announce_url,
            self.info_hash,
            self.peer_id,
            self.port,
            stats,
            event,
            compact=self.config.compact,
            tracker_id=self.tracker_id,
        )

    def next_event(self, stats: StatsSnapshot) -> AnnounceEvent:
        if not self.started:
            return AnnounceEvent.STARTED
        if stats.left == 0 and not self.completed and not self.complete_at_start:
            return AnnounceEvent.COMPLETED
        return AnnounceEvent.NONE

    def next_interval(self) -> int:
        interval = self.config.default_interval
        if self.interval is not None and self.interval > 0:
            interval = self.interval
        if self.min_interval is not None and self.min_interval > 0:
            interval = max(interval, self.min_interval)
        return interval

    def _check_sequence(self, event: AnnounceEvent) -> None:
        if self.stopped:
            raise AnnounceSequenceError(f"Cannot announce {event.value} after stopped")
        if event is AnnounceEvent.STARTED and self.started:
            raise AnnounceSequenceError("started was already announced")
        if event in (AnnounceEvent.NONE, AnnounceEvent.COMPLETED) and not self.started:
            raise AnnounceSequenceError(f"Cannot announce {event.value} before started")
        if event is AnnounceEvent.COMPLETED and (self.completed or self.complete_at_start):
            raise AnnounceSequenceError(
                "completed must be sent once, and only for a download that finished"
            )

    async def announce(
        self, stats: StatsSnapshot, event: AnnounceEvent = AnnounceEvent.NONE
    ) -> AnnounceResult:
        self._check_sequence(event)

        scheme = urlsplit(self.announce_url).scheme
        if scheme not in {"http", "https"}:
            raise AnnounceFailed(
                f"Unsupported tracker protocol: {scheme}", {"url": self.announce_url}
            )

        url = self.build_url(stats, event)
        logger.info(f"Announcing {event.value} to {self.announce_url}")
        logger.debug(f"GET {url}")
        headers = {
            "User-Agent": self.config.user_agent,
            "Accept-Encoding": "gzip",
            "Connection": "close",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.config.tracker_timeout, transport=self.transport
            ) as client:
                response = await client.get(url, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise AnnounceFailed(
                f"Announce to {self.announce_url} failed: {e}", {"event": event.value}
            ) from e

        result = decode_announce_response(response.content)
        self._record(result, event, stats)
        logger.info(
            f"Tracker returned {len(result.peers)} peers "
            f"(interval={result.interval}, min_interval={result.min_interval})"
        )
        return result

    def _record(
        self, result: AnnounceResult, event: AnnounceEvent, stats: StatsSnapshot
    ) -> None:
        if result.interval is not None:
            self.interval = result.interval
        if result.min_interval is not None:
            self.min_interval = result.min_interval
        if result.tracker_id is not None:
            self.tracker_id = result.tracker_id
        self.complete = result.complete
        self.incomplete = result.incomplete

        if event is AnnounceEvent.STARTED:
            self.started = True
            self.complete_at_start = stats.left == 0
        elif event is AnnounceEvent.COMPLETED:
            self.completed = True
        elif event is AnnounceEvent.STOPPED:
            self.stopped = True

    async def send_started(self, stats: StatsSnapshot) -> AnnounceResult:
        return await self.announce(stats, AnnounceEvent.STARTED)

    async def send_completed(self, stats: StatsSnapshot) -> AnnounceResult | None:
        if self.complete_at_start or self.completed:
            logger.info("Not announcing completed: download was complete at start or already announced")
            return None
        return await self.announce(stats, AnnounceEvent.COMPLETED)

    async def send_stopped(self, stats: StatsSnapshot) -> AnnounceResult:
        return await self.announce(stats, AnnounceEvent.STOPPED)

    async def update(self, stats: StatsSnapshot) -> AnnounceResult:
        return await self.announce(stats, AnnounceEvent.NONE)
