import hashlib
import math
import bencodepy
from pathlib import Path
from torrentwire.torrent.metadata import TorrentFile, TorrentMetadata
from torrentwire.common.errors import MalformedInfo, MalformedInput, MissingInfoField
import logging

logger = logging.getLogger(__name__)

HASH_LENGTH = 20


def parse_torrent_file(path: Path) -> TorrentMetadata:
    logger.info(f"Parsing torrent file: {path}")
    with Path(path).open("rb") as f:
        return parse_torrent(f.read())


def parse_torrent(raw: bytes) -> TorrentMetadata:
    try:
        metainfo = bencodepy.decode(raw)
    except (bencodepy.BencodeDecodeError, ValueError) as e:
        raise MalformedInput(f"Torrent data is not valid bencode: {e}") from e

    if not isinstance(metainfo, dict):
        raise MalformedInput(
            f"Top level of torrent data must be a dictionary, got {type(metainfo).__name__}"
        )
    if b"info" not in metainfo:
        raise MissingInfoField("Torrent data has no info dictionary")

    info_hash = compute_info_hash(raw)
    info = metainfo[b"info"]
    if not isinstance(info, dict):
        raise MalformedInfo("info must be a dictionary")

    piece_length = info.get(b"piece length")
    if not isinstance(piece_length, int) or piece_length <= 0:
        raise MalformedInfo(f"Invalid piece length: {piece_length!r}")

    pieces_raw = info.get(b"pieces")
    if not isinstance(pieces_raw, bytes) or len(pieces_raw) % HASH_LENGTH:
        raise MalformedInfo(
            "pieces must be a byte string whose length is a multiple of 20",
            {"length": len(pieces_raw) if isinstance(pieces_raw, bytes) else None},
        )
    pieces = [
        pieces_raw[i : i + HASH_LENGTH] for i in range(0, len(pieces_raw), HASH_LENGTH)
    ]

    name = _text(info.get(b"name"), "name")

    length = None
    files = []
    if b"files" in info:
        files = _parse_files(info[b"files"])
        logger.info(f"Parsed multi-file torrent: {name} ({len(files)} files)")
    elif b"length" in info:
        length = info[b"length"]
        if not isinstance(length, int) or length < 0:
            raise MalformedInfo(f"Invalid length: {length!r}")
        files.append(TorrentFile([name], length, 0))
        logger.info(f"Parsed single-file torrent: {name} ({length} bytes)")
    else:
        raise MalformedInfo("info has neither length nor files")

    total_length = sum(f.length for f in files)
    expected_pieces = math.ceil(total_length / piece_length)
    if len(pieces) != expected_pieces:
        raise MalformedInfo(
            f"Expected {expected_pieces} piece hashes, found {len(pieces)}",
            {"total_length": total_length, "piece_length": piece_length},
        )

    announce = metainfo.get(b"announce", b"")
    return TorrentMetadata(
        announce=_text(announce, "announce") if announce else "",
        announce_list=_parse_announce_list(metainfo.get(b"announce-list")),
        piece_length=piece_length,
        pieces=pieces,
        info_hash=info_hash,
        name=name,
        length=length,
        files=files,
        private=info.get(b"private") == 1,
        comment=_optional_text(metainfo.get(b"comment")),
        created_by=_optional_text(metainfo.get(b"created by")),
        creation_date=metainfo.get(b"creation date")
        if isinstance(metainfo.get(b"creation date"), int)
        else None,
        encoding=_optional_text(metainfo.get(b"encoding")),
    )


def compute_info_hash(raw: bytes) -> bytes:
    """SHA-1 of the "info" value exactly as it appears in `raw`."""
    span = info_span(raw)
    if span is None:
        raise MissingInfoField("Torrent data has no info dictionary")
    start, end = span
    return hashlib.sha1(raw[start:end]).digest()


def info_span(raw: bytes) -> tuple[int, int] | None:
    """
    Locate the encoded "info" value of a top-level bencoded dictionary.

    Returns the (start, end) byte offsets of the value, or None when the
    dictionary has no "info" key. The walk only measures tokens; decoding is
    left to bencodepy.
    """
    if raw[:1] != b"d":
        raise MalformedInput("Top level of torrent data must be a dictionary")
    try:
        pos = 1
        while raw[pos : pos + 1] != b"e":
            if not raw[pos : pos + 1].isdigit():
                raise MalformedInput(f"Dictionary key at offset {pos} is not a string")
            key_end = _skip_value(raw, pos)
            key = raw[raw.index(b":", pos) + 1 : key_end]
            value_end = _skip_value(raw, key_end)
            if key == b"info":
                return key_end, value_end
            pos = value_end
    except (ValueError, IndexError) as e:
        raise MalformedInput(f"Truncated or invalid bencode: {e}") from e
    return None


def _skip_value(raw: bytes, pos: int) -> int:
    token = raw[pos : pos + 1]
    if token == b"i":
        return raw.index(b"e", pos) + 1
    if token in (b"l", b"d"):
        pos += 1
        while raw[pos : pos + 1] != b"e":
            if pos >= len(raw):
                raise ValueError("unterminated container")
            pos = _skip_value(raw, pos)
        return pos + 1
    if token.isdigit():
        colon = raw.index(b":", pos)
        end = colon + 1 + int(raw[pos:colon])
        if end > len(raw):
            raise ValueError(f"string at offset {pos} runs past end of data")
        return end
    raise ValueError(f"unexpected token {token!r} at offset {pos}")


def _parse_files(entries) -> list[TorrentFile]:
    if not isinstance(entries, list) or not entries:
        raise MalformedInfo("files must be a non-empty list")

    files = []
    offset = 0
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise MalformedInfo(f"files[{index}] is not a dictionary")
        length = entry.get(b"length")
        if not isinstance(length, int) or length < 0:
            raise MalformedInfo(f"files[{index}] has invalid length: {length!r}")
        segments = entry.get(b"path")
        if not isinstance(segments, list) or not segments:
            raise MalformedInfo(f"files[{index}] has no path")
        path = [_text(seg, f"files[{index}].path") for seg in segments]
        files.append(TorrentFile(path, length, offset))
        offset += length
    return files


def _parse_announce_list(tiers) -> list[list[str]]:
    if not isinstance(tiers, list):
        return []
    parsed = []
    for tier in tiers:
        if not isinstance(tier, list):
            continue
        urls = [url.decode("utf-8", "replace") for url in tier if isinstance(url, bytes)]
        if urls:
            parsed.append(urls)
    return parsed


def _text(value, field: str) -> str:
    if not isinstance(value, bytes):
        raise MalformedInfo(f"{field} must be a byte string")
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedInfo(f"{field} is not valid UTF-8") from e


def _optional_text(value) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return None
