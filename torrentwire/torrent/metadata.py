class TorrentFile:
    __slots__ = ("path", "length", "offset")

    def __init__(self, path: list[str], length: int, offset: int):
        self.path = path
        self.length = length
        self.offset = offset

    def __repr__(self) -> str:
        return f"TorrentFile(path={self.path!r}, length={self.length}, offset={self.offset})"


class TorrentMetadata:
    """
    Parsed, read-only view of a .torrent file.

    `info_hash` is the SHA-1 of the "info" value exactly as it was encoded in
    the source bytes. `files` always holds at least one entry; a single-file
    torrent gets one entry named after the torrent and `length` is set.
    """

    __slots__ = (
        "announce",
        "announce_list",
        "piece_length",
        "pieces",
        "info_hash",
        "name",
        "length",
        "files",
        "total_length",
        "private",
        "comment",
        "created_by",
        "creation_date",
        "encoding",
        "_frozen",
    )

    def __init__(
        self,
        announce: str,
        piece_length: int,
        pieces: list[bytes],
        info_hash: bytes,
        name: str,
        files: list[TorrentFile],
        length: int | None = None,
        announce_list: list[list[str]] | None = None,
        private: bool = False,
        comment: str | None = None,
        created_by: str | None = None,
        creation_date: int | None = None,
        encoding: str | None = None,
    ):
        self.announce = announce
        self.announce_list = announce_list or []
        self.piece_length = piece_length
        self.pieces = tuple(pieces)
        self.info_hash = info_hash
        self.name = name
        self.length = length
        self.files = tuple(files)
        self.total_length = sum(f.length for f in files)
        self.private = private
        self.comment = comment
        self.created_by = created_by
        self.creation_date = creation_date
        self.encoding = encoding
        self._frozen = True

    def __setattr__(self, name, value):
        if getattr(self, "_frozen", False):
            raise AttributeError(f"TorrentMetadata is read-only ({name})")
        super().__setattr__(name, value)

    @property
    def is_multi_file(self) -> bool:
        return self.length is None

    @property
    def trackers(self) -> list[str]:
        # announce first, then the announce-list tiers in order (BEP 12)
        urls = [url for tier in self.announce_list for url in tier]
        if self.announce and self.announce not in urls:
            urls.insert(0, self.announce)
        return urls

    @property
    def tracker_url(self) -> str:
        """The tracker to announce to, or "" when the torrent names none."""
        trackers = self.trackers
        return trackers[0] if trackers else ""

    def piece_size(self, index: int) -> int:
        if not 0 <= index < len(self.pieces):
            raise IndexError(f"Piece index {index} out of range")
        if index == len(self.pieces) - 1:
            return self.total_length - index * self.piece_length
        return self.piece_length

    def __repr__(self) -> str:
        return (
            f"TorrentMetadata(name={self.name!r}, info_hash={self.info_hash.hex()}, "
            f"pieces={len(self.pieces)}, total_length={self.total_length})"
        )
