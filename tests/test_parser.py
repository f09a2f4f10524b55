import hashlib

import bencodepy
import pytest

from conftest import ANNOUNCE_URL, make_info, make_torrent
from torrentwire.common.errors import MalformedInfo, MalformedInput, MissingInfoField
from torrentwire.torrent.parser import (
    compute_info_hash,
    info_span,
    parse_torrent,
    parse_torrent_file,
)

pytestmark = pytest.mark.metadata


def bstr(value: bytes) -> bytes:
    return str(len(value)).encode() + b":" + value


class TestParseTorrent:
    def test_single_file(self, torrent_bytes):
        metadata = parse_torrent(torrent_bytes)

        assert metadata.announce == ANNOUNCE_URL
        assert metadata.name == "sample.bin"
        assert metadata.piece_length == 16384
        assert metadata.length == 40000
        assert metadata.total_length == 40000
        assert not metadata.is_multi_file
        assert len(metadata.pieces) == 3
        assert all(len(p) == 20 for p in metadata.pieces)
        assert len(metadata.files) == 1
        assert metadata.files[0].path == ["sample.bin"]

    def test_piece_size_of_last_piece(self, torrent_bytes):
        metadata = parse_torrent(torrent_bytes)

        assert metadata.piece_size(0) == 16384
        assert metadata.piece_size(2) == 40000 - 2 * 16384
        with pytest.raises(IndexError):
            metadata.piece_size(3)

    def test_multi_file(self):
        files = [
            {b"length": 10000, b"path": [b"dir", b"a.txt"]},
            {b"length": 22768, b"path": [b"b.txt"]},
        ]
        metadata = parse_torrent(
            make_torrent(make_info(total_length=32768, name=b"bundle", files=files))
        )

        assert metadata.is_multi_file
        assert metadata.length is None
        assert metadata.total_length == 32768
        assert [f.path for f in metadata.files] == [["dir", "a.txt"], ["b.txt"]]
        assert [f.offset for f in metadata.files] == [0, 10000]

    def test_optional_fields(self):
        info = make_info()
        info[b"private"] = 1
        raw = make_torrent(
            info,
            extra={
                b"announce-list": [[b"http://a.test/announce"], [b"http://b.test/announce"]],
                b"comment": b"hello",
                b"created by": b"mktorrent 1.1",
                b"creation date": 1700000000,
            },
        )
        metadata = parse_torrent(raw)

        assert metadata.private
        assert metadata.comment == "hello"
        assert metadata.created_by == "mktorrent 1.1"
        assert metadata.creation_date == 1700000000
        assert metadata.announce_list == [["http://a.test/announce"], ["http://b.test/announce"]]
        assert metadata.trackers[0] == ANNOUNCE_URL
        assert len(metadata.trackers) == 3
        assert metadata.tracker_url == ANNOUNCE_URL

    def test_tracker_url_from_announce_list_only(self):
        raw = make_torrent(announce=None, extra={b"announce-list": [[b"http://a.test/announce"]]})
        metadata = parse_torrent(raw)

        assert metadata.announce == ""
        assert metadata.tracker_url == "http://a.test/announce"
        assert parse_torrent(make_torrent(announce=None)).tracker_url == ""

    def test_metadata_is_read_only(self, torrent_bytes):
        metadata = parse_torrent(torrent_bytes)
        with pytest.raises(AttributeError):
            metadata.name = "other"

    def test_parse_torrent_file(self, tmp_path, torrent_bytes):
        path = tmp_path / "sample.torrent"
        path.write_bytes(torrent_bytes)

        assert parse_torrent_file(path).info_hash == parse_torrent(torrent_bytes).info_hash


class TestInfoHash:
    def test_is_sha1_of_info(self, torrent_bytes):
        expected = hashlib.sha1(bencodepy.encode(make_info())).digest()
        metadata = parse_torrent(torrent_bytes)

        assert len(metadata.info_hash) == 20
        assert metadata.info_hash == expected

    def test_deterministic(self, torrent_bytes):
        assert parse_torrent(torrent_bytes).info_hash == parse_torrent(torrent_bytes).info_hash

    def test_span_covers_exact_info_bytes(self, torrent_bytes):
        start, end = info_span(torrent_bytes)
        encoded_info = bencodepy.encode(make_info())

        assert torrent_bytes[start:end] == encoded_info
        assert torrent_bytes[start - 6 : start] == b"4:info"

    def test_span_skips_info_lookalike_in_strings(self):
        # "4:info" inside the comment must not be mistaken for the key
        raw = (
            b"d8:announce" + bstr(b"http://t/a")
            + b"7:comment" + bstr(b"4:infod4:fakei1ee")
            + b"4:info" + bencodepy.encode(make_info())
            + b"e"
        )
        start, end = info_span(raw)
        assert raw[start:end] == bencodepy.encode(make_info())

    def test_original_span_differs_from_reencoded_info(self):
        # keys deliberately out of canonical (sorted) order
        pieces = hashlib.sha1(b"only piece").digest()
        info_raw = (
            b"d"
            + b"4:name" + bstr(b"unsorted.bin")
            + b"12:piece lengthi16384e"
            + b"6:pieces" + bstr(pieces)
            + b"6:lengthi1000e"
            + b"e"
        )
        raw = b"d8:announce" + bstr(b"http://t/a") + b"4:info" + info_raw + b"e"

        metadata = parse_torrent(raw)
        reencoded = bencodepy.encode(bencodepy.decode(raw)[b"info"])

        assert reencoded != info_raw
        assert metadata.info_hash == hashlib.sha1(info_raw).digest()
        assert metadata.info_hash != hashlib.sha1(reencoded).digest()

    def test_compute_info_hash_without_info(self):
        with pytest.raises(MissingInfoField):
            compute_info_hash(b"d8:announce3:urle")


class TestMalformed:
    @pytest.mark.parametrize("raw", [b"", b"not bencode", b"d4:info", b"i42e", b"l4:infoe"])
    def test_malformed_input(self, raw):
        with pytest.raises(MalformedInput):
            parse_torrent(raw)

    def test_missing_info(self):
        with pytest.raises(MissingInfoField):
            parse_torrent(bencodepy.encode({b"announce": b"http://t/a"}))

    def test_pieces_not_multiple_of_20(self):
        info = make_info()
        info[b"pieces"] = info[b"pieces"][:-5]
        with pytest.raises(MalformedInfo):
            parse_torrent(make_torrent(info))

    def test_neither_length_nor_files(self):
        info = make_info()
        del info[b"length"]
        with pytest.raises(MalformedInfo):
            parse_torrent(make_torrent(info))

    def test_piece_count_inconsistent_with_length(self):
        info = make_info()
        info[b"length"] = 100000
        with pytest.raises(MalformedInfo):
            parse_torrent(make_torrent(info))

    def test_info_not_a_dictionary(self):
        with pytest.raises(MalformedInfo):
            parse_torrent(bencodepy.encode({b"info": [1, 2]}))

    def test_invalid_piece_length(self):
        info = make_info()
        info[b"piece length"] = 0
        with pytest.raises(MalformedInfo):
            parse_torrent(make_torrent(info))

    def test_file_without_path(self):
        info = make_info(total_length=100, files=[{b"length": 100}])
        with pytest.raises(MalformedInfo):
            parse_torrent(make_torrent(info))
