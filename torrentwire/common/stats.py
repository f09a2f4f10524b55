import threading
from typing import NamedTuple


class StatsSnapshot(NamedTuple):
    uploaded: int
    downloaded: int
    left: int
    corrupt: int


class TransferStats:
    """
    Transfer counters shared by peer workers (writers) and the announce task
    (reader). Every access goes through the lock so an announce never sees a
    half-applied update.
    """

    __slots__ = ("_lock", "_uploaded", "_downloaded", "_left", "_corrupt")

    def __init__(self, left: int, uploaded: int = 0, downloaded: int = 0, corrupt: int = 0):
        for name, value in (
            ("left", left),
            ("uploaded", uploaded),
            ("downloaded", downloaded),
            ("corrupt", corrupt),
        ):
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")
        self._lock = threading.Lock()
        self._uploaded = uploaded
        self._downloaded = downloaded
        self._left = left
        self._corrupt = corrupt

    def add_uploaded(self, nbytes: int) -> None:
        _check_amount(nbytes)
        with self._lock:
            self._uploaded += nbytes

    def add_downloaded(self, nbytes: int) -> bool:
        """
        Count verified bytes: downloaded grows, left shrinks (never below 0).

        Returns True only for the call that brings left down to 0.
        """
        _check_amount(nbytes)
        with self._lock:
            was_incomplete = self._left > 0
            self._downloaded += nbytes
            self._left = max(0, self._left - nbytes)
            return was_incomplete and self._left == 0

    def add_corrupt(self, nbytes: int) -> None:
        _check_amount(nbytes)
        with self._lock:
            self._corrupt += nbytes

    def set_left(self, left: int) -> None:
        _check_amount(left)
        with self._lock:
            self._left = left

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                self._uploaded, self._downloaded, self._left, self._corrupt
            )

    @property
    def is_complete(self) -> bool:
        with self._lock:
            return self._left == 0


def _check_amount(nbytes: int) -> None:
    if nbytes < 0:
        raise ValueError(f"Byte count must be non-negative, got {nbytes}")
