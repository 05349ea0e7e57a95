"""
LogWarden Log Source

Incremental, non-blocking reader for one watched log path with rotation,
truncation and flood handling.
"""

import os
import time
from typing import BinaryIO, Callable, List, Optional

from logwarden.modules.errors import FloodDetected, LogNotFound, LogUnreadable
from logwarden.modules.logging_utils import get_logger

logger = get_logger("log_source")


class LogSource:
    """
    Tail one log file.

    Only complete lines are returned; a trailing partial line stays in the
    file and is read again once its newline arrives.
    """

    def __init__(
        self,
        path: str,
        flood_threshold: int = 0,
        flood_interval: int = 60,
        clock: Callable[[], float] = time.time
    ):
        self.path = path
        self.flood_threshold = flood_threshold
        self.flood_interval = flood_interval
        self.clock = clock

        self._handle: Optional[BinaryIO] = None
        self.inode: Optional[int] = None
        self.offset = 0
        self.line_count = 0
        self.window_start = clock()

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def open(self, from_start: bool = False):
        """
        Open the path, at offset 0 or at the current end of file.

        Raises:
            LogNotFound: if the path does not exist
            LogUnreadable: if the path exists but cannot be opened
        """
        self.close()
        try:
            handle = open(self.path, "rb")
        except FileNotFoundError:
            self.inode = None
            raise LogNotFound(self.path)
        except OSError as e:
            if not from_start and self.inode is None:
                self._remember_end()
            raise LogUnreadable(self.path, e)

        stat_info = os.fstat(handle.fileno())
        self._handle = handle
        self.inode = stat_info.st_ino
        self.offset = 0 if from_start else stat_info.st_size
        self._handle.seek(self.offset)
        self._reset_rate()
        logger.debug("Opened log source", path=self.path, offset=self.offset)

    def _remember_end(self):
        # Reading starts at the current end once the file becomes readable
        try:
            stat_info = os.stat(self.path)
        except OSError as e:
            logger.debug("Cannot stat unreadable log", path=self.path, error=str(e))
            return
        self.inode = stat_info.st_ino
        self.offset = stat_info.st_size

    def _reopen(self):
        inode, offset = self.inode, self.offset
        self.open(from_start=True)
        # Same file after a read failure: resume where reading stopped
        if inode is not None and self.inode == inode and offset <= os.fstat(self._handle.fileno()).st_size:
            self.offset = offset
            self._handle.seek(offset)

    def close(self):
        if self._handle is not None:
            self._handle.close()
        self._handle = None

    def _reset_rate(self):
        self.line_count = 0
        self.window_start = self.clock()

    def _check_rotation(self):
        try:
            stat_info = os.stat(self.path)
        except FileNotFoundError:
            self.close()
            self.inode = None
            raise LogNotFound(self.path)
        except OSError as e:
            self.close()
            raise LogUnreadable(self.path, e)

        if stat_info.st_ino != self.inode:
            logger.info("Log rotation detected", path=self.path)
            self.open(from_start=True)
            return

        if stat_info.st_size < self.offset:
            logger.info("Log truncation detected", path=self.path)
            self.offset = 0
            self._reset_rate()

    def read_new(self) -> List[str]:
        """
        Return the complete lines appended since the last read.

        Raises:
            LogNotFound: if the path has vanished
            LogUnreadable: if the path can no longer be read
            FloodDetected: if more lines than the flood threshold arrived
                within one flood interval
        """
        if self._handle is None:
            # First sight of a file that was missing: read it from the top
            self._reopen()
        else:
            self._check_rotation()

        try:
            self._handle.seek(self.offset)
            data = self._handle.read()
        except OSError as e:
            self.close()
            raise LogUnreadable(self.path, e)
        if not data:
            return []

        end = data.rfind(b"\n")
        if end < 0:
            return []

        complete = data[:end]
        self.offset += end + 1
        # Records end at "\n" only; other line breaks stay inside the record
        lines = [raw.decode("utf-8", errors="replace").rstrip("\r") for raw in complete.split(b"\n")]

        now = self.clock()
        if now - self.window_start >= self.flood_interval:
            self.window_start = now
            self.line_count = 0
        self.line_count += len(lines)

        if self.flood_threshold and self.line_count > self.flood_threshold:
            raise FloodDetected(self.path, self.line_count, self.flood_threshold, self.flood_interval)

        return lines

    def recover_from_flood(self):
        """Skip everything written so far and start counting again."""
        self.open(from_start=False)
        logger.warning("Log source reopened at end of file after flood", path=self.path, offset=self.offset)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self) -> str:
        return f"LogSource({self.path!r}, offset={self.offset})"
