"""Simulated physical disk backed by a host file.

The disk has a single surface of tracks, each holding the same number of
fixed-size sectors.  Requests complete immediately on the host file, but
the caller is notified through a simulated interrupt after a latency that
models seeking, rotation and a track buffer.
"""

from __future__ import annotations

import logging
import os
import struct
from typing import Callable

from . import sysdep
from .interrupt import Interrupt, IntType
from .stats import ROTATION_TIME, SEEK_TIME

logger = logging.getLogger(__name__)

SECTOR_SIZE = 128
SECTORS_PER_TRACK = 32
NUM_TRACKS = 32
NUM_SECTORS = SECTORS_PER_TRACK * NUM_TRACKS

MAGIC_NUMBER = 0x456789AB
_MAGIC = struct.Struct("<I")
MAGIC_SIZE = _MAGIC.size
DISK_SIZE = MAGIC_SIZE + NUM_SECTORS * SECTOR_SIZE


class DiskError(Exception):
    """Raised for misuse of the disk or a file that is not a disk image."""


def _modulo_diff(to: int, frm: int) -> int:
    """Sectors of rotational delay from position ``frm`` to sector ``to``."""
    to_offset = to % SECTORS_PER_TRACK
    from_offset = frm % SECTORS_PER_TRACK
    return ((to_offset - from_offset) + SECTORS_PER_TRACK) % SECTORS_PER_TRACK


class Disk:
    """A disk accepting one sector read or write request at a time.

    ``handler`` is called (through a simulated interrupt) each time a
    request completes.
    """

    def __init__(
        self,
        interrupt: Interrupt,
        name: str,
        handler: Callable[[], None] | None = None,
    ) -> None:
        self.interrupt = interrupt
        self.name = name
        self._handler = handler if handler is not None else (lambda: None)
        self.last_sector = 0
        self.buffer_init = 0
        self.active = False
        self._closed = False

        fd = sysdep.open_for_read_write(name, False)
        if fd is not None:
            try:
                raw = sysdep.read_exact(fd, MAGIC_SIZE)
            except EOFError:
                sysdep.close(fd)
                raise DiskError(f"{name} is too short to be a disk image")
            (magic,) = _MAGIC.unpack(raw)
            if magic != MAGIC_NUMBER:
                sysdep.close(fd)
                raise DiskError(f"{name} is not a disk image")
        else:
            fd = sysdep.open_for_write(name)
            sysdep.write_all(fd, _MAGIC.pack(MAGIC_NUMBER))
            # Write at the end so later reads never hit end of file.
            sysdep.seek(fd, DISK_SIZE - 4, os.SEEK_SET)
            sysdep.write_all(fd, bytes(4))
        self._fd = fd

    def __enter__(self) -> "Disk":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the host file backing the disk."""
        if not self._closed:
            self._closed = True
            sysdep.close(self._fd)

    @property
    def _now(self) -> int:
        return self.interrupt.stats.total_ticks

    def _check_request(self, sector_number: int) -> None:
        if self.active:
            raise DiskError("only one disk request may be in progress at a time")
        if not 0 <= sector_number < NUM_SECTORS:
            raise ValueError(f"sector {sector_number} out of range")

    def _seek_to(self, sector_number: int) -> None:
        sysdep.seek(self._fd, SECTOR_SIZE * sector_number + MAGIC_SIZE, os.SEEK_SET)

    @staticmethod
    def _log_sector(writing: bool, sector: int, data: bytes) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            words = struct.unpack(f"<{SECTOR_SIZE // 4}I", data)
            logger.debug(
                "%s sector: %d\n%s",
                "Writing" if writing else "Reading",
                sector,
                " ".join(f"{w:x}" for w in words),
            )

    def read_request(self, sector_number: int) -> bytes:
        """Read one sector; completion is signalled by a later interrupt."""
        self._check_request(sector_number)
        ticks = self.compute_latency(sector_number, False)
        logger.debug("Reading from sector %d", sector_number)
        self._seek_to(sector_number)
        data = sysdep.read_exact(self._fd, SECTOR_SIZE)
        self._log_sector(False, sector_number, data)
        self.active = True
        self._update_last(sector_number)
        self.interrupt.stats.num_disk_reads += 1
        self.interrupt.schedule(self.handle_interrupt, ticks, IntType.DISK)
        return data

    def write_request(self, sector_number: int, data: bytes) -> None:
        """Write one whole sector; completion is signalled by a later interrupt."""
        self._check_request(sector_number)
        if len(data) != SECTOR_SIZE:
            raise ValueError(f"a sector write takes exactly {SECTOR_SIZE} bytes")
        ticks = self.compute_latency(sector_number, True)
        logger.debug("Writing to sector %d", sector_number)
        self._seek_to(sector_number)
        sysdep.write_all(self._fd, bytes(data))
        self._log_sector(True, sector_number, bytes(data))
        self.active = True
        self._update_last(sector_number)
        self.interrupt.stats.num_disk_writes += 1
        self.interrupt.schedule(self.handle_interrupt, ticks, IntType.DISK)

    def handle_interrupt(self) -> None:
        """Mark the current request finished and notify the kernel."""
        self.active = False
        self._handler()

    def _time_to_seek(self, new_sector: int) -> tuple[int, int]:
        """Return (seek time, rotation until the next sector boundary)."""
        new_track = new_sector // SECTORS_PER_TRACK
        old_track = self.last_sector // SECTORS_PER_TRACK
        seek = abs(new_track - old_track) * SEEK_TIME
        over = (self._now + seek) % ROTATION_TIME
        rotation = ROTATION_TIME - over if over > 0 else 0
        return seek, rotation

    def compute_latency(self, new_sector: int, writing: bool) -> int:
        """Ticks a request to ``new_sector`` would take from the head's position."""
        seek, rotation = self._time_to_seek(new_sector)
        time_after = self._now + seek + rotation

        if (
            not writing
            and seek == 0
            and (time_after - self.buffer_init) // ROTATION_TIME
            > _modulo_diff(new_sector, self.buffer_init // ROTATION_TIME)
        ):
            logger.debug("Request latency = %d", ROTATION_TIME)
            return ROTATION_TIME

        rotation += _modulo_diff(new_sector, time_after // ROTATION_TIME) * ROTATION_TIME
        latency = seek + rotation + ROTATION_TIME
        logger.debug("Request latency = %d", latency)
        return latency

    def _update_last(self, new_sector: int) -> None:
        seek, rotation = self._time_to_seek(new_sector)
        if seek != 0:
            self.buffer_init = self._now + seek + rotation
        self.last_sector = new_sector
        logger.debug(
            "Updating last sector = %d, %d", self.last_sector, self.buffer_init
        )