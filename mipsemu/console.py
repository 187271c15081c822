"""Simulated serial console: a keyboard for input and a display for output.

Both halves are backed by host files.  The device is asynchronous: a
character written with :meth:`Console.put_char` completes later, when the
write-done handler is called, and arriving characters are announced by
the read-available handler.
"""

from __future__ import annotations

from typing import Callable

from . import sysdep
from .interrupt import Interrupt, IntType, MachineStatus
from .stats import CONSOLE_TIME

STDIN_FD = 0
STDOUT_FD = 1

# How long to wait on the keyboard when there is nothing else to do,
# so that other simulated machines get a chance to run.
IDLE_POLL_SECONDS = 0.02


def _noop() -> None:
    pass


class Console:
    """A full-duplex character device driven by simulated interrupts.

    ``read_file`` simulates the keyboard (standard input if None) and
    ``write_file`` the display (standard output if None).  ``read_avail``
    is called when a character has arrived; ``write_done`` when an output
    character has been sent and the next one may be written.
    """

    def __init__(
        self,
        interrupt: Interrupt,
        read_file: str | None = None,
        write_file: str | None = None,
        read_avail: Callable[[], None] | None = None,
        write_done: Callable[[], None] | None = None,
    ) -> None:
        self.interrupt = interrupt
        if read_file is None:
            self._read_fd = STDIN_FD
        else:
            self._read_fd = sysdep.open_for_read_write(read_file, True)
        try:
            if write_file is None:
                self._write_fd = STDOUT_FD
            else:
                self._write_fd = sysdep.open_for_write(write_file)
        except OSError:
            if self._read_fd != STDIN_FD:
                sysdep.close(self._read_fd)
            raise
        self._read_handler = read_avail if read_avail is not None else _noop
        self._write_handler = write_done if write_done is not None else _noop
        self.put_busy = False
        self._incoming: str | None = None
        self._closed = False

        self.interrupt.schedule(
            self.check_char_avail, CONSOLE_TIME, IntType.CONSOLE_READ
        )

    def __enter__(self) -> "Console":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the host files backing the console."""
        if self._closed:
            return
        self._closed = True
        if self._read_fd != STDIN_FD:
            sysdep.close(self._read_fd)
        if self._write_fd != STDOUT_FD:
            sysdep.close(self._write_fd)

    def check_char_avail(self) -> None:
        """Poll the keyboard and buffer one character if there is room."""
        self.interrupt.schedule(
            self.check_char_avail, CONSOLE_TIME, IntType.CONSOLE_READ
        )
        if self._incoming is not None:
            return
        timeout = (
            IDLE_POLL_SECONDS
            if self.interrupt.status is MachineStatus.IDLE
            else 0.0
        )
        if not sysdep.poll_file(self._read_fd, timeout):
            return
        raw = sysdep.read_exact(self._read_fd, 1)
        self._incoming = raw.decode("latin-1")
        self.interrupt.stats.num_console_chars_read += 1
        self._read_handler()

    def write_done(self) -> None:
        """Mark the pending output as complete and notify the kernel."""
        self.put_busy = False
        self.interrupt.stats.num_console_chars_written += 1
        self._write_handler()

    def get_char(self) -> str | None:
        """Return the buffered input character, or None if there is none."""
        ch = self._incoming
        self._incoming = None
        return ch

    def put_char(self, ch: str) -> None:
        """Write one character to the display; completion is signalled later."""
        if len(ch) != 1:
            raise ValueError("put_char takes exactly one character")
        if self.put_busy:
            raise RuntimeError("a character is already being written")
        sysdep.write_all(self._write_fd, ch.encode("latin-1"))
        self.put_busy = True
        self.interrupt.schedule(
            self.write_done, CONSOLE_TIME, IntType.CONSOLE_WRITE
        )