"""Host operating-system services used by the device simulations."""

from __future__ import annotations

import os
import random as _random_module
import select
import signal
import socket
import time
from typing import Callable

RAND_MAX = 2**31 - 1

_rng = _random_module.Random(1)


def poll_file(fd: int, timeout: float = 0.0) -> bool:
    """Return True if ``fd`` has data ready to be read within ``timeout`` seconds."""
    readable, _, _ = select.select([fd], [], [], timeout)
    return bool(readable)


def open_for_write(name: str) -> int:
    """Open ``name`` for writing, creating or truncating it."""
    return os.open(name, os.O_RDWR | os.O_CREAT | os.O_TRUNC, 0o666)


def open_for_read_write(name: str, crash_on_error: bool) -> int | None:
    """Open an existing file for reading and writing.

    Returns None if the file cannot be opened, unless ``crash_on_error``
    is set, in which case the error is raised.
    """
    try:
        return os.open(name, os.O_RDWR)
    except OSError:
        if crash_on_error:
            raise
        return None


def read_exact(fd: int, n_bytes: int) -> bytes:
    """Read exactly ``n_bytes`` bytes; raise EOFError if fewer are available."""
    chunks = []
    remaining = n_bytes
    while remaining > 0:
        chunk = os.read(fd, remaining)
        if not chunk:
            raise EOFError(f"expected {n_bytes} bytes, got {n_bytes - remaining}")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_partial(fd: int, n_bytes: int) -> bytes:
    """Read up to ``n_bytes`` bytes, returning whatever is available."""
    return os.read(fd, n_bytes)


def write_all(fd: int, data: bytes) -> None:
    """Write all of ``data`` to ``fd``."""
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        if written <= 0:
            raise OSError(f"write to fd {fd} made no progress")
        view = view[written:]


def seek(fd: int, offset: int, whence: int = os.SEEK_SET) -> int:
    """Move the position within an open file and return the new position."""
    return os.lseek(fd, offset, whence)


def tell(fd: int) -> int:
    """Return the current position within an open file."""
    return os.lseek(fd, 0, os.SEEK_CUR)


def close(fd: int) -> None:
    """Close a file descriptor."""
    os.close(fd)


def unlink(name: str) -> bool:
    """Delete a file; return False if it did not exist."""
    try:
        os.unlink(name)
    except FileNotFoundError:
        return False
    return True


def open_socket() -> socket.socket:
    """Open a local datagram socket for inter-machine packets."""
    return socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)


def close_socket(sock: socket.socket) -> None:
    """Close a socket opened with :func:`open_socket`."""
    sock.close()


def assign_name_to_socket(sock: socket.socket, name: str) -> None:
    """Bind ``sock`` to the file name ``name``, replacing any stale file."""
    unlink(name)
    sock.bind(name)


def deassign_name_to_socket(name: str) -> None:
    """Remove the file name a socket was bound to."""
    unlink(name)


def poll_socket(sock: socket.socket, timeout: float = 0.0) -> bool:
    """Return True if a packet is waiting on ``sock``."""
    return poll_file(sock.fileno(), timeout)


def read_from_socket(sock: socket.socket, packet_size: int) -> bytes:
    """Receive one packet of exactly ``packet_size`` bytes."""
    data, _ = sock.recvfrom(packet_size)
    if len(data) != packet_size:
        raise OSError(f"expected packet of {packet_size} bytes, got {len(data)}")
    return data


def send_to_socket(sock: socket.socket, data: bytes, to_name: str) -> None:
    """Send one packet to the socket bound to ``to_name``."""
    sent = sock.sendto(data, to_name)
    if sent != len(data):
        raise OSError(f"sent {sent} of {len(data)} bytes")


def call_on_user_abort(func: Callable[[], None]):
    """Arrange for ``func`` to run on an interrupt from the keyboard.

    Returns the previously installed handler.
    """
    return signal.signal(signal.SIGINT, lambda signum, frame: func())


def delay(seconds: float) -> None:
    """Suspend the process for ``seconds`` seconds."""
    time.sleep(seconds)


def random_init(seed: int) -> None:
    """Seed the pseudo-random number generator."""
    _rng.seed(seed)


def random() -> int:
    """Return a pseudo-random integer between 0 and RAND_MAX."""
    return _rng.randint(0, RAND_MAX)