"""Simulated network interface between separate simulated machines.

Packets travel as fixed-size datagrams over local sockets, each machine
listening on a socket file named after its network address.  Delivery is
ordered but unreliable: packets may be dropped at random according to the
configured reliability.
"""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass
from typing import Callable, ClassVar

from . import sysdep
from .interrupt import Interrupt, IntType, MachineStatus
from .stats import NETWORK_TIME

logger = logging.getLogger(__name__)

_HEADER = struct.Struct("<iiI")

MAX_WIRE_SIZE = 64
MAX_PACKET_SIZE = MAX_WIRE_SIZE - _HEADER.size

# How long to wait for a packet when there is nothing else to do, so
# that the other simulated machines get a chance to run.
IDLE_POLL_SECONDS = 0.02


def socket_name(directory: str, addr: int) -> str:
    """Return the socket file name used by the machine at ``addr``."""
    return os.path.join(directory, f"SOCKET_{addr}")


@dataclass
class PacketHeader:
    """Header prepended to every packet on the wire."""

    to: int = 0
    from_: int = 0
    length: int = 0

    SIZE: ClassVar[int] = _HEADER.size

    def pack(self) -> bytes:
        """Return the header in its wire format."""
        return _HEADER.pack(self.to, self.from_, self.length)

    @classmethod
    def unpack(cls, raw: bytes) -> "PacketHeader":
        """Parse a header from the start of ``raw``."""
        if len(raw) < _HEADER.size:
            raise ValueError(
                f"a packet header needs {_HEADER.size} bytes, got {len(raw)}"
            )
        to, frm, length = _HEADER.unpack_from(raw)
        return cls(to, frm, length)


def _noop() -> None:
    pass


class Network:
    """A network device delivering fixed-size packets to other machines.

    ``read_avail`` is called when a packet has arrived and may be fetched
    with :meth:`receive`; ``write_done`` is called once the next packet may
    be sent, whether or not the previous one was dropped.
    """

    def __init__(
        self,
        interrupt: Interrupt,
        addr: int,
        reliability: float = 1.0,
        read_avail: Callable[[], None] | None = None,
        write_done: Callable[[], None] | None = None,
        directory: str = ".",
    ) -> None:
        self.interrupt = interrupt
        self.ident = addr
        self.chance_to_work = min(max(reliability, 0.0), 1.0)
        self.directory = directory
        self._read_handler = read_avail if read_avail is not None else _noop
        self._write_handler = write_done if write_done is not None else _noop
        self.send_busy = False
        self._in_hdr = PacketHeader()
        self._inbox = b""
        self._closed = False

        self.sock_name = socket_name(directory, addr)
        self._sock = sysdep.open_socket()
        try:
            sysdep.assign_name_to_socket(self._sock, self.sock_name)
        except OSError:
            sysdep.close_socket(self._sock)
            raise

        self.interrupt.schedule(
            self.check_pkt_avail, NETWORK_TIME, IntType.NETWORK_RECV
        )

    def __enter__(self) -> "Network":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the socket and remove its file name."""
        if self._closed:
            return
        self._closed = True
        sysdep.close_socket(self._sock)
        sysdep.deassign_name_to_socket(self.sock_name)

    def check_pkt_avail(self) -> None:
        """Poll for an incoming packet and buffer it if there is room."""
        self.interrupt.schedule(
            self.check_pkt_avail, NETWORK_TIME, IntType.NETWORK_RECV
        )
        if self._in_hdr.length != 0:
            return
        timeout = (
            IDLE_POLL_SECONDS
            if self.interrupt.status is MachineStatus.IDLE
            else 0.0
        )
        if not sysdep.poll_socket(self._sock, timeout):
            return

        buffer = sysdep.read_from_socket(self._sock, MAX_WIRE_SIZE)
        header = PacketHeader.unpack(buffer)
        if header.to != self.ident:
            raise ValueError(
                f"packet addressed to {header.to} arrived at {self.ident}"
            )
        if header.length > MAX_PACKET_SIZE:
            raise ValueError(f"packet length {header.length} is too large")
        self._in_hdr = header
        self._inbox = buffer[PacketHeader.SIZE:PacketHeader.SIZE + header.length]

        logger.debug(
            "Network received packet from %d, length %d",
            header.from_,
            header.length,
        )
        self.interrupt.stats.num_packets_recvd += 1
        self._read_handler()

    def send_done(self) -> None:
        """Mark the outgoing packet sent and notify the sender."""
        self.send_busy = False
        self.interrupt.stats.num_packets_sent += 1
        self._write_handler()

    def send(self, header: PacketHeader, data: bytes) -> None:
        """Send ``header.length`` bytes of ``data`` to machine ``header.to``.

        Returns immediately; the write-done handler is called later.
        """
        if self.send_busy:
            raise RuntimeError("a packet is already being sent")
        if not 0 < header.length <= MAX_PACKET_SIZE:
            raise ValueError(f"packet length {header.length} out of range")
        if header.from_ != self.ident:
            raise ValueError(
                f"packet from {header.from_} sent by machine {self.ident}"
            )
        if len(data) < header.length:
            raise ValueError("data is shorter than the header's length")
        logger.debug("Sending to addr %d, %d bytes", header.to, header.length)

        self.send_busy = True
        self.interrupt.schedule(self.send_done, NETWORK_TIME, IntType.NETWORK_SEND)

        if sysdep.random() % 100 >= self.chance_to_work * 100:
            logger.debug("packet to %d lost", header.to)
            return

        payload = header.pack() + bytes(data[: header.length])
        buffer = payload.ljust(MAX_WIRE_SIZE, b"\0")
        sysdep.send_to_socket(
            self._sock, buffer, socket_name(self.directory, header.to)
        )

    def receive(self) -> tuple[PacketHeader, bytes]:
        """Return the buffered packet's header and data.

        If no packet is waiting, the header's length is 0 and the data empty.
        """
        header = self._in_hdr
        data = self._inbox if header.length != 0 else b""
        self._in_hdr = PacketHeader()
        self._inbox = b""
        return header, data