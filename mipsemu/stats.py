"""Performance counters kept by the simulated machine."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import TextIO

# Relative costs of operations, in ticks.
USER_TICK = 1        # advance for each user-level instruction
SYSTEM_TICK = 10     # advance each time interrupts are enabled
ROTATION_TIME = 500  # time the disk takes to rotate one sector
SEEK_TIME = 500      # time the disk takes to seek past one track
CONSOLE_TIME = 100   # time to read or write one character
NETWORK_TIME = 100   # time to send or receive one packet
TIMER_TICKS = 100    # average time between timer interrupts


@dataclass
class Statistics:
    """Counters describing how the simulation has spent its time."""

    total_ticks: int = 0
    idle_ticks: int = 0
    system_ticks: int = 0
    user_ticks: int = 0
    num_page_outs: int = 0
    num_page_ins: int = 0
    num_disk_reads: int = 0
    num_disk_writes: int = 0
    num_console_chars_read: int = 0
    num_console_chars_written: int = 0
    num_page_faults: int = 0
    num_packets_sent: int = 0
    num_packets_recvd: int = 0

    def report(self) -> str:
        """Return the statistics as the shutdown report text."""
        lines = [
            f"Ticks: total {self.total_ticks}, idle {self.idle_ticks}, "
            f"system {self.system_ticks}, user {self.user_ticks}",
            f"Disk I/O: reads {self.num_disk_reads}, writes {self.num_disk_writes}",
            f"Console I/O: reads {self.num_console_chars_read}, "
            f"writes {self.num_console_chars_written}",
            f"Paging: faults {self.num_page_faults}, page ins {self.num_page_ins}, "
            f"page outs {self.num_page_outs}",
            f"Network I/O: packets received {self.num_packets_recvd}, "
            f"sent {self.num_packets_sent}",
        ]
        return "\n".join(lines) + "\n"

    def print(self, file: TextIO | None = None) -> None:
        """Write the report to ``file`` (standard output by default)."""
        out = sys.stdout if file is None else file
        out.write(self.report())
        out.flush()