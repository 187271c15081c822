"""Simulated interrupt hardware and the simulated clock.

Time advances only when interrupts are re-enabled, when a user
instruction is executed, or when the machine idles waiting for the
next scheduled device interrupt.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import sys
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, TextIO

from .stats import SYSTEM_TICK, USER_TICK, Statistics

logger = logging.getLogger(__name__)

END_OF_TIME = 2**31 - 1


class IntStatus(Enum):
    """Whether interrupts are disabled or enabled."""

    OFF = "off"
    ON = "on"


class MachineStatus(Enum):
    """What the simulated CPU is doing."""

    IDLE = auto()
    SYSTEM = auto()
    USER = auto()


class IntType(Enum):
    """The hardware device that generated an interrupt."""

    TIMER = "timer"
    DISK = "disk"
    CONSOLE_WRITE = "console write"
    CONSOLE_READ = "console read"
    NETWORK_SEND = "network send"
    NETWORK_RECV = "network recv"


@dataclass
class PendingInterrupt:
    """A device interrupt scheduled to occur at simulated time ``when``."""

    handler: Callable[[], None]
    when: int
    kind: IntType


class MachineHalted(Exception):
    """Raised when the simulated machine shuts down."""


class Interrupt:
    """Interrupt controller and keeper of simulated time."""

    def __init__(
        self,
        stats: Statistics | None = None,
        *,
        on_yield: Callable[[], None] | None = None,
        before_handler: Callable[[], None] | None = None,
        out: TextIO | None = None,
    ) -> None:
        self.stats = stats if stats is not None else Statistics()
        self.level = IntStatus.OFF
        self.status = MachineStatus.SYSTEM
        self.in_handler = False
        self._yield_on_return = False
        self._on_yield = on_yield
        self._before_handler = before_handler
        self._out = out
        self._queue: list[tuple[int, int, PendingInterrupt]] = []
        self._seq = itertools.count()

    @property
    def out(self) -> TextIO:
        return sys.stdout if self._out is None else self._out

    @property
    def pending(self) -> tuple[PendingInterrupt, ...]:
        """The scheduled interrupts, in the order they will fire."""
        return tuple(entry[2] for entry in sorted(self._queue))

    def _insert(self, pending: PendingInterrupt) -> None:
        heapq.heappush(self._queue, (pending.when, next(self._seq), pending))

    def _change_level(self, old: IntStatus, now: IntStatus) -> None:
        self.level = now
        logger.debug("interrupts: %s -> %s", old.value, now.value)

    def set_level(self, now: IntStatus) -> IntStatus:
        """Enable or disable interrupts, returning the previous setting.

        Enabling interrupts advances simulated time by one tick.
        """
        old = self.level
        if now is IntStatus.ON and self.in_handler:
            raise RuntimeError("interrupt handlers may not enable interrupts")
        self._change_level(old, now)
        if now is IntStatus.ON and old is IntStatus.OFF:
            self.one_tick()
        return old

    def enable(self) -> None:
        """Turn interrupts on."""
        self.set_level(IntStatus.ON)

    def one_tick(self) -> None:
        """Advance simulated time and fire any interrupts now due."""
        old = self.status
        if self.status is MachineStatus.SYSTEM:
            self.stats.total_ticks += SYSTEM_TICK
            self.stats.system_ticks += SYSTEM_TICK
        else:
            self.stats.total_ticks += USER_TICK
            self.stats.user_ticks += USER_TICK
        if self.stats.total_ticks > END_OF_TIME:
            raise OverflowError("Reaching the end of time.")
        logger.debug("== Tick %d ==", self.stats.total_ticks)

        self._change_level(IntStatus.ON, IntStatus.OFF)
        while self.check_if_due(False):
            pass
        self._change_level(IntStatus.OFF, IntStatus.ON)
        if self._yield_on_return:
            self._yield_on_return = False
            self.status = MachineStatus.SYSTEM
            try:
                if self._on_yield is not None:
                    self._on_yield()
            finally:
                self.status = old

    def yield_on_return(self) -> None:
        """Request a context switch once the current handler returns."""
        if not self.in_handler:
            raise RuntimeError("yield_on_return called outside an interrupt handler")
        self._yield_on_return = True

    def idle(self) -> None:
        """Advance time to the next pending interrupt, or halt if there is none."""
        logger.debug("Machine idling; checking for interrupts.")
        self.status = MachineStatus.IDLE
        if self.check_if_due(True):
            while self.check_if_due(False):
                pass
            self._yield_on_return = False
            self.status = MachineStatus.SYSTEM
            return
        logger.debug("Machine idle.  No interrupts to do.")
        self.out.write("No threads ready or runnable, and no pending interrupts.\n")
        self.out.write("Assuming the program completed.\n")
        self.halt()

    def halt(self) -> None:
        """Print the statistics and shut the machine down."""
        self.out.write("Machine halting!\n\n")
        self.stats.print(self.out)
        raise MachineHalted()

    def schedule(
        self, handler: Callable[[], None], from_now: int, kind: IntType
    ) -> PendingInterrupt:
        """Arrange for ``handler`` to run ``from_now`` ticks in the future."""
        if from_now <= 0:
            raise ValueError("interrupts must be scheduled in the future")
        when = self.stats.total_ticks + from_now
        if when > END_OF_TIME:
            raise OverflowError("Reaching the end of time.")
        pending = PendingInterrupt(handler, when, kind)
        logger.debug("Scheduling interrupt handler the %s at time = %d", kind.value, when)
        self._insert(pending)
        return pending

    def check_if_due(self, advance_clock: bool) -> bool:
        """Fire the next pending interrupt if it is due.

        With ``advance_clock`` the clock jumps forward to the next pending
        interrupt.  Returns True if a handler was invoked.
        """
        if self.level is not IntStatus.OFF:
            raise RuntimeError("interrupts must be disabled to invoke a handler")
        if not self._queue:
            return False
        when, _, to_occur = heapq.heappop(self._queue)

        if advance_clock and when > self.stats.total_ticks:
            self.stats.idle_ticks += when - self.stats.total_ticks
            self.stats.total_ticks = when
        elif when > self.stats.total_ticks:
            self._insert(to_occur)
            return False

        if (
            self.status is MachineStatus.IDLE
            and to_occur.kind is IntType.TIMER
            and not self._queue
        ):
            self._insert(to_occur)
            return False

        logger.debug(
            "Invoking interrupt handler for the %s at time %d",
            to_occur.kind.value,
            to_occur.when,
        )
        if self._before_handler is not None:
            self._before_handler()
        old = self.status
        self.in_handler = True
        self.status = MachineStatus.SYSTEM
        try:
            to_occur.handler()
        finally:
            self.status = old
            self.in_handler = False
        return True

    def dump_state(self) -> None:
        """Print the clock, interrupt level and all pending interrupts."""
        out = self.out
        out.write(f"Time: {self.stats.total_ticks}, interrupts {self.level.value}\n")
        out.write("Pending interrupts:\n")
        for pending in self.pending:
            out.write(
                f"Interrupt handler {pending.kind.value}, scheduled at {pending.when}\n"
            )
        out.write("End of pending interrupts\n")
        out.flush()