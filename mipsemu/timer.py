"""Simulated hardware timer that interrupts periodically."""

from __future__ import annotations

from typing import Callable

from . import sysdep
from .interrupt import Interrupt, IntType
from .stats import TIMER_TICKS


class Timer:
    """Hardware timer calling ``handler`` on every expiry.

    With ``do_random`` the delay between interrupts is pseudo-random
    instead of fixed.
    """

    def __init__(
        self,
        interrupt: Interrupt,
        handler: Callable[[], None],
        do_random: bool = False,
    ) -> None:
        self.interrupt = interrupt
        self.handler = handler
        self.randomize = do_random
        self.interrupt.schedule(
            self.timer_expired, self.time_of_next_interrupt(), IntType.TIMER
        )

    def timer_expired(self) -> None:
        """Schedule the next expiry and invoke the handler."""
        self.interrupt.schedule(
            self.timer_expired, self.time_of_next_interrupt(), IntType.TIMER
        )
        self.handler()

    def time_of_next_interrupt(self) -> int:
        """Return the number of ticks until the next timer interrupt."""
        if self.randomize:
            return 1 + sysdep.random() % (TIMER_TICKS * 2)
        return TIMER_TICKS