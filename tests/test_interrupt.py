import io

import pytest

from mipsemu.interrupt import (
    END_OF_TIME,
    Interrupt,
    IntStatus,
    IntType,
    MachineHalted,
    MachineStatus,
)
from mipsemu.stats import SYSTEM_TICK, USER_TICK


def make():
    return Interrupt(out=io.StringIO())


def test_initial_state():
    intr = make()
    assert intr.level is IntStatus.OFF
    assert intr.status is MachineStatus.SYSTEM
    assert intr.pending == ()
    assert intr.stats.total_ticks == 0


def test_enabling_advances_time():
    intr = make()
    old = intr.set_level(IntStatus.ON)
    assert old is IntStatus.OFF
    assert intr.level is IntStatus.ON
    assert intr.stats.total_ticks == SYSTEM_TICK
    assert intr.stats.system_ticks == SYSTEM_TICK


def test_disabling_does_not_advance_time():
    intr = make()
    intr.enable()
    before = intr.stats.total_ticks
    assert intr.set_level(IntStatus.OFF) is IntStatus.ON
    assert intr.stats.total_ticks == before


def test_user_mode_tick():
    intr = make()
    intr.status = MachineStatus.USER
    intr.one_tick()
    assert intr.stats.user_ticks == USER_TICK
    assert intr.stats.total_ticks == USER_TICK
    assert intr.stats.system_ticks == 0


def test_due_interrupts_fire_in_time_order():
    intr = make()
    fired = []
    intr.schedule(lambda: fired.append("b"), SYSTEM_TICK, IntType.DISK)
    intr.schedule(lambda: fired.append("a"), 1, IntType.CONSOLE_READ)
    intr.schedule(lambda: fired.append("c"), SYSTEM_TICK, IntType.TIMER)
    intr.one_tick()
    assert fired == ["a", "b", "c"]
    assert intr.pending == ()
    assert intr.level is IntStatus.ON


def test_future_interrupt_stays_pending():
    intr = make()
    fired = []
    intr.schedule(lambda: fired.append(1), SYSTEM_TICK + 1, IntType.DISK)
    intr.one_tick()
    assert fired == []
    assert [p.when for p in intr.pending] == [SYSTEM_TICK + 1]


def test_handler_runs_in_system_mode():
    intr = make()
    seen = []
    intr.status = MachineStatus.USER
    intr.schedule(lambda: seen.append((intr.status, intr.in_handler)), 1, IntType.DISK)
    intr.one_tick()
    assert seen == [(MachineStatus.SYSTEM, True)]
    assert intr.status is MachineStatus.USER
    assert intr.in_handler is False


def test_idle_advances_clock_to_next_interrupt():
    intr = make()
    fired = []
    intr.schedule(lambda: fired.append(1), 300, IntType.DISK)
    intr.idle()
    assert fired == [1]
    assert intr.stats.total_ticks == 300
    assert intr.stats.idle_ticks == 300
    assert intr.status is MachineStatus.SYSTEM


def test_idle_with_nothing_pending_halts():
    out = io.StringIO()
    intr = Interrupt(out=out)
    with pytest.raises(MachineHalted):
        intr.idle()
    text = out.getvalue()
    assert "No threads ready or runnable, and no pending interrupts." in text
    assert "Machine halting!" in text
    assert intr.stats.report() in text


def test_idle_with_only_timer_pending_halts():
    intr = make()
    fired = []
    intr.schedule(lambda: fired.append(1), 100, IntType.TIMER)
    with pytest.raises(MachineHalted):
        intr.idle()
    assert fired == []
    assert [p.kind for p in intr.pending] == [IntType.TIMER]


def test_schedule_requires_future_time():
    intr = make()
    with pytest.raises(ValueError):
        intr.schedule(lambda: None, 0, IntType.DISK)


def test_schedule_past_end_of_time():
    intr = make()
    intr.stats.total_ticks = END_OF_TIME - 5
    with pytest.raises(OverflowError):
        intr.schedule(lambda: None, 10, IntType.DISK)


def test_tick_past_end_of_time():
    intr = make()
    intr.stats.total_ticks = END_OF_TIME - 1
    with pytest.raises(OverflowError):
        intr.one_tick()


def test_yield_on_return_outside_handler():
    intr = make()
    with pytest.raises(RuntimeError):
        intr.yield_on_return()


def test_yield_on_return_inside_handler():
    statuses = []
    intr = Interrupt(out=io.StringIO(), on_yield=lambda: statuses.append(intr.status))
    intr.status = MachineStatus.USER
    intr.schedule(intr.yield_on_return, 1, IntType.TIMER)
    intr.one_tick()
    assert statuses == [MachineStatus.SYSTEM]
    assert intr.status is MachineStatus.USER


def test_handler_may_not_enable_interrupts():
    intr = make()
    intr.schedule(lambda: intr.set_level(IntStatus.ON), 1, IntType.DISK)
    with pytest.raises(RuntimeError):
        intr.one_tick()


def test_check_if_due_requires_interrupts_off():
    intr = make()
    intr.enable()
    with pytest.raises(RuntimeError):
        intr.check_if_due(False)


def test_before_handler_hook():
    calls = []
    intr = Interrupt(out=io.StringIO(), before_handler=lambda: calls.append("hook"))
    intr.schedule(lambda: calls.append("handler"), 1, IntType.DISK)
    intr.one_tick()
    assert calls == ["hook", "handler"]


def test_dump_state():
    out = io.StringIO()
    intr = Interrupt(out=out)
    intr.schedule(lambda: None, 50, IntType.DISK)
    intr.dump_state()
    lines = out.getvalue().splitlines()
    assert lines[0] == "Time: 0, interrupts off"
    assert lines[1] == "Pending interrupts:"
    assert lines[2] == "Interrupt handler disk, scheduled at 50"
    assert lines[3] == "End of pending interrupts"