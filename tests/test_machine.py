import io

import pytest

from mipsemu.interrupt import MachineStatus
from mipsemu.machine import (
    BAD_VADDR_REG,
    HI_REG,
    LO_REG,
    LOAD_REG,
    LOAD_VALUE_REG,
    MEMORY_SIZE,
    NEXT_PC_REG,
    NUM_PHYS_PAGES,
    NUM_TOTAL_REGS,
    PC_REG,
    PREV_PC_REG,
    Machine,
)
from mipsemu.translate import ExceptionType, TranslationEntry


def r_type(funct, rs=0, rt=0, rd=0, shamt=0):
    return (rs << 21) | (rt << 16) | (rd << 11) | (shamt << 6) | funct


def i_type(op, rs, rt, imm):
    return (op << 26) | (rs << 21) | (rt << 16) | (imm & 0xFFFF)


def j_type(op, target):
    return (op << 26) | (target & 0x3FFFFFF)


ADDU, ADD, SYSCALL, MULT, MFLO, MFHI = 0x21, 0x20, 0x0C, 0x18, 0x12, 0x10
OP_ADDIU, OP_LUI, OP_LW, OP_SW, OP_LB, OP_LBU, OP_BEQ, OP_JAL = (
    0x09, 0x0F, 0x23, 0x2B, 0x20, 0x24, 0x04, 0x03,
)


class StopRun(Exception):
    pass


@pytest.fixture
def traps():
    return []


@pytest.fixture
def machine(traps):
    out = io.StringIO()
    m = Machine(exception_handler=traps.append, out=out)
    m.page_table = [
        TranslationEntry(virtual_page=i, physical_page=i, valid=True)
        for i in range(NUM_PHYS_PAGES)
    ]
    m.interrupt._out = out
    m.write_register(NEXT_PC_REG, 4)
    return m


def load_program(m, words, start=0):
    for offset, word in enumerate(words):
        m.write_mem(start + 4 * offset, 4, word)


def test_initial_state_is_zeroed():
    m = Machine()
    assert m.registers == [0] * NUM_TOTAL_REGS
    assert len(m.main_memory) == MEMORY_SIZE
    assert not any(m.main_memory)


def test_register_round_trip_and_bounds(machine):
    machine.write_register(12, -77)
    assert machine.read_register(12) == -77
    with pytest.raises(IndexError):
        machine.read_register(NUM_TOTAL_REGS)
    with pytest.raises(IndexError):
        machine.write_register(-1, 0)


def test_addu_advances_program_counters(machine):
    load_program(machine, [r_type(ADDU, rs=8, rt=9, rd=10)])
    machine.write_register(8, 5)
    machine.write_register(9, 7)
    machine.one_instruction()
    assert machine.read_register(10) == 5 + 7
    assert machine.read_register(PREV_PC_REG) == 0
    assert machine.read_register(PC_REG) == 4
    assert machine.read_register(NEXT_PC_REG) == 8


def test_add_overflow_traps_without_writing(machine, traps):
    load_program(machine, [r_type(ADD, rs=8, rt=9, rd=10)])
    machine.write_register(8, 0x7FFFFFFF)
    machine.write_register(9, 1)
    assert machine.one_instruction() is None
    assert traps == [ExceptionType.OVERFLOW]
    assert machine.read_register(10) == 0
    assert machine.read_register(PC_REG) == 0


def test_syscall_runs_handler_in_system_mode(machine):
    seen = []
    machine.exception_handler = lambda which: seen.append(
        (which, machine.interrupt.status)
    )
    machine.interrupt.status = MachineStatus.USER
    load_program(machine, [r_type(SYSCALL)])
    machine.one_instruction()
    assert seen == [(ExceptionType.SYSCALL, MachineStatus.SYSTEM)]
    assert machine.interrupt.status is MachineStatus.USER


def test_load_is_delayed_by_one_instruction(machine):
    load_program(machine, [i_type(OP_LW, 0, 8, 64)])
    machine.write_mem(64, 4, 0x1234)
    machine.one_instruction()
    assert machine.read_register(8) == 0
    assert machine.read_register(LOAD_REG) == 8
    assert machine.read_register(LOAD_VALUE_REG) == 0x1234
    machine.delayed_load(0, 0)
    assert machine.read_register(8) == 0x1234


@pytest.mark.parametrize("op, expected", [(OP_LB, -1), (OP_LBU, 0xFF)])
def test_byte_loads_extend(machine, op, expected):
    load_program(machine, [i_type(op, 0, 8, 100)])
    machine.write_mem(100, 1, 0xFF)
    machine.one_instruction()
    machine.delayed_load(0, 0)
    assert machine.read_register(8) == expected


def test_register_zero_stays_zero(machine):
    load_program(machine, [i_type(OP_ADDIU, 0, 0, 5)])
    machine.one_instruction()
    assert machine.read_register(0) == 0


def test_lui_shifts_immediate(machine):
    load_program(machine, [i_type(OP_LUI, 0, 8, 3)])
    machine.one_instruction()
    assert machine.read_register(8) == 3 << 16


def test_store_word_reaches_memory(machine):
    load_program(machine, [i_type(OP_SW, 0, 8, 200)])
    machine.write_register(8, -5)
    machine.one_instruction()
    assert machine.read_mem(200, 4) == -5


def test_beq_taken_sets_next_pc(machine):
    load_program(machine, [i_type(OP_BEQ, 8, 9, 3)])
    machine.one_instruction()
    assert machine.read_register(PC_REG) == 4
    assert machine.read_register(NEXT_PC_REG) == 4 + 3 * 4


def test_jal_links_return_address(machine):
    load_program(machine, [j_type(OP_JAL, 10)])
    machine.one_instruction()
    assert machine.read_register(31) == 8
    assert machine.read_register(NEXT_PC_REG) == 10 * 4


def test_mult_then_mflo_mfhi(machine):
    load_program(
        machine,
        [r_type(MULT, rs=8, rt=9), r_type(MFLO, rd=10), r_type(MFHI, rd=11)],
    )
    machine.write_register(8, -3)
    machine.write_register(9, 4)
    machine.one_instruction()
    assert machine.read_register(LO_REG) == -3 * 4
    assert machine.read_register(HI_REG) == -1
    machine.one_instruction()
    machine.one_instruction()
    assert machine.read_register(10) == -12
    assert machine.read_register(11) == -1


def test_fetch_page_fault_records_bad_address(machine, traps):
    machine.page_table = [TranslationEntry()]
    machine.write_register(PC_REG, 16)
    assert machine.one_instruction() is None
    assert traps == [ExceptionType.PAGE_FAULT]
    assert machine.read_register(BAD_VADDR_REG) == 16


def test_unaligned_word_load_is_address_error(machine, traps):
    load_program(machine, [i_type(OP_LW, 0, 8, 66)])
    machine.one_instruction()
    assert traps == [ExceptionType.ADDRESS_ERROR]
    assert machine.read_register(BAD_VADDR_REG) == 66


def test_reserved_opcode_is_illegal(machine, traps):
    load_program(machine, [0x14 << 26])
    machine.one_instruction()
    assert traps == [ExceptionType.ILLEGAL_INSTR]
    assert machine.read_register(PC_REG) == 0
    assert machine.read_register(NEXT_PC_REG) == 4


def test_exception_without_handler_raises():
    m = Machine()
    with pytest.raises(RuntimeError):
        m.raise_exception(ExceptionType.SYSCALL, 0)


def test_run_executes_until_handler_stops(machine):
    def handler(which):
        raise StopRun(which)

    machine.exception_handler = handler
    load_program(
        machine,
        [i_type(OP_ADDIU, 0, 8, 9), i_type(OP_ADDIU, 8, 9, 1), r_type(SYSCALL)],
    )
    with pytest.raises(StopRun):
        machine.run()
    assert machine.read_register(8) == 9
    assert machine.read_register(9) == 10
    assert machine.stats.user_ticks == 2


def test_debugger_number_sets_run_until(machine):
    machine.single_step = True
    machine.debugger("250\n")
    assert machine.run_until_time == 250
    assert machine.single_step


def test_debugger_continue_and_help(machine):
    machine.single_step = True
    machine.debugger("c\n")
    assert not machine.single_step
    machine.debugger("?\n")
    assert "Machine commands:" in machine.out.getvalue()
    assert machine.run_until_time == 0


def test_debugger_reads_input_when_no_line(traps):
    m = Machine(exception_handler=traps.append, out=io.StringIO(), inp=io.StringIO("42\n"))
    m.interrupt._out = m.out
    m.debugger()
    assert m.run_until_time == 42


def test_dump_state_names_special_registers(machine):
    machine.write_register(29, 0x100)
    machine.dump_state()
    text = machine.out.getvalue()
    assert "SP(29):\t0x100" in text
    assert "RA(31):" in text
    assert "\tNextPC:\t0x4" in text