"""The simulated processor as seen by user programs.

A :class:`Machine` holds the CPU registers, main memory and the address
translation hardware, and executes user instructions one at a time.
Exceptions and system calls trap into the kernel through the exception
handler given to the machine.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Callable, TextIO

from .interrupt import Interrupt, MachineStatus
from .mipssim import R31, Instruction, OpCode, mult
from .translate import (
    MEMORY_SIZE,
    NUM_PHYS_PAGES,
    PAGE_SIZE,
    TLB_SIZE,
    ExceptionType,
    Mmu,
    TranslationEntry,
    TranslationFault,
)

logger = logging.getLogger(__name__)

__all__ = [
    "Machine",
    "STACK_REG",
    "RET_ADDR_REG",
    "NUM_GP_REGS",
    "HI_REG",
    "LO_REG",
    "PC_REG",
    "NEXT_PC_REG",
    "PREV_PC_REG",
    "LOAD_REG",
    "LOAD_VALUE_REG",
    "BAD_VADDR_REG",
    "NUM_TOTAL_REGS",
    "PAGE_SIZE",
    "NUM_PHYS_PAGES",
    "MEMORY_SIZE",
    "TLB_SIZE",
]

STACK_REG = 29        # user's stack pointer
RET_ADDR_REG = 31     # return address for procedure calls
NUM_GP_REGS = 32      # general purpose registers
HI_REG = 32           # double register holding a multiply result
LO_REG = 33
PC_REG = 34           # current program counter
NEXT_PC_REG = 35      # next program counter, for branch delay
PREV_PC_REG = 36      # previous program counter, for debugging
LOAD_REG = 37         # register target of a delayed load
LOAD_VALUE_REG = 38   # value to be loaded by a delayed load
BAD_VADDR_REG = 39    # failing virtual address on an exception
NUM_TOTAL_REGS = 40

_WORD_MASK = 0xFFFFFFFF
_INT_MIN = -(1 << 31)
_INT_MAX = (1 << 31) - 1

_DEBUGGER_HELP = (
    "Machine commands:\n"
    "    <return>  execute one instruction\n"
    "    <number>  run until the given timer tick\n"
    "    c         run until completion\n"
    "    ?         print help message\n"
)

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")

ExceptionHandler = Callable[[ExceptionType], None]


def _s32(value: int) -> int:
    """Wrap ``value`` to a signed 32-bit integer."""
    value &= _WORD_MASK
    return value - (1 << 32) if value & 0x80000000 else value


def _u32(value: int) -> int:
    return value & _WORD_MASK


def _index_to_addr(index: int) -> int:
    return index << 2


class Machine:
    """CPU registers, main memory and translation hardware for user programs.

    ``debug`` drops into the single-step debugger after each instruction.
    ``exception_handler`` is called with the cause whenever a user program
    traps into the kernel.
    """

    def __init__(
        self,
        debug: bool = False,
        *,
        interrupt: Interrupt | None = None,
        exception_handler: ExceptionHandler | None = None,
        use_tlb: bool = False,
        out: TextIO | None = None,
        inp: TextIO | None = None,
    ) -> None:
        self.registers = [0] * NUM_TOTAL_REGS
        self.mmu = Mmu(use_tlb)
        if interrupt is None:
            interrupt = Interrupt(before_handler=lambda: self.delayed_load(0, 0))
        self.interrupt = interrupt
        self.exception_handler = exception_handler
        self.single_step = debug
        self.run_until_time = 0
        self._out = out
        self._in = inp

    @property
    def out(self) -> TextIO:
        return sys.stdout if self._out is None else self._out

    @property
    def inp(self) -> TextIO:
        return sys.stdin if self._in is None else self._in

    @property
    def main_memory(self) -> bytearray:
        """Physical memory holding user code and data."""
        return self.mmu.main_memory

    @property
    def tlb(self) -> list[TranslationEntry] | None:
        return self.mmu.tlb

    @property
    def page_table(self) -> list[TranslationEntry] | None:
        return self.mmu.page_table

    @page_table.setter
    def page_table(self, table: list[TranslationEntry] | None) -> None:
        self.mmu.page_table = table

    @property
    def stats(self):
        return self.interrupt.stats

    # -- registers -----------------------------------------------------

    def read_register(self, num: int) -> int:
        """Return the contents of CPU register ``num``."""
        if not 0 <= num < NUM_TOTAL_REGS:
            raise IndexError(f"register {num} out of range")
        return self.registers[num]

    def write_register(self, num: int, value: int) -> None:
        """Store ``value`` (wrapped to 32 bits) in CPU register ``num``."""
        if not 0 <= num < NUM_TOTAL_REGS:
            raise IndexError(f"register {num} out of range")
        self.registers[num] = _s32(value)

    # -- memory --------------------------------------------------------

    def read_mem(self, addr: int, size: int) -> int:
        """Read 1, 2 or 4 bytes of virtual memory.

        If translation fails, the exception is first delivered to the
        kernel and then :class:`TranslationFault` is raised to the caller.
        """
        try:
            return self.mmu.read_mem(addr, size)
        except TranslationFault as fault:
            self.raise_exception(fault.exception, addr)
            raise

    def write_mem(self, addr: int, size: int, value: int) -> None:
        """Write 1, 2 or 4 bytes of virtual memory.

        Faults are handled as in :meth:`read_mem`.
        """
        try:
            self.mmu.write_mem(addr, size, value)
        except TranslationFault as fault:
            self.raise_exception(fault.exception, addr)
            raise

    # -- traps ---------------------------------------------------------

    def raise_exception(self, which: ExceptionType, bad_vaddr: int) -> None:
        """Trap into the kernel because of ``which``."""
        logger.debug("Exception: %s", which.description)
        self.registers[BAD_VADDR_REG] = _s32(bad_vaddr)
        self.delayed_load(0, 0)
        if self.exception_handler is None:
            raise RuntimeError(f"unhandled exception: {which.description}")
        self.interrupt.status = MachineStatus.SYSTEM
        self.exception_handler(which)
        self.interrupt.status = MachineStatus.USER

    def delayed_load(self, next_reg: int, next_value: int) -> None:
        """Complete the pending delayed load and record the next one."""
        regs = self.registers
        regs[regs[LOAD_REG]] = regs[LOAD_VALUE_REG]
        regs[LOAD_REG] = next_reg
        regs[LOAD_VALUE_REG] = _s32(next_value)
        regs[0] = 0

    # -- execution -----------------------------------------------------

    def run(self) -> None:
        """Execute user instructions until something raises out of the loop."""
        logger.debug("Starting user program at time %d", self.stats.total_ticks)
        self.interrupt.status = MachineStatus.USER
        while True:
            self.one_instruction()
            self.interrupt.one_tick()
            if self.single_step and self.run_until_time <= self.stats.total_ticks:
                self.debugger()

    def one_instruction(self) -> Instruction | None:
        """Fetch, decode and execute one instruction.

        Returns the instruction, or None if it trapped before completing.
        """
        try:
            return self._execute()
        except TranslationFault:
            return None

    def _execute(self) -> Instruction | None:
        regs = self.registers
        raw = self.read_mem(regs[PC_REG], 4)
        instr = Instruction.decode(raw)
        logger.debug("At PC = 0x%x: %s", _u32(regs[PC_REG]), instr.disassemble())

        rs, rt, rd, extra = instr.rs, instr.rt, instr.rd, instr.extra
        next_pc = regs[NEXT_PC_REG]
        pc_after = _s32(next_pc + 4)
        next_load_reg = 0
        next_load_value = 0

        def branch() -> int:
            return _s32(next_pc + _index_to_addr(extra))

        op = instr.op_code
        match op:
            case OpCode.ADD:
                total = regs[rs] + regs[rt]
                if not _INT_MIN <= total <= _INT_MAX:
                    self.raise_exception(ExceptionType.OVERFLOW, 0)
                    return None
                regs[rd] = total
            case OpCode.ADDI:
                total = regs[rs] + extra
                if not _INT_MIN <= total <= _INT_MAX:
                    self.raise_exception(ExceptionType.OVERFLOW, 0)
                    return None
                regs[rt] = total
            case OpCode.ADDIU:
                regs[rt] = _s32(regs[rs] + extra)
            case OpCode.ADDU:
                regs[rd] = _s32(regs[rs] + regs[rt])
            case OpCode.AND:
                regs[rd] = regs[rs] & regs[rt]
            case OpCode.ANDI:
                regs[rt] = regs[rs] & (extra & 0xFFFF)
            case OpCode.BEQ:
                if regs[rs] == regs[rt]:
                    pc_after = branch()
            case OpCode.BGEZAL | OpCode.BGEZ:
                if op is OpCode.BGEZAL:
                    regs[R31] = _s32(next_pc + 4)
                if regs[rs] >= 0:
                    pc_after = branch()
            case OpCode.BGTZ:
                if regs[rs] > 0:
                    pc_after = branch()
            case OpCode.BLEZ:
                if regs[rs] <= 0:
                    pc_after = branch()
            case OpCode.BLTZAL | OpCode.BLTZ:
                if op is OpCode.BLTZAL:
                    regs[R31] = _s32(next_pc + 4)
                if regs[rs] < 0:
                    pc_after = branch()
            case OpCode.BNE:
                if regs[rs] != regs[rt]:
                    pc_after = branch()
            case OpCode.DIV:
                a, b = regs[rs], regs[rt]
                if b == 0:
                    regs[LO_REG] = regs[HI_REG] = 0
                else:
                    quotient = abs(a) // abs(b)
                    if (a < 0) != (b < 0):
                        quotient = -quotient
                    regs[LO_REG] = _s32(quotient)
                    regs[HI_REG] = _s32(a - quotient * b)
            case OpCode.DIVU:
                a, b = _u32(regs[rs]), _u32(regs[rt])
                if b == 0:
                    regs[LO_REG] = regs[HI_REG] = 0
                else:
                    regs[LO_REG] = _s32(a // b)
                    regs[HI_REG] = _s32(a % b)
            case OpCode.JAL | OpCode.J:
                if op is OpCode.JAL:
                    regs[R31] = _s32(next_pc + 4)
                pc_after = _s32((pc_after & 0xF0000000) | _index_to_addr(extra))
            case OpCode.JALR | OpCode.JR:
                if op is OpCode.JALR:
                    regs[rd] = _s32(next_pc + 4)
                pc_after = regs[rs]
            case OpCode.LB | OpCode.LBU:
                addr = _s32(regs[rs] + extra)
                value = self.read_mem(addr, 1) & 0xFF
                if value & 0x80 and op is OpCode.LB:
                    value -= 0x100
                next_load_reg, next_load_value = rt, value
            case OpCode.LH | OpCode.LHU:
                addr = _s32(regs[rs] + extra)
                if addr & 0x1:
                    self.raise_exception(ExceptionType.ADDRESS_ERROR, addr)
                    return None
                value = self.read_mem(addr, 2) & 0xFFFF
                if value & 0x8000 and op is OpCode.LH:
                    value -= 0x10000
                next_load_reg, next_load_value = rt, value
            case OpCode.LUI:
                regs[rt] = _s32(extra << 16)
            case OpCode.LW:
                addr = _s32(regs[rs] + extra)
                if addr & 0x3:
                    self.raise_exception(ExceptionType.ADDRESS_ERROR, addr)
                    return None
                next_load_reg, next_load_value = rt, self.read_mem(addr, 4)
            case OpCode.LWL | OpCode.LWR:
                addr = _s32(regs[rs] + extra)
                if addr & 0x3:
                    raise RuntimeError(f"unaligned {op.name} at 0x{_u32(addr):x}")
                value = self.read_mem(addr, 4)
                old = regs[LOAD_VALUE_REG] if regs[LOAD_REG] == rt else regs[rt]
                next_load_value = self._merge_load(op, addr & 0x3, old, value)
                next_load_reg = rt
            case OpCode.MFHI:
                regs[rd] = regs[HI_REG]
            case OpCode.MFLO:
                regs[rd] = regs[LO_REG]
            case OpCode.MTHI:
                regs[HI_REG] = regs[rs]
            case OpCode.MTLO:
                regs[LO_REG] = regs[rs]
            case OpCode.MULT | OpCode.MULTU:
                regs[HI_REG], regs[LO_REG] = mult(
                    regs[rs], regs[rt], op is OpCode.MULT
                )
            case OpCode.NOR:
                regs[rd] = ~(regs[rs] | regs[rt])
            case OpCode.OR:
                regs[rd] = regs[rs] | regs[rs]
            case OpCode.ORI:
                regs[rt] = regs[rs] | (extra & 0xFFFF)
            case OpCode.SB:
                self.write_mem(_s32(regs[rs] + extra), 1, regs[rt])
            case OpCode.SH:
                self.write_mem(_s32(regs[rs] + extra), 2, regs[rt])
            case OpCode.SW:
                self.write_mem(_s32(regs[rs] + extra), 4, regs[rt])
            case OpCode.SLL:
                regs[rd] = _s32(regs[rt] << extra)
            case OpCode.SLLV:
                regs[rd] = _s32(regs[rt] << (regs[rs] & 0x1F))
            case OpCode.SLT:
                regs[rd] = int(regs[rs] < regs[rt])
            case OpCode.SLTI:
                regs[rt] = int(regs[rs] < extra)
            case OpCode.SLTIU:
                regs[rt] = int(_u32(regs[rs]) < _u32(extra))
            case OpCode.SLTU:
                regs[rd] = int(_u32(regs[rs]) < _u32(regs[rt]))
            case OpCode.SRA | OpCode.SRL:
                # Both shift the signed register value.
                regs[rd] = regs[rt] >> extra
            case OpCode.SRAV | OpCode.SRLV:
                regs[rd] = regs[rt] >> (regs[rs] & 0x1F)
            case OpCode.SUB:
                diff = regs[rs] - regs[rt]
                if not _INT_MIN <= diff <= _INT_MAX:
                    self.raise_exception(ExceptionType.OVERFLOW, 0)
                    return None
                regs[rd] = diff
            case OpCode.SUBU:
                regs[rd] = _s32(regs[rs] - regs[rt])
            case OpCode.SWL | OpCode.SWR:
                addr = _s32(regs[rs] + extra)
                if addr & 0x3:
                    raise RuntimeError(f"unaligned {op.name} at 0x{_u32(addr):x}")
                word_addr = addr & ~0x3
                value = self.read_mem(word_addr, 4)
                value = self._merge_store(op, addr & 0x3, value, regs[rt])
                self.write_mem(word_addr, 4, value)
            case OpCode.SYSCALL:
                self.raise_exception(ExceptionType.SYSCALL, 0)
                return None
            case OpCode.XOR:
                regs[rd] = regs[rs] ^ regs[rt]
            case OpCode.XORI:
                regs[rt] = regs[rs] ^ (extra & 0xFFFF)
            case OpCode.RES | OpCode.UNIMP:
                self.raise_exception(ExceptionType.ILLEGAL_INSTR, 0)
                return None
            case _:
                raise RuntimeError(f"cannot execute {op.name}")

        self.delayed_load(next_load_reg, next_load_value)
        regs[PREV_PC_REG] = regs[PC_REG]
        regs[PC_REG] = regs[NEXT_PC_REG]
        regs[NEXT_PC_REG] = pc_after
        return instr

    @staticmethod
    def _merge_load(op: OpCode, offset: int, old: int, value: int) -> int:
        if op is OpCode.LWL:
            merged = {
                0: value,
                1: (old & 0xFF) | (value << 8),
                2: (old & 0xFFFF) | (value << 16),
                3: (old & 0xFFFFFF) | (value << 24),
            }[offset]
        else:
            merged = {
                0: (old & 0xFFFFFF00) | ((value >> 24) & 0xFF),
                1: (old & 0xFFFF0000) | ((value >> 16) & 0xFFFF),
                2: (old & 0xFF000000) | ((value >> 8) & 0xFFFFFF),
                3: value,
            }[offset]
        return _s32(merged)

    @staticmethod
    def _merge_store(op: OpCode, offset: int, value: int, reg: int) -> int:
        if op is OpCode.SWL:
            merged = {
                0: reg,
                1: (value & 0xFF000000) | ((reg >> 8) & 0xFFFFFF),
                2: (value & 0xFFFF0000) | ((reg >> 16) & 0xFFFF),
                3: (value & 0xFFFFFF00) | ((reg >> 24) & 0xFF),
            }[offset]
        else:
            merged = {
                0: (value & 0xFFFFFF) | (reg << 24),
                1: (value & 0xFFFF) | (reg << 16),
                2: (value & 0xFF) | (reg << 8),
                3: reg,
            }[offset]
        return _s32(merged)

    # -- debugging -----------------------------------------------------

    def debugger(self, line: str | None = None) -> None:
        """Show the machine state and act on one debugger command.

        ``line`` is the command; if None it is read from the input stream.
        A number runs until that tick, ``c`` runs to completion, ``?``
        prints help and an empty line executes one more instruction.
        """
        self.interrupt.dump_state()
        self.dump_state()
        out = self.out
        out.write(f"{self.stats.total_ticks}> ")
        out.flush()
        if line is None:
            line = self.inp.readline()

        match = _LEADING_INT.match(line)
        if match:
            self.run_until_time = int(match.group(1))
            return
        self.run_until_time = 0
        command = line[:1]
        if command == "c":
            self.single_step = False
        elif command == "?":
            out.write(_DEBUGGER_HELP)
            out.flush()

    def dump_state(self) -> None:
        """Print the user program's CPU registers."""
        regs = self.registers
        parts = ["Machine registers:\n"]
        for i in range(NUM_GP_REGS):
            if i == STACK_REG:
                label = f"SP({i})"
            elif i == RET_ADDR_REG:
                label = f"RA({i})"
            else:
                label = str(i)
            end = "\n" if i % 4 == 3 else ""
            parts.append(f"\t{label}:\t0x{_u32(regs[i]):x}{end}")
        parts.append(f"\tHi:\t0x{_u32(regs[HI_REG]):x}")
        parts.append(f"\tLo:\t0x{_u32(regs[LO_REG]):x}\n")
        parts.append(f"\tPC:\t0x{_u32(regs[PC_REG]):x}")
        parts.append(f"\tNextPC:\t0x{_u32(regs[NEXT_PC_REG]):x}")
        parts.append(f"\tPrevPC:\t0x{_u32(regs[PREV_PC_REG]):x}\n")
        parts.append(f"\tLoad:\t0x{_u32(regs[LOAD_REG]):x}")
        parts.append(f"\tLoadV:\t0x{_u32(regs[LOAD_VALUE_REG]):x}\n")
        parts.append("\n")
        self.out.write("".join(parts))
        self.out.flush()