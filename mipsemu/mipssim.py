"""Instruction decoding for the simulated MIPS R2000/R3000 processor.

Instructions are decoded into a simulator-specific operation code, which
is not the same as the opcode field of the instruction word, together
with the register fields and the immediate, target or shift amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum

SIGN_BIT = 0x80000000
R31 = 31
MAX_OPCODE = 63

_WORD_MASK = 0xFFFFFFFF


class OpCode(IntEnum):
    """Decoded operation codes.

    ``UNIMP`` is a legal instruction the simulator does not implement;
    ``RES`` is a reserved opcode not supported by the architecture.
    """

    ADD = 1
    ADDI = 2
    ADDIU = 3
    ADDU = 4
    AND = 5
    ANDI = 6
    BEQ = 7
    BGEZ = 8
    BGEZAL = 9
    BGTZ = 10
    BLEZ = 11
    BLTZ = 12
    BLTZAL = 13
    BNE = 14
    DIV = 16
    DIVU = 17
    J = 18
    JAL = 19
    JALR = 20
    JR = 21
    LB = 22
    LBU = 23
    LH = 24
    LHU = 25
    LUI = 26
    LW = 27
    LWL = 28
    LWR = 29
    MFHI = 31
    MFLO = 32
    MTHI = 34
    MTLO = 35
    MULT = 36
    MULTU = 37
    NOR = 38
    OR = 39
    ORI = 40
    RFE = 41
    SB = 42
    SH = 43
    SLL = 44
    SLLV = 45
    SLT = 46
    SLTI = 47
    SLTIU = 48
    SLTU = 49
    SRA = 50
    SRAV = 51
    SRL = 52
    SRLV = 53
    SUB = 54
    SUBU = 55
    SW = 56
    SWL = 57
    SWR = 58
    XOR = 59
    XORI = 60
    SYSCALL = 61
    UNIMP = 62
    RES = 63


class Format(IntEnum):
    """Instruction word layouts."""

    IFMT = 1
    JFMT = 2
    RFMT = 3


# Markers in the primary table for opcodes decoded further.
_SPECIAL = "special"
_BCOND = "bcond"

_I, _J, _R = Format.IFMT, Format.JFMT, Format.RFMT
_O = OpCode

_OP_TABLE: tuple[tuple[object, Format], ...] = (
    (_SPECIAL, _R), (_BCOND, _I), (_O.J, _J), (_O.JAL, _J),
    (_O.BEQ, _I), (_O.BNE, _I), (_O.BLEZ, _I), (_O.BGTZ, _I),
    (_O.ADDI, _I), (_O.ADDIU, _I), (_O.SLTI, _I), (_O.SLTIU, _I),
    (_O.ANDI, _I), (_O.ORI, _I), (_O.XORI, _I), (_O.LUI, _I),
    (_O.UNIMP, _I), (_O.UNIMP, _I), (_O.UNIMP, _I), (_O.UNIMP, _I),
    (_O.RES, _I), (_O.RES, _I), (_O.RES, _I), (_O.RES, _I),
    (_O.RES, _I), (_O.RES, _I), (_O.RES, _I), (_O.RES, _I),
    (_O.RES, _I), (_O.RES, _I), (_O.RES, _I), (_O.RES, _I),
    (_O.LB, _I), (_O.LH, _I), (_O.LWL, _I), (_O.LW, _I),
    (_O.LBU, _I), (_O.LHU, _I), (_O.LWR, _I), (_O.RES, _I),
    (_O.SB, _I), (_O.SH, _I), (_O.SWL, _I), (_O.SW, _I),
    (_O.RES, _I), (_O.RES, _I), (_O.SWR, _I), (_O.RES, _I),
    (_O.UNIMP, _I), (_O.UNIMP, _I), (_O.UNIMP, _I), (_O.UNIMP, _I),
    (_O.RES, _I), (_O.RES, _I), (_O.RES, _I), (_O.RES, _I),
    (_O.UNIMP, _I), (_O.UNIMP, _I), (_O.UNIMP, _I), (_O.UNIMP, _I),
    (_O.RES, _I), (_O.RES, _I), (_O.RES, _I), (_O.RES, _I),
)

_SPECIAL_TABLE: tuple[OpCode, ...] = (
    _O.SLL, _O.RES, _O.SRL, _O.SRA, _O.SLLV, _O.RES, _O.SRLV, _O.SRAV,
    _O.JR, _O.JALR, _O.RES, _O.RES, _O.SYSCALL, _O.UNIMP, _O.RES, _O.RES,
    _O.MFHI, _O.MTHI, _O.MFLO, _O.MTLO, _O.RES, _O.RES, _O.RES, _O.RES,
    _O.MULT, _O.MULTU, _O.DIV, _O.DIVU, _O.RES, _O.RES, _O.RES, _O.RES,
    _O.ADD, _O.ADDU, _O.SUB, _O.SUBU, _O.AND, _O.OR, _O.XOR, _O.NOR,
    _O.RES, _O.RES, _O.SLT, _O.SLTU, _O.RES, _O.RES, _O.RES, _O.RES,
    _O.RES, _O.RES, _O.RES, _O.RES, _O.RES, _O.RES, _O.RES, _O.RES,
    _O.RES, _O.RES, _O.RES, _O.RES, _O.RES, _O.RES, _O.RES, _O.RES,
)

_BCOND_TABLE = {
    0x000000: _O.BLTZ,
    0x010000: _O.BGEZ,
    0x100000: _O.BLTZAL,
    0x110000: _O.BGEZAL,
}


class _Field(Enum):
    RS = "rs"
    RT = "rt"
    RD = "rd"
    EXTRA = "extra"


_RS, _RT, _RD, _EX = _Field.RS, _Field.RT, _Field.RD, _Field.EXTRA

_OP_STRINGS: dict[OpCode, tuple[str, tuple[_Field, ...]]] = {
    _O.ADD: ("ADD r%d,r%d,r%d", (_RD, _RS, _RT)),
    _O.ADDI: ("ADDI r%d,r%d,%d", (_RT, _RS, _EX)),
    _O.ADDIU: ("ADDIU r%d,r%d,%d", (_RT, _RS, _EX)),
    _O.ADDU: ("ADDU r%d,r%d,r%d", (_RD, _RS, _RT)),
    _O.AND: ("AND r%d,r%d,r%d", (_RD, _RS, _RT)),
    _O.ANDI: ("ANDI r%d,r%d,%d", (_RT, _RS, _EX)),
    _O.BEQ: ("BEQ r%d,r%d,%d", (_RS, _RT, _EX)),
    _O.BGEZ: ("BGEZ r%d,%d", (_RS, _EX)),
    _O.BGEZAL: ("BGEZAL r%d,%d", (_RS, _EX)),
    _O.BGTZ: ("BGTZ r%d,%d", (_RS, _EX)),
    _O.BLEZ: ("BLEZ r%d,%d", (_RS, _EX)),
    _O.BLTZ: ("BLTZ r%d,%d", (_RS, _EX)),
    _O.BLTZAL: ("BLTZAL r%d,%d", (_RS, _EX)),
    _O.BNE: ("BNE r%d,r%d,%d", (_RS, _RT, _EX)),
    _O.DIV: ("DIV r%d,r%d", (_RS, _RT)),
    _O.DIVU: ("DIVU r%d,r%d", (_RS, _RT)),
    _O.J: ("J %d", (_EX,)),
    _O.JAL: ("JAL %d", (_EX,)),
    _O.JALR: ("JALR r%d,r%d", (_RD, _RS)),
    _O.JR: ("JR r%d,r%d", (_RD, _RS)),
    _O.LB: ("LB r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.LBU: ("LBU r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.LH: ("LH r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.LHU: ("LHU r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.LUI: ("LUI r%d,%d", (_RT, _EX)),
    _O.LW: ("LW r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.LWL: ("LWL r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.LWR: ("LWR r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.MFHI: ("MFHI r%d", (_RD,)),
    _O.MFLO: ("MFLO r%d", (_RD,)),
    _O.MTHI: ("MTHI r%d", (_RS,)),
    _O.MTLO: ("MTLO r%d", (_RS,)),
    _O.MULT: ("MULT r%d,r%d", (_RS, _RT)),
    _O.MULTU: ("MULTU r%d,r%d", (_RS, _RT)),
    _O.NOR: ("NOR r%d,r%d,r%d", (_RD, _RS, _RT)),
    _O.OR: ("OR r%d,r%d,r%d", (_RD, _RS, _RT)),
    _O.ORI: ("ORI r%d,r%d,%d", (_RT, _RS, _EX)),
    _O.RFE: ("RFE", ()),
    _O.SB: ("SB r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.SH: ("SH r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.SLL: ("SLL r%d,r%d,%d", (_RD, _RT, _EX)),
    _O.SLLV: ("SLLV r%d,r%d,r%d", (_RD, _RT, _RS)),
    _O.SLT: ("SLT r%d,r%d,r%d", (_RD, _RS, _RT)),
    _O.SLTI: ("SLTI r%d,r%d,%d", (_RT, _RS, _EX)),
    _O.SLTIU: ("SLTIU r%d,r%d,%d", (_RT, _RS, _EX)),
    _O.SLTU: ("SLTU r%d,r%d,r%d", (_RD, _RS, _RT)),
    _O.SRA: ("SRA r%d,r%d,%d", (_RD, _RT, _EX)),
    _O.SRAV: ("SRAV r%d,r%d,r%d", (_RD, _RT, _RS)),
    _O.SRL: ("SRL r%d,r%d,%d", (_RD, _RT, _EX)),
    _O.SRLV: ("SRLV r%d,r%d,r%d", (_RD, _RT, _RS)),
    _O.SUB: ("SUB r%d,r%d,r%d", (_RD, _RS, _RT)),
    _O.SUBU: ("SUBU r%d,r%d,r%d", (_RD, _RS, _RT)),
    _O.SW: ("SW r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.SWL: ("SWL r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.SWR: ("SWR r%d,%d(r%d)", (_RT, _EX, _RS)),
    _O.XOR: ("XOR r%d,r%d,r%d", (_RD, _RS, _RT)),
    _O.XORI: ("XORI r%d,r%d,%d", (_RT, _RS, _EX)),
    _O.SYSCALL: ("SYSCALL", ()),
    _O.UNIMP: ("Unimplemented", ()),
    _O.RES: ("Reserved", ()),
}


def _to_signed32(value: int) -> int:
    value &= _WORD_MASK
    return value - (1 << 32) if value & SIGN_BIT else value


@dataclass(frozen=True)
class Instruction:
    """A decoded instruction.

    ``extra`` holds the sign-extended immediate (I format), the shift
    amount (R format) or the jump target (J format).
    """

    value: int
    op_code: OpCode
    rs: int
    rt: int
    rd: int
    extra: int
    format: Format

    @classmethod
    def decode(cls, value: int) -> "Instruction":
        """Decode a 32-bit instruction word."""
        value &= _WORD_MASK
        rs = (value >> 21) & 0x1F
        rt = (value >> 16) & 0x1F
        rd = (value >> 11) & 0x1F
        op, fmt = _OP_TABLE[(value >> 26) & 0x3F]

        if fmt is Format.IFMT:
            extra = value & 0xFFFF
            if extra & 0x8000:
                extra -= 0x10000
        elif fmt is Format.RFMT:
            extra = (value >> 6) & 0x1F
        else:
            extra = value & 0x3FFFFFF

        if op == _SPECIAL:
            op_code = _SPECIAL_TABLE[value & 0x3F]
        elif op == _BCOND:
            op_code = _BCOND_TABLE.get(value & 0x1F0000, OpCode.UNIMP)
        else:
            op_code = op  # type: ignore[assignment]

        return cls(value, op_code, rs, rt, rd, extra, fmt)

    def _field(self, field: _Field) -> int:
        return getattr(self, field.value)

    def disassemble(self) -> str:
        """Return a readable form of the instruction."""
        template, fields = _OP_STRINGS[self.op_code]
        if not fields:
            return template
        return template % tuple(self._field(f) for f in fields)

    def __str__(self) -> str:
        return self.disassemble()


def mult(a: int, b: int, signed_arith: bool) -> tuple[int, int]:
    """Multiply two 32-bit words, returning the (hi, lo) words of the result.

    Both words of the 64-bit product are returned as signed 32-bit values,
    as they would be held in registers.
    """
    a = _to_signed32(a)
    b = _to_signed32(b)
    if a == 0 or b == 0:
        return 0, 0
    if signed_arith:
        product = a * b
    else:
        product = (a & _WORD_MASK) * (b & _WORD_MASK)
    product &= (1 << 64) - 1
    return _to_signed32(product >> 32), _to_signed32(product)