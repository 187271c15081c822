"""Virtual-to-physical address translation for user programs.

Translation uses either a linear page table, indexed by virtual page
number, or a small software-managed translation lookaside buffer searched
associatively.  Main memory holds data in little-endian byte order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum

from .disk import SECTOR_SIZE

logger = logging.getLogger(__name__)

PAGE_SIZE = SECTOR_SIZE
NUM_PHYS_PAGES = 32
MEMORY_SIZE = NUM_PHYS_PAGES * PAGE_SIZE
TLB_SIZE = 4

_ACCESS_SIZES = (1, 2, 4)


class ExceptionType(IntEnum):
    """Causes of a trap from a user program into the kernel."""

    NO_EXCEPTION = 0
    SYSCALL = 1
    PAGE_FAULT = 2
    READ_ONLY = 3
    BUS_ERROR = 4
    ADDRESS_ERROR = 5
    OVERFLOW = 6
    ILLEGAL_INSTR = 7

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    ExceptionType.NO_EXCEPTION: "no exception",
    ExceptionType.SYSCALL: "syscall",
    ExceptionType.PAGE_FAULT: "page fault/no TLB entry",
    ExceptionType.READ_ONLY: "page read only",
    ExceptionType.BUS_ERROR: "bus error",
    ExceptionType.ADDRESS_ERROR: "address error",
    ExceptionType.OVERFLOW: "overflow",
    ExceptionType.ILLEGAL_INSTR: "illegal instruction",
}


@dataclass
class TranslationEntry:
    """One virtual-to-physical page mapping, in a page table or the TLB."""

    virtual_page: int = 0
    physical_page: int = 0
    valid: bool = False
    read_only: bool = False
    use: bool = False
    dirty: bool = False


class TranslationFault(Exception):
    """A memory reference could not be translated."""

    def __init__(self, exception: ExceptionType, bad_vaddr: int) -> None:
        super().__init__(f"{exception.description} at 0x{bad_vaddr & 0xFFFFFFFF:x}")
        self.exception = exception
        self.bad_vaddr = bad_vaddr


def _check_size(size: int) -> None:
    if size not in _ACCESS_SIZES:
        raise ValueError(f"memory access size must be 1, 2 or 4, not {size}")


class Mmu:
    """Main memory together with the translation hardware.

    Exactly one of ``tlb`` and ``page_table`` must be set when memory is
    referenced.  With ``use_tlb`` the TLB starts with all entries invalid.
    """

    def __init__(self, use_tlb: bool = False) -> None:
        self.main_memory = bytearray(MEMORY_SIZE)
        self.tlb: list[TranslationEntry] | None = (
            [TranslationEntry() for _ in range(TLB_SIZE)] if use_tlb else None
        )
        self.page_table: list[TranslationEntry] | None = None

    def _find_entry(self, vpn: int) -> TranslationEntry:
        if self.tlb is None:
            page_table = self.page_table
            assert page_table is not None
            if vpn >= len(page_table):
                logger.debug(
                    "virtual page %d too large for page table size %d",
                    vpn,
                    len(page_table),
                )
                raise LookupError(ExceptionType.ADDRESS_ERROR)
            entry = page_table[vpn]
            if not entry.valid:
                logger.debug("virtual page %d not valid", vpn)
                raise LookupError(ExceptionType.PAGE_FAULT)
            return entry
        for entry in self.tlb:
            if entry.valid and (entry.virtual_page & 0xFFFFFFFF) == vpn:
                return entry
        logger.debug("no valid TLB entry found for virtual page %d", vpn)
        raise LookupError(ExceptionType.PAGE_FAULT)

    def translate(self, virt_addr: int, size: int, writing: bool) -> int:
        """Return the physical address for ``virt_addr``.

        Sets the use and dirty bits of the entry used; raises
        :class:`TranslationFault` if the reference cannot be completed.
        """
        logger.debug(
            "Translate 0x%x, %s", virt_addr & 0xFFFFFFFF, "write" if writing else "read"
        )
        if (size == 4 and virt_addr & 0x3) or (size == 2 and virt_addr & 0x1):
            logger.debug("alignment problem at %d, size %d", virt_addr, size)
            raise TranslationFault(ExceptionType.ADDRESS_ERROR, virt_addr)

        if (self.tlb is None) == (self.page_table is None):
            raise RuntimeError("exactly one of a TLB or a page table must be in use")

        unsigned = virt_addr & 0xFFFFFFFF
        vpn, offset = divmod(unsigned, PAGE_SIZE)
        try:
            entry = self._find_entry(vpn)
        except LookupError as exc:
            raise TranslationFault(exc.args[0], virt_addr) from None

        if entry.read_only and writing:
            logger.debug("%d mapped read-only", virt_addr)
            raise TranslationFault(ExceptionType.READ_ONLY, virt_addr)

        frame = entry.physical_page & 0xFFFFFFFF
        if frame >= NUM_PHYS_PAGES:
            logger.debug("frame %d > %d", frame, NUM_PHYS_PAGES)
            raise TranslationFault(ExceptionType.BUS_ERROR, virt_addr)

        entry.use = True
        if writing:
            entry.dirty = True
        phys = frame * PAGE_SIZE + offset
        if not (0 <= phys and phys + size <= MEMORY_SIZE):
            raise RuntimeError(f"physical address 0x{phys:x} outside memory")
        logger.debug("phys addr = 0x%x", phys)
        return phys

    def read_mem(self, addr: int, size: int) -> int:
        """Read 1, 2 or 4 bytes of virtual memory at ``addr``.

        A byte is returned sign-extended, a half-word unsigned and a word
        as a signed 32-bit value.
        """
        _check_size(size)
        phys = self.translate(addr, size, False)
        raw = bytes(self.main_memory[phys:phys + size])
        value = int.from_bytes(raw, "little", signed=size != 2)
        logger.debug("value read = %08x", value & 0xFFFFFFFF)
        return value

    def write_mem(self, addr: int, size: int, value: int) -> None:
        """Write the low ``size`` bytes of ``value`` to virtual memory at ``addr``."""
        _check_size(size)
        logger.debug(
            "Writing VA 0x%x, size %d, value 0x%x",
            addr & 0xFFFFFFFF,
            size,
            value & 0xFFFFFFFF,
        )
        phys = self.translate(addr, size, True)
        mask = (1 << (8 * size)) - 1
        self.main_memory[phys:phys + size] = (value & mask).to_bytes(size, "little")