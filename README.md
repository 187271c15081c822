# mipsemu

`mipsemu` simulates the hardware of a small MIPS R2000/R3000 workstation,
for an operating-system kernel written in Python to run on. It provides:

- a CPU that executes user programs one instruction at a time, with
  delayed loads, branch delay slots and traps into the kernel;
- main memory reached through a linear page table or a four-entry
  software-loaded TLB;
- interrupt hardware that keeps simulated time and fires device
  interrupts in time order;
- a timer for time slicing, at fixed or pseudo-random intervals;
- a console whose keyboard and display are host files (standard input
  and output by default);
- a disk kept in a host file, with seek, rotation and track-buffer
  timing;
- a network interface that sends fixed-size packets between machines
  over local datagram sockets and can drop packets on purpose.

Simulated time advances only when interrupts are re-enabled, when a
user instruction runs, or when the machine idles. Interrupts happen only
at those points.

The package uses only the standard library and needs a POSIX host
(local `AF_UNIX` sockets, `select` on file descriptors).

## Modules

| Module | What it holds |
| --- | --- |
| `mipsemu.stats` | `Statistics` (tick and I/O counters, `report()`, `print(file)`) and the timing constants |
| `mipsemu.sysdep` | Host file, socket, random-number, delay and `SIGINT` helpers used by the devices |
| `mipsemu.interrupt` | `Interrupt`, `PendingInterrupt`, the `IntStatus`, `MachineStatus` and `IntType` enums, and `MachineHalted` |
| `mipsemu.timer` | `Timer` |
| `mipsemu.console` | `Console` |
| `mipsemu.disk` | `Disk`, `DiskError` and the disk geometry constants |
| `mipsemu.network` | `PacketHeader`, `Network` and `socket_name` |
| `mipsemu.translate` | `ExceptionType`, `TranslationEntry`, `TranslationFault` and `Mmu` |
| `mipsemu.mipssim` | `OpCode`, `Format`, `Instruction` and `mult` |
| `mipsemu.machine` | `Machine` and the register-number constants |

## Decoding instructions

`Instruction.decode` takes a 32-bit instruction word and returns a frozen
dataclass with the operation, the register fields and `extra` (the
sign-extended immediate, the shift amount or the jump target).
`disassemble()` gives it in assembler form.

```python
from mipsemu.mipssim import Instruction, OpCode

instr = Instruction.decode(0x20420005)
assert instr.op_code is OpCode.ADDI
print(instr.disassemble())   # ADDI r2,r2,5
```

`mult(a, b, signed_arith)` multiplies two 32-bit words and returns the
high and low words of the 64-bit product as signed 32-bit values.

## Running user code

A `Machine` holds forty registers (the general registers plus `Hi`,
`Lo`, the program counters, the delayed-load slot and the bad-address
register) and an `Mmu` with main memory. Pass `use_tlb=True` for a TLB;
otherwise set `machine.page_table` to a list of `TranslationEntry`.
Write the program counters with `write_register`, then call `run()`, or
`one_instruction()` to step.

System calls, faults, overflows and illegal instructions go through
`raise_exception`, which calls the `exception_handler` given to the
machine with an `ExceptionType`; with no handler it raises
`RuntimeError`. A translation fault in `read_mem` or `write_mem` is
delivered to the handler first and then raised as `TranslationFault`.
`run()` loops until something raises out of it, for instance
`MachineHalted`.

With `debug=True` the machine calls `debugger()` after each instruction.
It prints the interrupt and register state and acts on one line, read
from the input stream or passed as `debugger(line)`:

- an empty line runs one more instruction;
- a number runs until that tick;
- `c` runs to completion;
- `?` prints the help.

## Devices and interrupts

Each device takes the `Interrupt` object and reports completion by
scheduling a callback with `schedule(handler, from_now, kind)`; the
callback runs when simulated time reaches that point.

`idle()` moves the clock forward to the next pending interrupt. If no
interrupt is pending, or only the timer's is left, it prints the
statistics and raises `MachineHalted`; `halt()` does the same directly.

The disk takes one request at a time (`DiskError` otherwise) and reads
or writes whole 128-byte sectors. A new disk file starts with a magic
number; an existing file without it is refused with `DiskError`.

`Network` binds a socket file named `SOCKET_<address>` in the directory
it is given, and drops each sent packet with a probability set by
`reliability`.

## What the package does not do

It is hardware only. There is no kernel: no threads or scheduler (a
context switch requested by a handler calls the `on_yield` callback, if
one is given), no system-call handling beyond calling the exception
handler, no program loader, no file system on the disk and no mailbox
layer on the network. There is no command to start it; a kernel built on
the package drives it from Python.