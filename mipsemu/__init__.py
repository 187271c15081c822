"""Simulated MIPS workstation hardware: CPU, address translation, interrupts, timer, console, disk and network."""

__version__ = "0.1.0"