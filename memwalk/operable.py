"""Clocked components driven by a shared simulation loop."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Operable(ABC):
    """A component that runs once per clock tick, scaled by a relative frequency.

    A scale of 1 operates on every tick. Larger scales make the component
    slower: the fractional excess accumulates and whole ticks are skipped.
    """

    def __init__(self, scale: float) -> None:
        self.clock_scale = scale - 1
        self.leap_operation = 0.0
        self.current_cycle = 0
        self.warmup = True

    def tick(self) -> int:
        """Advance one global tick; return the progress made by ``operate``."""
        if self.leap_operation >= 1:
            self.leap_operation -= 1
            return 0

        result = self.operate()

        self.leap_operation += self.clock_scale
        self.current_cycle += 1
        return result

    @abstractmethod
    def operate(self) -> int:
        """Do one cycle of work and return a measure of progress."""

    def initialize(self) -> None:
        """Hook run once before simulation starts."""

    def begin_phase(self) -> None:
        """Hook run at the start of every simulation phase."""

    def end_phase(self, cpu: int) -> None:
        """Hook run when ``cpu`` finishes a simulation phase."""

    def print_deadlock(self) -> None:
        """Hook that reports internal state when the simulation stalls."""