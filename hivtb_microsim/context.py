"""Immutable simulation context handed to every updater at construction."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Union

from hivtb_microsim.config import SimulationConfig, default_config
from hivtb_microsim.patient import Patient
from hivtb_microsim.rng import FixedSequenceSource, RandomSource
from hivtb_microsim.tables import InputTables
from hivtb_microsim.trace import Tracer


DrawSource = Union[RandomSource, FixedSequenceSource]


@dataclass(frozen=True)
class SimContext:
    """Configuration, tables, randomness and trace sink for one run.

    Several contexts can coexist (e.g. two scenarios side by side); nothing
    here is process-global.
    """
    config: SimulationConfig = field(default_factory=default_config)
    tables: InputTables = field(default_factory=InputTables)
    rng: DrawSource = field(default_factory=lambda: RandomSource(42))
    tracer: Tracer = field(default_factory=Tracer)

    def trace(self, patient: Patient, level: int, message: str) -> None:
        """Write a trace line for a traced patient."""
        if patient.trace_enabled:
            self.tracer.write(level, message)

    def draw(self, stream_id: int, patient: Patient) -> float:
        return self.rng.draw(stream_id, patient.patient_id)

    def draw_gaussian(self, mean: float, sd: float, stream_id: int,
                      patient: Patient) -> float:
        return self.rng.draw_gaussian(mean, sd, stream_id, patient.patient_id)


class PatientUpdater(Protocol):
    """Two-phase lifecycle shared by every monthly module."""

    def __init__(self, ctx: SimContext) -> None: ...

    def perform_initial_updates(self, patient: Patient) -> None:
        """Called once when the patient is created."""

    def perform_monthly_updates(self, patient: Patient) -> None:
        """Called once per simulated month."""
