"""Infection contract shared by all within-host parasite models.

A host owns a homogeneous list of Infection objects and never needs the
concrete type: it calls update_density() once per day, reads density,
and checkpoints each infection through the tagged codec in
plasmodyn.checkpoint.

Concrete models:
  - MolineauxInfection (plasmodyn.molineaux): multi-variant antigenic model
  - DummyInfection (here): saturating growth, for tests and light runs
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod

from plasmodyn.checkpoint import (
    CheckpointReader,
    CheckpointWriter,
    register_infection,
)


class Infection(ABC):
    """One parasite lineage inside one host.

    Attributes:
        genotype: Parasite genotype index; selects drug PD parameters.
        density: Current density (parasites/µl), ≥ 0.
        cumulative_exposure: Running sum of daily density since inoculation.
        age_days: Number of daily updates applied so far; maintained by the
            owning host and passed back to update_density().
    """

    checkpoint_tag: str = ""

    def __init__(self, genotype: int = 0):
        self.genotype = genotype
        self.density = 0.0
        self.cumulative_exposure = 0.0
        self.age_days = 0

    @abstractmethod
    def update_density(self, survival_factor: float, age_days: int) -> bool:
        """Advance one day.

        Args:
            survival_factor: Combined drug, vaccine and innate factor in (0, 1].
            age_days: Days since this infection started (0 on the first call).

        Returns:
            True if the infection is extinct and must be removed.
        """

    def immunity_survival_factor(self, age_years: float, cumulative_h: float,
                                 cumulative_y: float) -> float:
        """Survival factor from the host's aggregate immune memory.

        Models with internal immune dynamics return 1.0.
        """
        return 1.0

    # ── checkpointing ─────────────────────────────────────────────────

    def write(self, sink: CheckpointWriter) -> None:
        sink.write_int(self.genotype)
        sink.write_float(self.density)
        sink.write_float(self.cumulative_exposure)
        sink.write_int(self.age_days)

    def _restore(self, source: CheckpointReader) -> None:
        self.genotype = source.read_int()
        self.density = source.read_float()
        self.cumulative_exposure = source.read_float()
        self.age_days = source.read_int()

    @classmethod
    def read(cls, source: CheckpointReader) -> 'Infection':
        """Construct an instance from a checkpoint stream (no random draws)."""
        infection = cls.__new__(cls)
        infection._restore(source)
        return infection


# ═══════════════════════════════════════════════════════════════════════
# DUMMY INFECTION
# ═══════════════════════════════════════════════════════════════════════

DUMMY_INITIAL_DENSITY = 4.0
DUMMY_DAILY_GROWTH = math.sqrt(8.0)   # eightfold per two-day cycle
DUMMY_MAX_DENSITY = 20000.0


@register_infection("dummy")
class DummyInfection(Infection):
    """Deterministic growth capped at DUMMY_MAX_DENSITY.

    Extinct once density drops below one parasite per µl.
    """

    def __init__(self, genotype: int = 0):
        super().__init__(genotype)
        self.density = DUMMY_INITIAL_DENSITY

    def update_density(self, survival_factor: float, age_days: int) -> bool:
        if age_days > 0:
            self.density = min(DUMMY_MAX_DENSITY,
                               self.density * DUMMY_DAILY_GROWTH * survival_factor)
        self.cumulative_exposure += self.density
        return self.density < 1.0
