"""Pharmacokinetic / pharmacodynamic drug action.

Per host, one concentration model per drug type present in the blood,
created lazily at the first dose and kept for the host's lifetime.

PK (one compartment):
  C(t) = C(t0) × exp(−k (t − t0)) between doses; C += qty / V at a dose
  k = elimination_rate × body_mass^(−mass_exponent)

PD (Hill-curve killing, integrated analytically over each segment):
  dlnP/dt = −Vmax × C^n / (C^n + IC50^n)
  factor  = ((IC50^n + C1^n) / (IC50^n + C0^n)) ^ (Vmax / (k n))

Daily protocol: any number of medicate() calls and calculate_drug_factor()
queries (one per infection), then exactly one update_concentration().
"""

from __future__ import annotations

import bisect
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

import numpy as np

from plasmodyn.checkpoint import CheckpointReader, CheckpointWriter
from plasmodyn.config import DrugTypeSection, PDParameters, PharmacologySection
from plasmodyn.rng import RandomSource

if TYPE_CHECKING:
    from plasmodyn.infection import Infection

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# DRUG TYPES
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PDCurve:
    """PD parameters with IC50^n precomputed."""
    max_killing_rate: float
    slope: float
    ic50_pow_slope: float

    @classmethod
    def from_config(cls, pd: PDParameters) -> 'PDCurve':
        return cls(pd.max_killing_rate, pd.slope, pd.ic50 ** pd.slope)


@dataclass(frozen=True)
class DrugType:
    """Immutable description of one drug, shared by every host."""
    abbrev: str
    vol_dist: float
    vol_dist_cv: float
    elimination_rate: float
    mass_exponent: float
    pd: Tuple[PDCurve, ...]

    @classmethod
    def from_config(cls, section: DrugTypeSection) -> 'DrugType':
        return cls(
            abbrev=section.abbrev,
            vol_dist=section.vol_dist,
            vol_dist_cv=section.vol_dist_cv,
            elimination_rate=section.elimination_rate,
            mass_exponent=section.mass_exponent,
            pd=tuple(PDCurve.from_config(p) for p in section.pd),
        )

    def sample_vol_dist(self, random: RandomSource) -> float:
        """Volume of distribution for a new host.

        Log-normal with mean vol_dist and coefficient of variation
        vol_dist_cv; no draw is made when vol_dist_cv is 0.
        """
        if self.vol_dist_cv == 0.0:
            return self.vol_dist
        sigma = math.sqrt(math.log(1.0 + self.vol_dist_cv ** 2))
        mu = math.log(self.vol_dist) - 0.5 * sigma * sigma
        return math.exp(random.gaussian(mu, sigma))

    def elimination_rate_constant(self, body_mass: float) -> float:
        return self.elimination_rate * body_mass ** (-self.mass_exponent)

    def pd_for(self, genotype: int) -> PDCurve:
        if not 0 <= genotype < len(self.pd):
            raise IndexError(
                f"Drug '{self.abbrev}' has PD parameters for genotypes "
                f"0–{len(self.pd) - 1}, got genotype {genotype}"
            )
        return self.pd[genotype]


@dataclass(frozen=True)
class Dose:
    """A single administration of a drug.

    abbrev : drug abbreviation (must be configured)
    qty    : amount of active ingredient, mg
    time   : days after the start of the current day
    """
    abbrev: str
    qty: float
    time: float = 0.0


def build_drug_types(section: PharmacologySection) -> Dict[str, DrugType]:
    """Drug types by abbreviation, in configuration order."""
    return {d.abbrev: DrugType.from_config(d) for d in section.drugs}


def segment_drug_factor(pd: PDCurve, k: float, c0: float, duration: float) -> float:
    """Survival factor over `duration` days starting at concentration c0."""
    if duration <= 0.0 or c0 <= 0.0 or pd.max_killing_rate == 0.0:
        return 1.0
    c1 = c0 * math.exp(-k * duration)
    n = pd.slope
    ratio = (pd.ic50_pow_slope + c1 ** n) / (pd.ic50_pow_slope + c0 ** n)
    return ratio ** (pd.max_killing_rate / (k * n))


# ═══════════════════════════════════════════════════════════════════════
# CONCENTRATION MODELS
# ═══════════════════════════════════════════════════════════════════════

class DrugConcentrationModel(ABC):
    """Blood concentration of one drug in one host.

    Attributes:
        doses: (time in days since start of today, added concentration
            in mg/l) pairs, ordered by time. Doses at time ≥ 1 belong to
            later days and are carried over by update_concentration().
        vol_dist: Volume of distribution (l), sampled at creation.
        concentration: Concentration at the start of today (mg/l).
    """

    def __init__(self, drug_type: DrugType, vol_dist: float):
        self.drug_type = drug_type
        self.vol_dist = vol_dist
        self.concentration = 0.0
        self.doses: List[Tuple[float, float]] = []

    def medicate(self, time: float, qty: float) -> None:
        """Record a dose of `qty` mg at `time` days after the start of today.

        Raises:
            ValueError: If time or qty is negative or not finite.
        """
        if not (math.isfinite(qty) and qty >= 0.0):
            raise ValueError(f"Invalid dose quantity for {self.drug_type.abbrev}: {qty}")
        if not (math.isfinite(time) and time >= 0.0):
            raise ValueError(f"Invalid dose time for {self.drug_type.abbrev}: {time}")
        bisect.insort(self.doses, (time, qty / self.vol_dist))

    def _todays_doses(self) -> List[Tuple[float, float]]:
        return [d for d in self.doses if d[0] < 1.0]

    @abstractmethod
    def concentration_at(self, time: float, body_mass: float) -> float:
        """Concentration `time` days into today, including today's doses at ≤ time."""

    @abstractmethod
    def update_concentration(self, body_mass: float) -> None:
        """Advance to the start of tomorrow and clear today's doses."""

    @abstractmethod
    def calculate_drug_factor(self, infection: 'Infection', body_mass: float) -> float:
        """Parasite survival factor in (0, 1] over today. No side effects."""

    def write(self, sink: CheckpointWriter) -> None:
        sink.write_float(self.vol_dist)
        sink.write_float(self.concentration)
        sink.write_array(np.array(self.doses, dtype=np.float64).reshape(-1, 2))

    @classmethod
    def read(cls, source: CheckpointReader, drug_type: DrugType) -> 'DrugConcentrationModel':
        model = cls(drug_type, source.read_float())
        model.concentration = source.read_float()
        model.doses = [(float(t), float(c)) for t, c in source.read_array()]
        return model


class OneCompartmentDrug(DrugConcentrationModel):
    """First-order elimination from a single well-mixed compartment."""

    def concentration_at(self, time: float, body_mass: float) -> float:
        k = self.drug_type.elimination_rate_constant(body_mass)
        c = self.concentration
        t = 0.0
        for dose_time, added in self._todays_doses():
            if dose_time > time:
                break
            c = c * math.exp(-k * (dose_time - t)) + added
            t = dose_time
        return c * math.exp(-k * (time - t))

    def update_concentration(self, body_mass: float) -> None:
        k = self.drug_type.elimination_rate_constant(body_mass)
        c = self.concentration
        t = 0.0
        for dose_time, added in self._todays_doses():
            c = c * math.exp(-k * (dose_time - t)) + added
            t = dose_time
        self.concentration = c * math.exp(-k * (1.0 - t))
        self.doses = [(time - 1.0, added) for time, added in self.doses if time >= 1.0]

    def calculate_drug_factor(self, infection: 'Infection', body_mass: float) -> float:
        pd = self.drug_type.pd_for(infection.genotype)
        k = self.drug_type.elimination_rate_constant(body_mass)
        factor = 1.0
        c = self.concentration
        t = 0.0
        for dose_time, added in self._todays_doses():
            factor *= segment_drug_factor(pd, k, c, dose_time - t)
            c = c * math.exp(-k * (dose_time - t)) + added
            t = dose_time
        return factor * segment_drug_factor(pd, k, c, 1.0 - t)


def create_drug_model(drug_type: DrugType, random: RandomSource) -> DrugConcentrationModel:
    return OneCompartmentDrug(drug_type, drug_type.sample_vol_dist(random))


# ═══════════════════════════════════════════════════════════════════════
# PER-HOST CONTAINER
# ═══════════════════════════════════════════════════════════════════════

class PkPdModel:
    """All drug concentration models of one host.

    With no drug types configured, every drug factor is 1.0.
    """

    def __init__(self, drug_types: Dict[str, DrugType], random: Optional[RandomSource]):
        self.drug_types = drug_types
        self.random = random
        self.drugs: Dict[str, DrugConcentrationModel] = {}

    def medicate(self, abbrev: str, qty: float, time: float) -> None:
        """Administer `qty` mg of drug `abbrev` at `time` days into today.

        Raises:
            KeyError: If the drug is not configured.
            ValueError: If the dose is malformed.
        """
        if abbrev not in self.drug_types:
            raise KeyError(f"Unknown drug '{abbrev}'. Configured: {sorted(self.drug_types)}")
        drug = self.drugs.get(abbrev)
        if drug is None:
            drug = create_drug_model(self.drug_types[abbrev], self.random)
            self.drugs[abbrev] = drug
            logger.debug("created %s concentration model (V=%.4g l)", abbrev, drug.vol_dist)
        drug.medicate(time, qty)

    def drug_factor(self, infection: 'Infection', body_mass: float) -> float:
        factor = 1.0
        for drug in self.drugs.values():
            factor *= drug.calculate_drug_factor(infection, body_mass)
        return factor

    def decay_drugs(self, body_mass: float) -> None:
        for drug in self.drugs.values():
            drug.update_concentration(body_mass)

    def concentration(self, abbrev: str) -> float:
        """Start-of-day concentration (mg/l); 0 if never administered."""
        drug = self.drugs.get(abbrev)
        return drug.concentration if drug is not None else 0.0

    def write(self, sink: CheckpointWriter) -> None:
        sink.write_int(len(self.drugs))
        for abbrev, drug in self.drugs.items():
            sink.write_str(abbrev)
            drug.write(sink)

    def restore(self, source: CheckpointReader) -> None:
        self.drugs = {}
        for _ in range(source.read_int()):
            abbrev = source.read_str()
            self.drugs[abbrev] = OneCompartmentDrug.read(source, self.drug_types[abbrev])
