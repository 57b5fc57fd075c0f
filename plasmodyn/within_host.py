"""Within-host state of one human: infections, immunity, drugs, morbidity.

One WithinHostState per host. Daily sequence in update():
  1. Immune memory carried over from yesterday decays (effector decay, then
     asexual decay saturating against h*, Y*); the exposure lag is taken here
  2. Add new infections (capped at max_infections; excess dropped)
  3. For each infection: survival factor = vaccine × innate × drug × immunity,
     then update_density(); extinct infections are removed
  4. Aggregate total density and the day's peak infection density
  5. Accumulate immune exposure (h += new infections, Y += total density)
  6. Drug concentrations advance to the next day
  7. Morbidity from the pathogenesis classifier

Nothing here is shared between hosts; each host draws from its own
RandomSource.
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Protocol, Sequence, Tuple, Dict

from plasmodyn.checkpoint import (
    CheckpointReader,
    CheckpointWriter,
    read_infection,
    write_infection,
)
from plasmodyn.config import SimulationConfig
from plasmodyn.infection import DummyInfection, Infection
from plasmodyn.molineaux import MolineauxInfection, MolineauxParams
from plasmodyn.pkpd import Dose, DrugType, PkPdModel, build_drug_types
from plasmodyn.rng import RandomSource
from plasmodyn.types import HostSummary, InfectionModel, MorbidityState

logger = logging.getLogger(__name__)

DEFAULT_BODY_MASS = 60.0   # kg


# ═══════════════════════════════════════════════════════════════════════
# PATHOGENESIS CONTRACT
# ═══════════════════════════════════════════════════════════════════════

class PathogenesisClassifier(Protocol):
    """Maps a host's parasite burden to a morbidity outcome."""

    def determine_morbidity(
        self,
        age_years: float,
        peak_density: float,
        total_density: float,
    ) -> MorbidityState:
        ...


class NoPathogenesis:
    """Classifier that never reports illness."""

    def determine_morbidity(self, age_years: float, peak_density: float,
                            total_density: float) -> MorbidityState:
        return MorbidityState.NONE


# ═══════════════════════════════════════════════════════════════════════
# WITHIN-HOST STATE
# ═══════════════════════════════════════════════════════════════════════

class WithinHostState:
    """Infections and immune memory of one host.

    Args:
        config: Validated configuration.
        random: This host's random stream.
        pathogenesis: Morbidity classifier (default: NoPathogenesis).
        drug_types: Shared drug types; built from config when omitted.
        molineaux_params: Shared infection parameters; built from config
            when omitted.
    """

    def __init__(
        self,
        config: SimulationConfig,
        random: RandomSource,
        pathogenesis: Optional[PathogenesisClassifier] = None,
        drug_types: Optional[Dict[str, DrugType]] = None,
        molineaux_params: Optional[MolineauxParams] = None,
    ):
        self._setup(config, random, pathogenesis, drug_types, molineaux_params)
        sigma_i = math.sqrt(config.within_host.sigma_i_sq)
        self.innate_survival_factor = math.exp(-random.gaussian(0.0, sigma_i))

    def _setup(self, config, random, pathogenesis, drug_types, molineaux_params) -> None:
        wh = config.within_host
        self.random = random
        self.infection_model = InfectionModel(wh.infection_model)
        self.max_infections = wh.max_infections
        self.detection_limit = wh.detection_limit
        self.imm_penalty = 1.0 - math.exp(wh.immunity_penalty)
        self.imm_effector_remain = math.exp(-wh.immune_effector_decay)
        self.asex_imm_remain = math.exp(-wh.asexual_immunity_decay)
        self.cumulative_h_star = wh.cumulative_h_star
        self.cumulative_y_star = wh.cumulative_y_star

        if molineaux_params is None:
            molineaux_params = MolineauxParams.from_config(config.molineaux)
        self.molineaux_params = molineaux_params

        self.pharmacology_enabled = config.pharmacology.enabled
        if drug_types is None:
            drug_types = (build_drug_types(config.pharmacology)
                          if self.pharmacology_enabled else {})
        self.pkpd = PkPdModel(drug_types, random)
        self.pathogenesis = pathogenesis if pathogenesis is not None else NoPathogenesis()

        self.infections: List[Infection] = []
        self.innate_survival_factor = 1.0
        self.cumulative_h = 0.0
        self.cumulative_y = 0.0
        self.cumulative_y_lag = 0.0
        self.total_density = 0.0
        self.time_step_max_density = 0.0
        self.morbidity = MorbidityState.NONE

    # ── infections ────────────────────────────────────────────────────

    @property
    def n_infections(self) -> int:
        return len(self.infections)

    def create_infection(self) -> Infection:
        if self.infection_model is InfectionModel.MOLINEAUX:
            return MolineauxInfection(self.molineaux_params, self.random)
        return DummyInfection()

    def _add_infections(self, n_new: int) -> int:
        n_added = max(0, min(n_new, self.max_infections - len(self.infections)))
        if n_added < n_new:
            logger.debug("infection cap %d reached: dropped %d of %d new infections",
                         self.max_infections, n_new - n_added, n_new)
        for _ in range(n_added):
            self.infections.append(self.create_infection())
        return n_added

    def import_infection(self) -> None:
        """Add one infection (e.g. imported case), respecting the cap."""
        self.cumulative_h += self._add_infections(1)

    def clear_infections(self) -> None:
        """Remove all blood-stage infections."""
        self.infections = []
        self.total_density = 0.0
        self.time_step_max_density = 0.0

    # ── daily update ──────────────────────────────────────────────────

    def update(
        self,
        n_new_infections: int,
        age_years: float,
        vaccine_factor: float = 1.0,
        body_mass: float = DEFAULT_BODY_MASS,
    ) -> MorbidityState:
        """Advance this host by one day.

        Args:
            n_new_infections: Successful inoculations today.
            age_years: Host age.
            vaccine_factor: Blood-stage vaccine survival factor in (0, 1].
            body_mass: Host body mass (kg), for drug elimination.

        Returns:
            Today's morbidity outcome.
        """
        # Decay before taking the lag: Y - Y_lag is only today's exposure
        self._update_immune_status()
        self.cumulative_y_lag = self.cumulative_y

        # Immunity acting today excludes today's infections and exposure
        cumulative_h = self.cumulative_h
        cumulative_y = self.cumulative_y

        n_added = self._add_infections(n_new_infections)

        base_factor = vaccine_factor * self.innate_survival_factor
        total = 0.0
        peak = 0.0
        survivors = []
        for infection in self.infections:
            survival_factor = (base_factor
                               * self.pkpd.drug_factor(infection, body_mass)
                               * infection.immunity_survival_factor(
                                   age_years, cumulative_h, cumulative_y))
            extinct = infection.update_density(survival_factor, infection.age_days)
            infection.age_days += 1
            if extinct:
                logger.debug("infection extinct after %d days", infection.age_days)
                continue
            survivors.append(infection)
            total += infection.density
            peak = max(peak, infection.density)

        self.infections = survivors
        self.total_density = total
        self.time_step_max_density = peak

        self.cumulative_h += n_added
        self.cumulative_y += total

        self.pkpd.decay_drugs(body_mass)

        self.morbidity = self.pathogenesis.determine_morbidity(age_years, peak, total)
        return self.morbidity

    def _update_immune_status(self) -> None:
        if self.imm_effector_remain < 1.0:
            self.cumulative_h *= self.imm_effector_remain
            self.cumulative_y *= self.imm_effector_remain
        if self.asex_imm_remain < 1.0:
            a = self.asex_imm_remain
            self.cumulative_h *= a / (1.0 + self.cumulative_h * (1.0 - a) / self.cumulative_h_star)
            self.cumulative_y *= a / (1.0 + self.cumulative_y * (1.0 - a) / self.cumulative_y_star)

    # ── immunity interventions ────────────────────────────────────────

    def immunity_penalisation(self) -> None:
        """Roll today's acquired-immunity gain back toward its lagged value."""
        self.cumulative_y = (self.cumulative_y_lag
                             - self.imm_penalty * (self.cumulative_y - self.cumulative_y_lag))
        if self.cumulative_y < 0.0:
            self.cumulative_y = 0.0

    def immune_suppression(self) -> None:
        """Clear all acquired immune memory."""
        self.cumulative_h = 0.0
        self.cumulative_y = 0.0
        self.cumulative_y_lag = 0.0

    # ── drugs ─────────────────────────────────────────────────────────

    def medicate(self, abbrev: str, qty: float, time: float = 0.0) -> None:
        self.pkpd.medicate(abbrev, qty, time)

    def treatment(self, doses: Sequence[Dose]) -> None:
        """Apply a treatment course for today.

        With pharmacology enabled each dose is administered; otherwise
        treatment clears all blood-stage infections immediately.
        """
        if not self.pharmacology_enabled:
            self.clear_infections()
            return
        for dose in doses:
            self.medicate(dose.abbrev, dose.qty, dose.time)

    # ── reporting ─────────────────────────────────────────────────────

    def parasite_density_detectible(self) -> bool:
        return self.total_density > self.detection_limit

    def count_infections(self) -> Tuple[int, int]:
        """Return (total infections, patent infections)."""
        n_patent = sum(1 for inf in self.infections if inf.density > self.detection_limit)
        return len(self.infections), n_patent

    def summarize(self) -> HostSummary:
        n_infections, n_patent = self.count_infections()
        return HostSummary(
            n_infections=n_infections,
            n_patent_infections=n_patent,
            total_density=self.total_density,
            is_patent=self.parasite_density_detectible(),
        )

    # ── checkpointing ─────────────────────────────────────────────────

    def write(self, sink: CheckpointWriter) -> None:
        sink.write_float(self.innate_survival_factor)
        sink.write_float(self.cumulative_h)
        sink.write_float(self.cumulative_y)
        sink.write_float(self.cumulative_y_lag)
        sink.write_float(self.total_density)
        sink.write_float(self.time_step_max_density)
        sink.write_int(int(self.morbidity))
        sink.write_int(len(self.infections))
        for infection in self.infections:
            write_infection(sink, infection)
        self.pkpd.write(sink)

    @classmethod
    def read(
        cls,
        source: CheckpointReader,
        config: SimulationConfig,
        random: RandomSource,
        pathogenesis: Optional[PathogenesisClassifier] = None,
        drug_types: Optional[Dict[str, DrugType]] = None,
        molineaux_params: Optional[MolineauxParams] = None,
    ) -> 'WithinHostState':
        """Restore a host written by write(). Makes no random draws."""
        host = cls.__new__(cls)
        host._setup(config, random, pathogenesis, drug_types, molineaux_params)
        host.innate_survival_factor = source.read_float()
        host.cumulative_h = source.read_float()
        host.cumulative_y = source.read_float()
        host.cumulative_y_lag = source.read_float()
        host.total_density = source.read_float()
        host.time_step_max_density = source.read_float()
        host.morbidity = MorbidityState(source.read_int())
        host.infections = [read_infection(source) for _ in range(source.read_int())]
        host.pkpd.restore(source)
        return host
