"""Multi-variant antigenic-switching infection model.

Implements the within-host dynamics of Molineaux et al. (2001),
Parasitology 122:379-391, for one P. falciparum infection:
  - Up to MAX_VARIANTS antigenic variants, expressed lazily
  - Switching: a fraction S_PROB of each variant switches every two days,
    distributed over variants with geometric weights q^(i+1)
  - Three immune escape probabilities per two-day cycle:
      Sc  innate, variant-transcending   1 / (1 + (P/Pc*)^3)
      Sm  acquired, variant-transcending (1-β) / (1 + Y/Pm*) + β
      S_i acquired, variant-specific     1 / (1 + (Y_i/Pv*)^3)
  - The biology runs in two-day cycles; densities are reported daily by
    applying the square root of the two-day multiplier on each day
  - Any density below EXTINCTION_THRESHOLD is exactly 0

Per-infection random draws (in order): MAX_VARIANTS multiplication
factors, then the two critical densities.

References:
  - Molineaux L. et al. 2001, equations 1-11 (equation numbers cited inline)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from plasmodyn.checkpoint import (
    CheckpointReader,
    CheckpointWriter,
    register_infection,
)
from plasmodyn.config import MolineauxSection
from plasmodyn.infection import Infection
from plasmodyn.rng import RandomSource
from plasmodyn.types import EXTINCTION_THRESHOLD, MAX_VARIANTS, N_TAUS

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

SIGMA = 0.02                       # Variant-specific immunity decay (d⁻¹)
SIGMA_DECAY = math.exp(-2.0 * SIGMA)
RHO = 0.0                          # Variant-transcending decay (d⁻¹)
BETA = 0.01                        # Minimum escape from acquired transcending immunity
S_PROB = 0.02                      # Fraction switching per two-day cycle
Q = 0.3                            # Geometric switching parameter
K_C = 0.2                          # Pc* = K_C × first local maximum density
K_M = 0.04                         # Pm* = K_M × duration of patency
PSTAR_V = 30.0                     # Critical density, variant-specific response
C_MAX = 1.0                        # Max daily transcending antigenic stimulus (/µl)
INITIAL_DENSITY = 0.1              # Variant 0 seed density (parasites/µl)
SELECTION_CUTOFF = 0.1             # S_i below this → variant never selected

# Geometric selection weights q^(i+1), i = 0 .. MAX_VARIANTS-1
Q_POW = Q ** np.arange(1, MAX_VARIANTS + 1, dtype=np.float64)

# Malaria-therapy patients: (duration of patency in days,
# density at the first local maximum in parasites/µl).
CASE_SPECIFIC_DATA = np.array([
    [216, 18600], [198, 13080], [206, 45720], [366, 23760], [230, 60840],
    [172, 6000], [100, 2340], [236, 31440], [236, 453600], [120, 4240],
    [176, 195840], [178, 60120], [36, 8720], [44, 8000], [242, 395280],
    [70, 28320], [292, 200160], [248, 59320], [98, 66480], [176, 61200],
    [234, 169920], [226, 46800], [270, 19260], [278, 86040], [212, 110160],
    [264, 43200], [364, 133920], [184, 222480], [160, 21420], [220, 74160],
    [132, 210960], [176, 89280], [208, 105840], [330, 21600], [404, 156240],
], dtype=np.float64)
N_CASES = len(CASE_SPECIFIC_DATA)


# ═══════════════════════════════════════════════════════════════════════
# SAMPLING PARAMETERS
# ═══════════════════════════════════════════════════════════════════════

def gamma_shape_scale(mean: float, sd: float) -> Tuple[float, float]:
    """Gamma (shape, scale) with the given mean and standard deviation."""
    variance = sd * sd
    return mean * mean / variance, variance / mean


@dataclass(frozen=True)
class Distribution:
    """Gaussian(mean, sd) or Gamma(shape, scale) with the same moments."""
    use_gamma: bool
    a: float    # mean or shape
    b: float    # sd or scale

    @classmethod
    def from_moments(cls, mean: float, sd: float, use_gamma: bool) -> 'Distribution':
        if use_gamma:
            return cls(True, *gamma_shape_scale(mean, sd))
        return cls(False, mean, sd)

    def draw(self, random: RandomSource) -> float:
        if self.use_gamma:
            return random.gamma(self.a, self.b)
        return random.gaussian(self.a, self.b)


@dataclass(frozen=True)
class MolineauxParams:
    """Immutable creation-time parameters, built once from configuration.

    local_max / duration are None when critical densities are sampled
    pairwise from CASE_SPECIFIC_DATA.
    """
    multi_factor: Distribution = field(
        default_factory=lambda: Distribution(False, 16.0, 10.4)
    )
    local_max: Optional[Distribution] = None
    duration: Optional[Distribution] = None

    @property
    def pairwise_pstar_sample(self) -> bool:
        return self.local_max is None

    @classmethod
    def from_config(cls, section: MolineauxSection) -> 'MolineauxParams':
        multi = Distribution.from_moments(
            section.mean_multi_factor, section.sd_multi_factor,
            section.multi_factor_gamma,
        )
        if section.pairwise_pstar_sample:
            return cls(multi_factor=multi)
        return cls(
            multi_factor=multi,
            local_max=Distribution.from_moments(
                section.mean_local_max_density, section.sd_local_max_density,
                section.first_local_maximum_gamma,
            ),
            duration=Distribution.from_moments(
                section.mean_diff_pos_days, section.sd_diff_pos_days,
                section.mean_duration_gamma,
            ),
        )


def sample_multiplication_factors(
    params: MolineauxParams,
    random: RandomSource,
) -> np.ndarray:
    """One multiplication factor per variant slot, each ≥ 1 (eq. 11).

    Draws below 1.0 are discarded and redrawn.
    """
    m = np.zeros(MAX_VARIANTS, dtype=np.float64)
    for i in range(MAX_VARIANTS):
        while m[i] < 1.0:
            m[i] = params.multi_factor.draw(random)
    return m


def sample_critical_densities(
    params: MolineauxParams,
    random: RandomSource,
) -> Tuple[float, float]:
    """Return (Pstar_c, Pstar_m) for a new infection."""
    if params.pairwise_pstar_sample:
        patient = random.uniform(N_CASES)
        duration, local_max = CASE_SPECIFIC_DATA[patient]
        return K_C * float(local_max), K_M * float(duration)
    # Draws are raised to the tenth power, not used as exponents of 10
    pstar_c = K_C * params.local_max.draw(random) ** 10
    pstar_m = K_M * params.duration.draw(random) ** 10
    return pstar_c, pstar_m


# ═══════════════════════════════════════════════════════════════════════
# VARIANT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Variant:
    """State of one antigenic variant.

    pending_density holds the density of a variant emerging at the next
    even day; it is subject to the survival factor until promoted.
    """
    density: float = 0.0
    growth_rate: float = 0.0
    pending_density: float = 0.0
    specific_summation: float = 0.0
    lagged_density: np.ndarray = field(
        default_factory=lambda: np.zeros(N_TAUS, dtype=np.float64)
    )

    def update_density(self, survival_factor: float, age_days: int) -> float:
        # p(t+1) = p(t) × sqrt(p(t+2)/p(t)); two applications give p(t+2)
        self.density *= self.growth_rate
        self.density *= survival_factor
        self.pending_density *= survival_factor

        # Emerging variant is expressed on the even day (0 for extinct ones)
        if self.density == 0.0 and age_days % 2 == 0:
            self.density = self.pending_density

        # eq. 3
        if self.density < EXTINCTION_THRESHOLD:
            self.density = 0.0
        return self.density

    def update_specific_summation(self, age_days: int) -> float:
        """Decay and add the 8-day lagged density (eq. 6)."""
        index = (age_days % 8) // 2
        self.specific_summation = (self.specific_summation * SIGMA_DECAY
                                   + self.lagged_density[index])
        self.lagged_density[index] = self.density
        return self.specific_summation

    def update_growth_rate(self, switched_in: float, escape: float) -> None:
        """Growth multiplier for the next two days (eqs. 1-2).

        Args:
            switched_in: Density switching to this variant (p_i × P).
            escape: m_i × S_i × Sc × Sm.
        """
        new_density = ((1.0 - S_PROB) * self.density + S_PROB * switched_in) * escape
        if new_density < EXTINCTION_THRESHOLD:
            new_density = 0.0

        if self.density == 0.0:
            self.pending_density = new_density
            self.growth_rate = 0.0
        else:
            self.pending_density = 0.0
            self.growth_rate = math.sqrt(new_density / self.density)

    def is_zero(self) -> bool:
        return (self.density == 0.0 and self.growth_rate == 0.0
                and self.pending_density == 0.0
                and self.specific_summation == 0.0
                and not self.lagged_density.any())

    def write(self, sink: CheckpointWriter) -> None:
        nonzero = not self.is_zero()
        sink.write_bool(nonzero)
        if nonzero:
            sink.write_float(self.growth_rate)
            sink.write_float(self.density)
            sink.write_float(self.specific_summation)
            sink.write_float(self.pending_density)
            sink.write_array(self.lagged_density)

    @classmethod
    def read(cls, source: CheckpointReader) -> 'Variant':
        if not source.read_bool():
            return cls()
        variant = cls()
        variant.growth_rate = source.read_float()
        variant.density = source.read_float()
        variant.specific_summation = source.read_float()
        variant.pending_density = source.read_float()
        variant.lagged_density = source.read_array().astype(np.float64)
        return variant


# ═══════════════════════════════════════════════════════════════════════
# INFECTION
# ═══════════════════════════════════════════════════════════════════════

@register_infection("molineaux")
class MolineauxInfection(Infection):
    """One infection under the multi-variant model.

    Args:
        params: Creation-time sampling parameters.
        random: Host random stream; consumed only here, never in updates.
        genotype: Parasite genotype index.
        multiplication_factors: Fixed factors instead of sampling (length
            MAX_VARIANTS).
        critical_densities: Fixed (Pstar_c, Pstar_m) instead of sampling.
        initial_density: Seed density of variant 0.
    """

    def __init__(
        self,
        params: MolineauxParams,
        random: RandomSource,
        genotype: int = 0,
        multiplication_factors: Optional[Sequence[float]] = None,
        critical_densities: Optional[Tuple[float, float]] = None,
        initial_density: float = INITIAL_DENSITY,
    ):
        super().__init__(genotype)
        if multiplication_factors is None:
            self.multiplication_factors = sample_multiplication_factors(params, random)
        else:
            self.multiplication_factors = np.asarray(
                multiplication_factors, dtype=np.float64).copy()
            if self.multiplication_factors.shape != (MAX_VARIANTS,):
                raise ValueError(
                    f"multiplication_factors must have {MAX_VARIANTS} entries"
                )

        self.lagged_transcending = np.zeros(N_TAUS, dtype=np.float64)
        self.transcending_summation = 0.0
        self.variants: List[Variant] = [Variant(density=initial_density)]

        if critical_densities is None:
            self.pstar_c, self.pstar_m = sample_critical_densities(params, random)
        else:
            self.pstar_c, self.pstar_m = (float(x) for x in critical_densities)

    @property
    def n_variants(self) -> int:
        return len(self.variants)

    def update_density(self, survival_factor: float, age_days: int) -> bool:
        if age_days == 0:
            self.density = self.variants[0].density
        else:
            new_density = 0.0
            for variant in self.variants:
                new_density += variant.update_density(survival_factor, age_days)
            self.density = new_density

        self.cumulative_exposure += self.density

        if self.density <= EXTINCTION_THRESHOLD:
            return True

        # Recompute multipliers for days t+1 and t+2
        if age_days % 2 == 0:
            self._update_growth_rates(age_days)
        return False

    def _update_transcending_summation(self, age_days: int) -> float:
        """Add the 8-day lagged, capped density (eqs. 5, 8). RHO = 0: no decay."""
        index = (age_days % 8) // 2
        self.transcending_summation = (self.transcending_summation
                                       + self.lagged_transcending[index])
        self.lagged_transcending[index] = min(self.density, C_MAX)
        return self.transcending_summation

    def _update_growth_rates(self, age_days: int) -> None:
        density = self.density

        base = density / self.pstar_c
        sc = 1.0 / (1.0 + base * base * base)
        sm = ((1.0 - BETA)
              / (1.0 + self._update_transcending_summation(age_days) / self.pstar_m)
              + BETA)

        n_expressed = len(self.variants)
        s = np.ones(MAX_VARIANTS, dtype=np.float64)
        for i, variant in enumerate(self.variants):
            base = variant.update_specific_summation(age_days) / PSTAR_V
            s[i] = 1.0 / (1.0 + base * base * base)
        sigma_qs = float(np.dot(Q_POW, s))

        m = self.multiplication_factors
        for i in range(MAX_VARIANTS):
            # eq. 4: selection probability
            if s[i] < SELECTION_CUTOFF:
                p_i = 0.0
            else:
                p_i = Q_POW[i] * s[i] / sigma_qs

            if i < n_expressed:
                escape = m[i] * s[i] * sc * sm
                self.variants[i].update_growth_rate(p_i * density, escape)
            else:
                new_density = (S_PROB * p_i * density) * m[i] * s[i] * sc * sm
                if new_density >= EXTINCTION_THRESHOLD:
                    while len(self.variants) <= i:
                        self.variants.append(Variant())
                    self.variants[i].pending_density = new_density
                    logger.debug("variant %d emerging at day %d (%.3g/µl)",
                                 i, age_days, new_density)

    # ── checkpointing ─────────────────────────────────────────────────

    def write(self, sink: CheckpointWriter) -> None:
        super().write(sink)
        sink.write_float(self.transcending_summation)
        sink.write_array(self.multiplication_factors)
        sink.write_int(len(self.variants))
        for variant in self.variants:
            variant.write(sink)
        sink.write_array(self.lagged_transcending)
        sink.write_float(self.pstar_c)
        sink.write_float(self.pstar_m)

    def _restore(self, source: CheckpointReader) -> None:
        super()._restore(source)
        self.transcending_summation = source.read_float()
        self.multiplication_factors = source.read_array().astype(np.float64)
        n_variants = source.read_int()
        self.variants = [Variant.read(source) for _ in range(n_variants)]
        self.lagged_transcending = source.read_array().astype(np.float64)
        self.pstar_c = source.read_float()
        self.pstar_m = source.read_float()
