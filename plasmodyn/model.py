"""Host construction and single-host trajectory driver.

create_hosts() builds a population's WithinHostState objects, each bound
to its own RNG stream, sharing one set of immutable model parameters.

simulate_host() runs one host day by day under a fixed inoculation and
dosing schedule and records daily outputs. It is an analysis driver for
within-host trajectories, not a population scheduler.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from plasmodyn.config import SimulationConfig
from plasmodyn.molineaux import MolineauxParams
from plasmodyn.pkpd import Dose, build_drug_types
from plasmodyn.rng import RandomSource, create_rng_hierarchy, get_host_rng
from plasmodyn.within_host import (
    DEFAULT_BODY_MASS,
    PathogenesisClassifier,
    WithinHostState,
)


def create_hosts(
    config: SimulationConfig,
    rngs: Dict[str, np.random.Generator],
    n_hosts: Optional[int] = None,
    pathogenesis: Optional[PathogenesisClassifier] = None,
) -> List[WithinHostState]:
    """One WithinHostState per host, host i drawing from stream 'host_i'.

    Args:
        config: Validated configuration.
        rngs: RNG hierarchy with at least n_hosts host streams.
        n_hosts: Defaults to config.simulation.n_hosts.
        pathogenesis: Classifier shared by all hosts.
    """
    if n_hosts is None:
        n_hosts = config.simulation.n_hosts
    drug_types = (build_drug_types(config.pharmacology)
                  if config.pharmacology.enabled else {})
    molineaux_params = MolineauxParams.from_config(config.molineaux)
    return [
        WithinHostState(
            config, RandomSource(get_host_rng(rngs, i)),
            pathogenesis=pathogenesis,
            drug_types=drug_types,
            molineaux_params=molineaux_params,
        )
        for i in range(n_hosts)
    ]


@dataclass
class HostTrajectoryResult:
    """Daily outputs of one simulated host."""
    n_days: int
    total_density: np.ndarray          # (n_days,) parasites/µl
    n_infections: np.ndarray           # (n_days,) int32
    n_patent_infections: np.ndarray    # (n_days,) int32
    patent: np.ndarray                 # (n_days,) bool
    cumulative_y: np.ndarray           # (n_days,) immune exposure after decay
    morbidity: np.ndarray              # (n_days,) int8 MorbidityState flags
    concentrations: Dict[str, np.ndarray] = field(default_factory=dict)
    detection_limit: float = 0.0

    @property
    def days_patent(self) -> int:
        return int(self.patent.sum())

    @property
    def peak_density(self) -> float:
        return float(self.total_density.max()) if self.n_days else 0.0


def simulate_host(
    config: SimulationConfig,
    n_days: int,
    age_years: float = 20.0,
    seed: Optional[int] = None,
    inoculation_days: Iterable[int] = (0,),
    dose_schedule: Optional[Mapping[int, Sequence[Dose]]] = None,
    body_mass: float = DEFAULT_BODY_MASS,
    vaccine_factor: float = 1.0,
    host: Optional[WithinHostState] = None,
) -> HostTrajectoryResult:
    """Run one host for n_days.

    On each day: today's treatment (if scheduled), then update() with the
    number of inoculations scheduled for today.

    Args:
        config: Validated configuration.
        n_days: Days to simulate.
        age_years: Age at day 0.
        seed: Master seed; defaults to config.simulation.seed.
        inoculation_days: Days of new infections (repeat a day for several).
        dose_schedule: {day: [Dose, ...]}.
        body_mass: Host body mass (kg).
        vaccine_factor: Blood-stage vaccine survival factor.
        host: Continue an existing host instead of creating one.

    Returns:
        HostTrajectoryResult with daily arrays.
    """
    if host is None:
        rngs = create_rng_hierarchy(
            config.simulation.seed if seed is None else seed, n_hosts=1)
        host = create_hosts(config, rngs, n_hosts=1)[0]

    inoculations = Counter(inoculation_days)
    dose_schedule = dose_schedule or {}
    drug_names = list(host.pkpd.drug_types)

    total_density = np.zeros(n_days, dtype=np.float64)
    n_infections = np.zeros(n_days, dtype=np.int32)
    n_patent = np.zeros(n_days, dtype=np.int32)
    patent = np.zeros(n_days, dtype=bool)
    cumulative_y = np.zeros(n_days, dtype=np.float64)
    morbidity = np.zeros(n_days, dtype=np.int8)
    concentrations = {name: np.zeros(n_days, dtype=np.float64) for name in drug_names}

    for day in range(n_days):
        if day in dose_schedule:
            host.treatment(dose_schedule[day])
        state = host.update(inoculations.get(day, 0), age_years + day / 365.0,
                            vaccine_factor=vaccine_factor, body_mass=body_mass)

        summary = host.summarize()
        total_density[day] = summary.total_density
        n_infections[day] = summary.n_infections
        n_patent[day] = summary.n_patent_infections
        patent[day] = summary.is_patent
        cumulative_y[day] = host.cumulative_y
        morbidity[day] = int(state)
        for name in drug_names:
            concentrations[name][day] = host.pkpd.concentration(name)

    return HostTrajectoryResult(
        n_days=n_days,
        total_density=total_density,
        n_infections=n_infections,
        n_patent_infections=n_patent,
        patent=patent,
        cumulative_y=cumulative_y,
        morbidity=morbidity,
        concentrations=concentrations,
        detection_limit=host.detection_limit,
    )
