"""Configuration system for plasmodyn.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → sweep overrides

Sections map 1:1 to YAML top-level keys. Model-selection flags are read
once here and turned into immutable parameter objects by the model
modules (MolineauxParams, DrugType); nothing is kept as global state.

Design decisions:
  - Gamma distributions are re-parameterised from (mean, sd):
    shape = mean²/sd², scale = sd²/mean
  - Critical densities sampled independently are k * draw**10
"""

from __future__ import annotations

import copy
import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from plasmodyn.types import MAX_INFECTIONS, InfectionModel


class ScenarioConfigError(ValueError):
    """Invalid or inconsistent scenario configuration. Always fatal."""


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Top-level run control."""
    seed: int = 42
    n_hosts: int = 1


@dataclass
class WithinHostSection:
    """Host-level aggregation and immunity parameters."""
    infection_model: str = "molineaux"
    max_infections: int = MAX_INFECTIONS
    detection_limit: float = 40.0        # parasites/µl

    # Innate survival factor: exp(-N(0, sigma_i)), sampled once per host
    sigma_i_sq: float = 10.1734

    # Immune memory decay (per day) and saturation scales
    immunity_penalty: float = 0.0        # immPenalty = 1 - exp(immunity_penalty)
    immune_effector_decay: float = 0.0
    asexual_immunity_decay: float = 0.0
    cumulative_h_star: float = 97.3153
    cumulative_y_star: float = 35158523.31


@dataclass
class MolineauxSection:
    """Multi-variant infection model options.

    pairwise_pstar_sample: if True, draw (Pstar_c, Pstar_m) jointly from the
        35-patient malaria-therapy table; otherwise draw each independently
        from the configured distributions below.
    """
    multi_factor_gamma: bool = False
    mean_multi_factor: float = 16.0
    sd_multi_factor: float = 10.4

    pairwise_pstar_sample: bool = True

    # Tenth root of the density at the first local maximum / K_C
    first_local_maximum_gamma: bool = False
    mean_local_max_density: Optional[float] = None
    sd_local_max_density: Optional[float] = None

    # Tenth root of the patency-duration density / K_M
    mean_duration_gamma: bool = False
    mean_diff_pos_days: Optional[float] = None
    sd_diff_pos_days: Optional[float] = None


@dataclass
class PDParameters:
    """Pharmacodynamic parameters for one parasite genotype."""
    max_killing_rate: float = 3.45   # d⁻¹
    ic50: float = 0.02               # mg/l
    slope: float = 1.6               # Hill coefficient


@dataclass
class DrugTypeSection:
    """One drug's pharmacokinetic and pharmacodynamic description."""
    abbrev: str = ""
    compartments: int = 1
    vol_dist: float = 173.0          # l
    vol_dist_cv: float = 0.0         # 0 = use the mean for every host
    elimination_rate: float = 0.0693 # d⁻¹ at 1 kg body mass
    mass_exponent: float = 0.0       # k = elimination_rate * mass**(-mass_exponent)
    pd: List[PDParameters] = field(default_factory=lambda: [PDParameters()])


@dataclass
class PharmacologySection:
    """PK/PD model switch and drug list."""
    enabled: bool = False
    drugs: List[DrugTypeSection] = field(default_factory=list)


@dataclass
class SimulationConfig:
    """Complete configuration.

    Load from YAML via `load_config()`.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    within_host: WithinHostSection = field(default_factory=WithinHostSection)
    molineaux: MolineauxSection = field(default_factory=MolineauxSection)
    pharmacology: PharmacologySection = field(default_factory=PharmacologySection)


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _drug_from_dict(data: Dict) -> DrugTypeSection:
    data = dict(data)  # don't mutate original
    pd_list = data.pop('pd', None)
    drug = _dict_to_section(DrugTypeSection, data)
    if pd_list is not None:
        if isinstance(pd_list, dict):
            pd_list = [pd_list]
        drug.pd = [_dict_to_section(PDParameters, p) for p in pd_list]
    return drug


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    sections = {}
    section_map = {
        'simulation': SimulationSection,
        'within_host': WithinHostSection,
        'molineaux': MolineauxSection,
    }
    for key, cls in section_map.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()

    pharm = data.get('pharmacology')
    if isinstance(pharm, dict):
        pharm = dict(pharm)
        drugs = [_drug_from_dict(d) for d in pharm.pop('drugs', None) or []
                 if isinstance(d, dict)]
        section = _dict_to_section(PharmacologySection, pharm)
        section.drugs = drugs
        sections['pharmacology'] = section
    else:
        sections['pharmacology'] = PharmacologySection()

    return SimulationConfig(**sections)


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints.

    Raises:
        ScenarioConfigError: on the first violated constraint.
    """
    if config.simulation.seed < 0:
        raise ScenarioConfigError("simulation.seed must be non-negative")
    if config.simulation.n_hosts < 0:
        raise ScenarioConfigError("simulation.n_hosts must be non-negative")

    wh = config.within_host
    valid_models = {m.value for m in InfectionModel}
    if wh.infection_model not in valid_models:
        raise ScenarioConfigError(
            f"within_host.infection_model must be one of {sorted(valid_models)}, "
            f"got '{wh.infection_model}'"
        )
    if wh.max_infections < 1:
        raise ScenarioConfigError(
            f"within_host.max_infections must be >= 1, got {wh.max_infections}"
        )
    if wh.detection_limit < 0:
        raise ScenarioConfigError("within_host.detection_limit must be >= 0")
    if wh.sigma_i_sq < 0:
        raise ScenarioConfigError("within_host.sigma_i_sq must be >= 0")
    if wh.cumulative_h_star <= 0 or wh.cumulative_y_star <= 0:
        raise ScenarioConfigError(
            "within_host.cumulative_h_star and cumulative_y_star must be positive"
        )

    mol = config.molineaux
    if mol.sd_multi_factor <= 0 or mol.mean_multi_factor <= 0:
        raise ScenarioConfigError(
            "molineaux.mean_multi_factor and sd_multi_factor must be positive"
        )
    if not mol.pairwise_pstar_sample:
        required = {
            'mean_local_max_density': mol.mean_local_max_density,
            'sd_local_max_density': mol.sd_local_max_density,
            'mean_diff_pos_days': mol.mean_diff_pos_days,
            'sd_diff_pos_days': mol.sd_diff_pos_days,
        }
        missing = sorted(k for k, v in required.items() if v is None)
        if missing:
            raise ScenarioConfigError(
                f"molineaux.{', '.join(missing)} required when "
                f"pairwise_pstar_sample=False"
            )
        for gamma_flag, mean, sd, name in (
            (mol.first_local_maximum_gamma, mol.mean_local_max_density,
             mol.sd_local_max_density, 'local_max_density'),
            (mol.mean_duration_gamma, mol.mean_diff_pos_days,
             mol.sd_diff_pos_days, 'diff_pos_days'),
        ):
            if gamma_flag and (mean <= 0 or sd <= 0):
                raise ScenarioConfigError(
                    f"molineaux gamma sampling of {name} requires positive "
                    f"mean and sd, got mean={mean}, sd={sd}"
                )

    pharm = config.pharmacology
    if pharm.enabled and not pharm.drugs:
        raise ScenarioConfigError(
            "pharmacology.drugs required when pharmacology.enabled=True"
        )
    seen = set()
    for i, drug in enumerate(pharm.drugs):
        if not drug.abbrev:
            raise ScenarioConfigError(f"pharmacology.drugs[{i}].abbrev required")
        if drug.abbrev in seen:
            raise ScenarioConfigError(
                f"pharmacology.drugs: duplicate abbreviation '{drug.abbrev}'"
            )
        seen.add(drug.abbrev)
        if drug.compartments != 1:
            raise ScenarioConfigError(
                f"pharmacology.drugs[{i}].compartments: only the "
                f"one-compartment model is available, got {drug.compartments}"
            )
        if drug.vol_dist <= 0 or drug.vol_dist_cv < 0:
            raise ScenarioConfigError(
                f"pharmacology.drugs[{i}]: vol_dist must be positive and "
                f"vol_dist_cv non-negative"
            )
        if drug.elimination_rate <= 0:
            raise ScenarioConfigError(
                f"pharmacology.drugs[{i}].elimination_rate must be positive"
            )
        if not drug.pd:
            raise ScenarioConfigError(
                f"pharmacology.drugs[{i}].pd needs at least one entry"
            )
        for j, pd in enumerate(drug.pd):
            if pd.ic50 <= 0 or pd.slope <= 0 or pd.max_killing_rate < 0:
                raise ScenarioConfigError(
                    f"pharmacology.drugs[{i}].pd[{j}]: ic50 and slope must be "
                    f"positive, max_killing_rate non-negative"
                )


def config_to_dict(config: SimulationConfig) -> Dict:
    """Plain-dict view of a config (suitable for yaml.safe_dump)."""
    return dataclasses.asdict(config)


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    sweep_overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → sweep overrides.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        sweep_overrides: Optional dict of parameter sweep overrides.

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ScenarioConfigError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if sweep_overrides is not None:
        deep_merge(config_dict, copy.deepcopy(sweep_overrides))

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config
