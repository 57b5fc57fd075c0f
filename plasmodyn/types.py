"""Core data types for plasmodyn.

This module holds:
  - Model-wide constants (variant slots, ring-buffer length, extinction floor)
  - InfectionModel and MorbidityState enumerations
  - HostSummary, the reporting record handed to the host scheduler

All modules import these types from here.
"""

from dataclasses import dataclass
from enum import Enum, IntFlag


# ═══════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

MAX_VARIANTS = 64           # Antigenic variant slots per infection
N_TAUS = 4                  # Lagged-density ring length (8 days at 2-day steps)
EXTINCTION_THRESHOLD = 1.0e-5   # parasites/µl; anything below is exactly 0
MAX_INFECTIONS = 21         # Default cap on concurrent infections per host


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class InfectionModel(str, Enum):
    """Which Infection subclass a host creates on inoculation."""
    MOLINEAUX = "molineaux"   # Multi-variant antigenic-switching model
    DUMMY = "dummy"           # Simple saturating growth


class MorbidityState(IntFlag):
    """Pathogenesis outcome for one time step.

    Flags may be combined, e.g. SICK | MALARIA | SEVERE.
    """
    NONE        = 0
    SICK        = 0x1    # Sick, but not from malaria
    MALARIA     = 0x2    # Sick from malaria
    SEVERE      = 0x8    # Severe malaria
    COINFECTION = 0x4    # Malaria with a co-infection


# ═══════════════════════════════════════════════════════════════════════
# REPORTING
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class HostSummary:
    """Per-host snapshot reported to monitoring.

    Attributes:
        n_infections: Number of active infections.
        n_patent_infections: Infections with density above the detection limit.
        total_density: Sum of infection densities (parasites/µl).
        is_patent: True iff total_density exceeds the detection limit.
    """
    n_infections: int
    n_patent_infections: int
    total_density: float
    is_patent: bool
