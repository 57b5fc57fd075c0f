"""plasmodyn: per-host within-host dynamics of P. falciparum malaria.

A discrete daily state machine for one human host:
  - Multi-variant antigenic-switching infection model (Molineaux)
  - Host-level aggregation of infections, immune memory and morbidity
  - One-compartment PK/PD drug action as a daily survival factor
  - Bit-exact checkpoint/restore of all per-host state
"""

__version__ = "0.1.0"
