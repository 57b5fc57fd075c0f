"""Seeded random streams for reproducible within-host simulation.

Uses NumPy's SeedSequence → PCG64 hierarchy to guarantee:
  - Statistical independence between per-host streams
  - Bit-exact replay with the same master seed
  - Adding/removing hosts doesn't affect other hosts' streams

Each host consumes its own stream in a fixed call order (infection
creation order, then variant slot order), so hosts may be stepped in any
order without changing any host's trajectory.
"""

from __future__ import annotations

from typing import Dict

import numpy as np


class RandomSource:
    """The draw capability consumed by the within-host models.

    Each method makes exactly one draw and advances the wrapped stream.
    """

    def __init__(self, generator: np.random.Generator):
        self.generator = generator

    def gaussian(self, mean: float, sd: float) -> float:
        return float(self.generator.normal(mean, sd))

    def gamma(self, shape: float, scale: float) -> float:
        return float(self.generator.gamma(shape, scale))

    def uniform(self, n: int) -> int:
        """Integer drawn uniformly from [0, n)."""
        return int(self.generator.integers(0, n))


def create_rng_hierarchy(
    master_seed: int,
    n_hosts: int,
) -> Dict[str, np.random.Generator]:
    """Create independent RNG streams for each host + global operations.

    Streams created:
      - 'global':               Initialization and anything not host-specific
      - 'host_0' .. 'host_{n-1}': Per-host streams (infections, PK sampling)

    Args:
        master_seed: Master RNG seed (non-negative integer).
        n_hosts: Number of hosts.

    Returns:
        Dictionary mapping stream names to numpy Generator instances.

    Example:
        >>> rngs = create_rng_hierarchy(42, n_hosts=10)
        >>> RandomSource(rngs['host_3']).gaussian(0.0, 1.0)  # reproducible
    """
    ss = np.random.SeedSequence(master_seed)
    child_seeds = ss.spawn(n_hosts + 1)

    rngs: Dict[str, np.random.Generator] = {
        'global': np.random.Generator(np.random.PCG64(child_seeds[0])),
    }
    for i in range(n_hosts):
        rngs[f'host_{i}'] = np.random.Generator(
            np.random.PCG64(child_seeds[1 + i])
        )

    return rngs


def get_host_rng(
    rngs: Dict[str, np.random.Generator],
    host_id: int,
) -> np.random.Generator:
    """Get the RNG stream for a specific host.

    Raises:
        KeyError: If host_id doesn't have a stream.
    """
    key = f'host_{host_id}'
    if key not in rngs:
        n = sum(1 for k in rngs if k.startswith('host_'))
        raise KeyError(
            f"No RNG stream for host {host_id}. Available hosts: 0–{n - 1}"
        )
    return rngs[key]


def rng_state_snapshot(
    rngs: Dict[str, np.random.Generator],
) -> Dict[str, dict]:
    """Capture full RNG state for checkpointing.

    Returns:
        Dictionary mapping stream names to their internal state dicts.
    """
    return {name: rng.bit_generator.state for name, rng in rngs.items()}


def restore_rng_state(
    rngs: Dict[str, np.random.Generator],
    states: Dict[str, dict],
) -> None:
    """Restore RNG state from a checkpoint snapshot.

    Raises:
        KeyError: If a stream in states doesn't exist in rngs.
    """
    for name, state in states.items():
        if name not in rngs:
            raise KeyError(f"Cannot restore RNG state for unknown stream '{name}'")
        rngs[name].bit_generator.state = state
