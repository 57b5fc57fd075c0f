"""Whole-population checkpoint files.

A checkpoint is a point-in-time image of every host plus every RNG
stream, taken between simulated days (never during a step):

    format tag | config hash | day | n_hosts | host_0 … host_{n-1} | RNG states

Hosts are written with WithinHostState.write(); RNG bit-generator states
are stored as one JSON string record (PCG64 state words exceed int64).
Resuming from a checkpoint reproduces the uninterrupted run exactly.

Usage:
    save_checkpoint("run/day_3650.ckpt", hosts, rngs, day=3650, config_text=text)
    ...
    ckpt = load_checkpoint("run/day_3650.ckpt", config, config_text=text)
    hosts, rngs = ckpt.hosts, ckpt.rngs
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from plasmodyn.checkpoint import CheckpointError, CheckpointReader, CheckpointWriter
from plasmodyn.config import SimulationConfig
from plasmodyn.molineaux import MolineauxParams
from plasmodyn.pkpd import build_drug_types
from plasmodyn.rng import (
    RandomSource,
    create_rng_hierarchy,
    get_host_rng,
    restore_rng_state,
    rng_state_snapshot,
)
from plasmodyn.utils import config_hash
from plasmodyn.within_host import PathogenesisClassifier, WithinHostState

logger = logging.getLogger(__name__)

FORMAT_TAG = "plasmodyn-checkpoint"


@dataclass
class Checkpoint:
    """A restored population."""
    day: int
    hosts: List[WithinHostState]
    rngs: Dict[str, np.random.Generator]


def save_checkpoint(
    path: Union[str, Path],
    hosts: Sequence[WithinHostState],
    rngs: Dict[str, np.random.Generator],
    day: int = 0,
    config_text: str = "",
) -> None:
    """Write every host and RNG stream to `path`.

    Args:
        path: Output file; parent directories are created.
        hosts: Hosts in scheduler order; host i must use stream 'host_i'.
        rngs: RNG hierarchy from create_rng_hierarchy().
        day: Simulation day the checkpoint is taken at.
        config_text: YAML text of the run's configuration, hashed into the
            header so a checkpoint cannot be resumed under another config.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        sink = CheckpointWriter(f)
        sink.write_str(FORMAT_TAG)
        sink.write_str(config_hash(config_text))
        sink.write_int(day)
        sink.write_int(len(hosts))
        for host in hosts:
            host.write(sink)
        sink.write_str(json.dumps(rng_state_snapshot(rngs)))
    logger.info("checkpoint saved: %s (day %d, %d hosts)", path, day, len(hosts))


def load_checkpoint(
    path: Union[str, Path],
    config: SimulationConfig,
    config_text: str = "",
    pathogenesis: Optional[PathogenesisClassifier] = None,
) -> Checkpoint:
    """Restore a population written by save_checkpoint().

    Raises:
        FileNotFoundError: If path doesn't exist.
        CheckpointError: If the header doesn't match this configuration.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Checkpoint not found: {path}")

    drug_types = (build_drug_types(config.pharmacology)
                  if config.pharmacology.enabled else {})
    molineaux_params = MolineauxParams.from_config(config.molineaux)

    with open(path, 'rb') as f:
        source = CheckpointReader(f)
        tag = source.read_str()
        if tag != FORMAT_TAG:
            raise CheckpointError(f"{path} is not a plasmodyn checkpoint (tag '{tag}')")
        saved_hash = source.read_str()
        if saved_hash != config_hash(config_text):
            raise CheckpointError(
                f"{path} was written under a different configuration"
            )
        day = source.read_int()
        n_hosts = source.read_int()

        rngs = create_rng_hierarchy(config.simulation.seed, n_hosts)
        hosts = [
            WithinHostState.read(
                source, config, RandomSource(get_host_rng(rngs, i)),
                pathogenesis=pathogenesis,
                drug_types=drug_types,
                molineaux_params=molineaux_params,
            )
            for i in range(n_hosts)
        ]
        restore_rng_state(rngs, json.loads(source.read_str()))

    logger.info("checkpoint loaded: %s (day %d, %d hosts)", path, day, n_hosts)
    return Checkpoint(day=day, hosts=hosts, rngs=rngs)
