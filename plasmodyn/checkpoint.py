"""Binary checkpoint codec.

Every stateful entity implements ``write(sink)`` and a matching
``read(source)``; field order is the wire contract. Each field is one
self-describing ``.npy`` record (numpy.lib.format), which carries dtype
and shape and round-trips float64 values bit-identically.

Polymorphic infections are written as a type tag followed by the body;
the tag selects the class on restore. Streams are assumed well formed:
a wrong tag or truncated record is fatal.
"""

from __future__ import annotations

from typing import BinaryIO, Callable, Dict, Type, TYPE_CHECKING

import numpy as np
from numpy.lib import format as npy_format

if TYPE_CHECKING:
    from plasmodyn.infection import Infection


class CheckpointError(RuntimeError):
    """Malformed or mismatching checkpoint stream."""


class CheckpointWriter:
    """Write typed records to a binary stream."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream

    def write_array(self, value) -> None:
        npy_format.write_array(self.stream, np.asarray(value), allow_pickle=False)

    def write_float(self, value: float) -> None:
        self.write_array(np.float64(value))

    def write_int(self, value: int) -> None:
        self.write_array(np.int64(value))

    def write_bool(self, value: bool) -> None:
        self.write_array(np.bool_(value))

    def write_str(self, value: str) -> None:
        self.write_array(np.str_(value))


class CheckpointReader:
    """Read records written by CheckpointWriter, in the same order."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream

    def read_array(self) -> np.ndarray:
        try:
            return npy_format.read_array(self.stream, allow_pickle=False)
        except ValueError as e:
            raise CheckpointError(f"Malformed checkpoint record: {e}") from e

    def read_float(self) -> float:
        return float(self.read_array()[()])

    def read_int(self) -> int:
        return int(self.read_array()[()])

    def read_bool(self) -> bool:
        return bool(self.read_array()[()])

    def read_str(self) -> str:
        return str(self.read_array()[()])


# ═══════════════════════════════════════════════════════════════════════
# POLYMORPHIC INFECTION TAGS
# ═══════════════════════════════════════════════════════════════════════

_INFECTION_TYPES: Dict[str, Type['Infection']] = {}


def register_infection(tag: str) -> Callable[[type], type]:
    """Class decorator registering an Infection subclass under a tag."""
    def decorator(cls: type) -> type:
        if tag in _INFECTION_TYPES and _INFECTION_TYPES[tag] is not cls:
            raise ValueError(f"Infection tag '{tag}' already registered")
        _INFECTION_TYPES[tag] = cls
        cls.checkpoint_tag = tag
        return cls
    return decorator


def write_infection(sink: CheckpointWriter, infection: 'Infection') -> None:
    sink.write_str(infection.checkpoint_tag)
    infection.write(sink)


def read_infection(source: CheckpointReader) -> 'Infection':
    tag = source.read_str()
    cls = _INFECTION_TYPES.get(tag)
    if cls is None:
        raise CheckpointError(
            f"Unknown infection type tag '{tag}'. "
            f"Registered: {sorted(_INFECTION_TYPES)}"
        )
    return cls.read(source)
