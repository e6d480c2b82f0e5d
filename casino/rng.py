"""Uniform randomness for side assignment and coin flips.

Production uses the OS CSPRNG; tests inject a seeded source so outcomes
are replayable.
"""

import random
import secrets
from typing import Protocol, Sequence

from protocol import SIDES


class RandomSource(Protocol):
    def choice(self, seq: Sequence): ...


class SystemRandomSource:
    """crypto-safe RNG."""

    def __init__(self):
        self._rng = secrets.SystemRandom()

    def choice(self, seq: Sequence):
        return self._rng.choice(seq)


class SeededRandomSource:
    """Deterministic RNG for tests and replays."""

    def __init__(self, seed: int = 0):
        self._rng = random.Random(seed)

    def choice(self, seq: Sequence):
        return self._rng.choice(seq)


class FixedRandomSource:
    """Returns scripted values in order, then repeats the last one."""

    def __init__(self, *values):
        if not values:
            raise ValueError("FixedRandomSource needs at least one value")
        self._values = list(values)
        self._i = 0

    def choice(self, seq: Sequence):
        value = self._values[min(self._i, len(self._values) - 1)]
        self._i += 1
        if value not in seq:
            raise ValueError(f"{value!r} not in {seq!r}")
        return value


def flip(rng: RandomSource) -> str:
    return rng.choice(SIDES)
