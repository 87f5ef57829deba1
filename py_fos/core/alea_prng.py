"""
Alea pseudo random number generator.

Johannes Baagøe's Alea algorithm: a small, fast generator whose whole state
is three floats and a carry, seeded from any string. Growth runs draw their
fallback directions from it so that a run can be replayed from its seed.
"""

from typing import Sequence, Tuple

# 2^-32
_FRACTION = 2.3283064365386963e-10


def _uint32(n):
    """Convert to unsigned 32-bit integer."""
    return int(n) & 0xFFFFFFFF


class _Mash:
    """Hash that turns seed strings into floats in [0, 1)."""

    def __init__(self):
        self.n = 0xEFC8249D

    def __call__(self, data) -> float:
        for char in str(data):
            self.n += ord(char)
            h = 0.02519603282416938 * self.n
            self.n = _uint32(h)
            h -= self.n
            h *= self.n
            self.n = _uint32(h)
            h -= self.n
            self.n += h * 0x100000000
        return _uint32(self.n) * _FRACTION


class AleaPRNG:
    """
    Seedable generator of floats in [0, 1).

    Args:
        seed: Seed string or number, or an iterable of them
    """

    def __init__(self, seed):
        self.seed = seed
        self.call_count = 0

        if hasattr(seed, "__iter__") and not isinstance(seed, str):
            parts = list(seed)
        else:
            parts = [seed]

        mash = _Mash()
        state = [mash(" "), mash(" "), mash(" ")]
        for part in parts:
            for i in range(3):
                state[i] -= mash(part)
                if state[i] < 0:
                    state[i] += 1

        self.s0, self.s1, self.s2 = state
        self.c = 1

    def random(self) -> float:
        """Next value in [0, 1)."""
        self.call_count += 1
        t = 2091639 * self.s0 + self.c * _FRACTION
        self.s0 = self.s1
        self.s1 = self.s2
        self.c = int(t)
        self.s2 = t - self.c
        return self.s2

    def uniform(self, low: float, high: float) -> float:
        return low + (high - low) * self.random()

    def jitter(self, scale: float) -> Tuple[float, float, float]:
        """Small 3D offset with components in [-scale/2, scale/2)."""
        return tuple((self.random() - 0.5) * scale for _ in range(3))

    def choice(self, seq: Sequence):
        if not seq:
            raise IndexError("Cannot choose from an empty sequence")
        return seq[int(self.random() * len(seq))]

    def state(self) -> Tuple[float, float, float, int]:
        """Snapshot of the internal state, for comparing generators."""
        return (self.s0, self.s1, self.s2, self.c)
