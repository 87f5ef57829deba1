"""
Shared random number generator.

Library code draws random numbers only from the Alea generator kept here,
never from Python's random or NumPy's random, so that a growth run is fully
determined by its seed string.
"""

from typing import Optional

from ..config import settings
from ..core.alea_prng import AleaPRNG

# Global PRNG instance
_prng: Optional[AleaPRNG] = None


def set_random_seed(seed: str) -> AleaPRNG:
    """
    Reseed the shared generator.

    Args:
        seed: Seed string to use

    Returns:
        The new shared AleaPRNG
    """
    global _prng
    _prng = AleaPRNG(seed)
    return _prng


def get_prng() -> AleaPRNG:
    """Shared generator, seeded from settings on first use."""
    global _prng
    if _prng is None:
        _prng = AleaPRNG(settings.seed)
    return _prng
