"""Stable id generation: ``<prefix>_<epoch-ms>_<base36 random>``."""

from __future__ import annotations

import random
import string

_ALPHABET = string.digits + string.ascii_lowercase


def random_token(rng: random.Random, length: int = 9) -> str:
    """Return *length* random base-36 characters."""
    return "".join(rng.choice(_ALPHABET) for _ in range(length))


def make_id(prefix: str, timestamp: int, rng: random.Random, length: int = 9) -> str:
    return f"{prefix}_{timestamp}_{random_token(rng, length)}"
