"""
Draw/shuffle engine: one uniform permutation primitive reused for question
selection, question ordering and option ordering.

The RNG defaults to the OS entropy source, so every call yields a fresh
permutation. The ``seed`` stored on a session is a diagnostic tag only and
cannot be used to re-derive a shuffle.
"""
import random
from typing import List, Optional, Sequence, TypeVar

T = TypeVar("T")

_system_rng = random.SystemRandom()


def fisher_yates(items: Sequence[T], rng: Optional[random.Random] = None) -> List[T]:
    rng = rng or _system_rng
    out = list(items)
    for i in range(len(out) - 1, 0, -1):
        j = rng.randrange(i + 1)
        out[i], out[j] = out[j], out[i]
    return out


def draw(items: Sequence[T], count: int, rng: Optional[random.Random] = None) -> List[T]:
    """Random sample without replacement: shuffle, then take the prefix."""
    if count < 0 or count > len(items):
        raise ValueError(f"cannot draw {count} from {len(items)} items")
    return fisher_yates(items, rng)[:count]


def display_label(index: int) -> str:
    return chr(65 + index)


def shuffle_options(options: Sequence[dict], rng: Optional[random.Random] = None) -> List[dict]:
    """Shuffle options and relabel A, B, C... in shuffled order, keeping the stable key as ``originalId``."""
    return [
        {"displayLabel": display_label(i), "originalId": o["option_key"], "text": o["option_text"], "correct": bool(o["is_correct"])}
        for i, o in enumerate(fisher_yates(options, rng))
    ]
