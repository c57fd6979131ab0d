"""
Unbiased, seedable shuffling for notification queue order.
"""

import os
import random
from typing import Callable, List, Optional, Protocol, Sequence, TypeVar

T = TypeVar("T")

# Optional fixed seed for reproducible queue order (e.g. staging replays)
SHUFFLE_SEED = os.getenv("SHUFFLE_SEED")


class RandomSource(Protocol):
    def randrange(self, stop: int) -> int:
        ...


Shuffler = Callable[[Sequence[int]], List[int]]


def fisher_yates_shuffle(items: Sequence[T], rng: RandomSource) -> List[T]:
    """
    Return a uniformly shuffled copy of items (Durstenfeld's Fisher-Yates).

    Walks from the last index down, swapping each position with a uniformly
    chosen index at or below it. Never sort with a random comparator; that
    produces a biased permutation.

    Args:
        items: Items to shuffle (not modified)
        rng: Anything with randrange(stop) returning an int in [0, stop)

    Returns:
        New list in shuffled order
    """
    result = list(items)
    for i in range(len(result) - 1, 0, -1):
        j = rng.randrange(i + 1)
        result[i], result[j] = result[j], result[i]
    return result


def make_shuffler(seed: Optional[int] = None) -> Shuffler:
    """
    Build a shuffler bound to its own random.Random instance.

    Args:
        seed: Seed for reproducible runs (defaults to SHUFFLE_SEED env var,
              or OS entropy if unset)
    """
    if seed is None and SHUFFLE_SEED:
        seed = int(SHUFFLE_SEED)
    rng = random.Random(seed)

    def shuffle(items: Sequence[int]) -> List[int]:
        return fisher_yates_shuffle(items, rng)

    return shuffle


# Global shuffler instance
_shuffler = make_shuffler()


def get_shuffler() -> Shuffler:
    """Get the global queue shuffler."""
    return _shuffler
