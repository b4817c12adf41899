"""Helper functions for chunking iterables."""
from collections.abc import Iterable, Iterator
from itertools import islice


def chunked(iterable: Iterable, size: int) -> Iterator[list]:
    """Yield successive lists of at most ``size`` items (commit insert batches)."""
    if size < 1:
        raise ValueError("size must be positive")
    iterator = iter(iterable)
    while batch := list(islice(iterator, size)):
        yield batch
