from __future__ import annotations

"""Nearest-rank percentile used for the adaptive person threshold."""

import math
from typing import Iterable, Union

import numpy as np


class EmptyInputError(ValueError):
    """Raised when a percentile is requested over zero samples."""


def percentile(samples: Union[np.ndarray, Iterable[int]], p: float) -> int:
    """Return the sample at sorted index `floor(p / 100 * N)`, clamped to `[0, N-1]`.

    No interpolation between ranks, so the result is always one of the input
    values and is monotonic in `p`.
    """
    values = np.asarray(samples if isinstance(samples, np.ndarray) else list(samples))
    values = values.ravel()
    if values.size == 0:
        raise EmptyInputError("percentile() requires at least one sample")
    if not 0 <= p <= 100:
        raise ValueError(f"percentile must be within [0, 100], got {p}")

    count = int(values.size)
    index = min(max(int(math.floor(p / 100.0 * count)), 0), count - 1)
    # Partial sort is enough to place the k-th smallest value at `index`.
    return int(np.partition(values, index)[index])
