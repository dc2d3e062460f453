"""
State ordering for written models.

The ordering is a permutation used only when writing parameters and
segmentations: position k of the written model holds internal state
ordering[k]. Training indices are never changed.
"""

from typing import List, Optional

import numpy as np
import pandas as pd

from chromstate.core.errors import InputFormatError
from chromstate.core.params import ModelParameters

ORDER_USER = 'user'
ORDER_EMISSION = 'emission'
ORDER_TRANSITION = 'transition'
ORDER_FIXED = 'fixed'

ORDER_CHARS = {
    ORDER_USER: 'U',
    ORDER_EMISSION: 'E',
    ORDER_TRANSITION: 'T',
    ORDER_FIXED: 'F',
}
ORDER_NAMES = {char: name for name, char in ORDER_CHARS.items()}


def order_from_char(char: str) -> str:
    """Ordering name for a model-file order character."""
    try:
        return ORDER_NAMES[char]
    except KeyError:
        raise InputFormatError(f"{char} is an invalid order type")


def correlation(x: np.ndarray, y: np.ndarray) -> float:
    """Pearson correlation; 0 when either vector has no variance."""
    n = len(x)
    if n == 0:
        return 0.0
    varx = np.dot(x, x) - x.sum() ** 2 / n
    vary = np.dot(y, y) - y.sum() ** 2 / n
    if varx * vary <= 0:
        return 0.0
    return float((np.dot(x, y) - x.sum() * y.sum() / n) / np.sqrt(varx * vary))


def greedy_chain(dist: np.ndarray) -> List[int]:
    """
    Approximate shortest ordering of states under a pairwise distance.

    A nearest-neighbour chain is grown from every possible start state and
    the chain with the lowest total distance is kept. Ties go to the lowest
    start state and the lowest next state.
    """
    n = dist.shape[0]
    best_order = list(range(n))
    best_total = np.inf

    for start in range(n):
        order = [start]
        assigned = np.zeros(n, dtype=bool)
        assigned[start] = True
        total = 0.0
        prev = start
        for _ in range(1, n):
            candidates = np.flatnonzero(~assigned)
            nxt = candidates[np.argmin(dist[candidates, prev])]
            total += dist[nxt, prev]
            order.append(int(nxt))
            assigned[nxt] = True
            prev = nxt
        if total < best_total:
            best_total = total
            best_order = order

    return best_order


def emission_ordering(params: ModelParameters) -> List[int]:
    """Order states so that neighbours have correlated P(present) profiles."""
    present = params.emissions.present
    n = params.n_states
    dist = np.zeros((n, n))
    for i in range(n):
        for j in range(n):
            dist[i, j] = np.sqrt(max(0.0, 1.0 - correlation(present[i], present[j])))
    return greedy_chain(dist)


def transition_ordering(params: ModelParameters) -> List[int]:
    """Order states so that neighbours transition into each other often."""
    t = params.transitions.probs
    return greedy_chain(2.0 - (t + t.T))


def read_ordering_file(filepath: str, n_states: int) -> List[int]:
    """
    Read a user state ordering: one `old<TAB>new` line per state, 1-based.

    Returns:
        ordering with ordering[new - 1] == old - 1
    """
    try:
        df = pd.read_csv(filepath, sep='\t', header=None, usecols=[0, 1],
                         names=['old', 'new'])
        old = df['old'].astype(int).to_numpy() - 1
        new = df['new'].astype(int).to_numpy() - 1
    except (ValueError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise InputFormatError(f"Could not parse state ordering from {filepath}: {e}")

    expected = np.arange(n_states)
    if not (np.array_equal(np.sort(old), expected) and np.array_equal(np.sort(new), expected)):
        raise InputFormatError(
            f"{filepath} must map each of the {n_states} states to a distinct new state"
        )
    ordering = np.empty(n_states, dtype=int)
    ordering[new] = old
    return ordering.tolist()


def state_ordering(params: ModelParameters, order: str = ORDER_EMISSION,
                   ordering_file: Optional[str] = None) -> List[int]:
    """
    Permutation for writing params under the named ordering.

    'user' reads ordering_file when one is given; without one, 'user' and
    'fixed' keep states in their trained order.
    """
    if order == ORDER_EMISSION:
        return emission_ordering(params)
    if order == ORDER_TRANSITION:
        return transition_ordering(params)
    if order == ORDER_USER and ordering_file:
        return read_ordering_file(ordering_file, params.n_states)
    if order in (ORDER_USER, ORDER_FIXED):
        return list(range(params.n_states))
    raise ValueError(f"Unknown state ordering '{order}'")
