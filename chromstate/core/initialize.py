"""
Parameter initialization strategies.

- random: uniform draws from a seeded RandomState, normalized
- information: recursive partition of adjacent-bin signatures by the mark
  split with the largest information gain
- load: parameters from a model file blended with uniform
"""

import warnings
from typing import List

import numpy as np

from chromstate.core.errors import InitializationError, InputFormatError
from chromstate.core.model_io import load_model
from chromstate.core.observations import ObservationIndex
from chromstate.core.params import (
    EmissionTable, ModelParameters, TransitionMatrix, N_BUCKETS
)

INIT_INFORMATION = 'information'
INIT_RANDOM = 'random'
INIT_LOAD = 'load'
INIT_METHODS = (INIT_INFORMATION, INIT_RANDOM, INIT_LOAD)


def random_init(n_states: int, marks: List[str], seed: int) -> ModelParameters:
    """Every probability vector drawn uniformly on [0, 1) and normalized."""
    rng = np.random.RandomState(seed)
    n_marks = len(marks)

    initial = rng.random_sample(n_states)
    initial /= initial.sum()

    trans = rng.random_sample((n_states, n_states))
    trans /= trans.sum(axis=1, keepdims=True)

    emit = rng.random_sample((n_states, n_marks, N_BUCKETS))
    emit /= emit.sum(axis=2, keepdims=True)

    return ModelParameters(initial, TransitionMatrix(trans), EmissionTable(emit), marks)


def _xlogx(p: float) -> float:
    return p * np.log(p) if p > 0 else 0.0


def _lineage(state: int, backptr: np.ndarray) -> List[int]:
    """state and its split ancestors, stopping before the root partition."""
    out = []
    cur = state
    while True:
        out.append(cur)
        cur = backptr[cur]
        if cur == 0:
            return out


def information_init(index: ObservationIndex, n_states: int,
                     smooth: float = 0.02) -> ModelParameters:
    """
    Initialize by recursively splitting adjacent-bin signatures.

    A signature flags a mark when it is present in both bins of an adjacent
    pair. Starting with every signature in partition 0, each step moves the
    signatures of one partition that carry one mark into a new partition,
    choosing the (partition, mark) with the greatest information gain.
    Partition k becomes state k.

    Raises:
        InitializationError: if no split improves information before
            n_states partitions exist
    """
    n_marks = index.n_marks

    # adjacent-pair signatures per sequence
    pair_rows = []
    lengths = []
    for seq in index.sequences:
        vals = index.values[seq.combos]
        pairs = vals[:-1] & vals[1:]
        pair_rows.append(pairs)
        lengths.append(len(pairs))

    total = int(sum(lengths))
    if total == 0:
        raise InitializationError(
            "Information initialization needs sequences with at least two bins; "
            "use the random or load options"
        )

    flags, inverse = np.unique(np.concatenate(pair_rows), axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    tallies = np.bincount(inverse, minlength=len(flags))
    weighted = flags * tallies[:, None]
    seq_elements = np.split(inverse, np.cumsum(lengths)[:-1])

    assign = np.zeros(len(flags), dtype=np.int64)
    partition_tally = np.zeros(n_states, dtype=np.int64)
    partition_tally[0] = total
    backptr = np.zeros(n_states, dtype=np.int64)

    for k in range(1, n_states):
        split_tally = np.zeros((k, n_marks), dtype=np.int64)
        np.add.at(split_tally, assign, weighted)

        best_gain = 0.0
        best = None
        for p in range(k):
            full_term = _xlogx(partition_tally[p] / total)
            for m in range(n_marks):
                p_keep = (partition_tally[p] - split_tally[p, m]) / total
                p_split = split_tally[p, m] / total
                gain = full_term - _xlogx(p_keep) - _xlogx(p_split)
                if gain > best_gain:
                    best_gain = gain
                    best = (p, m)

        if best is None:
            raise InitializationError(
                f"On this data the information initialization strategy can only "
                f"support {k} states; use the random or load options for more states"
            )

        p, m = best
        n_new = split_tally[p, m]
        partition_tally[k] = n_new
        partition_tally[p] -= n_new
        backptr[k] = p
        assign[(assign == p) & flags[:, m]] = k

    # emissions from positive tallies over each state's subtree
    pos_by_state = np.zeros((n_states, n_marks), dtype=np.int64)
    np.add.at(pos_by_state, assign, weighted)
    pos_tally = np.zeros((n_states, n_marks), dtype=np.int64)
    subtree = np.zeros(n_states, dtype=np.int64)
    for state in range(n_states):
        for anc in _lineage(state, backptr):
            pos_tally[anc] += pos_by_state[state]
            if state > 0:
                subtree[anc] += partition_tally[state]

    present = np.full((n_states, n_marks), smooth / N_BUCKETS)
    present[1:] += (1 - smooth) * pos_tally[1:] / subtree[1:, None]

    # initial from the partition of each sequence's first pair
    starts = [assign[elems[0]] for elems in seq_elements if len(elems)]
    num_starts = np.bincount(starts, minlength=n_states)
    initial = smooth / n_states + (1 - smooth) * num_starts / len(starts)

    # transitions from bigrams of consecutive pair partitions
    bigrams = np.zeros((n_states, n_states), dtype=np.int64)
    for elems in seq_elements:
        states = assign[elems]
        np.add.at(bigrams, (states[:-1], states[1:]), 1)
    trans = np.full((n_states, n_states), 1.0 / n_states)
    row_totals = bigrams.sum(axis=1)
    seen = row_totals > 0
    trans[seen] = smooth / n_states + (1 - smooth) * bigrams[seen] / row_totals[seen, None]

    return ModelParameters(initial, TransitionMatrix(trans),
                           EmissionTable.from_present(present), list(index.marks))


def load_init(filepath: str, index: ObservationIndex,
              smooth_emission: float = 0.02,
              smooth_transition: float = 0.5) -> ModelParameters:
    """
    Start from a saved model blended with uniform.

    Emissions become w/2 + (1-w)p and transitions w/S + (1-w)p; a
    transition that is exactly 0 afterwards is eliminated. The initial
    probabilities are used as stored.
    """
    params, _ = load_model(filepath)
    if params.n_marks != index.n_marks:
        raise InputFormatError(
            f"{filepath} has {params.n_marks} marks but the data has {index.n_marks}"
        )
    if list(params.marks) != list(index.marks):
        warnings.warn(f"Mark names in {filepath} do not match the data; using the data's")

    return ModelParameters(
        initial=params.initial,
        transitions=params.transitions.smoothed(smooth_transition),
        emissions=params.emissions.smoothed(smooth_emission),
        marks=list(index.marks),
    )


def initialize(config, index: ObservationIndex) -> ModelParameters:
    """Dispatch on config.init_method."""
    method = config.init_method
    if method == INIT_RANDOM:
        return random_init(config.n_states, list(index.marks), config.seed)
    if method == INIT_INFORMATION:
        return information_init(index, config.n_states, config.information_smooth)
    if method == INIT_LOAD:
        if not config.init_file:
            raise InitializationError("The load initialization needs a model file")
        params = load_init(config.init_file, index,
                           config.load_smooth_emission, config.load_smooth_transition)
        if config.n_states and params.n_states != config.n_states:
            warnings.warn(
                f"{config.init_file} has {params.n_states} states; "
                f"ignoring the requested {config.n_states}"
            )
        return params
    raise InitializationError(
        f"Unknown initialization method '{method}' (choose from {', '.join(INIT_METHODS)})"
    )
