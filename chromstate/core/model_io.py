"""
chromstate model I/O module

Model file format (tab-delimited, one parameter per line):

    numStates  numMarks  orderChar  logLikelihood  iteration
    probinit         state  p
    transitionprobs  from   to    p
    emissionprobs    state  mark  markName  value  p

States are 1-based and written in state-ordering order; marks are 0-based
and keep their data column order. Keywords are matched case-insensitively
on read.

Also writes the tab-delimited emission (state x mark P(present)) and
transition (from x to) tables next to the model.
"""

import os
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from chromstate.core.errors import InputFormatError
from chromstate.core.ordering import ORDER_CHARS, ORDER_EMISSION, order_from_char
from chromstate.core.params import (
    EmissionTable, ModelParameters, TransitionMatrix, N_BUCKETS
)


def _suffix(n_states: int, file_id: str = '') -> str:
    return f"{n_states}_{file_id}" if file_id else f"{n_states}"


def model_path(output_dir: str, n_states: int, file_id: str = '') -> str:
    """Path of model_<S>[_<id>].txt in output_dir."""
    return os.path.join(output_dir, f"model_{_suffix(n_states, file_id)}.txt")


# =============================================================================
# Loading
# =============================================================================

def load_model(filepath: str) -> Tuple[ModelParameters, str]:
    """
    Load a model file.

    Transitions stored as exactly 0 are eliminated.

    Args:
        filepath: Path to model file

    Returns:
        (ModelParameters, order_char)
    """
    with open(filepath, 'r') as f:
        lines = f.read().splitlines()

    if not lines or not lines[0].strip():
        raise InputFormatError(f"{filepath} is empty!")

    header = lines[0].split('\t')
    try:
        n_states = int(header[0])
        n_marks = int(header[1])
        order_char = header[2][:1]
        log_likelihood = float(header[3]) if len(header) > 3 else float('nan')
        iteration = int(header[4]) if len(header) > 4 else 0
    except (IndexError, ValueError):
        raise InputFormatError(f"{filepath}: invalid model header '{lines[0]}'")
    if n_states < 1 or n_marks < 1:
        raise InputFormatError(f"{filepath}: invalid model header '{lines[0]}'")
    order_from_char(order_char)

    initial = np.zeros(n_states)
    transitions = np.zeros((n_states, n_states))
    emissions = np.zeros((n_states, n_marks, N_BUCKETS))
    marks: List[Optional[str]] = [None] * n_marks

    for lineno, line in enumerate(lines[1:], start=2):
        if not line.strip():
            continue
        fields = line.split('\t')
        keyword = fields[0].lower()
        try:
            if keyword == 'probinit':
                state = _index(fields[1], 1, n_states)
                initial[state] = float(fields[2])
            elif keyword == 'transitionprobs':
                i = _index(fields[1], 1, n_states)
                j = _index(fields[2], 1, n_states)
                transitions[i, j] = float(fields[3])
            elif keyword == 'emissionprobs':
                state = _index(fields[1], 1, n_states)
                mark = _index(fields[2], 0, n_marks)
                if marks[mark] is None:
                    marks[mark] = fields[3]
                value = _index(fields[4], 0, N_BUCKETS)
                emissions[state, mark, value] = float(fields[5])
            else:
                raise InputFormatError(
                    f"{fields[0]} is not recognized in the input model file"
                )
        except InputFormatError:
            raise
        except (IndexError, ValueError):
            raise InputFormatError(f"{filepath} line {lineno}: cannot parse '{line}'")

    marks = [name if name is not None else f"mark{m}" for m, name in enumerate(marks)]
    params = ModelParameters(
        initial=initial,
        transitions=TransitionMatrix(transitions, transitions == 0),
        emissions=EmissionTable(emissions),
        marks=marks,
        log_likelihood=log_likelihood,
        iteration=iteration,
    )
    return params, order_char


def _index(token: str, base: int, size: int) -> int:
    idx = int(token) - base
    if not 0 <= idx < size:
        raise InputFormatError(f"Index {token} out of range")
    return idx


# =============================================================================
# Saving
# =============================================================================

def save_model(params: ModelParameters, filepath: str,
               ordering: Optional[List[int]] = None,
               order: str = ORDER_EMISSION):
    """
    Write params to filepath with states permuted by ordering.

    Args:
        params: Model to write
        filepath: Output path
        ordering: ordering[k] is the internal state written as state k+1
        order: Ordering name, stored as its order character in the header
    """
    n = params.n_states
    if ordering is None:
        ordering = list(range(n))
    init = params.initial
    trans = params.transitions.probs
    emit = params.emissions.probs

    with open(filepath, 'w') as f:
        f.write(f"{n}\t{params.n_marks}\t{ORDER_CHARS[order]}\t"
                f"{float(params.log_likelihood)!r}\t{params.iteration}\n")
        for k in range(n):
            f.write(f"probinit\t{k + 1}\t{float(init[ordering[k]])!r}\n")
        for k in range(n):
            row = trans[ordering[k]]
            for l in range(n):
                f.write(f"transitionprobs\t{k + 1}\t{l + 1}\t{float(row[ordering[l]])!r}\n")
        for k in range(n):
            state_emit = emit[ordering[k]]
            for m, mark in enumerate(params.marks):
                for v in range(N_BUCKETS):
                    f.write(f"emissionprobs\t{k + 1}\t{m}\t{mark}\t{v}\t"
                            f"{float(state_emit[m, v])!r}\n")


def write_tables(params: ModelParameters, output_dir: str,
                 ordering: Optional[List[int]] = None,
                 order: str = ORDER_EMISSION, file_id: str = '') -> Tuple[str, str]:
    """
    Write emissions_<S>[_<id>].txt and transitions_<S>[_<id>].txt.

    Returns:
        (emission_table_path, transition_table_path)
    """
    n = params.n_states
    if ordering is None:
        ordering = list(range(n))
    labels = range(1, n + 1)
    order_label = order.capitalize()
    suffix = _suffix(n, file_id)

    emissions = pd.DataFrame(params.emissions.present[ordering],
                             index=labels, columns=params.marks)
    emissions.index.name = f"state ({order_label} order)"
    emission_path = os.path.join(output_dir, f"emissions_{suffix}.txt")
    emissions.to_csv(emission_path, sep='\t')

    trans = params.transitions.probs[np.ix_(ordering, ordering)]
    transitions = pd.DataFrame(trans, index=labels, columns=labels)
    transitions.index.name = f"state (from\\to) ({order_label} order)"
    transition_path = os.path.join(output_dir, f"transitions_{suffix}.txt")
    transitions.to_csv(transition_path, sep='\t')

    return emission_path, transition_path
