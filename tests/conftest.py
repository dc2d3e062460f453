"""
Shared pytest fixtures for chromstate tests.
"""
import pytest
import numpy as np
import tempfile
import os

from chromstate.core.observations import ObservationIndex
from chromstate.core.params import (
    EmissionTable, ModelParameters, TransitionMatrix,
)


def write_binary_file(path, cell, chrom, marks, calls):
    """Write a binarized signal file in the input format."""
    with open(path, 'w') as f:
        f.write(f"{cell}\t{chrom}\n")
        f.write('\t'.join(marks) + '\n')
        for row in calls:
            f.write('\t'.join(str(int(v)) for v in row) + '\n')


def brute_force_posteriors(params, calls):
    """
    Unscaled forward-backward straight from the definitions.

    Only usable on short sequences; returns (posteriors, log_likelihood).
    """
    calls = np.asarray(calls)
    emit = params.emissions.probs
    trans = params.transitions.probs
    n_bins = len(calls)
    e = np.ones((n_bins, params.n_states))
    for t in range(n_bins):
        for m in range(calls.shape[1]):
            if calls[t, m] != 2:
                e[t] *= emit[:, m, calls[t, m]]

    alpha = np.zeros((n_bins, params.n_states))
    alpha[0] = params.initial * e[0]
    for t in range(1, n_bins):
        alpha[t] = (alpha[t - 1] @ trans) * e[t]

    beta = np.ones((n_bins, params.n_states))
    for t in range(n_bins - 2, -1, -1):
        beta[t] = trans @ (e[t + 1] * beta[t + 1])

    total = alpha[-1].sum()
    return alpha * beta / total, np.log(total)


@pytest.fixture
def brute_force():
    return brute_force_posteriors


@pytest.fixture
def write_binary():
    return write_binary_file


@pytest.fixture
def marks():
    return ['H3K4me3', 'H3K27ac']


@pytest.fixture
def two_state_params(marks):
    """
    2-state, 2-mark model.
    State 0: background (marks rarely present)
    State 1: active (both marks usually present)
    """
    return ModelParameters(
        initial=np.array([0.6, 0.4]),
        transitions=TransitionMatrix(np.array([[0.9, 0.1], [0.2, 0.8]])),
        emissions=EmissionTable.from_present(np.array([[0.1, 0.05], [0.9, 0.7]])),
        marks=marks,
    )


@pytest.fixture
def toy_calls():
    """Three short sequences with present (1), absent (0) and missing (2) calls."""
    return [
        np.array([[0, 0], [0, 0], [1, 1], [1, 1], [1, 0], [0, 0],
                  [0, 2], [1, 1], [1, 1], [0, 0], [0, 0], [2, 2]], dtype=np.uint8),
        np.array([[1, 1], [1, 1], [0, 0], [0, 0], [0, 1], [1, 1], [0, 0]], dtype=np.uint8),
        np.array([[0, 0], [2, 1], [1, 1], [0, 0]], dtype=np.uint8),
    ]


@pytest.fixture
def toy_index(toy_calls, marks):
    return ObservationIndex.from_calls(
        toy_calls, marks, cells=['cellA'] * 3, chroms=['chr1', 'chr2', 'chr3']
    )


def sample_two_state_calls(rng, n_bins, switch=0.05):
    """Draw calls from a two-state chain with well separated emissions."""
    present = np.array([[0.05, 0.05], [0.9, 0.7]])
    calls = np.zeros((n_bins, 2), dtype=np.uint8)
    state = 0
    for t in range(n_bins):
        if rng.rand() < switch:
            state = 1 - state
        calls[t] = rng.rand(2) < present[state]
    return calls


@pytest.fixture
def simulated_index(marks):
    """Three 300-bin sequences simulated from a two-state model."""
    rng = np.random.RandomState(0)
    calls = [sample_two_state_calls(rng, 300) for _ in range(3)]
    return ObservationIndex.from_calls(calls, marks, cells=['sim'] * 3,
                                       chroms=['chr1', 'chr2', 'chr3'])


@pytest.fixture
def binary_dir(tmp_path, marks):
    """Input directory with two chromosome files for one cell type."""
    rng = np.random.RandomState(1)
    d = tmp_path / 'binarized'
    d.mkdir()
    write_binary_file(d / 'cellA_chr2_binary.txt', 'cellA', 'chr2', marks,
                      sample_two_state_calls(rng, 80))
    write_binary_file(d / 'cellA_chr1_binary.txt', 'cellA', 'chr1', marks,
                      sample_two_state_calls(rng, 120))
    (d / 'notes.txt').write_text('not a data file\n')
    return str(d)


@pytest.fixture
def temp_dir():
    """Temporary directory for file operations."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir
