"""
chromstate model parameter containers

ModelParameters is the unit the training loop swaps wholesale after each
M-step. TransitionMatrix owns both the dense probabilities and the sparse
successor/predecessor index of non-eliminated transitions; the index is
derived in the constructor, so the two can never disagree.
"""

from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Tuple

import numpy as np

from chromstate.core.errors import NumericalError

N_BUCKETS = 2  # absent / present


class TransitionMatrix:
    """
    State-to-state transition probabilities with eliminated entries.

    Eliminated entries are exactly 0 and stay eliminated. Rows sum to 1
    over the surviving entries.
    """

    def __init__(self, probs: np.ndarray, eliminated: Optional[np.ndarray] = None):
        probs = np.array(probs, dtype=np.float64)
        if probs.ndim != 2 or probs.shape[0] != probs.shape[1]:
            raise ValueError(f"Transition matrix must be square, got {probs.shape}")
        if eliminated is None:
            eliminated = np.zeros(probs.shape, dtype=bool)
        else:
            eliminated = np.array(eliminated, dtype=bool)
        probs[eliminated] = 0.0

        self._probs = probs
        self._eliminated = eliminated
        self._build_index()

        self._probs.flags.writeable = False
        self._eliminated.flags.writeable = False

    def _build_index(self):
        n = self.n_states
        self._row_index = np.zeros((n, n), dtype=np.int32)
        self._row_count = np.zeros(n, dtype=np.int32)
        self._col_index = np.zeros((n, n), dtype=np.int32)
        self._col_count = np.zeros(n, dtype=np.int32)

        for i in range(n):
            succ = np.flatnonzero(~self._eliminated[i])
            self._row_index[i, :len(succ)] = succ
            self._row_count[i] = len(succ)

            pred = np.flatnonzero(~self._eliminated[:, i])
            self._col_index[i, :len(pred)] = pred
            self._col_count[i] = len(pred)

        for arr in (self._row_index, self._row_count, self._col_index, self._col_count):
            arr.flags.writeable = False

    @classmethod
    def uniform(cls, n_states: int) -> 'TransitionMatrix':
        return cls(np.full((n_states, n_states), 1.0 / n_states))

    @property
    def n_states(self) -> int:
        return self._probs.shape[0]

    @property
    def probs(self) -> np.ndarray:
        return self._probs

    @property
    def eliminated(self) -> np.ndarray:
        return self._eliminated

    @property
    def row_index(self) -> np.ndarray:
        """row_index[i, :row_count[i]] are the surviving successors of i."""
        return self._row_index

    @property
    def row_count(self) -> np.ndarray:
        return self._row_count

    @property
    def col_index(self) -> np.ndarray:
        """col_index[j, :col_count[j]] are the surviving predecessors of j."""
        return self._col_index

    @property
    def col_count(self) -> np.ndarray:
        return self._col_count

    @property
    def n_eliminated(self) -> int:
        return int(self._eliminated.sum())

    def successors(self, state: int) -> List[int]:
        return self._row_index[state, :self._row_count[state]].tolist()

    def predecessors(self, state: int) -> List[int]:
        return self._col_index[state, :self._col_count[state]].tolist()

    def reestimate(self, counts: np.ndarray,
                   zero_cutoff: float) -> Tuple['TransitionMatrix', int]:
        """
        M-step for the transition matrix.

        Each row is the normalized expected transition count over surviving
        entries. Off-diagonal entries that fall below zero_cutoff are set to
        exactly 0 and eliminated; when anything was eliminated every row is
        renormalized over its survivors.

        Returns:
            (new TransitionMatrix, number of newly eliminated transitions)
        """
        n = self.n_states
        probs = np.zeros((n, n))
        eliminated = self._eliminated.copy()
        n_new = 0

        for i in range(n):
            succ = self._row_index[i, :self._row_count[i]]
            row = counts[i, succ]
            total = row.sum()
            if not total > 0:
                raise NumericalError(
                    f"No expected transitions out of state {i + 1}; cannot normalize"
                )
            row = row / total
            below = (row < zero_cutoff) & (succ != i)
            if below.any():
                row[below] = 0.0
                eliminated[i, succ[below]] = True
                n_new += int(below.sum())
            probs[i, succ] = row

        if n_new:
            probs /= probs.sum(axis=1, keepdims=True)

        return TransitionMatrix(probs, eliminated), n_new

    def smoothed(self, weight: float) -> 'TransitionMatrix':
        """Blend with the uniform matrix; entries that end up 0 are eliminated."""
        probs = weight / self.n_states + (1 - weight) * self._probs
        return TransitionMatrix(probs, probs == 0)

    def __repr__(self):
        return f"TransitionMatrix(n_states={self.n_states}, eliminated={self.n_eliminated})"


class EmissionTable:
    """Emission probabilities indexed [state, mark, value] with value in {0, 1}."""

    def __init__(self, probs: np.ndarray):
        probs = np.array(probs, dtype=np.float64)
        if probs.ndim != 3 or probs.shape[2] != N_BUCKETS:
            raise ValueError(f"Emission table must be (states, marks, 2), got {probs.shape}")
        self._probs = probs
        self._probs.flags.writeable = False

    @classmethod
    def from_present(cls, present: np.ndarray) -> 'EmissionTable':
        """Build from P(present) per (state, mark)."""
        present = np.asarray(present, dtype=np.float64)
        return cls(np.stack([1.0 - present, present], axis=2))

    @property
    def probs(self) -> np.ndarray:
        return self._probs

    @property
    def present(self) -> np.ndarray:
        """(n_states, n_marks) P(present | state)."""
        return self._probs[:, :, 1]

    @property
    def n_states(self) -> int:
        return self._probs.shape[0]

    @property
    def n_marks(self) -> int:
        return self._probs.shape[1]

    def reestimate(self, counts: np.ndarray) -> 'EmissionTable':
        """M-step: normalize expected (state, mark, value) counts per (state, mark)."""
        denom = counts.sum(axis=2, keepdims=True)
        if not np.all(denom > 0):
            state, mark, _ = np.argwhere(~(denom > 0))[0]
            raise NumericalError(
                f"No observed emission mass for state {state + 1}, mark {mark}; "
                "cannot normalize"
            )
        return EmissionTable(counts / denom)

    def smoothed(self, weight: float) -> 'EmissionTable':
        return EmissionTable(weight / N_BUCKETS + (1 - weight) * self._probs)


@dataclass(frozen=True)
class ModelParameters:
    """
    Snapshot of a model: initial, transition and emission probabilities
    plus the log-likelihood and iteration they were produced at.
    """
    initial: np.ndarray
    transitions: TransitionMatrix
    emissions: EmissionTable
    marks: List[str]
    log_likelihood: float = float('nan')
    iteration: int = 0

    def __post_init__(self):
        initial = np.array(self.initial, dtype=np.float64)
        initial.flags.writeable = False
        object.__setattr__(self, 'initial', initial)

        n = len(initial)
        if self.transitions.n_states != n or self.emissions.n_states != n:
            raise ValueError(
                f"State count mismatch: initial={n}, "
                f"transitions={self.transitions.n_states}, emissions={self.emissions.n_states}"
            )
        if self.emissions.n_marks != len(self.marks):
            raise ValueError(
                f"Emission table has {self.emissions.n_marks} marks but "
                f"{len(self.marks)} mark names were given"
            )

    @property
    def n_states(self) -> int:
        return len(self.initial)

    @property
    def n_marks(self) -> int:
        return len(self.marks)

    def replace(self, **changes) -> 'ModelParameters':
        return replace(self, **changes)

    def check_normalized(self, atol: float = 1e-9) -> None:
        """Raise NumericalError if any probability vector does not sum to 1."""
        if not np.isclose(self.initial.sum(), 1.0, atol=atol):
            raise NumericalError(f"Initial probabilities sum to {self.initial.sum()}")
        row_sums = self.transitions.probs.sum(axis=1)
        if not np.allclose(row_sums, 1.0, atol=atol):
            raise NumericalError(f"Transition rows sum to {row_sums}")
        pair_sums = self.emissions.probs.sum(axis=2)
        if not np.allclose(pair_sums, 1.0, atol=atol):
            raise NumericalError("Emission probabilities do not sum to 1")


@dataclass
class SufficientStats:
    """Expected counts from one forward-backward pass over a sequence."""
    transitions: np.ndarray
    emissions: np.ndarray
    initial: np.ndarray
    log_likelihood: float = 0.0

    @classmethod
    def zeros(cls, n_states: int, n_marks: int) -> 'SufficientStats':
        return cls(
            transitions=np.zeros((n_states, n_states)),
            emissions=np.zeros((n_states, n_marks, N_BUCKETS)),
            initial=np.zeros(n_states),
        )

    def __iadd__(self, other: 'SufficientStats') -> 'SufficientStats':
        self.transitions += other.transitions
        self.emissions += other.emissions
        self.initial += other.initial
        self.log_likelihood += other.log_likelihood
        return self

    @classmethod
    def merge(cls, stats: Iterable['SufficientStats'],
              n_states: int, n_marks: int) -> 'SufficientStats':
        """Sum statistics in the order given."""
        total = cls.zeros(n_states, n_marks)
        for s in stats:
            total += s
        return total


def mstep(params: ModelParameters, stats: SufficientStats,
          zero_cutoff: float) -> Tuple[ModelParameters, int]:
    """
    Re-estimate all parameters from merged statistics.

    Returns:
        (new ModelParameters, number of newly eliminated transitions)
    """
    init_total = stats.initial.sum()
    if not init_total > 0:
        raise NumericalError("Initial state statistics sum to 0; cannot normalize")
    initial = stats.initial / init_total

    transitions, n_new = params.transitions.reestimate(stats.transitions, zero_cutoff)
    emissions = params.emissions.reestimate(stats.emissions)

    new = params.replace(initial=initial, transitions=transitions, emissions=emissions)
    return new, n_new
