"""chromstate decoding: posteriors, most likely states and segments."""

from dataclasses import dataclass
from typing import Iterator, List, Optional

import numpy as np
from tqdm import tqdm

from chromstate.core.errors import InputFormatError
from chromstate.core.hmm import ForwardBackwardEngine
from chromstate.core.observations import ObservationIndex, Sequence
from chromstate.core.params import ModelParameters


@dataclass(frozen=True)
class Segment:
    """Run of bins [start, end) assigned to one state."""
    start: int
    end: int
    state: int


@dataclass
class DecodedSequence:
    sequence: Sequence
    posteriors: np.ndarray
    states: np.ndarray
    segments: List[Segment]
    log_likelihood: float


def argmax_states(posteriors: np.ndarray) -> np.ndarray:
    """
    Most probable state of every bin.

    Ties go to the lowest state index.
    """
    return np.argmax(posteriors, axis=1)


def segments_from_states(states: np.ndarray) -> List[Segment]:
    """Collapse per-bin states into maximal runs."""
    if len(states) == 0:
        return []
    # Find state changes
    change = np.flatnonzero(np.diff(states)) + 1
    starts = np.concatenate([[0], change])
    ends = np.concatenate([change, [len(states)]])
    return [Segment(int(s), int(e), int(states[s])) for s, e in zip(starts, ends)]


class Decoder:
    """
    Posterior decoding of every sequence of an ObservationIndex.

    Args:
        params: Trained model
        index: Observations to decode
        ordering: Optional state permutation; column k of the posteriors
            (and state k of the output) is internal state ordering[k]
    """

    def __init__(self, params: ModelParameters, index: ObservationIndex,
                 ordering: Optional[List[int]] = None):
        if params.n_marks != index.n_marks:
            raise InputFormatError(
                f"Model has {params.n_marks} marks but the data has {index.n_marks}"
            )
        self.params = params
        self.index = index
        self.ordering = list(ordering) if ordering is not None else list(range(params.n_states))
        self._engine = ForwardBackwardEngine(index, params.n_states)

    def posteriors(self, nseq: int) -> np.ndarray:
        """(n_bins, n_states) posteriors with columns in output order."""
        gamma, _ = self._engine.posteriors(self.params, nseq)
        return gamma[:, self.ordering]

    def decode(self, nseq: int) -> DecodedSequence:
        gamma, loglike = self._engine.posteriors(self.params, nseq)
        gamma = gamma[:, self.ordering]
        states = argmax_states(gamma)
        return DecodedSequence(
            sequence=self.index.sequences[nseq],
            posteriors=gamma,
            states=states,
            segments=segments_from_states(states),
            log_likelihood=loglike,
        )

    def decode_all(self, verbose: bool = False) -> Iterator[DecodedSequence]:
        """Decode sequences in index order."""
        for nseq in tqdm(range(self.index.n_sequences), desc="Decoding",
                         disable=not verbose):
            yield self.decode(nseq)
