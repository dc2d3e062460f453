"""Per-sequence process pool for the E-step."""

import os
from concurrent.futures import ProcessPoolExecutor
from typing import Tuple

from chromstate.core.hmm import ForwardBackwardEngine
from chromstate.core.observations import ObservationIndex
from chromstate.core.params import ModelParameters, SufficientStats


# Global for worker processes
_worker_engine = None


def _init_estep_worker(index: ObservationIndex, n_states: int):
    """Initialize worker process with its own engine and workspace."""
    global _worker_engine
    # Disable numba caching to avoid file lock contention between workers
    os.environ['NUMBA_CACHE_DIR'] = ''
    _worker_engine = ForwardBackwardEngine(index, n_states)


def _estep_sequence(args: Tuple[ModelParameters, int]) -> SufficientStats:
    params, nseq = args
    return _worker_engine.estep(params, nseq)


def resolve_jobs(n_jobs: int) -> int:
    """0 means one worker per CPU."""
    if n_jobs <= 0:
        return os.cpu_count() or 1
    return n_jobs


class ParallelEStep:
    """
    Runs the E-step of every sequence in a process pool.

    Statistics come back in sequence order and are summed in that order,
    so results do not depend on worker scheduling.

    Usage:
        with ParallelEStep(index, n_states, n_jobs=4) as pool:
            stats = pool.run(params)
    """

    def __init__(self, index: ObservationIndex, n_states: int, n_jobs: int = 0):
        self.index = index
        self.n_states = n_states
        self.n_jobs = resolve_jobs(n_jobs)
        self._executor = None

    def __enter__(self) -> 'ParallelEStep':
        self._executor = ProcessPoolExecutor(
            max_workers=self.n_jobs,
            initializer=_init_estep_worker,
            initargs=(self.index, self.n_states),
        )
        return self

    def __exit__(self, exc_type, exc, tb):
        self._executor.shutdown(wait=True, cancel_futures=exc_type is not None)
        self._executor = None
        return False

    def run(self, params: ModelParameters) -> SufficientStats:
        if self._executor is None:
            raise RuntimeError("ParallelEStep must be used as a context manager")
        jobs = [(params, nseq) for nseq in range(self.index.n_sequences)]
        results = self._executor.map(_estep_sequence, jobs)
        return SufficientStats.merge(results, self.n_states, self.index.n_marks)
