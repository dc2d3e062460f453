"""
Baum-Welch training loop.

TrainingLoop alternates forward-backward over every sequence (E-step) with
re-estimation of all parameters (M-step) until one of the stopping rules
fires:

- the iteration count reaches max_iterations
- convergence_delta >= 0 and the log-likelihood improved by less than it
- max_seconds >= 0 and total training time exceeds it
"""

import contextlib
import enum
import os
import time
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from tqdm import tqdm

from chromstate.core.errors import InitializationError
from chromstate.core.hmm import ForwardBackwardEngine
from chromstate.core.initialize import INIT_INFORMATION, INIT_LOAD, INIT_METHODS, initialize
from chromstate.core.model_io import model_path, save_model, write_tables
from chromstate.core.observations import ObservationIndex
from chromstate.core.ordering import ORDER_CHARS, ORDER_EMISSION, ORDER_USER, state_ordering
from chromstate.core.params import ModelParameters, SufficientStats, mstep
from chromstate.inference.parallel import ParallelEStep


@dataclass
class TrainingConfig:
    """Options for model learning, defaults as used by the command line."""
    n_states: int
    init_method: str = INIT_INFORMATION
    seed: int = 999
    max_iterations: int = 200
    convergence_delta: float = 0.001
    max_seconds: float = -1
    zero_transition_power: int = 8
    information_smooth: float = 0.02
    load_smooth_emission: float = 0.02
    load_smooth_transition: float = 0.5
    init_file: Optional[str] = None
    state_order: str = ORDER_EMISSION
    ordering_file: Optional[str] = None
    output_dir: Optional[str] = None
    file_id: str = ''
    incremental: bool = False
    n_jobs: int = 1
    verbose: bool = False

    @property
    def zero_cutoff(self) -> float:
        return 10.0 ** -self.zero_transition_power

    def validate(self):
        if self.init_method not in INIT_METHODS:
            raise InitializationError(
                f"Unknown initialization method '{self.init_method}' "
                f"(choose from {', '.join(INIT_METHODS)})"
            )
        if self.n_states < 1 and self.init_method != INIT_LOAD:
            raise InitializationError(f"Number of states must be positive, got {self.n_states}")
        if self.state_order not in ORDER_CHARS:
            raise InitializationError(f"Unknown state ordering '{self.state_order}'")
        if self.ordering_file and self.state_order != ORDER_USER:
            raise InitializationError("A state ordering file needs the user state ordering")
        if self.max_iterations < 1:
            raise InitializationError("max_iterations must be at least 1")
        if self.incremental and self.n_jobs != 1:
            raise InitializationError("Incremental updates cannot run with multiple jobs")


class TrainingState(enum.Enum):
    INITIALIZING = 'initializing'
    ESTEP = 'e-step'
    MSTEP = 'm-step'
    CONVERGED = 'converged'
    MAX_ITERATIONS_REACHED = 'max iterations reached'
    TIME_LIMIT_REACHED = 'time limit reached'

    @property
    def finished(self) -> bool:
        return self in (TrainingState.CONVERGED,
                        TrainingState.MAX_ITERATIONS_REACHED,
                        TrainingState.TIME_LIMIT_REACHED)


class TrainingLoop:
    """
    EM driver over one ObservationIndex.

    Attributes:
        params: Current ModelParameters, replaced after every M-step
        state: TrainingState
        history: Log-likelihood of every completed iteration
        n_eliminated: Total number of transitions eliminated so far
    """

    def __init__(self, index: ObservationIndex, config: TrainingConfig,
                 params: Optional[ModelParameters] = None):
        config.validate()
        self.index = index
        self.config = config
        self.state = TrainingState.INITIALIZING
        self.params = params if params is not None else initialize(config, index)
        self.n_states = self.params.n_states
        self.engine = ForwardBackwardEngine(index, self.n_states)
        self.history: List[float] = []
        self.n_eliminated = self.params.transitions.n_eliminated
        self.elapsed = 0.0

    # -------------------------------------------------------------------------
    # E/M steps
    # -------------------------------------------------------------------------

    def _sequences(self, iteration: int):
        return tqdm(range(self.index.n_sequences), desc=f"Iteration {iteration}",
                    disable=not self.config.verbose, leave=False)

    def _mstep(self, stats: SufficientStats):
        self.state = TrainingState.MSTEP
        self.params, n_new = mstep(self.params, stats, self.config.zero_cutoff)
        self.n_eliminated += n_new

    def _batch_pass(self, iteration: int, pool: Optional[ParallelEStep]) -> float:
        self.state = TrainingState.ESTEP
        if pool is not None:
            stats = pool.run(self.params)
        else:
            stats = SufficientStats.zeros(self.n_states, self.index.n_marks)
            for nseq in self._sequences(iteration):
                stats += self.engine.estep(self.params, nseq)
        self._mstep(stats)
        return stats.log_likelihood

    def _incremental_pass(self, iteration: int, stored: List[SufficientStats]) -> float:
        """
        M-step after every sequence from the second iteration on.

        Each M-step uses the newest statistics of every sequence, which for
        sequences not yet visited in this pass are those of the previous pass.
        """
        n_seq = self.index.n_sequences
        loglike = 0.0
        for nseq in self._sequences(iteration):
            self.state = TrainingState.ESTEP
            seq_stats = self.engine.estep(self.params, nseq)
            loglike += seq_stats.log_likelihood
            stored[nseq] = seq_stats
            if iteration > 1 or nseq == n_seq - 1:
                self._mstep(SufficientStats.merge(stored, self.n_states, self.index.n_marks))
        return loglike

    # -------------------------------------------------------------------------
    # Driver
    # -------------------------------------------------------------------------

    def _stop_reason(self, iteration: int, change: float,
                     elapsed: float) -> Optional[TrainingState]:
        cfg = self.config
        if iteration >= cfg.max_iterations:
            return TrainingState.MAX_ITERATIONS_REACHED
        if cfg.convergence_delta >= 0 and change < cfg.convergence_delta:
            return TrainingState.CONVERGED
        if cfg.max_seconds >= 0 and elapsed > cfg.max_seconds:
            return TrainingState.TIME_LIMIT_REACHED
        return None

    def output_ordering(self) -> List[int]:
        """Permutation the model is written under; segmentations reuse it."""
        cfg = self.config
        return state_ordering(self.params, cfg.state_order, cfg.ordering_file)

    def write_outputs(self, announce: bool = False):
        """Write the model file and its tables to the output directory."""
        cfg = self.config
        ordering = self.output_ordering()
        path = model_path(cfg.output_dir, self.n_states, cfg.file_id)
        emission_path, transition_path = write_tables(
            self.params, cfg.output_dir, ordering, cfg.state_order, cfg.file_id
        )
        save_model(self.params, path, ordering, cfg.state_order)
        if announce:
            for p in (transition_path, emission_path, path):
                print(f"Writing to file {p}")

    def run(self) -> ModelParameters:
        """
        Train until a stopping rule fires.

        Returns:
            Final ModelParameters; log_likelihood is that of the last pass
        """
        cfg = self.config
        if cfg.output_dir:
            os.makedirs(cfg.output_dir, exist_ok=True)

        stored = [SufficientStats.zeros(self.n_states, self.index.n_marks)
                  for _ in range(self.index.n_sequences)] if cfg.incremental else None

        start = time.time()
        prev_loglike = -np.inf
        iteration = 0
        with contextlib.ExitStack() as stack:
            pool = None
            if not cfg.incremental and cfg.n_jobs != 1:
                pool = stack.enter_context(ParallelEStep(self.index, self.n_states, cfg.n_jobs))

            while True:
                iteration += 1
                if cfg.incremental:
                    loglike = self._incremental_pass(iteration, stored)
                else:
                    loglike = self._batch_pass(iteration, pool)

                self.params = self.params.replace(log_likelihood=loglike, iteration=iteration)
                self.history.append(loglike)
                change = loglike - prev_loglike
                prev_loglike = loglike

                if cfg.output_dir:
                    self.write_outputs(announce=iteration == 1)

                self.elapsed = time.time() - start
                self._print_progress(iteration, loglike, change)

                reason = self._stop_reason(iteration, change, self.elapsed)
                if reason is not None:
                    self.state = reason
                    break

        if cfg.verbose:
            print(f"Training finished: {self.state.value} after {iteration} iterations "
                  f"({self.n_eliminated} transitions eliminated)")
        return self.params

    def _print_progress(self, iteration: int, loglike: float, change: float):
        if iteration == 1:
            print(f"{'Iteration':>10} {'Estimated Log Likelihood':>25} "
                  f"{'Change':>10} {'Total Time (secs)':>20}")
            change_text = '-'
        else:
            change_text = f"{change:.3f}"
        print(f"{iteration:>10} {loglike:>25.3f} {change_text:>10} {self.elapsed:>20.1f}")


def train(index: ObservationIndex, config: TrainingConfig) -> ModelParameters:
    """Initialize and train a model in one call."""
    return TrainingLoop(index, config).run()
