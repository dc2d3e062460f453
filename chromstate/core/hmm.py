"""
chromstate HMM module

Provides:
1. Numba JIT-compiled scaled forward-backward for multivariate binary HMMs
2. Sufficient-statistic accumulation (expected transitions, emissions,
   initial occupancy) for Baum-Welch
3. A reusable workspace sized to the longest sequence

Forward and backward values are scaled per bin (alpha sums to 1 at every
bin) rather than kept in log space, so the log-likelihood of a sequence is
the sum of the log scaling factors.

Transitions that have been eliminated are skipped through the sparse
row/column index of the TransitionMatrix whenever few enough survive;
otherwise the dense row or column is walked. The switch only affects speed.
"""

from typing import Optional, Tuple

import numpy as np
from numba import jit

from chromstate.core.errors import NumericalError
from chromstate.core.observations import ObservationIndex
from chromstate.core.params import ModelParameters, SufficientStats

SPARSE_CUTOFF_RATIO = 0.7
SPARSE_CUTOFF_LOOSER_RATIO = 0.8

# Kernel status codes
_OK = -1
_ZERO_SCALE = 0
_ZERO_GAMMA = 1
_ZERO_XI = 2


# =============================================================================
# Numba JIT-compiled kernels
# =============================================================================

@jit(nopython=True, cache=False)
def _emission_products_numba(values, not_missing, present, emit, out):
    """
    Product of per-mark emission probabilities for each combination.

    Missing marks are left out of the product. Only combinations flagged in
    `present` are computed.
    """
    n_combos, n_marks = values.shape
    n_states = emit.shape[0]
    for c in range(n_combos):
        if present[c]:
            for s in range(n_states):
                p = 1.0
                for m in range(n_marks):
                    if not_missing[c, m]:
                        if values[c, m]:
                            p *= emit[s, m, 1]
                        else:
                            p *= emit[s, m, 0]
                out[c, s] = p


@jit(nopython=True, cache=False)
def _forward_backward_numba(combos, initial, trans, trans_cols,
                            row_index, row_count, col_index, col_count,
                            eprod, sparse_cutoff, looser_cutoff,
                            alpha, scale, beta_next, beta_cur, tmp, gvec, xi,
                            gamma, store_gamma, accumulate,
                            sxi, combo_gamma, init_gamma):
    """
    Scaled forward-backward over one sequence.

    Returns:
        (log_likelihood, bad_bin, status) where status is _OK or one of the
        zero-denominator codes and bad_bin the bin it occurred at
    """
    T = combos.shape[0]
    S = initial.shape[0]
    loglike = 0.0

    # Forward pass
    e = eprod[combos[0]]
    dscale = 0.0
    for s in range(S):
        v = initial[s] * e[s]
        alpha[0, s] = v
        dscale += v
    if not dscale > 0.0:
        return loglike, 0, _ZERO_SCALE
    scale[0] = dscale
    for s in range(S):
        alpha[0, s] /= dscale
    loglike += np.log(dscale)

    for t in range(1, T):
        e = eprod[combos[t]]
        dscale = 0.0
        for s in range(S):
            acc = 0.0
            n = col_count[s]
            if n < sparse_cutoff:
                for k in range(n):
                    j = col_index[s, k]
                    acc += trans_cols[s, j] * alpha[t - 1, j]
            else:
                for j in range(S):
                    acc += trans_cols[s, j] * alpha[t - 1, j]
            v = acc * e[s]
            alpha[t, s] = v
            dscale += v
        if not dscale > 0.0:
            return loglike, t, _ZERO_SCALE
        scale[t] = dscale
        for s in range(S):
            alpha[t, s] /= dscale
        loglike += np.log(dscale)

    # Backward pass, starting with the posterior at the last bin
    last = T - 1
    binit = 1.0 / scale[last]
    for s in range(S):
        beta_next[s] = binit

    denom = 0.0
    for s in range(S):
        g = alpha[last, s] * beta_next[s]
        gvec[s] = g
        denom += g
    if not denom > 0.0:
        return loglike, last, _ZERO_GAMMA
    for s in range(S):
        gvec[s] /= denom
        if store_gamma:
            gamma[last, s] = gvec[s]
        if accumulate:
            combo_gamma[combos[last], s] += gvec[s]

    if accumulate:
        for i in range(S):
            for j in range(S):
                xi[i, j] = 0.0

    for t in range(last - 1, -1, -1):
        e = eprod[combos[t + 1]]
        for s in range(S):
            tmp[s] = beta_next[s] * e[s]

        dscale = scale[t]
        for i in range(S):
            acc = 0.0
            n = row_count[i]
            if n < sparse_cutoff:
                for k in range(n):
                    j = row_index[i, k]
                    acc += trans[i, j] * tmp[j]
            else:
                for j in range(S):
                    acc += trans[i, j] * tmp[j]
            beta_cur[i] = acc / dscale

        denom = 0.0
        for s in range(S):
            g = alpha[t, s] * beta_cur[s]
            gvec[s] = g
            denom += g
        if not denom > 0.0:
            return loglike, t, _ZERO_GAMMA
        for s in range(S):
            gvec[s] /= denom
            if store_gamma:
                gamma[t, s] = gvec[s]
            if accumulate:
                combo_gamma[combos[t], s] += gvec[s]

        if accumulate:
            # xi[i, j] proportional to P(x_t = i, x_t+1 = j | O)
            dsum = 0.0
            for i in range(S):
                a = alpha[t, i]
                n = row_count[i]
                if n < looser_cutoff:
                    for k in range(n):
                        j = row_index[i, k]
                        v = trans[i, j] * a * tmp[j]
                        dsum += v
                        xi[i, j] = v
                else:
                    for j in range(S):
                        v = trans[i, j] * a * tmp[j]
                        dsum += v
                        xi[i, j] = v
            if not dsum > 0.0:
                return loglike, t, _ZERO_XI

            for i in range(S):
                n = row_count[i]
                if n < sparse_cutoff:
                    for k in range(n):
                        j = row_index[i, k]
                        sxi[i, j] += xi[i, j] / dsum
                else:
                    for j in range(S):
                        sxi[i, j] += xi[i, j] / dsum

        for s in range(S):
            beta_next[s] = beta_cur[s]

    # gvec now holds the posterior at bin 0
    if accumulate:
        for s in range(S):
            init_gamma[s] = gvec[s]

    return loglike, _OK, _OK


# =============================================================================
# Engine
# =============================================================================

class Workspace:
    """Per-bin and per-combination scratch arrays, reused across sequences."""

    def __init__(self, max_length: int, n_states: int, n_combos: int):
        self.max_length = max_length
        self.n_states = n_states
        self.alpha = np.zeros((max_length, n_states))
        self.gamma = np.zeros((max_length, n_states))
        self.scale = np.zeros(max_length)
        self.beta_next = np.zeros(n_states)
        self.beta_cur = np.zeros(n_states)
        self.tmp = np.zeros(n_states)
        self.gvec = np.zeros(n_states)
        self.xi = np.zeros((n_states, n_states))
        self.eprod = np.zeros((n_combos, n_states))
        self.combo_gamma = np.zeros((n_combos, n_states))


class ForwardBackwardEngine:
    """
    Runs forward-backward for the sequences of one ObservationIndex.

    The engine keeps one Workspace sized to the longest sequence; results
    that outlive a call (posteriors) are copied out of it.
    """

    def __init__(self, index: ObservationIndex, n_states: int):
        self.index = index
        self.n_states = n_states
        self.sparse_cutoff = int(n_states * SPARSE_CUTOFF_RATIO)
        self.looser_cutoff = int(n_states * SPARSE_CUTOFF_LOOSER_RATIO)
        self.workspace = Workspace(max(index.max_length, 1), n_states, index.n_combos)

        # 0/1 masks used to fold per-combination gamma into emission counts
        self._present_mask = (index.values & index.not_missing).astype(np.float64)
        self._absent_mask = (~index.values & index.not_missing).astype(np.float64)

        self._params: Optional[ModelParameters] = None
        self._trans_cols: Optional[np.ndarray] = None

    def _prepare(self, params: ModelParameters):
        if params.n_states != self.n_states:
            raise ValueError(
                f"Model has {params.n_states} states, engine expects {self.n_states}"
            )
        if params.n_marks != self.index.n_marks:
            raise ValueError(
                f"Model has {params.n_marks} marks, data has {self.index.n_marks}"
            )
        if params is not self._params:
            self._params = params
            self._trans_cols = np.ascontiguousarray(params.transitions.probs.T)

    def emission_products(self, params: ModelParameters, nseq: int) -> np.ndarray:
        """
        (n_combos, n_states) emission products for the combinations that
        occur in sequence nseq. Rows of other combinations are stale.
        """
        self._prepare(params)
        _emission_products_numba(
            self.index.values, self.index.not_missing, self.index.present_in[nseq],
            params.emissions.probs, self.workspace.eprod
        )
        return self.workspace.eprod

    def _run(self, params: ModelParameters, nseq: int,
             store_gamma: bool, accumulate: bool,
             stats: Optional[SufficientStats]) -> float:
        self._prepare(params)
        ws = self.workspace
        seq = self.index.sequences[nseq]
        self.emission_products(params, nseq)

        trans = params.transitions
        if accumulate:
            ws.combo_gamma[self.index.present_in[nseq]] = 0.0
            sxi, init_gamma = stats.transitions, stats.initial
        else:
            sxi = ws.xi
            init_gamma = ws.gvec

        loglike, bad_bin, status = _forward_backward_numba(
            seq.combos, params.initial, trans.probs, self._trans_cols,
            trans.row_index, trans.row_count, trans.col_index, trans.col_count,
            ws.eprod, self.sparse_cutoff, self.looser_cutoff,
            ws.alpha, ws.scale, ws.beta_next, ws.beta_cur, ws.tmp, ws.gvec, ws.xi,
            ws.gamma, store_gamma, accumulate,
            sxi, ws.combo_gamma, init_gamma
        )

        if status != _OK:
            label = seq.source or f"{seq.cell} {seq.chrom}"
            if status == _ZERO_SCALE:
                what = "forward scaling factor is 0 (every state has zero probability)"
            elif status == _ZERO_GAMMA:
                what = "posterior normalization denominator is 0"
            else:
                what = "expected transition normalization denominator is 0"
            raise NumericalError(f"{label}, bin {bad_bin}: {what}")

        return loglike

    def estep(self, params: ModelParameters, nseq: int) -> SufficientStats:
        """
        Forward-backward over sequence nseq and its sufficient statistics.

        Returns:
            SufficientStats with expected transition counts, expected
            (state, mark, value) emission counts, the posterior at bin 0 and
            the log-likelihood of the sequence
        """
        stats = SufficientStats.zeros(self.n_states, self.index.n_marks)
        stats.log_likelihood = self._run(params, nseq, store_gamma=False,
                                         accumulate=True, stats=stats)

        # fold per-combination posterior mass into per-mark emission buckets;
        # rows of combinations absent from this sequence hold stale mass
        present = self.index.present_in[nseq]
        combo_gamma = self.workspace.combo_gamma[present]
        stats.emissions[:, :, 1] = combo_gamma.T @ self._present_mask[present]
        stats.emissions[:, :, 0] = combo_gamma.T @ self._absent_mask[present]
        return stats

    def posteriors(self, params: ModelParameters, nseq: int) -> Tuple[np.ndarray, float]:
        """
        Posterior state probabilities for every bin of sequence nseq.

        Returns:
            (gamma, log_likelihood), gamma shape (n_bins, n_states), rows sum to 1
        """
        loglike = self._run(params, nseq, store_gamma=True, accumulate=False, stats=None)
        n_bins = len(self.index.sequences[nseq])
        return self.workspace.gamma[:n_bins].copy(), loglike

    def score(self, params: ModelParameters, nseq: int) -> float:
        """Log-likelihood of sequence nseq."""
        return self._run(params, nseq, store_gamma=False, accumulate=False, stats=None)
