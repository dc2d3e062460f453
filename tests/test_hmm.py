"""
Tests for chromstate.core.hmm module.
"""
import pytest
import numpy as np

from chromstate.core.errors import NumericalError
from chromstate.core.hmm import ForwardBackwardEngine
from chromstate.core.observations import ObservationIndex
from chromstate.core.params import EmissionTable, ModelParameters, TransitionMatrix


def random_sparse_params(n_states, n_marks, seed, eliminate=0.6):
    """Random model with a large share of off-diagonal transitions eliminated."""
    rng = np.random.RandomState(seed)
    elim = rng.random_sample((n_states, n_states)) < eliminate
    np.fill_diagonal(elim, False)
    probs = rng.random_sample((n_states, n_states)) + 0.1
    probs[elim] = 0
    probs /= probs.sum(axis=1, keepdims=True)
    initial = rng.random_sample(n_states) + 0.1
    return ModelParameters(
        initial=initial / initial.sum(),
        transitions=TransitionMatrix(probs, elim),
        emissions=EmissionTable.from_present(0.05 + 0.9 * rng.random_sample((n_states, n_marks))),
        marks=[f"m{i}" for i in range(n_marks)],
    )


class TestPosteriors:
    """Scaled forward-backward against the unscaled definition."""

    def test_matches_brute_force(self, toy_calls, toy_index, two_state_params, brute_force):
        engine = ForwardBackwardEngine(toy_index, 2)
        for nseq, calls in enumerate(toy_calls):
            post, ll = engine.posteriors(two_state_params, nseq)
            expected_post, expected_ll = brute_force(two_state_params, calls)
            np.testing.assert_allclose(post, expected_post, rtol=1e-9, atol=1e-12)
            assert ll == pytest.approx(expected_ll, rel=1e-10)

    def test_rows_sum_to_one(self, toy_index, two_state_params):
        engine = ForwardBackwardEngine(toy_index, 2)
        post, _ = engine.posteriors(two_state_params, 0)
        assert post.shape == (12, 2)
        np.testing.assert_allclose(post.sum(axis=1), 1.0)

    def test_score_equals_posterior_loglike(self, toy_index, two_state_params):
        engine = ForwardBackwardEngine(toy_index, 2)
        _, ll = engine.posteriors(two_state_params, 1)
        assert engine.score(two_state_params, 1) == pytest.approx(ll)

    def test_sparse_transitions(self, brute_force):
        rng = np.random.RandomState(5)
        n_marks = 3
        calls = [(rng.random_sample((25, n_marks)) < 0.4).astype(np.uint8)]
        calls[0][3, 1] = 2
        params = random_sparse_params(10, n_marks, seed=11)
        assert params.transitions.n_eliminated > 30

        index = ObservationIndex.from_calls(calls, params.marks)
        engine = ForwardBackwardEngine(index, 10)
        post, ll = engine.posteriors(params, 0)
        expected_post, expected_ll = brute_force(params, calls[0])
        np.testing.assert_allclose(post, expected_post, rtol=1e-8, atol=1e-12)
        assert ll == pytest.approx(expected_ll, rel=1e-10)

    def test_workspace_reused_across_lengths(self, toy_index, two_state_params):
        engine = ForwardBackwardEngine(toy_index, 2)
        first, _ = engine.posteriors(two_state_params, 0)
        engine.posteriors(two_state_params, 2)
        again, _ = engine.posteriors(two_state_params, 0)
        np.testing.assert_array_equal(first, again)

    def test_single_bin_sequence(self, marks, two_state_params, brute_force):
        calls = [np.array([[1, 0]], dtype=np.uint8)]
        index = ObservationIndex.from_calls(calls, marks)
        engine = ForwardBackwardEngine(index, 2)
        post, ll = engine.posteriors(two_state_params, 0)
        expected_post, expected_ll = brute_force(two_state_params, calls[0])
        np.testing.assert_allclose(post, expected_post)
        assert ll == pytest.approx(expected_ll)


class TestMissingMarks:
    def test_missing_mark_leaves_likelihood_unchanged(self, two_state_params):
        """A mark that is always missing contributes nothing to the likelihood."""
        one_mark = [np.array([[0], [1], [1], [0], [1]], dtype=np.uint8)]
        with_missing = [np.column_stack([one_mark[0][:, 0], np.full(5, 2)]).astype(np.uint8)]

        full_index = ObservationIndex.from_calls(with_missing, two_state_params.marks)
        single_params = ModelParameters(
            initial=two_state_params.initial,
            transitions=two_state_params.transitions,
            emissions=EmissionTable(two_state_params.emissions.probs[:, :1, :]),
            marks=two_state_params.marks[:1],
        )
        single_index = ObservationIndex.from_calls(one_mark, single_params.marks)

        full = ForwardBackwardEngine(full_index, 2).score(two_state_params, 0)
        single = ForwardBackwardEngine(single_index, 2).score(single_params, 0)
        assert full == pytest.approx(single, rel=1e-12)


class TestEStep:
    def test_statistic_totals(self, toy_calls, toy_index, two_state_params):
        engine = ForwardBackwardEngine(toy_index, 2)
        for nseq, calls in enumerate(toy_calls):
            stats = engine.estep(two_state_params, nseq)
            n_bins = len(calls)
            assert stats.transitions.sum() == pytest.approx(n_bins - 1)
            observed = (calls != 2).sum(axis=0)
            np.testing.assert_allclose(stats.emissions.sum(axis=(0, 2)), observed)
            assert stats.initial.sum() == pytest.approx(1.0)

    def test_merged_emission_mass_matches_calls(self, toy_calls, toy_index, two_state_params):
        """Summed over sequences, emission mass per mark equals the non-missing calls."""
        engine = ForwardBackwardEngine(toy_index, 2)
        merged = sum(engine.estep(two_state_params, n).emissions
                     for n in range(toy_index.n_sequences))
        observed = sum((calls != 2).sum(axis=0) for calls in toy_calls)
        np.testing.assert_allclose(merged.sum(axis=(0, 2)), observed)

    def test_initial_is_first_bin_posterior(self, toy_index, two_state_params):
        engine = ForwardBackwardEngine(toy_index, 2)
        post, ll = engine.posteriors(two_state_params, 1)
        stats = engine.estep(two_state_params, 1)
        np.testing.assert_allclose(stats.initial, post[0])
        assert stats.log_likelihood == pytest.approx(ll)

    def test_emission_counts_follow_posteriors(self, toy_calls, toy_index, two_state_params):
        engine = ForwardBackwardEngine(toy_index, 2)
        post, _ = engine.posteriors(two_state_params, 0)
        stats = engine.estep(two_state_params, 0)
        calls = toy_calls[0]
        for m in range(2):
            np.testing.assert_allclose(stats.emissions[:, m, 1], post[calls[:, m] == 1].sum(axis=0))
            np.testing.assert_allclose(stats.emissions[:, m, 0], post[calls[:, m] == 0].sum(axis=0))

    def test_stats_do_not_leak_between_sequences(self, toy_index, two_state_params):
        engine = ForwardBackwardEngine(toy_index, 2)
        first = engine.estep(two_state_params, 2)
        engine.estep(two_state_params, 0)
        again = engine.estep(two_state_params, 2)
        np.testing.assert_allclose(first.emissions, again.emissions)
        np.testing.assert_allclose(first.transitions, again.transitions)


class TestErrors:
    def test_zero_probability_observation(self, marks):
        calls = [np.array([[0, 0], [1, 0], [0, 0]], dtype=np.uint8)]
        index = ObservationIndex.from_calls(calls, marks, sources=['c_chr1_binary.txt'])
        params = ModelParameters(
            initial=np.array([0.5, 0.5]),
            transitions=TransitionMatrix.uniform(2),
            emissions=EmissionTable.from_present(np.zeros((2, 2))),
            marks=marks,
        )
        engine = ForwardBackwardEngine(index, 2)
        with pytest.raises(NumericalError, match="c_chr1_binary.txt, bin 1"):
            engine.estep(params, 0)

    def test_state_count_mismatch(self, toy_index, two_state_params):
        engine = ForwardBackwardEngine(toy_index, 3)
        with pytest.raises(ValueError):
            engine.posteriors(two_state_params, 0)
