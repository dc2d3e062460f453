"""
Tests for chromstate.inference.em module.
"""
import os

import pytest
import numpy as np

from chromstate.core.errors import InitializationError
from chromstate.core.hmm import ForwardBackwardEngine
from chromstate.core.initialize import INIT_RANDOM, random_init
from chromstate.core.model_io import load_model
from chromstate.core.observations import ObservationIndex
from chromstate.core.ordering import ORDER_FIXED
from chromstate.inference.em import TrainingConfig, TrainingLoop, TrainingState, train


class TestTrainingConfig:
    def test_defaults(self):
        config = TrainingConfig(n_states=5)
        assert config.seed == 999
        assert config.max_iterations == 200
        assert config.convergence_delta == 0.001
        assert config.max_seconds == -1
        assert config.zero_cutoff == pytest.approx(1e-8)

    def test_incremental_needs_single_job(self):
        with pytest.raises(InitializationError):
            TrainingConfig(n_states=2, incremental=True, n_jobs=2).validate()

    def test_unknown_order(self):
        with pytest.raises(InitializationError):
            TrainingConfig(n_states=2, state_order='alphabetical').validate()

    def test_states_positive(self):
        with pytest.raises(InitializationError):
            TrainingConfig(n_states=0).validate()

    def test_ordering_file_needs_user_order(self):
        with pytest.raises(InitializationError, match='user state ordering'):
            TrainingConfig(n_states=2, ordering_file='ordering.txt').validate()


class TestTrainingLoop:
    def test_recovers_separated_states(self, simulated_index):
        config = TrainingConfig(n_states=2, max_iterations=50)
        params = train(simulated_index, config)
        present = params.emissions.present
        high = np.argmax(present[:, 0])
        assert present[high, 0] > 0.75
        assert present[1 - high, 0] < 0.2
        params.check_normalized()

    def test_likelihood_never_decreases(self, simulated_index):
        config = TrainingConfig(n_states=3, init_method=INIT_RANDOM, max_iterations=15,
                                convergence_delta=-1)
        loop = TrainingLoop(simulated_index, config)
        loop.run()
        diffs = np.diff(loop.history)
        assert np.all(diffs > -1e-6 * np.abs(loop.history[1:]))

    def test_deterministic(self, simulated_index):
        config = TrainingConfig(n_states=3, init_method=INIT_RANDOM, seed=4, max_iterations=5)
        a = train(simulated_index, config)
        b = train(simulated_index, config)
        np.testing.assert_array_equal(a.transitions.probs, b.transitions.probs)
        np.testing.assert_array_equal(a.emissions.probs, b.emissions.probs)
        assert a.log_likelihood == b.log_likelihood

    def test_max_iterations(self, simulated_index):
        config = TrainingConfig(n_states=2, max_iterations=3, convergence_delta=-1)
        loop = TrainingLoop(simulated_index, config)
        params = loop.run()
        assert len(loop.history) == 3
        assert params.iteration == 3
        assert loop.state == TrainingState.MAX_ITERATIONS_REACHED
        assert loop.state.finished

    def test_convergence_delta(self, simulated_index):
        # the first iteration has no previous likelihood to compare against
        config = TrainingConfig(n_states=2, convergence_delta=1e12)
        loop = TrainingLoop(simulated_index, config)
        loop.run()
        assert len(loop.history) == 2
        assert loop.state == TrainingState.CONVERGED

    def test_time_limit(self, simulated_index):
        config = TrainingConfig(n_states=2, max_seconds=0, convergence_delta=-1)
        loop = TrainingLoop(simulated_index, config)
        loop.run()
        assert len(loop.history) == 1
        assert loop.state == TrainingState.TIME_LIMIT_REACHED

    def test_explicit_start_params(self, simulated_index, two_state_params):
        config = TrainingConfig(n_states=2, max_iterations=1)
        loop = TrainingLoop(simulated_index, config, params=two_state_params)
        assert loop.params is two_state_params
        params = loop.run()
        assert params.iteration == 1

    def test_log_likelihood_is_last_pass(self, simulated_index, two_state_params):
        config = TrainingConfig(n_states=2, max_iterations=1)
        params = TrainingLoop(simulated_index, config, params=two_state_params).run()
        engine = ForwardBackwardEngine(simulated_index, 2)
        expected = sum(engine.score(two_state_params, n)
                       for n in range(simulated_index.n_sequences))
        assert params.log_likelihood == pytest.approx(expected)

    def test_progress_table(self, simulated_index, capsys):
        config = TrainingConfig(n_states=2, max_iterations=2, convergence_delta=-1)
        TrainingLoop(simulated_index, config).run()
        out = capsys.readouterr().out.splitlines()
        assert 'Estimated Log Likelihood' in out[0]
        assert 'Total Time (secs)' in out[0]
        assert out[1].split()[0] == '1'
        assert out[1].split()[2] == '-'
        assert out[2].split()[0] == '2'


class TestSmallModels:
    def test_two_state_toy(self):
        """Two states, one mark, one 4-bin sequence: one iteration moves the emissions."""
        index = ObservationIndex.from_calls([np.array([[1], [1], [0], [0]], dtype=np.uint8)],
                                            ['m'])
        start = random_init(2, ['m'], seed=1)
        config = TrainingConfig(n_states=2, init_method=INIT_RANDOM, seed=1, max_iterations=1)
        params = train(index, config)
        assert not np.allclose(params.emissions.present, start.emissions.present)
        params.check_normalized()

    def test_emissions_follow_posteriors_across_sequences(self, toy_calls, toy_index,
                                                          two_state_params):
        """Sequences with different combinations each contribute only their own bins."""
        engine = ForwardBackwardEngine(toy_index, 2)
        present = np.zeros((2, 2))
        observed = np.zeros((2, 2))
        for nseq, calls in enumerate(toy_calls):
            post, _ = engine.posteriors(two_state_params, nseq)
            for m in range(2):
                present[:, m] += post[calls[:, m] == 1].sum(axis=0)
                observed[:, m] += post[calls[:, m] != 2].sum(axis=0)

        config = TrainingConfig(n_states=2, max_iterations=1)
        params = TrainingLoop(toy_index, config, params=two_state_params).run()
        np.testing.assert_allclose(params.emissions.present, present / observed)


class TestUpdateSchedules:
    def test_incremental_first_iteration_matches_batch(self, simulated_index, marks):
        start = random_init(2, marks, seed=3)
        batch = TrainingLoop(simulated_index, TrainingConfig(n_states=2, max_iterations=1),
                             params=start).run()
        incremental = TrainingLoop(
            simulated_index,
            TrainingConfig(n_states=2, max_iterations=1, incremental=True),
            params=start,
        ).run()
        np.testing.assert_allclose(incremental.transitions.probs, batch.transitions.probs)
        np.testing.assert_allclose(incremental.emissions.probs, batch.emissions.probs)
        np.testing.assert_allclose(incremental.initial, batch.initial)
        assert incremental.log_likelihood == pytest.approx(batch.log_likelihood)

    def test_incremental_trains(self, simulated_index):
        config = TrainingConfig(n_states=2, init_method=INIT_RANDOM, max_iterations=10,
                                incremental=True)
        loop = TrainingLoop(simulated_index, config)
        params = loop.run()
        params.check_normalized()
        assert loop.history[-1] > loop.history[0]

    def test_parallel_matches_serial(self, simulated_index):
        serial = train(simulated_index, TrainingConfig(n_states=3, max_iterations=3,
                                                       init_method=INIT_RANDOM))
        parallel = train(simulated_index, TrainingConfig(n_states=3, max_iterations=3,
                                                         init_method=INIT_RANDOM, n_jobs=2))
        np.testing.assert_allclose(parallel.transitions.probs, serial.transitions.probs)
        np.testing.assert_allclose(parallel.emissions.probs, serial.emissions.probs)
        assert parallel.log_likelihood == pytest.approx(serial.log_likelihood)


class TestOutputs:
    def test_files_written(self, simulated_index, tmp_path):
        out = str(tmp_path / 'model_out')
        config = TrainingConfig(n_states=2, max_iterations=3, output_dir=out, file_id='run1')
        params = train(simulated_index, config)

        for name in ('model_2_run1.txt', 'emissions_2_run1.txt', 'transitions_2_run1.txt'):
            assert os.path.exists(os.path.join(out, name))

        loaded, order_char = load_model(os.path.join(out, 'model_2_run1.txt'))
        assert order_char == 'E'
        assert loaded.iteration == params.iteration
        assert loaded.log_likelihood == params.log_likelihood
        np.testing.assert_allclose(np.sort(loaded.initial), np.sort(params.initial))

    def test_fixed_order_written_unpermuted(self, simulated_index, tmp_path):
        out = str(tmp_path / 'model_out')
        config = TrainingConfig(n_states=2, max_iterations=2, output_dir=out,
                                state_order=ORDER_FIXED)
        params = train(simulated_index, config)
        loaded, order_char = load_model(os.path.join(out, 'model_2.txt'))
        assert order_char == 'F'
        np.testing.assert_array_equal(loaded.transitions.probs, params.transitions.probs)
        np.testing.assert_array_equal(loaded.emissions.probs, params.emissions.probs)
