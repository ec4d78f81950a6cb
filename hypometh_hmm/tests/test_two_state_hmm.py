"""
Tests for the two-state HMM inference engine.

Checks forward-backward and Viterbi against brute-force enumeration of
all state paths on short chains, plus the per-chain decoding methods.
"""

import itertools

import numpy as np
import pytest
from scipy.special import logsumexp

from hypometh_hmm.data_loader import SiteTable
from hypometh_hmm.emissions import BetaBinomial
from hypometh_hmm.segmentation import find_reset_points
from hypometh_hmm.two_state_hmm import (
    FG,
    BG,
    HMMParameters,
    Transition,
    TwoStateHMM,
    forward,
    forward_backward,
    viterbi,
)


def path_log_prob(path, log_emit, params):
    """Joint log-probability of one state path and the emissions."""
    log_start, log_trans, log_end = params.log_start(), params.log_trans(), params.log_end()
    total = log_start[path[0]] + log_emit[0, path[0]]
    for i in range(1, len(path)):
        total += log_trans[path[i - 1], path[i]] + log_emit[i, path[i]]
    return total + log_end[path[-1]]


@pytest.fixture
def params():
    return HMMParameters(
        start=np.array([0.6, 0.4]),
        trans=np.array([[0.7, 0.3], [0.2, 0.8]]),
        end=np.array([0.3, 0.6]),
        fg=BetaBinomial(1.0, 9.0),
        bg=BetaBinomial(9.0, 1.0),
    )


@pytest.fixture
def log_emit():
    return np.array([
        [-1.0, -2.5],
        [-3.0, -0.5],
        [-0.7, -1.9],
        [-2.2, -0.4],
    ])


@pytest.fixture
def scenario_params():
    return HMMParameters(
        start=np.array([0.5, 0.5]),
        trans=np.array([[0.9, 0.1], [0.1, 0.9]]),
        end=np.array([1e-10, 1e-10]),
        fg=BetaBinomial(9.0, 1.0),
        bg=BetaBinomial(1.0, 9.0),
    )


class TestParameters:
    """HMMParameters validation and persistence."""

    def test_rows_must_sum_to_one(self):
        with pytest.raises(ValueError):
            HMMParameters(
                start=[0.5, 0.5], trans=[[0.5, 0.4], [0.5, 0.5]], end=[1, 1],
                fg=BetaBinomial(1, 2), bg=BetaBinomial(2, 1),
            )

    def test_initial_from_coverage(self):
        p = HMMParameters.initial(10.0)
        assert p.fg.alpha == pytest.approx(3.3)
        assert p.fg.beta == pytest.approx(6.7)
        assert p.bg.alpha == pytest.approx(6.7)
        assert p.bg.beta == pytest.approx(3.3)
        np.testing.assert_allclose(p.trans.sum(axis=1), 1.0)

    def test_json_round_trip(self, params, tmp_path):
        path = tmp_path / "params.json"
        params.save_json(str(path))
        loaded = HMMParameters.load_json(str(path))

        np.testing.assert_allclose(loaded.trans, params.trans)
        np.testing.assert_allclose(loaded.end, params.end)
        assert loaded.fg == params.fg
        assert loaded.bg == params.bg


class TestForwardBackward:
    """Forward-backward on one chain."""

    def test_likelihood_matches_brute_force(self, params, log_emit):
        paths = itertools.product([FG, BG], repeat=len(log_emit))
        expected = logsumexp([path_log_prob(p, log_emit, params) for p in paths])

        _, log_prob = forward(log_emit, params.log_start(), params.log_trans(),
                              params.log_end())
        assert log_prob == pytest.approx(expected, abs=1e-10)

    def test_posteriors_match_brute_force(self, params, log_emit):
        n = len(log_emit)
        paths = list(itertools.product([FG, BG], repeat=n))
        weights = np.exp([path_log_prob(p, log_emit, params) for p in paths])
        weights /= weights.sum()

        expected = np.zeros((n, 2))
        for path, w in zip(paths, weights):
            for i, s in enumerate(path):
                expected[i, s] += w

        fb = forward_backward(log_emit, params)
        np.testing.assert_allclose(fb.posteriors, expected, atol=1e-10)

    def test_posteriors_sum_to_one(self, params):
        rng = np.random.default_rng(3)
        log_emit = -rng.gamma(2.0, 2.0, size=(200, 2))
        fb = forward_backward(log_emit, params)
        np.testing.assert_allclose(fb.posteriors.sum(axis=1), 1.0, atol=1e-12)

    def test_transitions_consistent_with_posteriors(self, params):
        rng = np.random.default_rng(4)
        log_emit = -rng.gamma(2.0, 2.0, size=(50, 2))
        fb = forward_backward(log_emit, params)

        assert fb.transitions.shape == (49, 2, 2)
        np.testing.assert_allclose(fb.transitions.sum(axis=(1, 2)), 1.0, atol=1e-10)
        np.testing.assert_allclose(fb.transitions.sum(axis=2), fb.posteriors[:-1],
                                   atol=1e-10)
        np.testing.assert_allclose(fb.transitions.sum(axis=1), fb.posteriors[1:],
                                   atol=1e-10)

    def test_single_site_chain(self, params):
        fb = forward_backward(np.array([[-1.0, -2.0]]), params)
        assert fb.transitions.shape == (0, 2, 2)
        assert fb.posteriors.sum() == pytest.approx(1.0)


class TestViterbi:
    """Viterbi decoding on one chain."""

    def test_matches_brute_force(self, params, log_emit):
        paths = list(itertools.product([FG, BG], repeat=len(log_emit)))
        scores = [path_log_prob(p, log_emit, params) for p in paths]
        best = paths[int(np.argmax(scores))]

        path, log_prob = viterbi(log_emit, params.log_start(), params.log_trans(),
                                 params.log_end())

        np.testing.assert_array_equal(path, np.array(best) == FG)
        assert log_prob == pytest.approx(max(scores), abs=1e-10)

    def test_ties_are_deterministic(self):
        flat = HMMParameters(
            start=[0.5, 0.5], trans=[[0.5, 0.5], [0.5, 0.5]], end=[0.5, 0.5],
            fg=BetaBinomial(1, 1), bg=BetaBinomial(1, 1),
        )
        log_emit = np.zeros((6, 2))
        path, _ = viterbi(log_emit, flat.log_start(), flat.log_trans(), flat.log_end())
        np.testing.assert_array_equal(path, np.ones(6, dtype=bool))

    def test_tie_follows_dominant_state(self):
        """Equal incoming scores pick the predecessor leading at the previous CpG."""
        params = HMMParameters(
            start=[0.2, 0.8], trans=[[0.8, 0.2], [0.2, 0.8]], end=[0.5, 0.5],
            fg=BetaBinomial(1, 1), bg=BetaBinomial(1, 1),
        )
        # Both routes into foreground at site 1 score log(0.2 * 0.8), while
        # background leads at site 0
        log_emit = np.array([[0.0, 0.0], [0.0, -5.0]])
        path, _ = viterbi(log_emit, params.log_start(), params.log_trans(),
                          params.log_end())
        np.testing.assert_array_equal(path, [False, True])


class TestScenario:
    """Five CpGs: three methylated-looking, two unmethylated-looking."""

    def test_posterior_decoding(self, scenario_sites, scenario_params):
        reset_points = find_reset_points(scenario_sites, 2000)
        hmm = TwoStateHMM(scenario_params)

        classes, probs = hmm.posterior_decoding(scenario_sites, reset_points)

        np.testing.assert_array_equal(classes, [True, True, True, False, False])
        assert np.all((probs >= 0) & (probs <= 1))

    def test_viterbi_agrees(self, scenario_sites, scenario_params):
        reset_points = find_reset_points(scenario_sites, 2000)
        classes = TwoStateHMM(scenario_params).viterbi_decoding(scenario_sites,
                                                                reset_points)
        np.testing.assert_array_equal(classes, [True, True, True, False, False])

    def test_scores_sign_matches_labels(self, scenario_sites, scenario_params):
        reset_points = find_reset_points(scenario_sites, 2000)
        hmm = TwoStateHMM(scenario_params)

        classes, _ = hmm.posterior_decoding(scenario_sites, reset_points)
        scores = hmm.posterior_scores(scenario_sites, reset_points)

        np.testing.assert_array_equal(scores > 0, classes)


class TestTwoStateHMM:
    """Decoding over several chains."""

    @pytest.fixture
    def two_chain_sites(self):
        return SiteTable.from_counts(
            chroms=["chr1"] * 4 + ["chr2"] * 3,
            starts=[100, 200, 300, 400, 100, 200, 300],
            meth=[1, 0, 2, 9, 8, 1, 0],
            unmeth=[9, 10, 8, 1, 2, 9, 10],
        )

    def test_posterior_decoding_is_idempotent(self, two_chain_sites, params):
        reset_points = find_reset_points(two_chain_sites, 2000)
        hmm = TwoStateHMM(params)

        first = hmm.posterior_decoding(two_chain_sites, reset_points)
        second = hmm.posterior_decoding(two_chain_sites, reset_points)

        np.testing.assert_array_equal(first[0], second[0])
        np.testing.assert_array_equal(first[1], second[1])

    def test_chains_are_independent(self, two_chain_sites, params):
        reset_points = find_reset_points(two_chain_sites, 2000)
        hmm = TwoStateHMM(params)
        together = hmm.posterior_scores(two_chain_sites, reset_points)

        first = two_chain_sites.subset(np.arange(7) < 4)
        alone = hmm.posterior_scores(first, find_reset_points(first, 2000))

        np.testing.assert_allclose(together[:4], alone)

    def test_chain_statistics(self, two_chain_sites, params):
        reset_points = find_reset_points(two_chain_sites, 2000)
        stats = TwoStateHMM(params).chain_statistics(two_chain_sites, reset_points)

        assert len(stats) == 2
        assert stats[0].posteriors.shape == (4, 2)
        assert stats[1].posteriors.shape == (3, 2)
        # n - 1 expected transitions per chain
        assert stats[0].transition_counts.sum() == pytest.approx(3.0)
        assert stats[1].transition_counts.sum() == pytest.approx(2.0)

    def test_transition_posteriors(self, two_chain_sites, params):
        reset_points = find_reset_points(two_chain_sites, 2000)
        hmm = TwoStateHMM(params)

        fg_to_bg = hmm.transition_posteriors(two_chain_sites, reset_points,
                                             Transition.FG_TO_BG)
        bg_to_fg = hmm.transition_posteriors(two_chain_sites, reset_points,
                                             Transition.BG_TO_FG)

        assert len(fg_to_bg) == len(two_chain_sites)
        assert np.all((fg_to_bg >= 0) & (fg_to_bg <= 1))
        # Last CpG of each chain has no outgoing transition
        assert fg_to_bg[3] == 0.0 and bg_to_fg[3] == 0.0
        assert fg_to_bg[6] == 0.0 and bg_to_fg[6] == 0.0
        # The jump from unmethylated CpGs to the methylated one is a fg -> bg change
        assert fg_to_bg[2] > 0.5

    def test_track_matches_per_chain_results(self, two_chain_sites, params):
        """One pass gives the same per-site values as each chain on its own."""
        reset_points = find_reset_points(two_chain_sites, 2000)
        track = TwoStateHMM(params).posteriors(two_chain_sites, reset_points)
        log_emit = params.log_emissions(two_chain_sites.meth,
                                        two_chain_sites.unmeth)

        for start, stop in [(0, 4), (4, 7)]:
            fb = forward_backward(log_emit[start:stop], params)
            np.testing.assert_allclose(track.fg_posteriors[start:stop],
                                       fb.posteriors[:, FG])
            np.testing.assert_allclose(track.log_odds[start:stop], fb.log_odds)
            np.testing.assert_allclose(track.fg_to_bg[start:stop - 1],
                                       fb.transitions[:, FG, BG])
            np.testing.assert_allclose(track.bg_to_fg[start:stop - 1],
                                       fb.transitions[:, BG, FG])

        np.testing.assert_array_equal(track.classes, track.fg_posteriors > 0.5)
        np.testing.assert_array_equal(
            track.max_transition(), np.maximum(track.fg_to_bg, track.bg_to_fg))

    def test_decode_reuses_track(self, two_chain_sites, params):
        reset_points = find_reset_points(two_chain_sites, 2000)
        hmm = TwoStateHMM(params)
        track = hmm.posteriors(two_chain_sites, reset_points)

        np.testing.assert_array_equal(
            hmm.decode(two_chain_sites, reset_points, track=track),
            hmm.posterior_decoding(two_chain_sites, reset_points)[0])

    def test_log_likelihood_sums_chains(self, two_chain_sites, params):
        reset_points = find_reset_points(two_chain_sites, 2000)
        hmm = TwoStateHMM(params)
        stats = hmm.chain_statistics(two_chain_sites, reset_points)

        assert hmm.log_likelihood(two_chain_sites, reset_points) == pytest.approx(
            sum(s.log_likelihood for s in stats))
