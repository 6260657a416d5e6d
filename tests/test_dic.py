"""Unit tests for scr_dic.dic."""
import pytest
import numpy as np

from scr_dic.data import Hazard, HAZARDS
from scr_dic.dic import burn_in_window, compute_dic, posterior_means
from scr_dic.likelihood import build_likelihoods
from scr_dic.sampler import ChainResult, CoefficientChain


class TestBurnInWindow:
    """Post-burn-in rows are 1-based ceil(B/2)..B."""

    @pytest.mark.parametrize("n_iter,expected", [
        (2, slice(0, 2)),
        (4, slice(1, 4)),
        (5, slice(2, 5)),
        (100, slice(49, 100)),
    ])
    def test_window(self, n_iter, expected):
        assert burn_in_window(n_iter) == expected

    def test_rejects_short_chain(self):
        with pytest.raises(ValueError):
            burn_in_window(1)


class TestComputeDIC:
    """Tests for compute_dic on a hand-built chain."""

    @pytest.fixture
    def setup(self, tiny_subjects, flat_baselines):
        subsets = {
            Hazard.NON_TERMINAL: np.array([0]),
            Hazard.TERMINAL_ONLY: np.array([], dtype=int),
            Hazard.TERMINAL_AFTER: np.array([], dtype=int),
        }
        likelihoods = build_likelihoods(tiny_subjects, flat_baselines, subsets)
        chain = ChainResult(
            chains={
                Hazard.NON_TERMINAL: CoefficientChain(
                    hazard=Hazard.NON_TERMINAL,
                    draws=np.array([[0.0], [0.2], [0.4], [0.6]]),
                    accepted=np.array([[0], [1], [1], [0]], dtype=np.int8),
                )
            },
            trace=np.array([-30.0, -20.0, -19.0, -18.0]),
        )
        return likelihoods, chain

    def test_posterior_means_use_window(self, setup):
        _, chain = setup
        means = posterior_means(chain)
        np.testing.assert_allclose(means[Hazard.NON_TERMINAL], [0.4])

    def test_formula(self, setup):
        likelihoods, chain = setup
        value = compute_dic(chain, likelihoods)

        plugin = likelihoods[Hazard.NON_TERMINAL](np.array([0.4])) - 6.5 - 1.5
        p_d = -2.0 * (-19.0) + 2.0 * plugin
        assert value.plugin_loglik == pytest.approx(plugin)
        assert value.mean_loglik == pytest.approx(-19.0)
        assert value.p_d == pytest.approx(p_d)
        assert value.dic == pytest.approx(-2.0 * plugin + 2.0 * p_d)
        assert value.is_finite

    def test_metadata(self, setup):
        likelihoods, chain = setup
        value = compute_dic(chain, likelihoods)
        assert value.subset_sizes == (1, 0, 0)
        assert value.acceptance == {"haz1": pytest.approx(2 / 3)}
        assert value.posterior_means["haz1"] == pytest.approx((0.4,))

    def test_baseline_only(self, tiny_subjects, flat_baselines):
        """With no regression terms DIC is -2 times the baseline log-likelihood."""
        subsets = {hz: np.array([], dtype=int) for hz in HAZARDS}
        likelihoods = build_likelihoods(tiny_subjects, flat_baselines, subsets)
        baseline = sum(lik.baseline_loglik for lik in likelihoods.values())
        chain = ChainResult(chains={}, trace=np.full(4, baseline))

        value = compute_dic(chain, likelihoods)
        assert value.p_d == pytest.approx(0.0, abs=1e-8)
        assert value.dic == pytest.approx(-2.0 * baseline)
