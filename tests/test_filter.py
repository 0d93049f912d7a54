"""Filter acceptance and the line search acceptance tests."""

import numpy as np
import pytest

from ipsolve.blocks.aux import IPConfig
from ipsolve.blocks.filter import Filter
from ipsolve.blocks.kernels import k_frac_to_boundary
from ipsolve.blocks.linesearch import FilterLineSearch


class TestFilter:
    def test_acceptability(self):
        f = Filter(theta_max=10.0)
        f.add(1.0, 5.0)
        assert f.is_acceptable(0.5, 6.0)  # less infeasible
        assert f.is_acceptable(2.0, 4.0)  # better objective
        assert not f.is_acceptable(1.5, 5.5)
        assert not f.is_acceptable(1.0, 5.0)
        # above theta_max nothing is acceptable
        assert not f.is_acceptable(10.0, -100.0)
        assert not f.is_acceptable(np.nan, 0.0)

    def test_dominated_entries_are_pruned(self):
        f = Filter()
        f.add(1.0, 5.0)
        f.add(2.0, 3.0)
        assert len(f) == 2
        assert f.add(0.5, 2.0)
        assert f.entries == [(0.5, 2.0)]

    def test_dominated_pair_is_not_stored(self):
        f = Filter()
        f.add(1.0, 1.0)
        assert not f.add(2.0, 3.0)
        assert len(f) == 1

    def test_no_entry_dominates_another(self):
        rng = np.random.default_rng(0)
        f = Filter()
        for theta, phi in rng.uniform(0.0, 10.0, size=(200, 2)):
            f.add(theta, phi)
            entries = f.entries
            for i, (t_i, p_i) in enumerate(entries):
                for j, (t_j, p_j) in enumerate(entries):
                    if i != j:
                        assert not (t_i <= t_j and p_i <= p_j)
        # thetas and phis are sorted in opposite orders on the Pareto front
        order = np.argsort(f.thetas)
        assert np.all(np.diff(f.phis[order]) < 0)

    def test_reset_keeps_theta_max(self):
        f = Filter(theta_max=3.0)
        f.add(1.0, 1.0)
        f.reset()
        assert len(f) == 0
        assert f.theta_max == 3.0
        assert f.is_acceptable(2.0, 100.0)


class TestFractionToBoundary:
    def test_step_toward_bound_is_cut(self):
        alpha = k_frac_to_boundary(np.array([1.0]), np.array([-2.0]), np.array([True]), 0.99)
        assert alpha == pytest.approx(0.495)

    def test_unmasked_and_receding_entries_are_ignored(self):
        dist = np.array([1.0, 1.0])
        step = np.array([-10.0, 5.0])
        assert k_frac_to_boundary(dist, step, np.array([False, True]), 0.99) == 1.0

    def test_smallest_ratio_wins(self):
        dist = np.array([1.0, 0.1, 2.0])
        step = np.array([-1.0, -1.0, -1.0])
        alpha = k_frac_to_boundary(dist, step, np.ones(3, dtype=bool), 0.9)
        assert alpha == pytest.approx(0.09)


class TestAcceptance:
    @staticmethod
    def _search(**options):
        cfg = IPConfig()
        for key, value in options.items():
            cfg.set_option(key, value)
        ls = FilterLineSearch(cfg, kkt=None)
        ls._init_theta_bounds(1.0)
        return ls

    def test_theta_bounds(self):
        ls = self._search()
        ls._init_theta_bounds(50.0)
        assert ls.theta_max == pytest.approx(5e5)
        assert ls.theta_min == pytest.approx(5e-3)

    def test_h_type_sufficient_infeasibility_reduction(self):
        ls = self._search()
        assert ls.check_acceptability(1.0, 10.0, -1.0, 1.0, theta_t=0.5, phi_t=10.5) == "h"

    def test_h_type_sufficient_objective_reduction(self):
        ls = self._search()
        assert ls.check_acceptability(1.0, 10.0, -1.0, 1.0, theta_t=1.0, phi_t=9.0) == "h"

    def test_no_progress_is_rejected(self):
        ls = self._search()
        assert ls.check_acceptability(1.0, 10.0, -1.0, 1.0, theta_t=1.0, phi_t=11.0) is None

    def test_f_type_armijo(self):
        """Nearly feasible point with a descent direction: Armijo on phi."""
        ls = self._search()
        assert ls.check_acceptability(1e-6, 10.0, -1.0, 1.0, theta_t=1e-6, phi_t=9.0) == "f"
        assert ls.check_acceptability(1e-6, 10.0, -1.0, 1.0, theta_t=1e-6, phi_t=10.0) is None

    def test_filter_rejects_trial(self):
        ls = self._search()
        ls.augment_filter(0.6, 20.0)
        assert ls.check_acceptability(1.0, 10.0, -1.0, 1.0, theta_t=0.9, phi_t=30.0) is None

    def test_trial_above_theta_max(self):
        ls = self._search()
        assert ls.check_acceptability(1.0, 10.0, -1.0, 1.0, theta_t=2e4, phi_t=0.0) is None

    def test_augment_filter_uses_margins(self):
        cfg = IPConfig()
        ls = self._search()
        ls.augment_filter(2.0, 5.0)
        theta, phi = ls.filter.entries[0]
        assert theta == pytest.approx((1.0 - cfg.gamma_theta) * 2.0)
        assert phi == pytest.approx(5.0 - cfg.gamma_phi * 2.0)

    @pytest.mark.parametrize("rule, expected", [("primal", 0.3), ("bound-mult", 0.7), ("full", 1.0)])
    def test_alpha_for_y(self, rule, expected):
        ls = self._search(alpha_for_y=rule)
        assert ls.alpha_y(0.3, 0.7) == expected
