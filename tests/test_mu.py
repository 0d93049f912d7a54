"""Barrier parameter updates on a one-variable problem min x s.t. x >= 0."""

import numpy as np
import pytest

from ipsolve.adapter import OrigNLP, ProblemDefinition
from ipsolve.blocks.aux import IPConfig
from ipsolve.blocks.linesearch import FilterLineSearch
from ipsolve.evaluator import CallbackEvaluator
from ipsolve.exceptions import TinyStep
from ipsolve.ip_mu import AdaptiveMuUpdate, MonotoneMuUpdate, make_mu_update
from ipsolve.ip_state import IPState, Iterate, IterateQuantities


def _config(**options):
    cfg = IPConfig()
    for key, value in options.items():
        cfg.set_option(key, value)
    return cfg


def _nlp(cfg):
    pdef = ProblemDefinition.build(1, [0.0], [1e20], 0, None, None)
    ev = CallbackEvaluator(lambda x, new_x: float(x[0]), lambda x, new_x: np.ones(1))
    return OrigNLP(pdef, ev, cfg)


def _quantities(nlp, x, z):
    it = Iterate.zeros(1, 0, 0)
    it.x = np.array([x])
    it.z_L = np.array([z])
    return IterateQuantities(nlp, it)


def _state(q, mu):
    return IPState(curr=q.it, mu=mu, tau=max(0.99, 1.0 - mu), quantities=q)


class TestMonotone:
    def test_floor(self):
        cfg = IPConfig()
        assert MonotoneMuUpdate(cfg).mu_floor == pytest.approx(cfg.tol / (cfg.barrier_tol_factor + 1.0))
        cfg = _config(mu_min=1e-6)
        assert MonotoneMuUpdate(cfg).mu_floor == pytest.approx(1e-6)

    def test_decreases_while_subproblem_is_solved(self):
        """
        x = 0.1, z = 1 solves the mu = 0.1 barrier problem; the fast
        decrease goes 0.1 -> 0.02 -> 0.02**1.5 and stops there.
        """
        cfg = IPConfig()
        nlp = _nlp(cfg)
        q = _quantities(nlp, 0.1, 1.0)
        state = _state(q, 0.1)
        ls = FilterLineSearch(cfg, kkt=None)
        ls.filter.add(1.0, 1.0)
        assert MonotoneMuUpdate(cfg, ls).update(state, q)
        assert state.mu == pytest.approx(0.02 ** 1.5)
        assert state.tau == pytest.approx(max(cfg.tau_min, 1.0 - state.mu))
        # a new barrier problem starts with an empty filter
        assert len(ls.filter) == 0

    def test_single_decrease_without_fast_mode(self):
        cfg = _config(mu_allow_fast_monotone_decrease="no")
        q = _quantities(_nlp(cfg), 0.1, 1.0)
        state = _state(q, 0.1)
        MonotoneMuUpdate(cfg).update(state, q)
        assert state.mu == pytest.approx(0.02)

    def test_unchanged_far_from_central_path(self):
        cfg = IPConfig()
        q = _quantities(_nlp(cfg), 0.1, 5.0)
        state = _state(q, 0.1)
        assert not MonotoneMuUpdate(cfg).update(state, q)
        assert state.mu == 0.1

    def test_tiny_step_forces_decrease(self):
        cfg = IPConfig()
        q = _quantities(_nlp(cfg), 0.1, 5.0)
        state = _state(q, 0.1)
        state.tiny_step = True
        assert MonotoneMuUpdate(cfg).update(state, q)
        assert state.mu == pytest.approx(0.02)

    def test_tiny_step_at_floor_raises(self):
        cfg = IPConfig()
        update = MonotoneMuUpdate(cfg)
        q = _quantities(_nlp(cfg), 0.1, 5.0)
        state = _state(q, update.mu_floor)
        state.tiny_step = True
        with pytest.raises(TinyStep):
            update.update(state, q)


class TestAdaptive:
    def test_factory(self):
        assert isinstance(make_mu_update(_config(mu_strategy="adaptive")), AdaptiveMuUpdate)
        assert isinstance(make_mu_update(IPConfig()), MonotoneMuUpdate)

    def test_loqo_rule_for_centered_point(self):
        """All products equal: xi = 1, so sigma = 0 and mu drops to the floor."""
        cfg = _config(mu_strategy="adaptive")
        q = _quantities(_nlp(cfg), 0.5, 2.0)
        assert AdaptiveMuUpdate.loqo_mu(q) == 0.0
        update = AdaptiveMuUpdate(cfg)
        state = _state(q, 0.1)
        update.update(state, q)
        assert state.mu == pytest.approx(update.mu_floor)

    def test_never_increases(self):
        cfg = _config(mu_strategy="adaptive")
        nlp = _nlp(cfg)
        update = AdaptiveMuUpdate(cfg)
        q = _quantities(nlp, 1.0, 1.0)
        state = _state(q, 0.5)
        history = [state.mu]
        for x, z in [(2.0, 5.0), (0.5, 3.0), (1.0, 0.5), (3.0, 2.0), (0.1, 10.0), (1e-3, 1e-3)]:
            q = _quantities(nlp, x, z)
            state.accept(q.it, q)
            update.update(state, q)
            history.append(state.mu)
        assert np.all(np.diff(history) <= 0.0)
        assert min(history) >= update.mu_floor

    def test_falls_back_to_monotone_without_progress(self):
        cfg = _config(mu_strategy="adaptive")
        nlp = _nlp(cfg)
        update = AdaptiveMuUpdate(cfg)
        q = _quantities(nlp, 1.0, 0.5)
        state = _state(q, 1.0)
        update.update(state, q)
        assert update.free_mode
        # the same KKT error again: not enough reduction
        update.update(state, q)
        assert not update.free_mode
        assert state.mu <= cfg.adaptive_mu_monotone_init_factor * q.avg_complementarity + 1e-15
