"""The restoration subproblem and its penalty initialization."""

import numpy as np
import pytest

from ipsolve.adapter import OrigNLP, ProblemDefinition
from ipsolve.blocks.aux import IPConfig
from ipsolve.evaluator import CallbackEvaluator
from ipsolve.restoration import RestorationNLP, penalty_init


def _orig():
    """x in R^2; one equality (x0 + x1 = 0) and two inequalities."""
    jac = (np.array([0, 0, 1, 1, 2, 2]), np.array([0, 1, 0, 1, 0, 1]))
    pdef = ProblemDefinition.build(2, [-1.0, -1.0], [1.0, 1.0], 3, [0.0, 1.0, -1e20], [0.0, 2.0, 5.0], jac)
    ev = CallbackEvaluator(
        lambda x, n: float(x @ x),
        lambda x, n: 2.0 * x,
        lambda x, n: np.array([x[0] + x[1], x[0] - x[1], 2.0 * x[0]]),
        lambda x, n: np.array([1.0, 1.0, 1.0, -1.0, 2.0, 0.0]),
    )
    return OrigNLP(pdef, ev, IPConfig())


class TestPenaltyInit:
    @pytest.mark.parametrize("r", [-3.0, -1e-4, 0.0, 2.5, 1e3])
    def test_closed_form(self, r):
        """p - n = r and the barrier stationarity mu/p + mu/n = 2 rho."""
        mu, rho = 0.1, 1000.0
        p, n = penalty_init(np.array([r]), mu, rho)
        assert p[0] > 0.0 and n[0] > 0.0
        assert p[0] - n[0] == pytest.approx(r, abs=1e-12)
        assert mu / p[0] + mu / n[0] == pytest.approx(2.0 * rho, rel=1e-8)


class TestRestorationNLP:
    def test_dimensions_and_bounds(self):
        orig = _orig()
        rnlp = RestorationNLP(orig, np.zeros(2), mu=0.01, rho=1000.0, proximity_weight=1.0)
        assert rnlp.n == 2 + 2 * 1 + 2 * 2
        assert (rnlp.m_c, rnlp.m_d) == (1, 2)
        np.testing.assert_array_equal(rnlp.x_L[2:], 0.0)
        assert np.all(np.isposinf(rnlp.x_U[2:]))
        assert np.all(rnlp.has_x_L[2:]) and not np.any(rnlp.has_x_U[2:])
        assert rnlp.zeta == pytest.approx(0.1)

    def test_constraints_with_penalty_columns(self):
        rnlp = RestorationNLP(_orig(), np.zeros(2), mu=0.01, rho=1000.0, proximity_weight=1.0)
        x = np.array([0.5, 0.25])
        # [x, p_c, n_c, p_d, n_d]
        xr = np.concatenate([x, [0.3], [0.1], [0.2, 0.0], [0.0, 0.4]])
        np.testing.assert_allclose(rnlp.c(xr), [0.75 - 0.3 + 0.1])
        np.testing.assert_allclose(rnlp.d(xr), [0.25 - 0.2, 1.0 + 0.4])
        Jc = rnlp.jac_c(xr).toarray()
        np.testing.assert_allclose(Jc, [[1.0, 1.0, -1.0, 1.0, 0.0, 0.0, 0.0, 0.0]])
        Jd = rnlp.jac_d(xr).toarray()
        np.testing.assert_allclose(Jd[:, 4:], [[-1.0, 0.0, 1.0, 0.0], [0.0, -1.0, 0.0, 1.0]])
        np.testing.assert_allclose(Jd[:, :4], [[1.0, -1.0, 0.0, 0.0], [2.0, 0.0, 0.0, 0.0]])

    def test_objective_and_gradient(self):
        x_ref = np.array([2.0, 0.5])
        rnlp = RestorationNLP(_orig(), x_ref, mu=0.04, rho=10.0, proximity_weight=1.0)
        xr = np.concatenate([[3.0, 0.5], np.full(6, 0.5)])
        # D_R = min(1, 1/|x_ref|): 0.5 for the first component
        assert rnlp.f(xr) == pytest.approx(10.0 * 3.0 + 0.5 * 0.2 * 0.25 * 1.0)
        g = rnlp.grad_f(xr)
        np.testing.assert_allclose(g[:2], [0.2 * 0.25 * 1.0, 0.0])
        np.testing.assert_allclose(g[2:], 10.0)
