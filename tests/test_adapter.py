"""Problem definition validation and the internal NLP view (OrigNLP)."""

import warnings

import numpy as np
import pytest

from ipsolve.adapter import OrigNLP, ProblemDefinition
from ipsolve.blocks.aux import IPConfig
from ipsolve.evaluator import CallbackEvaluator, NLPEvaluator
from ipsolve.exceptions import EvaluationError, InvalidProblemDefinition, NotEnoughDegreesOfFreedom


def _linear_evaluator(calls=None, grad_scale=1.0):
    """f = grad_scale * sum(x); g_i = (i + 1) * sum(x)."""
    def rec(name, new_x):
        if calls is not None:
            calls.append((name, new_x))

    def f(x, new_x):
        rec("f", new_x)
        return grad_scale * float(np.sum(x))

    def grad(x, new_x):
        rec("grad_f", new_x)
        return np.full(x.size, grad_scale)

    def g(x, new_x):
        rec("g", new_x)
        return np.arange(1, 4) * float(np.sum(x))

    def jac(x, new_x):
        rec("jac_g", new_x)
        return np.repeat(np.arange(1.0, 4.0), 2)

    return CallbackEvaluator(f, grad, g, jac)


def _definition(x_L=(-1.0, -1.0), x_U=(1.0, 1.0), g_L=(0.0, 1.0, -1e20), g_U=(0.0, 2.0, 5.0)):
    jac = (np.repeat(np.arange(3), 2), np.tile(np.arange(2), 3))
    return ProblemDefinition.build(2, x_L, x_U, 3, g_L, g_U, jac)


class TestProblemDefinition:
    def test_valid_definition_is_read_only(self):
        pdef = _definition()
        assert pdef.n == 2 and pdef.m == 3
        assert pdef.nele_jac == 6
        assert pdef.nele_hess == 0
        with pytest.raises(ValueError):
            pdef.x_L[0] = 0.0

    @pytest.mark.parametrize("kwargs", [
        dict(n=-1),
        dict(m=-2),
        dict(x_L=[2.0, 0.0]),
        dict(g_L=[1.0, 2.0]),
        dict(index_style=2),
        dict(jac_structure=([0, 1], [0])),
        dict(jac_structure=([0, 1], [0, 5])),
        dict(jac_structure=([0.0, 1.0], [0.0, 1.0])),
        dict(hess_structure=([2], [0])),
        dict(x_U=[np.nan, 1.0]),
    ])
    def test_invalid_definitions(self, kwargs):
        args = dict(n=2, x_L=[0.0, 0.0], x_U=[1.0, 1.0], m=1, g_L=[0.0], g_U=[1.0],
                    jac_structure=([0, 0], [0, 1]), hess_structure=None, index_style=0)
        args.update(kwargs)
        with pytest.raises(InvalidProblemDefinition):
            ProblemDefinition.build(**args)

    def test_fortran_indices_are_shifted(self):
        pdef = ProblemDefinition.build(2, None, None, 1, [0.0], [1.0], ([1, 1], [1, 2]),
                                       ([1, 2], [1, 2]), index_style=1)
        np.testing.assert_array_equal(pdef.jac_rows, [0, 0])
        np.testing.assert_array_equal(pdef.jac_cols, [0, 1])
        np.testing.assert_array_equal(pdef.hess_rows, [0, 1])

    def test_bounds_equal_within_roundoff_become_fixed(self):
        pdef = ProblemDefinition.build(1, [1.0 + 1e-14], [1.0], 0, None, None)
        assert pdef.x_L[0] == pdef.x_U[0]

    def test_missing_bounds_are_infinite(self):
        pdef = ProblemDefinition.build(2, None, None, 0, None, None)
        assert np.all(np.isneginf(pdef.x_L)) and np.all(np.isposinf(pdef.x_U))


class TestOrigNLP:
    def test_constraint_split(self):
        nlp = OrigNLP(_definition(), _linear_evaluator(), IPConfig())
        assert (nlp.n, nlp.m_c, nlp.m_d) == (2, 1, 2)
        x = np.array([0.25, 0.5])
        np.testing.assert_allclose(nlp.c(x), [0.75])
        np.testing.assert_allclose(nlp.d(x), [1.5, 2.25])
        assert nlp.jac_c(x).shape == (1, 2)
        np.testing.assert_allclose(nlp.jac_d(x).toarray(), [[2.0, 2.0], [3.0, 3.0]])
        # infinite lower side of the last inequality
        np.testing.assert_array_equal(nlp.has_d_L, [True, False])
        np.testing.assert_array_equal(nlp.has_d_U, [True, True])

    def test_bounds_beyond_infinity_threshold(self):
        nlp = OrigNLP(_definition(x_L=(-1e19, 0.0), x_U=(2e19, 1.0)), _linear_evaluator(), IPConfig())
        np.testing.assert_array_equal(nlp.has_x_L, [False, True])
        np.testing.assert_array_equal(nlp.has_x_U, [False, True])

    def test_bound_relaxation(self):
        nlp = OrigNLP(_definition(x_L=(-1.0, 100.0), x_U=(1.0, 200.0)), _linear_evaluator(), IPConfig())
        np.testing.assert_allclose(nlp.x_L, [-1.0 - 1e-8, 100.0 - 1e-6])
        np.testing.assert_allclose(nlp.x_U, [1.0 + 1e-8, 200.0 + 2e-6])

    def test_no_relaxation_keeps_infinite_bounds_quiet(self):
        cfg = IPConfig()
        cfg.set_option("bound_relax_factor", 0.0)
        with warnings.catch_warnings():
            warnings.simplefilter("error", RuntimeWarning)
            nlp = OrigNLP(_definition(x_L=(-1e20, 0.0), x_U=(1.0, 1e20)), _linear_evaluator(), cfg)
        np.testing.assert_array_equal(nlp.x_L, [-np.inf, 0.0])
        np.testing.assert_array_equal(nlp.x_U, [1.0, np.inf])
        assert np.all(np.isfinite(nlp.d_U))
        assert np.isneginf(nlp.d_L[-1])

    def test_fixed_variable_removed(self):
        nlp = OrigNLP(_definition(x_L=(-1.0, 0.5), x_U=(1.0, 0.5)), _linear_evaluator(), IPConfig())
        assert nlp.n == 1
        np.testing.assert_allclose(nlp.to_user_x(np.array([0.25])), [0.25, 0.5])
        # the fixed value enters the constraints as a constant
        np.testing.assert_allclose(nlp.c(np.array([0.25])), [0.75])
        assert nlp.jac_c(np.array([0.25])).shape == (1, 1)

    def test_too_many_equalities(self):
        pdef = ProblemDefinition.build(1, None, None, 2, [0.0, 1.0], [0.0, 1.0], ([0, 1], [0, 0]))
        with pytest.raises(NotEnoughDegreesOfFreedom):
            OrigNLP(pdef, _linear_evaluator(), IPConfig())

    def test_each_callback_runs_once_per_point(self):
        calls = []
        nlp = OrigNLP(_definition(), _linear_evaluator(calls), IPConfig())
        x = np.array([0.1, 0.2])
        nlp.f(x)
        nlp.f(x)
        nlp.grad_f(x)
        nlp.c(x)
        nlp.d(x)
        assert nlp.stats["f"] == 1
        assert nlp.stats["grad_f"] == 1
        assert nlp.stats["g"] == 1
        nlp.f(np.array([0.3, 0.2]))
        assert nlp.stats["f"] == 2
        # new_x is True only when the point changes
        assert calls == [("f", True), ("grad_f", False), ("g", False), ("f", True)]

    def test_failures_are_cached(self):
        ev = CallbackEvaluator(lambda x, new_x: None, lambda x, new_x: np.zeros(x.size))
        pdef = ProblemDefinition.build(2, None, None, 0, None, None)
        nlp = OrigNLP(pdef, ev, IPConfig())
        x = np.zeros(2)
        for _ in range(2):
            with pytest.raises(EvaluationError):
                nlp.f(x)
        assert nlp.stats["f"] == 1
        assert nlp.stats["failures"] == 1

    def test_non_finite_values_are_failures(self):
        ev = CallbackEvaluator(lambda x, new_x: np.inf, lambda x, new_x: np.array([np.nan, 0.0]))
        nlp = OrigNLP(ProblemDefinition.build(2, None, None, 0, None, None), ev, IPConfig())
        with pytest.raises(EvaluationError):
            nlp.f(np.zeros(2))
        with pytest.raises(EvaluationError):
            nlp.grad_f(np.zeros(2))

    def test_gradient_based_scaling(self):
        nlp = OrigNLP(_definition(), _linear_evaluator(grad_scale=1000.0), IPConfig())
        nlp.determine_scaling(np.zeros(2))
        assert nlp.df == pytest.approx(0.1)
        # Jacobian rows have max entries 1, 2, 3: no constraint scaling
        np.testing.assert_allclose(nlp.dg, 1.0)
        x = np.array([0.1, 0.2])
        assert nlp.f(x) == pytest.approx(0.1 * 1000.0 * 0.3)
        assert nlp.unscaled_obj(nlp.f(x)) == pytest.approx(300.0)

    def test_user_scaling(self):
        cfg = IPConfig()
        cfg.set_option("nlp_scaling_method", "user-scaling")
        scaling = (2.0, np.array([1.0, 4.0]), np.array([1.0, 0.5, 10.0]))
        nlp = OrigNLP(_definition(), _linear_evaluator(), cfg, scaling)
        nlp.determine_scaling(np.zeros(2))
        # internal x = dx * user x
        x_user = np.array([0.5, 0.25])
        x = nlp.to_internal_x(x_user)
        np.testing.assert_allclose(x, [0.5, 1.0])
        np.testing.assert_allclose(nlp.to_user_x(x), x_user)
        assert nlp.f(x) == pytest.approx(2.0 * 0.75)
        np.testing.assert_allclose(nlp.grad_f(x), [2.0, 0.5])
        np.testing.assert_allclose(nlp.d(x), [0.5 * 2 * 0.75, 10.0 * 3 * 0.75])
        np.testing.assert_allclose(nlp.x_U, [1.0 + 1e-8, 4.0 * (1.0 + 1e-8)])
        np.testing.assert_allclose(nlp.d_U, [0.5 * (2.0 + 2e-8), 10.0 * (5.0 + 5e-8)])
        # multiplier maps are inverse to each other
        lam = np.array([1.0, -2.0, 3.0])
        y_c, y_d = nlp.split_lambda(lam)
        np.testing.assert_allclose(nlp.join_lambda(y_c, y_d), lam)

    def test_hessian_from_one_triangle(self):
        def h(x, new_x, sigma, lam, new_lam):
            return sigma * np.array([2.0, 1.0, 4.0])

        ev = CallbackEvaluator(lambda x, n: 0.0, lambda x, n: np.zeros(2), eval_h=h)
        pdef = ProblemDefinition.build(2, None, None, 0, None, None, hess_structure=([0, 1, 1], [0, 0, 1]))
        nlp = OrigNLP(pdef, ev, IPConfig())
        assert nlp.has_exact_hessian
        H = nlp.hess(np.zeros(2), 0.5, np.zeros(0), np.zeros(0)).toarray()
        np.testing.assert_allclose(H, [[1.0, 0.5], [0.5, 2.0]])
        assert nlp.stats["h"] == 1
        nlp.hess(np.zeros(2), 0.5, np.zeros(0), np.zeros(0))
        assert nlp.stats["h"] == 1

    def test_user_violations_against_original_bounds(self):
        nlp = OrigNLP(_definition(), _linear_evaluator(), IPConfig())
        x = np.array([1.0, 1.0])
        viol = nlp.user_violations(x, np.zeros(1), np.zeros(2), np.zeros(2), np.zeros(2))
        # g = (2, 4, 6): equality off by 2, second ([1, 2]) by 2, third (<= 5) by 1
        np.testing.assert_allclose(viol["nlp_constraint_violation"], [2.0, 2.0, 1.0])
        np.testing.assert_allclose(viol["x_U_violation"], [0.0, 0.0])


class TestEvaluatorProtocol:
    def test_callback_evaluator_satisfies_protocol(self):
        assert isinstance(_linear_evaluator(), NLPEvaluator)

    def test_missing_callables(self):
        with pytest.raises(TypeError):
            CallbackEvaluator(None, lambda x, n: x)
