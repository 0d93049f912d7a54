"""Augmented system assembly, factorizations and inertia correction."""

import numpy as np
import pytest
import scipy.sparse as sp

from ipsolve.blocks.aux import IPConfig
from ipsolve.blocks.reg import InertiaCorrector
from ipsolve.exceptions import StepComputationError
from ipsolve.ip_kkt import DenseLDLFactor, KKTSolver, KKTSystem


def _system(W, jac_c=None, jac_d=None, sigma_x=None, sigma_s=None):
    W = sp.csr_matrix(np.asarray(W, dtype=float))
    n = W.shape[0]
    jac_c = sp.csr_matrix((0, n)) if jac_c is None else sp.csr_matrix(np.asarray(jac_c, dtype=float))
    jac_d = sp.csr_matrix((0, n)) if jac_d is None else sp.csr_matrix(np.asarray(jac_d, dtype=float))
    m_d = jac_d.shape[0]
    sigma_x = np.zeros(n) if sigma_x is None else np.asarray(sigma_x, dtype=float)
    sigma_s = np.ones(m_d) if sigma_s is None else np.asarray(sigma_s, dtype=float)
    return KKTSystem(W, sigma_x, sigma_s, jac_c, jac_d)


def _config(**options):
    cfg = IPConfig()
    for key, value in options.items():
        cfg.set_option(key, value)
    return cfg


class TestKKTSystem:
    def test_layout_and_inertia(self):
        """Blocks land at [dx, ds, dyc, dyd] with the documented signs."""
        system = _system(np.eye(2), jac_c=[[1.0, 1.0]], jac_d=[[1.0, -1.0]], sigma_x=[1.0, 2.0],
                         sigma_s=[3.0])
        assert system.dim == 5
        assert system.expected_inertia == (3, 2, 0)
        K = system.matrix(delta_w=0.5, delta_c=0.25).toarray()
        expected = np.array([
            [2.5, 0.0, 0.0, 1.0, 1.0],
            [0.0, 3.5, 0.0, 1.0, -1.0],
            [0.0, 0.0, 3.5, 0.0, -1.0],
            [1.0, 1.0, 0.0, -0.25, 0.0],
            [1.0, -1.0, -1.0, 0.0, -0.25],
        ])
        np.testing.assert_allclose(K, expected)
        np.testing.assert_allclose(K, K.T)
        dx, ds, dyc, dyd = system.split(np.arange(5.0))
        np.testing.assert_array_equal(dx, [0.0, 1.0])
        np.testing.assert_array_equal(ds, [2.0])
        np.testing.assert_array_equal(dyc, [3.0])
        np.testing.assert_array_equal(dyd, [4.0])


class TestDenseLDL:
    def test_inertia_of_saddle_point_matrix(self):
        K = np.array([[2.0, 0.0, 1.0], [0.0, 3.0, 1.0], [1.0, 1.0, 0.0]])
        factor = DenseLDLFactor(K)
        assert factor.inertia == (2, 1, 0)
        rhs = np.array([1.0, -2.0, 0.5])
        np.testing.assert_allclose(factor.solve(rhs), np.linalg.solve(K, rhs), rtol=1e-10)

    def test_singular_matrix_reports_zero_eigenvalue(self):
        K = np.array([[1.0, 1.0], [1.0, 1.0]])
        assert DenseLDLFactor(K).inertia[2] == 1

    def test_badly_scaled_matrix(self):
        K = np.diag([1e8, -1e-6, 3.0])
        K[0, 2] = K[2, 0] = 1.0
        factor = DenseLDLFactor(K)
        assert factor.inertia == (2, 1, 0)
        rhs = np.array([1.0, 1.0, 1.0])
        np.testing.assert_allclose(K @ factor.solve(rhs), rhs, rtol=1e-8)


class TestKKTSolver:
    def test_correct_inertia_needs_no_perturbation(self):
        system = _system(np.eye(2), jac_c=[[1.0, 1.0]])
        rhs = np.array([1.0, 2.0, 3.0])
        solver = KKTSolver(IPConfig())
        sol, info = solver.factor_and_solve(system, rhs, mu=0.1)
        assert info.delta_w == 0.0 and info.delta_c == 0.0
        np.testing.assert_allclose(sol, np.linalg.solve(system.matrix().toarray(), rhs), rtol=1e-10)
        assert solver.n_factorizations == 1

    def test_indefinite_hessian_is_shifted(self):
        """W = diag(-1, 1) needs delta_w > 1 to become positive definite."""
        system = _system(np.diag([-1.0, 1.0]))
        rhs = np.array([1.0, 1.0])
        solver = KKTSolver(IPConfig())
        sol, info = solver.factor_and_solve(system, rhs, mu=0.1)
        assert info.delta_w > 1.0
        assert info.inertia == (2, 0, 0)
        K = system.matrix(info.delta_w, info.delta_c).toarray()
        np.testing.assert_allclose(K @ sol, rhs, rtol=1e-10)
        assert solver.n_factorizations > 1

    def test_rank_deficient_jacobian_gets_regularized(self):
        system = _system(np.eye(2), jac_c=[[1.0, 1.0], [1.0, 1.0]])
        rhs = np.array([1.0, 0.0, 1.0, 1.0])
        sol, info = KKTSolver(IPConfig()).factor_and_solve(system, rhs, mu=0.1)
        assert info.delta_c > 0.0
        assert info.delta_w == 0.0
        K = system.matrix(info.delta_w, info.delta_c).toarray()
        np.testing.assert_allclose(K @ sol, rhs, atol=1e-8)

    def test_sparse_lu_matches_dense(self):
        system = _system(np.array([[4.0, 1.0], [1.0, 3.0]]), jac_d=[[1.0, 2.0]], sigma_s=[2.0])
        rhs = np.array([1.0, -1.0, 0.5, 2.0])
        sol_ldl, _ = KKTSolver(_config(linear_solver="ldl")).factor_and_solve(system, rhs, 0.1)
        sol_lu, info = KKTSolver(_config(linear_solver="sparse-lu")).factor_and_solve(system, rhs, 0.1)
        assert info.inertia is None
        np.testing.assert_allclose(sol_lu, sol_ldl, rtol=1e-10)

    def test_sparse_lu_curvature_test_shifts_indefinite_hessian(self):
        system = _system(np.diag([-1.0, 1.0]))
        rhs = np.array([1.0, 1.0])
        sol, info = KKTSolver(_config(linear_solver="sparse-lu")).factor_and_solve(system, rhs, 0.1)
        assert info.delta_w > 1.0
        dx, ds, _, _ = system.split(sol)
        assert system.curvature(dx, ds, info.delta_w) > 0.0

    def test_resolve_reuses_factorization(self):
        system = _system(np.eye(2), jac_c=[[1.0, 1.0]])
        solver = KKTSolver(IPConfig())
        solver.factor_and_solve(system, np.ones(3), mu=0.1)
        rhs = np.array([0.0, 1.0, -1.0])
        np.testing.assert_allclose(solver.resolve(rhs), np.linalg.solve(system.matrix().toarray(), rhs),
                                   rtol=1e-10)
        assert solver.n_factorizations == 1

    def test_resolve_without_factorization(self):
        with pytest.raises(StepComputationError):
            KKTSolver(IPConfig()).resolve(np.ones(2))

    def test_auto_picks_by_size(self):
        solver = KKTSolver(_config(dense_kkt_max_dim=3))
        assert solver.strategy_for(3).name == "ldl"
        assert solver.strategy_for(4).name == "sparse-lu"


class TestInertiaCorrector:
    def test_schedule(self):
        cfg = IPConfig()
        corr = InertiaCorrector(cfg)
        corr.start(mu=1.0)
        assert corr.next(singular=False) == (cfg.first_hessian_perturbation, 0.0)
        dw, _ = corr.next(singular=False)
        assert dw == pytest.approx(cfg.first_hessian_perturbation * cfg.perturb_inc_fact_first)
        corr.success()
        # next iteration starts from a fraction of the last perturbation
        corr.start(mu=1.0)
        dw2, _ = corr.next(singular=False)
        assert dw2 == pytest.approx(max(cfg.min_hessian_perturbation, cfg.perturb_dec_fact * dw))
        dw3, _ = corr.next(singular=False)
        assert dw3 == pytest.approx(dw2 * cfg.perturb_inc_fact)

    def test_singular_first_tries_jacobian_shift(self):
        cfg = IPConfig()
        corr = InertiaCorrector(cfg)
        corr.start(mu=1e-4)
        dw, dc = corr.next(singular=True)
        assert dw == 0.0
        assert dc == pytest.approx(cfg.jacobian_regularization_value * 1e-4 ** 0.25)

    def test_gives_up_above_limit(self):
        cfg = IPConfig()
        cfg.set_option("max_hessian_perturbation", 1.0)
        corr = InertiaCorrector(cfg)
        corr.start(mu=0.1)
        with pytest.raises(StepComputationError):
            for _ in range(10):
                corr.next(singular=False)
