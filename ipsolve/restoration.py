# restoration.py
# Feasibility restoration: minimize the l1 constraint violation near the last iterate.
from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import scipy.sparse as sp

from .blocks.aux import safe_inf_norm
from .exceptions import (
    EvaluationError,
    LineSearchFailure,
    LocalInfeasibility,
    RestorationFailed,
    StepComputationError,
)
from .ip_conv import ConvergenceStatus, OptimalityErrorConvergenceCheck
from .ip_state import IPState, Iterate, IterateQuantities

logger = logging.getLogger(__name__)


class RestorationTerminated(Exception):
    """A global limit (iterations, time) was hit inside the restoration phase."""

    def __init__(self, status: ConvergenceStatus):
        super().__init__(status.value)
        self.status = status


class RestorationNLP:
    """
    min   ρ Σ(p + n) + ζ/2 ‖D_R (x - x_R)‖²
    s.t.  c(x) - p_c + n_c = 0
          d_L <= d(x) - p_d + n_d <= d_U
          x_L <= x <= x_U,  p, n >= 0

    Variables are stacked as [x, p_c, n_c, p_d, n_d]; the slacks and
    multipliers of d keep their meaning from the original problem.
    """

    def __init__(self, orig, x_ref: np.ndarray, mu: float, rho: float, proximity_weight: float):
        self.orig = orig
        self.x_ref = x_ref.copy()
        self.rho = float(rho)
        self.zeta = float(proximity_weight) * np.sqrt(mu)
        self.dr2 = np.minimum(1.0, 1.0 / np.maximum(np.abs(x_ref), 1e-300)) ** 2
        n, m_c, m_d = orig.n, orig.m_c, orig.m_d
        self.n_orig = n
        self.m_c = m_c
        self.m_d = m_d
        self.n = n + 2 * m_c + 2 * m_d
        n_pen = self.n - n
        self.x_L = np.concatenate([orig.x_L, np.zeros(n_pen)])
        self.x_U = np.concatenate([orig.x_U, np.full(n_pen, np.inf)])
        self.d_L, self.d_U = orig.d_L, orig.d_U
        self.has_x_L = np.concatenate([orig.has_x_L, np.ones(n_pen, dtype=bool)])
        self.has_x_U = np.concatenate([orig.has_x_U, np.zeros(n_pen, dtype=bool)])
        self.has_d_L, self.has_d_U = orig.has_d_L, orig.has_d_U
        self.has_exact_hessian = orig.has_exact_hessian

        # penalty columns: -1 on p, +1 on n
        r_c, r_d = np.arange(m_c), np.arange(m_d)
        self._pen_c = (np.concatenate([r_c, r_c]), n + np.concatenate([r_c, m_c + r_c]),
                       np.concatenate([-np.ones(m_c), np.ones(m_c)]))
        off = n + 2 * m_c
        self._pen_d = (np.concatenate([r_d, r_d]), off + np.concatenate([r_d, m_d + r_d]),
                       np.concatenate([-np.ones(m_d), np.ones(m_d)]))

    # ---- layout
    def split(self, xr: np.ndarray):
        n, m_c, m_d = self.n_orig, self.m_c, self.m_d
        x = xr[:n]
        p_c = xr[n:n + m_c]
        n_c = xr[n + m_c:n + 2 * m_c]
        p_d = xr[n + 2 * m_c:n + 2 * m_c + m_d]
        n_d = xr[n + 2 * m_c + m_d:]
        return x, p_c, n_c, p_d, n_d

    def orig_iterate(self, it: Iterate) -> Iterate:
        n = self.n_orig
        return Iterate(it.x[:n].copy(), it.s.copy(), it.y_c.copy(), it.y_d.copy(),
                       it.z_L[:n].copy(), it.z_U[:n].copy(), it.v_L.copy(), it.v_U.copy())

    # ---- evaluations
    def f(self, xr):
        x = xr[:self.n_orig]
        dx = x - self.x_ref
        return self.rho * float(np.sum(xr[self.n_orig:])) + 0.5 * self.zeta * float(dx @ (self.dr2 * dx))

    def grad_f(self, xr):
        x = xr[:self.n_orig]
        g_x = self.zeta * self.dr2 * (x - self.x_ref)
        return np.concatenate([g_x, np.full(self.n - self.n_orig, self.rho)])

    def c(self, xr):
        x, p_c, n_c, _, _ = self.split(xr)
        return self.orig.c(x) - p_c + n_c

    def d(self, xr):
        x, _, _, p_d, n_d = self.split(xr)
        return self.orig.d(x) - p_d + n_d

    def _widen(self, J, extra) -> sp.csr_matrix:
        J = sp.coo_matrix(J)
        rows, cols, vals = extra
        return sp.coo_matrix((np.concatenate([J.data, vals]),
                              (np.concatenate([J.row, rows]), np.concatenate([J.col, cols]))),
                             shape=(J.shape[0], self.n)).tocsr()

    def jac_c(self, xr):
        return self._widen(self.orig.jac_c(xr[:self.n_orig]), self._pen_c)

    def jac_d(self, xr):
        return self._widen(self.orig.jac_d(xr[:self.n_orig]), self._pen_d)

    def hess(self, xr, obj_factor: float, y_c, y_d) -> sp.csr_matrix:
        n = self.n_orig
        H = self.orig.hess(xr[:n], 0.0, y_c, y_d) + sp.diags(obj_factor * self.zeta * self.dr2)
        H = sp.coo_matrix(H)
        return sp.coo_matrix((H.data, (H.row, H.col)), shape=(self.n, self.n)).tocsr()

    def unscaled_measures(self, q) -> Tuple[float, float, float]:
        return q.dual_inf, q.primal_inf, safe_inf_norm(q.complementarity(0.0))

    def unscaled_obj(self, f):
        return f


def penalty_init(r: np.ndarray, mu: float, rho: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    p, n > 0 with p - n = r that solve the barrier problem of the
    penalty terms for fixed x.
    """
    a = (mu - rho * r) / (2.0 * rho)
    n = a + np.sqrt(a * a + mu * r / (2.0 * rho))
    n = np.maximum(n, 1e-300)
    return r + n, n


class RestorationConvergenceCheck(OptimalityErrorConvergenceCheck):
    """
    Stops the restoration phase as soon as the corresponding original
    point reduces θ by the required factor and is acceptable to the
    original filter.
    """

    def __init__(self, cfg, resto_nlp: RestorationNLP, clock, orig_line_search, theta_start: float,
                 mu_orig: float):
        super().__init__(cfg, resto_nlp, clock)
        self.orig_ls = orig_line_search
        self.theta_start = theta_start
        self.mu_orig = mu_orig
        self.orig_success = False
        self.orig_quantities: Optional[IterateQuantities] = None
        self._at_start = True

    def check(self, state, q):
        nlp = self.nlp
        at_start, self._at_start = self._at_start, False
        if not at_start:
            q_o = IterateQuantities(nlp.orig, nlp.orig_iterate(q.it))
            try:
                theta_o = q_o.theta
                phi_o = q_o.phi(self.mu_orig, self.cfg.kappa_d)
                q_o.evaluate_derivatives()
            except EvaluationError:
                theta_o = phi_o = np.inf
            if (theta_o <= self.cfg.required_infeasibility_reduction * self.theta_start
                    and self.orig_ls.is_acceptable_to_filter(theta_o, phi_o)):
                self.orig_success = True
                self.orig_quantities = q_o
                return ConvergenceStatus.CONVERGED
        status = super().check(state, q)
        if status is ConvergenceStatus.CONVERGED_TO_ACCEPTABLE_POINT:
            return ConvergenceStatus.CONVERGED
        return status


class RestorationPhase:
    """Runs the restoration problem with a nested algorithm of the same class."""

    def __init__(self, algorithm):
        self.alg = algorithm
        self.cfg = algorithm.cfg
        self.n_calls = 0

    def _resto_config(self):
        cfg = self.cfg.copy()
        # the nested run terminates through its own convergence check
        cfg.mu_strategy = "monotone"
        cfg.start_with_resto = False
        return cfg

    def perform(self, state: IPState, q: IterateQuantities) -> IPState:
        alg, cfg = self.alg, self.cfg
        orig = alg.nlp
        self.n_calls += 1
        theta = q.theta
        if theta <= 1e2 * np.finfo(float).tiny:
            raise RestorationFailed("restoration phase called at a feasible point")
        # the current iterate becomes forbidden for the original problem
        alg.ls.augment_filter(theta, q.phi(state.mu, cfg.kappa_d))

        it = state.curr
        rho = cfg.resto_penalty_parameter
        mu_r = max(state.mu, safe_inf_norm(q.c), safe_inf_norm(q.d_minus_s))
        rnlp = RestorationNLP(orig, it.x, mu_r, rho, cfg.resto_proximity_weight)
        p_c, n_c = penalty_init(q.c, mu_r, rho)
        p_d, n_d = penalty_init(q.d_minus_s, mu_r, rho)
        pen = np.concatenate([p_c, n_c, p_d, n_d])
        z_pen = mu_r / pen
        zero_pen = np.zeros_like(pen)
        start = Iterate(
            x=np.concatenate([it.x, pen]),
            s=it.s.copy(),
            y_c=np.zeros(orig.m_c),
            y_d=np.zeros(orig.m_d),
            z_L=np.concatenate([np.minimum(rho, it.z_L), z_pen]),
            z_U=np.concatenate([np.minimum(rho, it.z_U), zero_pen]),
            v_L=np.minimum(rho, it.v_L),
            v_U=np.minimum(rho, it.v_U),
        )
        logger.debug(f"[Resto] start: theta={theta:.3e} mu_R={mu_r:.3e}")

        rcfg = self._resto_config()
        check = RestorationConvergenceCheck(rcfg, rnlp, alg.conv.clock, alg.ls, theta, state.mu)
        inner = type(alg)(rnlp, rcfg, mode=1, dispatcher=alg.dispatcher, conv_check=check,
                          clock=alg.conv.clock, logger=alg.logger, iterate_listener=alg.iterate_listener)
        inner_state = inner.initialize_from(start, mu_r, iter_count=state.iter_count)
        try:
            status = inner.optimize(inner_state)
        except (LineSearchFailure, StepComputationError, EvaluationError) as exc:
            raise RestorationFailed(f"restoration phase failed: {exc}") from exc
        finally:
            state.iter_count = inner_state.iter_count

        if status in (ConvergenceStatus.MAXITER_EXCEEDED, ConvergenceStatus.CPUTIME_EXCEEDED,
                      ConvergenceStatus.WALLTIME_EXCEEDED):
            raise RestorationTerminated(status)
        if status is ConvergenceStatus.DIVERGING:
            raise RestorationFailed("restoration phase iterates diverge")
        if not check.orig_success:
            x_o = rnlp.orig_iterate(inner_state.curr)
            try:
                theta_o = IterateQuantities(orig, x_o).theta
            except EvaluationError:
                theta_o = np.inf
            if theta_o > cfg.constr_viol_tol:
                raise LocalInfeasibility(
                    f"restoration converged to a point of local infeasibility (theta={theta_o:.3e})")
            raise RestorationFailed("restoration converged without acceptable progress")

        return self._return_to_original(state, rnlp, inner_state, check.orig_quantities)

    def _return_to_original(self, state: IPState, rnlp: RestorationNLP, inner_state: IPState,
                            q_o: IterateQuantities) -> IPState:
        alg, cfg = self.alg, self.cfg
        new = rnlp.orig_iterate(inner_state.curr)
        bound_max = max(safe_inf_norm(new.z_L), safe_inf_norm(new.z_U),
                        safe_inf_norm(new.v_L), safe_inf_norm(new.v_U))
        if bound_max > cfg.bound_mult_reset_threshold:
            nlp = alg.nlp
            init = cfg.bound_mult_init_val
            new.z_L = np.where(nlp.has_x_L, init, 0.0)
            new.z_U = np.where(nlp.has_x_U, init, 0.0)
            new.v_L = np.where(nlp.has_d_L, init, 0.0)
            new.v_U = np.where(nlp.has_d_U, init, 0.0)
            logger.debug(f"[Resto] bound multipliers reset (max was {bound_max:.3e})")
        q_new = IterateQuantities(alg.nlp, new)
        if cfg.constr_mult_reset_threshold > 0.0:
            y = alg.kkt.least_squares_multipliers(q_new)
            if y is None or max(safe_inf_norm(y[0]), safe_inf_norm(y[1])) > cfg.constr_mult_reset_threshold:
                new.y_c = np.zeros_like(new.y_c)
                new.y_d = np.zeros_like(new.y_d)
            else:
                new.y_c, new.y_d = y
            q_new = IterateQuantities(alg.nlp, new)
        alg.ls.reset()
        if alg.lbfgs is not None:
            alg.lbfgs.reset()
        state.d_norm = max(safe_inf_norm(new.x - state.curr.x), safe_inf_norm(new.s - state.curr.s))
        state.accept(new, q_new)
        logger.debug(f"[Resto] returning to the original problem, theta={q_o.theta:.3e}")
        return state
