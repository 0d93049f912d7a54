# ip.py
# Primal-dual interior-point driver with filter line search (barrier NLP).
from __future__ import annotations

import logging
from typing import Callable, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from .blocks.aux import IPConfig, safe_inf_norm
from .blocks.hessian import LBFGSHessian
from .blocks.linesearch import FilterLineSearch, LineSearchResult
from .callbacks import IntermediateDispatcher, IterationStats
from .exceptions import (
    EvaluationError,
    LineSearchFailure,
    LocalInfeasibility,
    RestorationFailed,
    StepComputationError,
    TinyStep,
    UserRequestedStop,
)
from .ip_conv import Clock, ConvergenceStatus, OptimalityErrorConvergenceCheck
from .ip_kkt import KKTSolver, least_squares_duals, solve_newton_step
from .ip_mu import make_mu_update
from .ip_state import IPState, Iterate, IterateQuantities
from .restoration import RestorationPhase, RestorationTerminated
from .status import ReturnStatus

_LIMIT_STATUS = {
    ConvergenceStatus.MAXITER_EXCEEDED: ReturnStatus.MAXIMUM_ITERATIONS_EXCEEDED,
    ConvergenceStatus.CPUTIME_EXCEEDED: ReturnStatus.MAXIMUM_CPUTIME_EXCEEDED,
    ConvergenceStatus.WALLTIME_EXCEEDED: ReturnStatus.MAXIMUM_WALLTIME_EXCEEDED,
    ConvergenceStatus.DIVERGING: ReturnStatus.DIVERGING_ITERATES,
    ConvergenceStatus.CONVERGED_TO_ACCEPTABLE_POINT: ReturnStatus.SOLVED_TO_ACCEPTABLE_LEVEL,
}


# ------------------ tiny numerics ------------------
def push_into_bounds(v, lo, hi, has_lo, has_hi, push: float, frac: float) -> np.ndarray:
    """
    Move v strictly inside [lo, hi]:

        p_L = min(push max(1, |lo|), frac (hi - lo))     (frac term only if two-sided)
        v  <- max(v, lo + p_L),   v <- min(v, hi - p_U)
    """
    lo_f = np.where(has_lo, lo, 0.0)
    hi_f = np.where(has_hi, hi, 0.0)
    p_L = push * np.maximum(1.0, np.abs(lo_f))
    p_U = push * np.maximum(1.0, np.abs(hi_f))
    both = has_lo & has_hi
    width = np.where(both, hi_f - lo_f, np.inf)
    p_L = np.where(both, np.minimum(p_L, frac * width), p_L)
    p_U = np.where(both, np.minimum(p_U, frac * width), p_U)
    out = np.asarray(v, dtype=float).copy()
    out = np.where(has_lo, np.maximum(out, lo_f + p_L), out)
    out = np.where(has_hi, np.minimum(out, hi_f - p_U), out)
    return out


def _clip_sigma(z, slack, mask, mu: float, kappa: float) -> np.ndarray:
    """Keep z_i * slack_i within [mu / kappa, kappa mu]."""
    lo = mu / (kappa * slack)
    hi = kappa * mu / slack
    return np.where(mask, np.clip(z, lo, hi), z)


class InteriorPointAlgorithm:
    """
    Barrier method on

        min f(x)  s.t.  c(x) = 0,  d(x) - s = 0,  x_L <= x <= x_U,  d_L <= s <= d_U

    Each iteration: convergence test, barrier update, Newton step on the
    primal-dual system (inertia-corrected), filter line search. When the
    line search fails the restoration phase is entered (mode 0) or the
    failure is reported (mode 1, the restoration problem itself).
    """

    def __init__(self, nlp, cfg: IPConfig, mode: int = 0,
                 dispatcher: Optional[IntermediateDispatcher] = None,
                 conv_check: Optional[OptimalityErrorConvergenceCheck] = None,
                 clock: Optional[Clock] = None,
                 logger: Optional[logging.Logger] = None,
                 iterate_listener: Optional[Callable] = None):
        self.nlp = nlp
        self.cfg = cfg
        self.mode = mode
        self.logger = logger or logging.getLogger("ipsolve")
        self.dispatcher = dispatcher or IntermediateDispatcher(logger=self.logger)
        clock = clock or Clock.start()
        self.conv = conv_check or OptimalityErrorConvergenceCheck(cfg, nlp, clock)
        self.iterate_listener = iterate_listener

        self.kkt = KKTSolver(cfg)
        self.ls = FilterLineSearch(cfg, self.kkt, mode)
        self.mu_update = make_mu_update(cfg, self.ls)
        exact = cfg.hessian_approximation == "exact" and nlp.has_exact_hessian
        self.lbfgs = None if exact else LBFGSHessian(nlp.n, cfg.limited_memory_max_history)
        self.resto = RestorationPhase(self) if mode == 0 else None
        self.state: Optional[IPState] = None

    # ------------------------------------------------------------------ #
    # Starting point
    # ------------------------------------------------------------------ #

    def initialize(self, x0_user, mult_g=None, mult_x_L=None, mult_x_U=None) -> IPState:
        """Interior starting point and multipliers for the original problem."""
        nlp, cfg = self.nlp, self.cfg
        warm = cfg.warm_start_init_point == "yes" or any(
            v is not None for v in (mult_g, mult_x_L, mult_x_U))
        if warm:
            push, frac = cfg.warm_start_bound_push, cfg.warm_start_bound_frac
            s_push, s_frac = cfg.warm_start_slack_bound_push, cfg.warm_start_slack_bound_frac
        else:
            push, frac = cfg.bound_push, cfg.bound_frac
            s_push, s_frac = cfg.slack_bound_push, cfg.slack_bound_frac

        x = push_into_bounds(nlp.to_internal_x(x0_user), nlp.x_L, nlp.x_U,
                             nlp.has_x_L, nlp.has_x_U, push, frac)
        s = push_into_bounds(nlp.d(x), nlp.d_L, nlp.d_U, nlp.has_d_L, nlp.has_d_U, s_push, s_frac)
        it = Iterate.zeros(nlp.n, nlp.m_c, nlp.m_d)
        it.x, it.s = x, s

        if warm:
            self._warm_multipliers(it, mult_g, mult_x_L, mult_x_U)
        else:
            init = cfg.bound_mult_init_val
            it.z_L = np.where(nlp.has_x_L, init, 0.0)
            it.z_U = np.where(nlp.has_x_U, init, 0.0)
            it.v_L = np.where(nlp.has_d_L, init, 0.0)
            it.v_U = np.where(nlp.has_d_U, init, 0.0)
            duals = least_squares_duals(IterateQuantities(nlp, it)) if cfg.least_square_init_duals else None
            if duals is not None:
                y = duals[:2]
                z_L, z_U, v_L, v_U = duals[2:]
                it.z_L = np.where(nlp.has_x_L, np.maximum(z_L, init), 0.0)
                it.z_U = np.where(nlp.has_x_U, np.maximum(z_U, init), 0.0)
                it.v_L = np.where(nlp.has_d_L, np.maximum(v_L, init), 0.0)
                it.v_U = np.where(nlp.has_d_U, np.maximum(v_U, init), 0.0)
            elif nlp.m_c + nlp.m_d:
                y = self.kkt.least_squares_multipliers(IterateQuantities(nlp, it))
            else:
                y = None
            if y is not None and max(safe_inf_norm(y[0]), safe_inf_norm(y[1])) <= cfg.constr_mult_init_max:
                it.y_c, it.y_d = y
            elif nlp.m_c + nlp.m_d:
                self.logger.debug("[Init] least-squares multipliers discarded")
        return self.initialize_from(it, min(cfg.mu_init, cfg.mu_max))

    def _warm_multipliers(self, it: Iterate, mult_g, mult_x_L, mult_x_U):
        nlp, cfg = self.nlp, self.cfg
        cap = cfg.warm_start_mult_init_max
        mpush = cfg.warm_start_mult_bound_push
        if mult_g is not None:
            y_c, y_d = nlp.split_lambda(mult_g)
            it.y_c, it.y_d = np.clip(y_c, -cap, cap), np.clip(y_d, -cap, cap)
        z_L = nlp.z_to_internal(mult_x_L) if mult_x_L is not None else np.zeros(nlp.n)
        z_U = nlp.z_to_internal(mult_x_U) if mult_x_U is not None else np.zeros(nlp.n)
        it.z_L = np.where(nlp.has_x_L, np.clip(z_L, mpush, cap), 0.0)
        it.z_U = np.where(nlp.has_x_U, np.clip(z_U, mpush, cap), 0.0)
        it.v_L = np.where(nlp.has_d_L, np.clip(-it.y_d, mpush, cap), 0.0)
        it.v_U = np.where(nlp.has_d_U, np.clip(it.y_d, mpush, cap), 0.0)

    def initialize_from(self, it: Iterate, mu: float, iter_count: int = 0) -> IPState:
        cfg = self.cfg
        state = IPState(curr=it, mu=float(mu), tau=max(cfg.tau_min, 1.0 - mu), iter_count=iter_count)
        state.quantities = IterateQuantities(self.nlp, it)
        self.state = state
        self._notify(state)
        return state

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #

    def optimize(self, state: IPState) -> ConvergenceStatus:
        """
        Iterate until the convergence check stops. Raises TinyStep,
        UserRequestedStop, RestorationFailed / LocalInfeasibility,
        EvaluationError (at the starting point) and, in mode 1,
        LineSearchFailure / StepComputationError.
        """
        cfg, nlp = self.cfg, self.nlp
        force_resto = cfg.start_with_resto and self.mode == 0
        while True:
            q = state.quantities or IterateQuantities(nlp, state.curr)
            state.quantities = q
            status = self.conv.check(state, q)
            self._report(state, q)
            if status is not ConvergenceStatus.CONTINUE:
                return status

            self.mu_update.update(state, q)

            try:
                if force_resto:
                    force_resto = False
                    raise LineSearchFailure("restoration phase requested at the starting point")
                delta, reg = self._search_direction(state, q)
                res = self.ls.search(q, delta, state.mu, state.tau)
            except (StepComputationError, LineSearchFailure) as exc:
                self.logger.debug(f"[IP] iteration {state.iter_count}: {exc}")
                if self.conv.current_is_acceptable(q):
                    return ConvergenceStatus.CONVERGED_TO_ACCEPTABLE_POINT
                if self.mode == 1:
                    raise
                if isinstance(exc, StepComputationError):
                    self.logger.warning(f"Step computation failed ({exc}); entering restoration phase")
                state.info_char = " "
                state.alpha_pr = state.alpha_du = 0.0
                state.ls_trials = 0
                self.resto.perform(state, q)
                self._notify(state)
                continue

            self._accept(state, q, delta, reg, res)

    def _search_direction(self, state: IPState, q: IterateQuantities):
        cfg = self.cfg
        try:
            W = self._hessian(q)
        except EvaluationError as exc:
            raise StepComputationError(f"Hessian evaluation failed: {exc}") from exc
        delta, reg, _ = solve_newton_step(self.kkt, q, W, state.mu, cfg.kappa_d)
        state.delta = delta
        return delta, reg

    def _hessian(self, q: IterateQuantities) -> sp.spmatrix:
        if self.lbfgs is not None:
            return self.lbfgs.matrix()
        it = q.it
        return self.nlp.hess(it.x, 1.0, it.y_c, it.y_d)

    def _accept(self, state: IPState, q: IterateQuantities, delta: Iterate, reg,
                res: LineSearchResult):
        cfg, nlp = self.cfg, self.nlp
        trial, q_t = res.trial, res.q_trial
        kappa = cfg.kappa_sigma
        trial.z_L = _clip_sigma(trial.z_L, q_t.slack_x_L, nlp.has_x_L, state.mu, kappa)
        trial.z_U = _clip_sigma(trial.z_U, q_t.slack_x_U, nlp.has_x_U, state.mu, kappa)
        trial.v_L = _clip_sigma(trial.v_L, q_t.slack_s_L, nlp.has_d_L, state.mu, kappa)
        trial.v_U = _clip_sigma(trial.v_U, q_t.slack_s_U, nlp.has_d_U, state.mu, kappa)

        if self.lbfgs is not None:
            self._update_lbfgs(q, q_t)

        state.d_norm = max(safe_inf_norm(delta.x), safe_inf_norm(delta.s))
        state.delta_w, state.delta_c = reg.delta_w, reg.delta_c
        state.alpha_pr, state.alpha_du = res.alpha_pr, res.alpha_du
        state.ls_trials = res.ls_trials
        state.info_char = res.info
        state.tiny_step = res.tiny_step
        state.iter_count += 1
        state.accept(trial, q_t)
        self._notify(state)

    def _update_lbfgs(self, q: IterateQuantities, q_t: IterateQuantities):
        y_c, y_d = q_t.it.y_c, q_t.it.y_d

        def grad_lag(qq):
            g = qq.grad_f
            if y_c.size:
                g = g + qq.jac_c.T @ y_c
            if y_d.size:
                g = g + qq.jac_d.T @ y_d
            return g

        try:
            y = grad_lag(q_t) - grad_lag(q)
        except EvaluationError as exc:
            self.logger.debug(f"[LBFGS] update skipped: {exc}")
            return
        self.lbfgs.update(q_t.it.x - q.it.x, y)

    # ------------------------------------------------------------------ #
    # Reporting
    # ------------------------------------------------------------------ #

    def _report(self, state: IPState, q: IterateQuantities):
        stats = IterationStats(
            alg_mod=self.mode,
            iter_count=state.iter_count,
            obj_value=float(self.nlp.unscaled_obj(q.f)),
            inf_pr=float(self.conv.measures.constr_viol),
            inf_du=float(q.dual_inf),
            mu=float(state.mu),
            d_norm=float(state.d_norm),
            regularization_size=float(state.delta_w),
            alpha_du=float(state.alpha_du),
            alpha_pr=float(state.alpha_pr),
            ls_trials=int(state.ls_trials),
        )
        self.dispatcher.dispatch(stats, state.info_char)

    def _notify(self, state: IPState):
        if self.iterate_listener is not None:
            self.iterate_listener(self.nlp, state.curr)

    # ------------------------------------------------------------------ #
    # Entry point for the original problem
    # ------------------------------------------------------------------ #

    def run(self, x0_user, mult_g=None, mult_x_L=None, mult_x_U=None) -> Tuple[ReturnStatus, Optional[IPState]]:
        """Solve from x0 and translate the outcome into a ReturnStatus."""
        log = self.logger
        try:
            state = self.initialize(x0_user, mult_g, mult_x_L, mult_x_U)
            status = self.optimize(state)
        except EvaluationError as exc:
            log.error(f"Invalid number in NLP function or derivative: {exc}")
            return ReturnStatus.INVALID_NUMBER_DETECTED, self.state
        except UserRequestedStop as exc:
            log.info(str(exc))
            return ReturnStatus.USER_REQUESTED_STOP, self.state
        except TinyStep as exc:
            log.info(str(exc))
            q = self.state.quantities
            if q is not None and self.conv.current_is_acceptable(q):
                return ReturnStatus.SOLVED_TO_ACCEPTABLE_LEVEL, self.state
            return ReturnStatus.SEARCH_DIRECTION_BECOMES_TOO_SMALL, self.state
        except LocalInfeasibility as exc:
            log.warning(str(exc))
            return ReturnStatus.INFEASIBLE_PROBLEM_DETECTED, self.state
        except RestorationFailed as exc:
            log.warning(str(exc))
            return ReturnStatus.RESTORATION_FAILED, self.state
        except RestorationTerminated as exc:
            return _LIMIT_STATUS[exc.status], self.state
        except StepComputationError as exc:
            log.error(str(exc))
            return ReturnStatus.ERROR_IN_STEP_COMPUTATION, self.state
        except Exception:
            log.exception("Unexpected error during the solve")
            return ReturnStatus.INTERNAL_ERROR, self.state

        if status is ConvergenceStatus.CONVERGED:
            nlp = self.nlp
            if nlp.m_d == 0 and nlp.m_c == nlp.n:
                return ReturnStatus.FEASIBLE_POINT_FOUND, state
            return ReturnStatus.SOLVE_SUCCEEDED, state
        return _LIMIT_STATUS[status], state
