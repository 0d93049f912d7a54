import logging
from typing import Callable, Optional, Tuple

from ..exceptions import EvaluationError, StepComputationError
from ..ip_kkt import KKTSolver, barrier_rhs, recover_bound_steps
from ..ip_state import Iterate, IterateQuantities

logger = logging.getLogger(__name__)


class SOCCorrector:
    """
    Second-order correction: re-solve the Newton system with the
    accumulated constraint values

        c_soc = α c(x_k) + c(x_trial),   (d - s)_soc likewise,

    reusing the factorization of the current iteration, and try the
    corrected point. At most ``max_soc`` corrections are made and the
    loop stops once θ fails to contract by ``kappa_soc``.
    """

    def __init__(self, cfg, kkt: KKTSolver):
        self.cfg = cfg
        self.kkt = kkt
        self.n_attempts = 0
        self.n_accepted = 0

    def attempt(
        self,
        q_curr: IterateQuantities,
        q_trial: IterateQuantities,
        alpha: float,
        mu: float,
        tau: float,
        frac_to_boundary: Callable,
        accept: Callable[[IterateQuantities, float], Optional[str]],
        alpha_y_rule: Callable[[float, float], float],
    ) -> Optional[Tuple[Iterate, IterateQuantities, float, float, str, int]]:
        """
        Returns (trial, q_trial, alpha_pr, alpha_du, info, n_trials) of an
        accepted corrected point, or None.
        """
        cfg = self.cfg
        if cfg.max_soc <= 0 or self.kkt.cache.factor is None:
            return None
        system = self.kkt.cache.system
        rx, rs, _, _ = barrier_rhs(q_curr, mu, cfg.kappa_d)
        curr = q_curr.it
        c_soc = q_curr.c.copy()
        dms_soc = q_curr.d_minus_s.copy()
        alpha_soc = alpha
        theta_old = 0.0
        theta_trial = q_trial.theta
        count = 0
        while count < cfg.max_soc and (count == 0 or theta_trial <= cfg.kappa_soc * theta_old):
            count += 1
            self.n_attempts += 1
            theta_old = theta_trial
            c_soc = alpha_soc * c_soc + q_trial.c
            dms_soc = alpha_soc * dms_soc + q_trial.d_minus_s
            try:
                sol = self.kkt.resolve(system.join(rx, rs, -c_soc, -dms_soc))
            except StepComputationError as exc:
                logger.debug(f"[SOC] solve failed: {exc}")
                return None
            dx, ds, dyc, dyd = system.split(sol)
            dz_L, dz_U, dv_L, dv_U = recover_bound_steps(q_curr, mu, dx, ds)
            delta = Iterate(dx, ds, dyc, dyd, dz_L, dz_U, dv_L, dv_U)
            alpha_soc, alpha_du = frac_to_boundary(q_curr, delta, tau)
            trial = curr.take_step(delta, alpha_soc, alpha_du, alpha_y_rule(alpha_soc, alpha_du))
            q_trial = IterateQuantities(q_curr.nlp, trial)
            try:
                theta_trial = q_trial.theta
                info = accept(q_trial, alpha)
            except EvaluationError as exc:
                logger.debug(f"[SOC] evaluation failed: {exc}")
                return None
            logger.debug(f"[SOC] #{count}: alpha={alpha_soc:.3e} theta={theta_trial:.3e} -> {info}")
            if info is not None:
                self.n_accepted += 1
                return trial, q_trial, alpha_soc, alpha_du, info.upper(), count
        return None
