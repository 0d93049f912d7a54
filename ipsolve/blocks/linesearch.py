from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ..exceptions import EvaluationError, LineSearchFailure
from ..ip_state import Iterate, IterateQuantities
from .aux import MACH_EPS, safe_inf_norm
from .filter import Filter
from .kernels import k_frac_to_boundary
from .soc import SOCCorrector


@dataclass
class LineSearchResult:
    trial: Iterate
    q_trial: IterateQuantities
    alpha_pr: float
    alpha_du: float
    ls_trials: int
    info: str  # 'f' / 'h' (upper case after a second-order correction), 'T' tiny step
    tiny_step: bool = False


def _le(a: float, b: float, ref: float) -> bool:
    # a <= b up to roundoff relative to ref
    return a - b <= 10.0 * MACH_EPS * max(1.0, abs(ref))


class FilterLineSearch:
    """
    Backtracking filter line search on the barrier problem (Wächter–Biegler).

    - fraction-to-boundary caps α for x, s and for the bound multipliers;
    - switching condition decides between the Armijo test on φ_μ
      (f-type step) and sufficient reduction in θ or φ_μ (h-type step);
    - h-type steps augment the filter with the envelope of the current
      iterate;
    - the first rejected trial may be rescued by second-order corrections;
    - below α_min the search fails and the restoration phase takes over.
    """

    def __init__(self, cfg, kkt, mode: int = 0):
        self.cfg = cfg
        self.mode = mode
        self.filter = Filter()
        self.soc = SOCCorrector(cfg, kkt)
        self.theta_max: Optional[float] = None
        self.theta_min: Optional[float] = None
        self.n_eval_failures = 0

    def reset(self):
        """Empty the filter (θ_max is kept)."""
        self.filter.reset()

    def _init_theta_bounds(self, theta0: float):
        cfg = self.cfg
        self.theta_max = cfg.theta_max_fact * max(1.0, theta0)
        self.theta_min = cfg.theta_min_fact * max(1.0, theta0)
        self.filter.theta_max = self.theta_max

    # ---------- fraction to boundary ----------
    @staticmethod
    def frac_to_boundary(q: IterateQuantities, delta: Iterate, tau: float) -> Tuple[float, float]:
        nlp = q.nlp
        a_pr = min(
            k_frac_to_boundary(q.slack_x_L, delta.x, nlp.has_x_L, tau),
            k_frac_to_boundary(q.slack_x_U, -delta.x, nlp.has_x_U, tau),
            k_frac_to_boundary(q.slack_s_L, delta.s, nlp.has_d_L, tau),
            k_frac_to_boundary(q.slack_s_U, -delta.s, nlp.has_d_U, tau),
        )
        it = q.it
        a_du = min(
            k_frac_to_boundary(it.z_L, delta.z_L, nlp.has_x_L, tau),
            k_frac_to_boundary(it.z_U, delta.z_U, nlp.has_x_U, tau),
            k_frac_to_boundary(it.v_L, delta.v_L, nlp.has_d_L, tau),
            k_frac_to_boundary(it.v_U, delta.v_U, nlp.has_d_U, tau),
        )
        return float(a_pr), float(a_du)

    def alpha_y(self, alpha_pr: float, alpha_du: float) -> float:
        rule = self.cfg.alpha_for_y
        if rule == "bound-mult":
            return alpha_du
        if rule == "full":
            return 1.0
        return alpha_pr

    # ---------- acceptance tests ----------
    def _alpha_min(self, theta: float, gphi: float) -> float:
        cfg = self.cfg
        a = cfg.gamma_theta
        if gphi < 0.0:
            a = min(a, cfg.gamma_phi * theta / (-gphi))
            if theta <= self.theta_min:
                a = min(a, cfg.delta * theta ** cfg.s_theta / (-gphi) ** cfg.s_phi)
        return max(cfg.alpha_min_frac * a, 1e-20)

    def _is_ftype(self, alpha: float, theta: float, gphi: float) -> bool:
        cfg = self.cfg
        return gphi < 0.0 and alpha * (-gphi) ** cfg.s_phi > cfg.delta * theta ** cfg.s_theta

    def _obj_increase_ok(self, phi_t: float, phi: float) -> bool:
        inc = phi_t - phi
        if inc <= 0.0:
            return True
        return math.log10(inc) <= self.cfg.obj_max_inc + max(1.0, math.log10(max(abs(phi), 1e-300)))

    def check_acceptability(self, theta: float, phi: float, gphi: float, alpha_test: float,
                            theta_t: float, phi_t: float) -> Optional[str]:
        """'f' or 'h' for an acceptable trial point, None otherwise."""
        cfg = self.cfg
        if not (np.isfinite(theta_t) and np.isfinite(phi_t)):
            return None
        if theta_t > self.theta_max:
            return None
        if theta <= self.theta_min and self._is_ftype(alpha_test, theta, gphi):
            ok = _le(phi_t - phi, cfg.eta_phi * alpha_test * gphi, phi)
            kind = "f"
        else:
            ok = (_le(theta_t, (1.0 - cfg.gamma_theta) * theta, theta)
                  or _le(phi_t - phi, -cfg.gamma_phi * theta, phi))
            ok = ok and self._obj_increase_ok(phi_t, phi)
            kind = "h"
        if not ok:
            return None
        if not self.filter.is_acceptable(theta_t, phi_t):
            return None
        return kind

    def _is_tiny(self, q: IterateQuantities, delta: Iterate) -> bool:
        cfg = self.cfg
        it = q.it
        if q.primal_inf > 1e-4:
            return False
        rel = max(safe_inf_norm(delta.x / (1.0 + np.abs(it.x))),
                  safe_inf_norm(delta.s / (1.0 + np.abs(it.s))))
        if rel > cfg.tiny_step_tol:
            return False
        dy = max(safe_inf_norm(delta.y_c), safe_inf_norm(delta.y_d))
        ynorm = max(safe_inf_norm(it.y_c), safe_inf_norm(it.y_d))
        return dy <= cfg.tiny_step_y_tol * max(1.0, ynorm)

    # ---------- main entry ----------
    def _derivatives_failed(self, q_t: IterateQuantities, alpha: float) -> bool:
        try:
            q_t.evaluate_derivatives()
        except EvaluationError as exc:
            self.n_eval_failures += 1
            logging.getLogger(__name__).warning(
                f"Derivative evaluation failed at trial point (alpha={alpha:.3e}): {exc}; reducing step")
            return True
        return False

    def search(self, q: IterateQuantities, delta: Iterate, mu: float, tau: float) -> LineSearchResult:
        cfg = self.cfg
        log = logging.getLogger(__name__)
        kd = cfg.kappa_d
        it = q.it

        theta = q.theta
        phi = q.phi(mu, kd)
        if self.theta_max is None:
            self._init_theta_bounds(theta)
        gx, gs = q.barrier_grad(mu, kd)
        gphi = float(gx @ delta.x + gs @ delta.s)

        alpha_max, alpha_du = self.frac_to_boundary(q, delta, tau)

        if self._is_tiny(q, delta):
            trial = it.take_step(delta, alpha_max, alpha_du, self.alpha_y(alpha_max, alpha_du))
            q_t = IterateQuantities(q.nlp, trial)
            try:
                q_t.phi(mu, kd)
                q_t.evaluate_derivatives()
            except EvaluationError as exc:
                self.n_eval_failures += 1
                log.warning(f"Evaluation failed at tiny step: {exc}; backtracking instead")
            else:
                log.debug("[LS] tiny step, accepting full step")
                return LineSearchResult(trial, q_t, alpha_max, alpha_du, 1, "T", tiny_step=True)

        alpha_min = self._alpha_min(theta, gphi)
        alpha = alpha_max
        n_trials = 0
        while True:
            if alpha < alpha_min and not cfg.accept_every_trial_step:
                log.debug(f"[LS] alpha={alpha:.3e} below alpha_min={alpha_min:.3e}")
                raise LineSearchFailure(f"step size {alpha:.3e} below minimum {alpha_min:.3e}")
            if alpha < 1e-20:
                raise LineSearchFailure(f"step size {alpha:.3e} vanished after evaluation failures")
            n_trials += 1
            trial = it.take_step(delta, alpha, alpha_du, self.alpha_y(alpha, alpha_du))
            q_t = IterateQuantities(q.nlp, trial)
            try:
                theta_t = q_t.theta
                phi_t = q_t.phi(mu, kd)
            except EvaluationError as exc:
                self.n_eval_failures += 1
                log.warning(f"Evaluation failed at trial point (alpha={alpha:.3e}): {exc}; reducing step")
                alpha *= cfg.alpha_red_factor
                continue

            if cfg.accept_every_trial_step:
                if self._derivatives_failed(q_t, alpha):
                    alpha *= cfg.alpha_red_factor
                    continue
                return LineSearchResult(trial, q_t, alpha, alpha_du, n_trials, "a")

            kind = self.check_acceptability(theta, phi, gphi, alpha, theta_t, phi_t)
            log.debug(f"[LS] trial {n_trials}: alpha={alpha:.3e} theta={theta_t:.3e} "
                      f"phi={phi_t:.6e} -> {kind}")
            if kind is not None:
                if self._derivatives_failed(q_t, alpha):
                    alpha *= cfg.alpha_red_factor
                    continue
                self._augment(kind, theta, phi)
                return LineSearchResult(trial, q_t, alpha, alpha_du, n_trials, kind)

            if n_trials == 1 and theta_t >= theta:
                def _accept(q_soc, alpha_test):
                    return self.check_acceptability(theta, phi, gphi, alpha_test,
                                                    q_soc.theta, q_soc.phi(mu, kd))

                res = self.soc.attempt(q, q_t, alpha, mu, tau, self.frac_to_boundary, _accept, self.alpha_y)
                if res is not None:
                    s_trial, s_q, a_pr, a_du, info, n_soc = res
                    if not self._derivatives_failed(s_q, a_pr):
                        self._augment(info.lower(), theta, phi)
                        return LineSearchResult(s_trial, s_q, a_pr, a_du, n_trials + n_soc, info)

            alpha *= cfg.alpha_red_factor

    def _augment(self, kind: str, theta: float, phi: float):
        if kind == "h":
            self.augment_filter(theta, phi)

    def augment_filter(self, theta: float, phi: float):
        """Forbid the envelope of (θ, φ) for later trial points."""
        cfg = self.cfg
        self.filter.add((1.0 - cfg.gamma_theta) * theta, phi - cfg.gamma_phi * theta)

    # ---------- restoration support ----------
    def is_acceptable_to_filter(self, theta: float, phi: float) -> bool:
        return self.filter.is_acceptable(theta, phi)
