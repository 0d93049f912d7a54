"""
reg.py

Inertia correction for the primal-dual augmented system.

The KKT matrix of the barrier subproblem must have exactly
``n + m_d`` positive and ``m_c + m_d`` negative eigenvalues for the Newton
step to be a descent direction of the barrier problem. When the
factorization reports anything else the Hessian block is shifted by
``delta_w * I`` (and, if the matrix is singular, the constraint block by
``-delta_c * I``) and the factorization is retried.

Schedule (per iteration):
- first try ``delta_w = 0``;
- singular matrix: ``delta_c = jacobian_regularization_value * mu**kappa_c``;
- first shift: ``first_hessian_perturbation`` if no shift was needed in the
  previous iteration, otherwise ``max(min_hessian_perturbation,
  perturb_dec_fact * delta_w_last)``;
- further shifts grow by ``perturb_inc_fact_first`` (no history) or
  ``perturb_inc_fact``;
- give up above ``max_hessian_perturbation``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..exceptions import StepComputationError

logger = logging.getLogger(__name__)


# ---------- telemetry ----------
@dataclass
class RegInfo:
    delta_w: float = 0.0
    delta_c: float = 0.0
    attempts: int = 0
    inertia: Optional[Tuple[int, int, int]] = None
    history: List[Tuple[float, float]] = field(default_factory=list)


class InertiaCorrector:
    """
    Stateful perturbation schedule; ``delta_w_last`` survives across
    iterations of one run.
    """

    def __init__(self, cfg):
        self.cfg = cfg
        self.delta_w_last = 0.0
        self.delta_w = 0.0
        self.delta_c = 0.0
        self.info = RegInfo()

    def reset(self):
        self.delta_w_last = 0.0

    def start(self, mu: float) -> Tuple[float, float]:
        self.delta_w = 0.0
        self.delta_c = 0.0
        self._mu = float(mu)
        self.info = RegInfo()
        return self.delta_w, self.delta_c

    def jacobian_shift(self) -> float:
        cfg = self.cfg
        return cfg.jacobian_regularization_value * self._mu ** cfg.jacobian_regularization_exponent

    def next(self, singular: bool) -> Tuple[float, float]:
        """
        Perturbations for the next factorization attempt after a failure.
        Raises StepComputationError once the schedule is exhausted.
        """
        cfg = self.cfg
        self.info.attempts += 1
        if singular and self.delta_c == 0.0 and cfg.jacobian_regularization_value > 0.0:
            self.delta_c = self.jacobian_shift()
            if self.delta_w == 0.0:
                # retry once with only the constraint block shifted
                self._log()
                return self.delta_w, self.delta_c

        if self.delta_w == 0.0:
            if self.delta_w_last == 0.0:
                self.delta_w = cfg.first_hessian_perturbation
            else:
                self.delta_w = max(cfg.min_hessian_perturbation, cfg.perturb_dec_fact * self.delta_w_last)
        elif self.delta_w_last == 0.0:
            self.delta_w *= cfg.perturb_inc_fact_first
        else:
            self.delta_w *= cfg.perturb_inc_fact

        if self.delta_w > cfg.max_hessian_perturbation:
            self.delta_w = 0.0
            raise StepComputationError("inertia correction failed: Hessian perturbation exceeds limit")
        self._log()
        return self.delta_w, self.delta_c

    def success(self, inertia: Optional[Tuple[int, int, int]] = None):
        if self.delta_w > 0.0:
            self.delta_w_last = self.delta_w
        self.info.delta_w = self.delta_w
        self.info.delta_c = self.delta_c
        self.info.inertia = inertia

    def _log(self):
        self.info.history.append((self.delta_w, self.delta_c))
        logger.debug(f"[Inertia] retry #{self.info.attempts}: delta_w={self.delta_w:.3e} "
                     f"delta_c={self.delta_c:.3e}")
