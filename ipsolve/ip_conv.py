# ip_conv.py
# Termination tests.
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .blocks.aux import safe_inf_norm
from .ip_state import IPState, IterateQuantities


class ConvergenceStatus(Enum):
    CONTINUE = "continue"
    CONVERGED = "converged"
    CONVERGED_TO_ACCEPTABLE_POINT = "acceptable"
    MAXITER_EXCEEDED = "maxiter"
    CPUTIME_EXCEEDED = "cputime"
    WALLTIME_EXCEEDED = "walltime"
    DIVERGING = "diverging"


@dataclass
class ErrorMeasures:
    overall: float = float("inf")
    dual_inf: float = float("inf")
    constr_viol: float = float("inf")
    compl_inf: float = float("inf")


@dataclass
class Clock:
    wall_start: float
    cpu_start: float

    @classmethod
    def start(cls) -> "Clock":
        return cls(time.perf_counter(), time.process_time())

    def wall(self) -> float:
        return time.perf_counter() - self.wall_start

    def cpu(self) -> float:
        return time.process_time() - self.cpu_start


class OptimalityErrorConvergenceCheck:
    """
    Converged when the scaled optimality error (μ = 0) is below ``tol``
    and the unscaled dual infeasibility, constraint violation and
    complementarity are below their own tolerances. Acceptable when the
    looser ``acceptable_*`` levels hold for ``acceptable_iter``
    consecutive iterations.
    """

    def __init__(self, cfg, nlp, clock: Optional[Clock] = None):
        self.cfg = cfg
        self.nlp = nlp
        self.clock = clock or Clock.start()
        self.acceptable_counter = 0
        self.last_obj: Optional[float] = None
        self.measures = ErrorMeasures()
        self.scaled = ErrorMeasures()

    def measure(self, q: IterateQuantities) -> ErrorMeasures:
        cfg = self.cfg
        overall = q.optimality_error(0.0, cfg.s_max)
        dual, viol, compl = self.nlp.unscaled_measures(q)
        self.measures = ErrorMeasures(overall, dual, viol, compl)
        self.scaled = ErrorMeasures(overall, q.dual_inf, q.primal_inf,
                                    safe_inf_norm(q.complementarity(0.0)))
        return self.measures

    def _within_acceptable_tols(self, m: ErrorMeasures) -> bool:
        cfg = self.cfg
        if cfg.acceptable_iter <= 0:
            return False
        return (m.overall <= cfg.acceptable_tol and m.dual_inf <= cfg.acceptable_dual_inf_tol
                and m.constr_viol <= cfg.acceptable_constr_viol_tol
                and m.compl_inf <= cfg.acceptable_compl_inf_tol)

    def _acceptable(self, m: ErrorMeasures, q: IterateQuantities) -> bool:
        ok = self._within_acceptable_tols(m)
        if ok and self.last_obj is not None:
            f = q.f
            ok = abs(f - self.last_obj) / max(1.0, abs(f)) <= self.cfg.acceptable_obj_change_tol
        return ok

    def current_is_acceptable(self, q: IterateQuantities) -> bool:
        """Last measured point meets the acceptable tolerances (no streak needed)."""
        return self._within_acceptable_tols(self.measures)

    def check(self, state: IPState, q: IterateQuantities) -> ConvergenceStatus:
        cfg = self.cfg
        m = self.measure(q)
        if (m.overall <= cfg.tol and m.dual_inf <= cfg.dual_inf_tol
                and m.constr_viol <= cfg.constr_viol_tol and m.compl_inf <= cfg.compl_inf_tol):
            return ConvergenceStatus.CONVERGED

        if self._acceptable(m, q):
            self.acceptable_counter += 1
        else:
            self.acceptable_counter = 0
        self.last_obj = q.f
        if cfg.acceptable_iter > 0 and self.acceptable_counter >= cfg.acceptable_iter:
            return ConvergenceStatus.CONVERGED_TO_ACCEPTABLE_POINT

        if safe_inf_norm(q.it.x) > cfg.diverging_iterates_tol:
            return ConvergenceStatus.DIVERGING
        if state.iter_count >= cfg.max_iter:
            return ConvergenceStatus.MAXITER_EXCEEDED
        if self.clock.wall() > cfg.max_wall_time:
            return ConvergenceStatus.WALLTIME_EXCEEDED
        if self.clock.cpu() > cfg.max_cpu_time:
            return ConvergenceStatus.CPUTIME_EXCEEDED
        return ConvergenceStatus.CONTINUE
