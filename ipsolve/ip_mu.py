# ip_mu.py
# Barrier parameter strategies.
from __future__ import annotations

import logging
from collections import deque

import numpy as np

from .exceptions import TinyStep
from .ip_state import IPState, IterateQuantities

logger = logging.getLogger(__name__)


class MuUpdate:
    """Base: owns the floor of mu and resets the filter whenever mu changes."""

    def __init__(self, cfg, line_search=None):
        self.cfg = cfg
        self.line_search = line_search

    @property
    def mu_floor(self) -> float:
        cfg = self.cfg
        return max(cfg.mu_min, min(cfg.tol, cfg.compl_inf_tol) / (cfg.barrier_tol_factor + 1.0))

    def _set_mu(self, state: IPState, mu: float) -> bool:
        mu = min(float(mu), self.cfg.mu_max)
        if mu == state.mu:
            return False
        state.mu = mu
        state.tau = max(self.cfg.tau_min, 1.0 - mu)
        if self.line_search is not None:
            self.line_search.reset()
        return True

    def _monotone_decrease(self, state: IPState, q: IterateQuantities) -> bool:
        """Fiacco–McCormick: shrink mu while the barrier subproblem is solved."""
        cfg = self.cfg
        floor = self.mu_floor
        tiny = state.tiny_step
        changed = False
        while True:
            if state.mu <= floor:
                if tiny:
                    raise TinyStep("tiny step and barrier parameter at its minimum")
                break
            solved = q.optimality_error(state.mu, cfg.s_max) <= cfg.barrier_tol_factor * state.mu
            if not (solved or tiny):
                break
            new_mu = max(floor, min(cfg.mu_linear_decrease_factor * state.mu,
                                    state.mu ** cfg.mu_superlinear_decrease_power))
            logger.debug(f"[Mu] monotone decrease {state.mu:.3e} -> {new_mu:.3e}")
            changed = self._set_mu(state, new_mu) or changed
            tiny = False
            if not cfg.mu_allow_fast_monotone_decrease:
                break
        return changed

    def update(self, state: IPState, q: IterateQuantities) -> bool:
        raise NotImplementedError


class MonotoneMuUpdate(MuUpdate):
    def update(self, state, q):
        return self._monotone_decrease(state, q)


class AdaptiveMuUpdate(MuUpdate):
    """
    LOQO centrality rule in free mode, guarded by sufficient KKT-error
    progress; falls back to monotone (fixed) mode when progress stalls
    and returns to free mode once the barrier subproblem is solved.
    Never increases mu.
    """

    def __init__(self, cfg, line_search=None):
        super().__init__(cfg, line_search)
        self.free_mode = True
        self.refs = deque(maxlen=max(1, cfg.adaptive_mu_kkterror_red_iters))

    def _progress(self, err: float) -> bool:
        if not self.refs:
            return True
        red = self.cfg.adaptive_mu_kkterror_red_fact
        return any(err <= red * ref for ref in self.refs)

    @staticmethod
    def loqo_mu(q: IterateQuantities) -> float:
        comp = q.complementarity(0.0)
        if comp.size == 0:
            return 0.0
        avg = float(np.mean(comp))
        if avg <= 0.0:
            return 0.0
        xi = float(np.min(comp)) / avg
        xi = min(max(xi, 1e-300), 1.0)
        sigma = 0.1 * min(0.05 * (1.0 - xi) / xi, 2.0) ** 3
        return sigma * avg

    def update(self, state, q):
        cfg = self.cfg
        floor = self.mu_floor
        err = q.optimality_error(0.0, cfg.s_max)
        if self.free_mode:
            if self._progress(err):
                self.refs.append(err)
                new_mu = min(state.mu, max(floor, self.loqo_mu(q)))
                if state.tiny_step and new_mu >= state.mu:
                    return self._monotone_decrease(state, q)
                return self._set_mu(state, new_mu)
            self.free_mode = False
            avg = q.avg_complementarity
            new_mu = min(state.mu, max(floor, cfg.adaptive_mu_monotone_init_factor * avg))
            logger.debug(f"[Mu] insufficient progress, switching to monotone mode (mu={new_mu:.3e})")
            return self._set_mu(state, new_mu)

        changed = self._monotone_decrease(state, q)
        if changed and self._progress(err):
            self.free_mode = True
            self.refs.clear()
            self.refs.append(err)
        return changed


def make_mu_update(cfg, line_search=None) -> MuUpdate:
    if cfg.mu_strategy == "adaptive":
        return AdaptiveMuUpdate(cfg, line_search)
    return MonotoneMuUpdate(cfg, line_search)
