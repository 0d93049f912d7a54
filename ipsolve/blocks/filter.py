"""
Filter acceptance mechanism for the interior-point line search.

Fletcher–Leyffer filter (class `Filter`)
   - Maintains a set of non-dominated pairs (θ, φ) (constraint violation,
     barrier objective), already shifted by the envelope margins
     ``((1 - γ_θ) θ, φ - γ_φ θ)`` of the iterate they came from.
   - A trial point (θ, φ) is acceptable if no stored pair is at least as
     good in both coordinates, and θ < θ_max.
   - Adding a pair removes every stored pair it dominates, so no entry
     ever dominates another.

Notes
-----
- θ ('theta') denotes the nonnegative 1-norm of (c(x), d(x) - s).
- The filter is emptied when the barrier parameter changes and after a
  successful restoration phase; θ_max survives resets.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

import numpy as np

from .kernels import k_dominated, k_filter_acceptable

logger = logging.getLogger(__name__)


class Filter:
    """
    Fletcher–Leyffer-style filter for IP globalization.

    Parameters
    ----------
    theta_max : float
        Upper bound on acceptable infeasibility (the implicit entry
        ``(θ_max, -∞)``).

    Attributes
    ----------
    thetas, phis : np.ndarray
        Stored pairs, in insertion order after pruning.
    """

    def __init__(self, theta_max: float = np.inf):
        self.theta_max = float(theta_max)
        self.thetas = np.zeros(0)
        self.phis = np.zeros(0)
        self.n_added = 0

    def __len__(self) -> int:
        return int(self.thetas.size)

    @property
    def entries(self) -> List[Tuple[float, float]]:
        return list(zip(self.thetas.tolist(), self.phis.tolist()))

    def is_acceptable(self, theta: float, phi: float) -> bool:
        """
        True iff (θ, φ) is not in the forbidden region of any entry.
        """
        if not (np.isfinite(theta) and np.isfinite(phi)):
            return False
        if theta >= self.theta_max:
            return False
        if self.thetas.size == 0:
            return True
        return bool(k_filter_acceptable(self.thetas, self.phis, float(theta), float(phi)))

    def add(self, theta: float, phi: float) -> bool:
        """
        Insert (θ, φ), pruning entries it dominates. A pair that is itself
        dominated by an entry adds no information and is skipped.

        Returns
        -------
        bool
            True if the pair was stored.
        """
        theta, phi = float(theta), float(phi)
        if self.thetas.size:
            if not k_filter_acceptable(self.thetas, self.phis, theta, phi):
                logger.debug(f"[Filter] skip dominated pair θ={theta:.3e}, φ={phi:.6e}")
                return False
            drop = k_dominated(self.thetas, self.phis, theta, phi)
            if np.any(drop):
                keep = ~drop
                self.thetas = self.thetas[keep]
                self.phis = self.phis[keep]
        self.thetas = np.append(self.thetas, theta)
        self.phis = np.append(self.phis, phi)
        self.n_added += 1
        logger.debug(f"[Filter] add θ={theta:.3e}, φ={phi:.6e} (size={len(self)})")
        return True

    def reset(self):
        self.thetas = np.zeros(0)
        self.phis = np.zeros(0)
        logger.debug("[Filter] reset")
