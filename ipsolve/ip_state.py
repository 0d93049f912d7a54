# ip_state.py
# Primal-dual iterate, per-point derived quantities and the mutable run state.
from __future__ import annotations

from dataclasses import dataclass, field, fields
from functools import cached_property
from typing import Optional

import numpy as np
import scipy.sparse as sp

from .blocks.aux import safe_inf_norm, safe_one_norm


@dataclass
class Iterate:
    """
    x, s        primal variables and slacks of d(x) - s = 0
    y_c, y_d    multipliers of c(x) = 0 and d(x) - s = 0
    z_L, z_U    bound multipliers of x (zero where the bound is absent)
    v_L, v_U    bound multipliers of s (zero where the bound is absent)
    """

    x: np.ndarray
    s: np.ndarray
    y_c: np.ndarray
    y_d: np.ndarray
    z_L: np.ndarray
    z_U: np.ndarray
    v_L: np.ndarray
    v_U: np.ndarray

    def copy(self) -> "Iterate":
        return Iterate(**{f.name: getattr(self, f.name).copy() for f in fields(self)})

    @classmethod
    def zeros(cls, n: int, m_c: int, m_d: int) -> "Iterate":
        z = np.zeros
        return cls(z(n), z(m_d), z(m_c), z(m_d), z(n), z(n), z(m_d), z(m_d))

    def take_step(self, d: "Iterate", alpha_pr: float, alpha_du: float, alpha_y: float) -> "Iterate":
        return Iterate(
            x=self.x + alpha_pr * d.x,
            s=self.s + alpha_pr * d.s,
            y_c=self.y_c + alpha_y * d.y_c,
            y_d=self.y_d + alpha_y * d.y_d,
            z_L=self.z_L + alpha_du * d.z_L,
            z_U=self.z_U + alpha_du * d.z_U,
            v_L=self.v_L + alpha_du * d.v_L,
            v_U=self.v_U + alpha_du * d.v_U,
        )


class IterateQuantities:
    """
    Values derived from one iterate, evaluated lazily and at most once.

    Attributes evaluate user callbacks through the NLP view and may raise
    EvaluationError.
    """

    def __init__(self, nlp, it: Iterate):
        self.nlp = nlp
        self.it = it

    # ---- callbacks
    @cached_property
    def f(self) -> float:
        return self.nlp.f(self.it.x)

    @cached_property
    def grad_f(self) -> np.ndarray:
        return self.nlp.grad_f(self.it.x)

    @cached_property
    def c(self) -> np.ndarray:
        return self.nlp.c(self.it.x)

    @cached_property
    def d(self) -> np.ndarray:
        return self.nlp.d(self.it.x)

    @cached_property
    def jac_c(self) -> sp.csr_matrix:
        return self.nlp.jac_c(self.it.x)

    @cached_property
    def jac_d(self) -> sp.csr_matrix:
        return self.nlp.jac_d(self.it.x)

    def evaluate_derivatives(self) -> None:
        """Gradient and the Jacobians the Lagrangian needs; raises EvaluationError."""
        names = ["grad_f"]
        if self.it.y_c.size:
            names.append("jac_c")
        if self.it.y_d.size:
            names.append("jac_d")
        for name in names:
            getattr(self, name)

    # ---- bound distances (1.0 where the bound is absent)
    @cached_property
    def slack_x_L(self) -> np.ndarray:
        nlp = self.nlp
        return np.where(nlp.has_x_L, self.it.x - np.where(nlp.has_x_L, nlp.x_L, 0.0), 1.0)

    @cached_property
    def slack_x_U(self) -> np.ndarray:
        nlp = self.nlp
        return np.where(nlp.has_x_U, np.where(nlp.has_x_U, nlp.x_U, 0.0) - self.it.x, 1.0)

    @cached_property
    def slack_s_L(self) -> np.ndarray:
        nlp = self.nlp
        return np.where(nlp.has_d_L, self.it.s - np.where(nlp.has_d_L, nlp.d_L, 0.0), 1.0)

    @cached_property
    def slack_s_U(self) -> np.ndarray:
        nlp = self.nlp
        return np.where(nlp.has_d_U, np.where(nlp.has_d_U, nlp.d_U, 0.0) - self.it.s, 1.0)

    # ---- feasibility
    @cached_property
    def d_minus_s(self) -> np.ndarray:
        return self.d - self.it.s

    @cached_property
    def theta(self) -> float:
        return safe_one_norm(self.c) + safe_one_norm(self.d_minus_s)

    @cached_property
    def primal_inf(self) -> float:
        return max(safe_inf_norm(self.c), safe_inf_norm(self.d_minus_s))

    # ---- barrier objective
    def barrier_terms(self, mu: float, kappa_d: float = 0.0) -> float:
        nlp = self.nlp
        val = 0.0
        for mask, dist in ((nlp.has_x_L, self.slack_x_L), (nlp.has_x_U, self.slack_x_U),
                           (nlp.has_d_L, self.slack_s_L), (nlp.has_d_U, self.slack_s_U)):
            if np.any(mask):
                val -= mu * float(np.sum(np.log(dist[mask])))
        if kappa_d > 0.0:
            only_L = nlp.has_x_L & ~nlp.has_x_U
            only_U = nlp.has_x_U & ~nlp.has_x_L
            val += kappa_d * mu * float(np.sum(self.slack_x_L[only_L]) + np.sum(self.slack_x_U[only_U]))
            only_L = nlp.has_d_L & ~nlp.has_d_U
            only_U = nlp.has_d_U & ~nlp.has_d_L
            val += kappa_d * mu * float(np.sum(self.slack_s_L[only_L]) + np.sum(self.slack_s_U[only_U]))
        return val

    def phi(self, mu: float, kappa_d: float = 0.0) -> float:
        if np.any(self.slack_x_L <= 0) or np.any(self.slack_x_U <= 0) \
                or np.any(self.slack_s_L <= 0) or np.any(self.slack_s_U <= 0):
            return np.inf
        return self.f + self.barrier_terms(mu, kappa_d)

    def barrier_grad(self, mu: float, kappa_d: float = 0.0):
        """Gradients of φ_μ with respect to x and s."""
        nlp = self.nlp
        gx = self.grad_f - np.where(nlp.has_x_L, mu / self.slack_x_L, 0.0) \
            + np.where(nlp.has_x_U, mu / self.slack_x_U, 0.0)
        gs = -np.where(nlp.has_d_L, mu / self.slack_s_L, 0.0) + np.where(nlp.has_d_U, mu / self.slack_s_U, 0.0)
        if kappa_d > 0.0:
            gx = gx + kappa_d * mu * ((nlp.has_x_L & ~nlp.has_x_U).astype(float)
                                      - (nlp.has_x_U & ~nlp.has_x_L).astype(float))
            gs = gs + kappa_d * mu * ((nlp.has_d_L & ~nlp.has_d_U).astype(float)
                                      - (nlp.has_d_U & ~nlp.has_d_L).astype(float))
        return gx, gs

    # ---- Lagrangian
    @cached_property
    def grad_lag_x(self) -> np.ndarray:
        it = self.it
        r = self.grad_f - it.z_L + it.z_U
        if it.y_c.size:
            r = r + self.jac_c.T @ it.y_c
        if it.y_d.size:
            r = r + self.jac_d.T @ it.y_d
        return r

    @cached_property
    def grad_lag_s(self) -> np.ndarray:
        it = self.it
        return -it.y_d - it.v_L + it.v_U

    def complementarity(self, mu: float = 0.0) -> np.ndarray:
        nlp, it = self.nlp, self.it
        parts = [
            (self.slack_x_L * it.z_L - mu)[nlp.has_x_L],
            (self.slack_x_U * it.z_U - mu)[nlp.has_x_U],
            (self.slack_s_L * it.v_L - mu)[nlp.has_d_L],
            (self.slack_s_U * it.v_U - mu)[nlp.has_d_U],
        ]
        return np.concatenate(parts)

    @cached_property
    def n_bounds(self) -> int:
        nlp = self.nlp
        return int(np.sum(nlp.has_x_L) + np.sum(nlp.has_x_U) + np.sum(nlp.has_d_L) + np.sum(nlp.has_d_U))

    @cached_property
    def avg_complementarity(self) -> float:
        comp = self.complementarity(0.0)
        return float(np.mean(comp)) if comp.size else 0.0

    @cached_property
    def dual_inf(self) -> float:
        return max(safe_inf_norm(self.grad_lag_x), safe_inf_norm(self.grad_lag_s))

    def scaling_factors(self, s_max: float):
        """(s_d, s_c) of the optimality error."""
        it = self.it
        n_mult = it.y_c.size + it.y_d.size + self.n_bounds
        n_bnd = self.n_bounds
        sum_z = safe_one_norm(it.z_L) + safe_one_norm(it.z_U) + safe_one_norm(it.v_L) + safe_one_norm(it.v_U)
        sum_y = safe_one_norm(it.y_c) + safe_one_norm(it.y_d)
        s_d = max(s_max, (sum_y + sum_z) / n_mult) / s_max if n_mult else 1.0
        s_c = max(s_max, sum_z / n_bnd) / s_max if n_bnd else 1.0
        return s_d, s_c

    def optimality_error(self, mu: float, s_max: float) -> float:
        s_d, s_c = self.scaling_factors(s_max)
        return max(self.dual_inf / s_d, self.primal_inf, safe_inf_norm(self.complementarity(mu)) / s_c)


@dataclass
class IPState:
    """Mutable state of one run of the interior-point loop."""

    curr: Iterate
    mu: float
    tau: float
    iter_count: int = 0
    delta: Optional[Iterate] = None
    trial: Optional[Iterate] = None
    delta_w: float = 0.0
    delta_c: float = 0.0
    alpha_pr: float = 0.0
    alpha_du: float = 0.0
    ls_trials: int = 0
    info_char: str = " "
    tiny_step: bool = False
    d_norm: float = 0.0
    quantities: Optional[IterateQuantities] = field(default=None, repr=False)

    def accept(self, it: Iterate, q: Optional[IterateQuantities] = None):
        self.curr = it
        self.quantities = q
        self.trial = None
