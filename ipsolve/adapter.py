# adapter.py
# User problem -> internal NLP view (free variables, scaled, c(x)=0 / d_L<=d(x)<=d_U).

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from .blocks.aux import IPConfig, _csr, safe_inf_norm
from .evaluator import has_hessian
from .exceptions import EvaluationError, InvalidProblemDefinition, NotEnoughDegreesOfFreedom

logger = logging.getLogger(__name__)

_BOUND_TOL = 1e-12
_FIXED_RELAX_MIN = 1e-8


# ------------------ problem data ------------------
@dataclass(frozen=True)
class ProblemDefinition:
    """
    Validated, zero-based copy of the raw problem data. Read-only for the
    lifetime of the handle that owns it.
    """

    n: int
    m: int
    x_L: np.ndarray
    x_U: np.ndarray
    g_L: np.ndarray
    g_U: np.ndarray
    jac_rows: np.ndarray
    jac_cols: np.ndarray
    hess_rows: np.ndarray
    hess_cols: np.ndarray
    index_style: int

    @property
    def nele_jac(self) -> int:
        return int(self.jac_rows.size)

    @property
    def nele_hess(self) -> int:
        return int(self.hess_rows.size)

    @classmethod
    def build(cls, n, x_L, x_U, m, g_L, g_U, jac_structure=None, hess_structure=None,
              index_style: int = 0) -> "ProblemDefinition":
        try:
            n = int(n)
            m = int(m)
        except (TypeError, ValueError) as exc:
            raise InvalidProblemDefinition(f"n and m must be integers: {exc}") from None
        if n < 0:
            raise InvalidProblemDefinition(f"number of variables must be non-negative, got n={n}")
        if m < 0:
            raise InvalidProblemDefinition(f"number of constraints must be non-negative, got m={m}")
        if index_style not in (0, 1):
            raise InvalidProblemDefinition(f"index_style must be 0 (C) or 1 (Fortran), got {index_style!r}")

        x_L = _bounds_vector(x_L, n, -np.inf, "x_L")
        x_U = _bounds_vector(x_U, n, np.inf, "x_U")
        g_L = _bounds_vector(g_L, m, -np.inf, "g_L")
        g_U = _bounds_vector(g_U, m, np.inf, "g_U")
        x_L, x_U = _check_order(x_L, x_U, "variable")
        g_L, g_U = _check_order(g_L, g_U, "constraint")

        jr, jc = _structure(jac_structure, m, n, index_style, "Jacobian")
        hr, hc = _structure(hess_structure, n, n, index_style, "Hessian")
        for a in (x_L, x_U, g_L, g_U, jr, jc, hr, hc):
            a.setflags(write=False)
        return cls(n, m, x_L, x_U, g_L, g_U, jr, jc, hr, hc, int(index_style))


def _bounds_vector(v, size: int, default: float, name: str) -> np.ndarray:
    if v is None:
        return np.full(size, default, dtype=float)
    a = np.array(v, dtype=float).ravel()
    if a.size != size:
        raise InvalidProblemDefinition(f"{name} has length {a.size}, expected {size}")
    if np.any(np.isnan(a)):
        raise InvalidProblemDefinition(f"{name} contains NaN")
    return a


def _check_order(lo: np.ndarray, hi: np.ndarray, what: str) -> Tuple[np.ndarray, np.ndarray]:
    gap = lo - hi
    scale = np.maximum(1.0, np.maximum(np.abs(np.where(np.isfinite(lo), lo, 0.0)),
                                       np.abs(np.where(np.isfinite(hi), hi, 0.0))))
    with np.errstate(invalid="ignore"):
        bad = gap > _BOUND_TOL * scale
    if np.any(bad):
        i = int(np.flatnonzero(bad)[0])
        raise InvalidProblemDefinition(
            f"inconsistent {what} bounds at index {i}: lower {lo[i]} > upper {hi[i]}")
    # lower above upper within tolerance: treat as an equality / fixed value
    close = gap > 0
    if np.any(close):
        mid = 0.5 * (lo + hi)
        lo = np.where(close, mid, lo)
        hi = np.where(close, mid, hi)
    return lo, hi


def _structure(struct, nrows: int, ncols: int, index_style: int, name: str):
    if struct is None:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
    try:
        rows, cols = struct
    except (TypeError, ValueError):
        raise InvalidProblemDefinition(f"{name} structure must be a (rows, cols) pair") from None
    rows = np.asarray(rows).ravel()
    cols = np.asarray(cols).ravel()
    if rows.size != cols.size:
        raise InvalidProblemDefinition(
            f"{name} structure has {rows.size} row and {cols.size} column indices")
    if rows.size and not (np.issubdtype(rows.dtype, np.integer) and np.issubdtype(cols.dtype, np.integer)):
        raise InvalidProblemDefinition(f"{name} structure indices must be integers")
    rows = rows.astype(np.int64) - index_style
    cols = cols.astype(np.int64) - index_style
    if rows.size and (rows.min() < 0 or rows.max() >= nrows or cols.min() < 0 or cols.max() >= ncols):
        raise InvalidProblemDefinition(f"{name} structure has indices out of range")
    return rows, cols


# ------------------ evaluation cache ------------------
class _EvalCache:
    """Small LRU of raw callback results (or failures) keyed by point."""

    def __init__(self, size: int = 4):
        self.size = size
        self._d: "OrderedDict[tuple, object]" = OrderedDict()

    def get(self, key):
        if key in self._d:
            self._d.move_to_end(key)
            return True, self._d[key]
        return False, None

    def put(self, key, value):
        self._d[key] = value
        self._d.move_to_end(key)
        while len(self._d) > self.size:
            self._d.popitem(last=False)

    def clear(self):
        self._d.clear()


_RECOVERABLE = (EvaluationError, ArithmeticError, ValueError)


# ------------------ internal NLP ------------------
class OrigNLP:
    """
    Internal view of the user problem.

    Variables are the free user variables multiplied by ``dx``; the user
    constraints split into equalities ``c(x) = dg_c (g_eq(x) - g_L)`` and
    inequalities ``d(x) = dg_d g_ineq(x)`` with (relaxed, scaled) bounds;
    the objective is ``df f(x)``. Infinite bounds are ±inf with boolean
    masks ``has_x_L`` etc.

    Every user callback is invoked at most once per distinct point and
    derivative kind; failures are cached too and re-raised as
    EvaluationError.
    """

    def __init__(self, pdef: ProblemDefinition, evaluator, cfg: IPConfig,
                 user_scaling: Optional[Tuple[float, Optional[np.ndarray], Optional[np.ndarray]]] = None):
        self.pdef = pdef
        self.ev = evaluator
        self.cfg = cfg
        self.user_scaling = user_scaling
        self.stats: Dict[str, int] = dict(f=0, grad_f=0, g=0, jac_g=0, h=0, failures=0)
        self._cache = _EvalCache()
        self._last_x_key = None
        self._last_lam_key = None

        n, m = pdef.n, pdef.m
        lo_inf, up_inf = cfg.nlp_lower_bound_inf, cfg.nlp_upper_bound_inf
        xl = np.where(pdef.x_L <= lo_inf, -np.inf, pdef.x_L)
        xu = np.where(pdef.x_U >= up_inf, np.inf, pdef.x_U)
        gl = np.where(pdef.g_L <= lo_inf, -np.inf, pdef.g_L)
        gu = np.where(pdef.g_U >= up_inf, np.inf, pdef.g_U)
        self.orig_x_L, self.orig_x_U = xl, xu
        self.orig_g_L, self.orig_g_U = gl, gu

        # ---- fixed variables
        fixed = np.isfinite(xl) & np.isfinite(xu) & (xl == xu)
        if cfg.fixed_variable_treatment == "make_parameter":
            self.fixed = fixed
        else:
            self.fixed = np.zeros(n, dtype=bool)
        self.free = ~self.fixed
        self.free_idx = np.flatnonzero(self.free)
        self.fixed_idx = np.flatnonzero(self.fixed)
        self.n = int(self.free_idx.size)
        self._x_template = np.where(self.fixed, xl, 0.0)

        # ---- constraint split
        self.eq = np.isfinite(gl) & np.isfinite(gu) & (gl == gu)
        self.eq_idx = np.flatnonzero(self.eq)
        self.ineq_idx = np.flatnonzero(~self.eq)
        self.m_c = int(self.eq_idx.size)
        self.m_d = int(self.ineq_idx.size)
        if self.m_c > self.n:
            raise NotEnoughDegreesOfFreedom(
                f"{self.m_c} equality constraints but only {self.n} free variables")

        # ---- Jacobian structure restricted to free columns
        col_map = -np.ones(n, dtype=np.int64)
        col_map[self.free_idx] = np.arange(self.n)
        jmask = self.free[pdef.jac_cols] if pdef.nele_jac else np.zeros(0, dtype=bool)
        self._jmask = jmask
        self._j_rows = pdef.jac_rows[jmask]
        self._j_cols = col_map[pdef.jac_cols[jmask]]

        # ---- Hessian structure: free block, folded into the lower triangle
        if pdef.nele_hess:
            hmask = self.free[pdef.hess_rows] & self.free[pdef.hess_cols]
        else:
            hmask = np.zeros(0, dtype=bool)
        self._hmask = hmask
        hr = col_map[pdef.hess_rows[hmask]]
        hc = col_map[pdef.hess_cols[hmask]]
        self._h_rows = np.maximum(hr, hc)
        self._h_cols = np.minimum(hr, hc)
        self.has_exact_hessian = has_hessian(evaluator)

        # ---- scaling (identity until determine_scaling)
        self.df = 1.0
        self.x_scale = np.ones(n)
        self.dx = np.ones(self.n)
        self.dg = np.ones(m)
        self._set_bounds()

    # ------------------------------------------------------------------ #
    # Bounds & scaling
    # ------------------------------------------------------------------ #

    def _relax(self, lo, hi, factor):
        factor = np.broadcast_to(factor, lo.shape)
        lo, hi = lo.copy(), hi.copy()
        fin = np.isfinite(lo)
        lo[fin] -= factor[fin] * np.maximum(1.0, np.abs(lo[fin]))
        fin = np.isfinite(hi)
        hi[fin] += factor[fin] * np.maximum(1.0, np.abs(hi[fin]))
        return lo, hi

    def _set_bounds(self):
        cfg = self.cfg
        fac = cfg.bound_relax_factor
        xl, xu = self.orig_x_L[self.free], self.orig_x_U[self.free]
        if cfg.fixed_variable_treatment == "relax_bounds":
            fx = (xl == xu) & np.isfinite(xl)
            fac_v = np.where(fx, max(fac, _FIXED_RELAX_MIN), fac)
        else:
            fac_v = fac
        xl, xu = self._relax(xl, xu, fac_v)
        dl = self.orig_g_L[self.ineq_idx]
        du = self.orig_g_U[self.ineq_idx]
        dl, du = self._relax(dl, du, fac)

        self.x_L = xl * self.dx
        self.x_U = xu * self.dx
        dg_d = self.dg[self.ineq_idx]
        self.d_L = dl * dg_d
        self.d_U = du * dg_d
        self.has_x_L = np.isfinite(self.x_L)
        self.has_x_U = np.isfinite(self.x_U)
        self.has_d_L = np.isfinite(self.d_L)
        self.has_d_U = np.isfinite(self.d_U)

    def determine_scaling(self, x0_user: np.ndarray) -> None:
        """Fix df, dx, dg before the first iteration."""
        cfg = self.cfg
        method = cfg.nlp_scaling_method
        m = self.pdef.m
        self.df, self.x_scale, self.dg = 1.0, np.ones(self.pdef.n), np.ones(m)
        if method == "user-scaling" and self.user_scaling is not None:
            obj_s, x_s, g_s = self.user_scaling
            self.df = float(obj_s)
            if x_s is not None:
                self.x_scale = np.asarray(x_s, dtype=float).copy()
            if g_s is not None:
                self.dg = np.asarray(g_s, dtype=float).copy()
        self.dx = self.x_scale[self.free_idx]
        self._cache.clear()
        self._set_bounds()

        if method == "gradient-based":
            x0 = self.to_internal_x(x0_user)
            gmax, gmin = cfg.nlp_scaling_max_gradient, cfg.nlp_scaling_min_value
            grad = self._raw("grad_f", x0)[self.free_idx]
            gnorm = float(np.max(np.abs(grad))) if grad.size else 0.0
            if gnorm > gmax:
                self.df = max(gmin, gmax / gnorm)
            if m:
                J = self._raw_jac_free(x0)
                row_max = np.zeros(m)
                if J.nnz:
                    row_max = np.asarray(abs(J).max(axis=1).todense()).ravel()
                self.dg = np.where(row_max > gmax, np.maximum(gmin, gmax / np.maximum(row_max, 1e-300)), 1.0)
        self.df *= float(cfg.obj_scaling_factor)
        self._set_bounds()
        logger.debug(f"[Scaling] method={method} df={self.df:.3e} "
                     f"min dg={self.dg.min() if m else 1.0:.3e}")

    # ------------------------------------------------------------------ #
    # Layout maps
    # ------------------------------------------------------------------ #

    def to_user_x(self, x: np.ndarray) -> np.ndarray:
        full = self._x_template.copy()
        full[self.free_idx] = x / self.dx
        return full

    def to_internal_x(self, x_user: np.ndarray) -> np.ndarray:
        return np.asarray(x_user, dtype=float)[self.free_idx] * self.dx

    def split_g(self, g_user: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        c = self.dg[self.eq_idx] * (g_user[self.eq_idx] - self.orig_g_L[self.eq_idx])
        d = self.dg[self.ineq_idx] * g_user[self.ineq_idx]
        return c, d

    def join_lambda(self, y_c, y_d, scaled: bool = False) -> np.ndarray:
        lam = np.zeros(self.pdef.m)
        lam[self.eq_idx] = y_c
        lam[self.ineq_idx] = y_d
        if scaled:
            return lam
        return lam * self.dg / self.df

    def split_lambda(self, lam_user) -> Tuple[np.ndarray, np.ndarray]:
        lam = np.asarray(lam_user, dtype=float) * self.df / self.dg
        return lam[self.eq_idx], lam[self.ineq_idx]

    def z_to_internal(self, z_user) -> np.ndarray:
        return np.asarray(z_user, dtype=float)[self.free_idx] * self.df / self.dx

    # ------------------------------------------------------------------ #
    # Raw callbacks (cached)
    # ------------------------------------------------------------------ #

    def _new_x_flag(self, key) -> bool:
        new = key != self._last_x_key
        self._last_x_key = key
        return new

    def _invoke(self, kind: str, fn, x_user, key, *args):
        self.stats[kind] += 1
        new_x = self._new_x_flag(key)
        try:
            val = fn(x_user, new_x, *args)
        except _RECOVERABLE as exc:
            self.stats["failures"] += 1
            raise EvaluationError(f"{kind}: {exc}") from exc
        if val is None or val is False:
            self.stats["failures"] += 1
            raise EvaluationError(f"{kind} callback reported failure")
        return val

    def _raw(self, kind: str, x: np.ndarray):
        key = (kind, x.tobytes())
        hit, val = self._cache.get(key)
        if hit:
            if isinstance(val, EvaluationError):
                raise val
            return val
        x_user = self.to_user_x(x)
        x_user.setflags(write=False)
        xkey = x.tobytes()
        try:
            if kind == "f":
                out = self._invoke("f", self.ev.objective, x_user, xkey)
                out = float(np.asarray(out, dtype=float).reshape(()))
                if not np.isfinite(out):
                    raise EvaluationError("objective is not finite")
            elif kind == "grad_f":
                out = np.asarray(self._invoke("grad_f", self.ev.gradient, x_user, xkey), dtype=float).ravel()
                if out.size != self.pdef.n:
                    raise EvaluationError(f"gradient has length {out.size}, expected {self.pdef.n}")
                self._check_finite(out, "gradient", derivative=True)
            elif kind == "g":
                if self.pdef.m == 0:
                    out = np.zeros(0)
                else:
                    out = np.asarray(self._invoke("g", self.ev.constraints, x_user, xkey), dtype=float).ravel()
                if out.size != self.pdef.m:
                    raise EvaluationError(f"constraints have length {out.size}, expected {self.pdef.m}")
                if not np.all(np.isfinite(out)):
                    raise EvaluationError("constraint values are not finite")
            elif kind == "jac_g":
                if self.pdef.nele_jac == 0:
                    out = np.zeros(0)
                else:
                    out = np.asarray(self._invoke("jac_g", self.ev.jacobian, x_user, xkey), dtype=float).ravel()
                if out.size != self.pdef.nele_jac:
                    raise EvaluationError(f"Jacobian has {out.size} values, expected {self.pdef.nele_jac}")
                self._check_finite(out, "Jacobian", derivative=True)
            else:
                raise KeyError(kind)
        except EvaluationError as exc:
            self._cache.put(key, exc)
            logger.debug(f"[Eval] {exc}")
            raise
        self._cache.put(key, out)
        return out

    def _check_finite(self, v, what: str, derivative: bool):
        if derivative and not self.cfg.check_derivatives_for_naninf:
            return
        if not np.all(np.isfinite(v)):
            raise EvaluationError(f"{what} contains non-finite entries")

    def _raw_jac_free(self, x: np.ndarray) -> sp.csr_matrix:
        vals = self._raw("jac_g", x)
        m = self.pdef.m
        if vals.size == 0:
            return sp.csr_matrix((m, self.n))
        return sp.coo_matrix((vals[self._jmask], (self._j_rows, self._j_cols)),
                             shape=(m, self.n)).tocsr()

    def raw_jac_full(self, x: np.ndarray) -> sp.csr_matrix:
        vals = self._raw("jac_g", x)
        p = self.pdef
        if vals.size == 0:
            return sp.csr_matrix((p.m, p.n))
        return sp.coo_matrix((vals, (p.jac_rows, p.jac_cols)), shape=(p.m, p.n)).tocsr()

    # ------------------------------------------------------------------ #
    # Internal (scaled) evaluations
    # ------------------------------------------------------------------ #

    def f(self, x):
        return self.df * self._raw("f", x)

    def grad_f(self, x):
        return self.df * self._raw("grad_f", x)[self.free_idx] / self.dx

    def c(self, x):
        return self.split_g(self._raw("g", x))[0]

    def d(self, x):
        return self.split_g(self._raw("g", x))[1]

    def _jac_scaled(self, x):
        J = self._raw_jac_free(x)
        if self.pdef.m == 0:
            return J
        return _csr(sp.diags(self.dg) @ J @ sp.diags(1.0 / self.dx))

    def jac_c(self, x):
        return self._jac_scaled(x)[self.eq_idx, :]

    def jac_d(self, x):
        return self._jac_scaled(x)[self.ineq_idx, :]

    def hess(self, x, obj_factor: float, y_c, y_d) -> sp.csr_matrix:
        """Scaled Hessian of the Lagrangian (full symmetric)."""
        if not self.has_exact_hessian:
            raise EvaluationError("no Hessian callback available")
        lam = self.join_lambda(y_c, y_d, scaled=True) * self.dg
        sigma = float(obj_factor) * self.df
        key = ("h", x.tobytes(), sigma, lam.tobytes())
        hit, val = self._cache.get(key)
        if hit:
            if isinstance(val, EvaluationError):
                raise val
            return val
        lam_key = (sigma, lam.tobytes())
        new_lam = lam_key != self._last_lam_key
        self._last_lam_key = lam_key
        x_user = self.to_user_x(x)
        x_user.setflags(write=False)
        try:
            if self.pdef.nele_hess == 0:
                vals = np.zeros(0)
            else:
                vals = np.asarray(self._invoke("h", self.ev.hessian, x_user, x.tobytes(),
                                               sigma, lam, new_lam), dtype=float).ravel()
            if vals.size != self.pdef.nele_hess:
                raise EvaluationError(f"Hessian has {vals.size} values, expected {self.pdef.nele_hess}")
            self._check_finite(vals, "Hessian", derivative=True)
        except EvaluationError as exc:
            self._cache.put(key, exc)
            raise
        v = vals[self._hmask] / (self.dx[self._h_rows] * self.dx[self._h_cols])
        L = sp.coo_matrix((v, (self._h_rows, self._h_cols)), shape=(self.n, self.n)).tocsr()
        H = _csr(L + L.T - sp.diags(L.diagonal()))
        self._cache.put(key, H)
        return H

    # ------------------------------------------------------------------ #
    # Views in the user's layout
    # ------------------------------------------------------------------ #

    def user_iterate(self, x, y_c, y_d, z_L, z_U, scaled: bool = False):
        """
        (x, z_L, z_U, g, lambda) in user layout. Bound multipliers of fixed
        variables are recovered from stationarity.
        """
        x_user = self.to_user_x(x)
        g = self._raw("g", x)
        lam = self.join_lambda(y_c, y_d)
        zl = np.zeros(self.pdef.n)
        zu = np.zeros(self.pdef.n)
        zl[self.free_idx] = z_L * self.dx / self.df
        zu[self.free_idx] = z_U * self.dx / self.df
        if self.fixed_idx.size:
            r = self._raw("grad_f", x)
            if self.pdef.m:
                r = r + self.raw_jac_full(x).T @ lam
            zl[self.fixed_idx] = np.maximum(0.0, r[self.fixed_idx])
            zu[self.fixed_idx] = np.maximum(0.0, -r[self.fixed_idx])
        if scaled:
            return (x_user * self.x_scale, zl * self.df / self.x_scale, zu * self.df / self.x_scale,
                    g * self.dg, lam * self.df / self.dg)
        return x_user, zl, zu, g, lam

    def user_violations(self, x, y_c, y_d, z_L, z_U, scaled: bool = False) -> Dict[str, np.ndarray]:
        x_user, zl, zu, g, lam = self.user_iterate(x, y_c, y_d, z_L, z_U)
        xl, xu, gl, gu = self.orig_x_L, self.orig_x_U, self.orig_g_L, self.orig_g_U
        hl, hu = np.isfinite(xl), np.isfinite(xu)
        x_L_viol = np.where(hl, np.maximum(0.0, np.where(hl, xl, 0.0) - x_user), 0.0)
        x_U_viol = np.where(hu, np.maximum(0.0, x_user - np.where(hu, xu, 0.0)), 0.0)
        compl_x_L = np.where(hl, (x_user - np.where(hl, xl, 0.0)) * zl, 0.0)
        compl_x_U = np.where(hu, (np.where(hu, xu, 0.0) - x_user) * zu, 0.0)
        grad_lag = self._raw("grad_f", x).copy()
        if self.pdef.m:
            grad_lag = grad_lag + self.raw_jac_full(x).T @ lam
        grad_lag = grad_lag - zl + zu
        gfl, gfu = np.isfinite(gl), np.isfinite(gu)
        g_viol = np.maximum(0.0, np.maximum(np.where(gfl, gl - g, 0.0), np.where(gfu, g - gu, 0.0)))
        compl_g = (np.where(gfu, (np.where(gfu, gu, 0.0) - g) * np.maximum(lam, 0.0), 0.0)
                   + np.where(gfl, (g - np.where(gfl, gl, 0.0)) * np.maximum(-lam, 0.0), 0.0))
        compl_g = np.where(self.eq, 0.0, compl_g)
        out = dict(x_L_violation=x_L_viol, x_U_violation=x_U_viol, compl_x_L=compl_x_L,
                   compl_x_U=compl_x_U, grad_lag_x=grad_lag, nlp_constraint_violation=g_viol,
                   compl_g=compl_g)
        if scaled:
            out["x_L_violation"] = x_L_viol * self.x_scale
            out["x_U_violation"] = x_U_viol * self.x_scale
            out["compl_x_L"] = compl_x_L * self.df
            out["compl_x_U"] = compl_x_U * self.df
            out["grad_lag_x"] = grad_lag * self.df / self.x_scale
            out["nlp_constraint_violation"] = g_viol * self.dg
            out["compl_g"] = compl_g * self.df
        return out

    def unscaled_measures(self, q) -> Tuple[float, float, float]:
        """
        (dual infeasibility, constraint violation, complementarity) of an
        iterate in the user's units. The violation is measured against the
        original, unrelaxed constraint bounds.
        """
        dg_c = self.dg[self.eq_idx]
        dg_d = self.dg[self.ineq_idx]
        dual = max(safe_inf_norm(q.grad_lag_x * self.dx / self.df), safe_inf_norm(q.grad_lag_s * dg_d / self.df))
        viol = safe_inf_norm(q.c / dg_c)
        if self.m_d:
            g_d = q.d / dg_d
            lo, hi = self.orig_g_L[self.ineq_idx], self.orig_g_U[self.ineq_idx]
            with np.errstate(invalid="ignore"):
                bad = np.maximum(np.where(np.isfinite(lo), lo - g_d, 0.0),
                                 np.where(np.isfinite(hi), g_d - hi, 0.0))
            viol = max(viol, safe_inf_norm(np.maximum(bad, 0.0)))
        compl = safe_inf_norm(q.complementarity(0.0)) / self.df
        return dual, viol, compl

    def unscaled_obj(self, f_scaled: float) -> float:
        return f_scaled / self.df
