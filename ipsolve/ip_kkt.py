# --- ip_kkt.py: augmented primal-dual system, factorization strategies, inertia correction ---
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple

import numpy as np
import scipy.linalg as la
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from .blocks.aux import MACH_EPS, IPConfig, safe_inf_norm
from .blocks.reg import InertiaCorrector, RegInfo
from .exceptions import StepComputationError
from .ip_state import Iterate, IterateQuantities

logger = logging.getLogger(__name__)


# ---------------------- assembly ----------------------
def _assemble(shape: Tuple[int, int], blocks) -> sp.csc_matrix:
    rows, cols, vals = [], [], []
    for r0, c0, B in blocks:
        if B is None:
            continue
        coo = sp.coo_matrix(B)
        if coo.nnz == 0:
            continue
        rows.append(coo.row + r0)
        cols.append(coo.col + c0)
        vals.append(coo.data)
    if not rows:
        return sp.csc_matrix(shape)
    return sp.coo_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))), shape=shape
    ).tocsc()


@dataclass
class KKTSystem:
    """
    Blocks of

        [ W + Σx + δw I      0          Jcᵀ     Jdᵀ  ] [dx ]
        [      0         Σs + δw I       0      -I   ] [ds ]
        [     Jc             0         -δc I     0   ] [dyc]
        [     Jd            -I           0     -δc I ] [dyd]
    """

    W: sp.spmatrix
    sigma_x: np.ndarray
    sigma_s: np.ndarray
    jac_c: sp.spmatrix
    jac_d: sp.spmatrix

    @property
    def n(self) -> int:
        return int(self.sigma_x.size)

    @property
    def m_c(self) -> int:
        return int(self.jac_c.shape[0])

    @property
    def m_d(self) -> int:
        return int(self.sigma_s.size)

    @property
    def dim(self) -> int:
        return self.n + self.m_c + 2 * self.m_d

    @property
    def expected_inertia(self) -> Tuple[int, int, int]:
        return self.n + self.m_d, self.m_c + self.m_d, 0

    def matrix(self, delta_w: float = 0.0, delta_c: float = 0.0) -> sp.csc_matrix:
        n, mc, md = self.n, self.m_c, self.m_d
        o_s, o_c, o_d = n, n + md, n + md + mc
        eye_d = sp.identity(md, format="coo")
        blocks = [
            (0, 0, self.W),
            (0, 0, sp.diags(self.sigma_x + delta_w) if n else None),
            (o_s, o_s, sp.diags(self.sigma_s + delta_w) if md else None),
            (o_c, 0, self.jac_c if mc else None),
            (0, o_c, self.jac_c.T if mc else None),
            (o_d, 0, self.jac_d if md else None),
            (0, o_d, self.jac_d.T if md else None),
            (o_d, o_s, -eye_d if md else None),
            (o_s, o_d, -eye_d if md else None),
            (o_c, o_c, -delta_c * sp.identity(mc) if (mc and delta_c > 0) else None),
            (o_d, o_d, -delta_c * sp.identity(md) if (md and delta_c > 0) else None),
        ]
        return _assemble((self.dim, self.dim), blocks)

    def join(self, rx, rs, rc, rd) -> np.ndarray:
        return np.concatenate([rx, rs, rc, rd])

    def split(self, sol: np.ndarray):
        n, mc, md = self.n, self.m_c, self.m_d
        return sol[:n], sol[n:n + md], sol[n + md:n + md + mc], sol[n + md + mc:]

    def curvature(self, dx: np.ndarray, ds: np.ndarray, delta_w: float) -> float:
        return float(dx @ (self.W @ dx) + dx @ ((self.sigma_x + delta_w) * dx)
                     + ds @ ((self.sigma_s + delta_w) * ds))


# ---------------------- factorizations ----------------------
class KKTFactor(Protocol):
    inertia: Optional[Tuple[int, int, int]]

    def solve(self, rhs: np.ndarray) -> np.ndarray: ...


class _SingularMatrix(Exception):
    pass


def _ruiz_equilibrate(K: np.ndarray, iters: int = 5) -> Tuple[np.ndarray, np.ndarray]:
    """Symmetric Ruiz equilibration (inf-norm): returns (D K D, d). Keeps inertia."""
    d = np.ones(K.shape[0])
    Ks = K
    for _ in range(iters):
        r = np.max(np.abs(Ks), axis=1) if Ks.size else np.zeros(0)
        s = 1.0 / np.sqrt(np.where(r > 0.0, r, 1.0))
        Ks = Ks * s[:, None] * s[None, :]
        d *= s
        if np.all(np.abs(r - 1.0) < 1e-2):
            break
    return Ks, d


class DenseLDLFactor:
    """
    Bunch-Kaufman LDLᵀ (scipy.linalg.ldl) of the equilibrated matrix;
    inertia from the block diagonal (Sylvester's law).
    """

    def __init__(self, K: np.ndarray):
        self.dim = K.shape[0]
        K, self.scale = _ruiz_equilibrate(K)
        lu, d, perm = la.ldl(K, lower=True, hermitian=True)
        self.perm = perm
        self.L = lu[perm]
        diag = np.diag(d).copy()
        off = np.diag(d, -1).copy() if self.dim > 1 else np.zeros(0)
        if not (np.all(np.isfinite(diag)) and np.all(np.isfinite(off))):
            raise _SingularMatrix("non-finite pivots")
        self._ab = np.zeros((3, self.dim))
        self._ab[1] = diag
        if self.dim > 1:
            self._ab[0, 1:] = off
            self._ab[2, :-1] = off
        if self.dim == 1:
            evals = diag
        elif np.any(off != 0.0):
            evals = la.eigvalsh_tridiagonal(diag, off)
        else:
            evals = diag
        scale = max(1.0, float(np.max(np.abs(evals)))) if evals.size else 1.0
        tol = 100.0 * self.dim * MACH_EPS * scale
        zero = int(np.sum(np.abs(evals) <= tol))
        pos = int(np.sum(evals > tol))
        neg = int(np.sum(evals < -tol))
        self.inertia = (pos, neg, zero)

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        b = self.scale * rhs
        y = la.solve_triangular(self.L, b[self.perm], lower=True, unit_diagonal=True)
        z = la.solve_banded((1, 1), self._ab, y)
        w = la.solve_triangular(self.L.T, z, lower=False, unit_diagonal=True)
        x = np.empty_like(w)
        x[self.perm] = w
        return self.scale * x


class SparseLUFactor:
    """SuperLU factorization; no inertia information."""

    inertia = None

    def __init__(self, K: sp.spmatrix):
        try:
            self.lu = spla.splu(sp.csc_matrix(K))
        except RuntimeError as exc:
            raise _SingularMatrix(str(exc)) from None

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        return self.lu.solve(rhs)


# ---------------------- strategies ----------------------
class KKTStrategy:
    name: str
    provides_inertia: bool = False

    def factor(self, K: sp.spmatrix) -> KKTFactor:
        raise NotImplementedError


class LDLStrategy(KKTStrategy):
    name = "ldl"
    provides_inertia = True

    def factor(self, K):
        Kd = K.toarray() if sp.issparse(K) else np.asarray(K)
        if not np.all(np.isfinite(Kd)):
            raise _SingularMatrix("KKT matrix has non-finite entries")
        return DenseLDLFactor(Kd)


class SparseLUStrategy(KKTStrategy):
    name = "sparse-lu"
    provides_inertia = False

    def factor(self, K):
        if not np.all(np.isfinite(K.data)):
            raise _SingularMatrix("KKT matrix has non-finite entries")
        return SparseLUFactor(K)


class KKTSolverRegistry:
    def __init__(self):
        self._map: Dict[str, KKTStrategy] = {}

    def register(self, strategy: KKTStrategy):
        self._map[strategy.name] = strategy

    def get(self, name: str) -> KKTStrategy:
        if name not in self._map:
            raise KeyError(f"Unknown KKT method '{name}'")
        return self._map[name]


DEFAULT_KKT_REGISTRY = KKTSolverRegistry()
DEFAULT_KKT_REGISTRY.register(LDLStrategy())
DEFAULT_KKT_REGISTRY.register(SparseLUStrategy())


# ---------------------- Cache ----------------------
@dataclass
class KKTCache:
    system: Optional[KKTSystem] = None
    K: Optional[sp.spmatrix] = None
    factor: Optional[Any] = None
    K_norm: float = 1.0
    delta_w: float = 0.0
    delta_c: float = 0.0


# ---------------------- solver ----------------------
class KKTSolver:
    """
    Factorizes the augmented system with inertia correction and keeps the
    accepted factorization for further right-hand sides (second-order
    corrections).
    """

    def __init__(self, cfg: IPConfig, registry: KKTSolverRegistry = DEFAULT_KKT_REGISTRY):
        self.cfg = cfg
        self.registry = registry
        self.corrector = InertiaCorrector(cfg)
        self.cache = KKTCache()
        self.n_factorizations = 0

    def strategy_for(self, dim: int) -> KKTStrategy:
        name = self.cfg.linear_solver
        if name == "auto":
            name = "ldl" if dim <= self.cfg.dense_kkt_max_dim else "sparse-lu"
        return self.registry.get(name)

    def _factor(self, strategy: KKTStrategy, K):
        self.n_factorizations += 1
        return strategy.factor(K)

    def factor_and_solve(self, system: KKTSystem, rhs: np.ndarray, mu: float) -> Tuple[np.ndarray, RegInfo]:
        """
        Solve ``K(δw, δc) sol = rhs`` with the smallest perturbation of the
        schedule giving the right inertia. Raises StepComputationError.
        """
        strategy = self.strategy_for(system.dim)
        corr = self.corrector
        delta_w, delta_c = corr.start(mu)
        expected = system.expected_inertia

        while True:
            K = system.matrix(delta_w, delta_c)
            singular = False
            factor = None
            try:
                factor = self._factor(strategy, K)
            except (_SingularMatrix, la.LinAlgError, ValueError) as exc:
                logger.debug(f"[KKT] factorization failed: {exc}")
                singular = True

            ok = False
            sol = None
            if factor is not None:
                if factor.inertia is not None:
                    pos, neg, zero = factor.inertia
                    singular = zero > 0
                    ok = factor.inertia == expected
                else:
                    try:
                        sol = factor.solve(rhs)
                    except (RuntimeError, la.LinAlgError) as exc:
                        logger.debug(f"[KKT] solve failed: {exc}")
                        singular = True
                    if sol is not None and np.all(np.isfinite(sol)):
                        dx, ds, _, _ = system.split(sol)
                        curv = system.curvature(dx, ds, delta_w)
                        nrm2 = float(dx @ dx + ds @ ds)
                        ok = nrm2 == 0.0 or (curv > 0.0 and curv >= self.cfg.neg_curv_test_tol * nrm2)
                    else:
                        singular = True

            if ok:
                self.cache = KKTCache(system, K, factor, _inf_norm_matrix(K), delta_w, delta_c)
                if sol is None:
                    sol = self._solve_refined(factor, K, rhs)
                else:
                    sol = self._refine(factor, K, rhs, sol)
                if not np.all(np.isfinite(sol)):
                    raise StepComputationError("KKT solution contains non-finite entries")
                corr.success(factor.inertia)
                return sol, corr.info

            logger.debug(f"[KKT] wrong inertia {getattr(factor, 'inertia', None)} "
                         f"(expected {expected}), singular={singular}")
            delta_w, delta_c = corr.next(singular)

    def resolve(self, rhs: np.ndarray) -> np.ndarray:
        """Solve with the factorization accepted by the last factor_and_solve."""
        c = self.cache
        if c.factor is None:
            raise StepComputationError("no factorization available")
        sol = self._solve_refined(c.factor, c.K, rhs)
        if not np.all(np.isfinite(sol)):
            raise StepComputationError("KKT solution contains non-finite entries")
        return sol

    # ---------- iterative refinement ----------
    def _solve_refined(self, factor, K, rhs):
        return self._refine(factor, K, rhs, factor.solve(rhs))

    def _refine(self, factor, K, rhs, sol):
        cfg = self.cfg
        K_norm = _inf_norm_matrix(K)
        rhs_norm = safe_inf_norm(rhs)
        for it in range(cfg.max_refinement_steps):
            res = rhs - K @ sol
            ratio = safe_inf_norm(res) / max(1.0, K_norm * safe_inf_norm(sol) + rhs_norm)
            if it >= cfg.min_refinement_steps and ratio <= cfg.residual_ratio_max:
                break
            if ratio == 0.0:
                break
            sol = sol + factor.solve(res)
        return sol

    # ---------- least-squares multipliers ----------
    def least_squares_multipliers(self, q: IterateQuantities) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """
        y minimizing ‖∇f + Jcᵀy_c + Jdᵀy_d - z_L + z_U‖² + ‖-y_d - v_L + v_U‖².
        None when the constraint Jacobian is rank deficient.
        """
        it = q.it
        n, m_c, m_d = it.x.size, it.y_c.size, it.y_d.size
        if m_c + m_d == 0:
            return np.zeros(0), np.zeros(0)
        system = KKTSystem(sp.csr_matrix((n, n)), np.ones(n), np.ones(m_d), q.jac_c, q.jac_d)
        rhs = system.join(-(q.grad_f - it.z_L + it.z_U), -(-it.v_L + it.v_U), np.zeros(m_c), np.zeros(m_d))
        strategy = self.strategy_for(system.dim)
        K = system.matrix()
        try:
            factor = self._factor(strategy, K)
            if factor.inertia is not None and factor.inertia != system.expected_inertia:
                return None
            sol = self._solve_refined(factor, K, rhs)
        except (_SingularMatrix, la.LinAlgError, RuntimeError, ValueError):
            return None
        if not np.all(np.isfinite(sol)):
            return None
        _, _, y_c, y_d = system.split(sol)
        return y_c, y_d


def least_squares_duals(q: IterateQuantities) -> Optional[Tuple[np.ndarray, ...]]:
    """
    Minimum-norm solution, over all multipliers, of

        ∇f + Jcᵀy_c + Jdᵀy_d - z_L + z_U = 0,    -y_d - v_L + v_U = 0,

    with bound multipliers only where the bound exists. Returns
    (y_c, y_d, z_L, z_U, v_L, v_U), or None if LSQR stops on conditioning
    or the iteration limit.
    """
    nlp, it = q.nlp, q.it
    n, m_c, m_d = it.x.size, it.y_c.size, it.y_d.size
    masks = (nlp.has_x_L, nlp.has_x_U, nlp.has_d_L, nlp.has_d_U)
    idx = [np.flatnonzero(mk) for mk in masks]
    widths = [m_c, m_d] + [ix.size for ix in idx]
    offs = np.concatenate([[0], np.cumsum(widths)])
    if offs[-1] == 0:
        return None

    def select(size, ix, sign):
        return sp.coo_matrix((np.full(ix.size, sign), (ix, np.arange(ix.size))), shape=(size, ix.size))

    A = _assemble((n + m_d, int(offs[-1])), [
        (0, offs[0], q.jac_c.T if m_c else None),
        (0, offs[1], q.jac_d.T if m_d else None),
        (n, offs[1], -sp.identity(m_d) if m_d else None),
        (0, offs[2], select(n, idx[0], -1.0)),
        (0, offs[3], select(n, idx[1], 1.0)),
        (n, offs[4], select(m_d, idx[2], -1.0)),
        (n, offs[5], select(m_d, idx[3], 1.0)),
    ])
    b = np.concatenate([-q.grad_f, np.zeros(m_d)])
    sol, istop = spla.lsqr(A, b, atol=1e-12, btol=1e-12)[:2]
    if istop in (3, 6, 7) or not np.all(np.isfinite(sol)):
        logger.debug(f"[Init] least-squares duals failed (istop={istop})")
        return None
    parts = [sol[offs[k]:offs[k + 1]] for k in range(6)]
    out = parts[:2]
    for (size, ix), vals in zip(((n, idx[0]), (n, idx[1]), (m_d, idx[2]), (m_d, idx[3])), parts[2:]):
        full = np.zeros(size)
        full[ix] = vals
        out.append(full)
    return tuple(out)


def _inf_norm_matrix(K) -> float:
    if K is None or K.shape[0] == 0:
        return 0.0
    return float(abs(K).sum(axis=1).max())


# ---------------------- barrier Newton step ----------------------
def sigma_blocks(q: IterateQuantities) -> Tuple[np.ndarray, np.ndarray]:
    nlp, it = q.nlp, q.it
    sx = np.where(nlp.has_x_L, it.z_L / q.slack_x_L, 0.0) + np.where(nlp.has_x_U, it.z_U / q.slack_x_U, 0.0)
    ss = np.where(nlp.has_d_L, it.v_L / q.slack_s_L, 0.0) + np.where(nlp.has_d_U, it.v_U / q.slack_s_U, 0.0)
    return sx, ss


def barrier_rhs(q: IterateQuantities, mu: float, kappa_d: float):
    """Right-hand side blocks (r_x, r_s, r_c, r_d) of the reduced Newton system."""
    it = q.it
    gx, gs = q.barrier_grad(mu, kappa_d)
    rx = gx.copy()
    if it.y_c.size:
        rx = rx + q.jac_c.T @ it.y_c
    if it.y_d.size:
        rx = rx + q.jac_d.T @ it.y_d
    rs = gs - it.y_d
    return -rx, -rs, -q.c, -q.d_minus_s


def recover_bound_steps(q: IterateQuantities, mu: float, dx: np.ndarray, ds: np.ndarray):
    """dz_L, dz_U, dv_L, dv_U from the linearized complementarity equations."""
    nlp, it = q.nlp, q.it
    dz_L = np.where(nlp.has_x_L, (mu - it.z_L * dx) / q.slack_x_L - it.z_L, 0.0)
    dz_U = np.where(nlp.has_x_U, (mu + it.z_U * dx) / q.slack_x_U - it.z_U, 0.0)
    dv_L = np.where(nlp.has_d_L, (mu - it.v_L * ds) / q.slack_s_L - it.v_L, 0.0)
    dv_U = np.where(nlp.has_d_U, (mu + it.v_U * ds) / q.slack_s_U - it.v_U, 0.0)
    return dz_L, dz_U, dv_L, dv_U


def build_system(q: IterateQuantities, W: sp.spmatrix) -> KKTSystem:
    sx, ss = sigma_blocks(q)
    return KKTSystem(W, sx, ss, q.jac_c, q.jac_d)


def solve_newton_step(solver: KKTSolver, q: IterateQuantities, W: sp.spmatrix, mu: float,
                      kappa_d: float) -> Tuple[Iterate, RegInfo, KKTSystem]:
    system = build_system(q, W)
    rhs = system.join(*barrier_rhs(q, mu, kappa_d))
    sol, info = solver.factor_and_solve(system, rhs, mu)
    dx, ds, dyc, dyd = system.split(sol)
    dz_L, dz_U, dv_L, dv_U = recover_bound_steps(q, mu, dx, ds)
    return Iterate(dx, ds, dyc, dyd, dz_L, dz_U, dv_L, dv_U), info, system
