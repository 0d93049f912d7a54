"""Limited-memory BFGS approximation of the Lagrangian Hessian.

Stores the last k (s, y) pairs and forms the dense approximation through
the compact representation (Byrd, Nocedal, Schnabel 1994):

    B = gamma * I - [gamma*S, Y] @ N^{-1} @ [gamma*S^T; Y^T]

    N = [[gamma * S^T S, L], [L^T, -D]],  L = strict lower part of S^T Y,
    D = diag(s_i^T y_i).

Powell damping keeps every stored pair positive-curvature, so B stays
positive definite and the inertia correction rarely has to step in.
"""

from __future__ import annotations

from collections import deque

import numpy as np
import scipy.sparse as sp


class LBFGSHessian:
    """L-BFGS history with Powell damping.

    Attributes:
        memory: Maximum number of (s, y) pairs kept.
        gamma: Initial Hessian scaling (B_0 = gamma * I).
    """

    def __init__(self, n: int, memory: int = 6, damping_threshold: float = 0.2,
                 skip_threshold: float = 1e-8):
        self.n = int(n)
        self.memory = max(1, int(memory))
        self.damping_threshold = damping_threshold
        self.skip_threshold = skip_threshold
        self.S = deque(maxlen=self.memory)
        self.Y = deque(maxlen=self.memory)
        self.gamma = 1.0

    def reset(self):
        self.S.clear()
        self.Y.clear()
        self.gamma = 1.0

    def matrix(self) -> sp.csr_matrix:
        """Dense approximation B (returned as CSR for KKT assembly)."""
        n, k = self.n, len(self.S)
        if k == 0:
            return sp.csr_matrix(self.gamma * np.eye(n))
        S = np.array(self.S)  # (k, n)
        Y = np.array(self.Y)
        SY = S @ Y.T
        L = np.tril(SY, k=-1)
        D = np.diag(np.diag(SY))
        N = np.block([[self.gamma * (S @ S.T), L], [L.T, -D]])
        W = np.hstack([self.gamma * S.T, Y.T])  # (n, 2k)
        B = self.gamma * np.eye(n) - W @ np.linalg.solve(N, W.T)
        B = 0.5 * (B + B.T)
        if not np.all(np.isfinite(B)):
            self.reset()
            return sp.csr_matrix(np.eye(n))
        return sp.csr_matrix(B)

    def update(self, s: np.ndarray, y: np.ndarray) -> bool:
        """
        Append a new pair with Powell damping:
            y_damped = theta * y + (1 - theta) * B s,
        chosen so that s^T y_damped >= damping_threshold * s^T B s.
        Returns False when the pair is skipped.
        """
        s = np.asarray(s, dtype=float)
        y = np.asarray(y, dtype=float)
        s_norm = np.linalg.norm(s)
        if s_norm < self.skip_threshold or not np.all(np.isfinite(y)):
            return False
        Bs = self.matrix() @ s
        sBs = float(s @ Bs)
        sy = float(s @ y)
        if sBs <= 0.0:
            return False
        if sy < self.damping_threshold * sBs:
            theta = (1.0 - self.damping_threshold) * sBs / (sBs - sy)
            y = theta * y + (1.0 - theta) * Bs
            sy = float(s @ y)
        if sy <= self.skip_threshold * s_norm * np.linalg.norm(y):
            return False
        self.S.append(s.copy())
        self.Y.append(y.copy())
        self.gamma = float(np.clip((y @ y) / sy, 1e-3, 1e3))
        return True
