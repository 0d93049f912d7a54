# kernels.py
import numpy as np
from numba import njit


@njit(cache=True)
def k_frac_to_boundary(dist: np.ndarray, ddist: np.ndarray, mask: np.ndarray, tau: float) -> float:
    # largest alpha in (0, 1] with dist + alpha*ddist >= (1 - tau)*dist on masked entries
    a = 1.0
    for i in range(dist.size):
        if mask[i] and ddist[i] < 0.0:
            cand = -tau * dist[i] / ddist[i]
            if cand < a:
                a = cand
    if a < 0.0:
        a = 0.0
    return a


@njit(cache=True)
def k_filter_acceptable(thetas: np.ndarray, phis: np.ndarray, theta: float, phi: float) -> bool:
    # (theta, phi) must improve on every entry in at least one coordinate
    for i in range(thetas.size):
        if theta >= thetas[i] and phi >= phis[i]:
            return False
    return True


@njit(cache=True)
def k_dominated(thetas: np.ndarray, phis: np.ndarray, theta: float, phi: float) -> np.ndarray:
    # entries made redundant by a new entry (theta, phi)
    out = np.zeros(thetas.size, dtype=np.bool_)
    for i in range(thetas.size):
        if thetas[i] >= theta and phis[i] >= phi:
            out[i] = True
    return out
