# callbacks.py
# Per-iteration reporting: the iteration table and the user's intermediate callback.
from __future__ import annotations

import logging
import math
from dataclasses import astuple, dataclass
from typing import Callable, Optional

from .exceptions import UserRequestedStop

_HEADER = ("iter    objective    inf_pr   inf_du lg(mu)  ||d||  lg(rg) "
           "alpha_du alpha_pr  ls")


@dataclass(frozen=True)
class IterationStats:
    """Values handed to the intermediate callback, in call order."""

    alg_mod: int
    iter_count: int
    obj_value: float
    inf_pr: float
    inf_du: float
    mu: float
    d_norm: float
    regularization_size: float
    alpha_du: float
    alpha_pr: float
    ls_trials: int


def _lg(v: float) -> str:
    if v <= 0.0 or not math.isfinite(v):
        return "   - "
    return f"{math.log10(v):5.1f}"


def format_row(stats: IterationStats, info: str = " ") -> str:
    it = f"{stats.iter_count:4d}{'r' if stats.alg_mod == 1 else ' '}"
    return (f"{it}{stats.obj_value:14.7e} {stats.inf_pr:8.2e} {stats.inf_du:8.2e} "
            f"{_lg(stats.mu)} {stats.d_norm:8.2e} {_lg(stats.regularization_size)} "
            f"{stats.alpha_du:8.2e} {stats.alpha_pr:8.2e}{info:1s} {stats.ls_trials:2d}")


class IntermediateDispatcher:
    """
    Logs one table row per iteration and forwards the same values to the
    user's callback. A callback returning a false value (other than None)
    stops the solve.
    """

    def __init__(self, callback: Optional[Callable] = None,
                 logger: Optional[logging.Logger] = None, print_frequency: int = 1):
        self.callback = callback
        self.logger = logger or logging.getLogger("ipsolve")
        self.print_frequency = max(1, int(print_frequency))
        self.rows = 0
        self.last: Optional[IterationStats] = None

    def dispatch(self, stats: IterationStats, info: str = " ") -> None:
        self.last = stats
        if stats.iter_count % self.print_frequency == 0:
            if self.rows % 10 == 0:
                self.logger.info(_HEADER)
            self.logger.info(format_row(stats, info))
            self.rows += 1
        if self.callback is None:
            return
        keep_going = self.callback(*astuple(stats))
        if keep_going is not None and not keep_going:
            raise UserRequestedStop(f"stopped by intermediate callback at iteration {stats.iter_count}")
