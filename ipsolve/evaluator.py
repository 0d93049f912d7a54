# evaluator.py
# The capability set the solver core consumes from the user problem.

from __future__ import annotations

from typing import Callable, Optional, Protocol, runtime_checkable

import numpy as np


@runtime_checkable
class NLPEvaluator(Protocol):
    """
    Callbacks of a user problem.

    Every method receives the point ``x`` (full user length) and ``new_x``,
    which is True when ``x`` differs from the point passed to the previous
    call of *any* of the methods. A method reports failure by returning
    ``None`` or ``False`` or by raising ``EvaluationError``.

    ``jacobian`` and ``hessian`` return the nonzero values in the order of
    the sparsity structure declared when the problem was created. The
    Hessian covers one triangle of
    ``obj_factor * ∇²f(x) + Σ_i lagrange[i] ∇²g_i(x)``.
    """

    def objective(self, x: np.ndarray, new_x: bool): ...

    def gradient(self, x: np.ndarray, new_x: bool): ...

    def constraints(self, x: np.ndarray, new_x: bool): ...

    def jacobian(self, x: np.ndarray, new_x: bool): ...

    def hessian(self, x: np.ndarray, new_x: bool, obj_factor: float,
                lagrange: np.ndarray, new_lagrange: bool): ...


class CallbackEvaluator:
    """Adapts plain callables (``eval_f``, ``eval_grad_f``, ...) to NLPEvaluator."""

    def __init__(
        self,
        eval_f: Callable,
        eval_grad_f: Callable,
        eval_g: Optional[Callable] = None,
        eval_jac_g: Optional[Callable] = None,
        eval_h: Optional[Callable] = None,
    ):
        if not callable(eval_f) or not callable(eval_grad_f):
            raise TypeError("eval_f and eval_grad_f must be callable")
        self._f = eval_f
        self._grad_f = eval_grad_f
        self._g = eval_g
        self._jac_g = eval_jac_g
        self._h = eval_h

    @property
    def has_hessian(self) -> bool:
        return self._h is not None

    def objective(self, x, new_x):
        return self._f(x, new_x)

    def gradient(self, x, new_x):
        return self._grad_f(x, new_x)

    def constraints(self, x, new_x):
        if self._g is None:
            return np.zeros(0)
        return self._g(x, new_x)

    def jacobian(self, x, new_x):
        if self._jac_g is None:
            return np.zeros(0)
        return self._jac_g(x, new_x)

    def hessian(self, x, new_x, obj_factor, lagrange, new_lagrange):
        if self._h is None:
            return None
        return self._h(x, new_x, obj_factor, lagrange, new_lagrange)


def has_hessian(evaluator) -> bool:
    flag = getattr(evaluator, "has_hessian", None)
    if flag is None:
        return callable(getattr(evaluator, "hessian", None))
    return bool(flag)
