# problem.py
# Public problem handle: construction, options, scaling, solve and introspection.
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from .adapter import OrigNLP, ProblemDefinition
from .blocks.aux import IPConfig
from .callbacks import IntermediateDispatcher
from .evaluator import CallbackEvaluator, NLPEvaluator
from .exceptions import (
    EvaluationError,
    InvalidOption,
    InvalidProblemDefinition,
    NotEnoughDegreesOfFreedom,
)
from .ip import InteriorPointAlgorithm
from .ip_conv import Clock
from .ip_state import Iterate
from .logs import add_file_handler, config_logger, level_from_print_level
from .restoration import RestorationNLP
from .status import ReturnStatus, SolveResult


@dataclass(frozen=True)
class IterateView:
    """Current iterate in the user's layout."""

    x: np.ndarray
    z_L: np.ndarray
    z_U: np.ndarray
    g: np.ndarray
    lambda_: np.ndarray


@dataclass(frozen=True)
class ViolationView:
    """Violations and complementarity of the current iterate in the user's layout."""

    x_L_violation: np.ndarray
    x_U_violation: np.ndarray
    compl_x_L: np.ndarray
    compl_x_U: np.ndarray
    grad_lag_x: np.ndarray
    nlp_constraint_violation: np.ndarray
    compl_g: np.ndarray


class Problem:
    """
    Handle of one nonlinear program

        min f(x)   s.t.   g_L <= g(x) <= g_U,   x_L <= x <= x_U

    Callbacks receive ``(x, new_x)`` (plus ``obj_factor, lagrange,
    new_lagrange`` for the Hessian) and return the value, or ``None`` /
    ``False`` when they cannot evaluate at x. Sparsity structures are
    ``(rows, cols)`` pairs; the Hessian structure lists one triangle.

    The handle is reusable for several (warm-started) solves until
    ``close()``; one solve at a time.
    """

    def __init__(self, n, x_L, x_U, m, g_L, g_U, jac_structure=None, hess_structure=None,
                 index_style: int = 0, eval_f: Optional[Callable] = None,
                 eval_g: Optional[Callable] = None, eval_grad_f: Optional[Callable] = None,
                 eval_jac_g: Optional[Callable] = None, eval_h: Optional[Callable] = None,
                 evaluator: Optional[NLPEvaluator] = None):
        self.pdef = ProblemDefinition.build(n, x_L, x_U, m, g_L, g_U, jac_structure,
                                            hess_structure, index_style)
        if evaluator is None:
            if eval_f is None or eval_grad_f is None:
                raise InvalidProblemDefinition("eval_f and eval_grad_f are required")
            if self.pdef.m > 0 and (eval_g is None or eval_jac_g is None):
                raise InvalidProblemDefinition("eval_g and eval_jac_g are required when m > 0")
            evaluator = CallbackEvaluator(eval_f, eval_grad_f, eval_g, eval_jac_g, eval_h)
        elif not isinstance(evaluator, NLPEvaluator):
            raise InvalidProblemDefinition("evaluator does not implement the NLPEvaluator protocol")
        self.evaluator = evaluator

        self.options = IPConfig()
        self.logger = config_logger(f"ipsolve.problem_{id(self)}",
                                    level=level_from_print_level(self.options.print_level))
        self._file_handlers: List[logging.Handler] = []
        self._callback: Optional[Callable] = None
        self._user_scaling = None
        self._lock = threading.Lock()
        self._current = None
        self._closed = False

    # ------------------------------------------------------------------ #
    # Lifetime
    # ------------------------------------------------------------------ #

    def __enter__(self) -> "Problem":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self):
        """Release caches and output files; the handle must not be used afterwards."""
        self._current = None
        for hdlr in list(self.logger.handlers):
            self.logger.removeHandler(hdlr)
            hdlr.close()
        self._file_handlers = []
        logging.Logger.manager.loggerDict.pop(self.logger.name, None)
        self._closed = True

    def _check_open(self):
        if self._closed:
            raise RuntimeError("problem handle has been closed")

    # ------------------------------------------------------------------ #
    # Options
    # ------------------------------------------------------------------ #

    def add_option(self, keyword: str, value) -> None:
        """Set one option by keyword; raises InvalidOption."""
        self._check_open()
        self.options.set_option(keyword, value)
        if keyword == "output_file" and self.options.output_file:
            if not self.open_output_file(self.options.output_file, self.options.file_print_level):
                raise InvalidOption(f"cannot open output file '{self.options.output_file}'")

    def add_str_option(self, keyword: str, value: str) -> None:
        kind = self.options.option_kind(keyword)
        if kind is not None and kind not in (str, bool):
            raise InvalidOption(f"Option '{keyword}' is not a string option")
        if not isinstance(value, str):
            raise InvalidOption(f"Option '{keyword}' expects a string, got {value!r}")
        self.add_option(keyword, value)

    def add_num_option(self, keyword: str, value: float) -> None:
        kind = self.options.option_kind(keyword)
        if kind is not None and kind is not float:
            raise InvalidOption(f"Option '{keyword}' is not a numeric option")
        self.add_option(keyword, value)

    def add_int_option(self, keyword: str, value: int) -> None:
        kind = self.options.option_kind(keyword)
        if kind is not None and kind is not int:
            raise InvalidOption(f"Option '{keyword}' is not an integer option")
        self.add_option(keyword, value)

    def open_output_file(self, file_name: str, print_level: int = 5) -> bool:
        """Also write the solver output to ``file_name``. False if it cannot be opened."""
        self._check_open()
        try:
            hdlr = add_file_handler(self.logger, file_name, level_from_print_level(print_level))
        except OSError as exc:
            self.logger.error(f"cannot open output file '{file_name}': {exc}")
            return False
        self._file_handlers.append(hdlr)
        return True

    def set_scaling(self, obj_scaling: float, x_scaling=None, g_scaling=None) -> None:
        """User-provided scaling factors; switches ``nlp_scaling_method`` to user-scaling."""
        self._check_open()
        p = self.pdef
        obj_scaling = float(obj_scaling)
        if not np.isfinite(obj_scaling) or obj_scaling == 0.0:
            raise InvalidProblemDefinition("obj_scaling must be finite and nonzero")
        x_s = _scaling_vector(x_scaling, p.n, "x_scaling")
        g_s = _scaling_vector(g_scaling, p.m, "g_scaling")
        self._user_scaling = (obj_scaling, x_s, g_s)
        self.options.set_option("nlp_scaling_method", "user-scaling")

    def set_intermediate_callback(self, callback: Optional[Callable]) -> None:
        """
        ``callback(alg_mod, iter_count, obj_value, inf_pr, inf_du, mu, d_norm,
        regularization_size, alpha_du, alpha_pr, ls_trials)`` runs once per
        iteration; returning a false value (other than None) stops the solve.
        """
        if callback is not None and not callable(callback):
            raise TypeError("intermediate callback must be callable")
        self._callback = callback

    # ------------------------------------------------------------------ #
    # Solve
    # ------------------------------------------------------------------ #

    def solve(self, x0, mult_g=None, mult_x_L=None, mult_x_U=None) -> SolveResult:
        """
        Run the interior-point method from ``x0``. Passing multipliers
        requests a warm start. Never raises for algorithmic failures: the
        outcome is in ``SolveResult.status``.
        """
        self._check_open()
        if not self._lock.acquire(blocking=False):
            raise RuntimeError("a solve is already running on this problem")
        try:
            return self._solve(x0, mult_g, mult_x_L, mult_x_U)
        finally:
            self._current = None
            self._lock.release()

    def _configure_output(self, cfg: IPConfig):
        level = level_from_print_level(cfg.print_level)
        for hdlr in self.logger.handlers:
            if hdlr not in self._file_handlers:
                hdlr.setLevel(level)
        self.logger.setLevel(min([level] + [h.level for h in self._file_handlers]))

    def _solve(self, x0, mult_g, mult_x_L, mult_x_U) -> SolveResult:
        clock = Clock.start()
        p = self.pdef
        log = self.logger
        self._current = None
        cfg = self.options.copy()
        self._configure_output(cfg)

        x0 = np.array(x0, dtype=float).ravel()
        if x0.size != p.n or not np.all(np.isfinite(x0)):
            log.error(f"starting point must be a finite vector of length {p.n}")
            x_out = x0 if x0.size == p.n else np.zeros(p.n)
            return self._bare_result(x_out, ReturnStatus.INVALID_PROBLEM_DEFINITION, clock)
        try:
            cfg.validate()
            mults = [None if v is None else np.array(v, dtype=float).ravel()
                     for v in (mult_g, mult_x_L, mult_x_U)]
            for v, size, name in zip(mults, (p.m, p.n, p.n), ("mult_g", "mult_x_L", "mult_x_U")):
                if v is not None and (v.size != size or not np.all(np.isfinite(v))):
                    raise InvalidProblemDefinition(f"{name} must be a finite vector of length {size}")
        except InvalidOption as exc:
            log.error(str(exc))
            return self._bare_result(x0, ReturnStatus.INVALID_OPTION, clock)
        except InvalidProblemDefinition as exc:
            log.error(str(exc))
            return self._bare_result(x0, ReturnStatus.INVALID_PROBLEM_DEFINITION, clock)

        try:
            nlp = OrigNLP(p, self.evaluator, cfg, self._user_scaling)
        except NotEnoughDegreesOfFreedom as exc:
            log.error(str(exc))
            return self._bare_result(x0, ReturnStatus.NOT_ENOUGH_DEGREES_OF_FREEDOM, clock)

        log.info(f"ipsolve: n={p.n} (free {nlp.n}), m={p.m} (eq {nlp.m_c}, ineq {nlp.m_d}), "
                 f"nnz_jac={p.nele_jac}, nnz_hess={p.nele_hess}")
        try:
            nlp.determine_scaling(x0)
        except EvaluationError as exc:
            log.error(f"evaluation failed at the starting point: {exc}")
            return self._bare_result(x0, ReturnStatus.INVALID_NUMBER_DETECTED, clock, nlp)

        if nlp.n == 0:
            return self._solve_all_fixed(nlp, cfg, clock)

        dispatcher = IntermediateDispatcher(self._callback, log, cfg.print_frequency_iter)
        alg = InteriorPointAlgorithm(nlp, cfg, mode=0, dispatcher=dispatcher, clock=clock,
                                     logger=log, iterate_listener=self._track)
        status, state = alg.run(x0, *mults)
        if state is None:
            return self._bare_result(x0, status, clock, nlp)
        stats = dict(restoration_calls=alg.resto.n_calls,
                     factorizations=alg.kkt.n_factorizations)
        result = self._finalize(nlp, state.curr, status, state.iter_count, clock, stats)
        log.info(f"\nNumber of Iterations....: {result.iter_count}")
        log.info(f"Objective...............: {result.obj_val:.16e}")
        log.info(f"\nEXIT: {result.message}")
        return result

    def _solve_all_fixed(self, nlp: OrigNLP, cfg: IPConfig, clock: Clock) -> SolveResult:
        """Every variable is fixed: only feasibility can be checked."""
        it = Iterate.zeros(0, nlp.m_c, nlp.m_d)
        try:
            x, _, _, g, _ = nlp.user_iterate(it.x, it.y_c, it.y_d, it.z_L, it.z_U)
        except EvaluationError:
            return self._bare_result(nlp.to_user_x(it.x), ReturnStatus.INVALID_NUMBER_DETECTED, clock, nlp)
        gl, gu = nlp.orig_g_L, nlp.orig_g_U
        with np.errstate(invalid="ignore"):
            viol = np.maximum(np.where(np.isfinite(gl), gl - g, 0.0), np.where(np.isfinite(gu), g - gu, 0.0))
        feasible = not viol.size or float(np.max(viol)) <= cfg.constr_viol_tol
        status = ReturnStatus.SOLVE_SUCCEEDED if feasible else ReturnStatus.INFEASIBLE_PROBLEM_DETECTED
        return self._finalize(nlp, it, status, 0, clock, {})

    def _track(self, nlp, it):
        self._current = (nlp, it)

    # ------------------------------------------------------------------ #
    # Results
    # ------------------------------------------------------------------ #

    def _finalize(self, nlp: OrigNLP, it, status: ReturnStatus, iter_count: int, clock: Clock,
                  stats: dict) -> SolveResult:
        p, cfg = self.pdef, nlp.cfg
        try:
            x, z_L, z_U, g, lam = nlp.user_iterate(it.x, it.y_c, it.y_d, it.z_L, it.z_U)
        except EvaluationError:
            x = nlp.to_user_x(it.x)
            z_L, z_U, g = np.zeros(p.n), np.zeros(p.n), np.full(p.m, np.nan)
            lam = nlp.join_lambda(it.y_c, it.y_d)
        try:
            obj = float(nlp.unscaled_obj(nlp.f(it.x)))
        except EvaluationError:
            obj = float("nan")
        if cfg.honor_original_bounds:
            x = np.clip(x, nlp.orig_x_L, nlp.orig_x_U)
        counters = dict(nlp.stats)
        counters.update(stats)
        counters["wall_time"] = clock.wall()
        counters["cpu_time"] = clock.cpu()
        return SolveResult(x=x, g=g, obj_val=obj, mult_g=lam, mult_x_L=z_L, mult_x_U=z_U,
                           status=status, iter_count=iter_count, stats=counters)

    def _bare_result(self, x, status: ReturnStatus, clock: Clock, nlp: Optional[OrigNLP] = None) -> SolveResult:
        p = self.pdef
        stats = dict(nlp.stats) if nlp is not None else {}
        stats["wall_time"] = clock.wall()
        stats["cpu_time"] = clock.cpu()
        result = SolveResult(x=x, g=np.full(p.m, np.nan), obj_val=float("nan"), mult_g=np.zeros(p.m),
                             mult_x_L=np.zeros(p.n), mult_x_U=np.zeros(p.n), status=status,
                             iter_count=0, stats=stats)
        self.logger.info(f"\nEXIT: {result.message}")
        return result

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    def _current_orig(self):
        if self._current is None:
            return None
        nlp, it = self._current
        if isinstance(nlp, RestorationNLP):
            it = nlp.orig_iterate(it)
            nlp = nlp.orig
        return nlp, it

    def get_current_iterate(self, scaled: bool = False) -> Optional[IterateView]:
        """Current primal/dual point in the user's layout, or None outside a solve."""
        cur = self._current_orig()
        if cur is None:
            return None
        nlp, it = cur
        try:
            x, z_L, z_U, g, lam = nlp.user_iterate(it.x, it.y_c, it.y_d, it.z_L, it.z_U, scaled=scaled)
        except EvaluationError:
            return None
        return IterateView(x, z_L, z_U, g, lam)

    def get_current_violations(self, scaled: bool = False) -> Optional[ViolationView]:
        cur = self._current_orig()
        if cur is None:
            return None
        nlp, it = cur
        try:
            viol = nlp.user_violations(it.x, it.y_c, it.y_d, it.z_L, it.z_U, scaled=scaled)
        except EvaluationError:
            return None
        return ViolationView(**viol)


def _scaling_vector(v, size: int, name: str) -> Optional[np.ndarray]:
    if v is None:
        return None
    a = np.array(v, dtype=float).ravel()
    if a.size != size:
        raise InvalidProblemDefinition(f"{name} has length {a.size}, expected {size}")
    if not np.all(np.isfinite(a)) or np.any(a <= 0.0):
        raise InvalidProblemDefinition(f"{name} must be finite and positive")
    return a
