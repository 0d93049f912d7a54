# aux.py
# Configuration record and small numerics shared by the interior-point blocks.

from __future__ import annotations

# =========================
# Standard library
# =========================
from dataclasses import dataclass, fields, replace
from typing import Dict, Tuple

# =========================
# Third-party
# =========================
import numpy as np
import scipy.sparse as sp

from ..exceptions import InvalidOption

MACH_EPS = float(np.finfo(float).eps)


# ------------------ tiny numerics ------------------
def _csr(A, shape=None):
    if sp.issparse(A) and A.format == "csr":
        return A
    if sp.issparse(A):
        return A.tocsr()
    return sp.csr_matrix(A, shape=shape)


def safe_inf_norm(v) -> float:
    v = np.asarray(v, dtype=float)
    if v.size == 0:
        return 0.0
    return float(np.max(np.abs(v)))


def safe_one_norm(v) -> float:
    v = np.asarray(v, dtype=float)
    if v.size == 0:
        return 0.0
    return float(np.sum(np.abs(v)))


# ======================================
# Global configuration
# ======================================
@dataclass
class IPConfig:
    """
    Options of the interior-point solver.

    Field names are the option keywords accepted by ``Problem.add_option``.

    Notes
    -----
    • Tolerances on the optimality error act in the scaled space; the
      ``*_inf_tol`` / ``constr_viol_tol`` ones are checked unscaled.
    • Choice-valued options are validated against ``_CHOICES``.
    """

    # ---------------- Termination ----------------
    tol: float = 1e-8
    s_max: float = 100.0
    max_iter: int = 3000
    max_wall_time: float = 1e20
    max_cpu_time: float = 1e20
    dual_inf_tol: float = 1.0
    constr_viol_tol: float = 1e-4
    compl_inf_tol: float = 1e-4
    acceptable_tol: float = 1e-6
    acceptable_iter: int = 15
    acceptable_dual_inf_tol: float = 1e10
    acceptable_constr_viol_tol: float = 1e-2
    acceptable_compl_inf_tol: float = 1e-2
    acceptable_obj_change_tol: float = 1e20
    diverging_iterates_tol: float = 1e20

    # ---------------- Output ----------------
    print_level: int = 5
    output_file: str = ""
    file_print_level: int = 5
    print_frequency_iter: int = 1

    # ---------------- NLP ----------------
    nlp_lower_bound_inf: float = -1e19
    nlp_upper_bound_inf: float = 1e19
    fixed_variable_treatment: str = "make_parameter"  # {"make_parameter","relax_bounds"}
    bound_relax_factor: float = 1e-8
    honor_original_bounds: bool = True
    check_derivatives_for_naninf: bool = True

    # ---------------- Scaling ----------------
    nlp_scaling_method: str = "gradient-based"  # {"none","user-scaling","gradient-based"}
    obj_scaling_factor: float = 1.0
    nlp_scaling_max_gradient: float = 100.0
    nlp_scaling_min_value: float = 1e-8

    # ---------------- Initialization ----------------
    bound_push: float = 1e-2
    bound_frac: float = 1e-2
    slack_bound_push: float = 1e-2
    slack_bound_frac: float = 1e-2
    bound_mult_init_val: float = 1.0
    constr_mult_init_max: float = 1000.0
    least_square_init_duals: bool = False

    # Warm start
    warm_start_init_point: str = "no"  # {"no","yes"}
    warm_start_bound_push: float = 1e-9
    warm_start_bound_frac: float = 1e-9
    warm_start_slack_bound_push: float = 1e-9
    warm_start_slack_bound_frac: float = 1e-9
    warm_start_mult_bound_push: float = 1e-9
    warm_start_mult_init_max: float = 1e6

    # ---------------- Barrier parameter ----------------
    mu_strategy: str = "monotone"  # {"monotone","adaptive"}
    mu_init: float = 0.1
    mu_min: float = 1e-11
    mu_max: float = 1e5
    barrier_tol_factor: float = 10.0
    mu_linear_decrease_factor: float = 0.2
    mu_superlinear_decrease_power: float = 1.5
    mu_allow_fast_monotone_decrease: bool = True
    tau_min: float = 0.99
    kappa_d: float = 1e-5
    adaptive_mu_kkterror_red_iters: int = 4
    adaptive_mu_kkterror_red_fact: float = 0.9999
    adaptive_mu_monotone_init_factor: float = 0.8

    # ---------------- Filter line search ----------------
    alpha_red_factor: float = 0.5
    alpha_min_frac: float = 0.05
    theta_max_fact: float = 1e4
    theta_min_fact: float = 1e-4
    eta_phi: float = 1e-8
    delta: float = 1.0
    s_phi: float = 2.3
    s_theta: float = 1.1
    gamma_phi: float = 1e-8
    gamma_theta: float = 1e-5
    max_soc: int = 4
    kappa_soc: float = 0.99
    obj_max_inc: float = 5.0
    tiny_step_tol: float = 10.0 * MACH_EPS
    tiny_step_y_tol: float = 1e-2
    alpha_for_y: str = "primal"  # {"primal","bound-mult","full"}
    kappa_sigma: float = 1e10
    accept_every_trial_step: bool = False

    # ---------------- Restoration ----------------
    required_infeasibility_reduction: float = 0.9
    resto_penalty_parameter: float = 1000.0
    resto_proximity_weight: float = 1.0
    bound_mult_reset_threshold: float = 1000.0
    constr_mult_reset_threshold: float = 0.0
    start_with_resto: bool = False

    # ---------------- Step computation / KKT ----------------
    linear_solver: str = "auto"  # {"auto","ldl","sparse-lu"}
    dense_kkt_max_dim: int = 2000
    first_hessian_perturbation: float = 1e-4
    min_hessian_perturbation: float = 1e-20
    max_hessian_perturbation: float = 1e20
    perturb_inc_fact_first: float = 100.0
    perturb_inc_fact: float = 8.0
    perturb_dec_fact: float = 1.0 / 3.0
    jacobian_regularization_value: float = 1e-8
    jacobian_regularization_exponent: float = 0.25
    min_refinement_steps: int = 1
    max_refinement_steps: int = 10
    residual_ratio_max: float = 1e-10
    neg_curv_test_tol: float = 0.0

    # ---------------- Hessian ----------------
    hessian_approximation: str = "exact"  # {"exact","limited-memory"}
    limited_memory_max_history: int = 6

    # ------------------------------------------------------------------ #
    # Option access
    # ------------------------------------------------------------------ #

    def copy(self) -> "IPConfig":
        return replace(self)

    def set_option(self, keyword: str, value) -> None:
        """
        Set one option with type / range validation; raises InvalidOption.
        """
        kind = _FIELD_TYPES.get(keyword)
        if kind is None:
            raise InvalidOption(f"Unknown option '{keyword}'")
        if kind is bool:
            value = _coerce_bool(keyword, value)
        elif kind is int:
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                if isinstance(value, (float, np.floating)) and float(value).is_integer():
                    value = int(value)
                else:
                    raise InvalidOption(f"Option '{keyword}' expects an integer, got {value!r}")
            value = int(value)
        elif kind is float:
            if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
                raise InvalidOption(f"Option '{keyword}' expects a number, got {value!r}")
            value = float(value)
            if not np.isfinite(value) and keyword not in _MAY_BE_INF:
                raise InvalidOption(f"Option '{keyword}' must be finite, got {value!r}")
        else:
            if not isinstance(value, str):
                raise InvalidOption(f"Option '{keyword}' expects a string, got {value!r}")
            value = value.strip()
            choices = _CHOICES.get(keyword)
            if choices is not None and value not in choices:
                raise InvalidOption(
                    f"Invalid value '{value}' for option '{keyword}'; valid: {sorted(choices)}"
                )
        _check_range(keyword, value)
        setattr(self, keyword, value)

    def option_kind(self, keyword: str):
        return _FIELD_TYPES.get(keyword)

    def validate(self) -> None:
        for f in fields(self):
            _check_range(f.name, getattr(self, f.name))
        for key, choices in _CHOICES.items():
            if getattr(self, key) not in choices:
                raise InvalidOption(f"Invalid value '{getattr(self, key)}' for option '{key}'")


_CHOICES: Dict[str, Tuple[str, ...]] = {
    "fixed_variable_treatment": ("make_parameter", "relax_bounds"),
    "nlp_scaling_method": ("none", "user-scaling", "gradient-based"),
    "warm_start_init_point": ("no", "yes"),
    "mu_strategy": ("monotone", "adaptive"),
    "alpha_for_y": ("primal", "bound-mult", "full"),
    "linear_solver": ("auto", "ldl", "sparse-lu"),
    "hessian_approximation": ("exact", "limited-memory"),
}

_MAY_BE_INF = {"max_wall_time", "max_cpu_time", "acceptable_obj_change_tol", "diverging_iterates_tol"}

_POSITIVE = {
    "tol", "s_max", "acceptable_tol", "dual_inf_tol", "constr_viol_tol", "compl_inf_tol",
    "max_wall_time", "max_cpu_time", "mu_init", "mu_min", "mu_max", "barrier_tol_factor",
    "nlp_scaling_max_gradient", "nlp_scaling_min_value", "bound_push", "bound_frac",
    "slack_bound_push", "slack_bound_frac", "bound_mult_init_val", "warm_start_bound_push",
    "warm_start_bound_frac", "warm_start_slack_bound_push", "warm_start_slack_bound_frac",
    "warm_start_mult_bound_push", "theta_max_fact", "theta_min_fact", "kappa_sigma",
    "resto_penalty_parameter", "first_hessian_perturbation", "min_hessian_perturbation",
    "max_hessian_perturbation", "perturb_inc_fact_first", "perturb_inc_fact",
    "diverging_iterates_tol", "obj_max_inc", "delta",
}
_NONNEGATIVE = {
    "max_iter", "acceptable_iter", "acceptable_dual_inf_tol", "acceptable_constr_viol_tol",
    "acceptable_compl_inf_tol", "acceptable_obj_change_tol", "bound_relax_factor",
    "constr_mult_init_max", "warm_start_mult_init_max", "kappa_d", "max_soc",
    "constr_mult_reset_threshold", "bound_mult_reset_threshold", "jacobian_regularization_value",
    "jacobian_regularization_exponent", "min_refinement_steps", "max_refinement_steps",
    "residual_ratio_max", "neg_curv_test_tol", "tiny_step_tol", "tiny_step_y_tol",
    "limited_memory_max_history", "resto_proximity_weight", "adaptive_mu_kkterror_red_iters",
    "dense_kkt_max_dim", "print_frequency_iter",
}
_OPEN_UNIT = {
    "mu_linear_decrease_factor", "tau_min", "alpha_red_factor", "alpha_min_frac", "eta_phi",
    "gamma_phi", "gamma_theta", "kappa_soc", "required_infeasibility_reduction",
    "perturb_dec_fact", "adaptive_mu_kkterror_red_fact", "adaptive_mu_monotone_init_factor",
}


def _check_range(keyword: str, value) -> None:
    if isinstance(value, (str, bool)):
        if keyword in ("print_level", "file_print_level"):
            raise InvalidOption(f"Option '{keyword}' must be an integer")
        return
    if keyword in _POSITIVE and not value > 0:
        raise InvalidOption(f"Option '{keyword}' must be positive, got {value}")
    if keyword in _NONNEGATIVE and not value >= 0:
        raise InvalidOption(f"Option '{keyword}' must be non-negative, got {value}")
    if keyword in _OPEN_UNIT and not 0.0 < value < 1.0:
        raise InvalidOption(f"Option '{keyword}' must lie in (0, 1), got {value}")
    if keyword in ("print_level", "file_print_level") and not 0 <= value <= 12:
        raise InvalidOption(f"Option '{keyword}' must lie in [0, 12], got {value}")
    if keyword == "mu_superlinear_decrease_power" and not 1.0 < value < 2.0:
        raise InvalidOption(f"Option '{keyword}' must lie in (1, 2), got {value}")
    if keyword in ("s_phi",) and not value > 1.0:
        raise InvalidOption(f"Option '{keyword}' must be > 1, got {value}")
    if keyword in ("s_theta",) and not value > 1.0:
        raise InvalidOption(f"Option '{keyword}' must be > 1, got {value}")
    if keyword == "nlp_lower_bound_inf" and not value < 0:
        raise InvalidOption("Option 'nlp_lower_bound_inf' must be negative")
    if keyword == "nlp_upper_bound_inf" and not value > 0:
        raise InvalidOption("Option 'nlp_upper_bound_inf' must be positive")
    if keyword == "bound_frac" and value > 0.5:
        raise InvalidOption("Option 'bound_frac' must be at most 0.5")
    if keyword == "slack_bound_frac" and value > 0.5:
        raise InvalidOption("Option 'slack_bound_frac' must be at most 0.5")


def _coerce_bool(keyword: str, value) -> bool:
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("yes", "no"):
        return value.strip().lower() == "yes"
    raise InvalidOption(f"Option '{keyword}' expects 'yes'/'no', got {value!r}")


_TYPE_MAP = {"float": float, "int": int, "str": str, "bool": bool}
_FIELD_TYPES = {f.name: _TYPE_MAP[f.type] for f in fields(IPConfig)}
