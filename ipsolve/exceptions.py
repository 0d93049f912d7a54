# Solver-specific exceptions.
#
# Everything except the two configuration errors stays inside a solve: the
# driver in ip.py converts them into a ReturnStatus.

from __future__ import annotations


class InvalidProblemDefinition(ValueError):
    """
    Malformed problem data: negative sizes, inconsistent bounds, bad
    sparsity indices or an unknown index style.
    """


class InvalidOption(ValueError):
    """
    Unknown option keyword or a value of the wrong kind / out of range.
    """


class EvaluationError(Exception):
    """
    A user callback reported failure or produced a non-finite value.
    Recoverable: the line search shrinks the step or the restoration
    phase takes over.
    """

    def __init__(self, what: str = "", x=None):
        super().__init__(what or "evaluation failed")
        self.what = what
        self.x = x


class StepComputationError(Exception):
    """
    The KKT system could not be factorized with the right inertia within
    the allowed perturbation range.
    """


class LineSearchFailure(Exception):
    """
    Backtracking went below the minimum step size without finding an
    acceptable trial point.
    """


class RestorationFailed(Exception):
    """
    The restoration phase could not produce an acceptable, less infeasible
    iterate.
    """


class LocalInfeasibility(RestorationFailed):
    """
    The restoration phase converged to a stationary point of the
    infeasibility measure that is not feasible.
    """


class UserRequestedStop(Exception):
    """
    The intermediate callback asked the solver to stop.
    """


class TinyStep(Exception):
    """
    The search direction is negligible and the barrier parameter cannot be
    reduced any further.
    """


class NotEnoughDegreesOfFreedom(InvalidProblemDefinition):
    """
    More equality constraints than free variables.
    """
