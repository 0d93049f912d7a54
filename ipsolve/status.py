# Terminal outcomes of a solve and the immutable result record.
from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict

import numpy as np


class ReturnStatus(IntEnum):
    SOLVE_SUCCEEDED = 0
    SOLVED_TO_ACCEPTABLE_LEVEL = 1
    INFEASIBLE_PROBLEM_DETECTED = 2
    SEARCH_DIRECTION_BECOMES_TOO_SMALL = 3
    DIVERGING_ITERATES = 4
    USER_REQUESTED_STOP = 5
    FEASIBLE_POINT_FOUND = 6

    MAXIMUM_ITERATIONS_EXCEEDED = -1
    RESTORATION_FAILED = -2
    ERROR_IN_STEP_COMPUTATION = -3
    MAXIMUM_CPUTIME_EXCEEDED = -4
    MAXIMUM_WALLTIME_EXCEEDED = -5
    NOT_ENOUGH_DEGREES_OF_FREEDOM = -10
    INVALID_PROBLEM_DEFINITION = -11
    INVALID_OPTION = -12
    INVALID_NUMBER_DETECTED = -13
    INTERNAL_ERROR = -199

    @property
    def successful(self) -> bool:
        return self in (ReturnStatus.SOLVE_SUCCEEDED, ReturnStatus.SOLVED_TO_ACCEPTABLE_LEVEL,
                        ReturnStatus.FEASIBLE_POINT_FOUND)


_MESSAGES: Dict[ReturnStatus, str] = {
    ReturnStatus.SOLVE_SUCCEEDED: "Optimal Solution Found.",
    ReturnStatus.SOLVED_TO_ACCEPTABLE_LEVEL: "Solved To Acceptable Level.",
    ReturnStatus.INFEASIBLE_PROBLEM_DETECTED: "Converged to a point of local infeasibility. Problem may be infeasible.",
    ReturnStatus.SEARCH_DIRECTION_BECOMES_TOO_SMALL: "Search Direction is becoming Too Small.",
    ReturnStatus.DIVERGING_ITERATES: "Iterates diverging; problem might be unbounded.",
    ReturnStatus.USER_REQUESTED_STOP: "Stopping optimization at current point as requested by user.",
    ReturnStatus.FEASIBLE_POINT_FOUND: "Feasible point for square problem found.",
    ReturnStatus.MAXIMUM_ITERATIONS_EXCEEDED: "Maximum Number of Iterations Exceeded.",
    ReturnStatus.RESTORATION_FAILED: "Restoration Failed!",
    ReturnStatus.ERROR_IN_STEP_COMPUTATION: "Error in step computation!",
    ReturnStatus.MAXIMUM_CPUTIME_EXCEEDED: "Maximum CPU time exceeded.",
    ReturnStatus.MAXIMUM_WALLTIME_EXCEEDED: "Maximum wallclock time exceeded.",
    ReturnStatus.NOT_ENOUGH_DEGREES_OF_FREEDOM: "Problem has too few degrees of freedom.",
    ReturnStatus.INVALID_PROBLEM_DEFINITION: "Problem has inconsistent variable bounds or constraint sides.",
    ReturnStatus.INVALID_OPTION: "Invalid option encountered.",
    ReturnStatus.INVALID_NUMBER_DETECTED: "Invalid number in NLP function or derivative detected.",
    ReturnStatus.INTERNAL_ERROR: "Unknown error.",
}


def status_message(status: ReturnStatus) -> str:
    return _MESSAGES.get(status, status.name)


@dataclass(frozen=True)
class SolveResult:
    """
    Outcome of one solve, in the user's (unscaled, full-length) space.

    Created once at the end of a solve and never mutated; the arrays are
    marked read-only.
    """

    x: np.ndarray
    g: np.ndarray
    obj_val: float
    mult_g: np.ndarray
    mult_x_L: np.ndarray
    mult_x_U: np.ndarray
    status: ReturnStatus
    iter_count: int
    message: str = ""
    stats: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        for name in ("x", "g", "mult_g", "mult_x_L", "mult_x_U"):
            arr = np.array(getattr(self, name), dtype=float, copy=True)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)
        if not self.message:
            object.__setattr__(self, "message", status_message(self.status))

    @property
    def success(self) -> bool:
        return self.status.successful
