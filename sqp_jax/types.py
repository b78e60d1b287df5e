"""Type definitions for SQP-JAX.

This module contains type aliases, the termination outcomes and the error
taxonomy used throughout the package.
"""

import enum
from collections.abc import Callable
from typing import Any

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Objective function type for AutodiffNLP: f(x, args) -> scalar
ObjectiveFn = Callable[[Vector, Any], Scalar]

# Constraint function type for AutodiffNLP: g(x, args) -> (ng,)
# Bounds lbg <= g(x) <= ubg are supplied separately; lbg == ubg is an equality.
ConstraintFn = Callable[[Vector, Any], Float[Array, " m"]]

# Per-iteration user callback, receives an Iterate and returns an int.
# A non-zero return value requests termination.
IterationCallback = Callable[[Any], int]


class TerminationOutcome(enum.Enum):
    """Reason why an SQP run stopped."""

    USER_REQUESTED_STOP = "User_Requested_Stop"
    SOLVE_SUCCEEDED = "Solve_Succeeded"
    MAX_ITERATIONS_EXCEEDED = "Maximum_Iterations_Exceeded"
    STEP_TOO_SMALL = "Search_Direction_Becomes_Too_Small"

    @property
    def success(self) -> bool:
        return self is TerminationOutcome.SOLVE_SUCCEEDED


class EvaluationError(RuntimeError):
    """An NLP oracle could not evaluate a function at the requested point."""


class QPSolveError(RuntimeError):
    """The QP subproblem could not be solved."""


class IndefiniteHessianWarning(RuntimeWarning):
    """The QP step has negative curvature with respect to the Hessian."""
