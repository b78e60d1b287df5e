"""L1 Merit Function and Non-monotone Line Search for SQP.

This module implements the L1-exact penalty merit function

    phi(x; sigma) = f(x) + sigma * inf_pr(x)

where ``inf_pr`` is the infinity norm of the bound and constraint
violations, and the backtracking line search used to globalize the SQP
iteration.

The line search is *non-monotone*: a candidate is compared against the
largest of the last ``merit_memory`` accepted merit values instead of the
current one. L1 penalty methods tend to oscillate near active-set changes
and a strictly monotone test would stall there.
"""

import logging
from collections.abc import Callable
from typing import NamedTuple

import equinox as eqx
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, ScalarLike, jaxtyped

from sqp_jax.oracle import EvaluationOutcome, Failed
from sqp_jax.types import Scalar, Vector
from sqp_jax.utils import norm_inf

logger = logging.getLogger(__name__)


class Bounds(NamedTuple):
    """Simple bounds on x and bounds on the constraint values g(x)."""

    lbx: Float[Array, " n"]
    ubx: Float[Array, " n"]
    lbg: Float[Array, " m"]
    ubg: Float[Array, " m"]


@jaxtyped(typechecker=beartype)
def primal_infeasibility(
    x: Float[Array, " n"],
    lbx: Float[Array, " n"],
    ubx: Float[Array, " n"],
    g: Float[Array, " m"],
    lbg: Float[Array, " m"],
    ubg: Float[Array, " m"],
) -> Scalar:
    """Infinity norm of the bound and constraint violations.

        max(0, max_j(lbx_j - x_j, x_j - ubx_j), max_j(lbg_j - g_j, g_j - ubg_j))

    Zero if and only if ``x`` satisfies all bounds and constraints.
    """
    residuals = jnp.concatenate([lbx - x, x - ubx, lbg - g, g - ubg])
    return jnp.max(residuals, initial=0.0)


@jaxtyped(typechecker=beartype)
def compute_merit(f_val: ScalarLike, inf_pr: ScalarLike, penalty: ScalarLike) -> float:
    """L1 merit value ``f + sigma * inf_pr``."""
    return float(f_val) + float(penalty) * float(inf_pr)


@jaxtyped(typechecker=beartype)
def merit_directional_derivative(
    grad: Float[Array, " n"],
    direction: Float[Array, " n"],
    inf_pr: ScalarLike,
    penalty: ScalarLike,
) -> float:
    """Estimate of the merit directional derivative along the QP step.

    A QP step satisfies the linearized constraints, so to first order it
    removes the whole violation:

        phi'(x; d) ~ grad f . d - sigma * inf_pr(x)
    """
    return float(jnp.dot(grad, direction)) - float(penalty) * float(inf_pr)


@jaxtyped(typechecker=beartype)
def update_penalty_parameter(
    current_penalty: ScalarLike,
    multipliers_x: Float[Array, " n"],
    multipliers_g: Float[Array, " m"],
    margin: float = 1.01,
) -> float:
    """Update the merit penalty from the QP multipliers.

    ``sigma >= margin * max(|lam_x|_inf, |lam_g|_inf)`` makes the QP step a
    descent direction of the merit function. The penalty never decreases.
    """
    return max(
        float(current_penalty),
        margin * norm_inf(multipliers_x),
        margin * norm_inf(multipliers_g),
    )


class MeritHistory(eqx.Module):
    """Bounded FIFO of recent merit values.

    Attributes:
        values: Stored merit values, oldest first.
        memory: Maximum number of values kept.
    """

    values: tuple[float, ...]
    memory: int = eqx.field(static=True)

    @classmethod
    def empty(cls, memory: int) -> "MeritHistory":
        if memory < 1:
            raise ValueError("merit memory must be at least 1")
        return cls(values=(), memory=memory)

    def push(self, value: float) -> "MeritHistory":
        """Append ``value``, evicting the oldest entry when full."""
        values = (*self.values, float(value))[-self.memory :]
        return MeritHistory(values=values, memory=self.memory)

    def max(self) -> float:
        return max(self.values)

    def __len__(self) -> int:
        return len(self.values)


class LineSearchResult(NamedTuple):
    """Result from the line search.

    Attributes:
        step_size: Accepted step length t (0 when every trial failed).
        x: Accepted point ``x + t * d``.
        merit: Merit value at the accepted point, None when not evaluated.
        n_trials: Number of trial points (evaluated or failed).
        success: False when the trial budget ran out without acceptance.
        merit_history: History including the merit at the starting point.
        directional_derivative: The ``L1dir`` used in the Armijo test.
    """

    step_size: float
    x: Vector
    merit: float | None
    n_trials: int
    success: bool
    merit_history: MeritHistory
    directional_derivative: float


def backtracking_line_search(
    evaluate: Callable[[Vector], EvaluationOutcome],
    x: Vector,
    direction: Vector,
    f_val: float,
    grad: Vector,
    inf_pr: float,
    penalty: float,
    merit_history: MeritHistory,
    bounds: Bounds,
    c1: float = 1e-4,
    beta: float = 0.8,
    max_iter: int = 3,
) -> LineSearchResult:
    """Non-monotone backtracking line search on the L1 merit function.

    The merit value at ``x`` is pushed onto ``merit_history`` first. Then,
    starting from t = 1, a trial point ``x + t * d`` is accepted when

        phi(x + t d) <= max(history) + t * c1 * phi'(x; d)

    otherwise ``t <- beta * t``. A trial whose evaluation fails counts
    against the budget and backtracks. Once ``max_iter`` trials are used the
    most recent successfully evaluated candidate is accepted with
    ``success=False``; when no trial could be evaluated the step is rejected
    (t = 0, x unchanged).

    ``max_iter == 0`` disables the search and takes the full step without
    evaluating anything.

    Args:
        evaluate: Returns ``Evaluated(f, g)`` or ``Failed(reason)`` at a point.
        x: Current point.
        direction: QP step d.
        f_val: Objective value at ``x``.
        grad: Objective gradient at ``x``.
        inf_pr: Primal infeasibility at ``x``.
        penalty: Merit penalty sigma.
        merit_history: Recent accepted merit values.
        bounds: Problem bounds, for the infeasibility of trial points.
        c1: Armijo coefficient.
        beta: Backtracking factor in (0, 1).
        max_iter: Trial budget.

    Returns:
        LineSearchResult with the accepted step.
    """
    merit_0 = compute_merit(f_val, inf_pr, penalty)
    merit_dir = merit_directional_derivative(grad, direction, inf_pr, penalty)
    history = merit_history.push(merit_0)

    if max_iter == 0:
        return LineSearchResult(
            step_size=1.0,
            x=x + direction,
            merit=None,
            n_trials=0,
            success=True,
            merit_history=history,
            directional_derivative=merit_dir,
        )

    merit_max = history.max()
    t = 1.0
    n_trials = 0
    last_evaluated = None

    while True:
        x_cand = x + t * direction
        outcome = evaluate(x_cand)
        n_trials += 1

        if isinstance(outcome, Failed):
            logger.debug("Line-search trial t=%g failed: %s", t, outcome.reason)
        else:
            inf_cand = primal_infeasibility(
                x_cand, bounds.lbx, bounds.ubx, outcome.g, bounds.lbg, bounds.ubg
            )
            merit_cand = compute_merit(outcome.f, inf_cand, penalty)
            last_evaluated = (t, x_cand, merit_cand)
            if merit_cand <= merit_max + t * c1 * merit_dir:
                logger.debug("Line-search completed, candidate accepted")
                return LineSearchResult(
                    step_size=t,
                    x=x_cand,
                    merit=merit_cand,
                    n_trials=n_trials,
                    success=True,
                    merit_history=history,
                    directional_derivative=merit_dir,
                )

        if n_trials >= max_iter:
            break
        t = beta * t

    logger.debug("Line-search completed, maximum number of iterations")
    if last_evaluated is None:
        logger.debug("No trial point could be evaluated, step rejected")
        t, x_cand, merit_cand = 0.0, x, None
    else:
        t, x_cand, merit_cand = last_evaluated
    return LineSearchResult(
        step_size=t,
        x=x_cand,
        merit=merit_cand,
        n_trials=n_trials,
        success=False,
        merit_history=history,
        directional_derivative=merit_dir,
    )
