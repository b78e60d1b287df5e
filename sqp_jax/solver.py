"""SQP driver.

This module contains :class:`SQPMethod`, the outer Sequential Quadratic
Programming iteration for problems of the form

    minimize    f(x)
    subject to  lbx <= x <= ubx
                lbg <= g(x) <= ubg

At each iteration it:

1. Measures primal infeasibility and the Lagrangian gradient norm, records
   them, invokes the user callback and checks termination.
2. Builds the QP subproblem in the step ``d`` around the current iterate,
   using the exact Hessian of the Lagrangian or a damped BFGS approximation,
   and hands it to a pluggable QP oracle.
3. Raises the L1 merit penalty from the QP multipliers and runs a
   non-monotone backtracking line search on the merit function.
4. Moves to the accepted point, blends the multipliers with the step
   length, re-evaluates derivatives and updates the Hessian.

The driver is a host-side Python loop: every iteration is dispatched to JAX
through the oracles, but control flow (exceptions raised by the oracles,
user callbacks, logging) stays in Python.
"""

import dataclasses
import logging
import math
import time
import warnings
from collections.abc import Callable
from typing import Literal, NamedTuple

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array, ArrayLike, Float

from sqp_jax.hessian import compute_lagrangian_gradient, limited_memory_update
from sqp_jax.merit import (
    Bounds,
    MeritHistory,
    backtracking_line_search,
    primal_infeasibility,
    update_penalty_parameter,
)
from sqp_jax.oracle import AbstractNLP, try_evaluate
from sqp_jax.qp_solver import AbstractQPSolver, ActiveSetQPSolver
from sqp_jax.regularization import regularize
from sqp_jax.sparsity import SparseMatrix, with_diagonal
from sqp_jax.types import (
    IndefiniteHessianWarning,
    IterationCallback,
    TerminationOutcome,
    Vector,
)
from sqp_jax.utils import as_vector, norm_inf

logger = logging.getLogger(__name__)

HessianApproximation = Literal["exact", "limited-memory"]

_TABLE_HEADER = (
    f"{'iter':>4} {'objective':>14} {'inf_pr':>9} {'inf_du':>9} "
    f"{'||d||':>9} {'lg(rg)':>7} {'ls':>3}"
)

_TERMINATION_MESSAGES = {
    TerminationOutcome.USER_REQUESTED_STOP: "User requested stop",
    TerminationOutcome.SOLVE_SUCCEEDED: "Convergence achieved after {} iterations",
    TerminationOutcome.MAX_ITERATIONS_EXCEEDED: "Maximum number of iterations reached",
    TerminationOutcome.STEP_TOO_SMALL: (
        "Search direction becomes too small without convergence criteria "
        "being met"
    ),
}


class IterationRecord(NamedTuple):
    """One row of the iteration log.

    Attributes:
        iteration: Iteration number (0 for the starting point).
        obj: Objective value.
        inf_pr: Primal infeasibility.
        inf_du: Infinity norm of the Lagrangian gradient.
        d_norm: Infinity norm of the last QP step.
        reg: Regularization added to the Hessian (0 when none).
        ls_trials: Trial points of the last line search.
        ls_success: False when the last line search exhausted its budget.
        sigma: Merit penalty in force.
    """

    iteration: int
    obj: float
    inf_pr: float
    inf_du: float
    d_norm: float
    reg: float
    ls_trials: int
    ls_success: bool
    sigma: float


class Iterate(NamedTuple):
    """What the per-iteration callback gets to see."""

    f: float
    x: Vector
    g: Float[Array, " m"]
    lam_g: Float[Array, " m"]
    lam_x: Vector
    record: IterationRecord


@dataclasses.dataclass
class EvaluationStats:
    """Call counts and wall-clock time per evaluator for a single run."""

    n_calls: dict[str, int] = dataclasses.field(default_factory=dict)
    t_wall: dict[str, float] = dataclasses.field(default_factory=dict)

    def record(self, name: str, elapsed: float) -> None:
        self.n_calls[name] = self.n_calls.get(name, 0) + 1
        self.t_wall[name] = self.t_wall.get(name, 0.0) + elapsed

    def call(self, name: str, fn: Callable, *args):
        """Invoke ``fn(*args)``, counting and timing it under ``name``."""
        start = time.perf_counter()
        try:
            return fn(*args)
        finally:
            self.record(name, time.perf_counter() - start)

    def log(self) -> None:
        for name, n_calls in self.n_calls.items():
            t_wall = self.t_wall[name]
            logger.info(
                "%15s: %10.3g s  (%5d calls, %10.3g s/call)",
                name,
                t_wall,
                n_calls,
                t_wall / n_calls,
            )


class SQPState(eqx.Module):
    """State of one SQP run.

    Created by :meth:`SQPMethod.init` and replaced wholesale by every
    :meth:`SQPMethod.step`.

    Attributes:
        iteration: Number of completed SQP iterations.
        x: Current iterate.
        x_old: Previous iterate.
        f: Objective value at ``x``.
        grad_f: Objective gradient at ``x``.
        g: Constraint values at ``x``.
        jac: Constraint Jacobian at ``x``.
        mu: Constraint multipliers.
        mu_x: Simple-bound multipliers.
        glag: Lagrangian gradient at ``x``.
        glag_old: Lagrangian gradient at ``x_old`` with the current
            multipliers (limited-memory mode only).
        hessian: Exact Hessian of the Lagrangian or its BFGS approximation,
            without regularization.
        qp_hessian: The Hessian handed to the QP oracle, ``hessian`` plus
            ``reg`` on the diagonal.
        reg: Diagonal shift the QP sees on top of ``hessian``.
        sigma: L1 merit penalty.
        merit_history: Recent merit values for the non-monotone line search.
        dx: Last QP step.
        t: Last accepted step length.
        ls_trials: Trial points of the last line search.
        ls_success: Whether the last line search met the acceptance test.
        bounds: Problem bounds.
        records: Iteration log, oldest first.
    """

    iteration: int
    x: Vector
    x_old: Vector
    f: float
    grad_f: Vector
    g: Float[Array, " m"]
    jac: SparseMatrix
    mu: Float[Array, " m"]
    mu_x: Vector
    glag: Vector
    glag_old: Vector
    hessian: SparseMatrix
    qp_hessian: SparseMatrix
    reg: float
    sigma: float
    merit_history: MeritHistory
    dx: Vector
    t: float
    ls_trials: int
    ls_success: bool
    bounds: Bounds
    records: tuple[IterationRecord, ...]


class SQPSolution(NamedTuple):
    """Result of :meth:`SQPMethod.solve`.

    Attributes:
        x: Last accepted point.
        f: Objective value at ``x``.
        g: Constraint values at ``x``.
        lam_g: Constraint multipliers.
        lam_x: Simple-bound multipliers.
        status: Why the run stopped.
        iterations: The iteration log.
        stats: Evaluation counts and timings.
    """

    x: Vector
    f: float
    g: Float[Array, " m"]
    lam_g: Float[Array, " m"]
    lam_x: Vector
    status: TerminationOutcome
    iterations: tuple[IterationRecord, ...]
    stats: EvaluationStats

    @property
    def success(self) -> bool:
        return self.status.success


class SQPMethod(eqx.Module):
    """Sequential Quadratic Programming with a non-monotone L1-merit line search.

    The Lagrangian is ``L = f + mu^T g + mu_x^T x``, so at a KKT point
    ``grad f + J^T mu + mu_x = 0`` with positive multipliers on active upper
    bounds and negative ones on active lower bounds.

    Two Hessian modes are available:

    - ``"exact"``: the Hessian of the Lagrangian is re-evaluated from the
      NLP oracle at every iterate.
    - ``"limited-memory"``: a Powell-damped BFGS approximation started from
      the identity, whose off-diagonal entries are dropped every
      ``lbfgs_memory`` iterations.

    Attributes:
        max_iter: Maximum number of SQP iterations.
        max_iter_ls: Trial budget of the line search (0 takes full steps).
        tol_pr: Stopping tolerance on primal infeasibility.
        tol_du: Stopping tolerance on the Lagrangian gradient.
        c1: Armijo coefficient of the line search.
        beta: Backtracking factor of the line search.
        merit_memory: Number of merit values in the non-monotone test.
        lbfgs_memory: Period of the BFGS diagonal reset.
        regularize: Apply Gershgorin regularization to the QP Hessian.
        min_step_size: Stop when the QP step is this small.
        hessian_approximation: ``"exact"`` or ``"limited-memory"``.
        qp_solver: QP oracle.
        print_header: Log problem information before the first iteration.
        print_time: Log evaluation statistics after the last iteration.

    Example:
        >>> import jax.numpy as jnp
        >>> from sqp_jax import AutodiffNLP, SQPMethod
        >>>
        >>> nlp = AutodiffNLP(
        ...     objective=lambda x, args: (x[0] - 1) ** 2 + (x[1] - 2) ** 2,
        ...     nx=2,
        ...     constraints=lambda x, args: jnp.array([x[0] + x[1]]),
        ...     ng=1,
        ... )
        >>> sol = SQPMethod().solve(nlp, jnp.zeros(2), ubg=jnp.array([2.0]))
    """

    max_iter: int = eqx.field(static=True, default=50)
    max_iter_ls: int = eqx.field(static=True, default=3)
    tol_pr: float = 1e-6
    tol_du: float = 1e-6
    c1: float = 1e-4
    beta: float = 0.8
    merit_memory: int = eqx.field(static=True, default=4)
    lbfgs_memory: int = eqx.field(static=True, default=10)
    regularize: bool = eqx.field(static=True, default=False)
    min_step_size: float = 1e-10
    hessian_approximation: HessianApproximation = eqx.field(
        static=True, default="exact"
    )
    qp_solver: AbstractQPSolver = eqx.field(default_factory=ActiveSetQPSolver)
    print_header: bool = eqx.field(static=True, default=True)
    print_time: bool = eqx.field(static=True, default=True)

    def __check_init__(self):
        if self.max_iter < 0:
            raise ValueError("max_iter must be non-negative")
        if self.max_iter_ls < 0:
            raise ValueError("max_iter_ls must be non-negative")
        if not 0.0 < self.beta < 1.0:
            raise ValueError("beta must lie in (0, 1)")
        if self.c1 <= 0.0:
            raise ValueError("c1 must be positive")
        if self.merit_memory < 1:
            raise ValueError("merit_memory must be at least 1")
        if self.lbfgs_memory < 1:
            raise ValueError("lbfgs_memory must be at least 1")
        if self.tol_pr < 0.0 or self.tol_du < 0.0:
            raise ValueError("tolerances must be non-negative")
        if self.min_step_size < 0.0:
            raise ValueError("min_step_size must be non-negative")
        if self.hessian_approximation not in ("exact", "limited-memory"):
            raise ValueError(
                "hessian_approximation must be 'exact' or 'limited-memory', "
                f"got {self.hessian_approximation!r}"
            )

    @property
    def exact_hessian(self) -> bool:
        return self.hessian_approximation == "exact"

    def _evaluate_derivatives(
        self, nlp: AbstractNLP, x: Vector, stats: EvaluationStats
    ) -> tuple[float, Vector, Float[Array, " m"], SparseMatrix]:
        """Objective, gradient, constraints and Jacobian at ``x``."""
        if nlp.ng > 0:
            logger.debug("Calculating Jacobian")
            g, jac = stats.call("eval_jac_g", nlp.eval_jac_g, x)
            g = jnp.asarray(g, dtype=x.dtype)
        else:
            g, jac = jnp.zeros((0,), dtype=x.dtype), SparseMatrix.empty(0, nlp.nx)
        logger.debug("Calculating gradient of the objective")
        f, grad_f = stats.call("eval_grad_f", nlp.eval_grad_f, x)
        return float(f), jnp.asarray(grad_f, dtype=x.dtype), g, jac

    def _evaluate_hessian(
        self,
        nlp: AbstractNLP,
        x: Vector,
        mu: Float[Array, " m"],
        stats: EvaluationStats,
    ) -> SparseMatrix:
        logger.debug("Calculating the Hessian of the Lagrangian")
        return with_diagonal(stats.call("eval_h", nlp.eval_hess_lag, x, mu, 1.0))

    def _regularize(self, hessian: SparseMatrix) -> tuple[SparseMatrix, float]:
        if self.regularize:
            return regularize(hessian)
        return hessian, 0.0

    def init(
        self,
        nlp: AbstractNLP,
        x0: ArrayLike,
        lbx: ArrayLike | None = None,
        ubx: ArrayLike | None = None,
        lbg: ArrayLike | None = None,
        ubg: ArrayLike | None = None,
        lam_x0: ArrayLike | None = None,
        lam_g0: ArrayLike | None = None,
        stats: EvaluationStats | None = None,
    ) -> SQPState:
        """Validate the inputs and evaluate everything needed at ``x0``.

        Missing bounds default to plus or minus infinity and missing
        multipliers to zero.

        Raises:
            ValueError: Inconsistent lengths, or a lower bound above its
                upper bound.
        """
        if stats is None:
            stats = EvaluationStats()
        nx, ng = nlp.nx, nlp.ng

        x = as_vector(x0)
        bounds = Bounds(
            lbx=as_vector(lbx, -jnp.inf, nx),
            ubx=as_vector(ubx, jnp.inf, nx),
            lbg=as_vector(lbg, -jnp.inf, ng),
            ubg=as_vector(ubg, jnp.inf, ng),
        )
        mu_x = as_vector(lam_x0, 0.0, nx)
        mu = as_vector(lam_g0, 0.0, ng)
        for name, value, size in [
            ("x0", x, nx),
            ("lbx", bounds.lbx, nx),
            ("ubx", bounds.ubx, nx),
            ("lbg", bounds.lbg, ng),
            ("ubg", bounds.ubg, ng),
            ("lam_x0", mu_x, nx),
            ("lam_g0", mu, ng),
        ]:
            if value.shape != (size,):
                raise ValueError(f"{name} must have length {size}, got {value.shape}")
        if bool(jnp.any(bounds.lbx > bounds.ubx)):
            raise ValueError("lbx must not exceed ubx")
        if bool(jnp.any(bounds.lbg > bounds.ubg)):
            raise ValueError("lbg must not exceed ubg")

        f, grad_f, g, jac = self._evaluate_derivatives(nlp, x, stats)
        if self.exact_hessian:
            hessian = self._evaluate_hessian(nlp, x, mu, stats)
        else:
            hessian = SparseMatrix.identity(nx)
        glag = compute_lagrangian_gradient(grad_f, jac, mu, mu_x)
        qp_hessian, reg = self._regularize(hessian)

        if self.print_header:
            logger.info("-" * 43)
            logger.info("This is sqp_jax.SQPMethod.")
            if self.exact_hessian:
                logger.info("Using exact Hessian")
            else:
                logger.info("Using limited memory BFGS Hessian approximation")
            logger.info("Number of variables:                       %9d", nx)
            logger.info("Number of constraints:                     %9d", ng)
            logger.info("Number of nonzeros in constraint Jacobian: %9d", jac.nnz)
            logger.info("Number of nonzeros in Lagrangian Hessian:  %9d", hessian.nnz)

        return SQPState(
            iteration=0,
            x=x,
            x_old=x,
            f=f,
            grad_f=grad_f,
            g=g,
            jac=jac,
            mu=mu,
            mu_x=mu_x,
            glag=glag,
            glag_old=glag,
            hessian=hessian,
            qp_hessian=qp_hessian,
            reg=reg,
            sigma=0.0,
            merit_history=MeritHistory.empty(self.merit_memory),
            dx=jnp.zeros_like(x),
            t=0.0,
            ls_trials=0,
            ls_success=True,
            bounds=bounds,
            records=(),
        )

    def record(self, state: SQPState) -> SQPState:
        """Measure the current iterate and append it to the iteration log."""
        bounds = state.bounds
        inf_pr = float(
            primal_infeasibility(
                state.x, bounds.lbx, bounds.ubx, state.g, bounds.lbg, bounds.ubg
            )
        )
        rec = IterationRecord(
            iteration=state.iteration,
            obj=state.f,
            inf_pr=inf_pr,
            inf_du=norm_inf(state.glag),
            d_norm=norm_inf(state.dx),
            reg=state.reg,
            ls_trials=state.ls_trials,
            ls_success=state.ls_success,
            sigma=state.sigma,
        )
        if rec.iteration % 10 == 0:
            logger.info(_TABLE_HEADER)
        lg_rg = f"{math.log10(rec.reg):7.2f}" if rec.reg > 0.0 else f"{'-':>7}"
        logger.info(
            "%4d %14.6e %9.2e %9.2e %9.2e %s %3d%s",
            rec.iteration,
            rec.obj,
            rec.inf_pr,
            rec.inf_du,
            rec.d_norm,
            lg_rg,
            rec.ls_trials,
            "" if rec.ls_success else "F",
        )
        return dataclasses.replace(state, records=(*state.records, rec))

    def terminate(self, state: SQPState) -> TerminationOutcome | None:
        """Termination test on the most recent iteration record.

        Returns:
            The outcome, or None to keep iterating. The user-requested stop is
            decided by the callback in :meth:`solve`.
        """
        rec = state.records[-1]
        if rec.inf_pr < self.tol_pr and rec.inf_du < self.tol_du:
            return TerminationOutcome.SOLVE_SUCCEEDED
        if state.iteration >= self.max_iter:
            return TerminationOutcome.MAX_ITERATIONS_EXCEEDED
        if state.iteration > 0 and rec.d_norm <= self.min_step_size:
            return TerminationOutcome.STEP_TOO_SMALL
        return None

    def step(
        self,
        nlp: AbstractNLP,
        state: SQPState,
        stats: EvaluationStats | None = None,
    ) -> SQPState:
        """Perform one SQP iteration.

        Raises:
            EvaluationError: The oracle failed outside the line search.
            QPSolveError: The QP subproblem could not be solved.
        """
        if stats is None:
            stats = EvaluationStats()
        iteration = state.iteration + 1
        x, bounds = state.x, state.bounds

        logger.debug("Formulating QP")
        hessian_qp = state.qp_hessian
        qp_solution = self.qp_solver.solve(
            hessian_qp,
            state.grad_f,
            state.jac,
            bounds.lbx - x,
            bounds.ubx - x,
            bounds.lbg - state.g,
            bounds.ubg - state.g,
            x0=state.dx,
        )
        logger.debug("QP solved")
        dx = qp_solution.x

        if bool(hessian_qp.quad_form(dx) < 0.0):
            warnings.warn(
                "Indefinite Hessian detected", IndefiniteHessianWarning, stacklevel=2
            )

        sigma = update_penalty_parameter(
            state.sigma, qp_solution.lam_x, qp_solution.lam_a
        )

        inf_pr = float(
            primal_infeasibility(
                x, bounds.lbx, bounds.ubx, state.g, bounds.lbg, bounds.ubg
            )
        )
        line_search = backtracking_line_search(
            lambda x_trial: try_evaluate(nlp, x_trial, stats.call),
            x,
            dx,
            state.f,
            state.grad_f,
            inf_pr,
            sigma,
            state.merit_history,
            bounds,
            c1=self.c1,
            beta=self.beta,
            max_iter=self.max_iter_ls,
        )
        t = line_search.step_size

        mu = t * qp_solution.lam_a + (1.0 - t) * state.mu
        mu_x = t * qp_solution.lam_x + (1.0 - t) * state.mu_x
        x_new = line_search.x

        if self.exact_hessian:
            glag_old = state.glag
        else:
            # Old point, new multipliers
            glag_old = compute_lagrangian_gradient(state.grad_f, state.jac, mu, mu_x)

        f, grad_f, g, jac = self._evaluate_derivatives(nlp, x_new, stats)
        glag = compute_lagrangian_gradient(grad_f, jac, mu, mu_x)

        if self.exact_hessian:
            hessian = self._evaluate_hessian(nlp, x_new, mu, stats)
        else:
            logger.debug("Updating the BFGS approximation")
            hessian = limited_memory_update(
                state.hessian, iteration, self.lbfgs_memory, x_new, x, glag, glag_old
            )
        qp_hessian, reg = self._regularize(hessian)

        return SQPState(
            iteration=iteration,
            x=x_new,
            x_old=x,
            f=f,
            grad_f=grad_f,
            g=g,
            jac=jac,
            mu=mu,
            mu_x=mu_x,
            glag=glag,
            glag_old=glag_old,
            hessian=hessian,
            qp_hessian=qp_hessian,
            reg=reg,
            sigma=sigma,
            merit_history=line_search.merit_history,
            dx=dx,
            t=t,
            ls_trials=line_search.n_trials,
            ls_success=line_search.success,
            bounds=bounds,
            records=state.records,
        )

    def postprocess(
        self,
        state: SQPState,
        status: TerminationOutcome,
        stats: EvaluationStats,
    ) -> SQPSolution:
        """Package the final iterate into an :class:`SQPSolution`."""
        message = _TERMINATION_MESSAGES[status].format(state.iteration)
        logger.info(message)
        if self.print_time:
            stats.log()
        return SQPSolution(
            x=state.x,
            f=state.f,
            g=state.g,
            lam_g=state.mu,
            lam_x=state.mu_x,
            status=status,
            iterations=state.records,
            stats=stats,
        )

    def solve(
        self,
        nlp: AbstractNLP,
        x0: ArrayLike,
        lbx: ArrayLike | None = None,
        ubx: ArrayLike | None = None,
        lbg: ArrayLike | None = None,
        ubg: ArrayLike | None = None,
        lam_x0: ArrayLike | None = None,
        lam_g0: ArrayLike | None = None,
        callback: IterationCallback | None = None,
    ) -> SQPSolution:
        """Run the SQP iteration from ``x0`` until a termination outcome.

        Args:
            nlp: The NLP oracle.
            x0: Starting point.
            lbx, ubx: Simple bounds (default unbounded).
            lbg, ubg: Constraint bounds (default unbounded). ``lbg == ubg``
                marks an equality constraint.
            lam_x0, lam_g0: Initial multipliers (default zero).
            callback: Called once per iteration with an :class:`Iterate`; a
                non-zero return value stops the run.

        Returns:
            SQPSolution with the last accepted point.
        """
        stats = EvaluationStats()
        start = time.perf_counter()
        state = self.init(nlp, x0, lbx, ubx, lbg, ubg, lam_x0, lam_g0, stats)
        while True:
            state = self.record(state)
            if callback is not None:
                iterate = Iterate(
                    f=state.f,
                    x=state.x,
                    g=state.g,
                    lam_g=state.mu,
                    lam_x=state.mu_x,
                    record=state.records[-1],
                )
                if stats.call("callback_fcn", callback, iterate):
                    status = TerminationOutcome.USER_REQUESTED_STOP
                    break
            status = self.terminate(state)
            if status is not None:
                break
            state = self.step(nlp, state, stats)
        stats.record("mainloop", time.perf_counter() - start)
        return self.postprocess(state, status, stats)
