"""NLP oracle contract and an automatic-differentiation implementation.

The SQP driver never differentiates anything itself. It consumes an *NLP
oracle* that evaluates, at a given point,

- the objective ``f(x)`` and its gradient,
- the constraint values ``g(x)`` and their Jacobian,
- the Hessian of the Lagrangian ``sigma * f(x) + mu^T g(x)``.

Every evaluator signals numerical failure by raising
:class:`~sqp_jax.types.EvaluationError`. The line search turns those
failures into :class:`Failed` values (see :func:`try_evaluate`) so that a
recoverable failure is never confused with a fatal one.
"""

import abc
from collections.abc import Callable
from typing import Any, NamedTuple

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Bool, Float

from sqp_jax.sparsity import SparseMatrix, with_diagonal
from sqp_jax.types import ConstraintFn, EvaluationError, ObjectiveFn, Scalar, Vector
from sqp_jax.utils import args_closure


class AbstractNLP(eqx.Module):
    """Interface consumed by :class:`~sqp_jax.solver.SQPMethod`.

    Subclasses declare the problem dimensions ``nx`` and ``ng`` and implement
    the five evaluators. ``eval_g`` and ``eval_jac_g`` are never called when
    ``ng == 0``; ``eval_hess_lag`` is only needed for the exact Hessian mode.
    The Jacobian and Hessian must always be returned on the same sparsity
    pattern.
    """

    nx: eqx.AbstractVar[int]
    ng: eqx.AbstractVar[int]

    @abc.abstractmethod
    def eval_f(self, x: Vector) -> Scalar:
        """Objective value."""

    @abc.abstractmethod
    def eval_g(self, x: Vector) -> Float[Array, " ng"]:
        """Constraint values."""

    @abc.abstractmethod
    def eval_grad_f(self, x: Vector) -> tuple[Scalar, Vector]:
        """Objective value and gradient."""

    @abc.abstractmethod
    def eval_jac_g(self, x: Vector) -> tuple[Float[Array, " ng"], SparseMatrix]:
        """Constraint values and Jacobian (ng x nx)."""

    def eval_hess_lag(
        self, x: Vector, mu: Float[Array, " ng"], sigma: float
    ) -> SparseMatrix:
        """Hessian of ``sigma * f + mu^T g`` (nx x nx)."""
        raise NotImplementedError(
            f"{type(self).__name__} does not provide the Hessian of the Lagrangian; "
            "use hessian_approximation='limited-memory'"
        )


class Evaluated(NamedTuple):
    """Successful evaluation of objective and constraints at a trial point."""

    f: float
    g: Float[Array, " ng"]


class Failed(NamedTuple):
    """The oracle raised while evaluating a trial point."""

    reason: str


EvaluationOutcome = Evaluated | Failed


def _direct_call(name: str, fn: Callable, *args):
    return fn(*args)


def try_evaluate(
    nlp: AbstractNLP, x: Vector, call: Callable | None = None
) -> EvaluationOutcome:
    """Evaluate ``f`` and ``g`` at ``x``, returning a tagged result.

    Only :class:`EvaluationError` is converted into :class:`Failed`; any
    other exception is a bug in the oracle and propagates.

    Args:
        nlp: The NLP oracle.
        x: Trial point.
        call: Optional ``call(name, fn, *args)`` used to invoke each
            evaluator, e.g. to count and time the calls.
    """
    if call is None:
        call = _direct_call
    try:
        f = float(call("eval_f", nlp.eval_f, x))
        if nlp.ng > 0:
            g = jnp.asarray(
                call("eval_g", nlp.eval_g, x), dtype=jnp.result_type(float)
            )
        else:
            g = jnp.zeros((0,))
    except EvaluationError as ex:
        return Failed(str(ex))
    return Evaluated(f, g)


def _check_finite(name: str, *values: Array) -> None:
    for value in values:
        if not bool(jnp.all(jnp.isfinite(value))):
            raise EvaluationError(f"{name} returned non-finite values")


class AutodiffNLP(AbstractNLP):
    """NLP oracle built from plain JAX functions with automatic differentiation.

    The gradient is computed with ``jax.value_and_grad``, the constraint
    Jacobian with reverse mode (``jax.jacrev``) or forward mode
    (``jax.jacfwd``) whichever needs fewer passes, and the Hessian of the
    Lagrangian with ``jax.hessian``.

    Exceptions raised by the user functions, and non-finite results, are
    re-raised as :class:`EvaluationError` naming the failing evaluator.

    Attributes:
        objective: ``f(x, args) -> scalar``.
        nx: Number of decision variables.
        constraints: Optional ``g(x, args) -> (ng,)``.
        ng: Number of constraints.
        args: Extra arguments forwarded to both functions.
        jac_sparsity: Optional (ng, nx) boolean pattern of the Jacobian.
        hess_sparsity: Optional (nx, nx) boolean pattern of the Lagrangian
            Hessian. The diagonal is always added.

    Example:
        >>> import jax.numpy as jnp
        >>> from sqp_jax import AutodiffNLP
        >>>
        >>> nlp = AutodiffNLP(
        ...     objective=lambda x, args: jnp.sum(x**2),
        ...     nx=2,
        ...     constraints=lambda x, args: jnp.array([x[0] + x[1]]),
        ...     ng=1,
        ... )
    """

    objective: ObjectiveFn = eqx.field(static=True)
    nx: int = eqx.field(static=True)
    constraints: ConstraintFn | None = eqx.field(static=True, default=None)
    ng: int = eqx.field(static=True, default=0)
    args: Any = None
    jac_sparsity: Bool[np.ndarray, "ng nx"] | None = None
    hess_sparsity: Bool[np.ndarray, "nx nx"] | None = None

    def __check_init__(self):
        if self.ng > 0 and self.constraints is None:
            raise ValueError("ng > 0 requires a constraints function")
        if self.jac_sparsity is not None and np.shape(self.jac_sparsity) != (
            self.ng,
            self.nx,
        ):
            raise ValueError("jac_sparsity must have shape (ng, nx)")
        if self.hess_sparsity is not None and np.shape(self.hess_sparsity) != (
            self.nx,
            self.nx,
        ):
            raise ValueError("hess_sparsity must have shape (nx, nx)")

    def _call(self, name: str, fn, *fn_args):
        try:
            return fn(*fn_args)
        except EvaluationError:
            raise
        except Exception as ex:
            raise EvaluationError(f"Error calling {name}: {ex}") from ex

    def eval_f(self, x: Vector) -> Scalar:
        f = self._call("eval_f", self.objective, x, self.args)
        _check_finite("eval_f", f)
        return f

    def eval_g(self, x: Vector) -> Float[Array, " ng"]:
        if self.ng == 0:
            return jnp.zeros((0,))
        g = self._call("eval_g", self.constraints, x, self.args)
        _check_finite("eval_g", g)
        return g

    def eval_grad_f(self, x: Vector) -> tuple[Scalar, Vector]:
        value_and_grad = jax.value_and_grad(args_closure(self.objective, self.args))
        f, grad = self._call("eval_grad_f", value_and_grad, x)
        _check_finite("eval_grad_f", f, grad)
        return f, grad

    def eval_jac_g(self, x: Vector) -> tuple[Float[Array, " ng"], SparseMatrix]:
        if self.ng == 0:
            return jnp.zeros((0,)), SparseMatrix.empty(0, self.nx)
        g_fn = args_closure(self.constraints, self.args)
        jac_fn = jax.jacfwd(g_fn) if self.nx <= self.ng else jax.jacrev(g_fn)
        g = self._call("eval_jac_g", g_fn, x)
        jac = self._call("eval_jac_g", jac_fn, x)
        _check_finite("eval_jac_g", g, jac)
        return g, SparseMatrix(jac, self.jac_sparsity)

    def eval_hess_lag(
        self, x: Vector, mu: Float[Array, " ng"], sigma: float
    ) -> SparseMatrix:
        def lagrangian(y):
            value = sigma * self.objective(y, self.args)
            if self.ng > 0:
                value = value + jnp.dot(mu, self.constraints(y, self.args))
            return value

        hess = self._call("eval_hess_lag", jax.hessian(lagrangian), x)
        _check_finite("eval_hess_lag", hess)
        return with_diagonal(SparseMatrix(hess, self.hess_sparsity))
