"""SQP-JAX: a Sequential Quadratic Programming engine built on JAX.

This package solves smooth nonlinear programs with simple bounds and
two-sided nonlinear constraints. Each iteration solves a QP subproblem built
from the exact Hessian of the Lagrangian or a damped BFGS approximation, and
globalizes the step with a non-monotone L1-merit backtracking line search.
Problem functions are supplied through an NLP oracle; the QP subproblem is
solved by a pluggable QP oracle.
"""

from sqp_jax.hessian import (
    bfgs_update,
    compute_lagrangian_gradient,
    limited_memory_update,
)
from sqp_jax.merit import (
    Bounds,
    LineSearchResult,
    MeritHistory,
    backtracking_line_search,
    compute_merit,
    primal_infeasibility,
    update_penalty_parameter,
)
from sqp_jax.oracle import (
    AbstractNLP,
    AutodiffNLP,
    Evaluated,
    EvaluationOutcome,
    Failed,
    try_evaluate,
)
from sqp_jax.qp_solver import AbstractQPSolver, ActiveSetQPSolver, QPSolution
from sqp_jax.regularization import gershgorin_regularization, regularize
from sqp_jax.solver import (
    EvaluationStats,
    Iterate,
    IterationRecord,
    SQPMethod,
    SQPSolution,
    SQPState,
)
from sqp_jax.sparsity import (
    SparseMatrix,
    add_to_diagonal,
    drop_off_diagonal,
    with_diagonal,
)
from sqp_jax.types import (
    ConstraintFn,
    EvaluationError,
    IndefiniteHessianWarning,
    IterationCallback,
    ObjectiveFn,
    QPSolveError,
    TerminationOutcome,
)

__all__ = [
    # Main solver
    "SQPMethod",
    "SQPState",
    "SQPSolution",
    "IterationRecord",
    "Iterate",
    "EvaluationStats",
    "TerminationOutcome",
    # NLP oracle
    "AbstractNLP",
    "AutodiffNLP",
    "Evaluated",
    "Failed",
    "EvaluationOutcome",
    "try_evaluate",
    # QP oracle
    "AbstractQPSolver",
    "ActiveSetQPSolver",
    "QPSolution",
    # Types and errors
    "ObjectiveFn",
    "ConstraintFn",
    "IterationCallback",
    "EvaluationError",
    "QPSolveError",
    "IndefiniteHessianWarning",
    # Sparse matrices
    "SparseMatrix",
    "with_diagonal",
    "drop_off_diagonal",
    "add_to_diagonal",
    # Merit function
    "Bounds",
    "MeritHistory",
    "LineSearchResult",
    "primal_infeasibility",
    "compute_merit",
    "update_penalty_parameter",
    "backtracking_line_search",
    # Hessian utilities
    "compute_lagrangian_gradient",
    "bfgs_update",
    "limited_memory_update",
    "gershgorin_regularization",
    "regularize",
]
