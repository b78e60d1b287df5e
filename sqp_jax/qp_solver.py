"""QP Subproblem Solver for SQP.

At each SQP iteration the driver hands a QP oracle the subproblem

    minimize    (1/2) d^T H d + g^T d
    subject to  lbx <= d <= ubx
                lba <= A d <= uba

where all bounds are already expressed relative to the current iterate.

The default oracle, :class:`ActiveSetQPSolver`, rewrites the two-sided
bounds as rows of a standard-form problem

    A_eq d = b_eq,    A_in d >= b_in

(equalities where the lower and upper bound coincide, one row per finite
side otherwise) and solves it with a two-phase primal **active-set**
method:

1. A feasible point is found by minimizing the largest violation of the
   inequality rows, itself a linear program solved by the same iteration.
2. From that point, the working set grows by one blocking row at a time
   (ratio test) and shrinks by the row with the most negative multiplier.
   Steps are taken in the null space of the working set, so the working
   rows stay linearly independent and never outnumber the variables.

The null-space step handles indefinite and singular Hessians: directions of
negative or zero curvature are followed until a row blocks them, and a QP
that stays unbounded along such a direction is reported as a failure.

Multipliers returned by an oracle follow the sign convention

    H d + g + A^T lam_a + lam_x = 0,

so that active upper bounds carry positive and active lower bounds carry
negative multipliers.
"""

import abc
from typing import NamedTuple

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float, Int

from sqp_jax.sparsity import SparseMatrix
from sqp_jax.types import QPSolveError


class QPSolution(NamedTuple):
    """Primal step and multipliers returned by a QP oracle.

    Attributes:
        x: Primal solution (the SQP step).
        lam_x: Multipliers of the simple bounds.
        lam_a: Multipliers of the linear constraints.
    """

    x: Float[Array, " n"]
    lam_x: Float[Array, " n"]
    lam_a: Float[Array, " m"]


class AbstractQPSolver(eqx.Module):
    """Interface of the QP oracle used by the SQP driver."""

    @abc.abstractmethod
    def solve(
        self,
        H: SparseMatrix,
        g: Float[Array, " n"],
        A: SparseMatrix,
        lbx: Float[Array, " n"],
        ubx: Float[Array, " n"],
        lba: Float[Array, " m"],
        uba: Float[Array, " m"],
        x0: Float[Array, " n"] | None = None,
    ) -> QPSolution:
        """Solve the QP; raise :class:`QPSolveError` on failure.

        ``x0`` is a primal warm-start hint which solvers are free to ignore.
        """


class StandardFormQP(NamedTuple):
    """A QP rewritten with one-sided rows.

    ``eq_source`` and ``in_source`` map each row back to the two-sided
    problem: indices ``< n`` refer to the simple bound on variable ``i`` and
    indices ``>= n`` to linear constraint ``i - n``. ``in_sign`` is ``+1``
    for lower-bound rows and ``-1`` for upper-bound rows.
    """

    A_eq: Float[Array, "m_eq n"]
    b_eq: Float[Array, " m_eq"]
    A_in: Float[Array, "m_in n"]
    b_in: Float[Array, " m_in"]
    eq_source: Int[np.ndarray, " m_eq"]
    in_source: Int[np.ndarray, " m_in"]
    in_sign: Float[np.ndarray, " m_in"]


def to_standard_form(
    A: Float[Array, "m n"],
    lbx: Float[Array, " n"],
    ubx: Float[Array, " n"],
    lba: Float[Array, " m"],
    uba: Float[Array, " m"],
) -> StandardFormQP:
    """Convert two-sided bounds into equality and ``>=`` rows.

    Row selection happens on the host, so the bound vectors must be concrete.
    """
    n = lbx.shape[0]
    rows = jnp.concatenate([jnp.eye(n), A], axis=0)
    lower = np.asarray(jnp.concatenate([lbx, lba]))
    upper = np.asarray(jnp.concatenate([ubx, uba]))

    is_eq = np.isfinite(lower) & (lower == upper)
    has_lower = np.isfinite(lower) & ~is_eq
    has_upper = np.isfinite(upper) & ~is_eq

    eq_source = np.flatnonzero(is_eq)
    lower_source = np.flatnonzero(has_lower)
    upper_source = np.flatnonzero(has_upper)

    # Lower rows: a^T d >= lb.  Upper rows: -a^T d >= -ub.
    in_source = np.concatenate([lower_source, upper_source]).astype(int)
    in_sign = np.concatenate(
        [np.ones(lower_source.size), -np.ones(upper_source.size)]
    )
    A_in = rows[in_source] * in_sign[:, None]
    b_in = jnp.asarray(
        np.concatenate([lower[lower_source], -upper[upper_source]]),
        dtype=rows.dtype,
    )
    return StandardFormQP(
        A_eq=rows[eq_source],
        b_eq=jnp.asarray(lower[eq_source], dtype=rows.dtype),
        A_in=A_in,
        b_in=b_in,
        eq_source=eq_source.astype(int),
        in_source=in_source,
        in_sign=in_sign,
    )


def _null_space(A_w: np.ndarray, n: int, tol: float) -> np.ndarray:
    """Orthonormal basis (as columns) of the null space of the working rows."""
    if A_w.shape[0] == 0:
        return np.eye(n)
    _, s, vt = np.linalg.svd(A_w)
    rank = int(np.sum(s > tol * max(1.0, s[0])))
    return vt[rank:].T


def _search_direction(
    H: np.ndarray, q: np.ndarray, Z: np.ndarray, tol: float
) -> tuple[np.ndarray, bool]:
    """Step from the current point within the null space ``Z``.

    ``q`` is the gradient of the quadratic at the current point.

    Returns:
        The direction and whether it is a Newton step, i.e. the minimizer of
        the quadratic over the subspace, reached at step length 1. Any other
        direction is a descent direction of non-positive curvature along
        which only a blocking row limits the step.
    """
    if Z.shape[1] == 0:
        return np.zeros_like(q), True
    r = Z.T @ q
    M = Z.T @ H @ Z
    w, V = np.linalg.eigh(0.5 * (M + M.T))
    curvature_tol = tol * max(1.0, float(np.max(np.abs(w))))

    if w[0] < -curvature_tol:
        p = Z @ V[:, 0]
        return (-p if q @ p > 0.0 else p), False

    flat = w <= curvature_tol
    r_flat = V[:, flat].T @ r
    if np.linalg.norm(r_flat) > tol * max(1.0, float(np.linalg.norm(q))):
        return -Z @ (V[:, flat] @ r_flat), False

    curved = ~flat
    return -Z @ (V[:, curved] @ ((V[:, curved].T @ r) / w[curved])), True


def _active_set_iterations(
    H: np.ndarray,
    g: np.ndarray,
    A: np.ndarray,
    b: np.ndarray,
    m_eq: int,
    d: np.ndarray,
    max_iter: int,
    tol: float,
) -> tuple[np.ndarray, np.ndarray, bool]:
    """Primal active-set iterations started from a feasible point ``d``.

    The first ``m_eq`` rows of ``A d (=, >=) b`` are equalities and always
    belong to the working set; the working set starts with no inequality
    rows.

    Returns:
        The final point, one multiplier per row (``H d + g = A_w^T lambda``,
        zero off the working set) and a convergence flag.

    Raises:
        QPSolveError: The objective is unbounded below on the feasible set.
    """
    n = d.shape[0]
    A_in, b_in = A[m_eq:], b[m_eq:]
    working = np.zeros(A_in.shape[0], dtype=bool)
    multipliers = np.zeros(A.shape[0])

    for _ in range(max_iter):
        rows = np.concatenate([np.arange(m_eq), m_eq + np.flatnonzero(working)])
        A_w = A[rows]
        q = H @ d + g
        p, newton = _search_direction(H, q, _null_space(A_w, n, tol), tol)

        if np.linalg.norm(p) <= tol:
            # Stationary on the working set: check the multiplier signs
            multipliers = np.zeros(A.shape[0])
            if rows.size > 0:
                multipliers[rows] = np.linalg.lstsq(A_w.T, q, rcond=None)[0]
            lam = multipliers[m_eq:]
            if not np.any(working) or np.min(lam[working]) >= -tol:
                return d, multipliers, True
            active = np.flatnonzero(working)
            working[active[np.argmin(lam[active])]] = False
            continue

        # Ratio test over the inactive rows that the direction moves towards
        step = 1.0 if newton else np.inf
        blocking = None
        slope = A_in @ p
        candidates = np.flatnonzero(~working & (slope < -tol))
        if candidates.size > 0:
            slack = np.maximum(A_in[candidates] @ d - b_in[candidates], 0.0)
            ratios = slack / -slope[candidates]
            j = int(np.argmin(ratios))
            if ratios[j] < step:
                step, blocking = float(ratios[j]), int(candidates[j])
        if not np.isfinite(step):
            raise QPSolveError("QP subproblem is unbounded below")

        d = d + step * p
        if blocking is not None:
            working[blocking] = True

    return d, multipliers, False


def _feasible_point(
    qp: StandardFormQP, max_iter: int, tol: float
) -> np.ndarray:
    """A point satisfying every row of ``qp`` (phase 1).

    Starts from the least-squares solution of the equality rows and, if an
    inequality row is violated, minimizes the largest violation ``t`` over
    ``(d, t)`` subject to ``A_eq d = b_eq``, ``A_in d + t >= b_in`` and
    ``t >= 0``.

    Raises:
        QPSolveError: The rows admit no common point.
    """
    A_eq, b_eq = np.asarray(qp.A_eq, dtype=float), np.asarray(qp.b_eq, dtype=float)
    A_in, b_in = np.asarray(qp.A_in, dtype=float), np.asarray(qp.b_in, dtype=float)
    m_eq, n = A_eq.shape
    m_in = A_in.shape[0]

    d = np.zeros(n)
    if m_eq > 0:
        d = np.linalg.lstsq(A_eq, b_eq, rcond=None)[0]
        residual = np.max(np.abs(A_eq @ d - b_eq))
        if residual > tol * max(1.0, float(np.max(np.abs(b_eq)))):
            raise QPSolveError("QP equality constraints are inconsistent")

    violation = max(0.0, float(np.max(b_in - A_in @ d, initial=0.0)))
    if violation <= tol:
        return d

    t_column = np.concatenate([np.zeros((m_eq, 1)), np.ones((m_in, 1))])
    A = np.block(
        [
            [np.concatenate([A_eq, A_in]), t_column],
            [np.zeros((1, n)), np.ones((1, 1))],
        ]
    )
    b = np.concatenate([b_eq, b_in, [0.0]])
    cost = np.zeros(n + 1)
    cost[n] = 1.0
    y, _, converged = _active_set_iterations(
        np.zeros((n + 1, n + 1)),
        cost,
        A,
        b,
        m_eq,
        np.concatenate([d, [violation]]),
        max_iter,
        tol,
    )
    if not converged:
        raise QPSolveError(
            f"No feasible QP point found within {max_iter} iterations"
        )
    if y[n] > tol:
        raise QPSolveError(
            f"QP subproblem is infeasible (largest violation {y[n]:.3e})"
        )
    return y[:n]


def solve_standard_qp(
    H: Float[Array, "n n"],
    g: Float[Array, " n"],
    qp: StandardFormQP,
    max_iter: int = 100,
    tol: float = 1e-8,
) -> tuple[Float[Array, " n"], Float[Array, " m_eq"], Float[Array, " m_in"], bool]:
    """Two-phase primal active-set method on a standard-form QP.

    Each phase may take up to ``max_iter`` active-set iterations.

    Returns:
        Step, equality multipliers, inequality multipliers (>= 0 at a
        solution) and a convergence flag. Multipliers satisfy
        ``H d + g - A_eq^T nu - A_in^T lam = 0``.

    Raises:
        QPSolveError: The QP is infeasible or unbounded below.
    """
    H_np = np.asarray(H, dtype=float)
    g_np = np.asarray(g, dtype=float)
    m_eq = qp.A_eq.shape[0]

    d = _feasible_point(qp, max_iter, tol)
    A = np.concatenate([np.asarray(qp.A_eq), np.asarray(qp.A_in)]).astype(float)
    b = np.concatenate([np.asarray(qp.b_eq), np.asarray(qp.b_in)]).astype(float)
    d, multipliers, converged = _active_set_iterations(
        H_np, g_np, A, b, m_eq, d, max_iter, tol
    )
    dtype = jnp.result_type(g)
    return (
        jnp.asarray(d, dtype=dtype),
        jnp.asarray(multipliers[:m_eq], dtype=dtype),
        jnp.asarray(multipliers[m_eq:], dtype=dtype),
        converged,
    )


class ActiveSetQPSolver(AbstractQPSolver):
    """Two-phase primal active-set QP oracle.

    Attributes:
        max_iter: Maximum number of active-set iterations per phase.
        tol: Feasibility, curvature and multiplier-sign tolerance.
    """

    max_iter: int = eqx.field(static=True, default=100)
    tol: float = 1e-8

    def solve(
        self,
        H: SparseMatrix,
        g: Float[Array, " n"],
        A: SparseMatrix,
        lbx: Float[Array, " n"],
        ubx: Float[Array, " n"],
        lba: Float[Array, " m"],
        uba: Float[Array, " m"],
        x0: Float[Array, " n"] | None = None,
    ) -> QPSolution:
        n = g.shape[0]
        m = A.shape[0]
        qp = to_standard_form(A.to_dense(), lbx, ubx, lba, uba)
        d, nu, lam, converged = solve_standard_qp(
            H.to_dense(), g, qp, self.max_iter, self.tol
        )
        if not converged:
            raise QPSolveError(
                f"Active-set QP did not converge within {self.max_iter} iterations"
            )
        if not bool(jnp.all(jnp.isfinite(d))):
            raise QPSolveError("QP step contains non-finite values")

        # Standard form: H d + g = A_eq^T nu + A_in^T lam, where each A_in row
        # is sign * a_i. Hence the multiplier of a_i is -nu_i (equality rows)
        # and -sign * lam_i (inequality rows).
        combined = jnp.zeros(n + m, dtype=d.dtype)
        combined = combined.at[qp.eq_source].add(-nu)
        combined = combined.at[qp.in_source].add(-jnp.asarray(qp.in_sign) * lam)
        return QPSolution(x=d, lam_x=combined[:n], lam_a=combined[n:])
