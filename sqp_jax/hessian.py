"""Damped BFGS Hessian Approximation for SQP.

This module maintains a quasi-Newton approximation ``B_k`` to the Hessian of
the Lagrangian on a fixed sparsity pattern. Each update uses the curvature
pair

    s_k = x_{k+1} - x_k,    y_k = grad L(x_{k+1}) - grad L(x_k)

where both Lagrangian gradients are evaluated with the *new* multipliers.

Powell's damping is applied to ``y_k`` whenever the curvature condition
``s^T y >= 0.2 s^T B s`` fails, which keeps ``B_k`` positive definite in
constrained problems where ``s^T y`` is frequently small or negative.

To avoid unbounded accumulation of curvature information the approximation
is periodically reset: every ``lbfgs_memory`` iterations all off-diagonal
entries are dropped before the update.
"""

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from sqp_jax.sparsity import SparseMatrix, drop_off_diagonal


@jaxtyped(typechecker=beartype)
def compute_lagrangian_gradient(
    grad_f: Float[Array, " n"],
    jac: SparseMatrix,
    mu: Float[Array, " m"],
    mu_x: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Compute the gradient of the Lagrangian.

    The Lagrangian is:
        L(x, mu, mu_x) = f(x) + mu^T g(x) + mu_x^T x

    so its gradient with respect to x is:
        grad L = grad f + J^T mu + mu_x

    Args:
        grad_f: Gradient of the objective.
        jac: Constraint Jacobian (m x n).
        mu: Constraint multipliers.
        mu_x: Simple-bound multipliers.

    Returns:
        The Lagrangian gradient.
    """
    grad_L = grad_f + mu_x
    if jac.shape[0] > 0:
        grad_L = grad_L + jac.rmatvec(mu)
    return grad_L


@jaxtyped(typechecker=beartype)
def bfgs_update(
    B: SparseMatrix,
    x: Float[Array, " n"],
    x_old: Float[Array, " n"],
    glag: Float[Array, " n"],
    glag_old: Float[Array, " n"],
    damping_threshold: float = 0.2,
) -> SparseMatrix:
    """One Powell-damped BFGS update of ``B``.

    With ``q = B s``, the damped gradient difference is

        y <- omega * y + (1 - omega) * q,
        omega = (1 - threshold) s^T q / (s^T q - s^T y)

    applied only when ``s^T y < threshold * s^T q``. The update is then

        B+ = B + (y y^T) / (s^T y) - (q q^T) / (q^T s)

    projected onto the pattern of ``B``.

    A step with ``s^T B s <= 0`` (in practice ``s = 0`` after a rejected line
    search) carries no curvature information and returns ``B`` unchanged.
    """
    s = x - x_old
    y = glag - glag_old
    q = B.matvec(s)
    sBs = jnp.dot(s, q)
    if not bool(sBs > 0.0):
        return B

    sy = jnp.dot(s, y)
    if bool(sy < damping_threshold * sBs):
        omega = (1.0 - damping_threshold) * sBs / (sBs - sy)
        y = omega * y + (1.0 - omega) * q

    theta = 1.0 / jnp.dot(s, y)
    phi = 1.0 / sBs
    B_new = B.to_dense() + theta * jnp.outer(y, y) - phi * jnp.outer(q, q)
    return B.with_values(B_new)


def limited_memory_update(
    B: SparseMatrix,
    iteration: int,
    lbfgs_memory: int,
    x: Float[Array, " n"],
    x_old: Float[Array, " n"],
    glag: Float[Array, " n"],
    glag_old: Float[Array, " n"],
) -> SparseMatrix:
    """BFGS update with a diagonal reset every ``lbfgs_memory`` iterations."""
    if iteration % lbfgs_memory == 0:
        B = drop_off_diagonal(B)
    return bfgs_update(B, x, x_old, glag, glag_old)
