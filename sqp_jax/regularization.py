"""Gershgorin regularization of the Lagrangian Hessian.

By the Gershgorin circle theorem every eigenvalue of a symmetric matrix ``H``
is bounded below by ``min_j (H_jj - sum_{i != j} |H_ij|)``. When that bound is
negative, shifting the diagonal by its magnitude gives a matrix whose bound
is non-negative, which is sufficient for positive semidefiniteness.
"""

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import jaxtyped

from sqp_jax.sparsity import SparseMatrix, add_to_diagonal


@jaxtyped(typechecker=beartype)
def gershgorin_regularization(H: SparseMatrix) -> float:
    """Smallest diagonal shift that makes every Gershgorin bound non-negative.

    Returns:
        ``-min(0, min_j mineig_j)`` with ``mineig_j`` the column-wise
        Gershgorin lower bound. Zero when no shift is needed.
    """
    values = H.to_dense()
    diag = jnp.diag(values)
    off_diag = jnp.sum(jnp.abs(values), axis=0) - jnp.abs(diag)
    mineig = diag - off_diag
    return max(0.0, float(-jnp.min(mineig, initial=0.0)))


def regularize(H: SparseMatrix) -> tuple[SparseMatrix, float]:
    """Shift ``H`` by its Gershgorin regularization, if any is needed."""
    reg = gershgorin_regularization(H)
    if reg > 0.0:
        H = add_to_diagonal(H, reg)
    return H, reg
