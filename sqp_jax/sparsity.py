"""Sparse matrix values over a fixed sparsity pattern.

The SQP iteration only ever edits matrices whose structure is fixed up front
(the constraint Jacobian and the Hessian of the Lagrangian). This module
represents such a matrix as a pair of arrays: the numerical values and a
boolean pattern marking the structural nonzeros. Values outside the pattern
are always exactly zero.

All operations are pure: they return a new matrix with the *same* pattern.
"""

import equinox as eqx
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, ArrayLike, Bool, Float, ScalarLike, jaxtyped


class SparseMatrix(eqx.Module):
    """A matrix with a fixed structural sparsity pattern.

    Attributes:
        values: Matrix entries, zero outside the pattern.
        pattern: Boolean mask of structural nonzeros.
    """

    values: Float[Array, "rows cols"]
    pattern: Bool[Array, "rows cols"]

    def __init__(self, values: ArrayLike, pattern: ArrayLike | None = None):
        values = jnp.asarray(values, dtype=jnp.result_type(float))
        if pattern is None:
            pattern = jnp.ones(values.shape, dtype=bool)
        pattern = jnp.asarray(pattern, dtype=bool)
        if pattern.shape != values.shape:
            raise ValueError(
                f"Pattern shape {pattern.shape} does not match values shape "
                f"{values.shape}"
            )
        self.values = jnp.where(pattern, values, 0.0)
        self.pattern = pattern

    @classmethod
    def identity(cls, n: int) -> "SparseMatrix":
        """Identity values on a dense pattern (the initial BFGS matrix)."""
        return cls(jnp.eye(n), jnp.ones((n, n), dtype=bool))

    @classmethod
    def empty(cls, rows: int, cols: int) -> "SparseMatrix":
        """All-zero matrix with an empty pattern."""
        return cls(jnp.zeros((rows, cols)), jnp.zeros((rows, cols), dtype=bool))

    @property
    def shape(self) -> tuple[int, ...]:
        return self.values.shape

    @property
    def nnz(self) -> int:
        """Number of structural nonzeros."""
        return int(jnp.sum(self.pattern))

    def to_dense(self) -> Float[Array, "rows cols"]:
        return self.values

    def matvec(self, v: Float[Array, " cols"]) -> Float[Array, " rows"]:
        return self.values @ v

    def rmatvec(self, v: Float[Array, " rows"]) -> Float[Array, " cols"]:
        """Transposed product ``M^T v``."""
        return self.values.T @ v

    def quad_form(self, v: Float[Array, " n"]) -> Float[Array, ""]:
        """Quadratic form ``v^T M v``."""
        return jnp.dot(v, self.values @ v)

    def with_values(self, values: ArrayLike) -> "SparseMatrix":
        """New values projected onto this matrix's pattern."""
        return SparseMatrix(values, self.pattern)


@jaxtyped(typechecker=beartype)
def with_diagonal(matrix: SparseMatrix) -> SparseMatrix:
    """Extend the pattern of a square matrix with its diagonal.

    Entries that were not structurally present are added as explicit zeros,
    which guarantees that every variable owns a diagonal slot.
    """
    n = matrix.shape[0]
    pattern = matrix.pattern | jnp.eye(n, dtype=bool)
    return SparseMatrix(matrix.values, pattern)


@jaxtyped(typechecker=beartype)
def drop_off_diagonal(matrix: SparseMatrix) -> SparseMatrix:
    """Zero every off-diagonal entry while keeping the pattern."""
    n = matrix.shape[0]
    values = jnp.where(jnp.eye(n, dtype=bool), matrix.values, 0.0)
    return SparseMatrix(values, matrix.pattern)


@jaxtyped(typechecker=beartype)
def add_to_diagonal(matrix: SparseMatrix, shift: ScalarLike) -> SparseMatrix:
    """Add ``shift`` to every structurally present diagonal entry."""
    n = matrix.shape[0]
    on_diagonal = jnp.eye(n, dtype=bool) & matrix.pattern
    values = matrix.values + jnp.where(on_diagonal, shift, 0.0)
    return SparseMatrix(values, matrix.pattern)
