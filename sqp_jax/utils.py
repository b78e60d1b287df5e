from typing import Callable, TypeVar

import jax
import jax.numpy as jnp
from jaxtyping import ArrayLike

T = TypeVar("T")


def args_closure(
    fn: Callable[[jax.Array, T], jax.Array], args: T
) -> Callable[[jax.Array], jax.Array]:
    def wrapped(x: jax.Array) -> jax.Array:
        return fn(x, args)

    return wrapped


def as_vector(x: ArrayLike, fill: float = 0.0, size: int | None = None) -> jax.Array:
    """Convert to a 1-D float array; ``None`` becomes a vector filled with ``fill``."""
    if x is None:
        if size is None:
            raise ValueError("size is required when x is None")
        return jnp.full((size,), fill, dtype=jnp.result_type(float))
    return jnp.atleast_1d(jnp.asarray(x, dtype=jnp.result_type(float))).ravel()


def norm_inf(v: jax.Array) -> float:
    """Infinity norm, zero for empty vectors."""
    if v.size == 0:
        return 0.0
    return float(jnp.max(jnp.abs(v)))
