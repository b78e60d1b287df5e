"""Tests for the NLP oracle built on automatic differentiation."""

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import pytest

from sqp_jax.oracle import AbstractNLP, AutodiffNLP, Evaluated, Failed, try_evaluate
from sqp_jax.sparsity import SparseMatrix
from sqp_jax.types import EvaluationError

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def _objective(x, args):
    return x[0] ** 2 + x[0] * x[1]


def _constraints(x, args):
    return jnp.array([x[0] * x[1], x[0] + 2.0 * x[1]])


def _nlp(**kwargs):
    return AutodiffNLP(
        objective=_objective, nx=2, constraints=_constraints, ng=2, **kwargs
    )


class TestAutodiffNLP:
    """Tests for the derivatives produced by AutodiffNLP."""

    def test_objective_and_gradient(self):
        nlp = _nlp()
        x = jnp.array([1.0, 2.0])
        assert float(nlp.eval_f(x)) == pytest.approx(3.0)
        f, grad = nlp.eval_grad_f(x)
        assert float(f) == pytest.approx(3.0)
        np.testing.assert_allclose(grad, [4.0, 1.0])

    def test_constraints_and_jacobian(self):
        nlp = _nlp()
        x = jnp.array([1.0, 2.0])
        np.testing.assert_allclose(nlp.eval_g(x), [2.0, 5.0])
        g, jac = nlp.eval_jac_g(x)
        np.testing.assert_allclose(g, [2.0, 5.0])
        np.testing.assert_allclose(jac.to_dense(), [[2.0, 1.0], [1.0, 2.0]])

    def test_jacobian_sparsity(self):
        pattern = np.array([[True, True], [False, True]])
        nlp = _nlp(jac_sparsity=pattern)
        _, jac = nlp.eval_jac_g(jnp.array([1.0, 2.0]))
        np.testing.assert_allclose(jac.to_dense(), [[2.0, 1.0], [0.0, 2.0]])
        assert jac.nnz == 3

    def test_hessian_of_lagrangian(self):
        """sigma * [[2, 1], [1, 0]] + mu_0 * [[0, 1], [1, 0]]"""
        nlp = _nlp()
        H = nlp.eval_hess_lag(jnp.array([1.0, 2.0]), jnp.array([3.0, -1.0]), 2.0)
        np.testing.assert_allclose(H.to_dense(), [[4.0, 5.0], [5.0, 0.0]])

    def test_hessian_pattern_includes_diagonal(self):
        pattern = np.array([[False, True], [True, False]])
        nlp = _nlp(hess_sparsity=pattern)
        H = nlp.eval_hess_lag(jnp.array([1.0, 2.0]), jnp.zeros(2), 1.0)
        np.testing.assert_array_equal(H.pattern, np.ones((2, 2), dtype=bool))

    def test_unconstrained(self):
        nlp = AutodiffNLP(objective=_objective, nx=2)
        g, jac = nlp.eval_jac_g(jnp.array([1.0, 2.0]))
        assert g.shape == (0,)
        assert jac.shape == (0, 2)
        H = nlp.eval_hess_lag(jnp.array([1.0, 2.0]), jnp.zeros((0,)), 1.0)
        np.testing.assert_allclose(H.to_dense(), [[2.0, 1.0], [1.0, 0.0]])


class TestAutodiffValidation:
    def test_constraints_required(self):
        with pytest.raises(ValueError, match="constraints"):
            AutodiffNLP(objective=_objective, nx=2, ng=1)

    def test_sparsity_shape(self):
        with pytest.raises(ValueError, match="jac_sparsity"):
            _nlp(jac_sparsity=np.ones((3, 2), dtype=bool))
        with pytest.raises(ValueError, match="hess_sparsity"):
            _nlp(hess_sparsity=np.ones((2, 3), dtype=bool))


class TestEvaluationFailures:
    """Tests for the conversion of user errors into EvaluationError."""

    def test_exception_is_wrapped(self):
        def objective(x, args):
            if float(x[0]) < 0.0:
                raise ValueError("negative input")
            return jnp.sum(x**2)

        nlp = AutodiffNLP(objective=objective, nx=1)
        with pytest.raises(EvaluationError, match="Error calling eval_f"):
            nlp.eval_f(jnp.array([-1.0]))

    def test_non_finite_value(self):
        nlp = AutodiffNLP(objective=lambda x, args: jnp.log(x[0]), nx=1)
        with pytest.raises(EvaluationError, match="non-finite"):
            nlp.eval_f(jnp.array([-1.0]))
        with pytest.raises(EvaluationError, match="non-finite"):
            nlp.eval_grad_f(jnp.array([-1.0]))

    def test_try_evaluate(self):
        nlp = AutodiffNLP(objective=lambda x, args: jnp.log(x[0]), nx=1)
        outcome = try_evaluate(nlp, jnp.array([1.0]))
        assert isinstance(outcome, Evaluated)
        assert outcome.f == pytest.approx(0.0)
        assert outcome.g.shape == (0,)

        outcome = try_evaluate(nlp, jnp.array([-1.0]))
        assert isinstance(outcome, Failed)
        assert "non-finite" in outcome.reason

    def test_try_evaluate_uses_call_hook(self):
        names = []

        def call(name, fn, *args):
            names.append(name)
            return fn(*args)

        try_evaluate(_nlp(), jnp.array([1.0, 2.0]), call)
        assert names == ["eval_f", "eval_g"]

    def test_other_exceptions_propagate(self):
        class BrokenNLP(AbstractNLP):
            nx: int = eqx.field(static=True, default=1)
            ng: int = eqx.field(static=True, default=0)

            def eval_f(self, x):
                raise KeyError("bug")

            def eval_g(self, x):
                return jnp.zeros((0,))

            def eval_grad_f(self, x):
                return jnp.sum(x), jnp.ones(1)

            def eval_jac_g(self, x):
                return jnp.zeros((0,)), SparseMatrix.empty(0, 1)

        with pytest.raises(KeyError):
            try_evaluate(BrokenNLP(), jnp.array([0.0]))
        with pytest.raises(NotImplementedError):
            BrokenNLP().eval_hess_lag(jnp.array([0.0]), jnp.zeros((0,)), 1.0)
