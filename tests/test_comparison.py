"""Comparison tests between sqp_jax and scipy.optimize.minimize(method='SLSQP').

These tests verify that the SQP driver reaches the same solutions as the
SciPy reference implementation on standard constrained test problems.
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from scipy.optimize import minimize as scipy_minimize

from sqp_jax import AutodiffNLP, SQPMethod

# Enable 64-bit precision for fair comparison
jax.config.update("jax_enable_x64", True)


class TestInequalityConstraints:
    """Tests with linear inequality constraints and simple bounds."""

    def test_scipy_tutorial_problem(self):
        """The constrained example from the SciPy documentation.

        minimize (x0 - 1)^2 + (x1 - 2.5)^2
        subject to  x0 - 2 x1 + 2 >= 0
                   -x0 - 2 x1 + 6 >= 0
                   -x0 + 2 x1 + 2 >= 0
                    x0, x1 >= 0

        Minimum at (1.4, 1.7).
        """

        def objective(x):
            return (x[0] - 1) ** 2 + (x[1] - 2.5) ** 2

        A = np.array([[1.0, -2.0], [-1.0, -2.0], [-1.0, 2.0]])
        b = np.array([-2.0, -6.0, -2.0])
        x0 = np.array([2.0, 0.0])

        result_scipy = scipy_minimize(
            objective,
            x0,
            method="SLSQP",
            bounds=[(0, None), (0, None)],
            constraints={"type": "ineq", "fun": lambda x: A @ x - b},
            options={"ftol": 1e-12, "maxiter": 100},
        )

        nlp = AutodiffNLP(
            objective=lambda x, args: objective(x),
            nx=2,
            constraints=lambda x, args: jnp.asarray(A) @ x,
            ng=3,
        )
        sol = SQPMethod().solve(
            nlp, jnp.asarray(x0), lbx=jnp.zeros(2), lbg=jnp.asarray(b)
        )

        assert result_scipy.success
        assert sol.success
        np.testing.assert_allclose(sol.x, result_scipy.x, atol=1e-6)
        np.testing.assert_allclose(sol.x, [1.4, 1.7], atol=1e-8)
        # Active lower-bounded row carries a negative multiplier
        np.testing.assert_allclose(sol.lam_g, [-0.8, 0.0, 0.0], atol=1e-6)

    def test_quadratic_in_disk(self):
        """minimize |x - (2, 1)|^2  s.t. x0^2 + x1^2 <= 1  =>  (2, 1) / sqrt(5)"""

        def objective(x):
            return (x[0] - 2.0) ** 2 + (x[1] - 1.0) ** 2

        x0 = np.array([0.5, 0.5])
        result_scipy = scipy_minimize(
            objective,
            x0,
            method="SLSQP",
            constraints={
                "type": "ineq",
                "fun": lambda x: 1.0 - x[0] ** 2 - x[1] ** 2,
            },
            options={"ftol": 1e-12, "maxiter": 100},
        )

        nlp = AutodiffNLP(
            objective=lambda x, args: objective(x),
            nx=2,
            constraints=lambda x, args: jnp.array([x[0] ** 2 + x[1] ** 2]),
            ng=1,
        )
        sol = SQPMethod(max_iter=100).solve(
            nlp, jnp.asarray(x0), ubg=jnp.array([1.0])
        )

        expected = np.array([2.0, 1.0]) / np.sqrt(5.0)
        assert sol.success
        np.testing.assert_allclose(sol.x, result_scipy.x, atol=1e-5)
        np.testing.assert_allclose(sol.x, expected, atol=1e-6)


class TestEqualityConstraints:
    """Tests with equality constraints."""

    def test_sphere_linear_equality(self):
        """minimize |x|^2  s.t. x0 + 2 x1 + 3 x2 = 1"""
        a = np.array([1.0, 2.0, 3.0])
        x0 = np.zeros(3)

        result_scipy = scipy_minimize(
            lambda x: np.sum(x**2),
            x0,
            method="SLSQP",
            constraints={"type": "eq", "fun": lambda x: a @ x - 1.0},
            options={"ftol": 1e-12, "maxiter": 100},
        )

        nlp = AutodiffNLP(
            objective=lambda x, args: jnp.sum(x**2),
            nx=3,
            constraints=lambda x, args: jnp.array([jnp.dot(jnp.asarray(a), x)]),
            ng=1,
        )
        sol = SQPMethod().solve(
            nlp, jnp.asarray(x0), lbg=jnp.array([1.0]), ubg=jnp.array([1.0])
        )

        assert sol.success
        np.testing.assert_allclose(sol.x, result_scipy.x, atol=1e-6)
        np.testing.assert_allclose(sol.x, a / 14.0, atol=1e-8)

    @pytest.mark.slow
    def test_simplex_projection(self):
        """Project c onto the probability simplex in 20 dimensions.

        minimize |x - c|^2  s.t. sum(x) = 1, x >= 0

        Most of the lower bounds end up active.
        """
        n = 20
        c = np.arange(n) / 7.0
        x0 = np.full(n, 1.0 / n)

        result_scipy = scipy_minimize(
            lambda x: np.sum((x - c) ** 2),
            x0,
            method="SLSQP",
            bounds=[(0, None)] * n,
            constraints={"type": "eq", "fun": lambda x: np.sum(x) - 1.0},
            options={"ftol": 1e-12, "maxiter": 200},
        )

        nlp = AutodiffNLP(
            objective=lambda x, args: jnp.sum((x - args) ** 2),
            nx=n,
            constraints=lambda x, args: jnp.array([jnp.sum(x)]),
            ng=1,
            args=jnp.asarray(c),
        )
        sol = SQPMethod().solve(
            nlp,
            jnp.asarray(x0),
            lbx=jnp.zeros(n),
            lbg=jnp.array([1.0]),
            ubg=jnp.array([1.0]),
        )

        assert result_scipy.success
        assert sol.success
        np.testing.assert_allclose(sol.x, result_scipy.x, atol=1e-5)
        np.testing.assert_allclose(np.sum(sol.x), 1.0, atol=1e-8)


class TestMixedConstraints:
    """Tests with bounds, a nonlinear inequality and a nonlinear equality."""

    @pytest.mark.parametrize("hessian_approximation", ["exact", "limited-memory"])
    def test_hs071(self, hessian_approximation):
        """Hock-Schittkowski problem 71.

        minimize x0 x3 (x0 + x1 + x2) + x2
        subject to  x0 x1 x2 x3 >= 25
                    x0^2 + x1^2 + x2^2 + x3^2 = 40
                    1 <= x <= 5

        From x0 = (1, 5, 5, 1) the linearized subproblems violate more rows
        than there are variables. Minimum near (1, 4.743, 3.821, 1.379).
        """

        def objective(x):
            return x[0] * x[3] * (x[0] + x[1] + x[2]) + x[2]

        x0 = np.array([1.0, 5.0, 5.0, 1.0])
        result_scipy = scipy_minimize(
            objective,
            x0,
            method="SLSQP",
            bounds=[(1.0, 5.0)] * 4,
            constraints=[
                {"type": "ineq", "fun": lambda x: np.prod(x) - 25.0},
                {"type": "eq", "fun": lambda x: np.sum(x**2) - 40.0},
            ],
            options={"ftol": 1e-12, "maxiter": 200},
        )

        nlp = AutodiffNLP(
            objective=lambda x, args: objective(x),
            nx=4,
            constraints=lambda x, args: jnp.array([jnp.prod(x), jnp.sum(x**2)]),
            ng=2,
        )
        method = SQPMethod(hessian_approximation=hessian_approximation, max_iter=200)
        sol = method.solve(
            nlp,
            jnp.asarray(x0),
            lbx=jnp.ones(4),
            ubx=jnp.full(4, 5.0),
            lbg=jnp.array([25.0, 40.0]),
            ubg=jnp.array([jnp.inf, 40.0]),
        )

        assert result_scipy.success
        assert sol.success
        np.testing.assert_allclose(sol.x, result_scipy.x, atol=1e-4)
        assert sol.f == pytest.approx(17.0140173, rel=1e-6)
        np.testing.assert_allclose(sol.g, [25.0, 40.0], atol=1e-5)
