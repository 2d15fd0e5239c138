# tests/test_kernel.py
import jax
import jax.numpy as jnp
import numpy as np
import pytest
from numpy.testing import assert_allclose

from kef_score.kernel import GaussianKernel

FD_STEP = 1e-5
RTOL = 1e-5
ATOL = 1e-8

# -----------------------------------------------------------------------------
# Small helpers
# -----------------------------------------------------------------------------


def central_diff(f, z, h=FD_STEP):
    """
    Central finite difference Jacobian of ``f`` at ``z``.
    Output index ``[..., m]`` is the derivative with respect to ``z[m]``.
    """
    z = np.asarray(z, dtype=float)
    cols = []
    for m in range(z.shape[0]):
        e = np.zeros_like(z)
        e[m] = h
        cols.append((np.asarray(f(z + e)) - np.asarray(f(z - e))) / (2 * h))
    return np.stack(cols, axis=-1)


@pytest.fixture
def pair(rng, dim):
    x = rng.normal(scale=0.7, size=dim)
    y = rng.normal(scale=0.7, size=dim)
    return x, y


# -----------------------------------------------------------------------------
# Kernel value
# -----------------------------------------------------------------------------


def test_kernel_is_symmetric(kernel, rows):
    for a in range(rows.shape[0]):
        for b in range(rows.shape[0]):
            assert kernel.value(rows[a], rows[b]) == kernel.value(rows[b], rows[a])


def test_kernel_is_one_on_the_diagonal(kernel, rows):
    for a in range(rows.shape[0]):
        assert kernel.value(rows[a], rows[a]) == 1.0


def test_kernel_value():
    kernel = GaussianKernel(sigma=2.0)
    got = kernel.value(jnp.array([0.0]), jnp.array([1.0]))
    assert_allclose(got, np.exp(-0.5), rtol=1e-14)


@pytest.mark.parametrize("sigma", [0.0, -1.0, float("nan"), float("inf")])
def test_invalid_sigma_raises(sigma):
    with pytest.raises(ValueError):
        GaussianKernel(sigma=sigma)


# -----------------------------------------------------------------------------
# Derivatives against finite differences
# -----------------------------------------------------------------------------


def test_dx_matches_finite_difference(kernel, pair):
    x, y = pair
    expected = central_diff(lambda z: kernel.value(z, y), x)
    assert_allclose(kernel.dx(x, y), expected, rtol=RTOL, atol=ATOL)


def test_dx_dx_matches_finite_difference(kernel, pair):
    x, y = pair
    J = central_diff(lambda z: kernel.dx(z, y), x)
    assert_allclose(kernel.dx_dx(x, y), np.diag(J), rtol=RTOL, atol=ATOL)


def test_dx_i_dx_j_matches_finite_difference(kernel, pair):
    x, y = pair
    expected = central_diff(lambda z: kernel.dx(z, y), x)
    assert_allclose(kernel.dx_i_dx_j(x, y), expected, rtol=RTOL, atol=ATOL)


def test_hessian_matches_finite_difference(kernel, pair):
    x, y = pair
    expected = central_diff(lambda w: kernel.dx(x, w), y)
    assert_allclose(kernel.hessian(x, y), expected, rtol=RTOL, atol=ATOL)


def test_dx_dx_dy_matches_finite_difference(kernel, pair):
    x, y = pair
    expected = central_diff(lambda w: kernel.dx_dx(x, w), y)
    assert_allclose(kernel.dx_dx_dy(x, y), expected, rtol=RTOL, atol=ATOL)


def test_dx_dx_dy_dy_matches_finite_difference(kernel, pair):
    x, y = pair
    T = central_diff(lambda w: kernel.dx_dx_dy(x, w), y)
    expected = np.einsum("ijj->ij", T)
    assert_allclose(kernel.dx_dx_dy_dy(x, y), expected, rtol=RTOL, atol=ATOL)


def test_dx_i_dx_i_dx_j_matches_finite_difference(kernel, pair):
    x, y = pair
    expected = central_diff(lambda z: kernel.dx_dx(z, y), x)
    assert_allclose(kernel.dx_i_dx_i_dx_j(x, y), expected, rtol=RTOL, atol=ATOL)


# -----------------------------------------------------------------------------
# Derivatives against autodiff
# -----------------------------------------------------------------------------


def test_closed_forms_match_autodiff(kernel, pair):
    x, y = jnp.asarray(pair[0]), jnp.asarray(pair[1])

    assert_allclose(kernel.dx(x, y), jax.grad(kernel.value)(x, y), rtol=1e-12, atol=1e-14)
    assert_allclose(
        kernel.hessian(x, y), jax.jacfwd(kernel.dx, argnums=1)(x, y), rtol=1e-12, atol=1e-14
    )
    assert_allclose(
        kernel.dx_i_dx_j(x, y), jax.jacfwd(kernel.dx, argnums=0)(x, y), rtol=1e-12, atol=1e-14
    )
    assert_allclose(
        kernel.dx_dx_dy(x, y), jax.jacfwd(kernel.dx_dx, argnums=1)(x, y), rtol=1e-12, atol=1e-14
    )
    assert_allclose(
        kernel.dx_i_dx_i_dx_j(x, y),
        jax.jacfwd(kernel.dx_dx, argnums=0)(x, y),
        rtol=1e-12,
        atol=1e-14,
    )


def test_mixed_hessian_is_symmetric(kernel, pair):
    x, y = pair
    H = np.asarray(kernel.hessian(x, y))
    assert np.array_equal(H, H.T)
    assert np.array_equal(H, np.asarray(kernel.hessian(y, x)))
