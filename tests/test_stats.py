# tests/test_stats.py
import jax.numpy as jnp
import numpy as np
import pytest
from numpy.testing import assert_allclose

from kef_score import stats
from kef_score.linear import block, blocks_to_matrix, segment, segments

# -----------------------------------------------------------------------------
# Baseline/reference loops to compare against
# -----------------------------------------------------------------------------


def baseline_h(kernel, X):
    n, d = X.shape
    h = np.zeros(n * d)
    for b in range(n):
        for a in range(n):
            h[b * d : (b + 1) * d] += np.asarray(kernel.dx_dx_dy(X[a], X[b])).sum(axis=0)
    return h / n


def baseline_hessian_all(kernel, X):
    n, d = X.shape
    G = np.zeros((n * d, n * d))
    for a in range(n):
        for b in range(n):
            G[a * d : (a + 1) * d, b * d : (b + 1) * d] = kernel.hessian(X[a], X[b])
    return G


def baseline_xi_norm_2(kernel, X):
    n = X.shape[0]
    total = 0.0
    for a in range(n):
        for b in range(n):
            total += float(np.asarray(kernel.dx_dx_dy_dy(X[a], X[b])).sum())
    return total / n**2


# -----------------------------------------------------------------------------
# Aggregates
# -----------------------------------------------------------------------------


def test_compute_h_matches_loop(kernel, rows):
    h = stats.compute_h(kernel, jnp.asarray(rows))
    assert h.shape == (rows.size,)
    assert_allclose(h, baseline_h(kernel, rows), rtol=1e-12, atol=1e-14)


def test_kernel_hessian_all_matches_loop(kernel, rows):
    G = stats.kernel_hessian_all(kernel, jnp.asarray(rows))
    assert G.shape == (rows.size, rows.size)
    assert_allclose(G, baseline_hessian_all(kernel, rows), rtol=1e-12, atol=1e-14)


def test_kernel_hessian_all_is_exactly_symmetric(kernel, rows):
    G = np.asarray(stats.kernel_hessian_all(kernel, jnp.asarray(rows)))
    assert np.array_equal(G, G.T)


def test_compute_xi_norm_2_matches_loop(kernel, rows):
    xi = stats.compute_xi_norm_2(kernel, jnp.asarray(rows))
    assert xi.shape == ()
    assert_allclose(xi, baseline_xi_norm_2(kernel, rows), rtol=1e-12)


@pytest.mark.parametrize("batch_size", [1, 2, 3, 5, 8])
def test_batch_size_does_not_change_aggregates(kernel, rows, batch_size):
    X = jnp.asarray(rows)

    assert_allclose(
        stats.compute_h(kernel, X, batch_size=batch_size),
        stats.compute_h(kernel, X),
        rtol=1e-12,
        atol=1e-14,
    )
    assert_allclose(
        stats.compute_xi_norm_2(kernel, X, batch_size=batch_size),
        stats.compute_xi_norm_2(kernel, X),
        rtol=1e-12,
    )
    G = np.asarray(stats.kernel_hessian_all(kernel, X, batch_size=batch_size))
    assert_allclose(G, stats.kernel_hessian_all(kernel, X), rtol=1e-12, atol=1e-14)
    assert np.array_equal(G, G.T)


def test_single_point(kernel, dim):
    X = jnp.zeros((1, dim))
    assert_allclose(stats.compute_h(kernel, X), np.zeros(dim))
    assert_allclose(stats.kernel_hessian_all(kernel, X), 2 / kernel.sigma * np.eye(dim))


# -----------------------------------------------------------------------------
# Block and segment views
# -----------------------------------------------------------------------------


def test_blocks_to_matrix_layout(rng):
    n, d = 3, 2
    T = rng.normal(size=(n, n, d, d))
    M = blocks_to_matrix(jnp.asarray(T))
    for a in range(n):
        for c in range(n):
            assert_allclose(block(M, a, c, d), T[a, c])


def test_segments_view(rng):
    n, d = 4, 3
    v = jnp.asarray(rng.normal(size=n * d))
    S = segments(v, d)
    assert S.shape == (n, d)
    for a in range(n):
        assert_allclose(segment(v, a, d), S[a])
        assert_allclose(S[a], v[a * d : (a + 1) * d])
