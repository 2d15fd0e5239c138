import jax, jax.numpy as jnp
from functools import partial
from jax import Array, lax, vmap
from typing import Callable, Optional

from kef_score.kernel import GaussianKernel
from kef_score.linear import blocks_to_matrix


def parallel_for(
    body: Callable[[Array], Array], xs: Array, batch_size: Optional[int] = None
) -> Array:
    r"""
    Maps ``body`` over the leading axis of ``xs``.

    With ``batch_size=None`` the whole axis is vectorised in one partition.
    Otherwise the axis is cut into partitions of ``batch_size`` rows, each
    partition is vectorised and the partitions run one after another, which
    bounds the size of the per-pair intermediates. Output row ``i`` is always
    ``body(xs[i])`` so callers combine the partials in a fixed order.

    Args:
        body:
            Function of one row of ``xs``.
        xs:
            Array whose leading axis is mapped over.
        batch_size:
            Partition size. ``None`` vectorises everything.

    Returns:
        Array:
            Stacked outputs of ``body``.
    """
    if batch_size is None or batch_size >= xs.shape[0]:
        return vmap(body)(xs)
    return lax.map(body, xs, batch_size=batch_size)


@partial(jax.jit, static_argnames=("kernel", "batch_size"))
def compute_h(kernel: GaussianKernel, X: Array, *, batch_size: Optional[int] = None) -> Array:
    r"""
    Averaged third-order statistics

    .. math::

        h_b = \frac{1}{n} \sum_{a} \sum_{i} \frac{\partial^3 k(x_a, x_b)}{\partial x_i^2 \partial y_j}.

    The outer loop runs over ``b``; each iteration owns segment ``b``.

    Args:
        kernel:
            Gaussian kernel.
        X:
            Training points, shape ``(n, d)``.
        batch_size:
            Partition size of the outer loop.

    Returns:
        Array:
            Shape ``(n d,)``.
    """
    n = X.shape[0]

    def segment_b(x_b):
        terms = vmap(lambda x_a: kernel.dx_dx_dy(x_a, x_b).sum(axis=0))(X)
        return terms.sum(axis=0)

    h = parallel_for(segment_b, X, batch_size)
    return h.reshape(-1) / n


@partial(jax.jit, static_argnames=("kernel", "batch_size"))
def kernel_hessian_all(
    kernel: GaussianKernel, X: Array, *, batch_size: Optional[int] = None
) -> Array:
    r"""
    Block matrix of all pairwise mixed Hessians, block ``(a, b)`` being
    :math:`\partial^2 k(x_a, x_b) / \partial x \partial y`.

    Each unordered pair ``a <= b`` is evaluated once and written to both
    ``(a, b)`` and ``(b, a)``, so the result equals its transpose exactly.

    Returns:
        Array:
            Shape ``(n d, n d)``.
    """
    n, d = X.shape
    idx_a, idx_b = jnp.triu_indices(n)

    pairs = parallel_for(
        lambda ab: kernel.hessian(X[ab[0]], X[ab[1]]),
        jnp.stack([idx_a, idx_b], axis=1),
        batch_size,
    )

    blocks = jnp.zeros((n, n, d, d), dtype=X.dtype)
    blocks = blocks.at[idx_a, idx_b].set(pairs)
    blocks = blocks.at[idx_b, idx_a].set(pairs)
    return blocks_to_matrix(blocks)


@partial(jax.jit, static_argnames=("kernel", "batch_size"))
def compute_xi_norm_2(
    kernel: GaussianKernel, X: Array, *, batch_size: Optional[int] = None
) -> Array:
    r"""
    Averaged fourth-order statistic

    .. math::

        \lVert \xi \rVert^2 = \frac{1}{n^2} \sum_{a, b} \sum_{i, j}
        \frac{\partial^4 k(x_a, x_b)}{\partial x_i^2 \partial y_j^2}.

    Returns:
        Array:
            Scalar.
    """
    n = X.shape[0]

    def row_a(x_a):
        return vmap(lambda x_b: kernel.dx_dx_dy_dy(x_a, x_b).sum())(X).sum()

    partials = parallel_for(row_a, X, batch_size)
    return partials.sum() / n**2
