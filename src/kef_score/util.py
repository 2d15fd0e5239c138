import jax.numpy as jnp
from jax import Array
from typing import Callable

from kef_score.estimator import KernelExpFamily


def gaussian_score(X: Array, mean: Array | float = 0.0, var: float = 1.0) -> Array:
    r"""
    Score :math:`\nabla \log p(x) = -(x - \mu) / s^2` of an isotropic Gaussian,
    evaluated at the columns of ``X``.

    Args:
        X:
            ``(d, m)`` matrix of query columns.
        mean:
            Mean :math:`\mu`, scalar or shape ``(d,)``.
        var:
            Variance :math:`s^2`.

    Returns:
        Array:
            Shape ``(d, m)``.
    """
    mean = jnp.asarray(mean)
    if mean.ndim == 1:
        mean = mean[:, None]
    return -(X - mean) / var


def fisher_divergence(
    est: KernelExpFamily, X: Array, score: Callable[[Array], Array]
) -> Array:
    r"""
    Empirical Fisher divergence between a fitted estimator and a reference score,

    .. math::

        \frac{1}{2 m} \sum_{i=1}^m \lVert \nabla \log \tilde p(x_i) - \nabla \log p(x_i) \rVert^2.

    Args:
        est:
            Fitted estimator.
        X:
            ``(d, m)`` evaluation points.
        score:
            Reference score, maps ``(d, m)`` to ``(d, m)``.

    Returns:
        Array:
            Scalar.
    """
    diff = est.grad_multiple(X) - score(X)
    return 0.5 * jnp.mean(jnp.sum(diff**2, axis=0))
