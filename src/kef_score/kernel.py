import math
import jax.numpy as jnp
from jax import Array
from dataclasses import dataclass


@dataclass(frozen=True)
class GaussianKernel:
    r"""
    Isotropic Gaussian kernel and its closed-form partial derivatives.

    .. math::

        k(x, y) = \exp\left(-\frac{\lVert x - y \rVert^2}{\sigma}\right)

    Every pairwise method takes two single samples of shape ``(d,)``. The first
    argument ``x`` is the point the density is evaluated at (or the first training
    point), the second argument ``y`` is a training point. Derivatives are exact,
    written as expansions in :math:`a = 2/\sigma`.

    Args:
        sigma:
            Bandwidth :math:`\sigma > 0`.
    """

    sigma: float = 1.0

    def __post_init__(self):
        sigma = float(self.sigma)
        if not sigma > 0 or not math.isfinite(sigma):
            raise ValueError(f"`sigma` must be a finite positive number, got {self.sigma}")
        object.__setattr__(self, "sigma", sigma)

    def value(self, x: Array, y: Array) -> Array:
        """
        Evaluates the kernel between two samples.

        Args:
            x:
                A single sample of shape ``(d,)``.
            y:
                A single sample of shape ``(d,)``.

        Returns:
            Array:
                Scalar kernel value.
        """
        return jnp.exp(-jnp.sum((x - y) ** 2) / self.sigma)

    def dx(self, x: Array, y: Array) -> Array:
        r"""
        Gradient with respect to the first argument,
        :math:`\nabla_x k = 2 k (y - x) / \sigma`.

        Returns:
            Array:
                Shape ``(d,)``.
        """
        diff = y - x
        k = jnp.exp(-jnp.sum(diff**2) / self.sigma)
        return 2 * k * diff / self.sigma

    def dx_dx(self, x: Array, y: Array) -> Array:
        r"""
        Diagonal of the second derivative with respect to the first argument,
        :math:`\partial^2 k / \partial x_i^2 = k \left(a^2 (x_i - y_i)^2 - a\right)`.

        Returns:
            Array:
                Shape ``(d,)``.
        """
        sq_diff = (x - y) ** 2
        k = jnp.exp(-jnp.sum(sq_diff) / self.sigma)
        return k * (sq_diff * (2.0 / self.sigma) ** 2 - 2.0 / self.sigma)

    def hessian(self, x: Array, y: Array) -> Array:
        r"""
        Mixed second derivative :math:`\partial^2 k / \partial x_i \partial y_j`.

        .. math::

            H = k \left(\frac{2}{\sigma} I - \frac{4}{\sigma^2} (x - y)(x - y)^\top \right)

        Args:
            x:
                A single sample of shape ``(d,)``.
            y:
                A single sample of shape ``(d,)``.

        Returns:
            Array:
                Symmetric matrix of shape ``(d,d)``.
        """
        diff = x - y
        k = jnp.exp(-jnp.sum(diff**2) / self.sigma)
        d = x.shape[0]

        H = -jnp.outer(diff, diff) / self.sigma**2 * k * 4
        return H + jnp.eye(d, dtype=H.dtype) * (2 * k / self.sigma)

    def dx_dx_dy(self, x: Array, y: Array) -> Array:
        r"""
        Third-order mixed derivative, entry ``[i, j]`` is
        :math:`\partial / \partial y_j \left(\partial^2 k / \partial x_i^2\right)`.

        With :math:`\delta = x - y`:

        .. math::

            a^3 k \, \delta_i^2 \delta_j - 2 a^2 k \, \delta_i [i = j] - a^2 k \, \delta_j

        Not symmetric in general.

        Returns:
            Array:
                Shape ``(d,d)``.
        """
        diff = x - y
        diff2 = diff**2
        k = jnp.exp(-jnp.sum(diff2) / self.sigma)
        a = 2.0 / self.sigma

        R = a**3 * k * jnp.outer(diff2, diff)
        R = R - jnp.diag(a**2 * k * 2 * diff)
        return R - (a**2 * k * diff)[None, :]  # subtracted from every row

    def dx_dx_dy_dy(self, x: Array, y: Array) -> Array:
        r"""
        Fourth-order mixed derivative, entry ``[i, j]`` is
        :math:`\partial^2 / \partial y_j^2 \left(\partial^2 k / \partial x_i^2\right)`.

        With :math:`\delta = x - y`:

        .. math::

            a^4 k \, \delta_i^2 \delta_j^2 - a^3 k (\delta_i^2 + \delta_j^2) + a^2 k
            + [i = j] \left(2 a^2 k - 4 a^3 k \, \delta_i^2\right)

        Returns:
            Array:
                Symmetric matrix of shape ``(d,d)``.
        """
        diff2 = (x - y) ** 2
        k = jnp.exp(-jnp.sum(diff2) / self.sigma)
        a = 2.0 / self.sigma
        d = x.shape[0]
        eye = jnp.eye(d, dtype=diff2.dtype)

        factor = k * a**3
        R = k * a**4 * jnp.outer(diff2, diff2)
        R = R - jnp.diag(6 * factor * diff2)

        # broadcast corrections, both row- and column-wise
        scaled = factor * diff2
        R = R - scaled[None, :] - scaled[:, None] + jnp.diag(2 * scaled)

        factor = k * a**2
        return R + factor * (1.0 + 2.0 * eye)

    def dx_i_dx_i_dx_j(self, x: Array, y: Array) -> Array:
        r"""
        Third derivative with respect to the first argument only, entry ``[i, j]``
        is :math:`\partial / \partial x_j \left(\partial^2 k / \partial x_i^2\right)`.

        With :math:`\delta = y - x`:

        .. math::

            a^3 k \, \delta_i^2 \delta_j - a^2 k \, \delta_j - 2 a^2 k \, \delta_i [i = j]

        Returns:
            Array:
                Shape ``(d,d)``.
        """
        diff = y - x
        sq_diff = diff**2
        k = jnp.exp(-jnp.sum(sq_diff) / self.sigma)
        a = 2.0 / self.sigma

        R = k * a**3 * jnp.outer(sq_diff, diff)
        R = R - (k * diff * a**2)[None, :]
        return R - jnp.diag(2 * k * diff * a**2)

    def dx_i_dx_j(self, x: Array, y: Array) -> Array:
        r"""
        Hessian with respect to the first argument,
        :math:`\partial^2 k / \partial x_i \partial x_j = a^2 k \, \delta_i \delta_j - a k [i = j]`
        with :math:`\delta = y - x`.

        Returns:
            Array:
                Symmetric matrix of shape ``(d,d)``.
        """
        diff = y - x
        k = jnp.exp(-jnp.sum(diff**2) / self.sigma)
        d = x.shape[0]

        R = k * (2.0 / self.sigma) ** 2 * jnp.outer(diff, diff)
        return R - jnp.eye(d, dtype=R.dtype) * (k * 2.0 / self.sigma)
