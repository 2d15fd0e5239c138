import math
import jax, jax.numpy as jnp
from jax import Array, vmap
from functools import partial
from dataclasses import dataclass
from typing import Optional
from loguru import logger

from kef_score.errors import NotFittedError
from kef_score.kernel import GaussianKernel
from kef_score.linear import LinearSystem, build_system, segments
from kef_score.solver import solve_system
from kef_score import stats


@dataclass(frozen=True)
class KernelExpFamilyConfig:
    r"""
    Immutable description of one estimator: training data and hyperparameters.

    Args:
        data:
            Training points as rows, shape ``(n, d)``. Use :py:meth:`from_columns`
            for a ``(d, n)`` matrix whose columns are points.
        sigma:
            Gaussian kernel bandwidth :math:`\sigma > 0`.
        lmbda:
            Regularization :math:`\lambda \ge 0`.
        batch_size:
            Partition size of the pairwise loops. ``None`` vectorises each loop in one go.
        rcond:
            Optional strict lower bound on the pivot ratio of the :math:`LDL^\top`
            factorization. ``0`` only rejects exactly singular systems.
    """

    data: Array
    sigma: float
    lmbda: float
    batch_size: Optional[int] = None
    rcond: float = 0.0

    def __post_init__(self):
        X = jnp.asarray(self.data)
        if X.ndim != 2:
            raise ValueError(f"`data` must be a 2-D array, got ndim={X.ndim}")
        if X.shape[0] < 1 or X.shape[1] < 1:
            raise ValueError(f"`data` must hold at least one point of dimension >= 1, got shape {X.shape}")
        if not jnp.issubdtype(X.dtype, jnp.floating):
            X = X.astype(jnp.result_type(float))
        if not bool(jnp.all(jnp.isfinite(X))):
            raise ValueError("`data` contains non-finite values")

        sigma = float(self.sigma)
        lmbda = float(self.lmbda)
        if not sigma > 0 or not math.isfinite(sigma):
            raise ValueError(f"`sigma` must be a finite positive number, got {self.sigma}")
        if not lmbda >= 0 or not math.isfinite(lmbda):
            raise ValueError(f"`lmbda` must be a finite non-negative number, got {self.lmbda}")
        if self.batch_size is not None and int(self.batch_size) < 1:
            raise ValueError(f"`batch_size` must be >= 1, got {self.batch_size}")
        if not float(self.rcond) >= 0 or not math.isfinite(float(self.rcond)):
            raise ValueError(f"`rcond` must be >= 0, got {self.rcond}")

        object.__setattr__(self, "data", X)
        object.__setattr__(self, "sigma", sigma)
        object.__setattr__(self, "lmbda", lmbda)
        if self.batch_size is not None:
            object.__setattr__(self, "batch_size", int(self.batch_size))

    @classmethod
    def from_columns(cls, data: Array, sigma: float, lmbda: float, **kwargs) -> "KernelExpFamilyConfig":
        """
        Builds the config from a ``(d, n)`` matrix whose columns are data points.
        """
        data = jnp.asarray(data)
        if data.ndim != 2:
            raise ValueError(f"`data` must be a 2-D array, got ndim={data.ndim}")
        return cls(data.T, sigma, lmbda, **kwargs)

    @property
    def kernel(self) -> GaussianKernel:
        return GaussianKernel(self.sigma)

    @property
    def num_data(self) -> int:
        return self.data.shape[0]

    @property
    def num_dimensions(self) -> int:
        return self.data.shape[1]


@dataclass(frozen=True)
class FittedState:
    """
    Coefficients produced by :func:`fit_state`.

    ``alpha_beta[0]`` is :math:`\\alpha`; ``alpha_beta[1 + a d : 1 + (a + 1) d]``
    is :math:`\\beta_a`. ``rcond`` is the pivot ratio reported by the solver.
    """

    alpha_beta: Array
    num_dimensions: int
    rcond: float = float("nan")

    @property
    def alpha(self) -> Array:
        return self.alpha_beta[0]

    @property
    def beta(self) -> Array:
        return segments(self.alpha_beta[1:], self.num_dimensions)


def fit_state(config: KernelExpFamilyConfig) -> FittedState:
    r"""
    Fits the coefficients :math:`(\alpha, \beta)` by score matching.

    Builds the pairwise statistics, assembles the augmented system and solves
    it with a symmetric indefinite factorization.

    Args:
        config:
            Training data and hyperparameters.

    Returns:
        FittedState:
            Fitted coefficients of shape ``(n d + 1,)``.

    Raises:
        FitError:
            If the system is non-finite or exactly singular, its pivot ratio is at or
            below a positive ``config.rcond``, or the solution is non-finite.
    """
    X = config.data
    n, d = X.shape
    logger.info(f"Fitting kernel exponential family (n={n}, d={d}, sigma={config.sigma}, lambda={config.lmbda})")

    system = _system(config)
    logger.debug(f"Solving system of size {system.n}")

    alpha_beta, rcond = solve_system(system, rcond=config.rcond)
    logger.info(f"Fit completed (pivot ratio {rcond:.3e})")

    return FittedState(jnp.asarray(alpha_beta, dtype=X.dtype), d, rcond)


def _system(config: KernelExpFamilyConfig) -> LinearSystem:
    X = config.data
    kernel = config.kernel
    bs = config.batch_size

    h = stats.compute_h(kernel, X, batch_size=bs)
    logger.debug("Computed h")
    all_hessians = stats.kernel_hessian_all(kernel, X, batch_size=bs)
    logger.debug("Computed all pairwise kernel Hessians")
    xi_norm_2 = stats.compute_xi_norm_2(kernel, X, batch_size=bs)
    logger.debug("Computed xi_norm_2")

    return build_system(h, all_hessians, xi_norm_2, config.lmbda, X.shape[0])


def _check_query(x: Array, d: int) -> Array:
    x = jnp.asarray(x)
    if x.shape != (d,):
        raise ValueError(f"Query must have shape ({d},), got {x.shape}")
    if not jnp.issubdtype(x.dtype, jnp.floating):
        x = x.astype(jnp.result_type(float))
    return x


def _check_queries(X: Array, d: int) -> Array:
    X = jnp.asarray(X)
    if X.ndim != 2 or X.shape[0] != d:
        raise ValueError(f"Queries must have shape ({d}, m), got {X.shape}")
    if not jnp.issubdtype(X.dtype, jnp.floating):
        X = X.astype(jnp.result_type(float))
    return X


@partial(jax.jit, static_argnames=("kernel",))
def _log_pdf(kernel: GaussianKernel, X: Array, alpha_beta: Array, x: Array) -> Array:
    n, d = X.shape
    alpha = alpha_beta[0]
    beta = segments(alpha_beta[1:], d)

    xi = vmap(lambda x_a: kernel.dx_dx(x, x_a).sum())(X).sum() / n
    beta_sum = vmap(lambda x_a, b_a: jnp.dot(kernel.dx(x, x_a), b_a))(X, beta).sum()
    return alpha * xi + beta_sum


@partial(jax.jit, static_argnames=("kernel",))
def _grad(kernel: GaussianKernel, X: Array, alpha_beta: Array, x: Array) -> Array:
    n, d = X.shape
    alpha = alpha_beta[0]
    beta = segments(alpha_beta[1:], d)

    xi_grad = vmap(lambda x_a: kernel.dx_i_dx_i_dx_j(x, x_a).sum(axis=0))(X).sum(axis=0) / n
    beta_sum_grad = vmap(lambda x_a, b_a: kernel.dx_i_dx_j(x, x_a) @ b_a)(X, beta).sum(axis=0)
    return alpha * xi_grad + beta_sum_grad


@partial(jax.jit, static_argnames=("kernel",))
def _log_pdf_multiple(kernel, X, alpha_beta, Q):
    return vmap(lambda q: _log_pdf(kernel, X, alpha_beta, q))(Q.T)


@partial(jax.jit, static_argnames=("kernel",))
def _grad_multiple(kernel, X, alpha_beta, Q):
    return vmap(lambda q: _grad(kernel, X, alpha_beta, q))(Q.T).T


def log_pdf(config: KernelExpFamilyConfig, state: FittedState, x: Array) -> Array:
    r"""
    Unnormalized log-density

    .. math::

        \log \tilde p(x) = \alpha \, \frac{1}{n} \sum_a \sum_i \frac{\partial^2 k(x, x_a)}{\partial x_i^2}
        + \sum_a \beta_a^\top \nabla_x k(x, x_a).

    Args:
        config:
            The configuration the state was fitted with.
        state:
            Fitted coefficients.
        x:
            Query point of shape ``(d,)``.

    Returns:
        Array:
            Scalar.
    """
    x = _check_query(x, config.num_dimensions)
    return _log_pdf(config.kernel, config.data, state.alpha_beta, x)


def grad(config: KernelExpFamilyConfig, state: FittedState, x: Array) -> Array:
    """
    Gradient of :func:`log_pdf` with respect to ``x``, shape ``(d,)``.
    """
    x = _check_query(x, config.num_dimensions)
    return _grad(config.kernel, config.data, state.alpha_beta, x)


class KernelExpFamily:
    r"""
    Kernel exponential family density estimated by score matching.

    The unnormalized log-density is a linear combination of Gaussian kernel
    derivatives centred on the training points,

    .. math::

        \log \tilde p(x) = \alpha \, \xi(x) + \sum_{a=1}^n \beta_a^\top \nabla_x k(x, x_a),

    and :math:`(\alpha, \beta)` solve a regularized linear system built from
    pairwise kernel derivatives.

    Construction only validates; :py:meth:`fit` does the work and must succeed
    before :py:meth:`log_pdf` or :py:meth:`grad` are called. After ``fit`` the
    estimator is read-only and may be evaluated from several threads.

    Args:
        data:
            ``(d, n)`` matrix whose columns are the training points.
        sigma:
            Gaussian kernel bandwidth, ``> 0``.
        lmbda:
            Regularization, ``>= 0``.
        batch_size:
            Partition size of the pairwise loops.
        rcond:
            Optional strict lower bound on the pivot ratio of the factorization.
    """

    name: str = "KernelExpFamily"

    def __init__(
        self,
        data: Array,
        sigma: float,
        lmbda: float,
        *,
        batch_size: Optional[int] = None,
        rcond: float = 0.0,
    ):
        self.config = KernelExpFamilyConfig.from_columns(
            data, sigma, lmbda, batch_size=batch_size, rcond=rcond
        )
        self._state: Optional[FittedState] = None

    def get_num_dimensions(self) -> int:
        return self.config.num_dimensions

    def get_num_data(self) -> int:
        return self.config.num_data

    def _point(self, idx: int) -> Array:
        n = self.config.num_data
        if not 0 <= idx < n:
            raise IndexError(f"Data index {idx} out of range for {n} points")
        return self.config.data[idx]

    ###  Kernel derivatives addressed by training index
    def kernel(self, idx_a: int, idx_b: int) -> Array:
        return self.config.kernel.value(self._point(idx_a), self._point(idx_b))

    def kernel_dx(self, x: Array, idx_b: int) -> Array:
        x = _check_query(x, self.get_num_dimensions())
        return self.config.kernel.dx(x, self._point(idx_b))

    def kernel_dx_dx(self, x: Array, idx_b: int) -> Array:
        x = _check_query(x, self.get_num_dimensions())
        return self.config.kernel.dx_dx(x, self._point(idx_b))

    def kernel_hessian(self, idx_a: int, idx_b: int) -> Array:
        return self.config.kernel.hessian(self._point(idx_a), self._point(idx_b))

    def kernel_dx_dx_dy(self, idx_a: int, idx_b: int) -> Array:
        return self.config.kernel.dx_dx_dy(self._point(idx_a), self._point(idx_b))

    def kernel_dx_dx_dy_dy(self, idx_a: int, idx_b: int) -> Array:
        return self.config.kernel.dx_dx_dy_dy(self._point(idx_a), self._point(idx_b))

    def kernel_dx_i_dx_i_dx_j(self, x: Array, idx_b: int) -> Array:
        x = _check_query(x, self.get_num_dimensions())
        return self.config.kernel.dx_i_dx_i_dx_j(x, self._point(idx_b))

    def kernel_dx_i_dx_j(self, x: Array, idx_b: int) -> Array:
        x = _check_query(x, self.get_num_dimensions())
        return self.config.kernel.dx_i_dx_j(x, self._point(idx_b))

    ###  Statistics and system
    def compute_h(self) -> Array:
        return stats.compute_h(self.config.kernel, self.config.data, batch_size=self.config.batch_size)

    def kernel_hessian_all(self) -> Array:
        return stats.kernel_hessian_all(
            self.config.kernel, self.config.data, batch_size=self.config.batch_size
        )

    def compute_xi_norm_2(self) -> Array:
        return stats.compute_xi_norm_2(
            self.config.kernel, self.config.data, batch_size=self.config.batch_size
        )

    def build_system(self) -> LinearSystem:
        return _system(self.config)

    ###  Fitting
    def fit(self) -> "KernelExpFamily":
        """
        Fits the coefficients, replacing any earlier fit.

        Returns:
            KernelExpFamily:
                ``self``.

        Raises:
            FitError:
                If the linear system cannot be solved reliably. The estimator is
                left unfitted.
        """
        self._state = None
        self._state = fit_state(self.config)
        return self

    @property
    def is_fitted(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> FittedState:
        if self._state is None:
            raise NotFittedError(f"{self.name} must be fitted before it is evaluated")
        return self._state

    @property
    def alpha_beta(self) -> Array:
        return self.state.alpha_beta

    @property
    def alpha(self) -> Array:
        return self.state.alpha

    @property
    def beta(self) -> Array:
        """Coefficients :math:`\\beta` as an ``(n, d)`` array."""
        return self.state.beta

    ###  Evaluation
    def log_pdf(self, x: Array) -> Array:
        return log_pdf(self.config, self.state, x)

    def grad(self, x: Array) -> Array:
        return grad(self.config, self.state, x)

    def log_pdf_multiple(self, X: Array) -> Array:
        """
        Log-density at each column of the ``(d, m)`` query matrix ``X``, shape ``(m,)``.
        """
        state = self.state
        X = _check_queries(X, self.get_num_dimensions())
        return _log_pdf_multiple(self.config.kernel, self.config.data, state.alpha_beta, X)

    def grad_multiple(self, X: Array) -> Array:
        """
        Gradient at each column of the ``(d, m)`` query matrix ``X``, shape ``(d, m)``.
        """
        state = self.state
        X = _check_queries(X, self.get_num_dimensions())
        return _grad_multiple(self.config.kernel, self.config.data, state.alpha_beta, X)
