from dataclasses import dataclass
from functools import partial
import jax, jax.numpy as jnp
from jax import Array, tree_util
from typing import Tuple


@tree_util.register_pytree_node_class
@dataclass(frozen=True)
class LinearSystem:
    r"""
    Dense symmetric system :math:`A x = b`.

    - ``A @ v`` works for ``v`` of shape ``(n,)`` or ``(n, m)``,
    - ``.shape`` tells you ``(n, n)``,
    - ``.residual(x)`` gives :math:`b - A x`.
    """

    A: Array
    b: Array

    __array_priority__ = 10.0

    def __matmul__(self, x: Array) -> Array:
        x = jnp.asarray(x)
        if x.ndim not in (1, 2):
            raise ValueError(f"LinearSystem only supports 1D or 2D, got ndim={x.ndim}")
        return self.A @ x

    @property
    def shape(self) -> Tuple[int, int]:
        return self.A.shape

    @property
    def n(self) -> int:
        return self.b.shape[0]

    def residual(self, x: Array) -> Array:
        return self.b - self.A @ x

    def tree_flatten(self):
        return (self.A, self.b), None

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)


def block(matrix: Array, a: int, c: int, d: int) -> Array:
    """
    The ``(d, d)`` block at block-row ``a`` and block-column ``c`` of an ``(nd, nd)`` matrix.
    """
    # dynamic_slice keeps this traceable when the offsets are tracers
    return jax.lax.dynamic_slice(matrix, (a * d, c * d), (d, d))


def segment(vector: Array, a: int, d: int) -> Array:
    """
    The length ``d`` segment starting at ``a * d``.
    """
    return jax.lax.dynamic_slice(vector, (a * d,), (d,))


def segments(vector: Array, d: int) -> Array:
    """
    Views a length ``n * d`` vector as ``(n, d)``; row ``a`` is ``segment(vector, a, d)``.
    """
    return vector.reshape(-1, d)


def blocks_to_matrix(blocks: Array) -> Array:
    r"""
    Lays out an ``(n, n, d, d)`` tensor of blocks as the ``(nd, nd)`` matrix
    whose block ``(a, c)`` is ``blocks[a, c]``.

    Args:
        blocks:
            Block tensor, ``blocks[a, c, i, j]`` is entry ``(a d + i, c d + j)``.

    Returns:
        Array:
            Shape ``(nd, nd)``.
    """
    n, m, d, e = blocks.shape
    return blocks.transpose(0, 2, 1, 3).reshape(n * d, m * e)


def symmetrize(matrix: Array) -> Array:
    # exact: S[i, j] and S[j, i] are the same floating point sum
    return 0.5 * (matrix + matrix.T)


@partial(jax.jit, static_argnames=("n",))
def build_system(
    h: Array,
    all_hessians: Array,
    xi_norm_2: Array,
    lmbda: float,
    n: int,
) -> LinearSystem:
    r"""
    Assembles the augmented score matching system for :math:`(\alpha, \beta)`.

    .. math::

        A = \begin{pmatrix}
            \lVert h \rVert^2 / n + \lambda \lVert \xi \rVert^2 &
            (G h / n + \lambda h)^\top \\
            G h / n + \lambda h &
            G G / n + \lambda G
        \end{pmatrix},
        \qquad
        b = -\begin{pmatrix} \lVert \xi \rVert^2 \\ h \end{pmatrix},

    where :math:`G` is the matrix of all pairwise mixed kernel Hessians.

    Args:
        h:
            Averaged third-order statistics, shape ``(nd,)``.
        all_hessians:
            Symmetric block matrix :math:`G`, shape ``(nd, nd)``.
        xi_norm_2:
            Averaged fourth-order statistic (scalar).
        lmbda:
            Regularization :math:`\lambda \ge 0`.
        n:
            Number of training points.

    Returns:
        LinearSystem:
            ``A`` of shape ``(nd+1, nd+1)``, exactly symmetric, and ``b`` of shape ``(nd+1,)``.
    """
    nd = h.shape[0]

    corner = jnp.dot(h, h) / n + lmbda * xi_norm_2
    lower = symmetrize(all_hessians @ all_hessians / n + lmbda * all_hessians)

    # the same vector fills row 0 and column 0
    edge = all_hessians @ h / n + lmbda * h

    A = jnp.zeros((nd + 1, nd + 1), dtype=h.dtype)
    A = A.at[0, 0].set(corner)
    A = A.at[1:, 1:].set(lower)
    A = A.at[0, 1:].set(edge)
    A = A.at[1:, 0].set(edge)

    b = jnp.concatenate([-jnp.atleast_1d(xi_norm_2), -h])
    return LinearSystem(A, b)
