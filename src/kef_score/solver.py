import numpy as np
import scipy.linalg
from jax import Array
from loguru import logger
from typing import Tuple

from kef_score.errors import FitError
from kef_score.linear import LinearSystem


def _pivot_magnitudes(d: np.ndarray) -> np.ndarray:
    r"""
    Absolute eigenvalues of the 1x1 and 2x2 diagonal blocks of an :math:`LDL^\top` factor.
    """
    n = d.shape[0]
    out = []
    i = 0
    while i < n:
        if i + 1 < n and d[i + 1, i] != 0:
            out.extend(np.abs(np.linalg.eigvalsh(d[i : i + 2, i : i + 2])))
            i += 2
        else:
            out.append(abs(d[i, i]))
            i += 1
    return np.asarray(out)


def ldl_solve(
    A: Array, b: Array, *, rcond: float = 0.0
) -> Tuple[np.ndarray, float]:
    r"""
    Solves the symmetric, possibly indefinite, system :math:`Ax = b` through a
    Bunch-Kaufman :math:`A = L D L^\top` factorization.

    :math:`L` is unit lower triangular up to a row permutation and :math:`D` is
    block diagonal with 1x1 and 2x2 blocks, so the solve is two triangular
    solves around a tridiagonal one.

    Args:
        A:
            Symmetric matrix of shape ``(n,n)``. Only the lower triangle is read.
        b:
            Right-hand side vector of shape ``(n,)``.
        rcond:
            Optional strict threshold on the ratio between the smallest and largest
            pivot magnitude of :math:`D`. The default ``0`` only rejects exactly
            singular factors; ratios below ``eps * n`` are logged as a warning.

    Returns:
        tuple:
            - **x** (``np.ndarray``): Solution of shape ``(n,)``.
            - **rcond** (``float``): Observed pivot ratio, a cheap conditioning diagnostic.

    Raises:
        FitError:
            If ``A`` or ``b`` has non-finite entries, a pivot is zero or non-finite,
            the pivot ratio is at or below a positive ``rcond``, or the solution is
            non-finite.
    """
    A = np.asarray(A)
    b = np.asarray(b)
    n = b.shape[0]

    if not (np.all(np.isfinite(A)) and np.all(np.isfinite(b))):
        raise FitError("Linear system contains non-finite entries")

    lu, d, perm = scipy.linalg.ldl(A, lower=True, hermitian=True, check_finite=False)

    pivots = _pivot_magnitudes(d)
    if not np.all(np.isfinite(pivots)):
        raise FitError("LDL^T factorization produced non-finite pivots")

    largest = pivots.max()
    ratio = float(pivots.min() / largest) if largest > 0 else 0.0
    logger.debug(f"LDL^T factorization of size {n}, pivot ratio {ratio:.3e}")

    if ratio == 0.0:
        raise FitError("Linear system is singular (exactly zero pivot)")
    if ratio <= rcond:
        raise FitError(f"Linear system is ill-conditioned (pivot ratio {ratio:.3e} <= rcond {rcond:.3e})")
    if ratio <= np.finfo(A.dtype).eps * n:
        logger.warning(f"Linear system is ill-conditioned (pivot ratio {ratio:.3e})")

    # lu[perm] is unit lower triangular
    tri = lu[perm]
    y = scipy.linalg.solve_triangular(
        tri, b[perm], lower=True, unit_diagonal=True, check_finite=False
    )

    # D is symmetric tridiagonal in banded storage
    banded = np.zeros((3, n), dtype=d.dtype)
    banded[0, 1:] = np.diag(d, 1)
    banded[1] = np.diag(d)
    banded[2, :-1] = np.diag(d, -1)
    z = scipy.linalg.solve_banded((1, 1), banded, y, check_finite=False)

    u = scipy.linalg.solve_triangular(
        tri.T, z, lower=False, unit_diagonal=True, check_finite=False
    )
    x = np.empty_like(u)
    x[perm] = u

    if not np.all(np.isfinite(x)):
        raise FitError("Solution of the linear system is non-finite")

    return x, ratio


def solve_system(system: LinearSystem, *, rcond: float = 0.0) -> Tuple[np.ndarray, float]:
    """
    :func:`ldl_solve` applied to a :class:`LinearSystem`.
    """
    return ldl_solve(system.A, system.b, rcond=rcond)
