import numpy as np


class NotFittedError(RuntimeError):
    """Raised when the density is evaluated before a successful ``fit``."""


class FitError(np.linalg.LinAlgError):
    """
    Raised when the score matching system cannot be solved reliably: the
    system or its solution is non-finite, or the symmetric factorization is
    singular to working precision.
    """
