import jax

jax.config.update("jax_enable_x64", True)

import numpy as np
import pytest

from kef_score.kernel import GaussianKernel


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture(params=[1, 2, 3])
def dim(request):
    return request.param


@pytest.fixture
def kernel():
    return GaussianKernel(sigma=1.5)


@pytest.fixture
def rows(rng, dim):
    """Five training points as rows, shape (5, dim)."""
    return rng.normal(scale=0.7, size=(5, dim))


@pytest.fixture
def unit_interval():
    """D=1, N=2 training matrix with points 0 and 1 as columns."""
    return np.array([[0.0, 1.0]])


@pytest.fixture
def symmetric_pair():
    """D=1, N=2 training matrix with points -0.5 and 0.5 as columns."""
    return np.array([[-0.5, 0.5]])
