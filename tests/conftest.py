from typing import Callable

import pytest
import torch

from torch_shmm import GridContext


@pytest.fixture(autouse=True)
def deterministic():
    torch.manual_seed(0)
    torch.cuda.manual_seed_all(0)
    torch.use_deterministic_algorithms(True, warn_only=True)  # No deterministic sparse kernels on cuda


@pytest.fixture
def chain_grid() -> Callable[..., GridContext]:
    """Factory of 1D grids: n cells linked east-west, no north-south movement."""

    def _chain_grid(n: int, m=20, dt=1.0) -> GridContext:
        adjacency = torch.zeros(n, n, dtype=torch.float64)
        index = torch.arange(n - 1)
        adjacency[index, index + 1] = 1.0
        adjacency[index + 1, index] = 1.0
        return GridContext(torch.zeros(n, n, dtype=torch.float64), adjacency, dt=dt, m=m)

    return _chain_grid


def pytest_runtest_setup(item):
    if "cuda" in item.keywords and not torch.cuda.is_available():
        pytest.skip("CUDA not available")
