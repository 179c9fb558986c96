import math

import pytest
import torch

from torch_shmm import GridContext, UniformizationProjector, forward_project


def _random_distribution(n: int, batch: tuple[int, ...] = ()) -> torch.Tensor:
    weights = torch.rand(*batch, n, dtype=torch.float64)
    return weights / weights.sum(dim=-1, keepdim=True)


def _generator(grid: GridContext, dx: float, dy: float) -> torch.Tensor:
    return dx * grid.sew.to_dense() + dy * grid.sns.to_dense()


@pytest.mark.parametrize("custom_gradient", [False, True])
@pytest.mark.parametrize("rates", [(0.1, 0.1), (0.5, 2.0), (3.0, 0.2)])
def test_projection_is_a_distribution(custom_gradient, rates):
    grid = GridContext.rectangular(5, 6, dt=1.0, m=60)
    projector = UniformizationProjector(grid, custom_gradient=custom_gradient)

    for _ in range(5):
        projected = projector.project(_random_distribution(grid.n), *rates)

        assert projected.shape == (grid.n,)
        assert torch.allclose(projected.sum(), torch.tensor(1.0, dtype=torch.float64))
        assert torch.all(projected > -1e-12)


def test_projection_matches_matrix_exponential():
    grid = GridContext.rectangular(4, 5, dt=1.0, m=40)
    projector = UniformizationProjector(grid)
    svec = _random_distribution(grid.n)

    projected = projector.project(svec, 0.3, 0.7)
    expected = svec @ torch.linalg.matrix_exp(grid.dt * _generator(grid, 0.3, 0.7))

    assert torch.allclose(projected, expected, atol=1e-12)


def test_projection_without_movement_is_identity():
    grid = GridContext.rectangular(4, 4, dt=1.0, m=20)
    projector = UniformizationProjector(grid)
    svec = _random_distribution(grid.n)

    assert torch.allclose(projector.project(svec, 0.0, 0.0), svec)
    assert torch.allclose(projector.project(svec, 1e-9, 1e-9), svec, atol=1e-7)

    # Slower diffusion stays closer to the initial distribution
    distances = [(projector.project(svec, rate, rate) - svec).abs().sum() for rate in (1e-1, 1e-2, 1e-3)]
    assert distances[0] > distances[1] > distances[2]


def test_projection_directional_symmetry():
    size = 5
    grid = GridContext.rectangular(size, size, dt=1.0, m=40)
    projector = UniformizationProjector(grid)
    svec = _random_distribution(grid.n)

    # Swapping north-south and east-west is a transposition of the square grid
    projected = projector.project(svec, 0.2, 0.9)
    projected_swap = projector.project(svec.reshape(size, size).mT.reshape(-1), 0.9, 0.2)

    assert torch.allclose(projected.reshape(size, size).mT.reshape(-1), projected_swap)

    # Swapping the skeletons together with the rates leaves the generator unchanged
    swapped_grid = GridContext(grid.sew, grid.sns, grid.dt, grid.m)
    assert torch.allclose(UniformizationProjector(swapped_grid).project(svec, 0.9, 0.2), projected)


def test_uniform_distribution_is_stationary():
    grid = GridContext.rectangular(3, 7, dt=2.0, m=60)
    projector = UniformizationProjector(grid)
    uniform = torch.full((grid.n,), 1 / grid.n, dtype=torch.float64)

    assert torch.allclose(projector.project(uniform, 0.4, 0.8), uniform)


def test_mass_spreads_to_neighbors_only_along_rates():
    grid = GridContext.rectangular(5, 5, dt=1.0, m=30)
    projector = UniformizationProjector(grid)
    svec = torch.zeros(grid.n, dtype=torch.float64)
    svec[12] = 1.0  # Center cell

    projected = projector.project(svec, 0.5, 0.0).reshape(5, 5)

    # No north-south movement: every other row stays empty
    assert torch.allclose(projected[[0, 1, 3, 4]], torch.zeros(4, 5, dtype=torch.float64))
    assert torch.allclose(projected[2], projected[2].flip(0))
    assert projected[2, 2] > projected[2, 1] > projected[2, 0] > 0


def test_batched_projection():
    grid = GridContext.rectangular(3, 4, dt=1.0, m=25)
    svec = _random_distribution(grid.n, batch=(2, 3))
    dx = torch.tensor(0.3, dtype=torch.float64)
    dy = torch.tensor(0.6, dtype=torch.float64)

    projected = forward_project(svec, dx, dy, grid)

    assert projected.shape == (2, 3, grid.n)
    for i in range(2):
        for j in range(3):
            assert torch.allclose(projected[i, j], forward_project(svec[i, j], dx, dy, grid))


def test_forward_project_accepts_float_rates():
    grid = GridContext.rectangular(3, 4, dt=1.0, m=25)
    svec = _random_distribution(grid.n)

    projected = forward_project(svec, 0.3, 0.6, grid)
    expected = forward_project(
        svec, torch.tensor(0.3, dtype=torch.float64), torch.tensor(0.6, dtype=torch.float64), grid
    )

    assert torch.allclose(projected, expected)
    assert torch.allclose(projected, UniformizationProjector(grid).project(svec, 0.3, 0.6))


def test_invalid_state_shape():
    grid = GridContext.rectangular(3, 3)

    with pytest.raises(ValueError):
        UniformizationProjector(grid).project(torch.ones(8, dtype=torch.float64) / 8, 0.1, 0.1)

    with pytest.raises(ValueError):
        UniformizationProjector(grid, custom_gradient=True).project(_random_distribution(9, batch=(2,)), 0.1, 0.1)


def test_custom_gradient_matches_autograd():
    grid = GridContext.rectangular(4, 3, dt=0.5, m=30)
    svec = _random_distribution(grid.n)
    target = torch.rand(grid.n, dtype=torch.float64)

    values = []
    gradients = []
    for custom_gradient in (False, True):
        projector = UniformizationProjector(grid, custom_gradient=custom_gradient)
        state = svec.clone().requires_grad_(True)
        dx = torch.tensor(0.7, dtype=torch.float64, requires_grad=True)
        dy = torch.tensor(1.3, dtype=torch.float64, requires_grad=True)

        projected = projector.project(state, dx, dy)
        loss = (projected * target).sum()
        values.append(projected.detach())
        gradients.append(torch.autograd.grad(loss, (state, dx, dy)))

    assert torch.allclose(values[0], values[1])
    for grad, grad_custom in zip(*gradients):
        assert torch.allclose(grad, grad_custom)


def test_custom_gradient_gradcheck():
    grid = GridContext.rectangular(3, 3, dt=1.0, m=20)
    projector = UniformizationProjector(grid, custom_gradient=True)

    svec = _random_distribution(grid.n).requires_grad_(True)
    dx = torch.tensor(0.4, dtype=torch.float64, requires_grad=True)
    dy = torch.tensor(0.25, dtype=torch.float64, requires_grad=True)

    assert torch.autograd.gradcheck(projector.project, (svec, dx, dy))


def test_truncation_error():
    dx, dy = 0.5, 1.0
    rate_dt = 2 * (dx + dy)

    errors = []
    for m in (2, 5, 10, 30):
        projector = UniformizationProjector(GridContext.rectangular(2, 2, dt=1.0, m=m))
        error = projector.truncation_error(dx, dy)
        expected = 1 - sum(math.exp(-rate_dt) * rate_dt**k / math.factorial(k) for k in range(m + 1))

        assert math.isclose(error.item(), expected, rel_tol=1e-8, abs_tol=1e-15)
        errors.append(error.item())

    assert errors[0] > errors[1] > errors[2] > errors[3]
    assert errors[3] < 1e-12
