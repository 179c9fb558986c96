"""Uniformization: one-step forward projection of a distribution over grid cells.

For a CTMC with generator ``G = Dx * Sew + Dy * Sns`` the distribution after a time
step is ``svec @ expm(dt * G)``. Uniformization avoids the matrix exponential: with a
dominating rate ``F = 2 (Dx + Dy)`` and the stochastic matrix ``P = G / F + I``,

    svec @ expm(dt * G) = exp(-F dt) * sum_k svec @ (F dt P)^k / k!

The series is truncated after ``m`` terms and each term costs one sparse
vector-matrix product with the skeletons. ``Q = F dt P`` is never materialised:

    u @ Q = dt * (Dx * u @ Sew + Dy * u @ Sns) + F dt * u

Two ways to differentiate the projection w.r.t. the state and the rates are
provided: plain autograd through the truncated loop (`forward_project`) or an
atomic autograd function with a hand-derived backward (`UniformizationProjector`
with ``custom_gradient=True``).
"""

from __future__ import annotations

import torch
import torch.autograd

from .grid import GridContext


def _vecmat(vectors: torch.Tensor, matrix_t: torch.Tensor) -> torch.Tensor:
    """Right-multiply row vectors by a sparse matrix, given its transpose.

    Args:
        vectors (torch.Tensor): Row vectors.
            Shape: ``(..., n)``
        matrix_t (torch.Tensor): Transposed sparse matrix.
            Shape: ``(n, n)``

    Returns:
        torch.Tensor: ``vectors @ matrix``
            Shape: ``(..., n)``
    """
    flat = vectors.reshape(-1, vectors.shape[-1])
    return torch.sparse.mm(matrix_t, flat.mT).mT.reshape(vectors.shape)


def _matvec(matrix: torch.Tensor, vector: torch.Tensor) -> torch.Tensor:
    return torch.sparse.mm(matrix, vector[:, None])[:, 0]


def _check_state(svec: torch.Tensor, grid: GridContext) -> None:
    if svec.ndim == 0 or svec.shape[-1] != grid.n:
        raise ValueError(f"State vectors must have {grid.n} cells in their last dimension. Found {tuple(svec.shape)}")


def forward_project(
    svec: torch.Tensor, dx: torch.Tensor | float, dy: torch.Tensor | float, grid: GridContext
) -> torch.Tensor:
    """Project state vectors one time step forward (differentiable through autograd).

    Broadcasting:
        Leading dimensions of ``svec`` are batch dimensions. ``dx`` and ``dy`` are scalars.

    Args:
        svec (torch.Tensor): Probability vectors over grid cells (row vectors).
            Shape: ``(..., n)``
        dx (torch.Tensor | float): East-west diffusion rate (positive).
        dy (torch.Tensor | float): North-south diffusion rate (positive).
        grid (GridContext): Grid configuration.

    Returns:
        torch.Tensor: Projected probability vectors, summing to one.
            Shape: ``(..., n)``
    """
    _check_state(svec, grid)
    dx = torch.as_tensor(dx, dtype=grid.dtype, device=grid.device)
    dy = torch.as_tensor(dy, dtype=grid.dtype, device=grid.device)

    rate = 2 * (dx + dy)
    rate_dt = rate * grid.dt
    weights = grid.series_weights

    term = svec
    accumulated = svec
    for k in range(grid.m):
        term = grid.dt * (dx * _vecmat(term, grid.sew_t) + dy * _vecmat(term, grid.sns_t)) + rate_dt * term
        accumulated = accumulated + term * weights[k]

    accumulated = accumulated * torch.exp(-rate_dt)
    return accumulated / accumulated.sum(dim=-1, keepdim=True)


class _Uniformization(torch.autograd.Function):
    """Atomic uniformization with an explicit vector-Jacobian product.

    Denoting ``u_j = svec Q^j`` and ``w_l = Q^l g`` (g the incoming gradient w.r.t. the
    unnormalized series, as a column vector), the series ``b = sum_k c_k u_k`` with
    ``c_k = 1 / k!`` yields:

        grad_svec = sum_k c_k w_k
        grad_Dx = sum_k c_k sum_{j + l = k - 1} u_j (dQ / dDx) w_l

    with ``dQ / dDx = dt (Sew + 2 I)`` and ``dQ / dDy = dt (Sns + 2 I)``.
    The ``exp(-F dt)`` factor disappears in the normalization, it has no gradient.
    """

    @staticmethod
    def forward(ctx, svec: torch.Tensor, dx: torch.Tensor, dy: torch.Tensor, grid: GridContext):  # type: ignore
        rate_dt = 2 * (dx + dy) * grid.dt
        weights = grid.series_weights

        terms = [svec]
        accumulated = svec
        for k in range(grid.m):
            term = terms[-1]
            term = grid.dt * (dx * _vecmat(term, grid.sew_t) + dy * _vecmat(term, grid.sns_t)) + rate_dt * term
            terms.append(term)
            accumulated = accumulated + term * weights[k]

        accumulated = accumulated * torch.exp(-rate_dt)
        total = accumulated.sum()
        projected = accumulated / total

        # Only u_0 ... u_{m-1} enter the gradient w.r.t. the rates
        ctx.save_for_backward(torch.stack(terms[:-1]), projected, total, dx, dy)
        ctx.grid = grid
        return projected

    @staticmethod
    @torch.autograd.function.once_differentiable
    def backward(ctx, grad_output: torch.Tensor):  # type: ignore
        terms, projected, total, dx, dy = ctx.saved_tensors
        grid: GridContext = ctx.grid
        rate_dt = 2 * (dx + dy) * grid.dt
        weights = torch.cat((torch.ones(1, dtype=terms.dtype, device=terms.device), grid.series_weights))

        # Back through the normalization and the exp(-F dt) scaling
        grad_series = (grad_output - (grad_output * projected).sum()) / total * torch.exp(-rate_dt)

        # w_l = Q^l g, for l in [0, m]
        adjoints = [grad_series]
        for _ in range(grid.m):
            adjoint = adjoints[-1]
            adjoint = (
                grid.dt * (dx * _matvec(grid.sew, adjoint) + dy * _matvec(grid.sns, adjoint)) + rate_dt * adjoint
            )
            adjoints.append(adjoint)

        grad_svec = grad_dx = grad_dy = None

        if ctx.needs_input_grad[0]:
            grad_svec = (torch.stack(adjoints) * weights[:, None]).sum(dim=0)

        if ctx.needs_input_grad[1] or ctx.needs_input_grad[2]:
            adjoints_ = torch.stack(adjoints[:-1])  # (m, n)
            order = torch.arange(grid.m, device=terms.device)
            power = order[:, None] + order[None, :] + 1  # j + l + 1 for the pair (u_j, w_l)
            pair_weights = torch.where(
                power <= grid.m, weights[power.clamp(max=grid.m)], terms.new_zeros(())
            )

            identity_part = 2 * (pair_weights * (terms @ adjoints_.mT)).sum()
            if ctx.needs_input_grad[1]:
                ew_part = (pair_weights * (terms @ torch.sparse.mm(grid.sew, adjoints_.mT))).sum()
                grad_dx = grid.dt * (ew_part + identity_part)
            if ctx.needs_input_grad[2]:
                ns_part = (pair_weights * (terms @ torch.sparse.mm(grid.sns, adjoints_.mT))).sum()
                grad_dy = grid.dt * (ns_part + identity_part)

        return grad_svec, grad_dx, grad_dy, None


class UniformizationProjector:
    """Uniformization-based approximation of ``svec @ expm(dt * G)``.

    The generator is ``G = Dx * Sew + Dy * Sns`` (see `GridContext`). The projection
    follows the truncated Poisson series described in this module's docstring,
    and is renormalized so that the output always sums to one (hiding the mass
    dropped by the truncation, see `truncation_error`).

    Rates must be positive: ``P = G / F + I`` is stochastic only in that case.

    Attributes:
        grid (GridContext): Grid configuration.
        custom_gradient (bool): If True, use the atomic function with an explicit
            hand-derived backward instead of differentiating through the loop.
            Only 1-D state vectors are supported in this mode.
            Default: False
    """

    def __init__(self, grid: GridContext, *, custom_gradient=False) -> None:
        self.grid = grid
        self.custom_gradient = custom_gradient

    def project(self, svec: torch.Tensor, dx: torch.Tensor | float, dy: torch.Tensor | float) -> torch.Tensor:
        """Project a state vector one time step forward.

        Args:
            svec (torch.Tensor): Probability vector(s) over the grid cells.
                Shape: ``(n,)`` (or ``(..., n)`` without custom gradient)
            dx (torch.Tensor | float): East-west diffusion rate.
            dy (torch.Tensor | float): North-south diffusion rate.

        Returns:
            torch.Tensor: Projected probability vector(s).
                Shape: same as ``svec``
        """
        dx = torch.as_tensor(dx, dtype=self.grid.dtype, device=self.grid.device)
        dy = torch.as_tensor(dy, dtype=self.grid.dtype, device=self.grid.device)
        svec = svec.to(self.grid.dtype)

        if not self.custom_gradient:
            return forward_project(svec, dx, dy, self.grid)

        _check_state(svec, self.grid)
        if svec.ndim != 1:
            raise ValueError(f"Custom gradient projection only supports 1-D state vectors. Found {tuple(svec.shape)}")
        return _Uniformization.apply(svec, dx, dy, self.grid)

    def truncation_error(self, dx: torch.Tensor | float, dy: torch.Tensor | float) -> torch.Tensor:
        """Probability mass dropped by truncating the series after m terms.

        It is the Poisson tail ``P(N > m)`` with ``N ~ Poisson(F dt)``. The final
        renormalization hides it, this is only meant to check that m is large enough.

        Returns:
            torch.Tensor: Tail mass in [0, 1]
        """
        dx = torch.as_tensor(dx, dtype=self.grid.dtype, device=self.grid.device)
        dy = torch.as_tensor(dy, dtype=self.grid.dtype, device=self.grid.device)
        rate_dt = 2 * (dx + dy) * self.grid.dt
        order = torch.tensor(self.grid.m + 1, dtype=self.grid.dtype, device=self.grid.device)
        return torch.special.gammainc(order, rate_dt)

    def __repr__(self) -> str:
        return f"UniformizationProjector({self.grid}, custom_gradient={self.custom_gradient})"
