from __future__ import annotations

import dataclasses
import logging

import torch

from .grid import GridContext
from .hmm import HMMState, SpatialHMM

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Evaluation:
    """Result of a likelihood evaluation.

    Attributes:
        neg_log_likelihood (torch.Tensor): Negative log-likelihood of the data (0-d).
            Differentiable w.r.t. the log rates when they require grad.
        pred (torch.Tensor): Predicted distributions. Shape: ``(T, n)``
        phi (torch.Tensor): Filtered distributions. Shape: ``(T, n)``
        psi (torch.Tensor): Predictive likelihood normalizers. Shape: ``(T - 1,)``
        smoo (torch.Tensor | None): Smoothed distributions if requested. Shape: ``(T, n)``
        dx (torch.Tensor): East-west diffusion rate used (0-d).
        dy (torch.Tensor): North-south diffusion rate used (0-d).
        n_degenerate (int): Number of near-zero normalizers.
    """

    neg_log_likelihood: torch.Tensor
    pred: torch.Tensor
    phi: torch.Tensor
    psi: torch.Tensor
    smoo: torch.Tensor | None
    dx: torch.Tensor
    dy: torch.Tensor
    n_degenerate: int

    @classmethod
    def from_state(cls, state: HMMState, dx: torch.Tensor, dy: torch.Tensor) -> Evaluation:
        return cls(state.neg_log_likelihood, state.pred, state.phi, state.psi, state.smoo, dx, dy, state.n_degenerate)


class LikelihoodEvaluator:
    """Negative log-likelihood of the diffusion rates given observation likelihoods.

    This is the function handed to an external optimizer. Rates are parametrized by their
    logarithm (``Dx = exp(log_dx)``, ``Dy = exp(log_dy)``) so that any real parameters are valid.
    Gradients are obtained with autograd, either through the whole uniformization loop
    or through its hand-derived backward (``custom_gradient=True``).

    The evaluator holds no other state than the immutable grid: it can be called many times
    with different parameters.

    Example:
    ```python
        evaluator = LikelihoodEvaluator(GridContext.rectangular(20, 20, m=30))
        log_d = torch.zeros(2, dtype=torch.float64, requires_grad=True)
        optimizer = torch.optim.LBFGS([log_d])

        def closure():
            optimizer.zero_grad()
            loss = evaluator.neg_log_likelihood(log_d[0], log_d[1], datlik)
            loss.backward()
            return loss

        optimizer.step(closure)
        result = evaluator.evaluate(log_d[0], log_d[1], datlik, dosmoo=1)
    ```

    Attributes:
        grid (GridContext): Grid configuration.
        hmm (SpatialHMM): Filter and smoother.
    """

    def __init__(self, grid: GridContext, *, custom_gradient=False, eps=1e-20) -> None:
        self.grid = grid
        self.hmm = SpatialHMM(grid, custom_gradient=custom_gradient, eps=eps)

    def _rates(self, log_dx: torch.Tensor | float, log_dy: torch.Tensor | float) -> tuple[torch.Tensor, torch.Tensor]:
        log_dx = torch.as_tensor(log_dx).to(self.grid.dtype).to(self.grid.device)
        log_dy = torch.as_tensor(log_dy).to(self.grid.dtype).to(self.grid.device)
        if log_dx.ndim or log_dy.ndim:
            raise ValueError(f"Log rates must be scalars. Found shapes {tuple(log_dx.shape)}, {tuple(log_dy.shape)}")
        return torch.exp(log_dx), torch.exp(log_dy)

    def evaluate(
        self,
        log_dx: torch.Tensor | float,
        log_dy: torch.Tensor | float,
        datlik: torch.Tensor,
        dosmoo: int | bool = 0,
    ) -> Evaluation:
        """Filter (and optionally smooth) the data for the given log rates.

        Args:
            log_dx (torch.Tensor | float): Log of the east-west diffusion rate.
            log_dy (torch.Tensor | float): Log of the north-south diffusion rate.
            datlik (torch.Tensor): Observation likelihoods.
                Shape: ``(T, n)``
            dosmoo (int | bool): 1 to run the smoother after the filter, 0 otherwise.
                Default: 0

        Returns:
            Evaluation: The negative log-likelihood with every time series.
        """
        if dosmoo not in (0, 1):
            raise ValueError(f"dosmoo must be 0 or 1. Found {dosmoo}")

        dx, dy = self._rates(log_dx, log_dy)
        state = self.hmm.filter(datlik, dx, dy)
        if dosmoo:
            state = self.hmm.smooth(state, dx, dy)

        evaluation = Evaluation.from_state(state, dx, dy)
        if logger.isEnabledFor(logging.DEBUG):  # .item() syncs cuda devices
            logger.debug(
                "Dx=%g, Dy=%g: negative log-likelihood %g (T=%d, smoothed=%s)",
                dx.item(),
                dy.item(),
                evaluation.neg_log_likelihood.item(),
                state.phi.shape[0],
                bool(dosmoo),
            )
        return evaluation

    def neg_log_likelihood(
        self, log_dx: torch.Tensor | float, log_dy: torch.Tensor | float, datlik: torch.Tensor
    ) -> torch.Tensor:
        """Negative log-likelihood only (no smoothing), for optimizer closures."""
        return self.evaluate(log_dx, log_dy, datlik).neg_log_likelihood

    def __repr__(self) -> str:
        return f"LikelihoodEvaluator({self.hmm})"
