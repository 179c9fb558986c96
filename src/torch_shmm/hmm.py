from __future__ import annotations

import dataclasses
import logging
from typing import overload

import torch

from .grid import GridContext
from .uniformization import UniformizationProjector

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class HMMState:
    """Time series produced by one filtering (and optionally smoothing) pass.

    Conventions:
    - Distributions over the grid cells are row vectors, stacked along time.
    - ``psi[t - 1]`` is the predictive likelihood of the observation at time ``t``.

    Attributes:
        pred: Predicted distributions (``pred[0]`` is the normalized first likelihood).
            Shape: ``(T, n)``
        phi: Filtered distributions.
            Shape: ``(T, n)``
        psi: Predictive likelihood normalizers.
            Shape: ``(T - 1,)``
        smoo: Smoothed distributions. None until smoothing is done.
            Shape: ``(T, n)``
        eps: Threshold below which a normalizer is considered degenerate.
    """

    pred: torch.Tensor
    phi: torch.Tensor
    psi: torch.Tensor
    smoo: torch.Tensor | None = None
    eps: float = 1e-20

    @property
    def neg_log_likelihood(self) -> torch.Tensor:
        """Negative log-likelihood of the data: ``-sum(log(psi))``.

        It is 0 for a single observation and +inf if a normalizer underflows to 0.
        """
        return -torch.log(self.psi).sum()

    @property
    def n_degenerate(self) -> int:
        """Number of time steps where the observation is incompatible with every predicted cell."""
        return int((self.psi < self.eps).sum())

    def detach(self) -> HMMState:
        """Return the same state outside of the autograd graph."""
        return HMMState(
            self.pred.detach(),
            self.phi.detach(),
            self.psi.detach(),
            self.smoo.detach() if self.smoo is not None else None,
            self.eps,
        )

    @overload
    def to(self, dtype: torch.dtype) -> HMMState: ...

    @overload
    def to(self, device: torch.device) -> HMMState: ...

    def to(self, fmt):
        """Convert the state to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            HMMState: The state with the right format
        """
        return HMMState(
            self.pred.to(fmt),
            self.phi.to(fmt),
            self.psi.to(fmt),
            self.smoo.to(fmt) if self.smoo is not None else None,
            self.eps,
        )


class SpatialHMM:
    """Hidden Markov model of an agent diffusing on a grid.

    The hidden state is the grid cell occupied by the agent. Between two observations
    it moves following a CTMC with generator ``G = Dx * Sew + Dy * Sns``, and at each
    time step the data provide a likelihood for each cell (``datlik``).

    The transition operator is never built: each prediction is a uniformization
    projection of the current distribution (see `UniformizationProjector`).

    Attributes:
        grid (GridContext): Grid configuration.
        projector (UniformizationProjector): Time update operator.
        eps (float): Guard added to the normalizers to avoid divisions by zero.
            Default: 1e-20
    """

    def __init__(self, grid: GridContext, *, custom_gradient=False, eps=1e-20) -> None:
        self.grid = grid
        self.projector = UniformizationProjector(grid, custom_gradient=custom_gradient)
        self.eps = eps

    @property
    def n(self) -> int:
        """Number of grid cells."""
        return self.grid.n

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the model."""
        return self.grid.dtype

    @property
    def device(self) -> torch.device:
        """Device of the model."""
        return self.grid.device

    @overload
    def to(self, dtype: torch.dtype) -> SpatialHMM: ...

    @overload
    def to(self, device: torch.device) -> SpatialHMM: ...

    def to(self, fmt):
        """Convert the model to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the model to.

        Returns:
            SpatialHMM: The model with the right format
        """
        return SpatialHMM(self.grid.to(fmt), custom_gradient=self.projector.custom_gradient, eps=self.eps)

    def predict(self, phi: torch.Tensor, dx: torch.Tensor | float, dy: torch.Tensor | float) -> torch.Tensor:
        """Project a filtered distribution to the next time step.

        Args:
            phi (torch.Tensor): Current distribution over the cells.
                Shape: ``(n,)``
            dx (torch.Tensor | float): East-west diffusion rate.
            dy (torch.Tensor | float): North-south diffusion rate.

        Returns:
            torch.Tensor: Predicted distribution.
                Shape: ``(n,)``
        """
        return self.projector.project(phi, dx, dy)

    def update(self, pred: torch.Tensor, likelihood: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Fuse a predicted distribution with the likelihood of a new observation.

        Args:
            pred (torch.Tensor): Predicted distribution.
                Shape: ``(n,)``
            likelihood (torch.Tensor): Observation likelihood of each cell (non-negative).
                Shape: ``(n,)``

        Returns:
            torch.Tensor: Filtered distribution.
                Shape: ``(n,)``
            torch.Tensor: Predictive likelihood of the observation (0-d).
        """
        posterior = pred * likelihood
        psi = posterior.sum()
        return posterior / (psi + self.eps), psi

    def _check_datlik(self, datlik: torch.Tensor) -> torch.Tensor:
        datlik = torch.as_tensor(datlik).to(self.dtype).to(self.device)
        if datlik.ndim != 2 or datlik.shape[0] < 1 or datlik.shape[1] != self.n:
            raise ValueError(f"Data likelihood must have shape (T, {self.n}) with T >= 1. Found {tuple(datlik.shape)}")
        if (datlik < 0).any():
            raise ValueError("Data likelihood has negative entries")
        if not datlik[0].sum() > 0:
            raise ValueError("Data likelihood of the first time step has no mass")
        return datlik

    def filter(self, datlik: torch.Tensor, dx: torch.Tensor | float, dy: torch.Tensor | float) -> HMMState:
        """Run the forward filter over a complete sequence of observation likelihoods.

        The first distribution is the normalized first likelihood. Then for each time step,
        the previous filtered distribution is projected (`predict`) and fused with the new
        observation (`update`).

        A normalizer ``psi`` close to 0 (the observation is incompatible with every predicted
        cell) does not raise: the likelihood becomes very small (or 0) and the number of such
        steps is given by `HMMState.n_degenerate`.

        Args:
            datlik (torch.Tensor): Observation likelihoods. Rows do not need to be normalized.
                Shape: ``(T, n)``
            dx (torch.Tensor | float): East-west diffusion rate.
            dy (torch.Tensor | float): North-south diffusion rate.

        Returns:
            HMMState: Predicted and filtered distributions with the normalizers.
        """
        datlik = self._check_datlik(datlik)

        phi = datlik[0] / datlik[0].sum()
        preds = [phi]
        phis = [phi]
        psis = []

        for likelihood in datlik[1:]:
            pred = self.predict(phis[-1], dx, dy)
            phi, psi = self.update(pred, likelihood)
            preds.append(pred)
            phis.append(phi)
            psis.append(psi)

        state = HMMState(
            torch.stack(preds),
            torch.stack(phis),
            torch.stack(psis) if psis else datlik.new_zeros(0),
            eps=self.eps,
        )

        n_degenerate = state.n_degenerate
        if n_degenerate:
            logger.warning("%d/%d observations have a near-zero predictive likelihood", n_degenerate, len(psis))

        return state

    def smooth(self, state: HMMState, dx: torch.Tensor | float, dy: torch.Tensor | float) -> HMMState:
        """Run the backward smoother on the output of `filter`.

        The last smoothed distribution is the last filtered one. Going backward, the ratio
        between the next smoothed and predicted distributions is projected with the same
        forward operator, then multiplied with the filtered distribution and normalized.
        Cells with a null prediction also have a null smoothed mass: their ratio is set to 0.

        Args:
            state (HMMState): Output of `filter` for the same rates.
            dx (torch.Tensor | float): East-west diffusion rate.
            dy (torch.Tensor | float): North-south diffusion rate.

        Returns:
            HMMState: A new state with the smoothed distributions set.
        """
        smoos = [state.phi[-1]]

        for t in range(state.phi.shape[0] - 1, 0, -1):
            reachable = state.pred[t] > 0
            # Unit denominator on unreachable cells keeps gradients finite
            ratio = torch.where(reachable, smoos[-1] / torch.where(reachable, state.pred[t], 1.0), 0.0)
            posterior = state.phi[t - 1] * self.predict(ratio, dx, dy)
            smoos.append(posterior / (posterior.sum() + self.eps))

        return HMMState(state.pred, state.phi, state.psi, torch.stack(smoos[::-1]), state.eps)

    def __repr__(self) -> str:
        return f"Spatial HMM (Cells: {self.n}, dt: {self.grid.dt}, m: {self.grid.m}, eps: {self.eps})"
