"""Grid context: the constant part of a spatial HMM.

A :class:`GridContext` gathers everything that does not depend on the diffusion
parameters: the north-south and east-west generator skeletons, the time step,
the truncation order of the uniformization series and the log-factorial table.
It is validated once at construction and never mutated afterward, so a single
instance can be shared by every likelihood evaluation of an estimation run.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import overload

import torch

logger = logging.getLogger(__name__)


def _as_sparse(matrix: torch.Tensor, name: str) -> torch.Tensor:
    if not isinstance(matrix, torch.Tensor):
        matrix = torch.as_tensor(matrix)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise ValueError(f"{name} must be a square matrix. Found shape {tuple(matrix.shape)}")
    if not matrix.is_floating_point():
        matrix = matrix.to(torch.float64)
    if not matrix.is_sparse:
        matrix = matrix.to_sparse()
    return matrix.coalesce()


def _generator_skeleton(skeleton: torch.Tensor, name: str) -> torch.Tensor:
    """Keep off-diagonal rates and set the diagonal to minus their row sum."""
    skeleton = skeleton.coalesce()
    n = skeleton.shape[0]
    indices = skeleton.indices()
    values = skeleton.values()

    off_diagonal = indices[0] != indices[1]
    indices = indices[:, off_diagonal]
    values = values[off_diagonal]

    if (values < 0).any():
        raise ValueError(f"{name} has negative off-diagonal entries")

    outflow = torch.zeros(n, dtype=values.dtype, device=values.device).index_add_(0, indices[0], values)
    if n and outflow.max() > 2:
        # F = 2 (Dx + Dy) assumes at most two unit-rate neighbors per direction
        logger.warning(
            "%s has an off-diagonal row sum of %g > 2: the uniformization rate does not dominate the outflow",
            name,
            outflow.max().item(),
        )

    diagonal = torch.arange(n, device=indices.device)
    return torch.sparse_coo_tensor(
        torch.cat((indices, torch.stack((diagonal, diagonal))), dim=1),
        torch.cat((values, -outflow)),
        (n, n),
    ).coalesce()


def _check_identity(identity: torch.Tensor, n: int) -> None:
    identity = identity.coalesce()
    indices = identity.indices()
    values = identity.values()
    nonzero = values != 0
    indices, values = indices[:, nonzero], values[nonzero]
    if (
        identity.shape != (n, n)
        or values.shape[0] != n
        or not (indices[0] == indices[1]).all()
        or not (values == 1).all()
    ):
        raise ValueError(f"identity must be the {n}x{n} identity matrix")


def grid_skeletons(
    nrows: int, ncols: int, mask: torch.Tensor | None = None, dtype=torch.float64
) -> tuple[torch.Tensor, torch.Tensor]:
    """Build north-south and east-west adjacency skeletons of a rectangular grid.

    Cells are numbered in row-major order. When a mask is given, only valid cells
    are kept (still in row-major order) and edges towards invalid cells are dropped.

    Example:
        A 2x2 grid numbers its cells as::

            0 1
            2 3

        ``sew`` links 0-1 and 2-3, ``sns`` links 0-2 and 1-3.

    Args:
        nrows (int): Number of rows (north-south extent).
        ncols (int): Number of columns (east-west extent).
        mask (torch.Tensor | None): Optional boolean mask of valid cells.
            Shape: ``(nrows, ncols)``
        dtype (torch.dtype): Dtype of the skeletons.
            Default: float64

    Returns:
        torch.Tensor: North-south skeleton (sparse COO, zero diagonal).
            Shape: ``(n, n)``
        torch.Tensor: East-west skeleton (sparse COO, zero diagonal).
            Shape: ``(n, n)``
    """
    if nrows <= 0 or ncols <= 0:
        raise ValueError(f"Grid dimensions must be positive. Found ({nrows}, {ncols})")

    if mask is None:
        mask = torch.ones(nrows, ncols, dtype=torch.bool)
    mask = torch.as_tensor(mask, dtype=torch.bool)
    if mask.shape != (nrows, ncols):
        raise ValueError(f"Mask shape {tuple(mask.shape)} does not match grid shape ({nrows}, {ncols})")

    # Cell index of each valid position, -1 elsewhere
    index = torch.full((nrows, ncols), -1, dtype=torch.long)
    index[mask] = torch.arange(int(mask.sum()))
    n = int(mask.sum())

    def _skeleton(first: torch.Tensor, second: torch.Tensor) -> torch.Tensor:
        valid = (first >= 0) & (second >= 0)
        first, second = first[valid], second[valid]
        rows = torch.cat((first, second))
        cols = torch.cat((second, first))
        return torch.sparse_coo_tensor(
            torch.stack((rows, cols)), torch.ones(rows.shape[0], dtype=dtype), (n, n)
        ).coalesce()

    sns = _skeleton(index[:-1, :].reshape(-1), index[1:, :].reshape(-1))
    sew = _skeleton(index[:, :-1].reshape(-1), index[:, 1:].reshape(-1))
    return sns, sew


@dataclasses.dataclass(frozen=True, eq=False)
class GridContext:
    """Immutable configuration shared by the projector, filter and smoother.

    The generator of the movement CTMC is ``G = Dx * sew + Dy * sns``. Skeletons may
    be given as plain adjacency matrices: the diagonal is implied by stochasticity and
    is always rebuilt as minus the off-diagonal row sum, so that ``G`` rows sum to 0.

    Attributes:
        sns (torch.Tensor): North-south generator skeleton (stored as sparse COO).
            Shape: ``(n, n)``
        sew (torch.Tensor): East-west generator skeleton (stored as sparse COO).
            Shape: ``(n, n)``
        dt (float): Time step between two observations. Must be positive.
        m (int): Truncation order of the uniformization series. Must be positive.
            It should be large enough for ``(F dt)^m / m!`` to be negligible
            (not checked, see `UniformizationProjector.truncation_error`).
        identity (torch.Tensor | None): Identity matrix. Built when not given.
            Shape: ``(n, n)``
        lgam (torch.Tensor | None): ``lgam[k] = log(k!)`` for k in [0, m). Built when not given.
            Shape: ``(m,)``
    """

    sns: torch.Tensor
    sew: torch.Tensor
    dt: float
    m: int
    identity: torch.Tensor | None = dataclasses.field(default=None, repr=False)
    lgam: torch.Tensor | None = dataclasses.field(default=None, repr=False)

    sns_t: torch.Tensor = dataclasses.field(init=False, repr=False, compare=False)
    sew_t: torch.Tensor = dataclasses.field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        sns = _as_sparse(self.sns, "sns")
        sew = _as_sparse(self.sew, "sew").to(sns.dtype)
        if sns.shape != sew.shape:
            raise ValueError(f"Skeleton shapes differ: sns {tuple(sns.shape)}, sew {tuple(sew.shape)}")
        n = sns.shape[0]

        if isinstance(self.m, bool) or int(self.m) != self.m or self.m <= 0:
            raise ValueError(f"Truncation order m must be a positive integer. Found {self.m}")
        if not self.dt > 0:
            raise ValueError(f"Time step dt must be positive. Found {self.dt}")

        identity = self.identity
        if identity is None:
            identity = torch.sparse_coo_tensor(
                torch.arange(n).repeat(2, 1), torch.ones(n, dtype=sns.dtype), (n, n)
            ).to(sns.device)
        identity = _as_sparse(identity, "identity").to(sns.dtype)
        _check_identity(identity, n)

        lgam = self.lgam
        if lgam is None:
            lgam = torch.lgamma(torch.arange(1, int(self.m) + 1, dtype=sns.dtype))
        lgam = torch.as_tensor(lgam, dtype=sns.dtype, device=sns.device)
        if lgam.shape != (int(self.m),):
            raise ValueError(f"lgam must have shape ({int(self.m)},). Found {tuple(lgam.shape)}")

        sns = _generator_skeleton(sns, "sns")
        sew = _generator_skeleton(sew, "sew")

        # Frozen dataclass: normalized values are set through object.__setattr__
        object.__setattr__(self, "sns", sns)
        object.__setattr__(self, "sew", sew)
        object.__setattr__(self, "dt", float(self.dt))
        object.__setattr__(self, "m", int(self.m))
        object.__setattr__(self, "identity", identity)
        object.__setattr__(self, "lgam", lgam)
        object.__setattr__(self, "sns_t", sns.t().coalesce())
        object.__setattr__(self, "sew_t", sew.t().coalesce())

    @classmethod
    def rectangular(
        cls, nrows: int, ncols: int, *, dt=1.0, m=20, mask: torch.Tensor | None = None, dtype=torch.float64
    ) -> GridContext:
        """Create the context of a rectangular grid (see `grid_skeletons`)."""
        sns, sew = grid_skeletons(nrows, ncols, mask, dtype=dtype)
        return cls(sns, sew, dt, m)

    @property
    def n(self) -> int:
        """Number of grid cells."""
        return self.sns.shape[0]

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the context."""
        return self.sns.dtype

    @property
    def device(self) -> torch.device:
        """Device of the context."""
        return self.sns.device

    @property
    def series_weights(self) -> torch.Tensor:
        """Coefficients ``1 / k!`` of the k-th series term, for k in [1, m].

        Shape: ``(m,)``
        """
        k = torch.arange(1, self.m + 1, dtype=self.dtype, device=self.device)
        return torch.exp(-(self.lgam + torch.log(k)))

    @overload
    def to(self, dtype: torch.dtype) -> GridContext: ...

    @overload
    def to(self, device: torch.device) -> GridContext: ...

    def to(self, fmt):
        """Convert the context to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the context to.

        Returns:
            GridContext: The context with the right format
        """
        return GridContext(
            self.sns.to(fmt), self.sew.to(fmt), self.dt, self.m, self.identity.to(fmt), self.lgam.to(fmt)
        )

    def __repr__(self) -> str:
        return (
            f"GridContext(n={self.n}, dt={self.dt}, m={self.m}, "
            f"nnz(sns)={self.sns._nnz()}, nnz(sew)={self.sew._nnz()}, dtype={self.dtype})"  # noqa: SLF001
        )
