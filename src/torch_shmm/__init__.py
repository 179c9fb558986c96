"""torch-shmm: Spatial hidden Markov models on grids in PyTorch.

torch-shmm estimates the unobserved location of a moving agent from noisy per-cell
observation likelihoods. The agent movement is a continuous-time Markov chain (CTMC)
diffusing on a 2D grid with an east-west rate ``Dx`` and a north-south rate ``Dy``.
Filtering, smoothing and the data likelihood are computed with sparse linear algebra
only: the transition matrix ``expm(dt * G)`` is never built, each time update is a
truncated uniformization series of sparse vector-matrix products.

Key features
------------
- **Uniformization projector**: matrix-exponential-free one-step forward projection.
- **Filtering and smoothing**: forward filter with predictive likelihoods and a
  fixed-interval backward smoother.
- **Differentiable likelihood**: the negative log-likelihood is differentiable w.r.t.
  ``log(Dx)`` and ``log(Dy)``, either through autograd or through a hand-derived
  backward of the projection, ready for any ``torch.optim`` optimizer.

Background
----------
The model follows the spatial HMM approach used to reconstruct animal tracks from
electronic tags (Pedersen et al., 2008; Thygesen et al., 2009), where the HMM state
space is the set of grid cells and movement is a discretised diffusion.

Numerical notes
---------------
Grids are built in ``float64`` by default: likelihoods of long series underflow quickly
in ``float32``. The truncation order ``m`` must be large enough w.r.t. ``2 (Dx + Dy) dt``,
which can be checked with :meth:`~torch_shmm.UniformizationProjector.truncation_error`.

Getting started
---------------
The core API consists of:
- :class:`~torch_shmm.GridContext` to hold the grid skeletons and the constants.
- :class:`~torch_shmm.SpatialHMM` with :meth:`~torch_shmm.SpatialHMM.predict`,
  :meth:`~torch_shmm.SpatialHMM.update`, :meth:`~torch_shmm.SpatialHMM.filter`
  and :meth:`~torch_shmm.SpatialHMM.smooth`.
- :class:`~torch_shmm.LikelihoodEvaluator` mapping log rates to the negative
  log-likelihood and every time series.
"""

from .grid import GridContext, grid_skeletons
from .hmm import HMMState, SpatialHMM
from .likelihood import Evaluation, LikelihoodEvaluator
from .uniformization import UniformizationProjector, forward_project

__all__ = [
    "Evaluation",
    "GridContext",
    "HMMState",
    "LikelihoodEvaluator",
    "SpatialHMM",
    "UniformizationProjector",
    "forward_project",
    "grid_skeletons",
]
__version__ = "0.1.0"
