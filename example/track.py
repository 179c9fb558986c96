"""Example estimating diffusion rates and reconstructing a track on a grid"""

import argparse
import dataclasses
import logging
import time

import matplotlib.pyplot as plt
import torch
import tqdm.auto as tqdm
import yaml

import torch_shmm


@dataclasses.dataclass
class TrackConfig:
    """Simulation and estimation config."""

    nrows: int = 30
    ncols: int = 40
    dx: float = 0.8  # True east-west rate
    dy: float = 0.2  # True north-south rate
    dt: float = 1.0
    m: int = 30
    length: int = 200
    noise: float = 2.0  # Observation std (in cells)
    steps: int = 50
    lr: float = 0.1
    custom_gradient: bool = False


def simulate_track(config: TrackConfig) -> tuple[torch.Tensor, torch.Tensor]:
    """Simulate a CTMC diffusion on the grid with noisy gaussian position observations.

    Jumps follow the embedded chain: exponential waiting times with the total rate of the cell,
    then a neighbor chosen with probability proportional to its rate.
    Moving outside of the grid is rejected (reflection).

    Returns:
        torch.Tensor: Row and column of the agent at each time step
            Shape: (T, 2)
        torch.Tensor: Noisy observation of the position
            Shape: (T, 2)
    """
    moves = torch.tensor([[0, 1], [0, -1], [1, 0], [-1, 0]])
    rates = torch.tensor([config.dx, config.dx, config.dy, config.dy])
    total = rates.sum().item()
    shape = torch.tensor([config.nrows, config.ncols])

    position = shape // 2
    track = torch.empty((config.length, 2), dtype=torch.long)
    for t in range(config.length):
        elapsed = 0.0
        while total > 0:
            elapsed += torch.distributions.Exponential(total).sample().item()
            if elapsed > config.dt:
                break
            candidate = position + moves[torch.multinomial(rates, 1)[0]]
            if ((candidate >= 0) & (candidate < shape)).all():
                position = candidate
        track[t] = position

    return track, track + config.noise * torch.randn(track.shape)


def observation_likelihood(observations: torch.Tensor, config: TrackConfig) -> torch.Tensor:
    """Gaussian likelihood of each observation for every cell of the grid (row-major order).

    Returns:
        torch.Tensor: datlik
            Shape: (T, nrows * ncols)
    """
    rows, cols = torch.meshgrid(torch.arange(config.nrows), torch.arange(config.ncols), indexing="ij")
    cells = torch.stack((rows.reshape(-1), cols.reshape(-1)), dim=-1).to(torch.float64)
    distance = (cells[None] - observations[:, None].to(torch.float64)).pow(2).sum(dim=-1)
    return torch.exp(-0.5 * distance / config.noise**2)


def expected_position(distributions: torch.Tensor, config: TrackConfig) -> torch.Tensor:
    """Mean position of each distribution over the cells. Shape: (T, 2)"""
    return torch.stack(
        (
            distributions.reshape(-1, config.nrows, config.ncols).sum(dim=2) @ torch.arange(config.nrows).double(),
            distributions.reshape(-1, config.nrows, config.ncols).sum(dim=1) @ torch.arange(config.ncols).double(),
        ),
        dim=-1,
    )


def main(config: TrackConfig):
    print("Config")
    print(yaml.dump(dataclasses.asdict(config)))

    track, observations = simulate_track(config)
    datlik = observation_likelihood(observations, config)

    grid = torch_shmm.GridContext.rectangular(config.nrows, config.ncols, dt=config.dt, m=config.m)
    evaluator = torch_shmm.LikelihoodEvaluator(grid, custom_gradient=config.custom_gradient)
    print(evaluator)

    # Start from an isotropic guess, the rates are optimized in log space
    log_d = torch.zeros(2, dtype=torch.float64, requires_grad=True)
    optimizer = torch.optim.Adam([log_d], lr=config.lr)

    losses = []
    t = time.time()
    progress_bar = tqdm.trange(config.steps)
    for _ in progress_bar:
        optimizer.zero_grad()
        loss = evaluator.neg_log_likelihood(log_d[0], log_d[1], datlik)
        loss.backward()
        optimizer.step()

        losses.append(loss.item())
        progress_bar.set_postfix(nll=losses[-1], dx=log_d[0].exp().item(), dy=log_d[1].exp().item())
    fit_time = time.time() - t

    # Smooth only once at the optimum
    with torch.no_grad():
        result = evaluator.evaluate(log_d[0], log_d[1], datlik, dosmoo=1)

    filtered = expected_position(result.phi, config)
    smoothed = expected_position(result.smoo, config)
    track = track.to(torch.float64)

    truncation = evaluator.hmm.projector.truncation_error(result.dx, result.dy).item()
    if truncation > 1e-8:
        logging.getLogger(__name__).warning("Truncation order m=%d may be too small (error %g)", config.m, truncation)

    print("Results")
    print(
        yaml.dump(
            {
                "dx": result.dx.item(),
                "dy": result.dy.item(),
                "neg_log_likelihood": result.neg_log_likelihood.item(),
                "degenerate_steps": result.n_degenerate,
                "truncation_error": truncation,
                "fit_time": fit_time,
                "observation_mse": (observations - track).pow(2).sum(dim=-1).mean().item(),
                "filtering_mse": (filtered - track).pow(2).sum(dim=-1).mean().item(),
                "smoothing_mse": (smoothed - track).pow(2).sum(dim=-1).mean().item(),
            }
        )
    )

    plt.rcParams["font.size"] = 20

    plt.figure(figsize=(24, 16))
    plt.plot(track[:, 1], track[:, 0], color="k", label="True track")
    plt.plot(filtered[:, 1], filtered[:, 0], color="y", label="Filtered track")
    plt.plot(smoothed[:, 1], smoothed[:, 0], color="g", label="Smoothed track")
    plt.plot(observations[:, 1], observations[:, 0], "o", color="r", markersize=3.0, label="Observations")
    plt.imshow(
        result.smoo.sum(dim=0).reshape(config.nrows, config.ncols),
        cmap="Greys",
        alpha=0.5,
        origin="lower",
        extent=(-0.5, config.ncols - 0.5, -0.5, config.nrows - 0.5),
    )

    plt.xlabel("column (east-west)")
    plt.ylabel("row (north-south)")
    plt.legend(loc="upper right")

    plt.figure(figsize=(24, 16))
    plt.plot(losses)
    plt.xlabel("step")
    plt.ylabel("negative log-likelihood")
    plt.title(f"Estimated Dx={result.dx.item():.3f} (true {config.dx}), Dy={result.dy.item():.3f} (true {config.dy})")

    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Spatial HMM example, estimating diffusion rates on a grid")
    parser.add_argument("--nrows", default=30, type=int, help="Number of rows of the grid")
    parser.add_argument("--ncols", default=40, type=int, help="Number of columns of the grid")
    parser.add_argument("--dx", default=0.8, type=float, help="True east-west diffusion rate")
    parser.add_argument("--dy", default=0.2, type=float, help="True north-south diffusion rate")
    parser.add_argument("--m", default=30, type=int, help="Truncation order of the uniformization series")
    parser.add_argument("--length", default=200, type=int, help="Number of time steps")
    parser.add_argument("--noise", default=2.0, type=float, help="Observation noise (in cells)")
    parser.add_argument("--steps", default=50, type=int, help="Number of optimization steps")
    parser.add_argument("--lr", default=0.1, type=float, help="Learning rate of Adam (on log rates)")
    parser.add_argument("--custom-gradient", action="store_true", help="Use the hand-derived backward")
    parser.add_argument("--verbose", action="store_true", help="Log every likelihood evaluation")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    main(
        TrackConfig(
            nrows=args.nrows,
            ncols=args.ncols,
            dx=args.dx,
            dy=args.dy,
            m=args.m,
            length=args.length,
            noise=args.noise,
            steps=args.steps,
            lr=args.lr,
            custom_gradient=args.custom_gradient,
        )
    )
