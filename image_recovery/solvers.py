"""
Accelerated primal-dual (Chambolle-Pock) solver for TV denoising.

For a noisy channel f the iteration computes the minimizer of

    TV(u) + lambda/2 * ||u - f||^2

where TV is the total variation built on the forward difference gradient of
`image_recovery.utils`. Since the data term is strongly convex with parameter
lambda, the step sizes are updated every iteration (Algorithm 2 in
Chambolle, A. and Pock, T. (2011), "A First-Order Primal-Dual Algorithm for
Convex Problems with Applications to Imaging").

The step sizes must satisfy tau * sigma * L^2 <= 1 with L^2 <= 8 the squared
norm of the gradient operator, and lambda, tau, sigma, gamma must all be
strictly positive. None of this is checked here; see
`SolverParameters.validate`.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict

import numpy as np

from image_recovery.img import CHANNEL_NAMES, ImageMatrices
from image_recovery.utils import (
    add,
    divergence,
    gradient,
    project_unit_ball,
    scale,
    squared_norm,
    subtract,
)


class SolverStatus(str, Enum):
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class SolverParameters:
    lambda_: float
    tau: float
    sigma: float
    gamma: float
    max_iter: int
    convergence_threshold: float

    def validate(self) -> "SolverParameters":
        for name in ("lambda_", "tau", "sigma", "gamma"):
            value = getattr(self, name)
            if not value > 0:
                raise ValueError(f"{name.rstrip('_')} must be bigger than 0, got {value}")
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be bigger than 0, got {self.max_iter}")
        if not self.convergence_threshold >= 0:
            raise ValueError(
                f"convergence_threshold must be non-negative, got {self.convergence_threshold}"
            )
        return self


@dataclass
class IterationState:
    """Primal, extrapolated primal and dual variables plus the current step sizes."""

    u: np.ndarray
    u_bar: np.ndarray
    p: np.ndarray
    tau: float
    sigma: float
    iteration: int = 0


@dataclass(frozen=True, eq=False)
class ChannelResult:
    u: np.ndarray
    status: SolverStatus
    iterations: int
    relative_change: float

    @property
    def converged(self) -> bool:
        return self.status is SolverStatus.CONVERGED


@dataclass(frozen=True, eq=False)
class MultichannelResult:
    matrices: ImageMatrices
    channels: Dict[str, ChannelResult] = field(default_factory=dict)

    @property
    def iterations(self) -> int:
        return max(result.iterations for result in self.channels.values())

    @property
    def converged(self) -> bool:
        return all(result.converged for result in self.channels.values())


def _relative_change(u_new: np.ndarray, u_old: np.ndarray) -> float:
    change = squared_norm(subtract(u_new, u_old))
    reference = squared_norm(u_old)
    if reference == 0:
        return change
    return change / reference


def _step(state: IterationState, f: np.ndarray, lambda_: float, gamma: float) -> np.ndarray:
    """Runs one iteration in place and returns the previous primal estimate."""
    # dual ascent followed by the projection onto the unit ball
    p = add(state.p, scale(gradient(state.u_bar), state.sigma))
    state.p = project_unit_ball(p)

    # proximal step of the quadratic data term, the adjoint of the gradient is -div
    tau = state.tau
    u_old = state.u
    u = add(add(u_old, scale(divergence(state.p), tau)), scale(f, tau * lambda_))
    state.u = u / (1.0 + tau * lambda_)

    theta = 1.0 / np.sqrt(1.0 + 2.0 * gamma * tau)
    state.tau = theta * tau
    state.sigma = state.sigma / theta

    state.u_bar = add(state.u, scale(subtract(state.u, u_old), theta))
    state.iteration += 1
    return u_old


def solve(f: np.ndarray, params: SolverParameters) -> ChannelResult:
    """
    Denoises a single channel.

    Parameters:
    f: np.ndarray
        Noisy channel of shape (H, W)
    params: SolverParameters
        Regularization weight, step sizes and stopping criteria

    Returns:
    ChannelResult
        The denoised channel together with the stopping status, the number of
        iterations run and the last relative change. Reaching max_iter is not
        an error, the status is EXHAUSTED.

    Raises:
    FloatingPointError
        If the iteration overflows or produces non-finite values.
    """
    f = np.array(f, dtype=np.float64)
    u0 = f.copy()
    state = IterationState(
        u=u0,
        u_bar=u0.copy(),
        p=np.zeros((2,) + f.shape, dtype=np.float64),
        tau=params.tau,
        sigma=params.sigma,
    )

    status = SolverStatus.EXHAUSTED
    relative_change = np.inf
    with np.errstate(over="raise", invalid="raise"):
        while state.iteration < params.max_iter:
            u_old = _step(state, f, params.lambda_, params.gamma)
            relative_change = _relative_change(state.u, u_old)
            if relative_change < params.convergence_threshold:
                status = SolverStatus.CONVERGED
                break

    if not np.all(np.isfinite(state.u)):
        raise FloatingPointError(
            f"Non-finite values after {state.iteration} iterations (lambda={params.lambda_})"
        )
    return ChannelResult(
        u=state.u,
        status=status,
        iterations=state.iteration,
        relative_change=float(relative_change),
    )


def denoise(f, lambda_, tau, sigma, gamma, max_iter, convergence_threshold):
    """Denoises a single channel and returns only the denoised matrix."""
    params = SolverParameters(lambda_, tau, sigma, gamma, max_iter, convergence_threshold)
    return solve(f, params).u


def solve_multichannel(image: ImageMatrices, params: SolverParameters) -> MultichannelResult:
    """Denoises the red, green and blue channels independently with the same parameters."""
    results = {
        name: solve(channel.copy(), params)
        for name, channel in zip(CHANNEL_NAMES, image.channels())
    }
    matrices = ImageMatrices(*(results[name].u for name in CHANNEL_NAMES))
    return MultichannelResult(matrices=matrices, channels=results)


def denoise_multichannel(
    image: ImageMatrices,
    lambda_: float,
    tau: float,
    sigma: float,
    gamma: float,
    max_iter: int,
    convergence_threshold: float,
) -> ImageMatrices:
    params = SolverParameters(lambda_, tau, sigma, gamma, max_iter, convergence_threshold)
    return solve_multichannel(image, params).matrices
