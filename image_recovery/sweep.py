"""
Runs the multichannel solver for a geometric sweep of lambda values.

Every lambda is an independent task working on its own copy of the input
image and its own parameters, so tasks run on a thread pool without any
locking and produce the same numbers as a sequential run.
"""

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import numpy as np

from image_recovery.img import ImageMatrices
from image_recovery.solvers import MultichannelResult, SolverParameters, solve_multichannel

ProgressCallback = Callable[[str, Dict[str, Any]], None]


class SweepTaskError(Exception):
    """A failure of the solver for one lambda value of a sweep."""

    def __init__(self, lambda_: float, cause: BaseException):
        super().__init__(f"lambda={lambda_}: {type(cause).__name__}: {cause}")
        self.lambda_ = lambda_
        self.cause = cause


def _integer(config: Dict[str, Any], key: str) -> int:
    value = config[key]
    if isinstance(value, bool) or float(value) != int(float(value)):
        raise ValueError(f"`{key}` must be an integer, got {value!r}")
    return int(float(value))


@dataclass(frozen=True)
class SweepConfig:
    start_lambda: float
    end_lambda: float
    steps: int
    max_iter: int
    convergence_threshold: float

    def validate(self) -> "SweepConfig":
        if not self.start_lambda > 0:
            raise ValueError("`start_lambda` must be bigger than 0")
        if not self.start_lambda < self.end_lambda:
            raise ValueError("`start_lambda` must be smaller than `end_lambda`")
        if not self.steps > 0:
            raise ValueError("`steps` must be bigger than 0")
        if not self.max_iter > 0:
            raise ValueError("`max_iter` must be bigger than 0")
        if not self.convergence_threshold >= 0:
            raise ValueError("`convergence_threshold` must be non-negative")
        return self

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "SweepConfig":
        return cls(
            start_lambda=float(config["start_lambda"]),
            end_lambda=float(config["end_lambda"]),
            steps=_integer(config, "steps"),
            max_iter=_integer(config, "max_iter"),
            convergence_threshold=float(config["convergence_threshold"]),
        )


@dataclass(frozen=True)
class SweepEntry:
    lambda_: float
    parameters: SolverParameters
    result: Optional[MultichannelResult] = None
    error: Optional[SweepTaskError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def matrices(self) -> Optional[ImageMatrices]:
        return self.result.matrices if self.result is not None else None


class SweepResult:
    """Per-lambda outcomes of a sweep, ordered by lambda."""

    def __init__(self, entries: List[SweepEntry]):
        self.entries = sorted(entries, key=lambda entry: entry.lambda_)

    def __iter__(self) -> Iterator[Tuple[float, ImageMatrices]]:
        for entry in self.entries:
            if entry.ok:
                yield entry.lambda_, entry.result.matrices

    def __len__(self):
        return len(self.entries)

    @property
    def lambdas(self) -> List[float]:
        return [entry.lambda_ for entry in self.entries]

    def successes(self) -> List[SweepEntry]:
        return [entry for entry in self.entries if entry.ok]

    def failures(self) -> List[SweepEntry]:
        return [entry for entry in self.entries if not entry.ok]

    def raise_for_failures(self):
        failed = self.failures()
        if failed:
            raise failed[0].error


def lambda_sequence(start_lambda: float, end_lambda: float, steps: int) -> List[float]:
    """
    Geometric sequence start_lambda * q**k for k = 0..steps-1, with q chosen
    so that the last value is end_lambda. A single step yields [start_lambda].
    """
    if steps == 1:
        return [start_lambda]
    q = (end_lambda / start_lambda) ** (1.0 / (steps - 1))
    return [start_lambda * q**k for k in range(steps)]


def derive_parameters(
    lambda_: float, max_iter: int, convergence_threshold: float
) -> SolverParameters:
    # tau * sigma * L^2 == 1 with the bound L^2 <= 8 of the gradient operator
    tau = 1.0 / np.sqrt(2.0)
    sigma = 1.0 / (8.0 * tau)
    # acceleration rate used for the ROF model in Chambolle and Pock (2011)
    gamma = 0.35 * lambda_
    return SolverParameters(
        lambda_=lambda_,
        tau=float(tau),
        sigma=float(sigma),
        gamma=gamma,
        max_iter=max_iter,
        convergence_threshold=convergence_threshold,
    )


def _run_task(image: ImageMatrices, params: SolverParameters) -> SweepEntry:
    try:
        result = solve_multichannel(image, params)
    except Exception as e:
        return SweepEntry(params.lambda_, params, error=SweepTaskError(params.lambda_, e))
    return SweepEntry(params.lambda_, params, result=result)


def _notify(progress_callback, entry: SweepEntry):
    if progress_callback is None:
        return
    if entry.ok:
        progress_callback(
            "complete",
            {
                "lambda": entry.lambda_,
                "converged": entry.result.converged,
                "iterations": entry.result.iterations,
                "statuses": {
                    name: result.status.value
                    for name, result in entry.result.channels.items()
                },
            },
        )
    else:
        progress_callback("failed", {"lambda": entry.lambda_, "error": str(entry.error)})


def _resolve_workers(max_workers: Optional[int], tasks: int) -> int:
    if max_workers is None:
        max_workers = os.cpu_count() or 1
    return max(1, min(int(max_workers), tasks))


def run_sweep(
    image: ImageMatrices,
    start_lambda: float,
    end_lambda: float,
    steps: int,
    max_iter: int,
    convergence_threshold: float,
    *,
    max_workers: Optional[int] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> SweepResult:
    """
    Denoises `image` once per lambda of the geometric sweep.

    Parameters are validated before anything is dispatched. A failing lambda
    is recorded in its own entry and does not stop the other ones. With a
    single worker the tasks run sequentially in the calling thread.
    """
    config = SweepConfig(
        start_lambda, end_lambda, steps, max_iter, convergence_threshold
    ).validate()
    parameters = [
        derive_parameters(lambda_, config.max_iter, config.convergence_threshold).validate()
        for lambda_ in lambda_sequence(config.start_lambda, config.end_lambda, config.steps)
    ]

    workers = _resolve_workers(max_workers, len(parameters))
    entries = []

    if workers == 1:
        for params in parameters:
            if progress_callback is not None:
                progress_callback("dispatch", {"lambda": params.lambda_, "workers": 1})
            entry = _run_task(image.copy(), params)
            _notify(progress_callback, entry)
            entries.append(entry)
        return SweepResult(entries)

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = []
        for params in parameters:
            if progress_callback is not None:
                progress_callback("dispatch", {"lambda": params.lambda_, "workers": workers})
            futures.append(executor.submit(_run_task, image.copy(), params))
        for future in as_completed(futures):
            entry = future.result()
            _notify(progress_callback, entry)
            entries.append(entry)

    return SweepResult(entries)
