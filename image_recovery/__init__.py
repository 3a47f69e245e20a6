"""
Total-Variation image denoising with an accelerated primal-dual solver.

This package denoises RGB images channel by channel and sweeps the
regularization weight over a geometric range of values.
"""

from image_recovery.img import ImageMatrices
from image_recovery.solvers import denoise, denoise_multichannel
from image_recovery.sweep import run_sweep

__version__ = "0.1.0"
__all__ = ["ImageMatrices", "denoise", "denoise_multichannel", "run_sweep", "utils", "solvers", "sweep"]
