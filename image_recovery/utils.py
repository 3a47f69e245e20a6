import numpy as np
from scipy.sparse.linalg import LinearOperator

from typing import Tuple


def gradient(u: np.ndarray) -> np.ndarray:
    """
    Forward finite difference gradient of a 2D image.

    Parameters:
    u: np.ndarray
        Image of shape (H, W)

    Returns:
    G: np.ndarray
        Gradient field of shape (2, H, W). G[0] holds the differences along
        columns (x) and G[1] along rows (y). The last column of G[0] and the
        last row of G[1] are zero (Neumann boundary).
    """
    u = np.asarray(u, dtype=np.float64)
    G = np.zeros((2,) + u.shape, dtype=np.float64)
    G[0, :, :-1] = u[:, 1:] - u[:, :-1]
    G[1, :-1, :] = u[1:, :] - u[:-1, :]
    return G


def divergence(p: np.ndarray) -> np.ndarray:
    """
    Discrete divergence of a gradient field, the negative adjoint of `gradient`.

    Along each axis the first index takes p[0], interior indices take
    p[k] - p[k-1] and the last index takes -p[last - 1], so that
    <gradient(u), p> == -<u, divergence(p)> for any p.
    """
    px, py = p[0], p[1]
    div = np.zeros(px.shape, dtype=np.float64)
    div[:, :-1] += px[:, :-1]
    div[:, 1:] -= px[:, :-1]
    div[:-1, :] += py[:-1, :]
    div[1:, :] -= py[:-1, :]
    return div


def add(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.add(a, b)


def subtract(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.subtract(a, b)


def scale(a: np.ndarray, factor: float) -> np.ndarray:
    return np.multiply(a, factor)


def squared_norm(a: np.ndarray) -> float:
    """Sum of squares of all entries."""
    return float(np.sum(np.square(a)))


def inner(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.sum(a * b))


def project_unit_ball(p: np.ndarray) -> np.ndarray:
    """Projects every pixel's 2-vector of a gradient field onto the unit ball."""
    magnitude = np.sqrt(p[0] ** 2 + p[1] ** 2)
    return p / np.maximum(1.0, magnitude)


def total_variation(u: np.ndarray) -> float:
    """Anisotropic total variation, sum over pixels of |dx u| + |dy u|."""
    return float(np.sum(np.abs(gradient(u))))


def gradient_operator(H, W):
    """Returns a LinearOperator for the stacked finite difference gradient.

    matvec maps a flattened (H, W) image to the flattened (2, H, W) gradient
    field and rmatvec applies the adjoint, i.e. minus the divergence.
    """

    def matvec(x):
        return gradient(x.reshape(H, W)).ravel()

    def rmatvec(y):
        return -divergence(y.reshape(2, H, W)).ravel()

    return LinearOperator(
        (2 * H * W, H * W), matvec=matvec, rmatvec=rmatvec, dtype=np.float64
    )


def compute_image_gradients(image: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Computes the finite difference gradient as a (Gx, Gy) pair."""
    H, W = image.shape
    K = gradient_operator(H, W)
    G = (K @ np.asarray(image, dtype=np.float64).ravel()).reshape(2, H, W)
    return G[0], G[1]
