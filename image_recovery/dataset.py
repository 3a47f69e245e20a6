import os

import numpy as np
from PIL import Image

from image_recovery.img import ImageMatrices, from_matrices, to_matrices


def load_image(image_path, add_noise=False, noise_sigma=20.0, random_state=None) -> ImageMatrices:
    image = Image.open(image_path)
    matrices = to_matrices(image)

    if add_noise:
        matrices = noisy_copy(matrices, noise_sigma, random_state)

    return matrices


def noisy_copy(matrices: ImageMatrices, sigma: float, random_state=None) -> ImageMatrices:
    """Adds gaussian noise with standard deviation `sigma` to every channel, clipped to [0, 255]."""
    rng = np.random.default_rng(random_state)
    array = matrices.to_array()
    array = array + rng.normal(0, sigma, array.shape)
    return ImageMatrices.from_array(np.clip(array, 0, 255))


def save_image(matrices: ImageMatrices, image_path):
    from_matrices(matrices).save(image_path)


def file_prefix(image_path) -> str:
    """File name up to its first dot, e.g. 'photo' for 'photo.tar.png'."""
    return os.path.basename(os.fspath(image_path)).split(".")[0]


def output_file_name(image_path, lambda_: float) -> str:
    return f"{file_prefix(image_path)}_lambda_=_{lambda_:.10f}.png"
