from dataclasses import dataclass
from typing import Tuple

import numpy as np
from PIL import Image

CHANNEL_NAMES = ("red", "green", "blue")


@dataclass(frozen=True, eq=False)
class ImageMatrices:
    """
    An RGB image split into one float64 matrix per channel.

    All three channels always share the same (height, width) shape.
    """

    red: np.ndarray
    green: np.ndarray
    blue: np.ndarray

    def __post_init__(self):
        shapes = set()
        for name in CHANNEL_NAMES:
            channel = np.asarray(getattr(self, name), dtype=np.float64)
            if channel.ndim != 2:
                raise ValueError(
                    f"Channel {name} must be a 2D matrix, got shape {channel.shape}"
                )
            object.__setattr__(self, name, channel)
            shapes.add(channel.shape)
        if len(shapes) != 1:
            raise ValueError(f"All channels must share the same shape, got {shapes}")

    @property
    def shape(self) -> Tuple[int, int]:
        return self.red.shape

    def channels(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        return self.red, self.green, self.blue

    def copy(self) -> "ImageMatrices":
        return ImageMatrices(self.red.copy(), self.green.copy(), self.blue.copy())

    @classmethod
    def from_array(cls, array: np.ndarray) -> "ImageMatrices":
        """Builds the channel set from an (H, W, 3) array."""
        array = np.asarray(array, dtype=np.float64)
        if array.ndim != 3 or array.shape[2] != 3:
            raise ValueError(f"Expected an (H, W, 3) array, got shape {array.shape}")
        return cls(array[:, :, 0].copy(), array[:, :, 1].copy(), array[:, :, 2].copy())

    def to_array(self) -> np.ndarray:
        return np.stack(self.channels(), axis=-1)


def to_matrices(image: Image.Image) -> ImageMatrices:
    """Loads a PIL image as three channel matrices with values in [0, 255]."""
    return ImageMatrices.from_array(np.array(image.convert("RGB")))


def from_matrices(matrices: ImageMatrices) -> Image.Image:
    """Converts channel matrices back into an 8-bit RGB PIL image."""
    pixels = np.clip(np.rint(matrices.to_array()), 0, 255).astype(np.uint8)
    return Image.fromarray(pixels)
