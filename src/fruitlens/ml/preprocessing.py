"""Image preprocessing pipeline.

Decodes images, resizes them to the model's input size, and converts them
into normalized NHWC float32 tensors. Preprocessing only needs a
:class:`PixelSource`, so any decoded image representation can be classified
as long as it can report its size and the RGB value of a pixel.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@runtime_checkable
class PixelSource(Protocol):
    """Read-only access to a decoded 8-bit RGB image."""

    @property
    def width(self) -> int:
        """Image width in pixels."""
        ...

    @property
    def height(self) -> int:
        """Image height in pixels."""
        ...

    def get_rgb(self, x: int, y: int) -> tuple[int, int, int]:
        """Return the (r, g, b) values of the pixel at column x, row y."""
        ...


class ArrayPixelSource:
    """PixelSource backed by an HxWx3 (or HxWx4, alpha ignored) uint8 array."""

    def __init__(self, array: NDArray[np.uint8]) -> None:
        if array.dtype != np.uint8:
            raise ValueError(f"Expected a uint8 array, got {array.dtype}")
        if array.ndim != 3 or array.shape[2] not in (3, 4):
            raise ValueError(f"Expected an HxWx3 or HxWx4 array, got shape {array.shape}")
        self._array = array[:, :, :3]

    @property
    def width(self) -> int:
        return int(self._array.shape[1])

    @property
    def height(self) -> int:
        return int(self._array.shape[0])

    @property
    def array(self) -> NDArray[np.uint8]:
        """The underlying HxWx3 RGB view."""
        return self._array

    def get_rgb(self, x: int, y: int) -> tuple[int, int, int]:
        r, g, b = self._array[y, x]
        return int(r), int(g), int(b)

    @classmethod
    def from_pil(cls, image: Image.Image) -> ArrayPixelSource:
        """Wrap a Pillow image, converting it to RGB first."""
        return cls(np.asarray(image.convert("RGB"), dtype=np.uint8))


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_image(
    image_bytes: bytes,
    *,
    max_pixels: int = 16_777_216,
    max_file_size: int = 209_715_200,
) -> ArrayPixelSource:
    """Decode raw image bytes into an RGB pixel source.

    EXIF orientation is applied so camera captures come out upright.

    Raises:
        ValueError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise ValueError("Image data is empty")
    if len(image_bytes) > max_file_size:
        raise ValueError(f"Image data is {len(image_bytes)} bytes, limit is {max_file_size}")

    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            pixels = image.width * image.height
            if pixels > max_pixels:
                raise ValueError(f"Image has {pixels} pixels, limit is {max_pixels}")
            upright = ImageOps.exif_transpose(image)
            source = ArrayPixelSource.from_pil(upright)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ValueError(f"Could not decode image: {exc}") from exc

    logger.debug("Decoded %dx%d image", source.width, source.height)
    return source


def load_image(
    path: str | Path,
    *,
    max_pixels: int = 16_777_216,
    max_file_size: int = 209_715_200,
) -> ArrayPixelSource:
    """Read and decode an image file, e.g. a temporary camera capture."""
    data = Path(path).read_bytes()
    return decode_image(data, max_pixels=max_pixels, max_file_size=max_file_size)


# ---------------------------------------------------------------------------
# Resizing and tensor construction
# ---------------------------------------------------------------------------


def _check_source(source: PixelSource) -> None:
    if source.width <= 0 or source.height <= 0:
        raise ValueError(f"Image must have positive dimensions, got {source.width}x{source.height}")


def _sample_positions(out_size: int, in_size: int) -> tuple[NDArray[np.intp], NDArray[np.intp], NDArray[np.float64]]:
    """Map output pixel centres onto the input axis for bilinear sampling."""
    scale = in_size / out_size
    coords = np.clip((np.arange(out_size) + 0.5) * scale - 0.5, 0, in_size - 1)
    low = np.floor(coords).astype(np.intp)
    high = np.minimum(low + 1, in_size - 1)
    return low, high, coords - low


def _read_grid(source: PixelSource, rows: NDArray[np.intp], cols: NDArray[np.intp]) -> NDArray[np.uint8]:
    """Read the pixels at every (row, col) combination into a grid."""
    if isinstance(source, ArrayPixelSource):
        return source.array[np.ix_(rows, cols)]

    grid = np.empty((len(rows), len(cols), 3), dtype=np.uint8)
    for i, y in enumerate(rows):
        for j, x in enumerate(cols):
            grid[i, j] = source.get_rgb(int(x), int(y))
    return grid


def resize_bilinear(source: PixelSource, height: int, width: int) -> NDArray[np.uint8]:
    """Stretch a pixel source to exactly ``height`` x ``width``.

    Aspect ratio is not preserved. Only the source rows and columns that
    contribute to the output are read, and results are rounded back to
    8-bit so a same-size resize returns the source pixels unchanged.

    Returns:
        HxWx3 RGB uint8 array.
    """
    _check_source(source)

    y_low, y_high, y_frac = _sample_positions(height, source.height)
    x_low, x_high, x_frac = _sample_positions(width, source.width)

    rows = np.unique(np.concatenate([y_low, y_high]))
    cols = np.unique(np.concatenate([x_low, x_high]))
    grid = _read_grid(source, rows, cols).astype(np.float64)

    # Positions of each sample inside the reduced grid.
    r0, r1 = np.searchsorted(rows, y_low), np.searchsorted(rows, y_high)
    c0, c1 = np.searchsorted(cols, x_low), np.searchsorted(cols, x_high)

    fy = y_frac[:, None, None]
    fx = x_frac[None, :, None]
    top = grid[np.ix_(r0, c0)] * (1.0 - fx) + grid[np.ix_(r0, c1)] * fx
    bottom = grid[np.ix_(r1, c0)] * (1.0 - fx) + grid[np.ix_(r1, c1)] * fx
    blended = top * (1.0 - fy) + bottom * fy

    return np.clip(np.rint(blended), 0, 255).astype(np.uint8)


def normalize(pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
    """Scale 8-bit channel values into [0, 1]."""
    return pixels.astype(np.float32) / np.float32(255.0)


def to_input_tensor(source: PixelSource, height: int, width: int) -> NDArray[np.float32]:
    """Build the model input tensor for a pixel source.

    Returns:
        C-contiguous float32 array of shape (1, height, width, 3) holding
        row-major, channel-interleaved RGB values in [0, 1].
    """
    resized = resize_bilinear(source, height, width)
    return np.ascontiguousarray(normalize(resized)[np.newaxis, ...])
