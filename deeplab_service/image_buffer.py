"""
Decoded pixel buffers and the codec boundary.

The pipeline only ever works on `ImageBuffer` instances: an 8-bit HxWxC
numpy array plus its pixel format. Decoding and encoding go through Pillow
and stay in this module.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from pathlib import Path
from typing import Optional, Union
from urllib.parse import unquote, urlparse

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = {"RGB": 3, "RGBA": 4}

ImageReference = Union[str, Path, bytes, bytearray, Image.Image, "ImageBuffer"]


@dataclass(frozen=True, eq=False)
class ImageBuffer:
    pixels: np.ndarray  # (H, W, C) uint8
    pixel_format: str = "RGB"

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0]) if self.pixels.ndim >= 1 else 0

    @property
    def size(self) -> tuple[int, int]:
        """(width, height), matching PIL's convention."""
        return self.width, self.height

    @property
    def has_alpha(self) -> bool:
        return self.pixel_format == "RGBA"

    def validate(self) -> None:
        """Raise `InvalidInputError` unless this is a non-empty 8-bit RGB/RGBA image."""
        if self.pixel_format not in SUPPORTED_FORMATS:
            raise InvalidInputError(f"Unsupported pixel format: {self.pixel_format}")
        if self.pixels.ndim != 3 or self.width == 0 or self.height == 0:
            raise InvalidInputError(
                f"Image must have non-zero width and height, got shape {self.pixels.shape}"
            )
        if self.pixels.shape[2] != SUPPORTED_FORMATS[self.pixel_format]:
            raise InvalidInputError(
                f"{self.pixel_format} image needs {SUPPORTED_FORMATS[self.pixel_format]} channels, "
                f"got {self.pixels.shape[2]}"
            )
        if self.pixels.dtype != np.uint8:
            raise InvalidInputError(f"Unsupported pixel depth: {self.pixels.dtype}")

    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]

    def alpha(self) -> np.ndarray:
        """Alpha channel in [0, 1]; fully opaque for RGB images."""
        if self.has_alpha:
            return self.pixels[..., 3].astype(np.float32) / 255.0
        return np.ones((self.height, self.width), dtype=np.float32)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_array(cls, array: np.ndarray, pixel_format: Optional[str] = None) -> "ImageBuffer":
        array = np.ascontiguousarray(array)
        if pixel_format is None:
            channels = array.shape[2] if array.ndim == 3 else 0
            pixel_format = {3: "RGB", 4: "RGBA"}.get(channels, f"{channels}-channel")
        return cls(pixels=array, pixel_format=pixel_format)

    @classmethod
    def from_pil(cls, image: Image.Image) -> "ImageBuffer":
        """Convert a PIL image; palette/grayscale/CMYK images become RGB(A)."""
        if image.mode not in SUPPORTED_FORMATS:
            has_transparency = image.mode in {"LA", "PA"} or "transparency" in image.info
            image = image.convert("RGBA" if has_transparency else "RGB")
        return cls(pixels=np.array(image, dtype=np.uint8), pixel_format=image.mode)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ImageBuffer":
        if not data:
            raise InvalidInputError("Image data is empty")
        try:
            image = Image.open(BytesIO(data))
            image.load()
        except Image.DecompressionBombError as exc:
            raise InvalidInputError(f"Image too large to decode safely: {exc}") from exc
        except (UnidentifiedImageError, OSError) as exc:
            raise InvalidInputError("Invalid image data") from exc
        # Bake camera orientation into the pixels before inference.
        image = ImageOps.exif_transpose(image)
        return cls.from_pil(image)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "ImageBuffer":
        path = Path(path)
        if not path.is_file():
            raise InvalidInputError(f"Input file not found: {path}")
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise InvalidInputError(f"Input file not readable: {path}: {exc}") from exc
        return cls.from_bytes(data)

    @classmethod
    def from_reference(cls, ref: ImageReference) -> "ImageBuffer":
        """Resolve a path, `file://` URI, byte buffer, PIL image or ImageBuffer."""
        if isinstance(ref, ImageBuffer):
            return ref
        if isinstance(ref, Image.Image):
            return cls.from_pil(ref)
        if isinstance(ref, (bytes, bytearray)):
            return cls.from_bytes(bytes(ref))
        if isinstance(ref, Path):
            return cls.from_path(ref)
        if isinstance(ref, str):
            parsed = urlparse(ref)
            if parsed.scheme == "file":
                return cls.from_path(unquote(parsed.path))
            if not parsed.scheme or len(parsed.scheme) == 1:
                # Bare paths, including Windows drive letters.
                return cls.from_path(ref)
            raise InvalidInputError(f"Unsupported image reference scheme: {parsed.scheme}")
        raise InvalidInputError(f"Unsupported image reference type: {type(ref).__name__}")

    # ------------------------------------------------------------------
    # Encoders
    # ------------------------------------------------------------------

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.pixels)

    def to_png_bytes(self) -> bytes:
        buf = BytesIO()
        self.to_pil().save(buf, format="PNG")
        return buf.getvalue()

    def save_png(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.to_png_bytes())
        logger.debug("Wrote %dx%d %s PNG to %s", self.width, self.height, self.pixel_format, path)
        return path
