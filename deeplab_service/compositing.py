"""
Compositing a mask onto the original image.

Transparent mode writes the mask into the alpha channel. Solid-color and
replacement-image modes blend the original over a new background:
``out = w * original + (1 - w) * background`` with ``w = mask * alpha``,
computed in float32 for every channel and rounded once at the end.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from .errors import DimensionMismatchError, InvalidInputError
from .image_buffer import ImageBuffer
from .postprocessing import Mask

logger = logging.getLogger(__name__)


class OutputMode(str, Enum):
    TRANSPARENT = "transparent"
    SOLID_COLOR = "solidColor"
    REPLACEMENT_IMAGE = "replacementImage"


@dataclass(frozen=True)
class CompositeRequest:
    """What to put behind the foreground, plus per-request mask tuning."""

    mode: OutputMode = OutputMode.TRANSPARENT
    color: Optional[Tuple[int, int, int]] = None
    replacement_image: Optional[ImageBuffer] = None
    feather_radius: Optional[int] = None
    threshold: Optional[float] = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "mode", OutputMode(self.mode))
        except ValueError as exc:
            raise InvalidInputError(f"Unknown output mode: {self.mode}") from exc
        if self.mode is OutputMode.SOLID_COLOR:
            message = "solidColor mode needs an RGB color with channels in 0..255"
            try:
                valid = self.color is not None and len(self.color) == 3 and all(0 <= int(c) <= 255 for c in self.color)
            except (TypeError, ValueError) as exc:
                raise InvalidInputError(message) from exc
            if not valid:
                raise InvalidInputError(message)
        if self.mode is OutputMode.REPLACEMENT_IMAGE and self.replacement_image is None:
            raise InvalidInputError("replacementImage mode needs a replacement image")


class Compositor:
    """Apply a same-resolution mask to an image."""

    def compose(self, image: ImageBuffer, mask: Mask, request: CompositeRequest) -> ImageBuffer:
        """
        Raises:
            DimensionMismatchError: mask and image sizes differ.
            InvalidInputError: the replacement image is unusable.
        """
        if mask.size != image.size:
            raise DimensionMismatchError(
                f"Mask is {mask.width}x{mask.height} but image is {image.width}x{image.height}",
                stage="compositing",
            )

        if request.mode is OutputMode.TRANSPARENT:
            out = self._transparent(image, mask)
        else:
            background = self._background(image, request)
            out = self._blend(image, mask, background)
        logger.debug("composite: mode=%s -> %dx%d %s", request.mode.value, out.width, out.height, out.pixel_format)
        return out

    def _transparent(self, image: ImageBuffer, mask: Mask) -> ImageBuffer:
        alpha = mask.values * image.alpha()
        alpha_u8 = np.rint(np.clip(alpha, 0.0, 1.0) * 255.0).astype(np.uint8)
        rgba = np.dstack((image.rgb(), alpha_u8))
        return ImageBuffer(pixels=np.ascontiguousarray(rgba), pixel_format="RGBA")

    def _background(self, image: ImageBuffer, request: CompositeRequest) -> np.ndarray:
        if request.mode is OutputMode.SOLID_COLOR:
            color = np.asarray(request.color, dtype=np.float32)
            return np.broadcast_to(color, (image.height, image.width, 3))

        replacement = request.replacement_image
        replacement.validate()
        bg = np.ascontiguousarray(replacement.rgb())
        if replacement.size != image.size:
            bg = cv2.resize(bg, (image.width, image.height), interpolation=cv2.INTER_LINEAR)
        return bg.astype(np.float32)

    def _blend(self, image: ImageBuffer, mask: Mask, background: np.ndarray) -> ImageBuffer:
        weight = (mask.values * image.alpha()).astype(np.float32)[..., None]
        foreground = image.rgb().astype(np.float32)
        blended = weight * foreground + (1.0 - weight) * background
        rgb = np.rint(np.clip(blended, 0.0, 255.0)).astype(np.uint8)
        return ImageBuffer(pixels=np.ascontiguousarray(rgb), pixel_format="RGB")
