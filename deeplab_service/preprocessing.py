"""
Image preprocessing for DeepLabV3.

The network has a fixed square input, so every image is resized to
`model_input_size` on both edges. With letterboxing enabled the aspect ratio
is kept and the remainder is padded symmetrically; the content box is
recorded so the mask builder can crop the padding back off.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional, Sequence, Tuple

import numpy as np
from PIL import Image
import torch

from . import config
from .errors import DimensionMismatchError
from .image_buffer import ImageBuffer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentBox:
    """Region of the model input that holds image content, in input pixels."""

    left: int
    top: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.left + self.width

    @property
    def bottom(self) -> int:
        return self.top + self.height


@dataclass
class PreprocessResult:
    tensor: torch.Tensor  # (1, 3, S, S) float32
    orig_size: Tuple[int, int]  # (width, height)
    input_size: int
    content_box: ContentBox

    def release(self) -> None:
        """Drop the tensor reference so its storage can be reclaimed."""
        self.tensor = None  # type: ignore[assignment]


def compute_content_box(width: int, height: int, input_size: int, letterbox: bool) -> ContentBox:
    """Where the resized image lands inside the square model input."""
    if not letterbox:
        return ContentBox(0, 0, input_size, input_size)
    scale = input_size / max(width, height)
    new_w = min(input_size, max(1, int(round(width * scale))))
    new_h = min(input_size, max(1, int(round(height * scale))))
    left = (input_size - new_w) // 2
    top = (input_size - new_h) // 2
    return ContentBox(left, top, new_w, new_h)


class Preprocessor:
    """Resize + normalize an ImageBuffer into the network's input tensor."""

    def __init__(
        self,
        input_size: Optional[int] = None,
        mean: Optional[Sequence[float]] = None,
        std: Optional[Sequence[float]] = None,
        letterbox: Optional[bool] = None,
        settings: Optional[config.Settings] = None,
    ) -> None:
        if input_size is None or mean is None or std is None or letterbox is None:
            settings = settings or config.get_settings()
        self.input_size = input_size if input_size is not None else settings.model_input_size
        self.mean = np.asarray(mean if mean is not None else settings.normalize_mean, dtype=np.float32)
        self.std = np.asarray(std if std is not None else settings.normalize_std, dtype=np.float32)
        self.letterbox = letterbox if letterbox is not None else settings.letterbox

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        return (1, 3, self.input_size, self.input_size)

    def run(self, image: ImageBuffer) -> PreprocessResult:
        """
        Validate `image`, fit it to the model input and normalize it.

        Raises:
            InvalidInputError: empty image or unsupported pixel format.
        """
        image.validate()
        orig_w, orig_h = image.size
        box = compute_content_box(orig_w, orig_h, self.input_size, self.letterbox)

        pil_rgb = Image.fromarray(np.ascontiguousarray(image.rgb()))
        if (box.width, box.height) != (orig_w, orig_h):
            pil_rgb = pil_rgb.resize((box.width, box.height), Image.BILINEAR)

        canvas = np.zeros((self.input_size, self.input_size, 3), dtype=np.uint8)
        canvas[box.top : box.bottom, box.left : box.right] = np.asarray(pil_rgb)

        im_np = canvas.astype(np.float32) / 255.0
        im_np = (im_np - self.mean) / self.std
        im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW

        tensor = torch.from_numpy(np.ascontiguousarray(im_np)).unsqueeze(0)
        if tuple(tensor.shape) != self.input_shape:
            raise DimensionMismatchError(
                f"Preprocessed tensor has shape {tuple(tensor.shape)}, expected {self.input_shape}",
                stage="preprocessing",
            )

        logger.debug(
            "preprocess: %dx%d -> content box %s in %dx%d input",
            orig_w,
            orig_h,
            box,
            self.input_size,
            self.input_size,
        )
        return PreprocessResult(
            tensor=tensor,
            orig_size=(orig_w, orig_h),
            input_size=self.input_size,
            content_box=box,
        )
