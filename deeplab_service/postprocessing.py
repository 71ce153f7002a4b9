"""Turn DeepLab class probabilities into a foreground mask at image resolution."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np

from . import config
from .errors import DimensionMismatchError, InvalidInputError
from .image_buffer import ImageBuffer
from .preprocessing import ContentBox
from .segmentation import SegmentationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Mask:
    """Foreground opacity in [0, 1], (H, W) float32, read-only once built."""

    values: np.ndarray
    threshold: float
    feather_radius: int

    def __post_init__(self) -> None:
        self.values.setflags(write=False)

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def to_uint8(self) -> np.ndarray:
        return np.rint(self.values * 255.0).astype(np.uint8)

    def foreground_fraction(self) -> float:
        return float(self.values.mean()) if self.values.size else 0.0


def _keep_largest_component(mask: np.ndarray) -> Tuple[np.ndarray, int]:
    """Zero out all but the largest 8-connected foreground component."""
    mask_u8 = (mask > 0).astype(np.uint8)
    num_labels, labels, stats, _ = cv2.connectedComponentsWithStats(mask_u8, connectivity=8)
    component_count = max(num_labels - 1, 0)
    if num_labels <= 2:
        return mask, component_count

    largest_label = 1 + int(np.argmax(stats[1:, cv2.CC_STAT_AREA]))
    keep = labels == largest_label
    return np.where(keep, mask, 0.0).astype(np.float32), component_count


def _feather(mask: np.ndarray, radius: int) -> np.ndarray:
    """Close small gaps then blur the boundary; shape is preserved."""
    ksize = 2 * radius + 1
    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (ksize, ksize))
    closed = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, kernel, borderType=cv2.BORDER_REPLICATE)
    blurred = cv2.GaussianBlur(
        closed, (ksize, ksize), sigmaX=radius / 2.0, sigmaY=radius / 2.0, borderType=cv2.BORDER_REPLICATE
    )
    return np.clip(blurred, 0.0, 1.0).astype(np.float32)


class MaskBuilder:
    """Crop letterbox padding, upsample, threshold and optionally feather."""

    def __init__(
        self,
        threshold: Optional[float] = None,
        feather_radius: Optional[int] = None,
        keep_largest_component: Optional[bool] = None,
        settings: Optional[config.Settings] = None,
    ) -> None:
        self._settings = settings or config.get_settings()
        self.threshold = self._settings.default_threshold if threshold is None else threshold
        self.feather_radius = self._settings.default_feather_radius if feather_radius is None else feather_radius
        self.keep_largest_component = (
            self._settings.keep_largest_component if keep_largest_component is None else keep_largest_component
        )
        self.model_resolution = (self._settings.model_input_size, self._settings.model_input_size)
        self.max_feather_radius = self._settings.max_feather_radius
        self._validate(self.threshold, self.feather_radius)

    def _validate(self, threshold: float, feather_radius: int) -> None:
        if not 0.0 <= float(threshold) <= 1.0:
            raise InvalidInputError(f"threshold must be within [0, 1], got {threshold}")
        try:
            is_integer = not isinstance(feather_radius, bool) and int(feather_radius) == feather_radius
        except (TypeError, ValueError):
            is_integer = False
        if not is_integer or feather_radius < 0:
            raise InvalidInputError(f"featherRadius must be an integer >= 0, got {feather_radius}")
        if feather_radius > self.max_feather_radius:
            raise InvalidInputError(
                f"featherRadius must be <= {self.max_feather_radius}, got {feather_radius}"
            )

    def build(
        self,
        result: SegmentationResult,
        orig_size: Tuple[int, int],
        content_box: ContentBox,
        threshold: Optional[float] = None,
        feather_radius: Optional[int] = None,
    ) -> Mask:
        """
        Produce a mask at `orig_size` (width, height).

        Raises:
            DimensionMismatchError: the probability map is not at model resolution
                or the content box does not fit inside it.
            InvalidInputError: threshold / feather radius out of range.
        """
        threshold = self.threshold if threshold is None else threshold
        feather_radius = self.feather_radius if feather_radius is None else feather_radius
        self._validate(threshold, feather_radius)
        feather_radius = int(feather_radius)

        if result.resolution != self.model_resolution:
            raise DimensionMismatchError(
                f"Segmentation map is {result.resolution}, model contract is {self.model_resolution}",
                stage="mask",
            )
        map_h, map_w = result.resolution
        if (
            content_box.left < 0
            or content_box.top < 0
            or content_box.width <= 0
            or content_box.height <= 0
            or content_box.right > map_w
            or content_box.bottom > map_h
        ):
            raise DimensionMismatchError(
                f"Content box {content_box} does not fit a {map_w}x{map_h} segmentation map",
                stage="mask",
            )

        orig_w, orig_h = orig_size
        fg = result.foreground_probability()
        fg = fg[content_box.top : content_box.bottom, content_box.left : content_box.right]
        fg = np.ascontiguousarray(fg, dtype=np.float32)
        if (content_box.width, content_box.height) != (orig_w, orig_h):
            fg = cv2.resize(fg, (orig_w, orig_h), interpolation=cv2.INTER_LINEAR)
        fg = np.clip(fg, 0.0, 1.0)

        hard = (fg >= threshold).astype(np.float32)

        if self.keep_largest_component:
            hard, component_count = _keep_largest_component(hard)
            logger.debug("mask: %d foreground components before filtering", component_count)

        values = _feather(hard, feather_radius) if feather_radius > 0 else hard

        logger.debug(
            "mask: %dx%d threshold=%.3f feather=%d fg_fraction=%.4f",
            orig_w,
            orig_h,
            threshold,
            feather_radius,
            float(values.mean()),
        )
        return Mask(values=values, threshold=float(threshold), feather_radius=feather_radius)


def maybe_dump_debug(image: ImageBuffer, mask: Mask, debug_dir: Path) -> None:
    """Write the mask and a red band overlay when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        mask_u8 = mask.to_uint8()
        cv2.imwrite(str(debug_dir / "mask.png"), mask_u8)

        overlay = np.ascontiguousarray(image.rgb()).copy()
        band = (mask.values > 0.02) & (mask.values < 0.98)
        overlay[mask.values < 0.5] //= 3
        overlay[band] = [255, 0, 0]  # highlight edge pixels in red (RGB)
        cv2.imwrite(str(debug_dir / "mask_overlay.png"), cv2.cvtColor(overlay, cv2.COLOR_RGB2BGR))
        logger.debug("postprocess: wrote debug outputs to %s", debug_dir)
    except (OSError, cv2.error) as exc:
        logger.warning("postprocess: failed to write debug outputs: %s", exc)
