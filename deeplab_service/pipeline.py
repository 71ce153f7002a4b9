"""
High-level background-removal pipeline.

`PipelineController.run` is the main entry point used by the bridge adapters,
the HTTP API and the queue worker. It keeps orchestration simple:
image -> preprocessing -> DeepLabV3 -> mask -> compositing -> image.

Stages run strictly in order and report failure with a specific error kind;
the controller never retries on its own.
"""

from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
import logging
from pathlib import Path
from threading import Event
import time
from typing import List, Optional

from . import config
from .compositing import CompositeRequest, Compositor
from .errors import BackgroundRemovalError, PipelineCancelledError
from .image_buffer import ImageBuffer, ImageReference
from .postprocessing import MaskBuilder, maybe_dump_debug
from .preprocessing import Preprocessor
from .segmentation import SegmentationEngine

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    PREPROCESSING = "preprocessing"
    INFERRING = "inferring"
    BUILDING_MASK = "buildingMask"
    COMPOSITING = "compositing"
    DONE = "done"
    FAILED = "failed"


_NEXT_STATE = {
    PipelineState.IDLE: PipelineState.PREPROCESSING,
    PipelineState.PREPROCESSING: PipelineState.INFERRING,
    PipelineState.INFERRING: PipelineState.BUILDING_MASK,
    PipelineState.BUILDING_MASK: PipelineState.COMPOSITING,
    PipelineState.COMPOSITING: PipelineState.DONE,
}


@dataclass
class PipelineResult:
    """Tagged outcome of one run: an output image or the error that stopped it."""

    state: PipelineState = PipelineState.IDLE
    output: Optional[ImageBuffer] = None
    error: Optional[BackgroundRemovalError] = None
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.DONE

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None

    @property
    def failed_stage(self) -> Optional[PipelineState]:
        """Stage that was active when the run failed."""
        if self.state is not PipelineState.FAILED:
            return None
        return self.history[-2]

    def advance(self) -> None:
        try:
            self.state = _NEXT_STATE[self.state]
        except KeyError:
            raise RuntimeError(f"Cannot advance pipeline from {self.state.value}") from None
        self.history.append(self.state)
        logger.debug("pipeline: -> %s", self.state.value)

    def fail(self, error: BackgroundRemovalError) -> None:
        self.error = error
        self.output = None
        self.state = PipelineState.FAILED
        self.history.append(self.state)

    def unwrap(self) -> ImageBuffer:
        """Return the output image or raise the recorded error."""
        if self.error is not None:
            raise self.error
        if self.output is None:
            raise RuntimeError(f"Pipeline has no output in state {self.state.value}")
        return self.output


class PipelineController:
    """Run the stages in sequence against one SegmentationEngine."""

    def __init__(
        self,
        engine: Optional[SegmentationEngine] = None,
        preprocessor: Optional[Preprocessor] = None,
        mask_builder: Optional[MaskBuilder] = None,
        compositor: Optional[Compositor] = None,
        settings: Optional[config.Settings] = None,
    ) -> None:
        self._settings = settings or config.get_settings()
        self.engine = engine or SegmentationEngine(settings=self._settings)
        self.preprocessor = preprocessor or Preprocessor(settings=self._settings)
        self.mask_builder = mask_builder or MaskBuilder(settings=self._settings)
        self.compositor = compositor or Compositor()

    @staticmethod
    def _check_cancelled(cancel_event: Optional[Event], result: PipelineResult) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelledError(
                f"Request cancelled during {result.state.value}; result discarded",
                stage=result.state.value,
            )

    def run(
        self,
        image_ref: ImageReference,
        request: Optional[CompositeRequest] = None,
        cancel_event: Optional[Event] = None,
    ) -> PipelineResult:
        """
        Execute every stage for one request.

        Pipeline errors are captured in the returned result; anything else is
        a bug and propagates.
        """
        request = request or CompositeRequest()
        result = PipelineResult()
        started = time.perf_counter()
        try:
            # Large buffers are released on every exit path.
            with ExitStack() as scope:
                result.advance()
                image = ImageBuffer.from_reference(image_ref)
                preprocessed = self.preprocessor.run(image)
                scope.callback(preprocessed.release)
                self._check_cancelled(cancel_event, result)

                result.advance()
                segmentation = self.engine.run(preprocessed)
                self._check_cancelled(cancel_event, result)

                result.advance()
                mask = self.mask_builder.build(
                    segmentation,
                    orig_size=preprocessed.orig_size,
                    content_box=preprocessed.content_box,
                    threshold=request.threshold,
                    feather_radius=request.feather_radius,
                )
                del segmentation
                self._check_cancelled(cancel_event, result)

                result.advance()
                output = self.compositor.compose(image, mask, request)
                self._check_cancelled(cancel_event, result)

                if self._settings.debug:
                    maybe_dump_debug(image, mask, Path(self._settings.debug_output_dir))

                result.output = output
                result.advance()
        except BackgroundRemovalError as exc:
            result.fail(exc)
            level = logging.INFO if isinstance(exc, PipelineCancelledError) else logging.WARNING
            logger.log(level, "pipeline failed in %s: [%s] %s", result.failed_stage.value, exc.kind, exc.message)
        finally:
            result.elapsed_ms = (time.perf_counter() - started) * 1000.0

        if result.ok:
            logger.info(
                "pipeline done: mode=%s %dx%d in %.1f ms",
                request.mode.value,
                result.output.width,
                result.output.height,
                result.elapsed_ms,
            )
        return result

    def close(self) -> None:
        self.engine.close()


@lru_cache()
def get_controller() -> PipelineController:
    """Process-wide controller sharing one engine (and thus one inference queue)."""
    return PipelineController()


def process_image_bytes(image_bytes: bytes, request: Optional[CompositeRequest] = None) -> bytes:
    """
    Full pipeline from encoded bytes to PNG bytes.

    Raises:
        BackgroundRemovalError: the specific failure of whichever stage stopped.
    """
    return get_controller().run(image_bytes, request).unwrap().to_png_bytes()
