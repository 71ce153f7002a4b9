"""
Host-facing entry points.

`BackgroundRemover` is the single capability the host calls. Two thin
adapters expose it: `LegacyBridgeAdapter` for callback-style hosts
(resolve/reject) and `TypedBridgeAdapter` for hosts that take a typed
response object. Both delegate to the same `PipelineController`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from pathlib import Path
import tempfile
from typing import Any, Callable, Mapping, Optional, Tuple, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import config
from .compositing import CompositeRequest, OutputMode
from .errors import BackgroundRemovalError, InvalidInputError, OutputWriteError
from .image_buffer import ImageBuffer, ImageReference
from .pipeline import PipelineController, get_controller

logger = logging.getLogger(__name__)


def parse_hex_color(value: str) -> Tuple[int, int, int]:
    """Parse '#RRGGBB' (or 'RRGGBB') into an RGB triple."""
    raw = value.strip()
    if raw.startswith("#"):
        raw = raw[1:]
    if len(raw) != 6:
        raise ValueError(f"color must look like #RRGGBB, got {value!r}")
    try:
        return (int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16))
    except ValueError as exc:
        raise ValueError(f"color must look like #RRGGBB, got {value!r}") from exc


class RemovalOptions(BaseModel):
    """Optional per-call configuration accepted from the host."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    mode: OutputMode = OutputMode.TRANSPARENT
    color: Optional[Tuple[int, int, int]] = None
    replacement_image: Optional[Any] = Field(None, alias="replacementImage")
    feather_radius: Optional[int] = Field(None, alias="featherRadius", ge=0)
    threshold: Optional[float] = Field(None, ge=0.0, le=1.0)

    @field_validator("color", mode="before")
    @classmethod
    def parse_color(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_hex_color(v)
        return v

    @field_validator("color")
    @classmethod
    def validate_color_range(cls, v: Optional[Tuple[int, int, int]]) -> Optional[Tuple[int, int, int]]:
        if v is not None and any(not 0 <= c <= 255 for c in v):
            raise ValueError("color channels must be within 0..255")
        return v

    @classmethod
    def parse(cls, options: Union[None, Mapping[str, Any], "RemovalOptions"]) -> "RemovalOptions":
        if isinstance(options, RemovalOptions):
            return options
        try:
            return cls.model_validate(dict(options or {}))
        except ValidationError as exc:
            raise InvalidInputError(f"Invalid options: {exc.errors()[0]['msg']}") from exc

    def to_request(self) -> CompositeRequest:
        replacement = None
        if self.replacement_image is not None:
            replacement = ImageBuffer.from_reference(self.replacement_image)
        return CompositeRequest(
            mode=self.mode,
            color=self.color,
            replacement_image=replacement,
            feather_radius=self.feather_radius,
            threshold=self.threshold,
        )


class RemovalResponse(BaseModel):
    ok: bool
    output_uri: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


class BackgroundRemover(ABC):
    """Capability: remove the background from one image."""

    @abstractmethod
    def remove_background(
        self, image_ref: ImageReference, options: Union[None, Mapping[str, Any], RemovalOptions] = None
    ) -> RemovalResponse:
        raise NotImplementedError


def _output_name(image_ref: ImageReference) -> str:
    stem = "image"
    if isinstance(image_ref, (str, Path)):
        stem = Path(str(image_ref)).stem or stem
    return f"{stem}-{uuid.uuid4().hex[:12]}.png"


class _PipelineBackedRemover(BackgroundRemover):
    """Shared delegation to a PipelineController; adapters only reshape the result."""

    def __init__(
        self,
        controller: Optional[PipelineController] = None,
        output_dir: Optional[Path] = None,
    ) -> None:
        self._controller = controller
        if output_dir is None:
            settings = config.get_settings()
            output_dir = settings.output_dir or Path(tempfile.gettempdir())
        self.output_dir = Path(output_dir)

    @property
    def controller(self) -> PipelineController:
        if self._controller is None:
            self._controller = get_controller()
        return self._controller

    def _execute(
        self, image_ref: ImageReference, options: Union[None, Mapping[str, Any], RemovalOptions]
    ) -> Tuple[RemovalResponse, Optional[BackgroundRemovalError]]:
        try:
            request = RemovalOptions.parse(options).to_request()
        except BackgroundRemovalError as exc:
            return RemovalResponse(ok=False, error_kind=exc.kind, error_message=exc.message), exc

        result = self.controller.run(image_ref, request)
        if not result.ok:
            response = RemovalResponse(ok=False, error_kind=result.error_kind, error_message=result.error.message)
            return response, result.error

        try:
            path = result.output.save_png(self.output_dir / _output_name(image_ref))
        except OSError as exc:
            error = OutputWriteError(f"Could not write output PNG to {self.output_dir}: {exc}", stage="output")
            error.__cause__ = exc
            logger.warning("bridge: %s", error.message)
            return RemovalResponse(ok=False, error_kind=error.kind, error_message=error.message), error
        response = RemovalResponse(
            ok=True,
            output_uri=path.resolve().as_uri(),
            width=result.output.width,
            height=result.output.height,
        )
        return response, None

    def remove_background(
        self, image_ref: ImageReference, options: Union[None, Mapping[str, Any], RemovalOptions] = None
    ) -> RemovalResponse:
        response, _ = self._execute(image_ref, options)
        return response


class TypedBridgeAdapter(_PipelineBackedRemover):
    """Typed host binding: returns a `RemovalResponse` and never raises pipeline errors."""

    def remove_background_image(
        self, image_ref: ImageReference, options: Union[None, Mapping[str, Any], RemovalOptions] = None
    ) -> ImageBuffer:
        """In-process variant that hands back the decoded output instead of a file URI.

        Raises:
            BackgroundRemovalError: the specific failure of whichever stage stopped.
        """
        request = RemovalOptions.parse(options).to_request()
        return self.controller.run(image_ref, request).unwrap()


class LegacyBridgeAdapter(_PipelineBackedRemover):
    """Callback host binding mirroring the promise-style resolve/reject contract."""

    def removeBackground(  # noqa: N802 - host-facing name
        self,
        image_uri: str,
        resolve: Callable[[str], None],
        reject: Callable[[str, str, Optional[BaseException]], None],
        options: Optional[Mapping[str, Any]] = None,
    ) -> None:
        response, error = self._execute(image_uri, options)
        if response.ok:
            resolve(response.output_uri)
        else:
            logger.info("bridge: rejecting %s: [%s] %s", image_uri, response.error_kind, response.error_message)
            reject(response.error_kind, response.error_message, error)
