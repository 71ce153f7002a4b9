"""
DeepLabV3 inference.

`SegmentationEngine` turns a preprocessed input tensor into per-pixel class
probabilities at model resolution. The forward pass runs on a small thread
pool so callers can bound it with a timeout; when the backend is not known to
be reentrant, a process-wide lock makes passes run one at a time.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
import logging
from threading import Lock
import time
from typing import Optional, Sequence, Tuple

import numpy as np
import torch

from . import config, model_loader
from .errors import BackgroundRemovalError, DimensionMismatchError, InferenceError
from .preprocessing import PreprocessResult

logger = logging.getLogger(__name__)

# One queue for every engine sharing the process-wide model.
_SERIAL_LOCK = Lock()


@dataclass(frozen=True, eq=False)
class SegmentationResult:
    """
    Class probabilities at model resolution.

    `probabilities` is (C, S, S) float32. For C > 1 each pixel's vector sums
    to 1 (softmax); for C == 1 the single channel is a foreground probability
    in [0, 1] (sigmoid).
    """

    probabilities: np.ndarray
    foreground_classes: Tuple[int, ...]

    @property
    def num_classes(self) -> int:
        return int(self.probabilities.shape[0])

    @property
    def resolution(self) -> Tuple[int, int]:
        """(height, width) of the probability map."""
        return int(self.probabilities.shape[1]), int(self.probabilities.shape[2])

    @property
    def is_binary(self) -> bool:
        return self.num_classes == 1

    def foreground_probability(self) -> np.ndarray:
        """(S, S) float32 probability that each pixel belongs to the foreground."""
        if self.is_binary:
            return self.probabilities[0]
        fg = self.probabilities[list(self.foreground_classes)].sum(axis=0)
        return np.clip(fg, 0.0, 1.0).astype(np.float32)

    def label_map(self) -> np.ndarray:
        """(S, S) argmax class index per pixel."""
        if self.is_binary:
            return (self.probabilities[0] >= 0.5).astype(np.uint8)
        return self.probabilities.argmax(axis=0).astype(np.uint8)


def _extract_logits(output) -> torch.Tensor:
    """torchvision models return {'out': ..., 'aux': ...}; scripted exports may return a tensor or tuple."""
    if isinstance(output, dict):
        output = output["out"]
    elif isinstance(output, (tuple, list)):
        output = output[0]
    if not isinstance(output, torch.Tensor):
        raise InferenceError(f"Model returned unsupported output type {type(output).__name__}", stage="inference")
    return output


class SegmentationEngine:
    """Wraps the shared DeepLabV3 model and runs forward passes."""

    def __init__(
        self,
        model: Optional[torch.nn.Module] = None,
        device: Optional[torch.device] = None,
        settings: Optional[config.Settings] = None,
        foreground_classes: Optional[Sequence[int]] = None,
        serialize: Optional[bool] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._settings = settings or config.get_settings()
        self._model = model
        self._device = device or (torch.device("cpu") if model is not None else None)
        self.num_classes = self._settings.model_num_classes
        self.input_shape = self._settings.input_shape
        self.foreground_classes = tuple(
            foreground_classes if foreground_classes is not None else self._settings.foreground_classes
        )
        if self.num_classes > 1 and any(c < 0 or c >= self.num_classes for c in self.foreground_classes):
            raise ValueError(
                f"foreground classes {self.foreground_classes} outside [0, {self.num_classes})"
            )
        self.serialize = self._settings.serialize_inference if serialize is None else serialize
        self.timeout_seconds = (
            self._settings.inference_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, self._settings.worker_threads), thread_name_prefix="deeplab-infer"
        )

    def ensure_loaded(self) -> Tuple[torch.nn.Module, torch.device]:
        """Load the shared model on first use. Raises `ModelLoadError`."""
        if self._model is None:
            self._model, self._device = model_loader.get_model(self._settings)
        return self._model, self._device  # type: ignore[return-value]

    def _forward(self, tensor: torch.Tensor, model: torch.nn.Module, device: torch.device) -> np.ndarray:
        try:
            if self.serialize:
                with _SERIAL_LOCK:
                    return self._forward_unlocked(tensor, model, device)
            return self._forward_unlocked(tensor, model, device)
        except BackgroundRemovalError:
            raise
        except Exception as exc:  # noqa: BLE001
            # Includes torch.cuda.OutOfMemoryError, a RuntimeError subclass.
            raise InferenceError(f"Forward pass failed: {exc}", stage="inference") from exc
        finally:
            if device.type == "cuda":
                torch.cuda.empty_cache()

    def _forward_unlocked(self, tensor: torch.Tensor, model: torch.nn.Module, device: torch.device) -> np.ndarray:
        with torch.no_grad():
            logits = _extract_logits(model(tensor.to(device)))
            if logits.ndim != 4 or logits.shape[0] != 1 or logits.shape[1] not in {1, self.num_classes}:
                raise DimensionMismatchError(
                    f"Model output shape {tuple(logits.shape)} does not match "
                    f"(1, {self.num_classes}, H, W)",
                    stage="inference",
                )
            if logits.shape[1] == 1:
                probs = torch.sigmoid(logits)
            else:
                probs = torch.softmax(logits, dim=1)
            return probs[0].detach().to(torch.float32).cpu().numpy()

    def run(self, preprocessed: PreprocessResult) -> SegmentationResult:
        """
        Run one forward pass.

        Raises:
            ModelLoadError: the shared model could not be loaded.
            DimensionMismatchError: input or output breaks the model contract.
            InferenceError: the pass faulted or exceeded `timeout_seconds`.
        """
        tensor = preprocessed.tensor
        if tensor is None or tuple(tensor.shape) != tuple(self.input_shape):
            got = None if tensor is None else tuple(tensor.shape)
            raise DimensionMismatchError(
                f"Input tensor shape {got} does not match model contract {tuple(self.input_shape)}",
                stage="inference",
            )
        model, device = self.ensure_loaded()

        started = time.perf_counter()
        if self.timeout_seconds and self.timeout_seconds > 0:
            future = self._executor.submit(self._forward, tensor, model, device)
            try:
                probs = future.result(timeout=self.timeout_seconds)
            except FutureTimeout as exc:
                # A running pass cannot be interrupted; it finishes and is discarded.
                future.cancel()
                raise InferenceError(
                    f"Inference exceeded {self.timeout_seconds:.1f}s timeout", stage="inference"
                ) from exc
        else:
            probs = self._forward(tensor, model, device)

        logger.debug(
            "inference: %s -> %s on %s in %.1f ms",
            tuple(tensor.shape),
            probs.shape,
            device,
            (time.perf_counter() - started) * 1000.0,
        )
        return SegmentationResult(probabilities=probs, foreground_classes=self.foreground_classes)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "SegmentationEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
