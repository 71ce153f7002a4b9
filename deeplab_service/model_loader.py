"""
Model loading utilities for DeepLabV3.

The loader:
 - loads the checkpoint from `DEEPLAB_MODEL_PATH` (TorchScript first,
   then a plain state_dict into the torchvision architecture),
 - keeps a single shared instance per process on the selected device,
 - exposes `get_model()` for inference callers.

A failed load leaves nothing behind, so a later call with a repaired
checkpoint loads cleanly.
"""

from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from typing import Optional, Tuple

import torch
from torchvision.models.segmentation import deeplabv3_mobilenet_v3_large

from . import config
from .errors import ModelLoadError

logger = logging.getLogger(__name__)

_MODEL: Optional[torch.nn.Module] = None
_DEVICE: Optional[torch.device] = None
_LOCK = Lock()


def resolve_device(preference: str = "auto") -> torch.device:
    """Prefer CUDA -> Apple MPS -> CPU unless a device is forced."""
    if preference != "auto":
        return torch.device(preference)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps")
    return torch.device("cpu")


def _try_load_torchscript(model_path: Path, device: torch.device) -> torch.nn.Module:
    """Load a TorchScript model if possible."""
    model = torch.jit.load(str(model_path), map_location=device)
    model.eval()
    return model


def _clean_state_dict(state_dict: dict) -> dict:
    """Remove common wrappers such as 'module.' prefixes."""
    cleaned = {}
    for key, value in state_dict.items():
        new_key = key
        if new_key.startswith("module."):
            new_key = new_key[len("module.") :]
        if new_key.startswith("model."):
            new_key = new_key[len("model.") :]
        cleaned[new_key] = value
    return cleaned


def _load_deeplab_from_state_dict(model_path: Path, num_classes: int, device: torch.device) -> torch.nn.Module:
    """Load a vanilla PyTorch checkpoint into the torchvision DeepLabV3 architecture."""
    checkpoint = torch.load(model_path, map_location=device)
    if isinstance(checkpoint, dict) and "state_dict" in checkpoint:
        checkpoint = checkpoint["state_dict"]
    if not isinstance(checkpoint, dict):
        raise ModelLoadError("Unsupported checkpoint format for DeepLabV3", stage="model_load")

    checkpoint = _clean_state_dict(checkpoint)
    has_aux = any(key.startswith("aux_classifier.") for key in checkpoint)
    model = deeplabv3_mobilenet_v3_large(
        weights=None, weights_backbone=None, num_classes=num_classes, aux_loss=has_aux
    )
    try:
        missing, unexpected = model.load_state_dict(checkpoint, strict=False)
    except RuntimeError as exc:
        # Shape mismatches (e.g. wrong class count) land here.
        raise ModelLoadError(f"Checkpoint does not match DeepLabV3 layout: {exc}", stage="model_load") from exc
    if missing:
        raise ModelLoadError(
            f"Checkpoint is missing {len(missing)} DeepLabV3 weights (first: {missing[0]})",
            stage="model_load",
        )
    if unexpected:
        logger.warning("Unexpected keys when loading DeepLabV3 checkpoint: %s", unexpected)

    model.to(device)
    model.eval()
    return model


def _load_model(settings: config.Settings, device: torch.device) -> torch.nn.Module:
    model_path = Path(settings.deeplab_model_path)
    if not model_path.is_file():
        raise ModelLoadError(f"DeepLabV3 checkpoint not found at {model_path}", stage="model_load")
    if model_path.stat().st_size == 0:
        raise ModelLoadError(f"DeepLabV3 checkpoint at {model_path} is empty", stage="model_load")

    try:
        logger.info("Attempting to load TorchScript model from %s", model_path)
        return _try_load_torchscript(model_path, device)
    except Exception as script_error:  # noqa: BLE001
        logger.info("TorchScript load failed, falling back to state_dict. Error: %s", script_error)

    try:
        return _load_deeplab_from_state_dict(model_path, settings.model_num_classes, device)
    except ModelLoadError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise ModelLoadError(f"Could not read DeepLabV3 checkpoint {model_path}: {exc}", stage="model_load") from exc


def get_model(settings: Optional[config.Settings] = None) -> Tuple[torch.nn.Module, torch.device]:
    """
    Return a singleton DeepLabV3 model + device pair.

    The model is loaded once on first access; concurrent first callers block
    on the lock and share the single load.

    Raises:
        ModelLoadError: the checkpoint is missing, empty or unreadable.
    """
    global _MODEL, _DEVICE
    if _MODEL is not None:
        return _MODEL, _DEVICE  # type: ignore[return-value]

    with _LOCK:
        if _MODEL is None:
            settings = settings or config.get_settings()
            device = resolve_device(settings.deeplab_device)
            model = _load_model(settings, device)
            _MODEL, _DEVICE = model, device
            logger.info("DeepLabV3 loaded on device: %s", device)
    return _MODEL, _DEVICE  # type: ignore[return-value]


def is_loaded() -> bool:
    return _MODEL is not None


def unload_model() -> None:
    """Drop the shared model, e.g. before pointing the service at a new checkpoint."""
    global _MODEL, _DEVICE
    with _LOCK:
        if _MODEL is not None:
            logger.info("Unloading DeepLabV3 from %s", _DEVICE)
        _MODEL, _DEVICE = None, None
