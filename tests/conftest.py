"""Pytest configuration and fixtures."""
import io
import os

import numpy as np
import pytest
import torch
from PIL import Image

# api.py reads settings at import time.
os.environ.setdefault("DEEPLAB_MODEL_PATH", "/nonexistent/deeplab.pt")
os.environ.setdefault("DEEPLAB_DEVICE", "cpu")

from deeplab_service import config, model_loader, pipeline  # noqa: E402
from deeplab_service.image_buffer import ImageBuffer  # noqa: E402
from deeplab_service.pipeline import PipelineController  # noqa: E402
from deeplab_service.segmentation import SegmentationEngine  # noqa: E402

PERSON = config.PERSON_CLASS_INDEX


class BrightnessSegmenter(torch.nn.Module):
    """Stand-in for DeepLabV3: bright pixels are 'person', dark ones background.

    Emits 21-class logits shaped like the real network's output.
    """

    def __init__(self, num_classes: int = 21, person: int = PERSON):
        super().__init__()
        self.num_classes = num_classes
        self.person = person

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        person = x.mean(dim=1, keepdim=True) * 10.0
        background = -person
        other = person * 0.0 - 50.0
        channels = [background]
        for idx in range(1, self.num_classes):
            channels.append(person if idx == self.person else other)
        return torch.cat(channels, dim=1)


@pytest.fixture(autouse=True)
def reset_process_state():
    """Every test starts without a loaded model or cached singletons."""
    model_loader.unload_model()
    config.get_settings.cache_clear()
    pipeline.get_controller.cache_clear()
    yield
    model_loader.unload_model()
    config.get_settings.cache_clear()
    pipeline.get_controller.cache_clear()


@pytest.fixture
def settings(tmp_path):
    """Small model input keeps the tests fast."""
    return config.Settings(
        deeplab_model_path=tmp_path / "deeplab.pt",
        deeplab_device="cpu",
        model_input_size=64,
        inference_timeout_seconds=5.0,
        worker_threads=2,
        output_dir=tmp_path / "out",
    )


@pytest.fixture
def fake_model():
    return BrightnessSegmenter().eval()


@pytest.fixture
def engine(settings, fake_model):
    eng = SegmentationEngine(model=fake_model, device=torch.device("cpu"), settings=settings)
    yield eng
    eng.close()


@pytest.fixture
def controller(settings, engine):
    return PipelineController(engine=engine, settings=settings)


def make_portrait(size: int = 512) -> ImageBuffer:
    """Opaque RGB image: a bright ellipse ("person") on a black background."""
    yy, xx = np.mgrid[0:size, 0:size]
    cy, cx = size / 2.0, size / 2.0
    inside = ((yy - cy) / (size * 0.35)) ** 2 + ((xx - cx) / (size * 0.2)) ** 2 <= 1.0
    pixels = np.zeros((size, size, 3), dtype=np.uint8)
    pixels[inside] = (230, 200, 180)
    return ImageBuffer(pixels=pixels, pixel_format="RGB")


@pytest.fixture
def portrait():
    return make_portrait()


def png_bytes(pixels: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return buf.getvalue()
