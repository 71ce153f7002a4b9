"""Unit tests for SegmentationEngine and SegmentationResult."""
import threading
import time

import numpy as np
import pytest
import torch

from deeplab_service.errors import DimensionMismatchError, InferenceError, ModelLoadError
from deeplab_service.image_buffer import ImageBuffer
from deeplab_service.preprocessing import Preprocessor
from deeplab_service.segmentation import SegmentationEngine, SegmentationResult

from conftest import PERSON, BrightnessSegmenter, make_portrait


class ExplodingModel(torch.nn.Module):
    def forward(self, x):
        raise RuntimeError("CUDA out of memory. Tried to allocate 2.00 GiB")


class SlowModel(BrightnessSegmenter):
    def forward(self, x):
        time.sleep(0.5)
        return super().forward(x)


class DictOutputModel(BrightnessSegmenter):
    def forward(self, x):
        out = super().forward(x)
        return {"out": out, "aux": out}


class WrongChannelsModel(torch.nn.Module):
    def forward(self, x):
        return torch.zeros(1, 7, x.shape[2], x.shape[3])


class BinaryModel(torch.nn.Module):
    def forward(self, x):
        return x.mean(dim=1, keepdim=True) * 10.0


@pytest.fixture
def preprocessed(settings):
    return Preprocessor(settings=settings).run(make_portrait(128))


def _engine(settings, model, **kwargs):
    return SegmentationEngine(model=model.eval(), device=torch.device("cpu"), settings=settings, **kwargs)


class TestForwardPass:
    """Test probabilities produced by a forward pass."""

    def test_probabilities_sum_to_one(self, engine, preprocessed):
        result = engine.run(preprocessed)
        assert result.probabilities.shape == (21, 64, 64)
        assert result.probabilities.dtype == np.float32
        np.testing.assert_allclose(result.probabilities.sum(axis=0), 1.0, atol=1e-5)

    def test_person_detected_at_center(self, engine, preprocessed):
        result = engine.run(preprocessed)
        fg = result.foreground_probability()
        assert fg[32, 32] > 0.99
        assert fg[0, 0] < 0.01
        assert result.label_map()[32, 32] == PERSON
        assert result.label_map()[0, 0] == 0

    def test_deterministic(self, engine, preprocessed):
        first = engine.run(preprocessed).probabilities
        second = engine.run(preprocessed).probabilities
        assert np.array_equal(first, second)

    def test_dict_output_accepted(self, settings, preprocessed):
        with _engine(settings, DictOutputModel()) as eng:
            assert eng.run(preprocessed).num_classes == 21

    def test_binary_model_uses_sigmoid(self, settings, preprocessed):
        with _engine(settings, BinaryModel()) as eng:
            result = eng.run(preprocessed)
        assert result.is_binary
        fg = result.foreground_probability()
        assert fg.min() >= 0.0 and fg.max() <= 1.0
        assert fg[32, 32] > 0.99

    def test_runs_without_timeout(self, settings, preprocessed, fake_model):
        with _engine(settings, fake_model, timeout_seconds=0) as eng:
            assert eng.run(preprocessed).resolution == (64, 64)


class TestContract:
    """Shape bookkeeping between preprocessing and the network."""

    def test_input_shape_mismatch(self, engine, preprocessed):
        preprocessed.tensor = torch.zeros(1, 3, 32, 32)
        with pytest.raises(DimensionMismatchError):
            engine.run(preprocessed)

    def test_released_tensor(self, engine, preprocessed):
        preprocessed.release()
        with pytest.raises(DimensionMismatchError):
            engine.run(preprocessed)

    def test_output_channel_mismatch(self, settings, preprocessed):
        with _engine(settings, WrongChannelsModel()) as eng:
            with pytest.raises(DimensionMismatchError, match="does not match"):
                eng.run(preprocessed)

    def test_foreground_class_out_of_range(self, settings, fake_model):
        with pytest.raises(ValueError):
            _engine(settings, fake_model, foreground_classes=[42])


class TestFailures:
    """Runtime faults are reported as InferenceError."""

    def test_runtime_fault(self, settings, preprocessed):
        with _engine(settings, ExplodingModel()) as eng:
            with pytest.raises(InferenceError, match="out of memory") as exc_info:
                eng.run(preprocessed)
        assert exc_info.value.retryable

    def test_timeout(self, settings, preprocessed):
        with _engine(settings, SlowModel(), timeout_seconds=0.05) as eng:
            with pytest.raises(InferenceError, match="timeout"):
                eng.run(preprocessed)

    def test_model_load_error_propagates(self, settings, preprocessed):
        settings.deeplab_model_path.write_bytes(b"")
        eng = SegmentationEngine(settings=settings)
        try:
            with pytest.raises(ModelLoadError):
                eng.run(preprocessed)
        finally:
            eng.close()


class TestSerialization:
    """A serialized engine never runs two forward passes at once."""

    def test_passes_do_not_overlap(self, settings, preprocessed):
        active = []
        peak = []
        lock = threading.Lock()

        class Tracking(BrightnessSegmenter):
            def forward(self, x):
                with lock:
                    active.append(1)
                    peak.append(len(active))
                time.sleep(0.05)
                with lock:
                    active.pop()
                return super().forward(x)

        with _engine(settings, Tracking(), serialize=True) as eng:
            threads = [threading.Thread(target=eng.run, args=(preprocessed,)) for _ in range(3)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert max(peak) == 1


class TestSegmentationResult:
    def test_foreground_sums_selected_classes(self):
        probs = np.zeros((3, 2, 2), dtype=np.float32)
        probs[0] = 0.5
        probs[1] = 0.3
        probs[2] = 0.2
        result = SegmentationResult(probabilities=probs, foreground_classes=(1, 2))
        np.testing.assert_allclose(result.foreground_probability(), 0.5)
        assert result.resolution == (2, 2)
