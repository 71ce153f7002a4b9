"""Unit tests for the Compositor."""
import numpy as np
import pytest

from deeplab_service.compositing import CompositeRequest, Compositor, OutputMode
from deeplab_service.errors import DimensionMismatchError, InvalidInputError
from deeplab_service.image_buffer import ImageBuffer
from deeplab_service.postprocessing import Mask


def _mask(values) -> Mask:
    return Mask(values=np.asarray(values, dtype=np.float32), threshold=0.5, feather_radius=0)


def _image(h=2, w=3, rgb=(200, 100, 50)) -> ImageBuffer:
    pixels = np.zeros((h, w, 3), dtype=np.uint8)
    pixels[:] = rgb
    return ImageBuffer.from_array(pixels)


@pytest.fixture
def compositor():
    return Compositor()


class TestTransparent:
    """Mask goes to alpha, RGB untouched."""

    def test_alpha_follows_mask(self, compositor):
        image = _image()
        mask = _mask([[0.0, 0.5, 1.0], [1.0, 0.25, 0.0]])
        out = compositor.compose(image, mask, CompositeRequest())
        assert out.pixel_format == "RGBA"
        assert out.size == image.size
        assert out.pixels[..., 3].tolist() == [[0, 128, 255], [255, 64, 0]]
        assert np.array_equal(out.pixels[..., :3], image.pixels)

    def test_existing_alpha_is_multiplied(self, compositor):
        pixels = np.zeros((1, 2, 4), dtype=np.uint8)
        pixels[..., 3] = (255, 102)
        out = compositor.compose(ImageBuffer.from_array(pixels), _mask([[1.0, 0.5]]), CompositeRequest())
        assert out.pixels[0, :, 3].tolist() == [255, 51]

    def test_alpha_monotonic_in_mask(self, compositor):
        image = _image(h=1, w=101)
        values = np.linspace(0.0, 1.0, 101)[None, :]
        alpha = compositor.compose(image, _mask(values), CompositeRequest()).pixels[0, :, 3]
        assert (np.diff(alpha.astype(int)) >= 0).all()


class TestReplacement:
    """Linear blend against a new background."""

    def test_solid_color_blend(self, compositor):
        image = _image(h=1, w=3, rgb=(200, 100, 50))
        request = CompositeRequest(mode=OutputMode.SOLID_COLOR, color=(0, 0, 255))
        out = compositor.compose(image, _mask([[1.0, 0.5, 0.0]]), request)
        assert out.pixel_format == "RGB"
        assert out.pixels[0].tolist() == [[200, 100, 50], [100, 50, 152], [0, 0, 255]]

    def test_replacement_image_is_resized(self, compositor):
        image = _image(h=4, w=4, rgb=(255, 255, 255))
        background = ImageBuffer.from_array(np.full((2, 2, 3), 10, dtype=np.uint8))
        request = CompositeRequest(mode="replacementImage", replacement_image=background)
        out = compositor.compose(image, _mask(np.zeros((4, 4))), request)
        assert out.size == (4, 4)
        assert (out.pixels == 10).all()

    def test_same_precision_for_all_channels(self, compositor):
        # Grey over grey must stay grey at every mask value: no colour fringe.
        image = _image(h=1, w=11, rgb=(180, 180, 180))
        request = CompositeRequest(mode=OutputMode.SOLID_COLOR, color=(20, 20, 20))
        out = compositor.compose(image, _mask(np.linspace(0, 1, 11)[None, :]), request)
        assert (out.pixels[..., 0] == out.pixels[..., 1]).all()
        assert (out.pixels[..., 1] == out.pixels[..., 2]).all()


class TestContract:
    def test_dimension_mismatch(self, compositor):
        with pytest.raises(DimensionMismatchError):
            compositor.compose(_image(h=2, w=3), _mask(np.ones((3, 2))), CompositeRequest())

    def test_solid_color_requires_color(self):
        with pytest.raises(InvalidInputError):
            CompositeRequest(mode=OutputMode.SOLID_COLOR)

    def test_color_range_checked(self):
        with pytest.raises(InvalidInputError):
            CompositeRequest(mode=OutputMode.SOLID_COLOR, color=(0, 0, 300))

    @pytest.mark.parametrize("color", [("red", 0, 0), (None, 0, 0), 7])
    def test_non_numeric_color_rejected(self, color):
        with pytest.raises(InvalidInputError):
            CompositeRequest(mode=OutputMode.SOLID_COLOR, color=color)

    def test_replacement_requires_image(self):
        with pytest.raises(InvalidInputError):
            CompositeRequest(mode=OutputMode.REPLACEMENT_IMAGE)

    def test_unknown_mode(self):
        with pytest.raises(InvalidInputError):
            CompositeRequest(mode="sepia")
