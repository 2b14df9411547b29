"""
Pytest configuration and fixtures for Halftone Pie tests
"""

import io
import json

import numpy as np
import pytest
from PIL import Image


def make_rgba(width, height, color=(255, 255, 255, 255)):
    """Uniform RGBA image"""
    return Image.new("RGBA", (width, height), color)


def png_bytes(image):
    """Encode a PIL image as PNG"""
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def white_image():
    """Opaque white 40x40 image"""
    return make_rgba(40, 40)


@pytest.fixture
def black_image():
    """Opaque black 16x16 image"""
    return make_rgba(16, 16, (0, 0, 0, 255))


@pytest.fixture
def gradient_image():
    """64x32 opaque image, dark on the left and bright on the right"""
    ramp = np.linspace(0, 255, 64).astype(np.uint8)
    pixels = np.zeros((32, 64, 4), dtype=np.uint8)
    pixels[..., 0] = ramp
    pixels[..., 1] = ramp
    pixels[..., 2] = ramp
    pixels[..., 3] = 255
    return Image.fromarray(pixels)


@pytest.fixture
def image_file(tmp_path, gradient_image):
    """Gradient image saved as PNG"""
    path = tmp_path / "input.png"
    gradient_image.save(path)
    return path


@pytest.fixture
def palette_file(tmp_path):
    """palette.json with a couple of named gradients"""
    path = tmp_path / "palette.json"
    path.write_text(json.dumps([
        {"name": "Sunset", "colors": ["#ff5e62", "#ff9966", "#ffd86f"]},
        {"name": "Mono", "colors": ["#000000", "#ffffff"]},
    ]), encoding="utf-8")
    return path


class FakeResponse:
    """Minimal stand-in for requests.Response"""

    def __init__(self, content=b"", status_error=None):
        self.content = content
        self.status_error = status_error

    def raise_for_status(self):
        if self.status_error is not None:
            raise self.status_error


@pytest.fixture
def fake_get(monkeypatch):
    """
    Patch requests.get; returns a dict whose "response" entry is served and
    whose "calls" list records requested URLs.
    """
    import requests

    state = {"response": FakeResponse(), "calls": []}

    def _get(url, timeout=None, allow_redirects=True):
        state["calls"].append(url)
        response = state["response"]
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(requests, "get", _get)
    return state
