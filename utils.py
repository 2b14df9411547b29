"""
Utility functions for the halftone application.

Color parsing and luminance, image source loading (files, URLs, raw bytes)
and named gradient palettes.
"""

import io
import json
import logging
import os
import re
from typing import List, Tuple, Dict, Optional, Union

import requests
from PIL import Image, ImageColor, UnidentifiedImageError

__all__ = [
    # Functions
    'hex_to_rgb',
    'hsl_to_rgb',
    'parse_color',
    'color_to_bytes',
    'brightness',
    'brightness_from_rgba',
    'is_url',
    'is_allowed_url',
    'load_image',
    'load_palettes_from_file',
    'validate_image_file',
    'ensure_rgba',
    # Classes
    'SourceUnavailableError',
    'PaletteManager',
]

logger = logging.getLogger(__name__)

RGB = Tuple[float, float, float]

BYTE_MAX = 255

# Luma weights (ITU-R BT.601)
RED_WEIGHT = 0.299
GREEN_WEIGHT = 0.587
BLUE_WEIGHT = 0.114

HEX_PATTERN = re.compile(r'^#?([a-f0-9]{6}|[a-f0-9]{3})$', re.IGNORECASE)
RGB_PATTERN = re.compile(r'rgba?\s*\(\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)')
HSL_PATTERN = re.compile(r'hsla?\s*\(\s*([\d.]+)\s*,\s*([\d.]+)%\s*,\s*([\d.]+)%')

ALLOWED_URL_PREFIXES = (
    'https://',
    'http://localhost',
    'http://127.0.0.1',
)

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp'}


class SourceUnavailableError(Exception):
    """Raised when a source image cannot be fetched, read or decoded."""
    pass


# -------------------- Color Utilities --------------------

def hex_to_rgb(hex_color: str) -> Tuple[int, int, int]:
    """
    Convert hex color string to RGB tuple.

    Args:
        hex_color: Hex string like "#FF0000", "FF0000" or "#F00"

    Returns:
        RGB tuple (r, g, b) with 0-255 channels
    """
    hex_color = hex_color.lstrip('#')
    if len(hex_color) == 3:
        hex_color = ''.join(c * 2 for c in hex_color)
    return tuple(int(hex_color[i:i+2], 16) for i in (0, 2, 4))


def _hue_to_channel(p: float, q: float, t: float) -> float:
    if t < 0:
        t += 1
    if t > 1:
        t -= 1
    if t < 1 / 6:
        return p + (q - p) * 6 * t
    if t < 1 / 2:
        return q
    if t < 2 / 3:
        return p + (q - p) * (2 / 3 - t) * 6
    return p


def hsl_to_rgb(h: float, s: float, l: float) -> RGB:
    """
    Standard HSL to RGB conversion.

    Args:
        h: Hue as a fraction of the full turn (0-1)
        s: Saturation (0-1)
        l: Lightness (0-1)

    Returns:
        Normalized (r, g, b) in 0-1
    """
    if s == 0:
        return (l, l, l)

    q = l * (1 + s) if l < 0.5 else l + s - l * s
    p = 2 * l - q
    return (
        _hue_to_channel(p, q, h + 1 / 3),
        _hue_to_channel(p, q, h),
        _hue_to_channel(p, q, h - 1 / 3),
    )


def _parse_hex(color: str) -> Optional[RGB]:
    match = HEX_PATTERN.match(color)
    if not match:
        return None
    r, g, b = hex_to_rgb(match.group(1))
    return (r / BYTE_MAX, g / BYTE_MAX, b / BYTE_MAX)


def _parse_rgb(color: str) -> Optional[RGB]:
    match = RGB_PATTERN.search(color)
    if not match:
        return None
    return tuple(min(BYTE_MAX, int(v)) / BYTE_MAX for v in match.groups())


def _parse_hsl(color: str) -> Optional[RGB]:
    match = HSL_PATTERN.search(color)
    if not match:
        return None
    try:
        h, s, l = (float(v) for v in match.groups())
    except ValueError:
        return None
    return hsl_to_rgb(h / 360, s / 100, l / 100)


def _parse_named(color: str) -> Optional[RGB]:
    # Pillow knows the CSS named colors and a few extra notations
    try:
        rgb = ImageColor.getrgb(color)
    except ValueError:
        return None
    return tuple(c / BYTE_MAX for c in rgb[:3])


def parse_color(color: str) -> RGB:
    """
    Parse a color string into normalized RGB.

    Tries hex (3 or 6 digits, optional '#'), rgb()/rgba(), hsl()/hsla() and
    finally Pillow's color table for named CSS colors.

    Args:
        color: Color string

    Returns:
        (r, g, b) each in 0-1, or (0, 0, 0) when nothing matches
    """
    if not isinstance(color, str):
        return (0.0, 0.0, 0.0)
    color = color.strip()
    if not color:
        return (0.0, 0.0, 0.0)

    for parser in (_parse_hex, _parse_rgb, _parse_hsl, _parse_named):
        rgb = parser(color)
        if rgb is not None:
            return rgb

    logger.debug("Unparseable color %r, falling back to black", color)
    return (0.0, 0.0, 0.0)


def color_to_bytes(color: str) -> Tuple[int, int, int]:
    """Parsed color as 0-255 integer channels."""
    return tuple(int(round(c * BYTE_MAX)) for c in parse_color(color))


def brightness(r, g, b):
    """
    Perceptual luma of normalized RGB.

    Works on floats and on numpy arrays alike.
    """
    return RED_WEIGHT * r + GREEN_WEIGHT * g + BLUE_WEIGHT * b


def brightness_from_rgba(r, g, b, a):
    """
    Luma of byte-range RGBA, weighted by alpha.

    A fully transparent pixel always yields 0.
    Works on floats and on numpy arrays alike.
    """
    gray = brightness(r / BYTE_MAX, g / BYTE_MAX, b / BYTE_MAX)
    return gray * (a / BYTE_MAX)


# -------------------- Image Sources --------------------

def is_url(source: str) -> bool:
    """Check whether a source string is an http(s) URL."""
    return source.startswith('http://') or source.startswith('https://')


def is_allowed_url(url: str) -> bool:
    """Only https and local http origins may be fetched."""
    return any(url.startswith(prefix) for prefix in ALLOWED_URL_PREFIXES)


def _fetch_url(url: str, timeout: float) -> bytes:
    if not is_allowed_url(url):
        raise SourceUnavailableError(f"URL not allowed: {url}")
    try:
        response = requests.get(url, timeout=timeout, allow_redirects=True)
        response.raise_for_status()
    except requests.RequestException as e:
        raise SourceUnavailableError(f"Failed to load image from \"{url}\": {e}") from e
    return response.content


def load_image(source: Union[str, os.PathLike, bytes, Image.Image],
               timeout: float = 10) -> Image.Image:
    """
    Load a source image and return it in RGBA mode.

    Args:
        source: File path, http(s) URL, encoded image bytes or a PIL image
        timeout: Network timeout in seconds for URLs

    Returns:
        PIL Image in RGBA mode

    Raises:
        SourceUnavailableError: If the image cannot be fetched, read or decoded
    """
    if isinstance(source, Image.Image):
        return ensure_rgba(source)

    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
        label = "<bytes>"
    else:
        label = os.fspath(source)
        if is_url(label):
            logger.debug("Fetching %s", label)
            data = _fetch_url(label, timeout)
        else:
            try:
                with open(label, 'rb') as f:
                    data = f.read()
            except OSError as e:
                raise SourceUnavailableError(f"Failed to read image file {label}: {e}") from e

    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise SourceUnavailableError(f"Failed to decode image {label}: {e}") from e

    return ensure_rgba(image)


def validate_image_file(filepath: str) -> bool:
    """
    Check if file is a valid image file.

    Args:
        filepath: Path to image file

    Returns:
        True if valid image file
    """
    ext = os.path.splitext(filepath)[1].lower()
    return ext in IMAGE_EXTENSIONS and os.path.isfile(filepath)


def ensure_rgba(image: Image.Image) -> Image.Image:
    """
    Ensure image is in RGBA mode.

    Args:
        image: PIL Image

    Returns:
        Image in RGBA mode
    """
    if image.mode != 'RGBA':
        return image.convert('RGBA')
    return image


# -------------------- Gradient Palettes --------------------

def load_palettes_from_file(filepath: str = "palette.json") -> List[Dict]:
    """
    Load named palettes from JSON file.

    Args:
        filepath: Path to palette JSON file

    Returns:
        List of palette dictionaries with 'name' and 'colors' keys
    """
    if not os.path.exists(filepath):
        return []

    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            palettes = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Error loading palettes from %s: %s", filepath, e)
        return []
    if not isinstance(palettes, list):
        return []
    return [p for p in palettes
            if isinstance(p, dict) and 'name' in p and isinstance(p.get('colors'), list)]


class PaletteManager:
    """
    Named color palettes that can feed gradient color modes.
    """

    def __init__(self, filepath: str = "palette.json"):
        self.filepath = filepath
        self.palettes = []
        self.load()

    def load(self):
        """Load palettes from file."""
        self.palettes = load_palettes_from_file(self.filepath)

    def get_palette(self, name: str) -> Optional[Dict]:
        """Get palette by name."""
        for pal in self.palettes:
            if pal['name'] == name:
                return pal
        return None

    def get_palette_colors(self, name: str) -> Optional[List[str]]:
        """Get palette colors as the stored color strings."""
        pal = self.get_palette(name)
        if pal:
            return list(pal['colors'])
        return None

    def list_palette_names(self) -> List[str]:
        """Get list of all palette names."""
        return [p['name'] for p in self.palettes]
