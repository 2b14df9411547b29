"""
A Python library that renders raster images as halftone dot grids.

Brightness is sampled on a regular grid, every grid cell becomes one dot whose
size and/or opacity encode the sampled brightness, and the dots are filled
with a solid color or a linear gradient. Optional post-processing supersamples
for smooth dot edges and trims transparent borders.
Use this as a standalone library or import it from your application.
"""

import asyncio
import base64
import io
import logging
import math
import numbers
from dataclasses import dataclass, fields
from enum import Enum
from multiprocessing import Pool
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
from PIL import Image, ImageDraw

from utils import brightness_from_rgba, color_to_bytes, ensure_rgba, load_image

logger = logging.getLogger(__name__)

# Auto grid sizing
MIN_STEP = 4
AUTO_COLUMNS = 80
AUTO_STEP_FACTOR = 1.5

# Images above this pixel count sample in a worker process (async path only)
LARGE_IMAGE_PIXELS = 512 * 512

SUPERSAMPLE = 2
DEFAULT_TRIM_THRESHOLD = 0.01

# Dot patches are drawn this many times larger, then box-reduced to coverage
DOT_OVERSAMPLE = 8

# Smallest dot / opacity as a fraction of the maximum
MIN_LEVEL = 0.2
LEVEL_RANGE = 1.0 - MIN_LEVEL

DEFAULT_COLOR = "#000000"
DEFAULT_GRADIENT_ANGLE = 90.0
DEFAULT_GRADIENT2 = ("#7C45D6", "#4C10AE")
DEFAULT_GRADIENT3 = ("#7C45D6", "#4C10AE", "#5E2AC2")


# -------------------- Enumerations --------------------

class DotType(Enum):
    CIRCLE = "circle"
    SQUARE = "square"
    TRIANGLE = "triangle"


class EffectType(Enum):
    SCALE = "scale"
    OPACITY = "opacity"
    BOTH = "both"


class ColorMode(Enum):
    SOLID = "solid"
    GRADIENT2 = "gradient2"
    GRADIENT3 = "gradient3"


def _coerce_enum(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        choices = [m.value for m in enum_cls]
        raise ValueError(f"Unknown {label}: {value!r}. Must be one of: {choices}") from None


# -------------------- Errors --------------------

class HalftoneError(Exception):
    """Base class for rendering failures."""
    pass


class SurfaceError(HalftoneError):
    """Raised when a drawing surface cannot be allocated."""
    pass


# -------------------- Options --------------------

# camelCase wire keys -> dataclass field names
_WIRE_KEYS = {
    'dotType': 'dot_type',
    'effectType': 'effect_type',
    'colorMode': 'color_mode',
    'gradientColors': 'gradient_colors',
    'gradientAngle': 'gradient_angle',
    'maxWidth': 'max_width',
    'maxHeight': 'max_height',
}
_FIELD_KEYS = {v: k for k, v in _WIRE_KEYS.items()}


def _check_number(name: str, value):
    # bool is an int subclass but never a size or an angle
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValueError(f"{name} must be a number, got {value!r}")


@dataclass(frozen=True)
class HalftoneOptions:
    """
    Options for one render. Enum fields accept their string values.
    """
    dot_type: DotType = DotType.CIRCLE
    effect_type: EffectType = EffectType.SCALE
    color: str = DEFAULT_COLOR
    color_mode: ColorMode = ColorMode.SOLID
    gradient_colors: Optional[Tuple[str, ...]] = None
    gradient_angle: float = DEFAULT_GRADIENT_ANGLE
    spacing: Optional[float] = None
    max_width: Optional[int] = None
    max_height: Optional[int] = None
    smoothing: bool = False
    trim: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'dot_type', _coerce_enum(DotType, self.dot_type, 'dot type'))
        object.__setattr__(self, 'effect_type',
                           _coerce_enum(EffectType, self.effect_type, 'effect type'))
        object.__setattr__(self, 'color_mode',
                           _coerce_enum(ColorMode, self.color_mode, 'color mode'))
        if self.gradient_colors is not None:
            if isinstance(self.gradient_colors, str):
                raise ValueError(
                    f"gradient_colors must be a sequence of colors, got {self.gradient_colors!r}"
                )
            object.__setattr__(self, 'gradient_colors', tuple(self.gradient_colors))

        for name in ('smoothing', 'trim'):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ValueError(f"{name} must be true or false, got {value!r}")

        _check_number('gradient_angle', self.gradient_angle)
        object.__setattr__(self, 'gradient_angle', float(self.gradient_angle))
        for name in ('spacing', 'max_width', 'max_height'):
            value = getattr(self, name)
            if value is None:
                continue
            _check_number(name, value)
            if not value > 0:
                raise ValueError(f"{name} must be positive, got {value}")

    @staticmethod
    def get_parameter_info():
        """
        Returns metadata about the configurable options, keyed by wire name.
        The CLI uses it for help output, example configs and type checks.
        """
        return {
            'dotType': {
                'type': 'choice',
                'default': DotType.CIRCLE.value,
                'choices': [m.value for m in DotType],
                'label': 'Dot Shape',
                'description': 'Shape drawn for each grid cell'
            },
            'effectType': {
                'type': 'choice',
                'default': EffectType.SCALE.value,
                'choices': [m.value for m in EffectType],
                'label': 'Effect',
                'description': 'Brightness drives dot size, opacity, or both'
            },
            'color': {
                'type': 'color',
                'default': DEFAULT_COLOR,
                'label': 'Dot Color',
                'description': 'Fill color for solid mode (hex, rgb(), hsl() or CSS name)'
            },
            'colorMode': {
                'type': 'choice',
                'default': ColorMode.SOLID.value,
                'choices': [m.value for m in ColorMode],
                'label': 'Color Mode',
                'description': 'Solid fill or a 2/3 color linear gradient'
            },
            'gradientColors': {
                'type': 'colors',
                'default': None,
                'label': 'Gradient Colors',
                'description': 'Gradient stops; a default palette is used when missing'
            },
            'gradientAngle': {
                'type': 'float',
                'default': DEFAULT_GRADIENT_ANGLE,
                'label': 'Gradient Angle',
                'description': 'Gradient direction in degrees (90 = top to bottom)'
            },
            'spacing': {
                'type': 'float',
                'default': None,
                'min': 0,
                'label': 'Dot Spacing',
                'description': 'Distance between dot centers in pixels (auto when unset)'
            },
            'maxWidth': {
                'type': 'int',
                'default': None,
                'min': 1,
                'label': 'Max Width',
                'description': 'Downscale the source to at most this width'
            },
            'maxHeight': {
                'type': 'int',
                'default': None,
                'min': 1,
                'label': 'Max Height',
                'description': 'Downscale the source to at most this height'
            },
            'smoothing': {
                'type': 'bool',
                'default': False,
                'label': 'Smoothing',
                'description': 'Supersample x2 and downscale for anti-aliased dots'
            },
            'trim': {
                'type': 'bool',
                'default': False,
                'label': 'Trim',
                'description': 'Crop transparent borders from the result'
            }
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HalftoneOptions":
        """
        Build options from a wire (camelCase) or snake_case dictionary.
        Unknown keys and None values are ignored.

        Raises:
            ValueError: On unknown enum values or non-positive sizes
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = _WIRE_KEYS.get(key, key)
            if name not in known:
                logger.debug("Ignoring unknown option %r", key)
                continue
            if value is None:
                continue
            kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Wire (camelCase) form of the options."""
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, tuple):
                value = list(value)
            out[_FIELD_KEYS.get(f.name, f.name)] = value
        return out


def _as_options(options: Union[HalftoneOptions, Dict[str, Any], None]) -> HalftoneOptions:
    if options is None:
        return HalftoneOptions()
    if isinstance(options, dict):
        return HalftoneOptions.from_dict(options)
    return options


# -------------------- Grid Sampling --------------------

@dataclass(frozen=True)
class GridSamplingParams:
    """Pixel distance between sample points (and dot centers)."""
    step_x: float
    step_y: float

    def halved(self) -> "GridSamplingParams":
        return GridSamplingParams(self.step_x / 2, self.step_y / 2)


@dataclass(frozen=True)
class BrightnessGrid:
    """Read-only rows x cols array of brightness values in [0, 1]."""
    data: np.ndarray

    def __post_init__(self):
        data = np.asarray(self.data, dtype=np.float64)
        if data.ndim != 2:
            raise ValueError(f"Brightness grid must be 2-D, got shape {data.shape}")
        data.setflags(write=False)
        object.__setattr__(self, 'data', data)

    @property
    def rows(self) -> int:
        return self.data.shape[0]

    @property
    def cols(self) -> int:
        return self.data.shape[1]


def _as_rgba_array(pixel_buffer, width: int, height: int) -> np.ndarray:
    if isinstance(pixel_buffer, Image.Image):
        arr = np.asarray(ensure_rgba(pixel_buffer))
    elif isinstance(pixel_buffer, (bytes, bytearray, memoryview)):
        arr = np.frombuffer(pixel_buffer, dtype=np.uint8)
    else:
        arr = np.asarray(pixel_buffer, dtype=np.uint8)

    expected = width * height * 4
    if arr.size != expected:
        raise ValueError(
            f"Pixel buffer holds {arr.size} values, expected {expected} for {width}x{height} RGBA"
        )
    return arr.reshape((height, width, 4))


def _sample_grid_array(pixel_buffer, width: int, height: int,
                       step_x: float, step_y: float) -> np.ndarray:
    if step_x <= 0 or step_y <= 0:
        raise ValueError(f"Grid steps must be positive, got {step_x}x{step_y}")
    pixels = _as_rgba_array(pixel_buffer, width, height)

    cols = math.ceil(width / step_x)
    rows = math.ceil(height / step_y)
    # One representative pixel per cell; the last partial cell clamps inside the image
    xs = np.minimum(np.floor(np.arange(cols) * step_x).astype(np.intp), width - 1)
    ys = np.minimum(np.floor(np.arange(rows) * step_y).astype(np.intp), height - 1)

    samples = pixels[ys[:, np.newaxis], xs[np.newaxis, :]].astype(np.float64)
    return brightness_from_rgba(samples[..., 0], samples[..., 1],
                                samples[..., 2], samples[..., 3])


def sample_grid_brightness(pixel_buffer, width: int, height: int,
                           step_x: float, step_y: float) -> BrightnessGrid:
    """
    Sample a brightness grid from an RGBA pixel buffer.

    Args:
        pixel_buffer: Raw RGBA bytes, an (h, w, 4) uint8 array or a PIL image
        width: Raster width in pixels
        height: Raster height in pixels
        step_x: Horizontal distance between sample points
        step_y: Vertical distance between sample points

    Returns:
        BrightnessGrid with ceil(height/step_y) rows and ceil(width/step_x) cols
    """
    return BrightnessGrid(_sample_grid_array(pixel_buffer, width, height, step_x, step_y))


def compute_grid_step(width: int, height: int, options: HalftoneOptions) -> GridSamplingParams:
    """
    Grid step from the image size. An explicit spacing wins; otherwise aim
    for about AUTO_COLUMNS dots across the longer side.
    """
    if options.spacing is not None:
        return GridSamplingParams(options.spacing, options.spacing)

    max_dim = max(width, height)
    auto_step = max(MIN_STEP, math.floor(max_dim / AUTO_COLUMNS))
    step = auto_step * AUTO_STEP_FACTOR
    return GridSamplingParams(step, step)


# -------------------- Drawing Surfaces --------------------

def _round_px(value: float) -> int:
    # Half-up rounding, so 12.5 px becomes 13 rather than banker's 12
    return int(math.floor(value + 0.5))


def acquire_surface(mode: str, size: Tuple[int, int], color=0) -> Image.Image:
    """
    Allocate a blank image.

    Raises:
        SurfaceError: If the size is empty or the allocation fails
    """
    width, height = size
    if width <= 0 or height <= 0:
        raise SurfaceError(f"Could not acquire a {width}x{height} {mode} surface")
    try:
        return Image.new(mode, (width, height), color)
    except (ValueError, MemoryError) as e:
        raise SurfaceError(f"Could not acquire a {width}x{height} {mode} surface: {e}") from e


class DotSurface:
    """
    Coverage raster that dots are composited onto.

    Set ``alpha`` before each fill; shapes blend source-over into the
    per-pixel coverage (0 = transparent, 1 = opaque). Coordinates are
    continuous: pixel (i, j) spans [i, i+1) x [j, j+1), and a partly
    covered pixel gets the covered fraction.
    """

    def __init__(self, width: int, height: int):
        if width <= 0 or height <= 0:
            raise SurfaceError(f"Could not acquire a {width}x{height} dot surface")
        try:
            self.coverage = np.zeros((height, width), dtype=np.float32)
        except MemoryError as e:
            raise SurfaceError(f"Could not acquire a {width}x{height} dot surface: {e}") from e
        self.width = width
        self.height = height
        self.alpha = 1.0

    def fill_ellipse(self, bbox: Tuple[float, float, float, float]):
        self._fill_box(bbox, lambda draw, box: draw.ellipse(box, fill=255))

    def fill_rectangle(self, bbox: Tuple[float, float, float, float]):
        self._fill_box(bbox, lambda draw, box: draw.rectangle(box, fill=255))

    def fill_polygon(self, points: List[Tuple[float, float]]):
        region = self._pixel_region(points)
        if region is None:
            return
        left, top = region[:2]
        # ImageDraw puts pixel centers on integer coordinates
        scaled = [((x - left) * DOT_OVERSAMPLE - 0.5, (y - top) * DOT_OVERSAMPLE - 0.5)
                  for x, y in points]
        self._composite(region, lambda draw: draw.polygon(scaled, fill=255))

    def _fill_box(self, bbox, paint):
        x0, y0, x1, y1 = bbox
        region = self._pixel_region([(x0, y0), (x1, y1)])
        if region is None:
            return
        left, top = region[:2]
        # ImageDraw boxes include their end pixel
        box = (
            _round_px((x0 - left) * DOT_OVERSAMPLE),
            _round_px((y0 - top) * DOT_OVERSAMPLE),
            _round_px((x1 - left) * DOT_OVERSAMPLE) - 1,
            _round_px((y1 - top) * DOT_OVERSAMPLE) - 1,
        )
        if box[2] < box[0] or box[3] < box[1]:
            return
        self._composite(region, lambda draw: paint(draw, box))

    def _pixel_region(self, points) -> Optional[Tuple[int, int, int, int]]:
        """Pixels touched by the shape's bounding box, clipped to the surface."""
        xs = [p[0] for p in points]
        ys = [p[1] for p in points]
        x0 = max(0, math.floor(min(xs)))
        y0 = max(0, math.floor(min(ys)))
        x1 = min(self.width, math.ceil(max(xs)))
        y1 = min(self.height, math.ceil(max(ys)))
        if x0 >= x1 or y0 >= y1 or self.alpha <= 0:
            return None
        return x0, y0, x1, y1

    def _composite(self, region, paint):
        x0, y0, x1, y1 = region
        patch = acquire_surface('L', ((x1 - x0) * DOT_OVERSAMPLE, (y1 - y0) * DOT_OVERSAMPLE))
        paint(ImageDraw.Draw(patch))
        patch = patch.reduce(DOT_OVERSAMPLE)

        mask = np.asarray(patch, dtype=np.float32) * (self.alpha / 255.0)
        target = self.coverage[y0:y1, x0:x1]
        target *= 1.0 - mask
        target += mask

    def to_alpha_bytes(self) -> np.ndarray:
        return np.clip(np.rint(self.coverage * 255.0), 0, 255).astype(np.uint8)


# -------------------- Dot Strategies --------------------

class BaseDotStrategy:
    """
    Base class for dot shapes.
    Each strategy implements .draw(surface, cx, cy, radius). The caller has
    already set the surface alpha; the strategy only emits the shape.
    """
    def draw(self, surface: DotSurface, cx: float, cy: float, radius: float):
        raise NotImplementedError


class CircleDotStrategy(BaseDotStrategy):
    def draw(self, surface, cx, cy, radius):
        surface.fill_ellipse((cx - radius, cy - radius, cx + radius, cy + radius))


class SquareDotStrategy(BaseDotStrategy):
    def draw(self, surface, cx, cy, radius):
        surface.fill_rectangle((cx - radius, cy - radius, cx + radius, cy + radius))


class TriangleDotStrategy(BaseDotStrategy):
    """Apex up; the base sits a quarter height below the center."""
    def draw(self, surface, cx, cy, radius):
        h = radius * math.sqrt(3)
        surface.fill_polygon([
            (cx, cy - h / 2),
            (cx + radius, cy + h / 4),
            (cx - radius, cy + h / 4),
        ])


DOT_STRATEGIES = MappingProxyType({
    DotType.CIRCLE: CircleDotStrategy(),
    DotType.SQUARE: SquareDotStrategy(),
    DotType.TRIANGLE: TriangleDotStrategy(),
})


def get_dot_strategy(dot_type: Union[DotType, str]) -> BaseDotStrategy:
    return DOT_STRATEGIES[_coerce_enum(DotType, dot_type, 'dot type')]


# -------------------- Effect Strategies --------------------

def _ramp(value: float) -> float:
    t = max(0.0, min(1.0, value))
    return MIN_LEVEL + LEVEL_RANGE * t


class BaseEffectStrategy:
    """
    Base class for brightness encodings.
    Maps a brightness value and the maximum dot radius (half the grid step)
    to a dot radius and an opacity.
    """
    def get_dot_radius(self, brightness: float, half_step: float) -> float:
        raise NotImplementedError

    def get_alpha(self, brightness: float) -> float:
        raise NotImplementedError

    def apply(self, brightness: float, half_step: float) -> Tuple[float, float]:
        return self.get_dot_radius(brightness, half_step), self.get_alpha(brightness)


class ScaleEffectStrategy(BaseEffectStrategy):
    """Brightness drives dot size; dots stay opaque."""
    def get_dot_radius(self, brightness, half_step):
        return half_step * _ramp(brightness)

    def get_alpha(self, brightness):
        return 1.0


class OpacityEffectStrategy(BaseEffectStrategy):
    """Fixed dot size; brightness drives opacity."""
    def get_dot_radius(self, brightness, half_step):
        return half_step * 0.5

    def get_alpha(self, brightness):
        return _ramp(brightness)


class BothEffectStrategy(BaseEffectStrategy):
    def get_dot_radius(self, brightness, half_step):
        return half_step * _ramp(brightness)

    def get_alpha(self, brightness):
        return _ramp(brightness)


EFFECT_STRATEGIES = MappingProxyType({
    EffectType.SCALE: ScaleEffectStrategy(),
    EffectType.OPACITY: OpacityEffectStrategy(),
    EffectType.BOTH: BothEffectStrategy(),
})


def get_effect_strategy(effect_type: Union[EffectType, str]) -> BaseEffectStrategy:
    return EFFECT_STRATEGIES[_coerce_enum(EffectType, effect_type, 'effect type')]


def dot_radius_from_brightness(brightness: float, half_step: float,
                               effect_type: Union[EffectType, str]) -> float:
    return get_effect_strategy(effect_type).get_dot_radius(brightness, half_step)


def alpha_from_brightness(brightness: float, effect_type: Union[EffectType, str]) -> float:
    return get_effect_strategy(effect_type).get_alpha(brightness)


# -------------------- Color Strategies --------------------

def linear_gradient(width: int, height: int, angle: float,
                    colors: Tuple[str, ...]) -> np.ndarray:
    """
    RGB array for a linear gradient across a width x height surface.

    The gradient line passes through the center at `angle` degrees
    (0 = left to right, 90 = top to bottom) and spans the surface diagonal,
    so it covers every corner whatever the aspect ratio. Stops are evenly spaced.
    """
    angle_rad = math.radians(angle)
    dist = math.hypot(width, height) / 2
    dx = dist * math.cos(angle_rad)
    dy = dist * math.sin(angle_rad)
    x1, y1 = width / 2 - dx, height / 2 - dy
    vx, vy = 2 * dx, 2 * dy
    length_sq = vx * vx + vy * vy

    xs = np.arange(width, dtype=np.float64) + 0.5
    ys = np.arange(height, dtype=np.float64) + 0.5
    if length_sq == 0:
        t = np.zeros((height, width))
    else:
        t = ((xs[np.newaxis, :] - x1) * vx + (ys[:, np.newaxis] - y1) * vy) / length_sq
        t = np.clip(t, 0.0, 1.0)

    stops = np.linspace(0.0, 1.0, len(colors))
    stop_rgb = np.array([color_to_bytes(c) for c in colors], dtype=np.float64)
    channels = [np.interp(t, stops, stop_rgb[:, c]) for c in range(3)]
    return np.rint(np.stack(channels, axis=-1)).astype(np.uint8)


class BaseColorStrategy:
    """
    Base class for dot fills.
    .create_fill(width, height) returns an (h, w, 3) uint8 array covering the
    whole surface; it is computed once per render, not per dot.
    """
    def create_fill(self, width: int, height: int) -> np.ndarray:
        raise NotImplementedError


class SolidColorStrategy(BaseColorStrategy):
    def __init__(self, color: str):
        self.color = color
        self.rgb = color_to_bytes(color)

    def create_fill(self, width, height):
        fill = np.empty((height, width, 3), dtype=np.uint8)
        fill[...] = self.rgb
        return fill


class Gradient2ColorStrategy(BaseColorStrategy):
    def __init__(self, colors: Tuple[str, str], angle: float = DEFAULT_GRADIENT_ANGLE):
        self.colors = tuple(colors[:2])
        self.angle = angle

    def create_fill(self, width, height):
        return linear_gradient(width, height, self.angle, self.colors)


class Gradient3ColorStrategy(Gradient2ColorStrategy):
    """
    Three-color gradient mode. Only the first two stops are painted, which
    keeps the established look of this mode; the third color is retained
    in `declared_colors`.
    """
    def __init__(self, colors: Tuple[str, str, str], angle: float = DEFAULT_GRADIENT_ANGLE):
        super().__init__(colors[:2], angle)
        self.declared_colors = tuple(colors[:3])


def get_color_strategy(options: HalftoneOptions) -> BaseColorStrategy:
    mode = _coerce_enum(ColorMode, options.color_mode, 'color mode')
    angle = options.gradient_angle
    colors = tuple(options.gradient_colors or ())

    if mode == ColorMode.SOLID:
        return SolidColorStrategy(options.color or DEFAULT_COLOR)
    elif mode == ColorMode.GRADIENT2:
        if len(colors) < 2:
            colors = DEFAULT_GRADIENT2
        return Gradient2ColorStrategy(colors[:2], angle)
    elif mode == ColorMode.GRADIENT3:
        if len(colors) < 3:
            colors = DEFAULT_GRADIENT3
        return Gradient3ColorStrategy(colors[:3], angle)
    else:
        raise ValueError(f"Unrecognized ColorMode: {mode}")


# -------------------- Renderer --------------------

class HalftoneRenderer:
    """
    Turns a brightness grid into an RGBA halftone image using the dot,
    effect and color strategies selected by the options.
    """

    def __init__(self, options: HalftoneOptions):
        self.options = options
        self.effect_strategy = get_effect_strategy(options.effect_type)
        self.dot_strategy = get_dot_strategy(options.dot_type)
        self.color_strategy = get_color_strategy(options)

    def iter_dots(self, grid: BrightnessGrid, params: GridSamplingParams,
                  scale: float = 1) -> Iterator[Tuple[float, float, float, float]]:
        """Yield (x, y, radius, alpha) for every cell, row-major."""
        step_x = params.step_x * scale
        step_y = params.step_y * scale
        half_step = step_x / 2
        for row in range(grid.rows):
            y = (row + 0.5) * step_y
            for col in range(grid.cols):
                radius, alpha = self.effect_strategy.apply(float(grid.data[row, col]), half_step)
                yield (col + 0.5) * step_x, y, radius, alpha

    def render(self, grid: BrightnessGrid, params: GridSamplingParams,
               scale: float = 1) -> Image.Image:
        """
        Render the grid. `params` must be the steps the grid was sampled with.

        Returns:
            RGBA image of cols*step_x*scale x rows*step_y*scale pixels
        """
        width = _round_px(grid.cols * params.step_x * scale)
        height = _round_px(grid.rows * params.step_y * scale)
        surface = DotSurface(width, height)
        fill = self.color_strategy.create_fill(width, height)

        for x, y, radius, alpha in self.iter_dots(grid, params, scale):
            surface.alpha = alpha
            self.dot_strategy.draw(surface, x, y, radius)

        return Image.fromarray(np.dstack([fill, surface.to_alpha_bytes()]))


# -------------------- Post-processing --------------------

def draw_to_working_raster(image: Image.Image, max_width: Optional[int] = None,
                           max_height: Optional[int] = None) -> Image.Image:
    """
    Copy the source into a fresh RGBA raster, downscaled to fit the bounds.
    Aspect ratio is kept: the width bound applies first, then the height
    bound is checked against the already-shrunk size.
    """
    image = ensure_rgba(image)
    width, height = image.size
    if width <= 0 or height <= 0:
        raise SurfaceError(f"Cannot draw a {width}x{height} source image")

    w, h = float(width), float(height)
    if max_width is not None and w > max_width:
        h = h * max_width / w
        w = max_width
    if max_height is not None and h > max_height:
        w = w * max_height / h
        h = max_height

    target = (max(1, _round_px(w)), max(1, _round_px(h)))
    working = acquire_surface('RGBA', target)
    if target != image.size:
        image = image.resize(target, Image.Resampling.LANCZOS)
    working.paste(image, (0, 0))
    return working


def find_visible_bounds(image: Image.Image,
                        threshold: float = DEFAULT_TRIM_THRESHOLD) -> Tuple[int, int, int, int]:
    """
    Bounding box (x, y, width, height) of pixels whose alpha exceeds
    `threshold` (0-1). The whole canvas when no pixel qualifies.
    """
    alpha = np.asarray(ensure_rgba(image).getchannel('A'))
    visible = alpha > threshold * 255
    rows = np.flatnonzero(visible.any(axis=1))
    cols = np.flatnonzero(visible.any(axis=0))
    if rows.size == 0:
        return 0, 0, image.width, image.height
    return (int(cols[0]), int(rows[0]),
            int(cols[-1] - cols[0] + 1), int(rows[-1] - rows[0] + 1))


def trim_transparent(image: Image.Image,
                     threshold: float = DEFAULT_TRIM_THRESHOLD) -> Image.Image:
    """Crop to the visible bounds; returns a new image."""
    x, y, w, h = find_visible_bounds(image, threshold)
    return image.crop((x, y, x + w, y + h))


def downscale_with_smoothing(image: Image.Image, width: int, height: int) -> Image.Image:
    """High quality resample to width x height (alpha is premultiplied by Pillow)."""
    if width <= 0 or height <= 0:
        raise SurfaceError(f"Could not acquire a {width}x{height} surface")
    return image.resize((width, height), Image.Resampling.LANCZOS)


# -------------------- Worker Offload --------------------

def is_large_image(width: int, height: int) -> bool:
    return width * height > LARGE_IMAGE_PIXELS


def _sample_in_pool(pixels: np.ndarray, width: int, height: int,
                    step_x: float, step_y: float) -> np.ndarray:
    try:
        pool = Pool(processes=1)
    except (OSError, ImportError, NotImplementedError) as e:
        logger.debug("Worker pool unavailable (%s), sampling inline", e)
        return _sample_grid_array(pixels, width, height, step_x, step_y)
    with pool:
        return pool.apply(_sample_grid_array, (pixels, width, height, step_x, step_y))


async def sample_in_worker(pixels: np.ndarray, width: int, height: int,
                           step_x: float, step_y: float) -> BrightnessGrid:
    """
    Sample a brightness grid in a separate worker process without blocking
    the event loop. Results are identical to sample_grid_brightness().
    """
    loop = asyncio.get_running_loop()
    data = await loop.run_in_executor(None, _sample_in_pool,
                                      pixels, width, height, step_x, step_y)
    return BrightnessGrid(data)


# -------------------- Processor --------------------

@dataclass(frozen=True)
class RenderMetadata:
    original_width: int
    original_height: int
    scale_factor: float
    rendered_width: int
    rendered_height: int


@dataclass(frozen=True)
class HalftoneResult:
    """Rendered halftone image plus metadata."""
    image: Image.Image
    metadata: RenderMetadata

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def pixels(self) -> bytes:
        """Raw RGBA bytes, row-major."""
        return self.image.tobytes()

    def to_png(self) -> bytes:
        buffer = io.BytesIO()
        self.image.save(buffer, format='PNG')
        return buffer.getvalue()

    def to_data_url(self) -> str:
        return 'data:image/png;base64,' + base64.b64encode(self.to_png()).decode('ascii')


@dataclass(frozen=True)
class SamplingPlan:
    params: GridSamplingParams
    scale: int
    # Size to downscale the render back to, when smoothing
    target_size: Optional[Tuple[int, int]] = None


class HalftoneProcessor:
    """
    Orchestrates one render: working raster, brightness grid, halftone
    render, then optional smoothing and trimming. Keeps no state between
    renders, so concurrent renders never share rasters.
    """

    def __init__(self, options: Union[HalftoneOptions, Dict[str, Any], None] = None):
        self.options = _as_options(options)
        self.renderer = HalftoneRenderer(self.options)

    def prepare(self, image: Image.Image) -> Image.Image:
        return draw_to_working_raster(image, self.options.max_width, self.options.max_height)

    def plan(self, width: int, height: int) -> SamplingPlan:
        params = compute_grid_step(width, height, self.options)
        if self.options.smoothing:
            return SamplingPlan(params.halved(), SUPERSAMPLE, (width, height))
        return SamplingPlan(params, 1)

    def sample(self, working: Image.Image, plan: SamplingPlan) -> BrightnessGrid:
        return sample_grid_brightness(np.asarray(working), working.width, working.height,
                                      plan.params.step_x, plan.params.step_y)

    def finish(self, grid: BrightnessGrid, plan: SamplingPlan) -> Image.Image:
        rendered = self.renderer.render(grid, plan.params, plan.scale)
        if plan.target_size is not None:
            rendered = downscale_with_smoothing(rendered, *plan.target_size)
        if self.options.trim:
            rendered = trim_transparent(rendered)
        return rendered

    def process(self, image: Image.Image) -> HalftoneResult:
        working = self.prepare(image)
        plan = self.plan(*working.size)
        logger.debug("Working raster %dx%d, step %.2fx%.2f, scale %d",
                     working.width, working.height,
                     plan.params.step_x, plan.params.step_y, plan.scale)
        grid = self.sample(working, plan)
        return self._result(image, working, self.finish(grid, plan))

    async def process_async(self, image: Image.Image) -> HalftoneResult:
        working = self.prepare(image)
        plan = self.plan(*working.size)
        if is_large_image(*working.size):
            logger.debug("Large image %dx%d, sampling in worker", *working.size)
            grid = await sample_in_worker(np.asarray(working), working.width, working.height,
                                          plan.params.step_x, plan.params.step_y)
        else:
            grid = self.sample(working, plan)
        return self._result(image, working, self.finish(grid, plan))

    @staticmethod
    def _result(source: Image.Image, working: Image.Image,
                rendered: Image.Image) -> HalftoneResult:
        metadata = RenderMetadata(
            original_width=source.width,
            original_height=source.height,
            scale_factor=working.width / source.width,
            rendered_width=rendered.width,
            rendered_height=rendered.height,
        )
        return HalftoneResult(image=rendered, metadata=metadata)


# -------------------- Entry Points --------------------

def image_from_pixels(pixel_buffer, width: int, height: int) -> Image.Image:
    """Wrap a raw RGBA buffer of width x height pixels as a PIL image."""
    arr = _as_rgba_array(pixel_buffer, width, height)
    return Image.fromarray(np.ascontiguousarray(arr))


def render(pixel_buffer, width: int, height: int,
           options: Union[HalftoneOptions, Dict[str, Any], None] = None) -> HalftoneResult:
    """Render a decoded RGBA pixel buffer as a halftone."""
    return render_image(image_from_pixels(pixel_buffer, width, height), options)


def render_image(image: Image.Image,
                 options: Union[HalftoneOptions, Dict[str, Any], None] = None) -> HalftoneResult:
    return HalftoneProcessor(options).process(image)


def render_source(source, options: Union[HalftoneOptions, Dict[str, Any], None] = None,
                  timeout: float = 10) -> HalftoneResult:
    """
    Load a path, URL or encoded bytes and render it.

    Raises:
        SourceUnavailableError: If the source cannot be loaded
    """
    processor = HalftoneProcessor(options)
    return processor.process(load_image(source, timeout=timeout))


async def render_async(pixel_buffer, width: int, height: int,
                       options: Union[HalftoneOptions, Dict[str, Any], None] = None
                       ) -> HalftoneResult:
    return await render_image_async(image_from_pixels(pixel_buffer, width, height), options)


async def render_image_async(image: Image.Image,
                             options: Union[HalftoneOptions, Dict[str, Any], None] = None
                             ) -> HalftoneResult:
    return await HalftoneProcessor(options).process_async(image)


async def render_source_async(source,
                              options: Union[HalftoneOptions, Dict[str, Any], None] = None,
                              timeout: float = 10) -> HalftoneResult:
    processor = HalftoneProcessor(options)
    loop = asyncio.get_running_loop()
    image = await loop.run_in_executor(None, load_image, source, timeout)
    return await processor.process_async(image)
