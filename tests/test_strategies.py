"""
Tests for the dot, effect and color strategies and the dot surface.
"""

import math

import numpy as np
import pytest

from halftone_lib import (
    DEFAULT_GRADIENT2,
    DEFAULT_GRADIENT3,
    DOT_STRATEGIES,
    ColorMode,
    DotSurface,
    DotType,
    EffectType,
    Gradient2ColorStrategy,
    Gradient3ColorStrategy,
    HalftoneOptions,
    SolidColorStrategy,
    SurfaceError,
    alpha_from_brightness,
    dot_radius_from_brightness,
    get_color_strategy,
    get_dot_strategy,
    get_effect_strategy,
    linear_gradient,
)


class TestEffectStrategies:
    """Test brightness to radius/opacity mapping"""

    @pytest.mark.parametrize("value,expected", [
        (0.0, 0.2 * 5),
        (0.5, 0.6 * 5),
        (1.0, 5.0),
        (-1.0, 0.2 * 5),  # clamped
        (2.0, 5.0),       # clamped
    ])
    def test_scale_radius(self, value, expected):
        assert dot_radius_from_brightness(value, 5.0, EffectType.SCALE) == pytest.approx(expected)

    def test_scale_is_opaque(self):
        assert alpha_from_brightness(0.0, EffectType.SCALE) == 1.0
        assert alpha_from_brightness(1.0, EffectType.SCALE) == 1.0

    def test_opacity_fixed_radius(self):
        """Test opacity effect keeps dots at half the maximum radius"""
        for value in (0.0, 0.3, 1.0):
            assert dot_radius_from_brightness(value, 8.0, "opacity") == pytest.approx(4.0)

    def test_opacity_alpha_ramp(self):
        assert alpha_from_brightness(0.0, "opacity") == pytest.approx(0.2)
        assert alpha_from_brightness(0.5, "opacity") == pytest.approx(0.6)
        assert alpha_from_brightness(1.0, "opacity") == pytest.approx(1.0)

    def test_both(self):
        radius, alpha = get_effect_strategy("both").apply(0.25, 10.0)
        assert radius == pytest.approx(4.0)
        assert alpha == pytest.approx(0.4)

    def test_radius_bounds(self):
        """Test radius never leaves [0.2 * half_step, half_step]"""
        for effect in EffectType:
            for value in np.linspace(-0.5, 1.5, 21):
                radius = dot_radius_from_brightness(float(value), 3.0, effect)
                assert 0.2 * 3.0 - 1e-9 <= radius <= 3.0 + 1e-9

    @pytest.mark.parametrize("effect,radius_grows,alpha_grows", [
        (EffectType.SCALE, True, False),
        (EffectType.OPACITY, False, True),
        (EffectType.BOTH, True, True),
    ])
    def test_monotonic_inside_unit_interval(self, effect, radius_grows, alpha_grows):
        """Test radius and alpha never shrink as brightness rises, and grow where they vary"""
        values = np.linspace(0.01, 0.99, 50)
        results = [get_effect_strategy(effect).apply(float(v), 4.0) for v in values]
        radius_steps = np.diff([r for r, _ in results])
        alpha_steps = np.diff([a for _, a in results])

        assert np.all(radius_steps >= 0)
        assert np.all(alpha_steps >= 0)
        if radius_grows:
            assert np.all(radius_steps > 0)
        if alpha_grows:
            assert np.all(alpha_steps > 0)

    def test_unknown_effect(self):
        with pytest.raises(ValueError, match="Unknown effect type"):
            get_effect_strategy("sparkle")


class TestDotSurface:
    """Test shape rasterisation and alpha compositing"""

    def test_circle_and_square_differ_in_corners(self):
        """Test a square covers its bounding box corners and a circle does not"""
        circle = DotSurface(20, 20)
        get_dot_strategy(DotType.CIRCLE).draw(circle, 10, 10, 8)
        square = DotSurface(20, 20)
        get_dot_strategy(DotType.SQUARE).draw(square, 10, 10, 8)

        assert circle.coverage[10, 10] == pytest.approx(1.0)
        assert square.coverage[10, 10] == pytest.approx(1.0)
        assert square.coverage[17, 17] == pytest.approx(1.0)
        assert circle.coverage[17, 17] == 0
        assert circle.coverage[0, 0] == 0

    def test_triangle_points_up(self):
        surface = DotSurface(20, 20)
        get_dot_strategy("triangle").draw(surface, 10, 10, 8)

        assert surface.coverage[8, 10] == pytest.approx(1.0)
        assert surface.coverage[12, 10] == pytest.approx(1.0)
        # upper corners of the bounding box stay empty
        assert surface.coverage[4, 3] == 0
        assert surface.coverage[4, 16] == 0

    def test_source_over_compositing(self):
        """Test two half-opaque fills combine to 0.75 coverage"""
        surface = DotSurface(10, 10)
        surface.alpha = 0.5
        surface.fill_rectangle((2, 2, 7, 7))
        assert surface.coverage[4, 4] == pytest.approx(0.5)

        surface.fill_rectangle((2, 2, 7, 7))
        assert surface.coverage[4, 4] == pytest.approx(0.75)
        assert surface.coverage[0, 0] == 0

    def test_partially_off_canvas(self):
        surface = DotSurface(10, 10)
        surface.fill_ellipse((-5, -5, 5, 5))
        assert surface.coverage[0, 0] == pytest.approx(1.0)

    def test_fully_off_canvas(self):
        surface = DotSurface(10, 10)
        surface.fill_ellipse((20, 20, 30, 30))
        assert not surface.coverage.any()

    def test_alpha_bytes(self):
        surface = DotSurface(4, 4)
        surface.alpha = 0.2
        surface.fill_rectangle((0, 0, 4, 4))
        assert np.all(surface.to_alpha_bytes() == 51)

    def test_box_end_is_exclusive(self):
        """Test a box ending on a pixel edge leaves the next pixel empty"""
        surface = DotSurface(10, 10)
        surface.fill_rectangle((2, 2, 7, 7))
        assert surface.coverage[6, 6] == pytest.approx(1.0)
        assert surface.coverage[7, 7] == 0
        assert surface.coverage.sum() == pytest.approx(25.0)

    def test_partial_pixels_get_fractional_coverage(self):
        surface = DotSurface(10, 10)
        surface.fill_rectangle((2.5, 2, 4.5, 3))
        assert surface.coverage[2, 2] == pytest.approx(0.5, abs=0.01)
        assert surface.coverage[2, 3] == pytest.approx(1.0)
        assert surface.coverage[2, 4] == pytest.approx(0.5, abs=0.01)

    @pytest.mark.parametrize("dot_type,radius,expected", [
        (DotType.SQUARE, 1.5, 9.0),
        (DotType.SQUARE, 3.0, 36.0),
        (DotType.SQUARE, 5.0, 100.0),
        (DotType.CIRCLE, 1.5, math.pi * 1.5 ** 2),
        (DotType.CIRCLE, 3.0, math.pi * 3.0 ** 2),
        (DotType.CIRCLE, 5.0, math.pi * 5.0 ** 2),
        (DotType.TRIANGLE, 3.0, 3 * math.sqrt(3) / 4 * 3.0 ** 2),
        (DotType.TRIANGLE, 5.0, 3 * math.sqrt(3) / 4 * 5.0 ** 2),
    ])
    def test_covered_area_matches_radius(self, dot_type, radius, expected):
        """Test the total coverage of one dot is the area of its shape"""
        surface = DotSurface(40, 40)
        get_dot_strategy(dot_type).draw(surface, 20, 20, radius)
        assert float(surface.coverage.sum()) == pytest.approx(expected, rel=0.15)

    @pytest.mark.parametrize("dot_type,expected", [
        (DotType.SQUARE, 1.2 ** 2),
        (DotType.CIRCLE, math.pi * 0.6 ** 2),
    ])
    def test_minimum_dot_stays_small(self, dot_type, expected):
        """Test a sub-pixel dot covers about its own area, not whole pixels"""
        surface = DotSurface(40, 40)
        get_dot_strategy(dot_type).draw(surface, 20, 20, 0.6)
        total = float(surface.coverage.sum())
        assert abs(total - expected) < 0.5

    def test_bigger_radius_covers_more(self):
        for dot_type in DotType:
            areas = []
            for radius in (0.6, 1.0, 1.5, 2.0, 2.5, 3.0):
                surface = DotSurface(20, 20)
                get_dot_strategy(dot_type).draw(surface, 10, 10, radius)
                areas.append(float(surface.coverage.sum()))
            assert areas == sorted(areas)
            assert areas[0] < areas[-1]

    def test_empty_surface_is_an_error(self):
        with pytest.raises(SurfaceError):
            DotSurface(0, 10)

    def test_registry_is_immutable(self):
        with pytest.raises(TypeError):
            DOT_STRATEGIES[DotType.CIRCLE] = None

    def test_unknown_dot_type(self):
        with pytest.raises(ValueError, match="Unknown dot type"):
            get_dot_strategy("hexagon")


class TestColorStrategies:
    """Test solid and gradient fills"""

    def test_solid_fill(self):
        fill = SolidColorStrategy("#ff0000").create_fill(3, 2)
        assert fill.shape == (2, 3, 3)
        assert np.all(fill == [255, 0, 0])

    def test_horizontal_gradient(self):
        """Test angle 0 runs from the first color on the left to the last on the right"""
        fill = linear_gradient(100, 1, 0, ("#000000", "#ffffff"))
        row = fill[0, :, 0].astype(int)

        assert row[0] < 5
        assert row[-1] > 250
        assert np.all(np.diff(row) >= 0)

    def test_vertical_gradient(self):
        """Test angle 90 runs top to bottom"""
        fill = linear_gradient(1, 100, 90, ("#000000", "#ffffff"))
        assert fill[0, 0, 0] < 5
        assert fill[-1, 0, 0] > 250

    def test_three_stop_gradient_midpoint(self):
        fill = linear_gradient(101, 1, 0, ("#000000", "#ff0000", "#000000"))
        assert fill[0, 50, 0] > 245
        assert fill[0, 0, 0] < 10

    def test_gradient3_paints_first_two_stops(self):
        """Test the three color mode only blends between its first two colors"""
        strategy = Gradient3ColorStrategy(("#000000", "#ffffff", "#ff0000"), 0)
        fill = strategy.create_fill(100, 1)

        assert strategy.colors == ("#000000", "#ffffff")
        assert strategy.declared_colors == ("#000000", "#ffffff", "#ff0000")
        # no red at the far end
        assert fill[0, -1, 1] > 250

    def test_factory_solid_default_color(self):
        strategy = get_color_strategy(HalftoneOptions(color=None))
        assert isinstance(strategy, SolidColorStrategy)
        assert strategy.rgb == (0, 0, 0)

    def test_factory_gradient2_defaults(self):
        """Test missing gradient colors fall back to the default palette"""
        strategy = get_color_strategy(HalftoneOptions(color_mode=ColorMode.GRADIENT2))
        assert isinstance(strategy, Gradient2ColorStrategy)
        assert strategy.colors == DEFAULT_GRADIENT2
        assert strategy.angle == 90.0

    def test_factory_gradient3_needs_three_colors(self):
        options = HalftoneOptions(color_mode="gradient3", gradient_colors=["#fff", "#000"])
        strategy = get_color_strategy(options)
        assert strategy.declared_colors == DEFAULT_GRADIENT3

    def test_factory_uses_given_colors_and_angle(self):
        options = HalftoneOptions(color_mode="gradient2", gradient_colors=["red", "blue", "green"],
                                  gradient_angle=45)
        strategy = get_color_strategy(options)
        assert strategy.colors == ("red", "blue")
        assert strategy.angle == 45.0
