import pytest

from hue_bridge_sync.color import (
    clamp_to_gamut,
    parse_hex,
    point_in_gamut,
    rgb_to_hex,
    rgb_to_xy,
    xy_to_rgb,
)

GAMUT_C = ((0.6915, 0.3083), (0.17, 0.7), (0.1532, 0.0475))


def test_white_maps_near_d65() -> None:
    x, y = rgb_to_xy(1.0, 1.0, 1.0)
    assert x == pytest.approx(0.3227, abs=1e-3)
    assert y == pytest.approx(0.3290, abs=1e-3)


def test_black_maps_to_origin() -> None:
    assert rgb_to_xy(0.0, 0.0, 0.0) == (0.0, 0.0)


def test_inbound_color_renders_as_hex() -> None:
    r, g, b = xy_to_rgb(0.6915, 0.3083)
    assert r == 255
    assert g < 60 and b < 60
    assert xy_to_rgb(0.3, 0.0) == (0, 0, 0)
    assert rgb_to_hex((255, 16, 0)) == "#ff1000"


def test_points_inside_gamut_are_untouched() -> None:
    point = (0.4, 0.4)
    assert point_in_gamut(point, GAMUT_C)
    assert clamp_to_gamut(point, GAMUT_C) == point
    assert clamp_to_gamut((0.9, 0.9), None) == (0.9, 0.9)


def test_outside_point_clamps_to_nearest_edge() -> None:
    x, y = clamp_to_gamut((0.1, 0.4), GAMUT_C)

    # The green/blue edge is nearly vertical, so the clamp moves right.
    assert 0.15 < x < 0.18
    assert y == pytest.approx(0.4, abs=0.02)


def test_saturated_red_clamps_to_gamut_corner() -> None:
    x, y = clamp_to_gamut(rgb_to_xy(1.0, 0.0, 0.0), GAMUT_C)
    assert (round(x, 4), round(y, 4)) == (0.6915, 0.3083)


@pytest.mark.parametrize(
    "text, expected",
    [("#ff8000", (255, 128, 0)), ("00ff00", (0, 255, 0)), (" #0000FF ", (0, 0, 255))],
)
def test_parse_hex(text, expected) -> None:
    assert parse_hex(text) == expected


@pytest.mark.parametrize("text", ["#fff", "#gggggg", "", "#12345678"])
def test_parse_hex_rejects_malformed(text) -> None:
    assert parse_hex(text) is None
