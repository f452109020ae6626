"""sRGB and CIE 1931 xy conversion plus gamut clamping."""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

Point = Tuple[float, float]

_DEGENERATE_SEGMENT = 1e-12


def _gamma_expand(value: float) -> float:
    if value <= 0.04045:
        return value / 12.92
    return ((value + 0.055) / 1.055) ** 2.4


def _gamma_compress(value: float) -> float:
    if value <= 0.0031308:
        return 12.92 * value
    return 1.055 * (value ** (1.0 / 2.4)) - 0.055


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))


def rgb_to_xy(r: float, g: float, b: float) -> Point:
    """Convert sRGB components in [0, 1] to chromaticity.

    A black (zero sum) input maps to (0, 0).
    """

    r = _gamma_expand(_clamp01(r))
    g = _gamma_expand(_clamp01(g))
    b = _gamma_expand(_clamp01(b))

    x_ = r * 0.664511 + g * 0.154324 + b * 0.162028
    y_ = r * 0.283881 + g * 0.668433 + b * 0.047685
    z_ = r * 0.000088 + g * 0.072310 + b * 0.986039

    total = x_ + y_ + z_
    if total <= 0.0:
        return 0.0, 0.0
    return _clamp01(x_ / total), _clamp01(y_ / total)


def xy_to_rgb(x: float, y: float, brightness: float = 1.0) -> Tuple[int, int, int]:
    """Approximate sRGB (0-255) for a chromaticity, used for inbound display only."""

    if y <= 0.0:
        return 0, 0, 0
    big_y = _clamp01(brightness)
    big_x = (big_y / y) * x
    big_z = (big_y / y) * (1.0 - x - y)

    r = big_x * 1.656492 - big_y * 0.354851 - big_z * 0.255038
    g = -big_x * 0.707196 + big_y * 1.655397 + big_z * 0.036152
    b = big_x * 0.051713 - big_y * 0.121364 + big_z * 1.011530

    peak = max(r, g, b)
    if peak > 1.0:
        r, g, b = r / peak, g / peak, b / peak
    return tuple(  # type: ignore[return-value]
        int(round(_clamp01(_gamma_compress(max(0.0, c))) * 255)) for c in (r, g, b)
    )


def rgb_to_hex(rgb: Sequence[int]) -> str:
    return "#" + "".join(f"{max(0, min(255, int(c))):02x}" for c in rgb)


def _cross(o: Point, a: Point, b: Point) -> float:
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def point_in_gamut(point: Point, gamut: Sequence[Point]) -> bool:
    """Signed area test; points on an edge count as inside."""

    a, b, c = gamut
    d1 = _cross(a, b, point)
    d2 = _cross(b, c, point)
    d3 = _cross(c, a, point)
    has_neg = d1 < 0 or d2 < 0 or d3 < 0
    has_pos = d1 > 0 or d2 > 0 or d3 > 0
    return not (has_neg and has_pos)


def closest_point_on_segment(point: Point, a: Point, b: Point) -> Point:
    abx = b[0] - a[0]
    aby = b[1] - a[1]
    length_sq = abx * abx + aby * aby
    if length_sq <= _DEGENERATE_SEGMENT:
        return a
    t = ((point[0] - a[0]) * abx + (point[1] - a[1]) * aby) / length_sq
    t = min(1.0, max(0.0, t))
    return a[0] + t * abx, a[1] + t * aby


def clamp_to_gamut(point: Point, gamut: Optional[Sequence[Point]]) -> Point:
    """Return `point` when reproducible, otherwise the nearest point on the triangle."""

    if not gamut or len(gamut) != 3:
        return point
    if point_in_gamut(point, gamut):
        return point
    a, b, c = gamut
    best = point
    best_dist: Optional[float] = None
    for start, end in ((a, b), (b, c), (c, a)):
        candidate = closest_point_on_segment(point, start, end)
        dist = (candidate[0] - point[0]) ** 2 + (candidate[1] - point[1]) ** 2
        if best_dist is None or dist < best_dist:
            best, best_dist = candidate, dist
    return best


def parse_hex(value: str) -> Optional[Tuple[int, int, int]]:
    """Parse "#rrggbb" or "rrggbb"; None when malformed."""

    text = value.strip()
    if text.startswith("#"):
        text = text[1:]
    if len(text) != 6:
        return None
    try:
        raw = int(text, 16)
    except ValueError:
        return None
    return (raw >> 16) & 0xFF, (raw >> 8) & 0xFF, raw & 0xFF
