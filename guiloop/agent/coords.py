"""
Coordinate spaces and the conversions between them.

    model       what the model reports: a fixed factor grid (0-1000) for
                relative families, or pixels of the smart-resized image
                for absolute families (UI-TARS 1.5)
    screenshot  pixels of the image the model was shown
    physical    device pixels
    logical     physical / scale_factor (what most OS input APIs take)

Every conversion is explicit and pure. Results that fall off-screen are
clamped to the nearest edge and logged; they are never rejected.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

from guiloop.agent.actions import ActionSchema, ParsedAction, Point, ScreenGeometry, Size, Space
from guiloop.agent.errors import CoordinateError
from guiloop.util.log import get_logger

log = get_logger("guiloop.agent.coords")

IMAGE_FACTOR = 28
MIN_PIXELS = 100 * IMAGE_FACTOR * IMAGE_FACTOR
MAX_PIXELS_V1_0 = 2700 * IMAGE_FACTOR * IMAGE_FACTOR
MAX_PIXELS_V1_5 = 16384 * IMAGE_FACTOR * IMAGE_FACTOR
MAX_RATIO = 200

# floor() guard against 0.29 * 100 == 28.999999999999996
_EPS = 1e-6


@dataclass(frozen=True)
class ModelSpace:
    width: float
    height: float
    screenshot_size: Size

    @classmethod
    def for_schema(cls, schema: ActionSchema, screenshot_size: Size) -> "ModelSpace":
        if schema.coordinates == "absolute":
            resized = smart_resize(screenshot_size.height, screenshot_size.width)
            if resized is None:
                raise CoordinateError(
                    f"screenshot {screenshot_size.width}x{screenshot_size.height} exceeds aspect ratio {MAX_RATIO}"
                )
            w, h = resized
            return cls(w, h, screenshot_size)
        fw, fh = schema.factors
        return cls(fw, fh, screenshot_size)


def smart_resize(
    height: int,
    width: int,
    factor: int = IMAGE_FACTOR,
    min_pixels: int = MIN_PIXELS,
    max_pixels: int = MAX_PIXELS_V1_5,
) -> Optional[Tuple[int, int]]:
    """
    The (width, height) an absolute-coordinate model actually sees: both
    sides rounded to a multiple of `factor`, total pixels kept within
    [min_pixels, max_pixels]. None when the aspect ratio is out of range.
    """
    if height <= 0 or width <= 0:
        return None
    if max(height, width) / min(height, width) > MAX_RATIO:
        log.error("absolute aspect ratio must be smaller than %d, got %.1f",
                  MAX_RATIO, max(height, width) / min(height, width))
        return None

    w_bar = max(factor, _round_by(width, factor))
    h_bar = max(factor, _round_by(height, factor))

    if h_bar * w_bar > max_pixels:
        beta = math.sqrt((height * width) / max_pixels)
        h_bar = _floor_by(height / beta, factor)
        w_bar = _floor_by(width / beta, factor)
    elif h_bar * w_bar < min_pixels:
        beta = math.sqrt(min_pixels / (height * width))
        h_bar = _ceil_by(height * beta, factor)
        w_bar = _ceil_by(width * beta, factor)

    return w_bar, h_bar


def check_geometry(geometry: Optional[ScreenGeometry]) -> ScreenGeometry:
    if geometry is None:
        raise CoordinateError("no screen geometry available")
    if geometry.physical_size is None or geometry.physical_size.empty:
        raise CoordinateError(f"physical screen size unusable: {geometry.physical_size}")
    sf = geometry.scale_factor
    if sf is None or not isinstance(sf, (int, float)) or not math.isfinite(sf) or sf <= 0:
        raise CoordinateError(f"scale factor unusable: {sf!r}")
    return geometry


def to_screenshot_point(p: Point, space: ModelSpace) -> Point:
    _expect(p, Space.MODEL)
    if space.width <= 0 or space.height <= 0:
        raise CoordinateError(f"model space has no extent: {space.width}x{space.height}")
    if space.screenshot_size.empty:
        raise CoordinateError("screenshot size unknown")
    return Point(
        p.x / space.width * space.screenshot_size.width,
        p.y / space.height * space.screenshot_size.height,
        Space.SCREENSHOT,
    )


def to_device_point(p: Point, space: ModelSpace, geometry: ScreenGeometry) -> Point:
    """Model-space point -> integer physical pixel, clamped on-screen."""
    geometry = check_geometry(geometry)
    sp = to_screenshot_point(p, space)
    phys = geometry.physical_size
    shot = space.screenshot_size
    x = sp.x * phys.width / shot.width
    y = sp.y * phys.height / shot.height
    return _clamp(Point(math.floor(x + _EPS), math.floor(y + _EPS), Space.PHYSICAL), phys)


def logical_to_physical(p: Point, geometry: ScreenGeometry) -> Point:
    _expect(p, Space.LOGICAL)
    sf = check_geometry(geometry).scale_factor
    return Point(p.x * sf, p.y * sf, Space.PHYSICAL)


def physical_to_logical(p: Point, geometry: ScreenGeometry) -> Point:
    _expect(p, Space.PHYSICAL)
    sf = check_geometry(geometry).scale_factor
    return Point(p.x / sf, p.y / sf, Space.LOGICAL)


def map_action(action: ParsedAction, space: ModelSpace, geometry: ScreenGeometry) -> ParsedAction:
    """Returns a copy of `action` with every point in physical space."""
    if action.space != Space.MODEL:
        raise CoordinateError(f"{action.type.value}: expected model-space action, got {action.space.value}")
    if not action.points:
        return action.with_points(lambda p: p, Space.PHYSICAL)
    return action.with_points(lambda p: to_device_point(p, space, geometry), Space.PHYSICAL)


def to_logical_action(action: ParsedAction, geometry: ScreenGeometry) -> ParsedAction:
    if action.space != Space.PHYSICAL:
        raise CoordinateError(f"{action.type.value}: expected physical-space action, got {action.space.value}")
    return action.with_points(lambda p: physical_to_logical(p, geometry), Space.LOGICAL)


def _clamp(p: Point, size: Size) -> Point:
    x = min(max(p.x, 0), size.width - 1)
    y = min(max(p.y, 0), size.height - 1)
    if (x, y) != (p.x, p.y):
        log.warning("Clamped (%s, %s) to (%s, %s) on %dx%d screen", p.x, p.y, x, y, size.width, size.height)
    return Point(x, y, p.space)


def _expect(p: Point, space: Space) -> None:
    if p.space != space:
        raise CoordinateError(f"expected a {space.value} point, got {p.space.value}")


def _round_by(n: float, factor: int) -> int:
    return round(n / factor) * factor


def _floor_by(n: float, factor: int) -> int:
    return math.floor(n / factor) * factor


def _ceil_by(n: float, factor: int) -> int:
    return math.ceil(n / factor) * factor
