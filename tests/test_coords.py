import logging

import pytest

from guiloop.agent.actions import ActionType, ParsedAction, Point, ScreenGeometry, Size, Space
from guiloop.agent.coords import (
    IMAGE_FACTOR,
    ModelSpace,
    check_geometry,
    logical_to_physical,
    map_action,
    physical_to_logical,
    smart_resize,
    to_device_point,
    to_logical_action,
)
from guiloop.agent.errors import CoordinateError
from guiloop.agent.grammar import parse
from guiloop.agent.validate import normalize_all
from guiloop.model.schema import UI_TARS_1_0, UI_TARS_1_5

FHD = ScreenGeometry.from_physical(1920, 1080)


def _relative(w=1920, h=1080) -> ModelSpace:
    return ModelSpace.for_schema(UI_TARS_1_0, Size(w, h))


def test_end_to_end_example():
    actions = normalize_all(parse("I will click the button.\nclick(point='<point>512,384</point>')"), UI_TARS_1_0)
    mapped = map_action(actions[0], _relative(), FHD)
    assert mapped.space == Space.PHYSICAL
    assert mapped.point() == Point(983, 414, Space.PHYSICAL)


def test_screenshot_smaller_than_screen():
    # Model saw a 192x108 thumbnail of a 1920x1080 screen.
    p = to_device_point(Point(512, 384, Space.MODEL), _relative(192, 108), FHD)
    assert p.as_tuple() == (983, 414)


def test_negative_coordinates_clamp_to_zero(caplog):
    with caplog.at_level(logging.WARNING, logger="guiloop.agent.coords"):
        p = to_device_point(Point(-5, -20, Space.MODEL), _relative(), FHD)
    assert p.as_tuple() == (0, 0)
    assert [r.levelno for r in caplog.records if "Clamped" in r.getMessage()] == [logging.WARNING]


def test_far_edge_clamps_inside_screen():
    p = to_device_point(Point(1000, 1000, Space.MODEL), _relative(), FHD)
    assert p.as_tuple() == (1919, 1079)


def test_logical_physical_round_trip():
    g = ScreenGeometry.from_physical(2880, 1800, 1.5)
    for x, y in [(0, 0), (983, 414), (2879, 1799), (1441, 7)]:
        phys = Point(x, y, Space.PHYSICAL)
        back = logical_to_physical(physical_to_logical(phys, g), g)
        assert abs(back.x - x) <= 1
        assert abs(back.y - y) <= 1


def test_from_physical_derives_logical_size():
    g = ScreenGeometry.from_physical(2880, 1800, 2.0)
    assert g.logical_size == Size(1440, 900)


def test_smart_resize_snaps_to_factor():
    w, h = smart_resize(1080, 1920)
    assert (w, h) == (1932, 1092)
    assert w % IMAGE_FACTOR == 0 and h % IMAGE_FACTOR == 0


def test_smart_resize_small_image_is_scaled_up():
    w, h = smart_resize(50, 50)
    assert w * h >= 100 * IMAGE_FACTOR * IMAGE_FACTOR


def test_smart_resize_rejects_extreme_aspect():
    assert smart_resize(1, 300) is None


def test_absolute_schema_uses_resized_pixels():
    space = ModelSpace.for_schema(UI_TARS_1_5, Size(1920, 1080))
    assert (space.width, space.height) == (1932, 1092)
    p = to_device_point(Point(966, 546, Space.MODEL), space, FHD)
    assert p.as_tuple() == (960, 540)


def test_absolute_schema_extreme_aspect_is_a_coordinate_error():
    with pytest.raises(CoordinateError):
        ModelSpace.for_schema(UI_TARS_1_5, Size(3000, 10))


@pytest.mark.parametrize("geometry", [
    None,
    ScreenGeometry(Size(0, 1080)),
    ScreenGeometry(Size(1920, 1080), scale_factor=0),
    ScreenGeometry(Size(1920, 1080), scale_factor=None),
    ScreenGeometry(Size(1920, 1080), scale_factor=float("nan")),
])
def test_unusable_geometry(geometry):
    with pytest.raises(CoordinateError):
        check_geometry(geometry)


def test_map_action_needs_geometry_only_for_points():
    click = ParsedAction(ActionType.CLICK, {"point": Point(1, 1, Space.MODEL)})
    with pytest.raises(CoordinateError):
        map_action(click, _relative(), None)

    typed = ParsedAction(ActionType.TYPE, {"content": "hi"})
    mapped = map_action(typed, _relative(), None)
    assert mapped.space == Space.PHYSICAL
    assert mapped.params == {"content": "hi"}


def test_map_action_rejects_wrong_space():
    already = ParsedAction(ActionType.CLICK, {"point": Point(1, 1, Space.PHYSICAL)}, space=Space.PHYSICAL)
    with pytest.raises(CoordinateError):
        map_action(already, _relative(), FHD)


def test_point_space_is_checked():
    with pytest.raises(CoordinateError):
        logical_to_physical(Point(1, 1, Space.PHYSICAL), FHD)
    with pytest.raises(CoordinateError):
        to_device_point(Point(1, 1, Space.SCREENSHOT), _relative(), FHD)


def test_to_logical_action():
    g = ScreenGeometry.from_physical(2880, 1800, 2.0)
    drag = ParsedAction(
        ActionType.DRAG,
        {"start": Point(100, 200, Space.PHYSICAL), "end": Point(300, 400, Space.PHYSICAL)},
        space=Space.PHYSICAL,
    )
    logical = to_logical_action(drag, g)
    assert logical.space == Space.LOGICAL
    assert logical.params["start"] == Point(50, 100, Space.LOGICAL)
    assert logical.params["end"] == Point(150, 200, Space.LOGICAL)
